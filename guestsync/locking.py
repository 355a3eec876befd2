"""Per-guest locking so structural mutations on one guest never overlap.

The control plane rejects concurrent structural changes on a single guest
with lock-conflict errors, so every reconciliation of a guest holds this
lock for all of its phases.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from loguru import logger

from .runtime import GuestRef

log = logger

# Per-guest locks: (node, kind, vmid) -> threading.Lock
_locks: dict[tuple[str, str, int], threading.Lock] = {}
_locks_guard = threading.Lock()


def _get_lock(guest: GuestRef) -> threading.Lock:
    ident = (guest.node, guest.kind, int(guest.vmid))
    with _locks_guard:
        if ident not in _locks:
            _locks[ident] = threading.Lock()
        return _locks[ident]


def is_guest_locked(guest: GuestRef) -> bool:
    return _get_lock(guest).locked()


@contextmanager
def guest_lock(guest: GuestRef) -> Generator[None, None, None]:
    lock = _get_lock(guest)
    if lock.locked():
        log.debug('Waiting for in-flight reconciliation of {}', guest)
    with lock:
        log.debug('Acquired reconciliation lock for {}', guest)
        yield
