"""Guest-level synchronization: networks, root filesystem, mount points, options, power."""

from __future__ import annotations

import copy
import re
import time

from loguru import logger

from .api import GuestAPI
from .config import OPTION_NAMES, GuestConfig, GuestSection
from .devices import (
    ROOTFS,
    merge_networks,
    mountpoint_from_param,
    network_from_param,
    slot_name,
)
from .errors import GuestLockedError
from .locking import guest_lock
from .reconcile import (
    RemoteOp,
    apply_ops,
    network_params,
    reconcile_disks,
    reconcile_networks,
)
from .results import SyncResult
from .runtime import GuestRef

log = logger

_MOUNTPOINT_NAME = re.compile(r'^mp\d+$')
_NETWORK_NAME = re.compile(r'^net\d+$')
_INT_OPTIONS = {'cores', 'memory', 'swap'}


def wait_for_config(
    api: GuestAPI,
    guest: GuestRef,
    *,
    timeout_s: float = 300,
    interval_s: float = 5.0,
) -> dict[str, str]:
    """Read the guest config, polling while another operation holds the guest lock."""
    deadline = time.time() + timeout_s
    while True:
        try:
            return api.get_config(guest)
        except GuestLockedError:
            if time.time() >= deadline:
                raise
            log.debug(
                '{} is still locked, checking again in {}s', guest, interval_s
            )
            time.sleep(interval_s)


def observed_config(
    api: GuestAPI,
    guest: GuestRef,
    reference: GuestConfig | None = None,
) -> GuestConfig:
    """Build the current remote state as a GuestConfig.

    The remote API knows nothing about identity keys, so keys are re-attached
    to mount points by matching slot-names against ``reference``. Unmatched
    devices are keyed by their slot-name.
    """
    remote = api.get_config(guest)
    keys_by_name: dict[str, str] = {}
    if reference is not None:
        keys_by_name = {slot_name(m): m.key for m in reference.mountpoints}
    cfg = GuestConfig(
        guest=GuestSection(node=guest.node, vmid=int(guest.vmid), kind=guest.kind)
    )
    if reference is not None:
        cfg.verbosity = reference.verbosity
    for name, raw in remote.items():
        if name == ROOTFS:
            cfg.rootfs = mountpoint_from_param(name, raw, key=ROOTFS)
        elif _MOUNTPOINT_NAME.match(name) or name in keys_by_name:
            cfg.mountpoints.append(
                mountpoint_from_param(name, raw, key=keys_by_name.get(name, name))
            )
        elif _NETWORK_NAME.match(name):
            cfg.networks.append(network_from_param(name, raw))
        elif name in OPTION_NAMES:
            if name in _INT_OPTIONS:
                value: object = int(raw)
            elif name == 'onboot':
                value = raw.strip() == '1'
            else:
                value = raw
            setattr(cfg.guest, name, value)
    cfg.mountpoints.sort(key=lambda m: (m.type or '', m.slot or 0))
    cfg.networks.sort(key=lambda n: n.id)
    cfg.guest.start = api.get_status(guest) == 'running'
    return cfg


def _changed_options(previous: GuestConfig, desired: GuestConfig) -> dict[str, str]:
    prev = previous.option_params()
    return {k: v for k, v in desired.option_params().items() if prev.get(k) != v}


def _sync_power(
    api: GuestAPI,
    guest: GuestRef,
    want_running: bool,
    *,
    dry_run: bool = False,
) -> bool:
    if dry_run:
        log.info('DRYRUN: {} {}', 'start' if want_running else 'stop', guest)
        return True
    state = api.get_status(guest)
    if state == 'stopped' and want_running:
        log.info('Starting {}', guest)
        api.start(guest)
        return True
    if state == 'running' and not want_running:
        log.info('Stopping {}', guest)
        api.stop(guest)
        return True
    log.debug('{} already {}', guest, state)
    return False


def sync_guest(
    api: GuestAPI,
    previous: GuestConfig,
    desired: GuestConfig,
    *,
    dry_run: bool = False,
    wait_unlocked_s: float = 0,
) -> SyncResult:
    """Converge one guest from ``previous`` to ``desired``.

    Order: network deletes, root filesystem, mount points, then one bulk
    config update carrying changed options and the full network list, then
    the power state. The returned result holds the converged config
    (inherited fields and refreshed volumes filled in); ``desired`` itself
    is not modified.
    """
    desired = copy.deepcopy(desired)
    guest = desired.guest_ref()
    result = SyncResult(guest=guest, dry_run=dry_run)
    reconfirm = False if dry_run else None
    with guest_lock(guest):
        if wait_unlocked_s > 0 and not dry_run:
            wait_for_config(api, guest, timeout_s=wait_unlocked_s)

        desired.networks = merge_networks(previous.networks, desired.networks)
        networks_changed = desired.networks != previous.networks
        if networks_changed:
            result.ops += reconcile_networks(
                api, guest, previous.networks, desired.networks
            )

        if desired.rootfs is not None and previous.rootfs is not None:
            root_set = {ROOTFS: desired.rootfs}
            result.ops += reconcile_disks(
                api,
                guest,
                {ROOTFS: previous.rootfs},
                root_set,
                reconfirm=reconfirm,
            )
            desired.rootfs = root_set[ROOTFS]

        disks = desired.disk_set()
        result.ops += reconcile_disks(
            api, guest, previous.disk_set(), disks, reconfirm=reconfirm
        )
        desired.mountpoints = list(disks.values())

        params = _changed_options(previous, desired)
        if networks_changed:
            params.update(network_params(desired.networks))
        if params:
            op = RemoteOp('set', params=params)
            apply_ops(api, guest, [op])
            result.ops.append(op)

        want = desired.guest.start
        if want is not None and want != previous.guest.start:
            _sync_power(api, guest, want, dry_run=dry_run)

    result.config = desired
    log.debug('Synchronized {} with {} op(s)', guest, len(result.ops))
    return result
