"""Applied-state store: the last converged config of each guest, one TOML file per guest."""

from __future__ import annotations

from pathlib import Path

import ubelt as ub
from loguru import logger

from .config import GuestConfig, load, save
from .runtime import GuestRef

log = logger


def _appdir(appname: str, kind: str) -> Path:
    p = ub.Path.appdir(appname, type=kind).ensuredir()
    return Path(p)


def state_dir() -> Path:
    return _appdir('guestsync', 'data') / 'state'


def state_path(guest: GuestRef, root: Path | None = None) -> Path:
    base = root if root is not None else state_dir()
    return base / f'{guest.node}-{guest.kind}-{int(guest.vmid)}.toml'


def load_applied(guest: GuestRef, root: Path | None = None) -> GuestConfig | None:
    fpath = state_path(guest, root)
    if not fpath.exists():
        log.debug('No applied state for {} at {}', guest, fpath)
        return None
    return load(fpath)


def save_applied(cfg: GuestConfig, root: Path | None = None) -> Path:
    fpath = state_path(cfg.guest_ref(), root)
    fpath.parent.mkdir(parents=True, exist_ok=True)
    save(fpath, cfg)
    log.debug('Saved applied state for {} to {}', cfg.guest_ref(), fpath)
    return fpath


def forget_applied(guest: GuestRef, root: Path | None = None) -> bool:
    fpath = state_path(guest, root)
    if not fpath.exists():
        return False
    fpath.unlink()
    return True
