from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..api import GuestAPI
from ..config import DEFAULT_CONFIG_NAME, GuestConfig, load
from ..store import load_applied, state_path
from ..sync import observed_config
from ..util import expand

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help=f'Path to guest config TOML (default: {DEFAULT_CONFIG_NAME}).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Auto-approve remote mutations on the guest.',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(expand(p or DEFAULT_CONFIG_NAME)).resolve()


def _load_cfg(config_path: str | None) -> GuestConfig:
    path = _cfg_path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f'Config not found: {path}. Pass --config or create {DEFAULT_CONFIG_NAME}.'
        )
    return load(path)


def _resolve_previous(
    desired: GuestConfig,
    api: GuestAPI,
    *,
    source: str = 'state',
    state_root: Path | None = None,
) -> tuple[GuestConfig, str]:
    """Pick the previous state: last applied state, else observed remote config."""
    source = str(source or 'state').strip().lower()
    if source not in {'state', 'remote'}:
        raise RuntimeError('--source must be one of: remote, state')
    guest = desired.guest_ref()
    if source == 'state':
        applied = load_applied(guest, state_root)
        if applied is not None:
            return applied, f'applied state {state_path(guest, state_root)}'
        log.info('No applied state for {}; reading remote config instead', guest)
    return observed_config(api, guest, reference=desired), 'remote config'


def _confirm_mutation(*, yes: bool, purpose: str) -> None:
    if yes:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Remote guest mutations require confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print('About to modify remote guest configuration:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')


__all__ = [name for name in globals() if not name.startswith('__')]
