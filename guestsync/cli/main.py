"""Top-level modal CLI wiring and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..api import PveshGuestAPI
from ..config import dump_toml
from ..reconcile import RemoteOp
from ..store import forget_applied, load_applied, save_applied, state_path
from ..sync import sync_guest
from ._common import (
    _BaseCommand,
    _cfg_path,
    _confirm_mutation,
    _load_cfg,
    _resolve_previous,
    log,
)


def _render_ops(ops: list[RemoteOp]) -> str:
    if not ops:
        return '  (no changes)'
    return '\n'.join(f'  {i}. {op.describe()}' for i, op in enumerate(ops, start=1))


class PlanCLI(_BaseCommand):
    """Print the remote operations that apply would issue."""

    source = scfg.Value(
        'state',
        help='Previous state source: state (last applied) or remote (read guest config).',
    )
    sudo = scfg.Value(False, isflag=True, help='Run pvesh reads with sudo.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        desired = _load_cfg(args.config)
        api = PveshGuestAPI(sudo=bool(args.sudo), dry_run=True)
        previous, origin = _resolve_previous(desired, api, source=args.source)
        result = sync_guest(api, previous, desired, dry_run=True)
        print(f'Plan for {result.guest} (previous: {origin})')
        print(_render_ops(result.ops))
        return 0


class ApplyCLI(_BaseCommand):
    """Converge the guest's devices and options to the config."""

    source = scfg.Value(
        'state',
        help='Previous state source: state (last applied) or remote (read guest config).',
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )
    sudo = scfg.Value(False, isflag=True, help='Run pvesh with sudo.')
    wait = scfg.Value(
        0,
        help='Seconds to wait for a locked guest to become available first.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        desired = _load_cfg(args.config)
        guest = desired.guest_ref()
        api = PveshGuestAPI(sudo=bool(args.sudo), dry_run=bool(args.dry_run))
        previous, origin = _resolve_previous(desired, api, source=args.source)
        log.debug('Previous state for {} from {}', guest, origin)
        if not args.dry_run:
            _confirm_mutation(
                yes=bool(args.yes),
                purpose=f"Reconcile devices of {guest} from {origin}.",
            )
        result = sync_guest(
            api,
            previous,
            desired,
            dry_run=bool(args.dry_run),
            wait_unlocked_s=float(args.wait or 0),
        )
        print(_render_ops(result.ops))
        if args.dry_run:
            return 0
        fpath = save_applied(result.config)
        print(f'Applied state: {fpath}')
        return 0


class ShowCLI(_BaseCommand):
    """Show the resolved desired config."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(f'# Config: {_cfg_path(args.config)}')
        print(dump_toml(cfg), end='')
        return 0


class StateCLI(_BaseCommand):
    """Show or forget the last applied state of the configured guest."""

    forget = scfg.Value(
        False, isflag=True, help='Delete the applied state file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        guest = _load_cfg(args.config).guest_ref()
        fpath = state_path(guest)
        if args.forget:
            removed = forget_applied(guest)
            print(f'{"Removed" if removed else "No state at"} {fpath}')
            return 0
        print(f'# State: {fpath}')
        applied = load_applied(guest)
        if applied is None:
            print('# (none)')
            return 0
        print(dump_toml(applied), end='')
        return 0


class GuestSyncModalCLI(scfg.ModalCLI):
    """Reconcile guest storage and network devices with a declarative config."""

    plan = PlanCLI
    apply = ApplyCLI
    show = ShowCLI
    state = StateCLI


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        if config_value is not None or _cfg_path(None).exists():
            verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = GuestSyncModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled guestsync error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
