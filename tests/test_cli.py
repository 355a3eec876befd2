"""Tests for the guestsync command line."""

from __future__ import annotations

import builtins
import importlib
from pathlib import Path

import pytest
from test_reconcile import RecordingAPI

from guestsync.cli import GuestSyncModalCLI, main
from guestsync.cli._common import _confirm_mutation, _resolve_previous
from guestsync.config import GuestConfig, GuestSection, save
from guestsync.devices import MountPoint
from guestsync.store import load_applied, save_applied

# guestsync.cli re-exports main(), which shadows the submodule attribute.
cli_main = importlib.import_module('guestsync.cli.main')


def _desired(size: str = '20G') -> GuestConfig:
    return GuestConfig(
        guest=GuestSection(node='pve1', vmid=101),
        mountpoints=[
            MountPoint(key='a', slot=0, mp='/a', storage='local', size=size)
        ],
    )


def _applied() -> GuestConfig:
    cfg = _desired('10G')
    cfg.mountpoints[0].volume = 'local:vol-1'
    return cfg


@pytest.fixture
def workspace(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.setattr('guestsync.store.state_dir', lambda: tmp_path / 'state')

    def no_pvesh(cmd, **kwargs):
        raise AssertionError(f'unexpected pvesh call: {cmd}')

    monkeypatch.setattr('guestsync.api.run_cmd', no_pvesh)
    cfg_path = tmp_path / '.guestsync.toml'
    save(cfg_path, _desired())
    return cfg_path


def _run(argv: list[str]) -> int:
    rc = GuestSyncModalCLI.main(argv=argv, _noexit=True)
    return 0 if rc is None else int(rc)


def test_plan_from_applied_state(workspace: Path, capsys) -> None:
    save_applied(_applied())
    assert _run(['plan', '--config', str(workspace)]) == 0
    out = capsys.readouterr().out
    assert 'Plan for lxc/101@pve1 (previous: applied state' in out
    assert '  1. resize mp0 -> 20G' in out


def test_apply_dry_run_does_not_save(workspace: Path, capsys) -> None:
    save_applied(_applied())
    argv = ['apply', '--dry_run', '--config', str(workspace)]
    assert _run(argv) == 0
    assert 'resize mp0 -> 20G' in capsys.readouterr().out
    assert load_applied(_desired().guest_ref()).mountpoints[0].size == '10G'


def test_apply_saves_converged_state(
    workspace: Path, monkeypatch, capsys
) -> None:
    save_applied(_applied())
    api = RecordingAPI(remote={'mp0': 'local:vol-1,mp=/a,size=20G'})
    monkeypatch.setattr(cli_main, 'PveshGuestAPI', lambda **kw: api)
    assert _run(['apply', '--yes', '--config', str(workspace)]) == 0
    assert api.calls == [('resize', 'mp0', '20G'), ('get_config',)]
    assert 'Applied state:' in capsys.readouterr().out
    applied = load_applied(_desired().guest_ref())
    assert applied.mountpoints[0].size == '20G'
    assert applied.mountpoints[0].volume == 'local:vol-1'


def test_show_and_state(workspace: Path, capsys) -> None:
    assert _run(['show', '--config', str(workspace)]) == 0
    out = capsys.readouterr().out
    assert out.startswith('# Config: ')
    assert 'size = "20G"' in out

    assert _run(['state', '--config', str(workspace)]) == 0
    assert '# (none)' in capsys.readouterr().out
    save_applied(_applied())
    assert _run(['state', '--config', str(workspace)]) == 0
    assert 'volume = "local:vol-1"' in capsys.readouterr().out
    assert _run(['state', '--forget', '--config', str(workspace)]) == 0
    assert capsys.readouterr().out.startswith('Removed ')
    assert load_applied(_desired().guest_ref()) is None


def test_resolve_previous_falls_back_to_remote(workspace: Path) -> None:
    api = RecordingAPI(remote={'mp0': 'local:vol-3,mp=/a,size=10G'})
    previous, origin = _resolve_previous(_desired(), api)
    assert origin == 'remote config'
    assert previous.mountpoints[0].key == 'a'
    assert previous.mountpoints[0].volume == 'local:vol-3'
    with pytest.raises(RuntimeError, match='--source'):
        _resolve_previous(_desired(), api, source='cache')


def test_confirm_mutation(monkeypatch) -> None:
    monkeypatch.setattr('sys.stdin.isatty', lambda: False)
    _confirm_mutation(yes=True, purpose='Reconcile')
    with pytest.raises(RuntimeError, match='Re-run with --yes'):
        _confirm_mutation(yes=False, purpose='Reconcile')
    monkeypatch.setattr('sys.stdin.isatty', lambda: True)
    monkeypatch.setattr(builtins, 'input', lambda _: 'n')
    with pytest.raises(RuntimeError, match='Aborted by user'):
        _confirm_mutation(yes=False, purpose='Reconcile')


def test_count_verbose() -> None:
    assert cli_main._count_verbose(['plan', '-vv', '--verbose']) == 3
    assert cli_main._count_verbose(['plan', '--config', 'x']) == 0


def test_main_reports_errors(monkeypatch, tmp_path: Path, capsys) -> None:
    monkeypatch.setattr(cli_main, '_setup_logging', lambda *a: None)
    missing = tmp_path / 'missing.toml'
    with pytest.raises(SystemExit) as exc_info:
        main(['show', '--config', str(missing)])
    assert exc_info.value.code == 2
    assert 'ERROR: Config not found' in capsys.readouterr().err
