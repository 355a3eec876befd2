"""Tests for guest-level synchronization."""

from __future__ import annotations

import pytest
from test_reconcile import RecordingAPI

from guestsync.config import GuestConfig, GuestSection
from guestsync.devices import MountPoint, NetworkInterface
from guestsync.errors import GuestLockedError
from guestsync.locking import guest_lock, is_guest_locked
from guestsync.runtime import GuestRef
from guestsync.sync import observed_config, sync_guest, wait_for_config


def _cfg(**kw) -> GuestConfig:
    guest = GuestSection(node='pve1', vmid=101, **kw.pop('guest', {}))
    return GuestConfig(guest=guest, **kw)


def _previous() -> GuestConfig:
    return _cfg(
        guest={'hostname': 'old'},
        rootfs=MountPoint(key='rootfs', storage='local', size='8G', volume='local:r'),
        mountpoints=[
            MountPoint(
                key='a', slot=0, mp='/a', storage='local', size='10G',
                volume='local:vol-1',
            )
        ],
        networks=[
            NetworkInterface(id=0, name='eth0', bridge='vmbr0'),
            NetworkInterface(id=1, name='eth1', bridge='vmbr0'),
        ],
    )


def test_sync_orders_networks_rootfs_mountpoints_then_bulk_set() -> None:
    previous = _previous()
    desired = _cfg(
        guest={'hostname': 'new', 'cores': 2},
        rootfs=MountPoint(key='rootfs', storage='local', size='16G'),
        mountpoints=[MountPoint(key='a', slot=0, mp='/a', size='20G')],
        networks=[NetworkInterface(id=0, name='eth0', bridge='vmbr1')],
    )
    api = RecordingAPI(
        remote={
            'rootfs': 'local:r,size=16G',
            'mp0': 'local:vol-1,mp=/a,size=20G',
        }
    )
    result = sync_guest(api, previous, desired)
    assert api.calls == [
        ('delete', 'net1'),
        ('resize', 'rootfs', '16G'),
        ('get_config',),
        ('resize', 'mp0', '20G'),
        ('get_config',),
        (
            'set',
            {
                'hostname': 'new',
                'cores': '2',
                'net0': 'name=eth0,bridge=vmbr1',
            },
        ),
    ]
    assert result.changed
    assert result.config.mountpoints[0].storage == 'local'
    assert result.config.mountpoints[0].volume == 'local:vol-1'
    assert result.config.rootfs.volume == 'local:r'
    # The caller's desired config is left untouched.
    assert desired.mountpoints[0].storage is None
    assert desired.rootfs.volume is None


def test_sync_converged_guest_issues_no_calls() -> None:
    previous = _previous()
    api = RecordingAPI()
    result = sync_guest(api, previous, _previous())
    assert api.calls == []
    assert not result.changed
    assert result.as_dict() == {
        'guest': 'lxc/101@pve1',
        'dry_run': False,
        'ops': [],
    }


def test_sync_keeps_remote_assigned_hwaddr() -> None:
    previous = _cfg(networks=[NetworkInterface(id=0, name='eth0', hwaddr='AA:BB')])
    desired = _cfg(networks=[NetworkInterface(id=0, name='eth0', bridge='vmbr1')])
    api = RecordingAPI()
    result = sync_guest(api, previous, desired)
    assert api.calls == [
        ('set', {'net0': 'name=eth0,bridge=vmbr1,hwaddr=AA:BB'}),
    ]
    assert result.config.networks[0].hwaddr == 'AA:BB'


def test_sync_starts_stopped_guest() -> None:
    previous = _cfg(guest={'start': False})
    desired = _cfg(guest={'start': True})
    api = RecordingAPI(status='stopped')
    sync_guest(api, previous, desired)
    assert api.calls == [('get_status',), ('start',)]


def test_sync_leaves_power_alone_when_unset() -> None:
    api = RecordingAPI(status='running')
    sync_guest(api, _cfg(guest={'start': True}), _cfg())
    assert api.calls == []


def test_sync_dry_run_skips_reads_and_power() -> None:
    previous = _previous()
    desired = _previous()
    desired.mountpoints[0].size = '20G'
    desired.guest.start = True
    api = RecordingAPI()
    result = sync_guest(api, previous, desired, dry_run=True)
    assert result.dry_run
    assert [op.describe() for op in result.ops] == ['resize mp0 -> 20G']
    assert ('get_config',) not in api.calls
    assert ('start',) not in api.calls


def test_observed_config_reattaches_keys() -> None:
    api = RecordingAPI(
        remote={
            'rootfs': 'local:101/root.raw,size=8G',
            'mp1': 'local:vol-2,mp=/logs,size=2G',
            'mp0': 'local:vol-1,mp=/data,size=10G,acl=1',
            'net0': 'name=eth0,bridge=vmbr0,hwaddr=AA:BB',
            'hostname': 'ct1',
            'cores': '2',
            'onboot': '1',
            'arch': 'amd64',
        },
        status='running',
    )
    reference = _cfg(mountpoints=[MountPoint(key='data', slot=0, mp='/data')])
    cfg = observed_config(api, GuestRef(node='pve1', vmid=101), reference)
    assert [m.key for m in cfg.mountpoints] == ['data', 'mp1']
    assert cfg.mountpoints[0].acl is True
    assert cfg.rootfs.size == '8G'
    assert cfg.rootfs.key == 'rootfs'
    assert cfg.networks[0].hwaddr == 'AA:BB'
    assert cfg.guest.hostname == 'ct1'
    assert cfg.guest.cores == 2
    assert cfg.guest.onboot is True
    assert cfg.guest.start is True


def test_wait_for_config_retries_while_locked(monkeypatch) -> None:
    sleeps = []
    monkeypatch.setattr('guestsync.sync.time.sleep', sleeps.append)

    class FlakyAPI(RecordingAPI):
        def get_config(self, guest):
            self._record('get_config')
            if len(self.calls) < 3:
                raise GuestLockedError('CT is locked (backup)')
            return {'hostname': 'ct1'}

    api = FlakyAPI()
    out = wait_for_config(api, GuestRef(node='pve1', vmid=101), interval_s=2)
    assert out == {'hostname': 'ct1'}
    assert sleeps == [2, 2]


def test_wait_for_config_gives_up(monkeypatch) -> None:
    monkeypatch.setattr('guestsync.sync.time.sleep', lambda s: None)

    class LockedAPI(RecordingAPI):
        def get_config(self, guest):
            raise GuestLockedError('CT is locked (backup)')

    with pytest.raises(GuestLockedError):
        wait_for_config(LockedAPI(), GuestRef(node='pve1', vmid=101), timeout_s=0)


def test_guest_lock_is_per_guest() -> None:
    a = GuestRef(node='pve1', vmid=901)
    b = GuestRef(node='pve1', vmid=902)
    assert not is_guest_locked(a)
    with guest_lock(a):
        assert is_guest_locked(a)
        assert not is_guest_locked(b)
    assert not is_guest_locked(a)
