"""Declarative guest config: TOML load/dump and validation of device records."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from .devices import (
    ROOTFS,
    DeviceSet,
    MountPoint,
    NetworkInterface,
    device_set,
    validate_size,
)
from .errors import ConfigValidationError
from .runtime import GuestRef

DEFAULT_CONFIG_NAME = '.guestsync.toml'

_MOUNTPOINT_FIELDS = {f.name: f for f in fields(MountPoint)}
_NETWORK_FIELDS = {f.name: f for f in fields(NetworkInterface)}
_BOOL_DEVICE_FIELDS = {'acl', 'backup', 'quota', 'replicate', 'shared', 'ro', 'firewall'}
_INT_DEVICE_FIELDS = {'slot', 'id', 'mtu', 'rate', 'tag'}


@dataclass
class GuestSection:
    node: str = ''
    vmid: int = 0
    kind: str = 'lxc'
    hostname: str | None = None
    cores: int | None = None
    memory: int | None = None
    swap: int | None = None
    onboot: bool | None = None
    description: str | None = None
    start: bool | None = None


# Guest options forwarded verbatim in the final bulk config update.
OPTION_NAMES = ('hostname', 'cores', 'memory', 'swap', 'onboot', 'description')


@dataclass
class GuestConfig:
    guest: GuestSection = field(default_factory=GuestSection)
    rootfs: MountPoint | None = None
    mountpoints: list[MountPoint] = field(default_factory=list)
    networks: list[NetworkInterface] = field(default_factory=list)
    verbosity: int = 1

    def guest_ref(self) -> GuestRef:
        return GuestRef(
            node=str(self.guest.node), vmid=int(self.guest.vmid), kind=self.guest.kind
        )

    def disk_set(self) -> DeviceSet:
        return device_set(self.mountpoints)

    def option_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        for name in OPTION_NAMES:
            value = getattr(self.guest, name)
            if value is None:
                continue
            if isinstance(value, bool):
                params[name] = '1' if value else '0'
            else:
                params[name] = str(value)
        return params

    def validate(self) -> 'GuestConfig':
        if not self.guest.node:
            raise ConfigValidationError('[guest] node is required')
        vmid = self.guest.vmid
        if isinstance(vmid, bool) or not isinstance(vmid, int) or vmid <= 0:
            raise ConfigValidationError('[guest] vmid must be a positive integer')
        self.guest_ref()
        if self.rootfs is not None:
            if not self.rootfs.is_root:
                raise ConfigValidationError('[rootfs] must not set a slot')
            if not self.rootfs.storage or not self.rootfs.size:
                raise ConfigValidationError('[rootfs] requires storage and size')
            validate_size(self.rootfs.size)
        for mp in self.mountpoints:
            if mp.type == ROOTFS:
                raise ConfigValidationError(
                    f'mount point {mp.key!r} must not use type rootfs; '
                    'declare the root filesystem in [rootfs]'
                )
            if mp.slot is None:
                raise ConfigValidationError(
                    f'mount point {mp.key!r} requires an integer slot'
                )
            if not mp.mp:
                raise ConfigValidationError(
                    f'mount point {mp.key!r} requires a mount path (mp)'
                )
        self.disk_set()
        seen: set[int] = set()
        for iface in self.networks:
            if int(iface.id) in seen:
                raise ConfigValidationError(f'duplicate network id {iface.id}')
            seen.add(int(iface.id))
            if not iface.name:
                raise ConfigValidationError(f'network net{iface.id} requires a name')
        return self


def _coerce(section: str, name: str, value: object) -> object:
    if name in _BOOL_DEVICE_FIELDS:
        if not isinstance(value, bool):
            raise ConfigValidationError(f'{section}.{name} must be a boolean')
        return value
    if name in _INT_DEVICE_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigValidationError(f'{section}.{name} must be an integer')
        return value
    if not isinstance(value, str):
        raise ConfigValidationError(f'{section}.{name} must be a string')
    return value


def _mountpoint_from_dict(raw: dict, *, section: str) -> MountPoint:
    dev = MountPoint()
    for k, v in raw.items():
        if k not in _MOUNTPOINT_FIELDS:
            raise ConfigValidationError(f'unknown field {section}.{k}')
        setattr(dev, k, _coerce(section, k, v))
    return dev


def _network_from_dict(raw: dict, *, index: int) -> NetworkInterface:
    iface = NetworkInterface(id=index)
    for k, v in raw.items():
        if k not in _NETWORK_FIELDS:
            raise ConfigValidationError(f'unknown field network[{index}].{k}')
        setattr(iface, k, _coerce(f'network[{index}]', k, v))
    return iface


def _cfg_from_dict(raw: dict) -> GuestConfig:
    cfg = GuestConfig()
    body = raw.get('guest', None)
    if isinstance(body, dict):
        for k, v in body.items():
            if hasattr(cfg.guest, k):
                setattr(cfg.guest, k, v)
    rootfs = raw.get('rootfs', None)
    if isinstance(rootfs, dict):
        cfg.rootfs = _mountpoint_from_dict(rootfs, section='rootfs')
        cfg.rootfs.key = ROOTFS
    for i, item in enumerate(raw.get('mountpoint', [])):
        if isinstance(item, dict):
            cfg.mountpoints.append(
                _mountpoint_from_dict(item, section=f'mountpoint[{i}]')
            )
    for i, item in enumerate(raw.get('network', [])):
        if isinstance(item, dict):
            cfg.networks.append(_network_from_dict(item, index=i))
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def loads(text: str) -> GuestConfig:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as ex:
        raise ConfigValidationError(f'invalid TOML: {ex}') from ex
    return _cfg_from_dict(raw).validate()


def load(path: Path) -> GuestConfig:
    return loads(path.read_text(encoding='utf-8'))


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _emit_toml_kv(lines: list[str], key: str, val: object) -> None:
    if isinstance(val, bool):
        lines.append(f'{key} = {"true" if val else "false"}')
    elif isinstance(val, int):
        lines.append(f'{key} = {val}')
    else:
        lines.append(f'{key} = "{_toml_escape(str(val))}"')


def _emit_fields(
    lines: list[str], obj: object, *, skip: frozenset[str] = frozenset()
) -> None:
    for f in fields(obj):
        if f.name in skip:
            continue
        val = getattr(obj, f.name)
        if val is None:
            continue
        _emit_toml_kv(lines, f.name, val)


def dump_toml(cfg: GuestConfig) -> str:
    lines: list[str] = []
    if cfg.verbosity != 1:
        lines.append(f'verbosity = {cfg.verbosity}')
        lines.append('')
    lines.append('[guest]')
    _emit_fields(lines, cfg.guest)
    lines.append('')
    if cfg.rootfs is not None:
        lines.append('[rootfs]')
        _emit_fields(lines, cfg.rootfs, skip=frozenset({'key', 'slot'}))
        lines.append('')
    for mp in sorted(cfg.mountpoints, key=lambda m: (m.type or '', m.slot or 0)):
        lines.append('[[mountpoint]]')
        _emit_fields(lines, mp)
        lines.append('')
    for iface in sorted(cfg.networks, key=lambda n: n.id):
        lines.append('[[network]]')
        _emit_fields(lines, iface)
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def save(path: Path, cfg: GuestConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
