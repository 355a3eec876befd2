"""Device value types, slot naming, and the remote device-parameter codec.

A mount point carries two separate notions of "where it is":

* ``key`` is a caller-stable identity used only to match the previously
  applied device against the desired one. It never reaches the remote API.
* ``slot`` (combined with ``type``) is the positional name the remote API
  addresses the device by, e.g. ``mp0``. It may change between runs.

All diffing is keyed on ``key``; slot-names are only derived when an
operation is emitted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from typing import Iterable

from .errors import ConfigValidationError

ROOTFS = 'rootfs'
DEFAULT_DISK_TYPE = 'mp'

SIZE_PATTERN = re.compile(r'^[1-9][0-9]*[TGMK]$')

_SIZE_FACTORS_GB = {
    'T': 1024.0,
    'G': 1.0,
    'M': 1.0 / 1024,
    'K': 1.0 / (1024 * 1024),
}

_SLOT_NAME_PATTERN = re.compile(r'^([a-z]+?)(\d+)$')


@dataclass
class MountPoint:
    """One storage attachment: the root filesystem or a secondary mount point.

    ``None`` on an optional field means "not set", which is what lets a
    desired device be a partial update of the previous one.
    """

    key: str = ''
    slot: int | None = None
    type: str | None = None
    mp: str | None = None
    storage: str | None = None
    size: str | None = None
    volume: str | None = None
    acl: bool | None = None
    backup: bool | None = None
    quota: bool | None = None
    replicate: bool | None = None
    shared: bool | None = None
    ro: bool | None = None

    @property
    def is_root(self) -> bool:
        return slot_name(self) == ROOTFS


@dataclass
class NetworkInterface:
    """One virtual network interface, addressed remotely as ``net<id>``."""

    id: int = 0
    name: str = ''
    bridge: str | None = None
    firewall: bool | None = None
    gw: str | None = None
    gw6: str | None = None
    hwaddr: str | None = None
    ip: str | None = None
    ip6: str | None = None
    mtu: int | None = None
    rate: int | None = None
    tag: int | None = None
    trunks: str | None = None
    type: str | None = None


DeviceSet = dict[str, MountPoint]

# Identity is never inherited from the previous device.
_NON_INHERITED = {'key'}


def slot_name(device: MountPoint) -> str:
    """Return the remote positional name for a storage device.

    Example:
        >>> slot_name(MountPoint(key='a', slot=3))
        'mp3'
        >>> slot_name(MountPoint(key='a', slot=1, type='unused'))
        'unused1'
        >>> slot_name(MountPoint(key='root'))
        'rootfs'
    """
    dtype = device.type or DEFAULT_DISK_TYPE
    if dtype == ROOTFS or not isinstance(device.slot, int):
        return ROOTFS
    return f'{dtype}{device.slot}'


def network_slot_name(iface: NetworkInterface) -> str:
    return f'net{int(iface.id)}'


def parse_slot_name(name: str) -> tuple[str, int | None]:
    """Split a slot-name like ``mp3`` into ``('mp', 3)``."""
    if name == ROOTFS:
        return ROOTFS, None
    m = _SLOT_NAME_PATTERN.match(name)
    if m is None:
        raise ValueError(f'Not a device slot-name: {name!r}')
    return m.group(1), int(m.group(2))


def merge_devices(previous: MountPoint, desired: MountPoint) -> MountPoint:
    """Fill every field unset on ``desired`` from ``previous``."""
    updates = {}
    for f in fields(MountPoint):
        if f.name in _NON_INHERITED:
            continue
        if getattr(desired, f.name) is None:
            prev_val = getattr(previous, f.name)
            if prev_val is not None:
                updates[f.name] = prev_val
    return replace(desired, **updates)


def validate_size(size: str) -> str:
    if not isinstance(size, str) or not SIZE_PATTERN.match(size):
        raise ConfigValidationError(
            f'disk size must be a positive integer ending in T, G, M, or K, got {size!r}'
        )
    return size


def size_to_gb(size: str) -> float:
    validate_size(size)
    return int(size[:-1]) * _SIZE_FACTORS_GB[size[-1]]


def validate_device(device: MountPoint) -> None:
    if device.size is not None:
        validate_size(device.size)
    if device.slot is not None and int(device.slot) < 0:
        raise ConfigValidationError(
            f'mount point {device.key!r} has negative slot {device.slot}'
        )


def device_set(devices: Iterable[MountPoint]) -> DeviceSet:
    """Index devices by identity key, rejecting duplicate keys or slot-names."""
    out: DeviceSet = {}
    names: dict[str, str] = {}
    for dev in devices:
        if not dev.key:
            raise ConfigValidationError(
                f'mount point at {slot_name(dev)} has no identity key'
            )
        if dev.key in out:
            raise ConfigValidationError(f'duplicate mount point key {dev.key!r}')
        validate_device(dev)
        name = slot_name(dev)
        if name in names:
            raise ConfigValidationError(
                f'mount points {names[name]!r} and {dev.key!r} both use {name}'
            )
        names[name] = dev.key
        out[dev.key] = dev
    return out


def _fmt_value(value: object) -> str:
    if isinstance(value, bool):
        return '1' if value else '0'
    return str(value)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def format_device_param(device: MountPoint) -> str:
    """Encode a storage device into the remote ``volume,key=value,...`` grammar.

    Devices that already have a backing volume are re-attached by volume id.
    New devices are allocated with ``<storage>:<size in GiB>``.
    """
    parts: list[str] = []
    if device.volume:
        parts.append(device.volume)
        if device.size:
            parts.append(f'size={device.size}')
    else:
        if not device.storage or not device.size:
            raise ConfigValidationError(
                f'{slot_name(device)} ({device.key!r}) needs storage and size '
                'to allocate a new volume'
            )
        parts.append(f'{device.storage}:{size_to_gb(device.size):g}')
    skip = {'key', 'slot', 'type', 'storage', 'volume', 'size'}
    for name in sorted(f.name for f in fields(MountPoint)):
        if name in skip:
            continue
        value = getattr(device, name)
        if value is None:
            continue
        parts.append(f'{name}={_fmt_value(value)}')
    return ','.join(parts)


def parse_device_param(raw: str, first_key: str = 'volume') -> dict[str, str]:
    """Decode a remote device string; the bare leading item maps to ``first_key``.

    Example:
        >>> parse_device_param('local:101/vm-101-disk-1.raw,mp=/data,size=8G')
        {'volume': 'local:101/vm-101-disk-1.raw', 'mp': '/data', 'size': '8G'}
    """
    out: dict[str, str] = {}
    for item in str(raw or '').split(','):
        item = item.strip()
        if not item:
            continue
        if '=' in item:
            k, v = item.split('=', 1)
            out[k.strip()] = v.strip()
        else:
            out[first_key] = item
    return out


def mountpoint_from_param(name: str, raw: str, *, key: str = '') -> MountPoint:
    """Build a MountPoint from a remote ``<slot-name>: <param>`` config entry."""
    dtype, slot = parse_slot_name(name)
    parsed = parse_device_param(raw)
    dev = MountPoint(
        key=key or name,
        slot=slot,
        type=None if dtype in {ROOTFS, DEFAULT_DISK_TYPE} else dtype,
    )
    volume = parsed.get('volume')
    if volume:
        dev.volume = volume
        if ':' in volume:
            dev.storage = volume.split(':', 1)[0]
    dev.mp = parsed.get('mp')
    dev.size = parsed.get('size')
    for flag in ('acl', 'backup', 'quota', 'replicate', 'shared', 'ro'):
        if flag in parsed:
            setattr(dev, flag, _parse_bool(parsed[flag]))
    return dev


def format_network_param(iface: NetworkInterface) -> str:
    """Encode a network interface as ``name=...,bridge=...,...``."""
    if not iface.name:
        raise ConfigValidationError(f'{network_slot_name(iface)} has no name')
    parts = [f'name={iface.name}']
    for name in sorted(f.name for f in fields(NetworkInterface)):
        if name in {'id', 'name'}:
            continue
        value = getattr(iface, name)
        if value is None:
            continue
        parts.append(f'{name}={_fmt_value(value)}')
    return ','.join(parts)


def network_from_param(name: str, raw: str) -> NetworkInterface:
    dtype, slot = parse_slot_name(name)
    if dtype != 'net' or slot is None:
        raise ValueError(f'Not a network slot-name: {name!r}')
    parsed = parse_device_param(raw, first_key='name')
    iface = NetworkInterface(id=slot, name=parsed.get('name', ''))
    for f in fields(NetworkInterface):
        if f.name in {'id', 'name'} or f.name not in parsed:
            continue
        value = parsed[f.name]
        if f.name == 'firewall':
            setattr(iface, f.name, _parse_bool(value))
        elif f.name in {'mtu', 'rate', 'tag'}:
            setattr(iface, f.name, int(value))
        else:
            setattr(iface, f.name, value)
    return iface


def merge_networks(
    previous: Iterable[NetworkInterface], desired: Iterable[NetworkInterface]
) -> list[NetworkInterface]:
    """Fill unset fields (e.g. a remote-assigned ``hwaddr``) from the same-id interface."""
    by_id = {int(n.id): n for n in previous}
    out: list[NetworkInterface] = []
    for new in desired:
        prev = by_id.get(int(new.id))
        if prev is None:
            out.append(new)
            continue
        updates = {
            f.name: getattr(prev, f.name)
            for f in fields(NetworkInterface)
            if getattr(new, f.name) is None and getattr(prev, f.name) is not None
        }
        out.append(replace(new, **updates))
    return out
