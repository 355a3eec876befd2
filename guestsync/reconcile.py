"""Declarative device reconciliation for storage and network devices.

Disk reconciliation runs in strict phases:

1. delete devices that disappeared, changed backing volume, or changed slot
   (one batched call, the root filesystem is never deleted)
2. (re)create new and re-slotted devices (one batched call)
3. move devices whose storage changed (one call per device)
4. resize devices whose size string changed (one call per device)
5. re-read remote config and copy the remote ``volume`` back into the
   desired set

Any failing call aborts the remaining phases. Nothing is rolled back: the
next run, starting from fresh remote state, converges the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from .api import GuestAPI
from .devices import (
    DeviceSet,
    MountPoint,
    NetworkInterface,
    format_device_param,
    format_network_param,
    merge_devices,
    network_slot_name,
    parse_device_param,
    slot_name,
)
from .errors import ReconcileIncompleteError, RemoteAPIError
from .runtime import GuestRef

log = logger

ACTIONS = ('delete', 'set', 'move', 'resize')


@dataclass
class RemoteOp:
    """A single remote mutation, in the order it must be issued."""

    action: str
    names: tuple[str, ...] = ()
    params: dict[str, str] = field(default_factory=dict)
    target: str = ''

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise ValueError(f'Unknown remote op action: {self.action!r}')

    def apply(self, api: GuestAPI, guest: GuestRef) -> None:
        if self.action == 'delete':
            api.delete_devices(guest, ','.join(self.names))
        elif self.action == 'set':
            api.set_devices(guest, dict(self.params))
        elif self.action == 'move':
            api.move_disk(guest, self.names[0], self.target)
        else:
            api.resize_disk(guest, self.names[0], self.target)

    def describe(self) -> str:
        if self.action == 'delete':
            return f'delete {",".join(self.names)}'
        if self.action == 'set':
            body = ' '.join(f'{k}={v!r}' for k, v in sorted(self.params.items()))
            return f'set {body}'
        if self.action == 'move':
            return f'move {self.names[0]} -> storage {self.target}'
        return f'resize {self.names[0]} -> {self.target}'


def merge_device_sets(previous: DeviceSet, desired: DeviceSet) -> DeviceSet:
    """Return the desired set with unset fields inherited from previous."""
    merged: DeviceSet = {}
    for key, new in desired.items():
        prev = previous.get(key)
        merged[key] = merge_devices(prev, new) if prev is not None else new
    return merged


def _needs_delete(prev: MountPoint, new: MountPoint | None) -> bool:
    if new is None:
        return True
    if new.volume and new.volume != prev.volume:
        return True
    return new.slot != prev.slot


def plan_resize(
    previous: MountPoint, desired: MountPoint, name: str | None = None
) -> RemoteOp | None:
    """Plan a resize when the raw size strings differ (no unit normalization)."""
    if desired.size is None or desired.size == previous.size:
        return None
    return RemoteOp('resize', (name or slot_name(desired),), target=desired.size)


def plan_disk_changes(previous: DeviceSet, desired: DeviceSet) -> list[RemoteOp]:
    """Compute the ordered remote operations converging ``previous`` to ``desired``.

    Example:
        >>> prev = {'a': MountPoint(key='a', slot=0, storage='local', size='8G',
        ...                         volume='local:vol-1')}
        >>> new = {'a': MountPoint(key='a', slot=0, size='16G')}
        >>> [op.describe() for op in plan_disk_changes(prev, new)]
        ['resize mp0 -> 16G']
    """
    merged = merge_device_sets(previous, desired)
    ops: list[RemoteOp] = []

    deleted: set[str] = set()
    delete_names: list[str] = []
    for key, prev in previous.items():
        new = merged.get(key)
        if prev.is_root or (new is not None and new.is_root):
            if new is None:
                log.warning(
                    'Root filesystem {!r} is absent from the desired set; '
                    'it cannot be deleted and is left in place',
                    key,
                )
            continue
        if _needs_delete(prev, new):
            deleted.add(key)
            delete_names.append(slot_name(prev))
    if delete_names:
        ops.append(RemoteOp('delete', tuple(delete_names)))

    create_params: dict[str, str] = {}
    allocated: set[str] = set()
    for key, new in merged.items():
        prev = previous.get(key)
        if prev is None or new.slot != prev.slot or key in deleted:
            create_params[slot_name(new)] = format_device_param(new)
            if not new.volume:
                # Allocated fresh on the desired storage at the desired size.
                allocated.add(key)
    if create_params:
        ops.append(RemoteOp('set', params=create_params))

    for key, prev in previous.items():
        new = merged.get(key)
        if new is None or key in allocated:
            continue
        if new.storage and new.storage != prev.storage:
            ops.append(RemoteOp('move', (slot_name(prev),), target=new.storage))
        op = plan_resize(prev, new)
        if op is not None:
            ops.append(op)
    return ops


def apply_ops(api: GuestAPI, guest: GuestRef, ops: Sequence[RemoteOp]) -> None:
    for op in ops:
        log.info('Applying on {}: {}', guest, op.describe())
        op.apply(api, guest)


def resize_disk(
    api: GuestAPI,
    guest: GuestRef,
    previous: MountPoint,
    desired: MountPoint,
    *,
    name: str | None = None,
) -> RemoteOp | None:
    """Resize one device if its size changed; returns the issued op, if any."""
    op = plan_resize(previous, desired, name)
    if op is None:
        log.debug('No resize needed for {}', name or slot_name(desired))
        return None
    apply_ops(api, guest, [op])
    return op


def refresh_volumes(api: GuestAPI, guest: GuestRef, desired: DeviceSet) -> None:
    """Copy remote-assigned volume ids into ``desired`` from one config read."""
    try:
        remote = api.get_config(guest)
    except RemoteAPIError as ex:
        raise ReconcileIncompleteError(
            f'Device changes were applied to {guest} but its config could not be '
            f're-read; volume ids are stale, re-run to converge: {ex}'
        ) from ex
    for key, dev in desired.items():
        name = slot_name(dev)
        raw = remote.get(name)
        if raw is None:
            raise ReconcileIncompleteError(
                f'{name} ({key!r}) is missing from the remote config of {guest}'
            )
        dev.volume = parse_device_param(raw).get('volume')
        log.debug('Confirmed {} volume={}', name, dev.volume)


def reconcile_disks(
    api: GuestAPI,
    guest: GuestRef,
    previous: DeviceSet,
    desired: DeviceSet,
    *,
    reconfirm: bool | None = None,
) -> list[RemoteOp]:
    """Converge the guest's storage devices from ``previous`` to ``desired``.

    ``desired`` is updated in place: inherited fields are filled in and
    ``volume`` is refreshed from the remote config. With ``reconfirm=None``
    the trailing config read happens only when a mutation was issued.
    """
    merged = merge_device_sets(previous, desired)
    ops = plan_disk_changes(previous, merged)
    log.debug('Planned {} disk op(s) for {}', len(ops), guest)
    apply_ops(api, guest, ops)
    desired.update(merged)
    if reconfirm is None:
        reconfirm = bool(ops)
    if reconfirm:
        refresh_volumes(api, guest, desired)
    return ops


def plan_network_changes(
    previous: Sequence[NetworkInterface], desired: Sequence[NetworkInterface]
) -> list[RemoteOp]:
    """Delete interfaces whose id vanished; other field changes are left to the bulk set."""
    keep = {int(n.id) for n in desired}
    names = tuple(network_slot_name(n) for n in previous if int(n.id) not in keep)
    if not names:
        return []
    return [RemoteOp('delete', names)]


def network_params(desired: Sequence[NetworkInterface]) -> dict[str, str]:
    return {network_slot_name(n): format_network_param(n) for n in desired}


def reconcile_networks(
    api: GuestAPI,
    guest: GuestRef,
    previous: Sequence[NetworkInterface],
    desired: Sequence[NetworkInterface],
) -> list[RemoteOp]:
    ops = plan_network_changes(previous, desired)
    apply_ops(api, guest, ops)
    return ops
