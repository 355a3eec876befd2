"""Result dataclasses returned by guest synchronization."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .runtime import GuestRef

if TYPE_CHECKING:
    from .config import GuestConfig
    from .reconcile import RemoteOp


@dataclass
class SyncResult:
    guest: GuestRef
    ops: list['RemoteOp'] = field(default_factory=list)
    config: 'GuestConfig | None' = None
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.ops)

    def as_dict(self) -> dict[str, object]:
        return {
            'guest': str(self.guest),
            'dry_run': self.dry_run,
            'ops': [op.describe() for op in self.ops],
        }
