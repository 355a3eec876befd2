"""Runtime helpers for addressing guests and constructing pvesh command arguments."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ConfigValidationError

PVESH = 'pvesh'
GUEST_KINDS = ('lxc', 'qemu')


@dataclass(frozen=True)
class GuestRef:
    node: str
    vmid: int
    kind: str = 'lxc'

    def __post_init__(self) -> None:
        if self.kind not in GUEST_KINDS:
            raise ConfigValidationError(
                f'guest kind must be one of {", ".join(GUEST_KINDS)}, got {self.kind!r}'
            )
        if not self.node:
            raise ConfigValidationError('guest node must not be empty')

    @property
    def base_path(self) -> str:
        return f'/nodes/{self.node}/{self.kind}/{int(self.vmid)}'

    def __str__(self) -> str:
        return f'{self.kind}/{self.vmid}@{self.node}'


def pvesh_cmd(
    method: str,
    path: str,
    params: dict[str, object] | None = None,
    *,
    output_json: bool = False,
) -> list[str]:
    args = [PVESH, method, path]
    for key, value in (params or {}).items():
        args.extend([f'--{key}', str(value)])
    if output_json:
        args.extend(['--output-format', 'json'])
    return args


def guest_cmd(
    method: str,
    guest: GuestRef,
    endpoint: str,
    params: dict[str, object] | None = None,
    *,
    output_json: bool = False,
) -> list[str]:
    return pvesh_cmd(
        method,
        f'{guest.base_path}/{endpoint}',
        params,
        output_json=output_json,
    )
