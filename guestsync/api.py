"""Remote guest API: the mutation primitives the reconcilers call."""

from __future__ import annotations

import abc
import json

from loguru import logger

from .errors import GuestLockedError, RemoteAPIError
from .runtime import GuestRef, guest_cmd
from .util import CmdError, run_cmd, shell_join

log = logger

_LOCKED_MARKERS = ('is locked', "can't lock file", 'vm locked', 'ct locked')


class GuestAPI(abc.ABC):
    """Interface to the control plane for a single guest's devices."""

    @abc.abstractmethod
    def delete_devices(self, guest: GuestRef, names: str) -> None:
        """Detach the comma-joined slot-names in one call."""

    @abc.abstractmethod
    def set_devices(self, guest: GuestRef, params: dict[str, str]) -> None:
        """Write config entries keyed by slot-name (or option name) in one call."""

    @abc.abstractmethod
    def move_disk(self, guest: GuestRef, slot_name: str, storage: str) -> None:
        ...

    @abc.abstractmethod
    def resize_disk(self, guest: GuestRef, slot_name: str, size: str) -> None:
        ...

    @abc.abstractmethod
    def get_config(self, guest: GuestRef) -> dict[str, str]:
        ...

    @abc.abstractmethod
    def get_status(self, guest: GuestRef) -> str:
        ...

    @abc.abstractmethod
    def start(self, guest: GuestRef) -> None:
        ...

    @abc.abstractmethod
    def stop(self, guest: GuestRef) -> None:
        ...


def _is_locked_message(text: str) -> bool:
    low = text.lower()
    return any(marker in low for marker in _LOCKED_MARKERS)


class PveshGuestAPI(GuestAPI):
    """GuestAPI backed by the ``pvesh`` command line client."""

    def __init__(self, *, sudo: bool = False, dry_run: bool = False):
        self.sudo = sudo
        self.dry_run = dry_run

    def _run(self, cmd: list[str], *, mutating: bool = True) -> str:
        if mutating and self.dry_run:
            log.info('DRYRUN: {}', shell_join(cmd))
            return ''
        try:
            res = run_cmd(cmd, sudo=self.sudo, check=True, capture=True)
        except CmdError as ex:
            detail = ex.result.detail or '(no details)'
            msg = f'pvesh call failed: {shell_join(cmd)}: {detail}'
            if _is_locked_message(ex.result.stderr or ex.result.stdout):
                raise GuestLockedError(msg, cmd=cmd, result=ex.result) from ex
            raise RemoteAPIError(msg, cmd=cmd, result=ex.result) from ex
        return res.stdout

    def _get_json(self, guest: GuestRef, endpoint: str) -> dict:
        cmd = guest_cmd('get', guest, endpoint, output_json=True)
        out = self._run(cmd, mutating=False)
        try:
            data = json.loads(out or '{}')
        except json.JSONDecodeError as ex:
            raise RemoteAPIError(
                f'pvesh returned invalid JSON for {guest} {endpoint}: {ex}',
                cmd=cmd,
            ) from ex
        if not isinstance(data, dict):
            raise RemoteAPIError(
                f'pvesh returned unexpected payload for {guest} {endpoint}',
                cmd=cmd,
            )
        return data

    def delete_devices(self, guest: GuestRef, names: str) -> None:
        log.debug('Deleting devices {} on {}', names, guest)
        self._run(guest_cmd('set', guest, 'config', {'delete': names}))

    def set_devices(self, guest: GuestRef, params: dict[str, str]) -> None:
        log.debug('Setting {} on {}', ', '.join(sorted(params)), guest)
        self._run(guest_cmd('set', guest, 'config', params))

    def move_disk(self, guest: GuestRef, slot_name: str, storage: str) -> None:
        if guest.kind == 'lxc':
            cmd = guest_cmd(
                'create',
                guest,
                'move_volume',
                {'volume': slot_name, 'storage': storage},
            )
        else:
            cmd = guest_cmd(
                'create',
                guest,
                'move_disk',
                {'disk': slot_name, 'storage': storage},
            )
        self._run(cmd)

    def resize_disk(self, guest: GuestRef, slot_name: str, size: str) -> None:
        self._run(
            guest_cmd('set', guest, 'resize', {'disk': slot_name, 'size': size})
        )

    def get_config(self, guest: GuestRef) -> dict[str, str]:
        data = self._get_json(guest, 'config')
        return {str(k): str(v) for k, v in data.items()}

    def get_status(self, guest: GuestRef) -> str:
        data = self._get_json(guest, 'status/current')
        return str(data.get('status', 'unknown'))

    def start(self, guest: GuestRef) -> None:
        self._run(guest_cmd('create', guest, 'status/start'))

    def stop(self, guest: GuestRef) -> None:
        self._run(guest_cmd('create', guest, 'status/stop'))
