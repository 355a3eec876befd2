"""Process helpers for running control-plane commands (``pvesh``) on the node."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

log = logger


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str

    @property
    def detail(self) -> str:
        """Best single-line explanation of a failure (stderr, else stdout)."""
        text = (self.stderr or self.stdout or '').strip()
        return text.splitlines()[-1] if text else ''


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str], result: CmdResult):
        self.cmd = list(cmd)
        self.result = result
        super().__init__(
            f'{shell_join(cmd)} exited with code {result.code}: '
            f'{result.detail or "(no output)"}'
        )


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    check: bool = True,
    capture: bool = True,
) -> CmdResult:
    """Run a node-local command; ``sudo`` is skipped when already root."""
    argv = list(cmd)
    if sudo and os.geteuid() != 0:
        # -n: never prompt, pvesh calls run unattended.
        argv = ['sudo', '-n', *argv]
    log.opt(depth=1).debug('exec: {}', shell_join(argv))
    p = subprocess.run(argv, capture_output=capture, text=True)
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if p.returncode != 0:
        if check:
            log.opt(depth=1).debug(
                'exec failed code={} cmd={} detail={}',
                p.returncode,
                shell_join(argv),
                res.detail,
            )
            raise CmdError(argv, res)
        log.opt(depth=1).debug('exec returned code={} (unchecked)', p.returncode)
    return res


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))
