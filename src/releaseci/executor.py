# executor.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol

TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL = 4000


@dataclass(frozen=True)
class CommandResult:
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor(Protocol):
    def run(
        self,
        cmd: str,
        *,
        cwd: Path,
        env: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


def _text(out) -> str:
    # TimeoutExpired carries bytes even with text=True
    if out is None:
        return ""
    if isinstance(out, bytes):
        return out.decode("utf-8", errors="replace")
    return out


class ShellExecutor:
    """Runs commands through the shell; the exit status is the only verdict."""

    def run(
        self,
        cmd: str,
        *,
        cwd: Path,
        env: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,   # so we can show output on failure
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                cmd=cmd,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_text(e.stdout)[-OUTPUT_TAIL:],
                stderr=_text(e.stderr)[-OUTPUT_TAIL:],
                timed_out=True,
            )

        return CommandResult(
            cmd=cmd,
            exit_code=proc.returncode,
            stdout=proc.stdout[-OUTPUT_TAIL:],
            stderr=proc.stderr[-OUTPUT_TAIL:],
        )
