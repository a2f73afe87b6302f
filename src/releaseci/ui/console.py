"""Console output formatting utilities for releaseci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

MASK = "***"


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, secrets: Iterable[str] = ()):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            secrets: Values replaced by *** in everything printed
        """
        self.debug = debug
        self._secrets: list[str] = []
        self._lock = threading.Lock()
        self.add_secrets(secrets)

    def add_secrets(self, secrets: Iterable[str]) -> None:
        for s in secrets:
            if s and s not in self._secrets:
                self._secrets.append(s)
        # longest first so a secret containing another is masked whole
        self._secrets.sort(key=len, reverse=True)

    def mask(self, text: str) -> str:
        for s in self._secrets:
            text = text.replace(s, MASK)
        return text

    def _out(self, text: str = "", *, err: bool = False) -> None:
        with self._lock:
            print(self.mask(text), file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        run_number: int,
        branch: str,
        image: str,
        stage_count: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Run: #{run_number}")
        self._out(f"Branch: {branch}")
        self._out(f"Image: {image}")
        self._out(f"Stages: {stage_count}")
        self._out()

    def print_stage_start(self, name: str) -> None:
        self._out(f"\nSTAGE STARTED: {name}")

    def print_step(self, stage: str, name: str) -> None:
        self._out(f"[{stage}] STEP: {name}")

    def print_stage_success(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" ({duration:.1f}s)" if duration is not None else ""
        self._out(f"[{name}] STATUS: succeeded{suffix}")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nSTAGE SKIPPED: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print stage failure message.

        Args:
            name: Stage name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            output: Captured command output (shown in debug mode)
        """
        self._out(f"STAGE FAILED: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
            if output:
                self._out(output.rstrip())
        else:
            # first line only outside debug mode
            self._out(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")

    def print_warning(self, name: str, message: str) -> None:
        self._out(f"[{name}] WARNING: {message}")

    def print_compensation(self, name: str, outcome: str) -> None:
        self._out(f"[{name}] COMPENSATION: {outcome}")

    def print_results(self, statuses: dict[str, str], run_status: str) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for stage, status in statuses.items():
            self._out(f"  {stage}: {status.upper()}")
        self._out(f"\nRUN: {run_status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        self._out(f"\nERROR: {title}", err=True)
        self._out(message, err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
