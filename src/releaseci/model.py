# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .runner import StageContext


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# compensation outcomes recorded on StageResult.compensation
RECOVERED = "recovered"
ROLLED_BACK = "rolled_back"
ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a stage.

    Exactly one of `run` (shell command) or `call` (in-process callable taking
    the StageContext) is set.
    """
    name: str
    run: str | None = None
    call: Optional[Callable[["StageContext"], None]] = None
    cwd: str | None = None          # relative to the run workspace
    timeout: float | None = None    # seconds
    allow_failure: bool = False     # non-zero exit -> warning, stage continues

    def __post_init__(self) -> None:
        if (self.run is None) == (self.call is None):
            raise ValueError(f"step {self.name!r} needs exactly one of run= or call=")
        if self.call is not None and (self.cwd is not None or self.timeout is not None):
            raise ValueError(f"step {self.name!r}: cwd= and timeout= apply to shell steps only")


@dataclass(frozen=True)
class Compensation:
    """
    Attached to a stage's failure transition.

    `probe` runs first; if it succeeds the stage is recovered. Otherwise
    `fallback` runs once.
    """
    probe: Step
    fallback: Step


@dataclass
class Stage:
    """
    A pipeline stage: steps + dependencies + failure behaviour.

    `always` relaxes the dependency rule from "every predecessor succeeded"
    to "every predecessor reached a terminal state".
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    always: bool = False
    on_failure: Optional[Compensation] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Artifact:
    """A content-addressed build output handed between stages by name."""
    name: str
    reference: str
    digest: str                 # sha256 of the file at `path`
    path: Path | None = None
    producer: str = ""


@dataclass
class StageResult:
    name: str
    status: StageStatus = StageStatus.PENDING
    exit_code: int | None = None
    error: str | None = None
    error_kind: str | None = None
    compensation: str | None = None
    warnings: List[str] = field(default_factory=list)
    duration: float | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "error_kind": self.error_kind,
            "compensation": self.compensation,
            "warnings": list(self.warnings),
            "duration": self.duration,
        }


@dataclass
class RunResult:
    run_id: str
    run_number: int
    status: RunStatus
    stages: Dict[str, StageResult]
    artifacts: Dict[str, Artifact] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def statuses(self) -> Dict[str, str]:
        return {name: r.status.value for name, r in self.stages.items()}
