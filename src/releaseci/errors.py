# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class PipelineError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - the stage's recorded error kind
      - debugging without full tracebacks
    """
    kind: str
    message: str
    stage: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(PipelineError):
    def __init__(self, message: str, **details):
        super().__init__(kind="config", message=message, details=details)


class GraphError(PipelineError):
    def __init__(self, message: str, **details):
        super().__init__(kind="graph", message=message, details=details)


class ArtifactError(PipelineError):
    def __init__(self, message: str, **details):
        super().__init__(kind="artifact", message=message, details=details)


class ManifestError(PipelineError):
    def __init__(self, message: str, **details):
        super().__init__(kind="manifest", message=message, details=details)


class ManifestConflict(PipelineError):
    """The manifest repository rejected our push (someone else pushed first)."""

    def __init__(self, message: str, **details):
        super().__init__(kind="manifest_conflict", message=message, details=details)


class RunAlreadyActive(PipelineError):
    def __init__(self, trigger_key: str, run_id: str):
        super().__init__(
            kind="run_active",
            message=f"a run is already active for trigger {trigger_key}",
            details={"run_id": run_id},
        )
        self.trigger_key = trigger_key
        self.run_id = run_id


@dataclass
class StepFailure(Exception):
    stage: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.stage}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.stage}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
