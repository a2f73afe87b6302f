from .dsl import call, compensate, sh, stage, wf
from .model import RunResult, RunStatus, Stage, StageStatus, Step
from .runner import run_pipeline

__all__ = [
    "call", "compensate", "sh", "stage", "wf",
    "RunResult", "RunStatus", "Stage", "StageStatus", "Step",
    "run_pipeline",
]
