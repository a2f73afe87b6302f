# src/releaseci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .model import Compensation, Stage, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    allow_failure: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, timeout=timeout, allow_failure=allow_failure)


def call(name: str, fn: Callable) -> Step:
    """Create an in-process step; `fn` receives the StageContext."""
    return Step(name=name, call=fn)


def compensate(probe: Step, fallback: Step) -> Compensation:
    return Compensation(probe=probe, fallback=fallback)


# ---------------------------------------------------------------------
# Stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,  # allow: stage("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    always: bool = False,
    on_failure: Optional[Compensation] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> Stage:
    steps_final = list(steps)
    if not steps_final:
        raise ValueError(f"stage({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if s.run is not None and s.cwd is None else s
            for s in steps_final
        ]

    return Stage(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        always=always,
        on_failure=on_failure,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def wf(*stages: Stage) -> List[Stage]:
    """
    Pipeline definition helper.

        def pipeline(ctx):
            return wf(
                stage("checkout", ...),
                stage("build", ..., needs=["checkout"]),
            )
    """
    return list(stages)
