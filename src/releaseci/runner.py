# runner.py
from __future__ import annotations

import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import ArtifactStore
from .context import RunContext
from .dag import build_graph, topo_levels
from .errors import PipelineError, StepFailure
from .executor import CommandExecutor, CommandResult, ShellExecutor
from .model import (
    RECOVERED,
    ROLLBACK_FAILED,
    ROLLED_BACK,
    RunResult,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
    Step,
)
from .ui.console import Console, get_console

COMMAND_NOT_FOUND = 127

TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "pnpm": "Install pnpm (npm install -g pnpm) or fix PATH.",
    "docker": "Install Docker (with buildx) and ensure the daemon is running.",
    "gcloud": "Install the Google Cloud CLI or fix PATH.",
    "kubectl": "Install kubectl (gcloud components install kubectl) or fix PATH.",
}


def _hint_for(cmd: str, exit_code: int) -> Optional[str]:
    if exit_code != COMMAND_NOT_FOUND:
        return None
    tool = cmd.split()[0] if cmd.split() else ""
    return TOOL_HINTS.get(tool, f"'{tool}' not found. Install it or fix PATH.")


# ----------------------------------------------------------------------
# Stage context (what steps see)
# ----------------------------------------------------------------------

@dataclass
class StageContext:
    run: RunContext
    stage: Stage
    result: StageResult
    artifacts: ArtifactStore
    executor: CommandExecutor
    console: Console

    def path(self, rel: str | None) -> Path:
        return (self.run.workspace / (rel or ".")).resolve()

    def env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.run.env())
        env.update(self.stage.env or {})
        return env

    def sh(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        check: bool = True,
        step: str | None = None,
    ) -> CommandResult:
        """Run a command for this stage. Raises StepFailure on non-zero exit when check=True."""
        workdir = self.path(cwd)
        if not workdir.exists():
            raise FileNotFoundError(f"[{self.stage.name}] cwd not found: {workdir}")

        self.console.print_debug(f"[{self.stage.name}] $ {cmd}")
        res = self.executor.run(cmd, cwd=workdir, env=self.env(), timeout=timeout)

        if check and not res.ok:
            raise StepFailure(
                stage=self.stage.name,
                step=step or cmd,
                cmd=cmd,
                exit_code=res.exit_code,
                stdout=res.stdout,
                stderr=res.stderr,
                timed_out=res.timed_out,
            )
        return res

    def warn(self, message: str) -> None:
        self.result.warnings.append(self.console.mask(message))
        self.console.print_warning(self.stage.name, message)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_step(sctx: StageContext, step: Step) -> None:
    sctx.console.print_step(sctx.stage.name, step.name)

    if step.call is not None:
        step.call(sctx)
        return

    res = sctx.sh(step.run, cwd=step.cwd, timeout=step.timeout, check=False, step=step.name)
    if res.ok:
        return

    if step.allow_failure:
        sctx.warn(f"step '{step.name}' exited {res.exit_code} (ignored)")
        return

    raise StepFailure(
        stage=sctx.stage.name,
        step=step.name,
        cmd=step.run,
        exit_code=res.exit_code,
        stdout=res.stdout,
        stderr=res.stderr,
        timed_out=res.timed_out,
    )


def _try_step(sctx: StageContext, step: Step) -> bool:
    try:
        _run_step(sctx, step)
    except Exception as e:
        sctx.console.print_warning(sctx.stage.name, f"step '{step.name}' failed: {e}")
        return False
    return True


def _compensate(sctx: StageContext) -> None:
    """
    Failure transition of a stage with a Compensation:
      probe ok       -> recovered (stage counts as succeeded)
      probe failed   -> fallback runs exactly once
    """
    comp = sctx.stage.on_failure
    result = sctx.result

    if _try_step(sctx, comp.probe):
        result.compensation = RECOVERED
        result.status = StageStatus.SUCCEEDED
        sctx.warn(f"recovered after failure: {result.error}")
    elif _try_step(sctx, comp.fallback):
        result.compensation = ROLLED_BACK
    else:
        result.compensation = ROLLBACK_FAILED

    sctx.console.print_compensation(sctx.stage.name, result.compensation)


def _record_failure(sctx: StageContext, exc: BaseException) -> None:
    result = sctx.result
    console = sctx.console
    result.status = StageStatus.FAILED
    result.error = console.mask(str(exc))

    if isinstance(exc, StepFailure):
        result.exit_code = exc.exit_code
        result.error_kind = "timeout" if exc.timed_out else "step"
        console.print_failure(
            sctx.stage.name,
            str(exc),
            exit_code=exc.exit_code,
            hint=_hint_for(exc.cmd, exc.exit_code),
            output=(exc.stdout + exc.stderr),
        )
    elif isinstance(exc, PipelineError):
        result.error_kind = exc.kind
        console.print_failure(sctx.stage.name, str(exc), hint=exc.details.get("hint"))
    else:
        result.error_kind = type(exc).__name__
        console.print_failure(sctx.stage.name, str(exc))
        console.print_exception(exc)


def _execute_stage(sctx: StageContext) -> StageResult:
    """Runs every step of a stage. Never raises: the outcome lands in sctx.result."""
    stage = sctx.stage
    result = sctx.result
    start = time.monotonic()
    sctx.console.print_stage_start(stage.name)

    try:
        for step in stage.steps:
            _run_step(sctx, step)
        result.status = StageStatus.SUCCEEDED
    except Exception as e:
        _record_failure(sctx, e)
        if stage.on_failure is not None:
            _compensate(sctx)
    finally:
        result.duration = time.monotonic() - start

    if result.status is StageStatus.SUCCEEDED:
        sctx.console.print_stage_success(stage.name, result.duration)
    return result


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    stages: List[Stage],
    ctx: RunContext,
    *,
    executor: Optional[CommandExecutor] = None,
    console: Optional[Console] = None,
    artifacts: Optional[ArtifactStore] = None,
    max_workers: int | None = None,
) -> RunResult:
    """
    Execute `stages` for one run.

    A stage is scheduled once every dependency succeeded (or, for `always`
    stages, once every dependency is terminal). When a dependency fails or
    is skipped, pending dependents are marked skipped without running.
    Graph errors raise before anything runs.
    """
    console = console or get_console()
    console.add_secrets(ctx.secrets())
    executor = executor or ShellExecutor()
    store = artifacts or ArtifactStore()

    by_name, adj, indeg = build_graph(stages)
    order = [name for level in topo_levels(adj, indeg) for name in level]
    rank = {name: i for i, name in enumerate(order)}

    results: Dict[str, StageResult] = {name: StageResult(name) for name in order}
    ctx.workspace.mkdir(parents=True, exist_ok=True)

    if max_workers is None:
        max_workers = ctx.settings.max_workers
    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    ready: List[str] = [name for name in order if indeg[name] == 0]

    def settle(name: str) -> None:
        # `name` just became terminal: decide what happens to its dependents
        for child in sorted(adj[name], key=rank.__getitem__):
            res = results[child]
            if res.status is not StageStatus.PENDING or child in ready:
                continue
            stage = by_name[child]
            deps = [results[d].status for d in stage.needs]

            if stage.always:
                if all(s.terminal for s in deps):
                    ready.append(child)
            elif any(s in (StageStatus.FAILED, StageStatus.SKIPPED) for s in deps):
                res.status = StageStatus.SKIPPED
                res.error = f"upstream '{name}' {results[name].status.value}"
                console.print_stage_skipped(child, res.error)
                settle(child)
            elif all(s is StageStatus.SUCCEEDED for s in deps):
                ready.append(child)

    in_flight: Dict[Future, str] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            ready.sort(key=rank.__getitem__)
            while ready:
                name = ready.pop(0)
                results[name].status = StageStatus.RUNNING
                sctx = StageContext(
                    run=ctx,
                    stage=by_name[name],
                    result=results[name],
                    artifacts=store,
                    executor=executor,
                    console=console,
                )
                in_flight[pool.submit(_execute_stage, sctx)] = name

            if not in_flight:
                break

            # wait for a completion, then loop to schedule newly-ready stages
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in sorted(done, key=lambda f: rank[in_flight[f]]):
                name = in_flight.pop(fut)
                fut.result()
                settle(name)

    failed = any(r.status is StageStatus.FAILED for r in results.values())
    return RunResult(
        run_id=ctx.run_id,
        run_number=ctx.run_number,
        status=RunStatus.FAILURE if failed else RunStatus.SUCCESS,
        stages=results,
        artifacts=store.all(),
    )
