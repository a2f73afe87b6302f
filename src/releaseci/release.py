# release.py
# trigger -> run record -> RunContext -> pipeline -> recorded result
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .context import RunContext, Trigger
from .executor import CommandExecutor
from .model import RunResult
from .pipeline import release_pipeline
from .runner import run_pipeline
from .runs import RunRecord, RunStore
from .ui.console import Console, get_console


class LeaseKeeper:
    """Heartbeats a running run so other processes don't take it for abandoned."""

    def __init__(self, store: RunStore, run_id: str, console: Console):
        self.store = store
        self.run_id = run_id
        self.console = console
        self.interval = max(1.0, store.lease_seconds / 3)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._beat, name=f"lease-{run_id}", daemon=True)

    def _beat(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.store.heartbeat(self.run_id)
            except SQLAlchemyError as e:
                self.console.print_warning("lease", f"heartbeat for run {self.run_id} failed: {e}")

    def __enter__(self) -> "LeaseKeeper":
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._stop.set()
        self._thread.join()


def execute_run(
    record: RunRecord,
    settings: Settings,
    store: RunStore,
    *,
    executor: Optional[CommandExecutor] = None,
    console: Optional[Console] = None,
    workspace_root: Optional[Path] = None,
) -> RunResult:
    """Run the release pipeline for an already-registered run and record the outcome."""
    console = console or get_console()

    try:
        ctx = RunContext.create(
            run_id=record.id,
            run_number=record.run_number,
            trigger=record.trigger(),
            settings=settings,
            workspace_root=workspace_root,
        )
        stages = release_pipeline(ctx)
        console.print_run_started(
            run_number=ctx.run_number,
            branch=ctx.trigger.branch,
            image=ctx.image_ref,
            stage_count=len(stages),
        )
        with LeaseKeeper(store, record.id, console):
            result = run_pipeline(stages, ctx, executor=executor, console=console)
    except BaseException:
        # never leave the trigger locked
        store.finish_run(record.id, status="failure")
        raise

    store.finish_run(record.id, result)
    console.print_results(result.statuses(), result.status.value)
    return result


def start_release(
    trigger: Trigger,
    settings: Settings,
    store: RunStore,
    **kwargs,
) -> RunResult:
    settings.require()
    record = store.begin_run(trigger)
    return execute_run(record, settings, store, **kwargs)


def rerun_release(
    run_number: int,
    settings: Settings,
    store: RunStore,
    **kwargs,
) -> RunResult:
    """Same run number, same trigger: same image tag and manifest content."""
    settings.require()
    record = store.begin_rerun(run_number)
    return execute_run(record, settings, store, **kwargs)
