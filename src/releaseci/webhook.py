# webhook.py
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .context import Trigger
from .errors import RunAlreadyActive
from .executor import CommandExecutor
from .release import execute_run
from .runs import RunRecord, RunStore
from .ui.console import get_console

BRANCH_PREFIX = "refs/heads/"
ZERO_SHA = "0" * 40

# -------------------- Schemas --------------------

class PushRepository(BaseModel):
    clone_url: Optional[str] = None
    full_name: Optional[str] = None


class PushEvent(BaseModel):
    ref: str
    after: Optional[str] = None
    deleted: bool = False
    repository: Optional[PushRepository] = None


class TriggerResponse(BaseModel):
    status: str  # queued|ignored
    reason: Optional[str] = None
    run_id: Optional[str] = None
    run_number: Optional[int] = None


class StageResponse(BaseModel):
    name: str
    status: str
    exit_code: Optional[int] = None
    compensation: Optional[str] = None
    error: Optional[str] = None


class RunResponse(BaseModel):
    id: str
    run_number: int
    attempt: int
    branch: str
    sha: Optional[str]
    status: str
    created_at: datetime
    finished_at: Optional[datetime] = None
    stages: list[StageResponse] = Field(default_factory=list)


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


def _run_response(store: RunStore, record: RunRecord, with_stages: bool = False) -> RunResponse:
    stages = []
    if with_stages:
        stages = [
            StageResponse(
                name=s.stage_name,
                status=s.status,
                exit_code=s.exit_code,
                compensation=s.compensation,
                error=s.error,
            )
            for s in store.stages(record.id)
        ]
    return RunResponse(
        id=record.id,
        run_number=record.run_number,
        attempt=record.attempt,
        branch=record.branch,
        sha=record.sha,
        status=record.status,
        created_at=record.created_at,
        finished_at=record.finished_at,
        stages=stages,
    )


def create_app(
    settings: Settings,
    store: Optional[RunStore] = None,
    executor: Optional[CommandExecutor] = None,
) -> FastAPI:
    app = FastAPI(title="releaseci trigger endpoint")
    store = store or RunStore(settings.database_url, settings.lease_seconds)
    app.state.store = store

    def _execute(record: RunRecord) -> None:
        try:
            execute_run(record, settings, store, executor=executor)
        except Exception as e:
            get_console().print_exception(e)

    # -------------------- Endpoints --------------------

    @app.post("/hooks/push", response_model=TriggerResponse, status_code=202)
    async def push(
        request: Request,
        background: BackgroundTasks,
        x_github_event: Optional[str] = Header(default=None),
        x_github_delivery: Optional[str] = Header(default=None),
        x_hub_signature_256: Optional[str] = Header(default=None),
    ):
        body = await request.body()

        if settings.webhook_secret and not verify_signature(settings.webhook_secret, body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

        if x_github_event == "ping":
            return TriggerResponse(status="ignored", reason="ping")
        if x_github_event not in (None, "push"):
            return TriggerResponse(status="ignored", reason=f"event {x_github_event}")

        try:
            event = PushEvent.model_validate_json(body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_input=False))

        if not event.ref.startswith(BRANCH_PREFIX):
            return TriggerResponse(status="ignored", reason=f"not a branch: {event.ref}")
        branch = event.ref[len(BRANCH_PREFIX):]
        if branch != settings.trigger_branch:
            return TriggerResponse(status="ignored", reason=f"branch {branch} is not {settings.trigger_branch}")
        if event.deleted or event.after == ZERO_SHA:
            return TriggerResponse(status="ignored", reason="branch deleted")

        missing = settings.missing()
        if missing:
            raise HTTPException(status_code=503, detail=f"Missing configuration: {', '.join(missing)}")

        trigger = Trigger(
            branch=branch,
            sha=event.after,
            event_id=x_github_delivery,
            repository=event.repository.clone_url if event.repository else None,
        )
        try:
            record = await run_in_threadpool(store.begin_run, trigger)
        except RunAlreadyActive as e:
            raise HTTPException(status_code=409, detail=f"Run {e.run_id} already active for this trigger")

        background.add_task(_execute, record)
        return TriggerResponse(status="queued", run_id=record.id, run_number=record.run_number)

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs(limit: int = 20):
        return [_run_response(store, r) for r in store.list_runs(limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        record = store.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(store, record, with_stages=True)

    return app
