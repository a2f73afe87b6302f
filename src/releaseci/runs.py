# runs.py
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .context import Trigger
from .errors import PipelineError, RunAlreadyActive
from .model import RunResult

RUNNING = "running"
ABANDONED = "abandoned"

DEFAULT_LEASE_SECONDS = 600
ALLOCATION_ATTEMPTS = 5


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    __table_args__ = (
        sa.UniqueConstraint("run_number", "attempt", name="uq_runs_number_attempt"),
    )
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_number: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    attempt: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    trigger_key: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    # trigger_key while running, NULL once finished: at most one live run per trigger
    active_key: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True, unique=True)
    branch: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    repository: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default=RUNNING)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    def trigger(self) -> Trigger:
        return Trigger(branch=self.branch, sha=self.sha, event_id=self.event_id, repository=self.repository)


class StageRecord(Base):
    __tablename__ = "stages"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    compensation: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)


def _make_engine(database_url: str) -> sa.Engine:
    url = sa.engine.make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return sa.create_engine(url)

    # stages finish on pool threads, webhook runs on the server's
    kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if url.database and url.database != ":memory:":
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["poolclass"] = StaticPool
    engine = sa.create_engine(url, **kwargs)

    # pysqlite defers BEGIN until the first write, so a SELECT max(...) would
    # run outside the transaction. Take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _no_implicit_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class RunStore:
    """
    Run history and run-number allocation.

    Run numbers grow by one per new trigger; reruns reuse the number with the
    next attempt. Only one run may be in progress per trigger key. A running
    row holds a lease; once it expires without a heartbeat the run counts as
    abandoned and no longer blocks its trigger.
    """

    def __init__(self, database_url: str, lease_seconds: int = DEFAULT_LEASE_SECONDS):
        self.engine = _make_engine(database_url)
        self.lease_seconds = lease_seconds
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

    def _lease(self) -> datetime:
        return now_utc() + timedelta(seconds=self.lease_seconds)

    def _active_for(self, s, trigger_key: str) -> Optional[RunRecord]:
        now = now_utc()
        q = sa.select(RunRecord).where(
            RunRecord.trigger_key == trigger_key,
            RunRecord.status == RUNNING,
        )
        active = None
        for record in s.execute(q).scalars():
            if record.expires_at is not None and _aware(record.expires_at) < now:
                record.status = ABANDONED
                record.finished_at = now
                record.active_key = None
            else:
                active = record
        s.flush()
        return active

    def _allocate(self, build) -> RunRecord:
        """
        Insert the record returned by `build(session)` in one write transaction.
        Unique constraints catch a writer we raced with; retry on top of its row.
        """
        attempts = ALLOCATION_ATTEMPTS
        while True:
            try:
                with self._lock, self._session() as s, s.begin():
                    record = build(s)
                    s.add(record)
                return record
            except IntegrityError:
                attempts -= 1
                if attempts == 0:
                    raise

    def begin_run(self, trigger: Trigger) -> RunRecord:
        def build(s) -> RunRecord:
            active = self._active_for(s, trigger.key)
            if active is not None:
                raise RunAlreadyActive(trigger.key, active.id)

            last = s.execute(sa.select(sa.func.max(RunRecord.run_number))).scalar_one()
            return RunRecord(
                id=str(uuid.uuid4()),
                run_number=(last or 0) + 1,
                attempt=1,
                trigger_key=trigger.key,
                active_key=trigger.key,
                branch=trigger.branch,
                sha=trigger.sha,
                event_id=trigger.event_id,
                repository=trigger.repository,
                status=RUNNING,
                created_at=now_utc(),
                expires_at=self._lease(),
            )

        return self._allocate(build)

    def begin_rerun(self, run_number: int) -> RunRecord:
        """Start another attempt of `run_number` with its original trigger."""
        def build(s) -> RunRecord:
            previous = self._latest_attempt(s, run_number)
            if previous is None:
                raise PipelineError(kind="not_found", message=f"No run #{run_number}")

            active = self._active_for(s, previous.trigger_key)
            if active is not None:
                raise RunAlreadyActive(previous.trigger_key, active.id)

            return RunRecord(
                id=str(uuid.uuid4()),
                run_number=run_number,
                attempt=previous.attempt + 1,
                trigger_key=previous.trigger_key,
                active_key=previous.trigger_key,
                branch=previous.branch,
                sha=previous.sha,
                event_id=previous.event_id,
                repository=previous.repository,
                status=RUNNING,
                created_at=now_utc(),
                expires_at=self._lease(),
            )

        return self._allocate(build)

    def heartbeat(self, run_id: str) -> None:
        """Extend the lease of a running run."""
        with self._session() as s, s.begin():
            s.execute(
                sa.update(RunRecord)
                .where(RunRecord.id == run_id, RunRecord.status == RUNNING)
                .values(expires_at=self._lease())
            )

    def finish_run(self, run_id: str, result: Optional[RunResult] = None, *, status: Optional[str] = None) -> None:
        with self._session() as s, s.begin():
            record = s.get(RunRecord, run_id)
            if record is None:
                raise PipelineError(kind="not_found", message=f"No run {run_id}")
            record.status = status or (result.status.value if result else "failure")
            record.finished_at = now_utc()
            record.active_key = None

            if result is not None:
                for position, stage in enumerate(result.stages.values()):
                    s.add(StageRecord(
                        run_id=run_id,
                        stage_name=stage.name,
                        position=position,
                        status=stage.status.value,
                        exit_code=stage.exit_code,
                        compensation=stage.compensation,
                        error=stage.error,
                    ))

    def _latest_attempt(self, s, run_number: int) -> Optional[RunRecord]:
        q = (
            sa.select(RunRecord)
            .where(RunRecord.run_number == run_number)
            .order_by(RunRecord.attempt.desc())
        )
        return s.execute(q).scalars().first()

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._session() as s:
            return s.get(RunRecord, run_id)

    def stages(self, run_id: str) -> List[StageRecord]:
        with self._session() as s:
            q = sa.select(StageRecord).where(StageRecord.run_id == run_id).order_by(StageRecord.position)
            return list(s.execute(q).scalars())

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        with self._session() as s:
            q = (
                sa.select(RunRecord)
                .order_by(RunRecord.run_number.desc(), RunRecord.attempt.desc())
                .limit(limit)
            )
            return list(s.execute(q).scalars())
