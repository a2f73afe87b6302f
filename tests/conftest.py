from __future__ import annotations

import re
import shlex
import threading
from datetime import timedelta
from pathlib import Path

import pytest
import sqlalchemy as sa

from releaseci.config import Settings
from releaseci.context import RunContext, Trigger
from releaseci.executor import CommandResult
from releaseci.runs import RunRecord, now_utc
from releaseci.ui.console import Console

DEPLOYMENT_YAML = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: irys-ui
spec:
  template:
    spec:
      containers:
        - name: irys-ui
          image: gcr.io/demo-project/frontend/irys-ui-img:41
          imagePullPolicy: Always
"""


class FakeExecutor:
    """
    Stands in for git/pnpm/docker/gcloud/kubectl.

    rules: list of (substring, outcome). The first rule whose substring is in
    the command decides; outcome is an exit code or a callable
    (cmd, cwd) -> CommandResult | int. Everything else exits 0.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.commands: list[str] = []
        self.envs: list[dict] = []
        self._lock = threading.Lock()

    def on(self, substring, outcome):
        # later rules win over earlier ones
        self.rules.insert(0, (substring, outcome))
        return self

    def run(self, cmd, *, cwd, env, timeout=None):
        with self._lock:
            self.commands.append(cmd)
            self.envs.append(dict(env))
        for substring, outcome in self.rules:
            if substring in cmd:
                if callable(outcome):
                    outcome = outcome(cmd, Path(cwd))
                if isinstance(outcome, CommandResult):
                    return outcome
                return CommandResult(cmd=cmd, exit_code=int(outcome))
        return CommandResult(cmd=cmd, exit_code=0)

    def count(self, substring: str) -> int:
        return sum(1 for c in self.commands if substring in c)

    def env_for(self, substring: str) -> dict:
        return next(e for c, e in zip(self.commands, self.envs) if substring in c)


def fake_clone(cmd, cwd):
    Path(shlex.split(cmd)[-1]).mkdir(parents=True, exist_ok=True)
    return 0


def write_docker_tar(cmd, cwd):
    dest = re.search(r"dest=(\S+)", cmd).group(1).strip("'")
    Path(dest).write_bytes(b"fake image archive")
    return 0


def seed_manifest_repo(workspace_root: Path, run_number: int, text: str = DEPLOYMENT_YAML) -> Path:
    """Pretend a clone of the manifest repository already sits in the workspace."""
    manifest_dir = workspace_root / f"run-{run_number}" / "manifests"
    manifest_dir.mkdir(parents=True, exist_ok=True)
    (manifest_dir / "deployment.yaml").write_text(text, encoding="utf-8")
    return manifest_dir



def expire_lease(store, run_id: str) -> None:
    """Backdate a run's lease as if its process died."""
    with store.engine.begin() as conn:
        conn.execute(
            sa.update(RunRecord)
            .where(RunRecord.id == run_id)
            .values(expires_at=now_utc() - timedelta(seconds=1))
        )

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        project_id="demo-project",
        repo_name="frontend",
        sa_key='{"type": "service_account", "private_key": "sekrit-key"}',
        github_token="ghp_token123",
        source_repo="https://github.com/example/irys-ui.git",
        cluster_name="dev-cluster",
        cluster_zone="europe-west1-b",
        deployment_name="irys-ui",
        git_user_name="Release Bot",
        git_user_email="release@example.com",
        database_url=f"sqlite:///{tmp_path / 'runs.db'}",
        workspace_root=str(tmp_path / "ws"),
        max_workers=2,
    )


@pytest.fixture
def console() -> Console:
    return Console(debug=False)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor().on("git clone", fake_clone).on("docker buildx build", write_docker_tar)


@pytest.fixture
def make_ctx(settings, tmp_path):
    def _make(run_number: int = 42, branch: str = "main", sha: str | None = "abc123") -> RunContext:
        return RunContext.create(
            run_id=f"run-{run_number}",
            run_number=run_number,
            trigger=Trigger(branch=branch, sha=sha),
            settings=settings,
        )
    return _make
