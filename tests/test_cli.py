from pathlib import Path

from click.testing import CliRunner

from releaseci import cli as cli_module
from releaseci.cli import cli
from releaseci.context import Trigger
from releaseci.runs import RunStore


def _env(settings):
    return {
        "GCP_PROJECT_ID": settings.project_id,
        "GCR_REPO_NAME": settings.repo_name,
        "DATABASE_URL": settings.database_url,
        "RELEASECI_WORKSPACE": settings.workspace_root,
    }


def test_plan_lists_stages_in_order(settings):
    result = CliRunner().invoke(cli, ["plan", "--run-number", "42"], env=_env(settings))

    assert result.exit_code == 0, result.output
    assert "gcr.io/demo-project/frontend/irys-ui-img:42" in result.output
    lines = [l.strip() for l in result.output.splitlines()]
    order = [l.split(". ", 1)[1].split(" ")[0] for l in lines if l[:1].isdigit() and ". " in l]
    assert order == [
        "checkout", "dependency-audit", "build-image", "push-image",
        "update-manifest", "deploy", "cleanup",
    ]
    assert "Missing configuration" in result.output


def test_run_refuses_without_configuration(settings):
    result = CliRunner().invoke(
        cli, ["run", "--branch", "main", "--sha", "abc", "--repo", "x"], env=_env(settings),
    )
    assert result.exit_code == 1
    assert RunStore(settings.database_url).list_runs() == []


def test_run_uses_release_service(settings, monkeypatch):
    seen = {}

    class _Result:
        ok = False

    def fake_start(trigger, s, store):
        seen["trigger"] = trigger
        return _Result()

    monkeypatch.setattr(cli_module, "start_release", fake_start)
    result = CliRunner().invoke(
        cli, ["run", "--branch", "main", "--sha", "abc", "--repo", "https://e/r.git"], env=_env(settings),
    )

    assert result.exit_code == 1
    assert seen["trigger"] == Trigger(branch="main", sha="abc", repository="https://e/r.git")


def test_runs_lists_history(settings):
    store = RunStore(settings.database_url)
    store.finish_run(store.begin_run(Trigger(branch="main", sha="deadbeefcafe")).id, status="success")

    result = CliRunner().invoke(cli, ["runs"], env=_env(settings))
    assert result.exit_code == 0
    assert "#1.1" in result.output
    assert "deadbeef" in result.output
