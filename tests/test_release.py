import time
from pathlib import Path

import pytest

from releaseci import release
from releaseci.context import Trigger
from releaseci.errors import ConfigError, RunAlreadyActive
from releaseci.model import ROLLED_BACK, RunStatus, StageStatus
from releaseci.pipeline import STAGE_ORDER, release_pipeline
from releaseci.release import LeaseKeeper, execute_run, rerun_release, start_release
from releaseci.runner import run_pipeline
from releaseci.runs import RunStore

from conftest import expire_lease, seed_manifest_repo

IMAGE_42 = "gcr.io/demo-project/frontend/irys-ui-img:42"


def _run(ctx, executor, console):
    seed_manifest_repo(ctx.workspace.parent, ctx.run_number)
    return run_pipeline(release_pipeline(ctx), ctx, executor=executor, console=console)


def test_topology_is_fixed(make_ctx):
    stages = release_pipeline(make_ctx())
    assert tuple(s.name for s in stages) == STAGE_ORDER
    assert [s.needs for s in stages] == [[]] + [[n] for n in STAGE_ORDER[:-1]]
    assert [s.name for s in stages if s.always] == ["cleanup"]
    assert [s.name for s in stages if s.on_failure] == ["deploy"]


def test_run_42_on_main(make_ctx, executor, console):
    ctx = make_ctx(42)
    result = _run(ctx, executor, console)

    assert result.status is RunStatus.SUCCESS
    assert all(s == "succeeded" for s in result.statuses().values())

    assert ctx.image_ref == IMAGE_42
    build = next(c for c in executor.commands if "docker buildx build" in c)
    assert f"--tag {IMAGE_42}" in build
    assert "docker_image_42.tar" in build
    assert executor.count(f"docker push {IMAGE_42}") == 1

    deployment = (ctx.manifest_dir / "deployment.yaml").read_text(encoding="utf-8")
    assert f"          image: {IMAGE_42}\n" in deployment
    assert "imagePullPolicy: Always" in deployment

    commit = next(c for c in executor.commands if "commit -m" in c)
    assert "'Updated image tag to 42'" in commit
    push = next(c for c in executor.commands if " push " in c and "manifests" in c)
    assert push.endswith("HEAD:main")

    apply = next(c for c in executor.commands if c.startswith("kubectl apply"))
    assert apply == "kubectl apply -f name_space.yaml -f deployment.yaml -f service.yaml -f hpa.yaml"

    assert result.artifacts["docker-image"].reference == IMAGE_42
    assert result.artifacts["docker-image"].producer == "build-image"


def test_checkout_failure_skips_everything_but_cleanup(make_ctx, executor, console):
    executor.on("example/irys-ui.git", 128)
    result = _run(make_ctx(), executor, console)

    assert result.status is RunStatus.FAILURE
    assert result.stages["checkout"].status is StageStatus.FAILED
    for name in ("dependency-audit", "build-image", "push-image", "update-manifest", "deploy"):
        assert result.stages[name].status is StageStatus.SKIPPED
    assert result.stages["cleanup"].status is StageStatus.SUCCEEDED
    assert executor.count("docker rmi gcr.io/demo-project/frontend/irys-ui-img:42") == 1


def test_build_failure_skips_downstream(make_ctx, executor, console):
    executor.on("docker buildx build", 1)
    result = _run(make_ctx(), executor, console)

    assert result.status is RunStatus.FAILURE
    assert result.stages["build-image"].status is StageStatus.FAILED
    for name in ("push-image", "update-manifest", "deploy"):
        assert result.stages[name].status is StageStatus.SKIPPED
    assert result.stages["cleanup"].status.terminal
    assert executor.count("docker rmi gcr.io/demo-project/frontend/irys-ui-img:42") == 1
    assert executor.count("docker push") == 0


def test_audit_findings_do_not_stop_the_release(make_ctx, executor, console):
    executor.on("pnpm audit", 1)
    result = _run(make_ctx(), executor, console)

    assert result.status is RunStatus.SUCCESS
    assert result.stages["dependency-audit"].warnings


def test_deploy_failure_rolls_back_once(make_ctx, executor, console):
    executor.on("kubectl apply", 1).on("kubectl rollout status", 1)
    result = _run(make_ctx(), executor, console)

    deploy = result.stages["deploy"]
    assert deploy.status is StageStatus.FAILED
    assert deploy.compensation == ROLLED_BACK
    assert executor.count("kubectl rollout undo deployment/irys-ui") == 1
    wait = next(c for c in executor.commands if "rollout status" in c)
    assert wait.endswith("--timeout=120s")
    assert result.stages["cleanup"].status is StageStatus.SUCCEEDED


def test_manifest_push_conflict_is_fatal(make_ctx, executor, console):
    from releaseci.executor import CommandResult

    def rejected(cmd, cwd):
        return CommandResult(cmd=cmd, exit_code=1, stderr=" ! [rejected]  HEAD -> main (fetch first)")

    executor.on("HEAD:main", rejected)
    result = _run(make_ctx(), executor, console)

    assert result.stages["update-manifest"].status is StageStatus.FAILED
    assert result.stages["update-manifest"].error_kind == "manifest_conflict"
    assert result.stages["deploy"].status is StageStatus.SKIPPED
    assert executor.count("kubectl apply") == 0


def test_cleanup_removes_service_account_key(make_ctx, executor, console):
    ctx = make_ctx()
    _run(ctx, executor, console)
    assert not ctx.credentials_file.exists()


def test_rerun_is_idempotent(settings, executor, console, tmp_path):
    store = RunStore(settings.database_url)
    trigger = Trigger(branch="main", sha="abc123")
    workspace = Path(settings.workspace_root)

    for _ in range(41):
        store.finish_run(store.begin_run(Trigger(branch="main", sha="old")).id, status="success")
    seed_manifest_repo(workspace, 42)

    first = start_release(trigger, settings, store, executor=executor, console=console)
    assert first.run_number == 42
    manifest = workspace.resolve() / "run-42" / "manifests" / "deployment.yaml"
    content = manifest.read_bytes()

    second = rerun_release(42, settings, store, executor=executor, console=console)

    assert second.run_number == 42
    assert second.run_id != first.run_id
    assert second.status is RunStatus.SUCCESS
    assert manifest.read_bytes() == content
    assert first.artifacts["docker-image"].reference == second.artifacts["docker-image"].reference
    assert store.get(second.run_id).attempt == 2


def test_start_release_requires_configuration(settings, console):
    from dataclasses import replace

    store = RunStore(settings.database_url)
    with pytest.raises(ConfigError):
        start_release(Trigger(branch="main"), replace(settings, cluster_name=""), store, console=console)
    assert store.list_runs() == []


def test_execute_run_records_stages(settings, executor, console):
    store = RunStore(settings.database_url)
    record = store.begin_run(Trigger(branch="main", sha="abc123"))
    seed_manifest_repo(Path(settings.workspace_root), record.run_number)
    executor.on("docker buildx build", 1)

    execute_run(record, settings, store, executor=executor, console=console)

    assert store.get(record.id).status == "failure"
    stages = store.stages(record.id)
    assert [s.stage_name for s in stages] == list(STAGE_ORDER)
    assert stages[2].status == "failed"


def test_run_is_released_when_setup_fails(settings, console, monkeypatch):
    store = RunStore(settings.database_url)
    record = store.begin_run(Trigger(branch="main", sha="abc123"))

    def broken(ctx):
        raise RuntimeError("bad pipeline definition")

    monkeypatch.setattr(release, "release_pipeline", broken)
    with pytest.raises(RuntimeError):
        execute_run(record, settings, store, console=console)

    assert store.get(record.id).status == "failure"
    assert store.begin_run(Trigger(branch="main", sha="abc123")).run_number == 2


def test_lease_is_kept_alive_while_running(settings, console):
    store = RunStore(settings.database_url, lease_seconds=3)
    record = store.begin_run(Trigger(branch="main", sha="abc123"))
    expire_lease(store, record.id)

    with LeaseKeeper(store, record.id, console):
        time.sleep(1.5)

    with pytest.raises(RunAlreadyActive):
        store.begin_run(Trigger(branch="main", sha="abc123"))


def test_cloud_credentials_stay_inside_the_run(make_ctx, executor, console):
    ctx = make_ctx()
    _run(ctx, executor, console)

    for cmd in ("gcloud auth activate-service-account", "get-credentials", "kubectl apply"):
        env = executor.env_for(cmd)
        assert env["CLOUDSDK_CONFIG"] == str(ctx.gcloud_config_dir)
        assert env["KUBECONFIG"] == str(ctx.kubeconfig)
    assert not ctx.gcloud_config_dir.exists()


def test_cleanup_only_removes_this_runs_image(make_ctx, executor, console):
    _run(make_ctx(), executor, console)

    assert executor.count("prune -a") == 0
    removals = [c for c in executor.commands if c.startswith("docker rmi ") and "dangling" not in c]
    assert removals == [f"docker rmi {IMAGE_42}"]


def test_manifest_clone_does_not_keep_the_token(make_ctx, executor, console):
    ctx = make_ctx()
    _run(ctx, executor, console)

    clones = [c for c in executor.commands if c.startswith("git clone") and c.endswith("/manifests")]
    assert clones and all("x-access-token:ghp_token123@" in c for c in clones)
    public = "https://github.com/stem-fresh/React-app-manifests.git"
    assert executor.count(f"remote set-url origin {public}") == len(clones)


def test_manifest_fetch_goes_to_the_token_url(make_ctx, executor, console):
    ctx = make_ctx()
    seed_manifest_repo(ctx.workspace.parent, ctx.run_number)
    (ctx.manifest_dir / ".git").mkdir()

    result = run_pipeline(release_pipeline(ctx), ctx, executor=executor, console=console)

    assert result.status is RunStatus.SUCCESS
    fetches = [c for c in executor.commands if "fetch --prune" in c and "/manifests " in c]
    assert fetches
    for cmd in fetches:
        assert ctx.manifest_url in cmd
        assert "fetch --prune origin" not in cmd
    assert executor.count("remote set-url") == 0
