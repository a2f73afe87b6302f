# cli.py
from __future__ import annotations

import subprocess
import sys

import click

from .config import Settings
from .context import RunContext, Trigger
from .dag import build_graph, topo_levels
from .errors import ConfigError, PipelineError, RunAlreadyActive
from .git_facts.git import current_branch, get_remote_url, head_sha
from .pipeline import release_pipeline
from .release import rerun_release, start_release
from .runs import RunStore
from .ui.console import Console, get_console, set_console


def _load_settings(**overrides) -> Settings:
    console = get_console()
    try:
        settings = Settings.from_env(**overrides)
    except ConfigError as e:
        console.print_error("Invalid configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)
    console.add_secrets(settings.secrets())
    return settings


def _local_trigger(branch: str | None, sha: str | None, repo: str | None) -> Trigger:
    """Fill trigger fields from the local git checkout where not given."""
    console = get_console()
    try:
        if branch is None:
            branch = current_branch()
            console.print_debug(f"Using git branch: {branch}")
        if sha is None:
            sha = head_sha()
            console.print_debug(f"Using git sha: {sha}")
        if repo is None:
            try:
                repo = get_remote_url("origin")
            except subprocess.CalledProcessError:
                repo = None
    except (subprocess.CalledProcessError, ValueError) as e:
        console.print_error(
            "Could not determine trigger",
            "Not inside a git checkout, or HEAD is detached.",
            details=[str(e)],
            suggestion="Pass the trigger explicitly:\n  releaseci run --branch main --sha <commit> --repo <url>",
        )
        sys.exit(1)
    except FileNotFoundError:
        console.print_error(
            "Git command not found",
            "Could not find git command.",
            suggestion="Install Git or pass --branch/--sha/--repo explicitly.",
        )
        sys.exit(1)
    return Trigger(branch=branch, sha=sha, repository=repo)


def _handle_run(fn) -> None:
    console = get_console()
    try:
        result = fn()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except RunAlreadyActive as e:
        console.print_error(
            "Run already active",
            e.message,
            details=[f"run_id={e.run_id}"],
            suggestion="Wait for it to finish, then rerun.",
        )
        sys.exit(1)
    except ConfigError as e:
        console.print_error(
            "Missing configuration",
            e.message,
            details=[f"{k}={v}" for k, v in e.details.items()],
            suggestion="Export the variables listed above and retry.",
        )
        sys.exit(1)
    except PipelineError as e:
        console.print_error("Release failed", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if not result.ok:
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, commands and their output)",
)
@click.pass_context
def cli(ctx, debug):
    """releaseci: source commit to cluster deployment, with rollback."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--branch", default=None, help="Trigger branch (defaults to the current git branch)")
@click.option("--sha", default=None, help="Commit to release (defaults to HEAD)")
@click.option("--repo", default=None, help="Source repository URL (defaults to git remote origin)")
@click.option("--database-url", default=None, help="Run history database (DATABASE_URL)")
@click.option("--workspace", default=None, help="Workspace root (RELEASECI_WORKSPACE)")
@click.option("--workers", default=None, type=int, help="Number of parallel stage workers")
@click.pass_context
def run(ctx, branch, sha, repo, database_url, workspace, workers):
    """Release a commit: allocate the next run number and run every stage."""
    settings = _load_settings(database_url=database_url, workspace_root=workspace, max_workers=workers)
    trigger = _local_trigger(branch, sha, repo)
    store = RunStore(settings.database_url, settings.lease_seconds)
    _handle_run(lambda: start_release(trigger, settings, store))


@cli.command()
@click.argument("run_number", type=int)
@click.option("--database-url", default=None, help="Run history database (DATABASE_URL)")
@click.option("--workspace", default=None, help="Workspace root (RELEASECI_WORKSPACE)")
@click.pass_context
def rerun(ctx, run_number, database_url, workspace):
    """Run RUN_NUMBER again with its original trigger (same image tag)."""
    settings = _load_settings(database_url=database_url, workspace_root=workspace)
    store = RunStore(settings.database_url, settings.lease_seconds)
    _handle_run(lambda: rerun_release(run_number, settings, store))


@cli.command()
@click.option("--run-number", default=0, type=int, show_default=True, help="Run number used to render names")
@click.pass_context
def plan(ctx, run_number):
    """Print the stage graph, level by level."""
    console = get_console()
    settings = _load_settings()
    run_ctx = RunContext.create(
        run_id="plan",
        run_number=run_number,
        trigger=Trigger(branch=settings.trigger_branch),
        settings=settings,
    )
    stages = release_pipeline(run_ctx)
    by_name, adj, indeg = build_graph(stages)

    console.print_header(f"Release plan (image {run_ctx.image_ref})")
    for idx, level in enumerate(topo_levels(adj, indeg), start=1):
        for name in level:
            stage = by_name[name]
            flags = []
            if stage.always:
                flags.append("always")
            if stage.on_failure is not None:
                flags.append(f"on failure: {stage.on_failure.probe.name} / {stage.on_failure.fallback.name}")
            suffix = f" [{'; '.join(flags)}]" if flags else ""
            console.print_info(f"  {idx}. {name}{suffix}")
            for step in stage.steps:
                console.print_info(f"       - {step.name}")

    missing = settings.missing()
    if missing:
        console.print_info(f"\nMissing configuration: {', '.join(missing)}")


@cli.command()
@click.option("--limit", default=20, type=int, show_default=True)
@click.option("--database-url", default=None, help="Run history database (DATABASE_URL)")
@click.pass_context
def runs(ctx, limit, database_url):
    """List recent runs."""
    console = get_console()
    settings = _load_settings(database_url=database_url)
    store = RunStore(settings.database_url, settings.lease_seconds)
    records = store.list_runs(limit)
    if not records:
        console.print_info("No runs yet.")
        return
    for r in records:
        sha = (r.sha or "")[:8]
        console.print_info(f"#{r.run_number}.{r.attempt}  {r.status:<8} {r.branch} {sha}  {r.id}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Serve the push webhook (POST /hooks/push)."""
    import uvicorn
    from .webhook import create_app

    settings = _load_settings()
    console = get_console()
    missing = settings.missing()
    if missing:
        console.print_info(f"Warning: missing configuration, pushes will be refused: {', '.join(missing)}")
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    cli()
