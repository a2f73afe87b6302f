# stages/checkout.py
from __future__ import annotations

import shlex
from pathlib import Path
from typing import List, Optional

from ..dsl import call, stage
from ..errors import ConfigError
from ..model import Stage


def checkout_repo(
    sctx,
    url: str,
    dest: Path,
    *,
    branch: str,
    sha: Optional[str] = None,
    remote_url: Optional[str] = None,
) -> None:
    """
    Clone `url` into `dest` (or fetch when `dest` already holds a clone) and
    force the working tree to `sha`, or to the tip of origin/`branch`.

    With `remote_url`, the clone records that as origin instead of `url`, and
    fetches go to `url` explicitly. Credentials in `url` never reach .git/config.
    """
    if not url:
        raise ConfigError(
            "No repository to check out",
            hint="Set SOURCE_REPO or pass the repository with the trigger.",
        )

    d = shlex.quote(str(dest))
    scrub = remote_url is not None and remote_url != url
    if (dest / ".git").is_dir():
        if scrub:
            sctx.sh(
                f"git -C {d} fetch --prune {shlex.quote(url)} '+refs/heads/*:refs/remotes/origin/*'",
                step="fetch",
            )
        else:
            sctx.sh(f"git -C {d} fetch --prune origin", step="fetch")
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        sctx.sh(f"git clone {shlex.quote(url)} {d}", step="clone")
        if scrub:
            sctx.sh(f"git -C {d} remote set-url origin {shlex.quote(remote_url)}", step="reset origin")

    if sha:
        sctx.sh(f"git -C {d} checkout --force --detach {shlex.quote(sha)}", step="checkout")
    else:
        b = shlex.quote(branch)
        sctx.sh(f"git -C {d} checkout --force -B {b} origin/{b}", step="checkout")


def checkout_source(sctx) -> None:
    run = sctx.run
    checkout_repo(
        sctx,
        run.source_url,
        run.source_dir,
        branch=run.trigger.branch,
        sha=run.trigger.sha,
    )


def checkout_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    return stage(
        "checkout",
        call("Checkout code", checkout_source),
        needs=needs,
    )
