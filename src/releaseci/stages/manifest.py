# stages/manifest.py
from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import List, Optional, Tuple

from ..dsl import call, sh, stage
from ..errors import ManifestConflict, ManifestError, StepFailure
from ..model import Stage
from .checkout import checkout_repo

DEPLOYMENT_FILE = "deployment.yaml"

# sed "s|image:.*|image: <ref>|g", except a CR before the newline is kept
IMAGE_LINE = re.compile(r"image:[^\r\n]*")

# git push output when the remote branch moved under us
REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first")


def rewrite_image_line(text: str, image_ref: str) -> Tuple[str, int]:
    """Point every `image:` line at `image_ref`. Returns (text, lines matched)."""
    return IMAGE_LINE.subn(lambda _m: f"image: {image_ref}", text)


def update_deployment_manifest(path: Path, image_ref: str) -> bool:
    """Rewrite the image line in place. Returns False when already up to date."""
    if not path.is_file():
        raise ManifestError("Deployment manifest not found", path=str(path))

    with open(path, encoding="utf-8", newline="") as f:
        text = f.read()

    new_text, count = rewrite_image_line(text, image_ref)
    if count == 0:
        raise ManifestError("Deployment manifest has no image line", path=str(path))
    if new_text == text:
        return False

    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(new_text)
    return True


def checkout_manifests(sctx) -> None:
    run = sctx.run
    checkout_repo(
        sctx,
        run.manifest_url,
        run.manifest_dir,
        branch=run.trigger.branch,
        remote_url=run.manifest_remote,
    )


def _update_image_tag(sctx) -> None:
    run = sctx.run
    changed = update_deployment_manifest(run.manifest_dir / DEPLOYMENT_FILE, run.image_ref)
    if not changed:
        sctx.console.print_info(f"[{sctx.stage.name}] {DEPLOYMENT_FILE} already points at {run.image_ref}")


def _push_manifest(sctx) -> None:
    run = sctx.run
    d = shlex.quote(str(run.manifest_dir))
    branch = run.trigger.branch
    cmd = f"git -C {d} push {shlex.quote(run.manifest_url)} HEAD:{shlex.quote(branch)}"

    res = sctx.sh(cmd, check=False, step="push")
    if res.ok:
        return

    output = res.stdout + res.stderr
    if any(marker in output for marker in REJECTION_MARKERS):
        raise ManifestConflict(
            "Manifest repository rejected the push",
            branch=branch,
            hint=f"Someone else updated {branch} in the manifest repository. "
                 f"Reconcile it, then rerun release #{run.run_number}.",
        )
    raise StepFailure(
        stage=sctx.stage.name,
        step="Push updated manifest",
        cmd=cmd,
        exit_code=res.exit_code,
        stdout=res.stdout,
        stderr=res.stderr,
    )


def update_manifest_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    s = ctx.settings
    d = shlex.quote(str(ctx.manifest_dir))
    return stage(
        "update-manifest",
        call("Checkout manifest repository", checkout_manifests),
        call("Update image tag in Kubernetes manifest", _update_image_tag),
        sh(
            "Configure committer",
            f"git -C {d} config user.email {shlex.quote(s.git_user_email)} && "
            f"git -C {d} config user.name {shlex.quote(s.git_user_name)}",
        ),
        sh("Stage updated manifest", f"git -C {d} add {DEPLOYMENT_FILE}"),
        # nothing staged -> no commit, so a rerun of the same tag stays green
        sh(
            "Commit updated manifest",
            f"git -C {d} diff --cached --quiet || git -C {d} commit -m {shlex.quote(ctx.commit_message)}",
        ),
        call("Push updated manifest", _push_manifest),
        needs=needs,
    )
