# stages/deploy.py
from __future__ import annotations

import shlex
from typing import List, Optional

from ..dsl import call, compensate, sh, stage
from ..model import Stage
from .gcloud import activate_service_account
from .manifest import checkout_manifests

# headroom on top of kubectl's own --timeout before we kill it
WAIT_GRACE_SECONDS = 30


def deploy_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    """
    Apply the manifests. On failure: wait for the rollout (bounded); if the
    wait fails too, undo to the previous revision.
    """
    s = ctx.settings
    q = shlex.quote
    files = " ".join(f"-f {q(f)}" for f in s.manifest_files)
    deployment = q(f"deployment/{s.deployment_name}")
    timeout = s.rollout_timeout

    return stage(
        "deploy",
        call("Checkout manifest repository", checkout_manifests),
        call("Authenticate with Google Cloud", activate_service_account),
        sh(
            "Configure kubectl",
            f"gcloud container clusters get-credentials {q(s.cluster_name)} "
            f"--zone {q(s.cluster_zone)} --project {q(s.project_id)}",
        ),
        sh("Apply Kubernetes manifests", f"kubectl apply {files}", cwd=str(ctx.manifest_dir)),
        needs=needs,
        on_failure=compensate(
            sh(
                "Wait for deployment to complete",
                f"kubectl rollout status {deployment} --timeout={timeout}s",
                timeout=timeout + WAIT_GRACE_SECONDS,
            ),
            sh("Roll back deployment", f"kubectl rollout undo {deployment}"),
        ),
    )
