# pipeline.py
# The release topology:
#   checkout -> dependency-audit -> build-image -> push-image
#            -> update-manifest -> deploy -> cleanup (always)
from __future__ import annotations

from typing import List

from .context import RunContext
from .dsl import wf
from .model import Stage
from .stages.audit import audit_stage
from .stages.checkout import checkout_stage
from .stages.cleanup import cleanup_stage
from .stages.deploy import deploy_stage
from .stages.image import build_stage, push_stage
from .stages.manifest import update_manifest_stage

STAGE_ORDER = (
    "checkout",
    "dependency-audit",
    "build-image",
    "push-image",
    "update-manifest",
    "deploy",
    "cleanup",
)


def release_pipeline(ctx: RunContext) -> List[Stage]:
    return wf(
        checkout_stage(ctx),
        audit_stage(ctx, needs=["checkout"]),
        build_stage(ctx, needs=["dependency-audit"]),
        push_stage(ctx, needs=["build-image"]),
        update_manifest_stage(ctx, needs=["push-image"]),
        deploy_stage(ctx, needs=["update-manifest"]),
        cleanup_stage(ctx, needs=["deploy"]),
    )
