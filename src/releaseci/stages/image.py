# stages/image.py
from __future__ import annotations

import shlex
from typing import List, Optional

from ..dsl import call, sh, stage
from ..model import Stage
from .gcloud import activate_service_account

DOCKER_IMAGE = "docker-image"


def _prepare_artifact_dir(sctx) -> None:
    sctx.run.artifact_dir.mkdir(parents=True, exist_ok=True)


def _publish_image(sctx) -> None:
    run = sctx.run
    artifact = sctx.artifacts.publish(
        DOCKER_IMAGE,
        path=run.docker_tar,
        reference=run.image_ref,
        producer=sctx.stage.name,
    )
    sctx.console.print_info(f"[{sctx.stage.name}] artifact {artifact.name} sha256:{artifact.digest[:12]}")


def _load_image(sctx) -> None:
    artifact = sctx.artifacts.fetch(DOCKER_IMAGE)
    sctx.sh(f"docker load -i {shlex.quote(str(artifact.path))}", step="docker load")


def _push_image(sctx) -> None:
    artifact = sctx.artifacts.get(DOCKER_IMAGE)
    sctx.sh(f"docker push {shlex.quote(artifact.reference)}", step="docker push")


def build_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    s = ctx.settings
    build = (
        f"docker buildx build --platform {shlex.quote(s.build_platform)} "
        f"--output type=docker,dest={shlex.quote(str(ctx.docker_tar))} "
        f"--tag {shlex.quote(ctx.image_ref)} ."
    )
    return stage(
        "build-image",
        call("Prepare artifact directory", _prepare_artifact_dir),
        sh("Build Docker image", build, cwd=str(ctx.source_dir)),
        call("Save Docker image as artifact", _publish_image),
        needs=needs,
    )


def push_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    registry = shlex.quote(ctx.settings.registry)
    return stage(
        "push-image",
        call("Authenticate with Google Cloud", activate_service_account),
        sh("Configure Docker to use gcloud", f"gcloud auth configure-docker {registry} --quiet"),
        call("Load Docker image from artifact", _load_image),
        call("Push Docker image", _push_image),
        needs=needs,
    )
