# stages/cleanup.py
from __future__ import annotations

import shlex
from typing import List, Optional

from ..dsl import call, sh, stage
from ..model import Stage
from .gcloud import remove_credentials


def cleanup_stage(ctx, needs: Optional[List[str]] = None) -> Stage:
    # only this run's image: other runs on the host may still be between load and push
    return stage(
        "cleanup",
        sh(
            "Clean up dangling Docker images",
            'docker rmi $(docker images -q --filter "dangling=true")',
            allow_failure=True,
        ),
        sh("Remove release image", f"docker rmi {shlex.quote(ctx.image_ref)}", allow_failure=True),
        call("Remove service-account key", remove_credentials),
        needs=needs,
        always=True,
    )
