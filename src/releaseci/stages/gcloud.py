# stages/gcloud.py
# Service-account plumbing shared by push-image and deploy. The key and the
# per-run gcloud config live in the run workspace only until cleanup.
from __future__ import annotations

import os
import shlex
import shutil

from ..errors import ConfigError


def activate_service_account(sctx) -> None:
    run = sctx.run
    key = run.settings.sa_key
    if not key:
        raise ConfigError("GCP_SA_KEY is not set", hint="Export the service-account key JSON as GCP_SA_KEY.")

    path = run.credentials_file
    path.parent.mkdir(parents=True, exist_ok=True)
    run.gcloud_config_dir.mkdir(mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(key)

    sctx.sh(
        f"gcloud auth activate-service-account --key-file={shlex.quote(str(path))}",
        step="activate service account",
    )


def remove_credentials(sctx) -> None:
    """Drop the key, the run's gcloud login and its cluster credentials."""
    run = sctx.run
    run.credentials_file.unlink(missing_ok=True)
    run.kubeconfig.unlink(missing_ok=True)
    if run.gcloud_config_dir.exists():
        shutil.rmtree(run.gcloud_config_dir)
