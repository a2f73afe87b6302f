# config.py
# Settings are read from the environment once, at process start, and never
# mutated afterwards. Every run gets them through its RunContext.
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Mapping, Optional, Tuple

from .errors import ConfigError

DEFAULT_MANIFEST_FILES = ("name_space.yaml", "deployment.yaml", "service.yaml", "hpa.yaml")

# settings attribute -> environment variable
ENV_VARS: Dict[str, str] = {
    "project_id": "GCP_PROJECT_ID",
    "repo_name": "GCR_REPO_NAME",
    "image_name": "DOCKER_IMG_NAME",
    "registry": "REGISTRY_HOST",
    "sa_key": "GCP_SA_KEY",
    "github_token": "PAT_GITHUB",
    "source_repo": "SOURCE_REPO",
    "manifest_repo": "MANIFEST_REPO",
    "cluster_name": "CLUSTER_NAME",
    "cluster_zone": "CLUSTER_ZONE",
    "deployment_name": "DEPLOYMENT_NAME",
    "trigger_branch": "TRIGGER_BRANCH",
    "rollout_timeout": "ROLLOUT_TIMEOUT",
    "audit_level": "AUDIT_LEVEL",
    "build_platform": "BUILD_PLATFORM",
    "git_user_name": "GIT_USER_NAME",
    "git_user_email": "GIT_USER_EMAIL",
    "database_url": "DATABASE_URL",
    "workspace_root": "RELEASECI_WORKSPACE",
    "webhook_secret": "WEBHOOK_SECRET",
    "max_workers": "MAX_WORKERS",
    "lease_seconds": "LEASE_SECONDS",
}

# needed before a release run can start
RELEASE_REQUIRED = (
    "project_id",
    "repo_name",
    "sa_key",
    "github_token",
    "cluster_name",
    "cluster_zone",
    "deployment_name",
)

_INT_FIELDS = {"rollout_timeout", "max_workers", "lease_seconds"}


@dataclass(frozen=True)
class Settings:
    project_id: str = ""
    repo_name: str = ""
    image_name: str = "irys-ui-img"
    registry: str = "gcr.io"

    sa_key: str = field(default="", repr=False)
    github_token: str = field(default="", repr=False)

    source_repo: str = ""
    manifest_repo: str = "stem-fresh/React-app-manifests"
    manifest_files: Tuple[str, ...] = DEFAULT_MANIFEST_FILES

    cluster_name: str = ""
    cluster_zone: str = ""
    deployment_name: str = ""

    trigger_branch: str = "main"
    rollout_timeout: int = 120
    audit_level: str = "low"
    build_platform: str = "linux/amd64"

    git_user_name: str = "releaseci"
    git_user_email: str = "releaseci@localhost"

    database_url: str = "sqlite:///.releaseci/runs.db"
    workspace_root: str = ".releaseci/runs"
    webhook_secret: str = field(default="", repr=False)
    max_workers: Optional[int] = None
    # a running run not heard from for this long counts as abandoned
    lease_seconds: int = 600

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """
        Build settings from environment variables (see ENV_VARS).
        Keyword overrides win over the environment; None overrides are ignored.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        for attr, var in ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            if attr in _INT_FIELDS:
                try:
                    values[attr] = int(raw)
                except ValueError:
                    raise ConfigError(f"{var} must be an integer", value=raw) from None
            else:
                values[attr] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown settings: {unknown}")

        settings = cls(**values)
        if settings.rollout_timeout <= 0:
            raise ConfigError("ROLLOUT_TIMEOUT must be positive", value=settings.rollout_timeout)
        if settings.lease_seconds <= 0:
            raise ConfigError("LEASE_SECONDS must be positive", value=settings.lease_seconds)
        return settings

    def with_overrides(self, **overrides) -> "Settings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def missing(self, names=RELEASE_REQUIRED) -> list[str]:
        return [ENV_VARS[n] for n in names if not getattr(self, n)]

    def require(self, names=RELEASE_REQUIRED) -> None:
        missing = self.missing(names)
        if missing:
            raise ConfigError(
                "Missing required configuration",
                variables=", ".join(missing),
            )

    def secrets(self) -> list[str]:
        """Values that must never reach the console or stored results."""
        return [s for s in (self.sa_key, self.github_token, self.webhook_secret) if s]
