# artifacts.py
# Stages never hand outputs to each other directly. A producer publishes into
# the orchestrator-owned store, consumers fetch by name and get the digest
# checked against the file they are about to use.
from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Dict

from .errors import ArtifactError
from .model import Artifact


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


class ArtifactStore:
    def __init__(self):
        self._items: Dict[str, Artifact] = {}
        self._lock = threading.Lock()

    def publish(self, name: str, *, path: Path, reference: str, producer: str = "") -> Artifact:
        """Register a file produced by `producer`. Each name is written once per run."""
        path = Path(path)
        if not path.is_file():
            raise ArtifactError(f"Artifact '{name}' file not found", path=str(path))

        artifact = Artifact(
            name=name,
            reference=reference,
            digest=sha256_file(path),
            path=path,
            producer=producer,
        )
        with self._lock:
            if name in self._items:
                raise ArtifactError(
                    f"Artifact '{name}' already published",
                    producer=self._items[name].producer,
                )
            self._items[name] = artifact
        return artifact

    def get(self, name: str) -> Artifact:
        with self._lock:
            artifact = self._items.get(name)
        if artifact is None:
            raise ArtifactError(f"Artifact '{name}' was never published", known=sorted(self._items))
        return artifact

    def fetch(self, name: str) -> Artifact:
        """get() + verify the file still matches the published digest."""
        artifact = self.get(name)
        if artifact.path is not None:
            if not artifact.path.is_file():
                raise ArtifactError(f"Artifact '{name}' file disappeared", path=str(artifact.path))
            actual = sha256_file(artifact.path)
            if actual != artifact.digest:
                raise ArtifactError(
                    f"Artifact '{name}' digest mismatch",
                    expected=artifact.digest[:12],
                    actual=actual[:12],
                )
        return artifact

    def all(self) -> Dict[str, Artifact]:
        with self._lock:
            return dict(self._items)
