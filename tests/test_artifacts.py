import hashlib

import pytest

from releaseci.artifacts import ArtifactStore
from releaseci.errors import ArtifactError


def test_publish_and_fetch(tmp_path):
    tar = tmp_path / "image.tar"
    tar.write_bytes(b"layers")
    store = ArtifactStore()

    published = store.publish("docker-image", path=tar, reference="gcr.io/p/r/i:1", producer="build-image")

    assert published.digest == hashlib.sha256(b"layers").hexdigest()
    assert store.fetch("docker-image") == published


def test_publish_requires_file(tmp_path):
    with pytest.raises(ArtifactError, match="not found"):
        ArtifactStore().publish("docker-image", path=tmp_path / "missing.tar", reference="x")


def test_publish_once(tmp_path):
    tar = tmp_path / "image.tar"
    tar.write_bytes(b"layers")
    store = ArtifactStore()
    store.publish("docker-image", path=tar, reference="x")
    with pytest.raises(ArtifactError, match="already published"):
        store.publish("docker-image", path=tar, reference="x")


def test_fetch_detects_tampering(tmp_path):
    tar = tmp_path / "image.tar"
    tar.write_bytes(b"layers")
    store = ArtifactStore()
    store.publish("docker-image", path=tar, reference="x")
    tar.write_bytes(b"something else")

    with pytest.raises(ArtifactError, match="digest mismatch"):
        store.fetch("docker-image")


def test_unknown_artifact():
    with pytest.raises(ArtifactError, match="never published"):
        ArtifactStore().get("docker-image")
