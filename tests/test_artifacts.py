"""Tests for the write-once artifact store."""

import threading

import pytest

from cipipeline.core.artifacts import ArtifactStore
from cipipeline.core.errors import ArtifactNotFoundError, DuplicateArtifactError
from cipipeline.core.interfaces import ArtifactRef


class TestArtifactStore:
    """Test artifact store semantics."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = ArtifactStore()

    def test_put_wraps_raw_values(self):
        """Test that raw values are wrapped with their producer."""
        ref = self.store.put("build", "image", "sha256:abc")

        assert isinstance(ref, ArtifactRef)
        assert ref.value == "sha256:abc"
        assert ref.producer == "build"
        assert ref.name == "image"

    def test_get_is_idempotent(self):
        """Test repeated reads return the same reference."""
        self.store.put("build", "image", "sha256:abc")

        assert self.store.get("build", "image") is self.store.get("build", "image")

    def test_write_once(self):
        """Test that a key cannot be written twice."""
        self.store.put("build", "image", "sha256:abc")

        with pytest.raises(DuplicateArtifactError):
            self.store.put("build", "image", "sha256:def")

        assert self.store.get("build", "image").value == "sha256:abc"

    def test_same_name_different_stages(self):
        """Test that keys are scoped by producing stage."""
        self.store.put("scan-fs", "report", "fs.json")
        self.store.put("scan-image", "report", "image.json")

        assert self.store.get("scan-fs", "report").value == "fs.json"
        assert self.store.get("scan-image", "report").value == "image.json"
        assert len(self.store) == 2

    def test_missing_artifact(self):
        """Test reading an absent key."""
        with pytest.raises(ArtifactNotFoundError) as exc_info:
            self.store.get("provision", "endpoint")

        assert exc_info.value.stage_id == "provision"
        assert exc_info.value.name == "endpoint"
        assert not self.store.has("provision", "endpoint")

    def test_for_stage_and_to_dict(self):
        """Test per-stage views and serialization."""
        self.store.put("build", "image", "sha256:abc")
        self.store.put("build", "tag", "app:latest")
        self.store.put("provision", "endpoint", "10.0.0.1")

        assert set(self.store.for_stage("build")) == {"image", "tag"}

        data = self.store.to_dict()
        assert data["provision.endpoint"]["value"] == "10.0.0.1"
        assert data["build.image"]["producer"] == "build"

    def test_concurrent_writers_single_winner(self):
        """Test that concurrent writes to one key admit exactly one writer."""
        errors = []
        barrier = threading.Barrier(8)

        def writer(index):
            barrier.wait()
            try:
                self.store.put("build", "image", f"value-{index}")
            except DuplicateArtifactError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == 7
        assert len(self.store) == 1
