"""Run-scoped, write-once artifact store."""

import logging
import threading
from typing import Any, Dict, List, Tuple

from .errors import ArtifactNotFoundError, DuplicateArtifactError
from .interfaces import ArtifactRef


class ArtifactStore:
    """Maps ``(stage_id, artifact_name)`` to an ArtifactRef.

    Every key has a single writer (its producing stage) and is written once.
    """

    def __init__(self):
        self._artifacts: Dict[Tuple[str, str], ArtifactRef] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def put(self, stage_id: str, name: str, ref: Any) -> ArtifactRef:
        """
        Record an artifact.

        Args:
            stage_id: Producing stage
            name: Artifact name, unique per stage
            ref: ArtifactRef or raw reference value

        Raises:
            DuplicateArtifactError: If the key was already written
        """
        if not isinstance(ref, ArtifactRef):
            ref = ArtifactRef(value=str(ref), producer=stage_id, name=name)

        key = (stage_id, name)
        with self._lock:
            if key in self._artifacts:
                raise DuplicateArtifactError(stage_id, name)
            self._artifacts[key] = ref

        self.logger.debug(f"Recorded artifact {stage_id}.{name} = {ref.value}")
        return ref

    def get(self, stage_id: str, name: str) -> ArtifactRef:
        """Return the artifact for a key; raises ArtifactNotFoundError if absent."""
        try:
            return self._artifacts[(stage_id, name)]
        except KeyError:
            raise ArtifactNotFoundError(stage_id, name) from None

    def has(self, stage_id: str, name: str) -> bool:
        return (stage_id, name) in self._artifacts

    def for_stage(self, stage_id: str) -> Dict[str, ArtifactRef]:
        """All artifacts produced by one stage."""
        with self._lock:
            return {name: ref for (producer, name), ref in self._artifacts.items()
                    if producer == stage_id}

    def items(self) -> List[Tuple[Tuple[str, str], ArtifactRef]]:
        with self._lock:
            return list(self._artifacts.items())

    def __len__(self) -> int:
        return len(self._artifacts)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Serializable view keyed by ``stage.artifact``."""
        return {f"{stage_id}.{name}": ref.to_dict() for (stage_id, name), ref in self.items()}
