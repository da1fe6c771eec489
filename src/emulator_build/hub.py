"""Local emulator hub.

Artifacts are stored by content under `<root>/artifacts/<digest>.zip`, and a name index
(`<root>/index.json`) records the identifiers pushed under each name, oldest first.

Identifiers have the form `name@sha256:<hex>`. They can be resolved from the name (the latest
push), from the full identifier, or from the bare `sha256:<hex>` id.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import attrs

from emulator_build import packaging
from emulator_build.emulation.interface import Emulator
from emulator_build.exceptions import ArtifactNotFoundError, PackagingIOError

logger = logging.getLogger(__name__)

_INDEX_FILENAME = "index.json"


@attrs.define
class LocalHub:
    root: Path = attrs.field(converter=Path)
    _lock: threading.Lock = attrs.field(factory=threading.Lock, init=False, repr=False)

    @property
    def index_path(self) -> Path:
        return self.root / _INDEX_FILENAME

    def _artifact_path(self, artifact_id: str) -> Path:
        return self.root / "artifacts" / f"{artifact_id.partition(':')[2]}.zip"

    def _read_index(self) -> dict[str, list[str]]:
        if not self.index_path.exists():
            return {}
        return json.loads(self.index_path.read_text())

    def _write_index(self, index: dict[str, Any]) -> None:
        packaging.write_atomic(self.index_path, json.dumps(index, indent=2, sort_keys=True).encode())

    def push(self, artifact_path: Path | str) -> str:
        """Add an artifact to the hub.

        Args:
            artifact_path: Path to the artifact archive. It's verified before it's stored.
        Returns:
            Identifier of the artifact (`name@sha256:<hex>`).
        """
        artifact = packaging.read_artifact(artifact_path)
        destination = self._artifact_path(artifact.identifier)
        with self._lock:
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                if not destination.exists():
                    packaging.write_atomic(destination, Path(artifact_path).read_bytes())
                index = self._read_index()
                identifiers = index.setdefault(artifact.name, [])
                if artifact.identifier in identifiers:
                    identifiers.remove(artifact.identifier)
                identifiers.append(artifact.identifier)
                self._write_index(index)
            except OSError as e:
                msg = f"Could not push {artifact_path} to the hub at {self.root}: {e}"
                raise PackagingIOError(msg) from e
        identifier = f"{artifact.name}@{artifact.identifier}"
        logger.info(f"Pushed {identifier}")
        return identifier

    def resolve(self, identifier: str) -> str:
        """Resolve a name, a `name@id` identifier or a bare id to an artifact id."""
        index = self._read_index()
        if identifier.startswith("sha256:"):
            if any(identifier in ids for ids in index.values()):
                return identifier
            raise ArtifactNotFoundError(identifier)
        name, _, artifact_id = identifier.partition("@")
        ids = index.get(name)
        if not ids:
            raise ArtifactNotFoundError(identifier)
        if not artifact_id:
            return ids[-1]
        if artifact_id not in ids:
            raise ArtifactNotFoundError(identifier)
        return artifact_id

    def fetch(self, identifier: str) -> packaging.EmulatorArtifact:
        """Retrieve and verify an artifact.

        Raises:
            ArtifactNotFoundError: If the identifier is unknown.
            ArtifactIntegrityError: If the stored archive was corrupted.
        """
        artifact_id = self.resolve(identifier)
        path = self._artifact_path(artifact_id)
        if not path.exists():
            raise ArtifactNotFoundError(identifier)
        return packaging.read_artifact(path)

    def list(self) -> list[str]:
        return sorted(self._read_index())

    def versions(self, name: str) -> list[str]:
        return list(self._read_index().get(name, []))


def get_emulator(name: str, hub_root: Path | str) -> Emulator:
    """Retrieve an emulator by name (or identifier) from a local hub."""
    return LocalHub(hub_root).fetch(name).emulator()
