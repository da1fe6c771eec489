"""Package a trained emulator into a reproducible, content-addressed artifact.

The artifact is a zip archive with the members:
 - `spec.json`: canonical emulator specification.
 - `model/model.json`: trained model metadata.
 - `model/<weight>.npy`: one array per weight, in sorted order.
 - `report.json`: accuracy report (without the build provenance).

The identity of the artifact is `sha256:` followed by the digest of the canonical manifest of
member digests, so it only depends on the contents. Members are stored uncompressed with fixed
timestamps and permissions, in a fixed order, so identical builds produce byte-identical archives.
When and how long the build took is written to a `<archive>.build.json` sidecar instead.
"""

from __future__ import annotations

import io
import json
import logging
import os
import re
import uuid
import zipfile
from pathlib import Path
from typing import Any

import attrs
import numpy as np

from emulator_build import helpers
from emulator_build.emulation import base as emulation_base
from emulator_build.emulation import interface as emulation_interface
from emulator_build.evaluation import AccuracyReport, BuildProvenance
from emulator_build.exceptions import ArtifactIntegrityError, InvalidSpecError, PackagingIOError
from emulator_build.spec import EmulatorSpec

logger = logging.getLogger(__name__)

SPEC_MEMBER = "spec.json"
MODEL_MEMBER = "model/model.json"
REPORT_MEMBER = "report.json"
_WEIGHT_PREFIX = "model/"
_ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_ZIP_PERMISSIONS = 0o644
SIDECAR_SUFFIX = ".build.json"


def _encode_array(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    # Keeps the shape of 0-d arrays, unlike np.ascontiguousarray
    np.save(buffer, np.array(array, order="C", copy=True), allow_pickle=False)
    return buffer.getvalue()


def _decode_array(data: bytes) -> np.ndarray:
    return np.load(io.BytesIO(data), allow_pickle=False)


def artifact_identifier(members: dict[str, bytes]) -> str:
    manifest = {name: helpers.sha256_digest(data) for name, data in members.items()}
    return f"sha256:{helpers.sha256_digest(helpers.canonical_json(manifest))}"


@attrs.frozen
class EmulatorArtifact:
    """Packaged emulator.

    Attributes:
        identifier: Content address of the artifact (`sha256:<hex>`).
        members: Member name -> contents, in archive order.
        spec: Emulator specification.
        trained_model: Trained model.
        report: Accuracy report (without provenance).
    """

    identifier: str
    members: dict[str, bytes]
    spec: EmulatorSpec
    trained_model: emulation_base.TrainedModel
    report: AccuracyReport

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def digest(self) -> str:
        return self.identifier.partition(":")[2]

    @property
    def filename(self) -> str:
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", self.name)
        return f"{safe_name}-{self.digest[:16]}.zip"

    def emulator(self) -> emulation_interface.Emulator:
        """Reconstruct the callable emulator."""
        return emulation_interface.Emulator(self.trained_model, self.spec)

    def archive_bytes(self) -> bytes:
        """Deterministic zip archive of the members."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_STORED) as archive:
            for name, data in self.members.items():
                info = zipfile.ZipInfo(filename=name, date_time=_ZIP_DATE_TIME)
                info.compress_type = zipfile.ZIP_STORED
                info.create_system = 3
                info.external_attr = _ZIP_PERMISSIONS << 16
                archive.writestr(info, data)
            archive.comment = self.identifier.encode()
        return buffer.getvalue()


def package_artifact(
    spec: EmulatorSpec, trained_model: emulation_base.TrainedModel, report: AccuracyReport
) -> EmulatorArtifact:
    """Assemble the artifact in memory. The inputs are not modified.

    Args:
        spec: Emulator specification.
        trained_model: Trained model.
        report: Accuracy report. Its provenance is not part of the artifact.
    Returns:
        Artifact.
    """
    model_metadata = trained_model.summary()
    members: dict[str, bytes] = {
        SPEC_MEMBER: helpers.canonical_json(spec.to_dict()),
        MODEL_MEMBER: helpers.canonical_json(model_metadata),
    }
    for weight_name in sorted(trained_model.weights):
        members[f"{_WEIGHT_PREFIX}{weight_name}.npy"] = _encode_array(trained_model.weights[weight_name])
    members[REPORT_MEMBER] = helpers.canonical_json(report.to_dict(include_provenance=False))
    # Fixed member order
    members = {name: members[name] for name in sorted(members)}

    return EmulatorArtifact(
        identifier=artifact_identifier(members),
        members=members,
        spec=spec,
        trained_model=trained_model,
        report=attrs.evolve(report, provenance=None),
    )


def write_atomic(path: Path, data: bytes) -> None:
    tmp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with tmp_path.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def write_artifact(
    artifact: EmulatorArtifact, directory: Path | str, provenance: BuildProvenance | None = None
) -> Path:
    """Write the artifact archive (and the provenance sidecar) atomically.

    An existing archive with identical contents is reused.

    Args:
        artifact: Artifact.
        directory: Output directory.
        provenance: Build provenance, written to the sidecar. Default: None (no sidecar).
    Returns:
        Path of the archive.
    Raises:
        PackagingIOError: If writing fails.
    """
    directory = Path(directory)
    path = directory / artifact.filename
    data = artifact.archive_bytes()
    try:
        directory.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.read_bytes() == data:
            logger.info(f"Identical artifact already exists at {path}")
        else:
            write_atomic(path, data)
            logger.info(f"Wrote artifact {artifact.identifier} to {path}")
        if provenance is not None:
            sidecar = {"identifier": artifact.identifier, "archive": path.name, **attrs.asdict(provenance)}
            write_atomic(path.with_name(path.name + SIDECAR_SUFFIX), json.dumps(sidecar, indent=2).encode())
    except OSError as e:
        msg = f"Could not write artifact to {path}: {e}"
        raise PackagingIOError(msg) from e
    return path


def read_provenance(path: Path | str) -> BuildProvenance | None:
    sidecar = Path(path).with_name(Path(path).name + SIDECAR_SUFFIX)
    if not sidecar.exists():
        return None
    values = json.loads(sidecar.read_text())
    return BuildProvenance(created_at=values["created_at"], duration_seconds=values["duration_seconds"])


def _load_json(members: dict[str, bytes], name: str) -> Any:
    try:
        return json.loads(members[name].decode("utf-8"))
    except KeyError as e:
        msg = f"Artifact is missing member '{name}'"
        raise ArtifactIntegrityError(msg) from e
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        msg = f"Artifact member '{name}' is not valid JSON"
        raise ArtifactIntegrityError(msg) from e


def read_artifact(path: Path | str) -> EmulatorArtifact:
    """Read and verify an artifact archive.

    Args:
        path: Path of the archive.
    Returns:
        Artifact.
    Raises:
        ArtifactIntegrityError: If the contents don't match the identity.
        PackagingIOError: If the file can't be read.
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path, mode="r") as archive:
            members = {info.filename: archive.read(info) for info in archive.infolist()}
            stored_identifier = archive.comment.decode()
    except zipfile.BadZipFile as e:
        msg = f"{path} is not a valid artifact archive"
        raise ArtifactIntegrityError(msg) from e
    except OSError as e:
        msg = f"Could not read artifact {path}: {e}"
        raise PackagingIOError(msg) from e

    identifier = artifact_identifier(members)
    if identifier != stored_identifier:
        msg = f"Artifact {path} is corrupted: contents hash to {identifier}, but the archive claims {stored_identifier}"
        raise ArtifactIntegrityError(msg)

    try:
        spec = EmulatorSpec.from_config(_load_json(members, SPEC_MEMBER))
    except InvalidSpecError as e:
        msg = f"Artifact {path} contains an invalid specification"
        raise ArtifactIntegrityError(msg) from e
    model_metadata = _load_json(members, MODEL_MEMBER)
    report = AccuracyReport.from_dict(_load_json(members, REPORT_MEMBER))
    if report.spec_fingerprint != spec.fingerprint:
        msg = f"Artifact {path}: the report was produced for a different specification"
        raise ArtifactIntegrityError(msg)

    weights = {}
    for weight_name in model_metadata["weights"]:
        member = f"{_WEIGHT_PREFIX}{weight_name}.npy"
        if member not in members:
            msg = f"Artifact {path} is missing weight '{weight_name}'"
            raise ArtifactIntegrityError(msg)
        weights[weight_name] = _decode_array(members[member])
    trained_model = emulation_base.TrainedModel(
        model_type=model_metadata["model_type"],
        declaration=model_metadata["declaration"],
        training=model_metadata["training"],
        weights=weights,
        n_epochs=int(model_metadata["n_epochs"]),
        final_objective=float(model_metadata["final_objective"]),
        objective_name=model_metadata["objective_name"],
    )
    return EmulatorArtifact(
        identifier=identifier, members=members, spec=spec, trained_model=trained_model, report=report
    )
