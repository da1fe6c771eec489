from __future__ import annotations

import json
import zipfile

import numpy as np
import pytest

from emulator_build import packaging
from emulator_build.evaluation import evaluate_model
from emulator_build.exceptions import ArtifactIntegrityError, ArtifactNotFoundError, PackagingIOError
from emulator_build.hub import LocalHub, get_emulator
from emulator_build.spec import EmulatorSpec
from emulator_build.training import train_model


@pytest.fixture
def package(build_training_set):
    def _package(spec: EmulatorSpec, wall_time: float = 1000.0) -> packaging.EmulatorArtifact:
        training_set = build_training_set(spec)
        trained_model = train_model(training_set, spec)
        report = evaluate_model(
            trained_model, training_set, spec, environment_fingerprint="env", clock=lambda: wall_time
        )
        return packaging.package_artifact(spec, trained_model, report)

    return _package


@pytest.fixture
def artifact(spec: EmulatorSpec, package) -> packaging.EmulatorArtifact:
    return package(spec)


def test_artifact_contents(artifact: packaging.EmulatorArtifact, spec: EmulatorSpec) -> None:
    assert artifact.identifier.startswith("sha256:")
    assert artifact.name == "linear_matter_power"
    assert artifact.filename == f"linear_matter_power-{artifact.digest[:16]}.zip"
    assert list(artifact.members) == sorted(artifact.members)
    assert packaging.SPEC_MEMBER in artifact.members
    assert packaging.MODEL_MEMBER in artifact.members
    assert "model/model_coef.npy" in artifact.members
    assert "model/transform_mean.npy" in artifact.members

    assert EmulatorSpec.from_config(json.loads(artifact.members[packaging.SPEC_MEMBER])) == spec
    report = json.loads(artifact.members[packaging.REPORT_MEMBER])
    assert "provenance" not in report
    assert artifact.report.provenance is None


def test_identical_builds_are_byte_identical(spec: EmulatorSpec, package) -> None:
    first = package(spec, wall_time=1000.0)
    second = package(spec, wall_time=5000.0)
    assert first.identifier == second.identifier
    assert first.archive_bytes() == second.archive_bytes()


def test_different_specs_have_different_identities(spec_config, package) -> None:
    first = package(EmulatorSpec.from_config(spec_config))
    spec_config["emulator_fn"]["params"]["degree"] = 2
    second = package(EmulatorSpec.from_config(spec_config))
    assert first.identifier != second.identifier


def test_write_and_read(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    provenance = packaging.BuildProvenance(created_at="2024-01-01T00:00:00+00:00", duration_seconds=12.5)
    path = packaging.write_artifact(artifact, tmp_path, provenance=provenance)
    assert path == tmp_path / artifact.filename
    assert path.read_bytes() == artifact.archive_bytes()
    # No temporary files are left behind
    assert sorted(p.name for p in tmp_path.iterdir()) == [path.name, path.name + packaging.SIDECAR_SUFFIX]

    sidecar = json.loads((tmp_path / (path.name + packaging.SIDECAR_SUFFIX)).read_text())
    assert sidecar["identifier"] == artifact.identifier
    assert sidecar["duration_seconds"] == 12.5
    assert packaging.read_provenance(path) == provenance

    loaded = packaging.read_artifact(path)
    assert loaded.identifier == artifact.identifier
    assert loaded.spec == artifact.spec
    assert loaded.report == artifact.report
    assert loaded.trained_model.summary() == artifact.trained_model.summary()

    k = np.array([1e-3, 1.0])
    np.testing.assert_array_equal(
        loaded.emulator()([0.025], "linear_matter_power", k=k),
        artifact.emulator()([0.025], "linear_matter_power", k=k),
    )

    # Rewriting an identical artifact is a no-op
    mtime = path.stat().st_mtime_ns
    assert packaging.write_artifact(artifact, tmp_path) == path
    assert path.stat().st_mtime_ns == mtime


def test_repackaging_keeps_identity(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    loaded = packaging.read_artifact(packaging.write_artifact(artifact, tmp_path))
    weights = loaded.trained_model.weights
    assert weights["transform_log_outputs"].shape == ()
    assert {k: v.shape for k, v in weights.items()} == {
        k: v.shape for k, v in artifact.trained_model.weights.items()
    }

    repackaged = packaging.package_artifact(loaded.spec, loaded.trained_model, loaded.report)
    assert repackaged.identifier == artifact.identifier
    assert repackaged.archive_bytes() == artifact.archive_bytes()


def test_read_provenance_without_sidecar(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    path = packaging.write_artifact(artifact, tmp_path)
    assert packaging.read_provenance(path) is None


def test_tampered_archive(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    path = packaging.write_artifact(artifact, tmp_path)
    tampered = tmp_path / "tampered.zip"
    with zipfile.ZipFile(path) as source, zipfile.ZipFile(tampered, mode="w") as destination:
        for info in source.infolist():
            data = source.read(info)
            if info.filename == packaging.REPORT_MEMBER:
                data = data.replace(b'"n_fit":52', b'"n_fit":53')
            destination.writestr(info, data)
        destination.comment = source.comment

    with pytest.raises(ArtifactIntegrityError, match="corrupted"):
        packaging.read_artifact(tampered)


def test_invalid_archive(tmp_path) -> None:
    path = tmp_path / "not_an_archive.zip"
    path.write_bytes(b"definitely not a zip file")
    with pytest.raises(ArtifactIntegrityError):
        packaging.read_artifact(path)
    with pytest.raises(PackagingIOError):
        packaging.read_artifact(tmp_path / "missing.zip")


def test_unwritable_directory(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    with pytest.raises(PackagingIOError):
        packaging.write_artifact(artifact, blocker / "emulators")


def test_hub(tmp_path, spec_config, package) -> None:
    first = package(EmulatorSpec.from_config(spec_config))
    spec_config["emulator_fn"]["params"]["degree"] = 2
    second = package(EmulatorSpec.from_config(spec_config))
    first_path = packaging.write_artifact(first, tmp_path / "build")
    second_path = packaging.write_artifact(second, tmp_path / "build")

    hub = LocalHub(tmp_path / "hub")
    assert hub.list() == []
    first_id = hub.push(first_path)
    assert first_id == f"linear_matter_power@{first.identifier}"
    second_id = hub.push(second_path)
    # Pushing again doesn't duplicate the version
    assert hub.push(first_path) == first_id

    assert hub.list() == ["linear_matter_power"]
    assert hub.versions("linear_matter_power") == [second.identifier, first.identifier]
    assert hub.resolve("linear_matter_power") == first.identifier
    assert hub.resolve(second_id) == second.identifier
    assert hub.resolve(second.identifier) == second.identifier

    fetched = hub.fetch(second_id)
    assert fetched.identifier == second.identifier
    assert fetched.spec.emulator_fn.settings.degree == 2

    emulator = get_emulator("linear_matter_power", tmp_path / "hub")
    np.testing.assert_allclose(emulator([0.03], "linear_matter_power", k=1.0), 0.03, rtol=1e-8)


@pytest.mark.parametrize(
    "identifier",
    ["unknown_emulator", "linear_matter_power@sha256:0000", "sha256:0000"],
)
def test_hub_not_found(tmp_path, artifact: packaging.EmulatorArtifact, identifier: str) -> None:
    hub = LocalHub(tmp_path / "hub")
    hub.push(packaging.write_artifact(artifact, tmp_path / "build"))
    with pytest.raises(ArtifactNotFoundError, match=identifier):
        hub.fetch(identifier)


def test_hub_detects_corruption(tmp_path, artifact: packaging.EmulatorArtifact) -> None:
    hub = LocalHub(tmp_path / "hub")
    hub.push(packaging.write_artifact(artifact, tmp_path / "build"))
    stored = tmp_path / "hub" / "artifacts" / f"{artifact.digest}.zip"
    stored.write_bytes(stored.read_bytes()[:-200])
    with pytest.raises(ArtifactIntegrityError):
        hub.fetch("linear_matter_power")
