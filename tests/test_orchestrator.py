from __future__ import annotations

import json

import pytest
import yaml

from emulator_build import packaging, steer_build
from emulator_build.cache import InMemoryExampleStore
from emulator_build.exceptions import (
    AccuracyBelowThresholdError,
    BuildCancelledError,
    TrainingSetDegradedError,
    TrainingSetTooSmallError,
)
from emulator_build.execution import CallableAdapter
from emulator_build.orchestrator import EmulatorBuildPipeline, PipelineState, ProgressEvent
from emulator_build.spec import EmulatorSpec

from tests import mock_solvers


@pytest.fixture
def make_pipeline(tmp_path, sleeps):
    def _make(spec: EmulatorSpec, function=mock_solvers.omega_times_k, store=None, **kwargs) -> EmulatorBuildPipeline:
        return EmulatorBuildPipeline(
            spec=spec,
            adapter=CallableAdapter(function),
            store=store if store is not None else InMemoryExampleStore(),
            output_dir=tmp_path / "emulators",
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


def _transitions(events: list[ProgressEvent]) -> list[PipelineState]:
    return [e.state for e in events if e.state is not e.previous]


def test_build(tmp_path, spec: EmulatorSpec, make_pipeline) -> None:
    events: list[ProgressEvent] = []
    pipeline = make_pipeline(spec, listeners=[events.append])
    assert pipeline.state is PipelineState.Initialized

    result = pipeline.run()
    assert result.succeeded
    assert result.state is PipelineState.Done
    assert pipeline.state is PipelineState.Done
    assert result.failure is None
    assert _transitions(events) == [
        PipelineState.SamplingParameters,
        PipelineState.BuildingTrainingSet,
        PipelineState.Training,
        PipelineState.Evaluating,
        PipelineState.Packaging,
        PipelineState.Done,
    ]

    sample_events = [e for e in events if e.total is not None]
    assert [e.completed for e in sample_events] == list(range(1, 65))
    assert all(e.state is PipelineState.BuildingTrainingSet and e.total == 64 for e in sample_events)
    assert all(later.elapsed >= earlier.elapsed for earlier, later in zip(events, events[1:]))

    # A linear polynomial in Omega_b with log interpolation along k reproduces Omega_b * k to rounding
    assert result.report.max_relative_error < 1e-12
    accuracy = result.report.outputs["linear_matter_power"]
    assert accuracy.training_nodes.max_relative_error < 1e-12
    assert accuracy.off_grid is not None
    assert accuracy.off_grid.n_points == 12 * 15
    assert accuracy.off_grid.max_relative_error < 1e-12
    assert accuracy.failure_count == 0
    assert result.artifact_path == tmp_path / "emulators" / result.artifact.filename
    loaded = packaging.read_artifact(result.artifact_path)
    assert loaded.identifier == result.artifact.identifier
    assert loaded.report.max_relative_error == result.report.max_relative_error
    provenance = packaging.read_provenance(result.artifact_path)
    assert provenance == result.report.provenance


def test_run_once(spec: EmulatorSpec, make_pipeline) -> None:
    pipeline = make_pipeline(spec)
    pipeline.run()
    with pytest.raises(RuntimeError):
        pipeline.run()


def test_rebuild_is_idempotent(spec: EmulatorSpec, make_pipeline) -> None:
    solver = mock_solvers.CountingSolver()
    store = InMemoryExampleStore()
    first = make_pipeline(spec, function=solver, store=store).run()
    assert solver.n_calls == 64

    second = make_pipeline(spec, function=solver, store=store).run()
    assert solver.n_calls == 64
    assert second.training_set.n_cache_hits == 64
    assert second.artifact.identifier == first.artifact.identifier
    assert second.artifact_path.read_bytes() == first.artifact.archive_bytes()


def test_accuracy_gate(tmp_path, spec: EmulatorSpec, make_pipeline) -> None:
    events: list[ProgressEvent] = []
    result = make_pipeline(spec, function=mock_solvers.omega_cubed_times_k, listeners=[events.append]).run()

    assert result.state is PipelineState.Failed
    assert result.failure.stage is PipelineState.Packaging
    assert isinstance(result.failure.cause, AccuracyBelowThresholdError)
    assert str(result.failure).startswith("Failed(Packaging, AccuracyBelowThreshold: max relative error")
    assert result.artifact is None
    assert result.report is not None
    assert result.failure.cause.max_relative_error == result.report.max_relative_error
    # Nothing is written
    assert not (tmp_path / "emulators").exists()

    assert events[-1].state is PipelineState.Failed
    assert events[-1].previous is PipelineState.Packaging
    assert events[-1].failure == result.failure


def test_degraded_training_set(spec: EmulatorSpec, make_pipeline) -> None:
    result = make_pipeline(spec, function=mock_solvers.rejects_large_omega).run()
    assert result.state is PipelineState.Failed
    assert result.failure.stage is PipelineState.BuildingTrainingSet
    assert isinstance(result.failure.cause, TrainingSetDegradedError)
    assert result.training_set is None


def test_training_failure(spec_config, make_pipeline) -> None:
    spec_config["training"]["params"] = {"min_training_examples": 100}
    result = make_pipeline(EmulatorSpec.from_config(spec_config)).run()
    assert result.failure.stage is PipelineState.Training
    assert isinstance(result.failure.cause, TrainingSetTooSmallError)
    assert result.training_set is not None


def test_cancellation(spec: EmulatorSpec, make_pipeline) -> None:
    solver = mock_solvers.CountingSolver()
    pipeline = make_pipeline(spec, function=solver)
    pipeline.cancel()
    result = pipeline.run()
    assert result.failure.stage is PipelineState.BuildingTrainingSet
    assert isinstance(result.failure.cause, BuildCancelledError)
    assert solver.n_calls == 0


def test_unexpected_errors_propagate(spec: EmulatorSpec, make_pipeline) -> None:
    class BrokenAdapter(CallableAdapter):
        def fingerprint(self, environment: str) -> str:
            msg = "inspection failed"
            raise RuntimeError(msg)

    events: list[ProgressEvent] = []
    pipeline = make_pipeline(spec, listeners=[events.append])
    pipeline.adapter = BrokenAdapter(mock_solvers.omega_times_k)
    with pytest.raises(RuntimeError, match="inspection failed"):
        pipeline.run()
    assert pipeline.state is PipelineState.Failed
    assert events[-1].failure.stage is PipelineState.BuildingTrainingSet


def test_status_line() -> None:
    event = ProgressEvent(
        state=PipelineState.BuildingTrainingSet,
        previous=PipelineState.BuildingTrainingSet,
        message="sample 3 ok",
        elapsed=1.5,
        completed=4,
        total=64,
    )
    assert event.status_line() == "[    1.50s] BuildingTrainingSet [4/64]: sample 3 ok"


####################################################################################################################
# Command line
####################################################################################################################
@pytest.fixture
def spec_file(tmp_path, spec_config):
    def _write(**updates) -> str:
        path = tmp_path / "spec.yaml"
        path.write_text(yaml.safe_dump({**spec_config, **updates}))
        return str(path)

    return _write


def test_main(tmp_path, spec_file) -> None:
    output_dir = tmp_path / "output"
    hub_root = tmp_path / "hub"
    steer_build.main(
        ["-c", spec_file(), "-o", str(output_dir), "--hub", str(hub_root), "--exportTrainingSet", "--plot"]
    )

    archives = list(output_dir.glob("*.zip"))
    assert len(archives) == 1
    assert (output_dir / "build.log").exists()
    assert (output_dir / "emulator_spec.yaml").exists()
    assert (output_dir / "training_set.h5").exists()
    assert (output_dir / "plots" / "relative_error_linear_matter_power.pdf").exists()
    assert any((output_dir / "cache").iterdir())

    index = json.loads((hub_root / "index.json").read_text())
    assert index["linear_matter_power"] == [packaging.read_artifact(archives[0]).identifier]


def test_main_hub_push_failure(tmp_path, spec_file, capsys) -> None:
    output_dir = tmp_path / "output"
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a hub")
    with pytest.raises(SystemExit) as exc_info:
        steer_build.main(["-c", spec_file(), "-o", str(output_dir), "--hub", str(blocker)])
    assert exc_info.value.code == 1

    # The build succeeded, only the push failed
    assert len(list(output_dir.glob("*.zip"))) == 1
    output = capsys.readouterr().out
    assert "pushing it to the hub" in output
    assert "Failed(" not in output


def test_main_failed_build(tmp_path, spec_file) -> None:
    with pytest.raises(SystemExit) as exc_info:
        steer_build.main(
            ["-c", spec_file(container="python:tests.mock_solvers:omega_cubed_times_k"), "-o", str(tmp_path / "out")]
        )
    assert exc_info.value.code == 1
    assert not list((tmp_path / "out").glob("*.zip"))


@pytest.mark.parametrize(
    "updates",
    [{"container": "singularity:solver.sif"}, {"parameters": {"Omega_b": [0.05, 0.01]}}, {"unknown": 1}],
)
def test_main_invalid_spec(tmp_path, spec_file, updates) -> None:
    with pytest.raises(SystemExit) as exc_info:
        steer_build.main(["-c", spec_file(**updates), "-o", str(tmp_path / "out")])
    assert exc_info.value.code == 1


def test_main_missing_spec(tmp_path) -> None:
    with pytest.raises(SystemExit) as exc_info:
        steer_build.main(["-c", str(tmp_path / "missing.yaml"), "-o", str(tmp_path / "out")])
    assert exc_info.value.code == 1
