from __future__ import annotations

import json

import attrs
import numpy as np
import pytest

from emulator_build.emulation import polynomial
from emulator_build.evaluation import AccuracyReport, evaluate_model
from emulator_build.exceptions import TrainingSetTooSmallError
from emulator_build.spec import EmulatorSpec
from emulator_build.training import train_model

from tests import mock_solvers


def _evaluate(spec: EmulatorSpec, training_set, **kwargs) -> AccuracyReport:
    trained_model = train_model(training_set, spec)
    return evaluate_model(trained_model, training_set, spec, environment_fingerprint="env", **kwargs)


def test_exact_model(spec: EmulatorSpec, build_training_set) -> None:
    report = _evaluate(spec, build_training_set(spec), clock=lambda: 1000.0, started_at=990.0)
    assert report.max_relative_error < 1e-8
    assert report.gradient_max_error < spec.accuracy.gradient_tolerance
    assert report.n_fit == 52
    assert report.n_heldout == 12
    assert report.failure_count == 0
    assert report.environment_fingerprint == "env"
    assert report.spec_fingerprint == spec.fingerprint
    assert report.model["model_type"] == "polynomial"

    accuracy = report.outputs["linear_matter_power"]
    assert accuracy.n_points == 12 * 16
    assert accuracy.off_grid is not None
    assert accuracy.off_grid.n_points == 12 * 15
    assert accuracy.n_zero_truth == 0

    assert report.provenance.duration_seconds == pytest.approx(10.0)
    assert report.provenance.created_at == "1970-01-01T00:16:40+00:00"


def test_inaccurate_model(spec: EmulatorSpec, build_training_set) -> None:
    report = _evaluate(spec, build_training_set(spec, mock_solvers.omega_cubed_times_k))
    assert report.max_relative_error > spec.accuracy.max_relative_error


def test_zero_truth_values_are_skipped(spec_config, build_training_set) -> None:
    spec_config["outputs"] = {"profile": {"x": {"range": [-1.0, 1.0], "n_points": 5}}}
    spec = EmulatorSpec.from_config(spec_config)

    def _omega_times_x(parameters, outputs, config):
        return {name: parameters["Omega_b"] * np.asarray(axes["x"]) for name, axes in outputs.items()}

    report = _evaluate(spec, build_training_set(spec, _omega_times_x))
    accuracy = report.outputs["profile"]
    # x = 0 is a training node
    assert accuracy.n_zero_truth == 12
    assert accuracy.n_points == 12 * 4
    assert accuracy.off_grid.n_zero_truth == 0
    assert np.isfinite(report.max_relative_error)
    assert report.max_relative_error < 1e-8


def test_wrong_gradient_is_detected(monkeypatch, spec: EmulatorSpec, build_training_set) -> None:
    monkeypatch.setattr(polynomial, "gradient", lambda weights, settings, x: np.zeros((x.shape[0], 16, 1)))
    report = _evaluate(spec, build_training_set(spec))
    assert report.max_relative_error < 1e-8
    assert report.gradient_max_error == pytest.approx(1.0)


def test_no_heldout_examples(spec: EmulatorSpec, build_training_set) -> None:
    training_set = build_training_set(spec)
    training_set = attrs.evolve(training_set, examples=tuple(e for e in training_set.examples if not e.heldout))
    trained_model = train_model(training_set, spec)
    with pytest.raises(TrainingSetTooSmallError):
        evaluate_model(trained_model, training_set, spec, environment_fingerprint="env")


def test_report_serialization(spec: EmulatorSpec, build_training_set) -> None:
    report = _evaluate(spec, build_training_set(spec), clock=lambda: 1000.0)
    assert AccuracyReport.from_dict(json.loads(json.dumps(report.to_dict()))) == report

    without_provenance = report.to_dict(include_provenance=False)
    assert "provenance" not in without_provenance
    assert AccuracyReport.from_dict(without_provenance) == attrs.evolve(report, provenance=None)
