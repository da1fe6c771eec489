"""Fixtures for the test suite."""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

import pytest

from emulator_build.cache import InMemoryExampleStore
from emulator_build.execution.base import CallableAdapter
from emulator_build.sampling import sample_parameters
from emulator_build.spec import EmulatorSpec
from emulator_build.training_set import TrainingSet, TrainingSetBuilder

from tests import mock_solvers

_base_config: dict[str, Any] = {
    "name": "linear_matter_power",
    "author": "Test Author",
    "container": "python:tests.mock_solvers:omega_times_k",
    "config": {"z": 0.0},
    "emulator_fn": {"type": "polynomial", "params": {"degree": 1}},
    "training": {"type": "least_squares", "params": {}},
    "parameters": {"Omega_b": [0.01, 0.05]},
    "outputs": {"linear_matter_power": {"k": {"range": [1.0e-4, 1.0e2], "n_points": 16}}},
    "sampling": {"strategy": "sobol", "n_samples": 64, "seed": 0},
    "accuracy": {"max_relative_error": 1.0e-3},
    "build": {"max_workers": 4, "retry": {"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0, "jitter": 0.0}},
}


@pytest.fixture
def spec_config() -> dict[str, Any]:
    """Spec document for f(Omega_b, k) = Omega_b * k, which a linear polynomial reproduces exactly."""
    return copy.deepcopy(_base_config)


@pytest.fixture
def spec(spec_config: dict[str, Any]) -> EmulatorSpec:
    return EmulatorSpec.from_config(spec_config)


@pytest.fixture
def smooth_spec_config() -> dict[str, Any]:
    """Two parameters, linear output axis."""
    config = copy.deepcopy(_base_config)
    config.update(
        {
            "name": "smooth",
            "container": "python:tests.mock_solvers:smooth_two_parameters",
            "parameters": {"a": [0.0, 1.0], "b": [-0.5, 0.5]},
            "outputs": {"growth": {"z": {"range": [0.0, 2.0], "n_points": 5}}},
            "sampling": {"n_samples": 40, "seed": 1},
        }
    )
    return config


@pytest.fixture
def sleeps() -> list[float]:
    """Records the requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def build_training_set(sleeps: list[float]) -> Callable[..., TrainingSet]:
    def _build(spec: EmulatorSpec, function: Callable[..., Any] = mock_solvers.omega_times_k) -> TrainingSet:
        samples = sample_parameters(
            spec.parameters, spec.sampling.n_samples, strategy=spec.sampling.strategy, seed=spec.sampling.seed
        )
        builder = TrainingSetBuilder(adapter=CallableAdapter(function), store=InMemoryExampleStore(), sleep=sleeps.append)
        return builder.build(spec, samples)

    return _build
