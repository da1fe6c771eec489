from __future__ import annotations

import threading

import numpy as np
import pytest

from emulator_build import data_IO, helpers
from emulator_build.cache import (
    DirectoryExampleStore,
    ExampleFailure,
    ExampleKey,
    ExampleRecord,
    InMemoryExampleStore,
)
from emulator_build.exceptions import BuildCancelledError, TrainingSetDegradedError
from emulator_build.execution import CallableAdapter
from emulator_build.sampling import sample_parameters
from emulator_build.spec import EmulatorSpec
from emulator_build.training_set import TrainingSetBuilder

from tests import mock_solvers


def _samples(spec: EmulatorSpec, n_samples: int | None = None):
    return sample_parameters(
        spec.parameters,
        n_samples if n_samples is not None else spec.sampling.n_samples,
        strategy=spec.sampling.strategy,
        seed=spec.sampling.seed,
    )


def test_build(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver()
    builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=InMemoryExampleStore(), sleep=sleeps.append)
    training_set = builder.build(spec, _samples(spec))

    assert [e.sample.index for e in training_set.examples] == list(range(64))
    assert len(training_set.heldout_examples) == 12
    assert len(training_set.fit_examples) == 52
    assert training_set.failure_count == 0
    assert training_set.n_solver_calls == solver.n_calls == 64
    assert training_set.n_cache_hits == 0

    declaration = spec.outputs[0]
    example = training_set.examples[0]
    assert example.outputs["linear_matter_power"].shape == declaration.dense_shape
    features = training_set.features(training_set.fit_examples)
    assert features.shape == (52, 16)
    np.testing.assert_allclose(
        features[0], training_set.fit_examples[0].sample.values[0] * declaration.training_nodes()["k"]
    )


def test_rerun_uses_cache(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver()
    store = InMemoryExampleStore()
    first = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append).build(
        spec, _samples(spec)
    )
    assert solver.n_calls == 64

    second = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append).build(
        spec, _samples(spec)
    )
    assert solver.n_calls == 64
    assert second.n_solver_calls == 0
    assert second.n_cache_hits == 64
    assert all(e.from_cache for e in second.examples)
    for a, b in zip(first.examples, second.examples):
        np.testing.assert_array_equal(a.outputs["linear_matter_power"], b.outputs["linear_matter_power"])


def test_growing_the_sample_set_reuses_evaluations(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver()
    store = InMemoryExampleStore()
    builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append)
    small = builder.build(spec.with_n_samples(32), _samples(spec, 32))
    large = builder.build(spec, _samples(spec, 64))

    assert solver.n_calls == 64
    assert large.n_cache_hits == 32
    # The partition of the existing samples is unchanged
    assert [e.heldout for e in small.examples] == [e.heldout for e in large.examples[:32]]


def test_environment_change_invalidates_cache(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver()
    store = InMemoryExampleStore()
    samples = _samples(spec)
    TrainingSetBuilder(adapter=CallableAdapter(solver, "v1"), store=store, sleep=sleeps.append).build(spec, samples)
    TrainingSetBuilder(adapter=CallableAdapter(solver, "v2"), store=store, sleep=sleeps.append).build(spec, samples)
    assert solver.n_calls == 128


def test_concurrent_builders_share_evaluations(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver(delay=0.005)
    store = InMemoryExampleStore()
    samples = _samples(spec)
    results = []

    def _run() -> None:
        builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append)
        results.append(builder.build(spec, samples))

    threads = [threading.Thread(target=_run) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 3
    assert solver.n_calls == 64
    assert max(solver.calls.values()) == 1
    assert sum(r.n_solver_calls for r in results) == 64


def test_single_flight_fill() -> None:
    store = InMemoryExampleStore()
    key = ExampleKey(evaluation_fingerprint="spec", index=0, environment_fingerprint="env")
    started = threading.Event()
    release = threading.Event()
    n_computed = []

    def _compute() -> ExampleRecord:
        n_computed.append(1)
        started.set()
        release.wait(timeout=5)
        return ExampleRecord(outputs={"p": np.ones(3)})

    results = []
    leader = threading.Thread(target=lambda: results.append(store.fill(key, _compute)))
    leader.start()
    started.wait(timeout=5)
    follower = threading.Thread(target=lambda: results.append(store.fill(key, _compute)))
    follower.start()
    release.set()
    leader.join()
    follower.join()

    assert len(n_computed) == 1
    assert sorted(computed for _, computed in results) == [False, True]


def test_store_is_append_only() -> None:
    store = InMemoryExampleStore()
    key = ExampleKey(evaluation_fingerprint="spec", index=0, environment_fingerprint="env")
    store.put(key, ExampleRecord(outputs={"p": np.ones(2)}))
    store.put(key, ExampleRecord(outputs={"p": np.zeros(2)}))
    np.testing.assert_array_equal(store.get(key).outputs["p"], np.ones(2))

    # Transient failures are never stored
    other = ExampleKey(evaluation_fingerprint="spec", index=1, environment_fingerprint="env")
    store.put(other, ExampleRecord(failure=ExampleFailure(kind="transient", message="timeout")))
    assert store.get(other) is None
    assert len(store) == 1


def test_directory_store(tmp_path, spec_config, sleeps) -> None:
    # The 16 Sobol points stratify the domain, so exactly two of them fall above the threshold.
    spec_config["config"]["max_omega"] = 0.045
    spec_config["sampling"]["n_samples"] = 16
    spec_config["build"]["max_failure_fraction"] = 0.5
    spec = EmulatorSpec.from_config(spec_config)
    solver = mock_solvers.CountingSolver(function=mock_solvers.rejects_large_omega)
    samples = _samples(spec)

    first = TrainingSetBuilder(
        adapter=CallableAdapter(solver), store=DirectoryExampleStore(tmp_path / "cache"), sleep=sleeps.append
    ).build(spec, samples)
    n_calls = solver.n_calls
    assert n_calls == 16
    assert first.failure_count == 2

    # A new store on the same directory sees every evaluation, including the permanent failures.
    second = TrainingSetBuilder(
        adapter=CallableAdapter(solver), store=DirectoryExampleStore(tmp_path / "cache"), sleep=sleeps.append
    ).build(spec, samples)
    assert solver.n_calls == n_calls
    assert second.failure_count == first.failure_count
    assert [e.failure for e in second.examples] == [e.failure for e in first.examples]
    for a, b in zip(first.fit_examples, second.fit_examples):
        np.testing.assert_array_equal(a.outputs["linear_matter_power"], b.outputs["linear_matter_power"])


def test_directory_stores_share_evaluations(tmp_path, spec_config, sleeps) -> None:
    spec_config["sampling"]["n_samples"] = 16
    spec = EmulatorSpec.from_config(spec_config)
    solver = mock_solvers.CountingSolver(delay=0.05)
    samples = _samples(spec)
    results = []

    def _run() -> None:
        # Each builder has its own store on the same directory
        store = DirectoryExampleStore(tmp_path / "cache")
        builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append)
        results.append(builder.build(spec, samples))

    threads = [threading.Thread(target=_run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 2
    assert solver.n_calls == 16
    assert max(solver.calls.values()) == 1
    assert sum(r.n_solver_calls for r in results) == 16
    assert sum(r.n_cache_hits for r in results) == 16


def test_transient_failures_are_retried(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver(n_transient_failures=2)
    training_set = TrainingSetBuilder(
        adapter=CallableAdapter(solver), store=InMemoryExampleStore(), sleep=sleeps.append
    ).build(spec, _samples(spec))
    assert training_set.failure_count == 0
    assert solver.n_calls == 3 * 64
    assert len(sleeps) == 2 * 64


def test_exhausted_retries_are_not_cached(spec_config, sleeps) -> None:
    spec_config["build"]["retry"]["max_attempts"] = 2
    spec_config["build"]["max_failure_fraction"] = 0.5
    spec = EmulatorSpec.from_config(spec_config)
    solver = mock_solvers.CountingSolver(n_transient_failures=2)
    store = InMemoryExampleStore()
    builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=store, sleep=sleeps.append)

    with pytest.raises(TrainingSetDegradedError) as exc_info:
        builder.build(spec, _samples(spec))
    assert exc_info.value.n_failed == 64
    assert len(store) == 0

    # The next attempt for every sample succeeds
    training_set = builder.build(spec, _samples(spec))
    assert training_set.failure_count == 0
    assert solver.n_calls == 3 * 64


def test_permanent_failures_are_recorded(spec_config, sleeps) -> None:
    spec_config["config"]["max_omega"] = 0.045
    spec_config["build"]["max_failure_fraction"] = 0.5
    spec = EmulatorSpec.from_config(spec_config)
    solver = mock_solvers.CountingSolver(function=mock_solvers.rejects_large_omega)
    training_set = TrainingSetBuilder(
        adapter=CallableAdapter(solver), store=InMemoryExampleStore(), sleep=sleeps.append
    ).build(spec, _samples(spec))

    rejected = [e for e in training_set.examples if e.sample.values[0] > 0.045]
    assert rejected
    assert all(e.failure is not None and e.failure.kind == "permanent" for e in rejected)
    assert training_set.failure_count == len(rejected)
    # No retries for permanent failures
    assert solver.n_calls == 64
    assert sleeps == []


def test_failure_threshold(spec: EmulatorSpec, sleeps) -> None:
    solver = mock_solvers.CountingSolver(function=mock_solvers.rejects_large_omega)
    builder = TrainingSetBuilder(adapter=CallableAdapter(solver), store=InMemoryExampleStore(), sleep=sleeps.append)
    with pytest.raises(TrainingSetDegradedError) as exc_info:
        builder.build(spec, _samples(spec))
    assert exc_info.value.n_total == 64
    assert exc_info.value.n_failed / 64 > spec.build.max_failure_fraction


def test_invalid_outputs_are_permanent_failures(spec_config, sleeps) -> None:
    spec_config["build"]["max_failure_fraction"] = 0.9
    spec = EmulatorSpec.from_config(spec_config)

    def _wrong_shape(parameters, outputs, config):
        values = mock_solvers.omega_times_k(parameters, outputs, config)
        if parameters["Omega_b"] > 0.04:
            return {name: v[:-1] for name, v in values.items()}
        if parameters["Omega_b"] < 0.015:
            return {name: v * np.nan for name, v in values.items()}
        return values

    training_set = TrainingSetBuilder(
        adapter=CallableAdapter(_wrong_shape), store=InMemoryExampleStore(), sleep=sleeps.append
    ).build(spec, _samples(spec))
    messages = [e.failure.message for e in training_set.failures]
    assert any("shape" in m for m in messages)
    assert any("non-finite" in m for m in messages)


def test_cancellation_stops_dispatch(spec_config, sleeps) -> None:
    spec_config["build"]["max_workers"] = 1
    spec = EmulatorSpec.from_config(spec_config)
    token = helpers.CancellationToken()
    solver = mock_solvers.CountingSolver()

    def _cancel_on_fifth_call(parameters, outputs, config):
        result = solver(parameters, outputs, config)
        if solver.n_calls == 5:
            token.cancel()
        return result

    store = InMemoryExampleStore()
    builder = TrainingSetBuilder(adapter=CallableAdapter(_cancel_on_fifth_call), store=store, sleep=sleeps.append)
    with pytest.raises(BuildCancelledError):
        builder.build(spec, _samples(spec), cancellation=token)
    # The in-flight evaluation completes, and nothing else is dispatched.
    assert solver.n_calls == 5
    assert len(store) == 5


def test_export_training_set(tmp_path, spec: EmulatorSpec, build_training_set) -> None:
    training_set = build_training_set(spec)
    data_IO.write_training_set(training_set, tmp_path)
    exported = data_IO.read_training_set(tmp_path)
    assert exported["design"].shape == (64, 1)
    assert exported["parameter_names"] == ["Omega_b"]
    assert exported["failures"] == []
    assert np.count_nonzero(exported["heldout"]) == 12
    assert exported["outputs"]["linear_matter_power"].shape == (64, 31)
