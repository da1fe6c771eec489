from __future__ import annotations

import shlex
import sys
import textwrap

import numpy as np
import pytest

from emulator_build.exceptions import InvalidSpecError, PermanentExecutionError, TransientExecutionError
from emulator_build.execution import CallableAdapter, available_schemes, resolve_adapter, run_with_retries
from emulator_build.execution.base import call_solver
from emulator_build.execution.process import ProcessAdapter
from emulator_build.spec import RetrySettings

from tests import mock_solvers

_requested = {"linear_matter_power": {"k": np.array([0.1, 1.0, 10.0])}}

_solver_script = textwrap.dedent(
    """
    import json
    import sys

    request = json.load(sys.stdin)
    omega = request["parameters"]["Omega_b"]
    if omega > 0.03:
        print("unphysical", file=sys.stderr)
        sys.exit(2)
    if omega < 0.015:
        print(json.dumps({"error": {"kind": "transient", "message": "license server unavailable"}}))
        sys.exit(0)
    outputs = {name: [omega * k for k in axes["k"]] for name, axes in request["outputs"].items()}
    print(json.dumps({"outputs": outputs}))
    """
)


def test_available_schemes() -> None:
    assert available_schemes() == ["docker", "local", "python"]


def test_unsupported_scheme() -> None:
    with pytest.raises(InvalidSpecError):
        resolve_adapter("singularity:solver.sif")


def test_python_adapter() -> None:
    environment = "python:tests.mock_solvers:omega_times_k"
    adapter = resolve_adapter(environment)
    outputs = adapter.run(environment, {}, {"Omega_b": 0.02}, _requested)
    np.testing.assert_allclose(outputs["linear_matter_power"], [0.002, 0.02, 0.2])
    fingerprint = adapter.fingerprint(environment)
    assert fingerprint == adapter.fingerprint(environment)
    assert fingerprint != adapter.fingerprint("python:tests.mock_solvers:rejects_large_omega")


def test_python_adapter_unknown_function() -> None:
    adapter = resolve_adapter("python:tests.mock_solvers:does_not_exist")
    with pytest.raises(InvalidSpecError):
        adapter.fingerprint("python:tests.mock_solvers:does_not_exist")


def test_call_solver_classifies_exceptions() -> None:
    def _timeout(*args):
        raise TimeoutError("took too long")

    def _crash(*args):
        raise ZeroDivisionError("division by zero")

    with pytest.raises(TransientExecutionError, match="took too long"):
        call_solver(_timeout, {}, {}, {})
    with pytest.raises(PermanentExecutionError, match="ZeroDivisionError"):
        call_solver(_crash, {}, {}, {})
    with pytest.raises(PermanentExecutionError):
        call_solver(lambda *args: [1, 2, 3], {}, {}, {})


def test_retries_transient_failures() -> None:
    solver = mock_solvers.CountingSolver(n_transient_failures=2)
    sleeps: list[float] = []
    outputs, attempts = run_with_retries(
        CallableAdapter(solver),
        "python:mock",
        {},
        {"Omega_b": 0.02},
        _requested,
        settings=RetrySettings(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=0.0),
        sleep=sleeps.append,
    )
    assert attempts == 3
    assert solver.n_calls == 3
    assert len(sleeps) == 2
    # Exponential backoff
    assert sleeps[1] > sleeps[0] > 0
    np.testing.assert_allclose(outputs["linear_matter_power"], [0.002, 0.02, 0.2])


def test_retries_are_bounded() -> None:
    solver = mock_solvers.CountingSolver(n_transient_failures=10)
    sleeps: list[float] = []
    with pytest.raises(TransientExecutionError):
        run_with_retries(
            CallableAdapter(solver),
            "python:mock",
            {},
            {"Omega_b": 0.02},
            _requested,
            settings=RetrySettings(max_attempts=4, base_delay=0.5, max_delay=1.0, jitter=0.1),
            sleep=sleeps.append,
        )
    assert solver.n_calls == 4
    assert len(sleeps) == 3
    assert all(s <= 1.1 for s in sleeps)


def test_permanent_failures_are_not_retried() -> None:
    solver = mock_solvers.CountingSolver(function=mock_solvers.rejects_large_omega)
    sleeps: list[float] = []
    with pytest.raises(PermanentExecutionError, match="unphysical"):
        run_with_retries(
            CallableAdapter(solver),
            "python:mock",
            {},
            {"Omega_b": 0.04},
            _requested,
            settings=RetrySettings(),
            sleep=sleeps.append,
        )
    assert solver.n_calls == 1
    assert sleeps == []


@pytest.fixture
def local_environment(tmp_path) -> str:
    script = tmp_path / "solver.py"
    script.write_text(_solver_script)
    return f"local:{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def test_local_adapter(local_environment: str) -> None:
    adapter = resolve_adapter(local_environment, timeout=60)
    assert isinstance(adapter, ProcessAdapter)

    outputs = adapter.run(local_environment, {"z": 0}, {"Omega_b": 0.02}, _requested)
    np.testing.assert_allclose(outputs["linear_matter_power"], [0.002, 0.02, 0.2])

    with pytest.raises(PermanentExecutionError, match="exit code 2"):
        adapter.run(local_environment, {}, {"Omega_b": 0.04}, _requested)
    with pytest.raises(TransientExecutionError, match="license server"):
        adapter.run(local_environment, {}, {"Omega_b": 0.01}, _requested)

    assert adapter.fingerprint(local_environment) == adapter.fingerprint(local_environment)
    assert adapter.fingerprint(local_environment) != adapter.fingerprint(f"{local_environment} --fast")


def test_process_adapter_failures() -> None:
    def _command(script: str):
        return lambda environment: [sys.executable, "-c", script]

    adapter = ProcessAdapter(command=_command("import sys; sys.exit(3)"), environment_fingerprint=str)
    with pytest.raises(TransientExecutionError, match="exited with code 3"):
        adapter.run("local:x", {}, {"Omega_b": 0.02}, _requested)

    adapter = ProcessAdapter(command=_command("print('not json')"), environment_fingerprint=str)
    with pytest.raises(TransientExecutionError, match="Malformed"):
        adapter.run("local:x", {}, {"Omega_b": 0.02}, _requested)

    adapter = ProcessAdapter(command=_command("import time; time.sleep(10)"), environment_fingerprint=str, timeout=0.5)
    with pytest.raises(TransientExecutionError, match="timed out"):
        adapter.run("local:x", {}, {"Omega_b": 0.02}, _requested)

    adapter = ProcessAdapter(
        command=lambda environment: ["/nonexistent/solver-binary"], environment_fingerprint=str
    )
    with pytest.raises(PermanentExecutionError, match="not found"):
        adapter.run("local:x", {}, {"Omega_b": 0.02}, _requested)
