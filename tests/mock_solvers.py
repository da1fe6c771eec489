"""Deterministic solvers used in the tests.

They follow the python solver convention `function(parameters, outputs, config)`, so they can be
referenced from a spec as e.g. `python:tests.mock_solvers:omega_times_k`.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Mapping
from typing import Any

import numpy as np

from emulator_build.exceptions import PermanentExecutionError, TransientExecutionError


def omega_times_k(parameters: Mapping[str, float], outputs: Mapping[str, Any], config: Mapping[str, Any]) -> dict:
    """f(Omega_b, k) = Omega_b * k"""
    return {name: parameters["Omega_b"] * np.asarray(axes["k"]) for name, axes in outputs.items()}


def omega_cubed_times_k(parameters: Mapping[str, float], outputs: Mapping[str, Any], config: Mapping[str, Any]) -> dict:
    """Not representable by a linear polynomial in Omega_b."""
    return {name: np.exp(100 * parameters["Omega_b"]) * np.asarray(axes["k"]) for name, axes in outputs.items()}


def smooth_two_parameters(
    parameters: Mapping[str, float], outputs: Mapping[str, Any], config: Mapping[str, Any]
) -> dict:
    """Smooth, strictly positive function of two parameters along one axis."""
    a, b = parameters["a"], parameters["b"]
    return {
        name: (1.5 + np.sin(2 * a) * np.cos(b)) * (1 + np.asarray(axes["z"]) ** 2)
        for name, axes in outputs.items()
    }


def rejects_large_omega(parameters: Mapping[str, float], outputs: Mapping[str, Any], config: Mapping[str, Any]) -> dict:
    threshold = config.get("max_omega", 0.03)
    if parameters["Omega_b"] > threshold:
        msg = f"Omega_b={parameters['Omega_b']} is unphysical"
        raise PermanentExecutionError(msg)
    return omega_times_k(parameters, outputs, config)


class CountingSolver:
    """Wraps a solver, counting the calls per parameter point.

    Args:
        function: Solver to wrap.
        n_transient_failures: Number of transient failures before every parameter point succeeds.
        delay: Seconds to sleep in each call.
    """

    def __init__(self, function=omega_times_k, n_transient_failures: int = 0, delay: float = 0.0) -> None:
        self.function = function
        self.n_transient_failures = n_transient_failures
        self.delay = delay
        self.calls: Counter[tuple[float, ...]] = Counter()
        self._lock = threading.Lock()

    @property
    def n_calls(self) -> int:
        return sum(self.calls.values())

    def __call__(self, parameters: Mapping[str, float], outputs: Mapping[str, Any], config: Mapping[str, Any]) -> dict:
        key = tuple(parameters.values())
        with self._lock:
            self.calls[key] += 1
            attempt = self.calls[key]
        if self.delay:
            time.sleep(self.delay)
        if attempt <= self.n_transient_failures:
            msg = f"Transient failure {attempt} at {parameters}"
            raise TransientExecutionError(msg)
        return self.function(parameters, outputs, config)
