"""Base functionality for running the solver in an execution environment.

An execution adapter runs the solver inside the environment named by the specification
(container image, local command, python function) for one parameter point, and reports
failures as either transient (worth retrying) or permanent (the solver rejects the point).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

import attrs
import numpy as np
import numpy.typing as npt
import tenacity

from emulator_build.exceptions import ExecutionError, PermanentExecutionError, TransientExecutionError
from emulator_build.spec import RetrySettings

logger = logging.getLogger(__name__)

# Mapping of output name -> axis name -> requested nodes
RequestedOutputs = Mapping[str, Mapping[str, npt.NDArray[np.float64]]]
SolverFunction = Callable[[Mapping[str, float], RequestedOutputs, Mapping[str, Any]], Mapping[str, Any]]


@runtime_checkable
class ExecutionAdapter(Protocol):
    """Run the solver in an execution environment."""

    def fingerprint(self, environment: str) -> str:
        """Identity of the environment contents (e.g. the image digest), as a hex string."""
        ...

    def run(
        self,
        environment: str,
        config: Mapping[str, Any],
        sample_point: Mapping[str, float],
        requested_outputs: RequestedOutputs,
    ) -> dict[str, npt.NDArray[np.float64]]:
        """Evaluate the solver at a parameter point.

        Args:
            environment: Environment reference from the specification.
            config: Solver configuration.
            sample_point: Parameter name -> value.
            requested_outputs: Output name -> axis name -> nodes at which the output is requested.
        Returns:
            Output name -> values, with one dimension per axis (in the declared order).
        Raises:
            TransientExecutionError: If the failure may resolve by retrying.
            PermanentExecutionError: If the solver rejects the parameter point.
        """
        ...


def coerce_outputs(raw: Any) -> dict[str, npt.NDArray[np.float64]]:
    """Convert a solver response into arrays. Shapes and values are validated by the builder."""
    if not isinstance(raw, Mapping):
        msg = f"Solver returned {type(raw).__name__} instead of a mapping of outputs"
        raise PermanentExecutionError(msg)
    try:
        return {str(name): np.asarray(values, dtype=np.float64) for name, values in raw.items()}
    except (TypeError, ValueError) as e:
        msg = f"Solver returned non-numeric outputs: {e}"
        raise PermanentExecutionError(msg) from e


def call_solver(function: SolverFunction, *args: Any) -> dict[str, npt.NDArray[np.float64]]:
    """Call a solver function in-process, classifying the exceptions that it raises."""
    try:
        raw = function(*args)
    except ExecutionError:
        raise
    except (TimeoutError, ConnectionError) as e:
        msg = f"{type(e).__name__}: {e}"
        raise TransientExecutionError(msg) from e
    except Exception as e:
        msg = f"{type(e).__name__}: {e}"
        raise PermanentExecutionError(msg) from e
    return coerce_outputs(raw)


@attrs.define
class CallableAdapter:
    """Wrap a python callable `function(parameters, outputs, config)` as an execution adapter.

    Attributes:
        function: Solver function.
        fingerprint_value: Fixed fingerprint of the environment. Default: "callable".
    """

    function: SolverFunction
    fingerprint_value: str = "callable"

    def fingerprint(self, environment: str) -> str:
        return self.fingerprint_value

    def run(
        self,
        environment: str,
        config: Mapping[str, Any],
        sample_point: Mapping[str, float],
        requested_outputs: RequestedOutputs,
    ) -> dict[str, npt.NDArray[np.float64]]:
        return call_solver(self.function, sample_point, requested_outputs, config)


def run_with_retries(
    adapter: ExecutionAdapter,
    environment: str,
    config: Mapping[str, Any],
    sample_point: Mapping[str, float],
    requested_outputs: RequestedOutputs,
    settings: RetrySettings,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[dict[str, npt.NDArray[np.float64]], int]:
    """Run the solver, retrying transient failures with bounded exponential backoff.

    Args:
        adapter: Execution adapter.
        environment: Environment reference.
        config: Solver configuration.
        sample_point: Parameter name -> value.
        requested_outputs: Output name -> axis name -> nodes.
        settings: Retry settings.
        sleep: Sleep function. Default: time.sleep.
    Returns:
        Outputs, number of attempts.
    Raises:
        TransientExecutionError: If every attempt failed transiently.
        PermanentExecutionError: On the first permanent failure.
    """
    retrying = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(settings.max_attempts),
        wait=tenacity.wait_exponential(multiplier=settings.base_delay, max=settings.max_delay)
        + tenacity.wait_random(0, settings.jitter),
        retry=tenacity.retry_if_exception_type(TransientExecutionError),
        reraise=True,
        sleep=sleep,
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    )
    outputs = retrying(adapter.run, environment, config, sample_point, requested_outputs)
    return outputs, int(retrying.statistics.get("attempt_number", 1))
