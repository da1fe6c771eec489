"""Run the solver as a subprocess which speaks JSON over stdin / stdout.

Protocol:
 - stdin: `{"config": {...}, "parameters": {name: value}, "outputs": {name: {axis: [nodes]}}}`
 - stdout: `{"outputs": {name: nested lists}}` on success, or
   `{"error": {"kind": "transient" | "permanent", "message": "..."}}`.

A timeout, a transient error response, an unparsable response or an unexpected exit code
is transient. An exit code in `permanent_exit_codes` or a permanent error response is permanent.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt

from emulator_build import helpers
from emulator_build.exceptions import PermanentExecutionError, TransientExecutionError
from emulator_build.execution import base as execution_base

logger = logging.getLogger(__name__)


def _tail(text: str, n_characters: int = 500) -> str:
    text = text.strip()
    return text if len(text) <= n_characters else f"...{text[-n_characters:]}"


@attrs.define
class ProcessAdapter:
    """Execution adapter for solvers run as a subprocess.

    Attributes:
        command: Builds the command line from the environment reference.
        environment_fingerprint: Computes the environment fingerprint from the environment reference.
        timeout: Timeout for a single invocation in seconds. None disables it.
        permanent_exit_codes: Exit codes which signal that the solver rejects the parameter point.
    """

    command: Callable[[str], Sequence[str]]
    environment_fingerprint: Callable[[str], str]
    timeout: float | None = None
    permanent_exit_codes: tuple[int, ...] = (2,)

    def fingerprint(self, environment: str) -> str:
        return self.environment_fingerprint(environment)

    def run(
        self,
        environment: str,
        config: Mapping[str, Any],
        sample_point: Mapping[str, float],
        requested_outputs: execution_base.RequestedOutputs,
    ) -> dict[str, npt.NDArray[np.float64]]:
        request = helpers.to_builtin(
            {
                "config": config,
                "parameters": sample_point,
                "outputs": {name: dict(axes) for name, axes in requested_outputs.items()},
            }
        )
        command = list(self.command(environment))
        try:
            completed = subprocess.run(
                command,
                input=json.dumps(request),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            msg = f"Solver timed out after {self.timeout} s"
            raise TransientExecutionError(msg) from e
        except FileNotFoundError as e:
            msg = f"Solver command not found: {command[0]}"
            raise PermanentExecutionError(msg) from e
        except OSError as e:
            msg = f"Could not start the solver: {e}"
            raise TransientExecutionError(msg) from e

        if completed.returncode in self.permanent_exit_codes:
            msg = f"Solver rejected the parameter point (exit code {completed.returncode}): {_tail(completed.stderr)}"
            raise PermanentExecutionError(msg)

        response = None
        try:
            response = json.loads(completed.stdout) if completed.stdout.strip() else None
        except json.JSONDecodeError:
            logger.debug(f"Unparsable solver response: {_tail(completed.stdout)}")
        if isinstance(response, Mapping) and isinstance(response.get("error"), Mapping):
            error = response["error"]
            message = str(error.get("message", "solver error"))
            if error.get("kind") == "permanent":
                raise PermanentExecutionError(message)
            raise TransientExecutionError(message)
        if completed.returncode != 0:
            msg = f"Solver exited with code {completed.returncode}: {_tail(completed.stderr)}"
            raise TransientExecutionError(msg)
        if not isinstance(response, Mapping) or "outputs" not in response:
            msg = f"Malformed solver response: {_tail(completed.stdout)}"
            raise TransientExecutionError(msg)
        return execution_base.coerce_outputs(response["outputs"])
