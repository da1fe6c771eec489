"""Run a python function in-process.

Environment reference: `python:package.module:function`. The function is called as
`function(parameters, outputs, config)`, where `parameters` maps names to values and `outputs`
maps output names to the requested axis nodes. It returns a mapping of output name to values.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Mapping
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt

from emulator_build import helpers
from emulator_build.exceptions import InvalidSpecError
from emulator_build.execution import base as execution_base

logger = logging.getLogger(__name__)

_register_name = "python"


def _split_reference(environment: str) -> tuple[str, str]:
    scheme, _, target = environment.partition(":")
    module_name, _, function_name = target.partition(":")
    if scheme != _register_name or not module_name or not function_name:
        msg = f"Expected 'python:package.module:function', got '{environment}'"
        raise InvalidSpecError(msg)
    return module_name, function_name


def load_function(environment: str) -> execution_base.SolverFunction:
    module_name, function_name = _split_reference(environment)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Could not import solver module '{module_name}'"
        raise InvalidSpecError(msg) from e
    function = getattr(module, function_name, None)
    if not callable(function):
        msg = f"Solver module '{module_name}' does not have a callable '{function_name}'"
        raise InvalidSpecError(msg)
    return function


@attrs.define
class PythonFunctionAdapter:
    """Call the referenced function in-process.

    NOTE: In-process calls can't be interrupted, so the build timeout doesn't apply.
    """

    _functions: dict[str, execution_base.SolverFunction] = attrs.field(factory=dict)

    def _function(self, environment: str) -> execution_base.SolverFunction:
        if environment not in self._functions:
            self._functions[environment] = load_function(environment)
        return self._functions[environment]

    def fingerprint(self, environment: str) -> str:
        """Hash of the reference and of the source file which defines the function."""
        function = self._function(environment)
        try:
            source_file = inspect.getsourcefile(function)
        except TypeError:
            source_file = None
        source = b""
        if source_file is not None:
            with open(source_file, "rb") as f:
                source = f.read()
        return helpers.sha256_digest(environment.encode() + b"\0" + source)

    def run(
        self,
        environment: str,
        config: Mapping[str, Any],
        sample_point: Mapping[str, float],
        requested_outputs: execution_base.RequestedOutputs,
    ) -> dict[str, npt.NDArray[np.float64]]:
        return execution_base.call_solver(self._function(environment), sample_point, requested_outputs, config)


def create_adapter(timeout: float | None = None, **kwargs: Any) -> PythonFunctionAdapter:
    if timeout is not None:
        logger.info("The timeout is not applied to in-process python solvers")
    return PythonFunctionAdapter()
