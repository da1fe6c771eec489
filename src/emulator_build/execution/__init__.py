"""Solver execution for the emulator build pipeline.

Runs the solver for one parameter point inside the execution environment named by the
specification. The environment reference scheme selects the adapter:
 - `python:package.module:function`: in-process python function.
 - `docker:image[:tag]`: container image, run with docker.
 - `local:command [args...]`: local command.

For further information, see the documentation in `execution.base` and `execution.process`.
"""

from __future__ import annotations

from emulator_build.execution.base import (  # noqa: F401
    CallableAdapter,
    ExecutionAdapter,
    run_with_retries,
)
from emulator_build.execution.interface import (  # noqa: F401
    available_schemes,
    resolve_adapter,
)
