"""Run the solver as a local command.

Environment reference: `local:command [args...]`. The command reads the request from stdin
(see `execution.process`).
"""

from __future__ import annotations

import logging
import shlex
import shutil
from pathlib import Path
from typing import Any

from emulator_build import helpers
from emulator_build.exceptions import InvalidSpecError
from emulator_build.execution.process import ProcessAdapter

logger = logging.getLogger(__name__)

_register_name = "local"


def local_command(environment: str) -> list[str]:
    command = shlex.split(environment.partition(":")[2])
    if not command:
        msg = f"Expected 'local:command [args...]', got '{environment}'"
        raise InvalidSpecError(msg)
    return command


def command_fingerprint(environment: str) -> str:
    """Hash of the executable contents and of the full command line."""
    command = local_command(environment)
    executable = shutil.which(command[0])
    contents = b""
    if executable is not None:
        contents = Path(executable).read_bytes()
    else:
        logger.warning(f"Could not find executable '{command[0]}'. Fingerprinting the command line only")
    return helpers.sha256_digest(contents + b"\0" + helpers.canonical_json(command))


def create_adapter(
    timeout: float | None = None, permanent_exit_codes: tuple[int, ...] = (2,), **kwargs: Any
) -> ProcessAdapter:
    return ProcessAdapter(
        command=local_command,
        environment_fingerprint=command_fingerprint,
        timeout=timeout,
        permanent_exit_codes=permanent_exit_codes,
    )
