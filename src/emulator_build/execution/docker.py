"""Run the solver in a container image with docker.

Environment reference: `docker:image[:tag]`. The container reads the request from stdin
(see `execution.process`).
"""

from __future__ import annotations

import logging
import subprocess
from typing import Any

from emulator_build import helpers
from emulator_build.execution.process import ProcessAdapter

logger = logging.getLogger(__name__)

_register_name = "docker"


def image_name(environment: str) -> str:
    return environment.partition(":")[2]


def docker_command(environment: str) -> list[str]:
    return ["docker", "run", "--rm", "-i", image_name(environment)]


def image_fingerprint(environment: str) -> str:
    """Fingerprint from the image id, falling back to the image reference if docker can't resolve it."""
    image = image_name(environment)
    identity = image
    try:
        completed = subprocess.run(
            ["docker", "image", "inspect", "--format", "{{.Id}}", image],
            capture_output=True,
            text=True,
            timeout=60,
            check=False,
        )
        if completed.returncode == 0 and completed.stdout.strip():
            identity = completed.stdout.strip()
        else:
            logger.warning(f"Could not inspect image '{image}'. Falling back to the image reference as fingerprint")
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not run docker ({e}). Falling back to the image reference as fingerprint")
    return helpers.sha256_digest(f"docker:{identity}".encode())


def create_adapter(
    timeout: float | None = None, permanent_exit_codes: tuple[int, ...] = (2,), **kwargs: Any
) -> ProcessAdapter:
    return ProcessAdapter(
        command=docker_command,
        environment_fingerprint=image_fingerprint,
        timeout=timeout,
        permanent_exit_codes=permanent_exit_codes,
    )
