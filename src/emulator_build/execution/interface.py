"""Resolve the execution adapter for an environment reference.

The adapter is chosen by the scheme of the reference (e.g. `docker:`, `local:`, `python:`).
Adapters are registered from the modules in this package.
"""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any

from emulator_build import register_modules
from emulator_build.exceptions import InvalidSpecError
from emulator_build.execution.base import ExecutionAdapter

logger = logging.getLogger(__name__)

_adapters: dict[str, ModuleType] = {}


def available_schemes() -> list[str]:
    return sorted(_adapters)


def resolve_adapter(environment: str, **kwargs: Any) -> ExecutionAdapter:
    """Create the adapter for an environment reference.

    Args:
        environment: Environment reference, e.g. `docker:solver:1.0`.
        kwargs: Adapter options (e.g. `timeout`, `permanent_exit_codes`).
    Returns:
        Execution adapter.
    """
    scheme, separator, _ = environment.partition(":")
    if not separator or scheme not in _adapters:
        msg = f"Unsupported environment reference '{environment}'. Supported schemes: {available_schemes()}"
        raise InvalidSpecError(msg)
    adapter = _adapters[scheme].create_adapter(**kwargs)
    logger.debug(f"Resolved {type(adapter).__name__} for '{environment}'")
    return adapter


# Actually perform the discovery and registration of the adapters
if not _adapters:
    _adapters.update(
        register_modules.discover_and_register_modules(
            calling_module_name=__name__,
            required_attributes=["create_adapter"],
            skip_modules=("base", "interface", "process"),
        )
    )
