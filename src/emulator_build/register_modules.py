"""Discover and register pluggable back ends (model families, sampling strategies, adapters).

A module in a back-end package opts in by defining a `_register_name` attribute. The
package's interface module calls `discover_and_register_modules(__name__, ...)` once at
import time and keeps the returned mapping as its registry.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
import sys
from collections.abc import Iterable
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_REGISTER_ATTRIBUTE = "_register_name"


class ValidationFunction(Protocol):
    def __call__(self, name: str, module: Any) -> None: ...


def validation_noop(name: str, module: Any) -> None: ...


def discover_and_register_modules(
    calling_module_name: str,
    required_attributes: Iterable[str],
    validation_function: ValidationFunction | None = None,
    fail_on_failed_validation: bool = True,
    skip_modules: Iterable[str] = ("base", "interface"),
) -> dict[str, ModuleType]:
    """Discover and register the modules that live next to the calling module.

    Args:
        calling_module_name: `__name__` of the module where this is being called.
        required_attributes: Attributes which must exist in every registered module.
        validation_function: Generic validation of a module to be registered. Issues are
            signaled by raising exceptions.
        fail_on_failed_validation: If True, a failed validation is fatal. Otherwise, it's
            logged and the module is skipped. Default: True.
        skip_modules: Module names which are never imported by the discovery (typically the
            modules which perform the registration). Default: ("base", "interface").
    Returns:
        Mapping from registration name to module.
    """
    if validation_function is None:
        validation_function = validation_noop
    required = [*required_attributes, _REGISTER_ATTRIBUTE]
    skip = set(skip_modules)

    calling_module = sys.modules[calling_module_name]
    package_dir = Path(getattr(calling_module, "__file__", "")).parent
    # For a package __init__, __package__ is the package itself. For a module, it's the parent.
    package_name = getattr(calling_module, "__package__", None) or calling_module_name.rpartition(".")[0]

    registered: dict[str, ModuleType] = {}
    for module_info in pkgutil.iter_modules([str(package_dir)]):
        if module_info.name in skip or module_info.name.startswith("_") or module_info.ispkg:
            continue
        module = importlib.import_module(f".{module_info.name}", package_name)

        if not hasattr(module, _REGISTER_ATTRIBUTE):
            logger.debug(f"Skipping module {module_info.name} (not registrable)")
            continue

        missing = [attr for attr in required if not hasattr(module, attr)]
        if missing:
            msg = f"Module {module_info.name} requested registration, but is missing attributes: {missing}"
            raise ValueError(msg)

        name = module._register_name
        if name in registered:
            msg = f"Duplicate registration name '{name}' ({registered[name].__name__}, {module.__name__})"
            raise ValueError(msg)
        try:
            validation_function(name=name, module=module)
        except Exception as e:
            if fail_on_failed_validation:
                msg = f"Failed validation of module {module_info.name} under name '{name}'"
                raise ValueError(msg) from e
            logger.exception(e)
            continue

        logger.debug(f"Registering module {name} from {module.__name__}")
        registered[name] = module

    return registered
