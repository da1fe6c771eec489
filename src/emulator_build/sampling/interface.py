"""Draw parameter samples with one of the registered sampling strategies."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import ModuleType
from typing import Any

import numpy as np

from emulator_build import register_modules
from emulator_build.exceptions import InvalidDomainError, InvalidSpecError
from emulator_build.sampling.base import ParameterSample
from emulator_build.spec import ParameterDomain

logger = logging.getLogger(__name__)

_strategies: dict[str, ModuleType] = {}


def available_strategies() -> list[str]:
    return sorted(_strategies)


def sample_parameters(
    domain: ParameterDomain | Mapping[str, Any], n_samples: int, *, strategy: str = "sobol", seed: int = 0
) -> list[ParameterSample]:
    """Deterministically sample the parameter domain.

    The samples for (domain, strategy, seed, N) are a prefix of the samples for
    (domain, strategy, seed, N + k), so growing the sample set keeps the existing points
    (and their cached evaluations).

    Args:
        domain: Parameter domain, or a mapping of name -> [min, max].
        n_samples: Number of samples.
        strategy: Name of the sampling strategy. Default: "sobol".
        seed: Seed of the sampling strategy. Default: 0.
    Returns:
        Samples, ordered by index.
    """
    if not isinstance(domain, ParameterDomain):
        domain = ParameterDomain.from_config(domain)
    if isinstance(n_samples, bool) or not isinstance(n_samples, (int, np.integer)) or n_samples < 1:
        msg = f"The number of samples must be a positive integer, got {n_samples!r}"
        raise InvalidDomainError(msg)
    try:
        module = _strategies[strategy]
    except KeyError as e:
        msg = f"Sampling strategy '{strategy}' not registered or available. Options: {available_strategies()}"
        raise InvalidSpecError(msg) from e

    unit = np.asarray(module.draw(n_samples=int(n_samples), n_dimensions=domain.n_dimensions, seed=seed))
    values = domain.from_unit(unit)
    # Guard against rounding at the upper edges.
    values = np.clip(values, domain.lower, domain.upper)
    logger.debug(f"Drew {n_samples} samples with strategy '{strategy}' ({seed=})")
    return [
        ParameterSample(
            index=i,
            names=domain.names,
            values=tuple(float(v) for v in row),
            strategy=strategy,
            seed=seed,
        )
        for i, row in enumerate(values)
    ]


# Actually perform the discovery and registration of the sampling strategies
if not _strategies:
    _strategies.update(
        register_modules.discover_and_register_modules(
            calling_module_name=__name__,
            required_attributes=["draw"],
        )
    )
