"""Parameter sampling for the emulator build pipeline.

Draws deterministic, space-filling samples of a parameter domain. The sampling strategies
(sobol, halton, uniform) are registered from the modules in this package.

For further information, see the documentation in `sampling.interface`.
"""

from __future__ import annotations

from emulator_build.sampling.base import ParameterSample  # noqa: F401
from emulator_build.sampling.interface import (  # noqa: F401
    available_strategies,
    sample_parameters,
)
