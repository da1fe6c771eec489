"""Emulation module for the emulator build pipeline.

This module provides the model families which replace an expensive solver with a
cheap, differentiable function of the parameters.

The concept is that a model family (e.g. polynomial, gaussian_process or mlp) is declared
in the emulator specification together with a compatible training procedure. The families
are registered from the modules in this package, and:
 - `parse_declarations()` validates the declarations when loading a specification.
 - `Emulator` reconstructs the callable emulator from a trained model.

For further information, see the documentation in `emulation.interface` and `emulation.base`.
"""

from __future__ import annotations

from emulator_build.emulation.base import (  # noqa: F401
    OutputTransform,
    TrainedModel,
    TrainingSettings,
)
from emulator_build.emulation.interface import (  # noqa: F401
    Emulator,
    ModelDeclaration,
    TrainingDeclaration,
    available_models,
    model_module,
    parse_declarations,
)
