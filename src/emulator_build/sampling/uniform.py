"""Independent uniform draws."""

from __future__ import annotations

import numpy as np
import numpy.typing as npt

_register_name = "uniform"


def draw(n_samples: int, n_dimensions: int, seed: int) -> npt.NDArray[np.float64]:
    # Rows are generated in order, so the first rows don't depend on the total.
    return np.random.default_rng(seed).random((n_samples, n_dimensions))
