"""Scrambled Halton sequence."""

from __future__ import annotations

import numpy as np
import numpy.typing as npt
from scipy.stats import qmc

_register_name = "halton"


def draw(n_samples: int, n_dimensions: int, seed: int) -> npt.NDArray[np.float64]:
    return qmc.Halton(d=n_dimensions, scramble=True, seed=seed).random(n_samples)
