"""Scrambled Sobol sequence."""

from __future__ import annotations

import warnings

import numpy as np
import numpy.typing as npt
from scipy.stats import qmc

_register_name = "sobol"


def draw(n_samples: int, n_dimensions: int, seed: int) -> npt.NDArray[np.float64]:
    sampler = qmc.Sobol(d=n_dimensions, scramble=True, seed=seed)
    with warnings.catch_warnings():
        # Sample counts which are not powers of two are fine for our purposes.
        warnings.filterwarnings("ignore", message="The balance properties of Sobol", category=UserWarning)
        return sampler.random(n_samples)
