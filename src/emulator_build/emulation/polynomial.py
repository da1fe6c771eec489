"""Polynomial response surface, fit by (optionally regularized) linear least squares.

The latent outputs are modeled as a full polynomial of the given degree in the
normalized parameters. Since the fit is closed form, training converges in a single epoch.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt
import sklearn.linear_model as sklearn_linear_model
import sklearn.preprocessing as sklearn_preprocessing

from emulator_build.emulation import base as emulation_base
from emulator_build.exceptions import InvalidSpecError

logger = logging.getLogger(__name__)

_register_name = "polynomial"
training_type = "least_squares"
supported_objectives = ("mse",)
default_training = {"max_epochs": 1, "patience": 1}


@attrs.frozen
class ModelSettings:
    base_settings: emulation_base.BaseModelSettings
    degree: int = 1

    def __attrs_post_init__(self) -> None:
        if self.degree < 1:
            msg = f"Polynomial degree must be >= 1, got {self.degree}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> ModelSettings:
        emulation_base.check_known_keys(params, ["degree", "n_pc", "log_outputs"], where="polynomial params")
        return cls(
            base_settings=emulation_base.BaseModelSettings.from_config(params),
            degree=int(params.get("degree", 1)),
        )

    def to_config(self) -> dict[str, Any]:
        return {"degree": self.degree, **self.base_settings.to_config()}


@attrs.frozen
class TrainingOptions:
    """Least squares settings.

    Attributes:
        regularization: L2 penalty. 0 selects ordinary least squares. Default: 0.
    """

    regularization: float = 0.0

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> TrainingOptions:
        emulation_base.check_known_keys(params, ["regularization"], where="least_squares params")
        c = cls(regularization=float(params.get("regularization", 0.0)))
        if c.regularization < 0:
            msg = f"regularization must be non-negative, got {c.regularization}"
            raise InvalidSpecError(msg)
        return c

    def to_config(self) -> dict[str, Any]:
        return {"regularization": self.regularization}


def minimum_training_examples(n_parameters: int, settings: ModelSettings) -> int:
    """One example per coefficient (including the intercept)."""
    return math.comb(n_parameters + settings.degree, settings.degree)


@attrs.define
class LeastSquaresFitter:
    x: npt.NDArray[np.float64]
    latent: npt.NDArray[np.float64]
    settings: ModelSettings
    training: emulation_base.TrainingSettings
    _weights: dict[str, npt.NDArray[np.float64]] = attrs.field(factory=dict)

    def step(self) -> emulation_base.EpochResult:
        features = sklearn_preprocessing.PolynomialFeatures(degree=self.settings.degree, include_bias=False)
        design = features.fit_transform(self.x)
        regularization = self.training.options.regularization
        if regularization == 0:
            regressor = sklearn_linear_model.LinearRegression()
        else:
            regressor = sklearn_linear_model.Ridge(alpha=regularization)
        regressor.fit(design, self.latent)

        self._weights = {
            f"{emulation_base.MODEL_PREFIX}powers": np.array(features.powers_, dtype=np.int64),
            f"{emulation_base.MODEL_PREFIX}coef": np.atleast_2d(np.array(regressor.coef_, dtype=np.float64)),
            f"{emulation_base.MODEL_PREFIX}intercept": np.atleast_1d(np.array(regressor.intercept_, dtype=np.float64)),
        }
        residual = predict(self._weights, self.settings, self.x) - self.latent
        objective = float(np.mean(residual**2))
        logger.info(f"Least squares fit with {design.shape[1]} terms: mse={objective:.3g}")
        return emulation_base.EpochResult(objective=objective, converged=True)

    def weights(self) -> dict[str, npt.NDArray[np.float64]]:
        return {k: v.copy() for k, v in self._weights.items()}


def create_fitter(
    x: npt.NDArray[np.float64],
    y: npt.NDArray[np.float64],
    transform: emulation_base.OutputTransform,
    settings: ModelSettings,
    training: emulation_base.TrainingSettings,
) -> LeastSquaresFitter:
    return LeastSquaresFitter(x=x, latent=transform.forward(y), settings=settings, training=training)


def _monomials(x: npt.NDArray[np.float64], powers: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
    return np.prod(x[:, np.newaxis, :] ** powers[np.newaxis, :, :], axis=-1)


def predict(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    powers = weights[f"{emulation_base.MODEL_PREFIX}powers"]
    coef = weights[f"{emulation_base.MODEL_PREFIX}coef"]
    intercept = weights[f"{emulation_base.MODEL_PREFIX}intercept"]
    return _monomials(x, powers) @ coef.T + intercept


def gradient(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    powers = weights[f"{emulation_base.MODEL_PREFIX}powers"]
    coef = weights[f"{emulation_base.MODEL_PREFIX}coef"]
    n_parameters = powers.shape[1]
    # d/dx_j prod_i x_i^p_i = p_j x_j^(p_j - 1) prod_{i != j} x_i^p_i
    d_monomials = np.empty((x.shape[0], powers.shape[0], n_parameters))
    for j in range(n_parameters):
        reduced = powers.copy()
        reduced[:, j] = np.maximum(reduced[:, j] - 1, 0)
        d_monomials[:, :, j] = powers[np.newaxis, :, j] * _monomials(x, reduced)
    return np.einsum("ntd,lt->nld", d_monomials, coef)
