"""Gaussian process emulator, based on scikit-learn.

Each latent output (e.g. principal component) is emulated by an independent Gaussian
process, with the kernel hyperparameters optimized by maximizing the log marginal
likelihood. The fitted GP mean is a weighted sum of kernel evaluations against the training
inputs, so we store the training inputs, the dual coefficients and the optimized
hyperparameters. The gradient with respect to the inputs is evaluated analytically
by walking the kernel expression.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt
import sklearn.gaussian_process as sklearn_gaussian_process

from emulator_build.emulation import base as emulation_base
from emulator_build.exceptions import InvalidSpecError

logger = logging.getLogger(__name__)

_register_name = "gaussian_process"
training_type = "maximum_likelihood"
supported_objectives = ("log_marginal_likelihood",)
default_training = {"max_epochs": 1, "patience": 1}

_kernel_defaults: dict[str, dict[str, Any]] = {
    "matern": {"nu": 2.5, "length_scale_bounds_factor": [0.01, 100.0]},
    "rbf": {"length_scale_bounds_factor": [0.01, 100.0]},
    "constant": {"constant_value": 1.0, "constant_value_bounds": [1e-5, 1e5]},
    "noise": {"type": "white", "args": {"noise_level": 1e-8, "noise_level_bounds": [1e-12, 1e-2]}},
}
_supported_nu = (0.5, 1.5, 2.5, math.inf)


@attrs.frozen
class ModelSettings:
    base_settings: emulation_base.BaseModelSettings
    # Kernels
    active_kernels: dict[str, dict[str, Any]]
    # Gaussian Process Regressor
    alpha: float = 1e-10

    def __attrs_post_init__(self) -> None:
        """Kernel validation."""
        unknown = set(self.active_kernels) - set(_kernel_defaults)
        if unknown:
            msg = f"Unsupported kernels {sorted(unknown)}. Options: {list(_kernel_defaults)}"
            raise InvalidSpecError(msg)
        # Validate that we have exactly one of matern, rbf
        reference_strings = ["matern", "rbf"]
        if sum(s in self.active_kernels for s in reference_strings) != 1:
            msg = "Must provide exactly one of 'matern', 'rbf' kernel"
            raise InvalidSpecError(msg)
        if "matern" in self.active_kernels and self.active_kernels["matern"]["nu"] not in _supported_nu:
            msg = f"Unsupported Matern nu={self.active_kernels['matern']['nu']}. Options: {list(_supported_nu)}"
            raise InvalidSpecError(msg)
        # Validation for noise configuration
        if "noise" in self.active_kernels:
            noise = self.active_kernels["noise"]
            if noise.get("type") != "white":
                msg = "Unsupported noise kernel"
                raise InvalidSpecError(msg)
            if set(noise.get("args", {})) != {"noise_level", "noise_level_bounds"}:
                msg = "Must provide arguments 'noise_level' and 'noise_level_bounds' for white noise kernel"
                raise InvalidSpecError(msg)
        if self.alpha < 0:
            msg = f"alpha must be non-negative, got {self.alpha}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> ModelSettings:
        emulation_base.check_known_keys(params, ["kernels", "alpha", "n_pc", "log_outputs"], where="gaussian_process params")
        kernels_config = params.get("kernels", {"active": ["matern"]})
        active = kernels_config.get("active", [])
        active_kernels = {}
        for kernel_type in active:
            if kernel_type not in _kernel_defaults:
                msg = f"Unsupported kernel '{kernel_type}'. Options: {list(_kernel_defaults)}"
                raise InvalidSpecError(msg)
            kernel_args = {**_kernel_defaults[kernel_type], **kernels_config.get(kernel_type, {})}
            if kernel_type == "matern":
                # NOTE: Accepts "inf" as a string, since the canonical form can't represent infinity.
                kernel_args["nu"] = float(kernel_args["nu"])
            active_kernels[kernel_type] = kernel_args
        return cls(
            base_settings=emulation_base.BaseModelSettings.from_config(params),
            active_kernels=active_kernels,
            alpha=float(params.get("alpha", 1e-10)),
        )

    def to_config(self) -> dict[str, Any]:
        kernels: dict[str, Any] = {"active": list(self.active_kernels)}
        for kernel_type, kernel_args in self.active_kernels.items():
            kernel_args = dict(kernel_args)
            if kernel_type == "matern" and math.isinf(kernel_args["nu"]):
                kernel_args["nu"] = "inf"
            kernels[kernel_type] = kernel_args
        return {"kernels": kernels, "alpha": self.alpha, **self.base_settings.to_config()}


@attrs.frozen
class TrainingOptions:
    """Maximum likelihood settings.

    Attributes:
        n_restarts: Number of restarts of the hyperparameter optimizer. Default: 0.
    """

    n_restarts: int = 0

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> TrainingOptions:
        emulation_base.check_known_keys(params, ["n_restarts"], where="maximum_likelihood params")
        c = cls(n_restarts=int(params.get("n_restarts", 0)))
        if c.n_restarts < 0:
            msg = f"n_restarts must be non-negative, got {c.n_restarts}"
            raise InvalidSpecError(msg)
        return c

    def to_config(self) -> dict[str, Any]:
        return {"n_restarts": self.n_restarts}


def minimum_training_examples(n_parameters: int, settings: ModelSettings) -> int:
    return n_parameters + 1


def build_kernel(settings: ModelSettings, n_parameters: int) -> sklearn_gaussian_process.kernels.Kernel:
    """Define GP kernel (covariance function) for inputs on the unit hypercube."""
    # The inputs are normalized, so the natural length scale is 1 for every parameter.
    length_scale = np.ones(n_parameters)
    kernel = None
    for kernel_type, kernel_args in settings.active_kernels.items():
        if kernel_type == "matern":
            length_scale_bounds = np.outer(length_scale, tuple(kernel_args["length_scale_bounds_factor"]))
            kernel = sklearn_gaussian_process.kernels.Matern(
                length_scale=length_scale,
                length_scale_bounds=length_scale_bounds,
                nu=kernel_args["nu"],
            )
        if kernel_type == "rbf":
            length_scale_bounds = np.outer(length_scale, tuple(kernel_args["length_scale_bounds_factor"]))
            kernel = sklearn_gaussian_process.kernels.RBF(
                length_scale=length_scale,
                length_scale_bounds=length_scale_bounds,
            )
    # The additive terms are applied after the base kernel is defined.
    if "constant" in settings.active_kernels:
        kernel_args = settings.active_kernels["constant"]
        kernel = kernel + sklearn_gaussian_process.kernels.ConstantKernel(
            constant_value=kernel_args["constant_value"],
            constant_value_bounds=tuple(kernel_args["constant_value_bounds"]),
        )
    if "noise" in settings.active_kernels:
        kernel_args = settings.active_kernels["noise"]["args"]
        kernel = kernel + sklearn_gaussian_process.kernels.WhiteKernel(
            noise_level=kernel_args["noise_level"],
            noise_level_bounds=tuple(kernel_args["noise_level_bounds"]),
        )
    return kernel


@attrs.define
class MaximumLikelihoodFitter:
    x: npt.NDArray[np.float64]
    latent: npt.NDArray[np.float64]
    settings: ModelSettings
    training: emulation_base.TrainingSettings
    _weights: dict[str, npt.NDArray[np.float64]] = attrs.field(factory=dict)

    def step(self) -> emulation_base.EpochResult:
        kernel = build_kernel(self.settings, n_parameters=self.x.shape[1])
        # Fit a GP (optimize the kernel hyperparameters) to map each input to each latent output
        logger.info(f"Fitting {self.latent.shape[1]} GPs with {self.x.shape[1]} parameters")
        emulators = [
            sklearn_gaussian_process.GaussianProcessRegressor(
                kernel=kernel,
                alpha=self.settings.alpha,
                n_restarts_optimizer=self.training.options.n_restarts,
                random_state=self.training.seed,
            ).fit(self.x, y)
            for y in self.latent.T
        ]
        logger.debug("Kernel hyperparameters:")
        for emulator in emulators:
            logger.debug(f"  {emulator.kernel_}")

        self._weights = {
            f"{emulation_base.MODEL_PREFIX}x_train": np.array(self.x, dtype=np.float64),
            f"{emulation_base.MODEL_PREFIX}theta": np.array([e.kernel_.theta for e in emulators], dtype=np.float64),
            f"{emulation_base.MODEL_PREFIX}dual_coef": np.array(
                [np.ravel(e.alpha_) for e in emulators], dtype=np.float64
            ),
        }
        objective = -float(sum(e.log_marginal_likelihood_value_ for e in emulators))
        return emulation_base.EpochResult(objective=objective, converged=True)

    def weights(self) -> dict[str, npt.NDArray[np.float64]]:
        return {k: v.copy() for k, v in self._weights.items()}


def create_fitter(
    x: npt.NDArray[np.float64],
    y: npt.NDArray[np.float64],
    transform: emulation_base.OutputTransform,
    settings: ModelSettings,
    training: emulation_base.TrainingSettings,
) -> MaximumLikelihoodFitter:
    return MaximumLikelihoodFitter(x=x, latent=transform.forward(y), settings=settings, training=training)


def _fitted_kernels(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings
) -> list[sklearn_gaussian_process.kernels.Kernel]:
    x_train = weights[f"{emulation_base.MODEL_PREFIX}x_train"]
    template = build_kernel(settings, n_parameters=x_train.shape[1])
    return [template.clone_with_theta(theta) for theta in weights[f"{emulation_base.MODEL_PREFIX}theta"]]


def predict(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    x_train = weights[f"{emulation_base.MODEL_PREFIX}x_train"]
    dual_coef = weights[f"{emulation_base.MODEL_PREFIX}dual_coef"]
    return np.stack(
        [kernel(x, x_train) @ coef for kernel, coef in zip(_fitted_kernels(weights, settings), dual_coef, strict=True)],
        axis=-1,
    )


def gradient(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    x_train = weights[f"{emulation_base.MODEL_PREFIX}x_train"]
    dual_coef = weights[f"{emulation_base.MODEL_PREFIX}dual_coef"]
    return np.stack(
        [
            np.einsum("nmd,m->nd", kernel_gradient(kernel, x, x_train), coef)
            for kernel, coef in zip(_fitted_kernels(weights, settings), dual_coef, strict=True)
        ],
        axis=1,
    )


def kernel_gradient(
    kernel: sklearn_gaussian_process.kernels.Kernel, x: npt.NDArray[np.float64], x_train: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """Gradient of k(x, x_train) with respect to x.

    Args:
        kernel: Kernel expression.
        x: Points, with shape (n, d).
        x_train: Training inputs, with shape (m, d).
    Returns:
        Gradient with shape (n, m, d).
    """
    kernels = sklearn_gaussian_process.kernels
    if isinstance(kernel, kernels.Sum):
        return kernel_gradient(kernel.k1, x, x_train) + kernel_gradient(kernel.k2, x, x_train)
    if isinstance(kernel, kernels.Product):
        return (
            kernel.k1(x, x_train)[..., np.newaxis] * kernel_gradient(kernel.k2, x, x_train)
            + kernel_gradient(kernel.k1, x, x_train) * kernel.k2(x, x_train)[..., np.newaxis]
        )
    if isinstance(kernel, (kernels.ConstantKernel, kernels.WhiteKernel)):
        # WhiteKernel only contributes to k(x, x), never between distinct point sets.
        return np.zeros((x.shape[0], x_train.shape[0], x.shape[1]))

    # NOTE: Matern is a subclass of RBF, so it needs to be checked first.
    if isinstance(kernel, (kernels.Matern, kernels.RBF)):
        length_scale = np.broadcast_to(np.asarray(kernel.length_scale, dtype=np.float64), (x.shape[1],))
        diff = (x[:, np.newaxis, :] - x_train[np.newaxis, :, :]) / length_scale**2
        r = np.sqrt(np.sum(((x[:, np.newaxis, :] - x_train[np.newaxis, :, :]) / length_scale) ** 2, axis=-1))
        nu = kernel.nu if isinstance(kernel, kernels.Matern) else math.inf
        if nu == 0.5:
            with np.errstate(divide="ignore", invalid="ignore"):
                factor = np.where(r > 0, -np.exp(-r) / r, 0.0)
        elif nu == 1.5:
            factor = -3.0 * np.exp(-math.sqrt(3) * r)
        elif nu == 2.5:
            factor = -5.0 / 3.0 * (1 + math.sqrt(5) * r) * np.exp(-math.sqrt(5) * r)
        elif math.isinf(nu):
            factor = -np.exp(-0.5 * r**2)
        else:
            msg = f"Gradient not implemented for Matern nu={nu}"
            raise NotImplementedError(msg)
        return factor[..., np.newaxis] * diff

    msg = f"Gradient not implemented for kernel {kernel}"
    raise NotImplementedError(msg)
