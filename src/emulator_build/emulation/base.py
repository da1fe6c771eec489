"""Base functionality needed for implementing a model family.

This is **NOT** for the user, but rather for developers specifying how to
implement an individual model family. The user interface is implemented
in `interface`.

A model family is a module which defines:
 - `_register_name`: Name used for `emulator_fn.type`.
 - `training_type`: Name of the (single) compatible training procedure.
 - `supported_objectives`: Objectives supported by the training procedure. The first is the default.
 - `default_training`: Defaults for the common training settings (e.g. `max_epochs`).
 - `ModelSettings`: attrs class with `from_config(params)` and `to_config()`.
 - `TrainingOptions`: attrs class with `from_config(params)` and `to_config()`, holding the
   procedure specific training settings.
 - `minimum_training_examples(n_parameters, settings)`.
 - `create_fitter(x, y, transform, settings, training)`: returns a `Fitter`.
 - `predict(weights, settings, x)`: latent predictions with shape (n_samples, n_latent).
 - `gradient(weights, settings, x)`: latent gradients with shape (n_samples, n_latent, n_parameters).

Inputs `x` are always normalized to the unit hypercube.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

import attrs
import numpy as np
import numpy.typing as npt
import sklearn.decomposition as sklearn_decomposition
import sklearn.preprocessing as sklearn_preprocessing

from emulator_build import helpers
from emulator_build.exceptions import InvalidSpecError, TrainingError

logger = logging.getLogger(__name__)

TRANSFORM_PREFIX = "transform_"
MODEL_PREFIX = "model_"


def check_known_keys(config: Mapping[str, Any], allowed: list[str], where: str) -> None:
    unknown = sorted(set(config) - set(allowed))
    if unknown:
        msg = f"Unknown keys in {where}: {unknown}. Allowed: {sorted(allowed)}"
        raise InvalidSpecError(msg)


def _optional_int(value: Any, where: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        msg = f"Expected a positive integer (or null) for {where}, got {value!r}"
        raise InvalidSpecError(msg)
    return int(value)


####################################################################################################################
# Settings
####################################################################################################################
@attrs.frozen
class BaseModelSettings:
    """Base (i.e. shared) settings for a model family.

    Store this class in your specialized model settings class.
    Composition is preferred to inheritance.

    Attributes:
        n_pc: Number of principal components to keep. None disables the PCA. Default: None.
        log_outputs: If True, fit the log of the outputs. Requires strictly positive outputs. Default: False.
    """

    n_pc: int | None = None
    log_outputs: bool = False

    _keys = ("n_pc", "log_outputs")

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> BaseModelSettings:
        return cls(
            n_pc=_optional_int(params.get("n_pc"), where="emulator_fn.params.n_pc"),
            log_outputs=bool(params.get("log_outputs", False)),
        )

    def to_config(self) -> dict[str, Any]:
        return {"n_pc": self.n_pc, "log_outputs": self.log_outputs}


@attrs.frozen
class TrainingSettings:
    """Settings shared by all training procedures.

    Attributes:
        objective: Name of the objective to minimize.
        max_epochs: Maximum number of epochs.
        patience: Number of epochs without improvement (by more than `min_delta`) before stopping.
        min_delta: Minimum decrease of the objective which counts as an improvement.
        tolerance: The training has converged when the objective is at or below this value.
        divergence_factor: The training has diverged when the objective grows beyond this factor
            of the first epoch's objective.
        seed: Seed for any randomness in the training.
        min_training_examples: Minimum number of fit examples. None uses the model family's minimum.
        options: Procedure specific settings.
    """

    objective: str
    max_epochs: int = 1000
    patience: int = 50
    min_delta: float = 0.0
    tolerance: float = 0.0
    divergence_factor: float = 1e6
    seed: int = 0
    min_training_examples: int | None = None
    options: Any = None

    _keys = (
        "objective",
        "max_epochs",
        "patience",
        "min_delta",
        "tolerance",
        "divergence_factor",
        "seed",
        "min_training_examples",
    )

    @classmethod
    def from_config(
        cls,
        params: Mapping[str, Any],
        supported_objectives: tuple[str, ...],
        defaults: Mapping[str, Any],
        options_type: Any,
    ) -> TrainingSettings:
        """Parse the training parameters.

        Args:
            params: Training parameters from the specification.
            supported_objectives: Objectives supported by the procedure. The first is the default.
            defaults: Model family specific defaults for the shared settings.
            options_type: attrs class which parses the procedure specific settings.
        Returns:
            Training settings.
        """
        values = {**defaults, **params}
        objective = str(values.get("objective", supported_objectives[0]))
        if objective not in supported_objectives:
            msg = f"Unsupported training objective '{objective}'. Options: {list(supported_objectives)}"
            raise InvalidSpecError(msg)
        try:
            c = cls(
                objective=objective,
                max_epochs=int(values.get("max_epochs", 1000)),
                patience=int(values.get("patience", 50)),
                min_delta=float(values.get("min_delta", 0.0)),
                tolerance=float(values.get("tolerance", 0.0)),
                divergence_factor=float(values.get("divergence_factor", 1e6)),
                seed=int(values.get("seed", 0)),
                min_training_examples=_optional_int(
                    values.get("min_training_examples"), where="training.params.min_training_examples"
                ),
                options=options_type.from_config({k: v for k, v in params.items() if k not in cls._keys}),
            )
        except InvalidSpecError:
            raise
        except (TypeError, ValueError) as e:
            msg = f"Invalid training parameters {dict(params)}: {e}"
            raise InvalidSpecError(msg) from e
        if c.max_epochs < 1 or c.patience < 1 or c.min_delta < 0 or c.divergence_factor <= 1:
            msg = f"Invalid training settings: {c}"
            raise InvalidSpecError(msg)
        return c

    def to_config(self) -> dict[str, Any]:
        return {
            "objective": self.objective,
            "max_epochs": self.max_epochs,
            "patience": self.patience,
            "min_delta": self.min_delta,
            "tolerance": self.tolerance,
            "divergence_factor": self.divergence_factor,
            "seed": self.seed,
            "min_training_examples": self.min_training_examples,
            **self.options.to_config(),
        }


####################################################################################################################
# Output transform
####################################################################################################################
@attrs.frozen
class OutputTransform:
    """Map between physical features and the latent space in which the model is fit.

    physical -> (optional log) -> standardize -> (optional PCA) -> latent

    Attributes:
        log_outputs: Whether the log of the outputs is taken first.
        mean: Feature mean (after the log, if enabled).
        scale: Feature scale (after the log, if enabled).
        components: PCA components, with shape (n_pc, n_features). None if the PCA is disabled.
        pca_mean: Mean removed by the PCA. None if the PCA is disabled.
    """

    log_outputs: bool
    mean: npt.NDArray[np.float64]
    scale: npt.NDArray[np.float64]
    components: npt.NDArray[np.float64] | None = None
    pca_mean: npt.NDArray[np.float64] | None = None

    @classmethod
    def fit(cls, y: npt.NDArray[np.float64], settings: BaseModelSettings) -> OutputTransform:
        """Learn the transform from the training features.

        Args:
            y: Physical features, with shape (n_samples, n_features).
            settings: Base model settings.
        Returns:
            Fitted transform.
        """
        if settings.log_outputs:
            if np.any(y <= 0):
                msg = "log_outputs requires strictly positive outputs"
                raise TrainingError(msg)
            y = np.log(y)
        scaler = sklearn_preprocessing.StandardScaler()
        y_scaled = scaler.fit_transform(y)
        components = pca_mean = None
        if settings.n_pc is not None:
            n_pc = min(settings.n_pc, *y_scaled.shape)
            if n_pc < settings.n_pc:
                logger.warning(f"Requested n_pc={settings.n_pc}, but only {n_pc} components are available")
            pca = sklearn_decomposition.PCA(n_components=n_pc, svd_solver="full", whiten=False)
            pca.fit(y_scaled)
            logger.info(
                f"  Variance explained by first {n_pc} components: {np.sum(pca.explained_variance_ratio_[:n_pc])}"
            )
            components = np.array(pca.components_, dtype=np.float64)
            pca_mean = np.array(pca.mean_, dtype=np.float64)
        return cls(
            log_outputs=settings.log_outputs,
            mean=np.array(scaler.mean_, dtype=np.float64),
            scale=np.array(scaler.scale_, dtype=np.float64),
            components=components,
            pca_mean=pca_mean,
        )

    @property
    def n_latent(self) -> int:
        return self.mean.shape[0] if self.components is None else self.components.shape[0]

    def forward(self, y: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Physical (n, n_features) -> latent (n, n_latent)."""
        if self.log_outputs:
            y = np.log(y)
        z = (y - self.mean) / self.scale
        if self.components is not None:
            z = (z - self.pca_mean) @ self.components.T
        return z

    def inverse(self, latent: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Latent (n, n_latent) -> physical (n, n_features)."""
        z = latent
        if self.components is not None:
            z = z @ self.components + self.pca_mean
        y = z * self.scale + self.mean
        if self.log_outputs:
            y = np.exp(y)
        return y

    def inverse_jvp(
        self, latent: npt.NDArray[np.float64], tangent: npt.NDArray[np.float64]
    ) -> npt.NDArray[np.float64]:
        """Push latent tangents (n, n_latent, k) through the inverse transform to (n, n_features, k)."""
        t = tangent
        if self.components is not None:
            t = np.einsum("lf,nlk->nfk", self.components, t)
        t = t * self.scale[np.newaxis, :, np.newaxis]
        if self.log_outputs:
            t = t * self.inverse(latent)[:, :, np.newaxis]
        return t

    def to_weights(self) -> dict[str, npt.NDArray[np.float64]]:
        n_features = self.mean.shape[0]
        return {
            f"{TRANSFORM_PREFIX}log_outputs": np.array(self.log_outputs, dtype=bool),
            f"{TRANSFORM_PREFIX}mean": self.mean,
            f"{TRANSFORM_PREFIX}scale": self.scale,
            # Empty arrays signal that the PCA is disabled.
            f"{TRANSFORM_PREFIX}components": self.components
            if self.components is not None
            else np.zeros((0, n_features)),
            f"{TRANSFORM_PREFIX}pca_mean": self.pca_mean if self.pca_mean is not None else np.zeros(0),
        }

    @classmethod
    def from_weights(cls, weights: Mapping[str, npt.NDArray[Any]]) -> OutputTransform:
        components = weights[f"{TRANSFORM_PREFIX}components"]
        has_pca = components.shape[0] > 0
        return cls(
            log_outputs=bool(weights[f"{TRANSFORM_PREFIX}log_outputs"]),
            mean=np.asarray(weights[f"{TRANSFORM_PREFIX}mean"], dtype=np.float64),
            scale=np.asarray(weights[f"{TRANSFORM_PREFIX}scale"], dtype=np.float64),
            components=np.asarray(components, dtype=np.float64) if has_pca else None,
            pca_mean=np.asarray(weights[f"{TRANSFORM_PREFIX}pca_mean"], dtype=np.float64) if has_pca else None,
        )


####################################################################################################################
# Fitting and trained models
####################################################################################################################
@attrs.frozen
class EpochResult:
    """Outcome of a single training epoch.

    Attributes:
        objective: Value of the objective after the epoch.
        converged: True if the fitter can't improve further (e.g. a closed form solution).
    """

    objective: float
    converged: bool = False


class Fitter(Protocol):
    """Incremental fitter returned by `create_fitter`."""

    def step(self) -> EpochResult: ...

    def weights(self) -> dict[str, npt.NDArray[np.float64]]:
        """Copy of the current model weights (keys prefixed by `MODEL_PREFIX`)."""
        ...


def _read_only_weights(weights: Mapping[str, npt.ArrayLike]) -> dict[str, npt.NDArray[Any]]:
    result = {}
    for k in sorted(weights):
        v = np.array(weights[k], copy=True)
        v.flags.writeable = False
        result[k] = v
    return result


@attrs.frozen
class TrainedModel:
    """Output of a successful training.

    Attributes:
        model_type: Model family name.
        declaration: Model family parameters (normalized).
        training: Training procedure parameters (normalized).
        weights: Everything needed to reconstruct the trained function, including the
            output transform. The arrays are read-only.
        n_epochs: Number of epochs which were run.
        final_objective: Objective of the returned weights.
        objective_name: Name of the objective.
    """

    model_type: str
    declaration: dict[str, Any] = attrs.field(converter=helpers.to_builtin)
    training: dict[str, Any] = attrs.field(converter=helpers.to_builtin)
    weights: dict[str, npt.NDArray[Any]] = attrs.field(converter=_read_only_weights)
    n_epochs: int
    final_objective: float
    objective_name: str

    @property
    def transform(self) -> OutputTransform:
        return OutputTransform.from_weights(self.weights)

    def summary(self) -> dict[str, Any]:
        """Metadata (i.e. everything but the weights)."""
        return {
            "model_type": self.model_type,
            "declaration": self.declaration,
            "training": self.training,
            "n_epochs": self.n_epochs,
            "final_objective": self.final_objective,
            "objective_name": self.objective_name,
            "weights": {k: {"shape": list(v.shape), "dtype": str(v.dtype)} for k, v in self.weights.items()},
        }
