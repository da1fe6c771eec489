"""Fit the declared model family to the fit subset of the training set.

The training is driven epoch by epoch, independently of the model family:
 - A non-finite objective, or an objective which grows beyond `divergence_factor` times the
   first epoch's objective, raises TrainingDivergedError.
 - The training stops successfully when the objective reaches `tolerance`, when the
   fitter reports convergence (e.g. closed form fits), or after `max_epochs` (keeping the
   best weights).
 - If the objective doesn't improve by more than `min_delta` for `patience` epochs, the
   training stops early with the best weights, provided that it improved at least once after
   the first epoch. Otherwise, it raises TrainingDivergedError.
 - Cancellation is checked before every epoch.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from emulator_build import helpers
from emulator_build.emulation import base as emulation_base
from emulator_build.emulation import interface as emulation_interface
from emulator_build.exceptions import BuildCancelledError, TrainingDivergedError, TrainingSetTooSmallError
from emulator_build.spec import EmulatorSpec
from emulator_build.training_set import TrainingSet

logger = logging.getLogger(__name__)


def minimum_training_examples(spec: EmulatorSpec) -> int:
    """Declared minimum number of fit examples, or the model family's minimum if not declared."""
    declared = spec.training.settings.min_training_examples
    if declared is not None:
        return declared
    module = emulation_interface.model_module(spec.emulator_fn.type)
    return int(module.minimum_training_examples(spec.parameters.n_dimensions, spec.emulator_fn.settings))


def train_model(
    training_set: TrainingSet,
    spec: EmulatorSpec,
    *,
    cancellation: helpers.CancellationToken | None = None,
) -> emulation_base.TrainedModel:
    """Train the declared model on the fit subset.

    Args:
        training_set: Training set.
        spec: Emulator specification.
        cancellation: Cancellation token, checked before every epoch.
    Returns:
        Trained model.
    Raises:
        TrainingSetTooSmallError: If the fit subset is smaller than the minimum.
        TrainingDivergedError: If the training diverged or never improved.
        BuildCancelledError: If the training was cancelled.
    """
    module = emulation_interface.model_module(spec.emulator_fn.type)
    model_settings = spec.emulator_fn.settings
    training_settings = spec.training.settings

    fit_examples = training_set.fit_examples
    minimum = minimum_training_examples(spec)
    if len(fit_examples) < minimum:
        msg = f"Need at least {minimum} fit examples to train '{spec.emulator_fn.type}', got {len(fit_examples)}"
        raise TrainingSetTooSmallError(msg)

    x = spec.parameters.to_unit(training_set.design(fit_examples))
    y = training_set.features(fit_examples)
    logger.info(
        f"Training '{spec.emulator_fn.type}' ({spec.training.type}, objective={training_settings.objective})"
        f" on {x.shape[0]} examples with {y.shape[1]} features"
    )
    transform = emulation_base.OutputTransform.fit(y, model_settings.base_settings)
    fitter = module.create_fitter(x, y, transform, model_settings, training_settings)

    first_objective = math.nan
    best_objective = math.inf
    best_weights: dict[str, np.ndarray] = {}
    improved_after_first = False
    epochs_without_improvement = 0
    final_weights: dict[str, np.ndarray] | None = None
    final_objective = math.nan
    n_epochs = 0
    for epoch in range(1, training_settings.max_epochs + 1):
        if cancellation is not None and cancellation.cancelled:
            msg = f"Training cancelled before epoch {epoch}"
            raise BuildCancelledError(msg)
        result = fitter.step()
        n_epochs = epoch
        objective = result.objective
        if not math.isfinite(objective):
            msg = f"Non-finite objective {objective} at epoch {epoch}"
            raise TrainingDivergedError(msg)

        if epoch == 1:
            first_objective = objective
            best_objective = objective
            best_weights = fitter.weights()
        else:
            if objective - first_objective > (training_settings.divergence_factor - 1) * abs(first_objective):
                msg = (
                    f"Objective diverged at epoch {epoch}: {objective:.4g}"
                    f" (first epoch: {first_objective:.4g}, divergence_factor={training_settings.divergence_factor})"
                )
                raise TrainingDivergedError(msg)
            if objective < best_objective - training_settings.min_delta:
                best_objective = objective
                best_weights = fitter.weights()
                improved_after_first = True
                epochs_without_improvement = 0
            else:
                epochs_without_improvement += 1

        if objective <= training_settings.tolerance or result.converged:
            logger.info(f"Converged at epoch {epoch} with objective {objective:.4g}")
            final_weights = fitter.weights()
            final_objective = objective
            break
        if epochs_without_improvement >= training_settings.patience:
            if not improved_after_first:
                msg = f"Objective never improved on the first epoch ({first_objective:.4g}) in {epoch} epochs"
                raise TrainingDivergedError(msg)
            logger.info(f"Stopping early at epoch {epoch}. Best objective: {best_objective:.4g}")
            break
        if epoch % 100 == 0:
            logger.debug(f"Epoch {epoch}: objective={objective:.4g}, best={best_objective:.4g}")

    if final_weights is None:
        final_weights = best_weights
        final_objective = best_objective

    return emulation_base.TrainedModel(
        model_type=spec.emulator_fn.type,
        declaration=spec.emulator_fn.to_dict()["params"],
        training=spec.training.to_dict(),
        weights={**final_weights, **transform.to_weights()},
        n_epochs=n_epochs,
        final_objective=final_objective,
        objective_name=training_settings.objective,
    )
