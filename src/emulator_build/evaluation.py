"""Measure the accuracy of a trained emulator on the held-out examples.

Relative errors |model - truth| / |truth| are evaluated for every output:
 - At the training nodes of the output grid.
 - At the off-grid midpoints (when interpolation is declared), which checks that the
   emulator generalizes along the independent variables.

Truth values which are numerically zero (|truth| <= zero_tolerance * max |truth| of the output)
are skipped and counted, since their relative error is undefined.

The analytic gradient is also compared to central finite differences at a few held-out points.
"""

from __future__ import annotations

import datetime
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt

from emulator_build.emulation import base as emulation_base
from emulator_build.emulation import interface as emulation_interface
from emulator_build.exceptions import TrainingSetTooSmallError
from emulator_build.spec import EmulatorSpec, OutputDeclaration
from emulator_build.training_set import TrainingSet

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_finite_difference_step = 1e-4


@attrs.frozen
class ErrorStatistics:
    max_relative_error: float
    mean_relative_error: float
    n_points: int
    n_zero_truth: int

    @classmethod
    def compute(
        cls, prediction: npt.NDArray[np.float64], truth: npt.NDArray[np.float64], zero_threshold: float
    ) -> ErrorStatistics:
        nonzero = np.abs(truth) > zero_threshold
        n_zero = int(np.count_nonzero(~nonzero))
        if not np.any(nonzero):
            return cls(max_relative_error=0.0, mean_relative_error=0.0, n_points=0, n_zero_truth=n_zero)
        relative = np.abs(prediction[nonzero] - truth[nonzero]) / np.abs(truth[nonzero])
        return cls(
            max_relative_error=float(np.max(relative)),
            mean_relative_error=float(np.mean(relative)),
            n_points=int(relative.size),
            n_zero_truth=n_zero,
        )


@attrs.frozen
class OutputAccuracy:
    """Accuracy of one output on the held-out examples.

    Attributes:
        name: Output name.
        training_nodes: Error statistics at the training nodes.
        off_grid: Error statistics at the off-grid midpoints. None without interpolation.
        failure_count: Number of held-out samples which failed to evaluate.
    """

    name: str
    training_nodes: ErrorStatistics
    off_grid: ErrorStatistics | None
    failure_count: int

    @property
    def max_relative_error(self) -> float:
        errors = [self.training_nodes.max_relative_error]
        if self.off_grid is not None:
            errors.append(self.off_grid.max_relative_error)
        return max(errors)

    @property
    def mean_relative_error(self) -> float:
        return self.training_nodes.mean_relative_error

    @property
    def n_points(self) -> int:
        return self.training_nodes.n_points

    @property
    def n_zero_truth(self) -> int:
        return self.training_nodes.n_zero_truth

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_relative_error": self.max_relative_error,
            "mean_relative_error": self.mean_relative_error,
            "n_points": self.n_points,
            "n_zero_truth": self.n_zero_truth,
            "failure_count": self.failure_count,
            "training_nodes": attrs.asdict(self.training_nodes),
            "off_grid": attrs.asdict(self.off_grid) if self.off_grid is not None else None,
        }

    @classmethod
    def from_dict(cls, name: str, values: Mapping[str, Any]) -> OutputAccuracy:
        off_grid = values.get("off_grid")
        return cls(
            name=name,
            training_nodes=ErrorStatistics(**values["training_nodes"]),
            off_grid=ErrorStatistics(**off_grid) if off_grid is not None else None,
            failure_count=int(values["failure_count"]),
        )


@attrs.frozen
class BuildProvenance:
    """When the build happened and how long it took. Kept outside of the artifact identity."""

    created_at: str
    duration_seconds: float


@attrs.frozen
class AccuracyReport:
    """Accuracy of a trained emulator.

    Attributes:
        outputs: Per output accuracy.
        max_relative_error: Worst relative error over all outputs, at training nodes and off-grid.
        gradient_max_error: Worst normalized disagreement between the analytic and finite difference gradients.
        n_fit: Number of fit examples.
        n_heldout: Number of held-out examples.
        failure_count: Number of samples which failed to evaluate.
        environment_fingerprint: Fingerprint of the execution environment.
        spec_fingerprint: Fingerprint of the emulator specification.
        model: Summary of the trained model.
        provenance: Build provenance.
    """

    outputs: dict[str, OutputAccuracy]
    max_relative_error: float
    gradient_max_error: float
    n_fit: int
    n_heldout: int
    failure_count: int
    environment_fingerprint: str
    spec_fingerprint: str
    model: dict[str, Any]
    provenance: BuildProvenance | None = None

    def to_dict(self, include_provenance: bool = True) -> dict[str, Any]:
        result = {
            "outputs": {name: accuracy.to_dict() for name, accuracy in self.outputs.items()},
            "max_relative_error": self.max_relative_error,
            "gradient_max_error": self.gradient_max_error,
            "n_fit": self.n_fit,
            "n_heldout": self.n_heldout,
            "failure_count": self.failure_count,
            "environment_fingerprint": self.environment_fingerprint,
            "spec_fingerprint": self.spec_fingerprint,
            "model": self.model,
        }
        if include_provenance and self.provenance is not None:
            result["provenance"] = attrs.asdict(self.provenance)
        return result

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> AccuracyReport:
        provenance = values.get("provenance")
        return cls(
            outputs={name: OutputAccuracy.from_dict(name, v) for name, v in values["outputs"].items()},
            max_relative_error=float(values["max_relative_error"]),
            gradient_max_error=float(values["gradient_max_error"]),
            n_fit=int(values["n_fit"]),
            n_heldout=int(values["n_heldout"]),
            failure_count=int(values["failure_count"]),
            environment_fingerprint=str(values["environment_fingerprint"]),
            spec_fingerprint=str(values["spec_fingerprint"]),
            model=dict(values["model"]),
            provenance=BuildProvenance(**provenance) if provenance is not None else None,
        )


def _off_grid_points(declaration: OutputDeclaration) -> npt.NDArray[np.float64]:
    mesh = np.meshgrid(*declaration.dense_nodes().values(), indexing="ij")
    mask = declaration.off_grid_mask
    return np.stack([m[mask] for m in mesh], axis=-1)


def _output_accuracy(
    declaration: OutputDeclaration,
    predicted: npt.NDArray[np.float64],
    truth_dense: npt.NDArray[np.float64],
    zero_tolerance: float,
    failure_count: int,
) -> OutputAccuracy:
    zero_threshold = zero_tolerance * float(np.max(np.abs(truth_dense))) if truth_dense.size else 0.0
    truth = truth_dense[(slice(None), *declaration.training_slices)]
    training_nodes = ErrorStatistics.compute(predicted, truth, zero_threshold)
    off_grid = None
    if declaration.interpolates and np.any(declaration.off_grid_mask):
        interpolated, _ = emulation_interface.interpolate(declaration, predicted, _off_grid_points(declaration))
        off_grid = ErrorStatistics.compute(
            interpolated, truth_dense[:, declaration.off_grid_mask], zero_threshold
        )
    return OutputAccuracy(
        name=declaration.name, training_nodes=training_nodes, off_grid=off_grid, failure_count=failure_count
    )


def gradient_check(
    emulator: emulation_interface.Emulator, points: npt.NDArray[np.float64], spec: EmulatorSpec
) -> float:
    """Compare the analytic gradient to central finite differences.

    Returns:
        Worst disagreement, normalized by the gradient magnitude at each point.
    """
    domain = spec.parameters
    worst = 0.0
    for point in points:
        analytic = emulator.feature_gradient(point)[0]
        numeric = np.empty_like(analytic)
        for j in range(domain.n_dimensions):
            step = _finite_difference_step * domain.width[j]
            upper, lower = point.copy(), point.copy()
            upper[j] = min(point[j] + step, domain.maximum[j])
            lower[j] = max(point[j] - step, domain.minimum[j])
            numeric[:, j] = (emulator.predict_features(upper)[0] - emulator.predict_features(lower)[0]) / (
                upper[j] - lower[j]
            )
        scale = max(float(np.max(np.abs(numeric))), float(np.max(np.abs(analytic))))
        difference = float(np.max(np.abs(analytic - numeric)))
        worst = max(worst, difference / scale if scale > 0 else difference)
    return worst


def evaluate_model(
    trained_model: emulation_base.TrainedModel,
    training_set: TrainingSet,
    spec: EmulatorSpec,
    *,
    environment_fingerprint: str,
    clock: Clock = time.time,
    started_at: float | None = None,
) -> AccuracyReport:
    """Evaluate the trained model on the held-out examples.

    Args:
        trained_model: Trained model.
        training_set: Training set.
        spec: Emulator specification.
        environment_fingerprint: Fingerprint of the execution environment.
        clock: Wall clock, returning seconds since the epoch. Default: time.time.
        started_at: Start of the build (according to the clock). Default: start of the evaluation.
    Returns:
        Accuracy report.
    Raises:
        TrainingSetTooSmallError: If there are no successful held-out examples.
    """
    if started_at is None:
        started_at = clock()
    heldout = training_set.heldout_examples
    if not heldout:
        msg = "No successful held-out examples to evaluate the model"
        raise TrainingSetTooSmallError(msg)
    n_failed_heldout = sum(1 for e in training_set.failures if e.heldout)

    emulator = emulation_interface.Emulator(trained_model, spec)
    design = training_set.design(heldout)
    predicted = emulator.predict_outputs(design)
    outputs = {}
    for declaration in spec.outputs:
        truth_dense = np.array([e.outputs[declaration.name] for e in heldout], dtype=np.float64)
        outputs[declaration.name] = _output_accuracy(
            declaration,
            predicted[declaration.name],
            truth_dense,
            zero_tolerance=spec.accuracy.zero_tolerance,
            failure_count=n_failed_heldout,
        )
        logger.info(
            f"  {declaration.name}: max relative error {outputs[declaration.name].max_relative_error:.3g}"
            f" ({outputs[declaration.name].n_zero_truth} zero truth values skipped)"
        )

    gradient_max_error = gradient_check(emulator, design[: spec.accuracy.n_gradient_checks], spec)
    logger.info(f"  Gradient check: max error {gradient_max_error:.3g}")

    finished_at = clock()
    return AccuracyReport(
        outputs=outputs,
        max_relative_error=max(accuracy.max_relative_error for accuracy in outputs.values()),
        gradient_max_error=gradient_max_error,
        n_fit=len(training_set.fit_examples),
        n_heldout=len(heldout),
        failure_count=training_set.failure_count,
        environment_fingerprint=environment_fingerprint,
        spec_fingerprint=spec.fingerprint,
        model=trained_model.summary(),
        provenance=BuildProvenance(
            created_at=datetime.datetime.fromtimestamp(finished_at, tz=datetime.timezone.utc).isoformat(),
            duration_seconds=max(0.0, finished_at - started_at),
        ),
    )
