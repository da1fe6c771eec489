"""Emulator specification: the declarative description of what is emulated and how.

The specification is read from a YAML document and validated once at load time into
immutable records. Model and training declarations are tagged variants: their parameters
are parsed by the registered model family, so every later stage consumes typed settings
rather than re-interpreting nested dictionaries.

The canonical (normalized) form of a spec, with all defaults filled in, is the basis
of its fingerprints:
 - `fingerprint`: the whole spec. Identifies a build.
 - `evaluation_fingerprint`: only what determines the solver outputs for a sample index.
   Used as the cache key, so retuning the model or growing the sample set reuses
   previous solver evaluations.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt
import yaml

from emulator_build import helpers
from emulator_build.emulation import interface as emulation_interface
from emulator_build.exceptions import InvalidDomainError, InvalidSpecError

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = {
    "name",
    "author",
    "container",
    "config",
    "emulator_fn",
    "training",
    "parameters",
    "outputs",
    "sampling",
    "split",
    "build",
    "accuracy",
}
IMPLEMENTED_SPACINGS = ["linear", "log"]
IMPLEMENTED_INTERPOLATION_METHODS = ["linear", "cubic", "log", "none"]
IMPLEMENTED_SPLIT_METHODS = ["modulo", "hash"]


def check_known_keys(config: Mapping[str, Any], allowed: Iterable[str], where: str) -> None:
    """Reject unknown keys, which are almost always typos."""
    unknown = sorted(set(config) - set(allowed))
    if unknown:
        msg = f"Unknown keys in {where}: {unknown}. Allowed: {sorted(allowed)}"
        raise InvalidSpecError(msg)


def as_float(value: Any, where: str) -> float:
    # NOTE: PyYAML reads e.g. `1e-4` (without a decimal point) as a string, so we accept strings too.
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        msg = f"Expected a number for {where}, got {value!r}"
        raise InvalidSpecError(msg) from e


def as_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        msg = f"Expected an integer for {where}, got {value!r}"
        raise InvalidSpecError(msg)
    return int(value)


def _bounds_from_config(value: Any, where: str, error_type: type[InvalidSpecError]) -> tuple[float, float]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        msg = f"Expected [min, max] for {where}, got {value!r}"
        raise error_type(msg)
    lower, upper = as_float(value[0], where), as_float(value[1], where)
    if not (math.isfinite(lower) and math.isfinite(upper)):
        msg = f"Bounds for {where} must be finite, got [{lower}, {upper}]"
        raise error_type(msg)
    if not lower < upper:
        msg = f"Empty or inverted interval for {where}: [{lower}, {upper}]"
        raise error_type(msg)
    return lower, upper


####################################################################################################################
# Parameter domain
####################################################################################################################
@attrs.frozen
class ParameterDomain:
    """Ordered mapping of parameter name -> [min, max].

    The declared order defines the order of the parameter vector.
    """

    names: tuple[str, ...]
    minimum: tuple[float, ...]
    maximum: tuple[float, ...]

    def __attrs_post_init__(self) -> None:
        if not self.names:
            msg = "The parameter domain must contain at least one parameter"
            raise InvalidDomainError(msg)
        if not len(self.names) == len(self.minimum) == len(self.maximum):
            msg = f"Inconsistent domain definition: {self.names=}, {self.minimum=}, {self.maximum=}"
            raise InvalidDomainError(msg)
        if len(set(self.names)) != len(self.names):
            msg = f"Duplicated parameter names: {self.names}"
            raise InvalidDomainError(msg)
        for name, lower, upper in zip(self.names, self.minimum, self.maximum, strict=True):
            if not (math.isfinite(lower) and math.isfinite(upper)) or not lower < upper:
                msg = f"Empty, inverted or non-finite interval for parameter '{name}': [{lower}, {upper}]"
                raise InvalidDomainError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | list[list[Any]]) -> ParameterDomain:
        """Mapping of name -> [min, max], or the canonical list of [name, min, max]."""
        if isinstance(config, list) and all(isinstance(v, (list, tuple)) and len(v) == 3 for v in config):
            config = {v[0]: v[1:] for v in config}
        if not isinstance(config, Mapping) or not config:
            msg = f"'parameters' must be a non-empty mapping of name -> [min, max], got {config!r}"
            raise InvalidDomainError(msg)
        bounds = {
            str(name): _bounds_from_config(value, where=f"parameter '{name}'", error_type=InvalidDomainError)
            for name, value in config.items()
        }
        return cls(
            names=tuple(bounds),
            minimum=tuple(b[0] for b in bounds.values()),
            maximum=tuple(b[1] for b in bounds.values()),
        )

    @property
    def n_dimensions(self) -> int:
        return len(self.names)

    @property
    def lower(self) -> npt.NDArray[np.float64]:
        return np.array(self.minimum, dtype=np.float64)

    @property
    def upper(self) -> npt.NDArray[np.float64]:
        return np.array(self.maximum, dtype=np.float64)

    @property
    def width(self) -> npt.NDArray[np.float64]:
        return self.upper - self.lower

    def to_unit(self, values: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Map parameter values onto the unit hypercube."""
        return (np.asarray(values, dtype=np.float64) - self.lower) / self.width

    def from_unit(self, unit_values: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Map unit hypercube values onto the parameter domain."""
        return self.lower + np.asarray(unit_values, dtype=np.float64) * self.width

    def contains(self, values: npt.ArrayLike) -> npt.NDArray[np.bool_]:
        values = np.atleast_2d(np.asarray(values, dtype=np.float64))
        return np.all((values >= self.lower) & (values <= self.upper), axis=-1)

    def to_list(self) -> list[list[Any]]:
        return [[n, lo, hi] for n, lo, hi in zip(self.names, self.minimum, self.maximum, strict=True)]


####################################################################################################################
# Outputs
####################################################################################################################
@attrs.frozen
class Axis:
    """Independent variable of an output (e.g. k or z)."""

    name: str
    minimum: float
    maximum: float
    n_points: int = 32
    spacing: str = "linear"

    def __attrs_post_init__(self) -> None:
        if self.spacing not in IMPLEMENTED_SPACINGS:
            msg = f"Unsupported spacing '{self.spacing}' for axis '{self.name}'. Options: {IMPLEMENTED_SPACINGS}"
            raise InvalidSpecError(msg)
        if self.spacing == "log" and self.minimum <= 0:
            msg = f"Log spaced axis '{self.name}' requires a positive minimum, got {self.minimum}"
            raise InvalidSpecError(msg)
        if self.n_points < 2:
            msg = f"Axis '{self.name}' requires at least 2 points, got {self.n_points}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, name: str, config: Any) -> Axis:
        """Short form `[min, max]` or long form `{range: [min, max], n_points: 32, spacing: log}`."""
        if isinstance(config, Mapping):
            check_known_keys(config, ["range", "n_points", "spacing"], where=f"axis '{name}'")
            if "range" not in config:
                msg = f"Axis '{name}' requires a 'range'"
                raise InvalidSpecError(msg)
            lower, upper = _bounds_from_config(config["range"], where=f"axis '{name}'", error_type=InvalidSpecError)
            n_points = as_int(config.get("n_points", 32), where=f"axis '{name}' n_points")
            spacing = config.get("spacing")
        else:
            lower, upper = _bounds_from_config(config, where=f"axis '{name}'", error_type=InvalidSpecError)
            n_points = 32
            spacing = None
        if spacing is None:
            spacing = "log" if lower > 0 and upper / lower >= 100 else "linear"
        return cls(name=str(name), minimum=lower, maximum=upper, n_points=n_points, spacing=str(spacing))

    def coordinate(self, values: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Coordinate in which nodes are evenly spaced (and in which we interpolate)."""
        values = np.asarray(values, dtype=np.float64)
        if self.spacing == "log":
            return np.log10(values)
        return values

    def nodes(self, n_points: int) -> npt.NDArray[np.float64]:
        if self.spacing == "log":
            nodes = np.logspace(np.log10(self.minimum), np.log10(self.maximum), n_points)
        else:
            nodes = np.linspace(self.minimum, self.maximum, n_points)
        # Pin the end points exactly to the declared range.
        nodes[0], nodes[-1] = self.minimum, self.maximum
        return nodes

    def to_list(self) -> list[Any]:
        return [self.name, self.minimum, self.maximum, self.n_points, self.spacing]


@attrs.frozen
class OutputDeclaration:
    """Output quantity declared over a grid of independent variables.

    When interpolation is declared, the solver is asked for a dense grid with the
    midpoints between training nodes included. Training only uses the training nodes
    (even indices of the dense grid), while the midpoints check generalization along
    the axes.
    """

    name: str
    axes: tuple[Axis, ...]
    interpolation: str = "linear"

    def __attrs_post_init__(self) -> None:
        if not self.axes:
            msg = f"Output '{self.name}' must declare at least one independent variable"
            raise InvalidSpecError(msg)
        if self.interpolation not in IMPLEMENTED_INTERPOLATION_METHODS:
            msg = f"Unsupported interpolation '{self.interpolation}' for output '{self.name}'. Options: {IMPLEMENTED_INTERPOLATION_METHODS}"
            raise InvalidSpecError(msg)
        if self.interpolation == "cubic" and any(axis.n_points < 4 for axis in self.axes):
            msg = f"Cubic interpolation for output '{self.name}' requires at least 4 points per axis"
            raise InvalidSpecError(msg)
        if len({axis.name for axis in self.axes}) != len(self.axes):
            msg = f"Duplicated axis names for output '{self.name}'"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, name: str, config: Mapping[str, Any]) -> OutputDeclaration:
        if not isinstance(config, Mapping):
            msg = f"Output '{name}' must map independent variables to ranges, got {config!r}"
            raise InvalidSpecError(msg)
        axes_config = dict(config)
        interpolation = axes_config.pop("interpolation", None)
        if set(axes_config) == {"axes"} and isinstance(axes_config["axes"], list):
            # Canonical form: list of [name, min, max, n_points, spacing]
            axes_config = {
                a[0]: {"range": [a[1], a[2]], "n_points": a[3], "spacing": a[4]} for a in axes_config["axes"]
            }
        axes = tuple(Axis.from_config(axis_name, axis_config) for axis_name, axis_config in axes_config.items())
        if interpolation is None:
            interpolation = "log" if axes and all(axis.spacing == "log" for axis in axes) else "linear"
        return cls(name=str(name), axes=axes, interpolation=str(interpolation))

    @property
    def interpolates(self) -> bool:
        return self.interpolation != "none"

    @property
    def axis_names(self) -> tuple[str, ...]:
        return tuple(axis.name for axis in self.axes)

    def dense_nodes(self) -> dict[str, npt.NDArray[np.float64]]:
        """Nodes requested from the solver for each axis."""
        factor = 2 if self.interpolates else 1
        return {axis.name: axis.nodes(factor * axis.n_points - (factor - 1)) for axis in self.axes}

    def training_nodes(self) -> dict[str, npt.NDArray[np.float64]]:
        return {name: nodes[self.training_slices[i]] for i, (name, nodes) in enumerate(self.dense_nodes().items())}

    @property
    def training_slices(self) -> tuple[slice, ...]:
        step = 2 if self.interpolates else 1
        return tuple(slice(None, None, step) for _ in self.axes)

    @property
    def dense_shape(self) -> tuple[int, ...]:
        factor = 2 if self.interpolates else 1
        return tuple(factor * axis.n_points - (factor - 1) for axis in self.axes)

    @property
    def training_shape(self) -> tuple[int, ...]:
        return tuple(axis.n_points for axis in self.axes)

    @property
    def off_grid_mask(self) -> npt.NDArray[np.bool_]:
        """Mask over the dense grid which selects the nodes that are not training nodes."""
        mask = np.ones(self.dense_shape, dtype=bool)
        mask[self.training_slices] = False
        return mask

    def to_dict(self) -> dict[str, Any]:
        return {"axes": [axis.to_list() for axis in self.axes], "interpolation": self.interpolation}


@attrs.frozen
class OutputLayout:
    """Map between per-output grids and the flat feature vector used for fitting.

    Outputs are concatenated in sorted name order, each flattened in C order over its
    training nodes.

    Attributes:
        outputs: Output declarations, sorted by name.
        feature_slices: Slice of each output in the feature vector.
    """

    outputs: tuple[OutputDeclaration, ...]
    feature_slices: dict[str, slice] = attrs.field(init=False)

    def __attrs_post_init__(self) -> None:
        slices = {}
        position = 0
        for output in self.outputs:
            n = int(np.prod(output.training_shape))
            slices[output.name] = slice(position, position + n)
            position += n
        object.__setattr__(self, "feature_slices", slices)

    @property
    def n_features(self) -> int:
        return sum(s.stop - s.start for s in self.feature_slices.values())

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(output.name for output in self.outputs)

    def output(self, name: str) -> OutputDeclaration:
        for output in self.outputs:
            if output.name == name:
                return output
        msg = f"Unknown output '{name}'. Available: {self.names}"
        raise KeyError(msg)

    def features_from_outputs(self, outputs: Mapping[str, npt.NDArray[np.float64]]) -> npt.NDArray[np.float64]:
        """Training features from dense solver outputs of a single sample."""
        return np.concatenate(
            [np.asarray(outputs[output.name])[output.training_slices].ravel() for output in self.outputs]
        )

    def outputs_from_features(self, features: npt.NDArray[np.float64]) -> dict[str, npt.NDArray[np.float64]]:
        """Split features (n_samples, n_features, ...) into per-output arrays (n_samples, *training_shape, ...)."""
        result = {}
        for output in self.outputs:
            values = features[:, self.feature_slices[output.name]]
            result[output.name] = values.reshape((features.shape[0], *output.training_shape, *features.shape[2:]))
        return result


####################################################################################################################
# Sampling, split, build and accuracy settings
####################################################################################################################
@attrs.frozen
class SamplingSettings:
    strategy: str = "sobol"
    n_samples: int = 64
    seed: int = 0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> SamplingSettings:
        check_known_keys(config, ["strategy", "n_samples", "seed"], where="sampling")
        c = cls(
            strategy=str(config.get("strategy", "sobol")),
            n_samples=as_int(config.get("n_samples", 64), where="sampling.n_samples"),
            seed=as_int(config.get("seed", 0), where="sampling.seed"),
        )
        # Validate against the registered strategies. Imported here to avoid a circular import.
        from emulator_build import sampling

        if c.strategy not in sampling.available_strategies():
            msg = f"Unknown sampling strategy '{c.strategy}'. Available: {sampling.available_strategies()}"
            raise InvalidSpecError(msg)
        if c.n_samples < 1:
            msg = f"sampling.n_samples must be positive, got {c.n_samples}"
            raise InvalidDomainError(msg)
        return c


@attrs.frozen
class SplitSettings:
    """Fixed assignment of sample indices to the fit or held-out subsets.

    The assignment only depends on the sample index, so it's stable across reruns and
    when growing the sample set.
    """

    method: str = "modulo"
    holdout_fraction: float = 0.2

    def __attrs_post_init__(self) -> None:
        if self.method not in IMPLEMENTED_SPLIT_METHODS:
            msg = f"Unsupported split method '{self.method}'. Options: {IMPLEMENTED_SPLIT_METHODS}"
            raise InvalidSpecError(msg)
        # The modulo stride round(1 / holdout_fraction) needs at least two samples per period
        if not 0 < self.holdout_fraction <= 0.5:
            msg = f"split.holdout_fraction must be in (0, 0.5], got {self.holdout_fraction}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> SplitSettings:
        check_known_keys(config, ["method", "holdout_fraction"], where="split")
        return cls(
            method=str(config.get("method", "modulo")),
            holdout_fraction=as_float(config.get("holdout_fraction", 0.2), where="split.holdout_fraction"),
        )

    @property
    def stride(self) -> int:
        return round(1 / self.holdout_fraction)

    def is_heldout(self, index: int) -> bool:
        if self.method == "modulo":
            return index % self.stride == self.stride - 1
        digest = hashlib.blake2b(str(index).encode(), digest_size=8).digest()
        return int.from_bytes(digest, "big") / 2**64 < self.holdout_fraction


@attrs.frozen
class RetrySettings:
    """Bounded exponential backoff for transient solver failures."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def __attrs_post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"build.retry.max_attempts must be >= 1, got {self.max_attempts}"
            raise InvalidSpecError(msg)
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            msg = "build.retry delays and jitter must be non-negative"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RetrySettings:
        check_known_keys(config, ["max_attempts", "base_delay", "max_delay", "jitter"], where="build.retry")
        return cls(
            max_attempts=as_int(config.get("max_attempts", 3), where="build.retry.max_attempts"),
            base_delay=as_float(config.get("base_delay", 1.0), where="build.retry.base_delay"),
            max_delay=as_float(config.get("max_delay", 30.0), where="build.retry.max_delay"),
            jitter=as_float(config.get("jitter", 0.1), where="build.retry.jitter"),
        )


@attrs.frozen
class BuildSettings:
    max_workers: int = 4
    max_failure_fraction: float = 0.1
    timeout: float | None = None
    retry: RetrySettings = attrs.field(factory=RetrySettings)

    def __attrs_post_init__(self) -> None:
        if self.max_workers < 1:
            msg = f"build.max_workers must be >= 1, got {self.max_workers}"
            raise InvalidSpecError(msg)
        if not 0 <= self.max_failure_fraction < 1:
            msg = f"build.max_failure_fraction must be in [0, 1), got {self.max_failure_fraction}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BuildSettings:
        check_known_keys(config, ["max_workers", "max_failure_fraction", "timeout", "retry"], where="build")
        timeout = config.get("timeout")
        return cls(
            max_workers=as_int(config.get("max_workers", 4), where="build.max_workers"),
            max_failure_fraction=as_float(config.get("max_failure_fraction", 0.1), where="build.max_failure_fraction"),
            timeout=None if timeout is None else as_float(timeout, where="build.timeout"),
            retry=RetrySettings.from_config(config.get("retry", {})),
        )


@attrs.frozen
class AccuracySettings:
    max_relative_error: float = 1e-2
    gradient_tolerance: float = 1e-4
    n_gradient_checks: int = 4
    zero_tolerance: float = 1e-12

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> AccuracySettings:
        check_known_keys(
            config, ["max_relative_error", "gradient_tolerance", "n_gradient_checks", "zero_tolerance"], where="accuracy"
        )
        c = cls(
            max_relative_error=as_float(config.get("max_relative_error", 1e-2), where="accuracy.max_relative_error"),
            gradient_tolerance=as_float(config.get("gradient_tolerance", 1e-4), where="accuracy.gradient_tolerance"),
            n_gradient_checks=as_int(config.get("n_gradient_checks", 4), where="accuracy.n_gradient_checks"),
            zero_tolerance=as_float(config.get("zero_tolerance", 1e-12), where="accuracy.zero_tolerance"),
        )
        if c.max_relative_error <= 0 or c.gradient_tolerance <= 0 or c.zero_tolerance < 0 or c.n_gradient_checks < 0:
            msg = f"Invalid accuracy settings: {c}"
            raise InvalidSpecError(msg)
        return c


####################################################################################################################
# Full specification
####################################################################################################################
@attrs.frozen
class EmulatorSpec:
    """Immutable, validated emulator specification.

    Attributes:
        name: Emulator name.
        author: Author of the specification.
        environment: Reference to the execution environment (container image, command, or python function).
        config: Solver configuration, passed verbatim to the solver.
        emulator_fn: Model family declaration.
        training: Training procedure declaration.
        parameters: Parameter domain.
        outputs: Output declarations, sorted by name.
        sampling: Parameter sampling settings.
        split: Fit / held-out partition settings.
        build: Training set build settings (concurrency, retries, failure threshold).
        accuracy: Acceptance criteria for the trained emulator.
    """

    name: str
    author: str
    environment: str
    config: dict[str, Any]
    emulator_fn: emulation_interface.ModelDeclaration
    training: emulation_interface.TrainingDeclaration
    parameters: ParameterDomain
    outputs: tuple[OutputDeclaration, ...]
    sampling: SamplingSettings = attrs.field(factory=SamplingSettings)
    split: SplitSettings = attrs.field(factory=SplitSettings)
    build: BuildSettings = attrs.field(factory=BuildSettings)
    accuracy: AccuracySettings = attrs.field(factory=AccuracySettings)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> EmulatorSpec:
        """Validate a parsed specification document.

        Args:
            config: Parsed specification document.
        Returns:
            Validated specification.
        """
        if not isinstance(config, Mapping):
            msg = f"The emulator specification must be a mapping, got {type(config)}"
            raise InvalidSpecError(msg)
        check_known_keys(config, _TOP_LEVEL_KEYS, where="emulator specification")
        for key in ["name", "author", "container", "emulator_fn", "training", "parameters", "outputs"]:
            if key not in config:
                msg = f"Missing required key '{key}' in emulator specification"
                raise InvalidSpecError(msg)
        name = str(config["name"]).strip()
        if not name:
            msg = "The emulator name must not be empty"
            raise InvalidSpecError(msg)
        outputs_config = config["outputs"]
        if not isinstance(outputs_config, Mapping) or not outputs_config:
            msg = f"'outputs' must be a non-empty mapping, got {outputs_config!r}"
            raise InvalidSpecError(msg)
        solver_config = config.get("config") or {}
        if not isinstance(solver_config, Mapping):
            msg = f"'config' must be a mapping, got {solver_config!r}"
            raise InvalidSpecError(msg)
        try:
            solver_config = helpers.to_builtin(solver_config)
        except (TypeError, ValueError) as e:
            msg = f"'config' must only contain plain (finite) values: {e}"
            raise InvalidSpecError(msg) from e

        emulator_fn, training = emulation_interface.parse_declarations(
            model_config=config["emulator_fn"], training_config=config["training"]
        )

        return cls(
            name=name,
            author=str(config["author"]),
            environment=str(config["container"]),
            config=solver_config,
            emulator_fn=emulator_fn,
            training=training,
            parameters=ParameterDomain.from_config(config["parameters"]),
            outputs=tuple(
                sorted(
                    (OutputDeclaration.from_config(k, v) for k, v in outputs_config.items()),
                    key=lambda o: o.name,
                )
            ),
            sampling=SamplingSettings.from_config(config.get("sampling") or {}),
            split=SplitSettings.from_config(config.get("split") or {}),
            build=BuildSettings.from_config(config.get("build") or {}),
            accuracy=AccuracySettings.from_config(config.get("accuracy") or {}),
        )

    @classmethod
    def from_config_file(cls, config_file: Path | str) -> EmulatorSpec:
        with Path(config_file).open() as stream:
            try:
                config = yaml.safe_load(stream)
            except yaml.YAMLError as e:
                msg = f"Could not parse emulator specification {config_file}"
                raise InvalidSpecError(msg) from e
        logger.info(f"Loaded emulator specification from {config_file}")
        return cls.from_config(config=config)

    @property
    def layout(self) -> OutputLayout:
        return OutputLayout(outputs=self.outputs)

    def to_dict(self) -> dict[str, Any]:
        """Normalized contents, with all defaults filled in."""
        return {
            "name": self.name,
            "author": self.author,
            "container": self.environment,
            "config": self.config,
            "emulator_fn": self.emulator_fn.to_dict(),
            "training": self.training.to_dict(),
            "parameters": self.parameters.to_list(),
            "outputs": {output.name: output.to_dict() for output in self.outputs},
            "sampling": attrs.asdict(self.sampling),
            "split": attrs.asdict(self.split),
            "build": attrs.asdict(self.build),
            "accuracy": attrs.asdict(self.accuracy),
        }

    def canonical_bytes(self) -> bytes:
        return helpers.canonical_json(self.to_dict())

    @property
    def fingerprint(self) -> str:
        return helpers.sha256_digest(self.canonical_bytes())

    @property
    def evaluation_fingerprint(self) -> str:
        """Fingerprint of the parts of the emulator spec which determine the solver outputs of a sample index."""
        evaluation = {
            "container": self.environment,
            "config": self.config,
            "parameters": self.parameters.to_list(),
            "outputs": {output.name: output.to_dict() for output in self.outputs},
            "sampling": {"strategy": self.sampling.strategy, "seed": self.sampling.seed},
        }
        return helpers.sha256_digest(helpers.canonical_json(evaluation))

    def with_n_samples(self, n_samples: int) -> EmulatorSpec:
        """New spec with a different sample count (e.g. to grow the training set)."""
        return attrs.evolve(self, sampling=attrs.evolve(self.sampling, n_samples=n_samples))
