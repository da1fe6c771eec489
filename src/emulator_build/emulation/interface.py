"""
Module related to model families, with functionality to declare, reconstruct and call emulators

The main functionalities are:
 - parse_declarations() validates the model and training declarations of a specification.
 - Emulator reconstructs the pure function from a trained model, evaluates outputs at any
   parameter point and axis values (interpolating along the axes), and provides the
   analytic gradient with respect to the parameters.

Model families are registered from the modules in this package (see `emulation.base`).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import ModuleType
from typing import TYPE_CHECKING, Any

import attrs
import numpy as np
import numpy.typing as npt
import scipy.interpolate

from emulator_build import register_modules
from emulator_build.emulation import base as emulation_base
from emulator_build.exceptions import InvalidSpecError

if TYPE_CHECKING:
    from emulator_build.spec import EmulatorSpec, OutputDeclaration

logger = logging.getLogger(__name__)

_models: dict[str, ModuleType] = {}


def _validate_model(name: str, module: ModuleType) -> None:
    """
    Validate that a model family module follows the expected interface.
    """
    required_functions = ["minimum_training_examples", "create_fitter", "predict", "gradient"]
    for function_name in required_functions:
        if not callable(getattr(module, function_name, None)):
            msg = f"Model module {name} does not have a required '{function_name}' function"
            raise ValueError(msg)
    if not module.supported_objectives:
        msg = f"Model module {name} must support at least one objective"
        raise ValueError(msg)


def available_models() -> list[str]:
    return sorted(_models)


def model_module(model_type: str) -> ModuleType:
    try:
        return _models[model_type]
    except KeyError as e:
        msg = f"Model family '{model_type}' not registered or available. Options: {available_models()}"
        raise InvalidSpecError(msg) from e


####################################################################################################################
# Declarations
####################################################################################################################
@attrs.frozen
class ModelDeclaration:
    """Model family and its (validated) hyperparameters."""

    type: str
    settings: Any

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "params": self.settings.to_config()}


@attrs.frozen
class TrainingDeclaration:
    """Training procedure and its (validated) settings."""

    type: str
    settings: emulation_base.TrainingSettings

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "params": self.settings.to_config()}


def _split_declaration(config: Any, where: str) -> tuple[str, Mapping[str, Any]]:
    if not isinstance(config, Mapping) or "type" not in config:
        msg = f"'{where}' must be a mapping with a 'type' (and optional 'params'), got {config!r}"
        raise InvalidSpecError(msg)
    unknown = set(config) - {"type", "params"}
    if unknown:
        msg = f"Unknown keys in {where}: {sorted(unknown)}"
        raise InvalidSpecError(msg)
    params = config.get("params") or {}
    if not isinstance(params, Mapping):
        msg = f"'{where}.params' must be a mapping, got {params!r}"
        raise InvalidSpecError(msg)
    return str(config["type"]), params


def parse_declarations(
    model_config: Mapping[str, Any], training_config: Mapping[str, Any]
) -> tuple[ModelDeclaration, TrainingDeclaration]:
    """Validate the model and training declarations together.

    Args:
        model_config: `emulator_fn` section of the specification.
        training_config: `training` section of the specification.
    Returns:
        Model declaration, training declaration.
    """
    model_type, model_params = _split_declaration(model_config, where="emulator_fn")
    training_type, training_params = _split_declaration(training_config, where="training")
    module = model_module(model_type)
    if training_type != module.training_type:
        msg = (
            f"Training procedure '{training_type}' is not compatible with model '{model_type}'."
            f" Use '{module.training_type}'"
        )
        raise InvalidSpecError(msg)
    try:
        model_settings = module.ModelSettings.from_config(model_params)
    except InvalidSpecError:
        raise
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        msg = f"Invalid parameters for model '{model_type}': {e}"
        raise InvalidSpecError(msg) from e
    training_settings = emulation_base.TrainingSettings.from_config(
        training_params,
        supported_objectives=tuple(module.supported_objectives),
        defaults=module.default_training,
        options_type=module.TrainingOptions,
    )
    return (
        ModelDeclaration(type=model_type, settings=model_settings),
        TrainingDeclaration(type=training_type, settings=training_settings),
    )


####################################################################################################################
# Emulator
####################################################################################################################
class Emulator:
    """Callable emulator reconstructed from a trained model.

    Evaluate with e.g. `emulator([0.03], "linear_matter_power", k=[1e-3, 1e-2])`.

    Attributes:
        trained_model: Trained model.
        spec: Emulator specification.
    """

    def __init__(self, trained_model: emulation_base.TrainedModel, spec: EmulatorSpec) -> None:
        self.trained_model = trained_model
        self.spec = spec
        self._module = model_module(trained_model.model_type)
        self._settings = spec.emulator_fn.settings
        self._transform = trained_model.transform
        self._layout = spec.layout

    def __repr__(self) -> str:
        return f"Emulator(name={self.spec.name!r}, model_type={self.trained_model.model_type!r})"

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return self.spec.parameters.names

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._layout.names

    def _unit_inputs(self, parameters: npt.ArrayLike, check_domain: bool) -> npt.NDArray[np.float64]:
        values = np.atleast_2d(np.asarray(parameters, dtype=np.float64))
        if values.shape[-1] != self.spec.parameters.n_dimensions:
            msg = f"Expected {self.spec.parameters.n_dimensions} parameters {self.parameter_names}, got shape {values.shape}"
            raise ValueError(msg)
        if check_domain and not np.all(self.spec.parameters.contains(values)):
            msg = f"Parameters {values.tolist()} outside of the declared domain {self.spec.parameters.to_list()}"
            raise ValueError(msg)
        return self.spec.parameters.to_unit(values)

    def predict_features(self, parameters: npt.ArrayLike, check_domain: bool = False) -> npt.NDArray[np.float64]:
        """Features (n_samples, n_features) at the training nodes."""
        x = self._unit_inputs(parameters, check_domain=check_domain)
        return self._transform.inverse(self._module.predict(self.trained_model.weights, self._settings, x))

    def feature_gradient(self, parameters: npt.ArrayLike, check_domain: bool = False) -> npt.NDArray[np.float64]:
        """Gradient of the features with respect to the parameters, with shape (n_samples, n_features, n_parameters)."""
        x = self._unit_inputs(parameters, check_domain=check_domain)
        weights = self.trained_model.weights
        latent = self._module.predict(weights, self._settings, x)
        latent_gradient = self._module.gradient(weights, self._settings, x)
        # Chain rule for the normalization of the inputs
        return self._transform.inverse_jvp(latent, latent_gradient) / self.spec.parameters.width

    def predict_outputs(self, parameters: npt.ArrayLike) -> dict[str, npt.NDArray[np.float64]]:
        """Outputs on their training grids, with shape (n_samples, *training_shape) for each output."""
        return self._layout.outputs_from_features(self.predict_features(parameters))

    def _evaluate(
        self,
        parameters: npt.ArrayLike,
        output: str,
        axes: Mapping[str, npt.ArrayLike],
        with_gradient: bool,
    ) -> npt.NDArray[np.float64]:
        declaration = self._layout.output(output)
        single = np.ndim(parameters) == 1
        values = self.predict_features(parameters, check_domain=True)
        grid_values = self._layout.outputs_from_features(values)[output]
        grid_gradient = None
        if with_gradient:
            gradient = self.feature_gradient(parameters, check_domain=True)
            grid_gradient = self._layout.outputs_from_features(gradient)[output]

        if not axes:
            result = grid_gradient if with_gradient else grid_values
        else:
            points, shape = axis_points(declaration, axes)
            interpolated, interpolated_gradient = interpolate(declaration, grid_values, points, grid_gradient)
            if with_gradient:
                result = interpolated_gradient.reshape((interpolated_gradient.shape[0], *shape, -1))
            else:
                result = interpolated.reshape((interpolated.shape[0], *shape))
        return result[0] if single else result

    def __call__(self, parameters: npt.ArrayLike, output: str, **axes: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Evaluate an output.

        Args:
            parameters: Parameter vector (n_parameters,) or matrix (n_samples, n_parameters),
                in the declared parameter order.
            output: Output name.
            axes: Values of the output's independent variables. They are broadcast against each
                other. If none are given, the output is returned on its training grid.
        Returns:
            Output values with shape (*broadcast_shape) for a parameter vector, or (n_samples, *broadcast_shape).
        """
        return self._evaluate(parameters, output, axes, with_gradient=False)

    def gradient(self, parameters: npt.ArrayLike, output: str, **axes: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Analytic gradient of an output with respect to the parameters.

        Same arguments as `__call__`. The parameter dimension is appended as the last axis.
        """
        return self._evaluate(parameters, output, axes, with_gradient=True)


####################################################################################################################
# Interpolation along output axes
####################################################################################################################
def axis_points(
    declaration: OutputDeclaration, axes: Mapping[str, npt.ArrayLike]
) -> tuple[npt.NDArray[np.float64], tuple[int, ...]]:
    """Broadcast axis values into an array of points (n_points, n_axes) (in physical units)."""
    missing = set(declaration.axis_names) - set(axes)
    unknown = set(axes) - set(declaration.axis_names)
    if missing or unknown:
        msg = f"Output '{declaration.name}' requires values for exactly {declaration.axis_names}. {missing=}, {unknown=}"
        raise ValueError(msg)
    broadcast = np.broadcast_arrays(*[np.asarray(axes[name], dtype=np.float64) for name in declaration.axis_names])
    shape = broadcast[0].shape
    return np.stack([b.ravel() for b in broadcast], axis=-1), shape


def interpolate(
    declaration: OutputDeclaration,
    grid_values: npt.NDArray[np.float64],
    points: npt.NDArray[np.float64],
    grid_gradient: npt.NDArray[np.float64] | None = None,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64] | None]:
    """Interpolate values on the training grid to arbitrary points inside the declared ranges.

    Interpolation happens in the axis coordinates (i.e. log10 for log spaced axes).

    Args:
        declaration: Output declaration.
        grid_values: Values on the training grid, with shape (n_samples, *training_shape).
        points: Points in physical units, with shape (n_points, n_axes).
        grid_gradient: Optional gradient on the training grid, with shape (n_samples, *training_shape, n_parameters).
    Returns:
        Values (n_samples, n_points), gradient (n_samples, n_points, n_parameters) or None.
    """
    training_nodes = declaration.training_nodes()
    for axis, column in zip(declaration.axes, points.T, strict=True):
        if np.any(column < axis.minimum) or np.any(column > axis.maximum):
            msg = f"Values of '{axis.name}' outside of the declared range [{axis.minimum}, {axis.maximum}]"
            raise ValueError(msg)

    if declaration.interpolation == "none":
        indices = []
        for axis, column in zip(declaration.axes, points.T, strict=True):
            nodes = training_nodes[axis.name]
            index = np.searchsorted(nodes, column).clip(0, len(nodes) - 1)
            # The nearest node could be either neighbor
            index = np.where(
                (index > 0) & (np.abs(nodes[index - 1] - column) < np.abs(nodes[index] - column)), index - 1, index
            )
            if not np.allclose(nodes[index], column, rtol=1e-10, atol=0):
                msg = f"Output '{declaration.name}' is declared without interpolation: '{axis.name}' values must be grid nodes"
                raise ValueError(msg)
            indices.append(index)
        selection = (slice(None), *indices)
        return grid_values[selection], None if grid_gradient is None else grid_gradient[selection]

    coordinates = tuple(axis.coordinate(training_nodes[axis.name]) for axis in declaration.axes)
    query = np.stack([axis.coordinate(column) for axis, column in zip(declaration.axes, points.T, strict=True)], axis=-1)
    method = "cubic" if declaration.interpolation == "cubic" else "linear"

    def _interpolate(values: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        # Move the sample (and gradient) dimensions to the end, as expected by the interpolator.
        n_axes = len(coordinates)
        moved = np.moveaxis(values, 0, n_axes) if values.ndim == n_axes + 1 else np.moveaxis(values, (0, -1), (n_axes, n_axes + 1))
        interpolator = scipy.interpolate.RegularGridInterpolator(coordinates, moved, method=method, bounds_error=False, fill_value=None)
        return np.moveaxis(interpolator(query), 0, 1)

    if declaration.interpolation != "log":
        return _interpolate(grid_values), None if grid_gradient is None else _interpolate(grid_gradient)

    # Log interpolation, falling back to linear for samples with non-positive values.
    positive = np.all(grid_values.reshape(grid_values.shape[0], -1) > 0, axis=-1)
    safe_values = np.where(positive.reshape((-1,) + (1,) * (grid_values.ndim - 1)), grid_values, 1.0)
    log_result = np.exp(_interpolate(np.log(safe_values)))
    linear_result = _interpolate(grid_values)
    result = np.where(positive[:, np.newaxis], log_result, linear_result)
    gradient = None
    if grid_gradient is not None:
        # d exp(sum_i w_i log v_i) = exp(...) sum_i w_i dv_i / v_i
        log_gradient = log_result[..., np.newaxis] * _interpolate(grid_gradient / safe_values[..., np.newaxis])
        linear_gradient = _interpolate(grid_gradient)
        gradient = np.where(positive[:, np.newaxis, np.newaxis], log_gradient, linear_gradient)
    return result, gradient


# Actually perform the discovery and registration of the model families
if not _models:
    _models.update(
        register_modules.discover_and_register_modules(
            calling_module_name=__name__,
            required_attributes=[
                "ModelSettings",
                "TrainingOptions",
                "training_type",
                "supported_objectives",
                "default_training",
            ],
            validation_function=_validate_model,
        )
    )
