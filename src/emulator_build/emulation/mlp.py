"""Multilayer perceptron emulator, trained by minibatch gradient descent.

The network is a torch `nn.Sequential` in double precision. The trained weights are stored as
arrays, and the network is rebuilt from them for predictions. The input gradient comes from
torch autograd, so it is exact up to rounding.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt
import torch
from torch import nn

from emulator_build.emulation import base as emulation_base
from emulator_build.exceptions import InvalidSpecError, TrainingError

logger = logging.getLogger(__name__)

_register_name = "mlp"
training_type = "gradient_descent"
supported_objectives = ("mse", "msre")
default_training = {"max_epochs": 2000, "patience": 200}

IMPLEMENTED_ACTIVATIONS = ["tanh", "sigmoid", "relu"]
IMPLEMENTED_OPTIMIZERS = ["adam", "sgd"]


@attrs.frozen
class ModelSettings:
    base_settings: emulation_base.BaseModelSettings
    hidden_layers: tuple[int, ...] = (64, 64)
    activation: str = "tanh"

    def __attrs_post_init__(self) -> None:
        if not self.hidden_layers or any(width < 1 for width in self.hidden_layers):
            msg = f"hidden_layers must be a non-empty list of positive widths, got {self.hidden_layers}"
            raise InvalidSpecError(msg)
        if self.activation not in IMPLEMENTED_ACTIVATIONS:
            msg = f"Unsupported activation '{self.activation}'. Options: {IMPLEMENTED_ACTIVATIONS}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> ModelSettings:
        emulation_base.check_known_keys(
            params, ["hidden_layers", "activation", "n_pc", "log_outputs"], where="mlp params"
        )
        return cls(
            base_settings=emulation_base.BaseModelSettings.from_config(params),
            hidden_layers=tuple(int(width) for width in params.get("hidden_layers", (64, 64))),
            activation=str(params.get("activation", "tanh")),
        )

    def to_config(self) -> dict[str, Any]:
        return {
            "hidden_layers": list(self.hidden_layers),
            "activation": self.activation,
            **self.base_settings.to_config(),
        }


@attrs.frozen
class TrainingOptions:
    """Gradient descent settings.

    Attributes:
        optimizer: "adam" or "sgd". Default: "adam".
        learning_rate: Step size. Default: 1e-3.
        batch_size: Minibatch size. Default: 32.
        momentum: Momentum for sgd. Default: 0.9.
        weight_decay: L2 penalty on the weights (not the biases). Default: 0.
    """

    optimizer: str = "adam"
    learning_rate: float = 1e-3
    batch_size: int = 32
    momentum: float = 0.9
    weight_decay: float = 0.0

    def __attrs_post_init__(self) -> None:
        if self.optimizer not in IMPLEMENTED_OPTIMIZERS:
            msg = f"Unsupported optimizer '{self.optimizer}'. Options: {IMPLEMENTED_OPTIMIZERS}"
            raise InvalidSpecError(msg)
        if self.learning_rate <= 0 or self.batch_size < 1 or not 0 <= self.momentum < 1 or self.weight_decay < 0:
            msg = f"Invalid gradient descent settings: {self}"
            raise InvalidSpecError(msg)

    @classmethod
    def from_config(cls, params: Mapping[str, Any]) -> TrainingOptions:
        emulation_base.check_known_keys(
            params,
            ["optimizer", "learning_rate", "batch_size", "momentum", "weight_decay"],
            where="gradient_descent params",
        )
        return cls(
            optimizer=str(params.get("optimizer", "adam")),
            learning_rate=float(params.get("learning_rate", 1e-3)),
            batch_size=int(params.get("batch_size", 32)),
            momentum=float(params.get("momentum", 0.9)),
            weight_decay=float(params.get("weight_decay", 0.0)),
        )

    def to_config(self) -> dict[str, Any]:
        return attrs.asdict(self)


def minimum_training_examples(n_parameters: int, settings: ModelSettings) -> int:
    return max(2, n_parameters + 1)



####################################################################################################################
# Network
####################################################################################################################
_ACTIVATIONS: dict[str, type[nn.Module]] = {"tanh": nn.Tanh, "sigmoid": nn.Sigmoid, "relu": nn.ReLU}


def _weight_key(layer: int) -> str:
    return f"{emulation_base.MODEL_PREFIX}layer_{layer}_weights"


def _bias_key(layer: int) -> str:
    return f"{emulation_base.MODEL_PREFIX}layer_{layer}_bias"


def _tensor(array: npt.ArrayLike) -> torch.Tensor:
    # Copy, since the stored weights are read-only
    return torch.from_numpy(np.array(array, dtype=np.float64))


def _build_network(widths: list[int], activation: str) -> nn.Sequential:
    layers: list[nn.Module] = []
    for fan_in, fan_out in zip(widths[:-2], widths[1:-1], strict=True):
        layers.append(nn.Linear(fan_in, fan_out, dtype=torch.float64))
        layers.append(_ACTIVATIONS[activation]())
    layers.append(nn.Linear(widths[-2], widths[-1], dtype=torch.float64))
    return nn.Sequential(*layers)


def _linear_layers(network: nn.Sequential) -> list[nn.Linear]:
    return [module for module in network if isinstance(module, nn.Linear)]


def network_weights(network: nn.Sequential) -> dict[str, npt.NDArray[np.float64]]:
    """Weights of the linear layers, with the torch layout (out_features, in_features)."""
    weights = {}
    for layer, linear in enumerate(_linear_layers(network)):
        weights[_weight_key(layer)] = linear.weight.detach().numpy().copy()
        weights[_bias_key(layer)] = linear.bias.detach().numpy().copy()
    return weights


def _network_from_weights(weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings) -> nn.Sequential:
    layers = []
    while _weight_key(len(layers)) in weights:
        layers.append((weights[_weight_key(len(layers))], weights[_bias_key(len(layers))]))
    widths = [layers[0][0].shape[1], *(w.shape[0] for w, _ in layers)]
    # The initial values are overwritten, so leave the global generator alone
    with torch.random.fork_rng(devices=[]):
        network = _build_network(widths, settings.activation)
    with torch.no_grad():
        for linear, (w, b) in zip(_linear_layers(network), layers, strict=True):
            linear.weight.copy_(_tensor(w))
            linear.bias.copy_(_tensor(b))
    return network.eval()


def initialize_weights(
    n_inputs: int, n_outputs: int, settings: ModelSettings, seed: int
) -> dict[str, npt.NDArray[np.float64]]:
    """Weights of a freshly initialized network (torch's default initialization)."""
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(seed)
        network = _build_network([n_inputs, *settings.hidden_layers, n_outputs], settings.activation)
    return network_weights(network)


def predict(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    network = _network_from_weights(weights, settings)
    with torch.no_grad():
        return network(_tensor(x)).numpy()


def gradient(
    weights: Mapping[str, npt.NDArray[Any]], settings: ModelSettings, x: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    network = _network_from_weights(weights, settings)
    # The samples are independent, so the Jacobian of the sum over the batch holds every per-sample Jacobian.
    jacobian = torch.autograd.functional.jacobian(lambda inputs: network(inputs).sum(dim=0), _tensor(x))
    # (n_latent, n_samples, n_parameters) -> (n_samples, n_latent, n_parameters)
    return jacobian.permute(1, 0, 2).numpy()


def _inverse_transform(transform: emulation_base.OutputTransform, latent: torch.Tensor) -> torch.Tensor:
    """Differentiable version of `OutputTransform.inverse`."""
    z = latent
    if transform.components is not None:
        z = z @ _tensor(transform.components) + _tensor(transform.pca_mean)
    y = z * _tensor(transform.scale) + _tensor(transform.mean)
    if transform.log_outputs:
        y = torch.exp(y)
    return y


####################################################################################################################
# Training
####################################################################################################################
def _build_optimizer(network: nn.Sequential, options: TrainingOptions) -> torch.optim.Optimizer:
    # The weight decay only applies to the weights, not the biases
    linear_layers = _linear_layers(network)
    parameter_groups = [
        {"params": [linear.weight for linear in linear_layers], "weight_decay": options.weight_decay},
        {"params": [linear.bias for linear in linear_layers], "weight_decay": 0.0},
    ]
    if options.optimizer == "sgd":
        return torch.optim.SGD(parameter_groups, lr=options.learning_rate, momentum=options.momentum)
    return torch.optim.Adam(parameter_groups, lr=options.learning_rate)


@attrs.define
class GradientDescentFitter:
    """Minibatch gradient descent on the mse (latent space) or msre (physical space) objective."""

    x: npt.NDArray[np.float64]
    y: npt.NDArray[np.float64]
    transform: emulation_base.OutputTransform
    settings: ModelSettings
    training: emulation_base.TrainingSettings
    _inputs: torch.Tensor = attrs.field(init=False)
    _targets: torch.Tensor = attrs.field(init=False)
    _network: nn.Sequential = attrs.field(init=False)
    _optimizer: torch.optim.Optimizer = attrs.field(init=False)
    _generator: torch.Generator = attrs.field(init=False)

    def __attrs_post_init__(self) -> None:
        if self.training.objective == "msre":
            if np.any(np.abs(self.y) <= np.finfo(np.float64).tiny):
                msg = "The msre objective requires non-zero outputs"
                raise TrainingError(msg)
            self._targets = _tensor(self.y)
        else:
            self._targets = _tensor(self.transform.forward(self.y))
        self._inputs = _tensor(self.x)
        initial = initialize_weights(self.x.shape[1], self.transform.n_latent, self.settings, seed=self.training.seed)
        self._network = _network_from_weights(initial, self.settings)
        self._generator = torch.Generator().manual_seed(self.training.seed)
        self._optimizer = _build_optimizer(self._network, self.training.options)

    def _objective(self, output: torch.Tensor, indices: torch.Tensor) -> torch.Tensor:
        truth = self._targets[indices]
        if self.training.objective == "mse":
            return torch.mean((output - truth) ** 2)
        prediction = _inverse_transform(self.transform, output)
        return torch.mean(((prediction - truth) / truth) ** 2)

    def step(self) -> emulation_base.EpochResult:
        n_samples = self._inputs.shape[0]
        batch_size = min(self.training.options.batch_size, n_samples)
        order = torch.randperm(n_samples, generator=self._generator)
        self._network.train()
        for start in range(0, n_samples, batch_size):
            indices = order[start : start + batch_size]
            self._optimizer.zero_grad()
            loss = self._objective(self._network(self._inputs[indices]), indices)
            loss.backward()
            self._optimizer.step()

        # Objective over the full fit set after the epoch
        self._network.eval()
        with torch.no_grad():
            objective = self._objective(self._network(self._inputs), torch.arange(n_samples))
        return emulation_base.EpochResult(objective=float(objective), converged=False)

    def weights(self) -> dict[str, npt.NDArray[np.float64]]:
        return network_weights(self._network)


def create_fitter(
    x: npt.NDArray[np.float64],
    y: npt.NDArray[np.float64],
    transform: emulation_base.OutputTransform,
    settings: ModelSettings,
    training: emulation_base.TrainingSettings,
) -> GradientDescentFitter:
    return GradientDescentFitter(x=x, y=y, transform=transform, settings=settings, training=training)
