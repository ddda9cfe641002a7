"""Shared machinery of the feed-forward and recurrent networks.

A network owns an ordered list of layers, infers their dimensions from the
data, allocates the flat parameter vector and hands every layer its views.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from .backend import get_default_dtype, get_rng, xp
from .init import InitializationRule, RandomInitialization
from .layers import Layer, get_layer
from .loss import Loss, MeanSquaredError
from .optimizer import Adam

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .callbacks import Callback
    from .optimizer import Optimizer


logger = logging.getLogger(__name__)


class Network(ABC):
    """Abstract base class of `FFN` and `RNN`.

    Args:
        loss (Loss | None): Output loss. Defaults to `MeanSquaredError()`.
        init (InitializationRule | None): Rule used by `reset`. Defaults to
            `RandomInitialization()`.
    """

    def __init__(
        self,
        loss: Loss | None = None,
        init: InitializationRule | None = None,
    ) -> None:
        self.loss = loss if loss is not None else MeanSquaredError()
        self.init = init if init is not None else RandomInitialization()
        self.layers: list[Layer] = []
        self.input_dimensions: tuple[int, ...] | None = None
        self._parameters: xp.ndarray | None = None
        self._offsets: list[tuple[int, int]] = []
        self._inputs: xp.ndarray | None = None
        self._targets: xp.ndarray | None = None

    def add(self, layer: Layer | str, **kwargs: Any) -> Network:
        """Append a layer.

        Args:
            layer (Layer | str): A layer instance, or the registered name of a
                layer class which is then constructed with `kwargs`.
            **kwargs (Any): Constructor arguments when `layer` is a name.

        Returns:
            Network: Self, for chaining.
        """
        if isinstance(layer, str):
            layer = get_layer(layer)(**kwargs)
        elif kwargs:
            raise TypeError("Keyword arguments are only accepted together with a layer name")
        if not isinstance(layer, Layer):
            raise TypeError(f'Expected a Layer, got "{type(layer).__name__}"')
        self.layers.append(layer)
        # dimensions and parameters have to be inferred again
        self._parameters = None
        return self

    @property
    def output_dimensions(self) -> tuple[int, ...] | None:
        if not self.layers or self.layers[-1].output_dimensions is None:
            return None
        return self.layers[-1].output_dimensions

    def _infer_dimensions(self, input_dimensions: tuple[int, ...]) -> None:
        if not self.layers:
            raise RuntimeError("The network has no layers. Add layers before using it.")
        dims = tuple(int(d) for d in input_dimensions)
        self.input_dimensions = dims
        for layer in self.layers:
            layer.input_dimensions = dims
            layer.compute_output_dimensions()
            dims = layer.output_dimensions  # type: ignore[assignment]
            logger.debug(f"{layer!r}")

    def _alias(self, flat: xp.ndarray) -> list[xp.ndarray]:
        return [flat[begin:end] for begin, end in self._offsets]

    def reset(self, input_dimensions: tuple[int, ...] | None = None) -> Network:
        """Infer all dimensions, allocate and initialize the parameters.

        Args:
            input_dimensions (tuple[int, ...] | None): Per-point input shape.
                Defaults to the dimensions already known to the network.

        Raises:
            RuntimeError: If no input dimensions are known.

        Returns:
            Network: Self, for chaining.
        """
        dims = input_dimensions if input_dimensions is not None else self.input_dimensions
        if dims is None:
            raise RuntimeError(
                "Input dimensions are unknown. Pass them to reset() or train the network."
            )
        self._infer_dimensions(dims)

        self._offsets = []
        offset = 0
        for layer in self.layers:
            size = layer.weight_size()
            self._offsets.append((offset, offset + size))
            offset += size

        self._parameters = xp.zeros(offset, dtype=get_default_dtype())
        for layer, view in zip(self.layers, self._alias(self._parameters), strict=True):
            layer.set_weights(view)
            layer.reset_parameters(self.init)
        logger.info(
            f"{type(self).__name__} initialized: {len(self.layers)} layers, "
            f"{offset} parameters, input {self.input_dimensions} -> output {self.output_dimensions}"
        )
        return self

    def _ensure_initialized(self, input_dimensions: tuple[int, ...]) -> None:
        if self._parameters is None or self.input_dimensions != tuple(input_dimensions):
            if self._parameters is not None:
                logger.warning(
                    f"Input dimensions changed from {self.input_dimensions} to "
                    f"{tuple(input_dimensions)}; reinitializing the parameters"
                )
            self.reset(tuple(input_dimensions))

    @property
    def parameters(self) -> xp.ndarray:
        """The flat parameter vector shared by all layers.

        Raises:
            RuntimeError: If the network has not been initialized.
        """
        if self._parameters is None:
            raise RuntimeError("Parameters are not allocated. Call reset() or train() first.")
        return self._parameters

    @parameters.setter
    def parameters(self, value: xp.ndarray) -> None:
        self.parameters[...] = xp.asarray(value).reshape(self.parameters.shape)

    def _sync(self, coordinates: xp.ndarray) -> None:
        """Make the layers see `coordinates`, copying only if they are foreign."""
        if coordinates is not self.parameters:
            self.parameters[...] = coordinates

    def get_parameters(self) -> OrderedDict[str, xp.ndarray]:
        """Collect the parameter views of all layers.

        Returns:
            OrderedDict[str, xp.ndarray]: Views keyed by their path,
                e.g. "layers[0].weight", "layers[2].bias".
        """
        if self._parameters is None:
            raise RuntimeError("Parameters are not allocated. Call reset() or train() first.")
        result: OrderedDict[str, xp.ndarray] = OrderedDict()
        for idx, layer in enumerate(self.layers):
            for name, view in layer.get_parameters().items():
                result[f"layers[{idx}].{name}"] = view
        return result

    def load_parameters(
        self,
        *,
        parameters: OrderedDict[str, xp.ndarray],
        partial: bool = False,
    ) -> Network:
        """Load parameters into the network from a parameter dict.

        Args:
            parameters (OrderedDict[str, xp.ndarray]): Arrays keyed by path,
                as returned by `get_parameters`.
            partial (bool): If True, allow missing keys in `parameters`.
                If False, raises on missing keys. Defaults to False.

        Returns:
            Network: self, for method chaining.
        """
        for path, view in self.get_parameters().items():
            init_data = parameters.get(path)
            if init_data is None:
                if not partial:
                    raise KeyError(f'Parameter data not found for "{path}"')
                continue

            init_data = xp.asarray(init_data)
            if view.shape != init_data.shape:
                raise ValueError(
                    f'Shape mismatch for parameter "{path}". '
                    f'Found "{init_data.shape}", expected "{view.shape}".'
                )
            view[...] = init_data  # in-place assignment keeps the aliasing intact
        return self

    def train_mode(self) -> Network:
        for layer in self.layers:
            layer.train()
        return self

    def inference_mode(self) -> Network:
        for layer in self.layers:
            layer.inference()
        return self

    def _clear_memory(self) -> None:
        for layer in self.layers:
            layer.clear_memory()

    def _layer_gradients(self, gradient: xp.ndarray) -> Iterator[tuple[Layer, xp.ndarray]]:
        return zip(self.layers, self._alias(gradient), strict=True)

    def _store_training_data(self, inputs: xp.ndarray, targets: xp.ndarray) -> None:
        if inputs.shape[0] != targets.shape[0]:
            raise ValueError(
                f"Number of inputs ({inputs.shape[0]}) and targets ({targets.shape[0]}) differ"
            )
        if inputs.shape[0] == 0:
            raise ValueError("Cannot train on an empty data set")
        self._inputs = inputs
        self._targets = targets

    def _require_training_data(self) -> tuple[xp.ndarray, xp.ndarray]:
        if self._inputs is None or self._targets is None:
            raise RuntimeError("No training data set. Call train() first.")
        return self._inputs, self._targets

    def num_functions(self) -> int:
        """Number of training points (or sequences)."""
        return self._require_training_data()[0].shape[0]

    def shuffle(self) -> None:
        """Shuffle the training data, keeping inputs and targets paired."""
        inputs, targets = self._require_training_data()
        order = get_rng().permutation(inputs.shape[0])
        self._inputs = inputs[order]
        self._targets = targets[order]

    def _batch(self, begin: int, batch_size: int) -> tuple[xp.ndarray, xp.ndarray]:
        inputs, targets = self._require_training_data()
        return inputs[begin : begin + batch_size], targets[begin : begin + batch_size]

    @abstractmethod
    def _point_dimensions(self, inputs: xp.ndarray) -> tuple[int, ...]:
        """Per-point input dimensions of a batch."""

    @abstractmethod
    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        """Objective of a training batch in inference mode."""

    @abstractmethod
    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float:
        """Objective and gradient of a training batch in training mode."""

    def gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> None:
        """Gradient of a training batch, written into `gradient`."""
        self.evaluate_with_gradient(coordinates, begin, batch_size, gradient)

    def train(
        self,
        inputs: xp.ndarray,
        targets: xp.ndarray,
        *callbacks: Callback,
        optimizer: Optimizer | None = None,
    ) -> float:
        """Train the network on the given data.

        Args:
            inputs (xp.ndarray): Training inputs, batch first.
            targets (xp.ndarray): Training targets, batch first.
            *callbacks (Callback): Hooks into the optimization loop.
            optimizer (Optimizer | None): The optimizer. Defaults to `Adam()`.

        Returns:
            float: The objective after training.
        """
        inputs = xp.asarray(inputs)
        targets = xp.asarray(targets)
        self._store_training_data(inputs, targets)
        self._ensure_initialized(self._point_dimensions(inputs))
        optimizer = optimizer if optimizer is not None else Adam()

        logger.info(
            f"Training {type(self).__name__} on {inputs.shape[0]} points "
            f"with {type(optimizer).__name__}"
        )
        self.train_mode()
        objective = optimizer.optimize(self, self.parameters, *callbacks)
        logger.info(f"Training finished, objective {objective}")
        return objective


__all__ = [
    "Network",
]
