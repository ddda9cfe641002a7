"""Feed-forward neural network."""

from __future__ import annotations

import logging

from .backend import get_default_dtype, xp
from .network import Network

logger = logging.getLogger(__name__)


class FFN(Network):
    """Feed-forward network, the layers are applied in the order they were added.

    Example:
        >>> model = FFN(loss=MeanSquaredError())
        >>> model.add(Linear(8)).add(Sigmoid()).add("linear", dim_out=1)
        >>> model.train(inputs, targets, PrintLoss())
        >>> predictions = model.predict(inputs)
    """

    def _point_dimensions(self, inputs: xp.ndarray) -> tuple[int, ...]:
        if inputs.ndim < 2:
            raise ValueError(
                f"Inputs must have a batch axis and at least one feature axis, got shape "
                f"{inputs.shape}"
            )
        return tuple(inputs.shape[1:])

    def _forward_all(self, inputs: xp.ndarray) -> list[xp.ndarray]:
        """Forward pass keeping the activations of every layer, input first."""
        self._clear_memory()
        activations = [inputs]
        for layer in self.layers:
            activations.append(layer.forward(activations[-1]))
        return activations

    def forward(self, inputs: xp.ndarray) -> xp.ndarray:
        """Forward pass in the current mode of the layers.

        Args:
            inputs (xp.ndarray): Batch of shape `(n, *input_dimensions)`.

        Returns:
            xp.ndarray: Network output, batch first.
        """
        inputs = xp.asarray(inputs)
        self._ensure_initialized(self._point_dimensions(inputs))
        return self._forward_all(inputs)[-1]

    def _backward_all(
        self,
        activations: list[xp.ndarray],
        targets: xp.ndarray,
        gradient: xp.ndarray,
    ) -> float:
        prediction = activations[-1]
        objective = self.loss.forward(prediction, targets)
        error = self.loss.backward(prediction, targets)
        layer_gradients = list(self._layer_gradients(gradient))
        for idx in reversed(range(len(self.layers))):
            layer, layer_gradient = layer_gradients[idx]
            layer_input, layer_output = activations[idx], activations[idx + 1]
            layer.gradient(layer_input, error, layer_gradient)
            if idx > 0:
                error = layer.backward(layer_input, layer_output, error)
        return objective

    def backward(self, inputs: xp.ndarray, targets: xp.ndarray, gradient: xp.ndarray) -> float:
        """Forward and backward pass of one batch.

        Args:
            inputs (xp.ndarray): Batch of inputs.
            targets (xp.ndarray): Matching targets.
            gradient (xp.ndarray): Flat vector shaped like `parameters`,
                overwritten with the gradient of the loss.

        Returns:
            float: The loss of the batch.
        """
        inputs = xp.asarray(inputs)
        targets = xp.asarray(targets)
        if inputs.shape[0] != targets.shape[0]:
            raise ValueError(
                f"Number of inputs ({inputs.shape[0]}) and targets ({targets.shape[0]}) differ"
            )
        self._ensure_initialized(self._point_dimensions(inputs))
        if gradient.shape != self.parameters.shape:
            raise ValueError(
                f"Gradient must have shape {self.parameters.shape}, got {gradient.shape}"
            )
        return self._backward_all(self._forward_all(inputs), targets, gradient)

    def predict(self, inputs: xp.ndarray, batch_size: int = 128) -> xp.ndarray:
        """Forward pass in inference mode, batch by batch.

        Args:
            inputs (xp.ndarray): Inputs, batch first.
            batch_size (int): Points per forward pass. Defaults to 128.

        Returns:
            xp.ndarray: The network output for all inputs.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        inputs = xp.asarray(inputs)
        self._ensure_initialized(self._point_dimensions(inputs))
        if inputs.shape[0] == 0:
            return xp.zeros((0, *(self.output_dimensions or ())), dtype=get_default_dtype())
        training = [layer.training for layer in self.layers]
        self.inference_mode()
        try:
            outputs = [
                self._forward_all(inputs[begin : begin + batch_size])[-1]
                for begin in range(0, inputs.shape[0], batch_size)
            ]
        finally:
            for layer, was_training in zip(self.layers, training, strict=True):
                layer.training = was_training
        return xp.concatenate(outputs, axis=0)

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        self._sync(coordinates)
        inputs, targets = self._batch(begin, batch_size)
        return self.loss.forward(self.predict(inputs, batch_size=max(batch_size, 1)), targets)

    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float:
        self._sync(coordinates)
        inputs, targets = self._batch(begin, batch_size)
        return self._backward_all(self._forward_all(inputs), targets, gradient)


__all__ = [
    "FFN",
]
