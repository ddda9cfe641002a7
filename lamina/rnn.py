"""Recurrent neural network driver.

The layer stack is applied once per time step. Layers derived from
`RecurrentLayer` carry their state from one step to the next, all other
layers see every step independently. Training uses truncated
back-propagation through time over the last `rho` steps.
"""

from __future__ import annotations

import logging

from .backend import get_default_dtype, xp
from .init import InitializationRule
from .loss import Loss
from .network import Network

logger = logging.getLogger(__name__)


class RNN(Network):
    """Recurrent network over batches of shape `(n, time_steps, *input_dimensions)`.

    Args:
        rho (int): Maximum number of steps to back-propagate through.
        single (bool): If True only the last step has a target, of shape
            `(n, *target)`. Otherwise every step has one, of shape
            `(n, time_steps, *target)`. Defaults to False.
        loss (Loss | None): Per-step loss. Defaults to `MeanSquaredError()`.
        init (InitializationRule | None): Defaults to `RandomInitialization()`.
    """

    def __init__(
        self,
        rho: int,
        single: bool = False,
        loss: Loss | None = None,
        init: InitializationRule | None = None,
    ) -> None:
        super().__init__(loss=loss, init=init)
        if rho < 1:
            raise ValueError(f"rho must be positive, got {rho}")
        self.rho = rho
        self.single = single

    def _point_dimensions(self, inputs: xp.ndarray) -> tuple[int, ...]:
        if inputs.ndim < 3:
            raise ValueError(
                "Sequences must have shape (n, time_steps, *input_dimensions), "
                f"got {inputs.shape}"
            )
        return tuple(inputs.shape[2:])

    def _forward_all(self, sequences: xp.ndarray) -> list[list[xp.ndarray]]:
        """Forward pass over all steps, keeping the activations of every step."""
        self._clear_memory()
        activations: list[list[xp.ndarray]] = []
        for step in range(sequences.shape[1]):
            step_activations = [sequences[:, step]]
            for layer in self.layers:
                step_activations.append(layer.forward(step_activations[-1]))
            activations.append(step_activations)
        return activations

    def forward(self, sequences: xp.ndarray) -> xp.ndarray:
        """Forward pass in the current mode of the layers.

        Args:
            sequences (xp.ndarray): Batch of shape `(n, time_steps, *input_dimensions)`.

        Returns:
            xp.ndarray: Outputs of every step, shape `(n, time_steps, *output_dimensions)`.
        """
        sequences = xp.asarray(sequences)
        self._ensure_initialized(self._point_dimensions(sequences))
        activations = self._forward_all(sequences)
        return xp.stack([step[-1] for step in activations], axis=1)

    def predict(self, sequences: xp.ndarray, batch_size: int = 128) -> xp.ndarray:
        """Forward pass in inference mode, batch by batch.

        Args:
            sequences (xp.ndarray): Sequences, batch first.
            batch_size (int): Sequences per forward pass. Defaults to 128.

        Returns:
            xp.ndarray: Outputs of every step, shape `(n, time_steps, *output_dimensions)`.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        sequences = xp.asarray(sequences)
        self._ensure_initialized(self._point_dimensions(sequences))
        if sequences.shape[0] == 0:
            return xp.zeros(
                (0, sequences.shape[1], *(self.output_dimensions or ())),
                dtype=get_default_dtype(),
            )
        training = [layer.training for layer in self.layers]
        self.inference_mode()
        try:
            outputs = [
                self.forward(sequences[begin : begin + batch_size])
                for begin in range(0, sequences.shape[0], batch_size)
            ]
        finally:
            for layer, was_training in zip(self.layers, training, strict=True):
                layer.training = was_training
        return xp.concatenate(outputs, axis=0)

    def _check_targets(self, sequences: xp.ndarray, targets: xp.ndarray) -> None:
        if sequences.shape[0] != targets.shape[0]:
            raise ValueError(
                f"Number of sequences ({sequences.shape[0]}) and targets "
                f"({targets.shape[0]}) differ"
            )
        if not self.single and (targets.ndim < 2 or targets.shape[1] != sequences.shape[1]):
            raise ValueError(
                f"Expected one target per time step ({sequences.shape[1]}), "
                f"got targets of shape {targets.shape}. Use single=True for one target "
                "per sequence."
            )

    def _step_target(self, targets: xp.ndarray, step: int) -> xp.ndarray:
        return targets if self.single else targets[:, step]

    def _objective(self, outputs: list[xp.ndarray], targets: xp.ndarray) -> float:
        if self.single:
            return self.loss.forward(outputs[-1], targets)
        return sum(
            self.loss.forward(output, self._step_target(targets, step))
            for step, output in enumerate(outputs)
        )

    def _backward_all(
        self,
        activations: list[list[xp.ndarray]],
        targets: xp.ndarray,
        gradient: xp.ndarray,
    ) -> float:
        time_steps = len(activations)
        objective = self._objective([step[-1] for step in activations], targets)

        gradient[...] = 0
        step_gradient = xp.zeros_like(gradient)
        layer_gradients = list(self._layer_gradients(step_gradient))
        first_step = max(0, time_steps - self.rho)

        for step in reversed(range(first_step, time_steps)):
            step_activations = activations[step]
            prediction = step_activations[-1]
            if self.single and step != time_steps - 1:
                error = xp.zeros_like(prediction)
            else:
                error = self.loss.backward(prediction, self._step_target(targets, step))

            for idx in reversed(range(len(self.layers))):
                layer, layer_gradient = layer_gradients[idx]
                layer.set_step(step)
                layer_input, layer_output = step_activations[idx], step_activations[idx + 1]
                # recurrent layers need backward before gradient, it computes their deltas
                next_error = layer.backward(layer_input, layer_output, error)
                layer.gradient(layer_input, error, layer_gradient)
                error = next_error
            gradient += step_gradient

        return objective

    def backward(self, sequences: xp.ndarray, targets: xp.ndarray, gradient: xp.ndarray) -> float:
        """Forward pass and truncated back-propagation through time of one batch.

        Args:
            sequences (xp.ndarray): Batch of sequences.
            targets (xp.ndarray): Matching targets.
            gradient (xp.ndarray): Flat vector shaped like `parameters`,
                overwritten with the gradient.

        Returns:
            float: The loss summed over the time steps.
        """
        sequences = xp.asarray(sequences)
        targets = xp.asarray(targets)
        self._check_targets(sequences, targets)
        self._ensure_initialized(self._point_dimensions(sequences))
        return self._backward_all(self._forward_all(sequences), targets, gradient)

    def _store_training_data(self, inputs: xp.ndarray, targets: xp.ndarray) -> None:
        self._check_targets(inputs, targets)
        if inputs.shape[1] > self.rho:
            logger.debug(
                f"Sequences have {inputs.shape[1]} steps, back-propagating through the "
                f"last {self.rho} only"
            )
        super()._store_training_data(inputs, targets)

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        self._sync(coordinates)
        sequences, targets = self._batch(begin, batch_size)
        outputs = self.predict(sequences, batch_size=max(batch_size, 1))
        return self._objective(list(xp.moveaxis(outputs, 1, 0)), targets)

    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float:
        self._sync(coordinates)
        sequences, targets = self._batch(begin, batch_size)
        return self._backward_all(self._forward_all(sequences), targets, gradient)


__all__ = [
    "RNN",
]
