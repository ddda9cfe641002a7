"""Base classes for all layers.

A layer is a tensor transformation with three passes:

* `forward` maps a batch of inputs to a batch of outputs,
* `backward` maps the error w.r.t. the output to the error w.r.t. the input,
* `gradient` writes the error w.r.t. the layer parameters.

Layers never own their parameters. The network owning the layer allocates a
single flat parameter vector and hands every layer a view into it via
`set_weights`, so an optimizer updating the flat vector in place updates all
layers at once.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from ..backend import xp

if TYPE_CHECKING:
    from ..init import InitializationRule


logger = logging.getLogger(__name__)


class Layer(ABC):
    """Abstract Base Class (ABC) for all layers.

    Note:
        `input_dimensions` and `output_dimensions` describe a **single**
        point, the leading batch axis is never part of them. Every array
        passed to `forward`, `backward` and `gradient` carries the batch
        axis in front.
    """

    def __init__(self) -> None:
        self.input_dimensions: tuple[int, ...] | None = None
        self.output_dimensions: tuple[int, ...] | None = None
        self.training = True
        self._weights: OrderedDict[str, xp.ndarray] = OrderedDict()
        self._memory: list[Any] = []
        self._memory_step: int | None = None

    def _require_input_dimensions(self) -> tuple[int, ...]:
        if self.input_dimensions is None:
            raise RuntimeError(
                f'Input dimensions of layer "{type(self).__name__}" are not set. '
                "Set them before computing the output dimensions."
            )
        return tuple(int(d) for d in self.input_dimensions)

    def _require_output_dimensions(self) -> tuple[int, ...]:
        if self.output_dimensions is None:
            raise RuntimeError(
                f'Output dimensions of layer "{type(self).__name__}" are unknown. '
                "Call compute_output_dimensions first."
            )
        return self.output_dimensions

    @property
    def input_size(self) -> int:
        """Number of elements of a single input point."""
        return int(xp.prod(self._require_input_dimensions()))

    @property
    def output_size(self) -> int:
        """Number of elements of a single output point."""
        return int(xp.prod(self._require_output_dimensions()))

    def compute_output_dimensions(self) -> None:
        """Infer `output_dimensions` from `input_dimensions`.

        The default keeps the shape unchanged, which is right for all
        element-wise layers.

        Raises:
            RuntimeError: If the input dimensions are not set.
        """
        self.output_dimensions = self._require_input_dimensions()

    def parameter_shapes(self) -> OrderedDict[str, tuple[int, ...]]:
        """Shapes of all parameters, in the order they are laid out in memory.

        Only valid after `compute_output_dimensions`.

        Returns:
            OrderedDict[str, tuple[int, ...]]: Parameter name to shape.
                Empty for parameter-free layers.
        """
        return OrderedDict()

    def weight_size(self) -> int:
        """Number of scalar parameters of the layer.

        Returns:
            int: The length of the slice this layer needs in the flat
                parameter vector.
        """
        return sum(int(xp.prod(shape)) for shape in self.parameter_shapes().values())

    def _split(self, flat: xp.ndarray) -> OrderedDict[str, xp.ndarray]:
        """Split a flat vector into reshaped views, one per parameter."""
        if flat.ndim != 1 or flat.size != self.weight_size():
            raise ValueError(
                f'Layer "{type(self).__name__}" expects a flat vector of size '
                f"{self.weight_size()}, got shape {flat.shape}"
            )
        views: OrderedDict[str, xp.ndarray] = OrderedDict()
        offset = 0
        for name, shape in self.parameter_shapes().items():
            size = int(xp.prod(shape))
            views[name] = flat[offset : offset + size].reshape(shape)
            offset += size
        return views

    def set_weights(self, weights: xp.ndarray) -> None:
        """Alias the layer parameters into `weights`.

        Args:
            weights (xp.ndarray): A one-dimensional view of length
                `weight_size()`. It is **not** copied.
        """
        self._weights = self._split(weights)
        for name, view in self._weights.items():
            logger.debug(f"{type(self).__name__}.{name} aliased with shape {view.shape}")

    def get_parameters(self) -> OrderedDict[str, xp.ndarray]:
        """The parameter views of the layer.

        Returns:
            OrderedDict[str, xp.ndarray]: Parameter name to view.
        """
        return OrderedDict(self._weights)

    def reset_parameters(self, rule: InitializationRule) -> None:
        """Fill all parameter views in place using `rule`.

        Args:
            rule (InitializationRule): The rule drawing initial values.
        """
        for view in self._weights.values():
            view[...] = rule.initialize(view.shape)

    def train(self) -> Layer:
        """Set the layer to training mode.

        Returns:
            Layer: Self, for chaining.
        """
        self.training = True
        return self

    def inference(self) -> Layer:
        """Set the layer to inference (deterministic) mode.

        Returns:
            Layer: Self, for chaining.
        """
        self.training = False
        return self

    def clear_memory(self) -> None:
        """Forget everything stored by previous forward passes."""
        self._memory = []
        self._memory_step = None

    def set_step(self, step: int) -> None:
        """Select the forward pass the next `backward` call refers to.

        Stateless layers ignore it, layers remembering per-pass values such
        as dropout masks look the value up by `step`.
        """
        self._memory_step = step

    def _remember(self, value: Any) -> None:
        self._memory.append(value)

    def _recall(self) -> Any:
        """The value stored by the selected forward pass, the last one by default."""
        if not self._memory:
            return None
        if self._memory_step is None:
            return self._memory[-1]
        if not 0 <= self._memory_step < len(self._memory):
            return None
        return self._memory[self._memory_step]

    @abstractmethod
    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        """Forward pass.

        Args:
            input (xp.ndarray): Batch of shape `(n, *input_dimensions)`.

        Returns:
            xp.ndarray: Batch of shape `(n, *output_dimensions)`.
        """

    @abstractmethod
    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        """Backward pass, propagates the error to the layer input.

        Args:
            input (xp.ndarray): The input of the matching forward pass.
            output (xp.ndarray): The output of the matching forward pass.
            gy (xp.ndarray): Error w.r.t. the output.

        Returns:
            xp.ndarray: Error w.r.t. the input, shaped like `input`.
        """

    def gradient(
        self,
        input: xp.ndarray,  # noqa: A002
        error: xp.ndarray,
        gradient: xp.ndarray,
    ) -> None:
        """Write the error w.r.t. the parameters into `gradient`.

        Parameter-free layers leave `gradient` (which is empty) untouched.

        Args:
            input (xp.ndarray): The input of the matching forward pass.
            error (xp.ndarray): Error w.r.t. the output.
            gradient (xp.ndarray): Flat view of length `weight_size()`,
                overwritten in place.
        """

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(input_dimensions={self.input_dimensions}, "
            f"output_dimensions={self.output_dimensions})"
        )


class RecurrentLayer(Layer):
    """Base class for layers keeping memory across time steps.

    `forward` is called once per time step in increasing order, every call
    appends to the memory. `backward` and `gradient` are called in
    decreasing step order after `set_step` selected the step; the error
    flowing into the previous step is carried internally.
    """

    def __init__(self) -> None:
        super().__init__()
        self._step = 0
        self._steps: list[dict[str, xp.ndarray]] = []
        self._deltas: dict[int, xp.ndarray] = {}
        self._carry: dict[str, xp.ndarray] = {}

    @property
    def steps_taken(self) -> int:
        """Number of forward steps stored in memory."""
        return len(self._steps)

    def clear_memory(self) -> None:
        """Forget all stored steps and carried errors."""
        super().clear_memory()
        self._steps = []
        self._deltas = {}
        self._carry = {}
        self._step = 0

    def set_step(self, step: int) -> None:
        """Select the time step the next `backward`/`gradient` call refers to.

        Args:
            step (int): Index into the stored forward steps.

        Raises:
            IndexError: If no forward pass has been stored for `step`.
        """
        if not 0 <= step < len(self._steps):
            raise IndexError(
                f"Step {step} out of range, {len(self._steps)} forward steps are stored"
            )
        super().set_step(step)
        self._step = step

    def _state(self, key: str, batch_size: int, size: int) -> xp.ndarray:
        """The state `key` left by the last stored step, zeros for the first step."""
        if not self._steps:
            return xp.zeros((batch_size, size), dtype=self._dtype())
        return self._steps[-1][key]

    def _dtype(self) -> type:
        for view in self._weights.values():
            return view.dtype.type
        return xp.float64


__all__ = [
    "Layer",
    "RecurrentLayer",
]
