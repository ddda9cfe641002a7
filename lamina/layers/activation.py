"""Parameter-free activation layers. Each layer is a mathematical function."""

from __future__ import annotations

from ..backend import get_default_dtype, get_rng, xp
from .base import Layer
from .registry import register_layer


def sigmoid(x: xp.ndarray) -> xp.ndarray:
    """Numerically stable logistic function.

    Args:
        x (xp.ndarray): Input of any shape.

    Returns:
        xp.ndarray: `1 / (1 + exp(-x))`, element-wise.
    """
    # split by sign so that exp never overflows
    x = xp.asarray(x)
    if not xp.issubdtype(x.dtype, xp.floating):
        x = x.astype(get_default_dtype())
    out = xp.empty_like(x)
    positive = x >= 0
    out[positive] = 1 / (1 + xp.exp(-x[positive]))
    exp_x = xp.exp(x[~positive])
    out[~positive] = exp_x / (1 + exp_x)
    return out


@register_layer(names=("Identity", "IdentityLayer"))
class Identity(Layer):
    """Passes the input through unchanged."""

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        return input

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return gy


@register_layer(names=("Sigmoid", "SigmoidLayer"))
class Sigmoid(Layer):
    """Sigmoid activation function."""

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        """Forward pass, computes the sigmoid activation function.

        Args:
            input (xp.ndarray): Input

        Returns:
            xp.ndarray: Transformed output
        """
        return sigmoid(input)

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return gy * output * (1 - output)


@register_layer(names=("Tanh", "TanHLayer"))
class Tanh(Layer):
    """Hyperbolic tangent activation function."""

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        return xp.tanh(input)

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return gy * (1 - output**2)


@register_layer(names=("ReLU", "ReLULayer"))
class ReLU(Layer):
    """ReLU activation function.

    The derivative at exactly zero is taken to be zero.
    """

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        return xp.maximum(input, 0)

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return gy * (input > 0)


@register_layer(names=("Softmax", "SoftMax"))
class Softmax(Layer):
    """Softmax over the last axis."""

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        x = input - input.max(axis=-1, keepdims=True)  # for numerical stability
        x = xp.exp(x)
        return x / x.sum(axis=-1, keepdims=True)

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return output * (gy - (gy * output).sum(axis=-1, keepdims=True))


@register_layer(names=("LogSoftmax", "LogSoftMax"))
class LogSoftmax(Layer):
    """Fused application of softmax and logarithm for numerical stability.

    Mathematically: `log(softmax(x))`.
    """

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        x = input - input.max(axis=-1, keepdims=True)
        return x - xp.log(xp.sum(xp.exp(x), axis=-1, keepdims=True))

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return gy - xp.exp(output) * gy.sum(axis=-1, keepdims=True)


@register_layer(
    names=("Dropout",),
    skip_test=True,
    skip_reason="random mask changes between the forward passes of finite differences",
)
class Dropout(Layer):
    """Inverted dropout.

    In training mode every element is zeroed with probability `ratio` and the
    survivors are scaled by `1 / (1 - ratio)`. In inference mode the layer is
    the identity.

    Every forward pass keeps its mask, `set_step` selects the mask used by
    the next `backward`.

    Args:
        ratio (float): Probability of dropping an element. Defaults to 0.5.
    """

    def __init__(self, ratio: float = 0.5) -> None:
        super().__init__()
        if not 0 <= ratio < 1:
            raise ValueError(f"ratio must be in [0, 1), got {ratio}")
        self.ratio = ratio

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        if not self.training or self.ratio == 0:
            self._remember(None)
            return input
        scale = 1.0 / (1.0 - self.ratio)
        mask = (get_rng().random(input.shape) >= self.ratio) * scale
        self._remember(mask)
        return input * mask

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        mask = self._recall()
        if mask is None:
            return gy
        return gy * mask


__all__ = [
    "Dropout",
    "Identity",
    "LogSoftmax",
    "ReLU",
    "Sigmoid",
    "Softmax",
    "Tanh",
    "sigmoid",
]
