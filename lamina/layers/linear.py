"""Dense/linear layers."""

from __future__ import annotations

from collections import OrderedDict

from ..backend import xp
from .base import Layer
from .registry import register_layer


@register_layer(
    names=("Linear", "Dense"),
    test_input_dimensions=(4,),
    test_kwargs={"dim_out": 3},
)
class Linear(Layer):
    """Affine map `y = x W + b` on the flattened input.

    The input dimension is inferred from the preceding layer (or the data),
    so only the output dimension has to be given.

    Args:
        dim_out (int): Output dimension size.
        bias (bool): Whether to use a bias. Defaults to True
    """

    def __init__(self, dim_out: int, *, bias: bool = True) -> None:
        super().__init__()
        if dim_out < 1:
            raise ValueError(f"dim_out must be positive, got {dim_out}")
        self.dim_out = dim_out
        self.bias = bias

    def compute_output_dimensions(self) -> None:
        self._require_input_dimensions()
        self.output_dimensions = (self.dim_out,)

    def parameter_shapes(self) -> OrderedDict[str, tuple[int, ...]]:
        shapes = OrderedDict([("weight", (self.input_size, self.dim_out))])
        if self.bias:
            shapes["bias"] = (self.dim_out,)
        return shapes

    @property
    def weight(self) -> xp.ndarray:
        return self._weights["weight"]

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        """Forward pass.

        Args:
            input (xp.ndarray): Input, any per-point shape whose size
                matches the inferred input dimension.

        Returns:
            xp.ndarray: Output of shape `(n, dim_out)`.
        """
        x = input.reshape(input.shape[0], -1)
        if x.shape[1] != self.weight.shape[0]:
            raise ValueError(
                f"Input feature dim ({x.shape[1]}) must match layer input dim "
                f"({self.weight.shape[0]})"
            )
        output = x @ self.weight
        if self.bias:
            output = output + self._weights["bias"]
        return output

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        return (gy @ self.weight.T).reshape(input.shape)

    def gradient(
        self,
        input: xp.ndarray,  # noqa: A002
        error: xp.ndarray,
        gradient: xp.ndarray,
    ) -> None:
        views = self._split(gradient)
        x = input.reshape(input.shape[0], -1)
        views["weight"][...] = x.T @ error
        if self.bias:
            views["bias"][...] = error.sum(axis=0)


__all__ = [
    "Linear",
]
