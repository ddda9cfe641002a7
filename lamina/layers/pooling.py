"""Spatial pooling layers.

Inputs are batches of shape `(n, channels, height, width)`. The kernel width
and stride width act on the last axis, kernel height and stride height on
the one before it. Any further leading per-point axes are treated as
channels.
"""

from __future__ import annotations

import logging
import math

from numpy.lib.stride_tricks import sliding_window_view

from ..backend import xp
from .base import Layer
from .registry import register_layer

logger = logging.getLogger(__name__)


def pooled_size(size: int, kernel: int, stride: int, *, floor: bool) -> int:
    """Number of pooling windows along one axis.

    Args:
        size (int): Input size along the axis.
        kernel (int): Window size along the axis.
        stride (int): Step between window starts.
        floor (bool): Round the window count down (`True`) or up (`False`).
            Rounding up lets the last window hang over the border, every
            window still starts inside the input.

    Raises:
        ValueError: If the window does not fit into the input.

    Returns:
        int: The output size along the axis.
    """
    if kernel > size:
        raise ValueError(f"Pooling window ({kernel}) is larger than the input ({size})")
    if floor:
        return (size - kernel) // stride + 1
    count = math.ceil((size - kernel) / stride) + 1
    # every window has to start inside the input
    while (count - 1) * stride >= size:
        count -= 1
    return count


class _Pooling(Layer):
    """Shared geometry of all pooling layers."""

    def __init__(
        self,
        kernel_width: int,
        kernel_height: int,
        stride_width: int = 1,
        stride_height: int = 1,
        *,
        floor: bool = True,
    ) -> None:
        super().__init__()
        for name, value in (
            ("kernel_width", kernel_width),
            ("kernel_height", kernel_height),
            ("stride_width", stride_width),
            ("stride_height", stride_height),
        ):
            if value < 1:
                raise ValueError(f"{name} must be positive, got {value}")
        self.kernel_width = kernel_width
        self.kernel_height = kernel_height
        self.stride_width = stride_width
        self.stride_height = stride_height
        self.floor = floor

    def compute_output_dimensions(self) -> None:
        dims = self._require_input_dimensions()
        if len(dims) < 2:
            raise ValueError(
                f"Pooling needs at least (height, width) per point, got dimensions {dims}"
            )
        *channels, height, width = dims
        out_height = pooled_size(height, self.kernel_height, self.stride_height, floor=self.floor)
        out_width = pooled_size(width, self.kernel_width, self.stride_width, floor=self.floor)
        self.output_dimensions = (*channels, out_height, out_width)
        logger.debug(
            f"{type(self).__name__}: {dims} -> {self.output_dimensions} "
            f"({'floor' if self.floor else 'ceil'} mode)"
        )

    def _padding(self, input_shape: tuple[int, ...]) -> tuple[int, int]:
        """Rows and columns to append so the last (ceil mode) window fits."""
        *_, out_height, out_width = self._require_output_dimensions()
        *_, height, width = input_shape
        pad_height = max(0, (out_height - 1) * self.stride_height + self.kernel_height - height)
        pad_width = max(0, (out_width - 1) * self.stride_width + self.kernel_width - width)
        return pad_height, pad_width

    def _windows(self, padded: xp.ndarray) -> xp.ndarray:
        """View of shape `(..., out_height, out_width, kernel_height, kernel_width)`."""
        *_, out_height, out_width = self._require_output_dimensions()
        windows = sliding_window_view(
            padded, (self.kernel_height, self.kernel_width), axis=(-2, -1)
        )
        return windows[..., :: self.stride_height, :: self.stride_width, :, :][
            ..., :out_height, :out_width, :, :
        ]

    def _pad(self, input: xp.ndarray, value: float) -> xp.ndarray:  # noqa: A002
        pad_height, pad_width = self._padding(input.shape)
        if pad_height == 0 and pad_width == 0:
            return input
        pad = [(0, 0)] * (input.ndim - 2) + [(0, pad_height), (0, pad_width)]
        return xp.pad(input, pad, mode="constant", constant_values=value)

    def _scatter(self, grad_padded: xp.ndarray, values: xp.ndarray, row: int, col: int) -> None:
        """Add `values` onto every window position shifted by `(row, col)`."""
        *_, out_height, out_width = self._require_output_dimensions()
        grad_padded[
            ...,
            row : row + self.stride_height * out_height : self.stride_height,
            col : col + self.stride_width * out_width : self.stride_width,
        ] += values


@register_layer(
    names=("MaxPooling", "MaxPool"),
    test_input_dimensions=(2, 5, 6),
    test_kwargs={"kernel_width": 2, "kernel_height": 3, "stride_width": 2, "stride_height": 1},
)
class MaxPooling(_Pooling):
    """Max pooling, takes the maximum value within each window.

    Args:
        kernel_width (int): Width of the pooling window.
        kernel_height (int): Height of the pooling window.
        stride_width (int): Width of the stride operation. Defaults to 1.
        stride_height (int): Height of the stride operation. Defaults to 1.
        floor (bool): Rounding operator (floor or ceil) for the output size.
            Defaults to True.
    """

    def pooling_indices(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        """Position of the maximum of every window.

        Ties resolve to the first element in row-major window order.

        Args:
            input (xp.ndarray): Batch of shape `(n, *input_dimensions)`.

        Returns:
            xp.ndarray: Flat indices into a single window, shape
                `(n, *output_dimensions)`.
        """
        windows = self._windows(self._pad(input, -xp.inf))
        flat = windows.reshape(*windows.shape[:-2], -1)
        return flat.argmax(axis=-1)

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        windows = self._windows(self._pad(input, -xp.inf))
        flat = windows.reshape(*windows.shape[:-2], -1)
        indices = flat.argmax(axis=-1)
        self._remember((input, indices))
        return xp.take_along_axis(flat, indices[..., None], axis=-1)[..., 0]

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        """Route `gy` to the winning element of every window.

        Overlapping windows that share a winner accumulate their errors.
        The winners found by the matching forward pass are reused, they are
        only searched again for an input that pass has not seen.
        """
        stored = self._recall()
        if stored is not None and stored[0] is input:
            indices = stored[1]
        else:
            indices = self.pooling_indices(input)
        pad_height, pad_width = self._padding(input.shape)
        grad_padded = xp.zeros(
            (*input.shape[:-2], input.shape[-2] + pad_height, input.shape[-1] + pad_width),
            dtype=gy.dtype,
        )
        for row in range(self.kernel_height):
            for col in range(self.kernel_width):
                selected = indices == row * self.kernel_width + col
                self._scatter(grad_padded, gy * selected, row, col)
        return grad_padded[..., : input.shape[-2], : input.shape[-1]]


@register_layer(
    names=("MeanPooling", "AvgPooling", "MeanPool"),
    test_input_dimensions=(2, 5, 5),
    test_kwargs={
        "kernel_width": 2,
        "kernel_height": 2,
        "stride_width": 2,
        "stride_height": 2,
        "floor": False,
    },
)
class MeanPooling(_Pooling):
    """Mean pooling, averages every window.

    In ceil mode the windows hanging over the border average only the
    elements inside the input.

    Args:
        kernel_width (int): Width of the pooling window.
        kernel_height (int): Height of the pooling window.
        stride_width (int): Width of the stride operation. Defaults to 1.
        stride_height (int): Height of the stride operation. Defaults to 1.
        floor (bool): Rounding operator (floor or ceil) for the output size.
            Defaults to True.
    """

    def _counts(self, input_shape: tuple[int, ...]) -> xp.ndarray:
        """Number of valid elements per window, shape `(out_height, out_width)`."""
        ones = self._pad(xp.ones(input_shape[-2:]), 0.0)
        return self._windows(ones).sum(axis=(-2, -1))

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        windows = self._windows(self._pad(input, 0.0))
        return windows.sum(axis=(-2, -1)) / self._counts(input.shape)

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        share = gy / self._counts(input.shape)
        pad_height, pad_width = self._padding(input.shape)
        grad_padded = xp.zeros(
            (*input.shape[:-2], input.shape[-2] + pad_height, input.shape[-1] + pad_width),
            dtype=share.dtype,
        )
        for row in range(self.kernel_height):
            for col in range(self.kernel_width):
                self._scatter(grad_padded, share, row, col)
        return grad_padded[..., : input.shape[-2], : input.shape[-1]]


__all__ = [
    "MaxPooling",
    "MeanPooling",
    "pooled_size",
]
