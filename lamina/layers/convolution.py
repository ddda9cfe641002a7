"""Two-dimensional convolution layer."""

from __future__ import annotations

import logging
from collections import OrderedDict

from numpy.lib.stride_tricks import sliding_window_view

from ..backend import xp
from .base import Layer
from .registry import register_layer

logger = logging.getLogger(__name__)


@register_layer(
    names=("Convolution", "Conv2D"),
    test_input_dimensions=(2, 5, 6),
    test_kwargs={
        "maps": 3,
        "kernel_width": 3,
        "kernel_height": 2,
        "stride_width": 2,
        "stride_height": 1,
        "pad_width": 1,
        "pad_height": 0,
    },
)
class Convolution(Layer):
    """2D cross-correlation with one bias per output map.

    Inputs are batches of shape `(n, channels, height, width)`, outputs have
    shape `(n, maps, out_height, out_width)` with
    `out = (in + 2 * pad - kernel) // stride + 1` per spatial axis.

    Args:
        maps (int): Number of output maps (filters).
        kernel_width (int): Width of the filter.
        kernel_height (int): Height of the filter.
        stride_width (int): Stride along the width. Defaults to 1.
        stride_height (int): Stride along the height. Defaults to 1.
        pad_width (int): Zero padding added to both sides of the width.
            Defaults to 0.
        pad_height (int): Zero padding added to both sides of the height.
            Defaults to 0.
    """

    def __init__(  # noqa: PLR0913
        self,
        maps: int,
        kernel_width: int,
        kernel_height: int,
        stride_width: int = 1,
        stride_height: int = 1,
        pad_width: int = 0,
        pad_height: int = 0,
    ) -> None:
        super().__init__()
        if min(maps, kernel_width, kernel_height, stride_width, stride_height) < 1:
            raise ValueError("maps, kernel sizes and strides must be positive")
        if min(pad_width, pad_height) < 0:
            raise ValueError("padding must be non-negative")
        self.maps = maps
        self.kernel_width = kernel_width
        self.kernel_height = kernel_height
        self.stride_width = stride_width
        self.stride_height = stride_height
        self.pad_width = pad_width
        self.pad_height = pad_height

    @property
    def in_channels(self) -> int:
        return self._require_input_dimensions()[0]

    def compute_output_dimensions(self) -> None:
        dims = self._require_input_dimensions()
        if len(dims) != 3:
            raise ValueError(
                f"Convolution expects (channels, height, width) per point, got {dims}"
            )
        _, height, width = dims
        padded_height = height + 2 * self.pad_height
        padded_width = width + 2 * self.pad_width
        if self.kernel_height > padded_height or self.kernel_width > padded_width:
            raise ValueError(
                f"Kernel ({self.kernel_height}, {self.kernel_width}) does not fit into the "
                f"padded input ({padded_height}, {padded_width})"
            )
        self.output_dimensions = (
            self.maps,
            (padded_height - self.kernel_height) // self.stride_height + 1,
            (padded_width - self.kernel_width) // self.stride_width + 1,
        )
        logger.debug(f"Convolution: {dims} -> {self.output_dimensions}")

    def parameter_shapes(self) -> OrderedDict[str, tuple[int, ...]]:
        return OrderedDict(
            [
                ("weight", (self.maps, self.in_channels, self.kernel_height, self.kernel_width)),
                ("bias", (self.maps,)),
            ]
        )

    def _pad(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        if self.pad_height == 0 and self.pad_width == 0:
            return input
        return xp.pad(
            input,
            ((0, 0), (0, 0), (self.pad_height, self.pad_height), (self.pad_width, self.pad_width)),
        )

    def _windows(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        """View of shape `(n, channels, out_height, out_width, kernel_height, kernel_width)`."""
        _, out_height, out_width = self._require_output_dimensions()
        windows = sliding_window_view(
            self._pad(input), (self.kernel_height, self.kernel_width), axis=(2, 3)
        )
        return windows[:, :, :: self.stride_height, :: self.stride_width][
            :, :, :out_height, :out_width
        ]

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        output = xp.einsum("ncijab,mcab->nmij", self._windows(input), self._weights["weight"])
        return output + self._weights["bias"][None, :, None, None]

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        _, out_height, out_width = self._require_output_dimensions()
        weight = self._weights["weight"]
        grad_padded = xp.zeros(
            (
                input.shape[0],
                input.shape[1],
                input.shape[2] + 2 * self.pad_height,
                input.shape[3] + 2 * self.pad_width,
            ),
            dtype=xp.result_type(gy, weight),
        )
        for row in range(self.kernel_height):
            for col in range(self.kernel_width):
                grad_padded[
                    :,
                    :,
                    row : row + self.stride_height * out_height : self.stride_height,
                    col : col + self.stride_width * out_width : self.stride_width,
                ] += xp.einsum("nmij,mc->ncij", gy, weight[:, :, row, col])
        return grad_padded[
            :,
            :,
            self.pad_height : self.pad_height + input.shape[2],
            self.pad_width : self.pad_width + input.shape[3],
        ]

    def gradient(
        self,
        input: xp.ndarray,  # noqa: A002
        error: xp.ndarray,
        gradient: xp.ndarray,
    ) -> None:
        views = self._split(gradient)
        views["weight"][...] = xp.einsum("nmij,ncijab->mcab", error, self._windows(input))
        views["bias"][...] = error.sum(axis=(0, 2, 3))


__all__ = [
    "Convolution",
]
