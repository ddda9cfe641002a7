"""Recurrent cells.

Both cells follow the `RecurrentLayer` protocol: one `forward` call per time
step, then `set_step`/`backward`/`gradient` in reverse step order. The
pre-activation error computed in `backward` is stored per step and reused by
`gradient`, since it already contains the error arriving from later steps.
"""

from __future__ import annotations

from collections import OrderedDict

from ..backend import xp
from .activation import sigmoid
from .base import RecurrentLayer
from .registry import register_layer


@register_layer(
    names=("Recurrent", "Elman"),
    test_input_dimensions=(4,),
    test_kwargs={"dim_out": 3},
    recurrent=True,
)
class Recurrent(RecurrentLayer):
    """Elman cell, `h_t = tanh(x_t W + h_{t-1} U + b)`.

    Args:
        dim_out (int): Size of the hidden state.
    """

    def __init__(self, dim_out: int) -> None:
        super().__init__()
        if dim_out < 1:
            raise ValueError(f"dim_out must be positive, got {dim_out}")
        self.dim_out = dim_out

    def compute_output_dimensions(self) -> None:
        self._require_input_dimensions()
        self.output_dimensions = (self.dim_out,)

    def parameter_shapes(self) -> OrderedDict[str, tuple[int, ...]]:
        return OrderedDict(
            [
                ("weight", (self.input_size, self.dim_out)),
                ("recurrent_weight", (self.dim_out, self.dim_out)),
                ("bias", (self.dim_out,)),
            ]
        )

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        x = input.reshape(input.shape[0], -1)
        h_prev = self._state("h", x.shape[0], self.dim_out)
        h = xp.tanh(
            x @ self._weights["weight"]
            + h_prev @ self._weights["recurrent_weight"]
            + self._weights["bias"]
        )
        self._steps.append({"h_prev": h_prev, "h": h})
        return h

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        cache = self._steps[self._step]
        dh = gy + self._carry.get("h", 0.0)
        delta = dh * (1 - cache["h"] ** 2)
        self._deltas[self._step] = delta
        self._carry["h"] = delta @ self._weights["recurrent_weight"].T
        return (delta @ self._weights["weight"].T).reshape(input.shape)

    def gradient(
        self,
        input: xp.ndarray,  # noqa: A002
        error: xp.ndarray,
        gradient: xp.ndarray,
    ) -> None:
        views = self._split(gradient)
        delta = self._deltas[self._step]
        x = input.reshape(input.shape[0], -1)
        views["weight"][...] = x.T @ delta
        views["recurrent_weight"][...] = self._steps[self._step]["h_prev"].T @ delta
        views["bias"][...] = delta.sum(axis=0)


@register_layer(
    names=("LSTM",),
    test_input_dimensions=(4,),
    test_kwargs={"dim_out": 3},
    recurrent=True,
)
class LSTM(RecurrentLayer):
    """Long short-term memory cell without peephole connections.

    Gates are laid out as `[input, forget, cell, output]` along the last
    axis of the weight matrices.

    Args:
        dim_out (int): Size of the hidden and cell state.
    """

    def __init__(self, dim_out: int) -> None:
        super().__init__()
        if dim_out < 1:
            raise ValueError(f"dim_out must be positive, got {dim_out}")
        self.dim_out = dim_out

    def compute_output_dimensions(self) -> None:
        self._require_input_dimensions()
        self.output_dimensions = (self.dim_out,)

    def parameter_shapes(self) -> OrderedDict[str, tuple[int, ...]]:
        return OrderedDict(
            [
                ("weight", (self.input_size, 4 * self.dim_out)),
                ("recurrent_weight", (self.dim_out, 4 * self.dim_out)),
                ("bias", (4 * self.dim_out,)),
            ]
        )

    def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
        x = input.reshape(input.shape[0], -1)
        h_prev = self._state("h", x.shape[0], self.dim_out)
        c_prev = self._state("c", x.shape[0], self.dim_out)
        z = (
            x @ self._weights["weight"]
            + h_prev @ self._weights["recurrent_weight"]
            + self._weights["bias"]
        )
        i, f, g, o = xp.split(z, 4, axis=1)
        i, f, o = sigmoid(i), sigmoid(f), sigmoid(o)
        g = xp.tanh(g)
        c = f * c_prev + i * g
        tanh_c = xp.tanh(c)
        h = o * tanh_c
        self._steps.append(
            {
                "h_prev": h_prev,
                "c_prev": c_prev,
                "i": i,
                "f": f,
                "g": g,
                "o": o,
                "tanh_c": tanh_c,
                "h": h,
                "c": c,
            }
        )
        return h

    def backward(
        self,
        input: xp.ndarray,  # noqa: A002
        output: xp.ndarray,
        gy: xp.ndarray,
    ) -> xp.ndarray:
        s = self._steps[self._step]
        dh = gy + self._carry.get("h", 0.0)
        dc = self._carry.get("c", 0.0) + dh * s["o"] * (1 - s["tanh_c"] ** 2)
        delta = xp.concatenate(
            [
                dc * s["g"] * s["i"] * (1 - s["i"]),
                dc * s["c_prev"] * s["f"] * (1 - s["f"]),
                dc * s["i"] * (1 - s["g"] ** 2),
                dh * s["tanh_c"] * s["o"] * (1 - s["o"]),
            ],
            axis=1,
        )
        self._deltas[self._step] = delta
        self._carry["h"] = delta @ self._weights["recurrent_weight"].T
        self._carry["c"] = dc * s["f"]
        return (delta @ self._weights["weight"].T).reshape(input.shape)

    def gradient(
        self,
        input: xp.ndarray,  # noqa: A002
        error: xp.ndarray,
        gradient: xp.ndarray,
    ) -> None:
        views = self._split(gradient)
        delta = self._deltas[self._step]
        x = input.reshape(input.shape[0], -1)
        views["weight"][...] = x.T @ delta
        views["recurrent_weight"][...] = self._steps[self._step]["h_prev"].T @ delta
        views["bias"][...] = delta.sum(axis=0)


__all__ = [
    "LSTM",
    "Recurrent",
]
