"""All layers of lamina. Importing this package registers every layer."""

from .activation import (
    Dropout,
    Identity,
    LogSoftmax,
    ReLU,
    Sigmoid,
    Softmax,
    Tanh,
    sigmoid,
)
from .base import (
    Layer,
    RecurrentLayer,
)
from .convolution import (
    Convolution,
)
from .linear import (
    Linear,
)
from .pooling import (
    MaxPooling,
    MeanPooling,
    pooled_size,
)
from .recurrent import (
    LSTM,
    Recurrent,
)
from .registry import (
    LayerSpec,
    get_layer,
    get_layer_spec,
    register_layer,
    registered_layers,
)

__all__ = [
    "LSTM",
    "Convolution",
    "Dropout",
    "Identity",
    "Layer",
    "LayerSpec",
    "Linear",
    "LogSoftmax",
    "MaxPooling",
    "MeanPooling",
    "ReLU",
    "Recurrent",
    "RecurrentLayer",
    "Sigmoid",
    "Softmax",
    "Tanh",
    "get_layer",
    "get_layer_spec",
    "pooled_size",
    "register_layer",
    "registered_layers",
    "sigmoid",
]
