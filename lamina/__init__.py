"""lamina: layered neural networks and classical learners on NumPy.

Networks and methods expose their objective as a separable differentiable
function and hand it to a pluggable optimizer.
"""

from importlib.metadata import PackageNotFoundError, version

from . import layers, methods

try:
    __version__ = version("lamina")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for uninstalled package
from .backend import (
    BACKEND,
    get_default_dtype,
    get_rng,
    seed,
    set_default_dtype,
    xp,
)
from .callbacks import (
    Callback,
    EarlyStopAtMinLoss,
    PrintLoss,
    ProgressBar,
    StoreBestCoordinates,
)
from .disk import (
    load,
    save,
)
from .ffn import (
    FFN,
)
from .init import (
    ConstInitialization,
    GaussianInitialization,
    GlorotInitialization,
    InitializationRule,
    RandomInitialization,
)
from .layers import (
    LSTM,
    Convolution,
    Dropout,
    Identity,
    Layer,
    Linear,
    LogSoftmax,
    MaxPooling,
    MeanPooling,
    ReLU,
    Recurrent,
    RecurrentLayer,
    Sigmoid,
    Softmax,
    Tanh,
)
from .loss import (
    CrossEntropyError,
    Loss,
    MeanSquaredError,
    NegativeLogLikelihood,
)
from .methods import (
    LMNN,
    NCA,
    RBM,
    LogisticRegression,
)
from .network import (
    Network,
)
from .optimizer import (
    LBFGS,
    SGD,
    Adam,
    DifferentiableFunction,
    Optimizer,
)
from .rnn import (
    RNN,
)

__all__ = [
    "BACKEND",
    "FFN",
    "LBFGS",
    "LMNN",
    "LSTM",
    "NCA",
    "RBM",
    "RNN",
    "SGD",
    "Adam",
    "Callback",
    "ConstInitialization",
    "Convolution",
    "CrossEntropyError",
    "DifferentiableFunction",
    "Dropout",
    "EarlyStopAtMinLoss",
    "GaussianInitialization",
    "GlorotInitialization",
    "Identity",
    "InitializationRule",
    "Layer",
    "Linear",
    "LogSoftmax",
    "LogisticRegression",
    "Loss",
    "MaxPooling",
    "MeanPooling",
    "MeanSquaredError",
    "NegativeLogLikelihood",
    "Network",
    "Optimizer",
    "PrintLoss",
    "ProgressBar",
    "ReLU",
    "Recurrent",
    "RecurrentLayer",
    "Sigmoid",
    "Softmax",
    "StoreBestCoordinates",
    "Tanh",
    "__version__",
    "get_default_dtype",
    "get_rng",
    "layers",
    "load",
    "methods",
    "save",
    "seed",
    "set_default_dtype",
    "xp",
]
