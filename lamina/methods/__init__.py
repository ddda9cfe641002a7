"""Classical machine-learning methods built on the shared optimizers."""

from .lmnn import (
    LMNN,
    LMNNFunction,
)
from .logistic_regression import (
    LogisticRegression,
    LogisticRegressionFunction,
)
from .nca import (
    NCA,
    SoftmaxErrorFunction,
)
from .rbm import (
    RBM,
)

__all__ = [
    "LMNN",
    "NCA",
    "RBM",
    "LMNNFunction",
    "LogisticRegression",
    "LogisticRegressionFunction",
    "SoftmaxErrorFunction",
]
