"""Loss functions used as the output layer of the networks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal

from .backend import xp

Reduction = Literal["sum", "mean"]


class Loss(ABC):
    """Abstract base class for all loss functions.

    Args:
        reduction (Reduction): `"sum"` adds up the loss of all points,
            `"mean"` divides that sum by the number of points.
            Defaults to `"sum"`, so that the objective of a batch is the sum
            of the objectives of its points.
    """

    def __init__(self, reduction: Reduction = "sum") -> None:
        if reduction not in ("sum", "mean"):
            raise ValueError(f'reduction must be "sum" or "mean", got "{reduction}"')
        self.reduction = reduction

    def _check_batch(self, prediction: xp.ndarray, target: xp.ndarray) -> None:
        if prediction.shape[0] != target.shape[0]:
            raise ValueError(
                f"Prediction and target must hold the same number of points, "
                f"got {prediction.shape[0]} and {target.shape[0]}"
            )

    @abstractmethod
    def forward(self, prediction: xp.ndarray, target: xp.ndarray) -> float:
        """Compute the loss.

        Args:
            prediction (xp.ndarray): Network output, batch first.
            target (xp.ndarray): The targets, batch first.

        Returns:
            float: The reduced loss.
        """

    @abstractmethod
    def backward(self, prediction: xp.ndarray, target: xp.ndarray) -> xp.ndarray:
        """Derivative of the loss w.r.t. the prediction.

        Args:
            prediction (xp.ndarray): Network output, batch first.
            target (xp.ndarray): The targets, batch first.

        Returns:
            xp.ndarray: Error w.r.t. `prediction`, same shape.
        """

    def __call__(self, prediction: xp.ndarray, target: xp.ndarray) -> float:
        return self.forward(prediction, target)


class MeanSquaredError(Loss):
    """Squared error summed over the elements of a point, `"mean"` averages over points."""

    def forward(self, prediction: xp.ndarray, target: xp.ndarray) -> float:
        self._check_batch(prediction, target)
        diff = prediction - target.reshape(prediction.shape)
        loss = float(xp.sum(diff**2))
        return loss / diff.shape[0] if self.reduction == "mean" else loss

    def backward(self, prediction: xp.ndarray, target: xp.ndarray) -> xp.ndarray:
        diff = prediction - target.reshape(prediction.shape)
        grad = 2 * diff
        return grad / diff.shape[0] if self.reduction == "mean" else grad


class NegativeLogLikelihood(Loss):
    """Negative log likelihood of integer class targets.

    The prediction has to hold log-probabilities, e.g. the output of a
    `LogSoftmax` layer. `"mean"` averages over points.
    """

    @staticmethod
    def _classes(prediction: xp.ndarray, target: xp.ndarray) -> xp.ndarray:
        classes = xp.asarray(target).reshape(prediction.shape[0])
        if not xp.all(classes == xp.round(classes)):
            raise ValueError("Targets of the negative log likelihood must be class indices")
        classes = classes.astype(int)
        if classes.min(initial=0) < 0 or classes.max(initial=0) >= prediction.shape[1]:
            raise ValueError(
                f"Target classes must be in [0, {prediction.shape[1]}), "
                f"got range [{classes.min()}, {classes.max()}]"
            )
        return classes

    def forward(self, prediction: xp.ndarray, target: xp.ndarray) -> float:
        self._check_batch(prediction, target)
        classes = self._classes(prediction, target)
        loss = -float(xp.sum(prediction[xp.arange(prediction.shape[0]), classes]))
        return loss / prediction.shape[0] if self.reduction == "mean" else loss

    def backward(self, prediction: xp.ndarray, target: xp.ndarray) -> xp.ndarray:
        classes = self._classes(prediction, target)
        grad = xp.zeros_like(prediction)
        grad[xp.arange(prediction.shape[0]), classes] = -1.0
        return grad / prediction.shape[0] if self.reduction == "mean" else grad


class CrossEntropyError(Loss):
    """Binary cross entropy on probabilities in `[0, 1]`.

    Args:
        eps (float): Clipping applied to the prediction before taking
            logarithms. Defaults to 1e-10.
        reduction (Reduction): Defaults to `"sum"`, `"mean"` averages over
            points.
    """

    def __init__(self, eps: float = 1e-10, reduction: Reduction = "sum") -> None:
        super().__init__(reduction=reduction)
        self.eps = eps

    def forward(self, prediction: xp.ndarray, target: xp.ndarray) -> float:
        self._check_batch(prediction, target)
        p = xp.clip(prediction, self.eps, 1 - self.eps)
        t = target.reshape(prediction.shape)
        loss = -float(xp.sum(t * xp.log(p) + (1 - t) * xp.log(1 - p)))
        return loss / p.shape[0] if self.reduction == "mean" else loss

    def backward(self, prediction: xp.ndarray, target: xp.ndarray) -> xp.ndarray:
        p = xp.clip(prediction, self.eps, 1 - self.eps)
        t = target.reshape(prediction.shape)
        grad = (p - t) / (p * (1 - p))
        return grad / p.shape[0] if self.reduction == "mean" else grad


__all__ = [
    "CrossEntropyError",
    "Loss",
    "MeanSquaredError",
    "NegativeLogLikelihood",
    "Reduction",
]
