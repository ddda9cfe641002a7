"""Binary L2-regularized logistic regression."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..backend import get_default_dtype, get_rng, xp
from ..layers import sigmoid
from ..optimizer import LBFGS

if TYPE_CHECKING:
    from ..callbacks import Callback
    from ..optimizer import Optimizer


logger = logging.getLogger(__name__)


def _check_labels(points: xp.ndarray, labels: xp.ndarray) -> xp.ndarray:
    if points.ndim != 2:
        raise ValueError(f"Points must have shape (n, dimensionality), got {points.shape}")
    labels = xp.asarray(labels)
    if labels.shape != (points.shape[0],):
        raise ValueError(
            f"Expected {points.shape[0]} labels of shape ({points.shape[0]},), "
            f"got shape {labels.shape}"
        )
    if not xp.isin(labels, (0, 1)).all():
        raise ValueError(f"Labels must be 0 or 1, got {xp.unique(labels)}")
    return labels.astype(get_default_dtype())


class LogisticRegressionFunction:
    """Negative log-likelihood of logistic regression, separable over points.

    The coordinates are `[intercept, *weights]`. The penalty
    `0.5 * lambda_ * ||weights||^2` is split over batches in proportion to
    their size, so the batches of one epoch sum to the full objective.

    Args:
        points (xp.ndarray): Points of shape `(n, dimensionality)`.
        labels (xp.ndarray): Labels in `{0, 1}` of shape `(n,)`.
        lambda_ (float): L2 penalty on the weights. Defaults to 0.
    """

    def __init__(self, points: xp.ndarray, labels: xp.ndarray, lambda_: float = 0.0) -> None:
        points = xp.asarray(points, dtype=get_default_dtype())
        self.labels = _check_labels(points, labels)
        self.points = points
        if lambda_ < 0:
            raise ValueError(f"lambda_ must be non-negative, got {lambda_}")
        self.lambda_ = lambda_

    def num_functions(self) -> int:
        return self.points.shape[0]

    def shuffle(self) -> None:
        order = get_rng().permutation(self.num_functions())
        self.points = self.points[order]
        self.labels = self.labels[order]

    def _penalty_scale(self, batch_size: int) -> float:
        return self.lambda_ * batch_size / self.num_functions()

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        points = self.points[begin : begin + batch_size]
        labels = self.labels[begin : begin + batch_size]
        z = coordinates[0] + points @ coordinates[1:]
        # -log(sigmoid(z)) = log(1 + exp(-z)), written stably
        nll = xp.sum(xp.logaddexp(0, z) - labels * z)
        penalty = 0.5 * self._penalty_scale(batch_size) * coordinates[1:] @ coordinates[1:]
        return float(nll + penalty)

    def gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> None:
        self.evaluate_with_gradient(coordinates, begin, batch_size, gradient)

    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float:
        points = self.points[begin : begin + batch_size]
        labels = self.labels[begin : begin + batch_size]
        z = coordinates[0] + points @ coordinates[1:]
        residual = sigmoid(z) - labels
        scale = self._penalty_scale(batch_size)

        gradient[0] = residual.sum()
        gradient[1:] = points.T @ residual + scale * coordinates[1:]

        nll = xp.sum(xp.logaddexp(0, z) - labels * z)
        return float(nll + 0.5 * scale * coordinates[1:] @ coordinates[1:])


class LogisticRegression:
    """Binary logistic regression classifier.

    Args:
        dimensionality (int): Number of features. The parameters are
            resized on `train` if the data disagrees. Defaults to 0.
        lambda_ (float): L2 penalty on the weights. Defaults to 0.

    Example:
        >>> model = LogisticRegression(lambda_=0.1)
        >>> model.train(points, labels)
        >>> model.classify(points)
    """

    def __init__(self, dimensionality: int = 0, lambda_: float = 0.0) -> None:
        if dimensionality < 0:
            raise ValueError(f"dimensionality must be non-negative, got {dimensionality}")
        if lambda_ < 0:
            raise ValueError(f"lambda_ must be non-negative, got {lambda_}")
        self.lambda_ = lambda_
        self.parameters = xp.zeros(dimensionality + 1, dtype=get_default_dtype())

    @property
    def intercept(self) -> float:
        return float(self.parameters[0])

    @property
    def weights(self) -> xp.ndarray:
        return self.parameters[1:]

    def train(
        self,
        points: xp.ndarray,
        labels: xp.ndarray,
        *callbacks: Callback,
        optimizer: Optimizer | None = None,
    ) -> float:
        """Fit the parameters, continuing from the current ones.

        Args:
            points (xp.ndarray): Points of shape `(n, dimensionality)`.
            labels (xp.ndarray): Labels in `{0, 1}`.
            *callbacks (Callback): Hooks into the optimization loop.
            optimizer (Optimizer | None): Defaults to `LBFGS()`.

        Returns:
            float: The final objective.
        """
        function = LogisticRegressionFunction(points, labels, self.lambda_)
        if self.parameters.size != function.points.shape[1] + 1:
            logger.info(
                f"Resizing parameters from {self.parameters.size - 1} to "
                f"{function.points.shape[1]} dimensions"
            )
            self.parameters = xp.zeros(function.points.shape[1] + 1, dtype=get_default_dtype())

        optimizer = optimizer if optimizer is not None else LBFGS()
        objective = optimizer.optimize(function, self.parameters, *callbacks)
        logger.info(f"Logistic regression trained with {type(optimizer).__name__}: {objective}")
        return objective

    def _check_points(self, points: xp.ndarray) -> xp.ndarray:
        points = xp.asarray(points, dtype=get_default_dtype())
        if points.ndim != 2 or points.shape[1] != self.parameters.size - 1:
            raise ValueError(
                f"Points must have shape (n, {self.parameters.size - 1}), got {points.shape}"
            )
        return points

    def classify_proba(self, points: xp.ndarray) -> xp.ndarray:
        """Class probabilities.

        Returns:
            xp.ndarray: Shape `(n, 2)`, the columns are `P(y=0)` and `P(y=1)`.
        """
        p = sigmoid(self.intercept + self._check_points(points) @ self.weights)
        return xp.stack([1 - p, p], axis=1)

    def classify(self, points: xp.ndarray, decision_boundary: float = 0.5) -> xp.ndarray:
        """Predicted labels, 1 where `P(y=1)` reaches `decision_boundary`."""
        if not 0 <= decision_boundary <= 1:
            raise ValueError(f"decision_boundary must be in [0, 1], got {decision_boundary}")
        return (self.classify_proba(points)[:, 1] >= decision_boundary).astype(xp.int64)

    def compute_accuracy(
        self,
        points: xp.ndarray,
        labels: xp.ndarray,
        decision_boundary: float = 0.5,
    ) -> float:
        """Percentage of correctly classified points."""
        points = self._check_points(points)
        labels = _check_labels(points, labels)
        predictions = self.classify(points, decision_boundary)
        return float(100.0 * xp.mean(predictions == labels))

    def compute_error(self, points: xp.ndarray, labels: xp.ndarray) -> float:
        """The regularized objective of the current parameters on the given data."""
        function = LogisticRegressionFunction(self._check_points(points), labels, self.lambda_)
        return function.evaluate(self.parameters, 0, function.num_functions())


__all__ = [
    "LogisticRegression",
    "LogisticRegressionFunction",
]
