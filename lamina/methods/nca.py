"""Neighborhood Components Analysis.

Learns a linear transformation `L` maximizing the expected number of points
a stochastic nearest-neighbor classifier labels correctly in the
transformed space `x -> L x`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from scipy.spatial.distance import cdist

from ..backend import get_default_dtype, get_rng, xp
from ..optimizer import SGD

if TYPE_CHECKING:
    from ..callbacks import Callback
    from ..optimizer import Optimizer


logger = logging.getLogger(__name__)


def _check_points_and_labels(
    points: xp.ndarray, labels: xp.ndarray
) -> tuple[xp.ndarray, xp.ndarray]:
    points = xp.asarray(points, dtype=get_default_dtype())
    labels = xp.asarray(labels)
    if points.ndim != 2:
        raise ValueError(f"Points must have shape (n, dimensionality), got {points.shape}")
    if labels.shape != (points.shape[0],):
        raise ValueError(
            f"Expected {points.shape[0]} labels of shape ({points.shape[0]},), "
            f"got shape {labels.shape}"
        )
    return points, labels


class SoftmaxErrorFunction:
    """Negative expected number of correctly classified points.

    The coordinates are the transformation matrix of shape
    `(rank, dimensionality)`. Term `i` of the objective is `-p_i`, the
    probability that point `i` picks a neighbor of its own class when
    neighbors are picked with probability proportional to
    `exp(-||L x_i - L x_k||^2)`.

    Args:
        points (xp.ndarray): Points of shape `(n, dimensionality)`.
        labels (xp.ndarray): Integer labels of shape `(n,)`.
    """

    def __init__(self, points: xp.ndarray, labels: xp.ndarray) -> None:
        self.points, self.labels = _check_points_and_labels(points, labels)
        if self.points.shape[0] < 2:
            raise ValueError("At least two points are required")
        self._order = xp.arange(self.points.shape[0])

    def num_functions(self) -> int:
        return self.points.shape[0]

    def shuffle(self) -> None:
        self._order = get_rng().permutation(self.num_functions())

    def _neighbor_probabilities(
        self,
        coordinates: xp.ndarray,
        rows: xp.ndarray,
    ) -> tuple[xp.ndarray, xp.ndarray]:
        """Neighbor probabilities `p_ik` of the given rows and the same-class mask."""
        stretched = self.points @ coordinates.T
        logits = -cdist(stretched[rows], stretched, "sqeuclidean")
        logits[xp.arange(rows.size), rows] = -xp.inf
        logits -= logits.max(axis=1, keepdims=True)
        p = xp.exp(logits)
        p /= p.sum(axis=1, keepdims=True)
        same_class = self.labels[rows][:, None] == self.labels[None, :]
        return p, same_class

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        rows = self._order[begin : begin + batch_size]
        p, same_class = self._neighbor_probabilities(coordinates, rows)
        return -float(xp.sum(p * same_class))

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
        rows = self._order[begin : begin + batch_size]
        p, same_class = self._neighbor_probabilities(coordinates, rows)
        p_correct = xp.sum(p * same_class, axis=1)

        # sum_ik w_ik (x_i - x_k)(x_i - x_k)^T, expanded to avoid the (b, n, d) difference tensor
        w = p * p_correct[:, None] - p * same_class
        x_rows = self.points[rows]
        outer = (
            (x_rows * w.sum(axis=1)[:, None]).T @ x_rows
            - x_rows.T @ w @ self.points
            - self.points.T @ w.T @ x_rows
            + (self.points * w.sum(axis=0)[:, None]).T @ self.points
        )
        gradient[...] = -2 * coordinates @ outer
        return -float(p_correct.sum())


class NCA:
    """Neighborhood Components Analysis.

    Args:
        points (xp.ndarray): Points of shape `(n, dimensionality)`.
        labels (xp.ndarray): Integer labels of shape `(n,)`.
    """

    def __init__(self, points: xp.ndarray, labels: xp.ndarray) -> None:
        self.function = SoftmaxErrorFunction(points, labels)

    def learn_distance(
        self,
        output_matrix: xp.ndarray | None = None,
        *callbacks: Callback,
        optimizer: Optimizer | None = None,
    ) -> xp.ndarray:
        """Learn the transformation matrix.

        Args:
            output_matrix (xp.ndarray | None): Starting transformation of shape
                `(rank, dimensionality)`. Defaults to the identity.
            *callbacks (Callback): Hooks into the optimization loop.
            optimizer (Optimizer | None): Defaults to
                `SGD(step_size=0.01, batch_size=50, tolerance=1e-7)`.

        Returns:
            xp.ndarray: The learned transformation.
        """
        dimensionality = self.function.points.shape[1]
        if output_matrix is None:
            transformation = xp.eye(dimensionality, dtype=get_default_dtype())
        else:
            transformation = xp.array(output_matrix, dtype=get_default_dtype())
            if transformation.ndim != 2 or transformation.shape[1] != dimensionality:
                raise ValueError(
                    f"output_matrix must have shape (rank, {dimensionality}), "
                    f"got {transformation.shape}"
                )

        if optimizer is None:
            optimizer = SGD(step_size=0.01, batch_size=50, max_iterations=100000, tolerance=1e-7)
        objective = optimizer.optimize(self.function, transformation, *callbacks)
        logger.info(f"NCA finished with {type(optimizer).__name__}, objective {objective}")
        return transformation


__all__ = [
    "NCA",
    "SoftmaxErrorFunction",
]
