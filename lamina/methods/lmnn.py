"""Large Margin Nearest Neighbor metric learning.

Learns a linear transformation `L` pulling every point towards its `k`
target neighbors (nearest points of the same class, fixed in the input
space) while pushing differently-labelled impostors at least a unit margin
further away than any target neighbor.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from scipy.spatial.distance import cdist

from ..backend import get_default_dtype, get_rng, xp
from ..optimizer import Adam
from .nca import _check_points_and_labels

if TYPE_CHECKING:
    from ..callbacks import Callback
    from ..optimizer import Optimizer


logger = logging.getLogger(__name__)


def _nearest(distances: xp.ndarray, mask: xp.ndarray, k: int) -> xp.ndarray:
    """Column indices of the `k` smallest entries per row where `mask` holds."""
    distances = xp.where(mask, distances, xp.inf)
    return xp.argsort(distances, axis=1, kind="stable")[:, :k]


class LMNNFunction:
    """The LMNN objective, separable over points.

    Term `i` is `(1 - mu) * sum_j d(i, j) + mu * sum_j sum_l [1 + d(i, j) - d(i, l)]_+`
    where `j` runs over the target neighbors and `l` over the impostors of
    point `i` and `d` is the squared distance in the transformed space.

    Args:
        points (xp.ndarray): Points of shape `(n, dimensionality)`.
        labels (xp.ndarray): Integer labels of shape `(n,)`.
        k (int): Number of target neighbors and impostors per point.
        regularization (float): The weight `mu` of the push term, in `[0, 1]`.
        range_ (int): Recompute the impostors every `range_` evaluations.
    """

    def __init__(
        self,
        points: xp.ndarray,
        labels: xp.ndarray,
        k: int = 1,
        regularization: float = 0.5,
        range_: int = 1,
    ) -> None:
        self.points, self.labels = _check_points_and_labels(points, labels)
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        if not 0 <= regularization <= 1:
            raise ValueError(f"regularization must be in [0, 1], got {regularization}")
        if range_ < 1:
            raise ValueError(f"range_ must be positive, got {range_}")
        classes, counts = xp.unique(self.labels, return_counts=True)
        for label, count in zip(classes, counts, strict=True):
            if count <= k:
                raise ValueError(
                    f"Class {label} has {count} points, every class needs more than k={k}"
                )
            if self.points.shape[0] - count < k:
                raise ValueError(
                    f"Class {label} has fewer than k={k} differently-labelled points to "
                    "pick impostors from"
                )
        self.k = k
        self.regularization = regularization
        self.range_ = range_

        self._same_class = self.labels[:, None] == self.labels[None, :]
        not_self = ~xp.eye(self.points.shape[0], dtype=bool)
        self.target_neighbors = _nearest(
            cdist(self.points, self.points, "sqeuclidean"), self._same_class & not_self, k
        )
        self.impostors: xp.ndarray | None = None
        self._evaluations = 0
        self._order = xp.arange(self.points.shape[0])
        logger.debug(f"LMNN: {self.points.shape[0]} points, {classes.size} classes, k={k}")

    def num_functions(self) -> int:
        return self.points.shape[0]

    def shuffle(self) -> None:
        self._order = get_rng().permutation(self.num_functions())

    def reset_impostors(self) -> None:
        """Force the impostors to be recomputed on the next evaluation."""
        self.impostors = None
        self._evaluations = 0

    def _update_impostors(self, coordinates: xp.ndarray) -> xp.ndarray:
        if self.impostors is None or self._evaluations % self.range_ == 0:
            transformed = self.points @ coordinates.T
            self.impostors = _nearest(
                cdist(transformed, transformed, "sqeuclidean"), ~self._same_class, self.k
            )
        self._evaluations += 1
        return self.impostors

    def _terms(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
    ) -> tuple[float, xp.ndarray, xp.ndarray, xp.ndarray]:
        rows = self._order[begin : begin + batch_size]
        impostors = self._update_impostors(coordinates)
        x = self.points[rows]
        target_diffs = x[:, None, :] - self.points[self.target_neighbors[rows]]
        impostor_diffs = x[:, None, :] - self.points[impostors[rows]]
        target_distances = xp.sum((target_diffs @ coordinates.T) ** 2, axis=2)
        impostor_distances = xp.sum((impostor_diffs @ coordinates.T) ** 2, axis=2)

        # hinge over (point, target neighbor, impostor)
        margins = 1 + target_distances[:, :, None] - impostor_distances[:, None, :]
        active = margins > 0
        objective = (1 - self.regularization) * target_distances.sum() + (
            self.regularization * margins[active].sum()
        )
        return float(objective), target_diffs, impostor_diffs, active

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        return self._terms(coordinates, begin, batch_size)[0]

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
        objective, target_diffs, impostor_diffs, active = self._terms(
            coordinates, begin, batch_size
        )
        mu = self.regularization
        target_weights = (1 - mu) + mu * active.sum(axis=2)
        impostor_weights = mu * active.sum(axis=1)
        outer = xp.einsum("bj,bjd,bje->de", target_weights, target_diffs, target_diffs) - xp.einsum(
            "bl,bld,ble->de", impostor_weights, impostor_diffs, impostor_diffs
        )
        gradient[...] = 2 * coordinates @ outer
        return objective


class LMNN:
    """Large Margin Nearest Neighbor.

    Args:
        points (xp.ndarray): Points of shape `(n, dimensionality)`.
        labels (xp.ndarray): Integer labels of shape `(n,)`.
        k (int): Number of target neighbors. Defaults to 1.
        regularization (float): Weight of the push term. Defaults to 0.5.
        range_ (int): Impostor recomputation interval. Defaults to 1.
    """

    def __init__(
        self,
        points: xp.ndarray,
        labels: xp.ndarray,
        k: int = 1,
        regularization: float = 0.5,
        range_: int = 1,
    ) -> None:
        self.function = LMNNFunction(points, labels, k, regularization, range_)

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
                `Adam(step_size=0.01, batch_size=50, amsgrad=True)`.

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
            optimizer = Adam(step_size=0.01, batch_size=50, tolerance=1e-7, amsgrad=True)
        self.function.reset_impostors()
        objective = optimizer.optimize(self.function, transformation, *callbacks)
        logger.info(f"LMNN finished with {type(optimizer).__name__}, objective {objective}")
        return transformation


__all__ = [
    "LMNN",
    "LMNNFunction",
]
