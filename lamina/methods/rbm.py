"""Binary restricted Boltzmann machine trained with contrastive divergence."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..backend import get_default_dtype, get_rng, xp
from ..init import GaussianInitialization, InitializationRule
from ..layers import sigmoid
from ..optimizer import SGD

if TYPE_CHECKING:
    from ..callbacks import Callback
    from ..optimizer import Optimizer


logger = logging.getLogger(__name__)


class RBM:
    """Restricted Boltzmann machine with binary visible and hidden units.

    The energy of a configuration is `-v b_v - h b_h - h W v`. All
    parameters live in the flat vector `parameters`, laid out as
    `[weights (hidden, visible), hidden_bias, visible_bias]`; the properties
    `weights`, `hidden_bias` and `visible_bias` are views into it.

    The model is its own separable function: `evaluate` returns the
    pseudo-log-likelihood cost and `gradient` the contrastive divergence
    estimate of the gradient of the negative log-likelihood.

    Args:
        visible_size (int): Number of visible units.
        hidden_size (int): Number of hidden units.
        batch_size (int): Batch size of the default optimizer. Defaults to 1.
        k (int): Gibbs steps per negative sample. Defaults to 1.
        persistent (bool): Keep the Gibbs chain across gradient calls
            (persistent contrastive divergence). A batch smaller than the
            chain advances only its first rows. Defaults to False.
        init (InitializationRule | None): Defaults to
            `GaussianInitialization(0, 0.1)`.
    """

    def __init__(  # noqa: PLR0913
        self,
        visible_size: int,
        hidden_size: int,
        batch_size: int = 1,
        k: int = 1,
        persistent: bool = False,
        init: InitializationRule | None = None,
    ) -> None:
        if visible_size < 1 or hidden_size < 1:
            raise ValueError(
                f"visible_size and hidden_size must be positive, got {visible_size} and "
                f"{hidden_size}"
            )
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        self.visible_size = visible_size
        self.hidden_size = hidden_size
        self.batch_size = batch_size
        self.k = k
        self.persistent = persistent
        self.init = init if init is not None else GaussianInitialization(0, 0.1)
        self.parameters = xp.zeros(
            hidden_size * visible_size + hidden_size + visible_size, dtype=get_default_dtype()
        )
        self._data: xp.ndarray | None = None
        self._chain: xp.ndarray | None = None
        self.reset()

    def reset(self) -> RBM:
        """Draw new parameters from the initialization rule and drop the Gibbs chain."""
        self.parameters[...] = self.init.initialize(self.parameters.shape)
        self._chain = None
        return self

    def _split(self, flat: xp.ndarray) -> tuple[xp.ndarray, xp.ndarray, xp.ndarray]:
        n_weights = self.hidden_size * self.visible_size
        return (
            flat[:n_weights].reshape(self.hidden_size, self.visible_size),
            flat[n_weights : n_weights + self.hidden_size],
            flat[n_weights + self.hidden_size :],
        )

    @property
    def weights(self) -> xp.ndarray:
        return self._split(self.parameters)[0]

    @property
    def hidden_bias(self) -> xp.ndarray:
        return self._split(self.parameters)[1]

    @property
    def visible_bias(self) -> xp.ndarray:
        return self._split(self.parameters)[2]

    def _check_visible(self, visible: xp.ndarray) -> xp.ndarray:
        visible = xp.asarray(visible, dtype=get_default_dtype())
        if visible.ndim != 2 or visible.shape[1] != self.visible_size:
            raise ValueError(
                f"Visible units must have shape (n, {self.visible_size}), got {visible.shape}"
            )
        return visible

    def free_energy(self, visible: xp.ndarray) -> xp.ndarray:
        """Free energy `-v b_v - sum_j softplus(W_j v + b_h_j)` of every point.

        Args:
            visible (xp.ndarray): Shape `(n, visible_size)`.

        Returns:
            xp.ndarray: Shape `(n,)`.
        """
        visible = self._check_visible(visible)
        pre_activation = visible @ self.weights.T + self.hidden_bias
        return -(visible @ self.visible_bias) - xp.logaddexp(0, pre_activation).sum(axis=1)

    def hidden_probabilities(self, visible: xp.ndarray) -> xp.ndarray:
        """`P(h = 1 | v)`, shape `(n, hidden_size)`."""
        return sigmoid(self._check_visible(visible) @ self.weights.T + self.hidden_bias)

    def sample_hidden(self, visible: xp.ndarray) -> xp.ndarray:
        probabilities = self.hidden_probabilities(visible)
        return (get_rng().random(probabilities.shape) < probabilities).astype(probabilities.dtype)

    def visible_probabilities(self, hidden: xp.ndarray) -> xp.ndarray:
        """`P(v = 1 | h)`, shape `(n, visible_size)`."""
        hidden = xp.asarray(hidden, dtype=get_default_dtype())
        if hidden.ndim != 2 or hidden.shape[1] != self.hidden_size:
            raise ValueError(
                f"Hidden units must have shape (n, {self.hidden_size}), got {hidden.shape}"
            )
        return sigmoid(hidden @ self.weights + self.visible_bias)

    def sample_visible(self, hidden: xp.ndarray) -> xp.ndarray:
        probabilities = self.visible_probabilities(hidden)
        return (get_rng().random(probabilities.shape) < probabilities).astype(probabilities.dtype)

    def gibbs(self, visible: xp.ndarray, steps: int | None = None) -> xp.ndarray:
        """Run a block Gibbs chain starting from `visible`.

        Args:
            visible (xp.ndarray): Start of the chain, shape `(n, visible_size)`.
            steps (int | None): Number of `v -> h -> v` steps. Defaults to `k`.

        Returns:
            xp.ndarray: The visible sample after the last step.
        """
        steps = self.k if steps is None else steps
        if steps < 1:
            raise ValueError(f"steps must be positive, got {steps}")
        sample = self._check_visible(visible)
        for _ in range(steps):
            sample = self.sample_visible(self.sample_hidden(sample))
        return sample

    def transform(self, visible: xp.ndarray) -> xp.ndarray:
        """Hidden features of the given points, `P(h = 1 | v)`."""
        return self.hidden_probabilities(visible)

    def _require_data(self) -> xp.ndarray:
        if self._data is None:
            raise RuntimeError("No training data set. Call train() first.")
        return self._data

    def num_functions(self) -> int:
        return self._require_data().shape[0]

    def shuffle(self) -> None:
        data = self._require_data()
        self._data = data[get_rng().permutation(data.shape[0])]

    def _sync(self, coordinates: xp.ndarray) -> None:
        if coordinates is not self.parameters:
            self.parameters[...] = coordinates

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float:
        """Pseudo-log-likelihood cost of a batch, one random bit flipped per point."""
        self._sync(coordinates)
        visible = self._require_data()[begin : begin + batch_size]
        flipped = visible.copy()
        bits = get_rng().integers(0, self.visible_size, size=visible.shape[0])
        rows = xp.arange(visible.shape[0])
        flipped[rows, bits] = 1 - flipped[rows, bits]
        # -log(sigmoid(F(flipped) - F(visible))) per point
        difference = self.free_energy(visible) - self.free_energy(flipped)
        return float(self.visible_size * xp.logaddexp(0, difference).sum())

    def _negative_sample(self, visible: xp.ndarray) -> xp.ndarray:
        if not self.persistent:
            return self.gibbs(visible)
        n = visible.shape[0]
        if self._chain is None:
            self._chain = visible.copy()
        elif self._chain.shape[0] < n:
            # a larger batch seeds its extra chains from the data
            self._chain = xp.concatenate([self._chain, visible[self._chain.shape[0] :]])
        sample = self.gibbs(self._chain[:n])
        self._chain[:n] = sample
        return sample

    def gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> None:
        """Contrastive divergence gradient of `F(data) - F(negative sample)`."""
        self._sync(coordinates)
        positive = self._require_data()[begin : begin + batch_size]
        negative = self._negative_sample(positive)
        positive_hidden = self.hidden_probabilities(positive)
        negative_hidden = self.hidden_probabilities(negative)

        weights, hidden_bias, visible_bias = self._split(gradient)
        weights[...] = -(positive_hidden.T @ positive - negative_hidden.T @ negative)
        hidden_bias[...] = -(positive_hidden.sum(axis=0) - negative_hidden.sum(axis=0))
        visible_bias[...] = -(positive.sum(axis=0) - negative.sum(axis=0))

    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float:
        self.gradient(coordinates, begin, batch_size, gradient)
        return self.evaluate(coordinates, begin, batch_size)

    def train(
        self,
        data: xp.ndarray,
        *callbacks: Callback,
        optimizer: Optimizer | None = None,
    ) -> float:
        """Train on binary data of shape `(n, visible_size)`.

        Args:
            data (xp.ndarray): Training points with values in `[0, 1]`.
            *callbacks (Callback): Hooks into the optimization loop.
            optimizer (Optimizer | None): Defaults to SGD with the batch size
                of the model and the tolerance check disabled.

        Returns:
            float: The final pseudo-log-likelihood cost.
        """
        data = self._check_visible(data)
        if data.shape[0] == 0:
            raise ValueError("Cannot train on an empty data set")
        if data.min() < 0 or data.max() > 1:
            raise ValueError("Visible units must be in [0, 1]")
        self._data = data
        self._chain = None
        if optimizer is None:
            optimizer = SGD(step_size=0.01, batch_size=self.batch_size, tolerance=-1)
        logger.info(
            f"Training RBM ({self.visible_size} visible, {self.hidden_size} hidden, "
            f"{'persistent ' if self.persistent else ''}CD-{self.k}) on {data.shape[0]} points"
        )
        objective = optimizer.optimize(self, self.parameters, *callbacks)
        logger.info(f"RBM training finished, cost {objective}")
        return objective


__all__ = [
    "RBM",
]
