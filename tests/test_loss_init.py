"""Tests for the loss functions, initialization rules and the backend switches."""

from __future__ import annotations

import numpy as np
import pytest
from lamina import backend
from lamina.init import (
    ConstInitialization,
    GaussianInitialization,
    GlorotInitialization,
    RandomInitialization,
)
from lamina.loss import CrossEntropyError, Loss, MeanSquaredError, NegativeLogLikelihood


def fd_loss_gradient(
    loss: Loss,
    prediction: np.ndarray,
    target: np.ndarray,
    eps: float = 1e-6,
) -> np.ndarray:
    grad = np.zeros_like(prediction)
    for idx in np.ndindex(prediction.shape):
        plus, minus = prediction.copy(), prediction.copy()
        plus[idx] += eps
        minus[idx] -= eps
        grad[idx] = (loss.forward(plus, target) - loss.forward(minus, target)) / (2 * eps)
    return grad


@pytest.mark.parametrize("reduction", ["sum", "mean"])
def test_mean_squared_error(reduction: str, rng: np.random.Generator) -> None:
    loss = MeanSquaredError(reduction=reduction)
    prediction = rng.normal(size=(4, 3))
    target = rng.normal(size=(4, 3))
    expected = np.sum((prediction - target) ** 2)
    if reduction == "mean":
        expected /= prediction.shape[0]
    assert loss(prediction, target) == pytest.approx(expected)
    assert np.allclose(
        loss.backward(prediction, target), fd_loss_gradient(loss, prediction, target), atol=1e-6
    )


@pytest.mark.parametrize("reduction", ["sum", "mean"])
def test_negative_log_likelihood(reduction: str, rng: np.random.Generator) -> None:
    loss = NegativeLogLikelihood(reduction=reduction)
    logits = rng.normal(size=(5, 3))
    prediction = logits - np.log(np.exp(logits).sum(axis=1, keepdims=True))
    target = np.array([0, 2, 1, 1, 0])
    expected = -prediction[np.arange(5), target].sum()
    if reduction == "mean":
        expected /= 5
    assert loss(prediction, target) == pytest.approx(expected)
    assert np.allclose(
        loss.backward(prediction, target), fd_loss_gradient(loss, prediction, target), atol=1e-6
    )


def test_negative_log_likelihood_rejects_bad_classes() -> None:
    loss = NegativeLogLikelihood()
    with pytest.raises(ValueError, match="must be in"):
        loss(np.zeros((2, 3)), np.array([0, 3]))
    with pytest.raises(ValueError, match="class indices"):
        loss(np.zeros((2, 3)), np.array([0.5, 1.0]))


def test_cross_entropy_error(rng: np.random.Generator) -> None:
    loss = CrossEntropyError()
    prediction = rng.uniform(0.1, 0.9, size=(4, 2))
    target = rng.integers(0, 2, size=(4, 2)).astype(float)
    expected = -np.sum(target * np.log(prediction) + (1 - target) * np.log(1 - prediction))
    assert loss(prediction, target) == pytest.approx(expected)
    assert np.allclose(
        loss.backward(prediction, target),
        fd_loss_gradient(loss, prediction, target),
        atol=1e-5,
    )


def test_mean_reduction_averages_over_points() -> None:
    mse = MeanSquaredError(reduction="mean")
    assert mse(np.ones((4, 3)), np.zeros((4, 3))) == pytest.approx(3.0)
    bce = CrossEntropyError(reduction="mean")
    assert bce(np.full((4, 3), 0.5), np.zeros((4, 3))) == pytest.approx(3 * np.log(2))
    assert np.allclose(bce.backward(np.full((4, 3), 0.5), np.zeros((4, 3))), 0.5)


def test_loss_rejects_batch_mismatch() -> None:
    with pytest.raises(ValueError, match="same number of points"):
        MeanSquaredError()(np.zeros((3, 1)), np.zeros((2, 1)))


def test_loss_rejects_unknown_reduction() -> None:
    with pytest.raises(ValueError, match="reduction"):
        MeanSquaredError(reduction="max")  # type: ignore[arg-type]


def test_random_initialization_bounds() -> None:
    values = RandomInitialization(-0.5, 0.25).initialize((100, 10))
    assert values.shape == (100, 10)
    assert values.min() >= -0.5
    assert values.max() < 0.25
    with pytest.raises(ValueError):
        RandomInitialization(1.0, -1.0)


def test_gaussian_initialization() -> None:
    values = GaussianInitialization(2.0, 0.1).initialize((10000,))
    assert values.mean() == pytest.approx(2.0, abs=0.01)
    assert values.std() == pytest.approx(0.1, abs=0.01)
    with pytest.raises(ValueError):
        GaussianInitialization(0.0, -1.0)


def test_glorot_initialization_limit() -> None:
    values = GlorotInitialization().initialize((30, 20))
    assert np.abs(values).max() <= np.sqrt(6.0 / 50)
    normal = GlorotInitialization(uniform=False).initialize((3, 2, 5, 5))
    assert normal.shape == (3, 2, 5, 5)


def test_const_initialization() -> None:
    assert np.array_equal(ConstInitialization(0.5).initialize((2, 2)), np.full((2, 2), 0.5))


def test_seed_makes_runs_reproducible() -> None:
    backend.seed(7)
    first = RandomInitialization().initialize((5,))
    backend.seed(7)
    second = RandomInitialization().initialize((5,))
    assert np.array_equal(first, second)


def test_default_dtype() -> None:
    backend.set_default_dtype(np.float32)
    assert RandomInitialization().initialize((3,)).dtype == np.float32
    with pytest.raises(TypeError):
        backend.set_default_dtype(np.int32)
