"""Tests for Neighborhood Components Analysis."""

from __future__ import annotations

import numpy as np
import pytest
from lamina import NCA, Adam
from lamina.methods import SoftmaxErrorFunction


def fd_gradient(
    function: SoftmaxErrorFunction,
    coordinates: np.ndarray,
    begin: int,
    batch_size: int,
) -> np.ndarray:
    eps = 1e-6
    grad = np.zeros_like(coordinates)
    for idx in np.ndindex(coordinates.shape):
        plus, minus = coordinates.copy(), coordinates.copy()
        plus[idx] += eps
        minus[idx] -= eps
        grad[idx] = (
            function.evaluate(plus, begin, batch_size) - function.evaluate(minus, begin, batch_size)
        ) / (2 * eps)
    return grad


def noisy_dimension(
    rng: np.random.Generator,
    n_per_class: int = 20,
) -> tuple[np.ndarray, np.ndarray]:
    """Two classes separated along the first axis, buried in noise along the second."""
    labels = np.repeat([0, 1], n_per_class)
    points = np.column_stack(
        [
            2.0 * labels + rng.normal(0.0, 0.3, size=labels.size),
            rng.normal(0.0, 5.0, size=labels.size),
        ]
    )
    return points, labels


def test_gradient_matches_finite_differences(rng: np.random.Generator) -> None:
    points = rng.normal(size=(8, 3))
    labels = np.array([0, 1, 2, 0, 1, 2, 0, 1])
    function = SoftmaxErrorFunction(points, labels)
    coordinates = rng.normal(0.0, 0.5, size=(2, 3))
    gradient = np.zeros_like(coordinates)

    objective = function.evaluate_with_gradient(coordinates, 2, 4, gradient)
    assert objective == pytest.approx(function.evaluate(coordinates, 2, 4))
    assert np.allclose(gradient, fd_gradient(function, coordinates, 2, 4), atol=1e-6)


def test_objective_is_negative_expected_correct_count() -> None:
    # two tight pairs far apart, every point picks its partner
    points = np.array([[0.0], [0.1], [10.0], [10.1]])
    function = SoftmaxErrorFunction(points, np.array([0, 0, 1, 1]))
    assert function.evaluate(np.eye(1), 0, 4) == pytest.approx(-4.0)
    function = SoftmaxErrorFunction(points, np.array([0, 1, 0, 1]))
    assert function.evaluate(np.eye(1), 0, 4) == pytest.approx(0.0, abs=1e-12)


def test_shuffle_keeps_the_full_objective(rng: np.random.Generator) -> None:
    points = rng.normal(size=(6, 2))
    function = SoftmaxErrorFunction(points, np.array([0, 0, 0, 1, 1, 1]))
    coordinates = rng.normal(size=(2, 2))
    before = function.evaluate(coordinates, 0, 6)
    function.shuffle()
    assert function.evaluate(coordinates, 0, 6) == pytest.approx(before)


def test_learn_distance_improves_objective(rng: np.random.Generator) -> None:
    points, labels = noisy_dimension(rng)
    nca = NCA(points, labels)
    initial = nca.function.evaluate(np.eye(2), 0, 40)

    transformation = nca.learn_distance(
        optimizer=Adam(step_size=0.01, batch_size=40, max_iterations=40 * 100, tolerance=-1)
    )
    assert transformation.shape == (2, 2)
    assert nca.function.evaluate(transformation, 0, 40) < initial


def test_learn_distance_with_reduced_rank(rng: np.random.Generator) -> None:
    points, labels = noisy_dimension(rng)
    transformation = NCA(points, labels).learn_distance(
        np.array([[1.0, 1.0]]),
        optimizer=Adam(step_size=0.01, batch_size=40, max_iterations=40 * 5, tolerance=-1),
    )
    assert transformation.shape == (1, 2)


def test_invalid_inputs(rng: np.random.Generator) -> None:
    points = rng.normal(size=(4, 2))
    with pytest.raises(ValueError, match="labels"):
        NCA(points, np.array([0, 1]))
    with pytest.raises(ValueError, match="two points"):
        NCA(points[:1], np.array([0]))
    with pytest.raises(ValueError, match="output_matrix"):
        NCA(points, np.array([0, 0, 1, 1])).learn_distance(np.eye(3))
