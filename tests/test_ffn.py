"""Tests for the feed-forward network driver."""

from __future__ import annotations

from collections import OrderedDict

import numpy as np
import pytest
from lamina import (
    FFN,
    LBFGS,
    Adam,
    Convolution,
    Linear,
    LogSoftmax,
    MaxPooling,
    MeanPooling,
    NegativeLogLikelihood,
    ReLU,
    Sigmoid,
)
from lamina.init import GaussianInitialization


def fd_network_gradient(model: FFN, inputs: np.ndarray, targets: np.ndarray) -> np.ndarray:
    eps = 1e-6
    parameters = model.parameters
    grad = np.zeros_like(parameters)
    for i in range(parameters.size):
        original = parameters[i]
        parameters[i] = original + eps
        f_plus = model.loss(model.forward(inputs), targets)
        parameters[i] = original - eps
        f_minus = model.loss(model.forward(inputs), targets)
        parameters[i] = original
        grad[i] = (f_plus - f_minus) / (2 * eps)
    return grad


def blobs(rng: np.random.Generator, n_per_class: int = 30) -> tuple[np.ndarray, np.ndarray]:
    centers = np.array([[3.0, 3.0], [-3.0, -3.0], [3.0, -3.0]])
    points = np.concatenate([rng.normal(c, 0.5, size=(n_per_class, 2)) for c in centers])
    labels = np.repeat(np.arange(3), n_per_class)
    return points, labels


def test_dimension_inference() -> None:
    model = FFN()
    model.add(Convolution(4, 3, 3)).add(ReLU()).add(MaxPooling(2, 2, 2, 2)).add(Linear(5))
    model.reset((2, 8, 7))
    dims = [layer.output_dimensions for layer in model.layers]
    assert dims == [(4, 6, 5), (4, 6, 5), (4, 3, 2), (5,)]
    assert model.output_dimensions == (5,)
    expected = (4 * 2 * 3 * 3 + 4) + (4 * 3 * 2 * 5 + 5)
    assert model.parameters.shape == (expected,)


def test_forward_infers_dimensions_from_data(rng: np.random.Generator) -> None:
    model = FFN()
    model.add(Linear(3)).add(Sigmoid())
    output = model.forward(rng.normal(size=(7, 4)))
    assert output.shape == (7, 3)
    assert model.input_dimensions == (4,)


def test_parameters_are_shared_with_layers() -> None:
    model = FFN()
    model.add(Linear(2)).add(Linear(1))
    model.reset((3,))
    model.parameters[...] = 0.0
    for view in model.get_parameters().values():
        assert np.all(view == 0.0)

    model.parameters = np.ones(model.parameters.size)
    assert np.all(model.layers[1].get_parameters()["bias"] == 1.0)


def test_backward_matches_finite_differences(rng: np.random.Generator) -> None:
    model = FFN(loss=NegativeLogLikelihood(), init=GaussianInitialization(0, 0.5))
    model.add(Convolution(2, 3, 3, pad_width=1, pad_height=1))
    model.add(MeanPooling(2, 2, 2, 2))
    model.add(Sigmoid()).add(Linear(3)).add(LogSoftmax())
    inputs = rng.normal(size=(3, 1, 4, 4))
    targets = np.array([0, 2, 1])
    model.reset((1, 4, 4))

    gradient = np.zeros_like(model.parameters)
    objective = model.backward(inputs, targets, gradient)
    assert objective == pytest.approx(model.loss(model.forward(inputs), targets))
    assert np.allclose(gradient, fd_network_gradient(model, inputs, targets), atol=1e-6)


def test_backward_rejects_mismatched_counts(rng: np.random.Generator) -> None:
    model = FFN()
    model.add(Linear(1))
    with pytest.raises(ValueError, match="differ"):
        model.backward(rng.normal(size=(3, 2)), rng.normal(size=(2, 1)), np.zeros(3))


def test_empty_network_raises() -> None:
    with pytest.raises(RuntimeError, match="no layers"):
        FFN().forward(np.zeros((2, 3)))


def test_parameters_before_reset_raise() -> None:
    model = FFN()
    model.add(Linear(1))
    with pytest.raises(RuntimeError):
        _ = model.parameters


def test_linear_regression_with_lbfgs(rng: np.random.Generator) -> None:
    inputs = rng.normal(size=(50, 3))
    true_weights = np.array([[1.5], [-2.0], [0.5]])
    targets = inputs @ true_weights + 0.25

    model = FFN()
    model.add(Linear(1))
    objective = model.train(inputs, targets, optimizer=LBFGS())

    assert objective < 1e-6
    assert np.allclose(model.layers[0].get_parameters()["weight"], true_weights, atol=1e-3)
    assert np.allclose(model.predict(inputs), targets, atol=1e-3)


def test_classification_with_adam(rng: np.random.Generator) -> None:
    points, labels = blobs(rng)
    model = FFN(loss=NegativeLogLikelihood())
    model.add(Linear(8)).add(Sigmoid()).add(Linear(3)).add(LogSoftmax())

    first = model.train(
        points, labels, optimizer=Adam(step_size=0.05, batch_size=16, max_iterations=90)
    )
    final = model.train(
        points,
        labels,
        optimizer=Adam(step_size=0.05, batch_size=16, max_iterations=90 * 100, tolerance=-1),
    )
    assert final < first

    predictions = model.predict(points, batch_size=7).argmax(axis=1)
    assert np.mean(predictions == labels) > 0.95


def test_train_rejects_mismatched_counts(rng: np.random.Generator) -> None:
    model = FFN()
    model.add(Linear(1))
    with pytest.raises(ValueError, match="differ"):
        model.train(rng.normal(size=(4, 2)), rng.normal(size=(3, 1)))


def test_predict_restores_training_mode(rng: np.random.Generator) -> None:
    model = FFN()
    model.add(Linear(2)).add(ReLU())
    model.predict(rng.normal(size=(3, 4)))
    assert all(layer.training for layer in model.layers)


def test_load_parameters(rng: np.random.Generator) -> None:
    model = FFN()
    model.add(Linear(2)).add(Linear(1))
    model.reset((3,))

    weight = rng.normal(size=(3, 2))
    model.load_parameters(
        parameters=OrderedDict([("layers[0].weight", weight)]),
        partial=True,
    )
    assert np.array_equal(model.get_parameters()["layers[0].weight"], weight)
    assert np.array_equal(model.parameters[:6], weight.ravel())

    with pytest.raises(KeyError):
        model.load_parameters(parameters=OrderedDict([("layers[0].weight", weight)]))
    with pytest.raises(ValueError, match="Shape mismatch"):
        model.load_parameters(
            parameters=OrderedDict([("layers[0].weight", weight.T)]),
            partial=True,
        )


def test_changing_input_dimensions_reinitializes(
    rng: np.random.Generator,
    caplog: pytest.LogCaptureFixture,
) -> None:
    model = FFN()
    model.add(Linear(2))
    model.forward(rng.normal(size=(2, 3)))
    with caplog.at_level("WARNING", logger="lamina.network"):
        model.forward(rng.normal(size=(2, 5)))
    assert model.parameters.shape == (5 * 2 + 2,)
    assert "reinitializing" in caplog.text


def test_predict_empty_input() -> None:
    model = FFN()
    model.add(Linear(3)).add(ReLU())
    predictions = model.predict(np.zeros((0, 4)))
    assert predictions.shape == (0, 3)
    assert model.input_dimensions == (4,)
