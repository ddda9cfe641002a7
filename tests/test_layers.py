"""Tests for the layers using finite difference verification.

Every registered layer is built from the metadata stored in its LayerSpec,
so adding a new layer requires providing test metadata at registration time.
The scalar checked is `sum(forward(x) * weights)` with fixed random weights,
whose derivative w.r.t. the output is `weights`.

Note: Usually we should follow strict coding guidelines through ruff, but since this
is just testing code, we can make some exceptions. Hence the "noqa: ..." directives.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest
from lamina import FFN, RNN, Linear, MaxPooling, MeanPooling, backend, xp
from lamina.init import GaussianInitialization
from lamina.layers import (
    Dropout,
    Layer,
    LayerSpec,
    Sigmoid,
    get_layer,
    get_layer_spec,
    pooled_size,
    register_layer,
    registered_layers,
    sigmoid,
)
from lamina.loss import MeanSquaredError

EPS = 1e-6
RTOL = 1e-4
ATOL = 1e-6
BATCH = 2


def fd_gradient_batched(
    x: xp.ndarray,
    batched_func: Callable[[xp.ndarray], xp.ndarray],
    eps: float = EPS,
) -> xp.ndarray:
    """Compute gradient via batched centered finite differences.

    Fully vectorized with no Python loops. Uses O(n^2) memory where n = x.size.

    Args:
        x (xp.ndarray): Input array of shape (*shape).
        batched_func (Callable[[xp.ndarray], xp.ndarray]): Function mapping
            (n_elements, *shape) to (n_elements,).
        eps (float): Perturbation size for finite differences.

    Returns:
        xp.ndarray: Gradient array with same shape as x.
    """
    shape = x.shape
    n_elements = int(xp.prod(shape))

    modifier = (xp.eye(n_elements) * eps).reshape((n_elements, *shape))
    f_plus = batched_func(x + modifier)
    f_minus = batched_func(x - modifier)
    return ((f_plus - f_minus) / (2 * eps)).reshape(shape)


def fd_gradient_inplace(
    x: xp.ndarray,
    func: Callable[[], float],
    eps: float = EPS,
) -> xp.ndarray:
    """Centered finite differences of `func` w.r.t. `x`, perturbing `x` in place.

    Used for parameters, which layers and networks only see through views.

    Args:
        x (xp.ndarray): One-dimensional array read by `func`.
        func (Callable[[], float]): The scalar function.
        eps (float): Perturbation size for finite differences.

    Returns:
        xp.ndarray: Gradient array with same shape as x.
    """
    grad = xp.zeros_like(x)
    for i in range(x.size):
        original = x[i]
        x[i] = original + eps
        f_plus = func()
        x[i] = original - eps
        f_minus = func()
        x[i] = original
        grad[i] = (f_plus - f_minus) / (2 * eps)
    return grad


def build_layer(spec: LayerSpec) -> tuple[Layer, xp.ndarray]:
    """Construct a layer from its spec, with dimensions and random weights set.

    Returns:
        tuple[Layer, xp.ndarray]: The layer and its flat parameter vector.
    """
    rng = np.random.default_rng(seed=42)
    layer = spec.layer_cls(**spec.test_kwargs)
    layer.input_dimensions = spec.test_input_dimensions
    layer.compute_output_dimensions()
    weights = rng.uniform(-1.0, 1.0, layer.weight_size())
    layer.set_weights(weights)
    return layer, weights


def assert_close(analytical: xp.ndarray, fd: xp.ndarray, what: str) -> None:
    assert np.allclose(analytical, fd, rtol=RTOL, atol=ATOL), (
        f"Gradient mismatch for {what}:\n"
        f"Analytical:\n{analytical}\n"
        f"FD:\n{fd}\n"
        f"Max diff: {np.max(np.abs(analytical - fd))}"
    )


def _layer_names(*, recurrent: bool) -> list[str]:
    return [spec.names[0] for spec in registered_layers() if spec.recurrent == recurrent]


# =============================================================================
# Feed-forward layers
# =============================================================================


@pytest.mark.parametrize("layer_name", _layer_names(recurrent=False))
def test_layer_backward(layer_name: str) -> None:
    """The error w.r.t. the input matches finite differences of the forward pass."""
    spec = get_layer_spec(layer_name)
    if spec.skip_test:
        pytest.skip(f"Skipped: {spec.skip_reason}")

    layer, _ = build_layer(spec)
    rng = np.random.default_rng(seed=7)
    x = rng.uniform(-2.0, 2.0, (BATCH, *spec.test_input_dimensions))
    output = layer.forward(x)
    assert output.shape == (BATCH, *layer.output_dimensions)
    out_weights = rng.uniform(-1.0, 1.0, output.shape)

    analytical = layer.backward(x, output, out_weights)
    assert analytical.shape == x.shape

    def batched(perturbed: xp.ndarray) -> xp.ndarray:
        n_elements = perturbed.shape[0]
        flat = perturbed.reshape(n_elements * BATCH, *spec.test_input_dimensions)
        out = layer.forward(flat).reshape(n_elements, *output.shape)
        return xp.sum(out * out_weights, axis=tuple(range(1, out.ndim)))

    assert_close(analytical, fd_gradient_batched(x, batched), f"{layer_name} w.r.t. input")


@pytest.mark.parametrize("layer_name", _layer_names(recurrent=False))
def test_layer_gradient(layer_name: str) -> None:
    """The error w.r.t. the parameters matches finite differences."""
    spec = get_layer_spec(layer_name)
    if spec.skip_test:
        pytest.skip(f"Skipped: {spec.skip_reason}")

    layer, weights = build_layer(spec)
    if weights.size == 0:
        pytest.skip(f"{layer_name} has no parameters")

    rng = np.random.default_rng(seed=7)
    x = rng.uniform(-2.0, 2.0, (BATCH, *spec.test_input_dimensions))
    out_weights = rng.uniform(-1.0, 1.0, (BATCH, *layer.output_dimensions))

    analytical = xp.zeros_like(weights)
    layer.gradient(x, out_weights, analytical)

    fd = fd_gradient_inplace(weights, lambda: float(xp.sum(layer.forward(x) * out_weights)))
    assert_close(analytical, fd, f"{layer_name} w.r.t. parameters")


# =============================================================================
# Recurrent layers, checked through an RNN over a short sequence
# =============================================================================


@pytest.mark.parametrize("layer_name", _layer_names(recurrent=True))
@pytest.mark.parametrize("single", [False, True])
def test_recurrent_layer_gradient(layer_name: str, single: bool) -> None:
    spec = get_layer_spec(layer_name)
    time_steps = 4
    rng = np.random.default_rng(seed=3)

    model = RNN(rho=time_steps, single=single, init=GaussianInitialization(0, 0.5))
    model.add(layer_name, **spec.test_kwargs).add(Linear(2))
    sequences = rng.uniform(-1.0, 1.0, (3, time_steps, *spec.test_input_dimensions))
    targets = rng.uniform(-1.0, 1.0, (3, 2) if single else (3, time_steps, 2))
    model.reset(spec.test_input_dimensions)

    analytical = xp.zeros_like(model.parameters)
    objective = model.backward(sequences, targets, analytical)

    def loss() -> float:
        outputs = model.forward(sequences)
        if single:
            return MeanSquaredError().forward(outputs[:, -1], targets)
        return sum(
            MeanSquaredError().forward(outputs[:, t], targets[:, t]) for t in range(time_steps)
        )

    assert objective == pytest.approx(loss())
    fd = fd_gradient_inplace(model.parameters, loss)
    assert_close(analytical, fd, f"{layer_name} through time (single={single})")


def test_dropout_between_recurrent_steps_uses_each_step_mask() -> None:
    rng = np.random.default_rng(seed=5)
    model = RNN(rho=3, init=GaussianInitialization(0, 0.5))
    model.add("recurrent", dim_out=3).add(Dropout(0.3)).add(Linear(1))
    sequences = rng.uniform(-1.0, 1.0, (2, 3, 2))
    targets = rng.uniform(-1.0, 1.0, (2, 3, 1))
    model.reset((2,))

    backend.seed(0)
    analytical = xp.zeros_like(model.parameters)
    objective = model.backward(sequences, targets, analytical)

    def loss() -> float:
        backend.seed(0)
        return model.loss(model.forward(sequences), targets)

    assert objective == pytest.approx(loss())
    fd = fd_gradient_inplace(model.parameters, loss)
    assert_close(analytical, fd, "dropout through time")


def test_recurrent_layer_memory() -> None:
    layer = get_layer("recurrent")(dim_out=3)
    layer.input_dimensions = (2,)
    layer.compute_output_dimensions()
    layer.set_weights(np.random.default_rng(0).uniform(-1, 1, layer.weight_size()))

    x = np.ones((1, 2))
    first = layer.forward(x)
    second = layer.forward(x)
    assert layer.steps_taken == 2
    assert not np.allclose(first, second)

    layer.clear_memory()
    assert layer.steps_taken == 0
    assert np.allclose(layer.forward(x), first)

    with pytest.raises(IndexError):
        layer.set_step(5)


# =============================================================================
# Dimension inference and explicit values
# =============================================================================


@pytest.mark.parametrize(
    ("size", "kernel", "stride", "floor", "expected"),
    [
        (5, 2, 2, True, 2),
        (5, 2, 2, False, 3),
        (6, 2, 2, False, 3),
        (6, 3, 1, True, 4),
        (4, 3, 2, False, 2),
        (3, 1, 4, False, 1),
    ],
)
def test_pooled_size(size: int, kernel: int, stride: int, floor: bool, expected: int) -> None:
    assert pooled_size(size, kernel, stride, floor=floor) == expected


def test_pooled_size_rejects_large_kernel() -> None:
    with pytest.raises(ValueError, match="larger than the input"):
        pooled_size(2, 3, 1, floor=True)


def test_max_pooling_values() -> None:
    x = np.arange(16, dtype=np.float64).reshape(1, 1, 4, 4)
    layer = MaxPooling(2, 2, 2, 2)
    layer.input_dimensions = (1, 4, 4)
    layer.compute_output_dimensions()
    assert layer.output_dimensions == (1, 2, 2)

    output = layer.forward(x)
    assert np.array_equal(output[0, 0], [[5, 7], [13, 15]])

    gy = np.ones_like(output)
    grad = layer.backward(x, output, gy)
    expected = np.zeros((4, 4))
    expected[[1, 1, 3, 3], [1, 3, 1, 3]] = 1
    assert np.array_equal(grad[0, 0], expected)


def test_max_pooling_overlapping_windows_accumulate() -> None:
    x = np.array([[[[0.0, 9.0, 0.0]]]])
    layer = MaxPooling(2, 1, 1, 1)
    layer.input_dimensions = (1, 1, 3)
    layer.compute_output_dimensions()
    output = layer.forward(x)
    assert np.array_equal(output[0, 0], [[9.0, 9.0]])
    grad = layer.backward(x, output, np.ones_like(output))
    assert np.array_equal(grad[0, 0], [[0.0, 2.0, 0.0]])


def test_max_pooling_backward_reuses_forward_winners() -> None:
    x = np.array([[[[1.0, 0.0], [0.0, 0.0]]]])
    layer = MaxPooling(2, 2)
    layer.input_dimensions = (1, 2, 2)
    layer.compute_output_dimensions()
    output = layer.forward(x)

    x[0, 0, 1, 1] = 5.0
    grad = layer.backward(x, output, np.ones_like(output))
    assert np.array_equal(grad[0, 0], [[1.0, 0.0], [0.0, 0.0]])

    # an input the forward pass has not seen is searched again
    grad = layer.backward(x.copy(), output, np.ones_like(output))
    assert np.array_equal(grad[0, 0], [[0.0, 0.0], [0.0, 1.0]])


def test_max_pooling_ties_take_first_element() -> None:
    x = np.ones((1, 1, 2, 2))
    layer = MaxPooling(2, 2)
    layer.input_dimensions = (1, 2, 2)
    layer.compute_output_dimensions()
    assert layer.pooling_indices(x).ravel().tolist() == [0]


def test_mean_pooling_ceil_mode_averages_valid_elements() -> None:
    x = np.arange(9, dtype=np.float64).reshape(1, 1, 3, 3)
    layer = MeanPooling(2, 2, 2, 2, floor=False)
    layer.input_dimensions = (1, 3, 3)
    layer.compute_output_dimensions()
    assert layer.output_dimensions == (1, 2, 2)
    output = layer.forward(x)
    assert np.allclose(output[0, 0], [[2.0, 3.5], [6.5, 8.0]])


def test_mean_pooling_floor_mode_drops_border() -> None:
    layer = MeanPooling(2, 2, 2, 2)
    layer.input_dimensions = (3, 5, 5)
    layer.compute_output_dimensions()
    assert layer.output_dimensions == (3, 2, 2)


def test_convolution_dimensions() -> None:
    layer = get_layer("conv2d")(maps=4, kernel_width=3, kernel_height=3, pad_width=1, pad_height=1)
    layer.input_dimensions = (2, 6, 5)
    layer.compute_output_dimensions()
    assert layer.output_dimensions == (4, 6, 5)
    assert layer.weight_size() == 4 * 2 * 3 * 3 + 4


def test_linear_rejects_wrong_input() -> None:
    layer = Linear(3)
    layer.input_dimensions = (4,)
    layer.compute_output_dimensions()
    layer.set_weights(np.zeros(layer.weight_size()))
    with pytest.raises(ValueError):
        layer.forward(np.zeros((2, 5)))


def test_compute_output_dimensions_requires_input() -> None:
    with pytest.raises(RuntimeError, match="not set"):
        Linear(3).compute_output_dimensions()


def test_set_weights_aliases_the_flat_vector() -> None:
    layer = Linear(2)
    layer.input_dimensions = (3,)
    layer.compute_output_dimensions()
    flat = np.zeros(layer.weight_size())
    layer.set_weights(flat)
    flat[:] = 1.0
    assert np.all(layer.get_parameters()["weight"] == 1.0)
    assert np.all(layer.get_parameters()["bias"] == 1.0)


def test_set_weights_rejects_wrong_size() -> None:
    layer = Linear(2)
    layer.input_dimensions = (3,)
    layer.compute_output_dimensions()
    with pytest.raises(ValueError, match="expects a flat vector"):
        layer.set_weights(np.zeros(3))


def test_sigmoid_keeps_floating_dtype() -> None:
    backend.set_default_dtype(np.float32)
    assert sigmoid(np.zeros(3, dtype=np.float32)).dtype == np.float32
    assert sigmoid(np.zeros(3, dtype=np.float16)).dtype == np.float16
    assert Sigmoid().forward(np.array([0, 1])).dtype == np.float32
    assert np.allclose(sigmoid(np.array([-1000.0, 0.0, 1000.0])), [0.0, 0.5, 1.0])


def test_dropout_modes() -> None:
    layer = Dropout(0.5)
    x = np.ones((100, 10))
    train_out = layer.forward(x)
    assert set(np.unique(train_out)) <= {0.0, 2.0}
    assert np.array_equal(layer.backward(x, train_out, x), train_out)

    layer.inference()
    assert np.array_equal(layer.forward(x), x)


def test_dropout_keeps_a_mask_per_step() -> None:
    layer = Dropout(0.5)
    x = np.ones((20, 10))
    outputs = [layer.forward(x) for _ in range(3)]
    assert not np.array_equal(outputs[0], outputs[1])
    for step in reversed(range(3)):
        layer.set_step(step)
        assert np.array_equal(layer.backward(x, outputs[step], x), outputs[step])


# =============================================================================
# Registry
# =============================================================================


def test_registry_aliases_share_spec() -> None:
    assert get_layer_spec("Dense") is get_layer_spec("linear")
    assert get_layer("max_pool") is MaxPooling


def test_registry_unknown_name() -> None:
    with pytest.raises(KeyError):
        get_layer("does_not_exist")


def test_registry_rejects_duplicates() -> None:
    with pytest.raises(ValueError):

        @register_layer(names=("Linear",))
        class Duplicate(Layer):
            def forward(self, input: xp.ndarray) -> xp.ndarray:  # noqa: A002
                return input

            def backward(
                self,
                input: xp.ndarray,  # noqa: A002
                output: xp.ndarray,
                gy: xp.ndarray,
            ) -> xp.ndarray:
                return gy


def test_network_add_by_name() -> None:
    model = FFN()
    model.add("dense", dim_out=3).add("relu")
    assert isinstance(model.layers[0], Linear)
    with pytest.raises(TypeError):
        model.add(Linear(2), dim_out=3)
