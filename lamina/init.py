"""Initialization rules for network and model parameters."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .backend import get_default_dtype, get_rng, xp


class InitializationRule(ABC):
    """Abstract base class for all initialization rules."""

    @abstractmethod
    def initialize(self, shape: tuple[int, ...]) -> xp.ndarray:
        """Create freshly initialized values.

        Args:
            shape (tuple[int, ...]): Shape of the parameter to initialize.

        Returns:
            xp.ndarray: The initial values, in the default dtype.
        """


class RandomInitialization(InitializationRule):
    """Uniform initialization in `[lower, upper)`."""

    def __init__(self, lower: float = -1.0, upper: float = 1.0) -> None:
        if lower > upper:
            raise ValueError(f"lower bound ({lower}) must not exceed upper bound ({upper})")
        self.lower = lower
        self.upper = upper

    def initialize(self, shape: tuple[int, ...]) -> xp.ndarray:
        return get_rng().uniform(self.lower, self.upper, size=shape).astype(get_default_dtype())


class GaussianInitialization(InitializationRule):
    """Normal initialization with the given mean and standard deviation."""

    def __init__(self, mean: float = 0.0, std: float = 1.0) -> None:
        if std < 0:
            raise ValueError(f"std must be non-negative, got {std}")
        self.mean = mean
        self.std = std

    def initialize(self, shape: tuple[int, ...]) -> xp.ndarray:
        return get_rng().normal(self.mean, self.std, size=shape).astype(get_default_dtype())


class GlorotInitialization(InitializationRule):
    """Xavier/Glorot initialization.

    The fans are taken from the last two axes of the shape, any leading
    axes (e.g. convolution maps) scale both fans. Vectors use their length
    for both fans.
    """

    def __init__(self, *, uniform: bool = True) -> None:
        self.uniform = uniform

    @staticmethod
    def _fans(shape: tuple[int, ...]) -> tuple[int, int]:
        if len(shape) == 0:
            return 1, 1
        if len(shape) == 1:
            return shape[0], shape[0]
        receptive = int(xp.prod(shape[2:])) if len(shape) > 2 else 1
        # convolution kernels: (maps, channels, kh, kw)
        if len(shape) > 2:
            return shape[1] * receptive, shape[0] * receptive
        return shape[0], shape[1]

    def initialize(self, shape: tuple[int, ...]) -> xp.ndarray:
        fan_in, fan_out = self._fans(shape)
        if self.uniform:
            limit = xp.sqrt(6.0 / (fan_in + fan_out))
            values = get_rng().uniform(-limit, limit, size=shape)
        else:
            values = get_rng().normal(0.0, xp.sqrt(2.0 / (fan_in + fan_out)), size=shape)
        return values.astype(get_default_dtype())


class ConstInitialization(InitializationRule):
    """Fill every parameter with `value`."""

    def __init__(self, value: float) -> None:
        self.value = value

    def initialize(self, shape: tuple[int, ...]) -> xp.ndarray:
        return xp.full(shape, self.value, dtype=get_default_dtype())


__all__ = [
    "ConstInitialization",
    "GaussianInitialization",
    "GlorotInitialization",
    "InitializationRule",
    "RandomInitialization",
]
