"""Array backend, default dtype and the global random number generator."""

from __future__ import annotations

import logging
from typing import Any

import numpy as xp

logger = logging.getLogger(__name__)


BACKEND = "numpy"

_DEFAULT_DTYPE: Any = xp.float64
_RNG: xp.random.Generator = xp.random.default_rng()


def seed(value: int | None) -> None:
    """Reseed the global random number generator.

    All initialization rules, samplers and shuffles draw from this
    generator, so reseeding makes training runs reproducible.

    Args:
        value (int | None): The new seed. `None` draws fresh entropy
            from the operating system.
    """
    global _RNG
    _RNG = xp.random.default_rng(value)
    logger.debug(f"Global random generator reseeded with {value!r}")


def get_rng() -> xp.random.Generator:
    """Gets the global random number generator.

    Returns:
        xp.random.Generator: The generator shared by the library.
    """
    return _RNG


def set_default_dtype(dtype: Any) -> None:
    """Sets the dtype used for all newly allocated parameters.

    Args:
        dtype (Any): A floating point numpy dtype.

    Raises:
        TypeError: If `dtype` is not a floating point type.
    """
    global _DEFAULT_DTYPE
    resolved = xp.dtype(dtype)
    if resolved.kind != "f":
        raise TypeError(f'Default dtype must be a floating point type, got "{resolved}"')
    _DEFAULT_DTYPE = resolved.type
    logger.debug(f"Default dtype set to {resolved}")


def get_default_dtype() -> Any:
    """Gets the dtype used for newly allocated parameters.

    Returns:
        Any: The numpy scalar type, `float64` unless changed.
    """
    return _DEFAULT_DTYPE


__all__ = [
    "BACKEND",
    "get_default_dtype",
    "get_rng",
    "seed",
    "set_default_dtype",
    "xp",
]
