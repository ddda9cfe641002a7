from __future__ import annotations

import numpy as np
import pytest
from lamina import backend


@pytest.fixture(autouse=True)
def _seeded() -> None:
    """Every test starts from the same global random state and dtype."""
    backend.seed(1234)
    backend.set_default_dtype(np.float64)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(seed=42)
