#!/usr/bin/env python3
"""Verify that lamina is correctly installed and functional.

Run against a built wheel in an isolated environment to check that the
package imports and trains without the source tree.
"""

import numpy as np

import lamina


def test_version() -> None:
    """Verify version is accessible."""
    print(f"lamina version: {lamina.__version__}")
    assert lamina.__version__, "Version should not be empty"


def test_model_forward() -> None:
    """Test basic network creation and forward pass."""
    model = lamina.FFN()
    model.add(lamina.Linear(4)).add(lamina.ReLU()).add(lamina.Linear(1))

    out = model.forward(np.array([[1.0, 2.0, 3.0]]))

    assert out.shape == (1, 1), f"Expected (1, 1), got {out.shape}"


def test_training() -> None:
    """Test that a linear model fits a line."""
    inputs = np.linspace(-1.0, 1.0, 20)[:, None]
    model = lamina.FFN()
    model.add(lamina.Linear(1))

    objective = model.train(inputs, 3 * inputs - 1, optimizer=lamina.LBFGS())

    assert objective < 1e-6, f"Expected a perfect fit, got objective {objective}"


def main() -> None:
    """Run all verification tests."""
    print("Running installation verification tests...")
    print("-" * 40)

    test_version()
    test_model_forward()
    test_training()

    print("-" * 40)
    print("All installation tests passed!")


if __name__ == "__main__":
    main()
