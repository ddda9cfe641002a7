"""Callbacks hooked into the optimization loop.

Every hook is optional. Optimizers call a hook on every callback that
defines it, and a hook returning `True` asks the optimizer to stop after the
current step.
"""

from __future__ import annotations

import logging
import math
import sys
from typing import TYPE_CHECKING, Any, TextIO

from .backend import xp

if TYPE_CHECKING:
    from .optimizer import DifferentiableFunction, Optimizer


logger = logging.getLogger(__name__)


class Callback:
    """Base class of all callbacks, every hook is a no-op."""

    def begin_optimization(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        """Called once before the first step."""
        return None

    def end_optimization(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        """Called once after the last step."""
        return None

    def evaluate(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        objective: float,
    ) -> bool | None:
        """Called after every evaluation of the objective."""
        return None

    def gradient(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        gradient: xp.ndarray,
    ) -> bool | None:
        """Called after every evaluation of the gradient."""
        return None

    def begin_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        """Called at the start of every pass over the data."""
        return None

    def end_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        """Called at the end of every pass over the data."""
        return None

    def step_taken(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        """Called after every update of the coordinates."""
        return None


def invoke(callbacks: tuple[Callback, ...], hook: str, *args: Any) -> bool:
    """Call `hook` on all callbacks.

    Every callback is called, even if an earlier one already requested
    termination.

    Args:
        callbacks (tuple[Callback, ...]): The callbacks.
        hook (str): Name of the hook, e.g. `"end_epoch"`.
        *args (Any): Arguments forwarded to the hook.

    Returns:
        bool: Whether any callback requested termination.
    """
    terminate = False
    for callback in callbacks:
        method = getattr(callback, hook, None)
        if method is None:
            continue
        if method(*args):
            logger.debug(f'{type(callback).__name__}.{hook} requested termination')
            terminate = True
    return terminate


class PrintLoss(Callback):
    """Print the objective at the end of every epoch.

    Args:
        stream (TextIO): Where to write. Defaults to `sys.stdout`.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def end_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        self.stream.write(f"{objective}\n")
        return None


class ProgressBar(Callback):
    """A textual progress bar, one line per epoch.

    Args:
        width (int): Number of characters of the bar. Defaults to 70.
        stream (TextIO): Where to write. Defaults to `sys.stdout`.
    """

    def __init__(self, width: int = 70, stream: TextIO | None = None) -> None:
        if width < 1:
            raise ValueError(f"width must be positive, got {width}")
        self.width = width
        self.stream = stream if stream is not None else sys.stdout
        self._steps_per_epoch = 1
        self._step = 0
        self._epoch = 1
        self._objective = 0.0

    def begin_optimization(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        num_functions = function.num_functions()
        batch_size = getattr(optimizer, "batch_size", num_functions) or num_functions
        self._steps_per_epoch = max(1, math.ceil(num_functions / min(batch_size, num_functions)))
        self._step = 0
        self._epoch = 1
        self._objective = 0.0
        return None

    def evaluate(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        objective: float,
    ) -> bool | None:
        self._objective += objective
        return None

    def step_taken(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        self._step = min(self._step + 1, self._steps_per_epoch)
        done = self.width * self._step // self._steps_per_epoch
        percent = 100 * self._step // self._steps_per_epoch
        bar = "=" * max(done - 1, 0) + (">" if done > 0 else "") + "." * (self.width - done)
        self.stream.write(
            f"\rEpoch {self._epoch}: {percent}% [{bar}] {self._step}/{self._steps_per_epoch} "
            f"- loss: {self._objective / self._step:.6g}"
        )
        return None

    def end_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        total = self._steps_per_epoch
        self.stream.write(f"\n{total}/{total} - loss: {objective}\n")
        self._epoch = epoch + 1
        self._step = 0
        self._objective = 0.0
        return None


class EarlyStopAtMinLoss(Callback):
    """Stop when the epoch objective has not improved for `patience` epochs.

    Args:
        patience (int): Number of epochs without improvement to wait.
            Defaults to 10.
    """

    def __init__(self, patience: int = 10) -> None:
        if patience < 1:
            raise ValueError(f"patience must be positive, got {patience}")
        self.patience = patience
        self.best_objective = math.inf
        self._stale_epochs = 0

    def begin_optimization(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
    ) -> bool | None:
        self.best_objective = math.inf
        self._stale_epochs = 0
        return None

    def end_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        if objective < self.best_objective:
            self.best_objective = objective
            self._stale_epochs = 0
            return False
        self._stale_epochs += 1
        if self._stale_epochs >= self.patience:
            logger.info(
                f"No improvement for {self._stale_epochs} epochs "
                f"(best objective {self.best_objective}), stopping"
            )
            return True
        return False


class StoreBestCoordinates(Callback):
    """Remember the coordinates with the lowest epoch objective."""

    def __init__(self) -> None:
        self.best_objective = math.inf
        self.best_coordinates: xp.ndarray | None = None

    def end_epoch(
        self,
        optimizer: Optimizer,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        epoch: int,
        objective: float,
    ) -> bool | None:
        if objective < self.best_objective:
            self.best_objective = objective
            self.best_coordinates = coordinates.copy()
        return None


__all__ = [
    "Callback",
    "EarlyStopAtMinLoss",
    "PrintLoss",
    "ProgressBar",
    "StoreBestCoordinates",
    "invoke",
]
