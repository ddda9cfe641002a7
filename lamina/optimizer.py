"""Optimizers driving the training of all models.

Models never update their own parameters. They expose themselves as a
`DifferentiableFunction` over their training set and hand the function and
the flat parameter vector to an optimizer, which updates the vector in place.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable

import scipy.optimize

from .backend import xp
from .callbacks import Callback, invoke

logger = logging.getLogger(__name__)


@runtime_checkable
class DifferentiableFunction(Protocol):
    """A differentiable objective that is a sum over `num_functions()` terms.

    `begin` and `batch_size` select the terms (usually data points) taking
    part in a call. All methods return or write the **sum** over the
    selected terms.
    """

    def num_functions(self) -> int: ...

    def shuffle(self) -> None: ...

    def evaluate(self, coordinates: xp.ndarray, begin: int, batch_size: int) -> float: ...

    def gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> None: ...

    def evaluate_with_gradient(
        self,
        coordinates: xp.ndarray,
        begin: int,
        batch_size: int,
        gradient: xp.ndarray,
    ) -> float: ...


def evaluate_all(
    function: DifferentiableFunction,
    coordinates: xp.ndarray,
    batch_size: int | None = None,
) -> float:
    """The objective summed over all terms of `function`.

    Args:
        function (DifferentiableFunction): The function to evaluate.
        coordinates (xp.ndarray): Where to evaluate it.
        batch_size (int | None): Terms evaluated per call. Defaults to all
            terms at once.

    Returns:
        float: The full objective.
    """
    num_functions = function.num_functions()
    batch_size = batch_size or num_functions
    objective = 0.0
    for begin in range(0, num_functions, batch_size):
        objective += function.evaluate(coordinates, begin, min(batch_size, num_functions - begin))
    return objective


class Optimizer(ABC):
    """Abstract base class for all optimizers."""

    @abstractmethod
    def optimize(
        self,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        *callbacks: Callback,
    ) -> float:
        """Minimize `function`, starting from and updating `coordinates` in place.

        Args:
            function (DifferentiableFunction): The objective.
            coordinates (xp.ndarray): Starting point, overwritten with the
                result.
            *callbacks (Callback): Hooks into the optimization loop.

        Returns:
            float: The objective at the final coordinates.
        """


class MiniBatchOptimizer(Optimizer):
    """Mini-batch gradient descent loop shared by `SGD` and `Adam`.

    A step evaluates the objective and gradient of one batch, divides the
    gradient by the batch size and passes it to `update`. An epoch ends
    when all terms of the function have been visited.

    Args:
        step_size (float): The learning rate.
        batch_size (int): Terms per step.
        max_iterations (int): Maximum number of terms to visit over the whole
            run, `0` means no limit.
        tolerance (float): Stop when the epoch objective changes by less
            than this. A negative value disables the check.
        shuffle (bool): Shuffle the function before every epoch.
    """

    def __init__(
        self,
        *,
        step_size: float,
        batch_size: int,
        max_iterations: int,
        tolerance: float,
        shuffle: bool,
    ) -> None:
        if step_size <= 0:
            raise ValueError(f"step_size must be positive, got {step_size}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {max_iterations}")
        self.step_size = step_size
        self.batch_size = batch_size
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.shuffle = shuffle

    @abstractmethod
    def reset_state(self, coordinates: xp.ndarray) -> None:
        """Allocate the optimizer state for `coordinates`."""

    @abstractmethod
    def update(self, coordinates: xp.ndarray, gradient: xp.ndarray) -> None:
        """Apply one update to `coordinates` in place.

        Args:
            coordinates (xp.ndarray): The coordinates to update.
            gradient (xp.ndarray): The batch-averaged gradient.
        """

    def optimize(  # noqa: C901
        self,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        *callbacks: Callback,
    ) -> float:
        num_functions = function.num_functions()
        if num_functions < 1:
            raise ValueError("Cannot optimize a function without any terms")
        batch_size = min(self.batch_size, num_functions)
        max_iterations = self.max_iterations or math.inf

        self.reset_state(coordinates)
        gradient = xp.zeros_like(coordinates)
        terminate = invoke(callbacks, "begin_optimization", self, function, coordinates)

        if self.shuffle:
            function.shuffle()

        epoch = 1
        current_function = 0
        epoch_objective = 0.0
        last_objective = math.inf
        iteration = 0
        terminate |= invoke(callbacks, "begin_epoch", self, function, coordinates, epoch, 0.0)
        logger.debug(
            f"{type(self).__name__}: {num_functions} terms, batch size {batch_size}, "
            f"max iterations {self.max_iterations or 'unlimited'}"
        )

        while iteration < max_iterations and not terminate:
            effective_batch = int(
                min(batch_size, max_iterations - iteration, num_functions - current_function)
            )
            objective = function.evaluate_with_gradient(
                coordinates, current_function, effective_batch, gradient
            )
            epoch_objective += objective
            terminate |= invoke(callbacks, "evaluate", self, function, coordinates, objective)
            terminate |= invoke(callbacks, "gradient", self, function, coordinates, gradient)

            self.update(coordinates, gradient / effective_batch)
            terminate |= invoke(callbacks, "step_taken", self, function, coordinates)

            iteration += effective_batch
            current_function += effective_batch

            if current_function % num_functions == 0:
                terminate |= invoke(
                    callbacks, "end_epoch", self, function, coordinates, epoch, epoch_objective
                )
                logger.debug(f"Epoch {epoch}: objective {epoch_objective}")

                if not math.isfinite(epoch_objective):
                    logger.warning(
                        f"{type(self).__name__}: objective diverged to {epoch_objective}; "
                        "terminating with failure. Try a smaller step size?"
                    )
                    invoke(callbacks, "end_optimization", self, function, coordinates)
                    return epoch_objective

                if abs(last_objective - epoch_objective) < self.tolerance:
                    logger.info(
                        f"{type(self).__name__}: minimized within tolerance {self.tolerance}; "
                        "terminating optimization"
                    )
                    break

                last_objective = epoch_objective
                epoch_objective = 0.0
                current_function = 0
                epoch += 1
                if self.shuffle:
                    function.shuffle()
                terminate |= invoke(
                    callbacks, "begin_epoch", self, function, coordinates, epoch, last_objective
                )

        if iteration >= max_iterations:
            logger.info(
                f"{type(self).__name__}: maximum iterations ({self.max_iterations}) reached; "
                "terminating optimization"
            )

        objective = evaluate_all(function, coordinates, batch_size)
        invoke(callbacks, "end_optimization", self, function, coordinates)
        return objective


class SGD(MiniBatchOptimizer):
    """Stochastic gradient descent optimizer."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        step_size: float = 0.01,
        batch_size: int = 32,
        max_iterations: int = 100000,
        tolerance: float = 1e-5,
        shuffle: bool = True,
        friction: float = 1,
        weight_decay: float = 0,
    ) -> None:
        """The stochastic gradient descent optimizer.

        Note: By default, vanilla SGD is used. However, when setting
        the arguments accordingly, it can become SGD with momentum and also
        apply weight decay.

        **Standard SGD:** `friction=1, weight_decay=0`
        **SGD w/ momentum:** `friction<1, weight_decay=0`
        **SGDW:** `friction<1, weight_decay>0`

        Args:
            step_size (float, optional): The learning rate. Defaults to 0.01.
            batch_size (int, optional): Terms per step. Defaults to 32.
            max_iterations (int, optional): Maximum number of visited terms,
                `0` for no limit. Defaults to 100000.
            tolerance (float, optional): Minimum change of the epoch objective.
                Defaults to 1e-5.
            shuffle (bool, optional): Shuffle before every epoch. Defaults to True.
            friction (float, optional): How much friction to apply on the
                momentum. If friction is 1 (100%), then we do not use momentum,
                as in every step all previous momentum is lost.
                If momentum is desired, set `friction<1`. A typical value is `0.1`,
                so 10% of momentum is lost every step due to friction.
                Defaults to 1.
            weight_decay (float, optional): Decay rate of the coordinates,
                equals the weight of L2-regularization on the objective.
                Defaults to `0`.
        """
        super().__init__(
            step_size=step_size,
            batch_size=batch_size,
            max_iterations=max_iterations,
            tolerance=tolerance,
            shuffle=shuffle,
        )
        if not 0 <= friction <= 1:
            raise ValueError(f"friction must be in [0, 1], got {friction}")
        self.friction = friction
        self.weight_decay = weight_decay
        self.m: xp.ndarray | None = None

    def reset_state(self, coordinates: xp.ndarray) -> None:
        self.m = xp.zeros_like(coordinates) if self.friction < 1 else None

    def update(self, coordinates: xp.ndarray, gradient: xp.ndarray) -> None:
        if self.m is not None:
            # we lose momentum through "friction", the momentum remaining from the previous step
            # is (1-self.friction)
            # we add the gradient as new force from the current position
            self.m = (1 - self.friction) * self.m + gradient
            gradient = self.m

        coordinates[...] = (
            (1 - self.step_size * self.weight_decay) * coordinates  # weight decay part
            - self.step_size * gradient  # gradient part
        )


class Adam(MiniBatchOptimizer):
    """Adam optimizer."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        step_size: float = 1e-3,
        batch_size: int = 32,
        beta_1: float = 0.9,
        beta_2: float = 0.999,
        epsilon: float = 1e-8,
        max_iterations: int = 100000,
        tolerance: float = 1e-5,
        shuffle: bool = True,
        weight_decay: float = 0,
        amsgrad: bool = False,
    ) -> None:
        """The Adam optimizer.

        Note: By setting `weight_decay` > 0 this becomes `AdamW`, by setting
        `amsgrad=True` it becomes `AMSGrad`.

        Args:
            step_size (float, optional): The learning rate, also called `alpha`
                in the paper. Defaults to 1e-3.
            batch_size (int, optional): Terms per step. Defaults to 32.
            beta_1 (float, optional): Exponential decay rate for
                the momentum. Defaults to 0.9.
            beta_2 (float, optional): Exponential decay rate for
                the noise. Defaults to 0.999.
            epsilon (float, optional): Value added to `v` to improve
                numerical stability and avoid division by zero. Defaults to 1e-8.
            max_iterations (int, optional): Maximum number of visited terms,
                `0` for no limit. Defaults to 100000.
            tolerance (float, optional): Minimum change of the epoch objective.
                Defaults to 1e-5.
            shuffle (bool, optional): Shuffle before every epoch. Defaults to True.
            weight_decay (float, optional): Decay rate of the coordinates.
                If greater than `0`, the optimizer becomes **AdamW**.
                Defaults to `0`, meaning vanilla Adam is used.
            amsgrad (bool, optional): Use the running maximum of the noise
                estimate. Defaults to False.
        """
        super().__init__(
            step_size=step_size,
            batch_size=batch_size,
            max_iterations=max_iterations,
            tolerance=tolerance,
            shuffle=shuffle,
        )
        if not (0 <= beta_1 < 1 and 0 <= beta_2 < 1):
            raise ValueError(f"betas must be in [0, 1), got {beta_1} and {beta_2}")
        self.beta_1 = beta_1
        self.beta_2 = beta_2
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.amsgrad = amsgrad
        self.m: xp.ndarray | None = None
        self.v: xp.ndarray | None = None
        self.v_max: xp.ndarray | None = None
        self.t = 0

    def reset_state(self, coordinates: xp.ndarray) -> None:
        self.m = xp.zeros_like(coordinates)
        self.v = xp.zeros_like(coordinates)
        self.v_max = xp.zeros_like(coordinates) if self.amsgrad else None
        self.t = 0

    def update(self, coordinates: xp.ndarray, gradient: xp.ndarray) -> None:
        """Performs a single Adam step.

        Uses the slightly more efficient variant, which
        can be found at the end of section 2 in the paper: https://arxiv.org/pdf/1412.6980
        """
        if self.m is None or self.v is None:
            raise RuntimeError(
                "Adam state is not initialized. Call reset_state() before update()."
            )
        self.t += 1

        self.m = self.beta_1 * self.m + (1 - self.beta_1) * gradient
        self.v = self.beta_2 * self.v + (1 - self.beta_2) * gradient**2
        v = self.v
        if self.v_max is not None:
            self.v_max = xp.maximum(self.v_max, self.v)
            v = self.v_max

        lr_t = self.step_size * math.sqrt(1 - self.beta_2**self.t) / (1 - self.beta_1**self.t)
        epsilon_hat = self.epsilon * math.sqrt(1 - self.beta_2**self.t)

        # [...] -> in-place assignment
        coordinates[...] = (
            (1 - self.step_size * self.weight_decay) * coordinates  # weight decay part
            - lr_t * self.m / (xp.sqrt(v) + epsilon_hat)  # gradient part
        )


class LBFGS(Optimizer):
    """Full-batch L-BFGS, delegated to `scipy.optimize.minimize`.

    Every scipy iteration counts as one epoch for the callbacks.

    Args:
        max_iterations (int): Maximum number of L-BFGS iterations, `0`
            means scipy's default. Defaults to 10000.
        tolerance (float): Relative reduction of the objective below which
            to stop (`ftol`). Defaults to 1e-10.
        gradient_tolerance (float): Projected gradient norm below which to
            stop (`gtol`). Defaults to 1e-6.
        num_basis (int): Number of stored corrections. Defaults to 10.
    """

    def __init__(
        self,
        *,
        max_iterations: int = 10000,
        tolerance: float = 1e-10,
        gradient_tolerance: float = 1e-6,
        num_basis: int = 10,
    ) -> None:
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {max_iterations}")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.gradient_tolerance = gradient_tolerance
        self.num_basis = num_basis

    def optimize(
        self,
        function: DifferentiableFunction,
        coordinates: xp.ndarray,
        *callbacks: Callback,
    ) -> float:
        num_functions = function.num_functions()
        if num_functions < 1:
            raise ValueError("Cannot optimize a function without any terms")
        gradient = xp.zeros_like(coordinates)
        state = {"epoch": 0, "objective": math.inf, "terminate": False}

        state["terminate"] = invoke(callbacks, "begin_optimization", self, function, coordinates)

        def fun(x: xp.ndarray) -> tuple[float, xp.ndarray]:
            coordinates[...] = x.reshape(coordinates.shape)
            objective = function.evaluate_with_gradient(coordinates, 0, num_functions, gradient)
            state["objective"] = objective
            if invoke(callbacks, "evaluate", self, function, coordinates, objective):
                state["terminate"] = True
            if invoke(callbacks, "gradient", self, function, coordinates, gradient):
                state["terminate"] = True
            return objective, gradient.ravel().copy()

        def on_iteration(xk: xp.ndarray) -> None:
            coordinates[...] = xk.reshape(coordinates.shape)
            state["epoch"] += 1
            if invoke(callbacks, "step_taken", self, function, coordinates):
                state["terminate"] = True
            if invoke(
                callbacks,
                "end_epoch",
                self,
                function,
                coordinates,
                state["epoch"],
                state["objective"],
            ):
                state["terminate"] = True
            if state["terminate"]:
                raise StopIteration

        options: dict[str, float | int] = {
            "ftol": self.tolerance,
            "gtol": self.gradient_tolerance,
            "maxcor": self.num_basis,
        }
        if self.max_iterations:
            options["maxiter"] = self.max_iterations

        if state["terminate"]:
            result_x = coordinates.ravel().copy()
        else:
            result = scipy.optimize.minimize(
                fun,
                coordinates.ravel().copy(),
                jac=True,
                method="L-BFGS-B",
                callback=on_iteration,
                options=options,
            )
            logger.debug(f"L-BFGS finished after {result.nit} iterations: {result.message}")
            result_x = result.x

        coordinates[...] = xp.asarray(result_x).reshape(coordinates.shape)
        objective = function.evaluate(coordinates, 0, num_functions)
        invoke(callbacks, "end_optimization", self, function, coordinates)
        return objective


__all__ = [
    "LBFGS",
    "SGD",
    "Adam",
    "DifferentiableFunction",
    "MiniBatchOptimizer",
    "Optimizer",
    "evaluate_all",
]
