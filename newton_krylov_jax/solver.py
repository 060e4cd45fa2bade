"""Newton-Krylov minimiser for Optimistix.

This module wraps ``NewtonKrylovStep`` in an ``optimistix.AbstractMinimiser``
so that it can be used with ``optimistix.minimise``:

- ``init`` evaluates the starting point (``NewtonKrylovStep.initialize``).
- ``step`` computes the Newton-Krylov direction and takes the unit step
  (``compute`` followed by ``update``).
- ``terminate`` checks the gradient norm against the tolerances.

Gradients and Hessian-vector products can be user-supplied or computed
automatically via jax.grad and forward-over-reverse differentiation.
"""

from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import optimistix as optx
import optimistix._misc as optx_misc
from jaxtyping import Array, Bool, Float

from newton_krylov_jax.config import StepConfig
from newton_krylov_jax.objective import BoundConstraint, Objective
from newton_krylov_jax.step import AlgorithmState, NewtonKrylovStep, StepState
from newton_krylov_jax.types import GradFn, HVPFn, PrecondFn
from newton_krylov_jax.utils import strip_aux


class NewtonKrylovState(eqx.Module):
    """State for the Newton-Krylov minimiser.

    Wraps the loop and step states of ``NewtonKrylovStep`` together with the
    initial gradient norm used by the relative stopping test.

    Attributes:
        algo_state: Iterate, value, norms and evaluation counts.
        step_state: Gradient, last direction, secant memory and Krylov diagnostics.
        initial_gnorm: Gradient norm at the starting point, used to scale rtol.
    """

    algo_state: AlgorithmState
    step_state: StepState
    initial_gnorm: Float[Array, ""]


class NewtonKrylov(optx.AbstractMinimiser):
    """Inexact Newton minimiser with a Krylov inner solver.

    Attributes:
        rtol: Relative tolerance on the gradient norm.
        atol: Absolute tolerance on the gradient norm.
        max_steps: Maximum number of iterations.
        config: Step configuration (Krylov method, secant preconditioning, ...).
        obj_grad_fn: Optional gradient of the objective.
        obj_hvp_fn: Optional Hessian-vector product of the objective.
        obj_precond_fn: Optional preconditioner (approximate inverse Hessian).

    Example:
        >>> import jax.numpy as jnp
        >>> import optimistix as optx
        >>> from newton_krylov_jax import NewtonKrylov
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum((x - 1.0) ** 2)
        >>>
        >>> solver = NewtonKrylov(rtol=1e-8, atol=1e-8)
        >>> sol = optx.minimise(objective, solver, jnp.zeros(3))
    """

    rtol: float = 1e-6
    atol: float = 1e-6

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    max_steps: int = 100

    config: StepConfig = eqx.field(static=True, default=StepConfig())

    # Optional user-supplied derivative functions
    obj_grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    obj_hvp_fn: Optional[HVPFn] = eqx.field(static=True, default=None)
    obj_precond_fn: Optional[PrecondFn] = eqx.field(static=True, default=None)

    def _objective(self, fn: Callable, args: Any) -> Objective:
        return Objective(
            fn=strip_aux(fn),
            args=args,
            grad_fn=self.obj_grad_fn,
            hvp_fn=self.obj_hvp_fn,
            precond_fn=self.obj_precond_fn,
        )

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> NewtonKrylovState:
        """Evaluate f and its gradient at ``y`` and set up the step storage.

        The secant memory is allocated here when secant preconditioning is
        enabled, since its size depends on ``y``.
        """
        step = NewtonKrylovStep(self.config)
        _, _, algo_state, step_state = step.initialize(
            y,
            jnp.zeros_like(y),
            jnp.zeros_like(y),
            self._objective(fn, args),
            BoundConstraint(),
            AlgorithmState.create(y),
        )
        return NewtonKrylovState(
            algo_state=algo_state,
            step_state=step_state,
            initial_gnorm=algo_state.gnorm,
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NewtonKrylovState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], NewtonKrylovState, Any]:
        """Solve the Newton system at ``y`` and take the unit step.

        Returns:
            The new iterate, the updated state and the aux output of ``fn``
            at the new iterate.
        """
        step = NewtonKrylovStep(self.config)
        objective = self._objective(fn, args)
        bound = BoundConstraint()

        s, step_state = step.compute(
            jnp.zeros_like(y), y, objective, bound, state.algo_state, state.step_state
        )
        y_new, _, algo_state, step_state = step.update(
            y, s, objective, bound, state.algo_state, step_state
        )

        # Get auxiliary output from function evaluation
        _, aux = fn(y_new, args)

        new_state = NewtonKrylovState(
            algo_state=algo_state,
            step_state=step_state,
            initial_gnorm=state.initial_gnorm,
        )
        return y_new, new_state, aux

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NewtonKrylovState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Converged when ||∇f|| <= atol + rtol * max(||∇f(x_0)||, 1).

        Hitting ``max_steps`` first is reported as
        ``optx.RESULTS.max_steps_reached``.
        """
        grad_ref = jnp.maximum(state.initial_gnorm, 1.0)
        converged = state.algo_state.gnorm <= self.atol + self.rtol * grad_ref
        max_iters_reached = state.algo_state.iteration >= self.max_steps

        done = converged | max_iters_reached

        result = jax.lax.cond(
            converged,
            lambda: optx.RESULTS.successful,
            lambda: jax.lax.cond(
                max_iters_reached,
                lambda: optx.RESULTS.max_steps_reached,
                lambda: optx.RESULTS.successful,  # not finished yet
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: NewtonKrylovState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Return ``y`` unchanged with iteration, evaluation and Krylov statistics."""
        stats = {
            "num_steps": state.algo_state.iteration,
            "final_objective": state.algo_state.value,
            "final_grad_norm": state.algo_state.gnorm,
            "num_grad_evals": state.algo_state.ngrad,
            "krylov_iterations": state.step_state.krylov_iterations,
            "krylov_flag": state.step_state.krylov_flag,
        }

        return y, aux, stats
