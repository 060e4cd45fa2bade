"""Inexact Newton-Krylov step.

At each outer iteration the Newton system

    ∇²f(x_k) s = ∇f(x_k)

is solved approximately with a Krylov method, preconditioned either by the
objective's own preconditioner or by a secant approximation that
accumulates curvature across iterations. The solution is negated to give
the descent direction and the iterate is advanced with a unit step:

    x_{k+1} = x_k + s_k,   s_k ≈ -∇²f(x_k)^{-1} ∇f(x_k)

If the Krylov method detects non-positive curvature within its first
iteration, the direction falls back to steepest descent, s_k = -∇f(x_k)*.

The step follows the ``initialize / compute / update`` protocol of an
outer optimization loop. All three methods are pure: they return the
updated vectors and states instead of mutating them, so they can be
wrapped in ``jax.jit``.
"""

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float, Int

from newton_krylov_jax.config import (
    ConfigurationError,
    KrylovType,
    SecantType,
    StepConfig,
)
from newton_krylov_jax.krylov import AbstractKrylov, krylov_factory
from newton_krylov_jax.objective import BoundConstraint, Objective
from newton_krylov_jax.operators import HessianOperator, PreconditionerOperator
from newton_krylov_jax.secant import AbstractSecant, secant_factory
from newton_krylov_jax.types import KrylovFlag

logger = logging.getLogger(__name__)

_LEGEND = (
    "  iter     - Number of iterates (steps taken) \n"
    "  value    - Objective function value \n"
    "  gnorm    - Norm of the gradient\n"
    "  snorm    - Norm of the step (update to optimization vector)\n"
    "  #fval    - Cumulative number of times the objective function was evaluated\n"
    "  #grad    - Number of times the gradient was computed\n"
    "  iterCG   - Number of Krylov iterations used to compute search direction\n"
    "  flagCG   - Krylov solver flag\n"
)


class AlgorithmState(eqx.Module):
    """State of the outer optimization loop.

    Attributes:
        iteration: Number of steps taken.
        iterate: Current iterate x_k.
        value: Objective value f(x_k).
        gnorm: Norm of the gradient at x_k.
        snorm: Norm of the last step.
        nfval: Cumulative number of objective evaluations.
        ngrad: Cumulative number of gradient evaluations.
    """

    iteration: Int[Array, ""]
    iterate: Float[Array, " n"]
    value: Float[Array, ""]
    gnorm: Float[Array, ""]
    snorm: Float[Array, ""]
    nfval: Int[Array, ""]
    ngrad: Int[Array, ""]

    @classmethod
    def create(cls, x: Float[Array, " n"]) -> "AlgorithmState":
        """Fresh state for a run starting at x."""
        return cls(
            iteration=jnp.array(0),
            iterate=x,
            value=jnp.array(0.0, dtype=x.dtype),
            gnorm=jnp.array(jnp.inf, dtype=x.dtype),
            snorm=jnp.array(jnp.inf, dtype=x.dtype),
            nfval=jnp.array(0),
            ngrad=jnp.array(0),
        )


class StepState(eqx.Module):
    """State owned by the step across iterations.

    Attributes:
        gradient: Gradient at the current iterate.
        descent: Most recent descent direction.
        previous_gradient: Gradient before the last update; only allocated
            when the secant preconditioner is enabled.
        secant: Secant approximation with its curvature memory; only set
            when the secant preconditioner is enabled.
        krylov_iterations: Iterations used by the last Krylov solve.
        krylov_flag: Termination flag of the last Krylov solve.
    """

    gradient: Float[Array, " n"]
    descent: Float[Array, " n"]
    previous_gradient: Optional[Float[Array, " n"]]
    secant: Optional[AbstractSecant]
    krylov_iterations: Int[Array, ""]
    krylov_flag: Int[Array, ""]


class NewtonKrylovStep(eqx.Module):
    """Inexact Newton step with a Krylov inner solver.

    Attributes:
        config: Immutable step settings.
        krylov: Krylov solver for the Newton system.
        secant: User-supplied secant approximation, or None to build the
            configured one at initialization.

    Example:
        >>> import jax.numpy as jnp
        >>> from newton_krylov_jax import NewtonKrylovStep, Objective, run
        >>>
        >>> objective = Objective(lambda x, args: jnp.sum((x - 1.0) ** 2))
        >>> step = NewtonKrylovStep.from_parameters(
        ...     {"General": {"Secant": {"Use as Preconditioner": True}}}
        ... )
        >>> result = run(step, objective, jnp.zeros(3))
    """

    config: StepConfig = eqx.field(static=True)
    krylov: AbstractKrylov
    secant: Optional[AbstractSecant]

    def __init__(
        self,
        config: StepConfig = StepConfig(),
        krylov: Optional[AbstractKrylov] = None,
        secant: Optional[AbstractSecant] = None,
    ):
        if krylov is None:
            krylov = krylov_factory(config)
        else:
            config = dataclasses.replace(config, krylov_type=KrylovType.USER_DEFINED)
        if secant is not None:
            config = dataclasses.replace(config, secant_type=SecantType.USER_DEFINED)
        elif config.use_secant_preconditioner and config.secant_type is SecantType.USER_DEFINED:
            raise ConfigurationError("A user-defined secant type requires a secant instance")
        self.config = config
        self.krylov = krylov
        self.secant = secant
        logger.debug(
            "Built Newton-Krylov step with %s (secant preconditioning: %s)",
            config.krylov_type.value,
            config.secant_type.value if config.use_secant_preconditioner else "off",
        )

    @classmethod
    def from_parameters(
        cls,
        parlist: Mapping[str, Any],
        krylov: Optional[AbstractKrylov] = None,
        secant: Optional[AbstractSecant] = None,
    ) -> "NewtonKrylovStep":
        """Build a step from a nested parameter mapping.

        Raises:
            ConfigurationError: If the parameters are invalid.
        """
        return cls(StepConfig.from_parameters(parlist), krylov=krylov, secant=secant)

    def initialize(
        self,
        x: Float[Array, " n"],
        s: Float[Array, " n"],
        g: Float[Array, " n"],
        objective: Objective,
        bound: BoundConstraint,
        algo_state: AlgorithmState,
    ) -> tuple[Float[Array, " n"], Objective, AlgorithmState, StepState]:
        """Evaluate the starting point and allocate the step storage.

        Args:
            x: Initial iterate.
            s: Template for the step vector.
            g: Template for the gradient vector.
            objective: Objective to minimize.
            bound: Bound constraint; the initial iterate is projected onto it
                when it is activated.
            algo_state: Freshly created algorithm state.

        Returns:
            Tuple of (x, objective, algo_state, step_state).
        """
        tol = self.config.evaluation_tolerance
        if bound.is_activated():
            x = bound.project(x)

        objective = objective.update(x, True, algo_state.iteration)
        value = objective.value(x, tol)
        gradient = objective.gradient(x, tol)

        previous_gradient = None
        secant = None
        if self.config.use_secant_preconditioner:
            previous_gradient = jnp.zeros_like(g)
            secant = self.secant
            if secant is None:
                secant = secant_factory(self.config, g.shape[0])

        algo_state = AlgorithmState(
            iteration=algo_state.iteration,
            iterate=x,
            value=value,
            gnorm=jnp.linalg.norm(gradient),
            snorm=algo_state.snorm,
            nfval=algo_state.nfval + 1,
            ngrad=algo_state.ngrad + 1,
        )
        step_state = StepState(
            gradient=gradient,
            descent=jnp.zeros_like(s),
            previous_gradient=previous_gradient,
            secant=secant,
            krylov_iterations=jnp.array(0),
            krylov_flag=jnp.array(KrylovFlag.CONVERGED),
        )
        return x, objective, algo_state, step_state

    def compute(
        self,
        s: Float[Array, " n"],
        x: Float[Array, " n"],
        objective: Objective,
        bound: BoundConstraint,
        algo_state: AlgorithmState,
        step_state: StepState,
    ) -> tuple[Float[Array, " n"], StepState]:
        """Compute the Newton-Krylov descent direction.

        Solves ∇²f(x) s = ∇f(x) approximately and returns -s. When the
        Krylov method reports negative curvature after at most one
        iteration, the direction is the negated dual gradient instead.

        Args:
            s: Previous step (only its shape is used).
            x: Current iterate.
            objective: Objective to minimize.
            bound: Bound constraint (unused by the unconstrained step).
            algo_state: Current algorithm state.
            step_state: Current step state.

        Returns:
            Tuple of (direction, step_state) where step_state records the
            Krylov iteration count and termination flag.
        """
        tol = self.config.evaluation_tolerance
        hessian = HessianOperator(objective, algo_state.iterate)
        if self.config.use_secant_preconditioner:
            precond = step_state.secant
        else:
            precond = PreconditionerOperator(objective, algo_state.iterate)

        gradient = step_state.gradient
        result = self.krylov.run(hessian, gradient, precond, tol)

        degenerate = (result.flag == KrylovFlag.NEGATIVE_CURVATURE) & (
            result.iterations <= 1
        )
        direction = jnp.where(degenerate, objective.dual(gradient), result.solution)
        direction = -direction.astype(s.dtype)

        step_state = StepState(
            gradient=step_state.gradient,
            descent=step_state.descent,
            previous_gradient=step_state.previous_gradient,
            secant=step_state.secant,
            krylov_iterations=result.iterations.astype(step_state.krylov_iterations.dtype),
            krylov_flag=result.flag.astype(step_state.krylov_flag.dtype),
        )
        return direction, step_state

    def update(
        self,
        x: Float[Array, " n"],
        s: Float[Array, " n"],
        objective: Objective,
        bound: BoundConstraint,
        algo_state: AlgorithmState,
        step_state: StepState,
    ) -> tuple[Float[Array, " n"], Objective, AlgorithmState, StepState]:
        """Take the unit step x + s and refresh all derived information.

        In order: advance the iteration counter and the iterate, record the
        step and its norm, save the old gradient (secant preconditioning
        only), notify the objective and evaluate value and gradient at the
        new iterate, push the curvature pair into the secant, and publish
        the new iterate and gradient norm.

        Returns:
            Tuple of (x, objective, algo_state, step_state).
        """
        tol = self.config.evaluation_tolerance

        iteration = algo_state.iteration + 1
        x = x + s
        snorm = jnp.linalg.norm(s)

        previous_gradient = step_state.previous_gradient
        if self.config.use_secant_preconditioner:
            previous_gradient = step_state.gradient

        objective = objective.update(x, True, iteration)
        value = objective.value(x, tol)
        gradient = objective.gradient(x, tol)
        ngrad = algo_state.ngrad + 1

        secant = step_state.secant
        if self.config.use_secant_preconditioner:
            secant = secant.update_storage(
                x, gradient, previous_gradient, s, snorm, iteration + 1
            )

        algo_state = AlgorithmState(
            iteration=iteration,
            iterate=x,
            value=value,
            gnorm=jnp.linalg.norm(gradient),
            snorm=snorm,
            nfval=algo_state.nfval,
            ngrad=ngrad,
        )
        step_state = StepState(
            gradient=gradient,
            descent=s,
            previous_gradient=previous_gradient,
            secant=secant,
            krylov_iterations=step_state.krylov_iterations,
            krylov_flag=step_state.krylov_flag,
        )
        return x, objective, algo_state, step_state

    def print_name(self) -> str:
        name = f"\nNewton-Krylov using {self.config.krylov_type.value}"
        if self.config.use_secant_preconditioner:
            name += f" with {self.config.secant_type.value} preconditioning"
        return name + "\n"

    def print_header(self) -> str:
        """Column titles, preceded by a legend when verbosity is positive."""
        header = ""
        if self.config.verbosity > 0:
            rule = "-" * 109 + "\n"
            header += rule
            header += "Newton-Krylov status output definitions\n\n"
            header += _LEGEND
            header += rule
        header += (
            f"  {'iter':<6}{'value':<15}{'gnorm':<15}{'snorm':<15}"
            f"{'#fval':<10}{'#grad':<10}{'iterCG':<10}{'flagCG':<10}\n"
        )
        return header

    def print(
        self,
        algo_state: AlgorithmState,
        step_state: StepState,
        print_header: bool = False,
    ) -> str:
        """Format one line of progress output.

        The first iteration is preceded by the step name and only reports
        the value and gradient norm.
        """
        iteration = int(algo_state.iteration)
        out = ""
        if iteration == 0:
            out += self.print_name()
        if print_header:
            out += self.print_header()
        out += f"  {iteration:<6}{float(algo_state.value):<15.6e}{float(algo_state.gnorm):<15.6e}"
        if iteration > 0:
            out += (
                f"{float(algo_state.snorm):<15.6e}"
                f"{int(algo_state.nfval):<10}{int(algo_state.ngrad):<10}"
                f"{int(step_state.krylov_iterations):<10}{int(step_state.krylov_flag):<10}"
            )
        return out + "\n"

