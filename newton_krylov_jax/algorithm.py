"""Outer optimization loop for a Newton-Krylov step.

``run`` drives a ``NewtonKrylovStep`` through its
``initialize / compute / update`` protocol until a ``StatusTest`` says to
stop, collecting the progress lines produced by the step.
"""

import logging
from typing import IO, NamedTuple, Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float

from newton_krylov_jax.objective import BoundConstraint, Objective
from newton_krylov_jax.step import AlgorithmState, NewtonKrylovStep, StepState

logger = logging.getLogger(__name__)


class StatusTest(eqx.Module):
    """Stopping rule on the gradient norm, step norm and iteration count."""

    gtol: float = 1e-6
    stol: float = 1e-12
    max_iterations: int = eqx.field(static=True, default=100)

    def check(self, algo_state: AlgorithmState) -> bool:
        """Return True while the optimization should continue."""
        return (
            float(algo_state.gnorm) > self.gtol
            and float(algo_state.snorm) > self.stol
            and int(algo_state.iteration) < self.max_iterations
        )


class AlgorithmResult(NamedTuple):
    """Result of an optimization run."""

    x: Float[Array, " n"]
    objective: Objective
    algo_state: AlgorithmState
    step_state: StepState
    history: list[str]


def run(
    step: NewtonKrylovStep,
    objective: Objective,
    x0: Float[Array, " n"],
    bound: Optional[BoundConstraint] = None,
    status: Optional[StatusTest] = None,
    print_header: bool = False,
    output: Optional[IO[str]] = None,
) -> AlgorithmResult:
    """Minimize ``objective`` starting from ``x0``.

    Args:
        step: Newton-Krylov step computing the search directions.
        objective: Objective to minimize.
        x0: Initial iterate.
        bound: Optional bound constraint, only used to project ``x0``.
        status: Stopping rule (defaults to ``StatusTest()``).
        print_header: Emit the column header before the first line.
        output: Optional text stream receiving every progress line.

    Returns:
        AlgorithmResult with the final iterate, states and progress lines.
    """
    if bound is None:
        bound = BoundConstraint()
    if status is None:
        status = StatusTest()

    x = jnp.asarray(x0)
    algo_state = AlgorithmState.create(x)
    x, objective, algo_state, step_state = step.initialize(
        x, jnp.zeros_like(x), jnp.zeros_like(x), objective, bound, algo_state
    )

    history = []

    def report(line: str):
        history.append(line)
        logger.info(line.rstrip("\n"))
        if output is not None:
            output.write(line)

    report(step.print(algo_state, step_state, print_header=print_header))

    s = jnp.zeros_like(x)
    while status.check(algo_state):
        s, step_state = step.compute(s, x, objective, bound, algo_state, step_state)
        x, objective, algo_state, step_state = step.update(
            x, s, objective, bound, algo_state, step_state
        )
        report(step.print(algo_state, step_state))

    if (
        int(algo_state.iteration) >= status.max_iterations
        and float(algo_state.gnorm) > status.gtol
    ):
        logger.warning(
            "Newton-Krylov stopped after %d iterations with gradient norm %.6e",
            int(algo_state.iteration),
            float(algo_state.gnorm),
        )

    return AlgorithmResult(
        x=x,
        objective=objective,
        algo_state=algo_state,
        step_state=step_state,
        history=history,
    )
