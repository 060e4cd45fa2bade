"""Linear operators consumed by the Krylov solvers.

Operators are applied matrix-free through ``apply(v, tol)``; operators used
as preconditioners also provide ``apply_inverse(v, tol)``. The tolerance is
an accuracy request forwarded to inexact evaluators and is never
interpreted by the operators themselves.
"""

import abc

import equinox as eqx
from jaxtyping import Array, Float

from newton_krylov_jax.objective import Objective


class AbstractLinearOperator(eqx.Module):
    """Matrix-free linear operator v -> A v."""

    @abc.abstractmethod
    def apply(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        """Compute A v."""

    def apply_inverse(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        """Compute A^{-1} v (or an approximation of it)."""
        raise NotImplementedError(
            f"{type(self).__name__} does not provide an inverse application"
        )


class HessianOperator(AbstractLinearOperator):
    """Hessian of the objective at a fixed point x."""

    objective: Objective
    x: Float[Array, " n"]

    def apply(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return self.objective.hess_vec(v, self.x, tol)


class PreconditionerOperator(AbstractLinearOperator):
    """Preconditioner of the objective at a fixed point x.

    The forward application is the dual-space identity; the inverse
    application is the objective's approximate inverse Hessian.
    """

    objective: Objective
    x: Float[Array, " n"]

    def apply(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return self.objective.dual(v)

    def apply_inverse(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return self.objective.precond(v, self.x, tol)
