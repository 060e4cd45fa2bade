"""Objective and bound-constraint collaborators of the Newton-Krylov step.

The objective is accessed only through its value, gradient, Hessian-vector
product and preconditioner. Any of the derivative functions may be omitted:
gradients then come from ``jax.grad`` and Hessian-vector products from
forward-over-reverse automatic differentiation.

Every evaluator receives an accuracy request ``tol``. The functional
evaluators wrapped here are exact and ignore it; subclasses overriding the
evaluators may honor it.
"""

import dataclasses
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from newton_krylov_jax.types import (
    DualFn,
    GradFn,
    HVPFn,
    ObjectiveFn,
    PrecondFn,
    UpdateFn,
)
from newton_krylov_jax.utils import args_closure


class Objective(eqx.Module):
    """Smooth objective f(x) with its first and second order information.

    Attributes:
        fn: Objective function fn(x, args) -> f(x).
        args: Pytree of additional arguments passed to every function.
        grad_fn: Optional gradient grad_fn(x, args) -> ∇f(x).
        hvp_fn: Optional Hessian-vector product hvp_fn(x, v, args) -> ∇²f(x) v.
        precond_fn: Optional preconditioner precond_fn(x, v, args) -> M(x)^{-1} v.
        dual_fn: Optional Riesz map v -> v* (identity for the Euclidean pairing).
        update_fn: Optional hook update_fn(x, args, flag, iteration) -> args,
            called whenever the iterate changes.

    Example:
        >>> import jax.numpy as jnp
        >>> from newton_krylov_jax import Objective
        >>>
        >>> objective = Objective(lambda x, args: jnp.sum(x**2))
        >>> g = objective.gradient(jnp.array([1.0, 2.0]), 1e-8)
    """

    fn: ObjectiveFn = eqx.field(static=True)
    args: Any = None
    grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    hvp_fn: Optional[HVPFn] = eqx.field(static=True, default=None)
    precond_fn: Optional[PrecondFn] = eqx.field(static=True, default=None)
    dual_fn: Optional[DualFn] = eqx.field(static=True, default=None)
    update_fn: Optional[UpdateFn] = eqx.field(static=True, default=None)

    def value(self, x: Float[Array, " n"], tol: float) -> Float[Array, ""]:
        return self.fn(x, self.args)

    def gradient(self, x: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        """Compute the gradient using the user-supplied fn or AD."""
        if self.grad_fn is not None:
            return self.grad_fn(x, self.args)
        return jax.grad(args_closure(self.fn, self.args))(x)

    def hess_vec(
        self,
        v: Float[Array, " n"],
        x: Float[Array, " n"],
        tol: float,
    ) -> Float[Array, " n"]:
        """Compute the Hessian-vector product ∇²f(x) v.

        Without a user-supplied HVP the product is obtained by
        forward-over-reverse differentiation of the gradient.
        """
        if self.hvp_fn is not None:
            return self.hvp_fn(x, v, self.args)
        grad = lambda y: self.gradient(y, tol)
        _, hv = jax.jvp(grad, (x,), (v,))
        return hv

    def precond(
        self,
        v: Float[Array, " n"],
        x: Float[Array, " n"],
        tol: float,
    ) -> Float[Array, " n"]:
        """Apply the approximate inverse Hessian at x, or the dual map if none."""
        if self.precond_fn is not None:
            return self.precond_fn(x, v, self.args)
        return self.dual(v)

    def dual(self, v: Float[Array, " n"]) -> Float[Array, " n"]:
        if self.dual_fn is not None:
            return self.dual_fn(v)
        return v

    def update(self, x: Float[Array, " n"], flag: bool, iteration: Any) -> "Objective":
        """Notify the objective that the iterate changed.

        Returns:
            The objective with refreshed ``args`` (itself if no hook is set).
        """
        if self.update_fn is None:
            return self
        new_args = self.update_fn(x, self.args, flag, iteration)
        return dataclasses.replace(self, args=new_args)


class BoundConstraint(eqx.Module):
    """Box constraints lower <= x <= upper on the decision variables.

    Either side may be omitted. A constraint with neither side is
    deactivated and leaves iterates untouched.
    """

    lower: Optional[Float[Array, " n"]] = None
    upper: Optional[Float[Array, " n"]] = None

    def is_activated(self) -> bool:
        return self.lower is not None or self.upper is not None

    def project(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        if self.lower is not None:
            x = jnp.maximum(x, self.lower)
        if self.upper is not None:
            x = jnp.minimum(x, self.upper)
        return x
