"""Krylov solvers for the inexact Newton system.

The solvers approximately solve ``A x = b`` for a symmetric operator A,
accessed only through ``operator.apply``, and a preconditioner accessed
through ``preconditioner.apply_inverse``. They start from x = 0 and stop
when the residual norm drops below

    min(absolute_tolerance, relative_tolerance * ||b||),

when the iteration limit is reached, or when non-positive curvature is
detected. In the last case the iterate accepted before the offending
direction is returned and the iteration that detected the curvature is
included in the iteration count, so negative curvature on the very first
product is reported as ``(iterations=1, flag=NEGATIVE_CURVATURE)`` with a
zero solution.

Both solvers run inside ``jax.lax.while_loop`` and are safe to JIT.
"""

import abc
from typing import NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Float, Int

from newton_krylov_jax.config import ConfigurationError, KrylovType, StepConfig
from newton_krylov_jax.operators import AbstractLinearOperator
from newton_krylov_jax.types import KrylovFlag


class KrylovResult(NamedTuple):
    """Result from a Krylov solve."""

    solution: Float[Array, " n"]
    iterations: Int[Array, ""]
    flag: Int[Array, ""]


class AbstractKrylov(eqx.Module):
    """Interface of a Krylov solver."""

    absolute_tolerance: float = 1e-4
    relative_tolerance: float = 1e-2
    max_iter: int = eqx.field(static=True, default=100)

    @abc.abstractmethod
    def run(
        self,
        operator: AbstractLinearOperator,
        rhs: Float[Array, " n"],
        preconditioner: AbstractLinearOperator,
        tol: float,
    ) -> KrylovResult:
        """Approximately solve ``operator x = rhs``.

        Args:
            operator: Symmetric linear operator A.
            rhs: Right-hand side b.
            preconditioner: Operator whose ``apply_inverse`` approximates A^{-1}.
            tol: Accuracy request forwarded to the operator applications.

        Returns:
            KrylovResult with the solution, iterations used and termination flag.
        """

    def _stopping_tolerance(self, rhs: Float[Array, " n"]) -> Float[Array, ""]:
        return jnp.minimum(
            self.absolute_tolerance, self.relative_tolerance * jnp.linalg.norm(rhs)
        )


class _CGState(NamedTuple):
    """Internal state for the conjugate gradient solver."""

    x: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    rho: Float[Array, ""]
    iteration: Int[Array, ""]
    flag: Int[Array, ""]
    done: Bool[Array, ""]


class ConjugateGradients(AbstractKrylov):
    """Preconditioned conjugate gradients with negative curvature detection."""

    def run(
        self,
        operator: AbstractLinearOperator,
        rhs: Float[Array, " n"],
        preconditioner: AbstractLinearOperator,
        tol: float,
    ) -> KrylovResult:
        rtol = self._stopping_tolerance(rhs)
        v = preconditioner.apply_inverse(rhs, tol)

        init = _CGState(
            x=jnp.zeros_like(rhs),
            r=rhs,
            p=v,
            rho=jnp.vdot(rhs, v),
            iteration=jnp.array(0),
            flag=jnp.array(KrylovFlag.CONVERGED),
            done=jnp.linalg.norm(rhs) <= rtol,
        )

        def cond_fn(state: _CGState) -> Bool[Array, ""]:
            return ~state.done & (state.iteration < self.max_iter)

        def body_fn(state: _CGState) -> _CGState:
            Ap = operator.apply(state.p, tol)
            kappa = jnp.vdot(state.p, Ap)
            negative_curvature = kappa <= 0.0

            alpha = state.rho / jnp.where(negative_curvature, 1.0, kappa)
            x_new = state.x + alpha * state.p
            r_new = state.r - alpha * Ap
            converged = jnp.linalg.norm(r_new) < rtol

            v_new = preconditioner.apply_inverse(r_new, tol)
            rho_new = jnp.vdot(r_new, v_new)
            beta = rho_new / jnp.where(state.rho == 0.0, 1.0, state.rho)
            p_new = v_new + beta * state.p

            # On negative curvature keep the last accepted iterate
            return _CGState(
                x=jnp.where(negative_curvature, state.x, x_new),
                r=jnp.where(negative_curvature, state.r, r_new),
                p=jnp.where(negative_curvature, state.p, p_new),
                rho=jnp.where(negative_curvature, state.rho, rho_new),
                iteration=state.iteration + 1,
                flag=jnp.where(
                    negative_curvature, KrylovFlag.NEGATIVE_CURVATURE, state.flag
                ),
                done=negative_curvature | converged,
            )

        final = jax.lax.while_loop(cond_fn, body_fn, init)
        flag = jnp.where(final.done, final.flag, KrylovFlag.ITERATION_LIMIT)
        return KrylovResult(solution=final.x, iterations=final.iteration, flag=flag)


class _CRState(NamedTuple):
    """Internal state for the conjugate residual solver."""

    x: Float[Array, " n"]
    r: Float[Array, " n"]
    z: Float[Array, " n"]
    p: Float[Array, " n"]
    Ap: Float[Array, " n"]
    gamma: Float[Array, ""]
    iteration: Int[Array, ""]
    flag: Int[Array, ""]
    done: Bool[Array, ""]


class ConjugateResiduals(AbstractKrylov):
    """Preconditioned conjugate residuals.

    Minimizes the preconditioned residual norm over the Krylov subspace.
    Non-positive curvature z^T A z <= 0 stops the iteration.
    """

    def run(
        self,
        operator: AbstractLinearOperator,
        rhs: Float[Array, " n"],
        preconditioner: AbstractLinearOperator,
        tol: float,
    ) -> KrylovResult:
        rtol = self._stopping_tolerance(rhs)
        z = preconditioner.apply_inverse(rhs, tol)
        Az = operator.apply(z, tol)

        init = _CRState(
            x=jnp.zeros_like(rhs),
            r=rhs,
            z=z,
            p=z,
            Ap=Az,
            gamma=jnp.vdot(z, Az),
            iteration=jnp.array(0),
            flag=jnp.array(KrylovFlag.CONVERGED),
            done=jnp.linalg.norm(rhs) <= rtol,
        )

        def cond_fn(state: _CRState) -> Bool[Array, ""]:
            return ~state.done & (state.iteration < self.max_iter)

        def body_fn(state: _CRState) -> _CRState:
            negative_curvature = state.gamma <= 0.0

            q = preconditioner.apply_inverse(state.Ap, tol)
            Apq = jnp.vdot(state.Ap, q)
            alpha = state.gamma / jnp.where(Apq == 0.0, 1.0, Apq)
            x_new = state.x + alpha * state.p
            r_new = state.r - alpha * state.Ap
            z_new = state.z - alpha * q
            converged = jnp.linalg.norm(r_new) < rtol

            Az_new = operator.apply(z_new, tol)
            gamma_new = jnp.vdot(z_new, Az_new)
            beta = gamma_new / jnp.where(negative_curvature, 1.0, state.gamma)
            p_new = z_new + beta * state.p
            Ap_new = Az_new + beta * state.Ap

            keep = negative_curvature
            return _CRState(
                x=jnp.where(keep, state.x, x_new),
                r=jnp.where(keep, state.r, r_new),
                z=jnp.where(keep, state.z, z_new),
                p=jnp.where(keep, state.p, p_new),
                Ap=jnp.where(keep, state.Ap, Ap_new),
                gamma=jnp.where(keep, state.gamma, gamma_new),
                iteration=state.iteration + 1,
                flag=jnp.where(keep, KrylovFlag.NEGATIVE_CURVATURE, state.flag),
                done=negative_curvature | converged,
            )

        final = jax.lax.while_loop(cond_fn, body_fn, init)
        flag = jnp.where(final.done, final.flag, KrylovFlag.ITERATION_LIMIT)
        return KrylovResult(solution=final.x, iterations=final.iteration, flag=flag)


def krylov_factory(config: StepConfig) -> AbstractKrylov:
    """Build the Krylov solver selected by ``config.krylov_type``."""
    options = dict(
        absolute_tolerance=config.krylov_absolute_tolerance,
        relative_tolerance=config.krylov_relative_tolerance,
        max_iter=config.krylov_iteration_limit,
    )
    if config.krylov_type is KrylovType.CONJUGATE_GRADIENTS:
        return ConjugateGradients(**options)
    if config.krylov_type is KrylovType.CONJUGATE_RESIDUALS:
        return ConjugateResiduals(**options)
    raise ConfigurationError(f"No built-in Krylov solver for {config.krylov_type.value!r}")
