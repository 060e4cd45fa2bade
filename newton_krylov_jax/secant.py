"""Secant (quasi-Newton) approximations used as preconditioners.

A secant approximation is a linear operator with memory: ``apply`` computes
B v with B approximating the Hessian, ``apply_inverse`` computes H v with
H approximating its inverse. After each accepted step the optimizer pushes
the new curvature pair through ``update_storage``, which returns the
updated approximation.

A pair (s, y) with s = x_{k+1} - x_k and y = g_{k+1} - g_k is stored only if
it carries positive curvature,

    s^T y > eps * ||s||^2,

and only once per iteration index. Storage is a circular buffer: when it is
full the oldest pair is overwritten.

The L-BFGS operator applies B through the compact representation
(Byrd, Nocedal, Schnabel 1994):

    B = delta * I - [delta*S, Y] @ N^{-1} @ [delta*S^T; Y^T]

and H through the two-loop recursion (Nocedal & Wright, Algorithm 7.4),
with the initial scaling H_0 = (s^T y / y^T y) I of the newest pair and
delta = 1 / H_0.
"""

import abc
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from newton_krylov_jax.config import ConfigurationError, SecantType, StepConfig
from newton_krylov_jax.operators import AbstractLinearOperator


def _curvature_ok(
    s: Float[Array, " n"], y: Float[Array, " n"], snorm: Float[Array, ""]
) -> Bool[Array, ""]:
    eps = jnp.finfo(s.dtype).eps
    sy = jnp.dot(s, y)
    finite = jnp.isfinite(sy) & jnp.all(jnp.isfinite(s)) & jnp.all(jnp.isfinite(y))
    return finite & (sy > eps * snorm * snorm)


class AbstractSecant(AbstractLinearOperator):
    """Interface of a secant approximation with curvature memory."""

    @abc.abstractmethod
    def update_storage(
        self,
        x: Float[Array, " n"],
        grad: Float[Array, " n"],
        gp: Float[Array, " n"],
        s: Float[Array, " n"],
        snorm: Float[Array, ""],
        iteration: Any,
    ) -> "AbstractSecant":
        """Record the curvature pair of an accepted step.

        Args:
            x: New iterate x_{k+1}.
            grad: Gradient at the new iterate.
            gp: Gradient at the previous iterate.
            s: Step x_{k+1} - x_k.
            snorm: Norm of the step.
            iteration: Index of the update.

        Returns:
            The updated secant approximation.
        """


class LimitedMemoryBFGS(AbstractSecant):
    """L-BFGS history buffer for matrix-free (inverse) Hessian approximation.

    Attributes:
        s_history: Stored step vectors s_i = x_{i+1} - x_i.
        y_history: Stored gradient differences y_i = g_{i+1} - g_i.
        h0: Initial inverse Hessian scaling (H_0 = h0 * I).
        count: Number of valid pairs stored (0 to memory size).
        next_idx: Next write position in the circular buffer.
        last_iteration: Iteration index of the last accepted update.
    """

    s_history: Float[Array, "memory n"]
    y_history: Float[Array, "memory n"]
    h0: Float[Array, ""]
    count: Int[Array, ""]
    next_idx: Int[Array, ""]
    last_iteration: Int[Array, ""]

    @classmethod
    def empty(cls, n: int, memory: int) -> "LimitedMemoryBFGS":
        """Initialize an empty L-BFGS history buffer.

        Args:
            n: Dimension of the parameter space.
            memory: Maximum number of (s, y) pairs to store (typically 5-20).

        Returns:
            An L-BFGS approximation with no stored pairs and h0=1.
        """
        return cls(
            s_history=jnp.zeros((memory, n)),
            y_history=jnp.zeros((memory, n)),
            h0=jnp.array(1.0),
            count=jnp.array(0),
            next_idx=jnp.array(0),
            last_iteration=jnp.array(-1),
        )

    def _chronological(self):
        """Return S, Y in oldest-to-newest order with invalid rows zeroed."""
        k = self.s_history.shape[0]
        start = (self.next_idx - self.count + k) % k
        indices = (start + jnp.arange(k)) % k
        valid = jnp.arange(k) < self.count
        S = self.s_history[indices] * valid[:, None]
        Y = self.y_history[indices] * valid[:, None]
        return S, Y, valid

    def apply(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return lbfgs_hvp(self, v)

    def apply_inverse(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return lbfgs_inverse_hvp(self, v)

    def update_storage(self, x, grad, gp, s, snorm, iteration) -> "LimitedMemoryBFGS":
        return lbfgs_append(
            self, s, grad - gp, jnp.asarray(snorm, dtype=s.dtype), jnp.asarray(iteration)
        )


@jaxtyped(typechecker=beartype)
def lbfgs_hvp(
    history: LimitedMemoryBFGS,
    v: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute B @ v using the L-BFGS compact representation.

    Uses the compact form (Nocedal & Wright, Theorem 7.4):

        B = delta * I - [delta*S, Y] @ N^{-1} @ [delta*S^T; Y^T]

    where:
        N = [[delta * S^T S, L], [L^T, -D]]   (2k x 2k)
        L_{ij} = s_i^T y_j for i > j           (strictly lower triangular)
        D = diag(s_i^T y_i)                    (diagonal)

    When no pairs are stored (count=0), this reduces to B = delta * I.

    Args:
        history: L-BFGS history buffer.
        v: Vector to multiply by the Hessian approximation.

    Returns:
        B @ v, the Hessian-vector product.
    """
    k = history.s_history.shape[0]
    delta = 1.0 / history.h0
    S, Y, valid = history._chronological()

    SY = S @ Y.T  # (k, k): SY[i,j] = s_i^T y_j
    SS = S @ S.T  # (k, k): SS[i,j] = s_i^T s_j

    L = jnp.tril(SY, k=-1)
    D_diag = jnp.diag(SY)

    # Invalid entries get a unit diagonal so that N stays non-singular
    invalid_diag = jnp.where(valid, 0.0, 1.0)

    top = jnp.concatenate([delta * SS + jnp.diag(invalid_diag), L], axis=1)
    bottom = jnp.concatenate([L.T, -jnp.diag(D_diag) + jnp.diag(invalid_diag)], axis=1)
    N = jnp.concatenate([top, bottom], axis=0)

    p = jnp.concatenate([delta * (S @ v), Y @ v])
    q = jnp.linalg.solve(N, p)

    result = delta * v - delta * (S.T @ q[:k]) - Y.T @ q[k:]

    # Guard against a singular N: fall back to the initial scaling
    return jnp.where(jnp.all(jnp.isfinite(result)), result, delta * v)


@jaxtyped(typechecker=beartype)
def lbfgs_inverse_hvp(
    history: LimitedMemoryBFGS,
    v: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute H @ v with the L-BFGS two-loop recursion.

    Complexity: O(kn) where k is the number of stored pairs. Invalid
    buffer entries contribute nothing because their rho is zero.

    Args:
        history: L-BFGS history buffer.
        v: Vector to multiply by the inverse Hessian approximation.

    Returns:
        H @ v.
    """
    S, Y, valid = history._chronological()
    sy = jnp.sum(S * Y, axis=1)
    rho = jnp.where(valid, 1.0 / jnp.where(valid, sy, 1.0), 0.0)

    def newest_to_oldest(q, pair):
        s, y, r = pair
        alpha = r * jnp.dot(s, q)
        return q - alpha * y, alpha

    q, alphas = jax.lax.scan(newest_to_oldest, v, (S, Y, rho), reverse=True)

    def oldest_to_newest(r_vec, pair):
        s, y, r, alpha = pair
        beta = r * jnp.dot(y, r_vec)
        return r_vec + (alpha - beta) * s, None

    result, _ = jax.lax.scan(oldest_to_newest, history.h0 * q, (S, Y, rho, alphas))
    return result


@jaxtyped(typechecker=beartype)
def lbfgs_append(
    history: LimitedMemoryBFGS,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    snorm: Float[Array, ""],
    iteration: Int[Array, ""],
) -> LimitedMemoryBFGS:
    """Append a new (s, y) pair to the L-BFGS history.

    The pair is skipped if the curvature condition fails or if this
    iteration index has already been recorded. After appending, the
    initial scaling is reset to h0 = s^T y / (y^T y).

    Args:
        history: Current L-BFGS history.
        s: Step vector s = x_{k+1} - x_k.
        y: Gradient difference y = g_{k+1} - g_k.
        snorm: Norm of the step.
        iteration: Iteration index of the update.

    Returns:
        Updated L-BFGS history with the new pair appended.
    """
    should_append = _curvature_ok(s, y, snorm) & (iteration != history.last_iteration)

    def do_append():
        k = history.s_history.shape[0]
        idx = history.next_idx
        return LimitedMemoryBFGS(
            s_history=history.s_history.at[idx].set(s),
            y_history=history.y_history.at[idx].set(y),
            h0=(jnp.dot(s, y) / jnp.dot(y, y)).astype(history.h0.dtype),
            count=jnp.minimum(history.count + 1, k),
            next_idx=(idx + 1) % k,
            last_iteration=jnp.asarray(iteration, dtype=history.last_iteration.dtype),
        )

    def skip():
        return history

    return jax.lax.cond(should_append, do_append, skip)


class BarzilaiBorwein(AbstractSecant):
    """Scalar secant model built from the newest curvature pair.

    Type 1 uses H = (s^T y / y^T y) I, type 2 uses H = (s^T s / s^T y) I.
    Without a stored pair both B and H are the identity.
    """

    s: Float[Array, " n"]
    y: Float[Array, " n"]
    has_pair: Bool[Array, ""]
    last_iteration: Int[Array, ""]
    bb_type: int = eqx.field(static=True, default=1)

    @classmethod
    def empty(cls, n: int, bb_type: int = 1) -> "BarzilaiBorwein":
        return cls(
            s=jnp.zeros(n),
            y=jnp.zeros(n),
            has_pair=jnp.array(False),
            last_iteration=jnp.array(-1),
            bb_type=bb_type,
        )

    def _inverse_scale(self) -> Float[Array, ""]:
        sy = jnp.dot(self.s, self.y)
        if self.bb_type == 1:
            num, den = sy, jnp.dot(self.y, self.y)
        else:
            num, den = jnp.dot(self.s, self.s), sy
        return jnp.where(self.has_pair, num / jnp.where(self.has_pair, den, 1.0), 1.0)

    def apply(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return v / self._inverse_scale()

    def apply_inverse(self, v: Float[Array, " n"], tol: float) -> Float[Array, " n"]:
        return self._inverse_scale() * v

    def update_storage(self, x, grad, gp, s, snorm, iteration) -> "BarzilaiBorwein":
        y = grad - gp
        should_store = _curvature_ok(s, y, snorm) & (iteration != self.last_iteration)
        return BarzilaiBorwein(
            s=jnp.where(should_store, s, self.s),
            y=jnp.where(should_store, y, self.y),
            has_pair=self.has_pair | should_store,
            last_iteration=jnp.where(
                should_store, iteration, self.last_iteration
            ).astype(self.last_iteration.dtype),
            bb_type=self.bb_type,
        )


def secant_factory(config: StepConfig, n: int) -> AbstractSecant:
    """Build the secant approximation selected by ``config.secant_type``."""
    if config.secant_type is SecantType.LIMITED_MEMORY_BFGS:
        return LimitedMemoryBFGS.empty(n, config.secant_storage)
    if config.secant_type is SecantType.BARZILAI_BORWEIN:
        return BarzilaiBorwein.empty(n, config.barzilai_borwein_type)
    raise ConfigurationError(f"No built-in secant approximation for {config.secant_type.value!r}")
