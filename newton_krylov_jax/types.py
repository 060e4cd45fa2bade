"""Type definitions for Newton-Krylov-JAX.

This module contains type aliases and custom types used throughout the package.
All types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type: takes parameters and args, returns a scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Gradient function type: takes parameters and args, returns gradient of objective
# grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Hessian-vector product function type
# hvp_fn(x, v, args) -> H_f(x) @ v
HVPFn = Callable[[Vector, Vector, Any], Vector]

# Preconditioner function type, approximating the inverse Hessian action
# precond_fn(x, v, args) -> M(x)^{-1} @ v
PrecondFn = Callable[[Vector, Vector, Any], Vector]

# Riesz map from the primal space to the dual space
# dual_fn(v) -> v^*
DualFn = Callable[[Vector], Vector]

# Objective update hook: returns refreshed args after the iterate changed
# update_fn(x, args, flag, iteration) -> args
UpdateFn = Callable[[Vector, Any, bool, Any], Any]


# Termination flags reported by the Krylov solvers
class KrylovFlag:
    """Constants for Krylov solver termination status."""

    CONVERGED = 0
    ITERATION_LIMIT = 1
    NEGATIVE_CURVATURE = 2
