"""Newton-Krylov-JAX: inexact Newton-Krylov optimization in pure JAX.

This package provides a matrix-free inexact Newton step for unconstrained
minimization. The Newton system is solved approximately with a Krylov
method (conjugate gradients or conjugate residuals) accessing the Hessian
only through Hessian-vector products, optionally preconditioned by a
limited-memory secant approximation that accumulates curvature across
iterations. The step can be driven by its own loop (``run``) or through
the Optimistix framework (``NewtonKrylov``).
"""

from newton_krylov_jax.algorithm import AlgorithmResult, StatusTest, run
from newton_krylov_jax.config import (
    ConfigurationError,
    KrylovType,
    SecantType,
    StepConfig,
)
from newton_krylov_jax.krylov import (
    AbstractKrylov,
    ConjugateGradients,
    ConjugateResiduals,
    KrylovResult,
    krylov_factory,
)
from newton_krylov_jax.objective import BoundConstraint, Objective
from newton_krylov_jax.operators import (
    AbstractLinearOperator,
    HessianOperator,
    PreconditionerOperator,
)
from newton_krylov_jax.secant import (
    AbstractSecant,
    BarzilaiBorwein,
    LimitedMemoryBFGS,
    secant_factory,
)
from newton_krylov_jax.solver import NewtonKrylov, NewtonKrylovState
from newton_krylov_jax.step import AlgorithmState, NewtonKrylovStep, StepState
from newton_krylov_jax.types import (
    GradFn,
    HVPFn,
    KrylovFlag,
    ObjectiveFn,
    PrecondFn,
)

__all__ = [
    # Step
    "NewtonKrylovStep",
    "StepState",
    "AlgorithmState",
    # Drivers
    "run",
    "StatusTest",
    "AlgorithmResult",
    "NewtonKrylov",
    "NewtonKrylovState",
    # Configuration
    "StepConfig",
    "KrylovType",
    "SecantType",
    "ConfigurationError",
    # Objective
    "Objective",
    "BoundConstraint",
    # Types
    "ObjectiveFn",
    "GradFn",
    "HVPFn",
    "PrecondFn",
    "KrylovFlag",
    # Operators
    "AbstractLinearOperator",
    "HessianOperator",
    "PreconditionerOperator",
    # Krylov solvers
    "AbstractKrylov",
    "ConjugateGradients",
    "ConjugateResiduals",
    "KrylovResult",
    "krylov_factory",
    # Secant approximations
    "AbstractSecant",
    "LimitedMemoryBFGS",
    "BarzilaiBorwein",
    "secant_factory",
]
