"""Unit tests for the Krylov solvers.

These tests verify that conjugate gradients and conjugate residuals solve
symmetric positive definite systems, respect the iteration limit, and
report negative curvature with the documented iteration count.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import pytest

from newton_krylov_jax import (
    AbstractLinearOperator,
    ConjugateGradients,
    ConjugateResiduals,
    KrylovFlag,
    StepConfig,
    krylov_factory,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


class MatrixOperator(AbstractLinearOperator):
    """Dense matrix with an optional dense inverse for preconditioning."""

    matrix: jax.Array
    inverse: jax.Array

    def apply(self, v, tol):
        return self.matrix @ v

    def apply_inverse(self, v, tol):
        return self.inverse @ v


def _identity(n):
    return MatrixOperator(jnp.eye(n), jnp.eye(n))


def _spd_matrix(n, seed=0):
    key = jax.random.PRNGKey(seed)
    M = jax.random.normal(key, (n, n))
    return M @ M.T + n * jnp.eye(n)


SOLVERS = [ConjugateGradients, ConjugateResiduals]


class TestSPDSystems:
    """Both solvers converge on SPD systems."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_diagonal_system(self, solver_cls):
        A = jnp.diag(jnp.array([1.0, 2.0, 4.0, 8.0]))
        b = jnp.array([1.0, -1.0, 2.0, 0.5])
        solver = solver_cls(absolute_tolerance=1e-12, relative_tolerance=1e-12, max_iter=10)

        result = solver.run(MatrixOperator(A, jnp.eye(4)), b, _identity(4), 1e-8)

        np.testing.assert_allclose(result.solution, jnp.linalg.solve(A, b), rtol=1e-10)
        assert int(result.flag) == KrylovFlag.CONVERGED
        assert int(result.iterations) <= 5

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    @pytest.mark.parametrize("n", [5, 20])
    def test_random_spd_system(self, solver_cls, n):
        A = _spd_matrix(n)
        b = jnp.arange(1.0, n + 1.0)
        solver = solver_cls(absolute_tolerance=1e-10, relative_tolerance=1e-12, max_iter=5 * n)

        result = solver.run(MatrixOperator(A, jnp.eye(n)), b, _identity(n), 1e-8)

        np.testing.assert_allclose(A @ result.solution, b, atol=1e-8)
        assert int(result.flag) == KrylovFlag.CONVERGED

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_exact_preconditioner_converges_in_one_iteration(self, solver_cls):
        A = _spd_matrix(6, seed=3)
        b = jnp.ones(6)
        precond = MatrixOperator(A, jnp.linalg.inv(A))
        solver = solver_cls(absolute_tolerance=1e-9, relative_tolerance=1e-12, max_iter=10)

        result = solver.run(MatrixOperator(A, jnp.eye(6)), b, precond, 1e-8)

        assert int(result.iterations) == 1
        np.testing.assert_allclose(result.solution, jnp.linalg.solve(A, b), rtol=1e-8)

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_zero_rhs(self, solver_cls):
        """A zero right-hand side returns zero without iterating."""
        solver = solver_cls()
        result = solver.run(_identity(3), jnp.zeros(3), _identity(3), 1e-8)

        np.testing.assert_array_equal(result.solution, jnp.zeros(3))
        assert int(result.iterations) == 0
        assert int(result.flag) == KrylovFlag.CONVERGED


class TestTermination:
    """Iteration limit and negative curvature flags."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_iteration_limit(self, solver_cls):
        A = _spd_matrix(30, seed=1)
        b = jnp.ones(30)
        solver = solver_cls(absolute_tolerance=1e-14, relative_tolerance=1e-14, max_iter=2)

        result = solver.run(MatrixOperator(A, jnp.eye(30)), b, _identity(30), 1e-8)

        assert int(result.iterations) == 2
        assert int(result.flag) == KrylovFlag.ITERATION_LIMIT

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_negative_curvature_first_iteration(self, solver_cls):
        """Negative definite operator: flag 2 after one iteration, zero solution."""
        A = -jnp.eye(3)
        b = jnp.array([1.0, 2.0, 3.0])

        result = solver_cls().run(MatrixOperator(A, jnp.eye(3)), b, _identity(3), 1e-8)

        assert int(result.iterations) == 1
        assert int(result.flag) == KrylovFlag.NEGATIVE_CURVATURE
        np.testing.assert_array_equal(result.solution, jnp.zeros(3))

    def test_negative_curvature_later_iteration(self):
        """Indefinite operator: CG stops on the second direction and keeps the first step."""
        A = jnp.diag(jnp.array([1.0, -1.0]))
        b = jnp.array([1.0, 0.1])
        solver = ConjugateGradients(absolute_tolerance=1e-12, relative_tolerance=1e-12)

        result = solver.run(MatrixOperator(A, jnp.eye(2)), b, _identity(2), 1e-8)

        assert int(result.flag) == KrylovFlag.NEGATIVE_CURVATURE
        assert int(result.iterations) == 2
        # First CG step along b with alpha = b.b / b.Ab
        alpha = jnp.dot(b, b) / jnp.dot(b, A @ b)
        np.testing.assert_allclose(result.solution, alpha * b, rtol=1e-12)

    def test_conjugate_residuals_negative_curvature_later_iteration(self):
        """CR detects z.Az <= 0 at the start of the second iteration and keeps x_1."""
        A = jnp.diag(jnp.array([1.0, -1.0]))
        b = jnp.array([1.0, 0.1])
        solver = ConjugateResiduals(absolute_tolerance=1e-12, relative_tolerance=1e-12)

        result = solver.run(MatrixOperator(A, jnp.eye(2)), b, _identity(2), 1e-8)

        assert int(result.flag) == KrylovFlag.NEGATIVE_CURVATURE
        assert int(result.iterations) == 2
        # First CR step along b with alpha = b.Ab / (Ab).(Ab)
        Ab = A @ b
        alpha = jnp.dot(b, Ab) / jnp.dot(Ab, Ab)
        np.testing.assert_allclose(result.solution, alpha * b, rtol=1e-12)


class TestKrylovJIT:
    """The solvers can be traced and compiled."""

    @pytest.mark.parametrize("solver_cls", SOLVERS)
    def test_run_is_jittable(self, solver_cls):
        A = _spd_matrix(4, seed=2)
        op = MatrixOperator(A, jnp.eye(4))
        solver = solver_cls(absolute_tolerance=1e-10, relative_tolerance=1e-12)

        @eqx.filter_jit
        def solve(b):
            return solver.run(op, b, _identity(4), 1e-8)

        result = solve(jnp.ones(4))
        np.testing.assert_allclose(A @ result.solution, jnp.ones(4), atol=1e-8)


class TestKrylovFactory:
    def test_factory_uses_config(self):
        config = StepConfig(
            krylov_absolute_tolerance=1e-7,
            krylov_relative_tolerance=1e-5,
            krylov_iteration_limit=12,
        )
        solver = krylov_factory(config)
        assert isinstance(solver, ConjugateGradients)
        assert solver.absolute_tolerance == 1e-7
        assert solver.relative_tolerance == 1e-5
        assert solver.max_iter == 12
