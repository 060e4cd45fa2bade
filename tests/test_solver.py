"""Tests for the outer drivers.

Covers the ``run`` loop (stopping rule, progress history, output stream,
logging) and the ``NewtonKrylov`` Optimistix minimiser, with
``scipy.optimize.minimize(method="Newton-CG")`` as a reference.
"""

import io
import logging

import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
import pytest
from scipy.optimize import minimize as scipy_minimize

from newton_krylov_jax import (
    BoundConstraint,
    NewtonKrylov,
    NewtonKrylovStep,
    Objective,
    StatusTest,
    StepConfig,
    run,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


TIGHT_KRYLOV = StepConfig(
    krylov_absolute_tolerance=1e-10,
    krylov_relative_tolerance=1e-10,
    krylov_iteration_limit=20,
)

CENTER = jnp.array([1.0, -0.5, 2.0])
COUPLING = jnp.array([[2.0, 0.5, 0.0], [0.5, 1.0, 0.2], [0.0, 0.2, 3.0]])


def rosenbrock(x, args):
    return (1 - x[0]) ** 2 + 100 * (x[1] - x[0] ** 2) ** 2


def quartic(x, args):
    """Strictly convex quartic with minimum at CENTER."""
    d = x - CENTER
    return jnp.sum(d**4) + 0.5 * jnp.dot(d, COUPLING @ d)


class TestStatusTest:
    """Stopping rule of the outer loop."""

    def _state(self, gnorm, snorm, iteration):
        return type(
            "State",
            (),
            {
                "gnorm": jnp.array(gnorm),
                "snorm": jnp.array(snorm),
                "iteration": jnp.array(iteration),
            },
        )()

    def test_continue(self):
        assert StatusTest().check(self._state(1.0, 1.0, 0))

    @pytest.mark.parametrize(
        "gnorm,snorm,iteration",
        [(1e-8, 1.0, 3), (1.0, 1e-14, 3), (1.0, 1.0, 100)],
    )
    def test_stop(self, gnorm, snorm, iteration):
        assert not StatusTest().check(self._state(gnorm, snorm, iteration))


class TestRun:
    """The ``run`` driver."""

    def test_quartic(self):
        objective = Objective(quartic)
        step = NewtonKrylovStep(TIGHT_KRYLOV)
        result = run(step, objective, CENTER + 0.5, status=StatusTest(gtol=1e-10))

        np.testing.assert_allclose(result.x, CENTER, atol=1e-8)
        assert float(result.algo_state.gnorm) <= 1e-10
        assert int(result.algo_state.nfval) == 1
        assert int(result.algo_state.ngrad) == int(result.algo_state.iteration) + 1

    def test_rosenbrock(self):
        """Pure Newton steps reach the minimum from the standard start."""
        objective = Objective(rosenbrock)
        step = NewtonKrylovStep(TIGHT_KRYLOV)
        result = run(
            step,
            objective,
            jnp.array([-1.2, 1.0]),
            status=StatusTest(gtol=1e-8, max_iterations=50),
        )
        np.testing.assert_allclose(result.x, [1.0, 1.0], atol=1e-6)

    def test_secant_preconditioned(self):
        step = NewtonKrylovStep.from_parameters(
            {
                "General": {
                    "Secant": {"Use as Preconditioner": True, "Maximum Storage": 5},
                    "Krylov": {
                        "Absolute Tolerance": 1e-10,
                        "Relative Tolerance": 1e-10,
                    },
                }
            }
        )
        result = run(step, Objective(quartic), CENTER + 0.5, status=StatusTest(gtol=1e-9))
        np.testing.assert_allclose(result.x, CENTER, atol=1e-7)
        assert int(result.step_state.secant.count) >= 1

    def test_history_and_output(self):
        output = io.StringIO()
        step = NewtonKrylovStep(TIGHT_KRYLOV)
        result = run(
            step,
            Objective(quartic),
            CENTER + 0.5,
            print_header=True,
            output=output,
        )

        assert len(result.history) == int(result.algo_state.iteration) + 1
        assert result.history[0].startswith(step.print_name() + step.print_header())
        assert output.getvalue() == "".join(result.history)
        assert result.history[-1].split()[0] == str(int(result.algo_state.iteration))

    def test_report_lines_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="newton_krylov_jax.algorithm"):
            result = run(NewtonKrylovStep(TIGHT_KRYLOV), Objective(quartic), CENTER + 0.5)
        messages = [
            r.getMessage()
            for r in caplog.records
            if r.name == "newton_krylov_jax.algorithm" and r.levelno == logging.INFO
        ]
        assert len(messages) == len(result.history)

    def test_iteration_limit_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="newton_krylov_jax.algorithm"):
            result = run(
                NewtonKrylovStep(),
                Objective(rosenbrock),
                jnp.array([-1.2, 1.0]),
                status=StatusTest(gtol=1e-12, max_iterations=1),
            )
        assert int(result.algo_state.iteration) == 1
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_projects_initial_iterate(self):
        bound = BoundConstraint(lower=jnp.zeros(3), upper=jnp.full(3, 3.0))
        result = run(
            NewtonKrylovStep(TIGHT_KRYLOV),
            Objective(quartic),
            jnp.array([-5.0, 1.0, 10.0]),
            bound=bound,
            status=StatusTest(max_iterations=0),
        )
        np.testing.assert_allclose(result.x, [0.0, 1.0, 3.0])
        assert len(result.history) == 1


class TestNewtonKrylovComparisonWithSciPy:
    """Compare against SciPy's Newton-CG on the same objective."""

    def test_vs_scipy_newton_cg(self):
        def f_np(x):
            return float(quartic(jnp.asarray(x), None))

        def grad_np(x):
            return np.asarray(jax.grad(quartic)(jnp.asarray(x), None))

        def hessp_np(x, p):
            _, hv = jax.jvp(
                lambda y: jax.grad(quartic)(y, None), (jnp.asarray(x),), (jnp.asarray(p),)
            )
            return np.asarray(hv)

        x0 = np.asarray(CENTER + 0.5)
        result_scipy = scipy_minimize(
            f_np, x0, jac=grad_np, hessp=hessp_np, method="Newton-CG",
            options={"xtol": 1e-10},
        )
        result = run(
            NewtonKrylovStep(TIGHT_KRYLOV),
            Objective(quartic),
            jnp.asarray(x0),
            status=StatusTest(gtol=1e-10),
        )

        np.testing.assert_allclose(result.x, result_scipy.x, atol=1e-6)
        np.testing.assert_allclose(
            float(result.algo_state.value), result_scipy.fun, atol=1e-10
        )


class TestOptimistixMinimise:
    """Tests using the optimistix.minimise high-level interface."""

    def test_auto_derivatives(self):
        def objective(x, args):
            return jnp.sum((x - 1.0) ** 2), None

        solver = NewtonKrylov(rtol=1e-8, atol=1e-8)
        sol = optx.minimise(objective, solver, jnp.array([3.0, -2.0]), has_aux=True, max_steps=50)

        np.testing.assert_allclose(sol.value, [1.0, 1.0], atol=1e-6)

    def test_rosenbrock(self):
        def objective(x, args):
            return rosenbrock(x, args), None

        solver = NewtonKrylov(rtol=1e-10, atol=1e-10, config=TIGHT_KRYLOV)
        sol = optx.minimise(objective, solver, jnp.array([-1.2, 1.0]), has_aux=True, max_steps=50)

        np.testing.assert_allclose(sol.value, [1.0, 1.0], atol=1e-6)

    def test_user_supplied_derivatives(self):
        """User gradient and HVP for f(x) = 0.5 x^T A x - b^T x."""
        A = jnp.array([[3.0, 1.0], [1.0, 2.0]])
        b = jnp.array([1.0, 1.0])

        def objective(x, args):
            return 0.5 * jnp.dot(x, A @ x) - jnp.dot(b, x), None

        solver = NewtonKrylov(
            rtol=1e-10,
            atol=1e-10,
            config=TIGHT_KRYLOV,
            obj_grad_fn=lambda x, args: A @ x - b,
            obj_hvp_fn=lambda x, v, args: A @ v,
        )
        sol = optx.minimise(objective, solver, jnp.zeros(2), has_aux=True, max_steps=50)

        np.testing.assert_allclose(sol.value, jnp.linalg.solve(A, b), rtol=1e-8)
        assert int(sol.stats["num_steps"]) <= 2

    def test_secant_preconditioning(self):
        def objective(x, args):
            return quartic(x, args), None

        config = StepConfig(
            use_secant_preconditioner=True,
            krylov_absolute_tolerance=1e-10,
            krylov_relative_tolerance=1e-10,
        )
        solver = NewtonKrylov(rtol=1e-10, atol=1e-10, config=config)
        sol = optx.minimise(objective, solver, CENTER + 0.5, has_aux=True, max_steps=50)

        np.testing.assert_allclose(sol.value, CENTER, atol=1e-7)

    def test_solution_object_fields(self):
        def objective(x, args):
            return jnp.sum(x**2), None

        solver = NewtonKrylov(rtol=1e-8, atol=1e-8)
        sol = optx.minimise(objective, solver, jnp.array([1.0, 2.0]), has_aux=True, max_steps=50)

        assert sol.value.shape == (2,)
        assert sol.aux is None
        for key in (
            "num_steps",
            "final_objective",
            "final_grad_norm",
            "num_grad_evals",
            "krylov_iterations",
            "krylov_flag",
        ):
            assert key in sol.stats

    def test_throw_false_returns_result(self):
        """A run stopped by max_steps still returns a Solution."""

        def objective(x, args):
            return rosenbrock(x, args), None

        solver = NewtonKrylov(rtol=1e-15, atol=1e-15)
        sol = optx.minimise(
            objective,
            solver,
            jnp.array([-1.2, 1.0]),
            has_aux=True,
            max_steps=2,
            throw=False,
        )
        assert sol.value.shape == (2,)
