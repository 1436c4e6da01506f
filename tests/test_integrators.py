"""
Test suite for numerical integrators.

Tests cover:
- Settings validation and string parsing
- Accuracy of RK4, Dormand-Prince and Taylor on known solutions
- Landing on time limits and failure reporting
"""

import pytest
import numpy as np
import heyoka as hy

from dromos.dynamics import CallableDynamics, SymbolicDynamics
from dromos.exceptions import ConfigurationError
from dromos.integrators import (IntegratorSettings, IntegratorType, create_integrator,
                                dormand_prince, runge_kutta_4, taylor)


def exponential_decay(rate=0.1):
    return CallableDynamics(lambda t, x, p: -rate * x, 1)


def integrate_until(integrator, final_time):
    while integrator.time < final_time:
        result = integrator.step(final_time)
        assert result.success
    return integrator.state


class TestIntegratorSettings:
    """Test settings construction and validation."""

    def test_parse_string_type(self):
        assert IntegratorSettings('rk4', 1.0).integrator_type == IntegratorType.RUNGE_KUTTA_4
        assert IntegratorSettings('RKDP45', 1.0).integrator_type == IntegratorType.DORMAND_PRINCE

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="Unknown integrator type"):
            IntegratorSettings('euler', 1.0)

    def test_non_positive_step(self):
        with pytest.raises(ConfigurationError, match="must be positive"):
            runge_kutta_4(0.0)

    def test_invalid_step_bounds(self):
        with pytest.raises(ConfigurationError, match="Invalid step size bounds"):
            IntegratorSettings('rkdp45', 1.0, minimum_step_size=10.0,
                               maximum_step_size=1.0)

    def test_settings_are_frozen(self):
        settings = runge_kutta_4(10.0)
        with pytest.raises(AttributeError):
            settings.initial_step_size = 5.0

    def test_taylor_factory(self):
        settings = taylor(1e-12, maximum_step_size=30.0)
        assert settings.integrator_type == IntegratorType.TAYLOR
        assert settings.maximum_step_size == 30.0


class TestRungeKutta4:
    """Test fixed-step RK4."""

    def test_exponential_decay(self):
        integrator = create_integrator(runge_kutta_4(0.25))
        integrator.initialize(exponential_decay(), 0.0, [1.0])
        state = integrate_until(integrator, 10.0)
        assert np.allclose(state, np.exp(-1.0), rtol=1e-8)

    def test_symbolic_dynamics_with_parameter(self):
        x = hy.make_vars("x")
        dynamics = SymbolicDynamics([(x, -hy.par[0] * x)], {"rate": 0.1})
        integrator = create_integrator(runge_kutta_4(0.25))
        integrator.initialize(dynamics, 0.0, [1.0])
        state = integrate_until(integrator, 10.0)
        assert np.allclose(state, np.exp(-1.0), rtol=1e-8)
        assert integrator.function_evaluations == 160
        dynamics.set_parameter("rate", 0.2)
        assert np.allclose(dynamics.jacobian_wrt_state(0.0, [1.0]), [[-0.2]])

    def test_four_evaluations_per_step(self):
        integrator = create_integrator(runge_kutta_4(1.0))
        integrator.initialize(exponential_decay(), 0.0, [1.0])
        integrator.step()
        integrator.step()
        assert integrator.function_evaluations == 8

    def test_lands_on_time_limit(self):
        integrator = create_integrator(runge_kutta_4(3.0))
        integrator.initialize(exponential_decay(), 0.0, [1.0])
        integrator.step(10.0)
        integrator.step(10.0)
        integrator.step(10.0)
        result = integrator.step(10.0)
        assert result.time == 10.0
        assert result.step_size == pytest.approx(1.0)

    def test_nonfinite_step_does_not_advance(self):
        blowup = CallableDynamics(lambda t, x, p: np.array([np.inf]), 1)
        integrator = create_integrator(runge_kutta_4(1.0))
        integrator.initialize(blowup, 0.0, [1.0])
        result = integrator.step()
        assert not result.success
        assert integrator.time == 0.0
        assert np.array_equal(integrator.state, [1.0])


class TestDormandPrince:
    """Test adaptive Dormand-Prince integrator."""

    def test_harmonic_oscillator(self):
        oscillator = CallableDynamics(lambda t, x, p: np.array([x[1], -x[0]]), 2)
        integrator = create_integrator(dormand_prince(0.1, 1e-10, 1e-10))
        integrator.initialize(oscillator, 0.0, [1.0, 0.0])
        state = integrate_until(integrator, 2.0 * np.pi)
        assert np.allclose(state, [1.0, 0.0], atol=1e-7)

    def test_step_size_grows_on_smooth_problem(self):
        integrator = create_integrator(dormand_prince(1e-3, 1e-8, 1e-8))
        integrator.initialize(exponential_decay(0.01), 0.0, [1.0])
        integrator.step()
        assert integrator.current_step_size > 1e-3

    def test_respects_maximum_step(self):
        integrator = create_integrator(dormand_prince(1.0, maximum_step_size=2.0))
        integrator.initialize(exponential_decay(1e-6), 0.0, [1.0])
        for _ in range(5):
            result = integrator.step()
            assert result.step_size <= 2.0


class TestTaylor:
    """Test heyoka Taylor integrator."""

    def test_requires_symbolic_dynamics(self):
        integrator = create_integrator(taylor())
        with pytest.raises(ConfigurationError, match="symbolic equations"):
            integrator.initialize(exponential_decay(), 0.0, [1.0])

    def test_symbolic_exponential_decay(self):
        x = hy.make_vars("x")
        dynamics = SymbolicDynamics([(x, -hy.par[0] * x)], {"rate": 0.1})
        integrator = create_integrator(taylor(1e-15))
        integrator.initialize(dynamics, 0.0, [1.0])
        state = integrate_until(integrator, 10.0)
        assert integrator.time == 10.0
        assert np.allclose(state, np.exp(-1.0), rtol=1e-12)

    def test_parameter_refreshed_on_initialize(self):
        x = hy.make_vars("x")
        dynamics = SymbolicDynamics([(x, -hy.par[0] * x)], {"rate": 0.1})
        integrator = create_integrator(taylor(1e-15))
        integrator.initialize(dynamics, 0.0, [1.0])
        integrate_until(integrator, 1.0)
        dynamics.set_parameter("rate", 0.2)
        integrator.initialize(dynamics, 0.0, [1.0])
        state = integrate_until(integrator, 1.0)
        assert np.allclose(state, np.exp(-0.2), rtol=1e-12)
