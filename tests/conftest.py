"""Shared fixtures: a linear test problem and a two-body Earth orbit."""

import numpy as np
import pytest

from dromos import config
from dromos.bodies import Body, SystemOfBodies
from dromos.dynamics import CallableDynamics
from dromos.propagation import PropagatorSettings, translational_propagator_settings
from dromos import accelerations, termination


# Lightly damped harmonic oscillator in each axis
LINEAR_MATRIX = np.block([
    [np.zeros((3, 3)), np.identity(3)],
    [-1e-4 * np.identity(3), -1e-3 * np.identity(3)],
])
LINEAR_INITIAL_STATE = np.array([10.0, -5.0, 2.0, 0.01, 0.02, -0.03])
LEO_STATE = np.array([7000.0, 0.0, 0.0, 0.0, 7.546049108166282, 0.0])


@pytest.fixture(autouse=True)
def reset_config():
    """Restore package configuration after every test."""
    yield
    config.reset()


def make_linear_dynamics():
    return CallableDynamics(lambda t, x, p: LINEAR_MATRIX @ x, 6,
                            state_jacobian=lambda t, x, p: LINEAR_MATRIX)


@pytest.fixture
def linear_bodies():
    """Arena with a fixed origin body and one propagated body."""
    bodies = SystemOfBodies(global_frame_origin="Origin")
    bodies.add_body(Body("Origin"))
    bodies.add_body(Body("Sat"))
    return bodies


@pytest.fixture
def linear_settings():
    """Linear dynamics of "Sat" about "Origin" over 600 s."""
    return PropagatorSettings(
        dynamics=make_linear_dynamics(),
        initial_state=LINEAR_INITIAL_STATE,
        initial_time=0.0,
        termination_settings=termination.time_termination(600.0),
        propagated_body="Sat",
        central_body="Origin",
    )


@pytest.fixture
def earth_bodies():
    from dromos.defaults import create_earth_system
    return create_earth_system(spacecraft_names=("Sat",))


@pytest.fixture
def two_body_settings(earth_bodies):
    """Point-mass orbit in LEO for 10 minutes."""
    return translational_propagator_settings(
        earth_bodies, "Sat", "Earth",
        [accelerations.point_mass_gravity("Earth")],
        initial_state=LEO_STATE,
        initial_time=0.0,
        termination_settings=termination.time_termination(600.0),
    )


@pytest.fixture
def make_linear_propagator(linear_bodies):
    """Factory for propagators of the linear problem with custom termination."""
    from dromos import integrators
    from dromos.propagation import DynamicsPropagator

    def factory(termination_settings, integrator_settings=None, **kwargs):
        settings = PropagatorSettings(
            dynamics=make_linear_dynamics(),
            initial_state=LINEAR_INITIAL_STATE,
            initial_time=0.0,
            termination_settings=termination_settings,
            propagated_body="Sat",
            central_body="Origin",
            **kwargs,
        )
        if integrator_settings is None:
            integrator_settings = integrators.runge_kutta_4(10.0)
        return DynamicsPropagator(linear_bodies, integrator_settings, settings)

    return factory
