"""
Test suite for acceleration settings and translational dynamics.

Tests cover:
- Settings validation for each acceleration variant
- Acceleration values against closed-form expressions
- Named runtime parameters and their Jacobians
"""

import pytest
import numpy as np

from dromos import accelerations
from dromos.accelerations import AccelerationType, ThrustDirectionType
from dromos.exceptions import ConfigurationError

MU = 3.986004415e5
STATE = np.array([7000.0, 1000.0, 500.0, -1.0, 7.5, 0.5])


def build(bodies, settings, body="Sat", central="Earth"):
    return accelerations.create_translational_dynamics(bodies, body, central, settings)


class TestAccelerationSettings:
    """Test tagged acceleration variants."""

    def test_point_mass_requires_body(self):
        with pytest.raises(ConfigurationError, match="requires an exerting body"):
            accelerations.AccelerationSettings(AccelerationType.POINT_MASS_GRAVITY)

    def test_negative_thrust(self):
        with pytest.raises(ConfigurationError, match="non-negative magnitude"):
            accelerations.thrust(-1.0)

    def test_constant_inertial_thrust_normalized(self):
        settings = accelerations.thrust(1.0, ThrustDirectionType.CONSTANT_INERTIAL,
                                        (0.0, 3.0, 4.0))
        assert np.allclose(settings.direction_vector, (0.0, 0.6, 0.8))

    def test_constant_inertial_requires_vector(self):
        with pytest.raises(ConfigurationError, match="direction vector"):
            accelerations.thrust(1.0, ThrustDirectionType.CONSTANT_INERTIAL)

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="Unknown acceleration type"):
            accelerations.AccelerationSettings("gravity")


class TestTranslationalDynamics:
    """Test equations of motion assembled from acceleration settings."""

    def test_point_mass(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.point_mass_gravity("Earth")])
        derivative = dynamics.derivative(0.0, STATE)
        r = np.linalg.norm(STATE[:3])
        assert np.allclose(derivative[:3], STATE[3:])
        assert np.allclose(derivative[3:], -MU * STATE[:3] / r**3, rtol=1e-13)

    def test_parameter_names(self, earth_bodies):
        dynamics = build(earth_bodies, [
            accelerations.point_mass_gravity("Earth"),
            accelerations.j2_gravity("Earth"),
            accelerations.aerodynamic("Earth"),
            accelerations.empirical(along_track=1e-9),
            accelerations.thrust(0.1),
        ])
        assert dynamics.parameter_names == (
            "gravitational_parameter:Earth",
            "j2:Earth",
            "drag_coefficient:Sat",
            "empirical_acceleration_radial:Sat",
            "empirical_acceleration_along_track:Sat",
            "empirical_acceleration_cross_track:Sat",
            "thrust_magnitude:Sat",
        )

    def test_gravitational_parameter_shared(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.point_mass_gravity("Earth"),
                                        accelerations.j2_gravity("Earth")])
        assert dynamics.parameter_names.count("gravitational_parameter:Earth") == 1

    def test_j2_along_polar_axis(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.j2_gravity("Earth")])
        earth = earth_bodies.get("Earth")
        state = np.array([0.0, 0.0, 7000.0, 7.5, 0.0, 0.0])
        a = dynamics.derivative(0.0, state)[3:]
        expected_z = 1.5 * earth.j2 * MU * earth.radius**2 / 7000.0**4 * 2.0
        assert np.allclose(a[:2], 0.0)
        assert a[2] == pytest.approx(expected_z, rel=1e-12)

    def test_drag_opposes_relative_velocity(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.aerodynamic("Earth")])
        state = np.array([6578.0, 0.0, 0.0, 0.0, 7.8, 0.0])
        a = dynamics.derivative(0.0, state)[3:]
        omega = earth_bodies.get("Earth").rotation_model.rotation_rate
        v_rel = state[3:] - np.cross([0.0, 0.0, omega], state[:3])
        assert np.dot(a, v_rel) < 0.0
        assert np.allclose(np.cross(a, v_rel), 0.0, atol=1e-20)

    def test_drag_requires_atmosphere(self):
        from dromos.defaults import create_earth_system
        bodies = create_earth_system(spacecraft_names=("Sat",), include_atmosphere=False)
        with pytest.raises(ConfigurationError, match="requires an atmosphere"):
            build(bodies, [accelerations.aerodynamic("Earth")])

    def test_empirical_radial(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.empirical(radial=1e-6)])
        a = dynamics.derivative(0.0, STATE)[3:]
        assert np.allclose(a, 1e-6 * STATE[:3] / np.linalg.norm(STATE[:3]))

    def test_thrust_velocity_aligned(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.thrust(1.0)])
        a = dynamics.derivative(0.0, STATE)[3:]
        mass = earth_bodies.get("Sat").mass
        v_hat = STATE[3:] / np.linalg.norm(STATE[3:])
        assert np.allclose(a, 1.0 / mass / 1000.0 * v_hat)

    def test_thrust_parameter_jacobian(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.thrust(1.0, ThrustDirectionType.RADIAL)])
        B = dynamics.jacobian_wrt_parameters(0.0, STATE)
        mass = earth_bodies.get("Sat").mass
        r_hat = STATE[:3] / np.linalg.norm(STATE[:3])
        assert np.allclose(B[3:, 0], r_hat / mass / 1000.0)

    def test_point_mass_state_jacobian_matches_finite_difference(self, earth_bodies):
        dynamics = build(earth_bodies, [accelerations.point_mass_gravity("Earth")])
        A_symbolic = dynamics.jacobian_wrt_state(0.0, STATE)
        A_numeric = super(type(dynamics), dynamics).jacobian_wrt_state(0.0, STATE)
        assert np.allclose(A_symbolic, A_numeric, rtol=1e-5, atol=1e-12)

    def test_only_central_body_exerts(self):
        from dromos.defaults import create_earth_system
        bodies = create_earth_system(spacecraft_names=("Sat",), include_moon=True)
        with pytest.raises(ConfigurationError, match="only the central"):
            build(bodies, [accelerations.point_mass_gravity("Moon")])

    def test_unknown_body(self, earth_bodies):
        with pytest.raises(ConfigurationError, match="Unknown body"):
            build(earth_bodies, [accelerations.point_mass_gravity("Earth")], body="Ghost")

    def test_requires_accelerations(self, earth_bodies):
        with pytest.raises(ConfigurationError, match="At least one"):
            build(earth_bodies, [])
