"""Smoke tests to verify package imports work."""

def test_package_imports():
    """Test that all main classes can be imported."""
    from dromos import (DynamicsPropagator, VariationalEquationsPropagator,
                        EstimationManager, SystemOfBodies)
    assert DynamicsPropagator is not None
    assert VariationalEquationsPropagator is not None
    assert EstimationManager is not None
    assert SystemOfBodies is not None

def test_version_exists():
    """Test that version is defined."""
    import dromos
    assert hasattr(dromos, '__version__')
    assert dromos.__version__ == "0.1.0"

def test_settings_namespaces():
    """Test that settings factories are reachable from the package."""
    import dromos
    assert callable(dromos.integrators.runge_kutta_4)
    assert callable(dromos.accelerations.point_mass_gravity)
    assert callable(dromos.termination.time_termination)
    assert callable(dromos.viability.elevation_angle_viability)

def test_can_create_earth_system():
    """Test basic SystemOfBodies creation."""
    from dromos import create_earth_system
    bodies = create_earth_system(spacecraft_names=("Sat",))
    assert bodies.get("Earth").gravitational_parameter == 3.986004415e5
    assert "Sat" in bodies

def test_configuration_error_is_value_error():
    """Test that configuration errors can be caught as ValueError."""
    from dromos import ConfigurationError
    assert issubclass(ConfigurationError, ValueError)
