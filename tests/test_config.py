"""
Test suite for package configuration and validation switches.
"""

import pytest
import warnings

import dromos
from dromos import config, temp_config
from dromos.bodies import Body
from dromos.exceptions import ConfigurationError
from dromos.integrators import dormand_prince


class TestConfig:
    """Test global configuration object."""

    def test_defaults(self):
        """Default values are documented values."""
        assert config.INTERPOLATION_ORDER == 8
        assert config.STRICT_VALIDATION is True
        assert config.DEFAULT_INTEGRATE_ON_CREATION is True

    def test_reset(self):
        """reset() restores defaults."""
        config.INTERPOLATION_ORDER = 4
        config.reset()
        assert config.INTERPOLATION_ORDER == 8

    def test_package_exposes_same_instance(self):
        """dromos.config is the module-level instance."""
        assert dromos.config is config

    def test_repr_lists_settings(self):
        text = repr(config)
        assert "INTERPOLATION_ORDER" in text
        assert "STRICT_VALIDATION" in text


class TestTempConfig:
    """Test temporary configuration context manager."""

    def test_restores_on_exit(self):
        with temp_config(INTERPOLATION_ORDER=3):
            assert config.INTERPOLATION_ORDER == 3
        assert config.INTERPOLATION_ORDER == 8

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with temp_config(FINITE_DIFFERENCE_STEP=1e-3):
                raise RuntimeError("boom")
        assert config.FINITE_DIFFERENCE_STEP == 1e-7

    def test_invalid_attribute(self):
        with pytest.raises(AttributeError, match="no attribute"):
            with temp_config(NOT_A_SETTING=1):
                pass


class TestValidationSwitch:
    """Soft validation problems raise or warn depending on STRICT_VALIDATION."""

    def test_strict_raises(self):
        with pytest.raises(ConfigurationError, match="J2 coefficient"):
            Body("Weird", gravitational_parameter=1.0, j2=5.0)

    def test_lenient_warns(self):
        with temp_config(STRICT_VALIDATION=False):
            with pytest.warns(UserWarning, match="J2 coefficient"):
                body = Body("Weird", gravitational_parameter=1.0, j2=5.0)
        assert body.j2 == 5.0

    def test_step_size_outside_bounds(self):
        with pytest.raises(ConfigurationError, match="outside of"):
            dormand_prince(100.0, maximum_step_size=10.0)
        with temp_config(STRICT_VALIDATION=False):
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                dormand_prince(100.0, maximum_step_size=10.0)
        assert len(caught) == 1
