"""
Global Configuration for Dromos Package
=======================================

This module provides package-wide configuration settings that users can modify
to control interpolation, numerical differentiation, validation behavior, and
default plotting options.

Examples
--------
View current configuration:

>>> import dromos
>>> print(dromos.config)

Modify settings:

>>> dromos.config.INTERPOLATION_ORDER = 6   # Lower-order history interpolation
>>> dromos.config.STRICT_VALIDATION = False  # Warn instead of raise

Reset to defaults:

>>> dromos.config.reset()

Temporarily modify settings:

>>> with dromos.temp_config(FINITE_DIFFERENCE_STEP=1e-6):
...     A = dynamics.jacobian_wrt_state(0.0, x)

Notes
-----
These settings affect package-wide behavior. Modifying them will impact
all subsequent operations until changed again or reset. Settings objects
passed to propagators and estimators are immutable and are not affected.
"""

from dataclasses import dataclass
from contextlib import contextmanager


@dataclass
class DromosConfig:
    """
    Global configuration for Dromos package.

    Attributes
    ----------
    INTERPOLATION_ORDER : int
        Number of nodes used for Lagrange interpolation of histories
        (tabulated ephemerides, sequential variational equations and
        state transition interfaces).
        Default: 8
    FINITE_DIFFERENCE_STEP : float
        Relative perturbation used for central-difference Jacobians when a
        dynamics provider does not supply analytical ones.
        Default: 1e-7
    TIME_TOLERANCE : float
        Relative tolerance when comparing epochs against the bounds of a
        history (guards against round-off at arc boundaries).
        Default: 1e-12
    STRICT_VALIDATION : bool
        If True, validation failures raise exceptions.
        If False, validation failures issue warnings.
        Default: True
    DEFAULT_INTEGRATE_ON_CREATION : bool
        If True, propagators integrate immediately on construction.
        Default: True
    DEFAULT_BODY_COLOR : str
        Default color for celestial bodies in plots.
        Default: 'lightblue'
    DEFAULT_TRAJ_COLOR : str
        Default color for trajectory lines in plots.
        Default: 'red'
    DEFAULT_TRAJ_COLOR_ADD : str
        Default color for trajectories added to an existing plot.
        Default: 'blue'
    DEFAULT_BODY_OPACITY : float
        Default opacity for celestial body spheres (0.0 to 1.0).
        Default: 0.6
    """

    # History interpolation
    INTERPOLATION_ORDER: int = 8
    TIME_TOLERANCE: float = 1e-12

    # Numerical differentiation
    FINITE_DIFFERENCE_STEP: float = 1e-7

    # Validation behavior
    STRICT_VALIDATION: bool = True

    # Propagator defaults
    DEFAULT_INTEGRATE_ON_CREATION: bool = True

    # Plotting defaults
    DEFAULT_BODY_COLOR: str = 'lightblue'
    DEFAULT_TRAJ_COLOR: str = 'red'
    DEFAULT_TRAJ_COLOR_ADD: str = 'blue'
    DEFAULT_BODY_OPACITY: float = 0.6

    def reset(self):
        """
        Reset all configuration values to package defaults.

        Examples
        --------
        >>> import dromos
        >>> dromos.config.INTERPOLATION_ORDER = 4  # Modify
        >>> dromos.config.reset()  # Back to defaults
        >>> dromos.config.INTERPOLATION_ORDER
        8
        """
        defaults = DromosConfig()
        for key in self.__dataclass_fields__:
            setattr(self, key, getattr(defaults, key))

    def __repr__(self):
        """Return formatted string showing all configuration values."""
        lines = ["DromosConfig:"]
        lines.append("  Interpolation:")
        lines.append(f"    INTERPOLATION_ORDER = {self.INTERPOLATION_ORDER}")
        lines.append(f"    TIME_TOLERANCE = {self.TIME_TOLERANCE}")
        lines.append("  Numerical Tolerances:")
        lines.append(f"    FINITE_DIFFERENCE_STEP = {self.FINITE_DIFFERENCE_STEP}")
        lines.append("  Behavior:")
        lines.append(f"    STRICT_VALIDATION = {self.STRICT_VALIDATION}")
        lines.append(
            f"    DEFAULT_INTEGRATE_ON_CREATION = {self.DEFAULT_INTEGRATE_ON_CREATION}"
        )
        lines.append("  Plotting:")
        lines.append(f"    DEFAULT_BODY_COLOR = '{self.DEFAULT_BODY_COLOR}'")
        lines.append(f"    DEFAULT_TRAJ_COLOR = '{self.DEFAULT_TRAJ_COLOR}'")
        lines.append(f"    DEFAULT_TRAJ_COLOR_ADD = '{self.DEFAULT_TRAJ_COLOR_ADD}'")
        lines.append(f"    DEFAULT_BODY_OPACITY = {self.DEFAULT_BODY_OPACITY}")
        return "\n".join(lines)


# Global configuration instance
config = DromosConfig()


@contextmanager
def temp_config(**kwargs):
    """
    Context manager for temporarily modifying configuration values.

    Configuration is automatically restored when the context exits,
    even if an exception occurs.

    Parameters
    ----------
    **kwargs
        Configuration attributes to temporarily modify.

    Examples
    --------
    >>> import dromos
    >>> with dromos.temp_config(STRICT_VALIDATION=False):
    ...     # Soft validation problems only warn inside this block
    ...     ...
    >>> dromos.config.STRICT_VALIDATION
    True

    Raises
    ------
    AttributeError
        If an invalid configuration attribute is specified.
    """
    old_values = {}
    for key, value in kwargs.items():
        if not hasattr(config, key):
            raise AttributeError(
                f"DromosConfig has no attribute '{key}'. "
                f"Valid attributes: {list(config.__dataclass_fields__.keys())}"
            )
        old_values[key] = getattr(config, key)
        setattr(config, key, value)

    try:
        yield config
    finally:
        for key, value in old_values.items():
            setattr(config, key, value)
