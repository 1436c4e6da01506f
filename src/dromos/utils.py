"""
Utility functions and classes for the Dromos package.
"""

from time import perf_counter
import numpy as np
import warnings
from typing import Type
from .config import config
from .exceptions import ConfigurationError


class Timer:
    """
    Context manager for timing code execution.

    Examples
    --------
    >>> from dromos.utils import Timer
    >>> with Timer("Propagation"):
    ...     propagator.integrate_to_termination()
    Propagation: 0.123456 s

    >>> with Timer(verbose=False) as t:
    ...     # ... code ...
    >>> print(f"Took {t.elapsed:.6f} seconds")
    """
    def __init__(self, name="Operation", verbose=True):
        """
        Parameters
        ----------
        name : str, optional
            Name to display when timing completes (default: "Operation")
        verbose : bool, optional
            Whether to print timing automatically (default: True)
        """
        self.name = name
        self.verbose = verbose
        self.elapsed = None

    def __enter__(self):
        self.start = perf_counter()
        return self

    def __exit__(self, *args):
        self.end = perf_counter()
        self.elapsed = self.end - self.start
        if self.verbose:
            print(f"{self.name}: {self.elapsed:.6f} s")


def validation_error(message: str,
                     error_class: Type[Exception] = ConfigurationError):
    """
    Raise error or warn based on config.STRICT_VALIDATION.

    Used for soft configuration problems: settings that are suspicious
    but still allow a computation to proceed. Hard inconsistencies
    (dimension mismatches, unknown kinds) always raise.

    Parameters
    ----------
    message : str
        Validation error message
    error_class : Type[Exception], optional
        Exception class to raise if STRICT_VALIDATION is True.
        Default: ConfigurationError

    Raises
    ------
    Exception (of type error_class)
        If config.STRICT_VALIDATION is True

    Warns
    -----
    UserWarning
        If config.STRICT_VALIDATION is False
    """
    if config.STRICT_VALIDATION:
        raise error_class(message)
    else:
        warnings.warn(message, UserWarning, stacklevel=2)


def as_state_vector(values, name="state") -> np.ndarray:
    """Convert input to a 1-D float array, rejecting other shapes."""
    array = np.array(values, dtype=float)
    if array.ndim != 1:
        raise ConfigurationError(
            f"{name} must be one-dimensional, got shape {array.shape}"
        )
    return array
