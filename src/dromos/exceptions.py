"""
Exception types raised by the Dromos package.

Only configuration problems are raised as exceptions during propagation and
estimation. Numerical failures (non-finite states, diverging estimations)
are reported through reason codes and status flags on the returned results.
"""


class DromosError(Exception):
    """Base class for all Dromos exceptions."""


class ConfigurationError(DromosError, ValueError):
    """
    Inconsistent or unsupported configuration.

    Raised immediately for dimension mismatches between state, state
    transition matrix, sensitivity matrix or parameter set, unknown
    observable/termination/acceleration kinds, missing bodies, and
    observations outside a propagated arc.
    """


class IntegrationFailure(DromosError, RuntimeError):
    """
    Non-finite state encountered during integration.

    Propagators never raise this themselves; it is raised on request by
    ``TerminationDetails.raise_for_failure()`` and by covariance analysis,
    which has no status to report the failure in.
    """
