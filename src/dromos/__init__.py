"""
Dromos: Orbit Propagation and Orbit Determination

A Python package for spacecraft trajectory propagation with variational
equations, observation simulation, and batch least-squares estimation,
using Taylor series and Runge-Kutta integration.
"""

# Settings namespaces
from . import (accelerations, dependent_variables, integrators, observation_simulation,
               parameters, termination, viability, weights)

# Core classes
from .bodies import Body, SystemOfBodies, GroundStation, AtmosphereModel, RotationModel
from .dynamics import CallableDynamics, SymbolicDynamics, StateDerivativeProvider
from .history import History, StateHistory
from .propagation import (DynamicsPropagator, PropagatorSettings, TerminationDetails,
                          translational_propagator_settings)
from .variational import StateTransitionInterface, VariationalEquationsPropagator
from .observables import LinkDefinition, LinkEndId, LinkEndType, ObservableType
from .observation_simulation import (ObservationCollection, ObservationSimulator,
                                     simulate_observations)
from .parameters import EstimatableParameterSet, create_parameter_set
from .estimation import (EstimationConvergenceChecker, EstimationInput, EstimationManager,
                         EstimationOutput, EstimationStatus)
from .termination import TerminationReason

# Defaults and conversions
from .defaults import EARTH_STD_ATMO, create_earth_system
from .elements import cartesian_to_keplerian, keplerian_to_cartesian

# Configuration and errors
from .config import config, temp_config
from .exceptions import ConfigurationError, DromosError, IntegrationFailure

# Package metadata
__version__ = "0.1.0"

# Define what gets imported with "from dromos import *"
__all__ = [
    # Namespaces
    "accelerations",
    "dependent_variables",
    "integrators",
    "observation_simulation",
    "parameters",
    "termination",
    "viability",
    "weights",
    # Environment
    "Body",
    "SystemOfBodies",
    "GroundStation",
    "AtmosphereModel",
    "RotationModel",
    # Propagation
    "CallableDynamics",
    "SymbolicDynamics",
    "StateDerivativeProvider",
    "History",
    "StateHistory",
    "DynamicsPropagator",
    "PropagatorSettings",
    "TerminationDetails",
    "TerminationReason",
    "translational_propagator_settings",
    "StateTransitionInterface",
    "VariationalEquationsPropagator",
    # Observations
    "LinkDefinition",
    "LinkEndId",
    "LinkEndType",
    "ObservableType",
    "ObservationCollection",
    "ObservationSimulator",
    "simulate_observations",
    # Estimation
    "EstimatableParameterSet",
    "create_parameter_set",
    "EstimationConvergenceChecker",
    "EstimationInput",
    "EstimationManager",
    "EstimationOutput",
    "EstimationStatus",
    # Constants and conversions
    "EARTH_STD_ATMO",
    "create_earth_system",
    "cartesian_to_keplerian",
    "keplerian_to_cartesian",
    # Configuration
    "config",
    "temp_config",
    "ConfigurationError",
    "DromosError",
    "IntegrationFailure",
]
