"""
Batch weighted nonlinear least-squares estimation.

``EstimationManager`` iterates propagation of the variational equations,
observation simulation with partials, and a normal-equation solve until an
``EstimationConvergenceChecker`` stops the loop:

    Init -> Propagate -> Simulate & partial -> Solve -> Converged?
                ^                                           |
                +----------------- no ----------------------+

Terminal states are CONVERGED, MAXIMUM_ITERATIONS_REACHED, STALLED (no
improvement of the residual for several iterations) and DIVERGED
(non-finite propagation, residuals or correction, a singular normal
matrix, or an arc that stops before the last observation). Non-converged
runs return the full trace and report the parameters of the iteration with
the lowest rms residual.

Examples
--------
>>> manager = EstimationManager(bodies, parameter_set, observation_settings,
...                             integrator_settings, propagator_settings)
>>> output = manager.perform_estimation(EstimationInput(observations))
>>> output.status
<EstimationStatus.CONVERGED: 'converged'>
"""

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Dict, List, Optional, Sequence
import numpy as np
import pandas as pd
import plotly.graph_objects as go

from .bodies import SystemOfBodies
from .config import config
from .exceptions import ConfigurationError, IntegrationFailure
from .integrators import IntegratorSettings
from .observables import ObservableType
from .observation_simulation import (ObservationCollection, ObservationModelSettings,
                                     ObservationSimulator,
                                     create_observation_simulators)
from .parameters import EstimatableParameterSet, ObservationBiasParameter
from .propagation import PropagatorSettings
from .variational import StateTransitionInterface, VariationalEquationsPropagator
from .weights import Weight, weight_matrix

logger = logging.getLogger(__name__)


class EstimationStatus(Enum):
    CONVERGED = 'converged'
    MAXIMUM_ITERATIONS_REACHED = 'maximum_iterations_reached'
    STALLED = 'stalled'
    DIVERGED = 'diverged'


@dataclass(frozen=True)
class EstimationConvergenceChecker:
    """
    Immutable stopping policy.

    Attributes
    ----------
    maximum_number_of_iterations : int
        Maximum number of linearizations
    minimum_residual_change : float
        Converged when the relative change of the rms residual between
        iterations falls below this value
    minimum_residual : float
        Converged when the rms residual falls below this value
    number_of_iterations_without_improvement : int
        Stalled after this many consecutive iterations without a new best
        rms residual
    parameter_change_tolerance : float
        Converged when ``||dp|| <= tolerance * max(||p||, 1)``
    """
    maximum_number_of_iterations: int = 5
    minimum_residual_change: float = 0.0
    minimum_residual: float = 0.0
    number_of_iterations_without_improvement: int = 2
    parameter_change_tolerance: float = 1e-9

    def __post_init__(self):
        if self.maximum_number_of_iterations < 1:
            raise ConfigurationError("maximum_number_of_iterations must be >= 1")
        if self.number_of_iterations_without_improvement < 1:
            raise ConfigurationError(
                "number_of_iterations_without_improvement must be >= 1"
            )
        if (self.minimum_residual_change < 0 or self.minimum_residual < 0 or
                self.parameter_change_tolerance < 0):
            raise ConfigurationError("Convergence thresholds must be non-negative")

    def residual_converged(self, rms: float, previous_rms: Optional[float]) -> bool:
        if rms < self.minimum_residual:
            return True
        if previous_rms is None or previous_rms == 0.0:
            return False
        return abs(previous_rms - rms) / previous_rms < self.minimum_residual_change

    def parameters_converged(self, correction, parameters) -> bool:
        scale = max(np.linalg.norm(parameters), 1.0)
        return np.linalg.norm(correction) <= self.parameter_change_tolerance * scale


def estimation_convergence_checker(maximum_iterations: int = 5,
                                   minimum_residual_change: float = 0.0,
                                   minimum_residual: float = 0.0,
                                   number_of_iterations_without_improvement: int = 2,
                                   parameter_change_tolerance: float = 1e-9
                                   ) -> EstimationConvergenceChecker:
    return EstimationConvergenceChecker(maximum_iterations, minimum_residual_change,
                                        minimum_residual,
                                        number_of_iterations_without_improvement,
                                        parameter_change_tolerance)


@dataclass(frozen=True, eq=False)
class EstimationInput:
    """
    Observations and weighting for one estimation.

    Attributes
    ----------
    observation_collection : ObservationCollection
        Observations to fit; rejected observations in it are ignored
    inverse_apriori_covariance : np.ndarray, optional
        Information matrix of the a-priori estimate, which is the parameter
        vector at the start of the estimation
    weights : Weight, optional
        Observation weight model. Default: unit weights
    """
    observation_collection: ObservationCollection
    inverse_apriori_covariance: Optional[np.ndarray] = None
    weights: Optional[Weight] = None

    def __post_init__(self):
        if not isinstance(self.observation_collection, ObservationCollection):
            raise ConfigurationError(
                f"Expected ObservationCollection, "
                f"got {type(self.observation_collection).__name__}"
            )
        if self.inverse_apriori_covariance is not None:
            matrix = np.array(self.inverse_apriori_covariance, dtype=float)
            matrix.setflags(write=False)
            object.__setattr__(self, 'inverse_apriori_covariance', matrix)


# ========== OUTPUT ==========
class CovarianceAnalysisOutput:
    """
    Linearized information about the parameter vector.

    Attributes
    ----------
    design_matrix : np.ndarray
        Partials of all scalar observations w.r.t. the parameters
    weight_matrix : np.ndarray
        Observation weights
    normalization_terms : np.ndarray
        Column scaling applied to the design matrix before inversion
    inverse_covariance : np.ndarray
        Information matrix, including the a-priori term
    """

    def __init__(self, parameter_descriptions: Sequence[str]):
        self.parameter_descriptions = list(parameter_descriptions)
        self.design_matrix = None
        self.weight_matrix = None
        self.normalization_terms = None
        self.inverse_covariance = None
        self.covariance = None

    def _set_linearization(self, H, W, scale, information, covariance):
        self.design_matrix = H
        self.weight_matrix = W
        self.normalization_terms = scale
        self.inverse_covariance = information
        self.covariance = covariance

    @property
    def formal_errors(self) -> Optional[np.ndarray]:
        if self.covariance is None:
            return None
        return np.sqrt(np.diag(self.covariance))

    @property
    def correlations(self) -> Optional[np.ndarray]:
        if self.covariance is None:
            return None
        sigma = self.formal_errors
        return self.covariance / np.outer(sigma, sigma)


class EstimationOutput(CovarianceAnalysisOutput):
    """
    Per-iteration trace of an estimation run.

    Iteration records are appended as the run proceeds and never modified
    afterwards. ``parameter_history[k]`` is the linearization point of
    iteration k and ``residual_history[k]`` the residuals there.
    """

    def __init__(self, parameter_descriptions: Sequence[str],
                 observation_times: np.ndarray):
        super().__init__(parameter_descriptions)
        self.observation_times = np.asarray(observation_times)
        self._parameter_history: List[np.ndarray] = []
        self._residual_history: List[np.ndarray] = []
        self._rms_history: List[float] = []
        self._correction_history: List[np.ndarray] = []
        self.final_parameters = None
        self.status = None
        self.best_iteration = None

    def _append_iteration(self, parameters, residuals, rms):
        parameters = np.array(parameters)
        residuals = np.array(residuals)
        parameters.setflags(write=False)
        residuals.setflags(write=False)
        self._parameter_history.append(parameters)
        self._residual_history.append(residuals)
        self._rms_history.append(float(rms))

    def _append_correction(self, correction):
        correction = np.array(correction)
        correction.setflags(write=False)
        self._correction_history.append(correction)

    @property
    def parameter_history(self) -> tuple:
        return tuple(self._parameter_history)

    @property
    def residual_history(self) -> tuple:
        return tuple(self._residual_history)

    @property
    def rms_residual_history(self) -> tuple:
        return tuple(self._rms_history)

    @property
    def correction_history(self) -> tuple:
        return tuple(self._correction_history)

    @property
    def number_of_iterations(self) -> int:
        return len(self._parameter_history)

    @property
    def converged(self) -> bool:
        return self.status == EstimationStatus.CONVERGED

    @property
    def final_residuals(self) -> Optional[np.ndarray]:
        if not self._residual_history:
            return None
        return self._residual_history[-1]

    def to_dataframe(self) -> pd.DataFrame:
        """
        Export the iteration trace to pandas DataFrame.

        Returns
        -------
        pd.DataFrame
            One row per iteration with 'iteration', 'rms_residual' and one
            column per parameter component
        """
        data = {'iteration': np.arange(self.number_of_iterations),
                'rms_residual': np.array(self._rms_history)}
        history = (np.array(self._parameter_history)
                   if self._parameter_history
                   else np.empty((0, len(self.parameter_descriptions))))
        for i, name in enumerate(self.parameter_descriptions):
            data[name] = history[:, i]
        return pd.DataFrame(data)

    def plot_residuals(self, iterations: Optional[Sequence[int]] = None) -> go.Figure:
        """
        Plot residuals against observation time.

        Parameters
        ----------
        iterations : sequence of int, optional
            Iterations to plot. Default: first and last.

        Returns
        -------
        go.Figure
            Plotly Figure object
        """
        if iterations is None:
            iterations = sorted({0, self.number_of_iterations - 1})
        fig = go.Figure()
        for k in iterations:
            fig.add_trace(go.Scatter(
                x=self.observation_times,
                y=self._residual_history[k],
                mode='markers',
                name=f'Iteration {k}',
            ))
        fig.update_layout(
            xaxis_title='Time [s]',
            yaxis_title='Residual',
            title='Observation Residuals',
            showlegend=True
        )
        return fig

    def __repr__(self):
        status = self.status.value if self.status is not None else None
        return (f"EstimationOutput(status={status}, "
                f"iterations={self.number_of_iterations})")


# ========== OBSERVATION MANAGERS ==========
class ObservationManager:
    """
    Computes observations and parameter partials for one observable type.

    Parameters
    ----------
    observable_type : ObservableType
        Observable handled by this manager
    simulators : sequence of ObservationSimulator
        Simulators of this observable, one per link
    parameters : EstimatableParameterSet
        Estimated parameters (for bias partials)
    propagated_body : str
        Body whose state partials come from the state transition interface
    """

    def __init__(self, observable_type: ObservableType,
                 simulators: Sequence[ObservationSimulator],
                 parameters: EstimatableParameterSet, propagated_body: str):
        self.observable_type = observable_type
        self._simulators = {simulator.link_ends: simulator for simulator in simulators}
        self._parameters = parameters
        self._propagated_body = propagated_body

    @property
    def observation_simulators(self) -> List[ObservationSimulator]:
        return list(self._simulators.values())

    def simulator(self, link_ends) -> ObservationSimulator:
        try:
            return self._simulators[link_ends]
        except KeyError:
            raise ConfigurationError(
                f"No {self.observable_type.value} observation model for link {link_ends}"
            ) from None

    def compute_observations_and_partials(self, observation_set,
                                          interface: StateTransitionInterface):
        """
        Simulate one observation set at the current linearization point.

        Returns
        -------
        computed : np.ndarray
            Simulated observables, shape (N, size)
        residuals : np.ndarray
            Observed minus computed, flattened
        partials : np.ndarray
            Design-matrix rows, shape (N * size, P)
        """
        simulator = self.simulator(observation_set.link_ends)
        size = simulator.size
        n_params = self._parameters.size
        roles = [role for role, end in observation_set.link_ends.items()
                 if end.body == self._propagated_body]
        _, bias_slice = self._parameters.bias_parameter(observation_set.link_ends,
                                                        observation_set.observable_type)

        computed = np.empty((len(observation_set), size))
        residuals = np.empty((len(observation_set), size))
        partials = np.zeros((len(observation_set) * size, n_params))
        for i, (time, observed) in enumerate(zip(observation_set.times,
                                                 observation_set.observations)):
            states = simulator.link_end_states(time)
            computed[i] = simulator.compute_observable(time, states)
            residuals[i] = simulator.residual(observed, computed[i])
            rows = slice(i * size, (i + 1) * size)
            if roles:
                link_partials = simulator.compute_partials(time, states)
                state_partials = interface.full_matrix(time)[:6]
                for role in roles:
                    partials[rows] += link_partials[role] @ state_partials
            if bias_slice is not None:
                partials[rows, bias_slice] += np.identity(size)
        return computed, residuals.ravel(), partials


class EstimationManager:
    """
    Batch least-squares estimator over one propagation arc.

    Parameters
    ----------
    bodies : SystemOfBodies
        Body arena; the propagated trajectory is stored in it after every
        propagation
    estimated_parameters : EstimatableParameterSet
        Parameters to estimate. Their current values are the initial
        estimate; the manager updates them in place.
    observation_settings : sequence of ObservationModelSettings
        Observation models available to the estimation
    integrator_settings : IntegratorSettings
        Integrator for the variational equations
    propagator_settings : PropagatorSettings
        Arc configuration; must have a propagated and a central body
    integrate_on_creation : bool
        Propagate at construction, e.g. to simulate observations
    integrate_equations_concurrently : bool
        Variational equations mode
    variational_only_integrator_settings : IntegratorSettings, optional
        Integrator for sequential variational equations
    """

    def __init__(self, bodies: SystemOfBodies,
                 estimated_parameters: EstimatableParameterSet,
                 observation_settings: Sequence[ObservationModelSettings],
                 integrator_settings: IntegratorSettings,
                 propagator_settings: PropagatorSettings,
                 integrate_on_creation: bool = True,
                 integrate_equations_concurrently: bool = True,
                 variational_only_integrator_settings: Optional[IntegratorSettings] = None):
        if propagator_settings.propagated_body is None:
            raise ConfigurationError(
                "Estimation requires propagator settings with a propagated body"
            )
        if propagator_settings.dynamics.state_size < 6:
            raise ConfigurationError(
                "Estimation requires a Cartesian state of the propagated body"
            )
        self._bodies = bodies
        self._parameters = estimated_parameters
        self._propagated_body = propagator_settings.propagated_body
        self._simulators = create_observation_simulators(observation_settings, bodies)

        for parameter in estimated_parameters.parameters:
            if isinstance(parameter, ObservationBiasParameter):
                matching = [s for s in self._simulators
                            if s.link_ends == parameter.link_ends and
                            s.observable_type == parameter.observable_type]
                if not matching:
                    raise ConfigurationError(
                        f"No observation model for bias parameter {parameter.description}"
                    )
                matching[0].attach_bias_parameter(parameter)

        grouped: Dict[ObservableType, List[ObservationSimulator]] = {}
        for simulator in self._simulators:
            grouped.setdefault(simulator.observable_type, []).append(simulator)
        self._managers = {
            observable_type: ObservationManager(observable_type, simulators,
                                                estimated_parameters,
                                                self._propagated_body)
            for observable_type, simulators in grouped.items()
        }

        self._variational_propagator = VariationalEquationsPropagator(
            bodies, integrator_settings, propagator_settings, estimated_parameters,
            integrate_equations_concurrently=integrate_equations_concurrently,
            variational_only_integrator_settings=variational_only_integrator_settings,
            integrate_on_creation=integrate_on_creation,
            set_integrated_result=True,
        )

    # ========== ACCESSORS ==========
    @property
    def observation_simulators(self) -> List[ObservationSimulator]:
        return list(self._simulators)

    @property
    def observation_managers(self) -> Dict[ObservableType, ObservationManager]:
        return dict(self._managers)

    @property
    def state_transition_interface(self) -> Optional[StateTransitionInterface]:
        return self._variational_propagator.state_transition_interface

    @property
    def variational_equations_propagator(self) -> VariationalEquationsPropagator:
        return self._variational_propagator

    @property
    def parameter_vector(self) -> np.ndarray:
        return self._parameters.values

    @parameter_vector.setter
    def parameter_vector(self, values):
        self._parameters.values = values

    # ========== ESTIMATION ==========
    def perform_estimation(self, estimation_input: EstimationInput,
                           convergence_checker: Optional[EstimationConvergenceChecker] = None
                           ) -> EstimationOutput:
        """
        Estimate the parameters from the input observations.

        Parameters
        ----------
        estimation_input : EstimationInput
            Observations, weights and a-priori information. Not modified.
        convergence_checker : EstimationConvergenceChecker, optional
            Stopping policy. Default: EstimationConvergenceChecker()

        Returns
        -------
        EstimationOutput
            Complete trace; ``final_parameters`` are also written to the
            parameter set

        Raises
        ------
        ConfigurationError
            If an observation has no matching observation model, lies
            outside the arc propagated from the initial estimate, or the
            a-priori matrix has the wrong shape
        """
        if convergence_checker is None:
            convergence_checker = EstimationConvergenceChecker()
        collection = estimation_input.observation_collection
        self._check_observation_models(collection)
        inverse_apriori = self._inverse_apriori(estimation_input)
        weights = estimation_input.weights or Weight()

        apriori = self._parameters.values
        output = EstimationOutput(self._parameters.descriptions,
                                  collection.concatenated_times)
        parameters = apriori.copy()
        best_rms = np.inf
        best_parameters = apriori.copy()
        previous_rms = None
        without_improvement = 0
        status = EstimationStatus.MAXIMUM_ITERATIONS_REACHED
        final_parameters = None

        for iteration in range(convergence_checker.maximum_number_of_iterations):
            # Propagate
            if not self._propagate(parameters):
                logger.warning("Iteration %d: propagation stopped on a non-finite state",
                               iteration)
                status = EstimationStatus.DIVERGED
                break
            if iteration == 0:
                self._check_observation_times(collection)
            elif not self._observations_within_arc(collection):
                logger.warning("Iteration %d: propagated arc no longer covers the "
                               "observations", iteration)
                status = EstimationStatus.DIVERGED
                break

            # Simulate & partial
            residuals, H, W = self._linearize(collection, weights)
            if not (np.all(np.isfinite(residuals)) and np.all(np.isfinite(H))):
                logger.warning("Iteration %d: non-finite residuals or partials", iteration)
                status = EstimationStatus.DIVERGED
                break
            rms = float(np.sqrt(np.mean(residuals**2))) if residuals.size else 0.0
            output._append_iteration(parameters, residuals, rms)
            logger.info("Iteration %d: rms residual %.6e", iteration, rms)

            if rms < best_rms:
                best_rms = rms
                best_parameters = parameters.copy()
                output.best_iteration = iteration
                without_improvement = 0
            else:
                without_improvement += 1

            # Solve
            solution = self._solve(H, W, residuals, inverse_apriori,
                                   parameters - apriori)
            if solution is None:
                logger.warning("Iteration %d: normal equations could not be solved",
                               iteration)
                status = EstimationStatus.DIVERGED
                break
            correction, scale, information, covariance = solution
            output._set_linearization(H, W, scale, information, covariance)
            output._append_correction(correction)

            # Converged?
            if convergence_checker.residual_converged(rms, previous_rms):
                status = EstimationStatus.CONVERGED
                final_parameters = parameters
                break
            if convergence_checker.parameters_converged(correction, parameters):
                status = EstimationStatus.CONVERGED
                final_parameters = parameters + correction
                break
            if (without_improvement >=
                    convergence_checker.number_of_iterations_without_improvement):
                status = EstimationStatus.STALLED
                break
            previous_rms = rms
            parameters = parameters + correction

        if final_parameters is None:
            final_parameters = best_parameters
        output.status = status
        output.final_parameters = np.array(final_parameters)
        logger.info("Estimation finished: %s after %d iterations",
                    status.value, output.number_of_iterations)

        self._propagate(final_parameters)
        return output

    def compute_covariance(self, estimation_input: EstimationInput
                           ) -> CovarianceAnalysisOutput:
        """
        Linearize once at the current parameters without updating them.

        Raises
        ------
        ConfigurationError
            As for ``perform_estimation``, or if the normal equations are
            singular
        IntegrationFailure
            If the propagation stops on a non-finite state
        """
        collection = estimation_input.observation_collection
        self._check_observation_models(collection)
        inverse_apriori = self._inverse_apriori(estimation_input)
        weights = estimation_input.weights or Weight()
        output = CovarianceAnalysisOutput(self._parameters.descriptions)
        parameters = self._parameters.values
        if not self._propagate(parameters):
            raise IntegrationFailure(
                f"Propagation stopped: "
                f"{self._variational_propagator.termination_reason.value}"
            )
        self._check_observation_times(collection)
        _, H, W = self._linearize(collection, weights)
        solution = self._solve(H, W, np.zeros(H.shape[0]), inverse_apriori,
                               np.zeros_like(parameters))
        if solution is None:
            raise ConfigurationError(
                "Normal equations are singular; the parameters are not observable"
            )
        _, scale, information, covariance = solution
        output._set_linearization(H, W, scale, information, covariance)
        return output

    def _propagate(self, parameters) -> bool:
        self._parameters.values = parameters
        self._variational_propagator.integrate_full_equations()
        return self._variational_propagator.integration_completed_successfully

    def _check_observation_models(self, collection):
        for observation_set in collection.observation_sets:
            manager = self._managers.get(observation_set.observable_type)
            if manager is None:
                raise ConfigurationError(
                    f"No observation model for {observation_set.observable_type.value}"
                )
            manager.simulator(observation_set.link_ends)

    def _observations_within_arc(self, collection) -> bool:
        history = self._variational_propagator.state_history
        times = collection.concatenated_times
        if not len(history) or not times.size:
            return True
        tol = config.TIME_TOLERANCE * max(1.0, abs(history.final_epoch))
        return (times.min() >= history.initial_epoch - tol and
                times.max() <= history.final_epoch + tol)

    def _check_observation_times(self, collection):
        if not self._observations_within_arc(collection):
            history = self._variational_propagator.state_history
            times = collection.concatenated_times
            raise ConfigurationError(
                f"Observations span [{times.min()}, {times.max()}], outside the "
                f"propagated arc [{history.initial_epoch}, {history.final_epoch}]"
            )

    def _inverse_apriori(self, estimation_input):
        matrix = estimation_input.inverse_apriori_covariance
        if matrix is None:
            return None
        n = self._parameters.size
        if matrix.shape != (n, n):
            raise ConfigurationError(
                f"Inverse a-priori covariance must have shape ({n}, {n}), "
                f"got {matrix.shape}"
            )
        return matrix

    def _linearize(self, collection, weights):
        interface = self._variational_propagator.state_transition_interface
        residual_blocks = []
        partial_blocks = []
        weight_blocks = []
        for observation_set in collection.observation_sets:
            manager = self._managers[observation_set.observable_type]
            _, residuals, partials = manager.compute_observations_and_partials(
                observation_set, interface)
            residual_blocks.append(residuals)
            partial_blocks.append(partials)
            weight_blocks.append(weight_matrix(weights, observation_set))

        n_params = self._parameters.size
        if not residual_blocks:
            return np.empty(0), np.empty((0, n_params)), np.empty((0, 0))
        residuals = np.concatenate(residual_blocks)
        H = np.vstack(partial_blocks)
        # Block-diagonal weights over observation sets
        W = np.zeros((residuals.size, residuals.size))
        start = 0
        for block in weight_blocks:
            stop = start + block.shape[0]
            W[start:stop, start:stop] = block
            start = stop
        return residuals, H, W

    @staticmethod
    def _solve(H, W, residuals, inverse_apriori, offset_from_apriori):
        """
        Solve the column-normalized weighted normal equations.

        Returns (correction, normalization, information, covariance), or
        None if the system is singular or gives a non-finite correction.
        """
        # Normalize columns by their largest partial
        scale = np.max(np.abs(H), axis=0) if H.size else np.ones(H.shape[1])
        scale = np.where(scale > 0.0, scale, 1.0)
        Hn = H / scale
        N = Hn.T @ W @ Hn
        b = Hn.T @ W @ residuals
        if inverse_apriori is not None:
            N = N + inverse_apriori / np.outer(scale, scale)
            b = b - (inverse_apriori @ offset_from_apriori) / scale
        try:
            normalized_covariance = np.linalg.inv(N)
            correction = np.linalg.solve(N, b) / scale
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(correction)):
            return None
        information = N * np.outer(scale, scale)
        covariance = normalized_covariance / np.outer(scale, scale)
        return correction, scale, information, covariance
