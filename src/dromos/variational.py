"""
Variational equations propagation.

``VariationalEquationsPropagator`` propagates the equations of motion
together with the state transition matrix Phi and the sensitivity matrix S:

    dPhi/dt = A(t) Phi,   Phi(t0) = I
    dS/dt   = A(t) S + B(t),   S(t0) = 0

where A and B are the Jacobians of the state derivative w.r.t. the state
and the estimated non-state parameters. Two modes are available:

concurrent
    One augmented vector [x, Phi, S] and one integrator.
sequential
    The dynamics are integrated first; Phi and S are then integrated with
    A and B evaluated on states interpolated from the stored history.

The two modes follow different numerical paths and agree within the
integration tolerance, not bitwise.
"""

from dataclasses import replace
import logging
from typing import Optional
import numpy as np

from .dynamics import VariationalDynamics, VariationalOnlyDynamics
from .exceptions import ConfigurationError
from .history import History, StateHistory
from .integrators import IntegratorSettings, IntegratorType
from .parameters import EstimatableParameterSet
from .propagation import DynamicsPropagator, PropagatorSettings
from .termination import TerminationReason, time_termination

logger = logging.getLogger(__name__)


class StateTransitionInterface:
    """
    Interpolating access to Phi and S of one propagation run.

    Parameters
    ----------
    state_transition_history : History
        Epoch -> Phi(t, t0), shape (n, n)
    sensitivity_history : History
        Epoch -> S(t), shape (n, p)
    state_parameter_size : int
        Number of leading parameter-vector components that are the initial
        state (0 or n)
    """

    def __init__(self, state_transition_history: History,
                 sensitivity_history: History, state_parameter_size: int):
        self._phi = state_transition_history.copy()
        self._s = sensitivity_history.copy()
        self._state_parameter_size = state_parameter_size

    @property
    def state_transition_matrix_size(self) -> int:
        return self._phi.initial_value.shape[0]

    @property
    def sensitivity_matrix_size(self) -> int:
        return self._s.initial_value.shape[1]

    @property
    def full_parameter_size(self) -> int:
        return self._state_parameter_size + self.sensitivity_matrix_size

    def state_transition_matrix(self, time: float) -> np.ndarray:
        return self._interpolate(self._phi, time)

    def sensitivity_matrix(self, time: float) -> np.ndarray:
        return self._interpolate(self._s, time)

    def full_matrix(self, time: float) -> np.ndarray:
        """
        Partials of the state at ``time`` w.r.t. the full parameter vector.

        Returns
        -------
        np.ndarray
            Shape (n, P): Phi columns when the initial state is estimated,
            followed by S columns
        """
        s = self.sensitivity_matrix(time)
        if self._state_parameter_size:
            return np.hstack([self.state_transition_matrix(time), s])
        return s

    @staticmethod
    def _interpolate(history, time):
        try:
            return history.interpolate(time)
        except ValueError as err:
            raise ConfigurationError(str(err)) from None


class VariationalEquationsPropagator:
    """
    Propagator for the equations of motion and their variational equations.

    Parameters
    ----------
    bodies : SystemOfBodies
        Environment handle
    integrator_settings : IntegratorSettings
        Integrator for the dynamics (and for the variational equations in
        concurrent mode)
    propagator_settings : PropagatorSettings
        Arc configuration with the canonical dynamics
    estimated_parameters : EstimatableParameterSet
        Parameter set defining the linearization point and the columns of S
    integrate_equations_concurrently : bool
        Default mode for ``integrate_full_equations``
    variational_only_integrator_settings : IntegratorSettings, optional
        Integrator for the variational equations in sequential mode.
        Default: ``integrator_settings``
    clear_numerical_solutions : bool
        Drop the histories once the state transition interface and (if
        requested) the tabulated ephemeris have been built from them
    integrate_on_creation : bool
        Run ``integrate_full_equations`` immediately
    set_integrated_result : bool
        Write the propagated trajectory into the body arena

    Examples
    --------
    >>> propagator = VariationalEquationsPropagator(
    ...     bodies, integrators.runge_kutta_4(10.0), settings, parameter_set)
    >>> phi = propagator.state_transition_interface.state_transition_matrix(600.0)
    """

    def __init__(self, bodies, integrator_settings: IntegratorSettings,
                 propagator_settings: PropagatorSettings,
                 estimated_parameters: EstimatableParameterSet,
                 integrate_equations_concurrently: bool = True,
                 variational_only_integrator_settings: Optional[IntegratorSettings] = None,
                 clear_numerical_solutions: bool = False,
                 integrate_on_creation: bool = True,
                 set_integrated_result: bool = False):
        if not isinstance(estimated_parameters, EstimatableParameterSet):
            raise ConfigurationError(
                f"Expected EstimatableParameterSet, "
                f"got {type(estimated_parameters).__name__}"
            )
        dynamics = propagator_settings.dynamics
        n = dynamics.state_size
        if estimated_parameters.state_parameter_size not in (0, n):
            raise ConfigurationError(
                f"Estimated initial state has {estimated_parameters.state_parameter_size} "
                f"components, propagated state has {n}"
            )
        self._bodies = bodies
        self._integrator_settings = integrator_settings
        self._variational_only_integrator_settings = variational_only_integrator_settings
        self._propagator_settings = propagator_settings
        self._parameters = estimated_parameters
        self._concurrent = integrate_equations_concurrently
        self._clear_numerical_solutions = clear_numerical_solutions
        self._variational_dynamics = VariationalDynamics(
            dynamics, estimated_parameters.sensitivity_columns)

        self._equations_propagator = DynamicsPropagator(
            bodies, integrator_settings, propagator_settings,
            integrate_on_creation=False,
            set_integrated_result=set_integrated_result,
        )
        augmented_settings = replace(
            propagator_settings,
            dynamics=self._variational_dynamics,
            initial_state=self._variational_dynamics.augment(
                propagator_settings.initial_state),
        )
        self._concurrent_propagator = DynamicsPropagator(
            bodies, integrator_settings, augmented_settings,
            integrate_on_creation=False,
            set_integrated_result=set_integrated_result,
        )
        self._dynamics_simulator = self._equations_propagator
        self._reset_variational_histories()
        self._termination_reason = TerminationReason.NOT_TERMINATED

        if integrate_on_creation:
            self.integrate_full_equations()

    # ========== INTEGRATION ==========
    def integrate_equations_of_motion_only(self, initial_states=None) -> None:
        """
        Propagate only the dynamics, starting fresh histories.

        Phi and S histories of earlier runs are discarded.
        """
        self._reset_variational_histories()
        self._dynamics_simulator = self._equations_propagator
        details = self._equations_propagator.integrate_equations_of_motion(
            self._initial_state(initial_states))
        self._termination_reason = details.reason
        if self._clear_numerical_solutions:
            self._equations_propagator.clear_histories()

    def integrate_full_equations(self, initial_states=None,
                                 integrate_equations_concurrently: Optional[bool] = None
                                 ) -> None:
        """
        Propagate the dynamics with Phi and S, starting fresh histories.

        Parameters
        ----------
        initial_states : array_like, optional
            Initial state for this run. Default: the estimated initial
            state if it is part of the parameter set, otherwise the
            propagator settings' initial state.
        integrate_equations_concurrently : bool, optional
            Overrides the mode chosen at construction for this run
        """
        if integrate_equations_concurrently is None:
            integrate_equations_concurrently = self._concurrent
        self._reset_variational_histories()
        state = self._initial_state(initial_states)
        if integrate_equations_concurrently:
            self._integrate_concurrently(state)
        else:
            self._integrate_sequentially(state)
        logger.debug("Variational propagation finished: %s (%s)",
                     self._termination_reason.value,
                     "concurrent" if integrate_equations_concurrently else "sequential")

        if len(self._phi_history):
            self._interface = StateTransitionInterface(
                self._phi_history, self._s_history,
                self._parameters.state_parameter_size)
        if self._clear_numerical_solutions:
            self._dynamics_simulator.clear_histories()
            if self._variational_propagator is not None:
                self._variational_propagator.clear_histories()
            self._phi_history._clear()
            self._s_history._clear()

    def _integrate_concurrently(self, state):
        propagator = self._concurrent_propagator
        self._dynamics_simulator = propagator
        details = propagator.integrate_equations_of_motion(
            self._variational_dynamics.augment(state))
        self._termination_reason = details.reason
        for epoch, augmented in propagator.unprocessed_state_history.items():
            _, phi, s = self._variational_dynamics.split(augmented)
            self._phi_history._append(epoch, phi)
            self._s_history._append(epoch, s)

    def _integrate_sequentially(self, state):
        settings = (self._variational_only_integrator_settings or
                    self._integrator_settings)
        if settings.integrator_type == IntegratorType.TAYLOR:
            raise ConfigurationError(
                "Sequential variational equations require a Runge-Kutta integrator; "
                "pass variational_only_integrator_settings"
            )
        self._dynamics_simulator = self._equations_propagator
        details = self._equations_propagator.integrate_equations_of_motion(state)
        self._termination_reason = details.reason
        history = self._equations_propagator.unprocessed_state_history
        if not details.successful or len(history) == 0:
            return

        dynamics = VariationalOnlyDynamics(
            self._propagator_settings.dynamics, history.copy(),
            self._parameters.sensitivity_columns)
        variational_settings = PropagatorSettings(
            dynamics=dynamics,
            initial_state=dynamics.initial_variational_state(),
            initial_time=history.initial_epoch,
            termination_settings=time_termination(history.final_epoch),
        )
        self._variational_propagator = DynamicsPropagator(
            self._bodies, settings, variational_settings, integrate_on_creation=False)
        variational_details = self._variational_propagator.integrate_to_termination()
        if not variational_details.successful:
            self._termination_reason = variational_details.reason
        for epoch, values in self._variational_propagator.unprocessed_state_history.items():
            phi, s = dynamics.split(values)
            self._phi_history._append(epoch, phi)
            self._s_history._append(epoch, s)

    def _initial_state(self, initial_states):
        if initial_states is not None:
            return initial_states
        state_parameter = self._parameters.initial_state_parameter
        if state_parameter is not None:
            return state_parameter.get_value()
        return self._propagator_settings.initial_state

    def _reset_variational_histories(self):
        self._phi_history = History()
        self._s_history = History()
        self._interface = None
        self._variational_propagator = None

    # ========== PARAMETERS ==========
    @property
    def parameter_vector(self) -> np.ndarray:
        return self._parameters.values

    @parameter_vector.setter
    def parameter_vector(self, values):
        self._parameters.values = values

    @property
    def estimated_parameters(self) -> EstimatableParameterSet:
        return self._parameters

    # ========== RESULTS ==========
    @property
    def state_history(self) -> StateHistory:
        return self._dynamics_simulator.state_history

    @property
    def state_transition_matrix_history(self) -> History:
        return self._phi_history

    @property
    def sensitivity_matrix_history(self) -> History:
        return self._s_history

    @property
    def variational_equations_history(self) -> History:
        """Epoch -> [Phi | S], shape (n, n + p)."""
        combined = History()
        for epoch, phi in self._phi_history.items():
            combined._append(epoch, np.hstack([phi, self._s_history[epoch]]))
        return combined

    @property
    def state_transition_interface(self) -> Optional[StateTransitionInterface]:
        """Interface of the last full run; None after a dynamics-only run."""
        return self._interface

    @property
    def dynamics_simulator(self) -> DynamicsPropagator:
        """Propagator used by the last run."""
        return self._dynamics_simulator

    @property
    def termination_reason(self) -> TerminationReason:
        return self._termination_reason

    @property
    def integration_completed_successfully(self) -> bool:
        return self._termination_reason not in (TerminationReason.NOT_TERMINATED,
                                                TerminationReason.NONFINITE_STATE)

    def __repr__(self):
        return (f"VariationalEquationsPropagator(parameters={self._parameters.size}, "
                f"reason={self._termination_reason.value})")
