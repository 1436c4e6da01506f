"""
Dynamics propagation over a single arc.

``DynamicsPropagator`` drives an integrator against a state derivative
provider from the arc's initial epoch until a termination condition fires.
It records the processed and unprocessed state histories, dependent
variables, and cumulative performance counters. Numerical failures never
raise: a non-finite state stops the run, keeps the history up to the last
valid step and reports ``TerminationReason.NONFINITE_STATE``.

Examples
--------
>>> from dromos import defaults, accelerations, integrators, termination
>>> bodies = defaults.create_earth_system(spacecraft_names=("Sat",))
>>> settings = translational_propagator_settings(
...     bodies, "Sat", "Earth", [accelerations.point_mass_gravity("Earth")],
...     initial_state=[7000.0, 0, 0, 0, 7.546, 0], initial_time=0.0,
...     termination_settings=termination.time_termination(3600.0))
>>> propagator = DynamicsPropagator(bodies, integrators.runge_kutta_4(10.0),
...                                 settings)
>>> propagator.termination_reason
<TerminationReason.EPOCH_LIMIT_REACHED: 'epoch_limit_reached'>
"""

from dataclasses import dataclass, replace
import logging
from typing import Callable, Dict, Optional, Sequence, Tuple
import numpy as np

from .accelerations import AccelerationSettings, create_translational_dynamics
from .bodies import SystemOfBodies, TabulatedEphemeris
from .config import config
from .dependent_variables import (DependentVariableSettings,
                                  create_dependent_variable_function,
                                  create_single_dependent_variable_function)
from .dynamics import StateDerivativeProvider, VariationalDynamics
from .exceptions import ConfigurationError, IntegrationFailure
from .history import History, StateHistory
from .integrators import IntegratorSettings, create_integrator
from .termination import (TerminationReason, TerminationSettings,
                          create_termination_condition)
from .utils import Timer, as_state_vector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PropagatorSettings:
    """
    Immutable description of one propagation arc.

    Attributes
    ----------
    dynamics : StateDerivativeProvider
        Equations of motion
    initial_state : np.ndarray
        State at ``initial_time``; size must equal ``dynamics.state_size``
    initial_time : float
        Start epoch of the arc [s]
    termination_settings : TerminationSettings
        When to stop
    propagated_body : str, optional
        Body whose state is propagated (translational propagation)
    central_body : str, optional
        Origin of the propagated state (translational propagation)
    dependent_variables : tuple of DependentVariableSettings
        Quantities saved on every step
    state_processor : callable, optional
        ``processor(state) -> array`` converting the propagated state to
        the processed (user-facing) representation
    """
    dynamics: StateDerivativeProvider
    initial_state: np.ndarray
    initial_time: float
    termination_settings: TerminationSettings
    propagated_body: Optional[str] = None
    central_body: Optional[str] = None
    dependent_variables: Tuple[DependentVariableSettings, ...] = ()
    state_processor: Optional[Callable] = None

    def __post_init__(self):
        if not isinstance(self.dynamics, StateDerivativeProvider):
            raise ConfigurationError(
                f"dynamics must be a StateDerivativeProvider, "
                f"got {type(self.dynamics).__name__}"
            )
        state = as_state_vector(self.initial_state, "Initial state")
        if state.size != self.dynamics.state_size:
            raise ConfigurationError(
                f"Initial state has {state.size} components, dynamics expect "
                f"{self.dynamics.state_size}"
            )
        state.setflags(write=False)
        object.__setattr__(self, 'initial_state', state)
        object.__setattr__(self, 'initial_time', float(self.initial_time))
        object.__setattr__(self, 'dependent_variables',
                           tuple(self.dependent_variables))
        if not isinstance(self.termination_settings, TerminationSettings):
            raise ConfigurationError(
                f"Expected TerminationSettings, "
                f"got {type(self.termination_settings).__name__}"
            )
        if (self.propagated_body is None) != (self.central_body is None):
            raise ConfigurationError(
                "propagated_body and central_body must be given together"
            )


def translational_propagator_settings(bodies: SystemOfBodies,
                                      propagated_body: str,
                                      central_body: str,
                                      acceleration_settings: Sequence[AccelerationSettings],
                                      initial_state,
                                      initial_time: float,
                                      termination_settings: TerminationSettings,
                                      dependent_variables: Sequence[DependentVariableSettings] = (),
                                      state_processor: Optional[Callable] = None
                                      ) -> PropagatorSettings:
    """
    Settings for Cartesian propagation of one body around a central body.

    The equations of motion are built with
    ``accelerations.create_translational_dynamics``.
    """
    dynamics = create_translational_dynamics(bodies, propagated_body,
                                             central_body, acceleration_settings)
    return PropagatorSettings(
        dynamics=dynamics,
        initial_state=initial_state,
        initial_time=initial_time,
        termination_settings=termination_settings,
        propagated_body=propagated_body,
        central_body=central_body,
        dependent_variables=tuple(dependent_variables),
        state_processor=state_processor,
    )


@dataclass(frozen=True)
class TerminationDetails:
    """How far a propagation run got and why it stopped."""
    reason: TerminationReason
    final_time: Optional[float]
    number_of_steps: int

    @property
    def successful(self) -> bool:
        return self.reason not in (TerminationReason.NOT_TERMINATED,
                                   TerminationReason.NONFINITE_STATE)

    def raise_for_failure(self) -> None:
        """Raise IntegrationFailure if the run stopped on a non-finite state."""
        if self.reason == TerminationReason.NONFINITE_STATE:
            raise IntegrationFailure(
                f"Non-finite state after {self.number_of_steps} steps; last "
                f"valid epoch {self.final_time}"
            )


class DynamicsPropagator:
    """
    Propagator for one arc of a state derivative provider.

    Parameters
    ----------
    bodies : SystemOfBodies
        Environment handle; used by dependent variables and to store the
        integrated result
    integrator_settings : IntegratorSettings
        Integrator configuration
    propagator_settings : PropagatorSettings
        Arc configuration
    integrate_on_creation : bool, optional
        Propagate to termination immediately.
        Default: config.DEFAULT_INTEGRATE_ON_CREATION
    clear_numerical_solutions : bool
        Drop the histories once a run has finished (and its result has
        been stored if ``set_integrated_result`` is set)
    set_integrated_result : bool
        Write the propagated trajectory into the propagated body as a
        tabulated ephemeris relative to the central body

    Notes
    -----
    ``integrate_by_step`` with the same cumulative number of steps gives
    the same history as ``integrate_to_termination``; the integrator state
    carries over between calls, including the adaptive step size.
    """

    def __init__(self, bodies: SystemOfBodies,
                 integrator_settings: IntegratorSettings,
                 propagator_settings: PropagatorSettings,
                 integrate_on_creation: Optional[bool] = None,
                 clear_numerical_solutions: bool = False,
                 set_integrated_result: bool = False):
        if not isinstance(integrator_settings, IntegratorSettings):
            raise ConfigurationError(
                f"Expected IntegratorSettings, got {type(integrator_settings).__name__}"
            )
        if not isinstance(propagator_settings, PropagatorSettings):
            raise ConfigurationError(
                f"Expected PropagatorSettings, got {type(propagator_settings).__name__}"
            )
        self._bodies = bodies
        self._integrator_settings = integrator_settings
        self._propagator_settings = propagator_settings
        self._dynamics = propagator_settings.dynamics
        self._integrator = create_integrator(integrator_settings)
        self._clear_numerical_solutions = clear_numerical_solutions
        self._set_integrated_result = set_integrated_result

        settings = propagator_settings
        for name in (settings.propagated_body, settings.central_body):
            if name is not None:
                bodies.get(name)
        if set_integrated_result and settings.propagated_body is None:
            raise ConfigurationError(
                "set_integrated_result requires a propagated body and a central body"
            )

        # Dependent variables see the canonical state of the wrapped dynamics
        canonical = self._dynamics
        if isinstance(canonical, VariationalDynamics):
            canonical = canonical.dynamics
        self._dependent_variable_function, self._dependent_variable_ids = \
            create_dependent_variable_function(settings.dependent_variables, bodies,
                                               canonical, settings.propagated_body,
                                               settings.central_body)

        def dependent_variable_factory(variable_settings):
            return create_single_dependent_variable_function(
                variable_settings, bodies, canonical,
                settings.propagated_body, settings.central_body)

        self._dependent_variable_factory = dependent_variable_factory
        self._termination = self._create_termination(settings)

        self._state_history = StateHistory()
        self._unprocessed_state_history = StateHistory()
        self._dependent_variable_history = History()
        self._function_evaluations: Dict[float, int] = {}
        self._computation_time: Dict[float, float] = {}
        self._running = False
        self._steps = 0
        self._elapsed = 0.0
        self._final_time = None
        self._termination_reason = TerminationReason.NOT_TERMINATED

        if integrate_on_creation is None:
            integrate_on_creation = config.DEFAULT_INTEGRATE_ON_CREATION
        if integrate_on_creation:
            self.integrate_to_termination()

    # ========== INTEGRATION ==========
    def integrate_to_termination(self) -> TerminationDetails:
        """Propagate from the arc's initial state until termination."""
        return self.integrate_equations_of_motion(None)

    def integrate_equations_of_motion(self, initial_state=None) -> TerminationDetails:
        """
        Propagate from ``initial_state`` at the arc's initial epoch.

        Parameters
        ----------
        initial_state : array_like, optional
            Replaces the initial state of the propagator settings for this
            run. Default: the settings' initial state.

        Returns
        -------
        TerminationDetails
            Reason, final epoch and number of steps of the run
        """
        self._start(initial_state)
        while self._running:
            self._step()
        return self.termination_details

    def integrate_by_step(self, number_of_steps: int = 1) -> bool:
        """
        Take up to ``number_of_steps`` integrator steps.

        Starts a new run from the initial epoch if none has been started.
        Fewer steps are taken if the run terminates. Once the run has
        terminated no steps are taken and its histories are kept; start a
        new run with ``integrate_to_termination``.

        Returns
        -------
        bool
            Whether the run has terminated
        """
        if number_of_steps < 1:
            raise ConfigurationError(
                f"Number of steps must be positive, got {number_of_steps}"
            )
        if self.is_terminal():
            return True
        if not self._running:
            self._start(None)
        for _ in range(number_of_steps):
            if not self._running:
                break
            self._step()
        return self.is_terminal()

    def is_terminal(self) -> bool:
        """Whether the last step satisfied a termination condition."""
        return self._termination_reason != TerminationReason.NOT_TERMINATED

    # ========== ARC RESETS ==========
    def reset_initial_propagation_time(self, initial_time: float) -> None:
        """
        Set the start epoch used by the next run.

        The current histories and any run in progress are not affected.

        Raises
        ------
        ConfigurationError
            If the termination settings do not allow a run from ``initial_time``
        """
        settings = replace(self._propagator_settings, initial_time=initial_time)
        self._create_termination(settings)
        self._propagator_settings = settings

    def reset_propagation_termination_conditions(
            self, termination_settings: TerminationSettings) -> None:
        """
        Set the termination settings used by the next run.

        The current histories and any run in progress are not affected.
        """
        settings = replace(self._propagator_settings,
                           termination_settings=termination_settings)
        self._create_termination(settings)
        self._propagator_settings = settings

    def _create_termination(self, settings):
        return create_termination_condition(
            settings.termination_settings, settings.initial_time,
            self._dependent_variable_factory)

    def _start(self, initial_state):
        settings = self._propagator_settings
        if initial_state is None:
            state = np.array(settings.initial_state)
        else:
            state = as_state_vector(initial_state, "Initial state")
            if state.size != self._dynamics.state_size:
                raise ConfigurationError(
                    f"Initial state has {state.size} components, dynamics "
                    f"expect {self._dynamics.state_size}"
                )
        self.clear_histories()
        self._final_time = None
        self._steps = 0
        self._elapsed = 0.0
        self._termination_reason = TerminationReason.NOT_TERMINATED
        self._termination = self._create_termination(settings)
        self._integrator.initialize(self._dynamics, settings.initial_time, state)
        self._running = True

        if not np.all(np.isfinite(state)):
            self._finish(TerminationReason.NONFINITE_STATE)
            return
        propagated = self._record(settings.initial_time, state)
        reason = self._termination.check(settings.initial_time, propagated, 0, 0.0)
        if reason is not None:
            self._finish(reason)

    def _step(self):
        limit = self._termination.time_limit()
        if limit is not None and limit <= self._integrator.time:
            limit = None
        with Timer(verbose=False) as timer:
            result = self._integrator.step(limit)
        self._elapsed += timer.elapsed
        self._steps += 1
        if not result.success:
            self._finish(TerminationReason.NONFINITE_STATE)
            return
        propagated = self._record(result.time, result.state)
        reason = self._termination.check(result.time, propagated, self._steps,
                                         self._elapsed)
        if reason is not None:
            self._finish(reason)

    def _record(self, time, raw_state):
        propagated = raw_state[:self._dynamics.propagated_state_size]
        processor = self._propagator_settings.state_processor
        processed = processor(propagated) if processor is not None else propagated
        self._unprocessed_state_history._append(time, raw_state)
        self._state_history._append(time, processed)
        if self._dependent_variable_function is not None:
            self._dependent_variable_history._append(
                time, self._dependent_variable_function(time, propagated))
        self._function_evaluations[time] = self._integrator.function_evaluations
        self._computation_time[time] = self._elapsed
        self._final_time = time
        return propagated

    def _finish(self, reason):
        self._running = False
        self._termination_reason = reason
        logger.debug("Propagation terminated: %s after %d steps at t=%s",
                     reason.value, self._steps,
                     self._final_time)
        settings = self._propagator_settings
        if self._set_integrated_result and len(self._unprocessed_state_history):
            self._bodies.set_ephemeris(
                settings.propagated_body,
                TabulatedEphemeris(self._unprocessed_state_history),
                settings.central_body,
            )
        if self._clear_numerical_solutions:
            self.clear_histories()

    def clear_histories(self):
        """Drop all histories of the current run."""
        self._state_history._clear()
        self._unprocessed_state_history._clear()
        self._dependent_variable_history._clear()
        self._function_evaluations.clear()
        self._computation_time.clear()

    # ========== RESULTS ==========
    @property
    def state_history(self) -> StateHistory:
        """Processed states of the current run."""
        return self._state_history

    @property
    def unprocessed_state_history(self) -> StateHistory:
        """States as integrated, e.g. including variational equations."""
        return self._unprocessed_state_history

    @property
    def dependent_variable_history(self) -> History:
        return self._dependent_variable_history

    @property
    def dependent_variable_ids(self) -> Dict[Tuple[int, int], str]:
        """Maps (start index, size) of each dependent variable to its description."""
        return dict(self._dependent_variable_ids)

    @property
    def cumulative_number_of_function_evaluations(self) -> Dict[float, int]:
        return dict(self._function_evaluations)

    @property
    def cumulative_computation_time_history(self) -> Dict[float, float]:
        """Integrator wall time [s] accumulated up to each epoch."""
        return dict(self._computation_time)

    @property
    def termination_reason(self) -> TerminationReason:
        return self._termination_reason

    @property
    def propagation_termination_reason(self) -> TerminationReason:
        return self._termination_reason

    @property
    def initial_propagation_time(self) -> float:
        """Start epoch of the next run [s]."""
        return self._propagator_settings.initial_time

    @property
    def propagation_termination_condition(self) -> TerminationSettings:
        """Termination settings of the next run."""
        return self._propagator_settings.termination_settings

    @property
    def termination_details(self) -> TerminationDetails:
        return TerminationDetails(self._termination_reason, self._final_time,
                                  self._steps)

    @property
    def integration_completed_successfully(self) -> bool:
        return self.termination_details.successful

    @property
    def integrator_settings(self) -> IntegratorSettings:
        return self._integrator_settings

    @property
    def propagator_settings(self) -> PropagatorSettings:
        return self._propagator_settings

    @property
    def state_derivative_function(self) -> StateDerivativeProvider:
        return self._dynamics

    @property
    def bodies(self) -> SystemOfBodies:
        return self._bodies

    def __repr__(self):
        return (f"DynamicsPropagator(steps={self._steps}, "
                f"reason={self._termination_reason.value}, "
                f"history={len(self._state_history)})")
