"""
Propagation termination settings and conditions.

Termination settings are tagged variants (``TerminationType`` plus payload)
built with the factory functions below. A propagator turns them into a
``TerminationCondition`` that is checked after every accepted step, and at
the initial epoch, and reports a ``TerminationReason`` once it fires.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple
import numpy as np

from .config import config
from .exceptions import ConfigurationError


class TerminationReason(Enum):
    NOT_TERMINATED = 'not_terminated'
    EPOCH_LIMIT_REACHED = 'epoch_limit_reached'
    CUSTOM_CONDITION_SATISFIED = 'custom_condition_satisfied'
    NONFINITE_STATE = 'nonfinite_state'
    BUDGET_EXHAUSTED = 'budget_exhausted'


class TerminationType(Enum):
    TIME = 'time'
    CUSTOM = 'custom'
    STEP_LIMIT = 'step_limit'
    CPU_TIME = 'cpu_time'
    DEPENDENT_VARIABLE = 'dependent_variable'
    HYBRID = 'hybrid'


@dataclass(frozen=True)
class TerminationSettings:
    """
    Tagged termination variant.

    Attributes
    ----------
    termination_type : TerminationType
        Kind of condition
    final_time : float, optional
        Final epoch [s] (TIME)
    terminate_exactly_on_final_condition : bool
        Land the last step exactly on ``final_time`` (TIME)
    condition : callable, optional
        ``condition(time, state) -> bool`` (CUSTOM)
    maximum_steps : int, optional
        Step budget (STEP_LIMIT)
    cpu_time_limit : float, optional
        Cumulative computation-time budget [s] (CPU_TIME)
    dependent_variable : DependentVariableSettings, optional
        Variable to monitor (DEPENDENT_VARIABLE)
    limit_value : float, optional
        Threshold for the monitored variable (DEPENDENT_VARIABLE)
    use_as_lower_limit : bool
        Terminate when the variable drops to or below the threshold
        instead of rising to or above it (DEPENDENT_VARIABLE)
    component : int
        Component of a vector-valued dependent variable (DEPENDENT_VARIABLE)
    conditions : tuple of TerminationSettings
        Sub-conditions (HYBRID)
    fulfill_single_condition : bool
        Terminate when any sub-condition fires (True) or only when all
        fire on the same step (False) (HYBRID)
    """
    termination_type: TerminationType
    final_time: Optional[float] = None
    terminate_exactly_on_final_condition: bool = True
    condition: Optional[Callable] = None
    maximum_steps: Optional[int] = None
    cpu_time_limit: Optional[float] = None
    dependent_variable: Optional[object] = None
    limit_value: Optional[float] = None
    use_as_lower_limit: bool = False
    component: int = 0
    conditions: Tuple["TerminationSettings", ...] = ()
    fulfill_single_condition: bool = True

    def __post_init__(self):
        t = self.termination_type
        if not isinstance(t, TerminationType):
            raise ConfigurationError(f"Unknown termination type {t!r}")
        if t == TerminationType.TIME and (self.final_time is None or
                                          not np.isfinite(self.final_time)):
            raise ConfigurationError("Time termination requires a finite final time")
        if t == TerminationType.CUSTOM and not callable(self.condition):
            raise ConfigurationError("Custom termination requires a callable condition")
        if t == TerminationType.STEP_LIMIT and (self.maximum_steps is None or
                                                self.maximum_steps < 1):
            raise ConfigurationError("Step-limit termination requires maximum_steps >= 1")
        if t == TerminationType.CPU_TIME and (self.cpu_time_limit is None or
                                              self.cpu_time_limit <= 0):
            raise ConfigurationError("CPU-time termination requires a positive limit")
        if t == TerminationType.DEPENDENT_VARIABLE and (
                self.dependent_variable is None or self.limit_value is None):
            raise ConfigurationError(
                "Dependent-variable termination requires a variable and a limit"
            )
        if t == TerminationType.HYBRID:
            if not self.conditions:
                raise ConfigurationError("Hybrid termination requires sub-conditions")
            object.__setattr__(self, 'conditions', tuple(self.conditions))
            for sub in self.conditions:
                if not isinstance(sub, TerminationSettings):
                    raise ConfigurationError(
                        f"Hybrid sub-condition must be TerminationSettings, "
                        f"got {type(sub).__name__}"
                    )


# ========== SETTINGS FACTORIES ==========
def time_termination(final_time: float,
                     terminate_exactly_on_final_condition: bool = True
                     ) -> TerminationSettings:
    """Stop at ``final_time``, by default landing exactly on it."""
    return TerminationSettings(
        TerminationType.TIME, final_time=final_time,
        terminate_exactly_on_final_condition=terminate_exactly_on_final_condition,
    )


def custom_termination(condition: Callable[[float, np.ndarray], bool]
                       ) -> TerminationSettings:
    return TerminationSettings(TerminationType.CUSTOM, condition=condition)


def step_limit_termination(maximum_steps: int) -> TerminationSettings:
    return TerminationSettings(TerminationType.STEP_LIMIT,
                               maximum_steps=int(maximum_steps))


def cpu_time_termination(cpu_time_limit: float) -> TerminationSettings:
    return TerminationSettings(TerminationType.CPU_TIME,
                               cpu_time_limit=cpu_time_limit)


def dependent_variable_termination(dependent_variable, limit_value: float,
                                   use_as_lower_limit: bool = False,
                                   component: int = 0) -> TerminationSettings:
    """
    Stop when a dependent variable crosses a threshold.

    Examples
    --------
    >>> from dromos.dependent_variables import altitude
    >>> settings = dependent_variable_termination(
    ...     altitude("Sat", "Earth"), 100.0, use_as_lower_limit=True)
    """
    return TerminationSettings(
        TerminationType.DEPENDENT_VARIABLE,
        dependent_variable=dependent_variable, limit_value=limit_value,
        use_as_lower_limit=use_as_lower_limit, component=component,
    )


def hybrid_termination(conditions: Sequence[TerminationSettings],
                       fulfill_single_condition: bool = True
                       ) -> TerminationSettings:
    return TerminationSettings(TerminationType.HYBRID,
                               conditions=tuple(conditions),
                               fulfill_single_condition=fulfill_single_condition)


# ========== CONDITIONS ==========
class TerminationCondition(ABC):
    """Runtime termination check built from TerminationSettings."""

    @abstractmethod
    def check(self, time: float, state: np.ndarray, number_of_steps: int,
              computation_time: float) -> Optional[TerminationReason]:
        """Return the reason if the condition is met, None otherwise."""

    def time_limit(self) -> Optional[float]:
        """Epoch the integrator must land on exactly, if any."""
        return None


class TimeTerminationCondition(TerminationCondition):

    def __init__(self, final_time, terminate_exactly):
        self.final_time = float(final_time)
        self.terminate_exactly = terminate_exactly
        self._tol = config.TIME_TOLERANCE * max(1.0, abs(self.final_time))

    def check(self, time, state, number_of_steps, computation_time):
        if time >= self.final_time - self._tol:
            return TerminationReason.EPOCH_LIMIT_REACHED
        return None

    def time_limit(self):
        return self.final_time if self.terminate_exactly else None


class CustomTerminationCondition(TerminationCondition):

    def __init__(self, condition):
        self.condition = condition

    def check(self, time, state, number_of_steps, computation_time):
        if self.condition(time, state):
            return TerminationReason.CUSTOM_CONDITION_SATISFIED
        return None


class StepLimitTerminationCondition(TerminationCondition):

    def __init__(self, maximum_steps):
        self.maximum_steps = maximum_steps

    def check(self, time, state, number_of_steps, computation_time):
        if number_of_steps >= self.maximum_steps:
            return TerminationReason.BUDGET_EXHAUSTED
        return None


class CPUTimeTerminationCondition(TerminationCondition):

    def __init__(self, cpu_time_limit):
        self.cpu_time_limit = cpu_time_limit

    def check(self, time, state, number_of_steps, computation_time):
        if computation_time >= self.cpu_time_limit:
            return TerminationReason.BUDGET_EXHAUSTED
        return None


class DependentVariableTerminationCondition(TerminationCondition):

    def __init__(self, variable_function, limit_value, use_as_lower_limit,
                 component):
        self.variable_function = variable_function
        self.limit_value = limit_value
        self.use_as_lower_limit = use_as_lower_limit
        self.component = component

    def check(self, time, state, number_of_steps, computation_time):
        value = np.atleast_1d(self.variable_function(time, state))[self.component]
        if self.use_as_lower_limit:
            reached = value <= self.limit_value
        else:
            reached = value >= self.limit_value
        return TerminationReason.CUSTOM_CONDITION_SATISFIED if reached else None


class HybridTerminationCondition(TerminationCondition):
    """Any-of or all-of combination; the first firing sub-condition gives the reason."""

    def __init__(self, conditions, fulfill_single_condition):
        self.conditions = list(conditions)
        self.fulfill_single_condition = fulfill_single_condition

    def check(self, time, state, number_of_steps, computation_time):
        reasons = [c.check(time, state, number_of_steps, computation_time)
                   for c in self.conditions]
        fired = [r for r in reasons if r is not None]
        if self.fulfill_single_condition:
            return fired[0] if fired else None
        return fired[0] if len(fired) == len(reasons) else None

    def time_limit(self):
        if not self.fulfill_single_condition:
            return None
        limits = [c.time_limit() for c in self.conditions
                  if c.time_limit() is not None]
        return min(limits) if limits else None


def create_termination_condition(settings: TerminationSettings,
                                 initial_time: float,
                                 dependent_variable_factory: Optional[Callable] = None
                                 ) -> TerminationCondition:
    """
    Build the runtime condition for a propagation starting at ``initial_time``.

    Parameters
    ----------
    settings : TerminationSettings
        Termination variant
    initial_time : float
        Start epoch of the arc [s]
    dependent_variable_factory : callable, optional
        ``factory(dependent_variable_settings) -> f(t, state)``, required for
        dependent-variable conditions

    Raises
    ------
    ConfigurationError
        If the settings are not TerminationSettings, a final time lies
        before the initial time, or a dependent-variable condition cannot
        be evaluated
    """
    if not isinstance(settings, TerminationSettings):
        raise ConfigurationError(
            f"Expected TerminationSettings, got {type(settings).__name__}"
        )
    t = settings.termination_type
    if t == TerminationType.TIME:
        if settings.final_time < initial_time:
            raise ConfigurationError(
                f"Final time {settings.final_time} precedes initial time "
                f"{initial_time}; only forward propagation is supported"
            )
        return TimeTerminationCondition(settings.final_time,
                                        settings.terminate_exactly_on_final_condition)
    if t == TerminationType.CUSTOM:
        return CustomTerminationCondition(settings.condition)
    if t == TerminationType.STEP_LIMIT:
        return StepLimitTerminationCondition(settings.maximum_steps)
    if t == TerminationType.CPU_TIME:
        return CPUTimeTerminationCondition(settings.cpu_time_limit)
    if t == TerminationType.DEPENDENT_VARIABLE:
        if dependent_variable_factory is None:
            raise ConfigurationError(
                "Dependent-variable termination is not available for this propagation"
            )
        return DependentVariableTerminationCondition(
            dependent_variable_factory(settings.dependent_variable),
            settings.limit_value, settings.use_as_lower_limit, settings.component,
        )
    return HybridTerminationCondition(
        [create_termination_condition(sub, initial_time, dependent_variable_factory)
         for sub in settings.conditions],
        settings.fulfill_single_condition,
    )
