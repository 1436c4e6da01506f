"""
Dependent variables: auxiliary quantities saved alongside a propagation.

Dependent variables are evaluated on every accepted step from the epoch and
the canonical propagated state. They are diagnostics only and never enter
the integration.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Tuple
import numpy as np

from .elements import cartesian_to_keplerian
from .exceptions import ConfigurationError


class DependentVariableType(Enum):
    RELATIVE_POSITION = 'relative_position'
    RELATIVE_VELOCITY = 'relative_velocity'
    RELATIVE_DISTANCE = 'relative_distance'
    RELATIVE_SPEED = 'relative_speed'
    ALTITUDE = 'altitude'
    KEPLERIAN_STATE = 'keplerian_state'
    TOTAL_ACCELERATION = 'total_acceleration'
    CUSTOM = 'custom'


_SIZES = {
    DependentVariableType.RELATIVE_POSITION: 3,
    DependentVariableType.RELATIVE_VELOCITY: 3,
    DependentVariableType.RELATIVE_DISTANCE: 1,
    DependentVariableType.RELATIVE_SPEED: 1,
    DependentVariableType.ALTITUDE: 1,
    DependentVariableType.KEPLERIAN_STATE: 6,
    DependentVariableType.TOTAL_ACCELERATION: 3,
}


@dataclass(frozen=True)
class DependentVariableSettings:
    """
    Tagged dependent-variable variant.

    Attributes
    ----------
    variable_type : DependentVariableType
        Kind of quantity
    body : str, optional
        Body the quantity describes. Default: the propagated body.
    relative_to : str, optional
        Reference body. Default: the central body.
    function : callable, optional
        ``function(time, state) -> array`` (CUSTOM)
    size : int, optional
        Output size of ``function`` (CUSTOM)
    name : str
        Label used in ``dependent_variable_ids`` (CUSTOM)
    """
    variable_type: DependentVariableType
    body: Optional[str] = None
    relative_to: Optional[str] = None
    function: Optional[Callable] = None
    size: Optional[int] = None
    name: str = "custom"

    def __post_init__(self):
        if not isinstance(self.variable_type, DependentVariableType):
            raise ConfigurationError(
                f"Unknown dependent variable type {self.variable_type!r}"
            )
        if self.variable_type == DependentVariableType.CUSTOM:
            if not callable(self.function):
                raise ConfigurationError("Custom dependent variable requires a function")
            if self.size is None or self.size < 1:
                raise ConfigurationError("Custom dependent variable requires size >= 1")

    @property
    def output_size(self) -> int:
        if self.variable_type == DependentVariableType.CUSTOM:
            return self.size
        return _SIZES[self.variable_type]

    @property
    def description(self) -> str:
        if self.variable_type == DependentVariableType.CUSTOM:
            return self.name
        text = self.variable_type.value
        if self.body is not None:
            text += f" of {self.body}"
        if self.relative_to is not None:
            text += f" w.r.t. {self.relative_to}"
        return text


# ========== SETTINGS FACTORIES ==========
def relative_position(body: Optional[str] = None,
                      relative_to: Optional[str] = None) -> DependentVariableSettings:
    return DependentVariableSettings(DependentVariableType.RELATIVE_POSITION,
                                     body, relative_to)


def relative_velocity(body: Optional[str] = None,
                      relative_to: Optional[str] = None) -> DependentVariableSettings:
    return DependentVariableSettings(DependentVariableType.RELATIVE_VELOCITY,
                                     body, relative_to)


def relative_distance(body: Optional[str] = None,
                      relative_to: Optional[str] = None) -> DependentVariableSettings:
    return DependentVariableSettings(DependentVariableType.RELATIVE_DISTANCE,
                                     body, relative_to)


def relative_speed(body: Optional[str] = None,
                   relative_to: Optional[str] = None) -> DependentVariableSettings:
    return DependentVariableSettings(DependentVariableType.RELATIVE_SPEED,
                                     body, relative_to)


def altitude(body: Optional[str] = None,
             relative_to: Optional[str] = None) -> DependentVariableSettings:
    """Distance above a spherical reference body [km]."""
    return DependentVariableSettings(DependentVariableType.ALTITUDE,
                                     body, relative_to)


def keplerian_state(body: Optional[str] = None,
                    relative_to: Optional[str] = None) -> DependentVariableSettings:
    """Osculating elements [a, e, i, omega, w, nu] w.r.t. the reference body."""
    return DependentVariableSettings(DependentVariableType.KEPLERIAN_STATE,
                                     body, relative_to)


def total_acceleration() -> DependentVariableSettings:
    """Acceleration of the propagated body from the equations of motion."""
    return DependentVariableSettings(DependentVariableType.TOTAL_ACCELERATION)


def custom_dependent_variable(function: Callable[[float, np.ndarray], np.ndarray],
                              size: int,
                              name: str = "custom") -> DependentVariableSettings:
    return DependentVariableSettings(DependentVariableType.CUSTOM,
                                     function=function, size=size, name=name)


# ========== EVALUATION ==========
def create_single_dependent_variable_function(settings: DependentVariableSettings,
                                              bodies, dynamics,
                                              propagated_body: Optional[str],
                                              central_body: Optional[str]
                                              ) -> Callable:
    """
    Build ``f(time, state) -> np.ndarray`` for one dependent variable.

    ``state`` is the canonical propagated state; for translational
    propagation it is the Cartesian state of ``propagated_body`` relative
    to ``central_body``.

    Raises
    ------
    ConfigurationError
        If the variable needs body geometry that the propagation does not
        provide, or refers to unknown bodies
    """
    t = settings.variable_type
    size = settings.output_size

    if t == DependentVariableType.CUSTOM:
        def custom(time, state):
            value = np.atleast_1d(np.asarray(settings.function(time, state),
                                             dtype=float))
            if value.size != size:
                raise ConfigurationError(
                    f"Dependent variable '{settings.name}' returned {value.size} "
                    f"values, expected {size}"
                )
            return value
        return custom

    if t == DependentVariableType.TOTAL_ACCELERATION:
        if dynamics.state_size < 6:
            raise ConfigurationError("Total acceleration requires a Cartesian state")
        return lambda time, state: np.asarray(dynamics.derivative(time, state))[3:6]

    if propagated_body is None or central_body is None:
        raise ConfigurationError(
            f"{t.value} requires a propagated body and a central body"
        )
    if dynamics.state_size < 6:
        raise ConfigurationError(f"{t.value} requires a Cartesian state")
    body = settings.body or propagated_body
    reference = settings.relative_to or central_body
    bodies.get(body)
    reference_body = bodies.get(reference)
    if t == DependentVariableType.ALTITUDE and reference_body.radius is None:
        raise ConfigurationError(f"Altitude requires a radius on '{reference}'")
    if (t == DependentVariableType.KEPLERIAN_STATE and
            reference_body.gravitational_parameter is None):
        raise ConfigurationError(
            f"Keplerian state requires a gravitational parameter on '{reference}'"
        )

    def relative(time, state):
        if body == propagated_body and reference == central_body:
            return np.asarray(state[:6], dtype=float)
        if body == propagated_body:
            absolute = bodies.state(central_body, time) + state[:6]
        else:
            absolute = bodies.state(body, time)
        if reference == propagated_body:
            origin = bodies.state(central_body, time) + state[:6]
        else:
            origin = bodies.state(reference, time)
        return absolute - origin

    evaluators = {
        DependentVariableType.RELATIVE_POSITION: lambda rel: rel[:3],
        DependentVariableType.RELATIVE_VELOCITY: lambda rel: rel[3:6],
        DependentVariableType.RELATIVE_DISTANCE:
            lambda rel: np.array([np.linalg.norm(rel[:3])]),
        DependentVariableType.RELATIVE_SPEED:
            lambda rel: np.array([np.linalg.norm(rel[3:6])]),
        DependentVariableType.ALTITUDE:
            lambda rel: np.array([np.linalg.norm(rel[:3]) - reference_body.radius]),
        DependentVariableType.KEPLERIAN_STATE:
            lambda rel: cartesian_to_keplerian(
                rel, reference_body.gravitational_parameter),
    }
    evaluate = evaluators[t]
    return lambda time, state: evaluate(relative(time, state))


def create_dependent_variable_function(settings: Sequence[DependentVariableSettings],
                                       bodies, dynamics,
                                       propagated_body: Optional[str] = None,
                                       central_body: Optional[str] = None
                                       ) -> Tuple[Optional[Callable],
                                                  Dict[Tuple[int, int], str]]:
    """
    Build the concatenated dependent-variable function and its column layout.

    Returns
    -------
    function : callable or None
        ``f(time, state) -> np.ndarray``; None if no variables are requested
    ids : dict
        Maps ``(start_index, size)`` to a description of each variable
    """
    settings = list(settings)
    if not settings:
        return None, {}
    functions = []
    ids = {}
    start = 0
    for entry in settings:
        if not isinstance(entry, DependentVariableSettings):
            raise ConfigurationError(
                f"Expected DependentVariableSettings, got {type(entry).__name__}"
            )
        functions.append(create_single_dependent_variable_function(
            entry, bodies, dynamics, propagated_body, central_body))
        ids[(start, entry.output_size)] = entry.description
        start += entry.output_size

    def evaluate(time, state):
        return np.concatenate([f(time, state) for f in functions])

    return evaluate, ids
