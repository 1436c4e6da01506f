"""
Estimatable parameters.

The parameter vector is ordered with the initial state of the propagated
body first, followed by non-state parameters (model constants of the
dynamics and observation biases). Setting the vector writes the values back
to where they live: the dynamics' named parameters, the stored initial
state, or the bias value used by the observation simulators.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import numpy as np

from .exceptions import ConfigurationError
from .observables import LinkDefinition, ObservableType, observable_size


class ParameterType(Enum):
    INITIAL_STATE = 'initial_state'
    GRAVITATIONAL_PARAMETER = 'gravitational_parameter'
    J2 = 'j2'
    DRAG_COEFFICIENT = 'drag_coefficient'
    EMPIRICAL_ACCELERATION = 'empirical_acceleration'
    THRUST_MAGNITUDE = 'thrust_magnitude'
    CONSTANT_OBSERVATION_BIAS = 'constant_observation_bias'
    MODEL_CONSTANT = 'model_constant'


@dataclass(frozen=True)
class EstimatableParameterSettings:
    """
    Tagged parameter variant.

    Attributes
    ----------
    parameter_type : ParameterType
        Kind of parameter
    body : str, optional
        Body the parameter belongs to
    name : str, optional
        Dynamics parameter name (MODEL_CONSTANT)
    link_ends : LinkDefinition, optional
        Link of the biased observable (CONSTANT_OBSERVATION_BIAS)
    observable_type : ObservableType, optional
        Biased observable (CONSTANT_OBSERVATION_BIAS)
    """
    parameter_type: ParameterType
    body: Optional[str] = None
    name: Optional[str] = None
    link_ends: Optional[LinkDefinition] = None
    observable_type: Optional[ObservableType] = None

    def __post_init__(self):
        if not isinstance(self.parameter_type, ParameterType):
            raise ConfigurationError(f"Unknown parameter type {self.parameter_type!r}")
        if self.parameter_type == ParameterType.MODEL_CONSTANT and not self.name:
            raise ConfigurationError("Model constant parameter requires a name")
        if self.parameter_type == ParameterType.CONSTANT_OBSERVATION_BIAS and (
                self.link_ends is None or self.observable_type is None):
            raise ConfigurationError(
                "Observation bias parameter requires link ends and an observable type"
            )

    def dynamics_parameter_names(self) -> List[str]:
        t = self.parameter_type
        if t == ParameterType.MODEL_CONSTANT:
            return [self.name]
        if t == ParameterType.EMPIRICAL_ACCELERATION:
            return [f"empirical_acceleration_{axis}:{self.body}"
                    for axis in ('radial', 'along_track', 'cross_track')]
        return [f"{t.value}:{self.body}"]


# ========== SETTINGS FACTORIES ==========
def initial_state(body: Optional[str] = None) -> EstimatableParameterSettings:
    """Initial state of the propagated body (the full propagated state)."""
    return EstimatableParameterSettings(ParameterType.INITIAL_STATE, body)


def gravitational_parameter(body: str) -> EstimatableParameterSettings:
    return EstimatableParameterSettings(ParameterType.GRAVITATIONAL_PARAMETER, body)


def j2(body: str) -> EstimatableParameterSettings:
    return EstimatableParameterSettings(ParameterType.J2, body)


def drag_coefficient(body: str) -> EstimatableParameterSettings:
    return EstimatableParameterSettings(ParameterType.DRAG_COEFFICIENT, body)


def empirical_acceleration(body: str) -> EstimatableParameterSettings:
    """Radial, along-track and cross-track empirical accelerations (3 values)."""
    return EstimatableParameterSettings(ParameterType.EMPIRICAL_ACCELERATION, body)


def thrust_magnitude(body: str) -> EstimatableParameterSettings:
    return EstimatableParameterSettings(ParameterType.THRUST_MAGNITUDE, body)


def constant_observation_bias(link_ends: LinkDefinition,
                              observable_type: ObservableType
                              ) -> EstimatableParameterSettings:
    return EstimatableParameterSettings(ParameterType.CONSTANT_OBSERVATION_BIAS,
                                        link_ends=link_ends,
                                        observable_type=observable_type)


def model_constant(name: str) -> EstimatableParameterSettings:
    """Any named parameter of the dynamics, e.g. of a CallableDynamics."""
    return EstimatableParameterSettings(ParameterType.MODEL_CONSTANT, name=name)


# ========== PARAMETERS ==========
class EstimatableParameter(ABC):
    """One block of the parameter vector."""

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def get_value(self) -> np.ndarray:
        ...

    @abstractmethod
    def set_value(self, value: np.ndarray) -> None:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    def sensitivity_columns(self) -> List[Optional[str]]:
        """Dynamics parameter behind each component; None if it does not enter the dynamics."""
        return [None] * self.size


class InitialStateParameter(EstimatableParameter):

    def __init__(self, body: Optional[str], value):
        self.body = body
        self._value = np.array(value, dtype=float)

    @property
    def size(self):
        return self._value.size

    def get_value(self):
        return self._value.copy()

    def set_value(self, value):
        self._value = np.array(value, dtype=float)

    @property
    def description(self):
        return f"initial_state:{self.body}" if self.body else "initial_state"


class ModelParameter(EstimatableParameter):
    """Named parameters of a state derivative provider."""

    def __init__(self, dynamics, names: Sequence[str], parameter_type: ParameterType):
        for name in names:
            dynamics.parameter_index(name)
        self._dynamics = dynamics
        self.names = list(names)
        self.parameter_type = parameter_type

    @property
    def size(self):
        return len(self.names)

    def get_value(self):
        return np.array([self._dynamics.get_parameter(name) for name in self.names])

    def set_value(self, value):
        for name, v in zip(self.names, np.atleast_1d(value)):
            self._dynamics.set_parameter(name, v)

    @property
    def description(self):
        return ", ".join(self.names)

    @property
    def sensitivity_columns(self):
        return list(self.names)


class ObservationBiasParameter(EstimatableParameter):
    """Constant additive bias of one observable on one link."""

    def __init__(self, link_ends: LinkDefinition, observable_type: ObservableType):
        self.link_ends = link_ends
        self.observable_type = observable_type
        self._value = np.zeros(observable_size(observable_type))

    @property
    def size(self):
        return self._value.size

    def get_value(self):
        return self._value.copy()

    def set_value(self, value):
        self._value = np.array(value, dtype=float).reshape(self._value.shape)

    @property
    def description(self):
        return f"constant_bias:{self.observable_type.value}:{self.link_ends}"


class EstimatableParameterSet:
    """
    Ordered set of estimated parameters.

    Parameters
    ----------
    parameters : sequence of EstimatableParameter
        At most one InitialStateParameter; it is moved to the front.
    """

    def __init__(self, parameters: Sequence[EstimatableParameter]):
        state = [p for p in parameters if isinstance(p, InitialStateParameter)]
        others = [p for p in parameters if not isinstance(p, InitialStateParameter)]
        if len(state) > 1:
            raise ConfigurationError("Only one initial state can be estimated per arc")
        self._parameters = state + others
        if not self._parameters:
            raise ConfigurationError("At least one parameter must be estimated")

    @property
    def parameters(self) -> List[EstimatableParameter]:
        return list(self._parameters)

    @property
    def initial_state_parameter(self) -> Optional[InitialStateParameter]:
        first = self._parameters[0]
        return first if isinstance(first, InitialStateParameter) else None

    @property
    def state_parameter_size(self) -> int:
        state = self.initial_state_parameter
        return state.size if state is not None else 0

    @property
    def size(self) -> int:
        return sum(p.size for p in self._parameters)

    @property
    def non_state_parameter_size(self) -> int:
        return self.size - self.state_parameter_size

    @property
    def values(self) -> np.ndarray:
        return np.concatenate([p.get_value() for p in self._parameters])

    @values.setter
    def values(self, values):
        values = np.asarray(values, dtype=float)
        if values.shape != (self.size,):
            raise ConfigurationError(
                f"Parameter vector must have shape ({self.size},), got {values.shape}"
            )
        for p, block in zip(self._parameters, self.slices):
            p.set_value(values[block])

    @property
    def slices(self) -> List[slice]:
        slices = []
        start = 0
        for p in self._parameters:
            slices.append(slice(start, start + p.size))
            start += p.size
        return slices

    @property
    def sensitivity_columns(self) -> List[Optional[str]]:
        """Dynamics parameter of each non-state component, in vector order."""
        columns = []
        for p in self._parameters:
            if not isinstance(p, InitialStateParameter):
                columns.extend(p.sensitivity_columns)
        return columns

    @property
    def descriptions(self) -> List[str]:
        """One label per vector component."""
        labels = []
        for p in self._parameters:
            if p.size == 1:
                labels.append(p.description)
            else:
                labels.extend(f"{p.description}[{i}]" for i in range(p.size))
        return labels

    def bias_parameter(self, link_ends: LinkDefinition,
                       observable_type: ObservableType
                       ) -> Tuple[Optional[ObservationBiasParameter], Optional[slice]]:
        """Bias parameter of a link/observable and its slice in the vector."""
        for p, block in zip(self._parameters, self.slices):
            if (isinstance(p, ObservationBiasParameter) and
                    p.link_ends == link_ends and p.observable_type == observable_type):
                return p, block
        return None, None

    def __len__(self):
        return self.size

    def __repr__(self):
        return f"EstimatableParameterSet({self.descriptions})"


def create_parameter_set(parameter_settings: Sequence[EstimatableParameterSettings],
                         propagator_settings) -> EstimatableParameterSet:
    """
    Create the parameter set for an arc.

    Parameters
    ----------
    parameter_settings : sequence of EstimatableParameterSettings
        Parameters to estimate
    propagator_settings : PropagatorSettings
        Arc whose dynamics and initial state the parameters refer to

    Raises
    ------
    ConfigurationError
        For duplicated parameters, dynamics parameters that do not exist,
        or an initial state of a body other than the propagated body
    """
    dynamics = propagator_settings.dynamics
    parameters = []
    seen = set()
    for settings in parameter_settings:
        if not isinstance(settings, EstimatableParameterSettings):
            raise ConfigurationError(
                f"Expected EstimatableParameterSettings, got {type(settings).__name__}"
            )
        if settings in seen:
            raise ConfigurationError(f"Parameter {settings} is estimated twice")
        seen.add(settings)
        t = settings.parameter_type
        if t == ParameterType.INITIAL_STATE:
            if (settings.body is not None and
                    settings.body != propagator_settings.propagated_body):
                raise ConfigurationError(
                    f"Cannot estimate the initial state of '{settings.body}'; "
                    f"the propagated body is '{propagator_settings.propagated_body}'"
                )
            parameters.append(InitialStateParameter(
                propagator_settings.propagated_body, propagator_settings.initial_state))
        elif t == ParameterType.CONSTANT_OBSERVATION_BIAS:
            parameters.append(ObservationBiasParameter(settings.link_ends,
                                                       settings.observable_type))
        else:
            parameters.append(ModelParameter(
                dynamics, settings.dynamics_parameter_names(), t))
    return EstimatableParameterSet(parameters)
