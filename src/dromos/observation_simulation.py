"""
Observation simulators, observation collections and simulation.

An ``ObservationSimulator`` evaluates one observable on one link: it looks
up the inertial link end states in the body arena, applies the observation
model and adds the observation bias. ``simulate_observations`` turns
simulation settings into an ``ObservationCollection``; observations that
fail viability are kept in the collection's rejected list instead of being
dropped.
"""

from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Sequence, Tuple
import numpy as np
import pandas as pd

from .bodies import SystemOfBodies
from .exceptions import ConfigurationError
from .observables import (LinkDefinition, LinkEndType, ObservableType,
                          create_observation_model)
from .viability import ViabilitySettings, create_viability_calculators

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservationModelSettings:
    """
    Observable type and link of one observation model.

    Attributes
    ----------
    observable_type : ObservableType
        Observable kind
    link_ends : LinkDefinition
        Link end roles and identifiers
    bias : tuple of float, optional
        Constant bias added to every computed observable. Replaced by the
        estimated value when a bias parameter is attached.
    """
    observable_type: ObservableType
    link_ends: LinkDefinition
    bias: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        if not isinstance(self.link_ends, LinkDefinition):
            object.__setattr__(self, 'link_ends', LinkDefinition(self.link_ends))
        model = create_observation_model(self.observable_type)
        model.check_link(self.link_ends)
        if self.bias is not None:
            bias = tuple(float(b) for b in np.atleast_1d(self.bias))
            if len(bias) != model.size:
                raise ConfigurationError(
                    f"{self.observable_type.value} bias needs {model.size} "
                    f"components, got {len(bias)}"
                )
            object.__setattr__(self, 'bias', bias)


# ========== MODEL SETTINGS FACTORIES ==========
def range_observable(link_ends, bias=None) -> ObservationModelSettings:
    """Range [km] between transmitter and receiver."""
    return ObservationModelSettings(ObservableType.RANGE, link_ends, bias)


def range_rate_observable(link_ends, bias=None) -> ObservationModelSettings:
    """Range rate [km/s] between transmitter and receiver."""
    return ObservationModelSettings(ObservableType.RANGE_RATE, link_ends, bias)


def angular_position_observable(link_ends, bias=None) -> ObservationModelSettings:
    """Right ascension and declination [rad] of the transmitter from the receiver."""
    return ObservationModelSettings(ObservableType.ANGULAR_POSITION, link_ends, bias)


def position_observable(link_ends, bias=None) -> ObservationModelSettings:
    return ObservationModelSettings(ObservableType.POSITION, link_ends, bias)


def cartesian_state_observable(link_ends, bias=None) -> ObservationModelSettings:
    return ObservationModelSettings(ObservableType.CARTESIAN_STATE, link_ends, bias)


class ObservationSimulator:
    """
    Simulator of one observable on one link.

    Parameters
    ----------
    model_settings : ObservationModelSettings
        Observable and link
    bodies : SystemOfBodies
        Body arena providing link end states
    """

    def __init__(self, model_settings: ObservationModelSettings,
                 bodies: SystemOfBodies):
        self._settings = model_settings
        self._bodies = bodies
        self._model = create_observation_model(model_settings.observable_type)
        for end in model_settings.link_ends.values():
            body = bodies.get(end.body)
            if end.reference_point is not None:
                body.get_ground_station(end.reference_point)
        self._bias_parameter = None

    @property
    def observable_type(self) -> ObservableType:
        return self._settings.observable_type

    @property
    def link_ends(self) -> LinkDefinition:
        return self._settings.link_ends

    @property
    def size(self) -> int:
        return self._model.size

    @property
    def model(self):
        return self._model

    @property
    def bias(self) -> np.ndarray:
        if self._bias_parameter is not None:
            return self._bias_parameter.get_value()
        if self._settings.bias is not None:
            return np.array(self._settings.bias)
        return np.zeros(self.size)

    def attach_bias_parameter(self, parameter) -> None:
        """Use an estimated ObservationBiasParameter instead of the fixed bias."""
        if (parameter.link_ends != self.link_ends or
                parameter.observable_type != self.observable_type):
            raise ConfigurationError(
                f"Bias parameter {parameter.description} does not belong to "
                f"{self.observable_type.value} on {self.link_ends}"
            )
        self._bias_parameter = parameter

    # ========== LINK GEOMETRY ==========
    def link_end_times(self, time: float) -> Dict[LinkEndType, float]:
        return {role: float(time) for role in self.link_ends}

    def link_end_states(self, time: float) -> Dict[LinkEndType, np.ndarray]:
        """Inertial states of all link ends at ``time``."""
        states = {}
        for role, end in self.link_ends.items():
            if end.reference_point is None:
                states[role] = self._bodies.state(end.body, time)
            else:
                states[role] = self._bodies.ground_station_state(
                    end.body, end.reference_point, time)
        return states

    def compute_observable(self, time: float,
                           link_end_states: Optional[Dict] = None) -> np.ndarray:
        """Observable including bias, shape (size,)."""
        if link_end_states is None:
            link_end_states = self.link_end_states(time)
        value = self._model.evaluate(link_end_states, self.link_end_times(time))
        return value + self.bias

    def compute_partials(self, time: float,
                         link_end_states: Optional[Dict] = None
                         ) -> Dict[LinkEndType, np.ndarray]:
        """Partials w.r.t. each link end state, shape (size, 6) per role."""
        if link_end_states is None:
            link_end_states = self.link_end_states(time)
        return self._model.partials(link_end_states, self.link_end_times(time))

    def residual(self, observed, computed) -> np.ndarray:
        return self._model.residual(observed, computed)

    def __repr__(self):
        return f"ObservationSimulator({self.observable_type.value}, {self.link_ends})"


def create_observation_simulators(model_settings: Sequence[ObservationModelSettings],
                                  bodies: SystemOfBodies) -> List[ObservationSimulator]:
    """
    One simulator per observation model setting.

    Raises
    ------
    ConfigurationError
        If an (observable type, link) pair is configured twice or refers to
        unknown bodies or ground stations
    """
    simulators = []
    seen = set()
    for settings in model_settings:
        if not isinstance(settings, ObservationModelSettings):
            raise ConfigurationError(
                f"Expected ObservationModelSettings, got {type(settings).__name__}"
            )
        key = (settings.observable_type, settings.link_ends)
        if key in seen:
            raise ConfigurationError(
                f"Duplicate observation model {settings.observable_type.value} "
                f"on {settings.link_ends}"
            )
        seen.add(key)
        simulators.append(ObservationSimulator(settings, bodies))
    return simulators


# ========== OBSERVATIONS ==========
@dataclass(frozen=True)
class SingleObservationSet:
    """Observations of one observable on one link, sorted by time."""
    observable_type: ObservableType
    link_ends: LinkDefinition
    times: np.ndarray
    observations: np.ndarray

    def __post_init__(self):
        times = np.array(self.times, dtype=float).ravel()
        observations = np.array(self.observations, dtype=float)
        if observations.ndim == 1:
            observations = observations.reshape(len(times), -1)
        if observations.shape[0] != len(times):
            raise ConfigurationError(
                f"{len(times)} observation times but {observations.shape[0]} observations"
            )
        order = np.argsort(times, kind='stable')
        times = times[order]
        observations = observations[order]
        times.setflags(write=False)
        observations.setflags(write=False)
        object.__setattr__(self, 'times', times)
        object.__setattr__(self, 'observations', observations)

    @property
    def size(self) -> int:
        """Number of scalar observations."""
        return self.observations.size

    def __len__(self):
        return len(self.times)


@dataclass(frozen=True)
class RejectedObservation:
    """Observation excluded by viability constraints."""
    observable_type: ObservableType
    link_ends: LinkDefinition
    time: float
    reasons: Tuple[str, ...]


class ObservationCollection:
    """
    Observation sets grouped by (observable type, link ends).

    Groups keep their first-insertion order; sets added for an existing
    group are merged into it. Rejected observations are kept separately
    for auditing and never take part in estimation.
    """

    def __init__(self, observation_sets: Sequence[SingleObservationSet] = (),
                 rejected_observations: Sequence[RejectedObservation] = ()):
        self._sets: Dict[Tuple[ObservableType, LinkDefinition], SingleObservationSet] = {}
        for observation_set in observation_sets:
            self._add(observation_set)
        self._rejected = tuple(rejected_observations)

    def _add(self, observation_set):
        key = (observation_set.observable_type, observation_set.link_ends)
        if key in self._sets:
            existing = self._sets[key]
            observation_set = SingleObservationSet(
                key[0], key[1],
                np.concatenate([existing.times, observation_set.times]),
                np.vstack([existing.observations, observation_set.observations]),
            )
        self._sets[key] = observation_set

    @property
    def observation_sets(self) -> List[SingleObservationSet]:
        return list(self._sets.values())

    @property
    def rejected_observations(self) -> Tuple[RejectedObservation, ...]:
        return self._rejected

    @property
    def observable_types(self) -> List[ObservableType]:
        return list(dict.fromkeys(key[0] for key in self._sets))

    @property
    def link_definitions(self) -> List[LinkDefinition]:
        return list(dict.fromkeys(key[1] for key in self._sets))

    def get_single_observation_sets(self, observable_type: Optional[ObservableType] = None,
                                    link_ends: Optional[LinkDefinition] = None
                                    ) -> List[SingleObservationSet]:
        return [s for (t, link), s in self._sets.items()
                if (observable_type is None or t == observable_type) and
                (link_ends is None or link == link_ends)]

    @property
    def concatenated_times(self) -> np.ndarray:
        """Epoch of every scalar observation, in collection order."""
        if not self._sets:
            return np.empty(0)
        return np.concatenate([np.repeat(s.times, s.observations.shape[1])
                               for s in self._sets.values()])

    @property
    def concatenated_observations(self) -> np.ndarray:
        if not self._sets:
            return np.empty(0)
        return np.concatenate([s.observations.ravel() for s in self._sets.values()])

    @property
    def size(self) -> int:
        return sum(s.size for s in self._sets.values())

    def __len__(self):
        return self.size

    def to_dataframe(self) -> pd.DataFrame:
        """
        Export observations to a long-format DataFrame.

        Returns
        -------
        pd.DataFrame
            Columns 'observable', 'link_ends', 'time', 'component', 'value'
        """
        rows = []
        for s in self._sets.values():
            for time, values in zip(s.times, s.observations):
                for component, value in enumerate(values):
                    rows.append((s.observable_type.value, str(s.link_ends),
                                 time, component, value))
        return pd.DataFrame(rows, columns=['observable', 'link_ends', 'time',
                                           'component', 'value'])

    def __repr__(self):
        return (f"ObservationCollection({len(self._sets)} sets, {self.size} "
                f"observations, {len(self._rejected)} rejected)")


# ========== SIMULATION ==========
@dataclass(frozen=True)
class ObservationSimulationSettings:
    """
    Epochs, noise and viability constraints for one observable on one link.

    Attributes
    ----------
    observable_type : ObservableType
        Observable to simulate
    link_ends : LinkDefinition
        Link to simulate it on
    simulation_times : tuple of float
        Observation epochs [s]
    noise_standard_deviation : float
        Standard deviation of additive Gaussian noise, 0 for none
    viability_settings : tuple of ViabilitySettings
        Constraints that must all hold
    """
    observable_type: ObservableType
    link_ends: LinkDefinition
    simulation_times: Tuple[float, ...]
    noise_standard_deviation: float = 0.0
    viability_settings: Tuple[ViabilitySettings, ...] = field(default=())

    def __post_init__(self):
        if not isinstance(self.link_ends, LinkDefinition):
            object.__setattr__(self, 'link_ends', LinkDefinition(self.link_ends))
        object.__setattr__(self, 'simulation_times',
                           tuple(float(t) for t in self.simulation_times))
        object.__setattr__(self, 'viability_settings', tuple(self.viability_settings))
        if self.noise_standard_deviation < 0:
            raise ConfigurationError(
                f"Noise standard deviation must be non-negative, "
                f"got {self.noise_standard_deviation}"
            )


def tabulated_simulation_settings(observable_type: ObservableType, link_ends,
                                  simulation_times: Sequence[float],
                                  noise_standard_deviation: float = 0.0,
                                  viability_settings: Sequence[ViabilitySettings] = ()
                                  ) -> ObservationSimulationSettings:
    return ObservationSimulationSettings(observable_type, link_ends,
                                         tuple(simulation_times),
                                         noise_standard_deviation,
                                         tuple(viability_settings))


def _find_simulator(simulators, observable_type, link_ends):
    for simulator in simulators:
        if simulator.observable_type == observable_type and simulator.link_ends == link_ends:
            return simulator
    raise ConfigurationError(
        f"No observation simulator for {observable_type.value} on {link_ends}"
    )


def simulate_observations(simulation_settings: Sequence[ObservationSimulationSettings],
                          observation_simulators: Sequence[ObservationSimulator],
                          bodies: SystemOfBodies,
                          seed: Optional[int] = None) -> ObservationCollection:
    """
    Simulate observations from the current state of the body arena.

    Parameters
    ----------
    simulation_settings : sequence of ObservationSimulationSettings
        What to simulate
    observation_simulators : sequence of ObservationSimulator
        Simulators; one must exist for every (observable, link) simulated
    bodies : SystemOfBodies
        Body arena, with propagated trajectories set as ephemerides
    seed : int, optional
        Seed for the noise generator

    Returns
    -------
    ObservationCollection
        Viable observations, plus rejected ones with their failed constraints
    """
    rng = np.random.default_rng(seed)
    sets = []
    rejected = []
    for settings in simulation_settings:
        simulator = _find_simulator(observation_simulators, settings.observable_type,
                                    settings.link_ends)
        viability = create_viability_calculators(bodies, settings.link_ends,
                                                 settings.viability_settings)
        times = []
        values = []
        for time in settings.simulation_times:
            states = simulator.link_end_states(time)
            link_end_times = simulator.link_end_times(time)
            failed = viability.failed_constraints(states, link_end_times)
            if failed:
                rejected.append(RejectedObservation(settings.observable_type,
                                                    settings.link_ends, time,
                                                    tuple(failed)))
                continue
            value = simulator.compute_observable(time, states)
            if settings.noise_standard_deviation > 0:
                value = value + rng.normal(0.0, settings.noise_standard_deviation,
                                           simulator.size)
            times.append(time)
            values.append(value)
        if times:
            sets.append(SingleObservationSet(settings.observable_type,
                                             settings.link_ends, times,
                                             np.array(values)))
        logger.debug("Simulated %d %s observations on %s (%d rejected)",
                     len(times), settings.observable_type.value,
                     settings.link_ends,
                     len(settings.simulation_times) - len(times))
    return ObservationCollection(sets, rejected)
