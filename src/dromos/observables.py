"""
Link definitions and link-geometry observation models.

A link is a set of link ends, each identified by a role (transmitter,
receiver, observed body) and a ``LinkEndId`` naming a body and optionally a
ground station on it. Observation models evaluate an observable and its
partial derivatives from the inertial Cartesian states of the link ends.
Light time is not modelled: all link ends are evaluated at the
observation epoch.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple
import numpy as np

from .exceptions import ConfigurationError


class LinkEndType(Enum):
    TRANSMITTER = 'transmitter'
    RECEIVER = 'receiver'
    OBSERVED_BODY = 'observed_body'


@dataclass(frozen=True)
class LinkEndId:
    """Body, or ground station ``reference_point`` on that body."""
    body: str
    reference_point: Optional[str] = None

    def __str__(self):
        if self.reference_point is None:
            return self.body
        return f"{self.body}:{self.reference_point}"


def body_origin_link_end_id(body: str) -> LinkEndId:
    return LinkEndId(body)


def body_reference_point_link_end_id(body: str, reference_point: str) -> LinkEndId:
    return LinkEndId(body, reference_point)


def as_link_end_id(value) -> LinkEndId:
    if isinstance(value, LinkEndId):
        return value
    if isinstance(value, str):
        return LinkEndId(value)
    if isinstance(value, tuple) and len(value) == 2:
        return LinkEndId(value[0], value[1] or None)
    raise ConfigurationError(f"Cannot interpret {value!r} as a link end")


class LinkDefinition(Mapping):
    """
    Immutable, hashable mapping from LinkEndType to LinkEndId.

    Link ends may be given as LinkEndId, a body name, or a
    ``(body, station)`` tuple.

    Examples
    --------
    >>> link = LinkDefinition({LinkEndType.TRANSMITTER: "Sat",
    ...                        LinkEndType.RECEIVER: ("Earth", "Madrid")})
    >>> str(link)
    'Sat->Earth:Madrid'
    """

    def __init__(self, link_ends: Dict[LinkEndType, object]):
        ends = {}
        for role, end in dict(link_ends).items():
            if not isinstance(role, LinkEndType):
                raise ConfigurationError(f"Unknown link end type {role!r}")
            ends[role] = as_link_end_id(end)
        if not ends:
            raise ConfigurationError("A link needs at least one link end")
        # Canonical role order keeps equal links equal in repr and hash
        self._ends = {role: ends[role] for role in LinkEndType if role in ends}

    def __getitem__(self, role):
        return self._ends[role]

    def __iter__(self):
        return iter(self._ends)

    def __len__(self):
        return len(self._ends)

    def __eq__(self, other):
        if not isinstance(other, LinkDefinition):
            return NotImplemented
        return self._ends == other._ends

    def __hash__(self):
        return hash(tuple(self._ends.items()))

    def __str__(self):
        return "->".join(str(end) for end in self._ends.values())

    def __repr__(self):
        ends = ", ".join(f"{role.value}={end}" for role, end in self._ends.items())
        return f"LinkDefinition({ends})"


def one_way_link(transmitter, receiver) -> LinkDefinition:
    """Transmitter to receiver link, e.g. spacecraft to ground station."""
    return LinkDefinition({LinkEndType.TRANSMITTER: transmitter,
                           LinkEndType.RECEIVER: receiver})


def observed_body_link(body) -> LinkDefinition:
    """Single-ended link for direct position or state observations."""
    return LinkDefinition({LinkEndType.OBSERVED_BODY: body})


class ObservableType(Enum):
    RANGE = 'range'
    RANGE_RATE = 'range_rate'
    ANGULAR_POSITION = 'angular_position'
    POSITION = 'position'
    CARTESIAN_STATE = 'cartesian_state'


# ========== OBSERVATION MODELS ==========
class ObservationModel(ABC):
    """
    Link-geometry evaluator for one observable type.

    ``link_end_states`` maps each role to a 6-element inertial Cartesian
    state; ``link_end_times`` maps each role to its epoch.
    """

    observable_type: ObservableType
    size: int
    required_roles: Tuple[LinkEndType, ...]

    @abstractmethod
    def evaluate(self, link_end_states, link_end_times) -> np.ndarray:
        ...

    @abstractmethod
    def partials(self, link_end_states, link_end_times) -> Dict[LinkEndType, np.ndarray]:
        """Partials w.r.t. each link end state, shape (size, 6) per role."""

    def residual(self, observed, computed) -> np.ndarray:
        return np.asarray(observed, dtype=float) - np.asarray(computed, dtype=float)

    def check_link(self, link_ends: LinkDefinition) -> None:
        missing = [role.value for role in self.required_roles if role not in link_ends]
        if missing:
            raise ConfigurationError(
                f"{self.observable_type.value} observable requires link ends {missing}"
            )


def _line_of_sight(link_end_states):
    """Relative state of the receiver w.r.t. the transmitter."""
    return (np.asarray(link_end_states[LinkEndType.RECEIVER], dtype=float) -
            np.asarray(link_end_states[LinkEndType.TRANSMITTER], dtype=float))


class RangeModel(ObservationModel):
    observable_type = ObservableType.RANGE
    size = 1
    required_roles = (LinkEndType.TRANSMITTER, LinkEndType.RECEIVER)

    def evaluate(self, link_end_states, link_end_times):
        rel = _line_of_sight(link_end_states)
        return np.array([np.linalg.norm(rel[:3])])

    def partials(self, link_end_states, link_end_times):
        rel = _line_of_sight(link_end_states)
        u = rel[:3] / np.linalg.norm(rel[:3])
        H = np.zeros((1, 6))
        H[0, :3] = u
        return {LinkEndType.RECEIVER: H, LinkEndType.TRANSMITTER: -H}


class RangeRateModel(ObservationModel):
    observable_type = ObservableType.RANGE_RATE
    size = 1
    required_roles = (LinkEndType.TRANSMITTER, LinkEndType.RECEIVER)

    def evaluate(self, link_end_states, link_end_times):
        rel = _line_of_sight(link_end_states)
        rho = np.linalg.norm(rel[:3])
        return np.array([np.dot(rel[:3], rel[3:6]) / rho])

    def partials(self, link_end_states, link_end_times):
        rel = _line_of_sight(link_end_states)
        rho = np.linalg.norm(rel[:3])
        u = rel[:3] / rho
        rho_dot = np.dot(u, rel[3:6])
        H = np.zeros((1, 6))
        H[0, :3] = (rel[3:6] - rho_dot * u) / rho
        H[0, 3:6] = u
        return {LinkEndType.RECEIVER: H, LinkEndType.TRANSMITTER: -H}


class AngularPositionModel(ObservationModel):
    """Right ascension and declination of the transmitter seen from the receiver [rad]."""
    observable_type = ObservableType.ANGULAR_POSITION
    size = 2
    required_roles = (LinkEndType.TRANSMITTER, LinkEndType.RECEIVER)

    def evaluate(self, link_end_states, link_end_times):
        d = -_line_of_sight(link_end_states)[:3]
        right_ascension = np.arctan2(d[1], d[0])
        declination = np.arcsin(d[2] / np.linalg.norm(d))
        return np.array([right_ascension, declination])

    def partials(self, link_end_states, link_end_times):
        d = -_line_of_sight(link_end_states)[:3]
        rho2 = np.dot(d, d)
        rxy2 = d[0]**2 + d[1]**2
        rxy = np.sqrt(rxy2)
        H = np.zeros((2, 6))
        H[0, :3] = np.array([-d[1], d[0], 0.0]) / rxy2
        H[1, :3] = (rho2 * np.array([0.0, 0.0, 1.0]) - d[2] * d) / (rho2 * rxy)
        return {LinkEndType.TRANSMITTER: H, LinkEndType.RECEIVER: -H}

    def residual(self, observed, computed):
        residual = super().residual(observed, computed)
        # Right ascension wraps at +-pi
        residual[0] = (residual[0] + np.pi) % (2.0 * np.pi) - np.pi
        return residual


class PositionModel(ObservationModel):
    """Inertial position of the observed body."""
    observable_type = ObservableType.POSITION
    size = 3
    required_roles = (LinkEndType.OBSERVED_BODY,)

    def evaluate(self, link_end_states, link_end_times):
        return np.array(link_end_states[LinkEndType.OBSERVED_BODY][:3], dtype=float)

    def partials(self, link_end_states, link_end_times):
        return {LinkEndType.OBSERVED_BODY: np.eye(3, 6)}


class CartesianStateModel(ObservationModel):
    """Inertial Cartesian state of the observed body."""
    observable_type = ObservableType.CARTESIAN_STATE
    size = 6
    required_roles = (LinkEndType.OBSERVED_BODY,)

    def evaluate(self, link_end_states, link_end_times):
        return np.array(link_end_states[LinkEndType.OBSERVED_BODY][:6], dtype=float)

    def partials(self, link_end_states, link_end_times):
        return {LinkEndType.OBSERVED_BODY: np.eye(6)}


_MODEL_CLASSES = {
    ObservableType.RANGE: RangeModel,
    ObservableType.RANGE_RATE: RangeRateModel,
    ObservableType.ANGULAR_POSITION: AngularPositionModel,
    ObservableType.POSITION: PositionModel,
    ObservableType.CARTESIAN_STATE: CartesianStateModel,
}


def observable_size(observable_type: ObservableType) -> int:
    return create_observation_model(observable_type).size


def create_observation_model(observable_type: ObservableType) -> ObservationModel:
    """
    Instantiate the model for an observable type.

    Raises
    ------
    ConfigurationError
        If the observable type is unknown
    """
    try:
        return _MODEL_CLASSES[observable_type]()
    except KeyError:
        raise ConfigurationError(
            f"Unsupported observable type {observable_type!r}. "
            f"Use: {[t.value for t in _MODEL_CLASSES]}"
        ) from None
