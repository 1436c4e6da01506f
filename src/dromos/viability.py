"""
Observation viability constraints.

A viability calculator decides whether an observation is geometrically
admissible from the link end states and times. Positions of avoided or
occulting bodies and of the station body centre are read from the body
arena at the link end times, so the same inputs give the same answer only
while those ephemerides are unchanged. A propagation run with
``set_integrated_result`` that replaces one of them changes later answers.

Constraints apply to links that contain the constrained link end; a
setting whose link end is not part of a link is ignored for that link.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import numpy as np

from .exceptions import ConfigurationError
from .observables import LinkDefinition, LinkEndId, LinkEndType, as_link_end_id


class ViabilityType(Enum):
    MINIMUM_ELEVATION_ANGLE = 'minimum_elevation_angle'
    BODY_AVOIDANCE_ANGLE = 'body_avoidance_angle'
    BODY_OCCULTATION = 'body_occultation'


@dataclass(frozen=True)
class ViabilitySettings:
    """
    Tagged viability variant.

    Attributes
    ----------
    viability_type : ViabilityType
        Kind of constraint
    link_end : LinkEndId
        Constrained link end. A LinkEndId without reference point matches
        every ground station on that body.
    angle : float, optional
        Minimum elevation or avoidance angle [rad]
    body : str, optional
        Avoided or occulting body
    """
    viability_type: ViabilityType
    link_end: LinkEndId
    angle: Optional[float] = None
    body: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.viability_type, ViabilityType):
            raise ConfigurationError(f"Unknown viability type {self.viability_type!r}")
        object.__setattr__(self, 'link_end', as_link_end_id(self.link_end))
        if self.viability_type != ViabilityType.BODY_OCCULTATION and self.angle is None:
            raise ConfigurationError(f"{self.viability_type.value} requires an angle")
        if self.viability_type != ViabilityType.MINIMUM_ELEVATION_ANGLE and not self.body:
            raise ConfigurationError(f"{self.viability_type.value} requires a body")

    def matches(self, link_end: LinkEndId) -> bool:
        if link_end.body != self.link_end.body:
            return False
        return (self.link_end.reference_point is None or
                self.link_end.reference_point == link_end.reference_point)


# ========== SETTINGS FACTORIES ==========
def elevation_angle_viability(link_end, minimum_elevation_angle: float
                              ) -> ViabilitySettings:
    """Target must be at least ``minimum_elevation_angle`` [rad] above the station horizon."""
    return ViabilitySettings(ViabilityType.MINIMUM_ELEVATION_ANGLE, link_end,
                             angle=minimum_elevation_angle)


def body_avoidance_viability(link_end, body_to_avoid: str,
                             avoidance_angle: float) -> ViabilitySettings:
    """Line of sight must stay ``avoidance_angle`` [rad] away from a body, e.g. the Sun."""
    return ViabilitySettings(ViabilityType.BODY_AVOIDANCE_ANGLE, link_end,
                             angle=avoidance_angle, body=body_to_avoid)


def body_occultation_viability(link_end, occulting_body: str) -> ViabilitySettings:
    """Line of sight must not pass through a spherical body."""
    return ViabilitySettings(ViabilityType.BODY_OCCULTATION, link_end,
                             body=occulting_body)


# ========== CALCULATORS ==========
class ViabilityCalculator(ABC):
    """
    Predicate over link end states.

    Parameters
    ----------
    bodies : SystemOfBodies
        Body arena for the positions of constraint bodies
    link_pairs : list of (LinkEndType, LinkEndType)
        (constrained role, other role) pairs to check
    """

    def __init__(self, bodies, link_pairs: Sequence[Tuple[LinkEndType, LinkEndType]]):
        self._bodies = bodies
        self._pairs = list(link_pairs)

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    def is_observation_viable(self, link_end_states, link_end_times) -> bool:
        """
        Whether every (constrained, other) pair satisfies the constraint.

        Constraint bodies are evaluated through the current arena
        ephemerides, not through a snapshot taken at construction.
        """
        return all(self._check_pair(link_end_states, link_end_times, constrained, other)
                   for constrained, other in self._pairs)

    @abstractmethod
    def _check_pair(self, link_end_states, link_end_times, constrained, other) -> bool:
        ...


class MinimumElevationAngleCalculator(ViabilityCalculator):
    """Elevation above the local horizontal of a spherical body."""

    def __init__(self, bodies, link_pairs, station_body: str, minimum_angle: float):
        super().__init__(bodies, link_pairs)
        self._station_body = station_body
        self.minimum_angle = minimum_angle

    @property
    def description(self):
        return (f"elevation below {np.degrees(self.minimum_angle):.2f} deg "
                f"at {self._station_body}")

    def elevation(self, station_state, target_state, time) -> float:
        center = self._bodies.state(self._station_body, time)[:3]
        up = np.asarray(station_state[:3]) - center
        up = up / np.linalg.norm(up)
        line_of_sight = np.asarray(target_state[:3]) - np.asarray(station_state[:3])
        vertical = np.dot(line_of_sight, up)
        horizontal = np.linalg.norm(line_of_sight - vertical * up)
        return float(np.arctan2(vertical, horizontal))

    def _check_pair(self, link_end_states, link_end_times, constrained, other):
        return self.elevation(link_end_states[constrained], link_end_states[other],
                              link_end_times[constrained]) >= self.minimum_angle


class BodyAvoidanceAngleCalculator(ViabilityCalculator):
    """Angle between the line of sight and the direction to a body."""

    def __init__(self, bodies, link_pairs, avoided_body: str, avoidance_angle: float):
        super().__init__(bodies, link_pairs)
        bodies.get(avoided_body)
        self._avoided_body = avoided_body
        self.avoidance_angle = avoidance_angle

    @property
    def description(self):
        return (f"within {np.degrees(self.avoidance_angle):.2f} deg "
                f"of {self._avoided_body}")

    def _check_pair(self, link_end_states, link_end_times, constrained, other):
        origin = np.asarray(link_end_states[constrained][:3])
        line_of_sight = np.asarray(link_end_states[other][:3]) - origin
        to_body = (self._bodies.state(self._avoided_body,
                                      link_end_times[constrained])[:3] - origin)
        cos_angle = np.dot(line_of_sight, to_body) / (
            np.linalg.norm(line_of_sight) * np.linalg.norm(to_body))
        return float(np.arccos(np.clip(cos_angle, -1.0, 1.0))) >= self.avoidance_angle


class BodyOccultationCalculator(ViabilityCalculator):
    """Line-of-sight segment must stay outside the body's sphere."""

    # Link ends on the body surface touch the sphere
    _SURFACE_TOLERANCE = 1e-9

    def __init__(self, bodies, link_pairs, occulting_body: str):
        super().__init__(bodies, link_pairs)
        body = bodies.get(occulting_body)
        if body.radius is None:
            raise ConfigurationError(
                f"Occultation by '{occulting_body}' requires a body radius"
            )
        self._occulting_body = occulting_body
        self._radius = body.radius

    @property
    def description(self):
        return f"occulted by {self._occulting_body}"

    def _check_pair(self, link_end_states, link_end_times, constrained, other):
        start = np.asarray(link_end_states[constrained][:3])
        end = np.asarray(link_end_states[other][:3])
        center = self._bodies.state(self._occulting_body,
                                    link_end_times[constrained])[:3]
        segment = end - start
        length2 = np.dot(segment, segment)
        if length2 == 0.0:
            return True
        fraction = np.clip(np.dot(center - start, segment) / length2, 0.0, 1.0)
        closest = start + fraction * segment
        distance = np.linalg.norm(closest - center)
        return distance >= self._radius * (1.0 - self._SURFACE_TOLERANCE)


class CompositeViabilityCalculator:
    """All constraints must hold; an empty composite accepts everything."""

    def __init__(self, calculators: Sequence[ViabilityCalculator] = ()):
        self._calculators = list(calculators)

    @property
    def calculators(self) -> List[ViabilityCalculator]:
        return list(self._calculators)

    def is_observation_viable(self, link_end_states, link_end_times) -> bool:
        """Whether all constraints hold for the current arena ephemerides."""
        return all(c.is_observation_viable(link_end_states, link_end_times)
                   for c in self._calculators)

    def failed_constraints(self, link_end_states, link_end_times) -> List[str]:
        """Descriptions of the constraints that reject the observation."""
        return [c.description for c in self._calculators
                if not c.is_observation_viable(link_end_states, link_end_times)]

    def __len__(self):
        return len(self._calculators)


def create_viability_calculator(bodies, link_ends: LinkDefinition,
                                settings: ViabilitySettings
                                ) -> Optional[ViabilityCalculator]:
    """Calculator for one setting on one link; None if the setting does not apply."""
    constrained = [role for role, end in link_ends.items() if settings.matches(end)]
    pairs = [(role, other) for role in constrained for other in link_ends
             if other != role]
    if not pairs:
        return None
    t = settings.viability_type
    if t == ViabilityType.MINIMUM_ELEVATION_ANGLE:
        for role in constrained:
            if link_ends[role].reference_point is None:
                raise ConfigurationError(
                    f"Elevation constraint requires a ground station link end, "
                    f"got '{link_ends[role]}'"
                )
        return MinimumElevationAngleCalculator(bodies, pairs, settings.link_end.body,
                                               settings.angle)
    if t == ViabilityType.BODY_AVOIDANCE_ANGLE:
        return BodyAvoidanceAngleCalculator(bodies, pairs, settings.body, settings.angle)
    return BodyOccultationCalculator(bodies, pairs, settings.body)


def create_viability_calculators(bodies, link_ends: LinkDefinition,
                                 settings: Sequence[ViabilitySettings]
                                 ) -> CompositeViabilityCalculator:
    calculators = []
    for entry in settings:
        if not isinstance(entry, ViabilitySettings):
            raise ConfigurationError(
                f"Expected ViabilitySettings, got {type(entry).__name__}"
            )
        calculator = create_viability_calculator(bodies, link_ends, entry)
        if calculator is not None:
            calculators.append(calculator)
    return CompositeViabilityCalculator(calculators)
