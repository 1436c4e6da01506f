"""
Body and environment models.

Bodies live in a ``SystemOfBodies`` arena and refer to each other by name
only: a body's ephemeris is expressed relative to the body named by its
``ephemeris_origin``, and ground stations belong to the body they are
listed on. Lookups walk these name references, so no body owns another.

Units: km, km/s and s, except for the exponential atmosphere parameters
and spacecraft drag area which follow SI (kg/m^3, m, m^2).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import numpy as np

from .exceptions import ConfigurationError
from .history import StateHistory
from .utils import validation_error


@dataclass(frozen=True)
class AtmosphereModel:
    """
    Immutable parameters for exponential atmosphere model.

    The density profile follows: rho(r) = rho0 * exp(-(r - r0)/H)

    Attributes
    ----------
    rho0 : float
        Reference density at reference altitude [kg/m^3]
    H : float
        Scale height [m]
    r0 : float
        Reference radius (radius where rho0 is defined) [m]
    """
    rho0: float
    H: float
    r0: float

    def __post_init__(self):
        """Validate parameters."""
        if self.rho0 <= 0:
            raise ValueError(f"Reference density must be positive, got {self.rho0}")
        if self.H <= 0:
            raise ValueError(f"Scale height must be positive, got {self.H}")
        if self.r0 <= 0:
            raise ValueError(f"Reference radius must be positive, got {self.r0}")

    def density(self, radius_km: float) -> float:
        """Density [kg/m^3] at a distance from the body center [km]."""
        return self.rho0 * np.exp(-(radius_km * 1000.0 - self.r0) / self.H)


@dataclass(frozen=True)
class RotationModel:
    """
    Uniform rotation about the inertial z-axis.

    Attributes
    ----------
    rotation_rate : float
        Angular rotation rate [rad/s]
    initial_angle : float
        Rotation angle at the reference epoch [rad]
    reference_epoch : float
        Epoch at which the rotation angle equals initial_angle [s]
    """
    rotation_rate: float
    initial_angle: float = 0.0
    reference_epoch: float = 0.0

    def angle(self, t: float) -> float:
        return self.initial_angle + self.rotation_rate * (t - self.reference_epoch)

    def body_fixed_to_inertial(self, t: float) -> np.ndarray:
        """Rotation matrix from body-fixed to inertial axes."""
        c, s = np.cos(self.angle(t)), np.sin(self.angle(t))
        return np.array([[c, -s, 0.0],
                         [s, c, 0.0],
                         [0.0, 0.0, 1.0]])

    def inertial_to_body_fixed(self, t: float) -> np.ndarray:
        return self.body_fixed_to_inertial(t).T

    @property
    def angular_velocity(self) -> np.ndarray:
        return np.array([0.0, 0.0, self.rotation_rate])


@dataclass(frozen=True)
class GroundStation:
    """
    Fixed point on a body's surface.

    Attributes
    ----------
    name : str
        Station identifier, unique per body
    position : tuple of float
        Body-fixed Cartesian position [km]
    """
    name: str
    position: tuple

    def __post_init__(self):
        position = tuple(float(c) for c in self.position)
        if len(position) != 3:
            raise ConfigurationError(
                f"Ground station position must have 3 components, got {len(position)}"
            )
        object.__setattr__(self, 'position', position)

    @classmethod
    def from_geodetic(cls, name: str, latitude: float, longitude: float,
                      altitude: float, body_radius: float) -> "GroundStation":
        """
        Create a station from spherical latitude/longitude [rad] and
        altitude above a spherical body of radius ``body_radius`` [km].
        """
        r = body_radius + altitude
        position = (r * np.cos(latitude) * np.cos(longitude),
                    r * np.cos(latitude) * np.sin(longitude),
                    r * np.sin(latitude))
        return cls(name, position)

    @property
    def body_fixed_position(self) -> np.ndarray:
        return np.array(self.position)


# ========== EPHEMERIDES ==========
class Ephemeris(ABC):
    """Cartesian state of a body relative to its ephemeris origin."""

    @abstractmethod
    def state(self, t: float) -> np.ndarray:
        ...


class ConstantEphemeris(Ephemeris):
    """Fixed state, e.g. a body at rest relative to its origin."""

    def __init__(self, state):
        self._state = np.array(state, dtype=float)
        if self._state.shape != (6,):
            raise ConfigurationError(
                f"Ephemeris state must have 6 components, got {self._state.shape}"
            )

    def state(self, t):
        return self._state.copy()


class TabulatedEphemeris(Ephemeris):
    """Ephemeris interpolated from a state history."""

    def __init__(self, history: StateHistory, order: Optional[int] = None):
        if len(history) == 0:
            raise ConfigurationError("Cannot create ephemeris from empty history")
        self._history = history.copy()
        self._order = order

    @property
    def history(self) -> StateHistory:
        return self._history

    def state(self, t):
        try:
            return self._history.interpolate(t, self._order)[:6]
        except ValueError as err:
            raise ConfigurationError(str(err)) from None


class CustomEphemeris(Ephemeris):
    """Ephemeris from a user function ``state_function(t) -> state``."""

    def __init__(self, state_function: Callable[[float], np.ndarray]):
        self._function = state_function

    def state(self, t):
        return np.asarray(self._function(t), dtype=float)


class Body:
    """
    Record describing one body in a SystemOfBodies.

    Parameters
    ----------
    name : str
        Unique identifier within the system
    gravitational_parameter : float, optional
        [km^3/s^2], required when the body exerts gravity
    radius : float, optional
        Equatorial radius [km]
    j2 : float, optional
        J2 zonal harmonic coefficient [dimensionless]
    rotation_model : RotationModel, optional
        Required for ground stations and atmospheric drag
    atmosphere : AtmosphereModel, optional
        Required if aerodynamic accelerations are exerted by this body
    mass : float, optional
        [kg], required for drag and thrust on this body
    reference_area : float, optional
        Drag reference area [m^2]
    drag_coefficient : float, optional
        Drag coefficient [dimensionless]
    ephemeris : Ephemeris, optional
        State relative to ``ephemeris_origin``. A body without ephemeris
        is only valid as the global frame origin.
    ephemeris_origin : str, optional
        Name of the body the ephemeris is relative to; None for the
        global frame origin.
    """

    def __init__(self, name: str,
                 gravitational_parameter: Optional[float] = None,
                 radius: Optional[float] = None,
                 j2: Optional[float] = None,
                 rotation_model: Optional[RotationModel] = None,
                 atmosphere: Optional[AtmosphereModel] = None,
                 mass: Optional[float] = None,
                 reference_area: Optional[float] = None,
                 drag_coefficient: Optional[float] = None,
                 ephemeris: Optional[Ephemeris] = None,
                 ephemeris_origin: Optional[str] = None):
        if not name:
            raise ConfigurationError("Body name must be a non-empty string")
        if gravitational_parameter is not None and gravitational_parameter <= 0:
            raise ConfigurationError(
                f"Gravitational parameter must be positive, got {gravitational_parameter}"
            )
        if radius is not None and radius <= 0:
            raise ConfigurationError(f"Radius must be positive, got {radius}")
        if j2 is not None and abs(j2) > 1:
            validation_error(f"J2 coefficient seems unrealistic: {j2}")
        if mass is not None and mass <= 0:
            raise ConfigurationError(f"Mass must be positive, got {mass}")
        if reference_area is not None and reference_area <= 0:
            raise ConfigurationError(
                f"Reference area must be positive, got {reference_area}"
            )
        self.name = name
        self.gravitational_parameter = gravitational_parameter
        self.radius = radius
        self.j2 = j2
        self.rotation_model = rotation_model
        self.atmosphere = atmosphere
        self.mass = mass
        self.reference_area = reference_area
        self.drag_coefficient = drag_coefficient
        self.ephemeris = ephemeris
        self.ephemeris_origin = ephemeris_origin
        self._ground_stations: Dict[str, GroundStation] = {}

    @property
    def ground_stations(self) -> Dict[str, GroundStation]:
        return dict(self._ground_stations)

    def add_ground_station(self, station: GroundStation) -> None:
        if station.name in self._ground_stations:
            raise ConfigurationError(
                f"Ground station '{station.name}' already exists on {self.name}"
            )
        self._ground_stations[station.name] = station

    def get_ground_station(self, name: str) -> GroundStation:
        try:
            return self._ground_stations[name]
        except KeyError:
            raise ConfigurationError(
                f"Body '{self.name}' has no ground station '{name}'"
            ) from None

    def __repr__(self):
        parts = [f"Body(name='{self.name}'"]
        if self.gravitational_parameter is not None:
            parts.append(f"mu={self.gravitational_parameter:.3e} km^3/s^2")
        if self.ephemeris_origin is not None:
            parts.append(f"origin='{self.ephemeris_origin}'")
        if self._ground_stations:
            parts.append(f"stations={list(self._ground_stations)}")
        return ", ".join(parts) + ")"


class SystemOfBodies:
    """
    Arena of bodies addressed by name.

    Parameters
    ----------
    global_frame_origin : str, optional
        Name of the body at the origin of the inertial frame.
        Default: first body without an ephemeris.

    Examples
    --------
    >>> bodies = SystemOfBodies()
    >>> bodies.add_body(Body("Earth", gravitational_parameter=3.986004415e5,
    ...                      radius=6378.1363))
    >>> bodies.add_body(Body("Sat", mass=500.0))
    >>> bodies.state("Earth", 0.0)
    array([0., 0., 0., 0., 0., 0.])
    """

    def __init__(self, global_frame_origin: Optional[str] = None):
        self._bodies: Dict[str, Body] = {}
        self._origin = global_frame_origin

    # ========== ARENA ==========
    def add_body(self, body: Body) -> Body:
        if body.name in self._bodies:
            raise ConfigurationError(f"Body '{body.name}' already exists")
        self._bodies[body.name] = body
        return body

    def get(self, name: str) -> Body:
        try:
            return self._bodies[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown body '{name}'. Available: {list(self._bodies)}"
            ) from None

    __getitem__ = get

    def __contains__(self, name):
        return name in self._bodies

    def __iter__(self):
        return iter(self._bodies.values())

    def __len__(self):
        return len(self._bodies)

    @property
    def body_names(self) -> tuple:
        return tuple(self._bodies)

    @property
    def global_frame_origin(self) -> Optional[str]:
        if self._origin is not None:
            return self._origin
        for body in self._bodies.values():
            if body.ephemeris is None:
                return body.name
        return None

    def validate(self) -> None:
        """Check that every ephemeris origin exists and that origins form no cycle."""
        for body in self._bodies.values():
            self._origin_chain(body.name)

    def _origin_chain(self, name: str) -> list:
        chain = []
        current = name
        while current is not None:
            if current in chain:
                raise ConfigurationError(
                    f"Cyclic ephemeris origins: {' -> '.join(chain + [current])}"
                )
            chain.append(current)
            current = self.get(current).ephemeris_origin
        return chain

    # ========== STATES ==========
    def state(self, name: str, t: float) -> np.ndarray:
        """Inertial Cartesian state of a body relative to the global frame origin."""
        state = np.zeros(6)
        for link in self._origin_chain(name):
            body = self._bodies[link]
            if body.ephemeris is None:
                if link != self.global_frame_origin:
                    raise ConfigurationError(
                        f"Body '{link}' has no ephemeris and is not the global "
                        f"frame origin '{self.global_frame_origin}'"
                    )
                continue
            state = state + body.ephemeris.state(t)
        return state

    def relative_state(self, name: str, origin: Optional[str], t: float) -> np.ndarray:
        """State of ``name`` relative to ``origin`` (global origin if None)."""
        if origin is None:
            return self.state(name, t)
        return self.state(name, t) - self.state(origin, t)

    def ground_station_state(self, body_name: str, station_name: str,
                             t: float) -> np.ndarray:
        """Inertial state of a ground station, including body rotation."""
        body = self.get(body_name)
        station = body.get_ground_station(station_name)
        if body.rotation_model is None:
            raise ConfigurationError(
                f"Ground station '{station_name}' requires a rotation model on {body_name}"
            )
        rotation = body.rotation_model
        r_rel = rotation.body_fixed_to_inertial(t) @ station.body_fixed_position
        v_rel = np.cross(rotation.angular_velocity, r_rel)
        return self.state(body_name, t) + np.concatenate([r_rel, v_rel])

    def set_ephemeris(self, name: str, ephemeris: Ephemeris,
                      origin: Optional[str] = None) -> None:
        """Replace a body's ephemeris, e.g. with a propagated trajectory."""
        body = self.get(name)
        if origin is not None:
            self.get(origin)
        body.ephemeris = ephemeris
        body.ephemeris_origin = origin
        self._origin_chain(name)

    def __repr__(self):
        return f"SystemOfBodies({list(self._bodies)})"

