"""
Acceleration settings and translational equations of motion.

Acceleration models are tagged variants: an ``AccelerationType`` plus the
payload that kind needs. ``create_translational_dynamics`` dispatches on
the kind and assembles heyoka equations of motion for one body relative to
a central body. Every model constant that may be estimated becomes a
runtime parameter (``hy.par``), named ``"<quantity>:<body>"``, for example
``"gravitational_parameter:Earth"`` or ``"drag_coefficient:Sat"``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple
import numpy as np
import heyoka as hy

from .bodies import SystemOfBodies
from .dynamics import SymbolicDynamics
from .exceptions import ConfigurationError


class AccelerationType(Enum):
    POINT_MASS_GRAVITY = 'point_mass_gravity'
    J2_GRAVITY = 'j2_gravity'
    AERODYNAMIC = 'aerodynamic'
    EMPIRICAL = 'empirical'
    THRUST = 'thrust'


class ThrustDirectionType(Enum):
    VELOCITY_ALIGNED = 'velocity_aligned'
    ANTI_VELOCITY = 'anti_velocity'
    RADIAL = 'radial'
    CONSTANT_INERTIAL = 'constant_inertial'


@dataclass(frozen=True)
class AccelerationSettings:
    """
    Tagged acceleration variant.

    Attributes
    ----------
    acceleration_type : AccelerationType
        Kind of acceleration
    exerting_body : str, optional
        Body exerting gravity or aerodynamic forces
    thrust_magnitude : float, optional
        Thrust force [N] (THRUST only)
    thrust_direction : ThrustDirectionType, optional
        Thrust direction variant (THRUST only)
    direction_vector : tuple of float, optional
        Inertial unit vector for CONSTANT_INERTIAL thrust
    empirical_components : tuple of float
        Constant radial, along-track and cross-track accelerations
        [km/s^2] (EMPIRICAL only)
    """
    acceleration_type: AccelerationType
    exerting_body: Optional[str] = None
    thrust_magnitude: Optional[float] = None
    thrust_direction: Optional[ThrustDirectionType] = None
    direction_vector: Optional[Tuple[float, float, float]] = None
    empirical_components: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        if not isinstance(self.acceleration_type, AccelerationType):
            raise ConfigurationError(
                f"Unknown acceleration type {self.acceleration_type!r}"
            )
        needs_exerter = (AccelerationType.POINT_MASS_GRAVITY,
                         AccelerationType.J2_GRAVITY,
                         AccelerationType.AERODYNAMIC)
        if self.acceleration_type in needs_exerter and not self.exerting_body:
            raise ConfigurationError(
                f"{self.acceleration_type.value} acceleration requires an exerting body"
            )
        if self.acceleration_type == AccelerationType.THRUST:
            if self.thrust_magnitude is None or self.thrust_magnitude < 0:
                raise ConfigurationError("Thrust requires a non-negative magnitude")
            if not isinstance(self.thrust_direction, ThrustDirectionType):
                raise ConfigurationError(
                    f"Unknown thrust direction {self.thrust_direction!r}"
                )
            if self.thrust_direction == ThrustDirectionType.CONSTANT_INERTIAL:
                if self.direction_vector is None:
                    raise ConfigurationError(
                        "Constant inertial thrust requires a direction vector"
                    )
                vector = np.asarray(self.direction_vector, dtype=float)
                if vector.shape != (3,) or np.linalg.norm(vector) == 0:
                    raise ConfigurationError(
                        f"Invalid thrust direction vector {self.direction_vector}"
                    )
                object.__setattr__(self, 'direction_vector',
                                   tuple(vector / np.linalg.norm(vector)))
        if len(self.empirical_components) != 3:
            raise ConfigurationError("Empirical accelerations need 3 components")


# ========== SETTINGS FACTORIES ==========
def point_mass_gravity(exerting_body: str) -> AccelerationSettings:
    return AccelerationSettings(AccelerationType.POINT_MASS_GRAVITY, exerting_body)


def j2_gravity(exerting_body: str) -> AccelerationSettings:
    """J2 zonal perturbation; add point_mass_gravity separately for the central term."""
    return AccelerationSettings(AccelerationType.J2_GRAVITY, exerting_body)


def aerodynamic(exerting_body: str) -> AccelerationSettings:
    """Drag from the exponential atmosphere of the exerting body."""
    return AccelerationSettings(AccelerationType.AERODYNAMIC, exerting_body)


def empirical(radial: float = 0.0, along_track: float = 0.0,
              cross_track: float = 0.0) -> AccelerationSettings:
    """Constant accelerations in the radial/along-track/cross-track frame [km/s^2]."""
    return AccelerationSettings(AccelerationType.EMPIRICAL,
                                empirical_components=(radial, along_track,
                                                      cross_track))


def thrust(magnitude: float,
           direction: ThrustDirectionType = ThrustDirectionType.VELOCITY_ALIGNED,
           direction_vector: Optional[Sequence[float]] = None
           ) -> AccelerationSettings:
    """Constant-magnitude thrust [N] with the given direction variant."""
    if direction_vector is not None:
        direction_vector = tuple(direction_vector)
    return AccelerationSettings(AccelerationType.THRUST,
                                thrust_magnitude=magnitude,
                                thrust_direction=direction,
                                direction_vector=direction_vector)


class _ParameterRegistry:
    """Maps parameter names to consecutive hy.par indices."""

    def __init__(self):
        self.values: Dict[str, float] = {}

    def par(self, name: str, value: float):
        if name not in self.values:
            self.values[name] = float(value)
        return hy.par[list(self.values).index(name)]


def create_translational_dynamics(bodies: SystemOfBodies, propagated_body: str,
                                  central_body: str,
                                  acceleration_settings: Sequence[AccelerationSettings]
                                  ) -> SymbolicDynamics:
    """
    Build Cartesian equations of motion for a body around a central body.

    Parameters
    ----------
    bodies : SystemOfBodies
        Environment providing body constants
    propagated_body : str
        Name of the body whose state [x, y, z, vx, vy, vz] is propagated
    central_body : str
        Origin of the propagation frame. Gravity and drag can only be
        exerted by this body.
    acceleration_settings : sequence of AccelerationSettings
        Accelerations acting on the propagated body

    Returns
    -------
    SymbolicDynamics
        Equations of motion with named runtime parameters

    Raises
    ------
    ConfigurationError
        If a body is missing, a model lacks required body data, or an
        acceleration is exerted by a body other than the central body
    """
    target = bodies.get(propagated_body)
    central = bodies.get(central_body)
    if propagated_body == central_body:
        raise ConfigurationError("Propagated body cannot be its own central body")
    if not acceleration_settings:
        raise ConfigurationError("At least one acceleration model is required")

    # Create symbolic state variables
    x, y, z, vx, vy, vz = hy.make_vars("x", "y", "z", "vx", "vy", "vz")
    r = hy.sqrt(x**2 + y**2 + z**2)
    state = (x, y, z, vx, vy, vz)
    registry = _ParameterRegistry()

    builders = {
        AccelerationType.POINT_MASS_GRAVITY: _build_point_mass,
        AccelerationType.J2_GRAVITY: _build_J2_perturbation,
        AccelerationType.AERODYNAMIC: _build_drag_perturbation,
        AccelerationType.EMPIRICAL: _build_empirical,
        AccelerationType.THRUST: _build_thrust,
    }
    a_total = [0.0, 0.0, 0.0]
    for settings in acceleration_settings:
        if settings.exerting_body is not None and settings.exerting_body != central_body:
            raise ConfigurationError(
                f"{settings.acceleration_type.value} exerted by "
                f"'{settings.exerting_body}' is not supported; only the central "
                f"body '{central_body}' may exert gravity or drag"
            )
        components = builders[settings.acceleration_type](
            settings, state, r, target, central, registry
        )
        a_total = [a + c for a, c in zip(a_total, components)]

    # Assemble system
    sys = [
        (x, vx),
        (y, vy),
        (z, vz),
        (vx, a_total[0]),
        (vy, a_total[1]),
        (vz, a_total[2]),
    ]
    return SymbolicDynamics(sys, registry.values)


def _gravitational_parameter(central, registry):
    if central.gravitational_parameter is None:
        raise ConfigurationError(
            f"Gravity requires a gravitational parameter on '{central.name}'"
        )
    return registry.par(f"gravitational_parameter:{central.name}",
                        central.gravitational_parameter)


def _build_point_mass(settings, state, r, target, central, registry):
    x, y, z = state[:3]
    mu = _gravitational_parameter(central, registry)
    return [-mu * x / r**3, -mu * y / r**3, -mu * z / r**3]


def _build_J2_perturbation(settings, state, r, target, central, registry):
    """Build J2 perturbation acceleration terms."""
    if central.j2 is None or central.radius is None:
        raise ConfigurationError(
            f"J2 gravity requires j2 and radius on '{central.name}'"
        )
    x, y, z = state[:3]
    mu = _gravitational_parameter(central, registry)
    J2 = registry.par(f"j2:{central.name}", central.j2)
    R = central.radius
    # Common factor: (3/2) * J2 * mu * R^2 / r^5
    factor = 1.5 * J2 * mu * R**2 / r**5
    z2_r2 = z**2 / r**2
    return [factor * x * (5.0 * z2_r2 - 1.0),
            factor * y * (5.0 * z2_r2 - 1.0),
            factor * z * (5.0 * z2_r2 - 3.0)]


def _build_drag_perturbation(settings, state, r, target, central, registry):
    """
    Build atmospheric drag perturbation.

    Uses the exponential atmosphere of the central body and accounts for
    its rotation about the z-axis.
    """
    atmosphere = central.atmosphere
    if atmosphere is None:
        raise ConfigurationError(f"Drag requires an atmosphere on '{central.name}'")
    if central.rotation_model is None:
        raise ConfigurationError(f"Drag requires a rotation model on '{central.name}'")
    if None in (target.mass, target.reference_area, target.drag_coefficient):
        raise ConfigurationError(
            f"Drag requires mass, reference_area and drag_coefficient on "
            f"'{target.name}'"
        )
    x, y, z, vx, vy, vz = state
    omega = central.rotation_model.rotation_rate

    # Density in kg/km^3, scale height and reference radius in km
    rho0_km = atmosphere.rho0 * 1e9
    H_km = atmosphere.H / 1000.0
    r0_km = atmosphere.r0 / 1000.0
    rho = rho0_km * hy.exp(-(r - r0_km) / H_km)

    # Velocity relative to rotating atmosphere: v_rel = v - w x r
    vx_rel = vx + omega * y
    vy_rel = vy - omega * x
    vz_rel = vz
    v_rel = hy.sqrt(vx_rel**2 + vy_rel**2 + vz_rel**2)

    Cd = registry.par(f"drag_coefficient:{target.name}", target.drag_coefficient)
    area_km = target.reference_area / 1e6
    drag_factor = -0.5 * rho * Cd * area_km / target.mass * v_rel
    return [drag_factor * vx_rel, drag_factor * vy_rel, drag_factor * vz_rel]


def _rsw_axes(state, r):
    """Radial, along-track and cross-track unit vectors as expressions."""
    x, y, z, vx, vy, vz = state
    hx = y * vz - z * vy
    hy_ = z * vx - x * vz
    hz = x * vy - y * vx
    h = hy.sqrt(hx**2 + hy_**2 + hz**2)
    R = [x / r, y / r, z / r]
    W = [hx / h, hy_ / h, hz / h]
    S = [W[1] * R[2] - W[2] * R[1],
         W[2] * R[0] - W[0] * R[2],
         W[0] * R[1] - W[1] * R[0]]
    return R, S, W


def _build_empirical(settings, state, r, target, central, registry):
    R, S, W = _rsw_axes(state, r)
    names = ('radial', 'along_track', 'cross_track')
    pars = [registry.par(f"empirical_acceleration_{name}:{target.name}", value)
            for name, value in zip(names, settings.empirical_components)]
    return [pars[0] * R[i] + pars[1] * S[i] + pars[2] * W[i] for i in range(3)]


def _build_thrust(settings, state, r, target, central, registry):
    if target.mass is None:
        raise ConfigurationError(f"Thrust requires a mass on '{target.name}'")
    x, y, z, vx, vy, vz = state
    direction = settings.thrust_direction
    if direction in (ThrustDirectionType.VELOCITY_ALIGNED,
                     ThrustDirectionType.ANTI_VELOCITY):
        v = hy.sqrt(vx**2 + vy**2 + vz**2)
        sign = 1.0 if direction == ThrustDirectionType.VELOCITY_ALIGNED else -1.0
        unit = [sign * vx / v, sign * vy / v, sign * vz / v]
    elif direction == ThrustDirectionType.RADIAL:
        unit = [x / r, y / r, z / r]
    else:
        unit = list(settings.direction_vector)
    F = registry.par(f"thrust_magnitude:{target.name}", settings.thrust_magnitude)
    # N / kg = m/s^2 -> km/s^2
    scale = F / target.mass / 1000.0
    return [scale * u for u in unit]
