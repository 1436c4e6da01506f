"""
Default Bodies and Environment Configurations
=============================================

Default physical constants for Solar System bodies, a standard atmosphere
model, and factory functions that assemble common SystemOfBodies setups.

Every factory returns new objects on each call; nothing is cached at module
level, so systems created by separate calls never share mutable state.

Examples
--------
>>> from dromos.defaults import create_earth_system
>>> bodies = create_earth_system(spacecraft_names=("Sat",))
>>> bodies.get("Earth").gravitational_parameter
398600.4415
"""
from typing import Dict, Iterable, Optional, Sequence
import numpy as np

from .bodies import (AtmosphereModel, Body, ConstantEphemeris, GroundStation,
                     RotationModel, SystemOfBodies)

"""
Predefined Solar System body constants
Values taken from Vallado, Fundamentals of Astrdynamics, Fifth Edition, 2022, Appendix D
Units referenced to km (i.e. mu = km^3/s^2)
"""
BODY_CONSTANTS: Dict[str, Dict[str, Optional[float]]] = {
    'Mercury': dict(mu=2.2032e4, radius=2439.0, J2=6.0e-5,
                    rotation_rate=1.24001e-6),
    'Venus': dict(mu=3.257e5, radius=6052.0, J2=2.7e-5,
                  rotation_rate=-2.9926e-7),
    'Earth': dict(mu=3.986004415e5, radius=6378.1363, J2=1.0826269e-3,
                  rotation_rate=7.2921150e-5),
    'Moon': dict(mu=4.902799e3, radius=1738.0, J2=2.027e-4,
                 rotation_rate=2.661700e-6),
    'Mars': dict(mu=4.305e4, radius=3397.2, J2=1.964e-3,
                 rotation_rate=7.0882181e-5),
    'Jupiter': dict(mu=1.268e8, radius=71492.0, J2=1.475e-2,
                    rotation_rate=1.7585e-4),
    'Saturn': dict(mu=3.794e7, radius=60268.0, J2=1.645e-2,
                   rotation_rate=1.662e-4),
    'Uranus': dict(mu=5.794e6, radius=25559.0, J2=1.2e-2,
                   rotation_rate=-1.12e-4),
    'Neptune': dict(mu=6.809e6, radius=24764.0, J2=4.0e-3,
                    rotation_rate=9.47e-5),
    'Sun': dict(mu=1.32712428e11, radius=6.96e5, J2=None,
                rotation_rate=None),
}

"""
Predefined standard atmosphere model
"""
EARTH_STD_ATMO = AtmosphereModel(
    rho0=1.225,
    H=8500.0,
    r0=6378137.0
)

# Approximate mean Earth-Sun distance [km]
ASTRONOMICAL_UNIT = 1.495978707e8


def default_body(name: str, atmosphere: Optional[AtmosphereModel] = None) -> Body:
    """
    Create a celestial body from the default constants table.

    Parameters
    ----------
    name : str
        Key of BODY_CONSTANTS, e.g. 'Earth'
    atmosphere : AtmosphereModel, optional
        Atmosphere attached to the body

    Returns
    -------
    Body
        New body with no ephemeris (place it with ``SystemOfBodies.set_ephemeris``
        or use it as the global frame origin)
    """
    if name not in BODY_CONSTANTS:
        raise ValueError(
            f"No default constants for '{name}'. Use: {list(BODY_CONSTANTS)}"
        )
    constants = BODY_CONSTANTS[name]
    rotation = None
    if constants['rotation_rate'] is not None:
        rotation = RotationModel(constants['rotation_rate'])
    return Body(
        name,
        gravitational_parameter=constants['mu'],
        radius=constants['radius'],
        j2=constants['J2'],
        rotation_model=rotation,
        atmosphere=atmosphere,
    )


def spacecraft(name: str = "Spacecraft", mass: float = 500.0,
               reference_area: float = 4.0,
               drag_coefficient: float = 2.2) -> Body:
    """Create a spacecraft body record [kg, m^2]."""
    return Body(name, mass=mass, reference_area=reference_area,
                drag_coefficient=drag_coefficient)


def default_ground_stations(body_radius: float) -> list:
    """A small network of ground stations on a spherical Earth."""
    sites = {
        'Madrid': (40.43, -4.25),
        'Goldstone': (35.43, -116.89),
        'Canberra': (-35.40, 148.98),
        'Kiruna': (67.86, 20.96),
    }
    return [GroundStation.from_geodetic(name, np.radians(lat), np.radians(lon),
                                        0.0, body_radius)
            for name, (lat, lon) in sites.items()]


def create_earth_system(spacecraft_names: Sequence[str] = ("Spacecraft",),
                        include_atmosphere: bool = True,
                        include_moon: bool = False,
                        include_sun: bool = False,
                        ground_stations: Optional[Iterable[GroundStation]] = None
                        ) -> SystemOfBodies:
    """
    Create an Earth-centered system of bodies.

    Parameters
    ----------
    spacecraft_names : sequence of str
        Spacecraft to add with default properties
    include_atmosphere : bool
        Attach the standard exponential atmosphere to Earth
    include_moon, include_sun : bool
        Add the Moon / Sun at fixed positions relative to Earth, for
        viability and avoidance-angle computations
    ground_stations : iterable of GroundStation, optional
        Stations added to Earth. Default: ``default_ground_stations``

    Returns
    -------
    SystemOfBodies
        New system with Earth as global frame origin
    """
    bodies = SystemOfBodies(global_frame_origin='Earth')
    earth = default_body('Earth', EARTH_STD_ATMO if include_atmosphere else None)
    bodies.add_body(earth)
    if ground_stations is None:
        ground_stations = default_ground_stations(earth.radius)
    for station in ground_stations:
        earth.add_ground_station(station)

    if include_moon:
        moon = default_body('Moon')
        moon.ephemeris = ConstantEphemeris([384400.0, 0.0, 0.0, 0.0, 0.0, 0.0])
        moon.ephemeris_origin = 'Earth'
        bodies.add_body(moon)
    if include_sun:
        sun = default_body('Sun')
        sun.ephemeris = ConstantEphemeris([ASTRONOMICAL_UNIT, 0.0, 0.0, 0.0, 0.0, 0.0])
        sun.ephemeris_origin = 'Earth'
        bodies.add_body(sun)

    for name in spacecraft_names:
        bodies.add_body(spacecraft(name))
    return bodies
