"""
Conversions between Cartesian states and Keplerian elements.

Element order is [a, e, i, omega, w, nu]: semi-major axis [km],
eccentricity, inclination, right ascension of the ascending node,
argument of periapsis and true anomaly [rad]. Cartesian order is
[x, y, z, vx, vy, vz] in km and km/s.
"""

import numpy as np


def keplerian_to_cartesian(elements, mu: float) -> np.ndarray:
    """
    Convert Keplerian elements to a Cartesian state vector.

    Parameters
    ----------
    elements : array_like
        [a, e, i, omega, w, nu]
    mu : float
        Gravitational parameter [km^3/s^2]

    Returns
    -------
    np.ndarray
        Cartesian state [x, y, z, vx, vy, vz]
    """
    a, e, i, omega, w, nu = np.asarray(elements, dtype=float)
    # find semi-latus rectum
    p = a * (1 - e**2)
    # find position and velocity in perifocal frame
    r_mag = p / (1 + e * np.cos(nu))
    rvec = np.array([r_mag * np.cos(nu), r_mag * np.sin(nu), 0.0])
    vvec = np.array([-np.sqrt(mu / p) * np.sin(nu),
                     np.sqrt(mu / p) * (e + np.cos(nu)), 0.0])
    # rotate perifocal -> inertial (R3(-omega) R1(-i) R3(-w))
    DCM = _rot3(omega) @ _rot1(i) @ _rot3(w)
    return np.concatenate([DCM @ rvec, DCM @ vvec])


def cartesian_to_keplerian(state, mu: float) -> np.ndarray:
    """
    Convert a Cartesian state vector to Keplerian elements.

    Uses algorithm from Flores & Fantino, Advances in Space Research, v.75,pp.4910

    Parameters
    ----------
    state : array_like
        [x, y, z, vx, vy, vz]
    mu : float
        Gravitational parameter [km^3/s^2]

    Returns
    -------
    np.ndarray
        [a, e, i, omega, w, nu] with angles wrapped to [0, 2*pi)
    """
    state = np.asarray(state, dtype=float)
    rvec = state[:3]
    vvec = state[3:6]
    # angular momentum vector h = r x v
    hvec = np.cross(rvec, vvec)
    i = np.arctan2(np.sqrt(hvec[0]**2 + hvec[1]**2), hvec[2])
    # longitude of ascending node
    omega = np.arctan2(hvec[0], -hvec[1])
    # line of nodes and in-plane normal to it
    nhat = np.array([np.cos(omega), np.sin(omega), 0.0])
    bhat = np.cross(hvec / np.linalg.norm(hvec), nhat)
    # semimajor axis from energy equation
    a = ((2 / np.linalg.norm(rvec)) - (np.dot(vvec, vvec) / mu))**(-1)
    # eccentricity vector
    evec = np.cross(vvec, hvec) / mu - rvec / np.linalg.norm(rvec)
    w = np.arctan2(np.dot(evec, bhat), np.dot(evec, nhat))
    nu = np.arctan2(np.dot(rvec, bhat), np.dot(rvec, nhat)) - w
    e = np.linalg.norm(evec)
    two_pi = 2.0 * np.pi
    return np.array([a, e, i, omega % two_pi, w % two_pi, nu % two_pi])


def _rot1(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[1.0, 0.0, 0.0],
                     [0.0, c, -s],
                     [0.0, s, c]])


def _rot3(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0],
                     [s, c, 0.0],
                     [0.0, 0.0, 1.0]])
