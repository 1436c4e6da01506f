"""
Observation weight models.

A weight model maps an observation set to the weights of its scalar
observations: ``weight(observation_set)`` returns a scalar (same weight for
every component), a vector (one weight per scalar observation) or a full
weight matrix.
"""

from typing import Callable, Dict
import numpy as np

from .exceptions import ConfigurationError
from .observables import ObservableType


class Weight:
    """Unit weights."""

    def __call__(self, observation_set):
        return self.weight(observation_set)

    def weight(self, observation_set):
        return 1.0


class ConstantWeight(Weight):
    """Constant per-component weights, repeated over the epochs of a set."""

    def __init__(self, weights):
        # Store weights
        self.weights = np.atleast_1d(np.asarray(weights, dtype=float)).ravel()
        if np.any(self.weights < 0):
            raise ConfigurationError("Weights must be non-negative")

    def weight(self, observation_set):
        # Calculate number of components and epochs
        nvar = observation_set.observations.shape[1]
        nsam = len(observation_set)
        if self.weights.size == 1:
            return float(self.weights[0])
        if self.weights.size != nvar:
            raise ConfigurationError(
                f"{self.weights.size} weights for {nvar}-component observations"
            )
        return np.tile(self.weights, nsam)


class NoiseWeight(ConstantWeight):
    """Weights 1/sigma^2 from observation noise standard deviations."""

    def __init__(self, standard_deviation):
        sigma = np.atleast_1d(np.asarray(standard_deviation, dtype=float))
        if np.any(sigma <= 0):
            raise ConfigurationError("Noise standard deviations must be positive")
        super().__init__(1.0 / sigma**2)


class ObservableTypeWeight(Weight):
    """Different weight model per observable type; unit weight for others."""

    def __init__(self, weights: Dict[ObservableType, Weight]):
        self.weights = dict(weights)

    def weight(self, observation_set):
        model = self.weights.get(observation_set.observable_type)
        if model is None:
            return 1.0
        return model.weight(observation_set)


class CustomWeight(Weight):
    """Weights from a user function ``function(observation_set)``."""

    def __init__(self, function: Callable):
        self.function = function

    def weight(self, observation_set):
        return self.function(observation_set)


def weight_matrix(weight_model: Weight, observation_set) -> np.ndarray:
    """
    Expand a weight model's output to a full matrix for one observation set.

    Raises
    ------
    ConfigurationError
        If the weights do not match the size of the set
    """
    size = observation_set.size
    W = np.asarray(weight_model.weight(observation_set), dtype=float)
    if W.ndim == 0:
        return float(W) * np.identity(size)
    if W.ndim == 1:
        if W.size != size:
            raise ConfigurationError(f"{W.size} weights for {size} observations")
        return np.diag(W)
    if W.shape != (size, size):
        raise ConfigurationError(
            f"Weight matrix shape {W.shape} does not match {size} observations"
        )
    return W
