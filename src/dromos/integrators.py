"""
Numerical integrators used by the propagators.

An integrator advances a state vector by one step at a time given a
derivative provider. Every step reports the new epoch and state, the step
size taken, and whether the step produced a finite result. A failed step
never advances the integrator, so the last valid state stays available.

Three integrator kinds are available:

- fixed-step classical Runge-Kutta 4 (``IntegratorType.RUNGE_KUTTA_4``)
- adaptive Dormand-Prince 5(4) with FSAL (``IntegratorType.DORMAND_PRINCE``)
- heyoka's adaptive Taylor integrator (``IntegratorType.TAYLOR``), which
  requires dynamics that expose symbolic equations of motion
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import numpy as np
import heyoka as hy

from .exceptions import ConfigurationError
from .utils import validation_error


class IntegratorType(Enum):
    RUNGE_KUTTA_4 = 'rk4'
    DORMAND_PRINCE = 'rkdp45'
    TAYLOR = 'taylor'


@dataclass(frozen=True)
class IntegratorSettings:
    """
    Immutable integrator configuration.

    Attributes
    ----------
    integrator_type : IntegratorType or str
        Integrator kind ('rk4', 'rkdp45' or 'taylor')
    initial_step_size : float
        Fixed step for RK4, first trial step for adaptive integrators [s]
    relative_tolerance : float
        Relative local error tolerance (adaptive integrators)
    absolute_tolerance : float
        Absolute local error tolerance (Dormand-Prince only)
    minimum_step_size : float
        Smallest step an adaptive integrator may take [s]
    maximum_step_size : float
        Largest step an adaptive integrator may take [s]
    safety_factor : float
        Step-size controller safety factor (Dormand-Prince only)
    minimum_factor_increase, maximum_factor_increase : float
        Bounds on the step-size change ratio between steps
    """
    integrator_type: IntegratorType
    initial_step_size: float
    relative_tolerance: float = 1e-10
    absolute_tolerance: float = 1e-10
    minimum_step_size: float = 1e-6
    maximum_step_size: float = np.inf
    safety_factor: float = 0.9
    minimum_factor_increase: float = 0.2
    maximum_factor_increase: float = 5.0

    def __post_init__(self):
        object.__setattr__(self, 'integrator_type',
                           self._parse_integrator_type(self.integrator_type))
        if not self.initial_step_size > 0:
            raise ConfigurationError(
                f"Initial step size must be positive, got {self.initial_step_size}"
            )
        if self.relative_tolerance <= 0 or self.absolute_tolerance <= 0:
            raise ConfigurationError("Integration tolerances must be positive")
        if not 0 < self.minimum_step_size <= self.maximum_step_size:
            raise ConfigurationError(
                f"Invalid step size bounds [{self.minimum_step_size}, "
                f"{self.maximum_step_size}]"
            )
        if not 0 < self.safety_factor <= 1:
            raise ConfigurationError(
                f"Safety factor must be in (0, 1], got {self.safety_factor}"
            )
        if not 0 < self.minimum_factor_increase < 1 < self.maximum_factor_increase:
            raise ConfigurationError(
                "Step-size change bounds must satisfy 0 < min < 1 < max"
            )
        if (self.integrator_type != IntegratorType.RUNGE_KUTTA_4 and
                not self.minimum_step_size <= self.initial_step_size
                <= self.maximum_step_size):
            validation_error(
                f"Initial step size {self.initial_step_size} outside of "
                f"[{self.minimum_step_size}, {self.maximum_step_size}]"
            )

    @staticmethod
    def _parse_integrator_type(integrator_type):
        """Convert string or enum to IntegratorType enum"""
        if isinstance(integrator_type, IntegratorType):
            return integrator_type
        if isinstance(integrator_type, str):
            type_map = {
                'rk4': IntegratorType.RUNGE_KUTTA_4,
                'RK4': IntegratorType.RUNGE_KUTTA_4,
                'rkdp45': IntegratorType.DORMAND_PRINCE,
                'RKDP45': IntegratorType.DORMAND_PRINCE,
                'dormand_prince': IntegratorType.DORMAND_PRINCE,
                'taylor': IntegratorType.TAYLOR,
            }
            if integrator_type in type_map:
                return type_map[integrator_type]
            raise ConfigurationError(
                f"Unknown integrator type '{integrator_type}'. "
                f"Use: {list(type_map.keys())}"
            )
        raise ConfigurationError(
            f"integrator_type must be IntegratorType or str, "
            f"got {type(integrator_type).__name__}"
        )


# ========== SETTINGS FACTORIES ==========
def runge_kutta_4(step_size: float) -> IntegratorSettings:
    """Fixed-step classical Runge-Kutta 4 settings."""
    return IntegratorSettings(IntegratorType.RUNGE_KUTTA_4, step_size)


def dormand_prince(initial_step_size: float,
                   relative_tolerance: float = 1e-10,
                   absolute_tolerance: float = 1e-10,
                   minimum_step_size: float = 1e-6,
                   maximum_step_size: float = np.inf) -> IntegratorSettings:
    """Adaptive Dormand-Prince 5(4) settings."""
    return IntegratorSettings(
        IntegratorType.DORMAND_PRINCE, initial_step_size,
        relative_tolerance=relative_tolerance,
        absolute_tolerance=absolute_tolerance,
        minimum_step_size=minimum_step_size,
        maximum_step_size=maximum_step_size,
    )


def taylor(tolerance: float = 1e-15,
           maximum_step_size: float = np.inf) -> IntegratorSettings:
    """
    Adaptive Taylor integrator settings (heyoka).

    The Taylor integrator chooses its own step sizes from the tolerance;
    ``maximum_step_size`` caps them, for instance to obtain a denser history.
    """
    return IntegratorSettings(
        IntegratorType.TAYLOR, initial_step_size=min(1.0, maximum_step_size),
        relative_tolerance=tolerance,
        minimum_step_size=min(1e-6, maximum_step_size),
        maximum_step_size=maximum_step_size,
    )


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single integrator step."""
    time: float
    state: np.ndarray
    step_size: float
    success: bool


class Integrator(ABC):
    """
    Single-step integrator driven by a propagator.

    ``initialize`` binds the integrator to a derivative provider and an
    initial condition; ``step`` then advances by one step, optionally
    clamped so that it lands exactly on ``time_limit``.
    """

    def __init__(self, settings: IntegratorSettings):
        self._settings = settings
        self._dynamics = None
        self._time = None
        self._state = None
        self._evaluations = 0

    @property
    def settings(self) -> IntegratorSettings:
        return self._settings

    @property
    def time(self) -> float:
        return self._time

    @property
    def state(self) -> np.ndarray:
        return self._state.copy()

    @property
    def function_evaluations(self) -> int:
        """Cumulative number of derivative evaluations since initialize()."""
        return self._evaluations

    def initialize(self, dynamics, initial_time: float,
                   initial_state: np.ndarray) -> None:
        self._dynamics = dynamics
        self._time = float(initial_time)
        self._state = np.array(initial_state, dtype=float)
        self._evaluations = 0

    @abstractmethod
    def step(self, time_limit: Optional[float] = None) -> StepResult:
        ...

    def _evaluate(self, t, x):
        self._evaluations += 1
        return self._dynamics.derivative(t, x)

    def _clamp(self, h, time_limit):
        """Clamp a trial step to time_limit, returning (h, lands_on_limit)."""
        if time_limit is not None and self._time + h >= time_limit:
            return time_limit - self._time, True
        return h, False

    def _accept(self, new_time, new_state, h) -> StepResult:
        if not np.all(np.isfinite(new_state)):
            return StepResult(self._time, self._state.copy(), h, False)
        self._time = new_time
        self._state = new_state
        return StepResult(new_time, new_state.copy(), h, True)


class RungeKutta4Integrator(Integrator):
    """Classical fixed-step fourth-order Runge-Kutta."""

    def step(self, time_limit=None):
        h, landing = self._clamp(self._settings.initial_step_size, time_limit)
        t, x = self._time, self._state
        k1 = self._evaluate(t, x)
        k2 = self._evaluate(t + 0.5 * h, x + 0.5 * h * k1)
        k3 = self._evaluate(t + 0.5 * h, x + 0.5 * h * k2)
        k4 = self._evaluate(t + h, x + h * k3)
        new_state = x + h / 6.0 * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
        new_time = time_limit if landing else t + h
        return self._accept(new_time, new_state, h)


# Dormand-Prince Butcher tableau (7 stages, FSAL)
_DP_C = np.array([0.0, 1.0 / 5.0, 3.0 / 10.0, 4.0 / 5.0, 8.0 / 9.0, 1.0, 1.0])
_DP_A = (
    (),
    (1.0 / 5.0,),
    (3.0 / 40.0, 9.0 / 40.0),
    (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0),
    (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0, -212.0 / 729.0),
    (9017.0 / 3168.0, -355.0 / 33.0, 46732.0 / 5247.0, 49.0 / 176.0,
     -5103.0 / 18656.0),
    (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0,
     11.0 / 84.0),
)
# 5th-order propagating weights (equal to the last row of A)
_DP_B = np.array([35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0,
                  -2187.0 / 6784.0, 11.0 / 84.0, 0.0])
# Embedded 4th-order weights, used for the error estimate only
_DP_B_STAR = np.array([5179.0 / 57600.0, 0.0, 7571.0 / 16695.0, 393.0 / 640.0,
                       -92097.0 / 339200.0, 187.0 / 2100.0, 1.0 / 40.0])
_DP_E = _DP_B - _DP_B_STAR


class DormandPrinceIntegrator(Integrator):
    """
    Adaptive Dormand-Prince 5(4) integrator with FSAL.

    The local error norm is the RMS of the embedded error estimate scaled by
    ``atol + rtol * max(|y|, |y_new|)``. Rejected trial steps are retried
    with a smaller step; a step at the minimum step size is always accepted.
    """

    def initialize(self, dynamics, initial_time, initial_state):
        super().initialize(dynamics, initial_time, initial_state)
        self._h = self._settings.initial_step_size
        self._k1 = None

    @property
    def current_step_size(self) -> float:
        return self._h

    def step(self, time_limit=None):
        s = self._settings
        while True:
            h, landing = self._clamp(self._h, time_limit)
            k, y_new = self._trial_step(h)
            self._k1 = k[0]
            if not np.all(np.isfinite(y_new)):
                return self._accept(self._time + h, y_new, h)

            error = self._error_norm(self._state, y_new, k, h)
            at_minimum = self._h <= s.minimum_step_size
            if error <= 1.0 or at_minimum or landing and h <= s.minimum_step_size:
                new_time = time_limit if landing else self._time + h
                result = self._accept(new_time, y_new, h)
                self._k1 = k[6]
                if not landing:
                    self._h = self._next_step_size(h, error)
                return result
            self._h = self._next_step_size(h, error)

    def _trial_step(self, h):
        t, y = self._time, self._state
        k = [self._k1 if self._k1 is not None else self._evaluate(t, y)]
        for i in range(1, 7):
            increment = sum(a * k_j for a, k_j in zip(_DP_A[i], k))
            k.append(self._evaluate(t + _DP_C[i] * h, y + h * increment))
            if i == 5:
                y_new = y + h * (_DP_B[:6] @ np.array(k))
                k_last = self._evaluate(t + h, y_new)
                k.append(k_last)
                break
        return np.array(k), y_new

    def _error_norm(self, y, y_new, k, h):
        error = h * (_DP_E @ k)
        scale = (self._settings.absolute_tolerance +
                 self._settings.relative_tolerance *
                 np.maximum(np.abs(y), np.abs(y_new)))
        return float(np.sqrt(np.mean((error / scale) ** 2)))

    def _next_step_size(self, h, error):
        s = self._settings
        if error < 1e-30:
            factor = s.maximum_factor_increase
        else:
            factor = min(s.maximum_factor_increase,
                         max(s.minimum_factor_increase,
                             s.safety_factor * error ** (-0.2)))
        return min(max(h * factor, s.minimum_step_size), s.maximum_step_size)


class TaylorIntegrator(Integrator):
    """
    heyoka adaptive Taylor integrator.

    The dynamics must implement ``taylor_system()`` returning the symbolic
    ODE system and its runtime parameter values. The heyoka integrator is
    compiled once per dynamics object and reused across re-initializations;
    parameter values are refreshed on every ``initialize``.
    """

    def __init__(self, settings):
        super().__init__(settings)
        self._ta = None
        self._compiled_for = None

    def initialize(self, dynamics, initial_time, initial_state):
        super().initialize(dynamics, initial_time, initial_state)
        sys, pars = dynamics.taylor_system()
        if self._compiled_for is not dynamics:
            self._compile_integrator(sys)
            self._compiled_for = dynamics
        n_pars = len(self._ta.pars)
        if n_pars:
            self._ta.pars[:] = np.asarray(pars, dtype=float)[:n_pars]
        self._ta.time = self._time
        self._ta.state[:] = self._state

    def _compile_integrator(self, sys):
        # Runtime parameters are zero-initialized and set before each run
        self._ta = hy.taylor_adaptive(
            sys=sys,
            state=[0.0] * len(sys),
            tol=self._settings.relative_tolerance,
        )

    def step(self, time_limit=None):
        ta = self._ta
        max_delta_t = self._settings.maximum_step_size
        limited_by_arc = (time_limit is not None and
                          time_limit - self._time <= max_delta_t)
        if limited_by_arc:
            max_delta_t = time_limit - self._time
        if np.isfinite(max_delta_t):
            outcome, h = ta.step(max_delta_t=max_delta_t)
        else:
            outcome, h = ta.step()
        self._evaluations += 1

        new_state = np.array(ta.state, dtype=float)
        if outcome == hy.taylor_outcome.err_nf_state or \
                not np.all(np.isfinite(new_state)):
            ta.time = self._time
            ta.state[:] = self._state
            return StepResult(self._time, self._state.copy(), h, False)

        landing = limited_by_arc and outcome == hy.taylor_outcome.time_limit
        if landing:
            ta.time = time_limit
        new_time = time_limit if landing else float(ta.time)
        self._time = new_time
        self._state = new_state
        return StepResult(new_time, new_state.copy(), h, True)


_INTEGRATOR_CLASSES = {
    IntegratorType.RUNGE_KUTTA_4: RungeKutta4Integrator,
    IntegratorType.DORMAND_PRINCE: DormandPrinceIntegrator,
    IntegratorType.TAYLOR: TaylorIntegrator,
}


def create_integrator(settings: IntegratorSettings) -> Integrator:
    """Instantiate the integrator described by ``settings``."""
    return _INTEGRATOR_CLASSES[settings.integrator_type](settings)
