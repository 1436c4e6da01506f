"""
State derivative providers.

A state derivative provider evaluates the right-hand side of the equations
of motion, f(t, x; p), and its Jacobians with respect to the state (A) and
to named model parameters (B). Named parameters can be read and written
between propagation runs; this is how estimation re-linearizes the
dynamics.

Implementations
---------------
CallableDynamics
    Wraps plain Python callables. Jacobians default to central differences.
SymbolicDynamics
    Built from heyoka expressions. Derivative and Jacobians are compiled
    with ``hy.cfunc`` and the system can be integrated by the Taylor
    integrator.
VariationalDynamics, VariationalOnlyDynamics
    Augmented systems carrying the state transition and sensitivity
    matrices, built on top of another provider.
"""

from abc import ABC, abstractmethod
from functools import reduce
import operator
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import numpy as np
import heyoka as hy

from .config import config
from .exceptions import ConfigurationError


class StateDerivativeProvider(ABC):
    """
    Interface to equations of motion with named model parameters.

    Subclasses implement ``state_size`` and ``derivative``; Jacobians fall
    back to central finite differences when not overridden.

    Attributes
    ----------
    propagated_state_size : int
        Number of leading state components forming the canonical state.
        Equal to ``state_size`` except for augmented systems.
    """

    def __init__(self, parameters: Optional[Dict[str, float]] = None):
        self._parameters = {name: float(value)
                            for name, value in (parameters or {}).items()}

    # ========== STATE ==========
    @property
    @abstractmethod
    def state_size(self) -> int:
        ...

    @property
    def propagated_state_size(self) -> int:
        return self.state_size

    # ========== PARAMETERS ==========
    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(self._parameters)

    @property
    def parameter_values(self) -> np.ndarray:
        return np.fromiter(self._parameters.values(), dtype=float,
                           count=len(self._parameters))

    def has_parameter(self, name: str) -> bool:
        return name in self._parameters

    def parameter_index(self, name: str) -> int:
        try:
            return self.parameter_names.index(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown dynamics parameter '{name}'. "
                f"Available: {list(self._parameters)}"
            ) from None

    def get_parameter(self, name: str) -> float:
        self.parameter_index(name)
        return self._parameters[name]

    def set_parameter(self, name: str, value: float) -> None:
        self.parameter_index(name)
        self._parameters[name] = float(value)

    # ========== EVALUATION ==========
    @abstractmethod
    def derivative(self, time: float, state: np.ndarray) -> np.ndarray:
        ...

    def jacobian_wrt_state(self, time: float, state: np.ndarray) -> np.ndarray:
        """Central-difference Jacobian of the derivative w.r.t. the state."""
        state = np.asarray(state, dtype=float)
        n = state.size
        A = np.empty((n, n))
        for j in range(n):
            h = config.FINITE_DIFFERENCE_STEP * max(1.0, abs(state[j]))
            up = state.copy()
            down = state.copy()
            up[j] += h
            down[j] -= h
            A[:, j] = (self.derivative(time, up) -
                       self.derivative(time, down)) / (2.0 * h)
        return A

    def jacobian_wrt_parameters(self, time: float,
                                state: np.ndarray) -> np.ndarray:
        """Central-difference Jacobian of the derivative w.r.t. all parameters."""
        B = np.empty((self.state_size, len(self._parameters)))
        for j, name in enumerate(self.parameter_names):
            nominal = self._parameters[name]
            h = config.FINITE_DIFFERENCE_STEP * max(1.0, abs(nominal))
            try:
                self._parameters[name] = nominal + h
                up = self.derivative(time, state)
                self._parameters[name] = nominal - h
                down = self.derivative(time, state)
            finally:
                self._parameters[name] = nominal
            B[:, j] = (up - down) / (2.0 * h)
        return B

    def evaluate_with_jacobians(self, time: float, state: np.ndarray
                                ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return derivative, state Jacobian and parameter Jacobian together."""
        return (self.derivative(time, state),
                self.jacobian_wrt_state(time, state),
                self.jacobian_wrt_parameters(time, state))

    def taylor_system(self):
        """Symbolic ODE system for the Taylor integrator, if available."""
        raise ConfigurationError(
            f"{type(self).__name__} does not provide symbolic equations of "
            f"motion; use a Runge-Kutta integrator instead"
        )

    def variational_taylor_system(self, sensitivity_columns):
        """Symbolic augmented system for concurrent variational integration."""
        raise ConfigurationError(
            f"{type(self).__name__} does not provide symbolic variational "
            f"equations; use a Runge-Kutta integrator instead"
        )

    def __repr__(self):
        return (f"{type(self).__name__}(state_size={self.state_size}, "
                f"parameters={list(self._parameters)})")


class CallableDynamics(StateDerivativeProvider):
    """
    Dynamics defined by Python callables.

    Parameters
    ----------
    derivative : callable
        ``f(t, x, p) -> dx/dt`` where ``p`` holds parameter values in the
        order of ``parameters``
    state_size : int
        Dimension of the state vector
    parameters : dict, optional
        Named model parameters and their initial values
    state_jacobian : callable, optional
        ``A(t, x, p)``, shape (n, n). Finite differences if None.
    parameter_jacobian : callable, optional
        ``B(t, x, p)``, shape (n, n_params). Finite differences if None.

    Examples
    --------
    >>> M = np.diag([-0.1, 0.2])
    >>> dyn = CallableDynamics(lambda t, x, p: M @ x, state_size=2,
    ...                        state_jacobian=lambda t, x, p: M)
    """

    def __init__(self, derivative: Callable, state_size: int,
                 parameters: Optional[Dict[str, float]] = None,
                 state_jacobian: Optional[Callable] = None,
                 parameter_jacobian: Optional[Callable] = None):
        super().__init__(parameters)
        if state_size < 1:
            raise ConfigurationError(
                f"State size must be positive, got {state_size}"
            )
        self._derivative = derivative
        self._state_size = int(state_size)
        self._state_jacobian = state_jacobian
        self._parameter_jacobian = parameter_jacobian

    @property
    def state_size(self):
        return self._state_size

    def derivative(self, time, state):
        return np.asarray(self._derivative(time, state, self.parameter_values),
                          dtype=float)

    def jacobian_wrt_state(self, time, state):
        if self._state_jacobian is None:
            return super().jacobian_wrt_state(time, state)
        return np.asarray(
            self._state_jacobian(time, state, self.parameter_values), dtype=float
        ).reshape(self._state_size, self._state_size)

    def jacobian_wrt_parameters(self, time, state):
        if self._parameter_jacobian is None:
            return super().jacobian_wrt_parameters(time, state)
        return np.asarray(
            self._parameter_jacobian(time, state, self.parameter_values),
            dtype=float
        ).reshape(self._state_size, len(self._parameters))


def _symbolic_sum(terms):
    return reduce(operator.add, terms)


def _make_matrix_vars(prefix, rows, cols):
    """Create a rows x cols nested list of heyoka variables."""
    names = [f"{prefix}_{i}_{j}" for i in range(rows) for j in range(cols)]
    variables = hy.make_vars(*names)
    if len(names) == 1:
        variables = [variables]
    return [list(variables[i * cols:(i + 1) * cols]) for i in range(rows)]


class SymbolicDynamics(StateDerivativeProvider):
    """
    Dynamics defined by heyoka expressions.

    Parameters
    ----------
    equations : list of (var, rhs) tuples
        heyoka ODE system, as accepted by ``hy.taylor_adaptive``. Runtime
        parameters appear as ``hy.par[i]``.
    parameters : dict, optional
        Parameter names and values, in ``hy.par`` index order.

    Notes
    -----
    Equations must be autonomous (no explicit ``hy.time``). The compiled
    functions are built lazily on first evaluation; the Jacobians are
    obtained by symbolic differentiation.
    """

    def __init__(self, equations: List[Tuple], parameters: Optional[Dict[str, float]] = None):
        super().__init__(parameters)
        if not equations:
            raise ConfigurationError("Symbolic dynamics require at least one equation")
        self._equations = list(equations)
        self._variables = [var for var, _ in self._equations]
        self._rhs = [rhs for _, rhs in self._equations]
        self._cf_rhs = None
        self._cf_full = None
        self._state_jacobian_expr = None
        self._parameter_jacobian_expr = None

    @property
    def state_size(self):
        return len(self._equations)

    @property
    def equations(self) -> List[Tuple]:
        return list(self._equations)

    @property
    def variables(self) -> list:
        return list(self._variables)

    # ========== SYMBOLIC JACOBIANS ==========
    def _symbolic_jacobians(self):
        if self._state_jacobian_expr is None:
            self._state_jacobian_expr = [
                [hy.diff(rhs, var) for var in self._variables]
                for rhs in self._rhs
            ]
            self._parameter_jacobian_expr = [
                [hy.diff(rhs, hy.par[j]) for j in range(len(self._parameters))]
                for rhs in self._rhs
            ]
        return self._state_jacobian_expr, self._parameter_jacobian_expr

    # ========== COMPILED EVALUATION ==========
    def _call(self, cfunc, state):
        inputs = np.ascontiguousarray(state, dtype=float)
        n_pars = cfunc.nparams
        if n_pars:
            return cfunc(inputs, pars=self.parameter_values[:n_pars])
        return cfunc(inputs)

    def derivative(self, time, state):
        if self._cf_rhs is None:
            self._cf_rhs = hy.cfunc(self._rhs, vars=self._variables)
        return np.array(self._call(self._cf_rhs, state))

    def evaluate_with_jacobians(self, time, state):
        n = self.state_size
        n_p = len(self._parameters)
        if self._cf_full is None:
            A_expr, B_expr = self._symbolic_jacobians()
            outputs = list(self._rhs)
            outputs += [e for row in A_expr for e in row]
            outputs += [e for row in B_expr for e in row]
            self._cf_full = hy.cfunc(outputs, vars=self._variables)
        out = np.array(self._call(self._cf_full, state))
        f = out[:n]
        A = out[n:n + n * n].reshape(n, n)
        B = out[n + n * n:].reshape(n, n_p)
        return f, A, B

    def jacobian_wrt_state(self, time, state):
        return self.evaluate_with_jacobians(time, state)[1]

    def jacobian_wrt_parameters(self, time, state):
        return self.evaluate_with_jacobians(time, state)[2]

    # ========== TAYLOR INTEGRATION ==========
    def taylor_system(self):
        return self._equations, self.parameter_values

    def variational_taylor_system(self, sensitivity_columns):
        """
        Build the symbolic augmented system [x, Phi, S].

        Parameters
        ----------
        sensitivity_columns : sequence of (str or None)
            Parameter name for each sensitivity column; None gives a
            column with zero forcing.
        """
        n = self.state_size
        A_expr, B_expr = self._symbolic_jacobians()
        phi = _make_matrix_vars("phi", n, n)
        sys = list(self._equations)
        for i in range(n):
            for j in range(n):
                sys.append((phi[i][j], _symbolic_sum(
                    [A_expr[i][k] * phi[k][j] for k in range(n)])))

        columns = list(sensitivity_columns)
        if columns:
            s = _make_matrix_vars("s", n, len(columns))
            for i in range(n):
                for j, name in enumerate(columns):
                    terms = [A_expr[i][k] * s[k][j] for k in range(n)]
                    if name is not None:
                        terms.append(B_expr[i][self.parameter_index(name)])
                    sys.append((s[i][j], _symbolic_sum(terms)))
        return sys, self.parameter_values


class VariationalDynamics(StateDerivativeProvider):
    """
    Dynamics augmented with the variational equations.

    The state is ``[x, Phi (row-major), S (row-major)]`` with

        dx/dt   = f(t, x)
        dPhi/dt = A(t) Phi
        dS/dt   = A(t) S + B(t)

    Parameters
    ----------
    dynamics : StateDerivativeProvider
        Provider of f, A and B. Parameter storage is shared with it.
    sensitivity_columns : sequence of (str or None)
        Dynamics parameter name for each column of S; None for parameters
        that do not enter the dynamics (their columns stay zero).
    """

    def __init__(self, dynamics: StateDerivativeProvider,
                 sensitivity_columns: Sequence[Optional[str]] = ()):
        super().__init__()
        self._dynamics = dynamics
        self._parameters = dynamics._parameters
        self._columns = list(sensitivity_columns)
        self._column_indices = [
            None if name is None else dynamics.parameter_index(name)
            for name in self._columns
        ]
        self._taylor_equations = None

    @property
    def dynamics(self) -> StateDerivativeProvider:
        return self._dynamics

    @property
    def sensitivity_columns(self) -> list:
        return list(self._columns)

    @property
    def propagated_state_size(self):
        return self._dynamics.state_size

    @property
    def number_of_sensitivity_columns(self) -> int:
        return len(self._columns)

    @property
    def state_size(self):
        n = self._dynamics.state_size
        return n + n * n + n * len(self._columns)

    def initial_variational_state(self) -> np.ndarray:
        """Flattened [Phi(t0) = I, S(t0) = 0]."""
        n = self._dynamics.state_size
        return np.concatenate([np.eye(n).ravel(),
                               np.zeros(n * len(self._columns))])

    def augment(self, state: np.ndarray) -> np.ndarray:
        """Append the initial variational state to a dynamics state."""
        return np.concatenate([np.asarray(state, dtype=float),
                               self.initial_variational_state()])

    def split(self, augmented: np.ndarray):
        """Split an augmented vector into (x, Phi, S)."""
        n = self._dynamics.state_size
        p = len(self._columns)
        x = augmented[:n]
        phi = augmented[n:n + n * n].reshape(n, n)
        s = augmented[n + n * n:].reshape(n, p)
        return x, phi, s

    def _forcing(self, B):
        n = self._dynamics.state_size
        forcing = np.zeros((n, len(self._columns)))
        for c, index in enumerate(self._column_indices):
            if index is not None:
                forcing[:, c] = B[:, index]
        return forcing

    def derivative(self, time, state):
        x, phi, s = self.split(np.asarray(state, dtype=float))
        f, A, B = self._dynamics.evaluate_with_jacobians(time, x)
        return np.concatenate([f, (A @ phi).ravel(),
                               (A @ s + self._forcing(B)).ravel()])

    def taylor_system(self):
        if self._taylor_equations is None:
            self._taylor_equations = \
                self._dynamics.variational_taylor_system(self._columns)[0]
        return self._taylor_equations, self._dynamics.parameter_values


class VariationalOnlyDynamics(VariationalDynamics):
    """
    Variational equations evaluated along a stored state history.

    The state is ``[Phi, S]``; A and B are evaluated at states interpolated
    from ``state_history``. Used for sequential variational integration.
    """

    def __init__(self, dynamics, state_history, sensitivity_columns=()):
        super().__init__(dynamics, sensitivity_columns)
        self._state_history = state_history

    @property
    def propagated_state_size(self):
        return self.state_size

    @property
    def state_size(self):
        n = self._dynamics.state_size
        return n * n + n * len(self._columns)

    def split(self, variational):
        n = self._dynamics.state_size
        phi = variational[:n * n].reshape(n, n)
        s = variational[n * n:].reshape(n, len(self._columns))
        return phi, s

    def derivative(self, time, state):
        phi, s = self.split(np.asarray(state, dtype=float))
        x = self._state_history.interpolate(time)
        _, A, B = self._dynamics.evaluate_with_jacobians(time, x)
        return np.concatenate([(A @ phi).ravel(),
                               (A @ s + self._forcing(B)).ravel()])

    def taylor_system(self):
        raise ConfigurationError(
            "Sequential variational equations use an interpolated state "
            "history and cannot be integrated with the Taylor integrator"
        )
