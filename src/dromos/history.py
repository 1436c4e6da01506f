"""
Epoch-ordered histories produced by propagation runs.

Histories are read-only mappings from epoch to array value. Propagators
own and grow them during a single run; callers receive them as mappings
and can interpolate, export to pandas or plot them.
"""

from collections.abc import Mapping
from typing import Optional, Sequence
import numpy as np
import pandas as pd
import plotly.graph_objects as go

from .config import config


def lagrange_interpolate(epochs: np.ndarray, values: np.ndarray, t: float,
                         order: Optional[int] = None) -> np.ndarray:
    """
    Evaluate a Lagrange interpolant through tabulated values.

    Parameters
    ----------
    epochs : np.ndarray
        Strictly increasing node epochs, shape (N,)
    values : np.ndarray
        Node values, shape (N, ...)
    t : float
        Evaluation epoch
    order : int, optional
        Number of interpolation nodes. Default: config.INTERPOLATION_ORDER

    Returns
    -------
    np.ndarray
        Interpolated value with the trailing shape of ``values``

    Raises
    ------
    ValueError
        If the history is empty or ``t`` lies outside the tabulated range.

    Notes
    -----
    Nodes are taken from a window centered on ``t`` and shifted inwards
    near the boundaries. Evaluation exactly on a node returns that node's
    value without round-off.
    """
    if order is None:
        order = config.INTERPOLATION_ORDER
    n = len(epochs)
    if n == 0:
        raise ValueError("Cannot interpolate an empty history")

    # Tolerate round-off at the arc boundaries
    span = max(abs(epochs[-1] - epochs[0]), 1.0)
    tol = config.TIME_TOLERANCE * span
    if t < epochs[0] - tol or t > epochs[-1] + tol:
        raise ValueError(
            f"Epoch {t} outside of history range [{epochs[0]}, {epochs[-1]}]"
        )
    t = min(max(t, epochs[0]), epochs[-1])

    idx = int(np.searchsorted(epochs, t))
    if idx < n and epochs[idx] == t:
        return np.array(values[idx], dtype=float)
    if n == 1:
        return np.array(values[0], dtype=float)

    m = max(2, min(order, n))
    start = int(np.clip(idx - m // 2, 0, n - m))
    nodes = epochs[start:start + m]
    weights = np.ones(m)
    for j in range(m):
        for k in range(m):
            if k != j:
                weights[j] *= (t - nodes[k]) / (nodes[j] - nodes[k])
    return np.tensordot(weights, values[start:start + m], axes=1)


class History(Mapping):
    """
    Read-only ordered mapping from epoch to array value.

    Insertion order equals increasing epoch and epochs are never
    duplicated. Only the owning propagator appends to or clears a history.

    Examples
    --------
    >>> history = propagator.state_history
    >>> len(history)
    412
    >>> history[history.epochs[-1]]      # exact lookup
    >>> history.interpolate(1234.5)       # Lagrange interpolation
    """

    def __init__(self, epochs: Sequence[float] = (), values: Sequence = ()):
        self._epochs = []
        self._values = []
        self._index = {}
        for epoch, value in zip(epochs, values):
            self._append(epoch, value)

    # ========== MUTATION (OWNER ONLY) ==========
    def _append(self, epoch: float, value) -> None:
        epoch = float(epoch)
        if self._epochs and epoch <= self._epochs[-1]:
            raise ValueError(
                f"History epochs must be strictly increasing: "
                f"{epoch} after {self._epochs[-1]}"
            )
        self._index[epoch] = len(self._epochs)
        self._epochs.append(epoch)
        self._values.append(np.array(value, dtype=float))

    def _clear(self) -> None:
        self._epochs.clear()
        self._values.clear()
        self._index.clear()

    # ========== MAPPING PROTOCOL ==========
    def __getitem__(self, epoch):
        value = self._values[self._index[float(epoch)]]
        return value.copy()

    def __iter__(self):
        return iter(self._epochs)

    def __len__(self):
        return len(self._epochs)

    def __repr__(self):
        if not self._epochs:
            return f"{type(self).__name__}(empty)"
        return (f"{type(self).__name__}({len(self)} epochs, "
                f"t=[{self._epochs[0]}, {self._epochs[-1]}], "
                f"shape={self._values[0].shape})")

    # ========== ACCESSORS ==========
    @property
    def epochs(self) -> np.ndarray:
        """Epochs as a float array, shape (N,)."""
        return np.array(self._epochs, dtype=float)

    @property
    def data(self) -> np.ndarray:
        """Values stacked along a leading epoch axis, shape (N, ...)."""
        if not self._values:
            return np.empty((0,))
        return np.stack(self._values)

    @property
    def initial_epoch(self) -> float:
        return self._epochs[0]

    @property
    def final_epoch(self) -> float:
        return self._epochs[-1]

    @property
    def initial_value(self) -> np.ndarray:
        return self._values[0].copy()

    @property
    def final_value(self) -> np.ndarray:
        return self._values[-1].copy()

    def contains_time(self, t: float) -> bool:
        """Check whether ``t`` lies within the tabulated epoch range."""
        return bool(self._epochs) and self._epochs[0] <= t <= self._epochs[-1]

    def interpolate(self, t: float, order: Optional[int] = None) -> np.ndarray:
        """
        Interpolate the history at an arbitrary epoch.

        Parameters
        ----------
        t : float
            Evaluation epoch, inside the tabulated range
        order : int, optional
            Number of interpolation nodes. Default: config.INTERPOLATION_ORDER
        """
        if float(t) in self._index:
            return self[t]
        return lagrange_interpolate(self.epochs, self.data, float(t), order)

    def copy(self):
        """Return an independent copy of this history."""
        return type(self)(self._epochs, self._values)

    def to_dataframe(self, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """
        Export history to pandas DataFrame.

        Matrix-valued entries are flattened row-major.

        Parameters
        ----------
        columns : sequence of str, optional
            Names for the flattened value components.
            Default: 'x0', 'x1', ...

        Returns
        -------
        pd.DataFrame
            DataFrame with a 'time' column followed by one column per component
        """
        values = self.data.reshape(len(self), -1)
        if columns is None:
            columns = [f"x{i}" for i in range(values.shape[1])]
        elif len(columns) != values.shape[1]:
            raise ValueError(
                f"Expected {values.shape[1]} column names, got {len(columns)}"
            )
        data = {'time': self.epochs}
        for i, name in enumerate(columns):
            data[name] = values[:, i]
        return pd.DataFrame(data)


class StateHistory(History):
    """
    History of state vectors.

    Adds conveniences for Cartesian states ([x, y, z, vx, vy, vz]).
    """

    _CARTESIAN_COLUMNS = ('x', 'y', 'z', 'vx', 'vy', 'vz')

    @property
    def final_state(self) -> np.ndarray:
        return self.final_value

    def to_dataframe(self, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        if columns is None and self._values and self._values[0].shape == (6,):
            columns = self._CARTESIAN_COLUMNS
        return super().to_dataframe(columns)

    # ========== PLOTTING ==========
    def plot_3d(self, central_body_radius: Optional[float] = None,
                body_color: Optional[str] = None,
                traj_color: Optional[str] = None,
                body_opacity: Optional[float] = None) -> go.Figure:
        """
        Create 3D plot of the position history with optional central body.

        Parameters
        ----------
        central_body_radius : float, optional
            Radius of a sphere drawn at the origin [km]. Not drawn if None.
        body_color : str, optional
            Color of central body (default: config.DEFAULT_BODY_COLOR)
        traj_color : str, optional
            Color of trajectory line (default: config.DEFAULT_TRAJ_COLOR)
        body_opacity : float, optional
            Opacity of central body (default: config.DEFAULT_BODY_OPACITY)

        Returns
        -------
        go.Figure
            Plotly Figure object
        """
        body_color = body_color or config.DEFAULT_BODY_COLOR
        traj_color = traj_color or config.DEFAULT_TRAJ_COLOR
        if body_opacity is None:
            body_opacity = config.DEFAULT_BODY_OPACITY

        fig = go.Figure()
        if central_body_radius is not None:
            self._add_sphere_to_plot(fig, (0.0, 0.0, 0.0), central_body_radius,
                                     body_color, body_opacity, "Central Body")
        self.add_to_plot(fig, color=traj_color, name='Trajectory')
        fig.update_layout(
            scene=dict(
                xaxis_title='X [km]',
                yaxis_title='Y [km]',
                zaxis_title='Z [km]',
                aspectmode='data'
            ),
            title='Propagated Trajectory',
            showlegend=True
        )
        return fig

    def add_to_plot(self, fig: go.Figure, color: Optional[str] = None,
                    name: Optional[str] = None, **kwargs) -> go.Figure:
        """
        Add this position history to an existing Plotly figure.

        Returns
        -------
        go.Figure
            Updated Plotly Figure object (same object, modified in place)
        """
        positions = self.data[:, 0:3]
        color = color or config.DEFAULT_TRAJ_COLOR_ADD
        if name is None:
            n_existing = sum(1 for trace in fig.data
                             if isinstance(trace, go.Scatter3d))
            name = f'Trajectory {n_existing + 1}'
        fig.add_trace(go.Scatter3d(
            x=positions[:, 0],
            y=positions[:, 1],
            z=positions[:, 2],
            mode='lines',
            line=dict(color=color, width=3),
            name=name,
            hovertemplate='x: %{x:.1f}<br>y: %{y:.1f}<br>z: %{z:.1f}<extra></extra>',
            **kwargs
        ))
        return fig

    @staticmethod
    def _add_sphere_to_plot(fig, center, radius, color, opacity, name):
        """Helper to add a sphere to the plot at specified center."""
        u = np.linspace(0, 2 * np.pi, 30)
        v = np.linspace(0, np.pi, 20)

        x = center[0] + radius * np.outer(np.cos(u), np.sin(v))
        y = center[1] + radius * np.outer(np.sin(u), np.sin(v))
        z = center[2] + radius * np.outer(np.ones(np.size(u)), np.cos(v))

        fig.add_trace(go.Surface(
            x=x, y=y, z=z,
            colorscale=[[0, color], [1, color]],
            showscale=False,
            opacity=opacity,
            name=name,
            hoverinfo='name'
        ))
