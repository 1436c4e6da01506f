"""
Test suite for batch least-squares estimation.
"""

import logging

import pytest
import numpy as np
import pandas as pd
import plotly.graph_objects as go

from dromos import integrators, parameters, termination
from dromos import observation_simulation as obs
from dromos.dynamics import CallableDynamics
from dromos.estimation import (EstimationConvergenceChecker, EstimationInput,
                               EstimationManager, EstimationStatus,
                               estimation_convergence_checker)
from dromos.exceptions import ConfigurationError
from dromos.observables import ObservableType, observed_body_link
from dromos.observation_simulation import (ObservationCollection, RejectedObservation,
                                           SingleObservationSet,
                                           create_observation_simulators,
                                           simulate_observations,
                                           tabulated_simulation_settings)
from dromos.propagation import PropagatorSettings
from dromos.weights import NoiseWeight

LINEAR_MATRIX = np.block([
    [np.zeros((3, 3)), np.identity(3)],
    [-1e-4 * np.identity(3), -1e-3 * np.identity(3)],
])
LINEAR_INITIAL_STATE = np.array([10.0, -5.0, 2.0, 0.01, 0.02, -0.03])

LINK = observed_body_link("Sat")
# Observation epochs on the integrator's nodes
TIMES = np.arange(0.0, 601.0, 20.0)
OFFSET = np.array([0.5, -0.3, 0.2, 1e-3, -2e-3, 5e-4])

# The true x-coordinate peaks near 10.1 over the arc
BOUND = 10.3
BELOW_BOUND = np.array([-0.2, 0.0, 0.0, 0.0, 0.0, 0.0])
ABOVE_BOUND = np.array([0.5, 0.0, 0.0, 0.0, 0.0, 0.0])


def bounded_settings(termination_settings, dynamics=None):
    """Linear problem with the given termination."""
    if dynamics is None:
        dynamics = CallableDynamics(lambda t, x, p: LINEAR_MATRIX @ x, 6,
                                    state_jacobian=lambda t, x, p: LINEAR_MATRIX)
    return PropagatorSettings(
        dynamics=dynamics,
        initial_state=LINEAR_INITIAL_STATE,
        initial_time=0.0,
        termination_settings=termination_settings,
        propagated_body="Sat",
        central_body="Origin",
    )


def make_manager(bodies, settings, parameter_settings=None, observation_models=None):
    if parameter_settings is None:
        parameter_settings = [parameters.initial_state("Sat")]
    if observation_models is None:
        observation_models = [obs.cartesian_state_observable(LINK)]
    parameter_set = parameters.create_parameter_set(parameter_settings, settings)
    return EstimationManager(bodies, parameter_set, observation_models,
                             integrators.runge_kutta_4(10.0), settings)


def simulate_truth(manager, bodies, observable_type=ObservableType.CARTESIAN_STATE):
    """Observations of the trajectory stored at construction."""
    return simulate_observations(
        [tabulated_simulation_settings(observable_type, LINK, TIMES)],
        manager.observation_simulators, bodies)


@pytest.fixture
def manager(linear_bodies, linear_settings):
    return make_manager(linear_bodies, linear_settings)


@pytest.fixture
def observations(manager, linear_bodies):
    return simulate_truth(manager, linear_bodies)


class TestConvergenceChecker:
    """Test the stopping policy."""

    def test_defaults(self):
        checker = estimation_convergence_checker()
        assert checker.maximum_number_of_iterations == 5
        assert not checker.residual_converged(1.0, None)

    def test_invalid(self):
        with pytest.raises(ConfigurationError, match="maximum_number_of_iterations"):
            EstimationConvergenceChecker(maximum_number_of_iterations=0)
        with pytest.raises(ConfigurationError, match="non-negative"):
            estimation_convergence_checker(minimum_residual=-1.0)

    def test_residual_criteria(self):
        checker = estimation_convergence_checker(minimum_residual_change=0.01,
                                                 minimum_residual=1e-6)
        assert checker.residual_converged(1e-7, None)
        assert checker.residual_converged(0.995, 1.0)
        assert not checker.residual_converged(0.9, 1.0)

    def test_parameter_criterion(self):
        checker = estimation_convergence_checker(parameter_change_tolerance=1e-6)
        assert checker.parameters_converged([1e-7, 0.0], [10.0, 0.0])
        assert not checker.parameters_converged([1e-4, 0.0], [10.0, 0.0])


class TestEstimation:
    """Test estimation of the linear problem's initial state."""

    def test_converges_to_truth(self, manager, observations):
        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        output = manager.perform_estimation(EstimationInput(observations))
        assert output.status == EstimationStatus.CONVERGED
        assert output.converged
        assert output.number_of_iterations == 2
        assert np.allclose(output.final_parameters, LINEAR_INITIAL_STATE,
                           rtol=0.0, atol=1e-8)
        assert output.rms_residual_history[1] < 1e-3 * output.rms_residual_history[0]
        assert np.array_equal(output.parameter_history[0], LINEAR_INITIAL_STATE + OFFSET)
        assert len(output.correction_history) == 2
        assert np.allclose(manager.parameter_vector, output.final_parameters)

    def test_sequential_mode(self, linear_bodies, linear_settings):
        parameter_set = parameters.create_parameter_set(
            [parameters.initial_state("Sat")], linear_settings)
        manager = EstimationManager(linear_bodies, parameter_set,
                                    [obs.cartesian_state_observable(LINK)],
                                    integrators.runge_kutta_4(10.0), linear_settings,
                                    integrate_equations_concurrently=False)
        observations = simulate_truth(manager, linear_bodies)
        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        output = manager.perform_estimation(EstimationInput(observations))
        assert output.converged
        assert np.allclose(output.final_parameters, LINEAR_INITIAL_STATE, atol=1e-6)

    def test_trace_is_read_only(self, manager, observations):
        output = manager.perform_estimation(EstimationInput(observations))
        with pytest.raises(ValueError):
            output.residual_history[0][0] = 1.0
        with pytest.raises(ValueError):
            output.parameter_history[0][0] = 1.0

    def test_input_not_modified(self, manager, observations):
        before = observations.concatenated_observations.copy()
        apriori = np.identity(6) * 1e-6
        estimation_input = EstimationInput(observations,
                                           inverse_apriori_covariance=apriori)
        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        manager.perform_estimation(estimation_input)
        assert estimation_input.observation_collection is observations
        assert np.array_equal(observations.concatenated_observations, before)
        assert np.array_equal(estimation_input.inverse_apriori_covariance, apriori)

    def test_rejected_observations_ignored(self, manager, observations):
        rejected = RejectedObservation(ObservableType.CARTESIAN_STATE, LINK, 15.0,
                                       ("elevation below 10.00 deg at Earth",))
        with_rejected = ObservationCollection(observations.observation_sets, [rejected])

        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        first = manager.perform_estimation(EstimationInput(observations))
        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        second = manager.perform_estimation(EstimationInput(with_rejected))
        assert first.number_of_iterations == second.number_of_iterations
        assert np.array_equal(first.final_parameters, second.final_parameters)
        assert first.rms_residual_history == second.rms_residual_history

    def test_strong_apriori_holds_estimate(self, manager, observations):
        start = LINEAR_INITIAL_STATE + OFFSET
        manager.parameter_vector = start
        output = manager.perform_estimation(
            EstimationInput(observations, inverse_apriori_covariance=1e20 * np.identity(6)))
        assert np.allclose(output.final_parameters, start, rtol=0.0, atol=1e-8)

    def test_apriori_shape(self, manager, observations):
        with pytest.raises(ConfigurationError, match=r"shape \(6, 6\)"):
            manager.perform_estimation(
                EstimationInput(observations, inverse_apriori_covariance=np.identity(3)))

    def test_maximum_iterations(self, manager, observations):
        start = LINEAR_INITIAL_STATE + OFFSET
        manager.parameter_vector = start
        output = manager.perform_estimation(
            EstimationInput(observations),
            estimation_convergence_checker(maximum_iterations=1))
        assert output.status == EstimationStatus.MAXIMUM_ITERATIONS_REACHED
        assert output.number_of_iterations == 1
        assert output.best_iteration == 0
        assert np.array_equal(output.final_parameters, start)

    def test_stalled_returns_best(self, manager, observations, monkeypatch):
        solve = EstimationManager._solve

        def overshoot(*args):
            correction, *rest = solve(*args)
            return (-2.0 * correction, *rest)

        monkeypatch.setattr(EstimationManager, "_solve", staticmethod(overshoot))
        start = LINEAR_INITIAL_STATE + OFFSET
        manager.parameter_vector = start
        output = manager.perform_estimation(
            EstimationInput(observations),
            estimation_convergence_checker(maximum_iterations=10,
                                           number_of_iterations_without_improvement=1))
        assert output.status == EstimationStatus.STALLED
        assert output.number_of_iterations == 2
        assert output.rms_residual_history[1] > output.rms_residual_history[0]
        assert np.array_equal(output.final_parameters, start)
        assert np.array_equal(manager.parameter_vector, start)

    def test_singular_normal_equations_diverge(self, linear_bodies, linear_settings):
        # Position bias is estimated but only states are observed
        manager = make_manager(
            linear_bodies, linear_settings,
            [parameters.initial_state("Sat"),
             parameters.constant_observation_bias(LINK, ObservableType.POSITION)],
            [obs.cartesian_state_observable(LINK), obs.position_observable(LINK)])
        observations = simulate_truth(manager, linear_bodies)
        output = manager.perform_estimation(EstimationInput(observations))
        assert output.status == EstimationStatus.DIVERGED
        assert output.number_of_iterations == 1
        assert output.final_parameters.shape == (9,)

    def test_observations_outside_arc(self, manager):
        late = ObservationCollection([SingleObservationSet(
            ObservableType.CARTESIAN_STATE, LINK, [700.0], np.zeros((1, 6)))])
        with pytest.raises(ConfigurationError, match="outside the propagated arc"):
            manager.perform_estimation(EstimationInput(late))

    def test_observation_without_model(self, manager):
        positions = ObservationCollection([SingleObservationSet(
            ObservableType.POSITION, LINK, [0.0], np.zeros((1, 3)))])
        with pytest.raises(ConfigurationError, match="No observation model for position"):
            manager.perform_estimation(EstimationInput(positions))

    def test_input_type(self):
        with pytest.raises(ConfigurationError, match="Expected ObservationCollection"):
            EstimationInput([1.0, 2.0])


class TestDivergence:
    """Test runs stopped by a failed iteration."""

    @staticmethod
    def amplified(monkeypatch, factor=4.0):
        solve = EstimationManager._solve

        def scaled(*args):
            correction, *rest = solve(*args)
            return (factor * correction, *rest)

        monkeypatch.setattr(EstimationManager, "_solve", staticmethod(scaled))

    def test_shrinking_arc_diverges(self, linear_bodies, monkeypatch):
        settings = bounded_settings(termination.hybrid_termination(
            [termination.time_termination(600.0),
             termination.custom_termination(lambda t, x: x[0] > BOUND)]))
        manager = make_manager(linear_bodies, settings)
        observations = simulate_truth(manager, linear_bodies)
        self.amplified(monkeypatch)
        start = LINEAR_INITIAL_STATE + BELOW_BOUND
        manager.parameter_vector = start
        output = manager.perform_estimation(EstimationInput(observations))
        # The second linearization point starts beyond the bound
        assert output.status == EstimationStatus.DIVERGED
        assert output.number_of_iterations == 1
        assert len(output.correction_history) == 1
        assert output.parameter_history[0][0] + output.correction_history[0][0] > BOUND
        assert np.array_equal(output.final_parameters, start)
        assert np.array_equal(manager.parameter_vector, start)
        assert manager.variational_equations_propagator.state_history.final_epoch == 600.0

    def test_short_initial_arc_raises(self, linear_bodies):
        settings = bounded_settings(termination.hybrid_termination(
            [termination.time_termination(600.0),
             termination.custom_termination(lambda t, x: x[0] > BOUND)]))
        manager = make_manager(linear_bodies, settings)
        observations = simulate_truth(manager, linear_bodies)
        manager.parameter_vector = LINEAR_INITIAL_STATE + ABOVE_BOUND
        with pytest.raises(ConfigurationError, match="outside the propagated arc"):
            manager.perform_estimation(EstimationInput(observations))

    def test_nonfinite_propagation_diverges(self, linear_bodies, monkeypatch, caplog):
        def derivative(t, x, p):
            if x[0] > BOUND:
                return np.full(6, np.nan)
            return LINEAR_MATRIX @ x

        dynamics = CallableDynamics(derivative, 6,
                                    state_jacobian=lambda t, x, p: LINEAR_MATRIX)
        settings = bounded_settings(termination.time_termination(600.0), dynamics)
        manager = make_manager(linear_bodies, settings)
        observations = simulate_truth(manager, linear_bodies)
        self.amplified(monkeypatch)
        start = LINEAR_INITIAL_STATE + BELOW_BOUND
        manager.parameter_vector = start
        with caplog.at_level(logging.WARNING, logger="dromos.estimation"):
            output = manager.perform_estimation(EstimationInput(observations))
        assert output.status == EstimationStatus.DIVERGED
        assert "non-finite state" in caplog.text
        assert output.number_of_iterations == 1
        assert output.best_iteration == 0
        assert np.array_equal(output.final_parameters, start)
        assert np.array_equal(manager.parameter_vector, start)
        assert manager.variational_equations_propagator.integration_completed_successfully

    def test_nonfinite_residuals_diverge(self, manager, observations, caplog):
        corrupted = np.array(observations.concatenated_observations).reshape(-1, 6)
        corrupted[3, 0] = np.nan
        collection = ObservationCollection([SingleObservationSet(
            ObservableType.CARTESIAN_STATE, LINK, TIMES, corrupted)])
        start = LINEAR_INITIAL_STATE + OFFSET
        manager.parameter_vector = start
        with caplog.at_level(logging.WARNING, logger="dromos.estimation"):
            output = manager.perform_estimation(EstimationInput(collection))
        assert output.status == EstimationStatus.DIVERGED
        assert "non-finite residuals" in caplog.text
        assert output.number_of_iterations == 0
        assert output.correction_history == ()
        assert np.array_equal(output.final_parameters, start)
        assert np.array_equal(manager.parameter_vector, start)


class TestBiasEstimation:
    """Test joint estimation of state and observation bias."""

    def test_position_bias(self, linear_bodies, linear_settings):
        true_bias = np.array([0.1, -0.2, 0.05])
        manager = make_manager(
            linear_bodies, linear_settings,
            [parameters.initial_state("Sat"),
             parameters.constant_observation_bias(LINK, ObservableType.POSITION)],
            [obs.position_observable(LINK)])
        truth_simulators = create_observation_simulators(
            [obs.position_observable(LINK, bias=true_bias)], linear_bodies)
        observations = simulate_observations(
            [tabulated_simulation_settings(ObservableType.POSITION, LINK, TIMES)],
            truth_simulators, linear_bodies)

        manager.parameter_vector = np.concatenate([LINEAR_INITIAL_STATE + OFFSET,
                                                   np.zeros(3)])
        output = manager.perform_estimation(EstimationInput(observations))
        assert output.converged
        assert np.allclose(output.final_parameters[:6], LINEAR_INITIAL_STATE, atol=1e-6)
        assert np.allclose(output.final_parameters[6:], true_bias, atol=1e-6)
        assert output.parameter_descriptions[6].startswith("constant_bias:position")


class TestCovariance:
    """Test covariance analysis."""

    def test_covariance_from_noise_weights(self, manager, observations):
        sigma = 0.01
        output = manager.compute_covariance(
            EstimationInput(observations, weights=NoiseWeight(sigma)))
        H = output.design_matrix
        assert H.shape == (observations.size, 6)
        # Partials of the first epoch (t = 0) are the identity
        assert np.allclose(H[:6], np.identity(6))
        expected = np.linalg.inv(H.T @ H / sigma**2)
        assert np.allclose(output.covariance, expected, rtol=1e-6)
        assert np.allclose(output.covariance, output.covariance.T)
        assert output.formal_errors.shape == (6,)
        assert np.allclose(np.diag(output.correlations), 1.0)

    def test_parameters_unchanged(self, manager, observations):
        start = LINEAR_INITIAL_STATE + OFFSET
        manager.parameter_vector = start
        manager.compute_covariance(EstimationInput(observations))
        assert np.array_equal(manager.parameter_vector, start)


class TestEstimationOutput:
    """Test trace export."""

    def test_to_dataframe(self, manager, observations):
        manager.parameter_vector = LINEAR_INITIAL_STATE + OFFSET
        output = manager.perform_estimation(EstimationInput(observations))
        df = output.to_dataframe()
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns[:2]) == ['iteration', 'rms_residual']
        assert "initial_state:Sat[0]" in df.columns
        assert len(df) == output.number_of_iterations

    def test_plot_residuals(self, manager, observations):
        output = manager.perform_estimation(EstimationInput(observations))
        fig = output.plot_residuals()
        assert isinstance(fig, go.Figure)
        assert len(fig.data) == len({0, output.number_of_iterations - 1})
