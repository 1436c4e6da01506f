"""
Test suite for observation simulators, collections and simulation.
"""

import pytest
import numpy as np

from dromos import observation_simulation as obs
from dromos import viability
from dromos.bodies import CustomEphemeris
from dromos.exceptions import ConfigurationError
from dromos.observables import LinkEndType, ObservableType, observed_body_link, one_way_link
from dromos.observation_simulation import (ObservationCollection, SingleObservationSet,
                                           create_observation_simulators,
                                           simulate_observations,
                                           tabulated_simulation_settings)

STATE_LINK = observed_body_link("Sat")


def moving_state(t):
    return np.array([7000.0 + t, 100.0, -50.0, 1.0, 0.0, 0.0])


@pytest.fixture
def bodies(earth_bodies):
    earth_bodies.set_ephemeris("Sat", CustomEphemeris(moving_state), "Earth")
    return earth_bodies


class TestModelSettings:
    """Test observation model settings."""

    def test_link_checked(self):
        with pytest.raises(ConfigurationError, match="requires link ends"):
            obs.range_observable(STATE_LINK)

    def test_bias_size(self):
        with pytest.raises(ConfigurationError, match="bias needs 3 components"):
            obs.position_observable(STATE_LINK, bias=[1.0])

    def test_link_from_mapping(self):
        settings = obs.cartesian_state_observable({LinkEndType.OBSERVED_BODY: "Sat"})
        assert settings.link_ends == STATE_LINK

    def test_duplicate_simulators(self, bodies):
        with pytest.raises(ConfigurationError, match="Duplicate observation model"):
            create_observation_simulators(
                [obs.position_observable(STATE_LINK), obs.position_observable(STATE_LINK)],
                bodies)

    def test_unknown_station(self, bodies):
        with pytest.raises(ConfigurationError, match="no ground station 'Paris'"):
            create_observation_simulators(
                [obs.range_observable(one_way_link("Sat", ("Earth", "Paris")))], bodies)


class TestObservationSimulator:
    """Test observable evaluation from the body arena."""

    def test_state_observable(self, bodies):
        simulator, = create_observation_simulators(
            [obs.cartesian_state_observable(STATE_LINK)], bodies)
        assert np.array_equal(simulator.compute_observable(10.0), moving_state(10.0))

    def test_fixed_bias(self, bodies):
        simulator, = create_observation_simulators(
            [obs.position_observable(STATE_LINK, bias=[1.0, 2.0, 3.0])], bodies)
        assert np.array_equal(simulator.compute_observable(0.0),
                              moving_state(0.0)[:3] + [1.0, 2.0, 3.0])

    def test_range_to_station(self, bodies):
        link = one_way_link("Sat", ("Earth", "Madrid"))
        simulator, = create_observation_simulators([obs.range_observable(link)], bodies)
        station = bodies.ground_station_state("Earth", "Madrid", 5.0)
        expected = np.linalg.norm(moving_state(5.0)[:3] - station[:3])
        assert simulator.compute_observable(5.0) == pytest.approx([expected])
        assert set(simulator.compute_partials(5.0)) == {LinkEndType.TRANSMITTER,
                                                       LinkEndType.RECEIVER}

    def test_attach_wrong_bias(self, bodies):
        from dromos.parameters import ObservationBiasParameter
        simulator, = create_observation_simulators(
            [obs.position_observable(STATE_LINK)], bodies)
        bias = ObservationBiasParameter(STATE_LINK, ObservableType.CARTESIAN_STATE)
        with pytest.raises(ConfigurationError, match="does not belong"):
            simulator.attach_bias_parameter(bias)

    def test_attached_bias_replaces_fixed(self, bodies):
        from dromos.parameters import ObservationBiasParameter
        simulator, = create_observation_simulators(
            [obs.position_observable(STATE_LINK, bias=[1.0, 1.0, 1.0])], bodies)
        bias = ObservationBiasParameter(STATE_LINK, ObservableType.POSITION)
        bias.set_value([0.5, 0.0, -0.5])
        simulator.attach_bias_parameter(bias)
        assert np.array_equal(simulator.bias, [0.5, 0.0, -0.5])


class TestObservationCollection:
    """Test observation sets and collections."""

    def test_set_sorted_and_read_only(self):
        observation_set = SingleObservationSet(ObservableType.RANGE,
                                               one_way_link("Sat", "Other"),
                                               [20.0, 10.0], [2.0, 1.0])
        assert np.array_equal(observation_set.times, [10.0, 20.0])
        assert np.array_equal(observation_set.observations, [[1.0], [2.0]])
        with pytest.raises(ValueError):
            observation_set.observations[0, 0] = 5.0

    def test_set_size_mismatch(self):
        with pytest.raises(ConfigurationError, match="2 observation times but 3"):
            SingleObservationSet(ObservableType.POSITION, STATE_LINK, [0.0, 1.0],
                                 np.zeros((3, 3)))

    def test_merge_same_group(self):
        first = SingleObservationSet(ObservableType.POSITION, STATE_LINK, [0.0],
                                     [[1.0, 2.0, 3.0]])
        second = SingleObservationSet(ObservableType.POSITION, STATE_LINK, [10.0],
                                      [[4.0, 5.0, 6.0]])
        collection = ObservationCollection([second, first])
        assert len(collection.observation_sets) == 1
        assert collection.size == 6
        assert np.array_equal(collection.concatenated_times, [0, 0, 0, 10, 10, 10])
        assert np.array_equal(collection.concatenated_observations, np.arange(1.0, 7.0))

    def test_groups_and_filters(self):
        link = one_way_link("Sat", "Other")
        collection = ObservationCollection([
            SingleObservationSet(ObservableType.RANGE, link, [0.0], [1.0]),
            SingleObservationSet(ObservableType.POSITION, STATE_LINK, [0.0], [[1, 2, 3]]),
        ])
        assert collection.observable_types == [ObservableType.RANGE,
                                               ObservableType.POSITION]
        assert collection.link_definitions == [link, STATE_LINK]
        assert len(collection.get_single_observation_sets(ObservableType.RANGE)) == 1
        assert collection.get_single_observation_sets(link_ends=STATE_LINK)[0].size == 3

    def test_to_dataframe(self):
        collection = ObservationCollection([
            SingleObservationSet(ObservableType.POSITION, STATE_LINK, [0.0, 5.0],
                                 np.arange(6.0).reshape(2, 3)),
        ])
        df = collection.to_dataframe()
        assert list(df.columns) == ['observable', 'link_ends', 'time', 'component',
                                    'value']
        assert len(df) == 6
        assert df['value'].tolist() == list(np.arange(6.0))
        assert (df['link_ends'] == "Sat").all()


class TestSimulation:
    """Test simulate_observations."""

    def test_noise_free(self, bodies):
        simulators = create_observation_simulators(
            [obs.cartesian_state_observable(STATE_LINK)], bodies)
        collection = simulate_observations(
            [tabulated_simulation_settings(ObservableType.CARTESIAN_STATE, STATE_LINK,
                                           [0.0, 10.0, 20.0])], simulators, bodies)
        observation_set, = collection.observation_sets
        assert np.array_equal(observation_set.observations[2], moving_state(20.0))

    def test_noise_reproducible_with_seed(self, bodies):
        simulators = create_observation_simulators(
            [obs.position_observable(STATE_LINK)], bodies)
        settings = [tabulated_simulation_settings(ObservableType.POSITION, STATE_LINK,
                                                  np.arange(0.0, 100.0, 10.0),
                                                  noise_standard_deviation=0.01)]
        first = simulate_observations(settings, simulators, bodies, seed=42)
        second = simulate_observations(settings, simulators, bodies, seed=42)
        assert np.array_equal(first.concatenated_observations,
                              second.concatenated_observations)
        truth = simulate_observations(
            [tabulated_simulation_settings(ObservableType.POSITION, STATE_LINK,
                                           np.arange(0.0, 100.0, 10.0))],
            simulators, bodies)
        noise = first.concatenated_observations - truth.concatenated_observations
        assert 0.0 < np.std(noise) < 0.05

    def test_rejected_observations_kept(self, bodies):
        def rising(t):
            # Below Madrid's horizon for t < 50, overhead afterwards
            station = bodies.ground_station_state("Earth", "Madrid", t)[:3]
            up = station / np.linalg.norm(station)
            height = 1000.0 if t >= 50.0 else -1000.0
            return np.concatenate([station + height * up, np.zeros(3)])

        bodies.set_ephemeris("Sat", CustomEphemeris(rising), "Earth")
        link = one_way_link("Sat", ("Earth", "Madrid"))
        simulators = create_observation_simulators([obs.range_observable(link)], bodies)
        settings = tabulated_simulation_settings(
            ObservableType.RANGE, link, [0.0, 25.0, 50.0, 75.0],
            viability_settings=[viability.elevation_angle_viability(
                ("Earth", "Madrid"), np.radians(5.0))])
        collection = simulate_observations([settings], simulators, bodies)
        observation_set, = collection.observation_sets
        assert np.array_equal(observation_set.times, [50.0, 75.0])
        assert [r.time for r in collection.rejected_observations] == [0.0, 25.0]
        assert "elevation below" in collection.rejected_observations[0].reasons[0]

    def test_missing_simulator(self, bodies):
        with pytest.raises(ConfigurationError, match="No observation simulator"):
            simulate_observations(
                [tabulated_simulation_settings(ObservableType.POSITION, STATE_LINK, [0.0])],
                [], bodies)

    def test_negative_noise(self):
        with pytest.raises(ConfigurationError, match="non-negative"):
            tabulated_simulation_settings(ObservableType.POSITION, STATE_LINK, [0.0],
                                          noise_standard_deviation=-1.0)
