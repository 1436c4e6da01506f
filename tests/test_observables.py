"""
Test suite for link definitions and observation models.
"""

import pytest
import numpy as np

from dromos.exceptions import ConfigurationError
from dromos.observables import (LinkDefinition, LinkEndId, LinkEndType, ObservableType,
                                create_observation_model, observable_size,
                                observed_body_link, one_way_link)

TRANSMITTER = np.array([7000.0, 1200.0, -800.0, -1.1, 7.2, 0.6])
RECEIVER = np.array([5000.0, -1000.0, 3000.0, 0.07, 0.36, 0.0])


def states(transmitter=TRANSMITTER, receiver=RECEIVER):
    return {LinkEndType.TRANSMITTER: transmitter, LinkEndType.RECEIVER: receiver}


def numerical_partials(model, role, step=1e-3):
    """Central differences of the observable w.r.t. one link end state."""
    base = states()
    columns = []
    for i in range(6):
        plus = {k: v.copy() for k, v in base.items()}
        minus = {k: v.copy() for k, v in base.items()}
        plus[role][i] += step
        minus[role][i] -= step
        columns.append((model.evaluate(plus, None) - model.evaluate(minus, None))
                       / (2.0 * step))
    return np.column_stack(columns)


class TestLinkDefinition:
    """Test link construction, equality and hashing."""

    def test_link_end_forms(self):
        link = one_way_link("Sat", ("Earth", "Madrid"))
        assert link[LinkEndType.TRANSMITTER] == LinkEndId("Sat")
        assert link[LinkEndType.RECEIVER] == LinkEndId("Earth", "Madrid")
        assert str(link) == "Sat->Earth:Madrid"

    def test_equal_links_hash_equal(self):
        first = LinkDefinition({LinkEndType.RECEIVER: ("Earth", "Madrid"),
                                LinkEndType.TRANSMITTER: "Sat"})
        second = one_way_link("Sat", ("Earth", "Madrid"))
        assert first == second
        assert len({first, second}) == 1

    def test_empty_link(self):
        with pytest.raises(ConfigurationError, match="at least one link end"):
            LinkDefinition({})

    def test_unknown_role(self):
        with pytest.raises(ConfigurationError, match="Unknown link end type"):
            LinkDefinition({"receiver": "Sat"})

    def test_bad_link_end(self):
        with pytest.raises(ConfigurationError, match="Cannot interpret"):
            observed_body_link(42)


class TestObservationModels:
    """Test observable values and partials."""

    def test_sizes(self):
        assert observable_size(ObservableType.RANGE) == 1
        assert observable_size(ObservableType.ANGULAR_POSITION) == 2
        assert observable_size(ObservableType.CARTESIAN_STATE) == 6

    def test_unknown_observable(self):
        with pytest.raises(ConfigurationError, match="Unsupported observable type"):
            create_observation_model("doppler")

    def test_missing_link_end(self):
        model = create_observation_model(ObservableType.RANGE)
        with pytest.raises(ConfigurationError, match="requires link ends"):
            model.check_link(observed_body_link("Sat"))

    def test_range(self):
        model = create_observation_model(ObservableType.RANGE)
        value = model.evaluate(states(), None)
        assert value == pytest.approx([np.linalg.norm(RECEIVER[:3] - TRANSMITTER[:3])])

    def test_range_rate_sign(self):
        model = create_observation_model(ObservableType.RANGE_RATE)
        receding = TRANSMITTER.copy()
        receding[3:] = 2.0 * (TRANSMITTER[:3] - RECEIVER[:3]) / 1000.0
        receiver = RECEIVER.copy()
        receiver[3:] = 0.0
        assert model.evaluate(states(receding, receiver), None)[0] > 0.0

    def test_angular_position(self):
        model = create_observation_model(ObservableType.ANGULAR_POSITION)
        transmitter = np.array([0.0, 1.0, 1.0, 0.0, 0.0, 0.0])
        receiver = np.zeros(6)
        ra, dec = model.evaluate(states(transmitter, receiver), None)
        assert ra == pytest.approx(np.pi / 2.0)
        assert dec == pytest.approx(np.pi / 4.0)

    def test_right_ascension_residual_wraps(self):
        model = create_observation_model(ObservableType.ANGULAR_POSITION)
        residual = model.residual([np.pi - 0.01, 0.2], [-np.pi + 0.01, 0.1])
        assert residual[0] == pytest.approx(-0.02)
        assert residual[1] == pytest.approx(0.1)

    @pytest.mark.parametrize("observable_type", [
        ObservableType.RANGE,
        ObservableType.RANGE_RATE,
        ObservableType.ANGULAR_POSITION,
    ])
    @pytest.mark.parametrize("role", [LinkEndType.TRANSMITTER, LinkEndType.RECEIVER])
    def test_partials_match_finite_differences(self, observable_type, role):
        model = create_observation_model(observable_type)
        analytical = model.partials(states(), None)[role]
        assert analytical.shape == (model.size, 6)
        assert np.allclose(analytical, numerical_partials(model, role),
                           rtol=1e-6, atol=1e-10)

    def test_state_observables(self):
        observed = {LinkEndType.OBSERVED_BODY: TRANSMITTER}
        position = create_observation_model(ObservableType.POSITION)
        state = create_observation_model(ObservableType.CARTESIAN_STATE)
        assert np.array_equal(position.evaluate(observed, None), TRANSMITTER[:3])
        assert np.array_equal(state.evaluate(observed, None), TRANSMITTER)
        assert np.array_equal(position.partials(observed, None)[LinkEndType.OBSERVED_BODY],
                              np.eye(3, 6))
