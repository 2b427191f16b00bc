"""Tests for simulated devices."""

import pytest

from telemsim.device import Device, format_value, topic_for


class TestFormatValue:
    """Tests for payload value rendering."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (4711.0, "4711"),
            (0.0, "0"),
            (101.25, "101.25"),
            (99.5, "99.5"),
        ],
    )
    def test_natural_form(self, value, expected):
        assert format_value(value) == expected


class TestDevice:
    """Tests for Device."""

    @pytest.fixture
    def device(self):
        return Device("sim", 3, data_points=5, seed=99)

    def test_name(self, device):
        assert device.name == "sim_3"

    def test_data_points(self, device):
        assert device.data_points == 5
        assert len(device.generators) == 5

    def test_generators_copy(self, device):
        device.generators.clear()
        assert device.data_points == 5

    def test_topic_for(self):
        assert topic_for("sim_3", "noise_0") == "sim_3/noise_0"

    def test_cycle_topics_in_generator_order(self, device):
        topics = [topic for topic, _ in device.produce_cycle(1000)]
        assert topics == [
            "sim_3/status_0",
            "sim_3/noise_0",
            "sim_3/sensor_0",
            "sim_3/sensor_1",
            "sim_3/sensor_2",
        ]

    def test_payload_has_timestamp_and_value(self, device):
        for _, payload in device.produce_cycle(1700000000123):
            timestamp, value = payload.split(",")
            assert timestamp == "1700000000123"
            float(value)

    def test_no_data_points(self):
        device = Device("sim", 0, data_points=0, seed=1)
        assert device.produce_cycle(1000) == []

    def test_same_seed_same_values(self):
        a = Device("sim", 0, data_points=6, seed=5)
        b = Device("sim", 0, data_points=6, seed=5)
        for _ in range(3):
            assert a.produce_cycle(1) == b.produce_cycle(1)
