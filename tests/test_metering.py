"""Tests for cycle statistics."""

from unittest.mock import MagicMock

import pytest

from telemsim.metering import SERVICE_NAME, Metering


class TestMetering:
    """Tests for Metering."""

    @pytest.fixture
    def metering(self):
        return Metering("sim-1")

    def test_labels(self, metering):
        assert metering.labels == {"service": SERVICE_NAME, "service.replica": "sim-1"}

    def test_initial_values(self, metering):
        assert metering.cycles == 0
        assert metering.overloads == 0
        assert metering.datapoints_total == 0
        assert metering.datapoints_per_sec is None
        assert metering.capacity is None

    def test_record_datapoints(self, metering):
        metering.record_datapoints(100, 0.5)
        metering.record_datapoints(50, 0.5)

        assert metering.datapoints_total == 150
        assert metering.datapoints_per_sec == pytest.approx(100.0)

    def test_record_datapoints_zero_elapsed(self, metering):
        metering.record_datapoints(10, 0.0)
        assert metering.datapoints_total == 10
        assert metering.datapoints_per_sec is None

    def test_record_capacity(self, metering):
        metering.record_capacity(0.25, 1.0)
        assert metering.capacity == pytest.approx(0.25)

    def test_record_capacity_zero_interval(self, metering):
        metering.record_capacity(0.25, 0.0)
        assert metering.capacity is None

    def test_counters(self, metering):
        metering.record_cycle()
        metering.record_cycle()
        metering.record_overload()

        assert metering.cycles == 2
        assert metering.overloads == 1

    def test_snapshot(self, metering):
        metering.record_cycle()
        metering.record_datapoints(10, 1.0)
        snapshot = metering.snapshot()

        assert snapshot["service"] == SERVICE_NAME
        assert snapshot["service.replica"] == "sim-1"
        assert snapshot["cycles"] == 1
        assert snapshot["datapoints_total"] == 10
        assert snapshot["timestamp_ms"] > 0

    def test_report_calls_reporter(self):
        reporter = MagicMock()
        metering = Metering("sim-1", reporter=reporter)
        metering.record_cycle()
        metering.report()

        reporter.assert_called_once()
        assert reporter.call_args[0][0]["cycles"] == 1

    def test_report_rate_limited(self):
        reporter = MagicMock()
        metering = Metering("sim-1", reporter=reporter, report_interval=60.0)

        for _ in range(5):
            metering.record_cycle()
            metering.report()

        reporter.assert_called_once()
        assert reporter.call_args[0][0]["cycles"] == 1

    def test_report_every_time_without_interval(self):
        reporter = MagicMock()
        metering = Metering("sim-1", reporter=reporter, report_interval=0.0)

        metering.report()
        metering.report()

        assert reporter.call_count == 2

    def test_report_without_reporter(self, metering):
        metering.report()
