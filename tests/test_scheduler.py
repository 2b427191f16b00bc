"""Tests for the configuration channel and the control loop."""

import logging
import threading
import time

import pytest

from telemsim.metering import Metering
from telemsim.scheduler import ChannelClosed, ControlLoop, LatestValue, PublishError
from telemsim.simulation import Simulation, SimulationParameters


class FakeTransport:
    """Records published messages; optionally fails or runs a hook per cycle."""

    def __init__(self, fail_on_wait=False, on_wait=None):
        self.published = []
        self.batches = []
        self.fail_on_wait = fail_on_wait
        self.on_wait = on_wait

    def publish(self, topic, payload):
        self.published.append((topic, payload))
        return len(self.published)

    def wait_for_publishes(self, handles, timeout=None):
        self.batches.append(list(handles))
        if self.fail_on_wait:
            raise PublishError("broker went away")
        if self.on_wait:
            self.on_wait(len(self.batches))


class TestLatestValue:
    """Tests for the single-slot channel."""

    @pytest.fixture
    def channel(self):
        return LatestValue()

    def test_take_returns_value(self, channel):
        channel.put(1)
        assert channel.take(timeout=0) == 1

    def test_latest_wins(self, channel):
        channel.put(1)
        channel.put(2)
        channel.put(3)

        assert channel.take(timeout=0) == 3
        assert channel.take(timeout=0) is None

    def test_timeout_returns_none(self, channel):
        assert channel.take(timeout=0.01) is None

    def test_take_wakes_on_put(self, channel):
        timer = threading.Timer(0.05, channel.put, args=("go",))
        timer.start()
        try:
            assert channel.take(timeout=5) == "go"
        finally:
            timer.cancel()

    def test_closed_raises(self, channel):
        channel.close()

        assert channel.closed
        with pytest.raises(ChannelClosed):
            channel.take(timeout=0)

    def test_pending_value_survives_close(self, channel):
        channel.put("last")
        channel.close()

        assert channel.take(timeout=0) == "last"
        with pytest.raises(ChannelClosed):
            channel.take(timeout=0)

    def test_put_after_close_raises(self, channel):
        channel.close()
        with pytest.raises(ChannelClosed):
            channel.put(1)

    def test_close_wakes_waiter(self, channel):
        timer = threading.Timer(0.05, channel.close)
        timer.start()
        try:
            with pytest.raises(ChannelClosed):
                channel.take(timeout=5)
        finally:
            timer.cancel()


class TestControlLoop:
    """Tests for ControlLoop."""

    @pytest.fixture
    def simulation(self):
        return Simulation("sim", clock=lambda: 1000)

    @pytest.fixture
    def channel(self):
        return LatestValue()

    @pytest.fixture
    def metering(self):
        return Metering("sim")

    def make_loop(self, simulation, transport, channel, metering, **kwargs):
        kwargs.setdefault("idle_tick", 0.01)
        return ControlLoop(simulation, transport, channel, metering, **kwargs)

    def test_invalid_idle_tick(self, simulation, channel, metering):
        with pytest.raises(ValueError):
            ControlLoop(simulation, FakeTransport(), channel, metering, idle_tick=0)

    def test_runs_max_cycles(self, simulation, channel, metering):
        transport = FakeTransport()
        channel.put(SimulationParameters(device_count=2, data_points_per_device=3, cycle_interval=0.0))
        loop = self.make_loop(simulation, transport, channel, metering, max_cycles=3)

        assert loop.run() == 3
        assert len(transport.published) == 18
        assert [len(batch) for batch in transport.batches] == [6, 6, 6]
        assert metering.cycles == 3
        assert metering.datapoints_total == 18

    def test_zero_interval_counts_overload(self, simulation, channel, metering):
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=0.0))
        loop = self.make_loop(simulation, FakeTransport(), channel, metering, max_cycles=2)

        loop.run()

        assert metering.overloads == 2

    def test_overload_warning_rate_limited(self, simulation, channel, metering, caplog):
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=0.0))
        loop = self.make_loop(simulation, FakeTransport(), channel, metering, max_cycles=5)

        with caplog.at_level(logging.WARNING, logger="telemsim.scheduler"):
            loop.run()

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert metering.overloads == 5
        assert len(warnings) == 1
        assert "reduce the number of data points" in warnings[0].getMessage()

    def test_no_overload_within_interval(self, simulation, channel, metering):
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=10.0))
        loop = self.make_loop(simulation, FakeTransport(), channel, metering, max_cycles=1)

        loop.run()

        assert metering.overloads == 0
        assert 0 <= metering.capacity < 1

    def test_stop_before_run(self, simulation, channel, metering):
        loop = self.make_loop(simulation, FakeTransport(), channel, metering)
        loop.stop()

        assert loop.stopping
        assert loop.run() == 0

    def test_stop_while_stopped(self, simulation, channel, metering):
        transport = FakeTransport()
        loop = self.make_loop(simulation, transport, channel, metering)
        timer = threading.Timer(0.1, loop.stop)
        timer.start()

        start = time.monotonic()
        try:
            assert loop.run() == 0
        finally:
            timer.cancel()

        assert time.monotonic() - start < 5
        assert transport.published == []

    def test_stop_between_cycles(self, simulation, channel, metering):
        loop = None

        def stop_after_first(batch_number):
            loop.stop()

        transport = FakeTransport(on_wait=stop_after_first)
        channel.put(SimulationParameters(device_count=1, data_points_per_device=2, cycle_interval=0.0))
        loop = self.make_loop(simulation, transport, channel, metering)

        assert loop.run() == 1
        assert len(transport.published) == 2

    def test_reconfigure_between_cycles(self, simulation, channel, metering):
        def reconfigure(batch_number):
            if batch_number == 1:
                channel.put(SimulationParameters(device_count=3, data_points_per_device=1, cycle_interval=0.0))

        transport = FakeTransport(on_wait=reconfigure)
        channel.put(SimulationParameters(device_count=1, data_points_per_device=2, cycle_interval=0.0))
        loop = self.make_loop(simulation, transport, channel, metering, max_cycles=2)

        loop.run()

        assert [len(batch) for batch in transport.batches] == [2, 3]
        assert simulation.device_count == 3

    def test_stop_command_halts_publishing(self, simulation, channel, metering):
        def stop_simulation(batch_number):
            channel.put(SimulationParameters.stopped())
            threading.Timer(0.05, loop.stop).start()

        transport = FakeTransport(on_wait=stop_simulation)
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=0.0))
        loop = self.make_loop(simulation, transport, channel, metering)

        assert loop.run() == 1
        assert not simulation.running

    def test_publish_error_propagates(self, simulation, channel, metering):
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=0.0))
        loop = self.make_loop(simulation, FakeTransport(fail_on_wait=True), channel, metering)

        with pytest.raises(PublishError):
            loop.run()

    def test_closed_channel_propagates(self, simulation, channel, metering):
        loop = self.make_loop(simulation, FakeTransport(), channel, metering)
        channel.close()

        with pytest.raises(ChannelClosed):
            loop.run()

    def test_closed_channel_keeps_running_cycles(self, simulation, channel, metering):
        channel.put(SimulationParameters(device_count=1, data_points_per_device=1, cycle_interval=0.0))
        channel.close()
        loop = self.make_loop(simulation, FakeTransport(), channel, metering, max_cycles=1)

        # The pending configuration is still applied before the close is seen
        assert loop.run() == 1
