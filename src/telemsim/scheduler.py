"""Control loop driving simulation cycles at the configured cadence.

The loop alternates between waiting (for either a new configuration or the
end of the current cycle interval) and running one cycle, which publishes
every message of every device and waits until all of them are resolved.

Configurations are handed over through :class:`LatestValue`, a single-slot
channel: a newer configuration overwrites an unread older one. The loop is
the only code that touches the device pool, and it only reads the channel
between cycles, so a configuration never interrupts a publish batch.
"""

import logging
import threading
import time
from typing import Any, Generic, Iterable, List, Optional, Protocol, TypeVar

from .metering import Metering
from .simulation import Simulation, SimulationParameters

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Channel wait while stopped
DEFAULT_IDLE_TICK = 1.0

# Minimum seconds between two overload warnings
OVERLOAD_WARNING_INTERVAL = 1.0


class ChannelClosed(Exception):
    """The configuration channel was closed by its producer."""


class PublishError(Exception):
    """The transport rejected or failed a message."""


class LatestValue(Generic[T]):
    """Single-slot "latest wins" channel between threads."""

    def __init__(self):
        self._cond = threading.Condition()
        self._value: Optional[T] = None
        self._has_value = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, value: T) -> None:
        """Store ``value``, replacing any value not yet taken."""
        with self._cond:
            if self._closed:
                raise ChannelClosed("Cannot put into a closed channel")
            self._value = value
            self._has_value = True
            self._cond.notify_all()

    def take(self, timeout: Optional[float] = None) -> Optional[T]:
        """Wait up to ``timeout`` seconds for a value and remove it.

        Returns ``None`` on timeout. ``timeout=None`` waits forever.

        Raises:
            ChannelClosed: the channel is closed and holds no value.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._has_value or self._closed, timeout)
            if self._has_value:
                value = self._value
                self._value = None
                self._has_value = False
                return value
            if self._closed:
                raise ChannelClosed("Configuration channel closed")
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class Transport(Protocol):
    """What the control loop needs from the pub/sub transport."""

    def publish(self, topic: str, payload: str) -> Any:
        ...

    def wait_for_publishes(self, handles: Iterable[Any], timeout: Optional[float] = None) -> None:
        ...


class ControlLoop:
    """Runs simulation cycles and applies configuration changes between them."""

    def __init__(
        self,
        simulation: Simulation,
        transport: Transport,
        parameters: LatestValue[SimulationParameters],
        metering: Metering,
        idle_tick: float = DEFAULT_IDLE_TICK,
        max_cycles: Optional[int] = None,
        publish_timeout: Optional[float] = None,
    ):
        if idle_tick <= 0:
            raise ValueError("idle_tick must be positive")
        self.simulation = simulation
        self.transport = transport
        self.parameters = parameters
        self.metering = metering
        self.idle_tick = idle_tick
        self.max_cycles = max_cycles
        self.publish_timeout = publish_timeout

        self.cycles_run = 0
        self._stop_requested = threading.Event()
        self._last_overload_warning: Optional[float] = None
        self._unreported_overloads = 0

    def stop(self) -> None:
        """Ask the loop to return after the current wait or cycle."""
        self._stop_requested.set()
        self.parameters.close()

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    def run(self) -> int:
        """Run until stopped or ``max_cycles`` is reached.

        Returns the number of cycles run.

        Raises:
            PublishError: a message could not be published.
            ChannelClosed: the configuration channel closed unexpectedly.
        """
        remaining: Optional[float] = self.idle_tick
        logger.info("Control loop started")

        while not self.stopping:
            if self.max_cycles is not None and self.cycles_run >= self.max_cycles:
                logger.info(f"Completed {self.cycles_run} cycles")
                break

            try:
                params = self.parameters.take(timeout=remaining)
            except ChannelClosed:
                if self.stopping:
                    break
                raise

            if params is not None:
                self.simulation.apply(params)
                if not self.simulation.running:
                    remaining = self.idle_tick
                    continue
            elif not self.simulation.running:
                remaining = self.idle_tick
                continue

            remaining = self.run_cycle()

        logger.info(f"Control loop finished after {self.cycles_run} cycles")
        return self.cycles_run

    def run_cycle(self) -> float:
        """Publish one full cycle and return the time left in its interval."""
        interval = self.simulation.parameters.cycle_interval
        start = time.monotonic()

        handles: List[Any] = []
        for topic, payload in self.simulation.next_cycle():
            handles.append(self.transport.publish(topic, payload))
        self.transport.wait_for_publishes(handles, timeout=self.publish_timeout)

        elapsed = time.monotonic() - start
        remaining = max(0.0, interval - elapsed)
        self.cycles_run += 1

        self.metering.record_cycle()
        if remaining == 0:
            self.metering.record_overload()
            self._warn_overload(elapsed, interval)
        self.metering.record_datapoints(len(handles), elapsed)
        self.metering.record_capacity(elapsed, interval)
        self.metering.report()

        logger.debug(f"Published {len(handles)} messages in {elapsed:.3f}s, sleeping {remaining:.3f}s")
        return remaining

    def _warn_overload(self, elapsed: float, interval: float) -> None:
        """Log an overload, at most once per OVERLOAD_WARNING_INTERVAL."""
        self._unreported_overloads += 1
        now = time.monotonic()
        if (
            self._last_overload_warning is not None
            and now - self._last_overload_warning < OVERLOAD_WARNING_INTERVAL
        ):
            return

        logger.warning(
            f"Cycle took {elapsed:.3f}s, longer than the {interval}s interval "
            f"({self._unreported_overloads} overloaded cycles since the last warning). "
            "Messages cannot be sent fast enough: reduce the number of data points, "
            "increase the cycle interval or add capacity on the receiving end."
        )
        self._last_overload_warning = now
        self._unreported_overloads = 0
