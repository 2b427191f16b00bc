"""Cycle statistics: throughput, capacity usage and overload counts."""

import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

SERVICE_NAME = "telemsim"

# Minimum seconds between two forwarded snapshots
REPORT_INTERVAL = 1.0


class Metering:
    """Collects per-cycle statistics for one simulator instance.

    ``reporter`` receives a snapshot from :meth:`report`, e.g. to publish it
    on a retained status topic, at most once per ``report_interval`` seconds.
    """

    def __init__(
        self,
        instance_id: str,
        reporter: Optional[Callable[[Dict[str, Any]], None]] = None,
        report_interval: float = REPORT_INTERVAL,
    ):
        self.instance_id = instance_id
        self.reporter = reporter
        self.report_interval = report_interval
        self._last_report: Optional[float] = None

        self.cycles = 0
        self.overloads = 0
        self.datapoints_total = 0
        self.datapoints_per_sec: Optional[float] = None
        self.capacity: Optional[float] = None

    @property
    def labels(self) -> Dict[str, str]:
        return {"service": SERVICE_NAME, "service.replica": self.instance_id}

    def record_cycle(self) -> None:
        self.cycles += 1

    def record_overload(self) -> None:
        """Count a cycle that did not finish within its interval."""
        self.overloads += 1

    def record_datapoints(self, datapoints: int, elapsed: float) -> None:
        """Record instantaneous throughput in data points per second."""
        self.datapoints_total += datapoints
        if elapsed > 0:
            self.datapoints_per_sec = datapoints / elapsed

    def record_capacity(self, elapsed: float, interval: float) -> None:
        """Record the share of the cycle interval spent working (1.0 = full)."""
        if interval > 0:
            self.capacity = elapsed / interval

    def snapshot(self) -> Dict[str, Any]:
        return {
            **self.labels,
            "cycles": self.cycles,
            "overloads": self.overloads,
            "datapoints_total": self.datapoints_total,
            "datapoints_per_sec": self.datapoints_per_sec,
            "capacity": self.capacity,
            "timestamp_ms": int(time.time() * 1000),
        }

    def report(self) -> None:
        snapshot = self.snapshot()
        logger.debug(
            f"Cycle {self.cycles}: {snapshot['datapoints_per_sec']} datapoints/s, "
            f"capacity {snapshot['capacity']}, overloads {self.overloads}"
        )
        if not self.reporter:
            return
        now = time.monotonic()
        if self._last_report is not None and now - self._last_report < self.report_interval:
            return
        self._last_report = now
        self.reporter(snapshot)
