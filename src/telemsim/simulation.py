"""Simulation engine: owns the device pool and the active parameters.

The pool is rebuilt from scratch on every change of parameters. There is no
incremental diffing, so a new configuration always starts from fresh
generator state. Values are reproducible for a given instance id and seed.
"""

import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple

from .device import Device

logger = logging.getLogger(__name__)

MAX_SEED = 2**64


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SimulationParameters:
    """Fleet configuration; ``device_count == 0`` means stopped."""

    device_count: int = 0
    data_points_per_device: int = 0
    cycle_interval: float = 0.0  # seconds
    seed: int = 1

    def __post_init__(self):
        if self.device_count < 0:
            raise ValueError(f"device_count must be >= 0, got {self.device_count}")
        if self.data_points_per_device < 0:
            raise ValueError(
                f"data_points_per_device must be >= 0, got {self.data_points_per_device}"
            )
        if self.cycle_interval < 0:
            raise ValueError(f"cycle_interval must be >= 0, got {self.cycle_interval}")
        if not 0 <= self.seed < MAX_SEED:
            raise ValueError(f"seed must fit in 64 bits, got {self.seed}")

    @classmethod
    def stopped(cls) -> "SimulationParameters":
        return cls()

    @property
    def is_stopped(self) -> bool:
        return self.device_count == 0

    @property
    def datapoints_per_cycle(self) -> int:
        return self.device_count * self.data_points_per_device


def derive_master_seed(instance_id: str, seed: int) -> int:
    """Combine instance id and seed into a 64 bit master seed.

    The result is stable across processes and platforms (unlike ``hash()``,
    which is salted per interpreter).
    """
    digest = hashlib.blake2b(digest_size=8)
    digest.update(instance_id.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(seed.to_bytes(8, "big"))
    return int.from_bytes(digest.digest(), "big")


def build_devices(instance_id: str, params: SimulationParameters) -> List[Device]:
    """Create the device pool for ``params``, one seed draw per device."""
    master = random.Random(derive_master_seed(instance_id, params.seed))
    return [
        Device(instance_id, index, params.data_points_per_device, master.getrandbits(64))
        for index in range(params.device_count)
    ]


class Simulation:
    """Owns the live device pool.

    States are *stopped* (empty pool) and *running* (pool built from the
    applied parameters). Only the control loop mutates a simulation.
    """

    def __init__(self, instance_id: str, clock: Optional[Callable[[], int]] = None):
        self.instance_id = instance_id
        self._clock = clock or now_ms
        self._params = SimulationParameters.stopped()
        self._devices: List[Device] = []

    @property
    def parameters(self) -> SimulationParameters:
        return self._params

    @property
    def running(self) -> bool:
        return bool(self._devices)

    @property
    def device_count(self) -> int:
        return len(self._devices)

    @property
    def datapoints_per_cycle(self) -> int:
        return sum(device.data_points for device in self._devices)

    @property
    def devices(self) -> List[Device]:
        return list(self._devices)

    def apply(self, params: SimulationParameters) -> None:
        """Replace the active configuration, rebuilding every device."""
        if params.is_stopped:
            self.stop()
            return

        # Swapped in one step
        devices = build_devices(self.instance_id, params)
        self._devices = devices
        self._params = params
        logger.info(
            f"Simulation running: {params.device_count} devices x "
            f"{params.data_points_per_device} data points every "
            f"{params.cycle_interval}s (seed={params.seed})"
        )

    def stop(self) -> None:
        """Discard the device pool. Stopping twice is harmless."""
        was_running = self.running
        self._devices = []
        self._params = SimulationParameters.stopped()
        if was_running:
            logger.info("Simulation stopped")

    def next_cycle(self) -> Iterator[Tuple[str, str]]:
        """Lazily yield every ``(topic, payload)`` of one cycle.

        Devices are visited in pool order; each call produces new values.
        """
        for device in self._devices:
            yield from device.produce_cycle(self._clock())
