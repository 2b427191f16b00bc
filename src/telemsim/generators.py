"""Numeric data point generators.

Each simulated device owns a fixed list of generators. A generator produces
one value per call and keeps its own seeded random stream, so the sequence of
values only depends on the seed and on how often it has been called.

Three kinds exist, modelled after PLC registers:

- **status**: mostly constant registers that change occasionally (alarms,
  mode switches)
- **noise**: rapidly changing process registers, uniform 16 bit values
- **sensor**: analogue readings following a sine curve with jitter
"""

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple


class GeneratorKind(Enum):
    """Kinds of data point generators."""

    STATUS = "status"
    NOISE = "noise"
    SENSOR = "sensor"


# Sensor curve: AVG_TEMPERATURE +/- DELTA_TEMPERATURE, plus jitter
AVG_TEMPERATURE = 100.0
DELTA_TEMPERATURE = 20.0
JITTER = 2.0

# The sine repeats every SPREAD data points
SPREAD = 100

# Status values are held for SUSTAIN calls
SUSTAIN = 100


@dataclass
class Generator:
    """A single data point generator.

    The kind is fixed at construction; ``generate`` dispatches on it. All
    mutable state (counter, held status value) is private to the instance.
    """

    kind: GeneratorKind
    index: int
    seed: int
    _rng: random.Random = field(init=False, repr=False, compare=False)
    _counter: int = field(default=0, init=False, repr=False, compare=False)
    _current_value: int = field(default=0, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._rng = random.Random(self.seed)
        if self.kind is GeneratorKind.STATUS:
            self._current_value = self._rng.getrandbits(16)

    @property
    def name(self) -> str:
        return f"{self.kind.value}_{self.index}"

    def generate(self) -> Tuple[str, float]:
        """Advance the generator by one step and return ``(name, value)``."""
        if self.kind is GeneratorKind.NOISE:
            value = self._next_noise()
        elif self.kind is GeneratorKind.SENSOR:
            value = self._next_sensor()
        else:
            value = self._next_status()
        return self.name, value

    def _next_noise(self) -> float:
        return float(self._rng.getrandbits(16))

    def _next_sensor(self) -> float:
        x = 2.0 * math.pi * self._counter / SPREAD
        plain_value = math.sin(x) * DELTA_TEMPERATURE + AVG_TEMPERATURE
        jittered = JITTER * 2.0 * self._rng.random() - JITTER + plain_value
        value = math.trunc(jittered * 100.0) / 100.0

        if self._counter == SPREAD:
            self._counter = 0
        else:
            self._counter += 1
        return value

    def _next_status(self) -> float:
        if self._counter == SUSTAIN:
            self._counter = 0
            self._current_value = self._rng.getrandbits(16)
        self._counter += 1
        return float(self._current_value)


def partition(data_points: int) -> List[Tuple[GeneratorKind, int]]:
    """Split ``data_points`` into status, noise and sensor blocks.

    The first third are status, the next third noise and the rest sensor, so
    the sensor block absorbs the remainder of the integer division.
    """
    third = data_points // 3
    counts = (
        (GeneratorKind.STATUS, third),
        (GeneratorKind.NOISE, third),
        (GeneratorKind.SENSOR, data_points - 2 * third),
    )
    return [(kind, index) for kind, count in counts for index in range(count)]


def create_generators(data_points: int, rng: random.Random) -> List[Generator]:
    """Create the generators for one device.

    Each generator is seeded from ``rng`` in construction order.
    """
    return [
        Generator(kind=kind, index=index, seed=rng.getrandbits(64))
        for kind, index in partition(data_points)
    ]
