"""Simulated IoT device producing one message per data point and cycle."""

import random
from typing import List, Tuple

from .generators import Generator, create_generators


def format_value(value: float) -> str:
    """Render a value in its natural decimal form (``4711``, ``101.25``)."""
    if value.is_integer():
        return str(int(value))
    return repr(value)


def topic_for(device_name: str, generator_name: str) -> str:
    """Topic of one data point: ``{instance}_{device}/{generator}``."""
    return f"{device_name}/{generator_name}"


class Device:
    """A device identified by its instance id and index within the fleet.

    Generators are created once from ``seed`` and live as long as the device.
    """

    def __init__(self, instance_id: str, index: int, data_points: int, seed: int):
        self.instance_id = instance_id
        self.index = index
        self.seed = seed
        self._generators: List[Generator] = create_generators(
            data_points, random.Random(seed)
        )

    @property
    def name(self) -> str:
        return f"{self.instance_id}_{self.index}"

    @property
    def generators(self) -> List[Generator]:
        return list(self._generators)

    @property
    def data_points(self) -> int:
        return len(self._generators)

    def produce_cycle(self, timestamp_ms: int) -> List[Tuple[str, str]]:
        """Generate one ``(topic, payload)`` per generator, in generator order."""
        messages = []
        for generator in self._generators:
            name, value = generator.generate()
            payload = f"{timestamp_ms},{format_value(value)}"
            messages.append((topic_for(self.name, name), payload))
        return messages
