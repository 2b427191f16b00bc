"""Control plane commands.

Commands are plain ASCII, whitespace separated::

    start <devices> <data_points> <cycle_interval_secs> [seed]
    stop
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Union

from .simulation import MAX_SEED, SimulationParameters

DEFAULT_SEED = 1

_NUMBER = re.compile(r"[0-9]+")


class CommandError(Exception):
    """A control message could not be turned into a command."""


class EmptyCommand(CommandError):
    """The control message contained no tokens."""


class UnknownCommand(CommandError):
    """The leading token is not a known command."""


class InvalidArguments(CommandError):
    """Wrong number of arguments or a non-numeric argument."""


@dataclass(frozen=True)
class StartCommand:
    """Start or replace the simulation."""

    devices: int
    data_points: int
    cycle_interval: int  # seconds
    seed: int = DEFAULT_SEED

    def to_parameters(self) -> SimulationParameters:
        return SimulationParameters(
            device_count=self.devices,
            data_points_per_device=self.data_points,
            cycle_interval=float(self.cycle_interval),
            seed=self.seed,
        )


@dataclass(frozen=True)
class StopCommand:
    """Stop the simulation (same as ``start 0 0 0``)."""

    def to_parameters(self) -> SimulationParameters:
        return SimulationParameters.stopped()


Command = Union[StartCommand, StopCommand]


def _parse_number(token: str, limit: Optional[int] = None) -> int:
    if not _NUMBER.fullmatch(token):
        raise InvalidArguments(f"Not a non-negative integer: {token!r}")
    value = int(token)
    if limit is not None and value >= limit:
        raise InvalidArguments(f"Value out of range: {token!r}")
    return value


def _parse_start(args: List[str]) -> StartCommand:
    if len(args) not in (3, 4):
        raise InvalidArguments(
            f"start expects <devices> <data_points> <cycle_interval_secs> [seed], got {len(args)} arguments"
        )

    devices, data_points, interval = (_parse_number(a) for a in args[:3])
    seed = _parse_number(args[3], MAX_SEED) if len(args) == 4 else DEFAULT_SEED
    return StartCommand(devices, data_points, interval, seed)


def parse_command(text: str) -> Command:
    """Parse a control message into a command.

    Raises:
        EmptyCommand: no tokens at all.
        UnknownCommand: the first token is neither ``start`` nor ``stop``.
        InvalidArguments: malformed ``start`` arguments.
    """
    parts = text.split()
    if not parts:
        raise EmptyCommand("Empty command")

    name, args = parts[0], parts[1:]
    if name == "start":
        return _parse_start(args)
    if name == "stop":
        return StopCommand()
    raise UnknownCommand(f"Unknown command: {name!r}")
