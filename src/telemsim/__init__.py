"""Telemetry load simulator - MQTT-based IoT device fleet emulation."""

__version__ = "0.1.0"

from .commands import StartCommand, StopCommand, parse_command
from .config import Config
from .simulation import Simulation, SimulationParameters

__all__ = [
    "Config",
    "Simulation",
    "SimulationParameters",
    "StartCommand",
    "StopCommand",
    "parse_command",
    "__version__",
]
