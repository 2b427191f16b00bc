"""Process wiring: transport, control channel, simulation and control loop."""

import logging
import signal
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .commands import Command
from .config import Config, anonymize
from .metering import Metering
from .mqtt_client import MQTTClient
from .scheduler import ChannelClosed, ControlLoop, LatestValue, PublishError
from .simulation import Simulation, SimulationParameters

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def initial_parameters(config: Config) -> SimulationParameters:
    """Parameters to start with, taken from the process configuration."""
    sim = config.simulation
    return SimulationParameters(
        device_count=sim.devices,
        data_points_per_device=sim.data_points,
        cycle_interval=float(sim.frequency_secs),
        seed=sim.seed,
    )


def wait_for_start_time(start_time: Optional[datetime], sleep: Callable[[float], None] = time.sleep) -> None:
    """Sleep until ``start_time`` (no-op when unset or in the past)."""
    if start_time is None:
        return
    delay = (start_time - datetime.now(timezone.utc)).total_seconds()
    if delay > 0:
        logger.info(f"Waiting {delay:.1f}s until start time {start_time.isoformat()}")
        sleep(delay)


def log_settings(config: Config) -> None:
    mqtt_cfg, sim = config.mqtt, config.simulation
    logger.info(
        f"Broker {mqtt_cfg.url} user={mqtt_cfg.username or None} "
        f"pass={anonymize(mqtt_cfg.password)} client_id={mqtt_cfg.client_id} "
        f"qos={mqtt_cfg.qos} capacity={mqtt_cfg.capacity}"
    )
    logger.info(
        f"Simulation: devices={sim.devices} data_points={sim.data_points} "
        f"frequency={sim.frequency_secs}s seed={sim.seed} runs={sim.runs or 'unbounded'} "
        f"start_time={sim.start_time}"
    )


class SimulatorApp:
    """Owns every long-lived component of one simulator process."""

    def __init__(self, config: Config, client: Optional[MQTTClient] = None):
        self.config = config
        self.parameters: LatestValue[SimulationParameters] = LatestValue()
        self.client = client or MQTTClient(config.mqtt)
        self.client.on_command = self._on_command
        self.client.on_connection_lost = self._on_connection_lost
        self.metering = Metering(config.instance_id, reporter=self.client.publish_status)
        self.simulation = Simulation(config.instance_id)
        self.loop = ControlLoop(
            self.simulation,
            self.client,
            self.parameters,
            self.metering,
            max_cycles=config.simulation.runs or None,
            publish_timeout=config.mqtt.publish_timeout,
        )

    def _on_command(self, command: Command) -> None:
        try:
            self.parameters.put(command.to_parameters())
        except ChannelClosed:
            logger.debug(f"Dropping {command}: shutting down")

    def _on_connection_lost(self) -> None:
        logger.error("Lost connection to the broker - closing the control channel")
        self.parameters.close()

    def stop(self) -> None:
        logger.info("Shutting down...")
        self.loop.stop()

    def run(self, dry_run: bool = False) -> int:
        """Connect, run the control loop and return the process exit code."""
        log_settings(self.config)

        # Commands received after connecting replace these
        params = initial_parameters(self.config)
        if not params.is_stopped:
            self.parameters.put(params)

        if not self.client.connect(dry_run=dry_run):
            logger.error("Failed to connect to MQTT broker")
            return EXIT_FAILURE

        try:
            wait_for_start_time(self.config.simulation.start_time)
            self.loop.run()
        except PublishError as e:
            logger.error(f"Publishing failed, stopping the simulation: {e}")
            return EXIT_FAILURE
        except ChannelClosed as e:
            logger.error(f"No more control messages can be received: {e}")
            return EXIT_FAILURE
        finally:
            self.client.disconnect()

        return EXIT_OK


def run_simulator(config: Config, dry_run: bool = False) -> int:
    """Run the simulator until stopped; returns the process exit code."""
    app = SimulatorApp(config)

    def signal_handler(sig, frame):
        app.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    return app.run(dry_run=dry_run)
