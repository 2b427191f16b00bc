"""Command-line interface for the telemetry load simulator."""

import dataclasses
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from . import __version__
from .config import Config, ConfigError, MQTTConfig
from .runner import run_simulator

EXIT_CONFIG_ERROR = 2


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path):
    load_dotenv()
    try:
        if config_path:
            return Config.from_yaml(config_path)
        return Config.from_env()
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.version_option(version=__version__)
def main():
    """Telemetry load simulator - emulates a fleet of IoT devices over MQTT.

    Every device publishes a fixed set of data points (status, noise and
    sensor values) once per cycle. The fleet is started, stopped and resized
    at runtime through commands on the control topic:

    \b
      start <devices> <data_points> <cycle_interval_secs> [seed]
      stop
    """
    pass


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="YAML config file (default: read the environment)",
)
@click.option("--broker-url", "-b", default=None, help="MQTT broker URL, e.g. mqtt://localhost:1883")
@click.option("--client-id", default=None, help="MQTT client id, also the instance id used for seeding")
@click.option("--devices", "-d", type=click.IntRange(min=0), default=None, help="Initial number of devices")
@click.option("--data-points", "-n", type=click.IntRange(min=0), default=None, help="Data points per device")
@click.option("--interval", "-i", type=click.IntRange(min=0), default=None, help="Cycle interval in seconds")
@click.option("--seed", type=click.IntRange(0, 2**64 - 1), default=None, help="Simulation seed")
@click.option("--runs", type=click.IntRange(min=0), default=None, help="Stop after this many cycles (0: never)")
@click.option("--dry-run", is_flag=True, default=False, help="Do not connect, only log what would be sent")
@click.option("--log-level", default=None, help="Logging level (default: INFO)")
def run(config_path, broker_url, client_id, devices, data_points, interval, seed, runs, dry_run, log_level):
    """Start the simulator.

    Settings come from the environment (or a .env file) unless --config is
    given; command-line options override both.
    """
    config = _load_config(config_path)

    try:
        mqtt_overrides = {
            key: value
            for key, value in (("url", broker_url), ("client_id", client_id))
            if value is not None
        }
        if mqtt_overrides:
            default_status = f"telemsim/status/{config.mqtt.client_id}"
            if "client_id" in mqtt_overrides and config.mqtt.status_topic == default_status:
                mqtt_overrides["status_topic"] = ""
            config.mqtt = dataclasses.replace(config.mqtt, **mqtt_overrides)

        sim_overrides = {
            key: value
            for key, value in (
                ("devices", devices),
                ("data_points", data_points),
                ("frequency_secs", interval),
                ("seed", seed),
                ("runs", runs),
            )
            if value is not None
        }
        if sim_overrides:
            config.simulation = dataclasses.replace(config.simulation, **sim_overrides)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    _setup_logging(log_level or config.log_level)
    sys.exit(run_simulator(config, dry_run=dry_run))


def _mqtt_config(broker_url) -> MQTTConfig:
    config = _load_config(None)
    if not broker_url:
        return config.mqtt
    try:
        return dataclasses.replace(config.mqtt, url=broker_url)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


def _send(broker_url, text):
    mqtt_config = _mqtt_config(broker_url)

    from .mqtt_client import send_command

    try:
        send_command(mqtt_config, text)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Sent '{text}'")
    click.echo(f"  Topic: {mqtt_config.control_topic}")


@main.command()
@click.option("--broker-url", "-b", default=None, help="MQTT broker URL")
@click.argument("devices", type=click.IntRange(min=0))
@click.argument("data_points", type=click.IntRange(min=0))
@click.argument("interval", type=click.IntRange(min=0))
@click.argument("seed", type=click.IntRange(0, 2**64 - 1), required=False)
def start(broker_url, devices, data_points, interval, seed):
    """Start or reconfigure a running simulator via MQTT."""
    text = f"start {devices} {data_points} {interval}"
    if seed is not None:
        text += f" {seed}"

    _send(broker_url, text)


@main.command()
@click.option("--broker-url", "-b", default=None, help="MQTT broker URL")
def stop(broker_url):
    """Stop the simulation of a running simulator via MQTT."""
    _send(broker_url, "stop")


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker settings")
    click.echo("  - Initial fleet size and cycle interval")
    click.echo()
    click.echo(f"Run with: telemsim run --config {config_path}")


@main.command()
@click.option("--broker-url", "-b", default=None, help="MQTT broker URL")
@click.option(
    "--filter",
    "-f",
    "topic_filter",
    default="#",
    help="Topic filter (default: # for all)",
)
def subscribe(broker_url, topic_filter):
    """Subscribe to simulator topics and display messages.

    Useful for debugging and monitoring the simulator output.
    """
    import paho.mqtt.client as mqtt

    mqtt_config = _mqtt_config(broker_url)

    def on_message(client, userdata, msg):
        click.echo(f"{msg.topic}: {msg.payload.decode(errors='replace')}")

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(topic_filter)
            click.echo(f"Subscribed to: {topic_filter}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message
    if mqtt_config.username:
        client.username_pw_set(mqtt_config.username, mqtt_config.password)
    if mqtt_config.use_tls:
        client.tls_set()

    try:
        client.connect(mqtt_config.host, mqtt_config.port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
