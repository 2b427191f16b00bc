"""Configuration management for the simulator."""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml


class ConfigError(Exception):
    """Malformed configuration value."""


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    url: str = "mqtt://localhost:1883"
    username: str = ""
    password: str = ""
    client_id: str = "telemsim-0"
    qos: int = 1
    capacity: int = 0  # max queued messages, 0 = unlimited
    keepalive: int = 5
    publish_timeout: float = 30.0  # seconds to wait for a publish batch
    control_topic: str = "telemsim/control"
    status_topic: str = ""  # defaults to telemsim/status/{client_id}

    def __post_init__(self):
        if self.qos not in (0, 1, 2):
            raise ConfigError(f"Invalid QoS level: {self.qos}")
        if self.capacity < 0:
            raise ConfigError(f"Capacity must be >= 0, got {self.capacity}")
        if self.publish_timeout <= 0:
            raise ConfigError(f"Publish timeout must be > 0, got {self.publish_timeout}")
        parse_broker_url(self.url)
        if not self.status_topic:
            self.status_topic = f"telemsim/status/{self.client_id}"

    @property
    def host(self) -> str:
        return parse_broker_url(self.url)[0]

    @property
    def port(self) -> int:
        return parse_broker_url(self.url)[1]

    @property
    def use_tls(self) -> bool:
        return parse_broker_url(self.url)[2]


@dataclass
class SimulationConfig:
    """Initial simulation parameters."""

    devices: int = 100
    data_points: int = 100
    frequency_secs: int = 1
    seed: int = 1
    runs: int = 0  # 0 = run until stopped
    start_time: Optional[datetime] = None

    def __post_init__(self):
        for name in ("devices", "data_points", "frequency_secs", "seed", "runs"):
            if getattr(self, name) < 0:
                raise ConfigError(f"simulation.{name} must be >= 0")
        if self.seed >= 2**64:
            raise ConfigError("simulation.seed must fit in 64 bits")


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    log_level: str = "INFO"

    @property
    def instance_id(self) -> str:
        return self.mqtt.client_id

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Config":
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        defaults_mqtt = MQTTConfig()
        defaults_sim = SimulationConfig()

        mqtt = MQTTConfig(
            url=env.get("BROKER_URL", defaults_mqtt.url),
            username=env.get("BROKER_USER", defaults_mqtt.username),
            password=env.get("BROKER_PASS", defaults_mqtt.password),
            client_id=env.get("BROKER_CLIENT_ID", defaults_mqtt.client_id),
            qos=_get_int(env, "BROKER_QOS", defaults_mqtt.qos),
            capacity=_get_int(env, "CAPACITY", defaults_mqtt.capacity),
            publish_timeout=_get_float(env, "PUBLISH_TIMEOUT", defaults_mqtt.publish_timeout),
            control_topic=env.get("CONTROL_TOPIC", defaults_mqtt.control_topic),
            status_topic=env.get("STATUS_TOPIC", ""),
        )
        simulation = SimulationConfig(
            devices=_get_int(env, "SIM_DEVICES", defaults_sim.devices),
            data_points=_get_int(env, "SIM_DATA_POINTS", defaults_sim.data_points),
            frequency_secs=_get_int(env, "SIM_FREQUENCY_SECS", defaults_sim.frequency_secs),
            seed=_get_int(env, "SIM_SEED", defaults_sim.seed),
            runs=_get_int(env, "SIM_RUNS", defaults_sim.runs),
            start_time=parse_start_time(env.get("SIM_START_TIME")),
        )
        return cls(mqtt=mqtt, simulation=simulation, log_level=env.get("LOG_LEVEL", "INFO"))

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            config.mqtt = MQTTConfig(
                url=mqtt_data.get("url", config.mqtt.url),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=_as_int(mqtt_data.get("qos", config.mqtt.qos), "mqtt.qos"),
                capacity=_as_int(mqtt_data.get("capacity", config.mqtt.capacity), "mqtt.capacity"),
                keepalive=_as_int(mqtt_data.get("keepalive", config.mqtt.keepalive), "mqtt.keepalive"),
                publish_timeout=_as_float(
                    mqtt_data.get("publish_timeout", config.mqtt.publish_timeout), "mqtt.publish_timeout"
                ),
                control_topic=mqtt_data.get("control_topic", config.mqtt.control_topic),
                status_topic=mqtt_data.get("status_topic", ""),
            )

        if "simulation" in data:
            sim_data = data["simulation"] or {}
            start_time = sim_data.get("start_time")
            config.simulation = SimulationConfig(
                devices=_as_int(sim_data.get("devices", config.simulation.devices), "simulation.devices"),
                data_points=_as_int(
                    sim_data.get("data_points", config.simulation.data_points), "simulation.data_points"
                ),
                frequency_secs=_as_int(
                    sim_data.get("frequency_secs", config.simulation.frequency_secs),
                    "simulation.frequency_secs",
                ),
                seed=_as_int(sim_data.get("seed", config.simulation.seed), "simulation.seed"),
                runs=_as_int(sim_data.get("runs", config.simulation.runs), "simulation.runs"),
                start_time=parse_start_time(start_time.isoformat() if isinstance(start_time, datetime) else start_time),
            )

        if "log_level" in data:
            config.log_level = str(data["log_level"])

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "url": self.mqtt.url,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "capacity": self.mqtt.capacity,
                "keepalive": self.mqtt.keepalive,
                "publish_timeout": self.mqtt.publish_timeout,
                "control_topic": self.mqtt.control_topic,
                "status_topic": self.mqtt.status_topic,
            },
            "simulation": {
                "devices": self.simulation.devices,
                "data_points": self.simulation.data_points,
                "frequency_secs": self.simulation.frequency_secs,
                "seed": self.simulation.seed,
                "runs": self.simulation.runs,
                "start_time": self.simulation.start_time.isoformat() if self.simulation.start_time else None,
            },
            "log_level": self.log_level,
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def parse_broker_url(url: str):
    """Split ``mqtt://host:port`` into ``(host, port, use_tls)``."""
    parsed = urlparse(url)
    if parsed.scheme not in ("mqtt", "mqtts", "tcp", "ssl"):
        raise ConfigError(f"Unsupported broker URL scheme: {url}")
    use_tls = parsed.scheme in ("mqtts", "ssl")
    try:
        port = parsed.port or (8883 if use_tls else 1883)
    except ValueError as e:
        raise ConfigError(f"Invalid broker port in {url}: {e}") from e
    return parsed.hostname or "localhost", port, use_tls


def parse_start_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 start time; naive times are taken as UTC."""
    if not value:
        return None
    try:
        start = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ConfigError(f"Invalid start time {value!r}: {e}") from e
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start


def _get_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return _as_int(raw, name)


def _get_float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return _as_float(raw, name)


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def anonymize(secret: Optional[str]) -> str:
    """Show only the first and last character of a secret."""
    if not secret:
        return "None"
    if len(secret) < 3:
        return "…"
    return f"{secret[0]}…{secret[-1]}"
