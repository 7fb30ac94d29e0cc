"""Service configuration for the simulator and the consumer."""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "plc-fleet-sim"
    qos: int = 1
    keepalive: int = 60
    connect_timeout_s: float = 10.0
    max_retries: int = 5
    retry_delay_ms: int = 1000
    buffer_capacity: int = 10000


@dataclass
class SimulationConfig:
    """Simulation timing and noise parameters."""

    config_directory: str = "config/lines"
    update_interval_ms: int = 2000
    heartbeat_interval_ms: int = 30000
    watch_config: bool = True
    watch_interval_ms: int = 1000
    bad_quality_rate: float = 0.001
    uncertain_quality_rate: float = 0.009
    random_seed: Optional[int] = None
    buffer_warning_threshold: int = 1000
    dedup_ttl_s: float = 300.0


@dataclass
class ConsumerConfig:
    """Queue consumer and point transformation settings."""

    queue_prefix: str = "plc_data_"
    default_measurement: str = "plc_data"
    include_quality_metrics: bool = True
    timestamp_precision: str = "ms"  # ns, ms or s
    client_id: str = "plc-fleet-consumer"
    output: str = "-"
    write_max_retries: int = 3
    write_retry_delay_ms: int = 100
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_s: float = 30.0
    dead_letter_capacity: int = 1000
    # Per-tag mapping rules, see transformer.TagRule.from_dict
    tag_rules: List[Dict[str, Any]] = field(default_factory=list)


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    """Convert a YAML/env value to the type of the field default."""
    if value is None or default is None:
        if name == "random_seed" and value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"{section}.{name} must be an integer, got {value!r}")
        return value
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, (int, float)):
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            kind = "an integer" if isinstance(default, int) else "a number"
            raise ConfigurationError(f"{section}.{name} must be {kind}, got {value!r}")
    if isinstance(default, list):
        if not isinstance(value, list):
            raise ConfigurationError(f"{section}.{name} must be a list, got {value!r}")
        return list(value)
    return str(value)


def _build_section(cls, section: str, data: Dict[str, Any]):
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        default = getattr(defaults, f.name)
        kwargs[f.name] = _coerce(section, f.name, data.get(f.name, default), default)
    return cls(**kwargs)


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from a YAML file; a missing file yields defaults."""
        config_path = Path(config_path)
        if not config_path.exists():
            return cls.default()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML: {e}", source=str(config_path))

        if not isinstance(data, dict):
            raise ConfigurationError("top level must be a mapping", source=str(config_path))

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Apply environment overrides on top of ``base`` (defaults if omitted)."""
        config = base or cls.default()

        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = _coerce("mqtt", "port", os.getenv("MQTT_PORT", config.mqtt.port), 0)
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)
        config.mqtt.max_retries = _coerce(
            "mqtt", "max_retries", os.getenv("MQTT_MAX_RETRIES", config.mqtt.max_retries), 0
        )
        config.mqtt.retry_delay_ms = _coerce(
            "mqtt", "retry_delay_ms", os.getenv("MQTT_RETRY_DELAY", config.mqtt.retry_delay_ms), 0
        )

        config.simulation.config_directory = os.getenv(
            "CONFIG_DIRECTORY", config.simulation.config_directory
        )
        config.simulation.update_interval_ms = _coerce(
            "simulation",
            "update_interval_ms",
            os.getenv("UPDATE_INTERVAL", config.simulation.update_interval_ms),
            0,
        )
        config.simulation.heartbeat_interval_ms = _coerce(
            "simulation",
            "heartbeat_interval_ms",
            os.getenv("HEARTBEAT_INTERVAL", config.simulation.heartbeat_interval_ms),
            0,
        )

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        sections = {"mqtt": MQTTConfig, "simulation": SimulationConfig, "consumer": ConsumerConfig}
        kwargs = {}
        for name, section_cls in sections.items():
            section_data = data.get(name) or {}
            if not isinstance(section_data, dict):
                raise ConfigurationError(f"section '{name}' must be a mapping")
            kwargs[name] = _build_section(section_cls, name, section_data)
        return cls(**kwargs)

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": asdict(self.mqtt),
            "simulation": asdict(self.simulation),
            "consumer": asdict(self.consumer),
        }

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
