"""Command-line interface for the PLC fleet simulator."""

import json
import logging
import signal
import sys
import time
from pathlib import Path

import click

from . import __version__
from .config import Config
from .consumer import QueueConsumer
from .discovery import QueueDiscovery
from .errors import ConfigurationError
from .mqtt_client import state_control_topic
from .simulator import Simulator

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

SAMPLE_LINE = {
    "id": "line1",
    "name": "Bakery Line 1",
    "site": "site1",
    "type": "bread",
    "line": 1,
    "status": "running",
    "efficiency": 0.92,
    "equipment": [
        {
            "id": "oven1",
            "name": "Tunnel Oven",
            "type": "oven",
            "status": "running",
            "tags": [
                {
                    "id": "temperature",
                    "name": "Oven Temperature",
                    "dataType": "REAL",
                    "value": 350,
                    "behavior": {
                        "type": "sinusoidal",
                        "parameters": {"min": 300, "max": 400, "period": 120000, "offset": 350},
                    },
                },
                {
                    "id": "heating_status",
                    "name": "Heating Status",
                    "dataType": "BOOL",
                    "value": True,
                    "behavior": {"type": "constant"},
                },
            ],
            "states": [
                {
                    "name": "running",
                    "description": "Oven is baking",
                    "transitions": [
                        {"toState": "stopped", "condition": "manual_stop"},
                        {"toState": "fault", "condition": "equipment_fault", "probability": 0.01},
                    ],
                },
                {
                    "name": "stopped",
                    "description": "Oven is stopped",
                    "tagOverrides": [{"tagId": "heating_status", "value": False}],
                    "transitions": [{"toState": "running", "condition": "manual_start"}],
                },
                {
                    "name": "fault",
                    "description": "Oven has a fault condition",
                    "tagOverrides": [
                        {"tagId": "heating_status", "value": False},
                        {"tagId": "temperature", "value": 300},
                    ],
                    "transitions": [{"toState": "stopped", "condition": "fault_reset"}],
                },
            ],
        },
        {
            "id": "conveyor1",
            "name": "Cooling Conveyor",
            "type": "conveyor",
            "status": "running",
            "tags": [
                {
                    "id": "speed",
                    "name": "Belt Speed",
                    "dataType": "REAL",
                    "value": 1.5,
                    "behavior": {"type": "random", "parameters": {"min": 1.2, "max": 1.8}},
                },
                {
                    "id": "zone",
                    "name": "Active Zone",
                    "dataType": "INT",
                    "value": 0,
                    "behavior": {
                        "type": "stepped",
                        "parameters": {"stepValues": [1, 2, 3], "stepDuration": 10000},
                    },
                },
            ],
        },
    ],
}


def _load_config(config_path, config_dir=None, broker=None, port=None) -> Config:
    cfg = Config.from_env(Config.from_yaml(Path(config_path)))
    if config_dir:
        cfg.simulation.config_directory = str(config_dir)
    if broker:
        cfg.mqtt.broker = broker
    if port:
        cfg.mqtt.port = port
    return cfg


def _run_until_signal(stop) -> None:
    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    while True:
        time.sleep(1)


@click.group()
@click.version_option(version=__version__)
def main():
    """PLC fleet simulator.

    Simulates production-line equipment (ovens, conveyors, presses, assembly
    stations) and streams their telemetry to one MQTT topic per equipment.
    """
    pass


@main.command()
@click.option("--config", "-c", "config_path", default="config/config.yaml", help="YAML config file")
@click.option("--config-dir", "-d", type=click.Path(path_type=Path), help="Line configuration directory")
@click.option("--broker", "-b", help="MQTT broker address")
@click.option("--port", "-p", type=int, help="MQTT broker port")
@click.option("--update-interval", "-u", type=click.IntRange(min=1), help="Update interval in ms")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default="INFO", help="Log level")
def run(config_path, config_dir, broker, port, update_interval, log_level):
    """Start the simulator."""
    logging.getLogger().setLevel(log_level)
    cfg = _load_config(config_path, config_dir, broker, port)
    if update_interval:
        cfg.simulation.update_interval_ms = update_interval

    sim = Simulator(cfg)
    try:
        sim.start()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Simulating {len(sim.simulators)} equipment")
    click.echo(f"  MQTT:   {cfg.mqtt.broker}:{cfg.mqtt.port}")
    click.echo(f"  Lines:  {cfg.simulation.config_directory}")
    click.echo(f"  Update: {cfg.simulation.update_interval_ms}ms")
    click.echo("Press Ctrl+C to stop")

    _run_until_signal(sim.stop)


@main.command()
@click.option("--config", "-c", "config_path", default="config/config.yaml", help="YAML config file")
@click.option("--config-dir", "-d", type=click.Path(path_type=Path), help="Line configuration directory")
@click.option("--broker", "-b", help="MQTT broker address")
@click.option("--port", "-p", type=int, help="MQTT broker port")
@click.option("--output", "-o", help="Line protocol output file ('-' for stdout)")
def consume(config_path, config_dir, broker, port, output):
    """Consume every equipment topic and write line protocol."""
    cfg = _load_config(config_path, config_dir, broker, port)
    if output:
        cfg.consumer.output = output

    try:
        consumer = QueueConsumer(cfg)
        started = consumer.start()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    if not started:
        click.echo(f"Error: cannot connect to {cfg.mqtt.broker}:{cfg.mqtt.port}", err=True)
        sys.exit(1)

    _run_until_signal(consumer.stop)


@main.command()
@click.option(
    "--config-dir",
    "-d",
    type=click.Path(path_type=Path),
    default=Path("config/lines"),
    help="Line configuration directory",
)
@click.option("--prefix", default="plc_data_", help="Queue name prefix")
def queues(config_dir, prefix):
    """List the queue names derived from the line files."""
    discovery = QueueDiscovery(config_dir, queue_prefix=prefix)
    try:
        names = discovery.discover_queue_names()
        summary = discovery.equipment_summary()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    for name in names:
        click.echo(name)
    click.echo()
    click.echo(f"Total equipment: {summary.total_equipment}")
    for title, groups in (
        ("Lines", summary.by_line),
        ("Sites", summary.by_site),
        ("Types", summary.by_type),
    ):
        click.echo(f"{title}:")
        for key, ids in groups.items():
            click.echo(f"  {key}: {', '.join(ids)}")


@main.command("force-state")
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.argument("equipment_id")
@click.argument("state")
def force_state(broker, port, equipment_id, state):
    """Force EQUIPMENT_ID into STATE on a running simulator via MQTT."""
    import paho.mqtt.client as mqtt

    topic = state_control_topic(equipment_id)
    payload = json.dumps({"state": state})

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)

    try:
        client.connect(broker, port)
        client.loop_start()
        result = client.publish(topic, payload, qos=1)
        result.wait_for_publish(timeout=10)
        client.loop_stop()
        client.disconnect()

        click.echo(f"Requested {equipment_id} -> {state}")
        click.echo(f"  Topic: {topic}")

    except (OSError, ValueError, RuntimeError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate sample configuration files.

    Creates config.yaml with broker, timing and consumer settings, and
    lines/line1.json with a sample oven and conveyor.
    """
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    cfg.simulation.config_directory = str(output / "lines")
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    line_path = output / "lines" / "line1.json"
    line_path.parent.mkdir(parents=True, exist_ok=True)
    with open(line_path, "w") as f:
        json.dump(SAMPLE_LINE, f, indent=2)

    click.echo(f"Created: {config_path}")
    click.echo(f"Created: {line_path}")
    click.echo()
    click.echo("Edit the files to customize:")
    click.echo("  - MQTT broker settings")
    click.echo("  - Update and heartbeat intervals")
    click.echo("  - Equipment, tags and behaviors per line")


if __name__ == "__main__":
    main()
