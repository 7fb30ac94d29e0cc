"""Fleet orchestrator: drives every equipment simulator and publishes its telemetry."""

import functools
import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import Config
from .equipment import EquipmentSimulator
from .errors import ConfigurationError, SimulationError, TransportError, ValidationError
from .line_config import LineConfigLoader
from .messages import MessageFormatter
from .models import EnvelopeMessage, EquipmentConfig, utc_now
from .mqtt_client import STATE_CONTROL_PREFIX, STATE_CONTROL_TOPIC, MqttTransport
from .publisher import ReliablePublisher
from .state_machine import StateChange

logger = logging.getLogger(__name__)

FAULT_STATE = "fault"


@dataclass
class ServiceStats:
    """Runtime surface consumed by health and ops tooling."""

    uptime_s: float
    messages_published: int
    equipment_count: int
    last_update_time: Optional[datetime]
    broker_connected: bool
    buffer_size: int


class Simulator:
    """Runs the update and heartbeat loops over a reloadable equipment set.

    One re-entrant lock serializes update ticks, heartbeats, reloads and
    forced transitions, so every equipment has a single logical owner and a
    reload never lands in the middle of a tick.
    """

    def __init__(
        self,
        config: Config,
        loader: Optional[LineConfigLoader] = None,
        publisher: Optional[ReliablePublisher] = None,
        formatter: Optional[MessageFormatter] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        sim = config.simulation

        self.loader = loader or LineConfigLoader(
            Path(sim.config_directory),
            watch=sim.watch_config,
            poll_interval_s=sim.watch_interval_ms / 1000.0,
        )
        self.publisher = publisher or ReliablePublisher(
            MqttTransport(config.mqtt),
            buffer_capacity=config.mqtt.buffer_capacity,
            max_retries=config.mqtt.max_retries,
            retry_delay_s=config.mqtt.retry_delay_ms / 1000.0,
            queue_prefix=config.consumer.queue_prefix,
        )
        self.formatter = formatter or MessageFormatter(dedup_ttl_s=sim.dedup_ttl_s)
        self.clock = clock
        self.rng = rng or random.Random(sim.random_seed)

        self.simulators: Dict[str, EquipmentSimulator] = {}
        self.last_update_time: Optional[datetime] = None

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._running = False
        self._wired = False
        self._threads: List[threading.Thread] = []
        self._started_at: Optional[float] = None
        self._last_update_mono: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _wire(self) -> None:
        """Register callbacks on the loader, publisher and transport once."""
        if self._wired:
            return
        self.loader.on_reload(self.apply_configuration)
        self.loader.on_error(self._on_config_error)
        self.publisher.add_listener("connected", self._on_broker_connected)
        self.publisher.add_listener("disconnected", self._on_broker_disconnected)
        self.publisher.add_listener("error", self._on_broker_error)
        self.publisher.transport.subscribe(STATE_CONTROL_TOPIC, self._on_control_message)
        self._wired = True

    def start(self) -> bool:
        """Load configuration, connect and start both tick loops.

        Raises:
            ConfigurationError: the initial line configuration is invalid.
        """
        if self._running:
            return True

        self._wire()
        configs = self.loader.load()
        with self._lock:
            self.simulators = self._build_all(configs)

        if not self.publisher.connect():
            logger.warning("Broker unavailable, buffering messages until reconnect")

        self._started_at = time.monotonic()
        self._stop_event.clear()
        self._running = True

        sim = self.config.simulation
        self._threads = [
            threading.Thread(
                target=self._run_every,
                args=(sim.update_interval_ms / 1000.0, self.tick, "update"),
                daemon=True,
            ),
            threading.Thread(
                target=self._run_every,
                args=(sim.heartbeat_interval_ms / 1000.0, self.heartbeat, "heartbeat"),
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Simulator started with {len(self.simulators)} equipment "
            f"(update every {sim.update_interval_ms}ms, heartbeat every "
            f"{sim.heartbeat_interval_ms}ms)"
        )
        return True

    def stop(self) -> None:
        """Stop both loops, then release the broker connection. Idempotent."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []

        self.loader.stop_watching()
        # A manual tick may still be publishing; wait for it before closing
        with self._lock:
            self.publisher.disconnect()
        logger.info("Simulator stopped")

    def _run_every(self, interval_s: float, action: Callable[[], None], name: str) -> None:
        while not self._stop_event.wait(interval_s):
            try:
                action()
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}")

    # -------------------------------------------------------------------------
    # Simulator set
    # -------------------------------------------------------------------------

    def _build_simulator(self, config: EquipmentConfig) -> EquipmentSimulator:
        sim = self.config.simulation
        simulator = EquipmentSimulator(
            config,
            clock=self.clock,
            rng=random.Random(self.rng.getrandbits(64)),
            bad_quality_rate=sim.bad_quality_rate,
            uncertain_quality_rate=sim.uncertain_quality_rate,
        )
        simulator.add_state_listener(functools.partial(self._on_state_change, config))
        return simulator

    def _build_all(self, configs: List[EquipmentConfig]) -> Dict[str, EquipmentSimulator]:
        simulators = {}
        for config in configs:
            try:
                simulators[config.id] = self._build_simulator(config)
            except ConfigurationError as e:
                logger.error(f"Cannot simulate {config.id}: {e}")
        return simulators

    def apply_configuration(self, configs: List[EquipmentConfig]) -> None:
        """Replace the simulator set with one built from ``configs``.

        Removed ids lose their simulator, new ids get one, and existing ids
        get a fresh simulator bound to the new configuration.
        """
        with self._lock:
            old_ids = set(self.simulators)
            self.simulators = self._build_all(configs)
            new_ids = set(self.simulators)

        added = sorted(new_ids - old_ids)
        removed = sorted(old_ids - new_ids)
        logger.info(
            f"Configuration applied: {len(new_ids)} equipment "
            f"(added: {added or 'none'}, removed: {removed or 'none'})"
        )

    def _on_config_error(self, error: Exception) -> None:
        logger.error(f"Configuration reload failed, keeping previous configuration: {error}")

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def _send(self, message: EnvelopeMessage) -> bool:
        """Validate and hand one message to the publisher."""
        try:
            self.formatter.check_message(message)
        except ValidationError as e:
            logger.warning(f"Dropping invalid message: {e}")
            return False

        try:
            self.publisher.publish(message)
        except TransportError as e:
            logger.warning(f"Publish failed for {message.equipment_id}, message buffered: {e}")
        return True

    def tick(self) -> None:
        """One update tick: transitions, tag values and a DATA_UPDATE per equipment."""
        with self._lock:
            if self._stop_event.is_set():
                return
            for equipment_id, simulator in list(self.simulators.items()):
                try:
                    simulator.check_state_transitions()
                    snapshots = simulator.generate_tag_values()
                    self._send(self.formatter.create_data_update(simulator.config, snapshots))
                except Exception as e:
                    logger.error(f"Update failed for {equipment_id}: {e}")

            self.last_update_time = utc_now()
            self._last_update_mono = time.monotonic()

    def heartbeat(self) -> None:
        """One HEARTBEAT per equipment, then a health check."""
        with self._lock:
            if self._stop_event.is_set():
                return
            for equipment_id, simulator in list(self.simulators.items()):
                try:
                    self._send(self.formatter.create_heartbeat(simulator.config))
                except Exception as e:
                    logger.error(f"Heartbeat failed for {equipment_id}: {e}")
        self.health_check()

    def health_check(self) -> List[str]:
        """Log and return current health warnings."""
        warnings = []
        sim = self.config.simulation

        if not self.publisher.connected:
            warnings.append("broker disconnected")
        if self.publisher.terminal_error is not None:
            warnings.append(f"publishing stopped: {self.publisher.terminal_error}")
        if self.publisher.buffer_size > sim.buffer_warning_threshold:
            warnings.append(f"message buffer high: {self.publisher.buffer_size}")
        if self._last_update_mono is not None:
            lag_ms = (time.monotonic() - self._last_update_mono) * 1000.0
            if lag_ms > 2 * sim.update_interval_ms:
                warnings.append(f"updates lagging: last update {lag_ms:.0f}ms ago")

        for warning in warnings:
            logger.warning(f"Health check: {warning}")
        return warnings

    # -------------------------------------------------------------------------
    # State changes
    # -------------------------------------------------------------------------

    def _on_state_change(self, config: EquipmentConfig, change: StateChange) -> None:
        self._send(
            self.formatter.create_state_change(config, change.previous_state, change.current_state)
        )
        if change.current_state == FAULT_STATE:
            self._send(
                self.formatter.create_alarm(
                    config,
                    "STATE_FAULT",
                    f"{config.name} entered fault state from {change.previous_state}",
                )
            )

    def force_state_transition(self, equipment_id: str, state: str) -> bool:
        """Force ``equipment_id`` into ``state``; False for unknown equipment or state."""
        with self._lock:
            simulator = self.simulators.get(equipment_id)
            if simulator is None:
                logger.warning(f"Cannot force state: unknown equipment '{equipment_id}'")
                return False
            try:
                simulator.force_state_transition(state)
            except SimulationError as e:
                logger.warning(f"Cannot force state: {e.message}")
                return False
        return True

    def _on_control_message(self, topic: str, payload: bytes) -> None:
        equipment_id = topic[len(STATE_CONTROL_PREFIX):]
        text = payload.decode("utf-8", errors="replace").strip()
        try:
            data = json.loads(text)
        except ValueError:
            data = text
        state = data.get("state") if isinstance(data, dict) else data
        if not isinstance(state, str) or not state:
            logger.warning(f"Ignoring control message on {topic}: no state in {text!r}")
            return
        logger.info(f"Control request: {equipment_id} -> {state}")
        self.force_state_transition(equipment_id, state)

    # -------------------------------------------------------------------------
    # Publisher events
    # -------------------------------------------------------------------------

    def _on_broker_connected(self) -> None:
        logger.info("Broker connected")

    def _on_broker_disconnected(self) -> None:
        logger.warning(f"Broker disconnected, buffering ({self.publisher.buffer_size} queued)")

    def _on_broker_error(self, error: Exception) -> None:
        if isinstance(error, TransportError) and error.terminal:
            logger.error(f"Broker connectivity lost permanently: {error}")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def stats(self) -> ServiceStats:
        uptime = time.monotonic() - self._started_at if self._started_at is not None else 0.0
        return ServiceStats(
            uptime_s=uptime,
            messages_published=self.publisher.published_count,
            equipment_count=len(self.simulators),
            last_update_time=self.last_update_time,
            broker_connected=self.publisher.connected,
            buffer_size=self.publisher.buffer_size,
        )

    def equipment_status(self) -> Dict[str, str]:
        with self._lock:
            return {eid: sim.current_state for eid, sim in self.simulators.items()}
