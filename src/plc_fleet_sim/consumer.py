"""Queue consumer: subscribe to every equipment topic and write points to a sink."""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, List, Optional, Tuple

from .config import Config
from .discovery import QueueDiscovery
from .errors import TransportError, ValidationError
from .messages import MessageFormatter
from .models import DataPoint, EnvelopeMessage, utc_now
from .mqtt_client import MqttTransport
from .publisher import backoff_delay
from .sink import LineProtocolSink, PointSink
from .transformer import MessageTransformer, TagRule

logger = logging.getLogger(__name__)


@dataclass
class ConsumerStats:
    messages_processed: int = 0
    messages_failed: int = 0
    duplicates: int = 0
    points_written: int = 0
    write_retries: int = 0
    dead_letters: int = 0
    reconnects: int = 0


@dataclass
class DeadLetter:
    """A message whose points could not be written."""

    message: EnvelopeMessage
    error: str
    attempts: int
    timestamp: datetime = field(default_factory=utc_now)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive write failures.

    While open, writes are refused without touching the sink. Once
    ``reset_s`` has passed a single trial write is let through; success
    closes the breaker, failure reopens it. A threshold of zero disables it.
    """

    def __init__(self, threshold: int, reset_s: float, clock: Optional[Callable[[], float]] = None):
        self.threshold = threshold
        self.reset_s = reset_s
        self.clock = clock or time.monotonic
        self.consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None and self.clock() - self._opened_at < self.reset_s

    def allow(self) -> bool:
        return not self.is_open

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker closed")
        self.consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.threshold > 0 and self.consecutive_failures >= self.threshold:
            if not self.is_open:
                logger.warning(
                    f"Circuit breaker open after {self.consecutive_failures} consecutive write failures"
                )
            self._opened_at = self.clock()


class QueueConsumer:
    """Consumes envelope messages and writes them as time-series points.

    Delivery is at-least-once, so duplicates are expected; they are detected
    through the formatter's dedup set and dropped. An id is only recorded
    once its points reached the sink, so a redelivery after a failed write is
    processed again.

    Sink writes are retried with exponential backoff behind a circuit
    breaker. Messages that still fail are kept as ``DeadLetter`` entries. A
    lost broker connection is re-established on a background thread, and the
    transport replays the subscriptions.
    """

    def __init__(
        self,
        config: Config,
        transport_factory: Optional[Callable[[], Any]] = None,
        sink: Optional[PointSink] = None,
        transformer: Optional[MessageTransformer] = None,
        formatter: Optional[MessageFormatter] = None,
        sleep: Optional[Callable[[float], Optional[bool]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        consumer = config.consumer
        self.transport_factory = transport_factory or (
            lambda: MqttTransport(config.mqtt, client_id=consumer.client_id)
        )
        self.sink = sink or LineProtocolSink(path=consumer.output)
        self.transformer = transformer or MessageTransformer(
            default_measurement=consumer.default_measurement,
            include_quality_metrics=consumer.include_quality_metrics,
            timestamp_precision=consumer.timestamp_precision,
            rules=[TagRule.from_dict(raw) for raw in consumer.tag_rules],
        )
        self.formatter = formatter or MessageFormatter(dedup_ttl_s=config.simulation.dedup_ttl_s)
        self.discovery = QueueDiscovery(
            Path(config.simulation.config_directory), queue_prefix=consumer.queue_prefix
        )
        self.breaker = CircuitBreaker(
            consumer.circuit_breaker_threshold, consumer.circuit_breaker_reset_s, clock=clock
        )

        self.stats = ConsumerStats()
        self.queue_names: List[str] = []
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=consumer.dead_letter_capacity)
        self.terminal_error: Optional[TransportError] = None

        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._reconnect_thread: Optional[threading.Thread] = None
        self._transport = None

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    def handle_payload(self, payload: Any) -> bool:
        """Process one raw payload; returns True when points were written."""
        try:
            message = self.formatter.deserialize(payload)
        except ValidationError as e:
            self.stats.messages_failed += 1
            logger.warning(f"Dropping malformed payload: {e}")
            return False

        if message.id and self.formatter.is_duplicate(message.id):
            self.stats.duplicates += 1
            logger.debug(f"Skipping duplicate message {message.id}")
            return False

        try:
            self.formatter.check_message(message, record=False)
            points = self.transformer.transform(message)
        except ValidationError as e:
            self.stats.messages_failed += 1
            logger.warning(f"Dropping invalid message: {e}")
            return False

        attempts, error = self._write_points(points)
        if error is not None:
            self.stats.messages_failed += 1
            self._dead_letter(message, error, attempts)
            return False

        self.formatter.mark_processed(message.id)
        self.stats.messages_processed += 1
        self.stats.points_written += len(points)
        return True

    def _write_points(self, points: List[DataPoint]) -> Tuple[int, Optional[Exception]]:
        """Write with retries; returns the attempts made and the last error, if any."""
        consumer = self.config.consumer
        max_attempts = consumer.write_max_retries + 1
        delay_s = consumer.write_retry_delay_ms / 1000.0
        error: Optional[Exception] = None

        for attempt in range(max_attempts):
            if not self.breaker.allow():
                return attempt, error or TransportError("circuit breaker open")
            if attempt:
                self.stats.write_retries += 1
                if self._sleep(backoff_delay(delay_s, attempt - 1)):
                    return attempt, error
            try:
                self.sink.write_points(points)
            except (TransportError, OSError) as e:
                error = e
                self.breaker.record_failure()
                logger.warning(f"Sink write failed (attempt {attempt + 1}/{max_attempts}): {e}")
            else:
                self.breaker.record_success()
                return attempt + 1, None

        return max_attempts, error

    def _dead_letter(self, message: EnvelopeMessage, error: Exception, attempts: int) -> None:
        self.dead_letters.append(DeadLetter(message=message, error=str(error), attempts=attempts))
        self.stats.dead_letters += 1
        logger.error(
            f"Message {message.id} from {message.equipment_id} dead-lettered "
            f"after {attempts} attempt(s): {error}"
        )

    def _on_message(self, topic: str, payload: bytes) -> None:
        self.handle_payload(payload)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """Discover queues, connect and subscribe."""
        self.queue_names = self.discovery.discover_queue_names()
        if not self.queue_names:
            logger.warning("No queues discovered; nothing to consume")

        self._stop_event.clear()
        self.terminal_error = None
        self._transport = self.transport_factory()
        self._transport.on_connection_lost = self._on_connection_lost
        try:
            self._transport.connect()
        except TransportError as e:
            logger.error(f"Failed to connect consumer: {e}")
            return False

        for name in self.queue_names:
            self._transport.subscribe(name, self._on_message)
        logger.info(f"Consuming {len(self.queue_names)} queues")
        return True

    def _on_connection_lost(self, reason: str) -> None:
        if self._stop_event.is_set():
            return
        logger.warning(f"Consumer lost the broker connection: {reason}")
        thread = self._reconnect_thread
        if thread is not None and thread.is_alive():
            return
        self._reconnect_thread = threading.Thread(target=self._reconnect_loop, daemon=True)
        self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        mqtt = self.config.mqtt
        delay_s = mqtt.retry_delay_ms / 1000.0
        for attempt in range(mqtt.max_retries):
            delay = backoff_delay(delay_s, attempt)
            logger.info(
                f"Consumer reconnecting in {delay:.1f}s (attempt {attempt + 1}/{mqtt.max_retries})"
            )
            if self._sleep(delay) or self._stop_event.is_set():
                return
            transport = self._transport
            if transport is None:
                return
            try:
                transport.connect()
            except TransportError as e:
                logger.warning(f"Consumer reconnect failed: {e}")
                continue
            self.stats.reconnects += 1
            logger.info(f"Consumer reconnected, {len(self.queue_names)} queues resubscribed")
            return

        self.terminal_error = TransportError(
            f"giving up after {mqtt.max_retries} reconnect attempts", terminal=True
        )
        logger.error("Consumer cannot reach the broker, giving up; restart to resume consuming")

    def join_reconnect(self, timeout: Optional[float] = None) -> None:
        """Wait for the background reconnect loop to finish."""
        thread = self._reconnect_thread
        if thread is not None:
            thread.join(timeout)

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._reconnect_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._reconnect_thread = None

        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self.sink.close()
        logger.info(
            f"Consumer stopped: {self.stats.messages_processed} processed, "
            f"{self.stats.messages_failed} failed, {self.stats.duplicates} duplicates, "
            f"{self.stats.dead_letters} dead-lettered"
        )
