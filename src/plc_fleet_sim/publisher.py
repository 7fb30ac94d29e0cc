"""Reliable publisher: ring-buffered, reconnecting delivery onto the broker."""

import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from .discovery import queue_name
from .errors import TransportError
from .messages import MessageFormatter
from .models import EnvelopeMessage

logger = logging.getLogger(__name__)

EVENTS = ("connected", "disconnected", "error")


def backoff_delay(base_s: float, attempt: int) -> float:
    """Exponential backoff: ``base_s * 2**attempt`` for a zero-based attempt."""
    return base_s * (2 ** attempt)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ReliablePublisher:
    """Publishes envelope messages to one topic per equipment.

    While not connected, messages go into a bounded ring buffer that evicts
    the oldest entry on overflow. Reconnection runs on a background thread
    with exponential backoff (``retry_delay_s * 2**attempt``) and gives up
    after ``max_retries`` attempts, recording ``terminal_error``. On every
    successful (re)connection the buffer is replayed grouped by equipment.

    The transport must provide ``connect()``, ``publish(topic, payload)`` and
    ``close()``, raise TransportError on failure, and may report asynchronous
    loss through its ``on_connection_lost`` attribute.
    """

    def __init__(
        self,
        transport,
        buffer_capacity: int = 10000,
        max_retries: int = 5,
        retry_delay_s: float = 1.0,
        queue_prefix: str = "plc_data_",
        sleep: Optional[Callable[[float], Optional[bool]]] = None,
    ):
        self.transport = transport
        self.buffer_capacity = buffer_capacity
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.queue_prefix = queue_prefix

        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._lock = threading.RLock()
        self._buffer: Deque[EnvelopeMessage] = deque(maxlen=buffer_capacity)
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_thread: Optional[threading.Thread] = None
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

        # Stats
        self.published_count = 0
        self.dropped_count = 0
        self.retry_attempts = 0
        self.terminal_error: Optional[TransportError] = None

        transport.on_connection_lost = self._on_connection_lost

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def buffered_messages(self) -> List[EnvelopeMessage]:
        with self._lock:
            return list(self._buffer)

    def add_listener(self, event: str, callback: Callable) -> None:
        """Register a callback for ``connected``, ``disconnected`` or ``error``."""
        if event not in self._listeners:
            raise ValueError(f"unknown publisher event '{event}'")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Publisher {event} listener failed: {e}")

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def connect(self) -> bool:
        """Try to connect once; on failure start the background reconnect loop."""
        self._stop_event.clear()
        self.terminal_error = None
        if self._try_connect():
            return True
        self._schedule_reconnect()
        return False

    def disconnect(self) -> None:
        self._stop_event.set()
        thread = self._reconnect_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

        with self._lock:
            was_connected = self._state is ConnectionState.CONNECTED
            self._state = ConnectionState.DISCONNECTED
        self.transport.close()
        if was_connected:
            self._emit("disconnected")
        if self._buffer:
            logger.warning(f"Disconnected with {len(self._buffer)} unsent buffered messages")

    def _try_connect(self) -> bool:
        with self._lock:
            self._state = ConnectionState.CONNECTING
        try:
            self.transport.connect()
        except TransportError as e:
            logger.warning(f"Connection attempt failed: {e}")
            with self._lock:
                self._state = ConnectionState.DISCONNECTED
            self._emit("error", e)
            return False

        with self._lock:
            self._state = ConnectionState.CONNECTED
            self.retry_attempts = 0
            flushed = self._flush()
        if not flushed:
            return False

        logger.info("Publisher connected")
        self._emit("connected")
        return True

    def _schedule_reconnect(self) -> None:
        if self._stop_event.is_set():
            return
        thread = self._reconnect_thread
        if thread is not None and thread.is_alive():
            return
        self._reconnect_thread = threading.Thread(target=self._reconnect_loop, daemon=True)
        self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            if attempt >= self.max_retries:
                self.terminal_error = TransportError(
                    f"giving up after {self.max_retries} reconnect attempts", terminal=True
                )
                logger.error("Max retry attempts reached, giving up; restart to resume publishing")
                self._emit("error", self.terminal_error)
                return

            delay = backoff_delay(self.retry_delay_s, attempt)
            attempt += 1
            self.retry_attempts = attempt
            logger.info(
                f"Attempting to reconnect in {delay:.1f}s "
                f"(attempt {attempt}/{self.max_retries})"
            )
            if self._sleep(delay) or self._stop_event.is_set():
                return
            if self._try_connect():
                return

    def join_reconnect(self, timeout: Optional[float] = None) -> None:
        """Wait for the background reconnect loop to finish."""
        thread = self._reconnect_thread
        if thread is not None:
            thread.join(timeout)

    def _handle_failure(self, error: TransportError) -> None:
        logger.error(f"Publish failed, buffering: {error}")
        self._emit("disconnected")
        self._emit("error", error)
        self._schedule_reconnect()

    def _on_connection_lost(self, reason: str) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            self._state = ConnectionState.DISCONNECTED
        logger.warning(f"Broker connection lost: {reason}")
        self._emit("disconnected")
        self._schedule_reconnect()

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def _buffer_message(self, message: EnvelopeMessage) -> None:
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped_count += 1
            logger.warning("Message buffer overflow, oldest message discarded")
        self._buffer.append(message)
        logger.debug(f"Buffered message {message.id}, buffer size: {len(self._buffer)}")

    def _requeue(self, unsent: List[EnvelopeMessage]) -> None:
        """Put unsent messages back in front of anything buffered meanwhile."""
        combined = unsent + list(self._buffer)
        overflow = len(combined) - self.buffer_capacity
        if overflow > 0:
            self.dropped_count += overflow
            logger.warning(f"Message buffer overflow, {overflow} oldest messages discarded")
        self._buffer = deque(combined, maxlen=self.buffer_capacity)

    def _write(self, message: EnvelopeMessage) -> None:
        topic = queue_name(message.equipment_id, self.queue_prefix)
        self.transport.publish(topic, MessageFormatter.serialize(message))
        self.published_count += 1
        logger.debug(f"Published message to {topic}: {message.id}")

    def publish(self, message: EnvelopeMessage) -> bool:
        """Write ``message`` now if connected, otherwise buffer it.

        Returns True when written, False when buffered.

        Raises:
            TransportError: a write failed while connected. The message has
                been re-buffered and reconnection scheduled.
        """
        with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                self._buffer_message(message)
                return False
            try:
                self._write(message)
                return True
            except TransportError as e:
                self._buffer_message(message)
                self._state = ConnectionState.DISCONNECTED
                failure = e

        self._handle_failure(failure)
        raise failure

    def _flush(self) -> bool:
        """Replay the buffer grouped by equipment; caller holds the lock."""
        if not self._buffer:
            return True

        pending = list(self._buffer)
        self._buffer.clear()
        logger.info(f"Flushing {len(pending)} buffered messages")

        by_equipment: Dict[str, List[EnvelopeMessage]] = {}
        for message in pending:
            by_equipment.setdefault(message.equipment_id, []).append(message)

        sent = 0
        try:
            for equipment_id, messages in by_equipment.items():
                for message in messages:
                    self._write(message)
                    sent += 1
                logger.debug(f"Flushed {len(messages)} messages for {equipment_id}")
        except TransportError as e:
            flat = [m for messages in by_equipment.values() for m in messages]
            self._requeue(flat[sent:])
            self._state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to flush buffered messages: {e}")
            self._emit("error", e)
            return False

        logger.info("Successfully flushed buffered messages")
        return True
