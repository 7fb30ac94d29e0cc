"""Envelope message construction, validation and wire encoding."""

import json
import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from .errors import ValidationError
from .models import EnvelopeMessage, MessageType, Quality, TagEntry, TagSnapshot, utc_now

logger = logging.getLogger(__name__)

QUALITY_VALUES = {q.value for q in Quality}


class MessageFormatter:
    """Builds envelope messages and validates them against a dedup set.

    The set of processed ids is cleared wholesale once ``dedup_ttl_s`` has
    elapsed since the previous clear. The check happens lazily on every
    validation.
    """

    def __init__(self, dedup_ttl_s: float = 300.0, clock: Optional[Callable[[], float]] = None):
        self.dedup_ttl_s = dedup_ttl_s
        self.clock = clock or time.monotonic
        self._processed_ids = set()
        self._last_clear = self.clock()
        self._lock = threading.Lock()

    @property
    def processed_count(self) -> int:
        return len(self._processed_ids)

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def _build(self, meta: Any, message_type: MessageType, tags: Iterable[TagEntry]) -> EnvelopeMessage:
        return EnvelopeMessage(
            id=str(uuid.uuid4()),
            timestamp=utc_now(),
            equipment_id=meta.id,
            site=meta.site,
            product_type=meta.product_type,
            line_number=meta.line_number,
            message_type=message_type,
            tags=tuple(tags),
        )

    def create_data_update(self, meta: Any, snapshots: List[TagSnapshot]) -> EnvelopeMessage:
        """One entry per tag snapshot."""
        entries = [TagEntry(tag_id=s.tag_id, value=s.value, quality=s.quality) for s in snapshots]
        return self._build(meta, MessageType.DATA_UPDATE, entries)

    def create_state_change(self, meta: Any, previous_state: str, current_state: str) -> EnvelopeMessage:
        entries = [
            TagEntry(tag_id="previous_state", value=previous_state),
            TagEntry(tag_id="current_state", value=current_state),
        ]
        return self._build(meta, MessageType.STATE_CHANGE, entries)

    def create_heartbeat(self, meta: Any) -> EnvelopeMessage:
        return self._build(meta, MessageType.HEARTBEAT, [TagEntry(tag_id="heartbeat", value=True)])

    def create_alarm(self, meta: Any, alarm_type: str, alarm_message: str) -> EnvelopeMessage:
        entries = [
            TagEntry(tag_id="alarm_type", value=alarm_type),
            TagEntry(tag_id="alarm_message", value=alarm_message),
        ]
        return self._build(meta, MessageType.ALARM, entries)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _expire_ids(self) -> None:
        now = self.clock()
        if now - self._last_clear >= self.dedup_ttl_s:
            if self._processed_ids:
                logger.debug(f"Clearing {len(self._processed_ids)} processed message ids")
            self._processed_ids.clear()
            self._last_clear = now

    def validate_message(self, message: EnvelopeMessage, record: bool = True) -> List[str]:
        """Return every problem with ``message``; an empty list means valid.

        With ``record`` set, valid messages are recorded so that a second
        validation of the same id fails. Callers that only know later whether
        the message was handled pass ``record=False`` and call
        ``mark_processed`` once it was.
        """
        errors = []

        if not message.id:
            errors.append("message id is required")
        if not isinstance(message.timestamp, datetime):
            errors.append("timestamp must be a datetime")
        if not message.equipment_id:
            errors.append("equipment id is required")
        if not isinstance(message.message_type, MessageType):
            errors.append(f"invalid message type {message.message_type!r}")

        if message.tags is None:
            errors.append("tags are required")
        else:
            if not message.tags and message.message_type is not MessageType.DATA_UPDATE:
                errors.append("at least one tag entry is required")
            for index, entry in enumerate(message.tags):
                if not entry.tag_id:
                    errors.append(f"tag {index}: tag id is required")
                if entry.value is None:
                    errors.append(f"tag {index}: value is required")
                quality = entry.quality.value if isinstance(entry.quality, Quality) else entry.quality
                if quality not in QUALITY_VALUES:
                    errors.append(f"tag {index}: invalid quality {entry.quality!r}")

        with self._lock:
            self._expire_ids()
            if message.id and message.id in self._processed_ids:
                errors.append(f"duplicate message id {message.id}")
            if record and not errors:
                self._processed_ids.add(message.id)

        return errors

    def check_message(self, message: EnvelopeMessage, record: bool = True) -> EnvelopeMessage:
        """Validate and return ``message``; raises ValidationError when invalid."""
        errors = self.validate_message(message, record=record)
        if errors:
            raise ValidationError(f"invalid message {message.id or '<no id>'}", errors)
        return message

    def is_duplicate(self, message_id: str) -> bool:
        with self._lock:
            self._expire_ids()
            return message_id in self._processed_ids

    def mark_processed(self, message_id: str) -> None:
        with self._lock:
            self._expire_ids()
            self._processed_ids.add(message_id)

    # -------------------------------------------------------------------------
    # Wire format
    # -------------------------------------------------------------------------

    @staticmethod
    def serialize(message: EnvelopeMessage) -> str:
        return json.dumps(message.to_dict(), default=str)

    @staticmethod
    def deserialize(text: Any) -> EnvelopeMessage:
        """Parse a wire payload; raises ValidationError on malformed input."""
        if isinstance(text, (bytes, bytearray)):
            text = text.decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ValidationError("malformed JSON payload", [str(e)])
        if not isinstance(data, dict):
            raise ValidationError("payload must be a JSON object")
        try:
            return EnvelopeMessage.from_dict(data)
        except KeyError as e:
            raise ValidationError("malformed envelope", [f"missing field {e}"])
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError("malformed envelope", [str(e)])
