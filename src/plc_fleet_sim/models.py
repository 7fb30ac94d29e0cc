"""Domain model: equipment, tags, behaviors, states, envelope messages, points."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with a trailing Z for UTC instants."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Enumerations
# =============================================================================


class EquipmentType(Enum):
    """Known equipment kinds."""

    OVEN = "oven"
    CONVEYOR = "conveyor"
    PRESS = "press"
    ASSEMBLY = "assembly"
    OVEN_CONVEYOR = "oven-conveyor"


class Quality(Enum):
    """OPC-style tag quality."""

    GOOD = "GOOD"
    BAD = "BAD"
    UNCERTAIN = "UNCERTAIN"


class MessageType(Enum):
    """Envelope message kinds."""

    DATA_UPDATE = "DATA_UPDATE"
    STATE_CHANGE = "STATE_CHANGE"
    ALARM = "ALARM"
    HEARTBEAT = "HEARTBEAT"


def equipment_type(value: str) -> Union[EquipmentType, str]:
    """Map a type string to EquipmentType, keeping unknown kinds as strings."""
    try:
        return EquipmentType(value)
    except ValueError:
        return value


# =============================================================================
# Behaviors (closed set of variants)
# =============================================================================


@dataclass(frozen=True)
class SinusoidalBehavior:
    min: float = 0.0
    max: float = 100.0
    period: float = 60000.0
    amplitude: float = 50.0
    offset: float = 50.0


@dataclass(frozen=True)
class LinearBehavior:
    min: float = 0.0
    max: float = 100.0
    slope: float = 1.0


@dataclass(frozen=True)
class RandomBehavior:
    min: float = 0.0
    max: float = 100.0


@dataclass(frozen=True)
class SteppedBehavior:
    values: Tuple[Any, ...] = (0, 50, 100)
    step_duration_ms: float = 10000.0


@dataclass(frozen=True)
class ConstantBehavior:
    value: Any = None


BehaviorSpec = Union[
    SinusoidalBehavior, LinearBehavior, RandomBehavior, SteppedBehavior, ConstantBehavior
]


# =============================================================================
# Equipment configuration
# =============================================================================


@dataclass
class Tag:
    """A single telemetry point on a piece of equipment."""

    id: str
    name: str
    data_type: str = "REAL"
    address: str = ""
    value: Any = None
    timestamp: datetime = field(default_factory=utc_now)
    quality: Quality = Quality.GOOD
    behavior: BehaviorSpec = field(default_factory=ConstantBehavior)


@dataclass(frozen=True)
class TagOverride:
    tag_id: str
    value: Any


@dataclass(frozen=True)
class Transition:
    to_state: str
    condition: str = ""
    probability: Optional[float] = None
    delay_ms: Optional[float] = None


@dataclass
class State:
    name: str
    description: str = ""
    tag_overrides: List[TagOverride] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)

    def override_for(self, tag_id: str) -> Optional[TagOverride]:
        for override in self.tag_overrides:
            if override.tag_id == tag_id:
                return override
        return None


@dataclass
class EquipmentConfig:
    """One equipment unit, flattened out of its line definition."""

    id: str
    name: str
    type: Union[EquipmentType, str]
    site: str
    product_type: str
    line_number: int
    states: List[State] = field(default_factory=list)
    current_state: str = ""
    tags: List[Tag] = field(default_factory=list)
    line_id: str = ""

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, EquipmentType) else str(self.type)

    @property
    def state_names(self) -> List[str]:
        return [s.name for s in self.states]

    def get_state(self, name: str) -> Optional[State]:
        for state in self.states:
            if state.name == name:
                return state
        return None


@dataclass
class TagSnapshot:
    """One generated tag reading."""

    tag_id: str
    name: str
    data_type: str
    value: Any
    quality: Quality
    timestamp: datetime


# =============================================================================
# Envelope messages
# =============================================================================


@dataclass(frozen=True)
class TagEntry:
    tag_id: str
    value: Any
    quality: Quality = Quality.GOOD

    def to_dict(self) -> Dict[str, Any]:
        quality = self.quality.value if isinstance(self.quality, Quality) else self.quality
        return {"tagId": self.tag_id, "value": self.value, "quality": quality}


@dataclass(frozen=True)
class EnvelopeMessage:
    """Self-contained unit of telemetry published onto the broker."""

    id: str
    timestamp: datetime
    equipment_id: str
    site: str
    product_type: str
    line_number: int
    message_type: MessageType
    tags: Tuple[TagEntry, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        message_type = (
            self.message_type.value
            if isinstance(self.message_type, MessageType)
            else self.message_type
        )
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "equipmentId": self.equipment_id,
            "site": self.site,
            "productType": self.product_type,
            "lineNumber": self.line_number,
            "messageType": message_type,
            "tags": [entry.to_dict() for entry in self.tags],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvelopeMessage":
        """Build a message from its wire dict.

        Raises KeyError/TypeError/ValueError on a malformed shape; callers
        wrap these into ValidationError.
        """
        tags = tuple(
            TagEntry(
                tag_id=entry["tagId"],
                value=entry.get("value"),
                quality=Quality(entry["quality"]),
            )
            for entry in data["tags"]
        )
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            equipment_id=data["equipmentId"],
            site=data.get("site", ""),
            product_type=data.get("productType", ""),
            line_number=int(data.get("lineNumber", 0)),
            message_type=MessageType(data["messageType"]),
            tags=tags,
        )


# =============================================================================
# Time-series points
# =============================================================================


def _escape_key(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _format_field(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


@dataclass
class DataPoint:
    """Sink-side point: measurement, string tag-set, typed field-set, time."""

    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, Any]
    timestamp: datetime

    @property
    def timestamp_ns(self) -> int:
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ((ts - EPOCH) // timedelta(microseconds=1)) * 1000

    def to_line_protocol(self) -> str:
        """Render as InfluxDB line protocol."""
        parts = [_escape_measurement(self.measurement)]
        for key in sorted(self.tags):
            value = self.tags[key]
            if value == "":
                continue
            parts.append(f"{_escape_key(key)}={_escape_key(str(value))}")
        head = ",".join(parts)
        fields = ",".join(
            f"{_escape_key(key)}={_format_field(value)}" for key, value in self.fields.items()
        )
        return f"{head} {fields} {self.timestamp_ns}"
