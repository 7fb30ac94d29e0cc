"""Envelope message -> time-series point transformation."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Pattern, Tuple

from .errors import ConfigurationError, ValidationError
from .models import DataPoint, EnvelopeMessage, Quality, TagEntry

logger = logging.getLogger(__name__)

QUALITY_MEASUREMENT = "message_quality"
PRECISIONS = ("ns", "ms", "s")


def field_value(value: Any) -> Any:
    """Type a field from its runtime value: bool, float or str."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    return str(value)


def _scaler(scale: float, offset: float) -> Callable[[Any], float]:
    def transform(value: Any) -> float:
        if not _is_number(value):
            raise TypeError(f"cannot scale {value!r}")
        return value * scale + offset

    return transform


def _range_check(lower: Optional[float], upper: Optional[float]) -> Callable[[Any], bool]:
    def validate(value: Any) -> bool:
        if not _is_number(value):
            return False
        return (lower is None or value >= lower) and (upper is None or value <= upper)

    return validate


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class TagRule:
    """Maps one tag (or every tag matching ``pattern``) onto a measurement.

    ``validate`` rejecting a value, or ``transform`` raising TypeError or
    ValueError, skips the tag's point. Rule ``tags`` are merged over the
    hierarchical tag-set.
    """

    tag_id: str = ""
    pattern: Optional[str] = None
    measurement: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    field_name: Optional[str] = None
    transform: Optional[Callable[[Any], Any]] = None
    validate: Optional[Callable[[Any], bool]] = None
    _regex: Optional[Pattern] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.pattern is not None:
            self._regex = re.compile(self.pattern)

    def matches(self, tag_id: str) -> bool:
        if self.tag_id:
            return self.tag_id == tag_id
        return self._regex is not None and self._regex.search(tag_id) is not None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TagRule":
        """Build a rule from its config form.

        Keys: ``tagId`` or ``pattern``, ``measurement``, ``field``, ``tags``,
        ``scale``/``offset`` for a linear transform and ``min``/``max`` for a
        range check.
        """
        if not isinstance(raw, dict):
            raise ConfigurationError(f"tag rule must be a mapping, got {raw!r}")
        tag_id = raw.get("tagId", "")
        pattern = raw.get("pattern")
        if not tag_id and not pattern:
            raise ConfigurationError(f"tag rule needs 'tagId' or 'pattern': {raw!r}")
        tags = raw.get("tags", {})
        if not isinstance(tags, dict):
            raise ConfigurationError(f"tag rule 'tags' must be a mapping: {raw!r}")
        for key in ("scale", "offset", "min", "max"):
            if key in raw and not _is_number(raw[key]):
                raise ConfigurationError(f"tag rule '{key}' must be a number: {raw!r}")

        transform = None
        if "scale" in raw or "offset" in raw:
            transform = _scaler(raw.get("scale", 1.0), raw.get("offset", 0.0))
        validate = None
        if "min" in raw or "max" in raw:
            validate = _range_check(raw.get("min"), raw.get("max"))

        try:
            return cls(
                tag_id=str(tag_id),
                pattern=pattern,
                measurement=raw.get("measurement"),
                tags={str(k): str(v) for k, v in tags.items()},
                field_name=raw.get("field"),
                transform=transform,
                validate=validate,
            )
        except re.error as e:
            raise ConfigurationError(f"tag rule pattern {pattern!r} is invalid: {e}")


def _flatten(value: Dict[str, Any], prefix: str) -> Iterator[Tuple[str, Any]]:
    for key, nested in value.items():
        name = f"{prefix}_{key}"
        if isinstance(nested, dict):
            yield from _flatten(nested, name)
        else:
            yield name, nested


@dataclass
class TransformStats:
    messages_processed: int = 0
    points_created: int = 0
    tags_skipped: int = 0
    errors: int = 0


class MessageTransformer:
    """Fans an envelope message out into one point per tag entry.

    Every point carries the hierarchical tag-set ``site, type, line,
    equipment_id, tag`` so the store can aggregate at any level. When quality
    metrics are enabled, a ``message_quality`` point summarizing the entry
    qualities is appended.

    A ``TagRule`` with an exact ``tag_id`` wins over pattern rules, which are
    tried in order. Object values fan out into one point per leaf, with field
    names joined by underscores.
    """

    def __init__(
        self,
        default_measurement: str = "plc_data",
        include_quality_metrics: bool = True,
        timestamp_precision: str = "ms",
        rules: Optional[List[TagRule]] = None,
    ):
        if timestamp_precision not in PRECISIONS:
            raise ValueError(f"timestamp precision must be one of {PRECISIONS}")
        self.default_measurement = default_measurement
        self.include_quality_metrics = include_quality_metrics
        self.timestamp_precision = timestamp_precision
        self.rules = list(rules or [])
        self._stats = TransformStats()

    def stats(self) -> TransformStats:
        return TransformStats(**vars(self._stats))

    def reset_stats(self) -> None:
        self._stats = TransformStats()

    def _normalize_timestamp(self, timestamp: datetime) -> datetime:
        if self.timestamp_precision == "ms":
            return timestamp.replace(microsecond=timestamp.microsecond // 1000 * 1000)
        if self.timestamp_precision == "s":
            return timestamp.replace(microsecond=0)
        return timestamp

    @staticmethod
    def _check(message: EnvelopeMessage) -> None:
        errors = []
        if not message.id:
            errors.append("message id is required")
        if not message.equipment_id:
            errors.append("equipment id is required")
        if not isinstance(message.timestamp, datetime):
            errors.append("timestamp must be a datetime")
        if message.tags is None:
            errors.append("tags are required")
        else:
            for index, entry in enumerate(message.tags):
                if not entry.tag_id or entry.value is None or entry.quality is None:
                    errors.append(f"tag {index}: incomplete entry")
        if errors:
            raise ValidationError(f"cannot transform message {message.id or '<no id>'}", errors)

    def _base_tags(self, message: EnvelopeMessage, tag: str) -> Dict[str, str]:
        return {
            "site": message.site,
            "type": message.product_type,
            "line": str(message.line_number),
            "equipment_id": message.equipment_id,
            "tag": tag,
        }

    def _quality_point(self, message: EnvelopeMessage, timestamp: datetime) -> DataPoint:
        qualities = [
            e.quality.value if isinstance(e.quality, Quality) else e.quality for e in message.tags
        ]
        total = len(qualities)
        good = qualities.count(Quality.GOOD.value)
        return DataPoint(
            measurement=QUALITY_MEASUREMENT,
            tags=self._base_tags(message, "quality_metrics"),
            fields={
                "total_tags": total,
                "good_quality_tags": good,
                "bad_quality_tags": qualities.count(Quality.BAD.value),
                "uncertain_quality_tags": qualities.count(Quality.UNCERTAIN.value),
                "quality_ratio": good / total if total else 0.0,
            },
            timestamp=timestamp,
        )

    def rule_for(self, tag_id: str) -> Optional[TagRule]:
        for rule in self.rules:
            if rule.tag_id == tag_id:
                return rule
        for rule in self.rules:
            if not rule.tag_id and rule.matches(tag_id):
                return rule
        return None

    def _entry_points(self, message: EnvelopeMessage, entry: TagEntry, timestamp: datetime) -> List[DataPoint]:
        rule = self.rule_for(entry.tag_id)
        value = entry.value
        tags = self._base_tags(message, entry.tag_id)
        measurement = self.default_measurement
        name = entry.tag_id

        if rule is not None:
            if rule.validate is not None and not rule.validate(value):
                self._stats.tags_skipped += 1
                logger.warning(f"Skipping {message.equipment_id}.{entry.tag_id}: value {value!r} rejected")
                return []
            if rule.transform is not None:
                try:
                    value = rule.transform(value)
                except (TypeError, ValueError) as e:
                    self._stats.tags_skipped += 1
                    logger.warning(f"Skipping {message.equipment_id}.{entry.tag_id}: {e}")
                    return []
            tags.update(rule.tags)
            measurement = rule.measurement or measurement
            name = rule.field_name or name

        if isinstance(value, dict):
            fields = list(_flatten(value, name))
        else:
            fields = [(name, value)]
        return [
            DataPoint(
                measurement=measurement,
                tags=dict(tags),
                fields={field_name: field_value(leaf)},
                timestamp=timestamp,
            )
            for field_name, leaf in fields
        ]

    def transform(self, message: EnvelopeMessage) -> List[DataPoint]:
        """Raises ValidationError for a structurally incomplete message."""
        self._stats.messages_processed += 1
        try:
            self._check(message)
        except ValidationError as e:
            self._stats.errors += 1
            logger.error(f"Error transforming message {message.id}: {e}")
            raise

        timestamp = self._normalize_timestamp(message.timestamp)
        points = []
        for entry in message.tags:
            points.extend(self._entry_points(message, entry, timestamp))
        if self.include_quality_metrics:
            points.append(self._quality_point(message, timestamp))

        self._stats.points_created += len(points)
        return points
