"""Tag value generators.

Every behavior variant is a pure function of elapsed time:

- **sinusoidal**: ``offset + amplitude * sin(2π * (t mod period) / period)``
- **linear**: ``initial + slope * seconds``, saturating at the bounds
- **random**: uniform draw in ``[min, max]`` on every call
- **stepped**: cycles an ordered value list every ``step_duration_ms``
- **constant**: configured value, or the tag's static value

Numeric results are clamped to ``[min, max]``. A ``TagGenerator`` binds one
tag to its behavior and keeps a generator-local clock origin, so phase and
step counters can be restarted on state entry.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .models import (
    BehaviorSpec,
    ConstantBehavior,
    LinearBehavior,
    RandomBehavior,
    SinusoidalBehavior,
    SteppedBehavior,
    Tag,
)

logger = logging.getLogger(__name__)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# =============================================================================
# Evaluators
# =============================================================================


def _sinusoidal(spec: SinusoidalBehavior, elapsed_ms: float, initial: Any, rng: random.Random) -> float:
    period = spec.period if spec.period > 0 else SinusoidalBehavior.period
    phase = (elapsed_ms % period) / period * 2 * math.pi
    value = spec.offset + spec.amplitude * math.sin(phase)
    return clamp(value, spec.min, spec.max)


def _linear(spec: LinearBehavior, elapsed_ms: float, initial: Any, rng: random.Random) -> float:
    start = float(initial) if _is_number(initial) else 0.0
    value = start + spec.slope * (elapsed_ms / 1000.0)
    return clamp(value, spec.min, spec.max)


def _random(spec: RandomBehavior, elapsed_ms: float, initial: Any, rng: random.Random) -> float:
    return rng.uniform(spec.min, spec.max)


def _stepped(spec: SteppedBehavior, elapsed_ms: float, initial: Any, rng: random.Random) -> Any:
    values = spec.values or SteppedBehavior.values
    duration = spec.step_duration_ms if spec.step_duration_ms > 0 else SteppedBehavior.step_duration_ms
    return values[int(elapsed_ms // duration) % len(values)]


def _constant(spec: ConstantBehavior, elapsed_ms: float, initial: Any, rng: random.Random) -> Any:
    return initial if spec.value is None else spec.value


_EVALUATORS: Dict[type, Callable[..., Any]] = {
    SinusoidalBehavior: _sinusoidal,
    LinearBehavior: _linear,
    RandomBehavior: _random,
    SteppedBehavior: _stepped,
    ConstantBehavior: _constant,
}


def evaluate(
    spec: BehaviorSpec,
    elapsed_ms: float,
    initial: Any = None,
    rng: Optional[random.Random] = None,
) -> Any:
    """Evaluate a behavior at ``elapsed_ms`` of generator-local time.

    Args:
        spec: Behavior variant.
        elapsed_ms: Milliseconds since the generator's origin (negative is
            treated as zero).
        initial: The tag's static configured value (linear start point and
            constant fallback).
        rng: Random source for the random variant.
    """
    evaluator = _EVALUATORS.get(type(spec), _constant)
    if evaluator is _constant and not isinstance(spec, ConstantBehavior):
        spec = ConstantBehavior()
    return evaluator(spec, max(0.0, elapsed_ms), initial, rng or random)


# =============================================================================
# Behavior parsing
# =============================================================================

BEHAVIOR_TYPES = ("sinusoidal", "linear", "random", "stepped", "constant")


def _number(params: Dict[str, Any], key: str, default: float) -> float:
    value = params.get(key, default)
    if not _is_number(value):
        raise ValueError(f"parameter '{key}' must be numeric, got {value!r}")
    return float(value)


def _bounds(params: Dict[str, Any]) -> Dict[str, float]:
    lower = _number(params, "min", 0.0)
    upper = _number(params, "max", 100.0)
    if lower > upper:
        raise ValueError(f"min {lower} is greater than max {upper}")
    return {"min": lower, "max": upper}


def _build(kind: str, params: Dict[str, Any]) -> BehaviorSpec:
    if kind == "sinusoidal":
        period = _number(params, "period", 60000.0)
        if period <= 0:
            raise ValueError("period must be positive")
        return SinusoidalBehavior(
            period=period,
            amplitude=_number(params, "amplitude", 50.0),
            offset=_number(params, "offset", 50.0),
            **_bounds(params),
        )
    if kind == "linear":
        return LinearBehavior(slope=_number(params, "slope", 1.0), **_bounds(params))
    if kind == "random":
        return RandomBehavior(**_bounds(params))
    if kind == "stepped":
        values = params.get("stepValues", params.get("values", [0, 50, 100]))
        if not isinstance(values, (list, tuple)) or not values:
            raise ValueError("stepValues must be a non-empty list")
        duration = _number(
            params, "stepDuration", params.get("stepDurationMs", 10000.0)
        )
        if duration <= 0:
            raise ValueError("stepDuration must be positive")
        return SteppedBehavior(values=tuple(values), step_duration_ms=duration)
    return ConstantBehavior(params.get("constantValue", params.get("value")))


def parse_behavior(raw: Optional[Dict[str, Any]], tag_id: str = "") -> BehaviorSpec:
    """Parse a ``{type, parameters}`` behavior block.

    Unknown types and malformed parameters fall back to constant so that a
    bad tag never stops the simulation loop.
    """
    if not raw or not isinstance(raw, dict):
        return ConstantBehavior()

    kind = raw.get("type", "constant")
    params = raw.get("parameters") or {}
    if kind not in BEHAVIOR_TYPES:
        logger.warning(f"Tag '{tag_id}': unknown behavior type '{kind}', using constant")
        return ConstantBehavior()
    if not isinstance(params, dict):
        logger.warning(f"Tag '{tag_id}': behavior parameters must be an object, using constant")
        return ConstantBehavior()

    try:
        return _build(kind, params)
    except (TypeError, ValueError) as e:
        logger.warning(f"Tag '{tag_id}': malformed {kind} behavior ({e}), using constant")
        return ConstantBehavior()


# =============================================================================
# Stateful generator
# =============================================================================


@dataclass
class TagGenerator:
    """Generates values for one tag against a resettable local clock."""

    tag: Tag
    origin_ms: float = 0.0
    rng: random.Random = field(default_factory=random.Random)

    initial_value: Any = field(default=None, init=False)

    def __post_init__(self):
        self.initial_value = self.tag.value

    @property
    def behavior(self) -> BehaviorSpec:
        return self.tag.behavior

    def elapsed(self, now_ms: float) -> float:
        return now_ms - self.origin_ms

    def value(self, now_ms: float) -> Any:
        return evaluate(self.tag.behavior, self.elapsed(now_ms), self.initial_value, self.rng)

    def reset(self, now_ms: float) -> None:
        """Restart phase and step counters from ``now_ms``."""
        self.origin_ms = now_ms
