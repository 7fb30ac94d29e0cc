"""Single-equipment simulator: state machine plus one generator per tag."""

import logging
import random
from typing import Callable, Dict, List, Optional

from .generators import TagGenerator
from .models import EquipmentConfig, Quality, State, SteppedBehavior, TagSnapshot, utc_now
from .state_machine import EquipmentStateMachine, StateChange, monotonic_ms

logger = logging.getLogger(__name__)

StateListener = Callable[[StateChange], None]


class EquipmentSimulator:
    """Simulates one equipment unit.

    Generators persist across ticks; they are only restarted when a state that
    overrides their tag is entered, or (stepped generators) on a forced
    transition.
    """

    def __init__(
        self,
        config: EquipmentConfig,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        bad_quality_rate: float = 0.001,
        uncertain_quality_rate: float = 0.0,
    ):
        self.config = config
        self.clock = clock or monotonic_ms
        self.rng = rng or random.Random()
        self.bad_quality_rate = bad_quality_rate
        self.uncertain_quality_rate = uncertain_quality_rate

        self.state_machine = EquipmentStateMachine(config, clock=self.clock, rng=self.rng)

        now = self.clock()
        self.generators: Dict[str, TagGenerator] = {
            tag.id: TagGenerator(tag=tag, origin_ms=now, rng=self.rng) for tag in config.tags
        }
        self._listeners: List[StateListener] = []
        self._apply_overrides(self.state_machine.state)

    @property
    def equipment_id(self) -> str:
        return self.config.id

    @property
    def current_state(self) -> str:
        return self.state_machine.current_state

    def add_state_listener(self, callback: StateListener) -> None:
        self._listeners.append(callback)

    def remove_state_listener(self, callback: StateListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # -------------------------------------------------------------------------
    # Tag generation
    # -------------------------------------------------------------------------

    def _draw_quality(self) -> Quality:
        draw = self.rng.random()
        if draw < self.bad_quality_rate:
            return Quality.BAD
        if draw < self.bad_quality_rate + self.uncertain_quality_rate:
            return Quality.UNCERTAIN
        return Quality.GOOD

    def generate_tag_values(self) -> List[TagSnapshot]:
        """Advance every tag once and return the readings."""
        now_ms = self.clock()
        timestamp = utc_now()
        state = self.state_machine.state
        snapshots = []

        for tag in self.config.tags:
            override = state.override_for(tag.id)
            if override is not None:
                value = override.value
            else:
                value = self.generators[tag.id].value(now_ms)

            quality = self._draw_quality()
            tag.value = value
            tag.timestamp = timestamp
            tag.quality = quality

            snapshots.append(
                TagSnapshot(
                    tag_id=tag.id,
                    name=tag.name,
                    data_type=tag.data_type,
                    value=value,
                    quality=quality,
                    timestamp=timestamp,
                )
            )

        return snapshots

    # -------------------------------------------------------------------------
    # State handling
    # -------------------------------------------------------------------------

    def check_state_transitions(self) -> Optional[StateChange]:
        change = self.state_machine.check_transitions()
        if change is not None:
            self._on_enter(change)
        return change

    def force_state_transition(self, name: str) -> StateChange:
        """Enter ``name`` immediately; raises SimulationError for unknown states."""
        change = self.state_machine.force(name)
        self._on_enter(change)
        return change

    def _apply_overrides(self, state: State) -> None:
        timestamp = utc_now()
        for tag in self.config.tags:
            override = state.override_for(tag.id)
            if override is not None:
                tag.value = override.value
                tag.timestamp = timestamp

    def _on_enter(self, change: StateChange) -> None:
        state = self.state_machine.state
        now_ms = self.clock()

        for tag in self.config.tags:
            generator = self.generators[tag.id]
            if state.override_for(tag.id) is not None:
                generator.reset(now_ms)
            elif change.forced and isinstance(tag.behavior, SteppedBehavior):
                generator.reset(now_ms)

        self._apply_overrides(state)

        for callback in list(self._listeners):
            try:
                callback(change)
            except Exception as e:
                logger.error(f"{self.equipment_id}: state listener failed: {e}")
