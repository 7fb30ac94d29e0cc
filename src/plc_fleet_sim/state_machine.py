"""Per-equipment operational state machine."""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .errors import SimulationError
from .models import EquipmentConfig, State, Transition, utc_now

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class StateChange:
    """Emitted every time an equipment enters a new state."""

    equipment_id: str
    previous_state: str
    current_state: str
    timestamp: datetime
    forced: bool = False


class EquipmentStateMachine:
    """Exactly one active state, advanced by per-tick transition checks.

    Transitions of the active state are checked in declaration order and the
    first one that fires wins. A transition with ``delay_ms`` is only eligible
    once the state has been active for that long; one with ``probability``
    fires when a uniform draw falls below it. Transitions carrying neither are
    external (manual) and only happen through ``force``.
    """

    def __init__(
        self,
        config: EquipmentConfig,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.clock = clock or monotonic_ms
        self.rng = rng or random.Random()

        initial = config.get_state(config.current_state)
        if initial is None:
            raise SimulationError(
                f"Equipment '{config.id}' has no state '{config.current_state}'",
                errors=[f"known states: {', '.join(config.state_names)}"],
            )
        self._state = initial
        self._entered_at = self.clock()

    @property
    def equipment_id(self) -> str:
        return self.config.id

    @property
    def current_state(self) -> str:
        return self._state.name

    @property
    def state(self) -> State:
        return self._state

    @property
    def entered_at(self) -> float:
        return self._entered_at

    def time_in_state(self) -> float:
        return self.clock() - self._entered_at

    def _fires(self, transition: Transition, in_state_ms: float) -> bool:
        if transition.probability is None and transition.delay_ms is None:
            return False
        if transition.delay_ms is not None and in_state_ms < transition.delay_ms:
            return False
        if transition.probability is not None:
            return self.rng.random() < transition.probability
        return True

    def check_transitions(self) -> Optional[StateChange]:
        """Evaluate the active state's transitions once; enter the first that fires."""
        in_state_ms = self.time_in_state()
        for transition in self._state.transitions:
            if self._fires(transition, in_state_ms):
                target = self.config.get_state(transition.to_state)
                if target is None:
                    logger.warning(
                        f"{self.equipment_id}: transition to unknown state "
                        f"'{transition.to_state}' ignored"
                    )
                    continue
                return self._enter(target, forced=False)
        return None

    def force(self, name: str) -> StateChange:
        """Enter ``name`` unconditionally.

        Raises:
            SimulationError: the equipment defines no such state. Nothing is
                mutated in that case.
        """
        target = self.config.get_state(name)
        if target is None:
            raise SimulationError(
                f"Equipment '{self.equipment_id}' has no state '{name}'",
                errors=[f"known states: {', '.join(self.config.state_names)}"],
            )
        return self._enter(target, forced=True)

    def _enter(self, target: State, forced: bool) -> StateChange:
        previous = self._state.name
        self._state = target
        self._entered_at = self.clock()
        self.config.current_state = target.name
        logger.info(
            f"{self.equipment_id}: {previous} -> {target.name}"
            + (" (forced)" if forced else "")
        )
        return StateChange(
            equipment_id=self.equipment_id,
            previous_state=previous,
            current_state=target.name,
            timestamp=utc_now(),
            forced=forced,
        )
