from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from tradeagent.clock import has_elapsed, utc_now

LOGGER = logging.getLogger(__name__)


class InstrumentPhase(str, Enum):
    SCANNING = "SCANNING"
    ENTRY_PENDING = "ENTRY_PENDING"
    ACTIVE = "ACTIVE"
    EXIT_PENDING = "EXIT_PENDING"
    COOLDOWN = "COOLDOWN"


class PhaseEvent(str, Enum):
    SUBMIT_ENTRY = "SUBMIT_ENTRY"
    ENTRY_FILLED = "ENTRY_FILLED"
    ENTRY_FAILED = "ENTRY_FAILED"
    SUBMIT_EXIT = "SUBMIT_EXIT"
    EXIT_FILLED = "EXIT_FILLED"


class CooldownCause(str, Enum):
    LOSS = "LOSS"
    PROFIT = "PROFIT"


HELD_PHASES = frozenset({InstrumentPhase.ACTIVE, InstrumentPhase.EXIT_PENDING})

_TRANSITIONS: dict[tuple[InstrumentPhase, PhaseEvent], InstrumentPhase] = {
    (InstrumentPhase.SCANNING, PhaseEvent.SUBMIT_ENTRY): InstrumentPhase.ENTRY_PENDING,
    (InstrumentPhase.ENTRY_PENDING, PhaseEvent.ENTRY_FILLED): InstrumentPhase.ACTIVE,
    (InstrumentPhase.ENTRY_PENDING, PhaseEvent.ENTRY_FAILED): InstrumentPhase.SCANNING,
    (InstrumentPhase.ACTIVE, PhaseEvent.SUBMIT_EXIT): InstrumentPhase.EXIT_PENDING,
    (InstrumentPhase.EXIT_PENDING, PhaseEvent.EXIT_FILLED): InstrumentPhase.COOLDOWN,
}


@dataclass(slots=True, frozen=True)
class InstrumentState:
    instrument_id: str
    phase: InstrumentPhase
    entered_at: datetime
    order_ref: str | None = None
    cooldown_cause: CooldownCause | None = None

    @property
    def auxiliary(self) -> str | None:
        if self.cooldown_cause is not None:
            return self.cooldown_cause.value
        return self.order_ref


class TradingStateMachine:
    """Per-instrument trading phases.

    States are immutable records keyed by instrument id; each instrument is
    only ever advanced by the evaluation that owns it. COOLDOWN expires lazily
    when the state is read.
    """

    def __init__(
        self,
        *,
        cooldown_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cooldown_minutes = cooldown_minutes
        self.clock = clock
        self._states: dict[str, InstrumentState] = {}

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else self.clock()

    def _initial(self, instrument_id: str, now: datetime) -> InstrumentState:
        return InstrumentState(instrument_id=instrument_id, phase=InstrumentPhase.SCANNING, entered_at=now)

    def get_state(self, instrument_id: str, *, now: datetime | None = None) -> InstrumentState:
        current_time = self._now(now)
        state = self._states.get(instrument_id)
        if state is None:
            state = self._states.setdefault(instrument_id, self._initial(instrument_id, current_time))
        if state.phase == InstrumentPhase.COOLDOWN and has_elapsed(state.entered_at, current_time, self.cooldown_minutes):
            LOGGER.info("Cooldown expired for %s (%s)", instrument_id, state.auxiliary)
            state = self._initial(instrument_id, current_time)
            self._states[instrument_id] = state
        return state

    def phase(self, instrument_id: str, *, now: datetime | None = None) -> InstrumentPhase:
        return self.get_state(instrument_id, now=now).phase

    def apply(
        self,
        instrument_id: str,
        event: PhaseEvent,
        *,
        now: datetime | None = None,
        order_ref: str | None = None,
        cooldown_cause: CooldownCause | None = None,
    ) -> bool:
        current_time = self._now(now)
        state = self.get_state(instrument_id, now=current_time)
        target = _TRANSITIONS.get((state.phase, event))
        if target is None:
            LOGGER.debug(
                "Rejected transition %s for %s in phase %s",
                event.value,
                instrument_id,
                state.phase.value,
            )
            return False
        self._states[instrument_id] = InstrumentState(
            instrument_id=instrument_id,
            phase=target,
            entered_at=current_time,
            order_ref=order_ref if target in {InstrumentPhase.ENTRY_PENDING, InstrumentPhase.EXIT_PENDING} else None,
            cooldown_cause=cooldown_cause if target == InstrumentPhase.COOLDOWN else None,
        )
        return True

    def set_entry_pending(self, instrument_id: str, order_ref: str, *, now: datetime | None = None) -> bool:
        return self.apply(instrument_id, PhaseEvent.SUBMIT_ENTRY, now=now, order_ref=order_ref)

    def set_active(self, instrument_id: str, *, now: datetime | None = None) -> bool:
        return self.apply(instrument_id, PhaseEvent.ENTRY_FILLED, now=now)

    def entry_failed(self, instrument_id: str, *, now: datetime | None = None) -> bool:
        return self.apply(instrument_id, PhaseEvent.ENTRY_FAILED, now=now)

    def set_exit_pending(self, instrument_id: str, order_ref: str, *, now: datetime | None = None) -> bool:
        return self.apply(instrument_id, PhaseEvent.SUBMIT_EXIT, now=now, order_ref=order_ref)

    def set_cooldown(self, instrument_id: str, *, was_loss: bool, now: datetime | None = None) -> bool:
        cause = CooldownCause.LOSS if was_loss else CooldownCause.PROFIT
        return self.apply(instrument_id, PhaseEvent.EXIT_FILLED, now=now, cooldown_cause=cause)

    def reset_to_scanning(self, instrument_id: str, *, now: datetime | None = None) -> None:
        previous = self._states.get(instrument_id)
        if previous is not None and previous.phase != InstrumentPhase.SCANNING:
            LOGGER.info("Force reset %s from %s to SCANNING", instrument_id, previous.phase.value)
        self._states[instrument_id] = self._initial(instrument_id, self._now(now))

    def can_enter(self, instrument_id: str, *, now: datetime | None = None) -> bool:
        return self.phase(instrument_id, now=now) == InstrumentPhase.SCANNING

    def is_held(self, instrument_id: str, *, now: datetime | None = None) -> bool:
        return self.phase(instrument_id, now=now) in HELD_PHASES

    def tracked(self) -> list[str]:
        return sorted(self._states)
