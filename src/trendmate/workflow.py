"""Workflow coordinator: sequences dependent operations for one UI flow.

Report mode:      search → select → report
Comparison mode:  search → select first → search → select second → compare

Every search or selection is stamped with a sequence number.  A result
is applied only while its sequence is still the current one, so a slow
response to an earlier request can never overwrite the state of a newer
one.  Starting a new sequence also cancels the previous sequence's token,
which stops any retries it has not started yet.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, Field

from trendmate.api import TrendmateApi
from trendmate.models import (
    AwaitingSecondSelection,
    AwaitingSelection,
    CompanyOption,
    Failed,
    FatalFailure,
    Idle,
    Resolved,
    SearchInFlight,
    SelectInFlight,
    Slot,
    Success,
)
from trendmate.resilience import CancelToken

log = logging.getLogger(__name__)

State = (
    Idle | SearchInFlight | AwaitingSelection | AwaitingSecondSelection
    | SelectInFlight | Resolved | Failed
)
Listener = Callable[[State], None]


class WorkflowMode(str, Enum):
    REPORT = "report"
    COMPARISON = "comparison"


class InvalidTransition(ValueError):
    """Action not allowed from the coordinator's current state."""


# ---------------------------------------------------------------------------
# Actions dispatched by the presentation layer
# ---------------------------------------------------------------------------

class Search(BaseModel):
    action: Literal["search"] = "search"
    term: str
    slot: Slot | None = None


class Select(BaseModel):
    action: Literal["select"] = "select"
    choice: str
    slot: Slot | None = None


class Swap(BaseModel):
    action: Literal["swap"] = "swap"


class Reset(BaseModel):
    action: Literal["reset"] = "reset"


WorkflowAction = Annotated[
    Union[Search, Select, Swap, Reset],
    Field(discriminator="action"),
]


def _other(slot: Slot) -> Slot:
    return Slot.SECOND if slot is Slot.FIRST else Slot.FIRST


class WorkflowCoordinator:
    """Owns the WorkflowState of one interaction sequence."""

    def __init__(self, api: TrendmateApi, mode: WorkflowMode = WorkflowMode.REPORT):
        self.api = api
        self.mode = mode
        self._state: State = Idle()
        self._seq = 0
        self._token = CancelToken()
        self._options: list[CompanyOption] | None = None
        self._slots: dict[Slot, str] = {}
        self._listeners: list[Listener] = []

    @property
    def state(self) -> State:
        return self._state

    @property
    def sequence(self) -> int:
        return self._seq

    @property
    def symbols(self) -> tuple[str | None, str | None]:
        return self._slots.get(Slot.FIRST), self._slots.get(Slot.SECOND)

    # ── Observation ──────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` on every transition; returns an unsubscribe hook."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, state: State) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    # ── Sequencing helpers ───────────────────────────────────────────

    def _next_sequence(self) -> tuple[int, CancelToken]:
        self._token.cancel()
        self._seq += 1
        self._token = CancelToken()
        return self._seq, self._token

    def _is_current(self, seq: int) -> bool:
        if seq != self._seq:
            log.debug("Discarding result of superseded sequence %d (current %d)", seq, self._seq)
            return False
        return True

    def _pending_slot(self) -> Slot:
        if self.mode is WorkflowMode.COMPARISON and len(self._slots) == 1:
            return _other(next(iter(self._slots)))
        return Slot.FIRST

    def _resting_state(self) -> State:
        if self.mode is WorkflowMode.COMPARISON and len(self._slots) == 1:
            picked_slot, picked = next(iter(self._slots.items()))
            return AwaitingSecondSelection(first=picked, missing=_other(picked_slot))
        return Idle()

    def _settle(self, seq: int, outcome: Success | FatalFailure, choices: tuple[str, ...]) -> State:
        if not self._is_current(seq):
            return self._state
        if isinstance(outcome, FatalFailure):
            if not outcome.cancelled:
                log.info("Workflow step failed: %s (%s)", outcome.reason.value, outcome.detail)
                self._set(Failed(reason=outcome.user_error, detail=outcome.detail))
            return self._state
        self._set(Resolved(report=outcome.payload, choices=choices))
        return self._state

    # ── Actions ──────────────────────────────────────────────────────

    async def start_search(self, term: str, slot: Slot | None = None) -> State:
        """Search for candidates; supersedes anything still in flight."""
        seq, token = self._next_sequence()
        slot = slot or self._pending_slot()
        term = term.strip()
        self._options = None

        if len(term) < self.api.config.min_search_length:
            self._set(self._resting_state())
            return self._state

        self._set(SearchInFlight(term=term, slot=slot))
        outcome = await self.api.search(term, cancel=token)

        if not self._is_current(seq):
            return self._state
        if isinstance(outcome, FatalFailure):
            if not outcome.cancelled:
                self._set(Failed(reason=outcome.user_error, detail=outcome.detail))
            return self._state
        self._options = outcome.payload
        self._set(AwaitingSelection(options=outcome.payload, slot=slot))
        return self._state

    async def select_entity(self, choice: CompanyOption | str, slot: Slot | None = None) -> State:
        """Pick a candidate.

        Report mode fetches the report immediately.  Comparison mode waits
        until both slots hold a symbol before fetching the comparison.
        """
        if self._options is None:
            raise InvalidTransition("no candidate list to select from")
        symbol = choice.value if isinstance(choice, CompanyOption) else str(choice).strip()
        if not symbol:
            raise InvalidTransition("selection is empty")
        if slot is None:
            slot = self._state.slot if isinstance(self._state, AwaitingSelection) else self._pending_slot()

        seq, token = self._next_sequence()

        if self.mode is WorkflowMode.REPORT:
            self._set(SelectInFlight(choices=(symbol,)))
            outcome = await self.api.select(symbol, cancel=token)
            return self._settle(seq, outcome, (symbol,))

        self._slots[slot] = symbol
        if len(self._slots) < 2:
            self._set(AwaitingSecondSelection(first=symbol, missing=_other(slot)))
            return self._state
        return await self._compare(seq, token)

    async def _compare(self, seq: int, token: CancelToken) -> State:
        symbol1, symbol2 = self._slots[Slot.FIRST], self._slots[Slot.SECOND]
        self._set(SelectInFlight(choices=(symbol1, symbol2)))
        outcome = await self.api.compare(symbol1, symbol2, cancel=token)
        return self._settle(seq, outcome, (symbol1, symbol2))

    async def swap(self) -> State:
        """Swap left/right symbols.

        The swapped pair is its own comparison: served from the cache when
        present, fetched otherwise.  The entry for the old order is kept.
        """
        if self.mode is not WorkflowMode.COMPARISON or len(self._slots) < 2:
            raise InvalidTransition("swap needs two selected symbols")

        self._slots = {Slot.FIRST: self._slots[Slot.SECOND], Slot.SECOND: self._slots[Slot.FIRST]}
        seq, token = self._next_sequence()
        return await self._compare(seq, token)

    def reset(self) -> State:
        """Abandon the current flow and return to Idle."""
        self._next_sequence()
        self._options = None
        self._slots = {}
        self._set(Idle())
        return self._state

    async def run(self, action: Search | Select | Swap | Reset) -> State:
        """Dispatch a presentation-layer action."""
        if isinstance(action, Search):
            return await self.start_search(action.term, action.slot)
        if isinstance(action, Select):
            return await self.select_entity(action.choice, action.slot)
        if isinstance(action, Swap):
            return await self.swap()
        return self.reset()
