"""Storage contracts consumed by the sync layer, plus in-memory backends.

The in-memory backends keep rows per match id in dicts and publish change
notifications synchronously after each write. They carry failure switches so
the rollback and fallback paths can be driven without a database.
"""
from __future__ import annotations

import logging
from copy import deepcopy
from typing import Any, Callable, Dict, List, Optional, Protocol

from .errors import CapabilityError, PersistenceError, RaceConditionError
from .types import EventRow, MatchStateRow, ScoreRow, TimeoutEntry

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class StateStore(Protocol):
    """Keyed store of primary ``match_states`` rows."""

    async def probe(self) -> None:
        """Raise CapabilityError when the table is not provisioned."""

    async def get(self, match_id: str) -> Optional[MatchStateRow]: ...

    async def insert(self, row: MatchStateRow) -> None:
        """Raise RaceConditionError when a row for the match already exists."""

    async def update(self, row: MatchStateRow) -> None: ...

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        """``listener`` receives the full row after every insert/update."""


class LegacyScoreStore(Protocol):
    """Per-(match, set) point totals from before the primary table existed."""

    async def list_rows(self, match_id: str) -> List[ScoreRow]: ...

    async def replace_rows(self, match_id: str, rows: List[ScoreRow]) -> None:
        """Make ``rows`` the only rows of the match, atomically."""

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        """``listener`` receives all rows of the match after every write."""


class TimeoutLedger(Protocol):
    async def create(self, entry: TimeoutEntry) -> None: ...

    async def finish(self, timer_id: str, ended_at: str) -> None: ...


class EventSink(Protocol):
    async def append(self, row: EventRow) -> None: ...


class ChangeHub:
    """Per-key listener registry used to push notifications to readers."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, key: str, listener: Listener) -> Unsubscribe:
        self._listeners.setdefault(str(key), []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(str(key), [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def publish(self, key: str, payload: Any) -> None:
        for listener in list(self._listeners.get(str(key), [])):
            try:
                listener(deepcopy(payload))
            except Exception as exc:
                # One broken reader must not stop the others.
                logger.warning(f"Change listener for {key} failed: {exc}", exc_info=True)


# ==================== IN-MEMORY BACKENDS ====================


class InMemoryStateStore:
    """Dict-backed StateStore.

    ``provisioned=False`` behaves like a backend without the table.
    ``fail_writes`` makes insert/update raise PersistenceError.
    ``simulate_race`` makes the next insert lose to a concurrent writer.
    """

    def __init__(self, provisioned: bool = True) -> None:
        self.provisioned = provisioned
        self.fail_writes = False
        self.simulate_race = False
        self.rows: Dict[str, MatchStateRow] = {}
        self.operations: List[str] = []
        self.hub = ChangeHub()

    def _check_provisioned(self) -> None:
        if not self.provisioned:
            raise CapabilityError("relation match_states does not exist")

    async def probe(self) -> None:
        self.operations.append("probe")
        self._check_provisioned()

    async def get(self, match_id: str) -> Optional[MatchStateRow]:
        self.operations.append("get")
        self._check_provisioned()
        row = self.rows.get(match_id)
        return deepcopy(row) if row is not None else None

    async def insert(self, row: MatchStateRow) -> None:
        self.operations.append("insert")
        self._check_provisioned()
        if self.fail_writes:
            raise PersistenceError(f"insert of {row['match_id']} failed")
        match_id = row["match_id"]
        if self.simulate_race:
            self.simulate_race = False
            self.rows[match_id] = deepcopy(row)
        if match_id in self.rows:
            raise RaceConditionError(match_id)
        self.rows[match_id] = deepcopy(row)
        self.hub.publish(match_id, row)

    async def update(self, row: MatchStateRow) -> None:
        self.operations.append("update")
        self._check_provisioned()
        if self.fail_writes:
            raise PersistenceError(f"update of {row['match_id']} failed")
        match_id = row["match_id"]
        if match_id not in self.rows:
            raise PersistenceError(f"no match state row for {match_id}")
        self.rows[match_id] = deepcopy(row)
        self.hub.publish(match_id, row)

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        return self.hub.subscribe(match_id, listener)


class InMemoryLegacyScoreStore:
    def __init__(self) -> None:
        self.fail_writes = False
        self.rows: Dict[str, Dict[int, ScoreRow]] = {}
        self.hub = ChangeHub()

    async def list_rows(self, match_id: str) -> List[ScoreRow]:
        by_set = self.rows.get(match_id, {})
        return [deepcopy(by_set[number]) for number in sorted(by_set)]

    async def replace_rows(self, match_id: str, rows: List[ScoreRow]) -> None:
        if self.fail_writes:
            raise PersistenceError(f"score rows of {match_id} could not be written")
        self.rows[match_id] = {row["set_number"]: deepcopy(row) for row in rows}
        self.hub.publish(match_id, await self.list_rows(match_id))

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        return self.hub.subscribe(match_id, listener)


class InMemoryTimeoutLedger:
    def __init__(self) -> None:
        self.fail_create = False
        self.fail_finish = False
        self.entries: Dict[str, TimeoutEntry] = {}

    async def create(self, entry: TimeoutEntry) -> None:
        if self.fail_create:
            raise PersistenceError(f"timeout {entry['id']} could not be recorded")
        self.entries[entry["id"]] = deepcopy(entry)

    async def finish(self, timer_id: str, ended_at: str) -> None:
        if self.fail_finish:
            raise PersistenceError(f"timeout {timer_id} could not be closed")
        if timer_id not in self.entries:
            raise PersistenceError(f"unknown timeout {timer_id}")
        self.entries[timer_id]["ended_at"] = ended_at


class InMemoryEventSink:
    def __init__(self) -> None:
        self.fail = False
        self.rows: List[EventRow] = []

    async def append(self, row: EventRow) -> None:
        if self.fail:
            raise PersistenceError("event log unavailable")
        self.rows.append(deepcopy(row))

    def types(self) -> List[str]:
        return [row["event_type"] for row in self.rows]
