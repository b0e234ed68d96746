"""Operator session: the single writer of one match.

Every mutation follows the same two-phase commit:

1. compute the next state with a pure transition (rejections change nothing)
2. push the previous state on the undo history and swap the local reference
3. await the remote save
4. on a failed save restore the previous state, drop the history entry and
   re-raise so the operator can retry

A pending flag rejects a second mutation while a save is outstanding. Domain
events are handed to the event sink in background tasks; their failures are
logged only. Timer expiry is found by polling the active timer's end time.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from copy import deepcopy
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Self, Set

from pydantic import ValidationError as PydanticValidationError

from .engine import add_point, change_current_server, switch_server_team
from .errors import PersistenceError, ValidationError
from .history import UndoHistory
from .match_config import CoinTossRule, MatchConfig, default_coin_toss_rule
from .outcome import UNDO, DomainEvent, MutationOutcome
from .set_config import apply_set_configuration, edit_set_configuration
from .settings import Settings, get_settings
from .state import set_index
from .store import EventSink, TimeoutLedger
from .sync import MatchStateRepository
from .timeouts import check_start_timeout, finalize_timeout, ledger_entry, start_timeout
from .timer import is_expired, parse_timer, to_iso, utc_now
from .types import MatchState
from .validation import InputSanitizer, SetConfigurationInput

logger = logging.getLogger(__name__)

Transition = Callable[[MatchState], MutationOutcome]


class MatchSession:
    def __init__(
        self,
        repository: MatchStateRepository,
        config: MatchConfig,
        state: MatchState,
        *,
        ledger: TimeoutLedger | None = None,
        event_sink: EventSink | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        coin_toss_rule: CoinTossRule = default_coin_toss_rule,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.repository = repository
        self.config = config
        self.ledger = ledger
        self.event_sink = event_sink
        self.settings = settings or get_settings()
        self.clock = clock
        self.coin_toss_rule = coin_toss_rule
        self.id_factory = id_factory
        self.history = UndoHistory(self.settings.undo_history_limit)
        self.technical_timeout_due = False

        self._state: MatchState = deepcopy(state)
        self._pending = False
        self._closed = False
        self._timer_task: Optional[asyncio.Task] = None
        self._handled_timer_id: Optional[str] = None
        self._event_tasks: Set[asyncio.Task] = set()

    @classmethod
    async def open(
        cls, repository: MatchStateRepository, config: MatchConfig, **kwargs: Any
    ) -> Self:
        """Load the match (negotiating storage on first use) and start watching its timer."""
        result = await repository.load(config.id, config)
        session = cls(repository, config, result.state, **kwargs)
        session._sync_timer_watch()
        logger.info(
            f"Session opened for {config.id} (set {result.state['currentSet']}, "
            f"fallback={result.used_fallback})"
        )
        return session

    @property
    def state(self) -> MatchState:
        return deepcopy(self._state)

    @property
    def mutation_pending(self) -> bool:
        return self._pending

    @property
    def match_id(self) -> str:
        return self.config.id

    # ==================== OPERATOR ACTIONS ====================

    async def add_point(self, team: str, category: str | None = None) -> MatchState:
        return await self._commit(lambda state: add_point(state, self.config, team, category))

    async def switch_server_team(self) -> MatchState:
        return await self._commit(lambda state: switch_server_team(state, self.config))

    async def change_current_server(self) -> MatchState:
        return await self._commit(lambda state: change_current_server(state, self.config))

    async def apply_set_configuration(
        self, draft: SetConfigurationInput | Dict[str, Any]
    ) -> MatchState:
        if not isinstance(draft, SetConfigurationInput):
            try:
                draft = SetConfigurationInput.model_validate(draft)
            except PydanticValidationError as exc:
                raise ValidationError("invalid_configuration", str(exc)) from exc
        return await self._commit(
            lambda state: apply_set_configuration(
                state, self.config, draft, coin_toss_rule=self.coin_toss_rule
            )
        )

    async def edit_set_configuration(self) -> MatchState:
        return await self._commit(edit_set_configuration)

    async def start_timeout(self, kind: str, team: str | None = None) -> MatchState:
        """Grant a stoppage; the ledger entry is written before the state changes."""
        timer_id = self.id_factory()
        now = self.clock()
        ledger_written = False

        async def record_in_ledger(outcome: MutationOutcome) -> None:
            nonlocal ledger_written
            if self.ledger is None or outcome.timer is None:
                return
            try:
                await self.ledger.create(ledger_entry(self._state, outcome.timer))
            except PersistenceError as exc:
                logger.error(f"Timeout not granted, ledger write failed: {exc}")
                raise
            ledger_written = True

        self._ensure_idle()
        try:
            kind_policy = check_start_timeout(self._state, self.config, kind, team, self.settings)
        except ValueError as exc:
            raise ValidationError("invalid_command", str(exc)) from exc

        try:
            return await self._commit(
                lambda state: start_timeout(
                    state,
                    self.config,
                    kind_policy.kind,
                    team,
                    timer_id=timer_id,
                    now=now,
                    settings=self.settings,
                ),
                before_apply=record_in_ledger,
            )
        except PersistenceError:
            if ledger_written:
                # the timeout was never granted, so its entry ends where it began
                try:
                    await self.ledger.finish(timer_id, to_iso(now))
                except PersistenceError as exc:
                    logger.warning(f"Timeout {timer_id} left open in the ledger: {exc}")
            raise

    async def finalize_timeout(self, timer_id: str | None = None) -> MatchState:
        """End the active timer by hand (defaults to whatever timer is running)."""
        if timer_id is None:
            active = parse_timer(self._state.get("activeTimer"))
            if active is None:
                raise ValidationError("no_active_timer", "no timer is running")
            timer_id = active.id
        return await self._finalize(timer_id, reason="manual", record_history=True)

    async def undo_last_action(self) -> MatchState:
        """Restore the state from before the last operator action and persist it."""
        self._ensure_idle()
        snapshot = self.history.pop()
        previous = self._state

        self._pending = True
        self._state = snapshot
        try:
            await self.repository.save(snapshot)
        except Exception:
            logger.error(f"Undo for {self.match_id} failed to save, keeping current state")
            self._state = previous
            self.history.push(snapshot)
            raise
        finally:
            self._pending = False

        self._handled_timer_id = None
        self.technical_timeout_due = False
        self._emit([DomainEvent(UNDO, set_number=set_index(snapshot) + 1)])
        self._sync_timer_watch()
        return self.state

    async def dispatch(self, cmd: Dict[str, Any]) -> MatchState:
        """Run an operator command dict (same shapes as engine.apply_command)."""
        try:
            validated = InputSanitizer.validate_cmd(cmd)
        except ValueError as exc:
            raise ValidationError("invalid_command", str(exc)) from exc

        ctype = validated.type
        if ctype == "ADD_POINT":
            return await self.add_point(validated.team, validated.category)
        elif ctype == "SWITCH_SERVER_TEAM":
            return await self.switch_server_team()
        elif ctype == "CHANGE_CURRENT_SERVER":
            return await self.change_current_server()
        elif ctype == "APPLY_SET_CONFIGURATION":
            return await self.apply_set_configuration(validated.configuration)
        elif ctype == "EDIT_SET_CONFIGURATION":
            return await self.edit_set_configuration()
        elif ctype == "START_TIMEOUT":
            return await self.start_timeout(validated.kind, validated.team)
        elif ctype == "FINALIZE_TIMEOUT":
            return await self.finalize_timeout(validated.timerId)
        raise ValidationError("invalid_command", f"unhandled command type {ctype}")

    async def close(self) -> None:
        self._closed = True
        self._stop_timer_watch()
        await self.flush_events()

    async def flush_events(self) -> None:
        """Wait until every queued event write has finished."""
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks))

    # ==================== COMMIT ====================

    def _ensure_idle(self) -> None:
        if self._pending:
            raise ValidationError("mutation_pending", "previous action is still being saved")

    async def _commit(
        self,
        transition: Transition,
        *,
        before_apply: Callable[[MutationOutcome], Awaitable[None]] | None = None,
        after_save: Callable[[MutationOutcome], Awaitable[None]] | None = None,
        record_history: bool = True,
    ) -> MatchState:
        self._ensure_idle()
        outcome = transition(self._state)

        self._pending = True
        try:
            if before_apply is not None:
                await before_apply(outcome)

            previous = self._state
            if record_history:
                self.history.push(previous)
            self._state = outcome.state
            try:
                await self.repository.save(outcome.state)
            except Exception as exc:
                logger.error(f"Saving {self.match_id} failed, rolling back: {exc}")
                self._state = previous
                if record_history:
                    self.history.discard_last()
                raise

            if after_save is not None:
                await after_save(outcome)
        finally:
            self._pending = False

        self.technical_timeout_due = outcome.technical_timeout_due
        if outcome.technical_timeout_due:
            logger.info(f"Technical timeout due in {self.match_id}")
        self._emit(outcome.events)
        self._sync_timer_watch()
        return self.state

    async def _finalize(self, timer_id: str, *, reason: str, record_history: bool) -> MatchState:
        ended_at = to_iso(self.clock())

        async def stamp_ledger(outcome: MutationOutcome) -> None:
            if self.ledger is None:
                return
            try:
                await self.ledger.finish(timer_id, ended_at)
            except PersistenceError as exc:
                logger.warning(f"Could not stamp end of timeout {timer_id}: {exc}")

        return await self._commit(
            lambda state: finalize_timeout(state, timer_id, reason=reason),
            after_save=stamp_ledger,
            record_history=record_history,
        )

    # ==================== EVENTS ====================

    def _emit(self, events: List[DomainEvent]) -> None:
        if self.event_sink is None or not events:
            return
        rows = [event.to_row(self.match_id) for event in events]
        task = asyncio.get_running_loop().create_task(self._write_events(rows))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _write_events(self, rows: List[Dict[str, Any]]) -> None:
        for row in rows:
            try:
                await self.event_sink.append(row)
            except Exception as exc:
                logger.warning(
                    f"Event {row['event_type']} for {self.match_id} was not recorded: {exc}"
                )

    # ==================== TIMER WATCH ====================

    def _sync_timer_watch(self) -> None:
        active = self._state.get("activeTimer")
        if active and self._timer_task is None and not self._closed:
            self._timer_task = asyncio.get_running_loop().create_task(self._watch_timer())
        elif not active:
            self._stop_timer_watch()

    def _stop_timer_watch(self) -> None:
        if self._timer_task is not None:
            task, self._timer_task = self._timer_task, None
            if task is not asyncio.current_task():
                task.cancel()

    async def _watch_timer(self) -> None:
        interval = self.settings.timer_poll_interval_sec
        while True:
            await asyncio.sleep(interval)
            timer = parse_timer(self._state.get("activeTimer"))
            if timer is None:
                self._timer_task = None
                return
            if timer.id == self._handled_timer_id or self._pending:
                continue
            if not is_expired(timer, self.clock()):
                continue

            self._handled_timer_id = timer.id
            self._timer_task = None
            try:
                await self._finalize(timer.id, reason="expired", record_history=False)
            except Exception as exc:
                logger.warning(f"Automatic end of timer {timer.id} failed: {exc}", exc_info=True)
                self._handled_timer_id = None
                self._sync_timer_watch()
            return

    async def wait_for_timer_watch(self) -> None:
        """Block until the current timer watch (if any) has returned."""
        task = self._timer_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
