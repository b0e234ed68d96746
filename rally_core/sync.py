"""Loading, saving and observing match state through the configured stores.

Capability negotiation runs once per repository: if the primary
``match_states`` table is missing, the repository switches to the legacy
per-set score table for the rest of its life and reports that once.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Literal, Mapping, Optional

from .errors import CapabilityError, PersistenceError, RaceConditionError
from .match_config import MatchConfig
from .state import hydrate_state, score_rows_to_state, state_to_row, state_to_score_rows
from .store import LegacyScoreStore, StateStore, Unsubscribe
from .types import MatchState, MatchStateRow

logger = logging.getLogger(__name__)

StorageMode = Literal["primary", "legacy"]

FALLBACK_NOTICE = (
    "Live match state table is not available; scores are kept in the per-set "
    "score table and serving, timeout and set configuration details will not persist."
)


@dataclass
class LoadResult:
    state: MatchState
    used_fallback: bool
    # False when nothing was stored yet and ``state`` is the factory default.
    found: bool = True


class MatchStateRepository:
    def __init__(
        self,
        state_store: StateStore,
        legacy_store: LegacyScoreStore | None = None,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self.state_store = state_store
        self.legacy_store = legacy_store
        self.on_notice = on_notice
        self._mode: Optional[StorageMode] = None
        self._negotiation_lock = asyncio.Lock()

    @property
    def mode(self) -> Optional[StorageMode]:
        return self._mode

    @property
    def using_fallback(self) -> bool:
        return self._mode == "legacy"

    async def negotiate(self) -> StorageMode:
        """Probe the primary store once; later calls return the cached answer."""
        if self._mode is not None:
            return self._mode
        async with self._negotiation_lock:
            if self._mode is None:
                try:
                    await self.state_store.probe()
                except CapabilityError as exc:
                    self._downgrade(exc)
                else:
                    self._mode = "primary"
                    logger.debug("Primary match state store available")
        return self._mode

    def _downgrade(self, exc: CapabilityError) -> None:
        if self.legacy_store is None:
            logger.error(f"Primary match state store unavailable and no fallback configured: {exc}")
            raise exc
        if self._mode == "legacy":
            return
        self._mode = "legacy"
        logger.warning(f"Falling back to legacy score storage: {exc}")
        if self.on_notice is not None:
            self.on_notice(FALLBACK_NOTICE)

    # ==================== READ ====================

    async def load(self, match_id: str, config: MatchConfig) -> LoadResult:
        if await self.negotiate() == "primary":
            try:
                row = await self.state_store.get(match_id)
            except CapabilityError as exc:
                self._downgrade(exc)
            else:
                if row is None:
                    return LoadResult(hydrate_state({}, config), used_fallback=False, found=False)
                return LoadResult(hydrate_state(row, config), used_fallback=False)

        rows = await self.legacy_store.list_rows(match_id)
        return LoadResult(score_rows_to_state(rows, config), used_fallback=True, found=bool(rows))

    async def load_many(
        self, match_ids: Iterable[str], configs: Mapping[str, MatchConfig]
    ) -> Dict[str, MatchState]:
        """Load several matches concurrently (live-match listings)."""
        ids = list(match_ids)
        results = await asyncio.gather(*(self.load(match_id, configs[match_id]) for match_id in ids))
        return {match_id: result.state for match_id, result in zip(ids, results)}

    # ==================== WRITE ====================

    async def save(self, state: MatchState) -> None:
        """Persist ``state``; raises PersistenceError when the write failed."""
        if await self.negotiate() == "primary":
            try:
                await self._save_primary(state_to_row(state))
                return
            except CapabilityError as exc:
                self._downgrade(exc)

        match_id = state["gameId"]
        await self.legacy_store.replace_rows(match_id, state_to_score_rows(state))

    async def _save_primary(self, row: MatchStateRow) -> None:
        """Select, then insert or update; no reliance on an atomic upsert."""
        match_id = row["match_id"]
        existing = await self.state_store.get(match_id)
        if existing is not None:
            await self.state_store.update(row)
            return

        try:
            await self.state_store.insert(row)
        except RaceConditionError as race:
            logger.warning(f"Concurrent insert for {match_id}, retrying as update")
            try:
                await self.state_store.update(row)
            except (PersistenceError, RaceConditionError) as exc:
                raise PersistenceError(
                    f"could not save {match_id} after insert race: {exc}"
                ) from race

    # ==================== OBSERVE ====================

    async def subscribe(
        self,
        match_id: str,
        config: MatchConfig,
        on_change: Callable[[MatchState], None],
    ) -> Unsubscribe:
        """Push the full hydrated state to ``on_change`` after every remote write."""
        if await self.negotiate() == "primary":
            return self.state_store.subscribe(
                match_id, lambda row: on_change(hydrate_state(row, config))
            )
        return self.legacy_store.subscribe(
            match_id, lambda rows: on_change(score_rows_to_state(rows, config))
        )


async def subscribe(
    repository: MatchStateRepository,
    match_id: str,
    config: MatchConfig,
    on_change: Callable[[MatchState], None],
) -> Unsubscribe:
    return await repository.subscribe(match_id, config, on_change)
