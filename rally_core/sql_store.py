"""SQLAlchemy-backed stores.

SQLAlchemy sessions are blocking, so each store call runs in a worker thread
via asyncio.to_thread. Change notifications are published in-process after the
transaction commits; readers in other processes need their own transport.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy import create_engine, delete, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import CapabilityError, PersistenceError, RaceConditionError
from .settings import get_settings
from .store import ChangeHub, Listener, Unsubscribe
from .timer import parse_iso, to_iso, utc_now
from .types import EventRow, MatchStateRow, ScoreRow, TimeoutEntry

logger = logging.getLogger(__name__)

STATE_TABLE = "match_states"


class Base(DeclarativeBase):
    pass


class MatchStateModel(Base):
    __tablename__ = STATE_TABLE

    match_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_set: Mapped[int] = mapped_column(Integer, default=1)
    sets_won: Mapped[Dict[str, Any]] = mapped_column(JSON)
    scores: Mapped[Dict[str, Any]] = mapped_column(JSON)
    current_server_team: Mapped[str] = mapped_column(String(1), default="A")
    current_server_player: Mapped[int] = mapped_column(Integer, default=1)
    possession: Mapped[str] = mapped_column(String(1), default="A")
    left_is_team_a: Mapped[bool] = mapped_column(Boolean, default=True)
    timeouts_used: Mapped[Dict[str, Any]] = mapped_column(JSON)
    technical_timeout_used: Mapped[List[bool]] = mapped_column(JSON)
    sides_switched: Mapped[List[int]] = mapped_column(JSON)
    service_orders: Mapped[Dict[str, Any]] = mapped_column(JSON)
    next_server_index: Mapped[Dict[str, Any]] = mapped_column(JSON)
    set_configurations: Mapped[List[Dict[str, Any]]] = mapped_column(JSON)
    active_timer: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_game_ended: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MatchScoreModel(Base):
    __tablename__ = "match_scores"
    __table_args__ = (UniqueConstraint("match_id", "set_number", name="uq_match_scores_set"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[str] = mapped_column(String(64), index=True)
    set_number: Mapped[int] = mapped_column(Integer)
    team_a_points: Mapped[int] = mapped_column(Integer, default=0)
    team_b_points: Mapped[int] = mapped_column(Integer, default=0)


class MatchTimeoutModel(Base):
    __tablename__ = "match_timeouts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    match_id: Mapped[str] = mapped_column(String(64), index=True)
    set_number: Mapped[int] = mapped_column(Integer)
    team: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    timeout_type: Mapped[str] = mapped_column(String(30))
    duration_seconds: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class MatchEventModel(Base):
    __tablename__ = "match_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[str] = mapped_column(String(64), index=True)
    set_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    event_type: Mapped[str] = mapped_column(String(30))
    team: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    point_category: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


STATE_COLUMNS = (
    "current_set",
    "sets_won",
    "scores",
    "current_server_team",
    "current_server_player",
    "possession",
    "left_is_team_a",
    "timeouts_used",
    "technical_timeout_used",
    "sides_switched",
    "service_orders",
    "next_server_index",
    "set_configurations",
    "active_timer",
    "is_game_ended",
)


def create_db_engine(database_url: str | None = None) -> Engine:
    url = database_url or get_settings().database_url
    # SQLite connections are used from asyncio.to_thread workers
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,
    )


def create_schema(engine: Engine, include_state_table: bool = True) -> None:
    """Create the tables; leave out match_states to stand up a legacy backend."""
    tables = [
        MatchScoreModel.__table__,
        MatchTimeoutModel.__table__,
        MatchEventModel.__table__,
    ]
    if include_state_table:
        tables.insert(0, MatchStateModel.__table__)
    Base.metadata.create_all(engine, tables=tables)


def _is_missing_table(exc: SQLAlchemyError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "no such table" in message or "does not exist" in message


class _SqlStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @contextmanager
    def _transaction(self, label: str) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            logger.warning(f"Transaction failed in {label}: {e}")
            session.rollback()
            raise
        finally:
            session.close()


class SqlStateStore(_SqlStore):
    """StateStore over the ``match_states`` table."""

    def __init__(self, engine: Engine, hub: ChangeHub | None = None) -> None:
        super().__init__(engine)
        self.hub = hub or ChangeHub()

    def _has_table(self) -> bool:
        return inspect(self.engine).has_table(STATE_TABLE)

    async def probe(self) -> None:
        if not await asyncio.to_thread(self._has_table):
            raise CapabilityError(f"table {STATE_TABLE} is not provisioned")

    def _get(self, match_id: str) -> Optional[MatchStateRow]:
        try:
            with self._transaction("get") as session:
                obj = session.get(MatchStateModel, match_id)
                if obj is None:
                    return None
                row: MatchStateRow = {"match_id": obj.match_id}
                for column in STATE_COLUMNS:
                    row[column] = getattr(obj, column)
                return row
        except (OperationalError, ProgrammingError) as exc:
            if _is_missing_table(exc):
                raise CapabilityError(str(exc)) from exc
            raise PersistenceError(f"could not read state of {match_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not read state of {match_id}") from exc

    async def get(self, match_id: str) -> Optional[MatchStateRow]:
        return await asyncio.to_thread(self._get, match_id)

    def _insert(self, row: MatchStateRow) -> None:
        match_id = row["match_id"]
        values = {column: row.get(column) for column in STATE_COLUMNS}
        try:
            with self._transaction("insert") as session:
                session.add(MatchStateModel(match_id=match_id, updated_at=utc_now(), **values))
        except IntegrityError as exc:
            raise RaceConditionError(match_id) from exc
        except (OperationalError, ProgrammingError) as exc:
            if _is_missing_table(exc):
                raise CapabilityError(str(exc)) from exc
            raise PersistenceError(f"could not insert state of {match_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not insert state of {match_id}") from exc

    async def insert(self, row: MatchStateRow) -> None:
        await asyncio.to_thread(self._insert, row)
        self.hub.publish(row["match_id"], row)

    def _update(self, row: MatchStateRow) -> None:
        match_id = row["match_id"]
        try:
            with self._transaction("update") as session:
                obj = session.get(MatchStateModel, match_id)
                if obj is None:
                    raise PersistenceError(f"no match state row for {match_id}")
                for column in STATE_COLUMNS:
                    setattr(obj, column, row.get(column))
                obj.updated_at = utc_now()
        except (OperationalError, ProgrammingError) as exc:
            if _is_missing_table(exc):
                raise CapabilityError(str(exc)) from exc
            raise PersistenceError(f"could not update state of {match_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not update state of {match_id}") from exc

    async def update(self, row: MatchStateRow) -> None:
        await asyncio.to_thread(self._update, row)
        self.hub.publish(row["match_id"], row)

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        return self.hub.subscribe(match_id, listener)


class SqlLegacyScoreStore(_SqlStore):
    """LegacyScoreStore over ``match_scores`` (one row per match and set)."""

    def __init__(self, engine: Engine, hub: ChangeHub | None = None) -> None:
        super().__init__(engine)
        self.hub = hub or ChangeHub()

    def _list(self, match_id: str) -> List[ScoreRow]:
        try:
            with self._transaction("list_rows") as session:
                stmt = (
                    select(MatchScoreModel)
                    .where(MatchScoreModel.match_id == match_id)
                    .order_by(MatchScoreModel.set_number)
                )
                return [
                    {
                        "match_id": obj.match_id,
                        "set_number": obj.set_number,
                        "team_a_points": obj.team_a_points,
                        "team_b_points": obj.team_b_points,
                    }
                    for obj in session.scalars(stmt)
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not read score rows of {match_id}") from exc

    async def list_rows(self, match_id: str) -> List[ScoreRow]:
        return await asyncio.to_thread(self._list, match_id)

    def _replace(self, match_id: str, rows: List[ScoreRow]) -> None:
        try:
            with self._transaction("replace_rows") as session:
                # rows of sets no longer reached (after an undo) must go too
                session.execute(delete(MatchScoreModel).where(MatchScoreModel.match_id == match_id))
                for row in rows:
                    session.add(
                        MatchScoreModel(
                            match_id=match_id,
                            set_number=row["set_number"],
                            team_a_points=row["team_a_points"],
                            team_b_points=row["team_b_points"],
                        )
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not write score rows of {match_id}") from exc

    async def replace_rows(self, match_id: str, rows: List[ScoreRow]) -> None:
        await asyncio.to_thread(self._replace, match_id, rows)
        self.hub.publish(match_id, await self.list_rows(match_id))

    def subscribe(self, match_id: str, listener: Listener) -> Unsubscribe:
        return self.hub.subscribe(match_id, listener)


class SqlTimeoutLedger(_SqlStore):
    def _create(self, entry: TimeoutEntry) -> None:
        try:
            with self._transaction("create_timeout") as session:
                session.add(
                    MatchTimeoutModel(
                        id=entry["id"],
                        match_id=entry["match_id"],
                        set_number=entry["set_number"],
                        team=entry.get("team"),
                        timeout_type=entry["timeout_type"],
                        duration_seconds=entry["duration_seconds"],
                        started_at=parse_iso(entry["started_at"]) or utc_now(),
                        ended_at=parse_iso(entry.get("ended_at")),
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"timeout {entry['id']} could not be recorded") from exc

    async def create(self, entry: TimeoutEntry) -> None:
        await asyncio.to_thread(self._create, entry)

    def _finish(self, timer_id: str, ended_at: str) -> None:
        try:
            with self._transaction("finish_timeout") as session:
                obj = session.get(MatchTimeoutModel, timer_id)
                if obj is None:
                    raise PersistenceError(f"unknown timeout {timer_id}")
                obj.ended_at = parse_iso(ended_at) or utc_now()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"timeout {timer_id} could not be closed") from exc

    async def finish(self, timer_id: str, ended_at: str) -> None:
        await asyncio.to_thread(self._finish, timer_id, ended_at)

    def entries(self, match_id: str) -> List[TimeoutEntry]:
        """Ledger rows of a match, oldest first (blocking)."""
        with self._transaction("list_timeouts") as session:
            stmt = (
                select(MatchTimeoutModel)
                .where(MatchTimeoutModel.match_id == match_id)
                .order_by(MatchTimeoutModel.started_at)
            )
            return [
                {
                    "id": obj.id,
                    "match_id": obj.match_id,
                    "set_number": obj.set_number,
                    "team": obj.team,
                    "timeout_type": obj.timeout_type,
                    "duration_seconds": obj.duration_seconds,
                    "started_at": to_iso(obj.started_at),
                    "ended_at": to_iso(obj.ended_at) if obj.ended_at else None,
                }
                for obj in session.scalars(stmt)
            ]


class SqlEventSink(_SqlStore):
    def _append(self, row: EventRow) -> None:
        try:
            with self._transaction("append_event") as session:
                session.add(
                    MatchEventModel(
                        match_id=row["match_id"],
                        set_number=row.get("set_number"),
                        event_type=row["event_type"],
                        team=row.get("team"),
                        point_category=row.get("point_category"),
                        event_metadata=row.get("metadata") or {},
                        created_at=parse_iso(row.get("created_at")) or utc_now(),
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"event {row['event_type']} could not be stored") from exc

    async def append(self, row: EventRow) -> None:
        await asyncio.to_thread(self._append, row)

    def event_types(self, match_id: str) -> List[str]:
        """Event types of a match in insertion order (blocking)."""
        with self._transaction("list_events") as session:
            stmt = (
                select(MatchEventModel.event_type)
                .where(MatchEventModel.match_id == match_id)
                .order_by(MatchEventModel.id)
            )
            return list(session.scalars(stmt))
