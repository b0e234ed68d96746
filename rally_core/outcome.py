"""Transition results and the domain events they carry."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .timer import Timer, to_iso, utc_now
from .types import EventRow, MatchState

# Event types written to the match event log.
POINT = "POINT"
SIDE_SWITCH = "SIDE_SWITCH"
SET_END = "SET_END"
GAME_END = "GAME_END"
OVERRIDE = "OVERRIDE"
SET_CONFIGURED = "SET_CONFIGURED"
TIMEOUT_START = "TIMEOUT_START"
TIMEOUT_END = "TIMEOUT_END"
UNDO = "UNDO"


@dataclass(frozen=True)
class DomainEvent:
    type: str
    set_number: Optional[int] = None
    team: Optional[str] = None
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_row(self, match_id: str) -> EventRow:
        return {
            "match_id": match_id,
            "set_number": self.set_number,
            "event_type": self.type,
            "team": self.team,
            "point_category": self.category,
            "metadata": dict(self.metadata),
            "created_at": to_iso(utc_now()),
        }


@dataclass
class MutationOutcome:
    """Result of applying one operator action to a match state.

    ``state`` is always a fresh copy; the input state is never touched.
    ``events`` are in the order they happened.
    """

    state: MatchState
    events: List[DomainEvent] = field(default_factory=list)
    # Timer started by this transition, if any.
    timer: Optional[Timer] = None
    technical_timeout_due: bool = False
