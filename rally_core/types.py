"""Type definitions for match state, storage rows and commands."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

TeamId = Literal["A", "B"]
CoinChoice = Literal["serve", "receive", "side"]
CourtSide = Literal["left", "right"]
PointCategory = Literal["ATTACK", "BLOCK", "SERVE_POINT", "OPPONENT_ERROR"]


class TimerRecord(TypedDict, total=False):
    """Stored form of the active timer (ISO-8601 UTC timestamps)."""
    id: str
    type: str  # 'TIMEOUT_TEAM' | 'TIMEOUT_TECHNICAL' | 'MEDICAL'
    startedAt: str
    endsAt: str
    durationSec: int
    team: Optional[str]


class TeamSetConfiguration(TypedDict):
    # Jersey number ("1".."N") -> index into the team's players list.
    jerseyAssignment: Dict[str, int]
    # Jersey numbers in serving order.
    serviceOrder: List[int]


class CoinTossConfiguration(TypedDict, total=False):
    performed: bool
    winner: Optional[str]
    loser: Optional[str]


class SetConfiguration(TypedDict, total=False):
    """Outcome of the pre-set ceremony for one set."""
    setNumber: int
    isConfigured: bool
    firstChoiceTeam: str
    firstChoiceOption: CoinChoice
    secondChoiceOption: str  # CoinChoice, or "side" after a serve/receive pick
    sideChoiceTeam: str
    sideSelection: CourtSide
    startingServerTeam: str
    startingReceiverTeam: str
    startingServerPlayer: int
    coinToss: CoinTossConfiguration
    teams: Dict[str, TeamSetConfiguration]


class MatchState(TypedDict, total=False):
    """
    Live state of one match.

    Per-set arrays are indexed by ``currentSet - 1`` and always have one entry
    per configured set. Team-keyed records use ``teamA``/``teamB``; team
    identifiers elsewhere are ``"A"``/``"B"``.
    """
    id: str
    gameId: str

    # Progress
    currentSet: int  # 1-based
    setsWon: Dict[str, int]
    scores: Dict[str, List[int]]
    isGameEnded: bool

    # Serving
    currentServerTeam: str
    currentServerPlayer: int  # jersey number
    possession: str
    serviceOrders: Dict[str, List[int]]
    nextServerIndex: Dict[str, int]

    # Court
    leftIsTeamA: bool
    sidesSwitched: List[int]

    # Stoppages
    timeoutsUsed: Dict[str, List[int]]
    technicalTimeoutUsed: List[bool]
    activeTimer: Optional[TimerRecord]

    setConfigurations: List[SetConfiguration]


class MatchStateRow(TypedDict, total=False):
    """Row of the primary ``match_states`` table."""
    match_id: str
    current_set: int
    sets_won: Dict[str, int]
    scores: Dict[str, List[int]]
    current_server_team: str
    current_server_player: int
    possession: str
    left_is_team_a: bool
    timeouts_used: Dict[str, List[int]]
    technical_timeout_used: List[bool]
    sides_switched: List[int]
    service_orders: Dict[str, List[int]]
    next_server_index: Dict[str, int]
    set_configurations: List[Dict[str, Any]]
    active_timer: Optional[Dict[str, Any]]
    is_game_ended: bool


class ScoreRow(TypedDict):
    """Row of the legacy ``match_scores`` table: one per (match, set)."""
    match_id: str
    set_number: int
    team_a_points: int
    team_b_points: int


class TimeoutEntry(TypedDict, total=False):
    """Row of the ``match_timeouts`` ledger."""
    id: str
    match_id: str
    set_number: int
    team: Optional[str]
    timeout_type: str
    duration_seconds: int
    started_at: str
    ended_at: Optional[str]


class EventRow(TypedDict, total=False):
    """Row of the append-only ``match_events`` log."""
    match_id: str
    set_number: Optional[int]
    event_type: str
    team: Optional[str]
    point_category: Optional[PointCategory]
    metadata: Dict[str, Any]
    created_at: str


class CommandPayload(TypedDict, total=False):
    """
    Operator command accepted by apply_command().

    Fields vary by command type.
    """
    type: str
    matchId: Optional[str]

    # ADD_POINT
    team: Optional[str]
    category: Optional[str]

    # APPLY_SET_CONFIGURATION
    configuration: Optional[Dict[str, Any]]

    # START_TIMEOUT / FINALIZE_TIMEOUT
    kind: Optional[str]
    timerId: Optional[str]
