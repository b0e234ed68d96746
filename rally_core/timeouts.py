"""Team, technical and medical stoppages.

Duration and quota per kind come from one policy table (timer_policies());
nothing else in the package branches on the timer kind for those values.
"""
from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .errors import ValidationError
from .match_config import MatchConfig
from .outcome import TIMEOUT_END, TIMEOUT_START, DomainEvent, MutationOutcome
from .settings import Settings, get_settings
from .state import is_current_set_configured, set_index, set_points, team_key
from .timer import Timer, build_timer, normalize_kind, parse_timer, to_iso
from .types import MatchState, TimeoutEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerPolicy:
    kind: str
    duration_sec: int
    # Per team (team timeouts) or per set (technical); None = unbounded.
    per_set_limit: Optional[int]
    requires_team: bool


def timer_policies(
    config: MatchConfig, settings: Settings | None = None
) -> Dict[str, TimerPolicy]:
    settings = settings or get_settings()
    return {
        "TIMEOUT_TEAM": TimerPolicy(
            "TIMEOUT_TEAM", config.teamTimeoutDurationSec, config.teamTimeoutsPerSet, True
        ),
        "TIMEOUT_TECHNICAL": TimerPolicy(
            "TIMEOUT_TECHNICAL",
            settings.technical_timeout_duration_sec,
            1 if config.hasTechnicalTimeout else 0,
            False,
        ),
        "MEDICAL": TimerPolicy("MEDICAL", settings.medical_timeout_duration_sec, None, False),
    }


def resolve_policy(
    kind: str, config: MatchConfig, settings: Settings | None = None
) -> TimerPolicy:
    return timer_policies(config, settings)[normalize_kind(kind)]


def used_in_set(state: MatchState, kind: str, team: str | None) -> int:
    idx = set_index(state)
    if kind == "TIMEOUT_TEAM":
        return state["timeoutsUsed"][team_key(team)][idx]
    if kind == "TIMEOUT_TECHNICAL":
        return 1 if state["technicalTimeoutUsed"][idx] else 0
    return 0


def check_start_timeout(
    state: MatchState,
    config: MatchConfig,
    kind: str,
    team: str | None = None,
    settings: Settings | None = None,
) -> TimerPolicy:
    """Raise ValidationError unless a ``kind`` stoppage may start now."""
    policy = resolve_policy(kind, config, settings)

    if state.get("isGameEnded"):
        raise ValidationError("match_ended", "match has already ended")
    if not is_current_set_configured(state):
        raise ValidationError("set_unconfigured", "configure the set before a timeout")
    if state.get("activeTimer"):
        raise ValidationError("timer_active", "another timer is already running")
    if policy.requires_team and team not in ("A", "B"):
        raise ValidationError("team_required", f"{policy.kind} needs a team")
    if policy.kind == "TIMEOUT_TECHNICAL" and policy.per_set_limit == 0:
        raise ValidationError("technical_disabled", "technical timeouts are off for this match")
    if policy.per_set_limit is not None:
        if used_in_set(state, policy.kind, team) >= policy.per_set_limit:
            raise ValidationError(
                "quota_exhausted",
                f"{policy.kind} limit of {policy.per_set_limit} reached for this set",
            )
    return policy


def start_timeout(
    state: MatchState,
    config: MatchConfig,
    kind: str,
    team: str | None = None,
    *,
    timer_id: str,
    now: datetime,
    settings: Settings | None = None,
) -> MutationOutcome:
    policy = check_start_timeout(state, config, kind, team, settings)
    timer = build_timer(timer_id, policy.kind, now, policy.duration_sec, team)

    new_state: MatchState = deepcopy(state)
    idx = set_index(new_state)
    if policy.kind == "TIMEOUT_TEAM":
        new_state["timeoutsUsed"][team_key(team)][idx] += 1
    elif policy.kind == "TIMEOUT_TECHNICAL":
        new_state["technicalTimeoutUsed"][idx] = True
    new_state["activeTimer"] = timer.to_record()

    event = DomainEvent(
        TIMEOUT_START,
        set_number=idx + 1,
        team=team,
        metadata={"timerId": timer.id, "kind": timer.kind, "durationSec": timer.duration_sec},
    )
    return MutationOutcome(state=new_state, events=[event], timer=timer)


def finalize_timeout(
    state: MatchState, timer_id: str, *, reason: str = "manual"
) -> MutationOutcome:
    """Clear the active timer; the same path serves expiry and manual end."""
    active = parse_timer(state.get("activeTimer"))
    if active is None or active.id != timer_id:
        raise ValidationError("no_active_timer", f"timer {timer_id} is not running")

    new_state: MatchState = deepcopy(state)
    new_state["activeTimer"] = None
    event = DomainEvent(
        TIMEOUT_END,
        set_number=set_index(new_state) + 1,
        team=active.team,
        metadata={"timerId": active.id, "kind": active.kind, "reason": reason},
    )
    return MutationOutcome(state=new_state, events=[event], timer=active)


def technical_timeout_due(state: MatchState, config: MatchConfig) -> bool:
    """True when the set total has just reached the technical timeout mark."""
    if not config.hasTechnicalTimeout or state.get("isGameEnded"):
        return False
    idx = set_index(state)
    if state["technicalTimeoutUsed"][idx]:
        return False
    a, b = set_points(state, idx)
    return a + b == config.technicalTimeoutSum


def ledger_entry(state: MatchState, timer: Timer) -> TimeoutEntry:
    return {
        "id": timer.id,
        "match_id": state["gameId"],
        "set_number": set_index(state) + 1,
        "team": timer.team,
        "timeout_type": timer.kind,
        "duration_seconds": timer.duration_sec,
        "started_at": to_iso(timer.started_at),
        "ended_at": None,
    }
