"""Timer value and clock helpers.

A Timer is immutable; the match state only ever holds its record form
(``Timer.to_record()``) so the state stays JSON-compatible.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional, get_args

from .types import TeamId, TimerRecord

TimerKind = Literal["TIMEOUT_TEAM", "TIMEOUT_TECHNICAL", "MEDICAL"]
TIMER_KINDS: tuple[str, ...] = get_args(TimerKind)

# Short names accepted from operator commands.
KIND_ALIASES = {
    "team": "TIMEOUT_TEAM",
    "technical": "TIMEOUT_TECHNICAL",
    "medical": "MEDICAL",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def normalize_kind(kind: str) -> str:
    """Map ``team``/``technical``/``medical`` aliases onto canonical kinds."""
    if kind in TIMER_KINDS:
        return kind
    lowered = kind.strip().lower() if isinstance(kind, str) else ""
    if lowered in KIND_ALIASES:
        return KIND_ALIASES[lowered]
    raise ValueError(f"timer kind must be one of {TIMER_KINDS}, got {kind!r}")


@dataclass(frozen=True)
class Timer:
    id: str
    kind: TimerKind
    started_at: datetime
    duration_sec: int
    team: Optional[TeamId] = None

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_sec)

    def to_record(self) -> TimerRecord:
        return {
            "id": self.id,
            "type": self.kind,
            "startedAt": to_iso(self.started_at),
            "endsAt": to_iso(self.ends_at),
            "durationSec": self.duration_sec,
            "team": self.team,
        }


def build_timer(
    timer_id: str,
    kind: str,
    started_at: datetime,
    duration_sec: int,
    team: TeamId | None = None,
) -> Timer:
    return Timer(
        id=str(timer_id),
        kind=normalize_kind(kind),  # type: ignore[arg-type]
        started_at=parse_iso(started_at) or utc_now(),
        duration_sec=int(duration_sec),
        team=team,
    )


def parse_timer(value: Any) -> Timer | None:
    """Hydrate a stored timer record, tolerating snake_case keys.

    Unknown kinds fall back to a team timeout; a record without an id is not a
    timer at all.
    """
    if not isinstance(value, dict) or value.get("id") is None:
        return None

    kind = value.get("type")
    if kind not in TIMER_KINDS:
        kind = "TIMEOUT_TEAM"

    started_at = parse_iso(value.get("startedAt", value.get("started_at"))) or utc_now()
    raw_duration = value.get("durationSec", value.get("duration_seconds"))
    try:
        duration = int(raw_duration)
    except (TypeError, ValueError):
        duration = 0
    if duration <= 0:
        # Older rows kept only the end time.
        ends_at = parse_iso(value.get("endsAt", value.get("ends_at")))
        duration = max(int((ends_at - started_at).total_seconds()), 0) if ends_at else 0

    team = value.get("team")
    return Timer(
        id=str(value["id"]),
        kind=kind,
        started_at=started_at,
        duration_sec=duration,
        team=team if team in ("A", "B") else None,
    )


def remaining_seconds(timer: Timer | TimerRecord | None, now: datetime | None = None) -> int:
    """Whole seconds left on ``timer`` (rounded up), never negative."""
    if timer is None:
        return 0
    if isinstance(timer, dict):
        timer = parse_timer(timer)
        if timer is None:
            return 0
    now = now or utc_now()
    diff = math.ceil((timer.ends_at - now).total_seconds())
    return diff if diff > 0 else 0


def is_expired(timer: Timer | TimerRecord | None, now: datetime | None = None) -> bool:
    if timer is None:
        return False
    if isinstance(timer, dict):
        timer = parse_timer(timer)
        if timer is None:
            return False
    return (now or utc_now()) >= timer.ends_at
