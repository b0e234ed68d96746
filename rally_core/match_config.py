"""Immutable match configuration and format presets."""
from __future__ import annotations

import math
from typing import Callable, List, Literal, Optional, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .validation import InputSanitizer

# (set_index, total_sets) -> does this set start with a fresh coin toss?
CoinTossRule = Callable[[int, int], bool]


def default_coin_toss_rule(set_index: int, total_sets: int) -> bool:
    """First set, and the deciding last set of a multi-set match."""
    if set_index == 0:
        return True
    return total_sets > 1 and set_index == total_sets - 1


def calculate_side_switch_sum(points_per_set: List[int]) -> List[int]:
    """Sets to 21 switch every 7 points, shorter sets every 5."""
    return [7 if points >= 21 else 5 for points in points_per_set]


class Player(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=255)
    number: Optional[int] = Field(None, ge=0, le=99)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = InputSanitizer.sanitize_name(v)
        if not v:
            raise ValueError("player name cannot be empty")
        return v


class TeamConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=255)
    players: List[Player] = Field(..., min_length=1, max_length=12)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = InputSanitizer.sanitize_name(v)
        if not v:
            raise ValueError("team name cannot be empty")
        return v


class MatchConfig(BaseModel):
    """Read-only configuration of one match, keyed by ``id``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=64)
    teamA: TeamConfig
    teamB: TeamConfig

    # One target per set; the length is the number of sets.
    pointsPerSet: List[int] = Field(default_factory=lambda: [21, 21, 15], min_length=1)
    requiredLead: int = Field(2, ge=1, le=2)
    sideSwitchSum: List[int] = Field(default_factory=list, validate_default=True)

    teamTimeoutsPerSet: int = Field(2, ge=0, le=10)
    teamTimeoutDurationSec: int = Field(30, ge=1, le=600)
    hasTechnicalTimeout: bool = False
    technicalTimeoutSum: int = Field(21, ge=1)

    coinTossMode: Literal["initialThenAlternate"] = "initialThenAlternate"

    @field_validator("pointsPerSet")
    @classmethod
    def validate_points_per_set(cls, v: List[int]) -> List[int]:
        if any(points < 1 for points in v):
            raise ValueError("pointsPerSet entries must be positive")
        if len(v) % 2 == 0:
            raise ValueError("pointsPerSet must describe an odd number of sets")
        return v

    @field_validator("sideSwitchSum")
    @classmethod
    def validate_side_switch_sum(cls, v: List[int], info: ValidationInfo) -> List[int]:
        points_per_set = info.data.get("pointsPerSet")
        if points_per_set is None:
            return v
        if not v:
            return calculate_side_switch_sum(points_per_set)
        if len(v) != len(points_per_set):
            raise ValueError("sideSwitchSum must have one entry per set")
        if any(threshold < 1 for threshold in v):
            raise ValueError("sideSwitchSum entries must be positive")
        return v

    @model_validator(mode="after")
    def validate_rosters(self) -> Self:
        for team in (self.teamA, self.teamB):
            numbers = [p.number for p in team.players if p.number is not None]
            if len(numbers) != len(set(numbers)):
                raise ValueError(f"team {team.name} has duplicate player numbers")
        return self

    @property
    def total_sets(self) -> int:
        return len(self.pointsPerSet)

    @property
    def sets_to_win(self) -> int:
        return math.ceil(self.total_sets / 2)

    def target_points(self, set_index: int) -> int:
        clamped = min(max(set_index, 0), self.total_sets - 1)
        return self.pointsPerSet[clamped]

    def side_switch_threshold(self, set_index: int) -> int:
        clamped = min(max(set_index, 0), self.total_sets - 1)
        return self.sideSwitchSum[clamped]

    def team(self, team: str) -> TeamConfig:
        return self.teamA if team == "A" else self.teamB

    def player_count(self, team: str) -> int:
        return len(self.team(team).players)


MATCH_FORMAT_PRESETS = {
    "best3_21_15": {"pointsPerSet": [21, 21, 15], "sideSwitchSum": [7, 7, 5]},
    "best3_15_15": {"pointsPerSet": [15, 15, 15], "sideSwitchSum": [5, 5, 5]},
    "best3_15_10": {"pointsPerSet": [15, 15, 10], "sideSwitchSum": [5, 5, 5]},
    "single_21": {"pointsPerSet": [21], "sideSwitchSum": [7]},
}

_FORMAT_TO_PRESET = {
    "melhorDe3": "best3_21_15",
    "melhorDe3_15": "best3_15_15",
    "melhorDe3_15_10": "best3_15_10",
    "melhorDe1": "single_21",
}


def preset_for_format(match_format: str | None) -> dict:
    """Targets and switch thresholds for a tournament format name.

    Accepts preset keys directly; unknown formats get best of three 21/21/15.
    """
    key = match_format if match_format in MATCH_FORMAT_PRESETS else _FORMAT_TO_PRESET.get(
        match_format or "", "best3_21_15"
    )
    preset = MATCH_FORMAT_PRESETS[key]
    return {
        "pointsPerSet": list(preset["pointsPerSet"]),
        "sideSwitchSum": list(preset["sideSwitchSum"]),
    }
