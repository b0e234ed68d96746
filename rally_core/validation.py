"""
Input validation schemas using Pydantic v2
Validates operator commands and the pre-set ceremony input
"""

import logging
import re
from typing import Any, Dict, List, Literal, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from .timer import KIND_ALIASES, TIMER_KINDS

logger = logging.getLogger(__name__)

COMMAND_TYPES = {
    "ADD_POINT",
    "SWITCH_SERVER_TEAM",
    "CHANGE_CURRENT_SERVER",
    "APPLY_SET_CONFIGURATION",
    "EDIT_SET_CONFIGURATION",
    "START_TIMEOUT",
    "FINALIZE_TIMEOUT",
}

POINT_CATEGORIES = {"ATTACK", "BLOCK", "SERVE_POINT", "OPPONENT_ERROR"}

TIMEOUT_KINDS = set(TIMER_KINDS)


# ==================== SET CONFIGURATION INPUT ====================


class TeamSetupInput(BaseModel):
    """Jersey assignment and service order for one team."""

    # Jersey number ("1".."N") -> index into the team's players list
    jerseyAssignment: Dict[str, int] = Field(default_factory=dict)
    serviceOrder: List[int] = Field(default_factory=list)

    @field_validator("jerseyAssignment", mode="before")
    @classmethod
    def normalize_jersey_keys(cls, v: Any) -> Any:
        """Accept integer jersey keys (e.g. decoded from non-JSON sources)"""
        if isinstance(v, dict):
            return {str(key).strip(): value for key, value in v.items()}
        return v


class SetConfigurationInput(BaseModel):
    """Operator decisions captured during the pre-set ceremony.

    Shapes are checked here; completeness against the roster is checked by
    ``set_config.check_set_configuration`` so an incomplete draft can still be
    held and reported on.
    """

    coinTossWinner: Optional[Literal["A", "B"]] = None
    firstChoiceTeam: Optional[Literal["A", "B"]] = None
    firstChoiceOption: Literal["serve", "receive", "side"]
    secondChoiceOption: Optional[Literal["serve", "receive"]] = None
    sideSelection: Optional[Literal["left", "right"]] = None

    # None -> inherit from the previous set (team defaults for set 1)
    teamA: Optional[TeamSetupInput] = None
    teamB: Optional[TeamSetupInput] = None

    @model_validator(mode="after")
    def validate_first_choice_team(self) -> Self:
        """Coin toss winner always holds the first choice"""
        if (
            self.coinTossWinner is not None
            and self.firstChoiceTeam is not None
            and self.firstChoiceTeam != self.coinTossWinner
        ):
            raise ValueError("firstChoiceTeam must be the coin toss winner")
        return self

    def team(self, team: str) -> Optional[TeamSetupInput]:
        return self.teamA if team == "A" else self.teamB


# ==================== COMMANDS ====================


class ValidatedCmd(BaseModel):
    """Operator command with per-type field requirements"""

    type: str = Field(..., min_length=1, max_length=50, description="Command type")
    matchId: Optional[str] = Field(None, min_length=1, max_length=64)

    # ADD_POINT / START_TIMEOUT
    team: Optional[Literal["A", "B"]] = None
    category: Optional[str] = Field(None, max_length=50, description="Point category")

    # APPLY_SET_CONFIGURATION
    configuration: Optional[SetConfigurationInput] = None

    # START_TIMEOUT / FINALIZE_TIMEOUT
    kind: Optional[str] = Field(None, max_length=30, description="Timeout kind")
    timerId: Optional[str] = Field(None, min_length=1, max_length=64)

    model_config = ConfigDict(extra="ignore")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate command type is one of allowed types"""
        v = v.strip().upper()
        if v not in COMMAND_TYPES:
            raise ValueError(f"type must be one of {sorted(COMMAND_TYPES)}, got {v}")
        return v

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        if not v:
            return None
        if v not in POINT_CATEGORIES:
            raise ValueError(f"category must be one of {sorted(POINT_CATEGORIES)}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: Optional[str]) -> Optional[str]:
        """Accept 'team' / 'technical' / 'medical' shorthands"""
        if v is None:
            return v
        v = KIND_ALIASES.get(v.strip().lower(), v.strip().upper())
        if v not in TIMEOUT_KINDS:
            raise ValueError(f"kind must be one of {sorted(TIMEOUT_KINDS)}")
        return v

    @model_validator(mode="after")
    def validate_command_fields(self) -> Self:
        """Validate required fields based on command type"""
        cmd_type = self.type

        if cmd_type == "ADD_POINT":
            if self.team is None:
                raise ValueError("ADD_POINT requires team")

        elif cmd_type == "APPLY_SET_CONFIGURATION":
            if self.configuration is None:
                raise ValueError("APPLY_SET_CONFIGURATION requires configuration")

        elif cmd_type == "START_TIMEOUT":
            if self.kind is None:
                raise ValueError("START_TIMEOUT requires kind")
            if self.kind == "TIMEOUT_TEAM" and self.team is None:
                raise ValueError("team timeout requires team")

        elif cmd_type == "FINALIZE_TIMEOUT":
            if self.timerId is None:
                raise ValueError("FINALIZE_TIMEOUT requires timerId")

        return self


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        value = value.replace("\0", "")

        return value

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Sanitize team/player name for display - keep accented letters"""
        name = InputSanitizer.sanitize_string(name, 255)

        # Remove control characters and markup/SQL special chars only
        dangerous_chars = r'[<>{}[\]\\|;()&$`"\*\x00-\x1f\x7f]'
        name = re.sub(dangerous_chars, "", name)

        return name.strip()

    @staticmethod
    def validate_cmd(cmd_dict: dict) -> ValidatedCmd:
        """
        Validate command dictionary

        Returns:
            ValidatedCmd: Validated command object

        Raises:
            ValueError: If validation fails
        """
        try:
            return ValidatedCmd(**cmd_dict)
        except PydanticValidationError as e:
            logger.warning(f"Command validation failed: {e}")
            raise ValueError(f"Invalid command: {str(e)}")


# ==================== EXPORT ====================

__all__ = [
    "COMMAND_TYPES",
    "POINT_CATEGORIES",
    "SetConfigurationInput",
    "TeamSetupInput",
    "ValidatedCmd",
    "InputSanitizer",
]
