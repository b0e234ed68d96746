"""Match scoring transitions (pure, no I/O).

This module implements the rules that turn one operator action into the next
match state. Every function is deterministic and side-effect free: it works on
a deepcopy of the incoming state and returns a MutationOutcome; the caller
(MatchSession) owns persistence, history and event delivery.

Key concepts:
- currentSet: 1-based; per-set arrays are indexed by currentSet - 1
- possession: team that won the last rally and therefore serves
- nextServerIndex: per team, position in serviceOrders of the player who
  serves the next time that team wins the serve back
- leftIsTeamA: court side flag, flipped each time the set total hits a
  positive multiple of the set's sideSwitchSum
- a set is won at target points with the configured lead (deuce has no cap)

Rejections raise ValidationError and leave the input untouched.

Command types for apply_command():
- ADD_POINT: score a rally for ``team`` (optional point ``category``)
- SWITCH_SERVER_TEAM: hand the serve to the other team (manual override)
- CHANGE_CURRENT_SERVER: next player of the serving team (rotation fix)
- APPLY_SET_CONFIGURATION / EDIT_SET_CONFIGURATION: pre-set ceremony
- START_TIMEOUT / FINALIZE_TIMEOUT: stoppages
"""
from __future__ import annotations

import logging
import uuid
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import ValidationError
from .match_config import CoinTossRule, MatchConfig, default_coin_toss_rule
from .outcome import GAME_END, OVERRIDE, POINT, SET_END, SIDE_SWITCH, DomainEvent, MutationOutcome
from .set_config import apply_set_configuration, edit_set_configuration
from .settings import Settings
from .state import (
    TEAMS,
    default_service_order,
    is_current_set_configured,
    opposite,
    set_index,
    set_points,
    team_key,
)
from .timeouts import finalize_timeout, start_timeout, technical_timeout_due
from .timer import utc_now
from .types import MatchState
from .validation import POINT_CATEGORIES, InputSanitizer

logger = logging.getLogger(__name__)


def set_winner(score_a: int, score_b: int, target: int, required_lead: int) -> Optional[str]:
    """Team that has closed the set, if any."""
    if score_a >= target and score_a - score_b >= required_lead:
        return "A"
    if score_b >= target and score_b - score_a >= required_lead:
        return "B"
    return None


def _check_can_mutate(state: MatchState) -> None:
    if state.get("isGameEnded"):
        raise ValidationError("match_ended", "match has already ended")
    if not is_current_set_configured(state):
        raise ValidationError("set_unconfigured", "configure the current set first")


def _advance_rotation(state: MatchState, team: str) -> int:
    """Serve with ``team``'s next player and move its pointer on (mutates state)."""
    key = team_key(team)
    order = state["serviceOrders"][key]
    pointer = state["nextServerIndex"][key] % len(order)
    state["nextServerIndex"][key] = (pointer + 1) % len(order)
    return order[pointer]


def _start_next_set(state: MatchState, config: MatchConfig) -> None:
    """Move to the next set; it stays unconfigured until its ceremony is applied."""
    state["currentSet"] += 1
    orders = {
        "teamA": default_service_order(config, "A"),
        "teamB": default_service_order(config, "B"),
    }
    state["serviceOrders"] = orders
    state["nextServerIndex"] = {"teamA": 0, "teamB": 0}
    state["currentServerTeam"] = "A"
    state["currentServerPlayer"] = orders["teamA"][0]
    state["possession"] = "A"
    state["setConfigurations"][set_index(state)]["isConfigured"] = False


def add_point(
    state: MatchState,
    config: MatchConfig,
    team: str,
    category: str | None = None,
) -> MutationOutcome:
    """Score one rally for ``team``.

    Events come out in order: POINT, SIDE_SWITCH (if the total hit the
    threshold), SET_END and GAME_END (if the set / match closed).
    """
    if team not in TEAMS:
        raise ValidationError("invalid_command", f"unknown team {team!r}")
    if category is not None and category not in POINT_CATEGORIES:
        raise ValidationError("invalid_command", f"unknown point category {category!r}")
    _check_can_mutate(state)

    new_state: MatchState = deepcopy(state)
    idx = set_index(new_state)
    set_number = idx + 1
    new_state["scores"][team_key(team)][idx] += 1

    # Side out: the scoring team takes the serve with its next player.
    if team != new_state["possession"]:
        new_state["currentServerTeam"] = team
        new_state["currentServerPlayer"] = _advance_rotation(new_state, team)
        new_state["possession"] = team

    score_a, score_b = set_points(new_state, idx)
    events = [
        DomainEvent(
            POINT,
            set_number=set_number,
            team=team,
            category=category,
            metadata={
                "scoreA": score_a,
                "scoreB": score_b,
                "server": new_state["currentServerPlayer"],
            },
        )
    ]

    total = score_a + score_b
    if total > 0 and total % config.side_switch_threshold(idx) == 0:
        new_state["leftIsTeamA"] = not new_state["leftIsTeamA"]
        new_state["sidesSwitched"][idx] += 1
        events.append(
            DomainEvent(
                SIDE_SWITCH,
                set_number=set_number,
                metadata={"total": total, "leftIsTeamA": new_state["leftIsTeamA"]},
            )
        )

    due = technical_timeout_due(new_state, config)

    winner = set_winner(score_a, score_b, config.target_points(idx), config.requiredLead)
    if winner is not None:
        due = False
        winner_key = team_key(winner)
        new_state["setsWon"][winner_key] += 1
        new_state["activeTimer"] = None
        events.append(
            DomainEvent(
                SET_END,
                set_number=set_number,
                team=winner,
                metadata={"scoreA": score_a, "scoreB": score_b},
            )
        )
        logger.info(
            f"Set {set_number} of {new_state['gameId']} won by {winner} ({score_a}-{score_b})"
        )

        if new_state["setsWon"][winner_key] >= config.sets_to_win:
            new_state["isGameEnded"] = True
            events.append(
                DomainEvent(
                    GAME_END,
                    set_number=set_number,
                    team=winner,
                    metadata={"setsWon": dict(new_state["setsWon"])},
                )
            )
            logger.info(f"Match {new_state['gameId']} won by {winner}")
        else:
            _start_next_set(new_state, config)

    return MutationOutcome(state=new_state, events=events, technical_timeout_due=due)


def switch_server_team(state: MatchState, config: MatchConfig) -> MutationOutcome:
    """Give the serve to the other team with its next player in rotation."""
    _check_can_mutate(state)

    new_state: MatchState = deepcopy(state)
    team = opposite(new_state["currentServerTeam"])
    new_state["currentServerTeam"] = team
    new_state["currentServerPlayer"] = _advance_rotation(new_state, team)
    new_state["possession"] = team

    event = DomainEvent(
        OVERRIDE,
        set_number=set_index(new_state) + 1,
        team=team,
        metadata={"action": "switch_server_team", "server": new_state["currentServerPlayer"]},
    )
    return MutationOutcome(state=new_state, events=[event])


def change_current_server(state: MatchState, config: MatchConfig) -> MutationOutcome:
    """Next player of the serving team takes over the serve."""
    _check_can_mutate(state)

    new_state: MatchState = deepcopy(state)
    team = new_state["currentServerTeam"]
    new_state["currentServerPlayer"] = _advance_rotation(new_state, team)

    event = DomainEvent(
        OVERRIDE,
        set_number=set_index(new_state) + 1,
        team=team,
        metadata={"action": "change_current_server", "server": new_state["currentServerPlayer"]},
    )
    return MutationOutcome(state=new_state, events=[event])


def apply_command(
    state: MatchState,
    config: MatchConfig,
    cmd: Dict[str, Any],
    *,
    now: datetime | None = None,
    coin_toss_rule: CoinTossRule = default_coin_toss_rule,
    settings: Settings | None = None,
) -> MutationOutcome:
    """Validate an operator command dict and apply it to ``state``.

    Args:
        state: Current match state (not mutated)
        config: Match configuration
        cmd: Command dict with 'type' field and command-specific params
        now: Clock value for timers (defaults to the current UTC time)
        coin_toss_rule: Decides which sets start with a coin toss

    Returns:
        MutationOutcome with the new state and the events it produced

    Raises:
        ValidationError: malformed command (kind='invalid_command') or unmet
            precondition (see the individual transitions)
    """
    try:
        validated = InputSanitizer.validate_cmd(cmd)
    except ValueError as exc:
        raise ValidationError("invalid_command", str(exc)) from exc

    ctype = validated.type

    if ctype == "ADD_POINT":
        return add_point(state, config, validated.team, validated.category)

    elif ctype == "SWITCH_SERVER_TEAM":
        return switch_server_team(state, config)

    elif ctype == "CHANGE_CURRENT_SERVER":
        return change_current_server(state, config)

    elif ctype == "APPLY_SET_CONFIGURATION":
        return apply_set_configuration(
            state, config, validated.configuration, coin_toss_rule=coin_toss_rule
        )

    elif ctype == "EDIT_SET_CONFIGURATION":
        return edit_set_configuration(state)

    elif ctype == "START_TIMEOUT":
        return start_timeout(
            state,
            config,
            validated.kind,
            validated.team,
            timer_id=validated.timerId or str(uuid.uuid4()),
            now=now or utc_now(),
            settings=settings,
        )

    elif ctype == "FINALIZE_TIMEOUT":
        return finalize_timeout(state, validated.timerId)

    raise ValidationError("invalid_command", f"unhandled command type {ctype}")
