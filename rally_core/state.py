"""Match state factory, hydration and storage-row mapping.

Hydration is deliberately forgiving: rows written by older clients may miss
fields or hold malformed JSON, and every field falls back to the factory
default instead of failing the load.
"""
from __future__ import annotations

import math
from copy import deepcopy
from typing import Any, Dict, Iterable, List

from .match_config import MatchConfig
from .timer import parse_timer
from .types import (
    MatchState,
    MatchStateRow,
    ScoreRow,
    SetConfiguration,
    TeamSetConfiguration,
)

TEAMS = ("A", "B")


def team_key(team: str) -> str:
    return "teamA" if team == "A" else "teamB"


def opposite(team: str) -> str:
    return "B" if team == "A" else "A"


def set_index(state: MatchState) -> int:
    """0-based index of the current set."""
    return max(int(state.get("currentSet") or 1) - 1, 0)


def current_set_configuration(state: MatchState) -> SetConfiguration:
    configs = state.get("setConfigurations") or []
    idx = set_index(state)
    return configs[idx] if idx < len(configs) else {}


def is_current_set_configured(state: MatchState) -> bool:
    return bool(current_set_configuration(state).get("isConfigured"))


def set_points(state: MatchState, idx: int | None = None) -> tuple[int, int]:
    idx = set_index(state) if idx is None else idx
    return state["scores"]["teamA"][idx], state["scores"]["teamB"][idx]


# ==================== DEFAULTS ====================


def default_service_order(config: MatchConfig, team: str) -> List[int]:
    return [index + 1 for index in range(config.player_count(team))]


def default_team_configuration(config: MatchConfig, team: str) -> TeamSetConfiguration:
    count = config.player_count(team)
    return {
        "jerseyAssignment": {str(index + 1): index for index in range(count)},
        "serviceOrder": default_service_order(config, team),
    }


def default_set_configuration(config: MatchConfig, set_number: int) -> SetConfiguration:
    return {
        "setNumber": set_number,
        "isConfigured": False,
        "firstChoiceTeam": "A",
        "firstChoiceOption": "serve",
        "secondChoiceOption": "side",
        "sideChoiceTeam": "B",
        "sideSelection": "left",
        "startingServerTeam": "A",
        "startingReceiverTeam": "B",
        "startingServerPlayer": 1,
        "coinToss": {"performed": False, "winner": None, "loser": None},
        "teams": {
            "teamA": default_team_configuration(config, "A"),
            "teamB": default_team_configuration(config, "B"),
        },
    }


def default_state(config: MatchConfig) -> MatchState:
    """Create a fresh match state: set 1, nothing configured, no score."""
    sets = config.total_sets
    return {
        "id": f"{config.id}-state",
        "gameId": config.id,
        "currentSet": 1,
        "setsWon": {"teamA": 0, "teamB": 0},
        "scores": {"teamA": [0] * sets, "teamB": [0] * sets},
        "currentServerTeam": "A",
        "currentServerPlayer": 1,
        "possession": "A",
        "leftIsTeamA": True,
        "timeoutsUsed": {"teamA": [0] * sets, "teamB": [0] * sets},
        "technicalTimeoutUsed": [False] * sets,
        "sidesSwitched": [0] * sets,
        "serviceOrders": {
            "teamA": default_service_order(config, "A"),
            "teamB": default_service_order(config, "B"),
        },
        "nextServerIndex": {"teamA": 0, "teamB": 0},
        "setConfigurations": [
            default_set_configuration(config, number + 1) for number in range(sets)
        ],
        "activeTimer": None,
        "isGameEnded": False,
    }


# ==================== COERCION ====================


def _coerce_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else fallback
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return fallback
    return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _int_list(value: Any, fallback: List[int]) -> List[int]:
    """Parse a list of ints, padding a short list from ``fallback``."""
    if not isinstance(value, list):
        return list(fallback)
    last = fallback[-1] if fallback else 0
    result = [
        _coerce_int(item, fallback[i] if i < len(fallback) else last)
        for i, item in enumerate(value)
    ]
    if len(result) < len(fallback):
        result.extend(fallback[len(result):])
    return result


def _bool_list(value: Any, fallback: List[bool]) -> List[bool]:
    if not isinstance(value, list):
        return list(fallback)
    last = fallback[-1] if fallback else False
    result = [
        _coerce_bool(item, fallback[i] if i < len(fallback) else last)
        for i, item in enumerate(value)
    ]
    if len(result) < len(fallback):
        result.extend(fallback[len(result):])
    return result


def _team_lists(
    value: Any, fallback: Dict[str, List[int]], per_set: bool = False
) -> Dict[str, List[int]]:
    if not isinstance(value, dict):
        return deepcopy(fallback)
    result = {
        "teamA": _int_list(value.get("teamA"), fallback["teamA"]),
        "teamB": _int_list(value.get("teamB"), fallback["teamB"]),
    }
    if per_set:
        # one entry per configured set, never more
        result = {key: values[: len(fallback[key])] for key, values in result.items()}
    return result


def _team_counts(value: Any, fallback: Dict[str, int]) -> Dict[str, int]:
    if not isinstance(value, dict):
        return dict(fallback)
    return {
        "teamA": _coerce_int(value.get("teamA"), fallback["teamA"]),
        "teamB": _coerce_int(value.get("teamB"), fallback["teamB"]),
    }


def _team_id(value: Any, fallback: str) -> str:
    return value if value in TEAMS else fallback


def _choice(value: Any, allowed: Iterable[str], fallback: str) -> str:
    return value if value in allowed else fallback


def _merge_team_configuration(
    stored: Any, default: TeamSetConfiguration
) -> TeamSetConfiguration:
    if not isinstance(stored, dict):
        return deepcopy(default)
    assignment = dict(default["jerseyAssignment"])
    if isinstance(stored.get("jerseyAssignment"), dict):
        for key, value in stored["jerseyAssignment"].items():
            assignment[str(key)] = _coerce_int(value, assignment.get(str(key), 0))
    return {
        "jerseyAssignment": assignment,
        "serviceOrder": _int_list(stored.get("serviceOrder"), default["serviceOrder"]),
    }


def _merge_set_configuration(stored: Any, default: SetConfiguration) -> SetConfiguration:
    if not isinstance(stored, dict):
        return deepcopy(default)

    coin_toss = stored.get("coinToss") if isinstance(stored.get("coinToss"), dict) else {}
    teams = stored.get("teams") if isinstance(stored.get("teams"), dict) else {}
    server = _team_id(stored.get("startingServerTeam"), default["startingServerTeam"])

    return {
        "setNumber": _coerce_int(stored.get("setNumber"), default["setNumber"]),
        "isConfigured": _coerce_bool(stored.get("isConfigured"), default["isConfigured"]),
        "firstChoiceTeam": _team_id(stored.get("firstChoiceTeam"), default["firstChoiceTeam"]),
        "firstChoiceOption": _choice(
            stored.get("firstChoiceOption"),
            ("serve", "receive", "side"),
            default["firstChoiceOption"],
        ),
        "secondChoiceOption": _choice(
            stored.get("secondChoiceOption"),
            ("serve", "receive", "side"),
            default["secondChoiceOption"],
        ),
        "sideChoiceTeam": _team_id(stored.get("sideChoiceTeam"), default["sideChoiceTeam"]),
        "sideSelection": _choice(
            stored.get("sideSelection"), ("left", "right"), default["sideSelection"]
        ),
        "startingServerTeam": server,
        "startingReceiverTeam": _team_id(stored.get("startingReceiverTeam"), opposite(server)),
        "startingServerPlayer": _coerce_int(
            stored.get("startingServerPlayer"), default["startingServerPlayer"]
        ),
        "coinToss": {
            "performed": _coerce_bool(coin_toss.get("performed"), False),
            "winner": coin_toss.get("winner") if coin_toss.get("winner") in TEAMS else None,
            "loser": coin_toss.get("loser") if coin_toss.get("loser") in TEAMS else None,
        },
        "teams": {
            "teamA": _merge_team_configuration(teams.get("teamA"), default["teams"]["teamA"]),
            "teamB": _merge_team_configuration(teams.get("teamB"), default["teams"]["teamB"]),
        },
    }


# ==================== PRIMARY ROW MAPPING ====================


def hydrate_state(row: MatchStateRow, config: MatchConfig) -> MatchState:
    """Build a MatchState from a ``match_states`` row."""
    state = default_state(config)
    stored_configs = row.get("set_configurations")
    if isinstance(stored_configs, list):
        state["setConfigurations"] = [
            _merge_set_configuration(
                stored_configs[i] if i < len(stored_configs) else None, default
            )
            for i, default in enumerate(state["setConfigurations"])
        ]

    timer = parse_timer(row.get("active_timer"))
    current_set = _coerce_int(row.get("current_set"), 1)

    state.update(
        {
            "currentSet": min(max(current_set, 1), config.total_sets),
            "setsWon": _team_counts(row.get("sets_won"), state["setsWon"]),
            "scores": _team_lists(row.get("scores"), state["scores"], per_set=True),
            "currentServerTeam": _team_id(row.get("current_server_team"), "A"),
            "currentServerPlayer": _coerce_int(row.get("current_server_player"), 1),
            "possession": _team_id(row.get("possession"), "A"),
            "leftIsTeamA": _coerce_bool(row.get("left_is_team_a"), True),
            "timeoutsUsed": _team_lists(
                row.get("timeouts_used"), state["timeoutsUsed"], per_set=True
            ),
            "technicalTimeoutUsed": _bool_list(
                row.get("technical_timeout_used"), state["technicalTimeoutUsed"]
            )[: config.total_sets],
            "sidesSwitched": _int_list(
                row.get("sides_switched"), state["sidesSwitched"]
            )[: config.total_sets],
            "serviceOrders": _team_lists(row.get("service_orders"), state["serviceOrders"]),
            "nextServerIndex": _team_counts(row.get("next_server_index"), state["nextServerIndex"]),
            "activeTimer": timer.to_record() if timer else None,
            "isGameEnded": _coerce_bool(row.get("is_game_ended"), False),
        }
    )
    return state


def state_to_row(state: MatchState) -> MatchStateRow:
    """Map a MatchState onto a ``match_states`` row (JSON-compatible copy)."""
    return deepcopy(
        {
            "match_id": state["gameId"],
            "current_set": state["currentSet"],
            "sets_won": state["setsWon"],
            "scores": state["scores"],
            "current_server_team": state["currentServerTeam"],
            "current_server_player": state["currentServerPlayer"],
            "possession": state["possession"],
            "left_is_team_a": state["leftIsTeamA"],
            "timeouts_used": state["timeoutsUsed"],
            "technical_timeout_used": state["technicalTimeoutUsed"],
            "sides_switched": state["sidesSwitched"],
            "service_orders": state["serviceOrders"],
            "next_server_index": state["nextServerIndex"],
            "set_configurations": state["setConfigurations"],
            "active_timer": state.get("activeTimer"),
            "is_game_ended": state["isGameEnded"],
        }
    )


# ==================== LEGACY SCORE ROWS ====================


def score_rows_to_state(rows: Iterable[ScoreRow] | None, config: MatchConfig) -> MatchState:
    """Rebuild what the legacy per-set table can tell: scores, sets won, set index.

    A stored set counts as won when one side reached its target with a two
    point margin, which is how the legacy writer closed sets.
    """
    state = default_state(config)
    rows = sorted(rows or [], key=lambda r: r["set_number"])
    if not rows:
        return state

    total = config.total_sets
    highest = 1
    for row in rows:
        idx = min(max(row["set_number"] - 1, 0), total - 1)
        highest = max(highest, row["set_number"])
        a, b = row["team_a_points"], row["team_b_points"]
        state["scores"]["teamA"][idx] = a
        state["scores"]["teamB"][idx] = b

        target = config.target_points(idx)
        if abs(a - b) >= 2 and (a >= target or b >= target):
            state["setsWon"]["teamA" if a > b else "teamB"] += 1

    won = state["setsWon"]
    state["isGameEnded"] = max(won["teamA"], won["teamB"]) >= config.sets_to_win
    state["currentSet"] = min(max(highest, 1), total)

    # A set that was played must have been configured; a 0-0 current set still needs it.
    current = set_index(state)
    for idx, set_config in enumerate(state["setConfigurations"]):
        played = state["scores"]["teamA"][idx] or state["scores"]["teamB"][idx]
        if idx < current or played:
            set_config["isConfigured"] = True
    return state


def state_to_score_rows(state: MatchState) -> List[ScoreRow]:
    """Completed sets, the current set, and any later set that has points."""
    rows: List[ScoreRow] = []
    current = set_index(state)
    total = max(len(state["scores"]["teamA"]), len(state["scores"]["teamB"]))
    for idx in range(total):
        a = state["scores"]["teamA"][idx] if idx < len(state["scores"]["teamA"]) else 0
        b = state["scores"]["teamB"][idx] if idx < len(state["scores"]["teamB"]) else 0
        if idx > current and a == 0 and b == 0:
            continue
        rows.append(
            {
                "match_id": state["gameId"],
                "set_number": idx + 1,
                "team_a_points": a,
                "team_b_points": b,
            }
        )
    return rows
