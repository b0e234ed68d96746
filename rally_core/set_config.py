"""Pre-set ceremony: coin toss, serve/receive/side choices, jerseys, service order.

A set moves UNCONFIGURED -> CONFIGURED through apply_set_configuration() and
can be sent back with edit_set_configuration() while it has no points. Points
and timeouts are refused while the current set is unconfigured.

Choice resolution:
- first choice "serve": first-choice team serves, the other team picks a side
- first choice "receive": the other team serves and picks a side
- first choice "side": first-choice team picks a side, the other team decides
  serve/receive (``secondChoiceOption``)
"""
from __future__ import annotations

import logging
from copy import deepcopy
from typing import List, Optional

from .errors import ValidationError
from .match_config import CoinTossRule, MatchConfig, default_coin_toss_rule
from .outcome import SET_CONFIGURED, DomainEvent, MutationOutcome
from .state import (
    TEAMS,
    current_set_configuration,
    default_team_configuration,
    is_current_set_configured,
    opposite,
    set_index,
    set_points,
    team_key,
)
from .types import MatchState, TeamSetConfiguration
from .validation import SetConfigurationInput

logger = logging.getLogger(__name__)


def requires_coin_toss(
    state: MatchState,
    config: MatchConfig,
    coin_toss_rule: CoinTossRule = default_coin_toss_rule,
) -> bool:
    return bool(coin_toss_rule(set_index(state), config.total_sets))


def resolve_first_choice_team(
    state: MatchState, draft: SetConfigurationInput, coin_toss_required: bool
) -> Optional[str]:
    """Team holding the first choice for the current set.

    With a coin toss it is the winner. Without one, an explicit choice wins;
    otherwise first choice alternates from the previous set.
    """
    if coin_toss_required:
        return draft.coinTossWinner
    if draft.firstChoiceTeam is not None:
        return draft.firstChoiceTeam
    if draft.coinTossWinner is not None:
        return draft.coinTossWinner
    idx = set_index(state)
    if idx == 0:
        return "A"
    previous = state["setConfigurations"][idx - 1]
    return opposite(previous.get("firstChoiceTeam", "B"))


def resolve_team_setup(
    state: MatchState, config: MatchConfig, draft: SetConfigurationInput, team: str
) -> TeamSetConfiguration:
    """Jerseys and service order from the draft, else inherited from the previous set."""
    given = draft.team(team)
    if given is not None:
        return {
            "jerseyAssignment": dict(given.jerseyAssignment),
            "serviceOrder": list(given.serviceOrder),
        }
    idx = set_index(state)
    if idx > 0:
        previous = state["setConfigurations"][idx - 1]
        inherited = (previous.get("teams") or {}).get(team_key(team))
        if inherited:
            return deepcopy(inherited)
    return default_team_configuration(config, team)


def check_set_configuration(
    state: MatchState,
    config: MatchConfig,
    draft: SetConfigurationInput,
    *,
    coin_toss_required: bool,
) -> List[str]:
    """List everything that keeps ``draft`` from being applied; empty means valid."""
    problems: List[str] = []

    if coin_toss_required and draft.coinTossWinner is None:
        problems.append("coin toss winner is required for this set")
    if draft.firstChoiceOption == "side" and draft.secondChoiceOption is None:
        problems.append("second choice (serve/receive) is required after a side choice")
    if draft.sideSelection is None:
        problems.append("side selection is required")

    for team in TEAMS:
        setup = resolve_team_setup(state, config, draft, team)
        count = config.player_count(team)
        expected_slots = {str(number) for number in range(1, count + 1)}

        assignment = setup["jerseyAssignment"]
        if set(assignment) != expected_slots:
            problems.append(f"team {team}: jerseys 1..{count} must all be assigned")
        players = list(assignment.values())
        if len(set(players)) != len(players) or any(
            not 0 <= player < count for player in players
        ):
            problems.append(f"team {team}: each jersey must map to a distinct player")

        if sorted(setup["serviceOrder"]) != list(range(1, count + 1)):
            problems.append(f"team {team}: service order must list jerseys 1..{count} once each")

    return problems


def is_set_configuration_valid(
    state: MatchState,
    config: MatchConfig,
    draft: SetConfigurationInput,
    *,
    coin_toss_required: bool,
) -> bool:
    return not check_set_configuration(
        state, config, draft, coin_toss_required=coin_toss_required
    )


def apply_set_configuration(
    state: MatchState,
    config: MatchConfig,
    draft: SetConfigurationInput,
    *,
    coin_toss_rule: CoinTossRule = default_coin_toss_rule,
) -> MutationOutcome:
    """Record the ceremony for the current set and seed serving from it.

    The starting server's rotation pointer starts at 1 because its first
    server is already on the ball; the receiving team starts at 0.
    """
    if state.get("isGameEnded"):
        raise ValidationError("match_ended", "match has already ended")
    if is_current_set_configured(state):
        raise ValidationError("set_already_configured", "edit the set configuration first")

    coin_toss_required = requires_coin_toss(state, config, coin_toss_rule)
    problems = check_set_configuration(
        state, config, draft, coin_toss_required=coin_toss_required
    )
    if problems:
        raise ValidationError("invalid_configuration", "; ".join(problems))

    first = resolve_first_choice_team(state, draft, coin_toss_required)
    other = opposite(first)
    option = draft.firstChoiceOption

    if option == "serve":
        server, side_team, second_option = first, other, "side"
    elif option == "receive":
        server, side_team, second_option = other, other, "side"
    else:
        second_option = draft.secondChoiceOption
        server = other if second_option == "serve" else first
        side_team = first
    receiver = opposite(server)

    side = draft.sideSelection
    left_is_team_a = (side_team == "A") == (side == "left")

    teams = {
        team_key(team): resolve_team_setup(state, config, draft, team) for team in TEAMS
    }
    orders = {key: list(setup["serviceOrder"]) for key, setup in teams.items()}
    server_key = team_key(server)
    starting_player = orders[server_key][0]

    new_state: MatchState = deepcopy(state)
    idx = set_index(new_state)
    set_number = idx + 1
    tossed = coin_toss_required or draft.coinTossWinner is not None

    new_state["setConfigurations"][idx] = {
        "setNumber": set_number,
        "isConfigured": True,
        "firstChoiceTeam": first,
        "firstChoiceOption": option,
        "secondChoiceOption": second_option,
        "sideChoiceTeam": side_team,
        "sideSelection": side,
        "startingServerTeam": server,
        "startingReceiverTeam": receiver,
        "startingServerPlayer": starting_player,
        "coinToss": {
            "performed": tossed,
            "winner": first if tossed else None,
            "loser": other if tossed else None,
        },
        "teams": teams,
    }
    new_state["serviceOrders"] = orders
    new_state["nextServerIndex"] = {
        server_key: 1 % len(orders[server_key]),
        team_key(receiver): 0,
    }
    new_state["currentServerTeam"] = server
    new_state["currentServerPlayer"] = starting_player
    new_state["possession"] = server
    new_state["leftIsTeamA"] = left_is_team_a

    logger.info(
        f"Set {set_number} of {state.get('gameId')} configured: "
        f"{server} serves, {side_team} chose {side}"
    )

    event = DomainEvent(
        SET_CONFIGURED,
        set_number=set_number,
        team=server,
        metadata={
            "firstChoiceTeam": first,
            "firstChoiceOption": option,
            "sideChoiceTeam": side_team,
            "sideSelection": side,
            "coinTossWinner": first if tossed else None,
        },
    )
    return MutationOutcome(state=new_state, events=[event])


def edit_set_configuration(state: MatchState) -> MutationOutcome:
    """Reopen the current set's ceremony; only before its first point."""
    if state.get("isGameEnded"):
        raise ValidationError("match_ended", "match has already ended")
    if not is_current_set_configured(state):
        raise ValidationError("set_unconfigured", "current set is not configured yet")
    a, b = set_points(state)
    if a or b:
        raise ValidationError("set_in_progress", "points were already scored in this set")

    new_state: MatchState = deepcopy(state)
    new_state["setConfigurations"][set_index(new_state)]["isConfigured"] = False
    config_record = current_set_configuration(new_state)
    return MutationOutcome(
        state=new_state,
        events=[
            DomainEvent(
                SET_CONFIGURED,
                set_number=config_record.get("setNumber"),
                metadata={"reopened": True},
            )
        ],
    )
