import pytest

from conftest import build_config, configure

from rally_core import ValidationError, add_point, default_state
from rally_core.set_config import (
    apply_set_configuration,
    check_set_configuration,
    edit_set_configuration,
    is_set_configuration_valid,
    requires_coin_toss,
)
from rally_core.validation import SetConfigurationInput


def draft(**fields):
    return SetConfigurationInput(**fields)


def test_default_coin_toss_rule_covers_first_and_deciding_set(config):
    state = default_state(config)
    assert requires_coin_toss(state, config)
    state["currentSet"] = 2
    assert not requires_coin_toss(state, config)
    state["currentSet"] = 3
    assert requires_coin_toss(state, config)


def test_coin_toss_rule_is_injectable(config):
    state = default_state(config)
    state["currentSet"] = 2
    assert requires_coin_toss(state, config, lambda idx, total: True)


def test_missing_coin_toss_winner_is_reported(config):
    state = default_state(config)
    problems = check_set_configuration(
        state,
        config,
        draft(firstChoiceOption="serve", sideSelection="left"),
        coin_toss_required=True,
    )
    assert any("coin toss" in problem for problem in problems)

    with pytest.raises(ValidationError) as exc:
        apply_set_configuration(state, config, draft(firstChoiceOption="serve", sideSelection="left"))
    assert exc.value.kind == "invalid_configuration"


def test_side_choice_requires_second_choice(config):
    state = default_state(config)
    assert not is_set_configuration_valid(
        state,
        config,
        draft(coinTossWinner="A", firstChoiceOption="side", sideSelection="left"),
        coin_toss_required=True,
    )


def test_service_order_must_be_permutation(config):
    state = default_state(config)
    bad = draft(
        coinTossWinner="A",
        firstChoiceOption="serve",
        sideSelection="left",
        teamA={"jerseyAssignment": {"1": 0, "2": 1}, "serviceOrder": [1, 1]},
    )
    problems = check_set_configuration(state, config, bad, coin_toss_required=True)
    assert problems == ["team A: service order must list jerseys 1..2 once each"]


def test_jersey_assignment_must_cover_all_slots(config):
    state = default_state(config)
    bad = draft(
        coinTossWinner="A",
        firstChoiceOption="serve",
        sideSelection="left",
        teamB={"jerseyAssignment": {"1": 0, "2": 0}, "serviceOrder": [2, 1]},
    )
    problems = check_set_configuration(state, config, bad, coin_toss_required=True)
    assert problems == ["team B: each jersey must map to a distinct player"]


def test_first_choice_team_must_match_coin_toss_winner():
    with pytest.raises(ValueError):
        draft(coinTossWinner="A", firstChoiceTeam="B", firstChoiceOption="serve")


def test_serve_choice_seeds_serving(config):
    state = default_state(config)
    outcome = apply_set_configuration(
        state, config, draft(coinTossWinner="A", firstChoiceOption="serve", sideSelection="left")
    )
    new = outcome.state
    set_config = new["setConfigurations"][0]

    assert set_config["isConfigured"] is True
    assert set_config["startingServerTeam"] == "A"
    assert set_config["startingReceiverTeam"] == "B"
    assert set_config["sideChoiceTeam"] == "B"
    assert set_config["coinToss"] == {"performed": True, "winner": "A", "loser": "B"}
    assert new["currentServerTeam"] == "A"
    assert new["currentServerPlayer"] == 1
    assert new["nextServerIndex"] == {"teamA": 1, "teamB": 0}
    # B picked the left side
    assert new["leftIsTeamA"] is False
    assert outcome.events[0].type == "SET_CONFIGURED"


def test_receive_choice_gives_serve_and_side_to_other_team(config):
    state = default_state(config)
    new = apply_set_configuration(
        state, config, draft(coinTossWinner="A", firstChoiceOption="receive", sideSelection="right")
    ).state

    assert new["currentServerTeam"] == "B"
    assert new["setConfigurations"][0]["sideChoiceTeam"] == "B"
    assert new["leftIsTeamA"] is True
    assert new["nextServerIndex"] == {"teamB": 1, "teamA": 0}


def test_side_choice_lets_other_team_pick_serve(config):
    state = default_state(config)
    new = apply_set_configuration(
        state,
        config,
        draft(coinTossWinner="A", firstChoiceOption="side", secondChoiceOption="serve", sideSelection="left"),
    ).state
    assert new["currentServerTeam"] == "B"
    assert new["leftIsTeamA"] is True

    new = apply_set_configuration(
        state,
        config,
        draft(coinTossWinner="A", firstChoiceOption="side", secondChoiceOption="receive", sideSelection="right"),
    ).state
    assert new["currentServerTeam"] == "A"
    assert new["leftIsTeamA"] is False


def test_custom_service_order_sets_starting_server(config):
    state = default_state(config)
    new = apply_set_configuration(
        state,
        config,
        draft(
            coinTossWinner="B",
            firstChoiceOption="serve",
            sideSelection="left",
            teamB={"jerseyAssignment": {"1": 1, "2": 0}, "serviceOrder": [2, 1]},
        ),
    ).state
    assert new["currentServerTeam"] == "B"
    assert new["currentServerPlayer"] == 2
    assert new["setConfigurations"][0]["teams"]["teamB"]["jerseyAssignment"] == {"1": 1, "2": 0}


def test_first_choice_alternates_without_coin_toss(config, configured_state):
    state = configured_state
    state["scores"]["teamA"][0] = 20
    state = add_point(state, config, "A").state

    new = apply_set_configuration(state, config, draft(firstChoiceOption="serve", sideSelection="left")).state
    assert new["setConfigurations"][1]["firstChoiceTeam"] == "B"
    assert new["setConfigurations"][1]["coinToss"]["performed"] is False
    assert new["currentServerTeam"] == "B"


def test_team_setup_inherited_from_previous_set(config):
    state = configure(
        default_state(config),
        config,
        teamA={"jerseyAssignment": {"1": 1, "2": 0}, "serviceOrder": [2, 1]},
    )
    state["scores"]["teamA"][0] = 20
    state = add_point(state, config, "A").state

    new = configure(state, config)
    assert new["serviceOrders"]["teamA"] == [2, 1]
    assert new["setConfigurations"][1]["teams"]["teamA"]["jerseyAssignment"] == {"1": 1, "2": 0}


def test_configured_set_cannot_be_configured_again(config, configured_state):
    with pytest.raises(ValidationError) as exc:
        configure(configured_state, config)
    assert exc.value.kind == "set_already_configured"


def test_edit_reopens_set_before_first_point(config, configured_state):
    outcome = edit_set_configuration(configured_state)
    assert outcome.state["setConfigurations"][0]["isConfigured"] is False

    reconfigured = configure(outcome.state, config, coinTossWinner="B")
    assert reconfigured["currentServerTeam"] == "B"


def test_edit_rejected_once_points_are_scored(config, configured_state):
    state = add_point(configured_state, config, "B").state
    with pytest.raises(ValidationError) as exc:
        edit_set_configuration(state)
    assert exc.value.kind == "set_in_progress"


def test_edit_rejected_while_unconfigured():
    config = build_config()
    with pytest.raises(ValidationError) as exc:
        edit_set_configuration(default_state(config))
    assert exc.value.kind == "set_unconfigured"
