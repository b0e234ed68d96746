import pytest

from conftest import build_config, configure

from rally_core import ValidationError, add_point, apply_command, default_state
from rally_core.engine import change_current_server, set_winner, switch_server_team


def with_score(state, a, b):
    state["scores"]["teamA"][state["currentSet"] - 1] = a
    state["scores"]["teamB"][state["currentSet"] - 1] = b
    return state


def event_types(outcome):
    return [event.type for event in outcome.events]


def test_set_winner_requires_target_and_lead():
    assert set_winner(21, 19, 21, 2) == "A"
    assert set_winner(21, 20, 21, 2) is None
    assert set_winner(23, 25, 21, 2) == "B"
    assert set_winner(15, 14, 15, 1) == "A"
    assert set_winner(14, 0, 15, 2) is None


def test_point_rejected_while_set_unconfigured(config):
    state = default_state(config)
    with pytest.raises(ValidationError) as exc:
        add_point(state, config, "A")
    assert exc.value.kind == "set_unconfigured"
    assert state["scores"]["teamA"] == [0, 0, 0]


def test_point_for_serving_team_keeps_serve(config, configured_state):
    outcome = add_point(configured_state, config, "A", "ATTACK")

    assert outcome.state["scores"]["teamA"] == [1, 0, 0]
    assert outcome.state["currentServerTeam"] == "A"
    assert outcome.state["currentServerPlayer"] == 1
    assert outcome.state["nextServerIndex"] == {"teamA": 1, "teamB": 0}
    assert event_types(outcome) == ["POINT"]
    assert outcome.events[0].category == "ATTACK"
    # input untouched
    assert configured_state["scores"]["teamA"] == [0, 0, 0]


def test_side_out_rotates_through_service_order(config, configured_state):
    state = add_point(configured_state, config, "B").state
    assert state["currentServerTeam"] == "B"
    assert state["possession"] == "B"
    assert state["currentServerPlayer"] == 1
    assert state["nextServerIndex"]["teamB"] == 1

    state = add_point(state, config, "A").state
    assert state["currentServerTeam"] == "A"
    assert state["currentServerPlayer"] == 2
    assert state["nextServerIndex"]["teamA"] == 0

    state = add_point(state, config, "B").state
    assert state["currentServerPlayer"] == 2
    state = add_point(state, config, "A").state
    # pointer wrapped back to the first server
    assert state["currentServerPlayer"] == 1


def test_side_switch_fires_once_at_threshold(config, configured_state):
    state = with_score(configured_state, 3, 3)
    left_before = state["leftIsTeamA"]

    outcome = add_point(state, config, "A")

    assert outcome.state["leftIsTeamA"] is (not left_before)
    assert outcome.state["sidesSwitched"] == [1, 0, 0]
    assert event_types(outcome) == ["POINT", "SIDE_SWITCH"]

    after = add_point(outcome.state, config, "A")
    assert after.state["leftIsTeamA"] is (not left_before)
    assert event_types(after) == ["POINT"]


def test_point_at_20_19_wins_the_set(config, configured_state):
    state = with_score(configured_state, 20, 19)
    state["activeTimer"] = None

    outcome = add_point(state, config, "A")
    new = outcome.state

    assert new["scores"]["teamA"][0] == 21
    assert new["setsWon"] == {"teamA": 1, "teamB": 0}
    assert new["currentSet"] == 2
    assert new["setConfigurations"][1]["isConfigured"] is False
    assert new["currentServerTeam"] == "A"
    assert new["currentServerPlayer"] == 1
    assert new["possession"] == "A"
    assert new["nextServerIndex"] == {"teamA": 0, "teamB": 0}
    assert new["isGameEnded"] is False
    assert event_types(outcome) == ["POINT", "SET_END"]
    assert outcome.events[1].team == "A"


def test_deuce_needs_two_point_lead(config, configured_state):
    state = with_score(configured_state, 20, 20)
    outcome = add_point(state, config, "A")
    assert outcome.state["currentSet"] == 1
    assert outcome.state["setsWon"]["teamA"] == 0

    state = with_score(configured_state, 24, 23)
    outcome = add_point(state, config, "A")
    assert outcome.state["scores"]["teamA"][0] == 25
    assert outcome.state["setsWon"]["teamA"] == 1
    assert outcome.state["currentSet"] == 2


def test_required_lead_of_one_closes_at_target():
    config = build_config(requiredLead=1)
    state = with_score(configure(default_state(config), config), 20, 20)
    outcome = add_point(state, config, "B")
    assert outcome.state["setsWon"]["teamB"] == 1


def closes(a, b, target, lead):
    return a >= target and a - b >= lead


def set_point_cases():
    for target in (21, 15):
        for lead in (1, 2):
            for a in range(target - 2, target + 4):
                for b in range(target - 5, target + 4):
                    # the score before the rally must leave the set open
                    if closes(a - 1, b, target, lead) or closes(b, a - 1, target, lead):
                        continue
                    yield pytest.param(target, lead, a, b, id=f"to{target}-lead{lead}-{a}:{b}")


@pytest.mark.parametrize("target, lead, a, b", list(set_point_cases()))
def test_set_closes_exactly_at_target_with_lead(target, lead, a, b):
    config = build_config(pointsPerSet=[target, target, target], requiredLead=lead)
    state = with_score(configure(default_state(config), config), a - 1, b)

    outcome = add_point(state, config, "A")

    closed = closes(a, b, target, lead)
    assert outcome.state["setsWon"]["teamA"] == (1 if closed else 0)
    assert outcome.state["currentSet"] == (2 if closed else 1)
    assert ("SET_END" in event_types(outcome)) is closed


def test_set_win_clears_active_timer(config, configured_state):
    state = with_score(configured_state, 20, 10)
    state["activeTimer"] = {
        "id": "t-1",
        "type": "MEDICAL",
        "startedAt": "2026-01-01T10:00:00+00:00",
        "endsAt": "2026-01-01T10:05:00+00:00",
        "durationSec": 300,
        "team": None,
    }
    outcome = add_point(state, config, "A")
    assert outcome.state["activeTimer"] is None


def test_match_ends_when_sets_to_win_reached(config, configured_state):
    state = with_score(configured_state, 20, 5)
    state = add_point(state, config, "A").state
    state = configure(state, config)
    state = with_score(state, 20, 18)

    outcome = add_point(state, config, "A")

    assert outcome.state["isGameEnded"] is True
    assert outcome.state["setsWon"] == {"teamA": 2, "teamB": 0}
    assert outcome.state["currentSet"] == 2
    assert event_types(outcome) == ["POINT", "SET_END", "GAME_END"]

    with pytest.raises(ValidationError) as exc:
        add_point(outcome.state, config, "B")
    assert exc.value.kind == "match_ended"


def test_deciding_set_uses_its_own_target():
    config = build_config(pointsPerSet=[21, 21, 15])
    state = configure(default_state(config), config)
    state = add_point(with_score(state, 20, 0), config, "A").state
    state = configure(state, config)
    state = add_point(with_score(state, 0, 20), config, "B").state
    assert state["currentSet"] == 3

    state = configure(state, config)
    outcome = add_point(with_score(state, 14, 10), config, "A")
    assert outcome.state["isGameEnded"] is True
    assert outcome.state["setsWon"] == {"teamA": 2, "teamB": 1}


def test_unknown_category_rejected(config, configured_state):
    with pytest.raises(ValidationError) as exc:
        add_point(configured_state, config, "A", "SPIKE")
    assert exc.value.kind == "invalid_command"


def test_technical_timeout_due_at_configured_total():
    config = build_config(hasTechnicalTimeout=True, technicalTimeoutSum=21)
    state = with_score(configure(default_state(config), config), 10, 10)

    outcome = add_point(state, config, "A")

    assert outcome.technical_timeout_due is True
    assert add_point(outcome.state, config, "A").technical_timeout_due is False


def test_switch_server_team_moves_serve_to_other_team(config, configured_state):
    outcome = switch_server_team(configured_state, config)
    state = outcome.state

    assert state["currentServerTeam"] == "B"
    assert state["possession"] == "B"
    assert state["currentServerPlayer"] == 1
    assert state["nextServerIndex"]["teamB"] == 1
    assert outcome.events[0].type == "OVERRIDE"
    assert outcome.events[0].metadata["action"] == "switch_server_team"


def test_change_current_server_keeps_team(config, configured_state):
    state = change_current_server(configured_state, config).state
    assert state["currentServerTeam"] == "A"
    assert state["currentServerPlayer"] == 2
    assert state["nextServerIndex"]["teamA"] == 0


def test_overrides_rejected_after_match_end(config, configured_state):
    configured_state["isGameEnded"] = True
    with pytest.raises(ValidationError):
        switch_server_team(configured_state, config)
    with pytest.raises(ValidationError):
        change_current_server(configured_state, config)


def test_apply_command_dispatches_operator_commands(config):
    state = default_state(config)
    outcome = apply_command(
        state,
        config,
        {
            "type": "apply_set_configuration",
            "configuration": {
                "coinTossWinner": "B",
                "firstChoiceOption": "serve",
                "sideSelection": "right",
            },
        },
    )
    assert outcome.state["currentServerTeam"] == "B"

    outcome = apply_command(outcome.state, config, {"type": "ADD_POINT", "team": "A", "category": "block"})
    assert outcome.state["scores"]["teamA"][0] == 1
    assert outcome.events[0].category == "BLOCK"

    outcome = apply_command(
        outcome.state, config, {"type": "START_TIMEOUT", "kind": "team", "team": "B", "timerId": "t-9"}
    )
    assert outcome.state["activeTimer"]["id"] == "t-9"

    outcome = apply_command(outcome.state, config, {"type": "FINALIZE_TIMEOUT", "timerId": "t-9"})
    assert outcome.state["activeTimer"] is None


def test_apply_command_rejects_malformed_commands(config, configured_state):
    with pytest.raises(ValidationError) as exc:
        apply_command(configured_state, config, {"type": "ADD_POINT"})
    assert exc.value.kind == "invalid_command"

    with pytest.raises(ValidationError):
        apply_command(configured_state, config, {"type": "DANCE"})
