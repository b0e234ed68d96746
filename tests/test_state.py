from rally_core import add_point, default_state, hydrate_state, score_rows_to_state, state_to_row
from rally_core.state import state_to_score_rows


def test_default_state_shapes_follow_config(config):
    state = default_state(config)

    assert state["gameId"] == "match-1"
    assert state["currentSet"] == 1
    assert state["scores"] == {"teamA": [0, 0, 0], "teamB": [0, 0, 0]}
    assert state["serviceOrders"] == {"teamA": [1, 2], "teamB": [1, 2]}
    assert len(state["setConfigurations"]) == 3
    assert all(not cfg["isConfigured"] for cfg in state["setConfigurations"])
    assert state["activeTimer"] is None
    assert state["isGameEnded"] is False


def test_row_round_trip_keeps_state(config, configured_state):
    state = add_point(configured_state, config, "B").state
    state["activeTimer"] = {
        "id": "t-1",
        "type": "TIMEOUT_TEAM",
        "startedAt": "2026-03-01T18:30:00+00:00",
        "endsAt": "2026-03-01T18:30:30+00:00",
        "durationSec": 30,
        "team": "B",
    }

    assert hydrate_state(state_to_row(state), config) == state


def test_hydration_tolerates_missing_and_malformed_fields(config):
    row = {
        "match_id": "match-1",
        "current_set": "2",
        "scores": {"teamA": [21, "x"], "teamB": None},
        "left_is_team_a": "yes",
        "technical_timeout_used": "nope",
        "set_configurations": [{"isConfigured": True, "firstChoiceOption": "dance"}],
        "active_timer": {"id": "t-7", "type": "LEGACY_KIND", "started_at": "2026-03-01T18:00:00", "ends_at": "2026-03-01T18:01:00"},
    }
    state = hydrate_state(row, config)

    assert state["currentSet"] == 2
    assert state["scores"] == {"teamA": [21, 0, 0], "teamB": [0, 0, 0]}
    assert state["leftIsTeamA"] is True
    assert state["technicalTimeoutUsed"] == [False, False, False]
    assert state["setConfigurations"][0]["isConfigured"] is True
    assert state["setConfigurations"][0]["firstChoiceOption"] == "serve"
    assert state["setConfigurations"][1]["isConfigured"] is False
    assert state["activeTimer"]["type"] == "TIMEOUT_TEAM"
    assert state["activeTimer"]["durationSec"] == 60


def test_hydration_clamps_current_set_and_truncates_arrays(config):
    state = hydrate_state(
        {"current_set": 9, "scores": {"teamA": [1, 2, 3, 4], "teamB": [0, 0, 0, 0]}}, config
    )
    assert state["currentSet"] == 3
    assert state["scores"]["teamA"] == [1, 2, 3]


def test_legacy_rows_rebuild_scores_and_sets_won(config):
    rows = [
        {"match_id": "match-1", "set_number": 2, "team_a_points": 10, "team_b_points": 21},
        {"match_id": "match-1", "set_number": 1, "team_a_points": 21, "team_b_points": 18},
        {"match_id": "match-1", "set_number": 3, "team_a_points": 4, "team_b_points": 3},
    ]
    state = score_rows_to_state(rows, config)

    assert state["scores"] == {"teamA": [21, 10, 4], "teamB": [18, 21, 3]}
    assert state["setsWon"] == {"teamA": 1, "teamB": 1}
    assert state["currentSet"] == 3
    assert state["isGameEnded"] is False
    assert all(cfg["isConfigured"] for cfg in state["setConfigurations"])


def test_legacy_rows_mark_finished_match(config):
    rows = [
        {"match_id": "match-1", "set_number": 1, "team_a_points": 21, "team_b_points": 15},
        {"match_id": "match-1", "set_number": 2, "team_a_points": 23, "team_b_points": 21},
    ]
    state = score_rows_to_state(rows, config)
    assert state["isGameEnded"] is True
    assert state["setsWon"]["teamA"] == 2


def test_empty_legacy_rows_give_default_state(config):
    assert score_rows_to_state([], config) == default_state(config)


def test_score_rows_skip_untouched_later_sets(config, configured_state):
    state = configured_state
    state["scores"]["teamA"][0] = 5
    rows = state_to_score_rows(state)

    assert rows == [{"match_id": "match-1", "set_number": 1, "team_a_points": 5, "team_b_points": 0}]
