import pytest

import fakes  # noqa: F401
from client.errors import PayloadError
from client.schemas import (
    GameStatus,
    Ladder,
    Snake,
    TurnHint,
    parse_game_state,
    parse_move_result,
    parse_question,
)


def test_parse_game_state_with_alternate_keys():
    raw = {
        "gameId": 42,
        "Players": [
            {"playerId": 1, "userName": "Ana", "Position": "12", "IsTurn": True},
            {"id": "2", "username": "Bo", "position": 3},
        ],
        "status": "InProgress",
        "Board": {
            "Snakes": [{"headPosition": 14, "tailPosition": 4}],
            "Ladders": [{"bottomPosition": 5, "topPosition": 22}],
        },
    }
    game = parse_game_state(raw)
    assert game.id == "42"
    assert [p.id for p in game.players] == ["1", "2"]
    assert game.players[0].username == "Ana"
    assert game.players[0].position == 12
    assert game.players[0].is_turn
    assert not game.players[1].is_turn
    assert game.status == GameStatus.IN_PROGRESS
    assert game.snakes == [Snake(head=14, tail=4)]
    assert game.ladders == [Ladder(bottom=5, top=22)]


def test_missing_fields_default():
    game = parse_game_state({})
    assert game.id == ""
    assert game.players == []
    assert game.status == GameStatus.UNKNOWN
    assert game.snakes == [] and game.ladders == []


def test_players_given_as_map_and_position_clamped():
    raw = {"id": 1, "players": {"a": {"id": 1, "username": "x", "position": 130}}}
    game = parse_game_state(raw, board_size=100)
    assert len(game.players) == 1
    assert game.players[0].position == 100


def test_top_level_hazards_without_board():
    raw = {"id": 1, "snakes": [{"head": 30, "tail": 7}], "ladders": [{"bottom": 2, "top": 9}]}
    game = parse_game_state(raw)
    assert game.snakes == [Snake(head=30, tail=7)]
    assert game.ladders == [Ladder(bottom=2, top=9)]


def test_status_variants():
    assert GameStatus.parse("finished") == GameStatus.FINISHED
    assert GameStatus.parse("In_Progress") == GameStatus.IN_PROGRESS
    assert GameStatus.parse("Waiting") == GameStatus.UNKNOWN


@pytest.mark.parametrize("players", [["not a player"], [{"id": 1, "position": "far"}]])
def test_malformed_player_is_fatal(players):
    with pytest.raises(PayloadError):
        parse_game_state({"id": 1, "players": players})


def test_malformed_hazard_is_fatal():
    with pytest.raises(PayloadError):
        parse_game_state({"id": 1, "board": {"snakes": [{"head": 10}]}})


def test_turn_hint_collected():
    game = parse_game_state({"id": 1, "currentPlayerId": 5, "currentTurnUsername": " Ana ", "currentTurnIndex": "2"})
    assert game.turn_hint == TurnHint(player_id="5", username="Ana", index=2)
    assert parse_game_state({"id": 1}).turn_hint is None


def test_turn_hint_not_serialized():
    game = parse_game_state({"id": 1, "currentPlayerId": 5})
    assert "turn_hint" not in game.model_dump()


def test_move_result_unwraps_envelope():
    res = parse_move_result({"MoveResult": {"diceValue": 4, "fromPosition": 10, "finalPosition": 14,
                                            "requiresProfesorAnswer": True, "message": "ok"}})
    assert (res.dice, res.from_position, res.to_position) == (4, 10, 14)
    assert res.requires_follow_up
    assert res.message == "ok"


def test_move_result_aliases():
    assert parse_move_result({"dice": 2, "newPosition": 9}).to_position == 9
    assert parse_move_result([{"dice": 2, "toPosition": 7}]).to_position == 7
    assert parse_move_result({"data": {"diceValue": 6, "finalPosition": 30}}).dice == 6


def test_move_result_without_move_keys_rejected():
    with pytest.raises(PayloadError):
        parse_move_result({"message": "nothing here"})


def test_parse_question():
    q = parse_question({"profesorQuestion": {"questionId": 9, "question": "Capital?", "options": ["A", "B"]}})
    assert q.question_id == "9"
    assert q.question == "Capital?"
    assert q.options == ["A", "B"]
