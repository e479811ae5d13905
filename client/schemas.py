from enum import Enum
from typing import Any, List, Optional, Mapping
from pydantic import BaseModel, Field

from client.errors import PayloadError

BOARD_SIZE: int = 100
DICE_FACES: int = 6


class GameStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    FINISHED = "Finished"
    UNKNOWN = "Unknown"

    @staticmethod
    def parse(raw: Any) -> 'GameStatus':
        if raw is None:
            return GameStatus.UNKNOWN
        key = str(raw).strip().lower().replace("_", "").replace(" ", "")
        if key in ("inprogress", "active", "started", "playing"):
            return GameStatus.IN_PROGRESS
        if key in ("finished", "completed", "ended", "gameover", "over"):
            return GameStatus.FINISHED
        return GameStatus.UNKNOWN


class PlayerState(BaseModel, frozen=True):
    id: str
    username: str = ""
    position: int = 0
    is_turn: bool = False

    def with_turn(self, is_turn: bool) -> 'PlayerState':
        return self.model_copy(update={"is_turn": is_turn})

    def moved_to(self, position: int, is_turn: bool = False) -> 'PlayerState':
        return self.model_copy(update={"position": position, "is_turn": is_turn})


class Ladder(BaseModel, frozen=True):
    bottom: int
    top: int


class Snake(BaseModel, frozen=True):
    """Hazard head. Landing on ``head`` drops the player to ``tail`` and asks a question."""
    head: int
    tail: int


class TurnHint(BaseModel, frozen=True):
    """Explicit current-turn markers some payloads carry instead of per-player flags."""
    player_id: Optional[str] = None
    username: Optional[str] = None
    index: Optional[int] = None


class GameState(BaseModel, frozen=True):
    id: str = ""
    players: List[PlayerState] = []
    status: GameStatus = GameStatus.UNKNOWN
    ladders: List[Ladder] = []
    snakes: List[Snake] = []
    turn_hint: Optional[TurnHint] = Field(default=None, exclude=True)

    def turn_index(self) -> int:
        for i, p in enumerate(self.players):
            if p.is_turn:
                return i
        return -1

    def turn_holder(self) -> Optional[PlayerState]:
        idx = self.turn_index()
        return self.players[idx] if idx >= 0 else None

    def player(self, player_id: str) -> Optional[PlayerState]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def numeric_id(self) -> Optional[int]:
        try:
            return int(self.id)
        except (TypeError, ValueError):
            return None

    def replace(self, **changes) -> 'GameState':
        return self.model_copy(update=changes)


class MoveResult(BaseModel, frozen=True):
    dice: int = 0
    from_position: int = 0
    to_position: int = 0
    requires_follow_up: bool = False
    message: str = ""


class FollowUpQuestion(BaseModel, frozen=True):
    question_id: str = ""
    question: str = ""
    options: List[str] = []


class SimulationMark(BaseModel, frozen=True):
    is_simulated: bool = False
    last_simulated_at: Optional[float] = None


class StateView(BaseModel):
    """What the presentation layer reads after each change notification."""
    game: Optional[GameState] = None
    last_move_result: Optional[MoveResult] = None
    last_move_player_id: Optional[str] = None
    last_move_simulated: bool = False
    has_pending_simulated: bool = False
    waiting_for_move: bool = False
    push_available: bool = False
    last_push_error: Optional[str] = None
    simulate_enabled: bool = True
    force_enable_roll: bool = False
    loading: bool = False
    answering: bool = False
    error: Optional[str] = None
    current_question: Optional[FollowUpQuestion] = None
    is_my_turn: bool = False
    current_turn_username: str = ""


# ==== Payload normalization ====
# Servers are inconsistent about key names and casing; every lookup goes through _pick.

def _pick(raw: Mapping, *keys: str) -> Any:
    for k in keys:
        v = raw.get(k)
        if v is not None:
            return v
    return None


def _to_int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise PayloadError(f"invalid {what}: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise PayloadError(f"invalid {what}: {value!r}")


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def clamp_position(position: int, board_size: int = BOARD_SIZE) -> int:
    return max(0, min(position, board_size))


def parse_player(raw: Any, board_size: int = BOARD_SIZE) -> PlayerState:
    if not isinstance(raw, Mapping):
        raise PayloadError(f"Invalid player json: {raw!r}")
    pid = _pick(raw, "id", "playerId", "PlayerId", "userId", "UserId", "Id")
    name = _pick(raw, "username", "userName", "Username", "UserName", "name", "playerName")
    pos = _pick(raw, "position", "Position", "pos", "currentPosition")
    turn = _pick(raw, "isTurn", "IsTurn", "is_turn", "isCurrentTurn", "currentTurn")
    return PlayerState(
        id=str(pid) if pid is not None else "",
        username=str(name) if name is not None else "",
        position=clamp_position(_to_int(pos, "player position") if pos is not None else 0, board_size),
        is_turn=_to_bool(turn) if turn is not None else False,
    )


def _parse_list(raw: Any, parse_one) -> list:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        raw = list(raw.values())
    if not isinstance(raw, list):
        return []
    return [parse_one(item) for item in raw]


def parse_ladder(raw: Any) -> Ladder:
    if not isinstance(raw, Mapping):
        raise PayloadError(f"Invalid ladder json: {raw!r}")
    bottom = _pick(raw, "bottomPosition", "BottomPosition", "bottom", "start", "from")
    top = _pick(raw, "topPosition", "TopPosition", "top", "end", "to")
    if bottom is None or top is None:
        raise PayloadError(f"Invalid ladder json: {raw!r}")
    return Ladder(bottom=_to_int(bottom, "ladder bottom"), top=_to_int(top, "ladder top"))


def parse_snake(raw: Any) -> Snake:
    if not isinstance(raw, Mapping):
        raise PayloadError(f"Invalid snake json: {raw!r}")
    head = _pick(raw, "headPosition", "HeadPosition", "head", "start", "from")
    tail = _pick(raw, "tailPosition", "TailPosition", "tail", "end", "to")
    if head is None or tail is None:
        raise PayloadError(f"Invalid snake json: {raw!r}")
    return Snake(head=_to_int(head, "snake head"), tail=_to_int(tail, "snake tail"))


def parse_turn_hint(raw: Mapping) -> Optional[TurnHint]:
    pid = _opt_str(_pick(raw, "currentPlayerId", "currentPlayer", "currentTurnId"))
    name = _opt_str(_pick(raw, "currentPlayerName", "currentTurnUsername", "current_name", "currentName"))
    index = _opt_int(_pick(raw, "currentTurnPlayerIndex", "currentPlayerIndex", "currentTurnIndex",
                           "currentIndex", "turn", "currentTurn"))
    if pid is None and name is None and index is None:
        return None
    return TurnHint(player_id=pid, username=name, index=index)


def parse_game_state(raw: Any, board_size: int = BOARD_SIZE) -> GameState:
    """Build a GameState from any of the payload shapes the server has been seen to send.

    Turn flags are taken as given; filling in a missing turn holder from the
    ``turn_hint`` is the reconciler's job.
    """
    if not isinstance(raw, Mapping):
        raise PayloadError(f"Invalid game json: {raw!r}")
    players = _parse_list(_pick(raw, "players", "Players", "playersList", "playersData"),
                          lambda p: parse_player(p, board_size))
    board = _pick(raw, "board", "Board")
    board = board if isinstance(board, Mapping) else {}
    snakes = _parse_list(_pick(board, "snakes", "Snakes") or raw.get("snakes"), parse_snake)
    ladders = _parse_list(_pick(board, "ladders", "Ladders") or raw.get("ladders"), parse_ladder)
    gid = _pick(raw, "gameId", "GameId", "id", "Id")
    return GameState(
        id=str(gid) if gid is not None else "",
        players=players,
        status=GameStatus.parse(_pick(raw, "status", "Status")),
        ladders=ladders,
        snakes=snakes,
        turn_hint=parse_turn_hint(raw),
    )


_MOVE_ENVELOPES = ("MoveResult", "moveResult", "move", "moveResultDto", "result", "data")
_MOVE_KEYS = ("diceValue", "dice", "finalPosition", "newPosition", "toPosition")


def unwrap_move_payload(raw: Any) -> Any:
    if isinstance(raw, list) and raw and isinstance(raw[0], Mapping):
        raw = raw[0]
    if not isinstance(raw, Mapping):
        return raw
    for key in _MOVE_ENVELOPES:
        inner = raw.get(key)
        if isinstance(inner, Mapping):
            return inner
    return raw


def parse_move_result(raw: Any, board_size: int = BOARD_SIZE) -> MoveResult:
    raw = unwrap_move_payload(raw)
    if not isinstance(raw, Mapping) or not any(k in raw for k in _MOVE_KEYS):
        raise PayloadError(f"Unexpected move result: {raw!r}")
    dice = _pick(raw, "diceValue", "DiceValue", "dice", "Dice")
    frm = _pick(raw, "fromPosition", "FromPosition", "from")
    to = _pick(raw, "finalPosition", "FinalPosition", "newPosition", "toPosition", "ToPosition")
    follow = _pick(raw, "requiresProfesorAnswer", "requiresFollowUp", "requiresAnswer")
    msg = _pick(raw, "message", "Message")
    return MoveResult(
        dice=_to_int(dice, "dice") if dice is not None else 0,
        from_position=clamp_position(_to_int(frm, "from position") if frm is not None else 0, board_size),
        to_position=clamp_position(_to_int(to, "final position") if to is not None else 0, board_size),
        requires_follow_up=_to_bool(follow) if follow is not None else False,
        message=str(msg) if msg is not None else "",
    )


def parse_question(raw: Any) -> FollowUpQuestion:
    if isinstance(raw, Mapping) and isinstance(raw.get("profesorQuestion"), Mapping):
        raw = raw["profesorQuestion"]
    if not isinstance(raw, Mapping):
        raise PayloadError(f"Unexpected question payload: {raw!r}")
    qid = _pick(raw, "questionId", "QuestionId", "profesorQuestionId", "id", "Id")
    text = _pick(raw, "question", "Question", "text", "questionText")
    options = _pick(raw, "options", "Options", "answers", "Answers") or []
    if isinstance(options, Mapping):
        options = list(options.values())
    return FollowUpQuestion(
        question_id=str(qid) if qid is not None else "",
        question=str(text) if text is not None else "",
        options=[str(o) for o in options] if isinstance(options, list) else [],
    )
