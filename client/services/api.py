from typing import Any, Callable, Optional, Protocol

import httpx

from client.errors import PullChannelError
from client.schemas import (
    BOARD_SIZE,
    FollowUpQuestion,
    GameState,
    MoveResult,
    parse_game_state,
    parse_move_result,
    parse_question,
)
from client.utils.audit import dbg


class PullChannel(Protocol):
    async def create_session(self, room_ref: Optional[str] = None) -> GameState: ...
    async def get_session(self, session_id: str) -> GameState: ...
    async def roll(self, session_id: str) -> MoveResult: ...
    async def request_follow_up_question(self, session_id: str) -> FollowUpQuestion: ...
    async def answer_follow_up_question(self, session_id: str, question_id: str, answer: str) -> MoveResult: ...
    async def surrender(self, session_id: str) -> None: ...


def wire_id(value: str) -> Any:
    """Numeric ids go over the wire as integers, anything else as given."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


class GameApi:
    """REST pull channel against the game server."""

    def __init__(self,
                 base_url: str,
                 token: Callable[[], Optional[str]] = lambda: None,
                 timeout: float = 10.0,
                 board_size: int = BOARD_SIZE,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
               ):
        self._token = token
        self.board_size = board_size
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise PullChannelError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise PullChannelError(f"HTTP {resp.status_code}: {resp.text[:200]}", status=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise PullChannelError(f"{method} {path} returned non-JSON body") from e

    async def create_session(self, room_ref: Optional[str] = None) -> GameState:
        body: dict[str, Any] = {}
        if room_ref:
            body["roomId"] = wire_id(room_ref)
        dbg(None, f"POST /api/Games body={body}")
        return parse_game_state(await self._request("POST", "/api/Games", body), self.board_size)

    async def get_session(self, session_id: str) -> GameState:
        data = await self._request("GET", f"/api/Games/{wire_id(session_id)}")
        return parse_game_state(data, self.board_size)

    async def roll(self, session_id: str) -> MoveResult:
        data = await self._request("POST", "/api/Moves/roll", {"gameId": wire_id(session_id)})
        return parse_move_result(data, self.board_size)

    async def request_follow_up_question(self, session_id: str) -> FollowUpQuestion:
        data = await self._request("POST", "/api/Moves/get-profesor", {"gameId": wire_id(session_id)})
        return parse_question(data)

    async def answer_follow_up_question(self, session_id: str, question_id: str, answer: str) -> MoveResult:
        body: dict[str, Any] = {"gameId": wire_id(session_id), "answer": answer}
        if question_id:
            body["questionId"] = question_id
            body["profesorQuestionId"] = question_id
        data = await self._request("POST", "/api/Moves/answer-profesor", body)
        return parse_move_result(data, self.board_size)

    async def surrender(self, session_id: str) -> None:
        await self._request("POST", "/api/Moves/surrender", {"gameId": wire_id(session_id)})
