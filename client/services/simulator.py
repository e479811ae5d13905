import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from client.errors import ClientError
from client.schemas import (
    BOARD_SIZE,
    DICE_FACES,
    GameState,
    GameStatus,
    MoveResult,
    PlayerState,
    SimulationMark,
)
from client.services.api import PullChannel
from client.services.board import resolve_move
from client.utils.audit import audit_write, dbg
from client.utils.tasks import TaskSet


@dataclass(frozen=True)
class SimulatedMove:
    state: GameState
    result: MoveResult
    mover_id: str
    persisted: bool
    # hazard head the local prediction landed on; the question is asked for this square
    follow_up_position: Optional[int] = None


def pass_turn(players: Sequence[PlayerState], mover_index: int, new_position: int) -> list[PlayerState]:
    """Replacement player list: mover moved, next seat gets the turn, others untouched."""
    n = len(players)
    nxt = (mover_index + 1) % n
    out: list[PlayerState] = []
    for i, p in enumerate(players):
        if i == mover_index:
            out.append(p.moved_to(new_position, is_turn=(nxt == mover_index)))
        elif i == nxt:
            out.append(p.with_turn(True))
        else:
            out.append(p)
    return out


class OptimisticMoveSimulator:
    """Predicts a roll locally when the push channel is down.

    The roll is still sent over the pull channel with a short timeout. If that
    fails the prediction is staged as pending, shown right away, and incoming
    server snapshots are held back for ``grace`` seconds.
    """

    def __init__(self,
                 api: PullChannel,
                 board_size: int = BOARD_SIZE,
                 grace: float = 4.0,
                 persist_timeout: float = 3.0,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
               ):
        self._api = api
        self.board_size = board_size
        self.grace = grace
        self.persist_timeout = persist_timeout
        self._clock = clock
        self._rng = rng or random.Random()
        self.mark: SimulationMark = SimulationMark()
        self.pending: Optional[GameState] = None
        self._tasks = TaskSet()

    # ---- grace window ----
    def grace_active(self) -> bool:
        m = self.mark
        if not m.is_simulated or m.last_simulated_at is None:
            return False
        return (self._clock() - m.last_simulated_at) < self.grace

    def grace_remaining(self) -> float:
        m = self.mark
        if not m.is_simulated or m.last_simulated_at is None:
            return 0.0
        return max(0.0, self.grace - (self._clock() - m.last_simulated_at))

    def clear_mark(self) -> None:
        self.mark = SimulationMark()

    @property
    def has_pending(self) -> bool:
        return self.pending is not None

    def take_pending(self) -> Optional[GameState]:
        pending, self.pending = self.pending, None
        if pending is not None:
            self.clear_mark()
        return pending

    def discard(self, state: Optional[GameState] = None) -> None:
        """Drop the staged prediction. With ``state``, only if it is still the one staged."""
        if state is not None and self.pending is not state:
            return
        self.pending = None
        self.clear_mark()

    # ---- roll ----
    def _finished(self, game: GameState, square: int) -> GameStatus:
        return GameStatus.FINISHED if square >= self.board_size else game.status

    async def simulate(self, game: GameState,
                       on_persisted: Callable[[MoveResult], Awaitable[None]]) -> SimulatedMove:
        players = game.players
        if not players:
            raise ClientError("No players to move")
        idx = game.turn_index()
        if idx < 0:
            idx = 0
        mover = players[idx]

        dice = self._rng.randint(1, DICE_FACES)
        res = resolve_move(mover.position, dice, game.ladders, game.snakes, self.board_size)
        predicted = game.replace(
            players=pass_turn(players, idx, res.final),
            status=self._finished(game, res.candidate),
            turn_hint=None,
        )

        try:
            server = await asyncio.wait_for(self._api.roll(game.id), self.persist_timeout)
        except (ClientError, asyncio.TimeoutError) as e:
            self.pending = predicted
            self.mark = SimulationMark(is_simulated=True, last_simulated_at=self._clock())
            result = MoveResult(
                dice=dice,
                from_position=mover.position,
                to_position=res.final,
                requires_follow_up=res.hit_hazard_head,
                message="Simulated move",
            )
            dbg(game.id, f"simulated roll dice={dice} {mover.position}->{res.final} (persist pending: {e!r})")
            audit_write(game.id, {"type": "simulated_move", "player": mover.id, "dice": dice,
                                  "from": mover.position, "to": res.final})
            self._tasks.spawn(self._persist_later(game.id, predicted, on_persisted))
            return SimulatedMove(
                state=predicted,
                result=result,
                mover_id=mover.id,
                persisted=False,
                follow_up_position=res.snake.head if res.snake else None,
            )

        # server's square wins over the local guess
        confirmed = game.replace(
            players=pass_turn(players, idx, server.to_position),
            status=self._finished(game, server.to_position),
            turn_hint=None,
        )
        self.clear_mark()
        dbg(game.id, f"simulated move persisted immediately dice={server.dice} to={server.to_position}")
        return SimulatedMove(state=confirmed, result=server, mover_id=mover.id, persisted=True)

    async def _persist_later(self, session_id: str, predicted: GameState,
                             on_persisted: Callable[[MoveResult], Awaitable[None]]) -> None:
        try:
            server = await self._api.roll(session_id)
        except ClientError as e:
            dbg(session_id, f"background persist failed: {e}")
            return
        # a later roll may have staged its own prediction meanwhile
        if self.pending is predicted:
            self.pending = None
            self.clear_mark()
        dbg(session_id, f"background persisted simulated move dice={server.dice} to={server.to_position}")
        await on_persisted(server)

    async def wait_background(self) -> None:
        await self._tasks.drain()

    def close(self) -> None:
        self._tasks.cancel_all()
