import asyncio
from typing import Awaitable, Callable, Optional, Sequence

from client.errors import ApplyOutcome, ClientError
from client.schemas import GameState, PlayerState, TurnHint
from client.services.board import is_hazard_head
from client.services.sequencer import OperationSequencer
from client.services.simulator import OptimisticMoveSimulator
from client.utils.audit import audit_write, dbg
from client.utils.tasks import cancel_task


def _turn_by_id(players: Sequence[PlayerState], hint: TurnHint) -> int:
    want = (hint.player_id or "").strip()
    if not want:
        return -1
    for i, p in enumerate(players):
        if p.id.strip() == want:
            return i
    return -1


def _turn_by_name(players: Sequence[PlayerState], hint: TurnHint) -> int:
    want = (hint.username or "").strip().lower()
    if not want:
        return -1
    for i, p in enumerate(players):
        if p.username.strip().lower() == want:
            return i
    return -1


def _turn_by_index(players: Sequence[PlayerState], hint: TurnHint) -> int:
    idx = hint.index
    if idx is None:
        return -1
    # payloads mix 0-based and 1-based indices; anything in 1..n is read as 1-based
    if 0 < idx <= len(players):
        idx -= 1
    return idx if 0 <= idx < len(players) else -1


def infer_turn(players: Sequence[PlayerState], hint: Optional[TurnHint]) -> list[PlayerState]:
    """Return players with exactly one turn flag where the payload allows it.

    Several flagged players: the first keeps the turn. None flagged: try the
    hint's id, then username, then numeric index, stopping at the first match.
    """
    out = list(players)
    flagged = [i for i, p in enumerate(out) if p.is_turn]
    if flagged:
        for i in flagged[1:]:
            out[i] = out[i].with_turn(False)
        return out
    if hint is None or not out:
        return out
    for strategy in (_turn_by_id, _turn_by_name, _turn_by_index):
        idx = strategy(out, hint)
        if idx >= 0:
            out[idx] = out[idx].with_turn(True)
            break
    return out


def normalize(incoming: GameState) -> GameState:
    seen: set[str] = set()
    players: list[PlayerState] = []
    for p in incoming.players:
        if p.id and p.id in seen:
            continue
        seen.add(p.id)
        players.append(p)
    return incoming.replace(players=infer_turn(players, incoming.turn_hint), turn_hint=None)


def merge(current: Optional[GameState], incoming: GameState) -> GameState:
    """Players and status come from the snapshot; board geometry only when it is present."""
    fresh = normalize(incoming)
    if current is None:
        return fresh
    return fresh.replace(
        ladders=fresh.ladders if fresh.ladders else current.ladders,
        snakes=fresh.snakes if fresh.snakes else current.snakes,
    )


def follow_up_position(previous: Optional[GameState], new: GameState) -> Optional[int]:
    """First player whose square changed and is now a hazard head, else None."""
    for p in new.players:
        prev = previous.player(p.id) if previous is not None else None
        prev_pos = prev.position if prev is not None else -1
        if prev_pos != p.position and is_hazard_head(p.position, new.snakes):
            return p.position
    return None


class StateReconciler:
    """Owns the current GameState cell and decides what gets written to it."""

    def __init__(self,
                 sequencer: OperationSequencer,
                 simulator: OptimisticMoveSimulator,
                 fetch: Callable[[str], Awaitable[GameState]],
                 on_change: Callable[[], None],
                 on_follow_up: Callable[[int], Awaitable[None]],
                 recheck_margin: float = 0.25,
               ):
        self._sequencer = sequencer
        self._simulator = simulator
        self._fetch = fetch
        self._on_change = on_change
        self._on_follow_up = on_follow_up
        self.recheck_margin = recheck_margin
        self.state: Optional[GameState] = None
        self._recheck: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.state.id if self.state is not None else None

    @property
    def recheck_pending(self) -> bool:
        return self._recheck is not None and not self._recheck.done()

    def reset(self, state: Optional[GameState]) -> None:
        """Start over with a freshly loaded session (or none)."""
        self._cancel_recheck()
        self.state = normalize(state) if state is not None else None
        self._on_change()

    def replace(self, state: GameState) -> None:
        self.state = state
        self._on_change()

    async def apply(self, incoming: GameState, token: Optional[int] = None,
                    guard_empty: bool = False, source: str = "pull") -> ApplyOutcome:
        sid = self.session_id or incoming.id
        if token is not None and not self._sequencer.is_current(token):
            dbg(sid, f"discarding stale {source} snapshot token={token} current={self._sequencer.current}")
            return ApplyOutcome.STALE
        if self._simulator.grace_active():
            dbg(sid, f"deferring {source} snapshot; simulated move in grace window")
            self._schedule_recheck()
            return ApplyOutcome.DEFERRED
        current = self.state
        if guard_empty and current is not None and current.players and not incoming.players:
            dbg(sid, f"skipping {source} snapshot with empty players to keep local state")
            return ApplyOutcome.EMPTY_GUARD

        merged = merge(current, incoming)
        self.state = merged
        audit_write(merged.id, {
            "type": "reconciled",
            "source": source,
            "status": merged.status.value,
            "players": [f"{p.username}:{p.position}:{p.is_turn}" for p in merged.players],
        })
        self._on_change()

        square = follow_up_position(current, merged)
        if square is not None:
            await self._on_follow_up(square)
        return ApplyOutcome.APPLIED

    # ---- grace window re-check ----
    def _schedule_recheck(self) -> None:
        if self.recheck_pending:
            return
        delay = self._simulator.grace_remaining() + self.recheck_margin
        self._recheck = asyncio.get_running_loop().create_task(
            self._recheck_later(delay, self._sequencer.current))

    async def _recheck_later(self, delay: float, token: int) -> None:
        await asyncio.sleep(delay)
        self._recheck = None
        sid = self.session_id
        if sid is None or not self._sequencer.is_current(token):
            return
        try:
            fresh = await self._fetch(sid)
        except ClientError as e:
            dbg(sid, f"grace re-check fetch failed: {e}")
            return
        await self.apply(fresh, token=token, source="recheck")

    def _cancel_recheck(self) -> None:
        task, self._recheck = self._recheck, None
        cancel_task(task)

    def close(self) -> None:
        self._cancel_recheck()
