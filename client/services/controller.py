import asyncio
import os
import random
import time
from typing import Callable, Mapping, Optional

from client.config import ClientConfig
from client.errors import ApplyOutcome, ClientError, PayloadError, PullChannelError, TransportFailure
from client.schemas import (
    FollowUpQuestion,
    GameState,
    MoveResult,
    StateView,
    parse_game_state,
    parse_move_result,
    parse_question,
)
from client.services.api import GameApi, PullChannel
from client.services.attribution import attribute_mover
from client.services.board import is_hazard_head
from client.services.credentials import CredentialStore, FileCredentials, MappingCredentials
from client.services.hub import PushSessionManager, PushTransport, SignalRHub
from client.services.polling import PollingScheduler
from client.services.reconciler import StateReconciler
from client.services.sequencer import OperationSequencer
from client.services.simulator import OptimisticMoveSimulator
from client.services.watchdog import MoveWatchdog
from client.utils.audit import audit_write, dbg
from client.utils.tasks import TaskSet

SEND_MOVE = "SendMove"
SEND_SURRENDER = "SendSurrender"


class GameController:
    """Keeps one game session's local view in line with the server.

    Moves go out over the push channel when it is up, otherwise over the pull
    channel (optionally through the optimistic simulator). Whatever comes
    back is funnelled through the reconciler. Listeners registered with
    ``add_listener`` are called after every state mutation.
    """

    def __init__(self,
                 api: PullChannel,
                 transport: PushTransport,
                 credentials: CredentialStore,
                 config: Optional[ClientConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
               ):
        self.config = cfg = config or ClientConfig()
        self.api = api
        self.credentials = credentials
        self.sequencer = OperationSequencer()
        self.simulator = OptimisticMoveSimulator(
            api,
            board_size=cfg.board_size,
            grace=cfg.simulation_grace,
            persist_timeout=cfg.persist_timeout,
            clock=clock,
            rng=rng,
        )
        self.reconciler = StateReconciler(
            self.sequencer,
            self.simulator,
            fetch=api.get_session,
            on_change=self._notify,
            on_follow_up=self._fetch_follow_up,
            recheck_margin=cfg.recheck_margin,
        )
        self.hub = PushSessionManager(
            transport,
            credentials,
            gate_interval=cfg.hub_gate_interval,
            on_available=self.stop_polling,
            on_unavailable=self.start_polling,
        )
        self.polling = PollingScheduler(
            self._poll_tick,
            fast_interval=cfg.poll_fast_interval,
            fast_ticks=cfg.poll_fast_ticks,
            slow_interval=cfg.poll_slow_interval,
            log_id=lambda: self.session_id,
        )
        self.watchdog = MoveWatchdog(cfg.watchdog_timeout, self._on_watchdog_expired)
        self._tasks = TaskSet()
        self._listeners: list[Callable[[], None]] = []

        self.last_move_result: Optional[MoveResult] = None
        self.last_move_player_id: Optional[str] = None
        self.waiting_for_move: bool = False
        self.simulate_enabled: bool = cfg.simulate_enabled
        self.force_enable_roll: bool = False
        self.loading: bool = False
        self.answering: bool = False
        self.error: Optional[str] = None
        self.current_question: Optional[FollowUpQuestion] = None
        # square the most recent question was requested for
        self.follow_up_position: Optional[int] = None
        self.follow_up_requests: int = 0

        self._register_hub_events()

    # ==== exposed state ====
    @property
    def game(self) -> Optional[GameState]:
        return self.reconciler.state

    @property
    def session_id(self) -> Optional[str]:
        return self.reconciler.session_id

    @property
    def push_available(self) -> bool:
        return self.hub.available

    @property
    def last_push_error(self) -> Optional[str]:
        return self.hub.last_error

    @property
    def last_move_simulated(self) -> bool:
        return self.simulator.mark.is_simulated

    @property
    def has_pending_simulated(self) -> bool:
        return self.simulator.has_pending

    @property
    def is_my_turn(self) -> bool:
        game = self.game
        if game is None:
            return False
        uid = (self.credentials.user_id or "").strip()
        name = (self.credentials.username or "").strip().lower()
        for p in game.players:
            if not p.is_turn:
                continue
            if uid and p.id.strip() == uid:
                return True
            if name and p.username.strip().lower() == name:
                return True
        return False

    @property
    def current_turn_username(self) -> str:
        holder = self.game.turn_holder() if self.game is not None else None
        return holder.username if holder is not None else ""

    def view(self) -> StateView:
        return StateView(
            game=self.game,
            last_move_result=self.last_move_result,
            last_move_player_id=self.last_move_player_id,
            last_move_simulated=self.last_move_simulated,
            has_pending_simulated=self.has_pending_simulated,
            waiting_for_move=self.waiting_for_move,
            push_available=self.push_available,
            last_push_error=self.last_push_error,
            simulate_enabled=self.simulate_enabled,
            force_enable_roll=self.force_enable_roll,
            loading=self.loading,
            answering=self.answering,
            error=self.error,
            current_question=self.current_question,
            is_my_turn=self.is_my_turn,
            current_turn_username=self.current_turn_username,
        )

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ==== session creation / load ====
    def _begin_loading(self, token: int) -> None:
        self.loading = True
        self.error = None
        self._notify()
        self._tasks.spawn(self._loading_timeout(token))

    async def _loading_timeout(self, token: int) -> None:
        await asyncio.sleep(self.config.loading_timeout)
        if self.sequencer.is_current(token) and self.loading:
            dbg(self.session_id, f"loading timeout, clearing loading op={token}")
            self.loading = False
            self._notify()

    def _end_loading(self, token: int) -> None:
        if self.sequencer.is_current(token):
            self.loading = False
            self._notify()

    async def create_or_join(self, room_ref: Optional[str] = None) -> bool:
        token = self.sequencer.begin()
        self._begin_loading(token)
        dbg(None, f"create_or_join start op={token} room={room_ref}")
        try:
            created = await self.api.create_session(room_ref)
            if not self.sequencer.is_current(token):
                dbg(created.id, f"create_or_join op={token} superseded, dropping result")
                return False
            return await self.load_game(created.id)
        except ClientError as e:
            dbg(None, f"create_or_join failed op={token}: {e}")
            if self.sequencer.is_current(token):
                self.error = str(e)
            return False
        finally:
            self._end_loading(token)

    async def _get_with_retry(self, session_id: str, token: int) -> GameState:
        attempts = max(1, self.config.load_attempts)
        for attempt in range(attempts):
            try:
                return await self.api.get_session(session_id)
            except PullChannelError as e:
                # freshly created sessions can 404 for a moment
                if e.not_found and attempt < attempts - 1 and self.sequencer.is_current(token):
                    await asyncio.sleep(self.config.load_retry_delay)
                    continue
                raise
        raise PullChannelError("Failed to fetch game after retries")

    async def load_game(self, session_id: str) -> bool:
        token = self.sequencer.begin()
        self._begin_loading(token)
        dbg(session_id, f"load_game start op={token}")
        try:
            fresh = await self._get_with_retry(session_id, token)
            attempt = 0
            while (not fresh.players and attempt < self.config.empty_players_retries
                   and self.sequencer.is_current(token)):
                await asyncio.sleep(self.config.empty_players_delay)
                try:
                    fresh = await self.api.get_session(session_id)
                except ClientError as e:
                    dbg(session_id, f"load_game empty-players retry failed: {e}")
                attempt += 1
            if not self.sequencer.is_current(token):
                dbg(session_id, f"load_game op={token} superseded, dropping result")
                return False
            if not fresh.players:
                dbg(session_id, "load_game: players remained empty after retries")

            self.simulator.discard()
            self.reconciler.reset(fresh)
            dbg(session_id, "loaded players=" + str([f"{p.username}:{p.is_turn}" for p in self.game.players]))
            dbg(session_id, f"current user id={self.credentials.user_id} username={self.credentials.username}")
            audit_write(session_id, {"type": "session_loaded", "op": token})
            await self._connect_hub()
            return True
        except ClientError as e:
            dbg(session_id, f"load_game failed: {e}")
            if self.sequencer.is_current(token):
                self.error = str(e)
            return False
        finally:
            self._end_loading(token)

    # ==== push channel ====
    async def _connect_hub(self) -> None:
        sid = self.session_id
        if sid is None:
            return
        token = self.sequencer.current

        async def after_join() -> None:
            fresh = await self.api.get_session(sid)
            if not fresh.players:
                dbg(sid, "snapshot after hub join contains no players (server may still be populating)")
            await self.reconciler.apply(fresh, token=token, guard_empty=True, source="join")

        await self.hub.connect(sid, after_join)
        self._notify()

    async def reconnect(self) -> bool:
        if self.game is None:
            self.hub.last_error = "No game loaded to reconnect to"
            self._notify()
            return False
        await self._connect_hub()
        return self.hub.available

    def _register_hub_events(self) -> None:
        self.hub.on("state_update", self._on_state_update)
        self.hub.on("player_joined", self._on_players_changed)
        self.hub.on("player_left", self._on_players_changed)
        self.hub.on("player_surrendered", self._on_players_changed)
        self.hub.on("move_completed", self._on_move_completed)
        self.hub.on("question_asked", self._on_question_asked)
        self.hub.on("game_finished", self._on_game_finished)
        self.hub.on("error", self._on_hub_error)

    async def _on_state_update(self, args: list) -> None:
        if not args or not isinstance(args[0], Mapping):
            return
        snapshot = parse_game_state(args[0], self.config.board_size)
        await self.reconciler.apply(snapshot, token=self.sequencer.current, source="push")

    async def _on_players_changed(self, args: list) -> None:
        if self.game is not None:
            await self._refresh(source="push")

    async def _on_hub_error(self, args: list) -> None:
        if args:
            self.error = str(args[0])
            self._notify()

    async def _on_question_asked(self, args: list) -> None:
        if args and isinstance(args[0], Mapping):
            self.current_question = parse_question(args[0])
            self._notify()

    async def _on_game_finished(self, args: list) -> None:
        dbg(self.session_id, f"game finished event: {args}")
        await self._refresh(source="push")

    async def _on_move_completed(self, args: list) -> None:
        result: Optional[MoveResult] = None
        if args and isinstance(args[0], Mapping):
            try:
                result = parse_move_result(args[0], self.config.board_size)
            except PayloadError as e:
                dbg(self.session_id, f"unparseable move-completed payload: {e}")
        if result is not None:
            before = self.game
            self.last_move_result = result
            self.simulator.clear_mark()
            self.last_move_player_id = (
                attribute_mover(before.players, result.dice, result.to_position) if before is not None else None
            )
            dbg(self.session_id, f"move completed dice={result.dice} to={result.to_position} "
                                 f"mover={self.last_move_player_id}")
        self.watchdog.cancel()
        self.waiting_for_move = False
        self._notify()
        await self._after_move(result)

    async def _on_watchdog_expired(self) -> None:
        dbg(self.session_id, "move watchdog expired; refreshing from server")
        self.waiting_for_move = False
        self._notify()
        if self.game is not None:
            await self._refresh(source="watchdog")

    # ==== polling ====
    def start_polling(self) -> None:
        self.polling.start()

    def stop_polling(self) -> None:
        self.polling.stop()

    async def _poll_tick(self) -> None:
        game = self.game
        if game is None or self.simulator.grace_active():
            return
        token = self.sequencer.current
        fresh = await self.api.get_session(game.id)
        await self.reconciler.apply(fresh, token=token, guard_empty=True, source="poll")

    # ==== refresh / follow-up ====
    async def _refresh(self, source: str = "pull") -> Optional[ApplyOutcome]:
        game = self.game
        if game is None:
            return None
        token = self.sequencer.current
        try:
            fresh = await self.api.get_session(game.id)
        except ClientError as e:
            dbg(game.id, f"refresh from server failed: {e}")
            return None
        return await self.reconciler.apply(fresh, token=token, source=source)

    async def _after_move(self, result: Optional[MoveResult]) -> None:
        before = self.follow_up_requests
        await self._refresh()
        game = self.game
        if (result is not None and game is not None and self.follow_up_requests == before
                and is_hazard_head(result.to_position, game.snakes)):
            await self._fetch_follow_up(result.to_position)

    async def _fetch_follow_up(self, position: int) -> None:
        sid = self.session_id
        if sid is None:
            return
        self.follow_up_position = position
        self.follow_up_requests += 1
        dbg(sid, f"requesting follow-up question for position={position}")
        try:
            question = await self.api.request_follow_up_question(sid)
        except ClientError as e:
            dbg(sid, f"no follow-up question available: {e}")
            return
        self.current_question = question
        self._notify()

    # ==== moves ====
    async def roll(self) -> bool:
        game = self.game
        if game is None:
            return False
        if not (self.is_my_turn or self.force_enable_roll):
            self.error = "Not your turn"
            self._notify()
            return False
        self.error = None
        token = self.sequencer.current
        try:
            if self.hub.connected:
                await self._roll_via_push(game, token)
            elif not self.simulate_enabled:
                await self._roll_via_pull(game, token)
            else:
                await self._roll_simulated(game, token)
            return True
        except ClientError as e:
            if self.sequencer.is_current(token):
                self.error = str(e)
                self._notify()
            return False

    def _superseded(self, token: int, game: GameState, what: str) -> bool:
        if self.sequencer.is_current(token):
            return False
        dbg(game.id, f"{what} op={token} superseded by op={self.sequencer.current}, dropping result")
        return True

    async def _roll_via_push(self, game: GameState, token: int) -> None:
        gid = game.numeric_id()
        if gid is None or gid <= 0:
            raise ClientError("Invalid game id")
        try:
            await self.hub.invoke(SEND_MOVE, [gid])
        except TransportFailure as e:
            dbg(game.id, f"{SEND_MOVE} failed, trying one reconnect: {e}")
            if not await self.reconnect():
                await self._roll_via_pull(self.game or game, token)
                return
            try:
                await self.hub.invoke(SEND_MOVE, [gid])
            except TransportFailure as e2:
                dbg(game.id, f"{SEND_MOVE} failed after reconnect, using pull channel: {e2}")
                await self._roll_via_pull(self.game or game, token)
                return
        if self._superseded(token, game, "push roll"):
            return
        self.waiting_for_move = True
        self.watchdog.start()
        self._notify()

    async def _roll_via_pull(self, game: GameState, token: int) -> None:
        result = await self.api.roll(game.id)
        if self._superseded(token, game, "pull roll"):
            return
        self.last_move_result = result
        self.last_move_player_id = attribute_mover(game.players, result.dice, result.to_position)
        dbg(game.id, f"pull roll result dice={result.dice} to={result.to_position}")
        self._notify()
        await self._after_move(result)

    async def _roll_simulated(self, game: GameState, token: int) -> None:
        async def on_persisted(result: MoveResult) -> None:
            if not self._superseded(token, game, "background persist"):
                await self._on_background_persisted(result)

        move = await self.simulator.simulate(game, on_persisted)
        if self._superseded(token, game, "simulated roll"):
            self.simulator.discard(move.state)
            return
        self.reconciler.replace(move.state)
        self.last_move_result = move.result
        self.last_move_player_id = move.mover_id
        self._notify()
        if move.persisted:
            await self._after_move(move.result)
        elif move.follow_up_position is not None:
            await self._fetch_follow_up(move.follow_up_position)

    async def _on_background_persisted(self, result: MoveResult) -> None:
        self.last_move_result = result
        self._notify()
        await self._after_move(result)

    def apply_pending_simulated(self) -> bool:
        pending = self.simulator.take_pending()
        if pending is None:
            return False
        self.reconciler.replace(pending)
        return True

    # ==== follow-up questions ====
    async def get_follow_up_question(self) -> Optional[FollowUpQuestion]:
        game = self.game
        if game is None:
            return None
        try:
            return await self.api.request_follow_up_question(game.id)
        except ClientError as e:
            self.error = str(e)
            self._notify()
            return None

    async def answer_follow_up(self, question_id: str, answer: str) -> Optional[MoveResult]:
        game = self.game
        if game is None:
            return None
        self.answering = True
        self._notify()
        try:
            result = await self.api.answer_follow_up_question(game.id, question_id, answer)
            self.last_move_result = result
            self.simulator.clear_mark()
            await self.load_game(game.id)
            return result
        except ClientError as e:
            self.error = str(e)
            self._notify()
            return None
        finally:
            self.answering = False
            self._notify()

    def clear_current_question(self) -> None:
        self.current_question = None
        self._notify()

    async def surrender(self) -> bool:
        game = self.game
        if game is None:
            return False
        try:
            gid = game.numeric_id()
            if gid is None or gid <= 0:
                raise ClientError("Invalid game id")
            if self.hub.connected:
                try:
                    await self.hub.invoke(SEND_SURRENDER, [gid])
                    return True
                except TransportFailure as e:
                    dbg(game.id, f"{SEND_SURRENDER} failed, using pull channel: {e}")
            self.simulator.clear_mark()
            await self.api.surrender(game.id)
            await self.load_game(game.id)
            return True
        except ClientError as e:
            self.error = str(e)
            self._notify()
            return False

    # ==== toggles ====
    def set_simulate_enabled(self, enabled: bool) -> None:
        self.simulate_enabled = enabled
        self._notify()

    def set_force_enable_roll(self, enabled: bool) -> None:
        self.force_enable_roll = enabled
        self._notify()

    async def close(self) -> None:
        self.watchdog.cancel()
        self.polling.stop()
        self.reconciler.close()
        self.simulator.close()
        self._tasks.cancel_all()
        await self.hub.stop()
        close = getattr(self.api, "close", None)
        if close is not None:
            await close()


def build_controller(config: ClientConfig) -> GameController:
    if config.credentials_path:
        credentials: CredentialStore = FileCredentials(config.credentials_path)
    else:
        credentials = MappingCredentials({
            "userId": os.getenv("SNL_USER_ID"),
            "username": os.getenv("SNL_USERNAME"),
            "token": os.getenv("SNL_TOKEN"),
        })
    api = GameApi(
        config.api_base_url,
        token=lambda: credentials.access_token,
        timeout=config.request_timeout,
        board_size=config.board_size,
    )
    hub = SignalRHub(config.hub_url, keepalive_interval=config.hub_keepalive_interval)
    return GameController(api, hub, credentials, config)
