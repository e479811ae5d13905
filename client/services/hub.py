import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from client.errors import ClientError, TransportFailure
from client.services.api import wire_id
from client.services.credentials import CredentialStore, mask_token
from client.utils.audit import audit_write, dbg
from client.utils.tasks import cancel_task

EventHandler = Callable[[list], Awaitable[None]]

# The server broadcasts the same logical event under several names.
EVENT_ALIASES: dict[str, tuple[str, ...]] = {
    "state_update": ("GameStateUpdate", "gameStateUpdated", "GameUpdated", "UpdateGame", "GameState"),
    "player_joined": ("PlayerJoined", "playerJoined", "OnPlayerJoined", "UserJoined"),
    "player_left": ("PlayerLeft",),
    "player_surrendered": ("PlayerSurrendered",),
    "move_completed": ("MoveCompleted", "MoveResult", "OnMoveCompleted", "MoveMade"),
    "question_asked": ("ReceiveProfesorQuestion", "ReceiveProfessorQuestion", "ProfesorQuestion", "ProfesorAsked"),
    "game_finished": ("GameFinished", "OnGameFinished", "GameEnd"),
    "error": ("MoveError", "SurrenderError", "Error"),
}

JOIN_GROUP = "JoinGameGroup"


class PushTransport(Protocol):
    @property
    def is_connected(self) -> bool: ...
    async def connect(self, token: Optional[str] = None) -> None: ...
    async def stop(self) -> None: ...
    async def invoke(self, method: str, args: list) -> None: ...
    def on(self, name: str, handler: EventHandler) -> None: ...
    def on_close(self, handler: Callable[[str], None]) -> None: ...


class PushSessionManager:
    """Owns the single real-time connection of a session.

    Connect and stop go through a busy gate so they never interleave, and
    event handlers wait for the gate before running. Failing to connect, or the
    transport dropping afterwards, flips ``available`` off and calls
    ``on_unavailable`` (the controller starts polling); reconnecting is always
    up to the caller.
    """

    def __init__(self,
                 transport: PushTransport,
                 credentials: CredentialStore,
                 gate_interval: float = 0.05,
                 on_available: Callable[[], None] = lambda: None,
                 on_unavailable: Callable[[], None] = lambda: None,
               ):
        self._transport = transport
        self._credentials = credentials
        self.gate_interval = gate_interval
        self._on_available = on_available
        self._on_unavailable = on_unavailable
        self.available: bool = False
        self.last_error: Optional[str] = None
        self._busy: bool = False
        self._handlers: dict[str, EventHandler] = {}
        self._bound: set[str] = set()
        self.session_id: Optional[str] = None
        transport.on_close(self._on_transport_closed)

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def connected(self) -> bool:
        return self.available and self._transport.is_connected

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in EVENT_ALIASES:
            raise KeyError(f"unknown hub event {event!r}")
        self._handlers[event] = handler

    async def _wait_idle(self) -> None:
        while self._busy:
            await asyncio.sleep(self.gate_interval)

    @asynccontextmanager
    async def gate(self):
        await self._wait_idle()
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    async def connect(self, session_id: str, after_join: Callable[[], Awaitable[None]]) -> bool:
        async with self.gate():
            self.session_id = session_id
            try:
                await self._transport.stop()
            except TransportFailure as e:
                dbg(session_id, f"hub stop before connect failed: {e}")

            self.last_error = None
            token = self._credentials.access_token
            dbg(session_id, f"hub connect token={mask_token(token)}")
            try:
                await self._transport.connect(token)
            except TransportFailure as e:
                self.available = False
                self.last_error = str(e)
                dbg(session_id, f"hub connect failed, falling back to polling: {e}")
                audit_write(session_id, {"type": "hub_unavailable", "error": str(e)})
                self._on_unavailable()
                return False

            self.available = True
            self._on_available()
            self._bind_aliases()

            gid = wire_id(session_id)
            if isinstance(gid, int) and gid > 0:
                try:
                    await self._transport.invoke(JOIN_GROUP, [gid])
                except TransportFailure as e:
                    dbg(session_id, f"{JOIN_GROUP} failed: {e}")
            try:
                await after_join()
            except ClientError as e:
                dbg(session_id, f"snapshot after hub join failed: {e}")
            audit_write(session_id, {"type": "hub_connected"})
            return True

    async def stop(self) -> None:
        async with self.gate():
            self.available = False
            try:
                await self._transport.stop()
            except TransportFailure as e:
                dbg(self.session_id, f"hub stop failed: {e}")

    async def invoke(self, method: str, args: list) -> None:
        await self._transport.invoke(method, args)

    def _on_transport_closed(self, reason: str) -> None:
        if not self.available:
            return
        self.available = False
        self.last_error = reason
        dbg(self.session_id, f"hub dropped, falling back to polling: {reason}")
        audit_write(self.session_id, {"type": "hub_unavailable", "error": reason})
        self._on_unavailable()

    def _bind_aliases(self) -> None:
        for event, aliases in EVENT_ALIASES.items():
            for alias in aliases:
                if alias in self._bound:
                    continue
                self._transport.on(alias, self._dispatcher(event, alias))
                self._bound.add(alias)

    def _dispatcher(self, event: str, alias: str) -> EventHandler:
        async def dispatch(args: list) -> None:
            handler = self._handlers.get(event)
            if handler is None:
                return
            await self._wait_idle()
            dbg(self.session_id, f"hub event {alias} -> {event}")
            try:
                await handler(list(args or []))
            except ClientError as e:
                dbg(self.session_id, f"{event} handler error: {e}")
        return dispatch


# ==== websocket transport ====
_RS = "\x1e"


def _frames(raw: Any) -> list[dict]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    out = []
    for part in raw.split(_RS):
        if not part.strip():
            continue
        try:
            msg = json.loads(part)
        except ValueError:
            continue
        if isinstance(msg, dict):
            out.append(msg)
    return out


class SignalRHub:
    """Minimal client for a JSON-protocol SignalR hub over websockets.

    Skips negotiation; the bearer token travels as ``access_token`` in the query.
    Only fire-and-forget invocations are sent, nothing waits for completions.
    A ping frame goes out every ``keepalive_interval`` seconds so the server
    does not time the client out. If the socket ends without ``stop()`` the
    ``on_close`` handlers are called with the reason.
    """

    INVOCATION = 1
    PING = 6
    CLOSE = 7

    def __init__(self, url: str, open_timeout: float = 10.0, keepalive_interval: float = 15.0):
        self.url = url
        self.open_timeout = open_timeout
        self.keepalive_interval = keepalive_interval
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._pinger: Optional[asyncio.Task] = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._close_handlers: list[Callable[[str], None]] = []

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    def on(self, name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def on_close(self, handler: Callable[[str], None]) -> None:
        self._close_handlers.append(handler)

    def _url_for(self, token: Optional[str]) -> str:
        if not token:
            return self.url
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode({'access_token': token})}"

    async def connect(self, token: Optional[str] = None) -> None:
        try:
            self._ws = await websockets.connect(self._url_for(token), open_timeout=self.open_timeout)
            await self._ws.send(json.dumps({"protocol": "json", "version": 1}) + _RS)
            reply = await asyncio.wait_for(self._ws.recv(), self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            await self._drop()
            raise TransportFailure(f"hub connect failed: {e}") from e
        handshake = _frames(reply)
        if not handshake or handshake[0].get("error"):
            err = handshake[0].get("error") if handshake else "empty handshake"
            await self._drop()
            raise TransportFailure(f"hub handshake rejected: {err}")
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(self._read_loop(self._ws))
        self._pinger = loop.create_task(self._ping_loop(self._ws))

    async def stop(self) -> None:
        reader, self._reader = self._reader, None
        pinger, self._pinger = self._pinger, None
        cancel_task(pinger)
        cancel_task(reader)
        await self._drop()

    async def _drop(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except WebSocketException:
            pass

    async def invoke(self, method: str, args: list) -> None:
        if not self.is_connected:
            raise TransportFailure("hub not connected")
        msg = {"type": self.INVOCATION, "target": method, "arguments": list(args)}
        try:
            await self._ws.send(json.dumps(msg) + _RS)
        except WebSocketException as e:
            raise TransportFailure(f"invoke {method} failed: {e}") from e

    async def _ping_loop(self, ws) -> None:
        ping = json.dumps({"type": self.PING}) + _RS
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                await ws.send(ping)
        except WebSocketException:
            # the read loop reports the close
            return

    async def _read_loop(self, ws) -> None:
        reason = "hub connection closed"
        try:
            async for raw in ws:
                for msg in _frames(raw):
                    kind = msg.get("type")
                    if kind == self.INVOCATION:
                        for handler in list(self._handlers.get(msg.get("target", ""), [])):
                            await handler(msg.get("arguments") or [])
                    elif kind == self.CLOSE:
                        if msg.get("error"):
                            reason = f"hub closed by server: {msg['error']}"
                        return
        except ConnectionClosed as e:
            reason = f"hub connection lost: {e}"
        finally:
            # stop() detaches the socket first; anything else is an unexpected drop
            if self._ws is ws:
                self._ws = None
                pinger, self._pinger = self._pinger, None
                cancel_task(pinger)
                for handler in list(self._close_handlers):
                    handler(reason)
                try:
                    await ws.close()
                except WebSocketException:
                    pass
