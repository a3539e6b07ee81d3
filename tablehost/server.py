from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import websockets
from websockets.asyncio.server import ServerConnection

from cardtable.models import HAND_COMPLETE, ROUND_COMPLETE, SESSION_ENDED, STATE_CHANGE, ActionResult, Event
from cardtable.registry import SessionRegistry
from cardtable.session import SessionMachine
from cardtable.timers import LoopScheduler

LOGGER = logging.getLogger("tablehost")

# TableHost glues card sessions to WebSocket clients (players, viewers and an
# operator). Sessions stay synchronous; every network concern lives here.

PLAYER = "player"
VIEWER = "viewer"
OPERATOR = "operator"

# Engine-internal action keys a client may never set.
RESERVED_KEYS = ("host", "reason", "request_id", "requestId")


@dataclass
class ClientSession:
    session_id: str
    websocket: ServerConnection
    role: str = PLAYER
    player_id: Optional[str] = None


@dataclass
class Table:
    game: SessionMachine
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    clients: List[ClientSession] = field(default_factory=list)
    outbox: List[Event] = field(default_factory=list)
    dispatching: bool = False
    flush_task: Optional[asyncio.Task] = None


class TableHost:
    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        auto_start: bool = False,
        next_round_delay: float = 3.0,
    ) -> None:
        self.scheduler = LoopScheduler()
        self.registry = registry or SessionRegistry(scheduler=self.scheduler)
        self.tables: Dict[str, Table] = {}
        self.auto_start = auto_start
        self.next_round_delay = next_round_delay

    async def start(self, host: str = "0.0.0.0", port: int = 8765) -> None:
        async with websockets.serve(self._handle_connection, host, port):
            LOGGER.info("Table host listening on %s:%s", host, port)
            await asyncio.Future()

    def open_session(
        self,
        game_type: str,
        session_id: str,
        session_name: str = "",
        config: Optional[Mapping[str, Any]] = None,
        players: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> SessionMachine:
        game = self.registry.create_session(game_type, session_id, session_name, config, players)
        table = Table(game=game)
        game.subscribe(lambda event: self._on_event(table, event))
        self.tables[session_id] = table
        LOGGER.info("Opened %s session %s", game_type, session_id)
        return game

    def _on_event(self, table: Table, event: Event) -> None:
        table.outbox.append(event)
        if table.dispatching:
            return
        # Timer expiry fires outside any client call; push its events from a task.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if table.flush_task is None or table.flush_task.done():
            table.flush_task = loop.create_task(self._flush(table))

    async def _apply(self, table: Table, call: Callable[[], Any]) -> Any:
        async with table.lock:
            table.dispatching = True
            try:
                result = call()
            finally:
                table.dispatching = False
        await self._flush(table)
        return result

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        # First message must be "hello" so we know which table and seat this is.
        hello = await self._read_message(websocket)
        if hello is None or hello.get("type") != "hello":
            await self._send_error(websocket, code="BAD_HELLO", msg="Expected hello")
            await websocket.close()
            return

        client = await self._register(websocket, hello)
        if client is None:
            await websocket.close()
            return
        table = self.tables[client.session_id]

        try:
            async for raw in websocket:
                message = self._decode(raw)
                await self._handle_message(table, client, message)
        except websockets.ConnectionClosed:
            pass
        finally:
            if client in table.clients:
                table.clients.remove(client)
        LOGGER.info("%s %s left session %s", client.role, client.player_id or "-", client.session_id)

    async def _register(self, websocket: ServerConnection, hello: Mapping[str, Any]) -> Optional[ClientSession]:
        session_id = hello.get("session_id")
        table = self.tables.get(str(session_id)) if session_id is not None else None
        if table is None:
            await self._send_error(websocket, code="UNKNOWN_SESSION", msg="No such session")
            return None

        role_raw = hello.get("role") or PLAYER
        role = role_raw.strip().casefold() if isinstance(role_raw, str) else PLAYER
        if role not in (PLAYER, VIEWER, OPERATOR):
            role = PLAYER

        player_id: Optional[str] = None
        if role == PLAYER:
            raw_id = hello.get("player_id")
            if raw_id is None or str(raw_id).strip() == "":
                await self._send_error(websocket, code="BAD_SCHEMA", msg="player_id required")
                return None
            player_id = str(raw_id).strip()
            if all(player.id != player_id for player in table.game.roster):
                await self._send_error(websocket, code="UNKNOWN_PLAYER", msg="Player not seated in this session")
                return None
            # Replace an existing connection for the same player.
            for previous in [c for c in table.clients if c.player_id == player_id]:
                table.clients.remove(previous)
                await previous.websocket.close(code=4000, reason="Replaced by new connection")

        client = ClientSession(session_id=table.game.session_id, websocket=websocket, role=role, player_id=player_id)
        table.clients.append(client)
        LOGGER.info("%s %s joined session %s", role, player_id or "-", client.session_id)

        await self._send_json(
            websocket,
            "welcome",
            {
                "session_id": client.session_id,
                "role": role,
                "player_id": player_id,
                "game_type": table.game.game_type,
                "state": table.game.get_public_state(),
            },
        )
        if player_id is not None:
            await self._send_hand(table, client)
        if self.auto_start:
            await self._maybe_start_round(table)
        return client

    async def _handle_message(self, table: Table, client: ClientSession, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "game_action":
            await self._handle_game_action(table, client, message)
        elif msg_type == "start_round":
            await self._handle_operator_command(table, client, "start_round")
        elif msg_type == "end_session":
            await self._handle_operator_command(table, client, "end_session")
        else:
            await self._send_error(client.websocket, code="UNKNOWN_TYPE", msg="Unsupported message type")

    async def _handle_game_action(self, table: Table, client: ClientSession, message: Mapping[str, Any]) -> None:
        if client.role == VIEWER:
            await self._send_error(client.websocket, code="FORBIDDEN", msg="Viewers cannot act")
            return
        raw_action = message.get("action")
        if not isinstance(raw_action, Mapping) or not raw_action.get("type"):
            await self._send_error(client.websocket, code="BAD_SCHEMA", msg="action with a type required")
            return

        action = {key: value for key, value in raw_action.items() if key not in RESERVED_KEYS}
        payload = action.get("payload")
        if isinstance(payload, Mapping):
            action["payload"] = {key: value for key, value in payload.items() if key not in RESERVED_KEYS}
        if client.role == PLAYER:
            # Players always act as themselves.
            action.pop("playerId", None)
            action["player_id"] = client.player_id
        else:
            action["host"] = True

        result: ActionResult = await self._apply(table, lambda: table.game.handle_action(action))
        if not result.success:
            LOGGER.warning(
                "Rejected action session=%s player=%s type=%s reason=%s",
                client.session_id,
                action.get("player_id"),
                action.get("type"),
                result.error,
            )
            await self._send_error(client.websocket, code="INVALID_ACTION", msg=result.error or "Rejected")
            return
        LOGGER.debug("Applied action session=%s player=%s type=%s", client.session_id, action.get("player_id"), action.get("type"))
        await self._send_json(client.websocket, "action_result", result.as_payload())

    async def _handle_operator_command(self, table: Table, client: ClientSession, command: str) -> None:
        if client.role != OPERATOR:
            await self._send_error(client.websocket, code="FORBIDDEN", msg="Operator only")
            return
        if command == "start_round":
            result: ActionResult = await self._apply(table, table.game.start_round)
            if not result.success:
                await self._send_error(client.websocket, code="START_REJECTED", msg=result.error or "Rejected")
                return
            await self._send_json(client.websocket, "control/ack", {"command": command, **result.as_payload()})
        else:
            final_state = await self._apply(table, table.game.end_session)
            await self._send_json(client.websocket, "control/ack", {"command": command, "state": final_state})

    async def _maybe_start_round(self, table: Table) -> None:
        connected = {client.player_id for client in table.clients if client.player_id}
        seated = {player.id for player in table.game.eligible_players()}
        if not seated or not seated <= connected:
            return
        result: ActionResult = await self._apply(table, table.game.start_round)
        if not result.success:
            LOGGER.debug("Auto start skipped for %s: %s", table.game.session_id, result.error)

    async def _start_next_round_later(self, table: Table) -> None:
        await asyncio.sleep(self.next_round_delay)
        await self._maybe_start_round(table)

    async def _flush(self, table: Table) -> None:
        events, table.outbox = table.outbox, []
        if not events:
            return
        session_id = table.game.session_id
        state_changed = False
        round_over = False
        for event in events:
            if event.ev == STATE_CHANGE:
                state_changed = True
                await self._broadcast(table, "game_update", {"session_id": session_id, "state": event.data})
            else:
                await self._broadcast(table, event.ev, {"session_id": session_id, "data": event.data})
                if event.ev in (HAND_COMPLETE, ROUND_COMPLETE) and not event.data.get("is_session_over"):
                    round_over = True
                elif event.ev == SESSION_ENDED:
                    LOGGER.info("Session %s ended: %s", session_id, event.data.get("reason"))
        if state_changed:
            for client in list(table.clients):
                if client.player_id is not None:
                    await self._send_hand(table, client)
        if round_over and self.auto_start:
            asyncio.get_running_loop().create_task(self._start_next_round_later(table))

    async def _send_hand(self, table: Table, client: ClientSession) -> None:
        hand = table.game.get_player_hand(client.player_id)
        if hand is not None:
            await self._send_json(client.websocket, "your_hand", {"session_id": client.session_id, "hand": hand})

    async def _broadcast(self, table: Table, msg_type: str, payload: Dict[str, object]) -> None:
        targets = [client.websocket for client in table.clients]
        if not targets:
            return
        message = self._envelope(msg_type, payload)
        await asyncio.gather(*(socket.send(message) for socket in targets), return_exceptions=True)

    async def _send_json(self, websocket: ServerConnection, msg_type: str, payload: Dict[str, object]) -> None:
        try:
            await websocket.send(self._envelope(msg_type, payload))
        except websockets.ConnectionClosed:
            pass

    async def _send_error(self, websocket: ServerConnection, code: str, msg: str) -> None:
        await self._send_json(websocket, "error", {"code": code, "msg": msg})

    def _envelope(self, msg_type: str, payload: Dict[str, object]) -> str:
        body = {"type": msg_type, "v": 1, "ts": datetime.now(timezone.utc).isoformat()}
        body.update(payload)
        return json.dumps(body)

    async def _read_message(self, websocket: ServerConnection) -> Optional[Dict[str, Any]]:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=5)
        except (asyncio.TimeoutError, websockets.ConnectionClosed):
            return None
        return self._decode(raw)

    def _decode(self, raw: str) -> Dict[str, Any]:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return message if isinstance(message, dict) else {}
