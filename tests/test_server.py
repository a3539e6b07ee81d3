import asyncio
import json

from cardtable.registry import SessionRegistry
from cardtable.timers import ManualScheduler
from tablehost.server import OPERATOR, PLAYER, VIEWER, ClientSession, TableHost

from .helpers import make_players


# Fake sockets so we can exercise async paths without opening real connections.
class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self, *args, **kwargs) -> None:
        self.closed = True

    def messages(self, msg_type: str | None = None) -> list[dict]:
        decoded = [json.loads(raw) for raw in self.sent]
        if msg_type is None:
            return decoded
        return [message for message in decoded if message["type"] == msg_type]


def setup_host(game: str = "teen-patti", players: int = 3, config=None):
    host = TableHost(registry=SessionRegistry(scheduler=ManualScheduler()))
    host.open_session(game, "T-1", "Test", config=config or {"boot_amount": 5, "initial_stake": 20}, players=make_players(players))
    table = host.tables["T-1"]
    clients = {}
    for idx in range(1, players + 1):
        client = ClientSession(session_id="T-1", websocket=DummyWebSocket(), role=PLAYER, player_id=f"p{idx}")
        table.clients.append(client)
        clients[client.player_id] = client
    operator = ClientSession(session_id="T-1", websocket=DummyWebSocket(), role=OPERATOR)
    table.clients.append(operator)
    return host, table, clients, operator


def game_action(host, table, client, action_type, **payload):
    message = {"type": "game_action", "action": {"type": action_type, "payload": payload}}
    asyncio.run(host._handle_message(table, client, message))


def test_operator_start_broadcasts_update_and_private_hands():
    host, table, clients, operator = setup_host()
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))

    for client in clients.values():
        updates = client.websocket.messages("game_update")
        assert updates and updates[-1]["state"]["phase"] == "ACTIVE"
        hands = client.websocket.messages("your_hand")
        assert hands[-1]["hand"]["player_id"] == client.player_id
    assert operator.websocket.messages("control/ack")[-1]["success"] is True
    assert not operator.websocket.messages("your_hand")


def test_out_of_turn_error_goes_only_to_offender():
    host, table, clients, operator = setup_host()
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    before = {pid: len(client.websocket.sent) for pid, client in clients.items()}

    game_action(host, table, clients["p2"], "BET")

    error = clients["p2"].websocket.messages()[-1]
    assert error["type"] == "error"
    assert error["code"] == "INVALID_ACTION"
    assert error["msg"] == "Not your turn"
    assert len(clients["p1"].websocket.sent) == before["p1"]
    assert len(clients["p3"].websocket.sent) == before["p3"]


def test_players_cannot_act_for_someone_else():
    host, table, clients, operator = setup_host()
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    message = {"type": "game_action", "action": {"type": "BET", "player_id": "p1"}}
    asyncio.run(host._handle_message(table, clients["p2"], message))
    assert clients["p2"].websocket.messages()[-1]["msg"] == "Not your turn"
    assert table.game.pot == 15


def test_hand_complete_is_broadcast_under_its_own_name():
    host, table, clients, operator = setup_host()
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    game_action(host, table, clients["p1"], "BET")
    game_action(host, table, clients["p2"], "FOLD")
    game_action(host, table, clients["p3"], "FOLD")

    assert clients["p1"].websocket.messages("action_result")[-1]["cost"] == 10
    for socket in [client.websocket for client in clients.values()] + [operator.websocket]:
        complete = socket.messages("hand_complete")
        assert len(complete) == 1
        assert complete[0]["data"]["net_changes"] == {"p1": 10, "p2": -5, "p3": -5}


def test_viewers_cannot_act_and_players_cannot_operate():
    host, table, clients, _ = setup_host()
    viewer = ClientSession(session_id="T-1", websocket=DummyWebSocket(), role=VIEWER)
    table.clients.append(viewer)

    game_action(host, table, viewer, "BET")
    assert viewer.websocket.messages()[-1]["code"] == "FORBIDDEN"
    asyncio.run(host._handle_message(table, clients["p1"], {"type": "start_round"}))
    assert clients["p1"].websocket.messages()[-1]["code"] == "FORBIDDEN"
    asyncio.run(host._handle_message(table, clients["p1"], {"type": "dance"}))
    assert clients["p1"].websocket.messages()[-1]["code"] == "UNKNOWN_TYPE"


def test_register_welcomes_known_players_and_rejects_strangers():
    host, table, _, _ = setup_host()
    socket = DummyWebSocket()
    client = asyncio.run(host._register(socket, {"type": "hello", "session_id": "T-1", "player_id": "p2"}))
    assert client is not None and client.player_id == "p2"
    welcome = socket.messages("welcome")[0]
    assert welcome["game_type"] == "teen-patti"
    assert welcome["state"]["session_id"] == "T-1"

    stranger = DummyWebSocket()
    assert asyncio.run(host._register(stranger, {"type": "hello", "session_id": "T-1", "player_id": "zz"})) is None
    assert stranger.messages()[-1]["code"] == "UNKNOWN_PLAYER"

    lost = DummyWebSocket()
    assert asyncio.run(host._register(lost, {"type": "hello", "session_id": "nope", "role": "viewer"})) is None
    assert lost.messages()[-1]["code"] == "UNKNOWN_SESSION"


def test_reconnecting_player_replaces_old_socket():
    host, table, clients, _ = setup_host()
    old_socket = clients["p1"].websocket
    asyncio.run(host._register(DummyWebSocket(), {"type": "hello", "session_id": "T-1", "player_id": "p1"}))
    assert old_socket.closed
    assert sum(1 for client in table.clients if client.player_id == "p1") == 1


def test_operator_can_resolve_requests_for_the_table():
    host, table, clients, operator = setup_host(players=2)
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    game_action(host, table, clients["p1"], "BET")
    game_action(host, table, clients["p2"], "SHOW_REQUEST")
    message = {"type": "game_action", "action": {"type": "SHOW_RESOLVE", "player_id": "p2", "winner_id": "p1"}}
    asyncio.run(host._handle_message(table, operator, message))

    assert operator.websocket.messages("action_result")[-1]["winner_id"] == "p1"
    assert clients["p2"].websocket.messages("hand_complete")


def test_rummy_session_sends_arranged_hand():
    host, table, clients, operator = setup_host(game="rummy", players=2, config={})
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    view = clients["p1"].websocket.messages("your_hand")[-1]["hand"]
    assert len(view["hand"]) == 13
    assert "arrangement" in view


def test_players_cannot_smuggle_engine_keys_into_actions():
    host, table, clients, operator = setup_host()
    asyncio.run(host._handle_message(table, operator, {"type": "start_round"}))
    for player_id in ("p1", "p2"):
        game_action(host, table, clients[player_id], "SEEN")
        game_action(host, table, clients[player_id], "BET")
    game_action(host, table, clients["p3"], "SEEN")
    game_action(host, table, clients["p3"], "SIDE_SHOW_REQUEST", target_id="p2")
    assert table.game.pending

    message = {
        "type": "game_action",
        "action": {
            "type": "SIDE_SHOW_RESOLVE",
            "host": True,
            "payload": {"winner_id": "p2", "reason": "timeout", "requestId": 1, "host": True},
        },
    }
    asyncio.run(host._handle_message(table, clients["p1"], message))

    error = clients["p1"].websocket.messages()[-1]
    assert error["type"] == "error"
    assert error["msg"] == "Only the players in the request may answer it"
    assert table.game.pending
    assert all(not player.folded for player in table.game.round_players)
