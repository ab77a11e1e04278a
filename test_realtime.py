import asyncio
import json

import pytest

from errors import InternalError
from realtime import (
    CHAT_HISTORY, CHAT_MESSAGE, ERROR, PONG,
    ChatGateway, Connection, ConnectionManager, ConnectionState,
)


class RecordingConnection(Connection):
    """Connection that records frames instead of writing to a socket."""

    def __init__(self, connection_id):
        super().__init__(websocket=None, connection_id=connection_id)
        self.frames = []

    def open(self):
        pass

    def close(self):
        pass

    def send(self, event, data=None):
        self.frames.append((event, data))

    def events(self):
        return [event for event, _ in self.frames]


class FailingService:
    def list_messages(self, limit=50, offset=0):
        raise InternalError("Failed to fetch messages")

    def create_message(self, username, message):
        raise InternalError("Failed to create message")


@pytest.fixture()
def gateway():
    return ChatGateway(ConnectionManager())


@pytest.mark.asyncio
async def test_history_replay_is_bounded_and_newest_first(gateway, service):
    for i in range(25):
        service.create_message("alice", f"message {i}")

    conn = RecordingConnection("a")
    await gateway.on_connect(conn, service)

    assert conn.state is ConnectionState.CONNECTED
    assert conn.events() == [CHAT_HISTORY]
    history = conn.frames[0][1]
    assert len(history) == 20
    assert history[0]["message"] == "message 24"
    assert history[-1]["message"] == "message 5"
    assert [m["id"] for m in history] == sorted((m["id"] for m in history), reverse=True)


@pytest.mark.asyncio
async def test_empty_store_sends_empty_history(gateway, service):
    conn = RecordingConnection("a")
    await gateway.on_connect(conn, service)
    assert conn.frames == [(CHAT_HISTORY, [])]


@pytest.mark.asyncio
async def test_history_failure_sends_error_then_empty_batch(gateway):
    conn = RecordingConnection("c")
    await gateway.on_connect(conn, FailingService())

    assert conn.state is ConnectionState.CONNECTED
    assert conn.frames == [
        (ERROR, {"message": "Failed to load chat history"}),
        (CHAT_HISTORY, []),
    ]
    assert conn in gateway.channel


@pytest.mark.asyncio
async def test_inbound_message_is_persisted_and_broadcast_to_everyone(gateway, service, count_messages):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    await gateway.on_connect(a, service)
    await gateway.on_connect(b, service)

    saved = await gateway.on_inbound_message(a, {"username": "bob", "message": "hi"}, service)

    assert count_messages() == 1
    for conn in (a, b):
        event, data = conn.frames[-1]
        assert event == CHAT_MESSAGE
        assert data["id"] == saved.id
        assert data["message"] == "hi"
        assert data["timestamp"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"username": "", "message": "hi"},
    {"message": "hi"},
    {"username": "bob"},
    {"username": "bob", "message": 42},
    "hi",
    None,
])
async def test_malformed_inbound_message_only_errors_the_sender(gateway, service, count_messages, payload):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    await gateway.on_connect(a, service)
    await gateway.on_connect(b, service)

    result = await gateway.on_inbound_message(a, payload, service)

    assert result is None
    assert count_messages() == 0
    assert a.frames[-1] == (ERROR, {"message": "Invalid message format"})
    assert b.events() == [CHAT_HISTORY]


@pytest.mark.asyncio
async def test_service_validation_failure_is_reported_to_sender(gateway, service, count_messages):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    await gateway.on_connect(a, service)
    await gateway.on_connect(b, service)

    await gateway.on_inbound_message(a, {"username": "bob", "message": "x" * 1001}, service)

    assert count_messages() == 0
    assert a.frames[-1][0] == ERROR
    assert "too long" in a.frames[-1][1]["message"]
    assert b.events() == [CHAT_HISTORY]


@pytest.mark.asyncio
async def test_create_failure_does_not_broadcast(gateway, service):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    await gateway.on_connect(a, service)
    await gateway.on_connect(b, service)

    await gateway.on_inbound_message(a, {"username": "bob", "message": "hi"}, FailingService())

    assert a.frames[-1] == (ERROR, {"message": "Failed to send message"})
    assert b.events() == [CHAT_HISTORY]


@pytest.mark.asyncio
async def test_disconnected_connections_stop_receiving(gateway, service):
    a, b = RecordingConnection("a"), RecordingConnection("b")
    await gateway.on_connect(a, service)
    await gateway.on_connect(b, service)

    await gateway.on_disconnect(b, "client left")
    await gateway.on_disconnect(b, "client left")

    assert b.state is ConnectionState.DISCONNECTED
    assert b not in gateway.channel
    assert len(gateway.channel) == 1

    await gateway.on_inbound_message(a, {"username": "bob", "message": "hi"}, service)
    assert a.events() == [CHAT_HISTORY, CHAT_MESSAGE]
    assert b.events() == [CHAT_HISTORY]


def test_broadcast_without_channel_returns_false(service):
    gateway = ChatGateway(channel=None)
    message = service.create_message("alice", "hello")
    assert gateway.broadcast(message) is False


def test_broadcast_with_no_listeners_returns_true(gateway, service):
    message = service.create_message("alice", "hello")
    assert gateway.broadcast(message) is True


@pytest.mark.asyncio
async def test_handle_event_dispatch(gateway, service):
    conn = RecordingConnection("a")
    await gateway.on_connect(conn, service)

    await gateway.handle_event(conn, {"type": "ping"}, service)
    await gateway.handle_event(conn, {"type": "typing"}, service)
    await gateway.handle_event(conn, ["not", "an", "event"], service)
    await gateway.handle_event(conn, {"type": "chat-message", "data": {"username": "a", "message": "b"}}, service)

    assert conn.events() == [CHAT_HISTORY, PONG, ERROR, ERROR, CHAT_MESSAGE]


class FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.frames = []

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_failed_socket_leaves_channel_and_others_still_receive(gateway, service):
    healthy = Connection(FakeSocket(), connection_id="healthy")
    dead = Connection(FakeSocket(broken=True), connection_id="dead")
    await gateway.on_connect(healthy, service)
    await gateway.on_connect(dead, service)
    await settle()

    assert dead.state is ConnectionState.DISCONNECTED
    assert dead not in gateway.channel
    assert gateway.channel.active() == [healthy]

    sent = [service.create_message("alice", f"m{i}") for i in range(100)]
    for message in sent:
        assert gateway.broadcast(message) is True
    dead.send(CHAT_MESSAGE, {"late": True})
    await settle()

    assert dead.pending == 0
    frames = healthy.websocket.frames
    assert frames[0] == {"type": CHAT_HISTORY, "data": []}
    assert [f["data"]["id"] for f in frames[1:]] == [m.id for m in sent]
    assert all(f["type"] == CHAT_MESSAGE for f in frames[1:])

    await gateway.on_disconnect(healthy, "done")


@pytest.mark.asyncio
async def test_writer_keeps_frame_order_for_one_connection(gateway):
    conn = Connection(FakeSocket(), connection_id="a")
    await gateway.on_connect(conn, FailingService())
    await gateway.handle_event(conn, {"type": "ping"}, FailingService())
    await settle()

    assert [f["type"] for f in conn.websocket.frames] == [ERROR, CHAT_HISTORY, PONG]
    assert conn.websocket.frames[1]["data"] == []

    await gateway.on_disconnect(conn, "done")
    conn.send(PONG)
    assert conn.pending == 0
