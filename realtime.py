import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket

from config import HISTORY_LIMIT
from errors import ChatError, ValidationError
from message_service import MessageService
from models import Message

logger = logging.getLogger(__name__)

CHAT_HISTORY = "chat-history"
CHAT_MESSAGE = "chat-message"
ERROR = "error"
PING = "ping"
PONG = "pong"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Connection:
    """One live WebSocket client.

    Outgoing frames go through a per-connection queue drained by a writer task,
    so a slow or dead socket only delays its own deliveries. When a write fails
    the queue is emptied, further sends are ignored and `on_failure` is called.
    """

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None,
                 on_failure: Optional[Callable[["Connection"], None]] = None):
        self.id = connection_id or uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING
        self.on_failure = on_failure
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def pending(self) -> int:
        return self._outbox.qsize()

    def open(self):
        if self._writer is None and not self._closed:
            self._writer = asyncio.create_task(self._drain())

    def close(self):
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        self._discard_pending()

    def send(self, event: str, data: Any = None):
        if self._closed:
            return
        self._outbox.put_nowait({"type": event, "data": data})

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def _drain(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send_text(json.dumps(frame))
            except Exception as e:
                logger.warning(f"Delivery to connection {self.id} failed, dropping its queue: {e}")
                break

        self._writer = None
        self.close()
        if self.on_failure is not None:
            self.on_failure(self)

    def __repr__(self):
        return f"<Connection {self.id} {self.state.value}>"


class ConnectionManager:
    """Fan-out channel: the set of connections currently receiving broadcasts."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def add(self, connection: Connection):
        self._connections[connection.id] = connection

    def discard(self, connection: Connection) -> bool:
        return self._connections.pop(connection.id, None) is not None

    def active(self) -> List[Connection]:
        return [c for c in self._connections.values() if c.state is ConnectionState.CONNECTED]

    def send_all(self, event: str, data: Any = None) -> int:
        targets = self.active()
        for connection in targets:
            connection.send(event, data)
        return len(targets)

    def __len__(self):
        return len(self._connections)

    def __contains__(self, connection: Connection):
        return connection.id in self._connections


class ChatGateway:
    """Coordinates history replay and message fan-out for WebSocket clients."""

    def __init__(self, channel: Optional[ConnectionManager] = None, history_limit: int = HISTORY_LIMIT):
        self.channel = channel
        self.history_limit = history_limit

    async def on_connect(self, connection: Connection, service: MessageService):
        connection.state = ConnectionState.CONNECTED
        connection.on_failure = self._on_delivery_failure
        connection.open()
        if self.channel is not None:
            self.channel.add(connection)
        logger.info(f"Connection {connection.id} connected")

        try:
            messages = service.list_messages(self.history_limit, 0)
        except Exception as e:
            logger.error(f"Error fetching chat history for {connection.id}: {e}")
            connection.send(ERROR, {"message": "Failed to load chat history"})
            messages = []

        logger.info(f"Sending chat history to {connection.id}: {len(messages)} messages")
        connection.send(CHAT_HISTORY, [m.to_dict() for m in messages])

    async def on_inbound_message(self, connection: Connection, payload: Any,
                                 service: MessageService) -> Optional[Message]:
        if not _is_chat_payload(payload):
            logger.warning(f"Invalid message data from {connection.id}")
            connection.send(ERROR, {"message": "Invalid message format"})
            return None

        try:
            saved = service.create_message(payload["username"], payload["message"])
        except ValidationError as e:
            connection.send(ERROR, {"message": e.message})
            return None
        except ChatError as e:
            logger.error(f"Error handling chat message from {connection.id}: {e.code}")
            connection.send(ERROR, {"message": "Failed to send message"})
            return None
        except Exception:
            logger.exception(f"Unexpected error handling chat message from {connection.id}")
            connection.send(ERROR, {"message": "Failed to send message"})
            return None

        self.broadcast(saved)
        return saved

    async def on_disconnect(self, connection: Connection, reason: Any = None):
        self._release(connection, reason)

    def _release(self, connection: Connection, reason: Any):
        if connection.state is ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED
        if self.channel is not None:
            self.channel.discard(connection)
        connection.close()
        logger.info(f"Connection {connection.id} disconnected, reason: {reason}")

    def _on_delivery_failure(self, connection: Connection):
        self._release(connection, "delivery failed")

    def broadcast(self, message: Message) -> bool:
        if self.channel is None:
            logger.warning("No connection channel available for broadcasting")
            return False
        try:
            delivered = self.channel.send_all(CHAT_MESSAGE, message.to_dict())
        except Exception as e:
            logger.error(f"Error broadcasting message {message.id}: {e}")
            return False
        logger.info(f"Broadcast message {message.id} to {delivered} connections")
        return True

    async def handle_event(self, connection: Connection, event: Any, service: MessageService):
        event_type = event.get("type") if isinstance(event, dict) else None

        if event_type == CHAT_MESSAGE:
            await self.on_inbound_message(connection, event.get("data"), service)
        elif event_type == PING:
            connection.send(PONG, {"timestamp": datetime.now(timezone.utc).isoformat()})
        else:
            logger.warning(f"Unknown event from {connection.id}: {event_type!r}")
            connection.send(ERROR, {"message": f"Unknown event type: {event_type}"})


def _is_chat_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    return all(isinstance(payload.get(key), str) and payload[key] for key in ("username", "message"))
