"""
Realtime messaging gateway.

One websocket per authenticated client. The token is checked during the
handshake; a bad token closes the socket before it is accepted. After that
the client sends ``{"event": ..., "data": {...}}`` frames:

- ``join_room``      ``{"room_id"}`` or ``{"peer_id"}`` (opens a direct room on demand)
- ``leave_room``     ``{"room_id"}``
- ``send_message``   ``{"room_id", "content", "client_id"?}``
- ``delete_message`` ``{"message_id"}``

Messages in one room are persisted and broadcast under a per-room lock, so
every listener sees them in storage order. Delivery is best effort: a
connection that fails a send is dropped, and offline users catch up from
room history.
"""
import asyncio
import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

import messaging
from auth import user_from_token
from database import DataStore, serialize_doc
from errors import AppError, ValidationError

logger = logging.getLogger(__name__)


class Connection:
    def __init__(self, websocket: WebSocket, user: Dict[str, Any]):
        self.websocket = websocket
        self.user = user
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> str:
        return str(self.user["_id"])

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.websocket.send_json(payload)


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, Set[Connection]] = defaultdict(set)
        self.users: Dict[str, Set[Connection]] = defaultdict(set)
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = defaultdict(int)

    async def connect(self, websocket: WebSocket, user: Dict[str, Any]) -> Connection:
        await websocket.accept()
        conn = Connection(websocket, user)
        self.users[conn.user_id].add(conn)
        logger.info("User %s connected", conn.user_id)
        return conn

    def disconnect(self, conn: Connection) -> None:
        for room_id in list(conn.rooms):
            self.leave(conn, room_id)
        peers = self.users.get(conn.user_id)
        if peers is not None:
            peers.discard(conn)
            if not peers:
                del self.users[conn.user_id]
        logger.info("User %s disconnected", conn.user_id)

    def join(self, conn: Connection, room_id: str) -> None:
        self.rooms[room_id].add(conn)
        conn.rooms.add(room_id)

    def leave(self, conn: Connection, room_id: str) -> None:
        members = self.rooms.get(room_id)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[room_id]
                self._prune_lock(room_id)
        conn.rooms.discard(room_id)

    @asynccontextmanager
    async def room_lock(self, room_id: str):
        """Serialize work on one room. The lock lives only while the room has listeners or holders."""
        lock = self._room_locks.setdefault(room_id, asyncio.Lock())
        self._lock_holders[room_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[room_id] -= 1
            if not self._lock_holders[room_id]:
                del self._lock_holders[room_id]
                self._prune_lock(room_id)

    def _prune_lock(self, room_id: str) -> None:
        if room_id not in self.rooms and room_id not in self._lock_holders:
            self._room_locks.pop(room_id, None)

    async def _deliver(self, conn: Connection, payload: Dict[str, Any]) -> None:
        try:
            await conn.send(payload)
        except Exception as e:
            logger.warning("Dropping connection of %s after failed send: %s", conn.user_id, e)
            self.disconnect(conn)

    async def broadcast(self, room_id: str, payload: Dict[str, Any], exclude: Optional[Connection] = None) -> None:
        for conn in list(self.rooms.get(room_id, ())):
            if conn is not exclude:
                await self._deliver(conn, payload)

    async def push(self, user_id: str, payload: Dict[str, Any]) -> None:
        for conn in list(self.users.get(user_id, ())):
            await self._deliver(conn, payload)


gateway = ConnectionManager()


def get_gateway() -> ConnectionManager:
    return gateway


# ----------------------
# Event handling
# ----------------------
async def _join(conn: Connection, data: Dict[str, Any], store: DataStore, gateway: ConnectionManager):
    if data.get("peer_id"):
        room = await run_in_threadpool(messaging.open_direct_room, store, conn.user, str(data["peer_id"]))
    elif data.get("room_id"):
        room = await run_in_threadpool(messaging.room_for_member, store, conn.user, str(data["room_id"]))
    else:
        raise ValidationError("room_id or peer_id is required")
    room_id = str(room["_id"])
    gateway.join(conn, room_id)
    await conn.send({"event": "room_joined", "data": {"room": serialize_doc(room)}})


async def _leave(conn: Connection, data: Dict[str, Any], store: DataStore, gateway: ConnectionManager):
    room_id = str(data.get("room_id") or "")
    gateway.leave(conn, room_id)
    await conn.send({"event": "room_left", "data": {"room_id": room_id}})


async def _send(conn: Connection, data: Dict[str, Any], store: DataStore, gateway: ConnectionManager):
    room_id = str(data.get("room_id") or "")
    if not room_id:
        raise ValidationError("room_id is required")
    async with gateway.room_lock(room_id):
        message = await run_in_threadpool(messaging.post_message, store, conn.user, room_id, data.get("content"))
        payload = serialize_doc(message)
        await gateway.broadcast(room_id, {"event": "new_message", "data": payload}, exclude=conn)
    await conn.send({"event": "message_sent", "data": payload, "client_id": data.get("client_id")})


async def _delete(conn: Connection, data: Dict[str, Any], store: DataStore, gateway: ConnectionManager):
    message = await run_in_threadpool(messaging.delete_message, store, conn.user, str(data.get("message_id") or ""))
    await announce_deletion(gateway, message)


async def announce_deletion(gateway: ConnectionManager, message: Dict[str, Any]) -> None:
    room_id = message["room_id"]
    async with gateway.room_lock(room_id):
        await gateway.broadcast(room_id, {
            "event": "message_deleted",
            "data": {"id": str(message["_id"]), "room_id": room_id},
        })


HANDLERS = {
    "join_room": _join,
    "leave_room": _leave,
    "send_message": _send,
    "delete_message": _delete,
}


async def serve(websocket: WebSocket, token: Optional[str], store: DataStore, gateway: ConnectionManager) -> None:
    try:
        user = await run_in_threadpool(user_from_token, store, token)
    except AppError as e:
        logger.info("Rejected websocket connection: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    conn = await gateway.connect(websocket, user)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            event = None
            try:
                if message.get("text") is None:
                    raise ValueError("binary frames are not supported")
                frame = json.loads(message["text"])
                event, data = frame.get("event"), frame.get("data") or {}
                handler = HANDLERS.get(event)
                if handler is None:
                    raise ValidationError(f"Unknown event: {event}")
                await handler(conn, data, store, gateway)
            except (ValueError, AttributeError):
                await conn.send({"event": "error", "data": {"message": "Malformed frame", "error": ValidationError.code}})
            except AppError as e:
                await conn.send({"event": "error", "data": {"message": e.message, "error": e.code, "event": event}})
            except WebSocketDisconnect:
                raise
            except Exception:
                logger.exception("Websocket event %s from %s failed", event, conn.user_id)
                await conn.send({"event": "error", "data": {"message": "Internal server error", "error": AppError.code, "event": event}})
    except WebSocketDisconnect:
        pass
    finally:
        gateway.disconnect(conn)
