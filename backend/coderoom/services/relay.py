"""
Relay Transport for the team-coding socket.

Each connection owns a bounded outbound queue drained by its own sender
task. Delivering an event only enqueues it, so a broadcast issued while a
room lock is held never waits on a slow socket, and every receiver sees a
room's events in the order they were delivered.
"""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from coderoom.config import settings
from coderoom.error_handlers import WebSocketErrorHandler
from coderoom.exceptions import WebSocketSendException, WebSocketSlowConsumerException
from coderoom.schemas.events import ServerPingEvent
from coderoom.services.room_state import Principal
from coderoom.services.session_registry import SessionRegistry, Binding
from coderoom.utils.logging_config import websocket_logger

# Application close codes
CLOSE_UNAUTHORIZED = 4001
CLOSE_TIMEOUT = 4008
CLOSE_ROOM_CLOSED = 4010
CLOSE_GOING_AWAY = 1001


class _Close:
    """Outbox marker: close the socket once everything before it is sent."""

    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason


class ClientConnection:
    def __init__(self, websocket: WebSocket, principal: Principal, queue_size: int):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.principal = principal
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.last_seen = time.monotonic()
        self.sender: Optional[asyncio.Task] = None
        self.closing = False

    def touch(self) -> None:
        self.last_seen = time.monotonic()


class RelayTransport:
    def __init__(self, registry: SessionRegistry, queue_size: int = None):
        self.registry = registry
        self.queue_size = queue_size or settings.WS_SEND_QUEUE_SIZE
        self.connections: dict[str, ClientConnection] = {}
        self._pending_leaves: dict[tuple[str, str], asyncio.Task] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        # Installed by the coordinator: implicit leave after the grace period
        self.on_grace_expired: Optional[Callable[[str, str], Awaitable[Any]]] = None

    # ==================== Connections ====================

    def register(self, websocket: WebSocket, principal: Principal) -> ClientConnection:
        conn = ClientConnection(websocket, principal, self.queue_size)
        conn.sender = asyncio.create_task(self._sender(conn))
        self.connections[conn.id] = conn
        websocket_logger.info(
            "Connection registered",
            extra={"conn_id": conn.id, "user_id": principal.user_id, "connections": len(self.connections)},
        )
        return conn

    async def unregister(self, conn_id: str) -> Optional[Binding]:
        """Forget a connection and return the room binding it had, if any."""
        conn = self.connections.pop(conn_id, None)
        binding = self.registry.unbind(conn_id)
        if conn is not None and conn.sender is not None and not conn.sender.done():
            conn.sender.cancel()
            try:
                await conn.sender
            except asyncio.CancelledError:
                pass
        websocket_logger.info(
            "Connection unregistered",
            extra={"conn_id": conn_id, "room_id": binding.room_id if binding else None},
        )
        return binding

    def get(self, conn_id: str) -> Optional[ClientConnection]:
        return self.connections.get(conn_id)

    async def _sender(self, conn: ClientConnection) -> None:
        while True:
            item = await conn.outbox.get()
            try:
                if isinstance(item, _Close):
                    await conn.websocket.close(code=item.code, reason=item.reason[:123])
                    return
                await conn.websocket.send_json(item)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Peer went away; the receive loop notices and unregisters
                WebSocketErrorHandler.log_websocket_error(
                    WebSocketSendException(conn.id, str(e)),
                    user_id=conn.principal.user_id,
                )
                conn.closing = True
                return

    # ==================== Delivery ====================

    def deliver_to(self, conn_id: str, frame: dict) -> bool:
        conn = self.connections.get(conn_id)
        if conn is None or conn.closing:
            return False
        try:
            conn.outbox.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            WebSocketErrorHandler.log_websocket_error(
                WebSocketSlowConsumerException(conn_id),
                user_id=conn.principal.user_id,
                message_type=frame.get("type"),
            )
            self._abort(conn, CLOSE_TIMEOUT, "Slow consumer")
            return False

    def deliver(self, room_id: str, frame: dict, exclude_conn_id: Optional[str] = None) -> int:
        """Enqueue ``frame`` for every connection bound to ``room_id``."""
        delivered = 0
        for conn_id in self.registry.members_of(room_id):
            if conn_id == exclude_conn_id:
                continue
            if self.deliver_to(conn_id, frame):
                delivered += 1
        return delivered

    def close(self, conn_id: str, code: int, reason: str) -> None:
        """Close after every already queued frame has been sent."""
        conn = self.connections.get(conn_id)
        if conn is None or conn.closing:
            return
        conn.closing = True
        try:
            conn.outbox.put_nowait(_Close(code, reason))
        except asyncio.QueueFull:
            self._abort(conn, code, reason)

    def _abort(self, conn: ClientConnection, code: int, reason: str) -> None:
        """Drop whatever is queued and close right away."""
        conn.closing = True
        if conn.sender is not None and not conn.sender.done():
            conn.sender.cancel()
        asyncio.create_task(
            WebSocketErrorHandler.handle_connection_error(
                conn.websocket, WebSocketSlowConsumerException(conn.id), reason, code
            )
        )

    def evict(self, room_id: str, frame: dict, close_code: int = CLOSE_ROOM_CLOSED) -> list[str]:
        """Deliver ``frame`` to every connection of the room, then close and unbind them."""
        removed = self.registry.evict_room(room_id)
        for conn_id, _binding in removed:
            self.deliver_to(conn_id, frame)
            self.close(conn_id, close_code, frame.get("reason", "Room closed"))
        for key in [k for k in self._pending_leaves if k[0] == room_id]:
            self._pending_leaves.pop(key).cancel()
        websocket_logger.info("Room evicted", extra={"room_id": room_id, "connections": len(removed)})
        return [conn_id for conn_id, _ in removed]

    # ==================== Disconnect grace ====================

    def schedule_leave(self, room_id: str, user_id: str, delay: float = None) -> None:
        delay = settings.WS_DISCONNECT_GRACE_SECONDS if delay is None else delay
        key = (room_id, user_id)
        previous = self._pending_leaves.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._pending_leaves[key] = asyncio.create_task(self._leave_after(key, delay))

    def cancel_pending_leave(self, room_id: str, user_id: str) -> bool:
        task = self._pending_leaves.pop((room_id, user_id), None)
        if task is None:
            return False
        task.cancel()
        websocket_logger.debug("Pending leave cancelled", extra={"room_id": room_id, "user_id": user_id})
        return True

    def has_pending_leave(self, room_id: str, user_id: str) -> bool:
        return (room_id, user_id) in self._pending_leaves

    async def _leave_after(self, key: tuple[str, str], delay: float) -> None:
        room_id, user_id = key
        await asyncio.sleep(delay)
        if self._pending_leaves.get(key) is asyncio.current_task():
            del self._pending_leaves[key]
        if self.registry.connections_of(room_id, user_id):
            return
        if self.on_grace_expired is not None:
            await self.on_grace_expired(room_id, user_id)

    # ==================== Heartbeat ====================

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        interval = settings.WS_HEARTBEAT_INTERVAL_SECONDS
        timeout = settings.WS_HEARTBEAT_TIMEOUT_SECONDS
        while True:
            await asyncio.sleep(interval)
            self.sweep_idle(timeout)

    def sweep_idle(self, timeout: float) -> list[str]:
        """Ping live connections and close the ones silent for ``timeout`` seconds."""
        now = time.monotonic()
        closed = []
        ping = ServerPingEvent().to_wire()
        for conn in list(self.connections.values()):
            if now - conn.last_seen > timeout:
                websocket_logger.warning(
                    "Heartbeat timeout",
                    extra={"conn_id": conn.id, "user_id": conn.principal.user_id},
                )
                self.close(conn.id, CLOSE_TIMEOUT, "Heartbeat timeout")
                closed.append(conn.id)
            else:
                self.deliver_to(conn.id, ping)
        return closed

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        for task in self._pending_leaves.values():
            task.cancel()
        self._pending_leaves.clear()
        for conn_id in list(self.connections):
            self.close(conn_id, CLOSE_GOING_AWAY, "Server shutting down")
