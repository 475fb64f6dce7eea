"""
Team-coding socket: ``/ws/team``.

One socket per client. It authenticates once, then may join a room and
exchange the events of the wire vocabulary. The coordinator owns every
room; this module only authenticates, parses, rate limits and dispatches.
"""
import asyncio
from typing import Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from sqlalchemy.exc import SQLAlchemyError
from coderoom.config import settings
from coderoom.database import async_session
from coderoom.services.auth_service import AuthService
from coderoom.services.lifecycle import get_lifecycle
from coderoom.services.redis_state import get_redis_state
from coderoom.services.relay import ClientConnection, CLOSE_UNAUTHORIZED
from coderoom.services.room_state import Principal
from coderoom.schemas.events import (
    ClientEvent,
    AuthEvent,
    ServerPongEvent,
    RateLimitExceededEvent,
    parse_client_event,
)
from coderoom.utils.logging_config import websocket_logger
from coderoom.error_handlers import WebSocketErrorHandler
from coderoom.utils.rate_limit import check_websocket_rate_limit, cleanup_websocket_rate_limit
from coderoom.exceptions import (
    AppException,
    AuthenticationException,
    NotInRoomException,
    WebSocketUnauthorizedException,
    WebSocketInvalidMessageException,
)

router = APIRouter(tags=["WebSocket"])


def _bearer_token(websocket: WebSocket) -> Optional[str]:
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def _resolve_principal(token: str) -> Principal:
    """
    Raises:
        WebSocketUnauthorizedException: invalid, expired or revoked token,
            unknown or disabled user
    """
    async with async_session() as db:
        try:
            user = await AuthService(db).get_user_from_token(token)
        except AuthenticationException as e:
            raise WebSocketUnauthorizedException(e.message)
        if user is None:
            raise WebSocketUnauthorizedException("Invalid or expired token")
        if not user.is_active:
            raise WebSocketUnauthorizedException("User account is disabled")
        return Principal.from_user(user)


async def _authenticate(websocket: WebSocket, token: Optional[str]) -> Principal:
    """
    Authenticate from the handshake credential, or from a first ``auth``
    frame when the handshake carried none. Bounded by WS_AUTH_TIMEOUT_SECONDS.

    Raises:
        WebSocketUnauthorizedException
    """
    timeout = settings.WS_AUTH_TIMEOUT_SECONDS
    try:
        if token is None:
            message = await asyncio.wait_for(websocket.receive(), timeout)
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            try:
                event = parse_client_event(message.get("text") or "")
            except WebSocketInvalidMessageException:
                raise WebSocketUnauthorizedException("First frame must be an auth event")
            if not isinstance(event, AuthEvent):
                raise WebSocketUnauthorizedException("First frame must be an auth event")
            token = event.token
        return await asyncio.wait_for(_resolve_principal(token), timeout)
    except asyncio.TimeoutError:
        raise WebSocketUnauthorizedException("Authentication timed out")


async def _dispatch(conn: ClientConnection, event: ClientEvent) -> None:
    """
    Route one parsed client event to the coordinator.

    Raises:
        AppException: reported back to this connection only
    """
    lifecycle = get_lifecycle()
    coordinator = lifecycle.coordinator
    transport = coordinator.transport
    principal = conn.principal
    msg_type = event.type

    if msg_type == "ping":
        transport.deliver_to(conn.id, ServerPongEvent().to_wire())
        await get_redis_state().update_active_user(principal.user_id, principal.username)
        return
    if msg_type == "pong":
        return
    if msg_type == "auth":
        raise WebSocketInvalidMessageException("Connection is already authenticated")

    room_id = event.room_id
    if msg_type == "join-room":
        await coordinator.join(room_id, principal, conn.id)
        return

    binding = coordinator.registry.binding_of(conn.id)
    if binding is None or binding.room_id != room_id:
        raise NotInRoomException()

    if msg_type == "leave-room":
        await coordinator.leave(room_id, principal.user_id, conn.id)

    elif msg_type == "code-change":
        await coordinator.change_code(room_id, principal, conn.id, event.code, event.cursor_position)

    elif msg_type == "language-change":
        await coordinator.change_language(room_id, principal, event.language)

    elif msg_type == "send-message":
        await coordinator.send_chat_message(room_id, principal, event.message)

    elif msg_type == "code-run-result":
        await coordinator.publish_run_result(room_id, principal, event.results)

    elif msg_type == "cursor-move":
        await coordinator.relay_presence(
            room_id, principal, conn.id, "cursor",
            {"position": event.position, "selection": event.selection}
        )

    elif msg_type == "typing":
        await coordinator.relay_presence(
            room_id, principal, conn.id, "typing", {"is_typing": event.is_typing}
        )

    elif msg_type == "lock-room":
        await coordinator.set_room_lock(room_id, principal, event.locked)

    elif msg_type == "editor-lock":
        await coordinator.acquire_editor_lock(room_id, principal)

    elif msg_type == "editor-unlock":
        await coordinator.release_editor_lock(room_id, principal)


async def _handle_frame(conn: ClientConnection, raw: str) -> None:
    """Parse, rate limit and dispatch one frame; errors go back to the sender."""
    transport = get_lifecycle().coordinator.transport
    msg_type = None
    try:
        event = parse_client_event(raw)
        msg_type = event.type

        is_allowed, error_msg = check_websocket_rate_limit(conn.id, msg_type)
        if not is_allowed:
            transport.deliver_to(conn.id, RateLimitExceededEvent(
                event=msg_type,
                message=error_msg or "Rate limit exceeded"
            ).to_wire())
            return

        websocket_logger.debug(
            "WebSocket message received",
            extra={"conn_id": conn.id, "user_id": conn.principal.user_id, "msg_type": msg_type}
        )
        await _dispatch(conn, event)

    except (AppException, SQLAlchemyError) as e:
        binding = get_lifecycle().coordinator.registry.binding_of(conn.id)
        WebSocketErrorHandler.log_websocket_error(
            error=e,
            room_id=binding.room_id if binding else None,
            user_id=conn.principal.user_id,
            message_type=msg_type
        )
        transport.deliver_to(conn.id, WebSocketErrorHandler.error_event(e, msg_type))


@router.websocket("/ws/team")
async def team_socket(
    websocket: WebSocket,
    token: str = Query(None)
):
    """
    WebSocket endpoint for team rooms.
    Credential: ``token`` query parameter, ``Authorization: Bearer`` header,
    or an ``auth`` event as the first frame.
    """
    await websocket.accept()

    try:
        principal = await _authenticate(websocket, token or _bearer_token(websocket))
    except WebSocketUnauthorizedException as e:
        websocket_logger.warning("WebSocket authentication failed", extra={"reason": e.message})
        await WebSocketErrorHandler.handle_connection_error(websocket, e, "Unauthorized", CLOSE_UNAUTHORIZED)
        return
    except WebSocketDisconnect:
        return

    lifecycle = get_lifecycle()
    coordinator = lifecycle.coordinator
    transport = coordinator.transport
    conn = transport.register(websocket, principal)
    await get_redis_state().update_active_user(principal.user_id, principal.username)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            conn.touch()
            raw = message.get("text")
            if raw is None:
                transport.deliver_to(conn.id, WebSocketErrorHandler.error_event(
                    WebSocketInvalidMessageException("Binary frames are not supported")
                ))
                continue
            await _handle_frame(conn, raw)

    except WebSocketDisconnect as e:
        websocket_logger.info(
            "WebSocket disconnected",
            extra={"conn_id": conn.id, "user_id": principal.user_id, "code": e.code}
        )
    except Exception as e:
        websocket_logger.error(
            "WebSocket error",
            extra={
                "conn_id": conn.id,
                "user_id": principal.user_id,
                "error": str(e),
                "error_type": type(e).__name__
            }
        )
    finally:
        binding = await transport.unregister(conn.id)
        cleanup_websocket_rate_limit(conn.id)
        if binding is not None:
            # Dropped without leave-room: implicit leave after the grace period
            coordinator.connection_dropped(binding.room_id, binding.user_id)
