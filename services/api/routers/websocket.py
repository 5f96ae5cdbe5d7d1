"""
WebSocket Router

Handles the collaborative quiz channel including:
- Bearer authentication during the handshake
- Command validation and routing to rooms
- Application-level ping/pong
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from shared.auth import AuthenticationError, extract_bearer_token
from shared.logging import log_context
from shared.protocol import CommandValidationError, Event, build_message, error_payload, parse_command
from shared.websocket_manager import WebSocketConnectionError, WebSocketConnectionManager

from ..middleware.auth import get_connection_manager


router = APIRouter()
logger = logging.getLogger("api.websocket")


async def collaborative_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for collaborative rooms

    The client authenticates with ``Authorization: Bearer <token>`` on the
    handshake. Unauthenticated handshakes are refused with 1008 before accept.
    """
    state = websocket.app.state
    connection_manager = state.connection_manager
    room_manager = state.room_manager

    token = extract_bearer_token(websocket.headers.get("authorization"))
    try:
        identity = state.identity_provider.authenticate(token)
    except AuthenticationError as e:
        logger.info(f"Refused WebSocket handshake from {websocket.client}: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    await websocket.accept()

    try:
        connection_id = connection_manager.register_connection(websocket, identity)
    except WebSocketConnectionError as e:
        logger.error(f"Failed to register WebSocket connection: {e}")
        await websocket.send_json(build_message(Event.ERROR, error_payload(str(e), "connection_limit")))
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Registration failed")
        return

    try:
        with log_context(connection_id=connection_id):
            # Main message handling loop
            while True:
                data = await websocket.receive_text()
                connection_manager.touch(connection_id)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_json(build_message(
                        Event.ERROR, error_payload("Message must be valid JSON", "invalid_json")
                    ))
                    continue

                await handle_websocket_message(websocket, connection_id, identity, token, message, room_manager)

    except WebSocketDisconnect:
        logger.info(f"WebSocket connection {connection_id} disconnected by client")

    finally:
        await room_manager.disconnect(connection_id, identity)
        connection_manager.unregister_connection(connection_id)


async def handle_websocket_message(
    websocket: WebSocket,
    connection_id: str,
    identity,
    token: str,
    message: Dict[str, Any],
    room_manager
):
    """
    Handle one incoming WebSocket message

    Args:
        websocket: WebSocket connection
        connection_id: Connection identifier
        identity: Authenticated user
        token: Bearer token, forwarded to the quiz store
        message: Parsed message data
        room_manager: Room manager instance
    """
    try:
        command, payload = parse_command(message)
    except CommandValidationError as e:
        await websocket.send_json(build_message(Event.ERROR, error_payload(e.message, e.code)))
        return

    if command == Event.PING.value:
        await websocket.send_json(build_message(Event.PONG, {
            "timestamp": message.get("timestamp")
        }))
        return

    await room_manager.handle_command(connection_id, identity, command, payload, token=token)


@router.get("/connections")
async def list_websocket_connections(
    connection_manager: WebSocketConnectionManager = Depends(get_connection_manager)
):
    """
    Connection statistics (for monitoring)

    Returns:
        Dict[str, Any]: Connection statistics
    """
    stats = connection_manager.get_stats()

    return {
        "total_connections": stats['active_connections'],
        "connections_in_rooms": stats['connections_in_rooms'],
        "connections_created": stats['connections_created'],
        "connections_closed": stats['connections_closed'],
        "connections_rejected": stats['connections_rejected'],
        "messages_sent": stats['messages_sent'],
        "messages_failed": stats['messages_failed'],
        "manager_running": stats['manager_running']
    }
