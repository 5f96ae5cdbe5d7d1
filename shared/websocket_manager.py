"""
WebSocket Connection Manager

Manages WebSocket connections on the collaborative channel.
Provides connection registry, targeted delivery, heartbeat and stale
connection cleanup. Room membership itself is owned by RoomManager.
"""

import asyncio
import logging
import uuid
from typing import Dict, Optional, Any, Iterable
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .auth import Identity
from .config import get_config
from .protocol import Event, build_message


class ConnectionState(Enum):
    """WebSocket connection states"""
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


@dataclass
class WebSocketConnection:
    """Represents a WebSocket connection with metadata"""
    connection_id: str
    websocket: WebSocket
    identity: Identity
    room_id: Optional[str] = None
    state: ConnectionState = ConnectionState.CONNECTED
    connected_at: datetime = field(default_factory=datetime.now)
    last_heartbeat: Optional[datetime] = None
    last_activity: datetime = field(default_factory=datetime.now)

    def is_alive(self) -> bool:
        """Check if connection is alive and healthy"""
        return (
            self.state == ConnectionState.CONNECTED and
            self.websocket.application_state == WebSocketState.CONNECTED and
            self.websocket.client_state == WebSocketState.CONNECTED
        )

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_activity = datetime.now()

    def get_uptime(self) -> timedelta:
        """Get connection uptime"""
        return datetime.now() - self.connected_at


class WebSocketConnectionError(Exception):
    """Base exception for WebSocket connection errors"""
    pass


class WebSocketConnectionManager:
    """
    Manages WebSocket connections for the collaborative channel.

    Features:
    - Connection lifecycle management
    - Delivery to single connections and connection groups
    - Heartbeat monitoring
    - Connection limits
    """

    def __init__(self, config=None):
        """Initialize WebSocket connection manager"""
        self.config = config or get_config()
        self.logger = logging.getLogger("websocket.manager")

        # Connection storage
        self.connections: Dict[str, WebSocketConnection] = {}

        # Configuration
        self.max_connections = self.config.max_websocket_connections
        self.heartbeat_interval = self.config.websocket_heartbeat_interval
        self.connection_timeout = self.config.websocket_connection_timeout

        # Background tasks
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

        # Statistics
        self.stats = {
            'connections_created': 0,
            'connections_closed': 0,
            'connections_rejected': 0,
            'messages_sent': 0,
            'messages_failed': 0,
            'heartbeats_sent': 0,
            'cleanup_runs': 0
        }

        self.logger.info("WebSocket connection manager initialized")

    async def start(self) -> bool:
        """
        Start the WebSocket connection manager

        Returns:
            bool: True if started successfully
        """
        if self._running:
            return True

        self.logger.info("Starting WebSocket connection manager...")
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self.logger.info("WebSocket connection manager started successfully")
        return True

    async def stop(self):
        """Stop the WebSocket connection manager"""
        self.logger.info("Stopping WebSocket connection manager...")
        self._running = False

        for task in (self._heartbeat_task, self._cleanup_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._cleanup_task = None

        await self._close_all_connections()
        self.logger.info("WebSocket connection manager stopped")

    def register_connection(self, websocket: WebSocket, identity: Identity) -> str:
        """
        Register an accepted WebSocket connection

        Args:
            websocket: Accepted WebSocket
            identity: Authenticated user behind the connection

        Returns:
            str: Connection ID

        Raises:
            WebSocketConnectionError: If the connection limit is reached
        """
        if len(self.connections) >= self.max_connections:
            self.stats['connections_rejected'] += 1
            raise WebSocketConnectionError("Maximum connections exceeded")

        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = WebSocketConnection(
            connection_id=connection_id,
            websocket=websocket,
            identity=identity
        )
        self.stats['connections_created'] += 1

        self.logger.info(f"Registered WebSocket connection {connection_id} for user {identity.user_id}")
        return connection_id

    def unregister_connection(self, connection_id: str):
        """
        Unregister a WebSocket connection

        Args:
            connection_id: Connection identifier
        """
        connection = self.connections.pop(connection_id, None)
        if not connection:
            return

        connection.state = ConnectionState.DISCONNECTED
        self.stats['connections_closed'] += 1
        self.logger.info(f"Unregistered connection {connection_id}")

    def get_connection(self, connection_id: str) -> Optional[WebSocketConnection]:
        return self.connections.get(connection_id)

    def touch(self, connection_id: str):
        """Record inbound activity on a connection"""
        connection = self.connections.get(connection_id)
        if connection:
            connection.update_activity()

    def set_room(self, connection_id: str, room_id: Optional[str]):
        connection = self.connections.get(connection_id)
        if connection:
            connection.room_id = room_id

    async def send_message_to_connection(
        self,
        connection_id: str,
        message: Dict[str, Any]
    ) -> bool:
        """
        Send message to a specific connection

        Args:
            connection_id: Target connection ID
            message: Message to send

        Returns:
            bool: True if delivery successful
        """
        connection = self.connections.get(connection_id)
        if not connection or not connection.is_alive():
            return False

        try:
            await connection.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            self.logger.debug(f"Connection {connection_id} closed: {e}")
            self.stats['messages_failed'] += 1
            self.unregister_connection(connection_id)
            return False

        connection.update_activity()
        self.stats['messages_sent'] += 1
        return True

    async def send_message_to_connections(
        self,
        connection_ids: Iterable[str],
        message: Dict[str, Any]
    ) -> int:
        """
        Send message to a group of connections, in the given order

        Args:
            connection_ids: Target connection IDs
            message: Message to send

        Returns:
            int: Number of successful deliveries
        """
        targets = list(connection_ids)
        successful_deliveries = 0
        for connection_id in targets:
            if await self.send_message_to_connection(connection_id, message):
                successful_deliveries += 1

        self.logger.debug(
            f"Sent {message.get('type')} to {successful_deliveries}/{len(targets)} connections"
        )
        return successful_deliveries

    def get_connection_count(self) -> int:
        """Get total number of active connections"""
        return len(self.connections)

    def get_connection_info(self, connection_id: str) -> Optional[Dict[str, Any]]:
        """Get connection information"""
        connection = self.connections.get(connection_id)
        if not connection:
            return None

        return {
            'connection_id': connection.connection_id,
            'user_id': connection.identity.user_id,
            'room_id': connection.room_id,
            'state': connection.state.value,
            'connected_at': connection.connected_at.isoformat(),
            'uptime': connection.get_uptime().total_seconds(),
            'last_activity': connection.last_activity.isoformat(),
            'is_alive': connection.is_alive()
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get connection manager statistics"""
        return {
            **self.stats,
            'active_connections': len(self.connections),
            'connections_in_rooms': sum(1 for c in self.connections.values() if c.room_id),
            'manager_running': self._running
        }

    async def _heartbeat_loop(self):
        """Background task for sending heartbeats"""
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self._send_heartbeats()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in heartbeat loop: {e}")

    async def _send_heartbeats(self):
        """Send an application-level ping to every connection"""
        if not self.connections:
            return

        heartbeat_message = build_message(Event.PING, {'timestamp': datetime.now().isoformat()})
        successful_heartbeats = 0

        for connection_id in list(self.connections):
            if await self.send_message_to_connection(connection_id, heartbeat_message):
                connection = self.connections.get(connection_id)
                if connection:
                    connection.last_heartbeat = datetime.now()
                successful_heartbeats += 1

        if successful_heartbeats > 0:
            self.stats['heartbeats_sent'] += successful_heartbeats
            self.logger.debug(f"Sent heartbeat to {successful_heartbeats} connections")

    async def _cleanup_loop(self):
        """Background task for connection cleanup"""
        while self._running:
            try:
                await asyncio.sleep(60)
                await self.cleanup_stale_connections()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in cleanup loop: {e}")

    async def cleanup_stale_connections(self) -> int:
        """
        Close connections that have been idle past the connection timeout

        Returns:
            int: Number of connections cleaned up
        """
        timeout_threshold = datetime.now() - timedelta(seconds=self.connection_timeout)
        stale_connections = [
            connection for connection in self.connections.values()
            if connection.last_activity < timeout_threshold or not connection.is_alive()
        ]

        for connection in stale_connections:
            connection.state = ConnectionState.DISCONNECTING
            try:
                await connection.websocket.close(code=1001, reason="Idle timeout")
            except RuntimeError as e:
                self.logger.debug(f"Error closing connection {connection.connection_id}: {e}")
            self.unregister_connection(connection.connection_id)

        if stale_connections:
            self.logger.info(f"Cleaned up {len(stale_connections)} stale connections")

        self.stats['cleanup_runs'] += 1
        return len(stale_connections)

    async def _close_all_connections(self):
        """Close all active connections"""
        if not self.connections:
            return

        connection_ids = list(self.connections.keys())
        for connection_id in connection_ids:
            connection = self.connections.get(connection_id)
            if connection and connection.is_alive():
                try:
                    await connection.websocket.close(code=1001, reason="Server is shutting down")
                except RuntimeError as e:
                    self.logger.debug(f"Error closing connection {connection_id}: {e}")
            self.unregister_connection(connection_id)

        self.logger.info(f"Closed {len(connection_ids)} connections")
