"""
Room Manager

Owns every live RoomSession on this server. Commands for a room are funnelled
through that room's queue and applied by a single worker task, so a room is
never mutated concurrently and its events leave in processing order. The
manager also routes connections to rooms, fans deliveries out through the
WebSocket connection manager and purges finished and abandoned rooms.
"""

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .auth import Identity
from .config import get_config
from .logging import get_structured_logger, log_context
from .protocol import Delivery, Event, build_message, error_payload
from .quiz_store import QuizNotFoundError, QuizStoreError
from .room_session import RoomProtocolError, RoomSession, RoomState
from .websocket_manager import WebSocketConnectionManager


ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


class RoomNotFoundError(RoomProtocolError):
    """Raised when a command names a room that does not exist"""

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found", code="room_not_found")
        self.room_id = room_id


@dataclass
class RoomCommand:
    """A command waiting in a room queue"""
    command: str
    actor: Identity
    connection_id: str
    payload: Any
    done: asyncio.Future


class RoomManager:
    """
    Registry of rooms with one command queue and worker per room

    Args:
        quiz_store: Collaborator providing ``get_quiz(quiz_id, token)``
        connection_manager: Delivers events to connections
        config: Application configuration
    """

    def __init__(self, quiz_store, connection_manager: WebSocketConnectionManager, config=None):
        self.config = config or get_config()
        self.quiz_store = quiz_store
        self.connection_manager = connection_manager
        self.logger = logging.getLogger("room.manager")
        self.events = get_structured_logger("room.events")

        self.rooms: Dict[str, RoomSession] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._connection_rooms: Dict[str, str] = {}

        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

        self.stats = {
            'rooms_created': 0,
            'rooms_purged': 0,
            'commands_processed': 0,
            'commands_rejected': 0,
            'events_delivered': 0
        }

    async def start(self):
        """Start the cleanup loop"""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self.logger.info("Room manager started")

    async def stop(self):
        """Stop the cleanup loop and every room worker"""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for room_id in list(self.rooms):
            await self._remove_room(room_id)
        self.logger.info("Room manager stopped")

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def create_room(
        self,
        quiz_id: str,
        host: Identity,
        token: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None
    ) -> RoomSession:
        """
        Create a room for a quiz with the given user as host

        Raises:
            QuizNotFoundError: If the quiz does not exist
            QuizStoreError: If the quiz store cannot be reached
        """
        quiz = await self.quiz_store.get_quiz(quiz_id, token)

        room_id = self._generate_room_code()
        room = RoomSession(
            room_id=room_id,
            quiz=quiz,
            host_id=host.user_id,
            settings=settings,
            points_per_correct_answer=self.config.points_per_correct_answer,
            default_time_per_question=self.config.default_time_per_question,
            max_chat_message_length=self.config.max_chat_message_length
        )
        self.rooms[room_id] = room
        self._queues[room_id] = asyncio.Queue(maxsize=self.config.room_queue_size)
        self._workers[room_id] = asyncio.create_task(self._room_worker(room_id))
        self.stats['rooms_created'] += 1

        self.logger.info(f"Created room {room_id} for quiz {quiz.quiz_id} hosted by {host.user_id}")
        return room

    def get_room(self, room_id: str) -> RoomSession:
        """
        Raises:
            RoomNotFoundError: If no such room exists
        """
        room = self.rooms.get(room_id.upper())
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    def list_rooms(self) -> List[Dict[str, Any]]:
        return [room.to_summary() for room in self.rooms.values()]

    def room_for_connection(self, connection_id: str) -> Optional[str]:
        return self._connection_rooms.get(connection_id)

    def _generate_room_code(self) -> str:
        while True:
            code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(self.config.room_code_length))
            if code not in self.rooms:
                return code

    # ------------------------------------------------------------------
    # Command routing
    # ------------------------------------------------------------------

    async def handle_command(
        self,
        connection_id: str,
        actor: Identity,
        command: str,
        payload: Any,
        token: Optional[str] = None
    ) -> bool:
        """
        Route a validated command from a connection and wait until it is applied

        Protocol failures are reported to the sender as ``error`` events.

        Returns:
            bool: True if the command was accepted
        """
        try:
            if command == Event.CREATE_ROOM.value:
                room = await self.create_room(payload.quizId, actor, token=token, settings=payload.settings)
                await self.connection_manager.send_message_to_connection(
                    connection_id,
                    build_message(Event.ROOM_CREATED, {"roomId": room.room_id, "room": room.snapshot()})
                )
                return await self._join(connection_id, actor, room.room_id)

            if command == Event.JOIN_ROOM.value:
                return await self._join(connection_id, actor, payload.roomId)

            room_id = self._connection_rooms.get(connection_id)
            if room_id is None:
                raise RoomProtocolError("Join a room first", code="not_in_room")
            return await self.submit(room_id, command, actor, connection_id, payload)

        except RoomProtocolError as e:
            await self._send_error(connection_id, e.message, e.code)
            return False
        except QuizNotFoundError as e:
            await self._send_error(connection_id, str(e), "quiz_not_found")
            return False
        except QuizStoreError as e:
            await self._send_error(connection_id, str(e), "quiz_unavailable")
            return False

    async def _join(self, connection_id: str, actor: Identity, room_id: str) -> bool:
        room = self.get_room(room_id)
        current = self._connection_rooms.get(connection_id)

        # A rejected join leaves the connection where it was
        accepted = await self.submit(room.room_id, Event.JOIN_ROOM.value, actor, connection_id, None)
        if not accepted or not current or current == room.room_id:
            return accepted

        try:
            await self.submit(current, Event.LEAVE_ROOM.value, actor, connection_id, None)
        except RoomNotFoundError:
            self.logger.debug(f"Room {current} was purged before {connection_id} moved on")
        return accepted

    async def disconnect(self, connection_id: str, actor: Identity):
        """Remove a closed connection from its room"""
        room_id = self._connection_rooms.get(connection_id)
        if room_id and room_id in self.rooms:
            try:
                await self.submit(room_id, Event.LEAVE_ROOM.value, actor, connection_id, None)
            except RoomNotFoundError:
                self.logger.debug(f"Room {room_id} was purged before {connection_id} left")
        self._connection_rooms.pop(connection_id, None)

    async def submit(
        self,
        room_id: str,
        command: str,
        actor: Identity,
        connection_id: str,
        payload: Any = None
    ) -> bool:
        """
        Queue a command for a room and wait for its worker to apply it

        Returns:
            bool: True if the room accepted the command
        """
        queue = self._queues.get(room_id)
        if queue is None:
            raise RoomNotFoundError(room_id)

        done = asyncio.get_running_loop().create_future()
        await queue.put(RoomCommand(command, actor, connection_id, payload, done))
        return await done

    async def _room_worker(self, room_id: str):
        """Apply queued commands to one room, one at a time"""
        queue = self._queues[room_id]
        room = self.rooms[room_id]

        # The worker outlives the connection that created the room
        with log_context(connection_id=None):
            while True:
                item: RoomCommand = await queue.get()
                try:
                    accepted = await self._apply(room, item)
                    if not item.done.done():
                        item.done.set_result(accepted)
                except asyncio.CancelledError:
                    if not item.done.done():
                        item.done.set_exception(RoomNotFoundError(room_id))
                    raise
                except Exception as e:
                    self.logger.error(f"Unexpected error in room {room_id} handling {item.command}: {e}", exc_info=True)
                    await self._send_error(item.connection_id, "Internal server error", "internal_error")
                    if not item.done.done():
                        item.done.set_result(False)
                finally:
                    queue.task_done()

    async def _apply(self, room: RoomSession, item: RoomCommand) -> bool:
        try:
            deliveries = room.dispatch(item.command, item.actor, item.connection_id, item.payload)
        except RoomProtocolError as e:
            self.stats['commands_rejected'] += 1
            self.events.log_room_event(room.room_id, "rejected", command=item.command, code=e.code)
            await self._send_error(item.connection_id, e.message, e.code)
            return False

        self.stats['commands_processed'] += 1
        self.events.log_room_event(room.room_id, item.command, user_id=item.actor.user_id)

        if item.command == Event.JOIN_ROOM.value:
            self._connection_rooms[item.connection_id] = room.room_id
            self.connection_manager.set_room(item.connection_id, room.room_id)
        elif item.command == Event.LEAVE_ROOM.value:
            if self._connection_rooms.get(item.connection_id) == room.room_id:
                del self._connection_rooms[item.connection_id]
                self.connection_manager.set_room(item.connection_id, None)

        await self._deliver(room, deliveries)
        return True

    async def _deliver(self, room: RoomSession, deliveries: List[Delivery]):
        """Fan deliveries out in order"""
        for delivery in deliveries:
            message = delivery.to_message()
            if delivery.to:
                targets = [delivery.to]
            else:
                targets = [cid for cid in room.connection_ids() if cid != delivery.exclude]
            sent = await self.connection_manager.send_message_to_connections(targets, message)
            self.stats['events_delivered'] += sent

    async def _send_error(self, connection_id: str, message: str, code: Optional[str] = None):
        await self.connection_manager.send_message_to_connection(
            connection_id,
            build_message(Event.ERROR, error_payload(message, code))
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.config.room_cleanup_interval)
                await self.cleanup_rooms()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in room cleanup loop: {e}")

    async def cleanup_rooms(self, now: Optional[datetime] = None) -> List[str]:
        """
        Purge finished rooms past the retention period and rooms left empty
        for longer than the connection timeout

        Returns:
            List[str]: Purged room ids
        """
        now = now or datetime.now()
        finished_cutoff = now - timedelta(seconds=self.config.finished_room_retention)
        idle_cutoff = now - timedelta(seconds=self.config.websocket_connection_timeout)

        purged = []
        for room_id, room in list(self.rooms.items()):
            if room.state == RoomState.FINISHED and room.finished_at <= finished_cutoff:
                purged.append(room_id)
            elif room.is_empty() and room.last_activity <= idle_cutoff:
                purged.append(room_id)

        for room_id in purged:
            await self._remove_room(room_id)

        if purged:
            self.logger.info(f"Purged {len(purged)} rooms: {', '.join(purged)}")
        return purged

    async def _remove_room(self, room_id: str):
        self.rooms.pop(room_id, None)
        queue = self._queues.pop(room_id, None)
        worker = self._workers.pop(room_id, None)
        if worker:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        # Release anyone still waiting on a command for this room
        while queue is not None and not queue.empty():
            item = queue.get_nowait()
            if not item.done.done():
                item.done.set_exception(RoomNotFoundError(room_id))

        for connection_id, joined in list(self._connection_rooms.items()):
            if joined == room_id:
                del self._connection_rooms[connection_id]
                self.connection_manager.set_room(connection_id, None)
        self.stats['rooms_purged'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get room manager statistics"""
        by_state = {state.value: 0 for state in RoomState}
        for room in self.rooms.values():
            by_state[room.state.value] += 1
        return {
            **self.stats,
            'active_rooms': len(self.rooms),
            'rooms_by_state': by_state,
            'participants': sum(len(room.participants) for room in self.rooms.values()),
            'manager_running': self._running
        }
