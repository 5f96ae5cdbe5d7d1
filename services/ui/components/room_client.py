"""
Room Client Component

Presentation adapter for a collaborative room. It issues room commands over
the shared connection and folds server events into a local view model that
the UI renders. Selections (own suggestion, own vote) are applied
optimistically and rolled back from a captured snapshot when the server
rejects the command or it cannot be sent.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from shared.protocol import Event

from .connection_multiplexer import ConnectionHandle, ConnectionMultiplexer
from .whiteboard import WhiteboardCanvas


@dataclass
class RoomView:
    """What the UI renders for a room"""
    room_id: Optional[str] = None
    player_id: Optional[str] = None
    host_id: Optional[str] = None
    status: Optional[str] = None
    quiz: Dict[str, Any] = field(default_factory=dict)
    players: List[Dict[str, Any]] = field(default_factory=list)
    group_score: int = 0
    question: Optional[Dict[str, Any]] = None
    question_index: int = -1
    total_questions: int = 0
    time_limit: Optional[int] = None
    suggestions: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    my_suggestion: Optional[int] = None
    my_vote: Optional[int] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    finished: Optional[Dict[str, Any]] = None
    chat: List[Dict[str, Any]] = field(default_factory=list)
    last_error: Optional[Dict[str, Any]] = None


@dataclass
class PendingCommand:
    """An optimistic command awaiting confirmation"""
    event: str
    answer: int
    snapshot: Dict[str, Any]
    issued_at: datetime = field(default_factory=datetime.now)


class RoomClient:
    """
    Room presentation adapter

    Args:
        multiplexer: Shared connection owner
        auth_token: Bearer token of the signed-in user
        component_id: Identifier used for reference counting
    """

    SELECTION_FIELDS = ("my_suggestion", "my_vote")

    def __init__(self, multiplexer: ConnectionMultiplexer, auth_token: str, component_id: str = "room-client"):
        self.multiplexer = multiplexer
        self.auth_token = auth_token
        self.component_id = component_id
        self.view = RoomView()
        self.canvas = WhiteboardCanvas()
        self.handle: Optional[ConnectionHandle] = None
        self.pending: Optional[PendingCommand] = None
        self.logger = logging.getLogger("ui.room_client")

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            Event.ROOM_CREATED.value: self._on_room_created,
            Event.ROOM_JOINED.value: self._on_room_joined,
            Event.PLAYER_JOINED.value: self._on_roster,
            Event.PLAYER_LEFT.value: self._on_roster,
            Event.NEW_QUESTION.value: self._on_new_question,
            Event.NEW_SUGGESTION.value: self._on_new_suggestion,
            Event.VOTE_UPDATE.value: self._on_vote_update,
            Event.QUESTION_RESULT.value: self._on_question_result,
            Event.QUIZ_FINISHED.value: self._on_quiz_finished,
            Event.CHAT_MESSAGE.value: self._on_chat_message,
            Event.ERROR.value: self._on_error,
        }

    # Lifecycle

    def mount(self) -> bool:
        """
        Acquire the shared connection and start following room events

        Returns:
            bool: False if no connection is available (not authenticated)
        """
        handle = self.multiplexer.acquire(self.auth_token)
        if handle is None:
            return False

        self.handle = handle
        self.multiplexer.register_user(self.component_id)
        for event, handler in self._handlers.items():
            handle.on(event, handler)
        self.canvas.bind(handle)
        return True

    def unmount(self):
        """Stop following events and release the shared connection"""
        if self.handle is None:
            return
        for event, handler in self._handlers.items():
            self.handle.off(event, handler)
        self.canvas.unbind(self.handle)
        self.handle = None
        self.multiplexer.unregister_user(self.component_id)

    async def _send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        if self.handle is None:
            self.logger.warning(f"Cannot send {event}: client is not mounted")
            return False
        return await self.handle.emit(event, payload)

    # Commands

    async def create_room(self, quiz_id: str, settings: Optional[Dict[str, Any]] = None) -> bool:
        return await self._send(Event.CREATE_ROOM.value, {"quizId": quiz_id, "settings": settings or {}})

    async def join_room(self, room_id: str) -> bool:
        return await self._send(Event.JOIN_ROOM.value, {"roomId": room_id})

    async def leave_room(self) -> bool:
        sent = await self._send(Event.LEAVE_ROOM.value)
        if sent:
            self.view = RoomView()
            self.canvas.clear()
        return sent

    async def start_quiz(self) -> bool:
        return await self._send(Event.START_QUIZ.value)

    async def next_question(self) -> bool:
        return await self._send(Event.NEXT_QUESTION.value)

    async def resolve_question(self) -> bool:
        return await self._send(Event.RESOLVE_QUESTION.value)

    async def suggest_answer(self, answer: int) -> bool:
        return await self._optimistic(Event.SUGGEST_ANSWER.value, answer, my_suggestion=answer)

    async def vote_answer(self, answer: int) -> bool:
        return await self._optimistic(Event.VOTE_ANSWER.value, answer, my_vote=answer)

    async def send_chat(self, message: str) -> bool:
        return await self._send(Event.CHAT_MESSAGE.value, {"message": message})

    async def _optimistic(self, event: str, answer: int, **changes) -> bool:
        """Apply a selection locally, send it, and roll back if sending fails"""
        snapshot = {name: getattr(self.view, name) for name in self.SELECTION_FIELDS}
        for name, value in changes.items():
            setattr(self.view, name, value)
        self.pending = PendingCommand(event=event, answer=answer, snapshot=snapshot)

        if not await self._send(event, {"answer": answer}):
            self._rollback()
            return False
        return True

    def _rollback(self):
        pending, self.pending = self.pending, None
        if pending is None:
            return
        for name, value in pending.snapshot.items():
            setattr(self.view, name, value)
        self.logger.info(f"Rolled back {pending.event} for option {pending.answer}")

    def _confirm(self, event: str, answer: int, player_id: Optional[str]):
        # Only the event our own command produced settles it
        if player_id is None or player_id != self.view.player_id:
            return
        if self.pending and self.pending.event == event and self.pending.answer == answer:
            self.pending = None

    # Event handlers

    def _load_snapshot(self, room: Dict[str, Any]):
        self.view.room_id = room.get("roomId")
        self.view.host_id = room.get("hostId")
        self.view.status = room.get("status")
        self.view.quiz = room.get("quiz") or {}
        self.view.players = room.get("players") or []
        self.view.group_score = room.get("groupScore", 0)
        self.view.total_questions = self.view.quiz.get("totalQuestions", 0)

        current = room.get("currentQuestion")
        if current:
            self.view.question = current.get("question")
            self.view.question_index = current.get("questionIndex", -1)
            self.view.time_limit = current.get("timeLimit")
            self.view.suggestions = {s["answer"]: s for s in current.get("suggestions", [])}

    def _on_room_created(self, data: Dict[str, Any]):
        self._load_snapshot(data.get("room") or {})

    def _on_room_joined(self, data: Dict[str, Any]):
        self.view = RoomView(chat=self.view.chat, player_id=data.get("playerId"))
        self._load_snapshot(data.get("room") or {})
        # Late joiners start from a blank canvas
        self.canvas.clear()

    def _on_roster(self, data: Dict[str, Any]):
        self.view.players = data.get("players", self.view.players)
        self.view.host_id = data.get("hostId", self.view.host_id)

    def _on_new_question(self, data: Dict[str, Any]):
        self.view.status = "playing"
        self.view.question = data.get("question")
        self.view.question_index = data.get("questionIndex", self.view.question_index + 1)
        self.view.total_questions = data.get("totalQuestions", self.view.total_questions)
        self.view.time_limit = data.get("timeLimit")
        self.view.suggestions = {}
        self.view.my_suggestion = None
        self.view.my_vote = None
        self.pending = None

    def _on_new_suggestion(self, data: Dict[str, Any]):
        suggestion = data.get("suggestion") or {}
        if "answer" not in suggestion:
            return
        self.view.suggestions[suggestion["answer"]] = suggestion
        self._confirm(Event.SUGGEST_ANSWER.value, suggestion["answer"], suggestion.get("participant"))

    def _on_vote_update(self, data: Dict[str, Any]):
        answer = data.get("answer")
        suggestion = self.view.suggestions.get(answer)
        if suggestion is not None:
            suggestion["votes"] = data.get("votes", suggestion.get("votes", 0))
        # A suggestion of an already proposed option comes back as a vote
        self._confirm(Event.VOTE_ANSWER.value, answer, data.get("playerId"))
        self._confirm(Event.SUGGEST_ANSWER.value, answer, data.get("playerId"))

    def _on_question_result(self, data: Dict[str, Any]):
        self.view.results.append(data)
        self.view.group_score = data.get("groupScore", self.view.group_score)
        self.pending = None

    def _on_quiz_finished(self, data: Dict[str, Any]):
        self.view.status = "finished"
        self.view.finished = data
        self.view.group_score = data.get("groupScore", self.view.group_score)

    def _on_chat_message(self, data: Dict[str, Any]):
        self.view.chat.append({
            "playerName": data.get("playerName"),
            "message": data.get("message"),
            "timestamp": data.get("timestamp")
        })

    def _on_error(self, data: Dict[str, Any]):
        self.view.last_error = data
        self.logger.warning(f"Room error: {data.get('message')}")
        self._rollback()
