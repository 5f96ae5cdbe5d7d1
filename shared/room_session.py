"""
Room Session

Server-authoritative state machine of one collaborative quiz room. A room
moves WAITING -> PLAYING -> FINISHED; every inbound command is checked
against the transition table before its handler runs, and handlers return the
events to deliver instead of sending them. RoomManager serializes calls per
room, so nothing here is concurrency-aware.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .auth import Identity
from .protocol import Delivery, Event
from .quiz_store import Quiz, QuizQuestion
from .whiteboard import relay_clear, relay_draw


class RoomState(str, Enum):
    """Room lifecycle states"""
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class RoomProtocolError(Exception):
    """A command that the room refuses; surfaced to the sender as an error event"""

    def __init__(self, message: str, code: str = "protocol_error"):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class Participant:
    """A user connected to a room"""
    user_id: str
    name: str
    connection_id: Optional[str] = None
    joined_at: datetime = field(default_factory=datetime.now)

    @property
    def avatar(self) -> str:
        return self.name[:1].upper() if self.name else "?"

    @property
    def connected(self) -> bool:
        return self.connection_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.user_id, "name": self.name, "avatar": self.avatar}


@dataclass
class Suggestion:
    """A proposed answer for one question and the identities endorsing it"""
    participant_id: str
    participant_name: str
    answer: int
    sequence: int
    voters: Dict[str, datetime] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def vote_count(self) -> int:
        return len(self.voters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant": self.participant_id,
            "participantName": self.participant_name,
            "answer": self.answer,
            "votes": self.vote_count
        }


ALL_STATES = frozenset(RoomState)
OPEN_STATES = frozenset({RoomState.WAITING, RoomState.PLAYING})

# command -> states in which the room accepts it
TRANSITIONS: Dict[str, frozenset] = {
    Event.JOIN_ROOM.value: OPEN_STATES,
    Event.LEAVE_ROOM.value: ALL_STATES,
    Event.START_QUIZ.value: frozenset({RoomState.WAITING}),
    Event.NEXT_QUESTION.value: frozenset({RoomState.PLAYING}),
    Event.RESOLVE_QUESTION.value: frozenset({RoomState.PLAYING}),
    Event.SUGGEST_ANSWER.value: frozenset({RoomState.PLAYING}),
    Event.VOTE_ANSWER.value: frozenset({RoomState.PLAYING}),
    Event.CHAT_MESSAGE.value: OPEN_STATES,
    Event.WHITEBOARD_DRAW.value: ALL_STATES,
    Event.WHITEBOARD_CLEAR.value: ALL_STATES,
}

HOST_COMMANDS = frozenset({
    Event.START_QUIZ.value,
    Event.NEXT_QUESTION.value,
    Event.RESOLVE_QUESTION.value,
})


class RoomSession:
    """
    Collaborative quiz room

    Args:
        room_id: Room code
        quiz: Quiz played in the room
        host_id: User id of the host, who controls question progression. The
            next participant to join takes over a room the host left empty.
        settings: Room settings supplied at creation (``timePerQuestion``)
        points_per_correct_answer: Group score added per correct resolution
        default_time_per_question: Advertised time limit when settings omit it
        max_chat_message_length: Longest accepted chat message
    """

    def __init__(
        self,
        room_id: str,
        quiz: Quiz,
        host_id: Optional[str],
        settings: Optional[Dict[str, Any]] = None,
        points_per_correct_answer: int = 1,
        default_time_per_question: int = 30,
        max_chat_message_length: int = 1000
    ):
        self.room_id = room_id
        self.quiz = quiz
        self.host_id = host_id
        self.settings = dict(settings or {})
        self.points_per_correct_answer = points_per_correct_answer
        self.time_per_question = int(self.settings.get("timePerQuestion") or default_time_per_question)
        self.max_chat_message_length = max_chat_message_length

        self.state = RoomState.WAITING
        self.participants: Dict[str, Participant] = {}
        self.current_question_index = -1
        self.question_resolved = False
        self.suggestions: Dict[int, List[Suggestion]] = {}
        self.results: List[Dict[str, Any]] = []
        self.group_score = 0

        self.created_at = datetime.now()
        self.finished_at: Optional[datetime] = None
        self.last_activity = self.created_at
        self._sequence = 0

        self._handlers: Dict[str, Callable[..., List[Delivery]]] = {
            Event.JOIN_ROOM.value: self._handle_join,
            Event.LEAVE_ROOM.value: self._handle_leave,
            Event.START_QUIZ.value: self._handle_start,
            Event.NEXT_QUESTION.value: self._handle_next_question,
            Event.RESOLVE_QUESTION.value: self._handle_resolve,
            Event.SUGGEST_ANSWER.value: self._handle_suggest,
            Event.VOTE_ANSWER.value: self._handle_vote,
            Event.CHAT_MESSAGE.value: self._handle_chat,
            Event.WHITEBOARD_DRAW.value: self._handle_whiteboard_draw,
            Event.WHITEBOARD_CLEAR.value: self._handle_whiteboard_clear,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        command: str,
        actor: Identity,
        connection_id: str,
        payload: Any = None
    ) -> List[Delivery]:
        """
        Apply one command to the room

        Returns:
            List[Delivery]: Events to deliver, in order

        Raises:
            RoomProtocolError: If the command is not acceptable now
        """
        allowed_states = TRANSITIONS.get(command)
        if allowed_states is None:
            raise RoomProtocolError(f"Unsupported room command: {command}", code="unknown_command")

        if self.state not in allowed_states:
            if self.state == RoomState.FINISHED:
                raise RoomProtocolError("Quiz has finished", code="quiz_finished")
            raise RoomProtocolError(
                f"Cannot {command.replace('_', ' ')} while the room is {self.state.value}",
                code="invalid_state"
            )

        if command != Event.JOIN_ROOM.value and actor.user_id not in self.participants:
            raise RoomProtocolError("You are not in this room", code="not_in_room")

        if command in HOST_COMMANDS and actor.user_id != self.host_id:
            raise RoomProtocolError("Only the host can control the quiz", code="not_host")

        self.last_activity = datetime.now()
        return self._handlers[command](actor, connection_id, payload)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _handle_join(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        participant = self.participants.get(actor.user_id)
        if participant is None:
            participant = Participant(user_id=actor.user_id, name=actor.name, connection_id=connection_id)
            self.participants[actor.user_id] = participant
        else:
            # Same user on a new connection
            participant.connection_id = connection_id

        # The host left the room empty
        if self.host_id is None:
            self.host_id = actor.user_id

        return [
            Delivery(
                Event.ROOM_JOINED.value, {"room": self.snapshot(), "playerId": actor.user_id}, to=connection_id
            ),
            Delivery(
                Event.PLAYER_JOINED.value,
                {"player": participant.to_dict(), "players": self.players(), "hostId": self.host_id},
                exclude=connection_id
            ),
        ]

    def _handle_leave(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        participant = self.participants.get(actor.user_id)
        if participant is None or participant.connection_id != connection_id:
            # Superseded by a newer connection of the same user
            return []

        del self.participants[actor.user_id]

        if actor.user_id == self.host_id:
            self.host_id = next(iter(self.participants), None)

        if not self.participants:
            return []

        return [Delivery(
            Event.PLAYER_LEFT.value,
            {"playerId": actor.user_id, "players": self.players(), "hostId": self.host_id}
        )]

    # ------------------------------------------------------------------
    # Question progression
    # ------------------------------------------------------------------

    def _handle_start(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        self.state = RoomState.PLAYING
        if not self.quiz.questions:
            return self._finish()
        return self._present_question(0)

    def _handle_next_question(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        deliveries: List[Delivery] = []
        if not self.question_resolved:
            deliveries.extend(self._resolve_current())
            if self.state == RoomState.FINISHED:
                return deliveries
        deliveries.extend(self._present_question(self.current_question_index + 1))
        return deliveries

    def _handle_resolve(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        if self.question_resolved:
            raise RoomProtocolError("Question has already been resolved", code="question_closed")
        return self._resolve_current()

    def _present_question(self, index: int) -> List[Delivery]:
        if index <= self.current_question_index:
            raise RoomProtocolError("Questions only move forward", code="invalid_state")

        question = self.quiz.questions[index]
        self.current_question_index = index
        self.question_resolved = False
        self.suggestions[index] = []

        return [Delivery(Event.NEW_QUESTION.value, self._question_payload(index, question))]

    def _question_payload(self, index: int, question: QuizQuestion) -> Dict[str, Any]:
        return {
            "question": question.to_public_dict(),
            "questionNumber": index + 1,
            "questionIndex": index,
            "totalQuestions": self.quiz.total_questions,
            "timeLimit": self.time_per_question
        }

    def _resolve_current(self) -> List[Delivery]:
        index = self.current_question_index
        question = self.quiz.questions[index]
        winner = self.winning_suggestion(index)

        is_correct = (
            winner is not None
            and question.correct_answer is not None
            and winner.answer == question.correct_answer
        )
        if is_correct:
            self.group_score += self.points_per_correct_answer

        self.question_resolved = True
        result = {
            "questionIndex": index,
            "winningAnswer": winner.answer if winner else None,
            "winningVotes": winner.vote_count if winner else 0,
            "correctAnswer": question.correct_answer,
            "isCorrect": is_correct,
            "groupScore": self.group_score
        }
        self.results.append(result)

        deliveries = [Delivery(Event.QUESTION_RESULT.value, result)]
        if index >= self.quiz.total_questions - 1:
            deliveries.extend(self._finish())
        return deliveries

    def _finish(self) -> List[Delivery]:
        self.state = RoomState.FINISHED
        self.finished_at = datetime.now()
        return [Delivery(Event.QUIZ_FINISHED.value, {
            "groupScore": self.group_score,
            "totalQuestions": self.quiz.total_questions,
            "correctAnswers": sum(1 for result in self.results if result["isCorrect"])
        })]

    def winning_suggestion(self, index: int) -> Optional[Suggestion]:
        """Most voted suggestion; ties go to the earliest submitted"""
        suggestions = self.suggestions.get(index) or []
        if not suggestions:
            return None
        return max(suggestions, key=lambda s: (s.vote_count, -s.sequence))

    # ------------------------------------------------------------------
    # Suggestions and votes
    # ------------------------------------------------------------------

    def _ensure_question_open(self, answer: int) -> List[Suggestion]:
        if self.question_resolved:
            raise RoomProtocolError("Question is closed", code="question_closed")

        options = self.quiz.questions[self.current_question_index].options
        if answer >= len(options):
            raise RoomProtocolError(f"Option {answer} does not exist", code="invalid_option")

        return self.suggestions.setdefault(self.current_question_index, [])

    def _handle_suggest(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        suggestions = self._ensure_question_open(payload.answer)

        existing = self._find_suggestion(suggestions, payload.answer)
        if existing is not None and existing.participant_id != actor.user_id:
            # Suggesting an option that is already on the table endorses it
            return self._cast_vote(actor, existing, suggestions)

        if any(s.participant_id == actor.user_id for s in suggestions):
            raise RoomProtocolError(
                "You have already suggested an answer for this question",
                code="duplicate_suggestion"
            )

        self._sequence += 1
        suggestion = Suggestion(
            participant_id=actor.user_id,
            participant_name=actor.name,
            answer=payload.answer,
            sequence=self._sequence
        )
        suggestions.append(suggestion)

        return [Delivery(Event.NEW_SUGGESTION.value, {
            "questionIndex": self.current_question_index,
            "suggestion": suggestion.to_dict()
        })]

    def _handle_vote(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        suggestions = self._ensure_question_open(payload.answer)

        target = self._find_suggestion(suggestions, payload.answer)
        if target is None:
            raise RoomProtocolError(
                f"No suggestion for option {payload.answer} on this question",
                code="unknown_suggestion"
            )
        if target.participant_id == actor.user_id:
            raise RoomProtocolError("You cannot vote for your own suggestion", code="self_vote")

        return self._cast_vote(actor, target, suggestions)

    def _cast_vote(self, actor: Identity, target: Suggestion, suggestions: List[Suggestion]) -> List[Delivery]:
        deliveries: List[Delivery] = []

        # One vote per participant per question: a new choice moves the vote
        for other in suggestions:
            if other is not target and actor.user_id in other.voters:
                del other.voters[actor.user_id]
                deliveries.append(self._vote_update(other, actor.user_id))

        target.voters.setdefault(actor.user_id, datetime.now())
        deliveries.append(self._vote_update(target, actor.user_id))
        return deliveries

    def _vote_update(self, suggestion: Suggestion, voter_id: str) -> Delivery:
        return Delivery(Event.VOTE_UPDATE.value, {
            "questionIndex": self.current_question_index,
            "answer": suggestion.answer,
            "votes": suggestion.vote_count,
            "playerId": voter_id
        })

    @staticmethod
    def _find_suggestion(suggestions: List[Suggestion], answer: int) -> Optional[Suggestion]:
        for suggestion in suggestions:
            if suggestion.answer == answer:
                return suggestion
        return None

    # ------------------------------------------------------------------
    # Relays
    # ------------------------------------------------------------------

    def _handle_chat(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        if len(payload.message) > self.max_chat_message_length:
            raise RoomProtocolError(
                f"Message longer than {self.max_chat_message_length} characters",
                code="message_too_long"
            )
        return [Delivery(Event.CHAT_MESSAGE.value, {
            "playerId": actor.user_id,
            "playerName": actor.name,
            "message": payload.message,
            "timestamp": datetime.now().isoformat()
        })]

    def _handle_whiteboard_draw(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        return relay_draw(payload, connection_id)

    def _handle_whiteboard_clear(self, actor: Identity, connection_id: str, payload: Any) -> List[Delivery]:
        return relay_clear(actor.user_id)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def players(self) -> List[Dict[str, Any]]:
        return [participant.to_dict() for participant in self.participants.values()]

    def connection_ids(self) -> List[str]:
        return [p.connection_id for p in self.participants.values() if p.connection_id]

    def is_empty(self) -> bool:
        return not self.participants

    def current_suggestions(self) -> List[Suggestion]:
        return list(self.suggestions.get(self.current_question_index, []))

    def snapshot(self) -> Dict[str, Any]:
        """Room state sent to a joining client"""
        current_question = None
        if self.state == RoomState.PLAYING and self.current_question_index >= 0:
            index = self.current_question_index
            current_question = {
                **self._question_payload(index, self.quiz.questions[index]),
                "resolved": self.question_resolved,
                "suggestions": [s.to_dict() for s in self.current_suggestions()]
            }

        return {
            "roomId": self.room_id,
            "hostId": self.host_id,
            "status": self.state.value,
            "quiz": self.quiz.to_summary(),
            "players": self.players(),
            "groupScore": self.group_score,
            "currentQuestion": current_question,
            "settings": self.settings
        }

    def to_summary(self) -> Dict[str, Any]:
        """Room information for the REST API"""
        return {
            "roomId": self.room_id,
            "hostId": self.host_id,
            "status": self.state.value,
            "quiz": self.quiz.to_summary(),
            "playerCount": len(self.participants),
            "currentQuestion": self.current_question_index + 1 if self.current_question_index >= 0 else None,
            "groupScore": self.group_score,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None
        }
