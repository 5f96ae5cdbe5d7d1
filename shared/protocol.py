"""
Collaborative Room Wire Protocol

Event vocabulary and command payload models for the collaborative quiz
WebSocket channel. Every frame is a JSON object whose ``type`` names the
event; the remaining keys are the payload.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator


class Event(str, Enum):
    """Event names used on the collaborative channel"""
    # Client -> server
    CREATE_ROOM = "create_room"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    START_QUIZ = "start_quiz"
    NEXT_QUESTION = "next_question"
    RESOLVE_QUESTION = "resolve_question"
    SUGGEST_ANSWER = "suggest_answer"
    VOTE_ANSWER = "vote_answer"
    PING = "ping"

    # Server -> client
    ROOM_CREATED = "room_created"
    ROOM_JOINED = "room_joined"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    NEW_QUESTION = "new_question"
    NEW_SUGGESTION = "new_suggestion"
    VOTE_UPDATE = "vote_update"
    QUESTION_RESULT = "question_result"
    QUIZ_FINISHED = "quiz_finished"
    PONG = "pong"
    ERROR = "error"

    # Both directions
    CHAT_MESSAGE = "chat_message"
    WHITEBOARD_DRAW = "whiteboard_draw"
    WHITEBOARD_CLEAR = "whiteboard_clear"


class CommandValidationError(Exception):
    """Raised when an inbound frame is not a well-formed command"""

    def __init__(self, message: str, code: str = "invalid_command"):
        super().__init__(message)
        self.message = message
        self.code = code


class EmptyCommand(BaseModel):
    """Command without payload"""
    model_config = {"extra": "ignore"}


class CreateRoomCommand(BaseModel):
    quizId: str = Field(..., min_length=1, max_length=128)
    settings: Dict[str, Any] = Field(default_factory=dict)


class JoinRoomCommand(BaseModel):
    roomId: str = Field(..., min_length=1, max_length=32)

    @field_validator('roomId')
    @classmethod
    def normalize_room_id(cls, v):
        """Room codes are upper-case; accept them in any case"""
        return v.strip().upper()


class AnswerCommand(BaseModel):
    """Payload of suggest_answer and vote_answer"""
    answer: int = Field(..., ge=0, description="Option index")


class ChatCommand(BaseModel):
    message: str = Field(..., min_length=1)


class WhiteboardDrawCommand(BaseModel):
    """One freehand segment as drawn by a client"""
    model_config = {"extra": "ignore"}

    x0: float
    y0: float
    x1: float
    y1: float
    color: str = Field(default="#000000", max_length=32)
    brushSize: float = Field(default=5, gt=0, le=200)
    isErasing: bool = False


COMMAND_MODELS: Dict[str, Type[BaseModel]] = {
    Event.CREATE_ROOM.value: CreateRoomCommand,
    Event.JOIN_ROOM.value: JoinRoomCommand,
    Event.LEAVE_ROOM.value: EmptyCommand,
    Event.START_QUIZ.value: EmptyCommand,
    Event.NEXT_QUESTION.value: EmptyCommand,
    Event.RESOLVE_QUESTION.value: EmptyCommand,
    Event.SUGGEST_ANSWER.value: AnswerCommand,
    Event.VOTE_ANSWER.value: AnswerCommand,
    Event.CHAT_MESSAGE.value: ChatCommand,
    Event.WHITEBOARD_DRAW.value: WhiteboardDrawCommand,
    Event.WHITEBOARD_CLEAR.value: EmptyCommand,
    Event.PING.value: EmptyCommand,
}


def parse_command(message: Any) -> tuple:
    """
    Validate an inbound frame

    Args:
        message: Decoded JSON frame

    Returns:
        tuple: (command type, validated payload model)

    Raises:
        CommandValidationError: If the frame is not a known, well-formed command
    """
    if not isinstance(message, dict):
        raise CommandValidationError("Message must be a JSON object", code="invalid_message")

    command_type = message.get("type")
    model = COMMAND_MODELS.get(command_type)
    if model is None:
        raise CommandValidationError(
            f"Unknown message type: {command_type}", code="unknown_message_type"
        )

    payload = {key: value for key, value in message.items() if key != "type"}
    try:
        return command_type, model.model_validate(payload)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise CommandValidationError(
            f"Invalid {command_type} payload: {details}", code="invalid_payload"
        )


def build_message(event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build an outbound frame"""
    event_name = event.value if isinstance(event, Event) else event
    return {"type": event_name, **(payload or {})}


def error_payload(message: str, code: Optional[str] = None) -> Dict[str, Any]:
    payload = {"message": message, "timestamp": datetime.now().isoformat()}
    if code:
        payload["code"] = code
    return payload


@dataclass
class Delivery:
    """
    An outbound event produced by a room handler

    ``to`` addresses a single connection; otherwise the event goes to every
    connection in the room except ``exclude``.
    """
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    to: Optional[str] = None
    exclude: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        return build_message(self.event, self.payload)
