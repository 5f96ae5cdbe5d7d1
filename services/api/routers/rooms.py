"""
Rooms Router

REST access to collaborative rooms:
- Room creation for a quiz
- Room listing and lookup
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator

from shared.auth import Identity
from shared.room_manager import RoomManager

from ..middleware.auth import get_bearer_token, get_current_identity, get_room_manager


# Request/Response models
class CreateRoomRequest(BaseModel):
    """Request model for creating a room"""
    quiz_id: str = Field(..., alias="quizId", min_length=1, max_length=128, description="Quiz to play")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Room settings")

    model_config = {"populate_by_name": True}

    @field_validator('settings')
    @classmethod
    def validate_settings(cls, v):
        """Only positive question time limits are accepted"""
        time_per_question = v.get("timePerQuestion")
        if time_per_question is not None and (not isinstance(time_per_question, int) or time_per_question <= 0):
            raise ValueError("timePerQuestion must be a positive integer")
        return v


class RoomSummary(BaseModel):
    """Response model for room information"""
    roomId: str
    hostId: Optional[str] = None
    status: str
    quiz: Dict[str, Any]
    playerCount: int
    currentQuestion: Optional[int] = None
    groupScore: int
    createdAt: str
    finishedAt: Optional[str] = None


class RoomListResponse(BaseModel):
    """Response model for room list"""
    rooms: List[RoomSummary]
    total: int


router = APIRouter()
logger = logging.getLogger("api.rooms")


@router.post("", response_model=RoomSummary, status_code=status.HTTP_201_CREATED)
async def create_room(
    request: CreateRoomRequest,
    identity: Identity = Depends(get_current_identity),
    token: str = Depends(get_bearer_token),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """
    Create a room hosted by the caller

    The host joins over the collaborative WebSocket channel with the
    returned ``roomId``.
    """
    room = await room_manager.create_room(
        request.quiz_id, identity, token=token, settings=request.settings
    )
    logger.info(f"Room {room.room_id} created via REST by {identity.user_id}")
    return RoomSummary(**room.to_summary())


@router.get("", response_model=RoomListResponse)
async def list_rooms(
    identity: Identity = Depends(get_current_identity),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """List live rooms"""
    rooms = [RoomSummary(**summary) for summary in room_manager.list_rooms()]
    return RoomListResponse(rooms=rooms, total=len(rooms))


@router.get("/{room_id}", response_model=RoomSummary)
async def get_room(
    room_id: str,
    identity: Identity = Depends(get_current_identity),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """
    Get room information

    Raises:
        RoomNotFoundError: Rendered as 404
    """
    return RoomSummary(**room_manager.get_room(room_id).to_summary())
