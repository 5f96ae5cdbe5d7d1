# UI Components

from .connection_multiplexer import (
    ConnectionHandle,
    ConnectionMultiplexer,
    TransportOptions,
    TransportState
)
from .quiz_catalog import QuizCatalogCache
from .room_client import RoomClient, RoomView
from .whiteboard import WhiteboardCanvas

__all__ = [
    "ConnectionHandle",
    "ConnectionMultiplexer",
    "TransportOptions",
    "TransportState",
    "QuizCatalogCache",
    "RoomClient",
    "RoomView",
    "WhiteboardCanvas"
]
