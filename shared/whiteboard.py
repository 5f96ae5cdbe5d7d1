"""
Whiteboard Replication

Room-scoped relay of freehand drawing segments. The server keeps no stroke
history: a segment is forwarded to the other members of the room as it
arrives and a clear is forwarded to everyone, so a participant who joins later
starts from a blank canvas.
"""

from typing import List

from .protocol import Delivery, Event, WhiteboardDrawCommand


def relay_draw(stroke: WhiteboardDrawCommand, sender_connection_id: str) -> List[Delivery]:
    """Forward a segment to every room member except its author"""
    return [Delivery(
        event=Event.WHITEBOARD_DRAW.value,
        payload=stroke.model_dump(),
        exclude=sender_connection_id
    )]


def relay_clear(cleared_by: str) -> List[Delivery]:
    """Forward a clear to every room member, author included"""
    return [Delivery(event=Event.WHITEBOARD_CLEAR.value, payload={"clearedBy": cleared_by})]
