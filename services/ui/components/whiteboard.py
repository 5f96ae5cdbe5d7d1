"""
Whiteboard Canvas Component

Client-side model of the shared whiteboard. Segments are appended in relay
order; eraser segments composite with ``destination-out`` so they remove
pixels instead of painting over them. A clear empties the canvas.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.protocol import Event


SOURCE_OVER = "source-over"
DESTINATION_OUT = "destination-out"


@dataclass(frozen=True)
class Segment:
    """One rendered stroke segment"""
    x0: float
    y0: float
    x1: float
    y1: float
    color: str
    brush_size: float
    composite: str

    @classmethod
    def from_stroke(cls, stroke: Dict[str, Any]) -> 'Segment':
        erasing = bool(stroke.get("isErasing", False))
        return cls(
            x0=float(stroke["x0"]),
            y0=float(stroke["y0"]),
            x1=float(stroke["x1"]),
            y1=float(stroke["y1"]),
            color=str(stroke.get("color", "#000000")),
            brush_size=float(stroke.get("brushSize", 5)),
            composite=DESTINATION_OUT if erasing else SOURCE_OVER
        )

    def to_stroke(self) -> Dict[str, Any]:
        return {
            "x0": self.x0,
            "y0": self.y0,
            "x1": self.x1,
            "y1": self.y1,
            "color": self.color,
            "brushSize": self.brush_size,
            "isErasing": self.composite == DESTINATION_OUT
        }


class WhiteboardCanvas:
    """Local canvas state driven by local drawing and relayed events"""

    def __init__(self, color: str = "#000000", brush_size: float = 5):
        self.segments: List[Segment] = []
        self.color = color
        self.brush_size = brush_size
        self.erasing = False
        self.logger = logging.getLogger("ui.whiteboard")

    @property
    def is_blank(self) -> bool:
        return not self.segments

    def apply(self, stroke: Dict[str, Any]) -> Optional[Segment]:
        """Render a segment; malformed segments are dropped"""
        try:
            segment = Segment.from_stroke(stroke)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"Dropping malformed segment: {e}")
            return None
        self.segments.append(segment)
        return segment

    def clear(self, data: Optional[Dict[str, Any]] = None):
        self.segments.clear()

    def bind(self, handle):
        """Follow relayed drawing on a connection handle"""
        handle.on(Event.WHITEBOARD_DRAW.value, self.apply)
        handle.on(Event.WHITEBOARD_CLEAR.value, self.clear)

    def unbind(self, handle):
        handle.off(Event.WHITEBOARD_DRAW.value, self.apply)
        handle.off(Event.WHITEBOARD_CLEAR.value, self.clear)

    async def draw(self, handle, x0: float, y0: float, x1: float, y1: float) -> Segment:
        """Draw locally with the current tool and relay to the room"""
        segment = Segment(
            x0=x0, y0=y0, x1=x1, y1=y1,
            color=self.color,
            brush_size=self.brush_size,
            composite=DESTINATION_OUT if self.erasing else SOURCE_OVER
        )
        self.segments.append(segment)
        await handle.emit(Event.WHITEBOARD_DRAW.value, segment.to_stroke())
        return segment

    async def request_clear(self, handle) -> bool:
        """Ask the room to clear; the canvas clears when the broadcast comes back"""
        return await handle.emit(Event.WHITEBOARD_CLEAR.value)
