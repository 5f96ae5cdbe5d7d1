"""
Whiteboard canvas and relay tests
"""

import pytest

from conftest import FakeTransportFactory, settle
from services.ui.components.connection_multiplexer import ConnectionMultiplexer, TransportOptions
from services.ui.components.whiteboard import DESTINATION_OUT, SOURCE_OVER, Segment, WhiteboardCanvas
from shared.protocol import WhiteboardDrawCommand
from shared.whiteboard import relay_clear, relay_draw


def test_pen_and_eraser_composite_modes():
    canvas = WhiteboardCanvas()

    pen = canvas.apply({"x0": 0, "y0": 0, "x1": 10, "y1": 0, "color": "#ff0000", "brushSize": 2})
    eraser = canvas.apply({"x0": 5, "y0": 0, "x1": 6, "y1": 0, "isErasing": True, "brushSize": 20})

    assert pen.composite == SOURCE_OVER
    assert eraser.composite == DESTINATION_OUT
    assert [s.composite for s in canvas.segments] == [SOURCE_OVER, DESTINATION_OUT]


def test_malformed_segment_is_dropped():
    canvas = WhiteboardCanvas()

    assert canvas.apply({"x0": 0, "y0": 0}) is None
    assert canvas.apply({"x0": "left", "y0": 0, "x1": 1, "y1": 1}) is None
    assert canvas.is_blank


def test_clear_empties_canvas():
    canvas = WhiteboardCanvas()
    canvas.apply({"x0": 0, "y0": 0, "x1": 1, "y1": 1})

    canvas.clear({"clearedBy": "p2"})

    assert canvas.is_blank


def test_segment_stroke_round_trip_keeps_eraser_flag():
    segment = Segment.from_stroke({"x0": 1, "y0": 2, "x1": 3, "y1": 4, "isErasing": True})

    assert segment.to_stroke()["isErasing"] is True
    assert segment.to_stroke()["color"] == "#000000"


def test_server_relay_targets():
    stroke = WhiteboardDrawCommand(x0=0, y0=0, x1=1, y1=1)

    draw = relay_draw(stroke, "conn-1")[0]
    clear = relay_clear("p1")[0]

    assert draw.exclude == "conn-1" and draw.to is None
    assert draw.to_message()["type"] == "whiteboard_draw"
    assert clear.exclude is None and clear.to is None
    assert clear.to_message() == {"type": "whiteboard_clear", "clearedBy": "p1"}


@pytest.mark.asyncio
async def test_local_drawing_is_relayed():
    factory = FakeTransportFactory()
    multiplexer = ConnectionMultiplexer(
        backend_url="http://api.test",
        options=TransportOptions(reconnection_attempts=0),
        transport_factory=factory
    )
    handle = multiplexer.acquire("token-a")
    await handle.wait_connected(1.0)
    canvas = WhiteboardCanvas(color="#00ff00", brush_size=8)
    canvas.bind(handle)

    canvas.erasing = True
    await canvas.draw(handle, 0, 0, 4, 4)
    assert await canvas.request_clear(handle)

    transport = factory.transports[0]
    assert transport.sent[0]["type"] == "whiteboard_draw"
    assert transport.sent[0]["isErasing"] is True
    assert transport.sent[0]["brushSize"] == 8
    assert transport.sent[1] == {"type": "whiteboard_clear"}
    # Cleared only when the broadcast comes back
    assert len(canvas.segments) == 1

    transport.push({"type": "whiteboard_clear", "clearedBy": "me"})
    await settle()
    assert canvas.is_blank

    multiplexer.teardown()
    await settle()
