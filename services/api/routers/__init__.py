"""
API Routers

Router modules for different API endpoints:
- Health checks and service status
- Room creation and lookup
- The collaborative WebSocket channel
"""

from .health import router as health_router
from .rooms import router as rooms_router
from .websocket import router as websocket_router

__all__ = [
    "health_router",
    "rooms_router",
    "websocket_router"
]
