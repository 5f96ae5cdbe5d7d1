"""
Collaborative Quiz API Service Main Application

FastAPI application for collaborative quiz rooms providing:
- The collaborative WebSocket channel (rooms, chat, whiteboard)
- Room REST endpoints
- Health checks and monitoring
"""

from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from shared.auth import JWTIdentityProvider
from shared.config import AppConfig, get_config
from shared.logging import setup_logging
from shared.quiz_store import create_quiz_store
from shared.room_manager import RoomManager
from shared.websocket_manager import WebSocketConnectionManager

from .middleware.error_handling import ErrorHandlingMiddleware, ErrorMetrics, register_exception_handlers
from .routers import health, rooms, websocket


logger = logging.getLogger("api.main")


def create_app(
    config: AppConfig = None,
    quiz_store=None,
    identity_provider: JWTIdentityProvider = None
) -> FastAPI:
    """
    Build the API application and its services

    Args:
        config: Application configuration (defaults to the global one)
        quiz_store: Quiz store collaborator (defaults to the configured store)
        identity_provider: Bearer token verifier (defaults to JWT with the configured secret)

    Returns:
        FastAPI: Configured application
    """
    config = config or get_config()
    connection_manager = WebSocketConnectionManager(config)
    room_manager = RoomManager(quiz_store or create_quiz_store(), connection_manager, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        app.state.started_at = datetime.now()
        await connection_manager.start()
        await room_manager.start()
        logger.info(f"{config.service_name} started, collaborative channel at {config.websocket_path}")

        yield

        await room_manager.stop()
        await connection_manager.stop()
        logger.info(f"{config.service_name} stopped")

    app = FastAPI(
        title="Collaborative Quiz API",
        description="Real-time collaborative quiz rooms with chat and a shared whiteboard",
        version=config.service_version,
        lifespan=lifespan
    )

    app.state.config = config
    app.state.connection_manager = connection_manager
    app.state.room_manager = room_manager
    app.state.error_metrics = ErrorMetrics()
    app.state.identity_provider = identity_provider or JWTIdentityProvider(config.jwt_secret, config.jwt_algorithm)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=config.cors_methods,
        allow_headers=["*"]
    )
    app.add_middleware(ErrorHandlingMiddleware, metrics=app.state.error_metrics)
    register_exception_handlers(app)

    # Include routers
    app.add_api_websocket_route(config.websocket_path, websocket.collaborative_endpoint)
    app.include_router(rooms.router, prefix="/api/v1/rooms", tags=["rooms"])
    app.include_router(health.router, prefix="/api/v1/health", tags=["health"])
    app.include_router(websocket.router, prefix="/api/v1/ws", tags=["websocket"])

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "message": "Collaborative Quiz API",
            "version": config.service_version,
            "docs": "/docs",
            "health": "/api/v1/health",
            "websocket": config.websocket_path
        }

    return app


def main():
    """Main entry point"""
    config = get_config()
    service_logger = setup_logging(config.service_name)

    service_logger.info(f"Starting {config.service_name}...", environment=config.environment)
    service_logger.info(f"Server will start on http://{config.host}:{config.port}")

    uvicorn.run(
        "services.api.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
