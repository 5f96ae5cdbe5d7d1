"""
Health Router

Provides health check endpoints for service monitoring and diagnostics.
"""

import logging
import sys
from datetime import datetime
from typing import Dict, Any

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel

from shared.config import AppConfig
from shared.room_manager import RoomManager
from shared.websocket_manager import WebSocketConnectionManager

from ..middleware.auth import get_app_config, get_connection_manager, get_room_manager


# Response models
class HealthResponse(BaseModel):
    """Health check response model"""
    status: str
    service: str
    version: str
    timestamp: str
    uptime: float
    details: Dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response model"""
    ready: bool
    services: Dict[str, bool]
    message: str


router = APIRouter()
logger = logging.getLogger("api.health")


@router.get("", response_model=HealthResponse)
async def health_check(
    request: Request,
    config: AppConfig = Depends(get_app_config),
    connection_manager: WebSocketConnectionManager = Depends(get_connection_manager),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """
    Basic health check endpoint

    Returns:
        HealthResponse: Service health status
    """
    started_at = getattr(request.app.state, "started_at", None) or datetime.now()

    websocket_stats = connection_manager.get_stats()
    room_stats = room_manager.get_stats()

    health_details = {
        "environment": config.environment,
        "websocket_manager": {
            "running": websocket_stats['manager_running'],
            "connections": websocket_stats['active_connections'],
            "connections_in_rooms": websocket_stats['connections_in_rooms']
        },
        "room_manager": {
            "running": room_stats['manager_running'],
            "active_rooms": room_stats['active_rooms'],
            "rooms_by_state": room_stats['rooms_by_state'],
            "participants": room_stats['participants']
        },
        "configuration": {
            "websocket_path": config.websocket_path,
            "max_connections": config.max_websocket_connections,
            "debug": config.debug
        }
    }

    return HealthResponse(
        status="healthy",
        service=config.service_name,
        version=config.service_version,
        timestamp=datetime.now().isoformat(),
        uptime=(datetime.now() - started_at).total_seconds(),
        details=health_details
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    response: Response,
    connection_manager: WebSocketConnectionManager = Depends(get_connection_manager),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """
    Readiness check endpoint for load balancers

    Returns:
        ReadinessResponse: Service readiness status
    """
    services_status = {
        "websocket_manager": connection_manager.get_stats()['manager_running'],
        "room_manager": room_manager.get_stats()['manager_running'],
    }

    all_ready = all(services_status.values())
    if not all_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        ready=all_ready,
        services=services_status,
        message="All services ready" if all_ready else "Some services not ready"
    )


@router.get("/metrics")
async def metrics(
    request: Request,
    connection_manager: WebSocketConnectionManager = Depends(get_connection_manager),
    room_manager: RoomManager = Depends(get_room_manager)
):
    """
    Prometheus-compatible metrics endpoint

    Returns:
        Dict[str, Any]: Service metrics
    """
    websocket_stats = connection_manager.get_stats()
    room_stats = room_manager.get_stats()
    error_metrics = request.app.state.error_metrics

    return {
        "quizroom_websocket_connections_total": websocket_stats['active_connections'],
        "quizroom_websocket_messages_sent_total": websocket_stats['messages_sent'],
        "quizroom_websocket_messages_failed_total": websocket_stats['messages_failed'],
        "quizroom_websocket_connections_created_total": websocket_stats['connections_created'],
        "quizroom_websocket_connections_closed_total": websocket_stats['connections_closed'],
        "quizroom_rooms_active": room_stats['active_rooms'],
        "quizroom_rooms_created_total": room_stats['rooms_created'],
        "quizroom_rooms_purged_total": room_stats['rooms_purged'],
        "quizroom_room_commands_processed_total": room_stats['commands_processed'],
        "quizroom_room_commands_rejected_total": room_stats['commands_rejected'],
        "quizroom_room_participants": room_stats['participants'],
        "quizroom_http_errors_by_type": error_metrics.get_top_errors(),
        "quizroom_http_error_rate_per_minute": {
            endpoint: error_metrics.get_error_rate(endpoint)
            for endpoint in list(error_metrics.error_rates)
        },
    }


@router.get("/version")
async def version_info(config: AppConfig = Depends(get_app_config)):
    """
    Version information endpoint

    Returns:
        Dict[str, str]: Version details
    """
    return {
        "service": config.service_name,
        "version": config.service_version,
        "python_version": sys.version,
        "description": "Collaborative quiz room service"
    }
