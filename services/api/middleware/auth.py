"""
Authentication Dependencies

Bearer-token dependencies for REST routes and accessors for the services
built at application startup.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from shared.auth import AuthenticationError, Identity, JWTIdentityProvider
from shared.config import AppConfig
from shared.room_manager import RoomManager
from shared.websocket_manager import WebSocketConnectionManager


logger = logging.getLogger("api.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def get_identity_provider(request: Request) -> JWTIdentityProvider:
    return request.app.state.identity_provider


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_room_manager(request: Request) -> RoomManager:
    return request.app.state.room_manager


def get_connection_manager(request: Request) -> WebSocketConnectionManager:
    return request.app.state.connection_manager


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """
    Extract the bearer token from the request

    Raises:
        HTTPException: 401 if no bearer token was sent
    """
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return credentials.credentials


async def get_current_identity(
    token: str = Depends(get_bearer_token),
    identity_provider: JWTIdentityProvider = Depends(get_identity_provider)
) -> Identity:
    """
    Resolve the authenticated user

    Raises:
        AuthenticationError: If the token does not verify
    """
    try:
        return identity_provider.authenticate(token)
    except AuthenticationError as e:
        logger.info(f"Rejected REST request: {e}")
        raise
