"""
API Middleware

Middleware components for request processing:
- Bearer authentication dependencies
- Request correlation and error formatting
"""

from .auth import (
    get_bearer_token,
    get_current_identity,
    get_connection_manager,
    get_identity_provider,
    get_room_manager
)
from .error_handling import (
    ErrorHandlingMiddleware,
    ErrorMetrics,
    create_error_response,
    register_exception_handlers
)

__all__ = [
    "get_bearer_token",
    "get_current_identity",
    "get_connection_manager",
    "get_identity_provider",
    "get_room_manager",
    "ErrorHandlingMiddleware",
    "ErrorMetrics",
    "create_error_response",
    "register_exception_handlers"
]
