"""
Error Handling Middleware for FastAPI

This module provides error handling for the REST surface:
- Request correlation ids
- Error aggregation and metrics
- Structured error bodies for domain exceptions
"""

import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Dict, Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shared.auth import AuthenticationError
from shared.logging import get_structured_logger
from shared.quiz_store import QuizNotFoundError, QuizStoreError
from shared.room_manager import RoomNotFoundError


class ErrorMetrics:
    """Track error metrics and patterns"""

    def __init__(self, window_size: int = 100, time_window: int = 300):
        self.window_size = window_size
        self.time_window = time_window
        self.errors = deque(maxlen=window_size)
        self.error_counts = defaultdict(int)
        self.error_rates = defaultdict(list)

    def record_error(self, error_type: str, endpoint: str, status_code: int):
        """Record an error occurrence"""
        now = datetime.now()
        self.errors.append({
            'timestamp': now,
            'error_type': error_type,
            'endpoint': endpoint,
            'status_code': status_code
        })
        self.error_counts[error_type] += 1
        self.error_rates[endpoint].append(now)
        self._cleanup_old_entries(endpoint)

    def _cleanup_old_entries(self, endpoint: str):
        """Remove entries older than time window"""
        cutoff = datetime.now() - timedelta(seconds=self.time_window)
        self.error_rates[endpoint] = [ts for ts in self.error_rates[endpoint] if ts > cutoff]

    def get_error_rate(self, endpoint: str) -> float:
        """Get error rate per minute for endpoint"""
        if endpoint not in self.error_rates:
            return 0.0

        self._cleanup_old_entries(endpoint)
        count = len(self.error_rates[endpoint])
        return (count / self.time_window) * 60

    def get_top_errors(self, limit: int = 5) -> Dict[str, int]:
        """Get most common error types"""
        return dict(sorted(
            self.error_counts.items(),
            key=lambda x: x[1],
            reverse=True
        )[:limit])


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Request correlation and error accounting for HTTP requests"""

    def __init__(self, app: ASGIApp, metrics: ErrorMetrics = None):
        super().__init__(app)
        self.logger = get_structured_logger("api.error_middleware")
        self.error_metrics = metrics or ErrorMetrics()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Main middleware dispatch logic"""
        start_time = time.time()
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as exc:
            self.error_metrics.record_error(type(exc).__name__, request.url.path, 500)
            self.logger.log_exception(
                f"Unhandled exception: {exc}",
                exception=exc,
                request_id=request_id,
                endpoint=request.url.path,
                processing_time=time.time() - start_time
            )
            return create_error_response(
                "internal_error", "Internal server error", 500, request_id=request_id
            )

        if response.status_code >= 400:
            self.error_metrics.record_error(
                self._classify_error(response.status_code), request.url.path, response.status_code
            )

        response.headers["X-Request-ID"] = request_id
        self.logger.log_request(
            request.method, request.url.path, response.status_code,
            time.time() - start_time, request_id=request_id
        )
        return response

    def _classify_error(self, status_code: int) -> str:
        """Classify error by status code"""
        if status_code >= 500:
            return "server_error"
        elif status_code >= 400:
            return "client_error"
        else:
            return "unknown_error"


# Utility functions for error handling

def create_error_response(
    error_type: str,
    message: str,
    status_code: int = 500,
    details: Any = None,
    request_id: str = "unknown"
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "error": error_type,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now().isoformat()
    }

    if details is not None:
        content["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={"X-Request-ID": request_id}
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def register_exception_handlers(app: FastAPI):
    """Map domain exceptions to structured error responses"""

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        response = create_error_response("unauthorized", str(exc), 401, request_id=_request_id(request))
        response.headers["WWW-Authenticate"] = "Bearer"
        return response

    @app.exception_handler(RoomNotFoundError)
    async def room_not_found_handler(request: Request, exc: RoomNotFoundError):
        return create_error_response("room_not_found", exc.message, 404, request_id=_request_id(request))

    @app.exception_handler(QuizNotFoundError)
    async def quiz_not_found_handler(request: Request, exc: QuizNotFoundError):
        return create_error_response("quiz_not_found", str(exc), 404, request_id=_request_id(request))

    @app.exception_handler(QuizStoreError)
    async def quiz_store_error_handler(request: Request, exc: QuizStoreError):
        return create_error_response("quiz_unavailable", str(exc), 502, request_id=_request_id(request))
