"""
Structured Logging Framework for the collaborative quiz services

This module provides structured logging with JSON formatting, rotating file
handlers and service identification for the API server and the client
components. Room and connection identifiers travel as structured extras so
that one room's history can be filtered out of the combined log.
"""

import os
import sys
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
import contextlib
import contextvars


_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'stack_info', 'exc_info', 'exc_text',
    'taskName', 'message'
}


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging"""

    def __init__(self, service_name: str = "quizroom", service_version: str = "0.1.0"):
        super().__init__()
        self.service_name = service_name
        self.service_version = service_version

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": {
                "name": self.service_name,
                "version": self.service_version
            },
            "process": {
                "pid": os.getpid(),
                "thread_id": threading.get_ident(),
            }
        }

        if record.pathname:
            log_data["source"] = {
                "file": os.path.basename(record.pathname),
                "function": record.funcName,
                "line": record.lineno
            }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ContextualFormatter(logging.Formatter):
    """Human-readable formatter with room/connection context"""

    def __init__(self, service_name: str = "quizroom"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with contextual information"""
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        base_msg = f"[{timestamp}] {record.levelname:8} {self.service_name}:{record.name} - {record.getMessage()}"

        room_id = getattr(record, 'room_id', None)
        connection_id = getattr(record, 'connection_id', None)
        if room_id or connection_id:
            base_msg += f" [room={room_id or '-'} conn={connection_id or '-'}]"

        # Add source location for DEBUG and ERROR levels
        if record.levelno <= logging.DEBUG or record.levelno >= logging.ERROR:
            base_msg += f" ({os.path.basename(record.pathname)}:{record.lineno})"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


_log_context: contextvars.ContextVar = contextvars.ContextVar("log_context", default={})
_base_record_factory = None


def _context_record_factory(*args, **kwargs):
    record = _base_record_factory(*args, **kwargs)
    for key, value in _log_context.get().items():
        setattr(record, key, value)
    return record


class LogContext:
    """
    Context manager for adding contextual information to logs

    The context is held in a ContextVar, so each asyncio task (one per
    WebSocket connection, one per room worker) sees only its own values.
    """

    def __init__(self, **context_data):
        self.context_data = context_data
        self._token = None

    def __enter__(self):
        global _base_record_factory
        if logging.getLogRecordFactory() is not _context_record_factory:
            _base_record_factory = logging.getLogRecordFactory()
            logging.setLogRecordFactory(_context_record_factory)

        self._token = _log_context.set({**_log_context.get(), **self.context_data})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)


class StructuredLogger:
    """Enhanced logger with structured logging capabilities"""

    def __init__(self, name: str, service_name: str = "quizroom"):
        self.logger = logging.getLogger(name)
        self.service_name = service_name

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, error: Exception = None, **kwargs):
        """Log error message with optional exception and structured data"""
        if error:
            kwargs['error_type'] = type(error).__name__
            kwargs['error_message'] = str(error)
        self._log(logging.ERROR, message, exc_info=error is not None, **kwargs)

    def log_request(self, method: str, url: str, status_code: int,
                    response_time: float, **kwargs):
        """Log HTTP request with structured data"""
        self._log(logging.INFO, f"{method} {url} - {status_code}",
                  request_method=method, request_url=url,
                  response_status=status_code, response_time_ms=response_time * 1000,
                  **kwargs)

    def log_room_event(self, room_id: str, event: str, **kwargs):
        """Log a room protocol event at debug level"""
        self._log(logging.DEBUG, f"Room {room_id}: {event}",
                  room_id=room_id, room_event=event, **kwargs)

    def log_exception(self, message: str, exception: Exception, **kwargs):
        """Log exception with full traceback and context"""
        kwargs['exception_type'] = type(exception).__name__
        kwargs['exception_message'] = str(exception)
        self._log(logging.ERROR, message, exc_info=True, **kwargs)

    def _log(self, level: int, message: str, **kwargs):
        """Internal logging method that adds structured data"""
        exc_info = kwargs.pop('exc_info', False)
        self.logger.log(level, message, extra=kwargs, exc_info=exc_info)

    def context(self, **context_data) -> LogContext:
        """Create logging context manager"""
        return LogContext(**context_data)


class LoggingConfig:
    """Centralized logging configuration"""

    def __init__(self):
        self.service_name = os.getenv('SERVICE_NAME', 'quizroom')
        self.service_version = os.getenv('SERVICE_VERSION', '0.1.0')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.environment = os.getenv('ENVIRONMENT', 'development').lower()
        self.log_dir = Path(os.getenv('LOG_DIR', './logs'))
        self.enable_json = os.getenv('ENABLE_JSON_LOGS', 'true').lower() == 'true'
        self.enable_file_logging = os.getenv('ENABLE_FILE_LOGGING', 'false').lower() == 'true'
        self.max_file_size = int(os.getenv('MAX_LOG_FILE_SIZE', str(10 * 1024 * 1024)))  # 10MB
        self.backup_count = int(os.getenv('LOG_BACKUP_COUNT', '5'))

    def setup_logging(self) -> None:
        """Setup console and optional file logging"""
        if self.enable_file_logging:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.log_level, logging.INFO))
        root_logger.handlers.clear()

        self._setup_console_handler(root_logger)

        if self.enable_file_logging:
            self._setup_file_handlers(root_logger)

        self._configure_external_loggers()

        logger = StructuredLogger(__name__, self.service_name)
        logger.info("Logging configuration initialized",
                    log_level=self.log_level,
                    environment=self.environment,
                    json_logging=self.enable_json,
                    file_logging=self.enable_file_logging)

    def _build_formatter(self) -> logging.Formatter:
        if self.enable_json and self.environment == 'production':
            return JSONFormatter(self.service_name, self.service_version)
        return ContextualFormatter(self.service_name)

    def _setup_console_handler(self, root_logger: logging.Logger) -> None:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(self._build_formatter())
        console_handler.setLevel(getattr(logging, self.log_level, logging.INFO))
        root_logger.addHandler(console_handler)

    def _setup_file_handlers(self, root_logger: logging.Logger) -> None:
        """Setup size-rotated full log and daily-rotated error log"""
        all_handler = RotatingFileHandler(
            self.log_dir / f"{self.service_name}.log",
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
            encoding='utf-8'
        )

        error_handler = TimedRotatingFileHandler(
            self.log_dir / f"{self.service_name}-error.log",
            when='midnight',
            interval=1,
            backupCount=30,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)

        if self.enable_json:
            formatter = JSONFormatter(self.service_name, self.service_version)
        else:
            formatter = ContextualFormatter(self.service_name)
        all_handler.setFormatter(formatter)
        error_handler.setFormatter(formatter)

        root_logger.addHandler(all_handler)
        root_logger.addHandler(error_handler)

    def _configure_external_loggers(self) -> None:
        """Configure logging levels for external libraries"""
        if self.environment == 'production':
            external_loggers = {
                'httpx': logging.WARNING,
                'httpcore': logging.WARNING,
                'websockets': logging.WARNING,
                'uvicorn.access': logging.WARNING,
                'asyncio': logging.WARNING,
            }
        else:
            external_loggers = {
                'httpx': logging.INFO,
                'httpcore': logging.INFO,
                'websockets': logging.INFO,
                'uvicorn.access': logging.INFO,
            }

        for logger_name, level in external_loggers.items():
            logging.getLogger(logger_name).setLevel(level)


def get_structured_logger(name: str, service_name: Optional[str] = None) -> StructuredLogger:
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually __name__)
        service_name: Service name for identification

    Returns:
        StructuredLogger: Configured structured logger
    """
    if service_name is None:
        service_name = os.getenv('SERVICE_NAME', 'quizroom')

    return StructuredLogger(name, service_name)


def setup_logging(service_name: Optional[str] = None) -> StructuredLogger:
    """
    Setup logging configuration and return a structured logger

    Args:
        service_name: Name of the service for logging identification

    Returns:
        StructuredLogger: Configured logger for the service
    """
    if service_name:
        os.environ['SERVICE_NAME'] = service_name

    LoggingConfig().setup_logging()

    return get_structured_logger(__name__, service_name)


@contextlib.contextmanager
def log_context(**context_data: Dict[str, Any]):
    """Context manager for adding context to all logs within the block"""
    with LogContext(**context_data):
        yield


__all__ = [
    'StructuredLogger',
    'LoggingConfig',
    'JSONFormatter',
    'ContextualFormatter',
    'LogContext',
    'get_structured_logger',
    'setup_logging',
    'log_context',
]
