import os
import logging
from typing import List, Optional, Union
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


SETTINGS_MODEL_CONFIG = SettingsConfigDict(
    # Load from .env file if present
    env_file=".env",
    env_file_encoding="utf-8",

    # Allow case insensitive environment variables
    case_sensitive=False,

    # Enable environment variable expansion
    env_nested_delimiter="__",

    # Validate assignment when values are changed
    validate_assignment=True,

    # Allow extra fields but don't include them in the dict
    extra="ignore"
)


class BaseConfig(BaseSettings):
    """
    Base configuration class with common settings and environment variable loading

    This class provides the foundation for all configuration classes in the application.
    It handles environment variable loading, .env file support, and common configuration patterns.
    """

    model_config = SETTINGS_MODEL_CONFIG

    # Environment and deployment settings
    environment: str = Field(
        default="development",
        description="Deployment environment (development, staging, production, testing)"
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment values"""
        valid_environments = ['development', 'staging', 'production', 'testing']
        if v.lower() not in valid_environments:
            logger.warning(f"Unknown environment '{v}', using 'development'")
            return 'development'
        return v.lower()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level values"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            logger.warning(f"Invalid log level '{v}', using 'INFO'")
            return 'INFO'
        return v.upper()

    def setup_logging(self) -> None:
        """Setup logging configuration based on config"""
        level = getattr(logging, self.log_level)

        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        if self.environment == 'production':
            # Reduce noise in production
            logging.getLogger('httpx').setLevel(logging.WARNING)
            logging.getLogger('websockets').setLevel(logging.WARNING)
        elif self.debug:
            logging.getLogger('shared').setLevel(logging.DEBUG)
            logging.getLogger('services').setLevel(logging.DEBUG)

    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment == 'production'

    def is_testing(self) -> bool:
        """Check if running in testing environment"""
        return self.environment == 'testing'


class HealthCheckConfig(BaseSettings):
    """Health check and monitoring configuration"""

    service_name: str = Field(
        default="quizroom-api",
        description="Service name for identification"
    )

    service_version: str = Field(
        default="0.1.0",
        description="Service version"
    )


def load_dotenv_file(dotenv_path: Union[str, Path] = None) -> bool:
    """
    Load environment variables from .env file

    Args:
        dotenv_path: Path to .env file (defaults to .env in current directory)

    Returns:
        bool: True if .env file was found and loaded
    """
    if dotenv_path is None:
        dotenv_path = Path.cwd() / ".env"
    else:
        dotenv_path = Path(dotenv_path)

    if not dotenv_path.exists():
        logger.debug(f"No .env file found at {dotenv_path}")
        return False

    try:
        with open(dotenv_path, 'r', encoding='utf-8') as file:
            for line in file:
                line = line.strip()

                # Skip comments and empty lines
                if not line or line.startswith('#'):
                    continue

                if '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip().strip('"').strip("'")

                    # Only set if not already in environment
                    if key and key not in os.environ:
                        os.environ[key] = value

        logger.info(f"Loaded environment variables from {dotenv_path}")
        return True

    except OSError as e:
        logger.error(f"Error loading .env file: {e}")
        return False


# Service-Specific Configuration Classes

class APIConfig(BaseSettings):
    """API service configuration"""

    host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="API server port"
    )

    reload: bool = Field(
        default=False,
        description="Enable auto-reload for development"
    )

    # CORS settings
    cors_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed CORS origins"
    )

    cors_methods: List[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE"],
        description="Allowed CORS methods"
    )

    # WebSocket settings
    websocket_path: str = Field(
        default="/ws/collaborative",
        description="Channel path of the collaborative quiz WebSocket endpoint"
    )

    max_websocket_connections: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="Maximum concurrent WebSocket connections"
    )

    websocket_heartbeat_interval: int = Field(
        default=30,
        ge=1,
        le=300,
        description="WebSocket heartbeat interval in seconds"
    )

    websocket_connection_timeout: int = Field(
        default=300,
        ge=10,
        le=3600,
        description="Idle WebSocket connections are dropped after this many seconds"
    )


class AuthConfig(BaseSettings):
    """Bearer token verification settings"""

    jwt_secret: str = Field(
        default="change-me",
        description="Shared secret used to verify bearer tokens"
    )

    jwt_algorithm: str = Field(
        default="HS256",
        description="Signing algorithm of bearer tokens"
    )


class RoomConfig(BaseSettings):
    """Collaborative room configuration"""

    room_code_length: int = Field(
        default=6,
        ge=4,
        le=16,
        description="Length of generated room codes"
    )

    points_per_correct_answer: int = Field(
        default=1,
        ge=1,
        le=1000,
        description="Group score awarded for each correctly resolved question"
    )

    default_time_per_question: int = Field(
        default=30,
        ge=5,
        le=600,
        description="Advertised time limit per question in seconds"
    )

    finished_room_retention: int = Field(
        default=300,
        ge=0,
        le=86400,
        description="Seconds a finished room is kept before it is purged; empty rooms "
                    "are purged after websocket_connection_timeout instead"
    )

    room_cleanup_interval: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Interval of the room cleanup loop in seconds"
    )

    room_queue_size: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="Maximum pending commands per room"
    )

    max_chat_message_length: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Maximum length of a chat message"
    )


class QuizStoreConfig(BaseSettings):
    """Quiz store access configuration"""

    quiz_store_url: Optional[str] = Field(
        default=None,
        description="Base URL of the quiz REST store; fixtures are used when unset"
    )

    quiz_store_timeout: float = Field(
        default=10.0,
        ge=0.5,
        le=120.0,
        description="Quiz store request timeout in seconds"
    )

    quiz_fixtures_path: Optional[str] = Field(
        default=None,
        description="JSON file with quizzes for the in-memory quiz store"
    )


class ClientConfig(BaseSettings):
    """Client-side connection settings"""

    backend_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the backend for REST and WebSocket access"
    )

    grace_period: float = Field(
        default=3.0,
        ge=0.0,
        le=60.0,
        description="Seconds an unused connection is kept before teardown"
    )

    reconnection_attempts: int = Field(
        default=10,
        ge=0,
        le=100,
        description="Maximum reconnection attempts of the shared connection"
    )

    reconnection_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Fixed delay between reconnection attempts in seconds"
    )

    connect_timeout: float = Field(
        default=20.0,
        ge=1.0,
        le=120.0,
        description="Connect timeout of the shared connection in seconds"
    )

    catalog_timeout: float = Field(
        default=10.0,
        ge=0.5,
        le=120.0,
        description="Quiz catalog request timeout in seconds"
    )


# Centralized Configuration Loader

class AppConfig(
    BaseConfig,
    HealthCheckConfig,
    APIConfig,
    AuthConfig,
    RoomConfig,
    QuizStoreConfig,
    ClientConfig
):
    """
    Main application configuration that combines all service-specific configs

    This class inherits from all service-specific configuration classes,
    providing a single source of truth for all configuration values.
    """

    # Section mixins carry the BaseSettings defaults; restate the shared config last
    model_config = SETTINGS_MODEL_CONFIG

    def __init__(self, **kwargs):
        """Initialize configuration with validation"""
        load_dotenv_file()

        super().__init__(**kwargs)

        self.setup_logging()

        self.validate_configuration()

    def validate_configuration(self) -> None:
        """Validate the complete configuration"""
        validation_errors = []

        if self.is_production() and self.jwt_secret == "change-me":
            validation_errors.append("JWT_SECRET must be set in production")

        if self.websocket_heartbeat_interval >= self.websocket_connection_timeout:
            logger.warning("Heartbeat interval is not shorter than the connection timeout")

        if not self.websocket_path.startswith("/"):
            validation_errors.append("WEBSOCKET_PATH must start with '/'")

        if validation_errors:
            error_msg = "Configuration validation errors:\n" + "\n".join(f"- {error}" for error in validation_errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

        logger.info("Configuration validation passed")

    def get_api_config(self) -> dict:
        """Get API-specific configuration as dictionary"""
        return {
            'host': self.host,
            'port': self.port,
            'reload': self.reload,
            'cors_origins': self.cors_origins,
            'cors_methods': self.cors_methods,
            'websocket_path': self.websocket_path,
            'max_websocket_connections': self.max_websocket_connections,
            'websocket_heartbeat_interval': self.websocket_heartbeat_interval,
            'websocket_connection_timeout': self.websocket_connection_timeout
        }

    def get_room_config(self) -> dict:
        """Get room-specific configuration as dictionary"""
        return {
            'room_code_length': self.room_code_length,
            'points_per_correct_answer': self.points_per_correct_answer,
            'default_time_per_question': self.default_time_per_question,
            'finished_room_retention': self.finished_room_retention,
            'room_cleanup_interval': self.room_cleanup_interval,
            'room_queue_size': self.room_queue_size,
            'max_chat_message_length': self.max_chat_message_length
        }

    def get_client_config(self) -> dict:
        """Get client-side connection configuration as dictionary"""
        return {
            'backend_url': self.backend_url,
            'websocket_path': self.websocket_path,
            'grace_period': self.grace_period,
            'reconnection_attempts': self.reconnection_attempts,
            'reconnection_delay': self.reconnection_delay,
            'connect_timeout': self.connect_timeout,
            'catalog_timeout': self.catalog_timeout
        }


# Configuration Factory Functions

def create_config(**overrides) -> AppConfig:
    """
    Create configuration instance with optional overrides

    Args:
        **overrides: Configuration value overrides

    Returns:
        AppConfig: Configured application instance
    """
    try:
        return AppConfig(**overrides)
    except Exception as e:
        logger.error(f"Failed to create configuration: {e}")
        raise


def create_development_config() -> AppConfig:
    """Create configuration optimized for development"""
    return create_config(
        environment="development",
        debug=True,
        log_level="DEBUG",
        reload=True
    )


def create_production_config() -> AppConfig:
    """Create configuration optimized for production"""
    return create_config(
        environment="production",
        debug=False,
        log_level="INFO",
        reload=False
    )


def create_testing_config() -> AppConfig:
    """Create configuration optimized for testing"""
    return create_config(
        environment="testing",
        debug=True,
        log_level="WARNING",
        jwt_secret="testing-secret-for-collaborative-quiz-rooms",
        grace_period=0.05,
        reconnection_attempts=2,
        reconnection_delay=0.01,
        connect_timeout=1.0,
        finished_room_retention=0,
        room_cleanup_interval=60
    )


# Global Configuration Instance

_config_instance: Optional[AppConfig] = None

def get_config() -> AppConfig:
    """
    Get the global configuration instance (singleton pattern)

    Returns:
        AppConfig: Global configuration instance
    """
    global _config_instance

    if _config_instance is None:
        environment = os.getenv('ENVIRONMENT', 'development').lower()

        if environment == 'production':
            _config_instance = create_production_config()
        elif environment == 'testing':
            _config_instance = create_testing_config()
        else:
            _config_instance = create_development_config()

        logger.info(f"Initialized {environment} configuration")

    return _config_instance


def reset_config() -> None:
    """Reset the global configuration instance (useful for testing)"""
    global _config_instance
    _config_instance = None


def set_config(config: AppConfig) -> None:
    """
    Set the global configuration instance

    Args:
        config: Configuration instance to set as global
    """
    global _config_instance
    _config_instance = config
