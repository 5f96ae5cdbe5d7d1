# Shared utilities and components

from .auth import (
    AuthenticationError,
    Identity,
    JWTIdentityProvider,
    extract_bearer_token
)

from .protocol import (
    CommandValidationError,
    Delivery,
    Event,
    build_message,
    parse_command
)

from .quiz_store import (
    HttpQuizStore,
    InMemoryQuizStore,
    Quiz,
    QuizQuestion,
    QuizNotFoundError,
    QuizStoreError,
    create_quiz_store
)

from .room_session import (
    Participant,
    RoomProtocolError,
    RoomSession,
    RoomState,
    Suggestion
)

from .room_manager import (
    RoomManager,
    RoomNotFoundError
)

from .websocket_manager import (
    WebSocketConnectionManager,
    WebSocketConnection,
    ConnectionState,
    WebSocketConnectionError
)
