"""
Shared pytest fixtures
"""

import asyncio
import json
import os

import pytest

os.environ.setdefault("ENVIRONMENT", "testing")

from fastapi.websockets import WebSocketState

from shared.auth import Identity, JWTIdentityProvider
from shared.config import create_testing_config, reset_config, set_config
from shared.quiz_store import InMemoryQuizStore, Quiz, QuizQuestion


@pytest.fixture(autouse=True)
def testing_config():
    """Fresh testing configuration for every test"""
    reset_config()
    config = create_testing_config()
    set_config(config)
    yield config
    reset_config()


def make_quiz(quiz_id: str = "Q1", correct_answers=(1, 2)) -> Quiz:
    """Quiz with one A-D question per entry of ``correct_answers``"""
    return Quiz(
        quiz_id=quiz_id,
        title="Fixture quiz",
        questions=[
            QuizQuestion(
                question=f"Question {i + 1}?",
                options=["A", "B", "C", "D"],
                correct_answer=correct
            )
            for i, correct in enumerate(correct_answers)
        ]
    )


@pytest.fixture
def quiz() -> Quiz:
    return make_quiz()


@pytest.fixture
def quiz_store(quiz) -> InMemoryQuizStore:
    return InMemoryQuizStore([quiz])


@pytest.fixture
def identity_provider(testing_config) -> JWTIdentityProvider:
    return JWTIdentityProvider(testing_config.jwt_secret, testing_config.jwt_algorithm)


@pytest.fixture
def host() -> Identity:
    return Identity(user_id="host-1", name="Hana")


@pytest.fixture
def p1() -> Identity:
    return Identity(user_id="p1", name="Pat")


@pytest.fixture
def p2() -> Identity:
    return Identity(user_id="p2", name="Quinn")


class FakeTransport:
    """Stands in for a websockets client connection"""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, message):
        self._inbox.put_nowait(json.dumps(message))

    def hang_up(self):
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


class FakeTransportFactory:
    """Transport factory recording each connection attempt"""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self.transports = []

    async def __call__(self, url, headers, open_timeout):
        self.calls.append((url, headers, open_timeout))
        if self.fail:
            raise OSError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport


async def settle():
    """Let background tasks run"""
    for _ in range(5):
        await asyncio.sleep(0)


class MockWebSocket:
    """Records frames sent to one client"""

    def __init__(self):
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent = []
        self.closed_with = None

    async def send_json(self, message):
        self.sent.append(message)

    async def close(self, code=1000, reason=None):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def types(self):
        return [message["type"] for message in self.sent]

    def of_type(self, event):
        return [message for message in self.sent if message["type"] == event]

