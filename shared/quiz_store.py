"""
Quiz Store

Read-only access to quizzes consumed once per room at creation time. The
HTTP store talks to the quiz REST service; the in-memory store serves
fixtures for development and tests.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import get_config


logger = logging.getLogger("quiz.store")


class QuizStoreError(Exception):
    """Base exception for quiz store errors"""
    pass


class QuizNotFoundError(QuizStoreError):
    """Raised when a quiz does not exist"""
    pass


@dataclass
class QuizQuestion:
    """One multiple-choice question"""
    question: str
    options: List[str]
    correct_answer: Optional[int] = None

    def to_public_dict(self) -> Dict[str, Any]:
        """Question payload without the answer key"""
        return {"question": self.question, "options": list(self.options)}


@dataclass
class Quiz:
    """Quiz with its questions and answer keys"""
    quiz_id: str
    title: str
    questions: List[QuizQuestion] = field(default_factory=list)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def to_summary(self) -> Dict[str, Any]:
        return {"id": self.quiz_id, "title": self.title, "totalQuestions": self.total_questions}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Quiz':
        """
        Build a quiz from the store's JSON representation

        ``correctAnswer`` may be an option index or the text of the option.
        """
        quiz_id = data.get("id") or data.get("_id")
        if not quiz_id:
            raise QuizStoreError("Quiz payload has no id")

        questions = []
        for raw in data.get("questions", []):
            options = [str(option) for option in raw.get("options", [])]
            correct = raw.get("correctAnswer", raw.get("correct_answer"))
            if isinstance(correct, str):
                correct = options.index(correct) if correct in options else None
            elif isinstance(correct, bool) or not isinstance(correct, int):
                correct = None
            questions.append(QuizQuestion(
                question=str(raw.get("question", "")),
                options=options,
                correct_answer=correct
            ))

        return cls(quiz_id=str(quiz_id), title=str(data.get("title", "Untitled quiz")), questions=questions)


class InMemoryQuizStore:
    """Quiz store backed by a dictionary, optionally seeded from a JSON file"""

    def __init__(self, quizzes: Optional[List[Quiz]] = None):
        self._quizzes: Dict[str, Quiz] = {}
        for quiz in quizzes or []:
            self.add(quiz)

    def add(self, quiz: Quiz) -> None:
        self._quizzes[quiz.quiz_id] = quiz

    async def get_quiz(self, quiz_id: str, token: Optional[str] = None) -> Quiz:
        quiz = self._quizzes.get(quiz_id)
        if quiz is None:
            raise QuizNotFoundError(f"Quiz {quiz_id} not found")
        return quiz

    async def list_quizzes(self) -> List[Dict[str, Any]]:
        return [quiz.to_summary() for quiz in self._quizzes.values()]

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'InMemoryQuizStore':
        """Load a JSON array of quizzes"""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        store = cls([Quiz.from_dict(item) for item in data])
        logger.info(f"Loaded {len(store._quizzes)} quizzes from {path}")
        return store


class HttpQuizStore:
    """Quiz store backed by the quiz REST service"""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or get_config().quiz_store_timeout
        self._transport = transport

    async def get_quiz(self, quiz_id: str, token: Optional[str] = None) -> Quiz:
        """
        Fetch a quiz, forwarding the requester's bearer token

        Raises:
            QuizNotFoundError: If the store answers 404
            QuizStoreError: On any other failure
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/quizzes/{quiz_id}", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Quiz store request failed for {quiz_id}: {e}")
            raise QuizStoreError(f"Quiz store unavailable: {e}")

        if response.status_code == 404:
            raise QuizNotFoundError(f"Quiz {quiz_id} not found")
        if response.status_code != 200:
            raise QuizStoreError(f"Quiz store returned {response.status_code}")

        try:
            return Quiz.from_dict(response.json())
        except ValueError as e:
            raise QuizStoreError(f"Malformed quiz payload: {e}")


def create_quiz_store():
    """Build the quiz store selected by configuration"""
    config = get_config()
    if config.quiz_store_url:
        return HttpQuizStore(config.quiz_store_url)
    if config.quiz_fixtures_path:
        return InMemoryQuizStore.from_file(config.quiz_fixtures_path)
    logger.warning("No quiz store configured; rooms can only use quizzes added at runtime")
    return InMemoryQuizStore()
