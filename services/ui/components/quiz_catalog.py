"""
Quiz Catalog Cache Component

Shares one fetch of the quiz catalog among every component that asks for it.
Concurrent callers await the same in-flight request; a successful result is
kept until invalidated, a failed one is not cached.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.config import get_config


class QuizCatalogCache:
    """
    Single-flight cache of ``GET /api/quizzes``

    Args:
        backend_url: Base URL of the catalog REST service
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests inject a MockTransport)
    """

    def __init__(
        self,
        backend_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        config = get_config()
        self.backend_url = (backend_url or config.backend_url).rstrip("/")
        self.timeout = timeout or config.catalog_timeout
        self.logger = logging.getLogger("ui.quiz_catalog")

        self._transport = transport
        self._cache: Optional[List[Dict[str, Any]]] = None
        self._inflight: Optional[asyncio.Task] = None
        self._generation = 0

        self.stats = {'fetches': 0, 'hits': 0, 'failures': 0}

    @property
    def cached(self) -> bool:
        return self._cache is not None

    async def get(self, auth_token: Optional[str]) -> List[Dict[str, Any]]:
        """
        Get the quiz catalog

        Returns:
            List[Dict[str, Any]]: Quiz summaries, or an empty list without a
            token or when the fetch fails
        """
        if not auth_token:
            return []

        if self._cache is not None:
            self.stats['hits'] += 1
            return self._cache

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._fetch(auth_token, self._generation))

        # One caller giving up must not cancel the fetch for the others
        return await asyncio.shield(self._inflight)

    def invalidate(self):
        """Drop the cached catalog and forget any fetch in flight"""
        self._cache = None
        self._inflight = None
        self._generation += 1

    async def _fetch(self, auth_token: str, generation: int) -> List[Dict[str, Any]]:
        self.stats['fetches'] += 1
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.backend_url}/api/quizzes",
                    headers={"Authorization": f"Bearer {auth_token}"}
                )
            response.raise_for_status()
            quizzes = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.stats['failures'] += 1
            self.logger.error(f"Failed to load quizzes: {e}")
            return []
        finally:
            if generation == self._generation:
                self._inflight = None

        if isinstance(quizzes, dict):
            quizzes = quizzes.get("quizzes", [])
        if not isinstance(quizzes, list):
            self.stats['failures'] += 1
            self.logger.error(f"Unexpected catalog payload: {type(quizzes).__name__}")
            return []

        if generation == self._generation:
            self._cache = quizzes
        self.logger.info(f"Quizzes loaded: {len(quizzes)}")
        return quizzes
