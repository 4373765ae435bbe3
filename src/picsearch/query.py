"""
Query engine: text or image in, ranked filenames out.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

from .config import Settings
from .models.clip_model import CLIPModelError
from .models.embedding import EmbeddingAdapter
from .models.schemas import SearchHit
from .search import VectorIndex, VectorSearchError

logger = logging.getLogger(__name__)


class QueryError(Exception):
    """Query could not be answered."""


class EmbeddingFailedError(QueryError):
    """The query text or image could not be embedded.

    The originating InvalidInputError or ModelUnavailableError is available
    as ``__cause__``.
    """


class SearchFailedError(QueryError):
    """The vector index rejected the query."""


class QueryEngine:
    """Embeds a query and searches the shared vector index."""

    def __init__(
        self, embedder: EmbeddingAdapter, index: VectorIndex, settings: Settings
    ):
        assert embedder is not None, "Embedding adapter is required"
        assert index is not None, "Vector index is required"
        assert settings is not None, "Settings object is required"

        self.embedder = embedder
        self.index = index
        self.default_k = settings.default_top_k

    async def search_by_text(
        self, text: str, k: Optional[int] = None
    ) -> List[SearchHit]:
        """
        Rank indexed images against a text description.

        Raises:
            EmbeddingFailedError: If the text cannot be embedded
            SearchFailedError: If the index rejects the query
        """
        try:
            vector = await self.embedder.embed_text(text)
        except CLIPModelError as e:
            logger.error(f"Text query embedding failed: {e}")
            raise EmbeddingFailedError(f"Failed to embed text query: {e}") from e

        hits = await self._search(vector, k)
        logger.debug(f"Text query {text!r} matched {len(hits)} images")
        return hits

    async def search_by_image(
        self, image: Union[bytes, Path, str], k: Optional[int] = None
    ) -> List[SearchHit]:
        """
        Rank indexed images against a query image.

        Args:
            image: Raw image bytes or path to an image file
            k: Maximum number of results; defaults to ``default_top_k``

        Raises:
            EmbeddingFailedError: If the image cannot be embedded
            SearchFailedError: If the index rejects the query
        """
        try:
            vector = await self.embedder.embed_image(image)
        except CLIPModelError as e:
            logger.error(f"Image query embedding failed: {e}")
            raise EmbeddingFailedError(f"Failed to embed image query: {e}") from e

        hits = await self._search(vector, k)
        logger.debug(f"Image query matched {len(hits)} images")
        return hits

    async def query_by_text(self, text: str, k: Optional[int] = None) -> List[str]:
        return [hit.filename for hit in await self.search_by_text(text, k)]

    async def query_by_image(
        self, image: Union[bytes, Path, str], k: Optional[int] = None
    ) -> List[str]:
        return [hit.filename for hit in await self.search_by_image(image, k)]

    async def _search(self, vector: np.ndarray, k: Optional[int]) -> List[SearchHit]:
        k = self.default_k if k is None else k
        assert k > 0, f"Invalid k value: {k}"

        try:
            return await asyncio.to_thread(self.index.search, vector, k)
        except VectorSearchError as e:
            logger.error(f"Search failed: {e}")
            raise SearchFailedError(f"Search failed: {e}") from e
