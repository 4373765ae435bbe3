"""
Image search service.

Wires storage, embedding adapter, vector index, ingestion pipeline and
query engine together. One service owns the single VectorIndex of the
process and injects it into the pipeline and the query engine.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import Settings
from .ingestion import IngestionPipeline
from .models.clip_model import EmbeddingModel
from .models.embedding import EmbeddingAdapter
from .models.schemas import IngestionStatus, SearchHit, UploadBatch
from .query import QueryEngine
from .search import VectorIndex
from .storage import ImageStore, StorageManager

logger = logging.getLogger(__name__)


class ImageSearchService:
    """Entry points consumed by the HTTP layer."""

    def __init__(
        self,
        settings: Settings,
        model: EmbeddingModel,
        upload_store: Optional[ImageStore] = None,
    ):
        """
        Build all components.

        Args:
            settings: Application settings
            model: Embedding model shared by ingestion and queries
            upload_store: Alternative upload store backend (defaults to the
                directory at ``settings.upload_storage_path``)
        """
        assert settings is not None, "Settings object is required"
        assert model is not None, "Embedding model is required"

        self.settings = settings
        self.storage = StorageManager(settings, upload_store=upload_store)
        self.embedder = EmbeddingAdapter(
            model, timeout=settings.embedding_timeout_seconds
        )
        self.index = VectorIndex(self.storage.index_path)
        self.pipeline = IngestionPipeline(
            self.storage.uploads, self.embedder, self.index, settings
        )
        self.engine = QueryEngine(self.embedder, self.index, settings)

    # ========================================
    # LIFECYCLE
    # ========================================

    def on_start(self) -> None:
        """Begin the run with empty storage and an empty index."""
        self._wipe()
        logger.info("Storage cleared at start-up")

    def on_shutdown(self) -> None:
        """End the run with empty storage and an empty index."""
        self._wipe()
        logger.info("Storage cleared at shutdown")

    def _wipe(self) -> None:
        self.index.clear()
        self.storage.clear_all()
        self.pipeline.reset()

    # ========================================
    # INGESTION
    # ========================================

    def store_upload(self, data: bytes, original_name: str) -> str:
        return self.storage.store_upload(data, original_name)

    async def receive_batch(self, batch: UploadBatch) -> IngestionStatus:
        return await self.pipeline.receive_batch(batch)

    async def rebuild_index_from_upload_store(self) -> int:
        return await self.pipeline.rebuild_index_from_upload_store()

    # ========================================
    # QUERIES
    # ========================================

    async def query_by_text(self, text: str) -> List[str]:
        return await self.engine.query_by_text(text)

    async def query_by_image(self, image_path: Union[Path, str]) -> List[str]:
        return await self.engine.query_by_image(Path(image_path))

    async def search_by_text(
        self, text: str, k: Optional[int] = None
    ) -> List[SearchHit]:
        return await self.engine.search_by_text(text, k)

    async def search_by_image_bytes(
        self, data: bytes, k: Optional[int] = None
    ) -> List[SearchHit]:
        """
        Run an image query through the transient query area.

        The query image is written to disk for the duration of the query
        and deleted afterwards, whether or not the query succeeded.
        """
        path = await asyncio.to_thread(self.storage.write_query_image, data)
        try:
            return await self.engine.search_by_image(path, k)
        finally:
            await asyncio.to_thread(self.storage.delete_query_image, path)

    def read_image(self, filename: str) -> bytes:
        return self.storage.uploads.read(filename)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "index": self.index.get_stats(),
            "storage": self.storage.get_storage_stats(),
            "ingestion": self.pipeline.status().model_dump(mode="json"),
            "model": {
                "model_name": self.embedder.model_name,
                "embedding_dim": self.embedder.embedding_dim,
            },
        }
