"""
Ingestion pipeline for batched image uploads.

Tracks one upload session at a time (IDLE -> RECEIVING -> INDEXING ->
READY, or FAILED) and, when the batch flagged as last arrives, re-embeds
the complete upload store and rebuilds the vector index from scratch.
Entries are fully computed before the index is touched, so a failed
ingestion leaves the previously published index live.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import Settings
from .models.clip_model import CLIPModelError
from .models.embedding import EmbeddingAdapter
from .models.schemas import IngestionState, IngestionStatus, UploadBatch
from .search import VectorIndex, VectorSearchError
from .storage import ImageStore, StorageError

logger = logging.getLogger(__name__)


class IndexingError(Exception):
    """Index rebuild could not complete."""


class IngestionPipeline:
    """
    Coordinates upload batches and full index rebuilds.

    The pipeline trusts the caller's batch numbering and last-batch flag;
    it does not reorder or deduplicate batches. Only the declared file
    count is checked (see ``Settings.verify_upload_count``).
    """

    def __init__(
        self,
        store: ImageStore,
        embedder: EmbeddingAdapter,
        index: VectorIndex,
        settings: Settings,
    ):
        assert store is not None, "Image store is required"
        assert embedder is not None, "Embedding adapter is required"
        assert index is not None, "Vector index is required"
        assert settings is not None, "Settings object is required"

        self.store = store
        self.embedder = embedder
        self.index = index
        self.settings = settings

        self._state = IngestionState.IDLE
        self._batches_received = 0
        self._files_received = 0
        self._last_error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> IngestionState:
        return self._state

    def status(self) -> IngestionStatus:
        return IngestionStatus(
            state=self._state,
            batches_received=self._batches_received,
            files_received=self._files_received,
            indexed_count=self.index.count(),
            last_error=self._last_error,
        )

    def reset(self) -> None:
        """Forget the current session (used when storage is wiped)."""
        self._state = IngestionState.IDLE
        self._batches_received = 0
        self._files_received = 0
        self._last_error = None

    async def receive_batch(self, batch: UploadBatch) -> IngestionStatus:
        """
        Record an upload batch; rebuild the index if it is the last one.

        The batch's files must already be in the upload store.

        Args:
            batch: Batch descriptor sent by the uploader

        Returns:
            Pipeline status after handling the batch

        Raises:
            IndexingError: If this was the last batch and the rebuild failed
        """
        assert batch is not None, "Batch descriptor is required"

        async with self._lock:
            if self._state != IngestionState.RECEIVING:
                self._batches_received = 0
                self._files_received = 0
            self._state = IngestionState.RECEIVING
            self._batches_received += 1
            self._files_received += batch.file_count

            logger.info(
                f"Received batch {batch.current_batch}/{batch.total_batches} "
                f"with {batch.file_count} files. Total files: {batch.total_files}"
            )

            if batch.is_last_batch:
                count = await self._rebuild(expected_files=batch.total_files)
                logger.info(f"Indexing complete. Total files indexed: {count}")

            return self.status()

    async def rebuild_index_from_upload_store(
        self, expected_files: Optional[int] = None
    ) -> int:
        """
        Re-embed every image in the upload store and replace the index.

        Args:
            expected_files: Declared number of files; checked against the
                store when ``verify_upload_count`` is enabled

        Returns:
            Number of indexed entries

        Raises:
            IndexingError: If listing, embedding or rebuilding fails
        """
        async with self._lock:
            return await self._rebuild(expected_files)

    async def _rebuild(self, expected_files: Optional[int]) -> int:
        self._state = IngestionState.INDEXING
        try:
            entries = await self._compute_entries(expected_files)
            count = await self._publish(entries)

        except asyncio.CancelledError:
            if self._state == IngestionState.INDEXING:
                self._state = IngestionState.FAILED
                self._last_error = "Indexing cancelled"
                logger.warning("Indexing cancelled; live index unchanged")
            raise
        except (CLIPModelError, StorageError, VectorSearchError, IndexingError) as e:
            self._fail(e)
            if isinstance(e, IndexingError):
                raise
            raise IndexingError(f"Error during indexing: {e}") from e
        except Exception as e:
            self._fail(e)
            raise IndexingError(f"Unexpected error during indexing: {e}") from e

        self._mark_ready()
        return count

    async def _publish(self, entries: List[Tuple[str, np.ndarray]]) -> int:
        # Once the swap has started it runs to completion
        publish = asyncio.ensure_future(asyncio.to_thread(self.index.rebuild, entries))
        try:
            return await asyncio.shield(publish)
        except asyncio.CancelledError:
            count = await publish
            self._mark_ready()
            logger.warning(f"Indexing cancelled after publishing {count} entries")
            raise

    def _mark_ready(self) -> None:
        self._state = IngestionState.READY
        self._last_error = None

    def _fail(self, error: Exception) -> None:
        self._state = IngestionState.FAILED
        self._last_error = str(error)
        logger.error(f"Error during indexing: {error}")

    async def _compute_entries(
        self, expected_files: Optional[int]
    ) -> List[Tuple[str, np.ndarray]]:
        filenames = await asyncio.to_thread(self.store.list_entries)

        if (
            self.settings.verify_upload_count
            and expected_files is not None
            and len(filenames) < expected_files
        ):
            raise IndexingError(
                f"Upload store holds {len(filenames)} images, "
                f"{expected_files} were declared"
            )

        entries: List[Tuple[str, np.ndarray]] = []
        batch_size = self.settings.index_batch_size
        for start in range(0, len(filenames), batch_size):
            chunk = filenames[start : start + batch_size]
            images = await asyncio.to_thread(self._read_all, chunk)
            vectors = await self.embedder.embed_images(images)
            if len(vectors) != len(chunk):
                raise IndexingError(
                    f"Embedded {len(vectors)} of {len(chunk)} images in batch"
                )
            entries.extend(zip(chunk, vectors))
            logger.debug(f"Embedded {len(entries)}/{len(filenames)} images")

        return entries

    def _read_all(self, filenames: List[str]) -> List[bytes]:
        return [self.store.read(name) for name in filenames]
