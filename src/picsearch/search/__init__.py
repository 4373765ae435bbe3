"""
Vector index using FAISS for exact similarity search.

The index is an exhaustive flat inner-product scan over unit-normalized
vectors, i.e. exact cosine similarity. An approximate FAISS index (IVF,
HNSW) can replace IndexFlatIP inside _build_snapshot without changing
search() callers.

Concurrency: the published state is one immutable IndexSnapshot. Readers
grab the current reference once and never lock; rebuild() builds a new
snapshot off to the side and publishes it with a single assignment, so a
search sees either the old index or the new one in full.
"""

import logging
import os
import pickle
import threading
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import faiss
import numpy as np

from ..models.schemas import IndexEntry, SearchHit

logger = logging.getLogger(__name__)

EntryLike = Union[IndexEntry, Tuple[str, Sequence[float]]]


class VectorSearchError(Exception):
    """Vector search related errors."""


class IndexSnapshot(NamedTuple):
    """Immutable published state of the index."""

    index: Optional[faiss.Index]
    filenames: Tuple[str, ...]
    dimension: Optional[int]

    @property
    def size(self) -> int:
        return len(self.filenames)


EMPTY_SNAPSHOT = IndexSnapshot(index=None, filenames=(), dimension=None)


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.astype(np.float32)


class VectorIndex:
    """
    FAISS-backed k-nearest-neighbor index over (filename, vector) entries.
    """

    def __init__(self, index_path: Optional[Path] = None):
        """
        Initialize an empty index.

        Args:
            index_path: Base path for persisted artifacts (``.faiss`` and
                ``.pkl`` suffixes are added). None keeps the index in memory.
        """
        self.index_path = Path(index_path) if index_path is not None else None
        self._snapshot: IndexSnapshot = EMPTY_SNAPSHOT
        self._write_lock = threading.Lock()
        logger.info("Vector index initialized")

    # ----------------------------------------
    # Build
    # ----------------------------------------

    def _collect(self, entries: Iterable[EntryLike]) -> Dict[str, np.ndarray]:
        vectors: Dict[str, np.ndarray] = {}
        for entry in entries:
            if isinstance(entry, IndexEntry):
                filename, embedding = entry.filename, entry.embedding
            else:
                filename, embedding = entry

            if not filename:
                raise VectorSearchError("Index entry has an empty filename")

            vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
            if vector.size == 0:
                raise VectorSearchError(f"Empty embedding for {filename}")
            if not np.all(np.isfinite(vector)):
                raise VectorSearchError(f"Non-finite embedding for {filename}")

            # Re-indexing a filename overwrites its vector
            vectors[filename] = vector
        return vectors

    def _build_snapshot(self, entries: Iterable[EntryLike]) -> IndexSnapshot:
        vectors = self._collect(entries)
        if not vectors:
            return EMPTY_SNAPSHOT

        dimensions = {v.shape[0] for v in vectors.values()}
        if len(dimensions) != 1:
            raise VectorSearchError(
                f"Embedding dimension mismatch: found {sorted(dimensions)}"
            )
        dimension = dimensions.pop()

        filenames = tuple(vectors)
        matrix = np.vstack([_normalize(vectors[name]) for name in filenames])

        index = faiss.IndexFlatIP(dimension)
        index.add(matrix)
        logger.info(f"Built FAISS index with {index.ntotal} vectors of dim {dimension}")
        return IndexSnapshot(index=index, filenames=filenames, dimension=dimension)

    def rebuild(self, entries: Iterable[EntryLike]) -> int:
        """
        Atomically replace the entire index.

        The new index is fully built and persisted before it is published.
        On failure the previous snapshot stays live.

        Args:
            entries: IndexEntry objects or (filename, vector) pairs

        Returns:
            Number of entries in the new index

        Raises:
            VectorSearchError: If entries are invalid or artifacts cannot
                be written
        """
        assert entries is not None, "Entries are required"

        with self._write_lock:
            try:
                snapshot = self._build_snapshot(entries)
                self._persist(snapshot)
            except VectorSearchError:
                raise
            except Exception as e:
                error_msg = f"Failed to rebuild index: {e}"
                logger.error(error_msg)
                raise VectorSearchError(error_msg) from e

            self._snapshot = snapshot

        logger.info(f"Published index with {snapshot.size} entries")
        return snapshot.size

    def clear(self) -> None:
        """Publish an empty index and remove persisted artifacts."""
        with self._write_lock:
            self._snapshot = EMPTY_SNAPSHOT
            self._remove_artifacts()
        logger.info("Vector index cleared")

    # ----------------------------------------
    # Query
    # ----------------------------------------

    def search(self, query_embedding: Sequence[float], k: int = 5) -> List[SearchHit]:
        """
        Find the ``k`` entries most similar to ``query_embedding``.

        Args:
            query_embedding: Query embedding vector
            k: Maximum number of results

        Returns:
            Hits ordered by descending cosine similarity, ties broken by
            ascending filename. Empty if the index is empty.

        Raises:
            VectorSearchError: If the query does not match the index
                dimension or the snapshot is inconsistent
        """
        assert query_embedding is not None, "Query embedding is required"
        assert k > 0, f"Invalid k value: {k}"

        snapshot = self._snapshot
        if snapshot.index is None or snapshot.size == 0:
            logger.debug("Search against empty index")
            return []

        if snapshot.index.ntotal != snapshot.size:
            raise VectorSearchError(
                f"Inconsistent index: {snapshot.index.ntotal} vectors, "
                f"{snapshot.size} filenames"
            )

        query_vector = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        if query_vector.shape[0] != snapshot.dimension:
            raise VectorSearchError(
                f"Query dimension mismatch: expected {snapshot.dimension}, "
                f"got {query_vector.shape[0]}"
            )
        if not np.all(np.isfinite(query_vector)):
            raise VectorSearchError("Query embedding contains non-finite values")

        try:
            query_vector = _normalize(query_vector).reshape(1, -1)
            # Score every entry; ranking and the filename tie-break are
            # applied here rather than trusting FAISS ordering among equals
            scores, indices = snapshot.index.search(query_vector, snapshot.size)
        except Exception as e:
            error_msg = f"Failed to search embeddings: {e}"
            logger.error(error_msg)
            raise VectorSearchError(error_msg) from e

        scored = [
            (float(np.clip(score, -1.0, 1.0)), snapshot.filenames[idx])
            for score, idx in zip(scores[0], indices[0])
            if idx != -1
        ]
        scored.sort(key=lambda pair: (-pair[0], pair[1]))

        results = [SearchHit(filename=name, score=score) for score, name in scored[:k]]
        logger.debug(f"Found {len(results)} similar embeddings")
        return results

    def count(self) -> int:
        return self._snapshot.size

    @property
    def dimension(self) -> Optional[int]:
        return self._snapshot.dimension

    def filenames(self) -> List[str]:
        return sorted(self._snapshot.filenames)

    # ----------------------------------------
    # Persistence
    # ----------------------------------------

    def _artifact_paths(self, index_path: Path) -> Tuple[Path, Path]:
        return index_path.with_suffix(".faiss"), index_path.with_suffix(".pkl")

    def _persist(self, snapshot: IndexSnapshot) -> None:
        if self.index_path is None:
            return
        if snapshot.index is None:
            self._remove_artifacts()
            return

        faiss_path, metadata_path = self._artifact_paths(self.index_path)
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)

            tmp_faiss = faiss_path.with_name(faiss_path.name + ".tmp")
            faiss.write_index(snapshot.index, str(tmp_faiss))

            tmp_metadata = metadata_path.with_name(metadata_path.name + ".tmp")
            metadata = {
                "filenames": list(snapshot.filenames),
                "embedding_dimension": snapshot.dimension,
            }
            with open(tmp_metadata, "wb") as f:
                pickle.dump(metadata, f)

            os.replace(tmp_faiss, faiss_path)
            os.replace(tmp_metadata, metadata_path)
            logger.info(f"Saved index to {self.index_path}")

        except Exception as e:
            error_msg = f"Failed to save index: {e}"
            logger.error(error_msg)
            raise VectorSearchError(error_msg) from e

    def _remove_artifacts(self) -> None:
        if self.index_path is None:
            return
        for path in self._artifact_paths(self.index_path):
            path.unlink(missing_ok=True)

    def load_index(self, index_path: Optional[Path] = None) -> int:
        """
        Load persisted artifacts and publish them as the live index.

        Args:
            index_path: Base path to load from; defaults to ``self.index_path``

        Returns:
            Number of entries loaded

        Raises:
            VectorSearchError: If the artifacts are missing or inconsistent
        """
        index_path = Path(index_path) if index_path is not None else self.index_path
        assert index_path is not None, "Index path is required"

        faiss_path, metadata_path = self._artifact_paths(index_path)
        if not faiss_path.exists() or not metadata_path.exists():
            raise VectorSearchError(f"Index files not found at {index_path}")

        try:
            index = faiss.read_index(str(faiss_path))
            with open(metadata_path, "rb") as f:
                metadata = pickle.load(f)
        except Exception as e:
            error_msg = f"Failed to load index: {e}"
            logger.error(error_msg)
            raise VectorSearchError(error_msg) from e

        filenames = tuple(metadata["filenames"])
        dimension = metadata["embedding_dimension"]
        if index.ntotal != len(filenames) or index.d != dimension:
            raise VectorSearchError(f"Index artifacts at {index_path} are inconsistent")

        with self._write_lock:
            self._snapshot = IndexSnapshot(
                index=index, filenames=filenames, dimension=dimension
            )
        logger.info(f"Loaded index from {index_path}")
        return len(filenames)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get index statistics.

        Returns:
            Dictionary containing index statistics
        """
        snapshot = self._snapshot
        return {
            "total_embeddings": snapshot.size,
            "embedding_dimension": snapshot.dimension,
            "index_type": type(snapshot.index).__name__ if snapshot.index else None,
            "index_path": str(self.index_path) if self.index_path else None,
        }
