"""
Test configuration and shared fixtures for PicSearch test suite.

This module provides common test fixtures, utilities, and configuration
for maintaining consistency across all test categories.
"""

from pathlib import Path
from typing import Dict

import pytest

from picsearch.config import Settings
from picsearch.models.embedding import EmbeddingAdapter
from picsearch.search import VectorIndex
from picsearch.service import ImageSearchService
from picsearch.storage import FileImageStore, MemoryImageStore

from tests.mocks import MockCLIPModel, create_mock_image


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    """Temporary directory for test files."""
    return tmp_path


@pytest.fixture
def test_settings(temp_dir: Path) -> Settings:
    """Test-specific settings with all storage areas under a temp dir."""
    return Settings(
        upload_storage_path=temp_dir / "uploads",
        index_storage_path=temp_dir / "index",
        query_storage_path=temp_dir / "temp",
        clip_model_name="mock-clip",
        device="cpu",
        default_top_k=5,
        index_batch_size=2,
        embedding_timeout_seconds=5.0,
        log_level="DEBUG",
    )


@pytest.fixture
def mock_clip_model() -> MockCLIPModel:
    """Mock CLIP model for testing without loading real model."""
    return MockCLIPModel(embedding_dim=64)


@pytest.fixture
def embedder(mock_clip_model: MockCLIPModel) -> EmbeddingAdapter:
    return EmbeddingAdapter(mock_clip_model, timeout=5.0)


@pytest.fixture
def upload_store(test_settings: Settings) -> FileImageStore:
    return FileImageStore(
        test_settings.upload_storage_path, test_settings.allowed_image_types
    )


@pytest.fixture
def memory_store(test_settings: Settings) -> MemoryImageStore:
    return MemoryImageStore(test_settings.allowed_image_types)


@pytest.fixture
def vector_index(temp_dir: Path) -> VectorIndex:
    return VectorIndex(temp_dir / "index" / "image_index")


@pytest.fixture
def service(test_settings: Settings, mock_clip_model: MockCLIPModel):
    """Service over directory storage, started and shut down around the test."""
    search_service = ImageSearchService(test_settings, mock_clip_model)
    search_service.on_start()
    yield search_service
    search_service.on_shutdown()


@pytest.fixture
def sample_images() -> Dict[str, bytes]:
    """Collection of visually distinct sample images keyed by filename."""
    return {
        "a.png": create_mock_image("red"),
        "b.png": create_mock_image("blue"),
        "c.png": create_mock_image("green"),
        "d.jpg": create_mock_image((200, 150, 10), size=(80, 60), fmt="JPEG"),
        "e.png": create_mock_image("white", stripe=(0, 0, 0)),
    }

