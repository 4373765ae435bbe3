"""
Asynchronous embedding adapter.

Wraps a synchronous EmbeddingModel so that request handlers can await
embedding calls. Each call runs in a worker thread and is bounded by the
configured timeout; cancelling the awaiting task abandons the result and
leaves all index state untouched.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar, Union

import numpy as np

from .clip_model import (
    EmbeddingModel,
    ImageInput,
    InvalidInputError,
    ModelUnavailableError,
    validate_text,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmbeddingAdapter:
    """Async facade over an EmbeddingModel."""

    def __init__(self, model: EmbeddingModel, timeout: Optional[float] = None):
        assert model is not None, "Embedding model is required"
        assert timeout is None or timeout > 0, f"Invalid timeout: {timeout}"

        self.model = model
        self.timeout = timeout

    @property
    def model_name(self) -> str:
        return self.model.model_name

    @property
    def embedding_dim(self) -> int:
        return self.model.embedding_dim

    async def _run(self, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            error_msg = f"Embedding call exceeded {self.timeout}s"
            logger.error(error_msg)
            raise ModelUnavailableError(error_msg) from e

    async def embed_image(self, image: Union[bytes, Path]) -> np.ndarray:
        """
        Embed a single image.

        Args:
            image: Raw image bytes or path to an image file

        Returns:
            Unit-length embedding vector

        Raises:
            InvalidInputError: If the image cannot be decoded
            ModelUnavailableError: If the model fails or the call times out
        """
        if isinstance(image, str):
            image = Path(image)
        return await self._run(self.model.encode_image, image)

    async def embed_images(self, images: List[ImageInput]) -> np.ndarray:
        """Embed a batch of images; returns a (len(images), dim) array."""
        if not images:
            raise InvalidInputError("Images list cannot be empty")
        return await self._run(self.model.encode_batch_images, list(images))

    async def embed_text(self, text: str) -> np.ndarray:
        """
        Embed a text description.

        Raises:
            InvalidInputError: If the text is empty
            ModelUnavailableError: If the model fails or the call times out
        """
        text = validate_text(text)
        return await self._run(self.model.encode_text, text)
