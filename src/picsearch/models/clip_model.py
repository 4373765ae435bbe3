"""
CLIP model wrapper for image and text embedding generation.

This module provides a unified interface for CLIP model operations:
image encoding and text encoding into one shared, unit-normalized
embedding space, so that an image vector and a text vector can be
compared directly with cosine similarity.
"""

import io
import logging
import threading
from pathlib import Path
from typing import List, Protocol, Union, runtime_checkable

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..config import Settings

logger = logging.getLogger(__name__)

ImageInput = Union[Image.Image, bytes, Path]


class CLIPModelError(Exception):
    """CLIP model related errors."""


class InvalidInputError(CLIPModelError):
    """Input could not be embedded: undecodable image or empty text."""


class ModelUnavailableError(CLIPModelError):
    """The embedding backend could not be loaded or invoked."""


@runtime_checkable
class EmbeddingModel(Protocol):
    """Synchronous image/text encoder producing vectors in one shared space."""

    model_name: str

    @property
    def embedding_dim(self) -> int: ...

    def encode_image(self, image_input: ImageInput) -> np.ndarray: ...

    def encode_text(self, text: str) -> np.ndarray: ...

    def encode_batch_images(self, images: List[ImageInput]) -> np.ndarray: ...


def load_image(image_input: ImageInput) -> Image.Image:
    """
    Decode an image input into an RGB PIL image.

    Args:
        image_input: Image as PIL Image, raw bytes, or file path

    Returns:
        RGB PIL image

    Raises:
        InvalidInputError: If the input is not a decodable image
    """
    if image_input is None:
        raise InvalidInputError("Image input is required")

    try:
        if isinstance(image_input, bytes):
            if not image_input:
                raise InvalidInputError("Image data is empty")
            with Image.open(io.BytesIO(image_input)) as image:
                return image.convert("RGB")
        if isinstance(image_input, Path):
            with Image.open(image_input) as image:
                return image.convert("RGB")
        if isinstance(image_input, Image.Image):
            return image_input.convert("RGB")
    except Image.DecompressionBombError as e:
        raise InvalidInputError(f"Image dimensions too large: {e}") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidInputError(f"Could not decode image: {e}") from e

    raise InvalidInputError(f"Unsupported image input type: {type(image_input)}")


def validate_text(text: str) -> str:
    """Return stripped text or raise InvalidInputError if there is none."""
    if not isinstance(text, str):
        raise InvalidInputError(f"Text must be string, got {type(text)}")
    stripped = text.strip()
    if not stripped:
        raise InvalidInputError("Text cannot be empty")
    return stripped


class CLIPModel:
    """
    CLIP model wrapper for embedding generation.

    The model is loaded lazily on first use so that application start-up
    does not block on weight download. Loading is guarded by a lock, after
    which encoding calls may run concurrently.
    """

    def __init__(self, settings: Settings):
        """
        Initialize CLIP model wrapper.

        Args:
            settings: Application settings containing model configuration
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.model_name = settings.clip_model_name
        self.model = None
        self.preprocess = None
        self.device = None
        self._load_lock = threading.Lock()

    def _determine_device(self):
        """Determine the appropriate device for model inference."""
        import torch

        if self.settings.device == "auto":
            if torch.cuda.is_available():
                device = torch.device("cuda")
                logger.info("Using CUDA device for CLIP model")
            else:
                device = torch.device("cpu")
                logger.info("Using CPU device for CLIP model")
        else:
            device = torch.device(self.settings.device)
            logger.info(f"Using {self.settings.device} device for CLIP model")

        return device

    def _ensure_loaded(self) -> None:
        """Load CLIP model and preprocessing functions once."""
        if self.model is not None:
            return

        with self._load_lock:
            if self.model is not None:
                return
            try:
                import clip

                self.device = self._determine_device()
                logger.info(f"Loading CLIP model: {self.model_name}")
                model, preprocess = clip.load(self.model_name, device=self.device)
                model.eval()
                self.preprocess = preprocess
                self.model = model
                logger.info("CLIP model loaded successfully")

            except Exception as e:
                error_msg = f"Failed to load CLIP model: {e}"
                logger.error(error_msg)
                raise ModelUnavailableError(error_msg) from e

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    @property
    def embedding_dim(self) -> int:
        """Get embedding dimension."""
        if self.model is None:
            return 512  # ViT-B/32 default
        return int(self.model.visual.output_dim)

    def _to_numpy(self, features) -> np.ndarray:
        import torch.nn.functional as F

        features = F.normalize(features.float(), dim=-1)
        return features.cpu().numpy().astype(np.float32)

    def encode_image(self, image_input: ImageInput) -> np.ndarray:
        """
        Encode image to CLIP embedding.

        Args:
            image_input: Image as PIL Image, bytes, or file path

        Returns:
            Normalized embedding vector as numpy array

        Raises:
            InvalidInputError: If the image cannot be decoded
            ModelUnavailableError: If the model cannot be loaded or invoked
        """
        image = load_image(image_input)
        self._ensure_loaded()

        try:
            import torch

            image_tensor = self.preprocess(image).unsqueeze(0).to(self.device)
            with torch.no_grad():
                image_features = self.model.encode_image(image_tensor)

            embedding = self._to_numpy(image_features).flatten()
            logger.debug(f"Generated image embedding with shape: {embedding.shape}")
            return embedding

        except Exception as e:
            error_msg = f"Failed to encode image: {e}"
            logger.error(error_msg)
            raise ModelUnavailableError(error_msg) from e

    def encode_text(self, text: str) -> np.ndarray:
        """
        Encode text to CLIP embedding.

        Args:
            text: Text string to encode

        Returns:
            Normalized embedding vector as numpy array

        Raises:
            InvalidInputError: If the text is empty
            ModelUnavailableError: If the model cannot be loaded or invoked
        """
        text = validate_text(text)
        self._ensure_loaded()

        try:
            import clip
            import torch

            # CLIP's context is 77 tokens; longer queries are cut, not rejected
            text_tokens = clip.tokenize([text], truncate=True).to(self.device)
            with torch.no_grad():
                text_features = self.model.encode_text(text_tokens)

            embedding = self._to_numpy(text_features).flatten()
            logger.debug(f"Generated text embedding with shape: {embedding.shape}")
            return embedding

        except Exception as e:
            error_msg = f"Failed to encode text: {e}"
            logger.error(error_msg)
            raise ModelUnavailableError(error_msg) from e

    def encode_batch_images(self, images: List[ImageInput]) -> np.ndarray:
        """
        Encode multiple images in batch for efficiency.

        Args:
            images: List of images to encode

        Returns:
            Array of embeddings with shape (batch_size, embedding_dim)

        Raises:
            InvalidInputError: If any image cannot be decoded
            ModelUnavailableError: If the model cannot be loaded or invoked
        """
        assert images is not None, "Images list is required"
        assert len(images) > 0, "Images list cannot be empty"

        decoded = [load_image(img_input) for img_input in images]
        self._ensure_loaded()

        try:
            import torch

            batch_tensor = torch.stack([self.preprocess(img) for img in decoded]).to(
                self.device
            )
            with torch.no_grad():
                image_features = self.model.encode_image(batch_tensor)

            embeddings = self._to_numpy(image_features)
            logger.debug(f"Generated batch embeddings with shape: {embeddings.shape}")
            return embeddings

        except Exception as e:
            error_msg = f"Failed to encode image batch: {e}"
            logger.error(error_msg)
            raise ModelUnavailableError(error_msg) from e

    def get_model_info(self) -> dict:
        """
        Get information about the model.

        Returns:
            Dictionary containing model information
        """
        return {
            "model_name": self.model_name,
            "device": str(self.device) if self.device is not None else None,
            "embedding_dim": self.embedding_dim,
            "is_loaded": self.is_loaded,
        }
