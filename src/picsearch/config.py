"""
Configuration management for PicSearch application.

This module handles loading and validation of configuration settings
from environment variables and provides type-safe configuration objects.
"""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration settings."""

    # Model settings
    clip_model_name: str = Field(default="ViT-B/32", description="CLIP model name")
    device: Literal["auto", "cpu", "cuda"] = Field(
        default="auto", description="Device for model inference"
    )
    embedding_timeout_seconds: Optional[float] = Field(
        default=60.0,
        description="Upper bound for a single embedding call (None disables)",
    )

    # Storage settings
    upload_storage_path: Path = Field(
        default=Path("./data/uploads"), description="Path for uploaded images"
    )
    index_storage_path: Path = Field(
        default=Path("./data/index"),
        description="Path for FAISS index artifacts",
    )
    query_storage_path: Path = Field(
        default=Path("./data/temp"),
        description="Path for transient query images",
    )

    # Upload settings
    max_image_size: int = Field(
        default=10485760, description="Maximum image size in bytes (10MB)"
    )
    allowed_image_types: List[str] = Field(
        default=["jpg", "jpeg", "png", "webp", "gif", "bmp"],
        description="Allowed image file types",
    )

    # Index settings
    default_top_k: int = Field(
        default=5, ge=1, description="Number of results returned per query"
    )
    index_batch_size: int = Field(
        default=32, ge=1, description="Images embedded per batch during rebuild"
    )
    verify_upload_count: bool = Field(
        default=True,
        description="Refuse to rebuild when fewer files are stored than declared",
    )

    # Server settings
    server_host: str = Field(default="0.0.0.0", description="Server host")
    server_port: int = Field(default=3000, description="Server port")
    cors_origins: List[str] = Field(
        default=["*"], description="Origins allowed by CORS middleware"
    )
    log_level: str = Field(default="INFO", description="Log level")
    debug: bool = Field(default=False, description="Debug mode")

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> Settings:
    """Get application settings instance."""
    return Settings()
