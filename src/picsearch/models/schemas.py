"""
PicSearch schemas.

Request/response models for:
- Index: entries and search hits
- Ingestion: upload batch descriptors and pipeline status
- Query API: text and image queries, returned images
- System: health
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# ========================================
# INDEX SCHEMAS
# ========================================


class IndexEntry(BaseModel):
    """A filename paired with its embedding vector."""

    filename: str = Field(..., description="Upload store filename (identity key)")
    embedding: List[float] = Field(..., description="Embedding vector")

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Filename cannot be empty")
        return v

    @field_validator("embedding")
    @classmethod
    def validate_embedding(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("Embedding cannot be empty")
        return v


class SearchHit(BaseModel):
    """Individual search result."""

    filename: str = Field(..., description="Matching filename")
    score: float = Field(..., description="Cosine similarity in [-1, 1]")


# ========================================
# INGESTION SCHEMAS
# ========================================


class IngestionState(str, Enum):
    """Ingestion pipeline states."""

    IDLE = "idle"
    RECEIVING = "receiving"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"


class UploadBatch(BaseModel):
    """Descriptor for one batch of an upload session."""

    current_batch: int = Field(..., ge=1, description="1-based batch number")
    total_batches: int = Field(..., ge=1, description="Declared batch count")
    total_files: int = Field(..., ge=0, description="Declared file count")
    is_last_batch: bool = Field(False, description="Completion signal")
    file_count: int = Field(0, ge=0, description="Files carried by this batch")

    @model_validator(mode="after")
    def check_batch_range(self) -> "UploadBatch":
        if self.current_batch > self.total_batches:
            raise ValueError(
                f"Batch {self.current_batch} exceeds declared total "
                f"{self.total_batches}"
            )
        return self


class IngestionStatus(BaseModel):
    """Snapshot of the ingestion pipeline."""

    state: IngestionState = Field(..., description="Current pipeline state")
    batches_received: int = Field(0, description="Batches seen this session")
    files_received: int = Field(0, description="Files seen this session")
    indexed_count: int = Field(0, description="Entries in the live index")
    last_error: Optional[str] = Field(None, description="Last ingestion error")


# ========================================
# QUERY API SCHEMAS
# ========================================


class TextQueryRequest(BaseModel):
    """Request for text query."""

    query: str = Field(..., description="Free-text description")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Query cannot be empty")
        return v.strip()


class ImageQueryRequest(BaseModel):
    """Request for image query."""

    image: str = Field(..., description="Base64 image, optionally as a data URI")

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("No image data provided")
        return v.strip()


class ImageResult(BaseModel):
    """Image returned for a query."""

    fileName: str = Field(..., description="Upload store filename")
    imageData: str = Field(..., description="Image as data URI")
    score: Optional[float] = Field(None, description="Similarity score")


class DirectoryUploadResponse(BaseModel):
    """Response for a directory upload batch."""

    message: str = Field(..., description="Status message")
    indexingComplete: bool = Field(False, description="Whether indexing ran")
    status: Optional[IngestionStatus] = Field(None, description="Pipeline status")
    skipped: List[str] = Field(
        default_factory=list, description="Uploads rejected by the store"
    )


# ========================================
# SYSTEM SCHEMAS
# ========================================


class HealthResponse(BaseModel):
    """System health check response."""

    status: str = Field(..., description="Overall system status")
    components: Dict[str, Any] = Field(..., description="Component status details")
