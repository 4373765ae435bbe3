"""
PicSearch API.

Thin HTTP layer over ImageSearchService:
- Queries: text and base64 image, returning matched images as data URIs
- Ingestion: batched directory upload, indexing on the last batch
- System: health
"""

import base64
import binascii
import logging
import mimetypes
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import Settings
from .ingestion import IndexingError
from .models.clip_model import (
    CLIPModel,
    EmbeddingModel,
    InvalidInputError,
    ModelUnavailableError,
)
from .models.schemas import (
    DirectoryUploadResponse,
    HealthResponse,
    ImageQueryRequest,
    ImageResult,
    SearchHit,
    TextQueryRequest,
    UploadBatch,
)
from .query import QueryError
from .service import ImageSearchService
from .storage import ImageStore, StorageError

logger = logging.getLogger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")


def decode_base64_image(image: str) -> bytes:
    """
    Decode a base64 image, with or without a ``data:image/...`` prefix.

    Raises:
        ValueError: If the payload is not valid base64
    """
    payload = _DATA_URI_PREFIX.sub("", image.strip())
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e
    if not data:
        raise ValueError("No image data provided")
    return data


def encode_data_uri(filename: str, data: bytes) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    if not mime_type or not mime_type.startswith("image/"):
        mime_type = "image/png"
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _parse_flag(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


def _query_http_error(e: QueryError) -> HTTPException:
    cause = e.__cause__
    if isinstance(cause, InvalidInputError):
        return HTTPException(status_code=400, detail=str(cause))
    if isinstance(cause, ModelUnavailableError):
        return HTTPException(status_code=503, detail="Embedding model unavailable")
    return HTTPException(status_code=500, detail="Failed to process query.")


def create_app(
    settings: Optional[Settings] = None,
    embedding_model: Optional[EmbeddingModel] = None,
    upload_store: Optional[ImageStore] = None,
) -> FastAPI:
    """Create PicSearch FastAPI application."""
    if settings is None:
        settings = Settings()
    if embedding_model is None:
        embedding_model = CLIPModel(settings)

    service = ImageSearchService(settings, embedding_model, upload_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.on_start()
        try:
            yield
        finally:
            logger.info("Server is shutting down gracefully...")
            service.on_shutdown()

    app = FastAPI(
        title="PicSearch API",
        description="Multimodal image search with CLIP embeddings",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service

    def get_service() -> ImageSearchService:
        return service

    def to_results(
        search_service: ImageSearchService, hits: List[SearchHit]
    ) -> List[ImageResult]:
        try:
            return [
                ImageResult(
                    fileName=hit.filename,
                    imageData=encode_data_uri(
                        hit.filename, search_service.read_image(hit.filename)
                    ),
                    score=hit.score,
                )
                for hit in hits
            ]
        except StorageError as e:
            logger.error(f"Error processing images: {e}")
            raise HTTPException(status_code=500, detail="Error processing images")

    # ========================================
    # QUERIES
    # ========================================

    @app.post(
        "/upload/text",
        response_model=List[ImageResult],
        tags=["Search"],
        summary="Search by text",
        description="Return the images most similar to a text description.",
    )
    async def text_query(
        request: TextQueryRequest,
        search_service: ImageSearchService = Depends(get_service),
    ) -> List[ImageResult]:
        try:
            hits = await search_service.search_by_text(request.query)
        except QueryError as e:
            logger.error(f"Failed to process query: {e}")
            raise _query_http_error(e)
        return to_results(search_service, hits)

    @app.post(
        "/upload/image",
        response_model=List[ImageResult],
        tags=["Search"],
        summary="Search by image",
        description="Return the images most similar to a base64 query image.",
    )
    async def image_query(
        request: ImageQueryRequest,
        search_service: ImageSearchService = Depends(get_service),
    ) -> List[ImageResult]:
        try:
            data = decode_base64_image(request.image)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            hits = await search_service.search_by_image_bytes(data)
        except QueryError as e:
            logger.error(f"Failed to process image query: {e}")
            raise _query_http_error(e)
        except StorageError as e:
            logger.error(f"Failed to process image data: {e}")
            raise HTTPException(status_code=500, detail="Failed to process image data")
        return to_results(search_service, hits)

    # ========================================
    # INGESTION
    # ========================================

    @app.post(
        "/upload/directory",
        response_model=DirectoryUploadResponse,
        tags=["Ingestion"],
        summary="Upload a batch of images",
        description="Store a batch of images; the last batch triggers indexing.",
    )
    async def upload_directory(
        files: Optional[List[UploadFile]] = File(None, alias="files[]"),
        currentBatch: int = Form(...),
        totalBatches: int = Form(...),
        totalFiles: int = Form(...),
        isLastBatch: str = Form("false"),
        search_service: ImageSearchService = Depends(get_service),
    ) -> DirectoryUploadResponse:
        files = files or []
        try:
            batch = UploadBatch(
                current_batch=currentBatch,
                total_batches=totalBatches,
                total_files=totalFiles,
                is_last_batch=_parse_flag(isLastBatch),
                file_count=len(files),
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        stored = 0
        skipped: List[str] = []
        for upload in files:
            data = await upload.read()
            name = upload.filename or "upload"
            try:
                search_service.store_upload(data, name)
                stored += 1
            except StorageError as e:
                logger.warning(f"Skipped upload {name!r}: {e}")
                skipped.append(name)

        try:
            status = await search_service.receive_batch(batch)
        except IndexingError as e:
            raise HTTPException(
                status_code=500,
                detail={
                    "message": "Error during indexing",
                    "error": str(e),
                    "skipped": skipped,
                },
            )

        skipped_note = f" {len(skipped)} files skipped." if skipped else ""
        if batch.is_last_batch:
            return DirectoryUploadResponse(
                message=(
                    f"Indexing complete. {status.indexed_count} files "
                    f"indexed successfully.{skipped_note}"
                ),
                indexingComplete=True,
                status=status,
                skipped=skipped,
            )
        return DirectoryUploadResponse(
            message=(
                f"{stored} files uploaded successfully.{skipped_note} "
                "Awaiting more..."
            ),
            indexingComplete=False,
            status=status,
            skipped=skipped,
        )

    # ========================================
    # SYSTEM
    # ========================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
        description="Get system health status.",
    )
    async def health_check(
        search_service: ImageSearchService = Depends(get_service),
    ) -> HealthResponse:
        return HealthResponse(status="healthy", components=search_service.get_stats())

    return app
