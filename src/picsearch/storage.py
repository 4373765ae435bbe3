"""
Storage layer for uploaded images, index artifacts and query images.

This module owns the three on-disk areas used by PicSearch:

- the upload store, holding every currently ingested image keyed by filename
  and re-scanned on every index rebuild;
- the index artifact area, owned by the vector index;
- the transient query area, holding a query image for one query only.

All three are wiped when the application starts and when it shuts down.
"""

import logging
import secrets
import shutil
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from .config import Settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Storage related errors."""


def validate_filename(filename: str) -> str:
    """
    Reject names that could escape a storage area.

    Raises:
        StorageError: If the name is empty or contains path components
    """
    if filename is None or not filename.strip():
        raise StorageError("Filename cannot be empty")
    if "/" in filename or "\\" in filename or filename in (".", ".."):
        raise StorageError(f"Invalid filename: {filename!r}")
    return filename


def unique_upload_name(original: str) -> str:
    """
    Build a collision-free upload name: ``<millis>-<random>-<basename>``.

    Only the final path component of the original name is kept.
    """
    basename = Path((original or "").replace("\\", "/")).name or "upload"
    millis = int(time.time() * 1000)
    suffix = secrets.randbelow(10**9)
    return f"{millis}-{suffix}-{basename}"


@runtime_checkable
class ImageStore(Protocol):
    """Capability set of the upload store."""

    def list_entries(self) -> List[str]: ...

    def read(self, filename: str) -> bytes: ...

    def write(self, filename: str, data: bytes) -> None: ...

    def delete(self, filename: str) -> bool: ...

    def exists(self, filename: str) -> bool: ...

    def clear(self) -> None: ...


def _has_allowed_suffix(filename: str, allowed: Optional[Iterable[str]]) -> bool:
    if allowed is None:
        return True
    return Path(filename).suffix.lower().lstrip(".") in allowed


class FileImageStore:
    """
    Directory-backed image store.

    The directory itself is the source of truth: list_entries() re-reads it
    on every call.
    """

    def __init__(self, root: Path, allowed_types: Optional[Iterable[str]] = None):
        assert root is not None, "Storage root is required"

        self.root = Path(root)
        self.allowed_types = (
            {t.lower().lstrip(".") for t in allowed_types}
            if allowed_types is not None
            else None
        )
        self._setup_storage()

    def _setup_storage(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            logger.info(f"Image storage path: {self.root}")
        except OSError as e:
            error_msg = f"Failed to setup storage directory {self.root}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def _path(self, filename: str) -> Path:
        return self.root / validate_filename(filename)

    def list_entries(self) -> List[str]:
        """List stored image filenames in ascending order."""
        try:
            if not self.root.exists():
                return []
            return sorted(
                p.name
                for p in self.root.iterdir()
                if p.is_file() and _has_allowed_suffix(p.name, self.allowed_types)
            )
        except OSError as e:
            error_msg = f"Failed to list {self.root}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def read(self, filename: str) -> bytes:
        path = self._path(filename)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Image not found: {filename}") from e
        except OSError as e:
            error_msg = f"Failed to read {filename}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def write(self, filename: str, data: bytes) -> None:
        assert data is not None, "Image data is required"

        path = self._path(filename)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            logger.debug(f"Stored {len(data)} bytes as {filename}")
        except OSError as e:
            error_msg = f"Failed to write {filename}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def delete(self, filename: str) -> bool:
        path = self._path(filename)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            error_msg = f"Failed to delete {filename}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def exists(self, filename: str) -> bool:
        return self._path(filename).is_file()

    def clear(self) -> None:
        clear_directory(self.root)


class MemoryImageStore:
    """In-memory image store, interchangeable with FileImageStore."""

    def __init__(self, allowed_types: Optional[Iterable[str]] = None):
        self.allowed_types = (
            {t.lower().lstrip(".") for t in allowed_types}
            if allowed_types is not None
            else None
        )
        self._files: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def list_entries(self) -> List[str]:
        with self._lock:
            names = list(self._files)
        return sorted(n for n in names if _has_allowed_suffix(n, self.allowed_types))

    def read(self, filename: str) -> bytes:
        validate_filename(filename)
        with self._lock:
            try:
                return self._files[filename]
            except KeyError as e:
                raise StorageError(f"Image not found: {filename}") from e

    def write(self, filename: str, data: bytes) -> None:
        assert data is not None, "Image data is required"
        validate_filename(filename)
        with self._lock:
            self._files[filename] = bytes(data)

    def delete(self, filename: str) -> bool:
        validate_filename(filename)
        with self._lock:
            return self._files.pop(filename, None) is not None

    def exists(self, filename: str) -> bool:
        validate_filename(filename)
        with self._lock:
            return filename in self._files

    def clear(self) -> None:
        with self._lock:
            self._files.clear()


def clear_directory(directory: Path) -> None:
    """
    Remove every entry inside ``directory``, keeping the directory itself.

    Raises:
        StorageError: If an entry cannot be removed
    """
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        for entry in directory.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
    except OSError as e:
        error_msg = f"Error clearing directory {directory}: {e}"
        logger.error(error_msg)
        raise StorageError(error_msg) from e


class StorageManager:
    """
    Owns the upload store, index artifact area and transient query area.
    """

    def __init__(self, settings: Settings, upload_store: Optional[ImageStore] = None):
        """
        Initialize storage manager.

        Args:
            settings: Application settings
            upload_store: Alternative upload store backend; defaults to a
                directory store at ``settings.upload_storage_path``

        Raises:
            StorageError: If the storage directories cannot be created
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.index_storage_path = Path(settings.index_storage_path)
        self.query_storage_path = Path(settings.query_storage_path)
        self.uploads: ImageStore = (
            upload_store
            if upload_store is not None
            else FileImageStore(
                settings.upload_storage_path, settings.allowed_image_types
            )
        )

        self._setup_storage()

    def _setup_storage(self) -> None:
        """Setup storage directories."""
        try:
            self.index_storage_path.mkdir(parents=True, exist_ok=True)
            self.query_storage_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            error_msg = f"Failed to setup storage directories: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    @property
    def index_path(self) -> Path:
        """Base path of the index artifacts (suffixes are added by the index)."""
        return self.index_storage_path / "image_index"

    def store_upload(self, data: bytes, original_name: str) -> str:
        """
        Write an uploaded image under a unique name.

        Returns:
            The filename the image is stored under

        Raises:
            StorageError: If the image is too large, has a disallowed type,
                or cannot be written
        """
        assert data is not None, "Image data is required"

        if len(data) > self.settings.max_image_size:
            raise StorageError(
                f"Image {original_name!r} exceeds {self.settings.max_image_size} bytes"
            )
        allowed = self.settings.allowed_image_types
        if not _has_allowed_suffix(original_name or "", allowed):
            raise StorageError(f"Unsupported image type: {original_name!r}")

        filename = unique_upload_name(original_name)
        self.uploads.write(filename, data)
        return filename

    def write_query_image(self, data: bytes, suffix: str = ".png") -> Path:
        """Write a query image to the transient area and return its path."""
        assert data is not None, "Image data is required"

        name = f"query-{int(time.time() * 1000)}-{secrets.token_hex(4)}{suffix}"
        path = self.query_storage_path / name
        try:
            self.query_storage_path.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            logger.debug(f"Saved query image to {path}")
            return path
        except OSError as e:
            error_msg = f"Failed to write query image: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def delete_query_image(self, path: Path) -> None:
        """Delete a transient query image; missing files are ignored."""
        path = Path(path)
        if path.parent.resolve() != self.query_storage_path.resolve():
            raise StorageError(f"Not a query image path: {path}")
        path.unlink(missing_ok=True)
        logger.debug(f"Deleted temporary file: {path}")

    def clear_all(self) -> None:
        """Clear the upload store, index artifact area and query area."""
        self.uploads.clear()
        clear_directory(self.index_storage_path)
        clear_directory(self.query_storage_path)
        logger.info("Storage areas cleared")

    def get_storage_stats(self) -> Dict[str, object]:
        """Get storage statistics."""
        return {
            "total_uploads": len(self.uploads.list_entries()),
            "upload_store": type(self.uploads).__name__,
            "index_path": str(self.index_storage_path),
            "query_path": str(self.query_storage_path),
        }
