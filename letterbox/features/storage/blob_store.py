"""
Blob store interface for newsletter bodies.

The core treats object storage as an opaque key/value store. Keys are
chosen by the caller so the shared pool can be content-addressed.
"""
import logging
import os
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote
from uuid import uuid4

from letterbox.core.config import settings
from letterbox.core.errors import BlobStoreError, NotFoundError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """
    Protocol for blob stores.

    Implementations must raise BlobStoreError for transport/storage
    failures and NotFoundError for unknown keys.
    """

    def put(self, key: str, data: bytes, content_type: str = "text/html; charset=utf-8") -> str:
        """Store bytes under key (overwriting) and return the key."""
        ...

    def get(self, key: str) -> bytes:
        """Return the bytes stored under key."""
        ...

    def get_url(self, key: str) -> str:
        """Return a URL the caller can fetch the object from."""
        ...

    def delete(self, key: str) -> None:
        """Delete key; deleting a missing key is not an error."""
        ...


class LocalBlobStore:
    """Filesystem-backed BlobStore rooted at a directory."""

    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root = Path(root or settings.BLOB_STORE_ROOT).resolve()
        self.public_base_url = public_base_url if public_base_url is not None else settings.BLOB_PUBLIC_BASE_URL

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise BlobStoreError(f"Blob key escapes store root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "text/html; charset=utf-8") -> str:
        path = self._path(key)
        # One temp file per call; shared keys can be written concurrently
        tmp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            # Atomic publish so readers never observe a partial body
            os.replace(tmp, path)
        except OSError as e:
            raise BlobStoreError(f"Blob write failed for {key}: {e}")
        finally:
            tmp.unlink(missing_ok=True)
        logger.debug("blob.put", extra={"path": key})
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Blob {key} not found")
        except OSError as e:
            raise BlobStoreError(f"Blob read failed for {key}: {e}")

    def get_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(key)}"
        return self._path(key).as_uri()

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Blob delete failed for {key}: {e}")


_default_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Process-wide default store built from settings."""
    global _default_store
    if _default_store is None:
        _default_store = LocalBlobStore()
    return _default_store


def set_blob_store(store: Optional[BlobStore]) -> None:
    """Replace the default store (app startup, tests)."""
    global _default_store
    _default_store = store
