"""
Blob Store Backends
===================

Uniform upload interface for case evidence, with pluggable backends:
  - ImageKitBlobStore: ImageKit media library (production).
  - LocalBlobStore: local filesystem served by the API under /uploads (development).

Only uploads are exercised; stored blobs are never deleted by the service.
The backend is selected by STORAGE_BACKEND.
"""

import abc
import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from .config import Settings, get_settings
from .errors import UploadFailure, UploadTimeoutError

logger = logging.getLogger(__name__)


class BlobStore(abc.ABC):
    """Uploads a payload and returns its permanent URL."""

    @abc.abstractmethod
    async def upload(self, payload: bytes, file_name: str, folder: str) -> str:
        """
        Store ``payload`` under ``folder`` using ``file_name`` as the suggested name.

        Raises UploadFailure on any transport or backend error.
        """

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# ImageKit
# ---------------------------------------------------------------------------


class ImageKitBlobStore(BlobStore):
    """
    ImageKit upload API client.

    Authenticates with HTTP basic auth (private key as username, empty password)
    and posts multipart form data to the upload endpoint.
    """

    def __init__(
        self,
        private_key: str,
        upload_url: str = "https://upload.imagekit.io/api/v1/files/upload",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.private_key = private_key
        self.upload_url = upload_url
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def upload(self, payload: bytes, file_name: str, folder: str) -> str:
        if not self.private_key:
            raise UploadFailure("ImageKit credentials not configured")

        data = {
            "fileName": file_name,
            "folder": folder,
            "useUniqueFileName": "true",
        }
        files = {"file": (file_name, payload)}

        try:
            client = await self._get_client()
            response = await client.post(
                self.upload_url,
                data=data,
                files=files,
                auth=(self.private_key, ""),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"ImageKit upload timed out for {file_name}: {e}")
            raise UploadTimeoutError(f"Failed to upload {file_name}: request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"ImageKit API error: {e.response.status_code}")
            raise UploadFailure(
                f"Failed to upload {file_name}: HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"ImageKit upload failed: {e}")
            raise UploadFailure(f"Failed to upload {file_name}: {e}") from e

        url = body.get("url") if isinstance(body, dict) else None
        if not url:
            raise UploadFailure(f"Failed to upload {file_name}: response missing url")
        return url


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalBlobStore(BlobStore):
    """Writes payloads below ``root`` and returns ``base_url/folder/file_name``."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _target(self, file_name: str, folder: str) -> Path:
        folder_path = Path(folder.strip("/"))
        if folder_path.is_absolute() or ".." in folder_path.parts:
            raise UploadFailure(f"Invalid upload folder: {folder}")
        name = Path(file_name).name
        if not name:
            raise UploadFailure("Invalid file name")
        return self.root / folder_path / name

    def _write(self, target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)

    async def upload(self, payload: bytes, file_name: str, folder: str) -> str:
        target = self._target(file_name, folder)
        try:
            await asyncio.to_thread(self._write, target, payload)
        except OSError as e:
            logger.error(f"Local upload failed for {target}: {e}")
            raise UploadFailure(f"Failed to upload {file_name}: {e}") from e
        relative = target.relative_to(self.root).as_posix()
        return f"{self.base_url}/{relative}"


# Singleton store
_storage: Optional[BlobStore] = None


def build_storage(settings: Settings) -> BlobStore:
    """Create the blob store selected by settings"""
    if settings.storage_backend == "imagekit":
        return ImageKitBlobStore(
            private_key=settings.imagekit_private_key or "",
            upload_url=settings.imagekit_upload_url,
            timeout=settings.upload_timeout_seconds,
        )
    return LocalBlobStore(settings.local_storage_dir, settings.local_storage_base_url)


def get_storage() -> BlobStore:
    """Get singleton blob store instance"""
    global _storage
    if _storage is None:
        _storage = build_storage(get_settings())
    return _storage


async def close_storage() -> None:
    global _storage
    if _storage is not None:
        await _storage.close()
        _storage = None
