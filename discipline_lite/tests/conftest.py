"""
Shared test doubles for the disciplinary case tests.
"""

import asyncio
from typing import List, Optional, Set, Tuple

import pytest

from discipline_lite.errors import UploadFailure
from discipline_lite.storage import BlobStore


class FakeBlobStore(BlobStore):
    """In-memory blob store that records every upload."""

    def __init__(self, fail_names: Optional[Set[str]] = None, delay: float = 0.0):
        self.uploads: List[Tuple[str, str, int]] = []
        self.fail_names = fail_names or set()
        self.delay = delay

    async def upload(self, payload: bytes, file_name: str, folder: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if any(marker in file_name for marker in self.fail_names):
            raise UploadFailure(f"Failed to upload {file_name}: HTTP 500")
        self.uploads.append((file_name, folder, len(payload)))
        return f"https://cdn.test/{folder}/{file_name}"


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def make_blob_store():
    """Factory for stores that fail or stall on demand."""
    def factory(fail_names: Optional[Set[str]] = None, delay: float = 0.0) -> FakeBlobStore:
        return FakeBlobStore(fail_names=fail_names, delay=delay)

    return factory
