import os
import sys
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

import pytest

# Add the parent directory to sys.path so we can import main
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.errors import BackendError, NotFoundError
from app.models import ServePolicy, StorageEntry, StorageMetadata
from app.services.content_resolver import ContentResolver
from app.services.response_cache import ResponseCache
from app.services.storage_backend import StorageBackend, join_path

MODIFIED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class MemoryStorage(StorageBackend):
    """In-memory backend that records every call made to it."""

    def __init__(self):
        self.files: Dict[str, Tuple[bytes, StorageMetadata]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, Exception] = {}
        self.chunk_size = 4

    def add(self, path: str, body: bytes, content_type: Optional[str] = None,
            last_modified: Optional[datetime] = MODIFIED, **extra) -> None:
        self.files[path] = (body, StorageMetadata(
            is_dir=False,
            size=len(body),
            content_type=content_type,
            last_modified=last_modified,
            **extra,
        ))

    def fail_on(self, path: str, error: Exception) -> None:
        self.failures[path] = error

    def _check(self, operation: str, path: str) -> None:
        self.calls.append((operation, path))
        if path in self.failures:
            raise self.failures[path]

    def _is_dir(self, path: str) -> bool:
        prefix = f"{path}/" if path else ""
        return any(name.startswith(prefix) for name in self.files)

    async def stat(self, path: str) -> StorageMetadata:
        self._check("stat", path)
        if path in self.files:
            return self.files[path][1]
        if self._is_dir(path):
            return StorageMetadata(is_dir=True)
        raise NotFoundError(path)

    async def list(self, path: str) -> List[StorageEntry]:
        self._check("list", path)
        if not self._is_dir(path):
            raise NotFoundError(path)
        prefix = f"{path}/" if path else ""
        entries = {}
        for name, (_, metadata) in self.files.items():
            if not name.startswith(prefix):
                continue
            child, slash, _ = name[len(prefix):].partition("/")
            if slash:
                entries[child] = StorageEntry(child, join_path(path, child), StorageMetadata(is_dir=True))
            else:
                entries[child] = StorageEntry(child, join_path(path, child), metadata)
        return list(entries.values())

    async def read(self, path: str) -> bytes:
        self._check("read", path)
        if path not in self.files:
            raise NotFoundError(path)
        return self.files[path][0]

    async def open_stream(self, path: str) -> AsyncIterator[bytes]:
        self._check("open_stream", path)
        if path not in self.files:
            raise NotFoundError(path)
        body = self.files[path][0]
        for start in range(0, len(body), self.chunk_size):
            yield body[start:start + self.chunk_size]

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


async def collect(stream: AsyncIterator[bytes]) -> bytes:
    chunks = []
    async for chunk in stream:
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def make_resolver(storage):
    def _make(cache_capacity: int = 16, **policy_overrides) -> ContentResolver:
        policy = ServePolicy(cache_capacity=cache_capacity, **policy_overrides)
        cache = ResponseCache(policy.cache_capacity, policy.cache_ttl)
        return ContentResolver(storage, cache, policy)
    return _make


@pytest.fixture
def backend_error():
    return BackendError("storage is down")
