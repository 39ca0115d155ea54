"""Storage backend interface shared by every concrete store.

Paths handed to a backend are logical, ``/``-separated and relative to the
backend root (``""`` is the root itself). The resolver normalizes them before
any call, so backends never see ``..`` segments.
"""

import abc
import mimetypes
from typing import AsyncIterator, List, Optional

from app.models import StorageEntry, StorageMetadata


class StorageBackend(abc.ABC):
    """Read-only stat/list/read/stream access to one configured store."""

    @abc.abstractmethod
    async def stat(self, path: str) -> StorageMetadata:
        """Return metadata for path. Raises NotFoundError if it does not exist."""

    @abc.abstractmethod
    async def list(self, path: str) -> List[StorageEntry]:
        """Return the entries of a directory."""

    @abc.abstractmethod
    async def read(self, path: str) -> bytes:
        """Return the whole content of a file."""

    @abc.abstractmethod
    def open_stream(self, path: str) -> AsyncIterator[bytes]:
        """Return an async iterator over the content of a file.

        Nothing is read until the iterator is consumed.
        """

    async def close(self) -> None:
        """Release clients and connections held by the backend."""


def guess_content_type(path: str) -> Optional[str]:
    content_type, _ = mimetypes.guess_type(path)
    return content_type


def join_path(directory: str, name: str) -> str:
    """Join a logical directory path and a child name without doubling slashes."""
    directory = directory.strip("/")
    return f"{directory}/{name}" if directory else name


def parent_and_name(path: str):
    """Split a logical path into (parent, name)."""
    parent, _, name = path.strip("/").rpartition("/")
    return parent, name
