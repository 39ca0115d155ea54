import mimetypes
import os
import stat as stat_module
from datetime import datetime, timezone
from typing import AsyncIterator, List

import aiofiles
import aiofiles.os

import config
from app.errors import BackendError, InvalidPathError, NotFoundError
from app.models import StorageEntry, StorageMetadata
from app.services.storage_backend import StorageBackend, join_path
from logger_config import setup_logger

logger = setup_logger()


def _metadata_from_stat(path: str, st: os.stat_result) -> StorageMetadata:
    is_dir = stat_module.S_ISDIR(st.st_mode)
    if is_dir:
        return StorageMetadata(
            is_dir=True,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    content_type, encoding = mimetypes.guess_type(path)
    return StorageMetadata(
        is_dir=False,
        size=st.st_size,
        content_type=content_type,
        last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        content_encoding=encoding,
    )


class FileSystemStorage(StorageBackend):
    """Serve files from a local directory."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.chunk_size = config.STREAM_CHUNK_SIZE
        logger.info(f"Using filesystem storage rooted at {self.root}")
        if not os.path.isdir(self.root):
            logger.warning(f"Storage root {self.root} is not a directory, every request will be not found")

    def _full_path(self, path: str) -> str:
        if "\x00" in path:
            raise InvalidPathError(path)
        joined = os.path.normpath(os.path.join(self.root, path.lstrip("/")))
        # The joined path must not shrink below the root nor leave it
        if len(joined) < len(self.root) or os.path.commonpath([self.root, joined]) != self.root:
            raise InvalidPathError(path)
        return joined

    async def stat(self, path: str) -> StorageMetadata:
        full_path = self._full_path(path)
        try:
            st = await aiofiles.os.stat(full_path)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise NotFoundError(path) from e
        except OSError as e:
            raise BackendError(f"Cannot stat {path}: {e}") from e
        return _metadata_from_stat(full_path, st)

    async def list(self, path: str) -> List[StorageEntry]:
        full_path = self._full_path(path)
        try:
            names = await aiofiles.os.listdir(full_path)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise NotFoundError(path) from e
        except OSError as e:
            raise BackendError(f"Cannot list {path}: {e}") from e

        entries = []
        for name in names:
            child = os.path.join(full_path, name)
            try:
                st = await aiofiles.os.stat(child)
            except FileNotFoundError:
                # Removed between listdir and stat, or a dangling symlink
                continue
            except OSError as e:
                raise BackendError(f"Cannot stat {child}: {e}") from e
            entries.append(StorageEntry(
                name=name,
                path=join_path(path, name),
                metadata=_metadata_from_stat(child, st),
            ))
        return entries

    async def read(self, path: str) -> bytes:
        full_path = self._full_path(path)
        try:
            async with aiofiles.open(full_path, 'rb') as f:
                return await f.read()
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError) as e:
            raise NotFoundError(path) from e
        except OSError as e:
            raise BackendError(f"Cannot read {path}: {e}") from e

    async def open_stream(self, path: str) -> AsyncIterator[bytes]:
        full_path = self._full_path(path)
        try:
            f = await aiofiles.open(full_path, 'rb')
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError) as e:
            raise NotFoundError(path) from e
        except OSError as e:
            raise BackendError(f"Cannot open {path}: {e}") from e

        try:
            while chunk := await f.read(self.chunk_size):
                yield chunk
        finally:
            await f.close()
