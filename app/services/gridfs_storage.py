import re
from datetime import timezone
from typing import Any, AsyncIterator, Dict, List

import gridfs
from fastapi.concurrency import run_in_threadpool
from gridfs.errors import NoFile
from pymongo import DESCENDING, MongoClient
from pymongo.errors import ConfigurationError, InvalidURI, PyMongoError

import config
from app.errors import BackendError, ConfigError, NotFoundError
from app.models import StorageEntry, StorageMetadata
from app.services.storage_backend import StorageBackend, guess_content_type, join_path
from logger_config import setup_logger

logger = setup_logger()

DEFAULT_DATABASE = "static"
DEFAULT_BUCKET = "fs"


def _metadata_from_file(doc: Dict[str, Any]) -> StorageMetadata:
    upload_date = doc.get("uploadDate")
    if upload_date is not None and upload_date.tzinfo is None:
        upload_date = upload_date.replace(tzinfo=timezone.utc)
    extra = doc.get("metadata") or {}
    return StorageMetadata(
        is_dir=False,
        size=int(doc.get("length", 0)),
        content_type=extra.get("contentType") or doc.get("contentType") or guess_content_type(doc["filename"]),
        last_modified=upload_date,
        cache_control=extra.get("cacheControl"),
        content_encoding=extra.get("contentEncoding"),
    )


class GridFsStorage(StorageBackend):
    """Serve files stored in a MongoDB GridFS bucket.

    File names are treated as ``/``-separated paths; a directory exists
    whenever some file name starts with ``<dir>/``.
    """

    def __init__(self, connection_string: str, bucket_name: str = DEFAULT_BUCKET, client: Any = None):
        try:
            self._client = client or MongoClient(connection_string)
            database = self._client.get_default_database(default=DEFAULT_DATABASE)
        except (ConfigurationError, InvalidURI) as e:
            raise ConfigError(f"Invalid mongodb connection string: {e}") from e
        self._files = database[f"{bucket_name}.files"]
        self._bucket = gridfs.GridFSBucket(database, bucket_name=bucket_name)
        self.chunk_size = config.STREAM_CHUNK_SIZE
        logger.info(f"Using GridFS storage database={database.name} bucket={bucket_name}")

    def _translate(self, error: Exception, path: str) -> Exception:
        if isinstance(error, NoFile):
            return NotFoundError(path)
        return BackendError(f"GridFS error for {path}: {error}")

    def _latest(self, filename: str):
        return self._files.find_one({"filename": filename}, sort=[("uploadDate", DESCENDING)])

    def _prefix_query(self, path: str) -> Dict[str, Any]:
        prefix = path.strip("/")
        if not prefix:
            return {}
        return {"filename": {"$regex": f"^{re.escape(prefix + '/')}"}}

    def _stat_sync(self, path: str) -> StorageMetadata:
        path = path.strip("/")
        if not path:
            return StorageMetadata(is_dir=True)
        doc = self._latest(path)
        if doc is not None:
            return _metadata_from_file(doc)
        if self._files.find_one(self._prefix_query(path), projection={"_id": 1}) is not None:
            return StorageMetadata(is_dir=True)
        raise NotFoundError(path)

    def _list_sync(self, path: str) -> List[StorageEntry]:
        prefix = path.strip("/")
        start = len(prefix) + 1 if prefix else 0
        files: Dict[str, StorageEntry] = {}
        directories = set()

        cursor = self._files.find(self._prefix_query(path), sort=[("uploadDate", DESCENDING)])
        for doc in cursor:
            rest = doc["filename"][start:]
            name, slash, _ = rest.partition("/")
            if not name:
                continue
            if slash:
                directories.add(name)
            elif name not in files:
                files[name] = StorageEntry(name=name, path=join_path(prefix, name), metadata=_metadata_from_file(doc))

        if prefix and not files and not directories:
            raise NotFoundError(path)

        entries = list(files.values())
        for name in sorted(directories - set(files)):
            entries.append(StorageEntry(name=name, path=join_path(prefix, name), metadata=StorageMetadata(is_dir=True)))
        return entries

    def _read_sync(self, path: str) -> bytes:
        with self._bucket.open_download_stream_by_name(path.strip("/")) as grid_out:
            return grid_out.read()

    async def stat(self, path: str) -> StorageMetadata:
        try:
            return await run_in_threadpool(self._stat_sync, path)
        except PyMongoError as e:
            raise self._translate(e, path) from e

    async def list(self, path: str) -> List[StorageEntry]:
        try:
            return await run_in_threadpool(self._list_sync, path)
        except PyMongoError as e:
            raise self._translate(e, path) from e

    async def read(self, path: str) -> bytes:
        try:
            return await run_in_threadpool(self._read_sync, path)
        except (NoFile, PyMongoError) as e:
            raise self._translate(e, path) from e

    async def open_stream(self, path: str) -> AsyncIterator[bytes]:
        try:
            grid_out = await run_in_threadpool(self._bucket.open_download_stream_by_name, path.strip("/"))
        except (NoFile, PyMongoError) as e:
            raise self._translate(e, path) from e

        try:
            while True:
                chunk = await run_in_threadpool(grid_out.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        except PyMongoError as e:
            raise self._translate(e, path) from e
        finally:
            grid_out.close()

    async def close(self) -> None:
        await run_in_threadpool(self._client.close)
