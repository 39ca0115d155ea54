from functools import partial
from typing import Any, AsyncIterator, Callable, List, Optional

from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

import config
from app.errors import BackendError, NotFoundError
from app.models import StorageEntry, StorageMetadata
from app.services.storage_backend import StorageBackend, guess_content_type
from logger_config import setup_logger

logger = setup_logger()

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


async def _run_sync(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await run_in_threadpool(func, *args, **kwargs)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3Storage(StorageBackend):
    """Serve objects from an S3 compatible bucket."""

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        root: str = "",
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client: Any = None,
    ):
        self.endpoint = endpoint
        self.bucket = bucket
        self.root = root.strip("/")
        self.chunk_size = config.STREAM_CHUNK_SIZE
        self._client = client or self._build_client(region, access_key_id, secret_access_key)
        logger.info(f"Using object storage {endpoint} bucket={bucket} root=/{self.root}")

    def _build_client(self, region, access_key_id, secret_access_key):
        session = Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
        return session.client(
            "s3",
            endpoint_url=self.endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )

    def _key(self, path: str) -> str:
        path = path.strip("/")
        if self.root and path:
            return f"{self.root}/{path}"
        return self.root or path

    def _prefix(self, path: str) -> str:
        key = self._key(path)
        return f"{key}/" if key else ""

    def _translate(self, error: Exception, path: str) -> Exception:
        if isinstance(error, ClientError) and _error_code(error) in NOT_FOUND_CODES:
            return NotFoundError(path)
        return BackendError(f"Object storage error for {path}: {error}")

    async def _has_children(self, path: str) -> bool:
        result = await _run_sync(
            partial(self._client.list_objects_v2, Bucket=self.bucket, Prefix=self._prefix(path), MaxKeys=1)
        )
        return result.get("KeyCount", len(result.get("Contents", []))) > 0

    async def stat(self, path: str) -> StorageMetadata:
        if not path.strip("/"):
            return StorageMetadata(is_dir=True)

        try:
            head = await _run_sync(partial(self._client.head_object, Bucket=self.bucket, Key=self._key(path)))
        except ClientError as e:
            if _error_code(e) not in NOT_FOUND_CODES:
                raise self._translate(e, path) from e
            head = None
        except BotoCoreError as e:
            raise self._translate(e, path) from e

        if head is not None:
            return StorageMetadata(
                is_dir=False,
                size=int(head.get("ContentLength", 0)),
                content_type=head.get("ContentType") or guess_content_type(path),
                etag=head.get("ETag"),
                last_modified=head.get("LastModified"),
                cache_control=head.get("CacheControl"),
                content_encoding=head.get("ContentEncoding"),
            )

        # No object under the exact key, it is a directory if anything lives below it
        try:
            if await self._has_children(path):
                return StorageMetadata(is_dir=True)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, path) from e
        raise NotFoundError(path)

    async def list(self, path: str) -> List[StorageEntry]:
        prefix = self._prefix(path)
        paginator = self._client.get_paginator("list_objects_v2")

        def collect():
            pages = paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/")
            return list(pages)

        try:
            pages = await _run_sync(collect)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, path) from e

        entries = []
        for page in pages:
            for common in page.get("CommonPrefixes", []):
                name = common["Prefix"][len(prefix):].rstrip("/")
                entries.append(StorageEntry(
                    name=name,
                    path=self._relative(common["Prefix"].rstrip("/")),
                    metadata=StorageMetadata(is_dir=True),
                ))
            for item in page.get("Contents", []):
                key = item["Key"]
                if key == prefix:
                    continue
                name = key[len(prefix):]
                entries.append(StorageEntry(
                    name=name,
                    path=self._relative(key),
                    metadata=StorageMetadata(
                        is_dir=False,
                        size=int(item.get("Size", 0)),
                        content_type=guess_content_type(name),
                        etag=item.get("ETag"),
                        last_modified=item.get("LastModified"),
                    ),
                ))
        return entries

    def _relative(self, key: str) -> str:
        if self.root and key.startswith(self.root + "/"):
            return key[len(self.root) + 1:]
        return key

    async def _get_object(self, path: str):
        try:
            return await _run_sync(partial(self._client.get_object, Bucket=self.bucket, Key=self._key(path)))
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, path) from e

    async def read(self, path: str) -> bytes:
        result = await self._get_object(path)
        body = result["Body"]
        try:
            return await _run_sync(body.read)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, path) from e
        finally:
            await _run_sync(body.close)

    async def open_stream(self, path: str) -> AsyncIterator[bytes]:
        result = await self._get_object(path)
        body = result["Body"]
        try:
            while True:
                chunk = await _run_sync(body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await _run_sync(body.close)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await _run_sync(close)
