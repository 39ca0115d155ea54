from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from app.errors import ConfigError
from app.services.storage_backend import StorageBackend
from logger_config import setup_logger

logger = setup_logger()

OBJECT_STORE_SCHEMES = ("http://", "https://")
FTP_SCHEME = "ftp://"
GRIDFS_SCHEME = "mongodb://"


@dataclass
class StorageParams:
    """Connection details parsed from a storage selector URL."""
    scheme: str
    endpoint: str
    host: str
    port: Optional[int]
    path: str
    user: str = ""
    password: Optional[str] = None
    query: Dict[str, str] = field(default_factory=dict)


def parse_storage_url(url: str) -> StorageParams:
    """Split a storage URL into endpoint, root path, credentials and query.

    Raises ConfigError when the URL cannot be used.
    """
    try:
        info = urlsplit(url)
        port = info.port
    except ValueError as e:
        raise ConfigError(f"Invalid storage url {url!r}: {e}") from e

    if not info.scheme or not info.hostname:
        raise ConfigError(f"Invalid storage url {url!r}: scheme and host are required")

    endpoint = f"{info.scheme}://{info.hostname}"
    if port is not None:
        endpoint = f"{endpoint}:{port}"

    return StorageParams(
        scheme=info.scheme,
        endpoint=endpoint,
        host=info.hostname,
        port=port,
        path=unquote(info.path),
        user=unquote(info.username or ""),
        password=unquote(info.password) if info.password is not None else None,
        query=dict(parse_qsl(info.query)),
    )


def _new_s3_storage(url: str) -> StorageBackend:
    from app.services.s3_storage import S3Storage

    params = parse_storage_url(url)
    bucket = params.query.get("bucket")
    if not bucket:
        raise ConfigError(f"Invalid storage url {url!r}: bucket query parameter is required")
    return S3Storage(
        endpoint=params.endpoint,
        bucket=bucket,
        root=params.path,
        region=params.query.get("region"),
        access_key_id=params.query.get("access_key_id"),
        secret_access_key=params.query.get("secret_access_key"),
    )


def _new_ftp_storage(url: str) -> StorageBackend:
    from app.services.ftp_storage import FtpStorage

    params = parse_storage_url(url)
    return FtpStorage(
        host=params.host,
        port=params.port or 21,
        root=params.path or "/",
        user=params.user,
        password=params.password,
    )


def _new_gridfs_storage(url: str) -> StorageBackend:
    from app.services.gridfs_storage import GridFsStorage

    return GridFsStorage(url)


def _new_fs_storage(path: str) -> StorageBackend:
    from app.services.fs_storage import FileSystemStorage

    return FileSystemStorage(path)


def backend_kind(static_path: str) -> str:
    """Name of the backend a storage selector maps to."""
    if static_path.startswith(OBJECT_STORE_SCHEMES):
        return "s3"
    if static_path.startswith(FTP_SCHEME):
        return "ftp"
    if static_path.startswith(GRIDFS_SCHEME):
        return "gridfs"
    return "fs"


_FACTORIES = {
    "s3": _new_s3_storage,
    "ftp": _new_ftp_storage,
    "gridfs": _new_gridfs_storage,
    "fs": _new_fs_storage,
}


def create_storage_backend(static_path: str) -> StorageBackend:
    """Build the storage backend selected by ``static_path``'s scheme."""
    kind = backend_kind(static_path)
    logger.debug(f"Selected {kind} storage backend")
    return _FACTORIES[kind](static_path)
