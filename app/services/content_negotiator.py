"""Response header derivation from backend metadata and serving policy."""

import mimetypes
from typing import Optional, Tuple

from app.models import Header, ServePolicy, StorageMetadata

DEFAULT_CONTENT_TYPE = "application/octet-stream"
NO_CACHE = "no-cache"


def content_type_for(path: str, metadata: StorageMetadata) -> str:
    """Backend declared type, else a guess from the file extension."""
    if metadata.content_type:
        return metadata.content_type
    guessed, _ = mimetypes.guess_type(path)
    return guessed or DEFAULT_CONTENT_TYPE


def is_html_type(content_type: str) -> bool:
    return "text/html" in content_type


def cache_control_for(metadata: StorageMetadata, policy: ServePolicy, is_html: bool) -> str:
    if is_html:
        return NO_CACHE
    return metadata.cache_control or policy.default_cache_control


def etag_for(metadata: StorageMetadata) -> Optional[str]:
    """Backend ETag, else a weak one built from size and modification time."""
    if metadata.etag:
        return metadata.etag
    timestamp = metadata.modified_timestamp
    if timestamp is not None and timestamp > 0:
        return f'W/"{metadata.size:x}-{timestamp:x}"'
    return None


def negotiate(path: str, metadata: StorageMetadata, policy: ServePolicy) -> Tuple[Tuple[Header, ...], bool]:
    """Build the response headers for a file. Returns (headers, is_html)."""
    content_type = content_type_for(path, metadata)
    is_html = is_html_type(content_type)

    headers = [
        ("Content-Type", content_type),
        ("Cache-Control", cache_control_for(metadata, policy, is_html)),
    ]
    etag = etag_for(metadata)
    if etag:
        headers.append(("ETag", etag))
    if metadata.content_encoding:
        headers.append(("Content-Encoding", metadata.content_encoding))
    return tuple(headers), is_html
