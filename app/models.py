from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import AsyncIterator, Optional, Tuple

Header = Tuple[str, str]


@dataclass(frozen=True)
class StorageMetadata:
    """Metadata a backend reports for one path."""
    is_dir: bool
    size: int = 0
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    cache_control: Optional[str] = None
    content_encoding: Optional[str] = None

    @property
    def modified_timestamp(self) -> Optional[int]:
        """Last modification as whole epoch seconds, or None if unknown."""
        if self.last_modified is None:
            return None
        return int(self.last_modified.timestamp())


@dataclass(frozen=True)
class StorageEntry:
    """One element of a directory listing."""
    name: str
    path: str
    metadata: StorageMetadata


@dataclass(frozen=True)
class ResolvedResponse:
    """Headers plus either a buffered body or a lazily read stream.

    Header names are unique case-insensitively; ``with_header`` replaces an
    existing header of the same name instead of adding a duplicate.
    """
    headers: Tuple[Header, ...] = ()
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = field(default=None, compare=False)

    def __post_init__(self):
        if self.body is not None and self.stream is not None:
            raise ValueError("a response has either a body or a stream, not both")

    @property
    def is_buffered(self) -> bool:
        return self.body is not None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def with_header(self, name: str, value: str) -> "ResolvedResponse":
        lowered = name.lower()
        headers = [(k, v) for k, v in self.headers if k.lower() != lowered]
        headers.append((name, value))
        return replace(self, headers=tuple(headers))


@dataclass(frozen=True)
class ServePolicy:
    """Per-request serving policy derived from the process settings."""
    index_filename: str = "index.html"
    autoindex_enabled: bool = False
    default_cache_control: str = "public, max-age=31536000, immutable"
    html_substitutions: Tuple[Tuple[bytes, bytes], ...] = ()
    fallback_html_suffix_enabled: bool = False
    fallback_index_enabled: bool = False
    small_body_threshold_bytes: int = 30 * 1024
    cache_capacity: int = 1024
    cache_ttl: float = 600.0
