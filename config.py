"""Configuration settings for the static file server."""

import os
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from app.models import ServePolicy

# Storage
STATIC_PATH = "/static"
STREAM_CHUNK_SIZE = 64 * 1024
SMALL_BODY_THRESHOLD = 30 * 1024  # 30KB, smaller bodies are buffered

# Server
LISTEN_ADDR = "0.0.0.0:3000"
TIMEOUT = 30.0
COMPRESS_MIN_LENGTH = 256

# Serving policy
INDEX_FILE = "index.html"
CACHE_CONTROL = "public, max-age=31536000, immutable"

# Response cache
CACHE_SIZE = 1024
CACHE_TTL = 10 * 60.0

# Backend failure monitor
MONITOR_FAILURE_THRESHOLD = 5
MONITOR_WINDOW_SECONDS = 60

# Logging
LOG_LEVEL = "INFO"
LOG_DIR = "logs"

HTML_REPLACE_PREFIX = "STATIC_HTML_REPLACE_"
RESPONSE_HEADER_PREFIX = "STATIC_RESPONSE_HEADER_"

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "m": 60.0,
    "min": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
_HEADER_NAME = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")


def parse_duration(value: str) -> Optional[float]:
    """Parse a duration such as ``30s``, ``10m`` or ``1h30m`` into seconds.

    Returns None when the value is empty or not a valid duration.
    """
    text = value.strip().lower().replace(" ", "")
    if not text:
        return None

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            return None
        unit = _DURATION_UNITS.get(match.group(2))
        if unit is None:
            return None
        total += float(match.group(1)) * unit
        position = match.end()

    if position != len(text):
        return None
    return total


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return default


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _parse_seconds(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    parsed = parse_duration(value)
    return default if parsed is None else parsed


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration, built once at startup."""
    static_path: str = STATIC_PATH
    listen_addr: str = LISTEN_ADDR
    timeout: float = TIMEOUT
    compress_min_length: int = COMPRESS_MIN_LENGTH
    index_file: str = INDEX_FILE
    autoindex: bool = False
    cache_control_default: str = CACHE_CONTROL
    fallback_suffix_enabled: bool = False
    fallback_index_enabled: bool = False
    html_substitutions: Tuple[Tuple[bytes, bytes], ...] = ()
    response_header_overrides: Tuple[Tuple[str, str], ...] = ()
    cache_capacity: int = CACHE_SIZE
    cache_ttl: float = CACHE_TTL
    small_body_threshold: int = SMALL_BODY_THRESHOLD
    log_level: str = LOG_LEVEL
    log_dir: str = LOG_DIR

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Create Settings from environment variables."""
        env = os.environ if environ is None else environ

        html_substitutions = []
        response_headers: Dict[str, str] = {}
        for key, value in env.items():
            if key.startswith(HTML_REPLACE_PREFIX):
                pattern = key[len(HTML_REPLACE_PREFIX):]
                html_substitutions.append((pattern.encode(), value.encode()))
            elif key.startswith(RESPONSE_HEADER_PREFIX):
                name = key[len(RESPONSE_HEADER_PREFIX):].replace("_", "-")
                if _HEADER_NAME.match(name) and value.isascii():
                    response_headers[name] = value

        return cls(
            static_path=env.get("STATIC_PATH", STATIC_PATH),
            listen_addr=env.get("STATIC_LISTEN_ADDR", LISTEN_ADDR),
            timeout=_parse_seconds(env.get("STATIC_TIMEOUT"), TIMEOUT),
            compress_min_length=_parse_int(env.get("STATIC_COMPRESS_MIN_LENGTH"), COMPRESS_MIN_LENGTH),
            index_file=env.get("STATIC_INDEX_FILE", INDEX_FILE),
            autoindex=_parse_bool(env.get("STATIC_AUTOINDEX"), False),
            cache_control_default=env.get("STATIC_CACHE_CONTROL", CACHE_CONTROL),
            fallback_suffix_enabled=_parse_bool(env.get("STATIC_FALLBACK_HTML_404"), False),
            fallback_index_enabled=_parse_bool(env.get("STATIC_FALLBACK_INDEX_404"), False),
            html_substitutions=tuple(html_substitutions),
            response_header_overrides=tuple(response_headers.items()),
            cache_capacity=_parse_int(env.get("STATIC_CACHE_SIZE"), CACHE_SIZE),
            cache_ttl=_parse_seconds(env.get("STATIC_CACHE_TTL"), CACHE_TTL),
            log_level=env.get("LOG_LEVEL", LOG_LEVEL).upper(),
            log_dir=env.get("STATIC_LOG_DIR", LOG_DIR),
        )

    @property
    def host_port(self) -> Tuple[str, int]:
        """Split ``listen_addr`` into host and port for uvicorn."""
        host, _, port = self.listen_addr.rpartition(":")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError:
            return "0.0.0.0", 3000

    def serve_policy(self) -> ServePolicy:
        return ServePolicy(
            index_filename=self.index_file,
            autoindex_enabled=self.autoindex,
            default_cache_control=self.cache_control_default,
            html_substitutions=self.html_substitutions,
            fallback_html_suffix_enabled=self.fallback_suffix_enabled,
            fallback_index_enabled=self.fallback_index_enabled,
            small_body_threshold_bytes=self.small_body_threshold,
            cache_capacity=self.cache_capacity,
            cache_ttl=self.cache_ttl,
        )
