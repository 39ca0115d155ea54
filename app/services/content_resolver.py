"""Fallback-chain resolution of a request path into a response.

For every request the resolver builds an ordered list of candidate paths
(the exact path, optionally ``<path>.html`` and optionally the index file)
and tries them one by one. A candidate that does not exist moves on to the
next one; any other failure stops the chain.
"""

from typing import List
from urllib.parse import unquote

from app.errors import InvalidPathError, NotFoundError, is_not_found
from app.models import ResolvedResponse, ServePolicy
from app.services.autoindex import render_autoindex
from app.services.content_negotiator import NO_CACHE, negotiate
from app.services.html_filter import apply_html_substitutions
from app.services.response_cache import ResponseCache
from app.services.storage_backend import StorageBackend, join_path
from logger_config import setup_logger

logger = setup_logger()


def decode_request_path(raw_path: str) -> str:
    """Strip the leading slash and percent-decode once.

    Paths that do not decode to valid UTF-8 are used as they are.
    """
    path = raw_path[1:] if raw_path.startswith("/") else raw_path
    try:
        return unquote(path, errors="strict")
    except UnicodeDecodeError:
        return path


def normalize_path(path: str) -> str:
    """Collapse ``.``, ``..`` and empty segments.

    Raises InvalidPathError when ``..`` would climb above the root.
    """
    segments: List[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not segments:
                raise InvalidPathError(path)
            segments.pop()
        else:
            segments.append(segment)
    return "/".join(segments)


class ContentResolver:
    """Turns logical request paths into responses using storage and cache."""

    def __init__(self, storage: StorageBackend, cache: ResponseCache, policy: ServePolicy):
        self.storage = storage
        self.cache = cache
        self.policy = policy

    def candidates(self, path: str) -> List[str]:
        """Paths to try for a decoded request path, in order."""
        candidates = [path]
        if self.policy.fallback_html_suffix_enabled:
            candidates.append(f"{path}.html")
        if self.policy.fallback_index_enabled:
            candidates.append(self.policy.index_filename)
        return candidates

    async def resolve(self, request_path: str) -> ResolvedResponse:
        """Resolve a request path, trying each candidate until one exists.

        Raises NotFoundError naming ``request_path`` when no candidate exists.
        Any other error is raised as soon as it happens.
        """
        path = decode_request_path(request_path)

        for candidate in self.candidates(path):
            try:
                response = await self.resolve_candidate(candidate)
            except Exception as e:
                if is_not_found(e):
                    logger.debug(f"Candidate {candidate!r} not found for {request_path!r}")
                    continue
                raise
            return response

        raise NotFoundError(request_path)

    async def resolve_candidate(self, candidate: str) -> ResolvedResponse:
        path = normalize_path(candidate)

        cached = self.cache.get(path)
        if cached is not None:
            logger.debug(f"Cache hit for {path!r}")
            return cached

        metadata = await self.storage.stat(path)
        if metadata.is_dir:
            if self.policy.autoindex_enabled:
                body = await render_autoindex(self.storage, path)
                return ResolvedResponse(
                    headers=(("Content-Type", "text/html"), ("Cache-Control", NO_CACHE)),
                    body=body,
                )
            if not self.policy.index_filename:
                raise NotFoundError(candidate)
            path = join_path(path, self.policy.index_filename)
            metadata = await self.storage.stat(path)
            if metadata.is_dir:
                raise NotFoundError(path)

        headers, is_html = negotiate(path, metadata, self.policy)

        if is_html or metadata.size < self.policy.small_body_threshold_bytes:
            body = await self.storage.read(path)
        else:
            logger.debug(f"Streaming {path!r} ({metadata.size} bytes)")
            return ResolvedResponse(headers=headers, stream=self.storage.open_stream(path))

        if is_html:
            body = apply_html_substitutions(body, self.policy.html_substitutions)
            return ResolvedResponse(headers=headers, body=body)

        response = ResolvedResponse(headers=headers, body=body)
        self.cache.put(path, response)
        return response
