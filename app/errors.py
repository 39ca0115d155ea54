"""Error types shared by the storage backends, the resolver and the HTTP layer."""


class StaticServeError(Exception):
    """Base error. ``status_code`` is the HTTP status used at the boundary."""
    status_code = 500


class NotFoundError(StaticServeError):
    """Requested resource does not exist."""
    status_code = 404

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class BackendError(StaticServeError):
    """I/O or protocol failure reported by a storage backend."""
    status_code = 400


class InvalidPathError(StaticServeError):
    """Path would escape the storage root."""
    status_code = 400

    def __init__(self, path: str):
        super().__init__(f"Invalid file: access parent directory is not allowed ({path})")
        self.path = path


class ConfigError(StaticServeError):
    """Malformed configuration, fatal at startup."""
    pass


class RequestTimeoutError(StaticServeError):
    status_code = 408

    def __init__(self):
        super().__init__("Request timed out")


def is_not_found(error: BaseException) -> bool:
    """Return True if the error means "this path does not exist"."""
    return isinstance(error, NotFoundError)
