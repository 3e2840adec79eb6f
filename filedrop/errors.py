class FileDropError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "request failed"):
        super().__init__(message)
        self.message = message


class ValidationError(FileDropError):
    status_code = 400
    code = "bad_request"


class UnauthorizedError(FileDropError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(FileDropError):
    status_code = 404
    code = "not_found"


class ConflictError(FileDropError):
    """Short-code generation kept colliding; the creation attempt is abandoned."""

    status_code = 409
    code = "conflict"


class ExpiredError(FileDropError):
    status_code = 410
    code = "expired"


class RateLimitedError(FileDropError):
    status_code = 429
    code = "rate_limited"


class LockedOutError(FileDropError):
    status_code = 429
    code = "locked_out"


class BackendUnavailableError(FileDropError):
    """Storage is not configured, or a call against it failed."""

    status_code = 503
    code = "backend_unavailable"


class StorageError(BackendUnavailableError):
    pass


class ShortCodeCollisionError(Exception):
    """Raised by the record store when an insert hits the short-code unique index."""
