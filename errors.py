from __future__ import annotations

from typing import Optional


class PicShelfError(Exception):
    """Base class for failures that map onto an HTTP status."""

    status_code = 500
    public_message = "internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.public_message}


class ValidationError(PicShelfError):
    """User-correctable input problem; the message is shown to the caller."""

    status_code = 400

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message}


class AuthenticationError(PicShelfError):
    """Missing, expired or invalid credential. Never says which."""

    status_code = 401
    public_message = "unauthorized"

    def __init__(self, message: Optional[str] = None) -> None:
        # The reason is kept for logs only.
        super().__init__(message)


class AuthorizationError(PicShelfError):
    status_code = 403
    public_message = "forbidden"

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message}


class NotFoundError(PicShelfError):
    status_code = 404
    public_message = "not found"

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message}


class StorageError(PicShelfError):
    """Blob store or catalog I/O failure. Detail stays in the server log."""

    status_code = 500
    public_message = "storage operation failed, please retry later"


class ConsistencyRepairFailure(StorageError):
    """A compensating blob delete failed. Logged, never surfaced."""

    def __init__(self, storage_key: str, cause: BaseException) -> None:
        super().__init__(f"compensation failed for {storage_key}: {cause}")
        self.storage_key = storage_key
        self.cause = cause


class ConfigurationError(PicShelfError):
    """Required configuration is missing or unsafe."""

    public_message = "server misconfigured"
