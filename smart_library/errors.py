"""Error taxonomy shared by the core operations and the HTTP layer.

Every error carries the HTTP status it maps to; the API installs a single
handler that turns a ``LibraryError`` into a JSON response.
"""

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Base class for errors raised by library operations."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class UnauthorizedError(LibraryError):
    """Missing, invalid or expired credential, or inactive account."""
    status_code = 401


class ForbiddenError(LibraryError):
    """Role or ownership mismatch."""
    status_code = 403


class NotFoundError(LibraryError):
    """Book, issue or user absent or soft-deleted."""
    status_code = 404


class ConflictError(LibraryError):
    """Business rule violation: no copies, duplicate issue, already returned."""
    status_code = 409


class ValidationError(LibraryError):
    """Malformed input, e.g. inconsistent copy counts."""
    status_code = 400


class UpstreamError(LibraryError):
    """Third-party AI failure.

    ``kind`` is one of ``auth``, ``billing``, ``rate_limited`` or
    ``transient``; only the last two are worth retrying.
    """

    STATUS_BY_KIND = {
        "auth": 502,
        "billing": 402,
        "rate_limited": 429,
        "transient": 503,
    }
    RETRYABLE_KINDS = ("rate_limited", "transient")

    def __init__(
        self,
        message: str,
        kind: str = "transient",
        retry_after: Optional[int] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message, details)
        if kind not in self.STATUS_BY_KIND:
            raise ValueError(f"Unknown upstream error kind: {kind}")
        self.kind = kind
        self.retry_after = retry_after if self.retryable else None

    @property
    def retryable(self) -> bool:
        return self.kind in self.RETRYABLE_KINDS

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["kind"] = self.kind
        payload["retryable"] = self.retryable
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload
