"""
Error types for the wiki engine.

This module defines all exception types raised by the engine:
- WikiError: Base exception
- NotFoundError: A requested item or version does not exist
- InvalidKeyError: A stored key cannot be parsed
- ValidationError: A request or identifier is malformed
- IdMismatchError: An item was attached to the wrong entity
- UpstreamTransientError: A retryable store or upstream failure
- StoreError: A non-retryable store failure
- NotLoadedError / NotSelectedError: Entity state errors

Invariants:
    - All errors inherit from WikiError
    - Every error carries a stable code and a details mapping
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any


class WikiError(Exception):
    """Base exception for all wiki engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code_default = "WIKI_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code_default
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error responses."""
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(WikiError):
    """An item, version or block could not be found.

    Raised when:
    - The latest pointer of a document or block is missing
    - A concrete version was never written
    - A build references a block that is not loaded
    """

    code_default = "NOT_FOUND"


class InvalidKeyError(WikiError):
    """A stored partition or sort key does not match the key schema.

    Raised when a raw item is decoded and its keys cannot be parsed, or a
    latest pointer lacks the explicit version attribute. Callers log these
    loudly; they indicate corrupt data.
    """

    code_default = "INVALID_KEY"


class ValidationError(WikiError):
    """A request, identifier or attribute change was rejected.

    Raised when:
    - A request payload fails model validation
    - A KeyInfo name change is attempted
    - A Droplet is malformed (only when validation is asked to throw)
    """

    code_default = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        errors: list[str] | None = None,
    ) -> None:
        details = dict(details or {})
        if errors:
            details["errors"] = errors
        super().__init__(message, code=code, details=details)
        self.errors = errors or []


class IdMismatchError(WikiError):
    """An item or build was set on an entity with a different id."""

    code_default = "ID_MISMATCH"

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Item id {actual} does not belong to entity {expected}",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class UpstreamTransientError(WikiError):
    """A retryable failure of the key-value store or the relational upstream.

    Raised when:
    - The table throttles or returns a server error
    - The endpoint cannot be reached
    - The aggregate source is temporarily unavailable
    - A bounded batch write runs out of attempts
    """

    code_default = "UPSTREAM_TRANSIENT"


class StoreError(WikiError):
    """A non-retryable key-value store failure."""

    code_default = "STORE_ERROR"


class NotLoadedError(WikiError):
    """The latest version was requested before it was loaded."""

    code_default = "LATEST_NOT_LOADED"


class NotSelectedError(WikiError):
    """The selected version was requested before any version was selected."""

    code_default = "NOT_SELECTED"
