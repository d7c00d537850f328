"""Custom exception hierarchy for OpenCTI lookup.

Security: Exception messages are designed to be safe for client exposure
where appropriate. Internal details should only be logged, never returned.
"""

from __future__ import annotations


class OpenCTILookupError(Exception):
    """Base exception for the OpenCTI lookup connector.

    All custom exceptions inherit from this class, allowing callers to
    catch all connector errors with a single except clause.
    """

    def __init__(self, message: str, *, safe_message: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Full error message (for logging)
            safe_message: Client-safe message (no internal details)
        """
        super().__init__(message)
        self._safe_message = safe_message or message

    @property
    def safe_message(self) -> str:
        """Return client-safe error message."""
        return self._safe_message


class ConfigurationError(OpenCTILookupError):
    """Configuration or credential error.

    Raised when:
    - OpenCTI token is missing or invalid
    - Token file has insecure permissions
    - OpenCTI URL is invalid
    - Deletion permissions name an unknown item kind
    """

    pass


class ConnectionError(OpenCTILookupError):
    """OpenCTI connection failure.

    Raised when:
    - Cannot connect to OpenCTI
    - Circuit breaker is open
    - Network errors after retries are exhausted
    """

    def __init__(self, message: str) -> None:
        # Never expose connection details to clients
        super().__init__(
            message,
            safe_message="Unable to connect to OpenCTI. Check server status."
        )


class ValidationError(OpenCTILookupError):
    """Input validation failure.

    These errors are generally safe to return to clients as they
    describe input problems, not internal state.
    """

    pass


class ClassificationError(ValidationError):
    """Entity has no supported canonical type."""

    def __init__(self, value: str, entity_type: str | None) -> None:
        super().__init__(
            f"Unsupported entity type '{entity_type}' for value of length {len(value)}"
        )
        self.value = value
        self.entity_type = entity_type


class QueryError(OpenCTILookupError):
    """Query execution failure.

    Raised when:
    - GraphQL query or mutation fails
    - Unexpected response format
    - API errors
    """

    def __init__(self, message: str) -> None:
        # Never expose query details to clients
        super().__init__(
            message,
            safe_message="Query failed. Check server logs for details."
        )


class PermissionDeniedError(OpenCTILookupError):
    """The operation is not permitted.

    Raised when:
    - OpenCTI rejects the call as FORBIDDEN
    - Deletion is not enabled for the item kind
    - An edit touches a record owned by another organization
    """

    pass


class ItemNotFoundError(OpenCTILookupError):
    """Indicator or observable lookup by id returned nothing."""

    def __init__(self, kind: str, item_id: str) -> None:
        message = f"No {kind} with id {item_id} found"
        super().__init__(message, safe_message=message)
        self.kind = kind
        self.item_id = item_id


class RateLimitError(OpenCTILookupError):
    """Rate limit exceeded for write operations."""

    def __init__(self, wait_seconds: float, limit_type: str = "write") -> None:
        message = f"Rate limit exceeded for {limit_type}. Wait {wait_seconds:.1f}s."
        super().__init__(message, safe_message=message)
        self.wait_seconds = wait_seconds
        self.limit_type = limit_type
