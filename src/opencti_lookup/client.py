"""OpenCTI API client for indicator and observable lookups.

Thin wrapper over pycti's GraphQL transport. Every call goes through
``_query``, which applies the circuit breaker, retries transient failures
with exponential backoff and maps remote errors onto the connector's
exception hierarchy. Records are returned as parsed wire records; no
defaults are applied here.

Security:
- All GraphQL documents are static; user input only travels as variables
- Connection timeouts prevent hanging
- Write operations are rate limited
"""

from __future__ import annotations

import logging
import random
import threading
import time as time_module
from collections import deque
from enum import Enum
from time import monotonic
from typing import Any

from . import queries
from .config import Config
from .constants import IDENTITY_TYPES
from .errors import (
    ConnectionError,
    ItemNotFoundError,
    OpenCTILookupError,
    PermissionDeniedError,
    QueryError,
    RateLimitError,
)
from .models import (
    RemoteIndicatorRecord,
    RemoteObservableRecord,
    SearchResults,
    connection_nodes,
)
from .validation import (
    MAX_ENTITY_LENGTH,
    MAX_SEARCH_TERM_LENGTH,
    validate_item_kind,
    validate_length,
)

# =============================================================================
# Constants
# =============================================================================

HEALTH_CHECK_TTL = 30  # Seconds to cache health check result
LABEL_SEARCH_LIMIT = 50
IDENTITY_SEARCH_LIMIT = 50

# Transient errors that should trigger retry (network/connection issues)
TRANSIENT_ERRORS = frozenset(
    {
        "ConnectionError",
        "TimeoutError",
        "OSError",
        "RequestException",
        "HTTPError",
        "ConnectionResetError",
        "BrokenPipeError",
        "ConnectionRefusedError",
        "ConnectionAbortedError",
        "SSLError",
        "ProxyError",
        "ChunkedEncodingError",
        "ContentDecodingError",
        "ReadTimeout",
        "ConnectTimeout",
    }
)

# HTTP status codes that indicate transient failures
TRANSIENT_HTTP_CODES = frozenset({408, 429, 500, 502, 503, 504})

# OpenCTI rejects edits to records owned by another organization with this
INCOMPATIBLE_ATTRIBUTE_MESSAGE = "You cannot update incompatible attribute"

logger = logging.getLogger(__name__)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(Enum):
    """Circuit breaker states for type-safe state management."""

    CLOSED = "closed"  # Normal operation, requests go through
    OPEN = "open"  # Service unhealthy, requests fail immediately
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker pattern for failing fast on unhealthy services.

    Prevents every entity of a lookup batch from waiting out a timeout
    when OpenCTI is down. Uses monotonic time to be immune to system
    clock adjustments.
    """

    def __init__(self, failure_threshold: int, recovery_timeout: int) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if monotonic() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
            return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = monotonic()

            if self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit breaker opened",
                    extra={
                        "failures": self._failure_count,
                        "threshold": self.failure_threshold,
                        "recovery_timeout": self.recovery_timeout,
                    },
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """Thread-safe sliding window rate limiter.

    Thread safety: Uses a lock to protect the calls deque from
    concurrent access when used with asyncio.to_thread().
    """

    def __init__(self, max_calls: int, window_seconds: int) -> None:
        self.max_calls = max_calls
        self.window = window_seconds
        self.calls: deque[float] = deque()
        self._lock = threading.Lock()

    def check_and_record(self) -> bool:
        """Atomically check and record if allowed.

        Returns True if call was allowed and recorded, False if rate limited.
        """
        with self._lock:
            now = monotonic()
            self._cleanup_unlocked(now)
            if len(self.calls) < self.max_calls:
                self.calls.append(now)
                return True
            return False

    def wait_time(self) -> float:
        """Return seconds to wait before next call allowed."""
        with self._lock:
            if self.max_calls <= 0:
                return float(self.window)
            now = monotonic()
            self._cleanup_unlocked(now)
            if len(self.calls) < self.max_calls or not self.calls:
                return 0.0
            return max(0.0, self.calls[0] + self.window - now)

    def _cleanup_unlocked(self, now: float) -> None:
        """Remove old calls outside window. Must be called with lock held."""
        cutoff = now - self.window
        while self.calls and self.calls[0] < cutoff:
            self.calls.popleft()


# =============================================================================
# OpenCTI Client
# =============================================================================


class OpenCTIClient:
    """Client for the OpenCTI GraphQL API.

    Thread-safe: blocking calls are made from worker threads via
    ``asyncio.to_thread``; the pycti client is created once under a lock.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._client: Any = None
        self._client_lock = threading.Lock()
        self._write_limiter = RateLimiter(
            max_calls=config.rate_limit_writes, window_seconds=60
        )
        self._health_cache: tuple[bool, float] | None = None
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=config.circuit_breaker_threshold,
            recovery_timeout=config.circuit_breaker_timeout,
        )

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit_breaker.state

    # =========================================================================
    # Transport
    # =========================================================================

    def connect(self) -> Any:
        """Establish connection to OpenCTI (thread-safe).

        Returns cached client if already connected.
        """
        with self._client_lock:
            if self._client is not None:
                return self._client

            try:
                from pycti import OpenCTIApiClient

                self._client = OpenCTIApiClient(
                    self.config.opencti_url,
                    self.config.opencti_token.get_secret_value(),
                    log_level="error",
                    requests_timeout=self.config.timeout_seconds,
                    ssl_verify=self.config.ssl_verify,
                )
                return self._client

            except ImportError as e:
                raise ConnectionError(
                    "pycti not installed. Run: pip install pycti"
                ) from e
            except Exception as e:
                # Don't leak connection details
                logger.error(f"Failed to connect to OpenCTI: {type(e).__name__}")
                raise ConnectionError(f"Connection failed: {type(e).__name__}") from e

    def _check_write_rate_limit(self) -> None:
        if not self._write_limiter.check_and_record():
            raise RateLimitError(self._write_limiter.wait_time(), "write")

    def _is_transient_error(self, error: Exception) -> bool:
        """Check if error is transient and should trigger retry."""
        if type(error).__name__ in TRANSIENT_ERRORS:
            return True

        if hasattr(error, "response") and hasattr(error.response, "status_code"):
            if error.response.status_code in TRANSIENT_HTTP_CODES:
                return True

        if error.__cause__ and type(error.__cause__).__name__ in TRANSIENT_ERRORS:
            return True

        return False

    @staticmethod
    def _is_auth_error(error: Exception) -> bool:
        """Check if error is an authentication/authorization failure.

        Auth errors indicate configuration problems (bad token, wrong
        permissions), not server health. They do not count toward the
        circuit breaker threshold.
        """
        if hasattr(error, "response") and hasattr(error.response, "status_code"):
            if error.response.status_code in (401, 403):
                return True

        if type(error).__name__ in ("AuthenticationError", "AuthorizationError"):
            return True

        error_msg = str(error).lower()
        return any(
            kw in error_msg
            for kw in (
                "unauthorized",
                "forbidden",
                "authentication",
                "auth_required",
                "invalid token",
            )
        )

    @staticmethod
    def _is_forbidden(error: Exception) -> bool:
        message = str(error)
        return "FORBIDDEN" in message or INCOMPATIBLE_ATTRIBUTE_MESSAGE in message

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff (base * 2^attempt, capped) with 10-20% jitter."""
        delay = self.config.retry_base_delay * (2**attempt)
        delay = min(delay, self.config.retry_max_delay)
        jitter = delay * random.uniform(0.1, 0.2)
        return delay + jitter

    def _execute_with_retry(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute function with exponential backoff retry.

        Fails fast when the circuit breaker is open. Only transient errors
        are retried; the last one is re-raised once retries are exhausted.
        """
        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, failing fast")
            raise ConnectionError("OpenCTI unavailable (circuit breaker open)")

        for attempt in range(self.config.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                self._circuit_breaker.record_success()
                return result

            except Exception as e:
                if not self._is_transient_error(e):
                    if not self._is_auth_error(e) and not self._is_forbidden(e):
                        self._circuit_breaker.record_failure()
                    raise

                logger.warning(
                    f"Transient failure (attempt {attempt + 1}/{self.config.max_retries + 1})",
                    extra={
                        "error_type": type(e).__name__,
                        "attempt": attempt + 1,
                        "max_retries": self.config.max_retries,
                    },
                )

                if attempt >= self.config.max_retries:
                    self._circuit_breaker.record_failure()
                    logger.error(
                        "Max retries exhausted",
                        extra={"attempts": attempt + 1, "error_type": type(e).__name__},
                    )
                    raise

                delay = self._calculate_backoff(attempt)
                logger.info(f"Retrying in {delay:.2f}s...")
                time_module.sleep(delay)

        raise ConnectionError("Unexpected retry loop exit")

    def _map_error(self, error: Exception, operation: str) -> OpenCTILookupError:
        """Translate a transport or GraphQL failure into a connector error."""
        if self._is_forbidden(error):
            if INCOMPATIBLE_ATTRIBUTE_MESSAGE in str(error):
                message = "You cannot update items that do not belong to your organization"
            else:
                message = "Insufficient permissions"
            return PermissionDeniedError(f"{operation} failed: {message}", safe_message=message)

        if self._is_auth_error(error):
            return PermissionDeniedError(
                f"{operation} failed: authentication rejected",
                safe_message="Authentication failed: invalid API key or insufficient permissions",
            )

        if self._is_transient_error(error):
            return ConnectionError(f"{operation} failed: {type(error).__name__}")

        return QueryError(f"{operation} failed: {type(error).__name__}: {error}")

    def _query(
        self,
        document: str,
        variables: dict[str, Any] | None = None,
        *,
        operation: str,
        write: bool = False,
    ) -> dict[str, Any]:
        """Run one GraphQL document and return its ``data`` payload.

        Raises:
            ConnectionError: Transport failure or circuit open
            PermissionDeniedError: OpenCTI refused the call
            QueryError: Any other remote failure
            RateLimitError: Too many write operations
        """
        if write:
            self._check_write_rate_limit()

        client = self.connect()
        try:
            response = self._execute_with_retry(client.query, document, variables or {})
        except OpenCTILookupError:
            raise
        except Exception as e:
            logger.error(
                f"{operation} failed",
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            raise self._map_error(e, operation) from e

        if not isinstance(response, dict):
            raise QueryError(f"{operation} failed: unexpected response type")
        return response.get("data") or {}

    # =========================================================================
    # Health
    # =========================================================================

    def is_available(self) -> bool:
        """Check if OpenCTI is reachable and the token is accepted.

        Cached for HEALTH_CHECK_TTL seconds; respects the circuit breaker.
        """
        now = monotonic()

        if not self._circuit_breaker.allow_request():
            return False

        if self._health_cache is not None:
            cached_result, cached_time = self._health_cache
            if now - cached_time < HEALTH_CHECK_TTL:
                return cached_result

        try:
            data = self._query(queries.WHOAMI, operation="Health check")
            result = bool(data.get("me"))
        except OpenCTILookupError:
            result = False

        self._health_cache = (result, monotonic())
        return result

    def clear_health_cache(self) -> None:
        self._health_cache = None

    def validate_startup(self) -> dict[str, Any]:
        """Verify connectivity and token validity at startup.

        Returns:
            dict with ``valid``, ``warnings``, ``errors``, ``user`` and
            ``opencti_version``. Never raises.
        """
        result: dict[str, Any] = {
            "valid": True,
            "warnings": [],
            "errors": [],
            "user": None,
            "opencti_version": None,
        }

        if self.config.opencti_url.lower().startswith("http://"):
            result["warnings"].append(
                "Using unencrypted HTTP. Consider HTTPS for remote servers."
            )

        try:
            data = self._query(queries.WHOAMI, operation="Startup validation")
        except OpenCTILookupError as e:
            result["valid"] = False
            result["errors"].append(f"Connectivity test failed: {e.safe_message}")
            logger.error(
                "Startup validation failed",
                extra={"error_type": type(e).__name__},
            )
            return result

        me = data.get("me") or {}
        if not me:
            result["valid"] = False
            result["errors"].append("Token was not accepted by OpenCTI")
            return result

        result["user"] = me.get("name")
        result["opencti_version"] = (data.get("about") or {}).get("version")
        logger.info(
            "Startup validation passed",
            extra={"opencti_version": result["opencti_version"]},
        )
        return result

    # =========================================================================
    # Lookup
    # =========================================================================

    def search_indicators_and_observables(
        self, value: str, exact_match: bool | None = None
    ) -> SearchResults:
        """Search indicators and observables matching one entity value."""
        validate_length(value, MAX_ENTITY_LENGTH, "entity value")
        if exact_match is None:
            exact_match = self.config.exact_match_searching

        data = self._query(
            queries.SEARCH_INDICATORS_AND_OBSERVABLES,
            queries.search_variables(value, exact_match),
            operation="Indicator and observable search",
        )
        results = SearchResults.from_response(data)
        logger.debug(
            "Search completed",
            extra={
                "indicators": len(results.indicators),
                "observables": len(results.observables),
                "exact_match": exact_match,
            },
        )
        return results

    def get_item(
        self, kind: str, item_id: str
    ) -> RemoteIndicatorRecord | RemoteObservableRecord:
        """Fetch one indicator or observable by id.

        Raises:
            ItemNotFoundError: If no record has this id
        """
        validate_item_kind(kind)
        data = self._query(
            queries.GET_BY_ID_BY_KIND[kind],
            queries.id_filter_variables(item_id),
            operation=f"Get {kind}",
        )
        results = SearchResults.from_response(data)
        records = results.indicators if kind == "indicator" else results.observables
        if not records:
            raise ItemNotFoundError(kind, item_id)
        return records[0]

    # =========================================================================
    # Writes
    # =========================================================================

    def create_indicator(
        self,
        *,
        name: str,
        pattern: str,
        observable_type: str,
        description: str | None = None,
        score: int | None = None,
        labels: list[str] | None = None,
        markings: list[str] | None = None,
        created_by: str | None = None,
    ) -> RemoteIndicatorRecord:
        """Create a STIX indicator. Returns the created record."""
        variables = {
            "name": name,
            "pattern": pattern,
            "pattern_type": "stix",
            "observableType": observable_type,
            "description": description,
            "score": score,
            "labels": labels or [],
            "markings": markings or [],
            "createdBy": created_by,
        }
        logger.info("Creating indicator", extra={"observable_type": observable_type})
        data = self._query(
            queries.CREATE_INDICATOR, variables, operation="Create indicator", write=True
        )
        node = data.get("indicatorAdd")
        if not node:
            raise QueryError("Create indicator failed: no record returned")
        return RemoteIndicatorRecord.from_node(node)

    def create_observable(
        self,
        *,
        observable_type: str,
        input_key: str,
        input_value: dict[str, Any],
        description: str | None = None,
        score: int | None = None,
        labels: list[str] | None = None,
        markings: list[str] | None = None,
        created_by: str | None = None,
    ) -> RemoteObservableRecord:
        """Create a STIX cyber observable. Returns the created record.

        ``input_key`` selects the type-specific argument (``IPv4Addr``,
        ``StixFile`` ...) that carries ``input_value``.
        """
        variables = {
            "type": observable_type,
            input_key: input_value,
            "description": description,
            "score": score,
            "labels": labels or [],
            "markings": markings or [],
            "createdBy": created_by,
        }
        logger.info("Creating observable", extra={"observable_type": observable_type})
        data = self._query(
            queries.CREATE_OBSERVABLE, variables, operation="Create observable", write=True
        )
        node = data.get("stixCyberObservableAdd")
        if not node:
            raise QueryError("Create observable failed: no record returned")
        return RemoteObservableRecord.from_node(node)

    def link_indicator_and_observable(
        self, indicator_id: str, observable_id: str
    ) -> dict[str, Any]:
        """Create a ``based-on`` relationship from indicator to observable."""
        data = self._query(
            queries.LINK_INDICATOR_AND_OBSERVABLE,
            {"indicatorId": indicator_id, "observableId": observable_id},
            operation="Link indicator and observable",
            write=True,
        )
        return data.get("stixCoreRelationshipAdd") or {}

    def delete_item(self, kind: str, item_id: str) -> str:
        """Delete an indicator or observable. Returns the deleted id."""
        validate_item_kind(kind)
        logger.info("Deleting item", extra={"kind": kind, "item_id": item_id})
        data = self._query(
            queries.DELETE_BY_KIND[kind],
            {"id": item_id},
            operation=f"Delete {kind}",
            write=True,
        )
        deleted = data.get("indicatorDelete") or (data.get("stixCyberObservableEdit") or {}).get("delete")
        return deleted or item_id

    def edit_observable(
        self,
        item_id: str,
        *,
        author_id: str | None = None,
        markings: list[str] | None = None,
        score: int | None = None,
        description: str | None = None,
    ) -> None:
        """Patch observable fields in one mutation. ``None`` leaves a field as is."""
        variables = {
            "id": item_id,
            "patchAuthor": author_id is not None,
            "patchMarkings": markings is not None,
            "patchScore": score is not None,
            "patchDescription": description is not None,
            "authorId": "" if author_id is None else author_id,
            "markings": "" if markings is None else markings,
            "score": "" if score is None else score,
            "description": "" if description is None else description,
        }
        self._query(
            queries.EDIT_OBSERVABLE, variables, operation="Edit observable", write=True
        )

    def edit_indicator_field(self, item_id: str, field: str, value: Any) -> None:
        """Patch a single indicator field (``author_id``, ``markings``,
        ``score`` or ``description``)."""
        try:
            document, variable = queries.EDIT_INDICATOR_BY_FIELD[field]
        except KeyError:
            raise QueryError(f"Edit indicator failed: unknown field {field}") from None
        self._query(
            document,
            {"id": item_id, variable: value},
            operation="Edit indicator",
            write=True,
        )

    # =========================================================================
    # Pickers
    # =========================================================================

    def search_labels(self, term: str, first: int = LABEL_SEARCH_LIMIT) -> list[dict[str, Any]]:
        validate_length(term, MAX_SEARCH_TERM_LENGTH, "search term")
        data = self._query(
            queries.SEARCH_LABELS,
            {"search": term, "first": first},
            operation="Label search",
        )
        return connection_nodes(data.get("labels"))

    def search_identities(
        self, term: str, first: int = IDENTITY_SEARCH_LIMIT
    ) -> list[dict[str, Any]]:
        validate_length(term, MAX_SEARCH_TERM_LENGTH, "search term")
        data = self._query(
            queries.SEARCH_IDENTITIES,
            {"types": list(IDENTITY_TYPES), "search": term, "first": first},
            operation="Identity search",
        )
        return connection_nodes(data.get("identities"))

    def get_markings(self) -> list[dict[str, Any]]:
        """Marking definitions the current user may apply."""
        data = self._query(queries.GET_MARKINGS, operation="Get markings")
        return list((data.get("me") or {}).get("allowed_marking") or [])
