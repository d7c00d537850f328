"""Configuration management for OpenCTI lookup.

Security design:
- Tokens stored as SecretStr (never logged)
- Token file permissions enforced (600)
- Config objects cannot be pickled
- URL validation prevents SSRF
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from .constants import ITEM_KINDS
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Environment Variable Parsing Helpers
# =============================================================================


def _parse_int_env(name: str, default: int) -> int:
    """Parse integer environment variable with fallback to default.

    Logs a warning if the value is invalid instead of crashing.
    """
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(
            f"Invalid integer value for {name}: '{value}', using default {default}"
        )
        return default


def _parse_float_env(name: str, default: float) -> float:
    """Parse float environment variable with fallback to default."""
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(
            f"Invalid float value for {name}: '{value}', using default {default}"
        )
        return default


def _parse_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name, "").strip().lower()
    if not value:
        return default
    return value in ("true", "1", "yes", "on")


def _parse_set_env(name: str) -> frozenset[str]:
    """Parse comma-separated environment variable into a frozenset.

    Empty values and whitespace-only values are filtered out.
    """
    value = os.getenv(name)
    if not value:
        return frozenset()

    return frozenset(item.strip() for item in value.split(",") if item.strip())


# =============================================================================
# Secret String Type
# =============================================================================


class SecretStr:
    """String type that hides its value in logs and repr.

    Security: Prevents accidental credential exposure in logs,
    error messages, or debug output.
    """

    def __init__(self, value: str) -> None:
        self._value = value

    def get_secret_value(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __repr__(self) -> str:
        return "SecretStr('***')"

    def __str__(self) -> str:
        return "***"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretStr):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)

    def __len__(self) -> int:
        return len(self._value)


# =============================================================================
# Configuration Class
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Immutable connector configuration.

    Lookup behaviour:
    - deletion_permissions: item kinds the operator may delete
      ("indicators", "observables"; singular forms accepted)
    - exact_match_searching: match name/value exactly instead of full-text
    - allow_association: echoed to the host to enable association UI
    - automatic_linking: link indicators and observables created together
    - max_url_length: URL entities at or over this length are skipped
    - max_concurrent_searches: fan-out bound for one lookup batch

    Transport resilience follows the same knobs as other OpenCTI clients:
    retries with exponential backoff, circuit breaker, SSL verification.
    """

    opencti_url: str
    opencti_token: SecretStr
    timeout_seconds: int = 60

    deletion_permissions: frozenset[str] = field(default_factory=frozenset)
    exact_match_searching: bool = False
    allow_association: bool = False
    automatic_linking: bool = False
    max_url_length: int = 100
    max_concurrent_searches: int = 10
    rate_limit_writes: int = 60  # creates/edits/deletes per minute

    # Production network resilience
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    ssl_verify: bool = True
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: int = 60

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Note: Uses object.__setattr__ because dataclass is frozen.
        """
        validated_url = _validate_url(self.opencti_url)
        object.__setattr__(self, "opencti_url", validated_url)
        object.__setattr__(
            self,
            "deletion_permissions",
            _validate_deletion_permissions(self.deletion_permissions),
        )
        self._validate_values()

    def _validate_values(self) -> None:
        """Validate configuration values (called from __post_init__)."""
        if not self.opencti_token:
            raise ConfigurationError("OpenCTI token is required")

        if self.timeout_seconds < 1 or self.timeout_seconds > 300:
            raise ConfigurationError("timeout_seconds must be between 1 and 300")

        if self.max_concurrent_searches < 1 or self.max_concurrent_searches > 50:
            raise ConfigurationError("max_concurrent_searches must be between 1 and 50")

        if self.max_url_length < 1:
            raise ConfigurationError("max_url_length must be positive")

    def __repr__(self) -> str:
        """Safe repr that never includes token."""
        return (
            f"Config(opencti_url={self.opencti_url!r}, "
            f"token=***, timeout={self.timeout_seconds}s, "
            f"deletion_permissions={sorted(self.deletion_permissions)})"
        )

    def __str__(self) -> str:
        return self.__repr__()

    def __getstate__(self) -> None:
        """Prevent pickling to avoid credential serialization."""
        raise TypeError("Config cannot be pickled (contains secrets)")

    def __reduce__(self) -> None:  # type: ignore[override]
        """Prevent pickling via reduce."""
        raise TypeError("Config cannot be pickled (contains secrets)")

    @classmethod
    def load(cls) -> Config:
        """Load configuration from environment and files.

        Credential sources (precedence order):
        1. OPENCTI_TOKEN environment variable
        2. ~/.config/opencti-lookup/token file
        3. .env file in working directory

        Raises:
            ConfigurationError: If token not found or invalid
        """
        url = os.getenv("OPENCTI_URL", "http://localhost:8080")

        token = _load_token()
        if not token:
            raise ConfigurationError(
                "OpenCTI API token not found. Set OPENCTI_TOKEN environment variable "
                "or create ~/.config/opencti-lookup/token file."
            )

        return cls(
            opencti_url=url,
            opencti_token=SecretStr(token),
            timeout_seconds=_parse_int_env("OPENCTI_TIMEOUT", 60),
            deletion_permissions=_parse_set_env("OPENCTI_DELETION_PERMISSIONS"),
            exact_match_searching=_parse_bool_env("OPENCTI_EXACT_MATCH", False),
            allow_association=_parse_bool_env("OPENCTI_ALLOW_ASSOCIATION", False),
            automatic_linking=_parse_bool_env("OPENCTI_AUTOMATIC_LINKING", False),
            max_url_length=_parse_int_env("OPENCTI_MAX_URL_LENGTH", 100),
            max_concurrent_searches=_parse_int_env("OPENCTI_MAX_CONCURRENT_SEARCHES", 10),
            rate_limit_writes=_parse_int_env("OPENCTI_RATE_LIMIT_WRITES", 60),
            max_retries=_parse_int_env("OPENCTI_MAX_RETRIES", 3),
            retry_base_delay=_parse_float_env("OPENCTI_RETRY_DELAY", 1.0),
            retry_max_delay=_parse_float_env("OPENCTI_RETRY_MAX_DELAY", 30.0),
            ssl_verify=_parse_bool_env("OPENCTI_SSL_VERIFY", True),
            circuit_breaker_threshold=_parse_int_env("OPENCTI_CIRCUIT_THRESHOLD", 5),
            circuit_breaker_timeout=_parse_int_env("OPENCTI_CIRCUIT_TIMEOUT", 60),
        )


# =============================================================================
# Permissions
# =============================================================================


def _normalize_kind(permission: str) -> str:
    # "indicators" and "indicator" both grant the indicator kind
    permission = permission.strip().lower()
    return permission[:-1] if permission.endswith("s") else permission


def _validate_deletion_permissions(permissions: frozenset[str] | set[str] | list[str]) -> frozenset[str]:
    normalized = frozenset(_normalize_kind(p) for p in permissions if p and p.strip())
    invalid = sorted(normalized - set(ITEM_KINDS))
    if invalid:
        raise ConfigurationError(
            f"Invalid deletion permissions: {', '.join(invalid)}. "
            "Valid options: indicators, observables"
        )
    return normalized


def is_deletion_allowed(config: Config | None, kind: str | None) -> bool:
    """True iff ``config`` grants deletion of items of ``kind``."""
    if config is None or not kind:
        return False
    return kind in config.deletion_permissions


# =============================================================================
# Token Loading
# =============================================================================


def _load_token() -> str | None:
    """Load OpenCTI token from available sources.

    Security: Token file permissions are enforced.
    """
    token = os.getenv("OPENCTI_TOKEN")
    if token is not None:
        stripped = token.strip()
        if stripped:
            logger.debug("Loaded token from OPENCTI_TOKEN environment variable")
            return stripped
        # Whitespace-only is explicitly invalid; don't fall through
        if token:
            return None

    config_file = Path.home() / ".config" / "opencti-lookup" / "token"
    token = _load_token_file(config_file)
    if token:
        logger.debug("Loaded token from config file")
        return token

    env_file = Path.cwd() / ".env"
    token = _load_token_from_env_file(env_file)
    if token:
        logger.debug("Loaded token from .env file")
        return token

    return None


def _load_token_file(path: Path) -> str | None:
    """Load token from file with permission check.

    Security: Refuses to load token if file permissions are too open.
    """
    if not path.exists():
        return None

    mode = path.stat().st_mode
    if mode & (stat.S_IRGRP | stat.S_IROTH | stat.S_IWGRP | stat.S_IWOTH):
        logger.warning(
            "Token file has insecure permissions",
            extra={"path": str(path), "mode": oct(mode)},
        )
        raise ConfigurationError(
            f"Token file {path} has insecure permissions. Run: chmod 600 {path}"
        )

    try:
        return path.read_text().strip() or None
    except OSError as e:
        logger.warning(f"Failed to read token file: {e}")
        return None


def _load_token_from_env_file(path: Path) -> str | None:
    """Load token from .env file."""
    if not path.exists():
        return None

    mode = path.stat().st_mode
    if mode & (stat.S_IROTH | stat.S_IWOTH):
        # Don't fail, .env files are often shared in dev
        logger.warning(
            ".env file has insecure permissions (world-readable)",
            extra={"path": str(path), "mode": oct(mode)},
        )

    try:
        content = path.read_text()
    except OSError as e:
        logger.warning(f"Failed to read .env file: {e}")
        return None

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("OPENCTI_TOKEN="):
            value = line.split("=", 1)[1].strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            return value or None

    return None


# =============================================================================
# URL Validation
# =============================================================================


def _validate_url(url: str) -> str:
    """Validate and normalize OpenCTI URL.

    Security: Prevents SSRF by restricting URL schemes.
    """
    url = url.strip()

    if url.endswith("//"):
        raise ConfigurationError("OpenCTI URL must not end with //")

    url = url.rstrip("/")
    if not url:
        raise ConfigurationError("OpenCTI URL cannot be empty")

    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(
            f"Invalid URL scheme: {parsed.scheme}. Use http or https."
        )

    if not parsed.netloc:
        raise ConfigurationError("Invalid URL: missing host")

    if parsed.scheme == "http":
        host = parsed.hostname or ""
        is_local = host in ("localhost", "127.0.0.1", "::1") or host.startswith(
            ("10.", "192.168.")
        )
        if not is_local:
            logger.warning(
                "Using HTTP for non-local OpenCTI - credentials sent in plaintext",
                extra={"url": url},
            )

    return url
