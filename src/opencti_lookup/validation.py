"""Input validation utilities.

Security design:
1. Length checks FIRST (prevents ReDoS)
2. Simple parsing only (no complex regex)
3. Defense in depth (validate at the server and again in workflows)
"""

from __future__ import annotations

from typing import Any

from .constants import ITEM_KINDS
from .errors import ValidationError


# =============================================================================
# Security Constants - Resource Exhaustion Prevention
# =============================================================================

# ASCII-only character sets for security (prevents homoglyph/IDN attacks)
_ASCII_ALPHA = set('abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ')
_ASCII_ALNUM = set('abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789')
_HEX_CHARS = set('0123456789abcdefABCDEF')

MAX_ENTITY_LENGTH = 2048      # Entity value (URLs can be long)
MAX_ENTITIES = 100            # Entities per lookup batch
MAX_SEARCH_TERM_LENGTH = 256  # Label / identity autocomplete
MAX_DESCRIPTION_LENGTH = 5000  # Submitted/edited description
MAX_LABEL_LENGTH = 63         # Max DNS label length
MAX_DOMAIN_LENGTH = 253       # Max domain name length (DNS limit)
MAX_IPV6_LENGTH = 45          # Max IPv6 with embedded IPv4
MAX_EMAIL_LENGTH = 320
HASH_TYPE_BY_LENGTH = {32: "MD5", 40: "SHA1", 64: "SHA256"}


# =============================================================================
# Length Validation
# =============================================================================

def validate_length(value: str | None, max_length: int, field: str) -> None:
    """Validate input length and check for null bytes.

    Security: This MUST be called before any parsing operations.

    Raises:
        ValidationError: If input exceeds max_length or contains null bytes
    """
    if value is not None and isinstance(value, str):
        if len(value) > max_length:
            raise ValidationError(f"{field} exceeds maximum length of {max_length} characters")
        if "\x00" in value:
            raise ValidationError(f"{field} contains invalid null byte")


# =============================================================================
# Entity Type Detection
# =============================================================================

def detect_entity_type(value: str) -> str | None:
    """Detect the entity type of an untyped value.

    Security: Length check is performed FIRST before any parsing.

    Returns:
        One of the supported entity types, or None when nothing matches
    """
    validate_length(value, MAX_ENTITY_LENGTH, "entity value")

    value = value.strip()
    if not value:
        return None

    if _is_ipv4(value):
        return "IPv4"

    if _is_mac(value):
        return "MAC"

    if _is_ipv6(value):
        return "IPv6"

    hash_type = _hash_type(value)
    if hash_type:
        return hash_type

    if value.lower().startswith(('http://', 'https://', 'ftp://')):
        return "url"

    if _is_email(value):
        return "email"

    if _is_domain(value):
        return "domain"

    return None


def _is_ipv4(value: str) -> bool:
    """Check if value is a valid IPv4 address.

    Uses simple parsing instead of regex to avoid ReDoS.
    """
    parts = value.split('.')
    if len(parts) != 4:
        return False

    for part in parts:
        if not part or not part.isdigit():
            return False
        if int(part) > 255:
            return False
        # Reject leading zeros (e.g., "01.02.03.04")
        if len(part) > 1 and part[0] == '0':
            return False

    return True


def _is_ipv6(value: str) -> bool:
    """Check if value is a valid IPv6 address.

    Supports full and compressed (::) notation.
    """
    if len(value) > MAX_IPV6_LENGTH:
        return False

    if ':' not in value:
        return False

    if '::' in value:
        if value.count('::') > 1:
            return False
        left_part, right_part = value.split('::')
        left = left_part.split(':') if left_part else []
        right = right_part.split(':') if right_part else []
        if len(left) + len(right) > 7:
            return False
        all_groups = left + right
    else:
        all_groups = value.split(':')
        if len(all_groups) != 8:
            return False

    for group in all_groups:
        if not group or len(group) > 4:
            return False
        if not all(c in _HEX_CHARS for c in group):
            return False

    return True


def _is_mac(value: str) -> bool:
    """Check for a 48-bit MAC address (``:`` or ``-`` separated)."""
    separator = ':' if ':' in value else '-'
    groups = value.split(separator)
    if len(groups) != 6:
        return False
    return all(len(g) == 2 and all(c in _HEX_CHARS for c in g) for g in groups)


def _hash_type(value: str) -> str | None:
    """Detect hash algorithm from length (MD5=32, SHA1=40, SHA256=64)."""
    hash_type = HASH_TYPE_BY_LENGTH.get(len(value))
    if hash_type and all(c in _HEX_CHARS for c in value):
        return hash_type
    return None


def _is_email(value: str) -> bool:
    if len(value) > MAX_EMAIL_LENGTH or value.count('@') != 1:
        return False
    local, domain = value.split('@')
    if not local or any(c.isspace() for c in local):
        return False
    return _is_domain(domain)


def _is_domain(value: str) -> bool:
    """Check if value looks like a domain name.

    Security: Uses ASCII-only validation to prevent IDN homoglyph attacks.
    Internationalized domain names should be in Punycode format (xn--).
    """
    if len(value) > MAX_DOMAIN_LENGTH:
        return False

    if '.' not in value:
        return False

    if value.startswith('.') or value.endswith('.') or '..' in value:
        return False

    labels = value.split('.')
    for label in labels:
        if len(label) > MAX_LABEL_LENGTH:
            return False
        if not all(c in _ASCII_ALNUM or c == '-' for c in label):
            return False
        if label.startswith('-') or label.endswith('-'):
            return False

    # TLD must be ASCII alphabetic (at least 2 chars)
    tld = labels[-1]
    if len(tld) < 2 or not all(c in _ASCII_ALPHA for c in tld):
        return False

    return True


# =============================================================================
# UUID Validation (for OpenCTI ids)
# =============================================================================

_UUID_CHARS = set('0123456789abcdefABCDEF-')


def validate_uuid(value: str | None, field: str = "id") -> str:
    """Validate and normalize UUID format.

    Security: Prevents injection via malformed ids. OpenCTI uses UUIDs
    for all internal identifiers.

    Returns:
        Normalized lowercase UUID

    Raises:
        ValidationError: If not a valid UUID format
    """
    if not value:
        raise ValidationError(f"{field} cannot be empty")

    if len(value) != 36:
        raise ValidationError(f"{field} must be a valid UUID (36 characters)")

    if not all(c in _UUID_CHARS for c in value):
        raise ValidationError(f"{field} contains invalid characters")

    parts = value.split('-')
    if [len(p) for p in parts] != [8, 4, 4, 4, 12]:
        raise ValidationError(f"{field} must be a valid UUID format")

    return value.lower()


def validate_uuid_list(values: list[str] | None, field: str = "ids",
                       max_items: int = 20) -> list[str]:
    """Validate a list of UUIDs."""
    if not values:
        return []

    if len(values) > max_items:
        raise ValidationError(f"{field} cannot contain more than {max_items} items")

    return [validate_uuid(v, f"{field}[{i}]") for i, v in enumerate(values)]


# =============================================================================
# Submission Field Validation
# =============================================================================

_LABEL_ALLOWED = set('abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_:. ')


def validate_label(value: str) -> str:
    """Validate a single label value.

    Raises:
        ValidationError: If label is invalid
    """
    if not value or not value.strip():
        raise ValidationError("Label cannot be empty")

    value = value.strip()

    if len(value) > 100:
        raise ValidationError("Label exceeds maximum length of 100 characters")

    if not all(c in _LABEL_ALLOWED for c in value):
        raise ValidationError("Label contains invalid characters")

    return value


def validate_labels(values: list[str] | None, max_items: int = 20) -> list[str]:
    """Validate a list of labels."""
    if not values:
        return []

    if len(values) > max_items:
        raise ValidationError(f"Cannot specify more than {max_items} labels")

    return [validate_label(v) for v in values]


def validate_score(value: Any, field: str = "score") -> int | None:
    """Validate an OpenCTI score (0-100). ``None`` passes through."""
    if value is None:
        return None
    try:
        score = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer between 0 and 100")
    if score < 0 or score > 100:
        raise ValidationError(f"{field} must be an integer between 0 and 100")
    return score


def validate_item_kind(value: Any) -> str:
    """Validate an item kind (``indicator`` or ``observable``)."""
    if value not in ITEM_KINDS:
        raise ValidationError(
            f"Unknown item type: {value}. Valid types: {', '.join(ITEM_KINDS)}"
        )
    return value


# =============================================================================
# Log Sanitization
# =============================================================================

SENSITIVE_FIELDS = {'token', 'password', 'secret', 'key', 'auth', 'credential', 'api_key'}


def sanitize_for_log(value: Any) -> Any:
    """Sanitize value for safe logging.

    Security: Prevents log injection and sensitive data exposure.
    """
    if isinstance(value, str):
        sanitized = value.encode('unicode_escape').decode('ascii')
        if len(sanitized) > 500:
            sanitized = sanitized[:500] + "...[truncated]"
        return sanitized
    elif isinstance(value, dict):
        return _filter_sensitive(value)
    elif isinstance(value, list):
        return [sanitize_for_log(v) for v in value[:10]]
    else:
        return value


def _filter_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Filter sensitive fields from data before logging."""
    result = {}
    for key, value in data.items():
        key_lower = key.lower()
        if any(s in key_lower for s in SENSITIVE_FIELDS):
            result[key] = "***REDACTED***"
        elif isinstance(value, (dict, list, str)):
            result[key] = sanitize_for_log(value)
        else:
            result[key] = value
    return result
