"""OpenCTI lookup connector.

Looks up entities (IPs, domains, hashes, emails, MAC addresses, URLs) in
OpenCTI, reconciles the matching indicators and observables into one
de-duplicated list, and lets the operator submit, edit and delete them.
Served to MCP clients over stdio.

Usage:
    python -m opencti_lookup
"""

__version__ = "0.1.0"

from .errors import (
    OpenCTILookupError,
    ConfigurationError,
    ConnectionError,
    ValidationError,
    ClassificationError,
    QueryError,
    PermissionDeniedError,
    ItemNotFoundError,
    RateLimitError,
)
from .config import Config, is_deletion_allowed
from .models import (
    InputEntity,
    CanonicalEntity,
    RemoteIndicatorRecord,
    RemoteObservableRecord,
    SearchResults,
    UnifiedItem,
)
from .entities import classify, partition_ignored, select_supported
from .unify import dedupe, normalize_indicator, normalize_observable, summarize, unify
from .assembler import ClientResultFetcher, LookupAssembler, ResultFetcher
from .cache import MarkingCache, MarkingRefresher
from .client import OpenCTIClient, CircuitState
from .server import OpenCTILookupServer
from .logging import setup_logging, get_logger

__all__ = [
    "__version__",
    "OpenCTILookupError",
    "ConfigurationError",
    "ConnectionError",
    "ValidationError",
    "ClassificationError",
    "QueryError",
    "PermissionDeniedError",
    "ItemNotFoundError",
    "RateLimitError",
    "Config",
    "is_deletion_allowed",
    "InputEntity",
    "CanonicalEntity",
    "RemoteIndicatorRecord",
    "RemoteObservableRecord",
    "SearchResults",
    "UnifiedItem",
    "classify",
    "partition_ignored",
    "select_supported",
    "dedupe",
    "normalize_indicator",
    "normalize_observable",
    "summarize",
    "unify",
    "ClientResultFetcher",
    "LookupAssembler",
    "ResultFetcher",
    "MarkingCache",
    "MarkingRefresher",
    "OpenCTIClient",
    "CircuitState",
    "OpenCTILookupServer",
    "setup_logging",
    "get_logger",
]
