"""Pytest fixtures for OpenCTI lookup tests."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, Mock

import pytest
from opencti_lookup.cache import MarkingCache
from opencti_lookup.client import OpenCTIClient
from opencti_lookup.config import Config, SecretStr
from opencti_lookup.feature_flags import reset_feature_flags
from opencti_lookup.models import CanonicalEntity, InputEntity, SearchResults
from opencti_lookup.server import OpenCTILookupServer


INDICATOR_ID = "11111111-1111-4111-8111-111111111111"
OBSERVABLE_ID = "22222222-2222-4222-8222-222222222222"
OTHER_ID = "33333333-3333-4333-8333-333333333333"
AUTHOR_ID = "44444444-4444-4444-8444-444444444444"
MARKING_ID = "55555555-5555-4555-8555-555555555555"


@pytest.fixture(autouse=True)
def reset_flags():
    """Reset global feature flags before each test for isolation."""
    reset_feature_flags()
    yield
    reset_feature_flags()


@pytest.fixture
def mock_config() -> Config:
    """Create a test configuration."""
    return Config(
        opencti_url="http://localhost:8080",
        opencti_token=SecretStr("test-token-12345"),
        timeout_seconds=30,
        max_retries=1,
        retry_base_delay=0.001,
        retry_max_delay=0.002,
    )


@pytest.fixture
def deleting_config() -> Config:
    """Configuration that allows deleting both item kinds."""
    return Config(
        opencti_url="http://localhost:8080",
        opencti_token=SecretStr("test-token-12345"),
        deletion_permissions=frozenset({"indicators", "observables"}),
        max_retries=0,
    )


# =============================================================================
# Wire data
# =============================================================================


def indicator_node(
    node_id: str = INDICATOR_ID,
    value: str = "8.8.8.8",
    created_at: str | None = "2024-01-02T00:00:00Z",
    **overrides: Any,
) -> dict[str, Any]:
    node = {
        "id": node_id,
        "entity_type": "Indicator",
        "name": value,
        "pattern": f"[ipv4-addr:value = '{value}']",
        "pattern_type": "stix",
        "description": "Known resolver",
        "confidence": 80,
        "x_opencti_score": 70,
        "objectLabel": [{"id": "l1", "value": "dns", "color": "#ff0000"}],
        "objectMarking": [],
        "createdBy": {"id": AUTHOR_ID, "name": "ACME CERT", "entity_type": "Organization"},
        "creators": [{"id": "u1", "name": "admin"}],
        "created_at": created_at,
        "updated_at": created_at,
    }
    node.update(overrides)
    return node


def observable_node(
    node_id: str = OBSERVABLE_ID,
    value: str = "8.8.8.8",
    created_at: str | None = "2024-01-01T00:00:00Z",
    **overrides: Any,
) -> dict[str, Any]:
    node = {
        "id": node_id,
        "entity_type": "IPv4-Addr",
        "observable_value": value,
        "x_opencti_description": None,
        "x_opencti_score": None,
        "objectLabel": None,
        "objectMarking": None,
        "createdBy": None,
        "creators": None,
        "created_at": created_at,
        "updated_at": created_at,
    }
    node.update(overrides)
    return node


def connection(*nodes: dict[str, Any]) -> dict[str, Any]:
    return {"edges": [{"node": node} for node in nodes]}


def search_response(
    indicators: list[dict[str, Any]] | None = None,
    observables: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "data": {
            "indicators": connection(*(indicators or [])),
            "stixCyberObservables": connection(*(observables or [])),
        }
    }


def canonical(value: str, entity_type: str, is_ip: bool = False) -> CanonicalEntity:
    entity = InputEntity(value=value, type=entity_type, types=(entity_type,), is_ip=is_ip)
    return CanonicalEntity(entity=entity, canonical_type=entity_type)


class StubFetcher:
    """ResultFetcher returning canned results keyed by entity value."""

    def __init__(
        self,
        results: dict[str, SearchResults] | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.results = results or {}
        self.errors = errors or {}
        self.calls: list[str] = []

    async def fetch(self, entity: CanonicalEntity) -> SearchResults:
        self.calls.append(entity.value)
        if entity.value in self.errors:
            raise self.errors[entity.value]
        return self.results.get(entity.value, SearchResults())


# =============================================================================
# Clients
# =============================================================================


@pytest.fixture
def mock_pycti_client() -> Mock:
    """Create a mock pycti OpenCTIApiClient."""
    client = MagicMock()
    client.query.return_value = search_response(
        indicators=[indicator_node()], observables=[observable_node()]
    )
    return client


@pytest.fixture
def mock_opencti_client(mock_config: Config, mock_pycti_client: Mock) -> OpenCTIClient:
    """Create an OpenCTI client with mocked pycti."""
    client = OpenCTIClient(mock_config)
    client._client = mock_pycti_client
    return client


@pytest.fixture
def marking_cache() -> MarkingCache:
    return MarkingCache()


@pytest.fixture
def mock_server(
    mock_config: Config,
    mock_opencti_client: OpenCTIClient,
    marking_cache: MarkingCache,
) -> OpenCTILookupServer:
    """Create an MCP server with mocked client."""
    return OpenCTILookupServer(
        mock_config, client=mock_opencti_client, marking_cache=marking_cache
    )
