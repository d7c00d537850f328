"""Tests for batch lookup assembly."""

from __future__ import annotations

import asyncio

import pytest
from opencti_lookup.assembler import ClientResultFetcher, LookupAssembler
from opencti_lookup.cache import MarkingCache
from opencti_lookup.config import Config, SecretStr
from opencti_lookup.errors import ConnectionError, PermissionDeniedError
from opencti_lookup.models import (
    InputEntity,
    RemoteIndicatorRecord,
    RemoteObservableRecord,
    SearchResults,
)

from .conftest import INDICATOR_ID, MARKING_ID, OBSERVABLE_ID, StubFetcher, canonical


def ip(value: str) -> InputEntity:
    return InputEntity(value=value, type="IPv4", types=("IPv4",), is_ip=True)


def domain(value: str) -> InputEntity:
    return InputEntity(value=value, type="domain", types=("domain",))


def found(*ids: str) -> SearchResults:
    return SearchResults(
        indicators=[RemoteIndicatorRecord(id=i, created_at="2024-01-01T00:00:00Z") for i in ids]
    )


def unified_results(envelope):
    return envelope["data"]["details"]["unifiedResults"]


# =============================================================================
# Ignored addresses
# =============================================================================


class TestIgnoredAddresses:
    """Ignored addresses never reach the fetcher."""

    @pytest.mark.asyncio
    async def test_only_ignored_short_circuits(self, mock_config):
        fetcher = StubFetcher()
        assembler = LookupAssembler(mock_config, fetcher)

        result = await assembler.assemble([ip("127.0.0.1"), ip("255.255.255.255")])

        assert fetcher.calls == []
        assert result == [
            {"entity": {"value": "127.0.0.1", "type": "IPv4", "isIP": True}, "data": None},
            {"entity": {"value": "255.255.255.255", "type": "IPv4", "isIP": True}, "data": None},
        ]

    @pytest.mark.asyncio
    async def test_ignored_appended_after_envelope(self, mock_config):
        fetcher = StubFetcher()
        assembler = LookupAssembler(mock_config, fetcher)

        result = await assembler.assemble([ip("0.0.0.0"), ip("8.8.8.8")])

        assert fetcher.calls == ["8.8.8.8"]
        assert len(result) == 2
        assert result[0]["displayValue"] == "OpenCTI IOC Submission"
        assert result[1]["data"] is None
        assert result[1]["entity"]["value"] == "0.0.0.0"

    @pytest.mark.asyncio
    async def test_ignored_not_in_summary(self, mock_config):
        fetcher = StubFetcher({"8.8.8.8": found(INDICATOR_ID)})
        assembler = LookupAssembler(mock_config, fetcher)

        result = await assembler.assemble([ip("127.0.0.1"), ip("8.8.8.8")])

        assert result[0]["data"]["summary"] == ["Items Found"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, mock_config):
        assembler = LookupAssembler(mock_config, StubFetcher())
        assert await assembler.assemble([]) == []


# =============================================================================
# Envelope
# =============================================================================


class TestEnvelope:
    """Tests for the submission envelope."""

    @pytest.mark.asyncio
    async def test_shape(self, mock_config):
        cache = MarkingCache()
        cache.put([{"id": MARKING_ID, "definition": "TLP:GREEN"}])
        fetcher = StubFetcher({"8.8.8.8": found(INDICATOR_ID)})
        assembler = LookupAssembler(mock_config, fetcher, cache)

        [envelope] = await assembler.assemble([ip("8.8.8.8"), domain("example.com")])

        assert envelope["entity"]["value"] == "OpenCTI IOC Submission"
        assert envelope["entity"]["type"] == "IPv4"
        assert envelope["isVolatile"] is True
        details = envelope["data"]["details"]
        assert details["apiUrl"] == "http://localhost:8080"
        assert details["canCreate"] is True
        assert details["canAssociate"] is False
        assert details["availableMarkings"] == [{"id": MARKING_ID, "definition": "TLP:GREEN"}]
        assert envelope["data"]["summary"] == ["Items Found", "New Items"]

    @pytest.mark.asyncio
    async def test_markings_empty_without_cache(self, mock_config):
        assembler = LookupAssembler(mock_config, StubFetcher())
        [envelope] = await assembler.assemble([ip("8.8.8.8")])
        assert envelope["data"]["details"]["availableMarkings"] == []

    @pytest.mark.asyncio
    async def test_markings_empty_on_cache_miss(self, mock_config):
        assembler = LookupAssembler(mock_config, StubFetcher(), MarkingCache())
        [envelope] = await assembler.assemble([ip("8.8.8.8")])
        assert envelope["data"]["details"]["availableMarkings"] == []

    @pytest.mark.asyncio
    async def test_can_associate_from_config(self):
        config = Config(
            opencti_url="https://opencti.example.com",
            opencti_token=SecretStr("t"),
            allow_association=True,
        )
        assembler = LookupAssembler(config, StubFetcher())
        [envelope] = await assembler.assemble([ip("8.8.8.8")])
        assert envelope["data"]["details"]["canAssociate"] is True

    @pytest.mark.asyncio
    async def test_results_in_input_order(self, mock_config):
        fetcher = StubFetcher({"b.com": found(OBSERVABLE_ID), "a.com": found(INDICATOR_ID)})
        assembler = LookupAssembler(mock_config, fetcher)

        [envelope] = await assembler.assemble([domain("b.com"), domain("a.com"), domain("c.com")])

        values = [r["entityValue"] for r in unified_results(envelope)]
        assert values == ["b.com", "a.com", "c.com"]
        assert unified_results(envelope)[2]["foundInOpenCTI"] is False


# =============================================================================
# Dedupe and fan-out
# =============================================================================


class TestFanOut:
    """Concurrent fetching."""

    @pytest.mark.asyncio
    async def test_ids_unique_across_entities(self, mock_config):
        shared = SearchResults(
            indicators=[RemoteIndicatorRecord(id=INDICATOR_ID)],
            observables=[RemoteObservableRecord(id=OBSERVABLE_ID)],
        )
        fetcher = StubFetcher({"a.com": shared, "b.com": shared})
        assembler = LookupAssembler(mock_config, fetcher)

        [envelope] = await assembler.assemble([domain("a.com"), domain("b.com")])

        ids = [r["id"] for r in unified_results(envelope)]
        assert ids == [INDICATOR_ID, OBSERVABLE_ID]
        assert all(r["entityValue"] == "a.com" for r in unified_results(envelope))

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        config = Config(
            opencti_url="http://localhost:8080",
            opencti_token=SecretStr("t"),
            max_concurrent_searches=2,
        )
        in_flight = 0
        peak = 0

        class SlowFetcher:
            async def fetch(self, entity):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return SearchResults()

        assembler = LookupAssembler(config, SlowFetcher())
        entities = [domain(f"host{i}.example.com") for i in range(6)]

        [envelope] = await assembler.assemble(entities)

        assert peak == 2
        assert len(unified_results(envelope)) == 6


# =============================================================================
# All-or-nothing
# =============================================================================


class TestAllOrNothing:
    """A failed fetch fails the whole batch."""

    @pytest.mark.asyncio
    async def test_error_propagates(self, mock_config):
        fetcher = StubFetcher(
            {"a.com": found(INDICATOR_ID)},
            errors={"b.com": ConnectionError("boom")},
        )
        assembler = LookupAssembler(mock_config, fetcher)

        with pytest.raises(ConnectionError):
            await assembler.assemble([domain("a.com"), domain("b.com")])

    @pytest.mark.asyncio
    async def test_permission_error_propagates(self, mock_config):
        fetcher = StubFetcher(errors={"a.com": PermissionDeniedError("nope")})
        assembler = LookupAssembler(mock_config, fetcher)

        with pytest.raises(PermissionDeniedError):
            await assembler.assemble([domain("a.com")])

    @pytest.mark.asyncio
    async def test_in_flight_fetches_cancelled(self, mock_config):
        cancelled = asyncio.Event()

        class MixedFetcher:
            async def fetch(self, entity):
                if entity.value == "slow.com":
                    try:
                        await asyncio.sleep(10)
                    except asyncio.CancelledError:
                        cancelled.set()
                        raise
                raise ConnectionError("boom")

        assembler = LookupAssembler(mock_config, MixedFetcher())

        with pytest.raises(ConnectionError):
            await assembler.assemble([domain("slow.com"), domain("fail.com")])

        assert cancelled.is_set()


# =============================================================================
# Client fetcher
# =============================================================================


class TestClientResultFetcher:
    @pytest.mark.asyncio
    async def test_fetch_uses_client(self, mock_opencti_client, mock_pycti_client):
        fetcher = ClientResultFetcher(mock_opencti_client)

        results = await fetcher.fetch(canonical("8.8.8.8", "IPv4", is_ip=True))

        assert [r.id for r in results.indicators] == [INDICATOR_ID]
        assert [r.id for r in results.observables] == [OBSERVABLE_ID]
        variables = mock_pycti_client.query.call_args[0][1]
        assert variables["search"] == '"8.8.8.8"'
        assert variables["filters"]["filters"] == []

    @pytest.mark.asyncio
    async def test_exact_match_override(self, mock_opencti_client, mock_pycti_client):
        fetcher = ClientResultFetcher(mock_opencti_client, exact_match=True)

        await fetcher.fetch(canonical("example.com", "domain"))

        filters = mock_pycti_client.query.call_args[0][1]["filters"]["filters"]
        assert {f["key"] for f in filters} == {"name", "value"}
