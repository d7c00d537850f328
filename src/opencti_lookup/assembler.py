"""Batch lookup orchestration.

``LookupAssembler.assemble`` turns the host's entity batch into the single
submission envelope the host renders:

1. drop unsupported entities and over-long URLs, classify the rest
2. short-circuit ignored addresses (no remote call)
3. fetch every remaining entity concurrently and unify each one's results
4. after all fetches finish, dedupe in input order and summarize

Fetching is all-or-nothing. If any entity's fetch fails, the fetches still
in flight are cancelled and the error propagates; no partial envelope is
ever built.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, Protocol

from .cache import MarkingCache
from .client import OpenCTIClient
from .config import Config
from .constants import SUBMISSION_DISPLAY_VALUE
from .entities import classify, partition_ignored, select_supported
from .logging import get_logger
from .models import CanonicalEntity, InputEntity, SearchResults, UnifiedItem
from .unify import dedupe, summarize, unify

logger = get_logger(__name__)


class ResultFetcher(Protocol):
    """Fetches raw search results for one entity.

    Implementations raise on any transport, authentication or remote
    error; they never return a sentinel.
    """

    async def fetch(self, entity: CanonicalEntity) -> SearchResults: ...


class ClientResultFetcher:
    """``ResultFetcher`` backed by ``OpenCTIClient`` (run in a worker thread)."""

    def __init__(self, client: OpenCTIClient, exact_match: bool | None = None) -> None:
        self._client = client
        self._exact_match = exact_match

    async def fetch(self, entity: CanonicalEntity) -> SearchResults:
        return await asyncio.to_thread(
            self._client.search_indicators_and_observables,
            entity.value,
            self._exact_match,
        )


def _ignored_result(item: UnifiedItem) -> dict[str, Any]:
    return {
        "entity": {"value": item.entity_value, "type": item.entity_type, "isIP": True},
        "data": None,
    }


class LookupAssembler:
    """Builds the lookup envelope for a batch of entities."""

    def __init__(
        self,
        config: Config,
        fetcher: ResultFetcher,
        marking_cache: MarkingCache | None = None,
    ) -> None:
        self.config = config
        self._fetcher = fetcher
        self._marking_cache = marking_cache

    async def assemble(self, entities: Iterable[InputEntity]) -> list[dict[str, Any]]:
        """Look up a batch of entities.

        Returns:
            ``[envelope, *ignored_results]``, or only the ignored results
            when nothing is left to search.

        Raises:
            OpenCTILookupError: If fetching any entity fails
        """
        start = time.perf_counter()

        selected = select_supported(entities, self.config.max_url_length)
        partition = partition_ignored(classify(entity) for entity in selected)
        ignored_results = [_ignored_result(item) for item in partition.ignored]

        if not partition.to_search:
            logger.debug(
                "Nothing to search",
                extra={"ignored": len(partition.ignored)},
            )
            return ignored_results

        per_entity = await self._search_all(partition.to_search)

        # Past the barrier: every fetch has completed, none can still write
        items = dedupe(per_entity)
        summary = summarize(items)

        logger.info(
            "Lookup assembled",
            extra={
                "entities": len(partition.to_search),
                "ignored": len(partition.ignored),
                "items": len(items),
                "summary": summary,
                "duration_ms": round((time.perf_counter() - start) * 1000, 1),
            },
        )

        return [self._envelope(partition.to_search[0], items, summary)] + ignored_results

    async def _search_all(
        self, entities: list[CanonicalEntity]
    ) -> list[list[UnifiedItem]]:
        """Fetch and unify every entity, results in input order."""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_searches)

        async def search_one(entity: CanonicalEntity) -> list[UnifiedItem]:
            async with semaphore:
                results = await self._fetcher.fetch(entity)
            return unify(results.indicators, results.observables, entity, self.config)

        tasks = [asyncio.create_task(search_one(entity)) for entity in entities]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _available_markings(self) -> list[dict[str, Any]]:
        if self._marking_cache is None:
            return []
        return self._marking_cache.get() or []

    def _envelope(
        self,
        first: CanonicalEntity,
        items: list[UnifiedItem],
        summary: list[str],
    ) -> dict[str, Any]:
        entity = first.to_dict()
        entity["value"] = SUBMISSION_DISPLAY_VALUE
        return {
            "entity": entity,
            "displayValue": SUBMISSION_DISPLAY_VALUE,
            "isVolatile": True,
            "data": {
                "summary": summary,
                "details": {
                    "unifiedResults": [item.to_dict() for item in items],
                    "apiUrl": self.config.opencti_url,
                    "canCreate": True,
                    "canAssociate": self.config.allow_association,
                    "availableMarkings": self._available_markings(),
                },
            },
        }
