"""Entity selection, classification and ignored-address partitioning.

These run before any remote call. ``select_supported`` drops entities the
connector cannot look up, ``classify`` resolves each remaining entity to one
canonical type, and ``partition_ignored`` short-circuits addresses that are
never worth searching.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .constants import (
    HASH_TYPE_PRECEDENCE,
    IGNORED_IPS,
    IP_ENTITY_TYPES,
    SUPPORTED_ENTITY_TYPES,
)
from .errors import ClassificationError
from .models import CanonicalEntity, InputEntity, UnifiedItem
from .validation import detect_entity_type

logger = logging.getLogger(__name__)


def _candidate_types(entity: InputEntity) -> tuple[str, ...]:
    if entity.type and entity.type not in entity.types:
        return (entity.type,) + entity.types
    return entity.types


def classify(entity: InputEntity) -> CanonicalEntity:
    """Resolve an entity to exactly one canonical type.

    Hash subtypes are resolved through ``HASH_TYPE_PRECEDENCE``: the first
    precedence member tagged on the entity wins, whatever order the tags
    arrived in. Any other entity keeps its declared type.

    Raises:
        ClassificationError: If the entity has no supported type. Callers
            are expected to run ``select_supported`` first.
    """
    candidates = _candidate_types(entity)
    for hash_type in HASH_TYPE_PRECEDENCE:
        if hash_type in candidates:
            return CanonicalEntity(entity=entity, canonical_type=hash_type)

    if entity.type in SUPPORTED_ENTITY_TYPES:
        return CanonicalEntity(entity=entity, canonical_type=entity.type)

    # Annotated entities can carry a generic declared type plus a specific tag
    for candidate in candidates:
        if candidate in SUPPORTED_ENTITY_TYPES:
            return CanonicalEntity(entity=entity, canonical_type=candidate)

    raise ClassificationError(entity.value, entity.type)


def is_supported(entity: InputEntity) -> bool:
    """True if ``classify`` can resolve this entity."""
    candidates = _candidate_types(entity)
    return any(t in SUPPORTED_ENTITY_TYPES for t in candidates)


def with_detected_type(entity: InputEntity) -> InputEntity:
    """Fill in the type of an untyped entity from its value."""
    if entity.type or entity.types:
        return entity
    detected = detect_entity_type(entity.value)
    if detected is None:
        return entity
    return InputEntity(
        value=entity.value.strip(),
        type=detected,
        types=(detected,),
        is_ip=detected in IP_ENTITY_TYPES,
    )


def select_supported(
    entities: Iterable[InputEntity], max_url_length: int = 100
) -> list[InputEntity]:
    """Drop entities that cannot be looked up.

    Removes entities with no supported type and URLs at or over
    ``max_url_length`` characters (long URL extractions are nearly always
    false positives). Input order is preserved.
    """
    selected: list[InputEntity] = []
    for entity in entities:
        entity = with_detected_type(entity)

        if not entity.value or not is_supported(entity):
            logger.warning(
                "Skipping entity with unsupported type",
                extra={"entity_type": entity.type, "types": list(entity.types)},
            )
            continue

        if "url" in _candidate_types(entity) and len(entity.value) >= max_url_length:
            logger.debug(
                "Skipping over-long URL entity",
                extra={"length": len(entity.value), "max_url_length": max_url_length},
            )
            continue

        selected.append(entity)
    return selected


# =============================================================================
# Ignored addresses
# =============================================================================


@dataclass(frozen=True)
class Partition:
    """Entities to search, and placeholders for the ignored ones."""

    to_search: list[CanonicalEntity] = field(default_factory=list)
    ignored: list[UnifiedItem] = field(default_factory=list)


def is_ignored_address(entity: CanonicalEntity) -> bool:
    """True for loopback, all-zeros and broadcast IP entities."""
    return entity.is_ip and entity.value in IGNORED_IPS


def partition_ignored(entities: Iterable[CanonicalEntity]) -> Partition:
    """Split entities into those to search and ignored addresses.

    Ignored entities never reach the fetcher. Each yields a placeholder
    item that carries no remote identity and is left out of the summary.
    """
    partition = Partition()
    for entity in entities:
        if is_ignored_address(entity):
            partition.ignored.append(
                UnifiedItem(entity_value=entity.value, entity_type=entity.canonical_type)
            )
        else:
            partition.to_search.append(entity)
    return partition
