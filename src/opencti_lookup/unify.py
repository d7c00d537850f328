"""Record normalization and result unification.

Indicators and observables come back from OpenCTI as two differently shaped
record types with most fields optional. This module is the only place that
substitutes defaults for missing fields and the only place that merges the
two record kinds into ``UnifiedItem`` lists.

Flow for one lookup batch::

    per entity:  unify(indicators, observables, entity, config)
                   -> normalize_* each record
                   -> concatenate (indicators first)
                   -> stable sort, newest first
                   -> placeholder if nothing matched
    per batch:   dedupe([items_for_entity_1, items_for_entity_2, ...])
                 summarize(deduped)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from .config import is_deletion_allowed
from .constants import (
    DEFAULT_CONFIDENCE,
    DEFAULT_CREATOR,
    DEFAULT_SCORE,
    HUMAN_READABLE_TYPE_BY_ENTITY_TYPE,
    SUMMARY_ITEMS_FOUND,
    SUMMARY_NEW_ITEMS,
    UNKNOWN_HUMAN_READABLE_TYPE,
)
from .errors import ValidationError
from .logging import get_logger
from .models import (
    CanonicalEntity,
    RemoteIndicatorRecord,
    RemoteObservableRecord,
    UnifiedItem,
)

logger = get_logger(__name__)

_EPOCH = 0.0


class NormalizeOptions(Protocol):
    """The slice of ``Config`` the normalizer reads."""

    opencti_url: str
    deletion_permissions: frozenset[str]


# =============================================================================
# Field helpers
# =============================================================================


def human_readable_type(entity_type: str | None) -> str:
    return HUMAN_READABLE_TYPE_BY_ENTITY_TYPE.get(entity_type or "", UNKNOWN_HUMAN_READABLE_TYPE)


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value


def _label_values(labels: list[dict[str, Any]] | None) -> tuple[str, ...]:
    return tuple(label["value"] for label in labels or () if label and label.get("value") is not None)


def _creator(created_by: dict[str, Any] | None) -> tuple[str, str | None]:
    if created_by and created_by.get("name"):
        return created_by["name"], created_by.get("entity_type")
    return DEFAULT_CREATOR, None


def _creator_names(creators: list[dict[str, Any]] | None) -> tuple[str, ...]:
    return tuple(c["name"] for c in creators or () if c and c.get("name"))


def _web_link(options: NormalizeOptions | None, collection: str, item_id: str) -> str | None:
    if options is None or not item_id:
        return None
    return f"{options.opencti_url}/dashboard/observations/{collection}/{item_id}"


def _created_timestamp(item: UnifiedItem) -> float:
    """Sort key: ``created_at`` as a POSIX timestamp, epoch when unusable."""
    value = item.created_at
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.debug("Unparseable created_at treated as epoch", extra={"item_id": item.id})
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# =============================================================================
# Normalizer
# =============================================================================


def normalize_indicator(
    record: RemoteIndicatorRecord,
    entity: CanonicalEntity,
    options: NormalizeOptions | None = None,
) -> UnifiedItem:
    """Map an indicator record onto the unified shape.

    Defaults: confidence and score 50, creator ``"--"``, empty labels and
    description. ``display_name`` falls back from name to pattern to the
    entity value.
    """
    creator, creator_type = _creator(record.created_by)
    return UnifiedItem(
        id=record.id,
        kind="indicator",
        entity_value=entity.value,
        entity_type=entity.canonical_type,
        found_in_remote=True,
        display_name=record.name or record.pattern or entity.value,
        description=record.description or "",
        score=_or_default(record.x_opencti_score, DEFAULT_SCORE),
        confidence=_or_default(record.confidence, DEFAULT_CONFIDENCE),
        labels=_label_values(record.object_label),
        creator=creator,
        creator_entity_type=creator_type,
        creators=_creator_names(record.creators),
        created_at=record.created_at,
        updated_at=record.updated_at,
        can_edit=True,
        can_delete=is_deletion_allowed(options, "indicator"),
        to_be_submitted=record.submit_as_indicator,
        submit_as_indicator=record.submit_as_indicator,
        submit_as_observable=record.submit_as_observable,
        opencti_type=record.entity_type,
        opencti_type_human=human_readable_type(entity.canonical_type),
        pattern=record.pattern,
        pattern_type=record.pattern_type,
        markings=tuple(record.object_marking or ()),
        web_link=_web_link(options, "indicators", record.id),
    )


def normalize_observable(
    record: RemoteObservableRecord,
    entity: CanonicalEntity,
    options: NormalizeOptions | None = None,
) -> UnifiedItem:
    """Map an observable record onto the unified shape.

    Same defaults as indicators; observables carry no confidence.
    """
    creator, creator_type = _creator(record.created_by)
    return UnifiedItem(
        id=record.id,
        kind="observable",
        entity_value=entity.value,
        entity_type=entity.canonical_type,
        found_in_remote=True,
        display_name=record.observable_value or entity.value,
        description=record.x_opencti_description or "",
        score=_or_default(record.x_opencti_score, DEFAULT_SCORE),
        labels=_label_values(record.object_label),
        creator=creator,
        creator_entity_type=creator_type,
        creators=_creator_names(record.creators),
        created_at=record.created_at,
        updated_at=record.updated_at,
        can_edit=True,
        can_delete=is_deletion_allowed(options, "observable"),
        to_be_submitted=record.submit_as_observable,
        submit_as_indicator=record.submit_as_indicator,
        submit_as_observable=record.submit_as_observable,
        opencti_type=record.entity_type,
        opencti_type_human=human_readable_type(entity.canonical_type),
        observable_value=record.observable_value,
        hashes=tuple(record.hashes or ()),
        markings=tuple(record.object_marking or ()),
        web_link=_web_link(options, "observables", record.id),
    )


def placeholder(entity: CanonicalEntity) -> UnifiedItem:
    """A not-found item carrying only the entity's identity."""
    return UnifiedItem(
        entity_value=entity.value,
        entity_type=entity.canonical_type,
        opencti_type_human=human_readable_type(entity.canonical_type),
    )


# =============================================================================
# Unifier
# =============================================================================


def unify(
    indicators: Iterable[RemoteIndicatorRecord] | None,
    observables: Iterable[RemoteObservableRecord] | None,
    entity: CanonicalEntity,
    options: NormalizeOptions | None = None,
) -> list[UnifiedItem]:
    """Merge one entity's search results into a single sorted list.

    Items are ordered newest ``created_at`` first. Equal timestamps keep
    indicators ahead of observables and otherwise keep input order. When
    nothing matched, the list holds one placeholder for the entity.

    Raises:
        ValidationError: If ``entity`` has no value or type
    """
    if entity is None or not entity.value or not entity.canonical_type:
        raise ValidationError("Cannot unify results for an entity without value and type")

    items = [normalize_indicator(r, entity, options) for r in indicators or ()]
    items.extend(normalize_observable(r, entity, options) for r in observables or ())

    if not items:
        return [placeholder(entity)]

    # list.sort is stable, including with reverse=True
    items.sort(key=_created_timestamp, reverse=True)
    return items


def dedupe(per_entity: Iterable[Iterable[UnifiedItem]]) -> list[UnifiedItem]:
    """Flatten per-entity lists, keeping the first item seen for each id.

    Placeholders have no id and are never merged: every not-found entity
    stays in the output.
    """
    seen: set[str] = set()
    result: list[UnifiedItem] = []
    for items in per_entity:
        for item in items:
            if item.id:
                if item.id in seen:
                    continue
                seen.add(item.id)
            result.append(item)
    return result


def summarize(items: Iterable[UnifiedItem]) -> list[str]:
    """Batch summary tags: found items first, then new items."""
    items = list(items)
    summary: list[str] = []
    if any(item.found_in_remote for item in items):
        summary.append(SUMMARY_ITEMS_FOUND)
    if any(not item.found_in_remote for item in items):
        summary.append(SUMMARY_NEW_ITEMS)
    return summary
