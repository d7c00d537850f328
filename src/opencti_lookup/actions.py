"""Submit, edit and delete workflows plus picker searches.

All blocking client calls run in worker threads. Created and refreshed
records go through the same normalizer as lookup results, so the host
receives ``UnifiedItem`` dicts from every workflow.
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

from .client import OpenCTIClient
from .config import Config, is_deletion_allowed
from .constants import (
    DEFAULT_LABEL_COLOR,
    HASH_TYPE_PRECEDENCE,
    OBSERVABLE_INPUT_KEY_BY_ENTITY_TYPE,
    OBSERVABLE_TYPE_BY_ENTITY_TYPE,
    STIX_PATTERN_TEMPLATES,
)
from .errors import OpenCTILookupError, PermissionDeniedError, ValidationError
from .logging import get_logger
from .models import CanonicalEntity, InputEntity, UnifiedItem
from .unify import normalize_indicator, normalize_observable
from .validation import (
    MAX_DESCRIPTION_LENGTH,
    validate_item_kind,
    validate_labels,
    validate_length,
    validate_score,
    validate_uuid,
    validate_uuid_list,
)

logger = get_logger(__name__)


def _entity_for(item: UnifiedItem) -> CanonicalEntity:
    """Rebuild the canonical entity an item was found or created for."""
    if not item.entity_value or not item.entity_type:
        raise ValidationError("Item is missing entityValue or entityType")
    entity = InputEntity(
        value=item.entity_value,
        type=item.entity_type,
        types=(item.entity_type,),
    )
    return CanonicalEntity(entity=entity, canonical_type=item.entity_type)


def _escape_stix(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def stix_pattern(entity_type: str, value: str) -> str:
    """STIX 2.1 pattern matching ``value`` for an entity type."""
    template = STIX_PATTERN_TEMPLATES.get(entity_type)
    if template is None:
        raise ValidationError(f"Unsupported entity type for STIX pattern: {entity_type}")
    return template.format(value=_escape_stix(value))


def observable_input(entity_type: str, value: str) -> tuple[str, dict[str, Any]]:
    """Type-specific argument name and payload for observable creation.

    File hashes are created as ``StixFile`` named by the hash.
    """
    key = OBSERVABLE_INPUT_KEY_BY_ENTITY_TYPE.get(entity_type)
    if key is None:
        raise ValidationError(f"Unsupported entity type for observable: {entity_type}")
    if entity_type in HASH_TYPE_PRECEDENCE:
        return key, {"name": value}
    return key, {"value": value}


# =============================================================================
# Submit
# =============================================================================


class _Submission:
    """Validated fields shared by every item of one submission."""

    def __init__(
        self,
        description: str | None,
        score: Any,
        labels: Sequence[str] | None,
        markings: Sequence[str] | None,
        author_id: str | None,
    ) -> None:
        validate_length(description, MAX_DESCRIPTION_LENGTH, "description")
        self.description = description
        self.score = validate_score(score)
        self.labels = validate_labels(list(labels or []))
        self.markings = validate_uuid_list(list(markings or []), "markings")
        self.author_id = validate_uuid(author_id, "author_id") if author_id else None

    def fields(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "score": self.score,
            "labels": self.labels,
            "markings": self.markings,
            "created_by": self.author_id,
        }


async def _create_indicator(
    client: OpenCTIClient, config: Config, item: UnifiedItem, submission: _Submission
) -> UnifiedItem:
    entity = _entity_for(item)
    record = await asyncio.to_thread(
        client.create_indicator,
        name=item.entity_value,
        pattern=stix_pattern(item.entity_type, item.entity_value),
        observable_type=OBSERVABLE_TYPE_BY_ENTITY_TYPE[item.entity_type],
        **submission.fields(),
    )
    created = normalize_indicator(record, entity, config)
    if item.id and item.is_observable:
        created = created.with_changes(related_observable_id=item.id)
    return created


async def _create_observable(
    client: OpenCTIClient, config: Config, item: UnifiedItem, submission: _Submission
) -> UnifiedItem:
    entity = _entity_for(item)
    input_key, input_value = observable_input(item.entity_type, item.entity_value)
    record = await asyncio.to_thread(
        client.create_observable,
        observable_type=OBSERVABLE_TYPE_BY_ENTITY_TYPE[item.entity_type],
        input_key=input_key,
        input_value=input_value,
        **submission.fields(),
    )
    created = normalize_observable(record, entity, config)
    if item.id and item.is_indicator:
        created = created.with_changes(related_indicator_id=item.id)
    return created


async def _link(client: OpenCTIClient, indicator_id: str, observable_id: str) -> None:
    try:
        await asyncio.to_thread(
            client.link_indicator_and_observable, indicator_id, observable_id
        )
    except OpenCTILookupError as e:
        logger.warning(
            "Automatic linking failed",
            extra={
                "indicator_id": indicator_id,
                "observable_id": observable_id,
                "error_type": type(e).__name__,
            },
        )


async def _auto_link(
    client: OpenCTIClient,
    indicator: UnifiedItem | None,
    observable: UnifiedItem | None,
) -> None:
    """Link new records to each other and to the record they were created from."""
    if indicator and observable:
        await _link(client, indicator.id, observable.id)

    if indicator and indicator.related_observable_id:
        await _link(client, indicator.id, indicator.related_observable_id)
    elif observable and observable.related_indicator_id:
        await _link(client, observable.related_indicator_id, observable.id)


async def _submit_one(
    client: OpenCTIClient, config: Config, item: UnifiedItem, submission: _Submission
) -> list[UnifiedItem]:
    pending = []
    if item.submit_as_indicator:
        pending.append(_create_indicator(client, config, item, submission))
    if item.submit_as_observable:
        pending.append(_create_observable(client, config, item, submission))

    created = await asyncio.gather(*pending)
    indicator = next((c for c in created if c.is_indicator), None)
    observable = next((c for c in created if c.is_observable), None)

    if config.automatic_linking:
        await _auto_link(client, indicator, observable)

    return list(created)


async def submit_items(
    client: OpenCTIClient,
    config: Config,
    items: Sequence[UnifiedItem],
    *,
    description: str | None = None,
    score: Any = None,
    labels: Sequence[str] | None = None,
    markings: Sequence[str] | None = None,
    author_id: str | None = None,
) -> list[UnifiedItem]:
    """Create indicators/observables for items flagged for submission.

    Items without ``submit_as_indicator``/``submit_as_observable`` are
    skipped. Results keep item order, indicator before observable.
    """
    submission = _Submission(description, score, labels, markings, author_id)
    to_create = [i for i in items if i.submit_as_indicator or i.submit_as_observable]

    logger.info(
        "Submitting items",
        extra={"requested": len(items), "to_create": len(to_create)},
    )

    per_item = await asyncio.gather(
        *(_submit_one(client, config, item, submission) for item in to_create)
    )
    return [created for group in per_item for created in group]


# =============================================================================
# Edit / delete
# =============================================================================


async def edit_item(
    client: OpenCTIClient,
    config: Config,
    item: UnifiedItem,
    *,
    score: Any = None,
    description: str | None = None,
    author_id: str | None = None,
    markings: Sequence[str] | None = None,
) -> UnifiedItem:
    """Patch an existing indicator or observable and return it refreshed.

    ``None`` leaves a field untouched.

    Raises:
        PermissionDeniedError: If the record belongs to another organization
    """
    kind = validate_item_kind(item.kind)
    item_id = validate_uuid(item.id)
    score = validate_score(score)
    validate_length(description, MAX_DESCRIPTION_LENGTH, "description")
    if author_id is not None:
        author_id = validate_uuid(author_id, "author_id")
    if markings is not None:
        markings = validate_uuid_list(list(markings), "markings")

    logger.info(
        "Editing item",
        extra={
            "kind": kind,
            "item_id": item_id,
            "fields": [
                name
                for name, value in (
                    ("score", score),
                    ("description", description),
                    ("author_id", author_id),
                    ("markings", markings),
                )
                if value is not None
            ],
        },
    )

    if kind == "observable":
        await asyncio.to_thread(
            client.edit_observable,
            item_id,
            author_id=author_id,
            markings=markings,
            score=score,
            description=description,
        )
    else:
        changes = {
            "author_id": author_id,
            "markings": markings,
            "description": description,
            "score": score,
        }
        await asyncio.gather(
            *(
                asyncio.to_thread(client.edit_indicator_field, item_id, field, value)
                for field, value in changes.items()
                if value is not None
            )
        )

    record = await asyncio.to_thread(client.get_item, kind, item_id)
    entity = _entity_for(item)
    if kind == "indicator":
        return normalize_indicator(record, entity, config)
    return normalize_observable(record, entity, config)


async def delete_item(
    client: OpenCTIClient, config: Config, kind: str, item_id: str
) -> dict[str, Any]:
    """Delete an item if deletion of its kind is enabled.

    Raises:
        PermissionDeniedError: If deletion is not enabled for ``kind``
    """
    kind = validate_item_kind(kind)
    item_id = validate_uuid(item_id)

    if not is_deletion_allowed(config, kind):
        message = f"Deleting {kind}s is not enabled"
        raise PermissionDeniedError(message, safe_message=message)

    deleted_id = await asyncio.to_thread(client.delete_item, kind, item_id)
    return {"deletedId": deleted_id, "type": kind, "displayType": kind.capitalize()}


# =============================================================================
# Pickers
# =============================================================================


async def search_labels(
    client: OpenCTIClient,
    term: str,
    selected_ids: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Labels matching ``term`` that are not already selected."""
    nodes = await asyncio.to_thread(client.search_labels, term or "")
    selected = set(selected_ids)
    return [
        {
            "id": node.get("id"),
            "value": node.get("value"),
            "color": node.get("color") or DEFAULT_LABEL_COLOR,
        }
        for node in nodes
        if node.get("id") not in selected
    ]


async def search_identities(client: OpenCTIClient, term: str) -> list[dict[str, Any]]:
    """Individuals, organizations and systems matching ``term``."""
    nodes = await asyncio.to_thread(client.search_identities, term or "")
    return [
        {"id": node.get("id"), "name": node.get("name"), "entityType": node.get("entity_type")}
        for node in nodes
    ]
