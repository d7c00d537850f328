"""Typed records flowing through the lookup pipeline.

Wire records (``RemoteIndicatorRecord`` / ``RemoteObservableRecord``) keep
every optional GraphQL field explicitly nullable. No defaults are applied
here: default substitution belongs to the normalizer in ``unify``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any


# =============================================================================
# Entities
# =============================================================================


@dataclass(frozen=True)
class InputEntity:
    """One entity extracted by the host."""

    value: str
    type: str | None = None
    types: tuple[str, ...] = ()
    is_ip: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InputEntity:
        """Build from a host payload (``{"value", "type", "types", "isIP"}``)."""
        types = data.get("types") or ()
        return cls(
            value=str(data.get("value", "")),
            type=data.get("type"),
            types=tuple(types),
            is_ip=bool(data.get("isIP", data.get("is_ip", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "type": self.type,
            "types": list(self.types),
            "isIP": self.is_ip,
        }


@dataclass(frozen=True)
class CanonicalEntity:
    """An InputEntity after type resolution."""

    entity: InputEntity
    canonical_type: str

    @property
    def value(self) -> str:
        return self.entity.value

    @property
    def is_ip(self) -> bool:
        return self.entity.is_ip

    def to_dict(self) -> dict[str, Any]:
        data = self.entity.to_dict()
        data["type"] = self.canonical_type
        return data


# =============================================================================
# Wire records
# =============================================================================


@dataclass(frozen=True)
class RemoteIndicatorRecord:
    """An ``Indicator`` node returned by OpenCTI."""

    id: str
    entity_type: str | None = None
    name: str | None = None
    pattern: str | None = None
    pattern_type: str | None = None
    description: str | None = None
    confidence: int | None = None
    x_opencti_score: int | None = None
    object_label: list[dict[str, Any]] | None = None
    object_marking: list[dict[str, Any]] | None = None
    created_by: dict[str, Any] | None = None
    creators: list[dict[str, Any]] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    submit_as_indicator: bool = False
    submit_as_observable: bool = False

    @classmethod
    def from_node(cls, node: dict[str, Any]) -> RemoteIndicatorRecord:
        return cls(
            id=node.get("id") or "",
            entity_type=node.get("entity_type"),
            name=node.get("name"),
            pattern=node.get("pattern"),
            pattern_type=node.get("pattern_type"),
            description=node.get("description"),
            confidence=node.get("confidence"),
            x_opencti_score=node.get("x_opencti_score"),
            object_label=node.get("objectLabel"),
            object_marking=node.get("objectMarking"),
            created_by=node.get("createdBy"),
            creators=node.get("creators"),
            created_at=node.get("created_at"),
            updated_at=node.get("updated_at"),
            submit_as_indicator=bool(node.get("__submitAsIndicator", False)),
            submit_as_observable=bool(node.get("__submitAsObservable", False)),
        )


@dataclass(frozen=True)
class RemoteObservableRecord:
    """A ``StixCyberObservable`` node returned by OpenCTI."""

    id: str
    entity_type: str | None = None
    observable_value: str | None = None
    x_opencti_description: str | None = None
    x_opencti_score: int | None = None
    hashes: list[dict[str, Any]] | None = None
    object_label: list[dict[str, Any]] | None = None
    object_marking: list[dict[str, Any]] | None = None
    created_by: dict[str, Any] | None = None
    creators: list[dict[str, Any]] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    submit_as_indicator: bool = False
    submit_as_observable: bool = False

    @classmethod
    def from_node(cls, node: dict[str, Any]) -> RemoteObservableRecord:
        return cls(
            id=node.get("id") or "",
            entity_type=node.get("entity_type"),
            observable_value=node.get("observable_value"),
            x_opencti_description=node.get("x_opencti_description"),
            x_opencti_score=node.get("x_opencti_score"),
            hashes=node.get("hashes"),
            object_label=node.get("objectLabel"),
            object_marking=node.get("objectMarking"),
            created_by=node.get("createdBy"),
            creators=node.get("creators"),
            created_at=node.get("created_at"),
            updated_at=node.get("updated_at"),
            submit_as_indicator=bool(node.get("__submitAsIndicator", False)),
            submit_as_observable=bool(node.get("__submitAsObservable", False)),
        )


@dataclass(frozen=True)
class SearchResults:
    """Raw search results for one entity."""

    indicators: list[RemoteIndicatorRecord] = field(default_factory=list)
    observables: list[RemoteObservableRecord] = field(default_factory=list)

    @classmethod
    def from_response(cls, data: dict[str, Any] | None) -> SearchResults:
        """Build from a GraphQL ``data`` payload with edges/node connections."""
        data = data or {}
        return cls(
            indicators=[
                RemoteIndicatorRecord.from_node(node)
                for node in connection_nodes(data.get("indicators"))
            ],
            observables=[
                RemoteObservableRecord.from_node(node)
                for node in connection_nodes(data.get("stixCyberObservables"))
            ],
        )


def connection_nodes(connection: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Extract ``node`` dicts from a GraphQL connection."""
    if not connection:
        return []
    return [
        edge["node"]
        for edge in connection.get("edges") or []
        if isinstance(edge, dict) and isinstance(edge.get("node"), dict)
    ]


# =============================================================================
# Unified item
# =============================================================================


# Field name on the dataclass -> key in the host payload
_HOST_KEYS = {
    "id": "id",
    "kind": "type",
    "entity_value": "entityValue",
    "entity_type": "entityType",
    "found_in_remote": "foundInOpenCTI",
    "display_name": "displayName",
    "description": "description",
    "score": "score",
    "confidence": "confidence",
    "labels": "labels",
    "creator": "creator",
    "creator_entity_type": "creatorEntityType",
    "creators": "creators",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "can_edit": "canEdit",
    "can_delete": "canDelete",
    "to_be_submitted": "__toBeSubmitted",
    "submit_as_indicator": "__submitAsIndicator",
    "submit_as_observable": "__submitAsObservable",
    "opencti_type": "openCtiType",
    "opencti_type_human": "openCtiTypeHuman",
    "pattern": "pattern",
    "pattern_type": "patternType",
    "observable_value": "observableValue",
    "hashes": "hashes",
    "markings": "markings",
    "web_link": "webLink",
    "related_indicator_id": "relatedIndicatorId",
    "related_observable_id": "relatedObservableId",
}


@dataclass(frozen=True)
class UnifiedItem:
    """Canonical shape for an indicator, an observable or a not-found placeholder.

    Placeholders have ``id=None``, ``kind=None`` and ``found_in_remote=False``.
    """

    entity_value: str
    entity_type: str
    id: str | None = None
    kind: str | None = None
    found_in_remote: bool = False
    display_name: str = ""
    description: str = ""
    score: int | None = None
    confidence: int | None = None
    labels: tuple[str, ...] = ()
    creator: str | None = None
    creator_entity_type: str | None = None
    creators: tuple[str, ...] = ()
    created_at: str | None = None
    updated_at: str | None = None
    can_edit: bool = False
    can_delete: bool = False
    to_be_submitted: bool = False
    submit_as_indicator: bool = False
    submit_as_observable: bool = False
    opencti_type: str | None = None
    opencti_type_human: str | None = None
    pattern: str | None = None
    pattern_type: str | None = None
    observable_value: str | None = None
    hashes: tuple[dict[str, Any], ...] = ()
    markings: tuple[dict[str, Any], ...] = ()
    web_link: str | None = None
    related_indicator_id: str | None = None
    related_observable_id: str | None = None

    @property
    def is_placeholder(self) -> bool:
        return not self.id

    @property
    def is_indicator(self) -> bool:
        return self.kind == "indicator"

    @property
    def is_observable(self) -> bool:
        return self.kind == "observable"

    def with_changes(self, **changes: Any) -> UnifiedItem:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the host (camelCase keys, lists instead of tuples)."""
        data: dict[str, Any] = {}
        for attr, key in _HOST_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, tuple):
                value = list(value)
            data[key] = value
        data["isIndicator"] = self.is_indicator
        data["isObservable"] = self.is_observable
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UnifiedItem:
        """Rebuild an item sent back by the host (submit/edit round trip)."""
        kwargs: dict[str, Any] = {}
        for attr, key in _HOST_KEYS.items():
            if key not in data:
                continue
            value = data[key]
            if attr in ("labels", "creators", "hashes", "markings"):
                value = tuple(_label_value(v) if attr == "labels" else v for v in value or ())
            kwargs[attr] = value
        kwargs.setdefault("entity_value", str(data.get("entityValue", "")))
        kwargs.setdefault("entity_type", str(data.get("entityType", "")))
        return cls(**kwargs)


def _label_value(label: Any) -> str:
    if isinstance(label, dict):
        return str(label.get("value", ""))
    return str(label)
