"""Tests for record normalization and result unification."""

from __future__ import annotations

import pytest
from opencti_lookup.config import Config, SecretStr
from opencti_lookup.errors import ValidationError
from opencti_lookup.models import (
    CanonicalEntity,
    InputEntity,
    RemoteIndicatorRecord,
    RemoteObservableRecord,
    UnifiedItem,
)
from opencti_lookup.unify import (
    dedupe,
    human_readable_type,
    normalize_indicator,
    normalize_observable,
    placeholder,
    summarize,
    unify,
)

from .conftest import (
    INDICATOR_ID,
    OBSERVABLE_ID,
    OTHER_ID,
    canonical,
    indicator_node,
    observable_node,
)


@pytest.fixture
def ip_entity() -> CanonicalEntity:
    return canonical("8.8.8.8", "IPv4", is_ip=True)


# =============================================================================
# Normalizer
# =============================================================================


class TestNormalizeIndicator:
    """Tests for normalize_indicator()."""

    def test_full_record(self, ip_entity, mock_config):
        record = RemoteIndicatorRecord.from_node(indicator_node())
        item = normalize_indicator(record, ip_entity, mock_config)

        assert item.id == INDICATOR_ID
        assert item.kind == "indicator"
        assert item.is_indicator
        assert item.found_in_remote is True
        assert item.display_name == "8.8.8.8"
        assert item.score == 70
        assert item.confidence == 80
        assert item.labels == ("dns",)
        assert item.creator == "ACME CERT"
        assert item.creator_entity_type == "Organization"
        assert item.creators == ("admin",)
        assert item.entity_type == "IPv4"
        assert item.opencti_type_human == "IPv4 address"
        assert item.can_edit is True
        assert item.web_link == (
            f"http://localhost:8080/dashboard/observations/indicators/{INDICATOR_ID}"
        )

    def test_defaults_for_missing_fields(self, ip_entity):
        record = RemoteIndicatorRecord(id=INDICATOR_ID)
        item = normalize_indicator(record, ip_entity)

        assert item.score == 50
        assert item.confidence == 50
        assert item.creator == "--"
        assert item.labels == ()
        assert item.description == ""
        assert item.display_name == "8.8.8.8"
        assert item.can_delete is False
        assert item.web_link is None

    def test_zero_score_is_kept(self, ip_entity):
        record = RemoteIndicatorRecord(id=INDICATOR_ID, x_opencti_score=0, confidence=0)
        item = normalize_indicator(record, ip_entity)
        assert item.score == 0
        assert item.confidence == 0

    def test_display_name_falls_back_to_pattern(self, ip_entity):
        record = RemoteIndicatorRecord(id=INDICATOR_ID, pattern="[ipv4-addr:value = '8.8.8.8']")
        item = normalize_indicator(record, ip_entity)
        assert item.display_name == "[ipv4-addr:value = '8.8.8.8']"

    def test_can_delete_follows_permissions(self, ip_entity):
        config = Config(
            opencti_url="http://localhost:8080",
            opencti_token=SecretStr("t"),
            deletion_permissions=frozenset({"indicators"}),
        )
        record = RemoteIndicatorRecord(id=INDICATOR_ID)
        assert normalize_indicator(record, ip_entity, config).can_delete is True

    def test_submission_flags(self, ip_entity):
        record = RemoteIndicatorRecord.from_node(
            indicator_node(**{"__submitAsIndicator": True, "__submitAsObservable": False})
        )
        item = normalize_indicator(record, ip_entity)
        assert item.to_be_submitted is True
        assert item.submit_as_indicator is True


class TestNormalizeObservable:
    """Tests for normalize_observable()."""

    def test_nullable_fields_defaulted(self, ip_entity, mock_config):
        record = RemoteObservableRecord.from_node(observable_node())
        item = normalize_observable(record, ip_entity, mock_config)

        assert item.kind == "observable"
        assert item.score == 50
        assert item.confidence is None
        assert item.creator == "--"
        assert item.labels == ()
        assert item.markings == ()
        assert item.description == ""
        assert item.display_name == "8.8.8.8"
        assert item.web_link.endswith(f"/observables/{OBSERVABLE_ID}")

    def test_observable_can_delete_per_kind(self, ip_entity):
        config = Config(
            opencti_url="http://localhost:8080",
            opencti_token=SecretStr("t"),
            deletion_permissions=frozenset({"indicators"}),
        )
        record = RemoteObservableRecord(id=OBSERVABLE_ID)
        assert normalize_observable(record, ip_entity, config).can_delete is False

    def test_hash_entity_human_type(self):
        entity = canonical("a" * 64, "SHA256")
        record = RemoteObservableRecord(id=OBSERVABLE_ID, hashes=[{"algorithm": "SHA-256", "hash": "a" * 64}])
        item = normalize_observable(record, entity)
        assert item.opencti_type_human == "File"
        assert item.hashes == ({"algorithm": "SHA-256", "hash": "a" * 64},)


def test_human_readable_type_unknown():
    assert human_readable_type("cve") == "unknown type"
    assert human_readable_type(None) == "unknown type"


# =============================================================================
# Unifier
# =============================================================================


class TestUnify:
    """Tests for unify()."""

    def test_placeholder_when_nothing_found(self, ip_entity):
        items = unify([], [], ip_entity)

        assert len(items) == 1
        assert items[0].is_placeholder
        assert items[0].found_in_remote is False
        assert items[0].entity_value == "8.8.8.8"
        assert items[0] == placeholder(ip_entity)

    def test_none_inputs_treated_as_empty(self, ip_entity):
        assert unify(None, None, ip_entity) == [placeholder(ip_entity)]

    def test_sorted_newest_first(self, ip_entity):
        indicators = [RemoteIndicatorRecord(id="old", created_at="2023-01-01T00:00:00Z")]
        observables = [RemoteObservableRecord(id="new", created_at="2024-06-01T00:00:00Z")]
        items = unify(indicators, observables, ip_entity)
        assert [i.id for i in items] == ["new", "old"]

    def test_newer_observable_before_older_indicator(self, ip_entity):
        indicators = [RemoteIndicatorRecord(id="A", created_at="2023-01-01T00:00:00Z")]
        observables = [RemoteObservableRecord(id="B", created_at="2023-06-01T00:00:00Z")]
        items = unify(indicators, observables, ip_entity)
        assert [i.id for i in items] == ["B", "A"]

    def test_null_confidence_and_missing_score(self, ip_entity):
        record = RemoteIndicatorRecord.from_node({"id": INDICATOR_ID, "confidence": None})
        [item] = unify([record], [], ip_entity)
        assert (item.confidence, item.score) == (50, 50)

    def test_stable_for_equal_timestamps(self, ip_entity):
        """Equal timestamps keep indicator before observable."""
        ts = "2024-01-01T00:00:00Z"
        indicators = [RemoteIndicatorRecord(id="B", created_at=ts)]
        observables = [RemoteObservableRecord(id="A", created_at=ts)]
        items = unify(indicators, observables, ip_entity)
        assert [i.id for i in items] == ["B", "A"]

    def test_missing_timestamp_sorts_last(self, ip_entity):
        indicators = [
            RemoteIndicatorRecord(id="none", created_at=None),
            RemoteIndicatorRecord(id="bad", created_at="not-a-date"),
            RemoteIndicatorRecord(id="dated", created_at="2020-01-01T00:00:00Z"),
        ]
        items = unify(indicators, [], ip_entity)
        assert [i.id for i in items] == ["dated", "none", "bad"]

    def test_naive_timestamp_treated_as_utc(self, ip_entity):
        indicators = [
            RemoteIndicatorRecord(id="naive", created_at="2024-01-01T12:00:00"),
            RemoteIndicatorRecord(id="aware", created_at="2024-01-01T11:00:00+00:00"),
        ]
        items = unify(indicators, [], ip_entity)
        assert [i.id for i in items] == ["naive", "aware"]

    def test_malformed_entity_rejected(self):
        entity = CanonicalEntity(entity=InputEntity(value=""), canonical_type="IPv4")
        with pytest.raises(ValidationError):
            unify([], [], entity)


class TestDedupe:
    """Tests for dedupe()."""

    def _item(self, item_id, value="8.8.8.8"):
        return UnifiedItem(entity_value=value, entity_type="IPv4", id=item_id, kind="indicator",
                           found_in_remote=True)

    def test_first_occurrence_wins(self):
        first = self._item(INDICATOR_ID, "8.8.8.8")
        second = self._item(INDICATOR_ID, "dns.google")
        result = dedupe([[first], [second]])
        assert result == [first]

    def test_placeholders_never_merged(self):
        a = UnifiedItem(entity_value="a.com", entity_type="domain")
        b = UnifiedItem(entity_value="b.com", entity_type="domain")
        result = dedupe([[a], [b], [a]])
        assert result == [a, b, a]

    def test_unique_ids(self):
        per_entity = [
            [self._item(INDICATOR_ID), self._item(OBSERVABLE_ID)],
            [self._item(OBSERVABLE_ID), self._item(OTHER_ID)],
        ]
        ids = [i.id for i in dedupe(per_entity)]
        assert ids == [INDICATOR_ID, OBSERVABLE_ID, OTHER_ID]

    def test_idempotent(self):
        per_entity = [
            [self._item(INDICATOR_ID), UnifiedItem(entity_value="x.com", entity_type="domain")],
            [self._item(INDICATOR_ID)],
        ]
        once = dedupe(per_entity)
        assert dedupe([once]) == once


class TestSummarize:
    """Tests for summarize()."""

    def test_found_only(self):
        items = [UnifiedItem(entity_value="a", entity_type="IPv4", id="x", found_in_remote=True)]
        assert summarize(items) == ["Items Found"]

    def test_new_only(self):
        assert summarize([UnifiedItem(entity_value="a", entity_type="IPv4")]) == ["New Items"]

    def test_both_in_order(self):
        items = [
            UnifiedItem(entity_value="a", entity_type="IPv4"),
            UnifiedItem(entity_value="b", entity_type="IPv4", id="x", found_in_remote=True),
        ]
        assert summarize(items) == ["Items Found", "New Items"]

    def test_empty(self):
        assert summarize([]) == []
