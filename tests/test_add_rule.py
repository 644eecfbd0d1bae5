"""Tests for the raw-field interface of the rule store.

The caller hands over the fields of an observed email plus a level and an
action; the store alone decides which rule node is created or changed.
"""

import pytest

from sift.errors import RuleValidationError
from sift.schemas.criteria import Action, Dimension, Direction, ErrorCode, KeyType

USER = "me@gmail.com"


def _add(store, **overrides):
    fields = dict(
        from_email="noreply@custcomm.icicibank.com",
        to_email=USER,
        subject="Join our webinar today",
        level="subdomain",
        action="delete",
        user_email=USER,
    )
    fields.update(overrides)
    return store.add_rule(**fields)


class TestSubdomainRoundTrip:
    def test_pattern_on_subdomain_creates_two_entries_and_one_pattern(self, rule_store):
        result = _add(rule_store, subject_pattern="Webinar")

        assert result.success is True
        rules = rule_store.load_rule_set(USER)
        by_key = {e.key_value: e for e in rules.entries}
        assert set(by_key) == {"icicibank.com", "custcomm.icicibank.com"}

        parent = by_key["icicibank.com"]
        sub = by_key["custcomm.icicibank.com"]
        assert parent.key_type == KeyType.DOMAIN
        assert parent.parent_id is None
        assert parent.default_action is None
        assert sub.key_type == KeyType.SUBDOMAIN
        assert sub.parent_id == parent.id

        (pattern,) = rules.patterns
        assert pattern.criteria_id == sub.id
        assert pattern.pattern == "webinar"
        assert pattern.action == Action.DELETE

    def test_round_trip_writes_one_audit_entry(self, rule_store):
        result = _add(rule_store, subject_pattern="webinar")

        assert rule_store.audit_log.count(USER) == 1
        entry = rule_store.audit_log.get(result.audit_id, USER)
        assert entry.table_name == "patterns"
        assert len(entry.details["created"]) == 2
        assert entry.details["source"]["from_email"] == "noreply@custcomm.icicibank.com"
        assert entry.details["source"]["subject"] == "Join our webinar today"

    def test_repeat_is_idempotent(self, rule_store):
        _add(rule_store, subject_pattern="webinar")
        again = _add(rule_store, subject_pattern="webinar")

        assert again.success is True
        assert again.audit_id is None
        rules = rule_store.load_rule_set(USER)
        assert len(rules.entries) == 2
        assert len(rules.patterns) == 1

    def test_default_on_subdomain(self, rule_store):
        _add(rule_store)

        sub = next(
            e for e in rule_store.load_rule_set(USER).entries if e.key_type == KeyType.SUBDOMAIN
        )
        assert sub.default_action == Action.DELETE

    def test_degrades_to_domain_without_subdomain(self, rule_store):
        result = _add(rule_store, from_email="alerts@hdfcbank.co.in")

        assert result.success is True
        (entry,) = rule_store.load_rule_set(USER).entries
        assert entry.key_type == KeyType.DOMAIN
        assert entry.key_value == "hdfcbank.co.in"
        assert entry.default_action == Action.DELETE


class TestOtherLevels:
    def test_domain_level_uses_primary_domain(self, rule_store):
        _add(rule_store, level="domain", action="keep")

        (entry,) = rule_store.load_rule_set(USER).entries
        assert entry.key_value == "icicibank.com"
        assert entry.default_action == Action.KEEP

    def test_domain_level_pattern(self, rule_store):
        _add(rule_store, level="domain", subject_pattern="statement", action="keep")

        rules = rule_store.load_rule_set(USER)
        assert rules.entries[0].key_value == "icicibank.com"
        assert rules.patterns[0].criteria_id == rules.entries[0].id

    def test_from_email_level(self, rule_store):
        _add(rule_store, from_email="CEO@Company.com", level="from_email", action="keep")

        (entry,) = rule_store.load_rule_set(USER).entries
        assert entry.key_type == KeyType.EMAIL
        assert entry.key_value == "ceo@company.com"
        assert entry.default_action == Action.KEEP

    def test_to_email_level_anchors_on_recipient_domain(self, rule_store):
        _add(rule_store, from_email="deals@shop.com", level="to_email", action="delete")

        rules = rule_store.load_rule_set(USER)
        (entry,) = rules.entries
        (pattern,) = rules.email_patterns
        assert entry.key_value == "gmail.com"
        assert pattern.criteria_id == entry.id
        assert pattern.direction == Direction.TO
        assert pattern.email == USER

    def test_to_email_level_upserts(self, rule_store):
        _add(rule_store, level="to_email", action="keep")
        _add(rule_store, level="to_email", action="delete")

        (pattern,) = rule_store.load_rule_set(USER).email_patterns
        assert pattern.action == Action.DELETE


class TestRawRemoveAndUpdate:
    def test_remove_pattern_by_raw_fields(self, rule_store):
        _add(rule_store, subject_pattern="webinar")

        result = rule_store.apply_intent(
            "REMOVE",
            level="subdomain",
            user_email=USER,
            from_email="noreply@custcomm.icicibank.com",
            subject_pattern="webinar",
        )

        assert result.success is True
        assert rule_store.load_rule_set(USER).patterns == []

    def test_update_default_by_raw_fields(self, rule_store):
        _add(rule_store, level="domain", action="delete")

        result = rule_store.apply_intent(
            "UPDATE",
            level="domain",
            user_email=USER,
            from_email="anyone@icicibank.com",
            action="delete_10d",
        )

        assert result.success is True
        assert rule_store.load_rule_set(USER).entries[0].default_action == Action.DELETE_10D


class TestResolveIntent:
    def test_subdomain_with_pattern(self, rule_store):
        target = rule_store.resolve_intent("subdomain", "a@mail.example.com", "", "Promo")

        assert target.dimension == Dimension.SUBJECT
        assert target.key_value == "promo"
        assert target.parent_domain == "example.com"
        assert target.parent_subdomain == "mail.example.com"

    def test_subdomain_without_subdomain(self, rule_store):
        target = rule_store.resolve_intent("subdomain", "a@example.com")

        assert target.dimension == Dimension.DOMAIN
        assert target.key_value == "example.com"

    def test_to_email(self, rule_store):
        target = rule_store.resolve_intent("to_email", "a@example.com", "Me@Gmail.com")

        assert target.dimension == Dimension.TO_EMAIL
        assert target.key_value == "me@gmail.com"
        assert target.parent_domain == "gmail.com"

    def test_unknown_level(self, rule_store):
        with pytest.raises(RuleValidationError):
            rule_store.resolve_intent("tld", "a@example.com")

    def test_pattern_not_allowed_on_from_email(self, rule_store):
        with pytest.raises(RuleValidationError):
            rule_store.resolve_intent("from_email", "a@example.com", "", "promo")


class TestRawValidation:
    def test_malformed_sender(self, rule_store):
        result = _add(rule_store, from_email="not-an-address")

        assert result.success is False
        assert result.code == ErrorCode.VALIDATION_ERROR

    def test_to_email_level_needs_recipient(self, rule_store):
        result = _add(rule_store, level="to_email", to_email="")

        assert result.code == ErrorCode.VALIDATION_ERROR

    def test_blank_user(self, rule_store):
        result = _add(rule_store, user_email="")

        assert result.code == ErrorCode.VALIDATION_ERROR
        assert rule_store.load_rule_set(USER).entries == []
