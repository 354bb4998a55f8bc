"""Tests for the in-memory PatternStore implementation."""

from datetime import datetime, timedelta

import pytest

from invoice_memory.constants import (
    ENTITY_CORRECTION,
    ENTITY_VENDOR,
    OP_STORE_CORRECTION,
    OP_UPDATE_CORRECTION_FEEDBACK,
)
from invoice_memory.exceptions import PatternNotFoundError
from invoice_memory.models.audit import AuditEntry
from invoice_memory.models.memory import (
    CorrectionPattern,
    ResolutionMatchPolicy,
    ResolutionOutcome,
    VendorPattern,
)
from invoice_memory.processing.pattern_store import InMemoryPatternStore


@pytest.fixture
def store():
    """Create a fresh in-memory store for each test."""
    return InMemoryPatternStore()


class TestVendorPatterns:
    """Test suite for vendor pattern storage."""

    def test_patterns_ordered_by_confidence(self, store):
        """Test that vendor patterns come back highest confidence first."""
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=0.4))
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=0.9))
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=0.6))
        store.store_vendor_pattern(VendorPattern("Globex", confidence_score=1.0))

        patterns = store.get_vendor_patterns("Acme Corp")

        assert [p.confidence_score for p in patterns] == [0.9, 0.6, 0.4]

    def test_ties_broken_by_most_recent_use(self, store):
        """Test that equal confidence is ordered by last use, newest first."""
        now = datetime.now()
        old = VendorPattern("Acme Corp", confidence_score=0.7, last_used=now - timedelta(days=2))
        recent = VendorPattern("Acme Corp", confidence_score=0.7, last_used=now)
        store.store_vendor_pattern(old)
        store.store_vendor_pattern(recent)

        patterns = store.get_vendor_patterns("Acme Corp")

        assert [p.id for p in patterns] == [recent.id, old.id]

    def test_increment_usage(self, store):
        """Test that usage increments and returns the updated pattern."""
        pattern = VendorPattern("Acme Corp", usage_count=2)
        store.store_vendor_pattern(pattern)

        updated = store.increment_vendor_usage(pattern.id)

        assert updated.usage_count == 3
        assert store.get_vendor_pattern(pattern.id).usage_count == 3

    def test_increment_missing_pattern(self, store):
        """Test that incrementing an unknown id raises PatternNotFoundError."""
        with pytest.raises(PatternNotFoundError):
            store.increment_vendor_usage("vendor_missing")

    def test_adjust_confidence_is_clamped(self, store):
        """Test that vendor confidence never leaves [0, 1]."""
        pattern = VendorPattern("Acme Corp", confidence_score=0.97)
        store.store_vendor_pattern(pattern)

        before, after = store.adjust_vendor_confidence(pattern.id, 0.05)

        assert before.confidence_score == 0.97
        assert after.confidence_score == 1.0

    def test_returned_copies_are_isolated(self, store):
        """Test that mutating a returned pattern does not change stored state."""
        pattern = VendorPattern("Acme Corp", field_mappings={"inv_num": "invoice_number"})
        store.store_vendor_pattern(pattern)

        fetched = store.get_vendor_patterns("Acme Corp")[0]
        fetched.field_mappings["extra"] = "x"
        fetched.confidence_score = 0.0

        stored = store.get_vendor_pattern(pattern.id)
        assert stored.field_mappings == {"inv_num": "invoice_number"}
        assert stored.confidence_score == 0.5


class TestCorrectionPatterns:
    """Test suite for correction pattern storage."""

    def test_vendor_filter_includes_unscoped(self, store):
        """Test that a vendor query returns that vendor's and vendor-agnostic patterns."""
        store.store_correction_pattern(CorrectionPattern("vendor_name", "a", "b", "Acme Corp"))
        store.store_correction_pattern(CorrectionPattern("vendor_name", "a", "c", None))
        store.store_correction_pattern(CorrectionPattern("vendor_name", "a", "d", "Globex"))

        patterns = store.get_correction_patterns("vendor_name", "Acme Corp")

        assert {p.corrected_value for p in patterns} == {"b", "c"}

    def test_three_approvals_from_half(self, store):
        """Test that three approvals take confidence from 0.5 to exactly 0.8."""
        pattern = CorrectionPattern("total_amt", "$1,250.00", "1250.00", confidence_score=0.5)
        store.store_correction_pattern(pattern)

        for _ in range(3):
            store.update_correction_feedback(pattern.id, approved=True)

        updated = store.get_correction_pattern(pattern.id)
        assert updated.confidence_score == 0.8
        assert updated.approval_count == 3

    def test_rejection_floors_at_zero(self, store):
        """Test that rejection decrements confidence without going negative."""
        pattern = CorrectionPattern("po_number", "x", "y", confidence_score=0.1)
        store.store_correction_pattern(pattern)

        before, after = store.update_correction_feedback(pattern.id, approved=False)

        assert before.confidence_score == 0.1
        assert after.confidence_score == 0.0
        assert after.rejection_count == 1

    def test_feedback_on_missing_pattern(self, store):
        """Test that feedback on an unknown id raises PatternNotFoundError."""
        with pytest.raises(PatternNotFoundError):
            store.update_correction_feedback("correction_missing", approved=True)

    def test_every_write_is_audited(self, store):
        """Test that stores and updates each leave an audit entry."""
        pattern = CorrectionPattern("po_number", "x", "y")
        store.store_correction_pattern(pattern)
        store.update_correction_feedback(pattern.id, approved=True)

        entries = store.query_audit_entries(entity_type=ENTITY_CORRECTION, entity_id=pattern.id)

        assert [e.operation for e in entries] == [
            OP_UPDATE_CORRECTION_FEEDBACK,
            OP_STORE_CORRECTION,
        ]
        assert entries[0].before_state["confidence_score"] == 0.5
        assert entries[0].after_state["confidence_score"] == 0.6


class TestResolutionOutcomes:
    """Test suite for resolution outcome matching."""

    @pytest.fixture
    def outcomes(self, store):
        """Store outcomes for two related shape keys."""
        exact = ResolutionOutcome('{"vendor": "Acme"}', "human-review", 0.6, True, "first")
        longer = ResolutionOutcome('{"vendor": "Acme", "x": 1}', "auto-accept", 0.9, True, "second")
        store.store_resolution_outcome(exact)
        store.store_resolution_outcome(longer)
        return exact, longer

    def test_exact_match(self, store, outcomes):
        """Test that the exact policy only returns identical keys."""
        exact, _ = outcomes
        results = store.get_resolution_outcomes('{"vendor": "Acme"}')
        assert [o.id for o in results] == [exact.id]

    def test_contains_match(self, store, outcomes):
        """Test that the contains policy matches case-insensitive substrings."""
        results = store.get_resolution_outcomes('"VENDOR": "ACME"', ResolutionMatchPolicy.CONTAINS)
        assert [o.confidence_score for o in results] == [0.9, 0.6]


class TestAuditLog:
    """Test suite for audit log queries."""

    def test_query_newest_first_with_limit(self, store):
        """Test that audit queries are newest first and honor the limit."""
        base = datetime(2024, 1, 1, 12, 0, 0)
        for minute in range(5):
            store.append_audit_entry(AuditEntry(
                operation="test", entity_type=ENTITY_VENDOR, entity_id="v",
                reasoning=f"entry {minute}", timestamp=base + timedelta(minutes=minute),
            ))

        entries = store.query_audit_entries(operation="test", limit=2)

        assert [e.reasoning for e in entries] == ["entry 4", "entry 3"]

    def test_query_time_window(self, store):
        """Test that start and end times bound the query."""
        base = datetime(2024, 1, 1, 12, 0, 0)
        for minute in range(5):
            store.append_audit_entry(AuditEntry(
                operation="test", entity_type=ENTITY_VENDOR, entity_id="v",
                reasoning=f"entry {minute}", timestamp=base + timedelta(minutes=minute),
            ))

        entries = store.query_audit_entries(
            start_time=base + timedelta(minutes=1), end_time=base + timedelta(minutes=3)
        )

        assert len(entries) == 3

    def test_counts(self, store):
        """Test that counts reflect every entity type."""
        store.store_vendor_pattern(VendorPattern("Acme Corp"))
        store.store_correction_pattern(CorrectionPattern("po_number", "x", "y"))

        counts = store.get_counts()

        assert counts["vendor_patterns"] == 1
        assert counts["correction_patterns"] == 1
        assert counts["resolution_outcomes"] == 0
        assert counts["audit_entries"] == 2

    def test_clear_all(self, store):
        """Test that clear_all empties the store."""
        store.store_vendor_pattern(VendorPattern("Acme Corp"))
        store.clear_all()
        assert store.get_counts() == {
            "vendor_patterns": 0,
            "correction_patterns": 0,
            "resolution_outcomes": 0,
            "audit_entries": 0,
        }
