"""Tests for the RecallEngine class."""

from datetime import date

import pytest

from invoice_memory.constants import OP_MEMORY_ACCESS
from invoice_memory.exceptions import RetrievalError, StoreError
from invoice_memory.models.invoice import Invoice
from invoice_memory.models.memory import (
    CorrectionPattern,
    ResolutionMatchPolicy,
    ResolutionOutcome,
    VendorPattern,
)
from invoice_memory.processing.pattern_store import InMemoryPatternStore
from invoice_memory.processing.recall_engine import (
    RecallEngine,
    calculate_overall_confidence,
    select_corrections,
)


class BrokenStore(InMemoryPatternStore):
    """Store whose vendor lookups always fail."""

    def get_vendor_patterns(self, vendor_name):
        raise StoreError("database unavailable")


@pytest.fixture
def store():
    """Create a fresh in-memory store."""
    return InMemoryPatternStore()


@pytest.fixture
def engine(store):
    """Create a recall engine over the store."""
    return RecallEngine(store)


@pytest.fixture
def invoice():
    """A typical invoice from a known vendor."""
    return Invoice(
        id="INV-100",
        vendor_name="Acme Corp",
        invoice_number="AC-100",
        amount=1250.0,
        date=date(2024, 1, 15),
        raw_fields={"total_amt": "$1,250.00", "po_number": "PO-1"},
    )


class TestOverallConfidence:
    """Test suite for confidence blending."""

    def test_no_memory_floor(self):
        """Test that no memory at all yields the fixed floor of 0.1."""
        assert calculate_overall_confidence([], [], []) == 0.1

    def test_single_source_is_not_diluted(self):
        """Test that a lone source keeps its own confidence."""
        corrections = [CorrectionPattern("po_number", "a", "b", confidence_score=0.6)]
        assert calculate_overall_confidence([], corrections, []) == pytest.approx(0.6)

    def test_weighted_blend(self):
        """Test usage-weighted vendor confidence blended with the other sources."""
        vendors = [
            VendorPattern("Acme Corp", confidence_score=0.9, usage_count=3),
            VendorPattern("Acme Corp", confidence_score=0.5, usage_count=1),
        ]
        corrections = [
            CorrectionPattern("po_number", "a", "b", confidence_score=0.6),
            CorrectionPattern("date", "a", "b", confidence_score=0.8),
        ]
        resolutions = [
            ResolutionOutcome("{}", "auto-accept", 0.9, True, "r"),
            ResolutionOutcome("{}", "auto-accept", 0.7, True, "r"),
        ]

        # 0.5 * 0.8 + 0.3 * 0.7 + 0.2 * 0.8
        assert calculate_overall_confidence(vendors, corrections, resolutions) == pytest.approx(0.77)

    def test_zero_usage_falls_back_to_mean(self):
        """Test that unused vendor patterns are averaged without weighting."""
        vendors = [
            VendorPattern("Acme Corp", confidence_score=0.4),
            VendorPattern("Acme Corp", confidence_score=0.8),
        ]
        assert calculate_overall_confidence(vendors, [], []) == pytest.approx(0.6)


class TestSelectCorrections:
    """Test suite for correction filtering and deduplication."""

    def test_drops_weak_patterns(self):
        """Test that patterns under 0.3 confidence are ignored."""
        patterns = [
            CorrectionPattern("po_number", "a", "b", confidence_score=0.29),
            CorrectionPattern("po_number", "a", "c", confidence_score=0.3),
        ]
        assert [p.corrected_value for p in select_corrections(patterns)] == ["c"]

    def test_vendor_scoped_pattern_wins(self):
        """Test that a vendor-scoped pattern replaces an unscoped duplicate."""
        unscoped = CorrectionPattern("po_number", "a", "b", None, confidence_score=0.9)
        scoped = CorrectionPattern("po_number", "a", "b", "Acme Corp", confidence_score=0.6)

        selected = select_corrections([unscoped, scoped])

        assert [p.id for p in selected] == [scoped.id]


class TestRecallEngine:
    """Test suite for the RecallEngine class."""

    def test_cold_start(self, engine, invoice):
        """Test that an unknown vendor yields empty insights at the floor."""
        insights = engine.get_confidence_weighted_insights(invoice)

        assert insights.overall_confidence == 0.1
        assert not insights.has_memory
        assert insights.reasoning[0] == "No vendor-specific patterns found - using default processing"
        assert insights.reasoning[-1] == "Low confidence - human review recommended"

    def test_vendor_retrieval_counts_usage(self, engine, store):
        """Test that retrieving patterns increments each pattern's usage."""
        pattern = VendorPattern("Acme Corp", confidence_score=0.8)
        store.store_vendor_pattern(pattern)

        recalled = engine.get_vendor_patterns("Acme Corp")

        assert recalled[0].usage_count == 1
        assert store.get_vendor_pattern(pattern.id).usage_count == 1

    def test_one_audit_entry_per_batch(self, engine, store, invoice):
        """Test that each recall batch writes a single memory access entry."""
        store.store_correction_pattern(CorrectionPattern("po_number", "PO-1", "PO-0001", "Acme Corp"))
        store.store_correction_pattern(CorrectionPattern("total_amt", "$1,250.00", "1250.00"))

        insights = engine.get_confidence_weighted_insights(invoice)

        assert len(insights.audit_entries) == 3
        assert all(e.operation == OP_MEMORY_ACCESS for e in insights.audit_entries)
        assert len(insights.suggested_corrections) == 2
        assert len(store.query_audit_entries(operation=OP_MEMORY_ACCESS)) == 3

    def test_resolution_filter(self, engine, store, invoice):
        """Test that failed low-confidence outcomes are not recalled."""
        key = invoice.shape().key
        store.store_resolution_outcome(ResolutionOutcome(key, "human-review", 0.3, True, "ok"))
        store.store_resolution_outcome(ResolutionOutcome(key, "auto-accept", 0.6, False, "kept"))
        store.store_resolution_outcome(ResolutionOutcome(key, "auto-accept", 0.4, False, "dropped"))

        outcomes = engine.get_resolution_outcomes(key)

        assert {o.reasoning for o in outcomes} == {"ok", "kept"}

    def test_contains_policy(self, store, invoice):
        """Test that the contains policy matches partial shape keys."""
        store.store_resolution_outcome(
            ResolutionOutcome(invoice.shape().key, "auto-accept", 0.9, True, "r")
        )
        engine = RecallEngine(store, resolution_match=ResolutionMatchPolicy.CONTAINS)

        assert len(engine.get_resolution_outcomes('"vendor": "acme corp"')) == 1

    def test_store_failure_raises_retrieval_error(self, invoice):
        """Test that store failures surface as RetrievalError."""
        engine = RecallEngine(BrokenStore())

        with pytest.raises(RetrievalError) as exc_info:
            engine.get_confidence_weighted_insights(invoice)

        assert isinstance(exc_info.value.__cause__, StoreError)
