"""Tests for the InvoiceMemorySystem facade."""

import csv
from datetime import date

import pytest

from invoice_memory.config import Settings
from invoice_memory.constants import FLAG_CRITICAL_FIELD
from invoice_memory.exceptions import StoreError, ValidationError
from invoice_memory.main import reviewer_corrections, sample_invoices
from invoice_memory.models.decision import DecisionAction
from invoice_memory.models.feedback import LearningFeedback
from invoice_memory.models.invoice import Invoice
from invoice_memory.processing.pattern_store import InMemoryPatternStore
from invoice_memory.processing.sqlite_store import SqlitePatternStore
from invoice_memory.system import InvoiceMemorySystem, create_store


class BrokenStore(InMemoryPatternStore):
    """Store whose vendor lookups always fail."""

    def get_vendor_patterns(self, vendor_name):
        raise StoreError("database unavailable")


@pytest.fixture
def system():
    """Create a system backed by a fresh in-memory store."""
    with InvoiceMemorySystem(settings=Settings()) as system:
        yield system


@pytest.fixture
def invoices():
    """Two same-shaped invoices from one vendor."""
    return sample_invoices()


class TestProcessing:
    """Test suite for invoice processing scenarios."""

    def test_cold_start(self, system, invoices):
        """Test that an unknown vendor goes to human review at the floor confidence."""
        result = system.process_invoice(invoices[0])

        assert result.decision == "human-review"
        assert result.confidence_score == 0.1
        assert result.applied_corrections == []
        assert result.memory_insights.vendor_patterns_used == 0
        assert result.audit_trail[-1].reasoning == "Decision made: human-review with confidence 10.0%"

    def test_learning_then_recall(self, system, invoices):
        """Test that reviewer corrections are recalled for a similar invoice."""
        first, second = invoices
        system.process_invoice(first)
        system.learn_from_corrections(
            first, reviewer_corrections(), field_mappings={"inv_num": "invoice_number"}
        )

        result = system.process_invoice(second)

        decision = system.get_last_decision(second.id)
        assert decision.confidence_score == pytest.approx(0.48)
        assert FLAG_CRITICAL_FIELD in decision.safety_constraints
        assert result.decision == "human-review"
        assert result.applied_corrections == []
        assert result.memory_insights.vendor_patterns_used == 1
        assert result.memory_insights.historical_accuracy == 1.0

        insights = system.recall.get_confidence_weighted_insights(second)
        proposals = system.apply.propose_corrections(second, insights.suggested_corrections)
        assert {p.field: p.corrected_value for p in proposals} == {
            "vendor_name": "ACME Corporation",
            "total_amt": "1250.00",
        }

    def test_reinforcement_after_learning(self, system, invoices):
        """Test that approvals on learned memory raise its confidence."""
        first = invoices[0]
        system.process_invoice(first)
        system.learn_from_corrections(first, reviewer_corrections())

        correction = system.store.get_correction_patterns("total_amt", "Acme Corp")[0]
        vendor = system.store.get_vendor_patterns("Acme Corp")[0]
        for n in range(3):
            system.submit_feedback(LearningFeedback(
                f"REVIEW-{n}", True, correction_id=correction.id, vendor_pattern_id=vendor.id
            ))

        assert system.store.get_correction_pattern(correction.id).confidence_score == 1.0
        assert system.store.get_vendor_pattern(vendor.id).confidence_score == 0.65

    def test_recall_failure_returns_error_result(self, invoices):
        """Test that a failing store produces the error-shaped result."""
        system = InvoiceMemorySystem(store=BrokenStore(), settings=Settings())

        result = system.process_invoice(invoices[0])

        assert result.decision == "human-review"
        assert result.confidence_score == 0.0
        assert len(result.audit_trail) == 1
        assert system.get_last_decision(invoices[0].id) is None

    def test_batch_keeps_input_order(self, system):
        """Test that batch results line up with the submitted invoices."""
        batch = [
            Invoice(f"INV-{n}", f"Vendor {n % 2}", f"N-{n}", 100.0 * (n + 1), date(2024, 1, 1))
            for n in range(6)
        ]

        results = system.process_batch(batch, max_workers=3)

        assert [r.document_id for r in results] == [i.id for i in batch]
        assert system.process_batch([]) == []


class TestLearningEntryPoints:
    """Test suite for learning through the facade."""

    def test_corrections_need_a_decision(self, system, invoices):
        """Test that learning from an unprocessed invoice is refused."""
        with pytest.raises(ValidationError):
            system.learn_from_corrections(invoices[0], reviewer_corrections())

    def test_explicit_decision_is_accepted(self, system, invoices):
        """Test that a caller-supplied decision is used without processing first."""
        first = invoices[0]
        decision = system.decision.make_decision(
            first, system.recall.get_confidence_weighted_insights(first)
        )

        events = system.learn_from_corrections(first, reviewer_corrections(), decision)

        assert len(events) == 4


class TestAdministration:
    """Test suite for thresholds, statistics and audit export."""

    def test_update_thresholds(self, system):
        """Test that threshold changes reach decision and auto-apply."""
        thresholds = system.update_thresholds(auto_accept=0.9, auto_correct=0.7)

        assert thresholds.auto_accept == 0.9
        assert thresholds.human_review == 0.7
        assert system.apply.auto_apply_threshold == 0.9

    def test_system_stats(self, system, invoices):
        """Test that statistics cover memory, learning and thresholds."""
        system.process_invoice(invoices[0])
        system.learn_from_corrections(invoices[0], reviewer_corrections())

        stats = system.get_system_stats()

        assert stats["memory"]["vendor_patterns"] == 1
        assert stats["memory"]["correction_patterns"] == 2
        assert stats["memory"]["resolution_outcomes"] == 1
        assert stats["learning"]["new_patterns"] == 4
        assert stats["learning"]["processed_invoices"] == 1
        assert stats["thresholds"] == {
            "auto_accept": 0.85,
            "auto_correct": 0.65,
            "human_review": 0.65,
        }

    def test_export_audit_log(self, system, invoices, tmp_path):
        """Test that the audit log exports chronologically to CSV."""
        system.process_invoice(invoices[0])
        path = tmp_path / "audit.csv"

        count = system.export_audit_log(path)

        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert count == len(rows) == system.audit.get_entry_count()
        assert rows[-1]["operation"] == "make_decision"
        assert rows[0]["operation"] == "memory_access"


class TestSqliteBackedSystem:
    """Test suite for a system persisted to SQLite."""

    def test_create_store_from_settings(self, tmp_path):
        """Test that a database path selects the SQLite store."""
        store = create_store(Settings(db_path=str(tmp_path / "memory.db")))
        assert isinstance(store, SqlitePatternStore)
        assert isinstance(create_store(Settings()), InMemoryPatternStore)

    def test_memory_survives_restart(self, tmp_path, invoices):
        """Test that learned memory is recalled by a new system on the same file."""
        settings = Settings(db_path=str(tmp_path / "memory.db"))
        first, second = invoices

        with InvoiceMemorySystem(settings=settings) as system:
            system.process_invoice(first)
            system.learn_from_corrections(first, reviewer_corrections())

        with InvoiceMemorySystem(settings=settings) as system:
            system.process_invoice(second)
            decision = system.get_last_decision(second.id)

        assert decision.action == DecisionAction.HUMAN_REVIEW
        assert decision.confidence_score == pytest.approx(0.48)
