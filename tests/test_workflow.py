"""Tests for the LangGraph processing workflow."""

from datetime import date

import pytest

from invoice_memory.constants import OP_APPLY_CORRECTION
from invoice_memory.exceptions import StoreError
from invoice_memory.graph.workflow import (
    build_workflow,
    create_initial_state,
    route_on_error,
    run_workflow,
)
from invoice_memory.models.decision import DecisionAction
from invoice_memory.models.invoice import Invoice
from invoice_memory.models.memory import CorrectionPattern, VendorPattern
from invoice_memory.processing.apply_engine import ApplyEngine
from invoice_memory.processing.audit_manager import AuditManager
from invoice_memory.processing.decision_engine import DecisionEngine
from invoice_memory.processing.output_engine import OutputEngine
from invoice_memory.processing.pattern_store import InMemoryPatternStore
from invoice_memory.processing.recall_engine import RecallEngine


class BrokenStore(InMemoryPatternStore):
    """Store whose vendor lookups always fail."""

    def get_vendor_patterns(self, vendor_name):
        raise StoreError("database unavailable")


def compile_for(store, **apply_options):
    audit = AuditManager(store)
    return build_workflow(
        RecallEngine(store, audit),
        ApplyEngine(store, audit, **apply_options),
        DecisionEngine(),
        OutputEngine(audit),
    )


@pytest.fixture
def invoice():
    """Invoice flowing through the graph."""
    return Invoice(
        id="INV-600",
        vendor_name="Acme Corp",
        invoice_number="AC-600",
        amount=1250.0,
        date=date(2024, 1, 15),
        raw_fields={"po_number": "PO-1", "total_amt": "$1,250.00"},
    )


class TestRouting:
    """Test suite for error routing helpers."""

    def test_initial_state(self, invoice):
        """Test that the initial state only carries the invoice."""
        state = create_initial_state(invoice)

        assert state["invoice"] is invoice
        assert state["audit_entries"] == []
        assert state["error"] is None

    def test_route_on_error(self, invoice):
        """Test that an error in state skips straight to output."""
        route = route_on_error("apply")
        state = create_initial_state(invoice)

        assert route(state) == "apply"
        state["error"] = "boom"
        assert route(state) == "output"


class TestWorkflow:
    """Test suite for end-to-end graph execution."""

    def test_cold_start_run(self, invoice):
        """Test that every stage runs and the result is published."""
        state = run_workflow(compile_for(InMemoryPatternStore()), invoice)

        assert state["error"] is None
        assert state["proposed_corrections"] == []
        assert state["decision"].action == DecisionAction.HUMAN_REVIEW
        assert state["result"].document_id == "INV-600"
        assert len(state["result"].audit_trail) == 4

    def test_audit_entries_accumulate(self, invoice):
        """Test that recall and auto-apply entries both reach the trail."""
        store = InMemoryPatternStore()
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=0.95))
        store.store_correction_pattern(
            CorrectionPattern("po_number", "PO-1", "PO-0001", "Acme Corp", 0.95)
        )

        state = run_workflow(compile_for(store), invoice)

        operations = [e.operation for e in state["audit_entries"]]
        assert operations == ["memory_access"] * 3 + ["apply_correction"]
        assert state["corrected_invoice"].corrected.raw_fields["po_number"] == "PO-0001"
        assert state["result"].decision == "auto-accept"
        assert len(state["result"].audit_trail) == 5

    def test_recall_failure_routes_to_output(self, invoice):
        """Test that a recall failure skips apply and decide."""
        state = run_workflow(compile_for(BrokenStore()), invoice)

        assert state["error_stage"] == "recall"
        assert state["decision"] is None
        assert state["result"].decision == "human-review"
        assert state["result"].confidence_score == 0.0
        assert "database unavailable" in state["result"].reasoning

    def test_human_review_applies_nothing(self, invoice):
        """Test that a confident correction is not auto-applied when review is forced."""
        store = InMemoryPatternStore()
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=0.2))
        store.store_correction_pattern(
            CorrectionPattern("po_number", "PO-1", "PO-0001", "Acme Corp", 0.9)
        )

        state = run_workflow(compile_for(store), invoice)

        result = state["result"]
        assert result.decision == "human-review"
        assert result.applied_corrections == []
        assert not any("Applied correction" in item.reasoning for item in result.audit_trail)
        assert store.query_audit_entries(operation=OP_APPLY_CORRECTION) == []
        assert state["corrected_invoice"].applied_corrections == []
        assert state["corrected_invoice"].corrected.raw_fields["po_number"] == "PO-1"

    def test_auto_apply_limited_to_decided_corrections(self, invoice):
        """Test that corrections the decision dropped are never written."""
        store = InMemoryPatternStore()
        store.store_vendor_pattern(VendorPattern("Acme Corp", confidence_score=1.0))
        po_number = CorrectionPattern("po_number", "PO-1", "PO-0001", "Acme Corp", 1.0)
        total = CorrectionPattern("total_amt", "$1,250.00", "1250.00", "Acme Corp", 0.7)
        store.store_correction_pattern(po_number)
        store.store_correction_pattern(total)

        state = run_workflow(compile_for(store, auto_apply_threshold=0.6), invoice)

        assert state["decision"].action == DecisionAction.AUTO_ACCEPT
        assert [c.field for c in state["decision"].applied_corrections] == ["po_number"]
        corrected = state["corrected_invoice"]
        assert [c.field for c in corrected.applied_corrections] == ["po_number"]
        assert corrected.corrected.raw_fields["total_amt"] == "$1,250.00"
        logged = store.query_audit_entries(operation=OP_APPLY_CORRECTION)
        assert [e.entity_id for e in logged] == [po_number.id]
