"""Tests for the OutputEngine class."""

import json
import math
from datetime import date, datetime

import pytest

from invoice_memory.constants import OP_DECISION
from invoice_memory.exceptions import OutputValidationError
from invoice_memory.models.audit import AuditEntry
from invoice_memory.models.invoice import Invoice, ProposedCorrection
from invoice_memory.models.memory import MemoryInsights, ResolutionOutcome, VendorPattern
from invoice_memory.models.result import InvoiceProcessingResult
from invoice_memory.processing.audit_manager import AuditManager
from invoice_memory.processing.decision_engine import DecisionEngine
from invoice_memory.processing.output_engine import (
    OutputEngine,
    sanitize_error_message,
    sanitize_value,
)
from invoice_memory.processing.pattern_store import InMemoryPatternStore


@pytest.fixture
def store():
    """Create a fresh in-memory store."""
    return InMemoryPatternStore()


@pytest.fixture
def engine(store):
    """Create an output engine that logs decisions to the store."""
    return OutputEngine(AuditManager(store))


@pytest.fixture
def invoice():
    """Invoice being published."""
    return Invoice(
        id="INV-500",
        vendor_name="Acme Corp",
        invoice_number="AC-500",
        amount=1250.0,
        date=date(2024, 1, 15),
        raw_fields={"po_number": "PO-1"},
    )


@pytest.fixture
def insights():
    """High-confidence insights with mixed resolution history."""
    return MemoryInsights(
        vendor_patterns=[VendorPattern("Acme Corp", confidence_score=0.9)],
        historical_resolutions=[
            ResolutionOutcome("{}", "auto-accept", 0.9, True, "r"),
            ResolutionOutcome("{}", "auto-accept", 0.8, False, "r"),
        ],
        overall_confidence=0.9,
        reasoning=["Found 1 vendor pattern(s)"],
        audit_entries=[
            AuditEntry(operation="memory_access", entity_type="vendor_pattern",
                       entity_id="Acme Corp", reasoning="Retrieved 1 vendor pattern(s)"),
        ],
    )


@pytest.fixture
def decision(invoice, insights):
    """Auto-accept decision carrying one correction."""
    proposals = [ProposedCorrection("po_number", "PO-1", "PO-0001", 0.9, "correction_1")]
    return DecisionEngine().make_decision(invoice, insights, proposals)


class TestCreateResult:
    """Test suite for result construction."""

    def test_contract_fields(self, engine, invoice, decision, insights):
        """Test that the result carries the decision, corrections and summary."""
        result = engine.create_result(invoice, decision, insights)

        data = result.to_contract_dict()
        assert data["documentId"] == "INV-500"
        assert data["decision"] == "auto-accept"
        assert data["confidenceScore"] == 0.9
        assert data["appliedCorrections"] == [{
            "field": "po_number",
            "originalValue": "PO-1",
            "correctedValue": "PO-0001",
            "confidence": 0.9,
        }]
        assert data["memoryInsights"] == {
            "vendorPatternsUsed": 1,
            "correctionsApplied": 1,
            "historicalAccuracy": 0.5,
        }

    def test_reasoning_structure(self, engine, invoice, decision, insights):
        """Test that reasoning starts with the decision summary."""
        result = engine.create_result(invoice, decision, insights)

        assert result.reasoning.startswith(
            "Decision: AUTO-ACCEPT | Confidence: 90.0% | Memory Sources: 4 pattern(s) | "
            "Applied Corrections: 1"
        )

    def test_audit_trail_ends_with_decision(self, engine, store, invoice, decision, insights):
        """Test that the trail lists recall entries then the persisted decision."""
        result = engine.create_result(invoice, decision, insights)

        trail = result.audit_trail
        assert len(trail) == 2
        assert trail[0].operation_id == insights.audit_entries[0].id
        assert trail[-1].reasoning == "Decision made: auto-accept with confidence 90.0%"
        logged = store.query_audit_entries(operation=OP_DECISION)
        assert [e.id for e in logged] == [trail[-1].operation_id]

    def test_without_audit_manager(self, invoice, decision, insights):
        """Test that a decision item is still produced without an audit manager."""
        result = OutputEngine().create_result(invoice, decision, insights)

        assert result.audit_trail[-1].operation_id.startswith("decision_")

    def test_failure_yields_error_result(self, engine, invoice, insights):
        """Test that a broken decision produces the error-shaped result."""
        result = engine.create_result(invoice, object(), insights)

        assert result.decision == "human-review"
        assert result.confidence_score == 0.0
        assert result.reasoning.startswith("Error occurred during processing: ")


class TestErrorResult:
    """Test suite for error-shaped results."""

    def test_shape(self, engine):
        """Test the fixed shape of an error result."""
        result = engine.create_error_result("INV-9", ValueError('bad "value"\nhere'))

        assert result.decision == "human-review"
        assert result.confidence_score == 0.0
        assert result.applied_corrections == []
        assert result.memory_insights.vendor_patterns_used == 0
        assert len(result.audit_trail) == 1
        assert result.audit_trail[0].operation_id.startswith("error_")
        assert result.reasoning == (
            "Error occurred during processing: bad 'value' here. "
            "Defaulting to human review for safety."
        )

    def test_long_messages_truncated(self):
        """Test that error messages are bounded."""
        message = sanitize_error_message("x" * 500)
        assert len(message) == 200
        assert message.endswith("...")


class TestSerialization:
    """Test suite for JSON serialization and validation."""

    def test_json_round_trip(self, engine, invoice, decision, insights):
        """Test that serializing and parsing yields an equal result."""
        result = engine.create_result(invoice, decision, insights)

        text = engine.to_json(result)

        assert '"documentId": "INV-500"' in text
        assert engine.from_json(text) == result

    def test_from_json_rejects_invalid(self, engine):
        """Test that contract violations raise OutputValidationError."""
        payload = json.dumps({
            "documentId": "INV-1",
            "decision": "maybe",
            "confidenceScore": 1.5,
            "reasoning": "r",
        })

        with pytest.raises(OutputValidationError) as exc_info:
            engine.from_json(payload)

        assert len(exc_info.value.errors) == 2

    def test_validate_dict(self, engine):
        """Test that a camelCase dict is validated field by field."""
        validation = engine.validate_output({
            "documentId": "INV-1",
            "decision": "auto-accept",
            "confidenceScore": -0.1,
            "reasoning": "r",
        })

        assert not validation.is_valid
        assert any("confidenceScore" in error for error in validation.errors)

    def test_inconsistency_warnings(self, engine):
        """Test that suspicious but valid results produce warnings only."""
        result = InvoiceProcessingResult(
            document_id="INV-1",
            decision="human-review",
            confidence_score=0.95,
            reasoning="r",
            applied_corrections=[{"field": "po_number", "confidence": 0.9}],
        )

        validation = engine.validate_output(result)

        assert validation.is_valid
        assert len(validation.warnings) == 2


class TestSanitizeValue:
    """Test suite for value sanitization."""

    def test_strings(self):
        """Test control character removal and length bound."""
        assert sanitize_value("a\x00b\nc") == "abc"
        assert len(sanitize_value("y" * 5000)) == 1000

    def test_numbers(self):
        """Test that non-finite floats become None."""
        assert sanitize_value(math.nan) is None
        assert sanitize_value(math.inf) is None
        assert sanitize_value(12.5) == 12.5
        assert sanitize_value(True) is True

    def test_dates_and_containers(self):
        """Test ISO dates and recursive containers."""
        assert sanitize_value(date(2024, 1, 2)) == "2024-01-02"
        assert sanitize_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"
        assert sanitize_value({"a": [1, "b\x07"]}) == {"a": [1, "b"]}
