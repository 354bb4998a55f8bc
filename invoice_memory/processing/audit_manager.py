"""Audit manager for logging and exporting memory operations.
"""
import csv
from datetime import datetime
from pathlib import Path
from typing import Any

from ..constants import (
    ENTITY_CORRECTION,
    ENTITY_INVOICE,
    OP_APPLY_CORRECTION,
    OP_DECISION,
    OP_LEARNING,
    OP_LEARNING_SKIPPED,
    OP_MEMORY_ACCESS,
)
from ..models.audit import AuditEntry
from .pattern_store import PatternStore


class AuditManager:
    """Writes pipeline audit events through the pattern store and exports them."""

    def __init__(self, store: PatternStore):
        """Initialize with the store that owns the append-only log."""
        self.store = store

    def log_memory_access(self, entity_type: str, entity_id: str, reasoning: str,
                          after_state: dict[str, Any] | None = None) -> AuditEntry:
        """Log one batch retrieval of memory.

        Args:
            entity_type: Kind of memory retrieved
            entity_id: Lookup key (vendor name, field name or shape key)
            reasoning: What was retrieved
            after_state: Optional summary of the retrieved batch

        Returns:
            The stored audit entry

        """
        return self.store.append_audit_entry(AuditEntry(
            operation=OP_MEMORY_ACCESS,
            entity_type=entity_type,
            entity_id=entity_id,
            after_state=after_state,
            reasoning=reasoning,
        ))

    def log_correction_applied(self, invoice_id: str, field_name: str,
                               original_value: Any, corrected_value: Any,
                               confidence: float, memory_source_id: str) -> AuditEntry:
        """Log a correction written onto an invoice.

        Args:
            invoice_id: The invoice that was corrected
            field_name: The corrected field
            original_value: Value before correction
            corrected_value: Value after correction
            confidence: Confidence of the applied proposal
            memory_source_id: Correction pattern the proposal came from

        """
        return self.store.append_audit_entry(AuditEntry(
            operation=OP_APPLY_CORRECTION,
            entity_type=ENTITY_CORRECTION,
            entity_id=memory_source_id,
            before_state={"invoice_id": invoice_id, "field": field_name,
                          "value": original_value},
            after_state={"invoice_id": invoice_id, "field": field_name,
                         "value": corrected_value},
            reasoning=(
                f"Applied correction to {field_name} on invoice {invoice_id}: "
                f"{original_value!r} -> {corrected_value!r}"
            ),
            confidence_score=confidence,
        ))

    def log_decision(self, invoice_id: str, action: str, confidence: float,
                     safety_constraints: list[str] | None = None) -> AuditEntry:
        """Log the decision reached for an invoice."""
        return self.store.append_audit_entry(AuditEntry(
            operation=OP_DECISION,
            entity_type=ENTITY_INVOICE,
            entity_id=invoice_id,
            after_state={"action": action, "confidence": confidence,
                         "safety_constraints": list(safety_constraints or [])},
            reasoning=f"Decision made: {action} with confidence {confidence * 100:.1f}%",
            confidence_score=confidence,
        ))

    def log_learning(self, invoice_id: str, event_count: int, reasoning: str) -> AuditEntry:
        """Log a completed learning pass for an invoice."""
        return self.store.append_audit_entry(AuditEntry(
            operation=OP_LEARNING,
            entity_type=ENTITY_INVOICE,
            entity_id=invoice_id,
            after_state={"events": event_count},
            reasoning=reasoning,
        ))

    def log_learning_skipped(self, invoice_id: str, reasoning: str) -> AuditEntry:
        """Log a learning attempt ignored because the invoice was already learned from."""
        return self.store.append_audit_entry(AuditEntry(
            operation=OP_LEARNING_SKIPPED,
            entity_type=ENTITY_INVOICE,
            entity_id=invoice_id,
            reasoning=reasoning,
        ))

    def get_entries(self, entity_type: str | None = None, entity_id: str | None = None,
                    operation: str | None = None, start_time: datetime | None = None,
                    end_time: datetime | None = None,
                    limit: int | None = None) -> list[AuditEntry]:
        """Get audit entries with optional filtering, newest first."""
        return self.store.query_audit_entries(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            start_time=start_time,
            end_time=end_time,
            limit=limit,
        )

    def export_csv(self, filepath: Path, **filters: Any) -> int:
        """Export audit entries to a CSV file.

        Args:
            filepath: Path to save the CSV file
            **filters: Passed through to ``get_entries``

        Returns:
            Number of rows written

        """
        # Chronological order for the export
        entries = sorted(self.get_entries(**filters), key=lambda e: e.timestamp)

        with open(filepath, 'w', newline='', encoding='utf-8') as f:
            fieldnames = ['id', 'timestamp', 'operation', 'entity_type',
                          'entity_id', 'reasoning', 'confidence']
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for entry in entries:
                writer.writerow(entry.to_dict())

        return len(entries)

    def get_entry_count(self) -> int:
        """Get total number of audit entries."""
        return self.store.get_counts()["audit_entries"]
