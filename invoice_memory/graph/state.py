from typing import TypedDict

from ..models.audit import AuditEntry
from ..models.decision import ProcessingDecision
from ..models.invoice import CorrectedInvoice, Invoice, ProposedCorrection
from ..models.memory import MemoryInsights
from ..models.result import InvoiceProcessingResult


class PipelineState(TypedDict):
    """State that flows through the LangGraph workflow."""

    # Input
    invoice: Invoice

    # Recall
    insights: MemoryInsights | None

    # Apply
    proposed_corrections: list[ProposedCorrection] | None

    # Decision
    decision: ProcessingDecision | None
    confidence: float | None

    # Correct
    corrected_invoice: CorrectedInvoice | None

    # Audit entries written for this invoice, in order
    audit_entries: list[AuditEntry]

    # Output
    result: InvoiceProcessingResult | None

    # Workflow control
    error: str | None
    error_stage: str | None
