"""
Builds, validates and serializes the published processing result.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import pydantic

from ..config import MAX_VALUE_LENGTH
from ..exceptions import OutputValidationError
from ..models.audit import AuditEntry
from ..models.decision import DecisionAction, ProcessingDecision
from ..models.invoice import Invoice
from ..models.memory import MemoryInsights, clamp_confidence, new_id
from ..models.result import (
    AppliedCorrection,
    AuditTrailItem,
    InvoiceProcessingResult,
    MemoryInsightSummary,
)
from ..utils.error_handling import format_error_message
from .audit_manager import AuditManager

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_value(value: Any) -> Any:
    """Make a field value safe for the published JSON contract."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _CONTROL_CHARS.sub("", value)[:MAX_VALUE_LENGTH]
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(value, int):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): sanitize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_value(v) for v in value]
    return sanitize_value(str(value))


def sanitize_error_message(message: Exception | str) -> str:
    """Strip control characters, bound the length and neutralize quotes."""
    text = _CONTROL_CHARS.sub("", format_error_message(message))
    return text.replace('"', "'")


@dataclass
class OutputValidation:
    """Result of checking a published result against the contract."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class OutputEngine:
    """Turns a decision into the externally published result."""

    def __init__(self, audit_manager: AuditManager | None = None):
        self.audit = audit_manager

    def create_result(
        self,
        invoice: Invoice,
        decision: ProcessingDecision,
        insights: MemoryInsights,
        audit_entries: list[AuditEntry] | None = None,
    ) -> InvoiceProcessingResult:
        """Build and validate the result; failures yield the error-shaped result.

        Args:
            invoice: The processed invoice
            decision: Decision engine output
            insights: What recall found for the invoice
            audit_entries: Audit entries written while processing the invoice,
                defaults to those collected during recall

        """
        try:
            if audit_entries is None:
                audit_entries = insights.audit_entries
            action = DecisionAction(getattr(decision.action, "value", decision.action))

            trail = [self._trail_item(entry) for entry in audit_entries]
            trail.append(self._decision_item(invoice.id, decision, action))

            result = InvoiceProcessingResult(
                document_id=invoice.id,
                decision=action,
                confidence_score=clamp_confidence(decision.confidence_score),
                reasoning=self._structured_reasoning(decision, action, insights),
                applied_corrections=[
                    AppliedCorrection(
                        field=c.field,
                        original_value=sanitize_value(c.original_value),
                        corrected_value=sanitize_value(c.corrected_value),
                        confidence=clamp_confidence(c.confidence),
                    )
                    for c in decision.applied_corrections
                ],
                memory_insights=self._memory_summary(insights, decision),
                audit_trail=trail,
            )

            validation = self.validate_output(result)
            if not validation.is_valid:
                raise OutputValidationError(validation.errors)
            for warning in validation.warnings:
                logger.warning(f"Result for {invoice.id}: {warning}")
            return result

        except Exception as e:
            document_id = getattr(invoice, "id", None) or "unknown"
            logger.error(f"Failed to build result for {document_id}: {e}")
            return self.create_error_result(document_id, e)

    def create_error_result(
        self, document_id: str, error: Exception | str
    ) -> InvoiceProcessingResult:
        """Standard error-shaped result: human review, zero confidence, one audit item."""
        message = sanitize_error_message(error)
        return InvoiceProcessingResult(
            document_id=document_id or "unknown",
            decision=DecisionAction.HUMAN_REVIEW,
            confidence_score=0.0,
            reasoning=(
                f"Error occurred during processing: {message}. "
                f"Defaulting to human review for safety."
            ),
            applied_corrections=[],
            memory_insights=MemoryInsightSummary(),
            audit_trail=[
                AuditTrailItem(
                    operation_id=new_id("error"),
                    timestamp=datetime.now().isoformat(),
                    reasoning=f"Processing error: {message}",
                )
            ],
        )

    def validate_output(
        self, result: InvoiceProcessingResult | dict[str, Any]
    ) -> OutputValidation:
        """Check a result (model or camelCase dict) and collect errors and warnings."""
        validation = OutputValidation()

        if isinstance(result, dict):
            try:
                result = InvoiceProcessingResult.model_validate(result)
            except pydantic.ValidationError as e:
                for err in e.errors():
                    location = ".".join(str(part) for part in err["loc"])
                    validation.errors.append(f"{location}: {err['msg']}")
                return validation

        if not result.document_id.strip():
            validation.errors.append("documentId must be a non-empty string")
        if not result.reasoning.strip():
            validation.errors.append("reasoning must be a non-empty string")
        for index, item in enumerate(result.audit_trail):
            if not item.reasoning.strip():
                validation.errors.append(
                    f"auditTrail[{index}].reasoning must be a non-empty string"
                )

        if result.applied_corrections and result.decision == DecisionAction.HUMAN_REVIEW:
            validation.warnings.append("Applied corrections present but decision is human-review")
        if result.confidence_score > 0.8 and result.decision == DecisionAction.HUMAN_REVIEW:
            validation.warnings.append("High confidence score but decision is human-review")

        return validation

    def to_json(self, result: InvoiceProcessingResult) -> str:
        """Serialize using the published camelCase names."""
        return result.model_dump_json(by_alias=True, indent=2)

    def from_json(self, text: str) -> InvoiceProcessingResult:
        """Parse and validate a published result.

        Raises:
            OutputValidationError: If the JSON does not satisfy the contract

        """
        try:
            result = InvoiceProcessingResult.model_validate_json(text)
        except pydantic.ValidationError as e:
            raise OutputValidationError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e
        validation = self.validate_output(result)
        if not validation.is_valid:
            raise OutputValidationError(validation.errors)
        return result

    @staticmethod
    def _trail_item(entry: AuditEntry) -> AuditTrailItem:
        return AuditTrailItem(
            operation_id=entry.id,
            timestamp=entry.timestamp.isoformat(),
            reasoning=sanitize_value(entry.reasoning),
        )

    def _decision_item(
        self, invoice_id: str, decision: ProcessingDecision, action: DecisionAction
    ) -> AuditTrailItem:
        confidence = clamp_confidence(decision.confidence_score)
        if self.audit is not None:
            return self._trail_item(
                self.audit.log_decision(
                    invoice_id, action.value, confidence, decision.safety_constraints
                )
            )
        return AuditTrailItem(
            operation_id=new_id("decision"),
            timestamp=datetime.now().isoformat(),
            reasoning=f"Decision made: {action.value} with confidence {confidence * 100:.1f}%",
        )

    @staticmethod
    def _memory_summary(
        insights: MemoryInsights, decision: ProcessingDecision
    ) -> MemoryInsightSummary:
        resolutions = insights.historical_resolutions
        if resolutions:
            accuracy = sum(1 for r in resolutions if r.outcome_success) / len(resolutions)
        else:
            accuracy = 0.0
        return MemoryInsightSummary(
            vendor_patterns_used=len(insights.vendor_patterns),
            corrections_applied=len(decision.applied_corrections),
            historical_accuracy=clamp_confidence(accuracy),
        )

    @staticmethod
    def _structured_reasoning(
        decision: ProcessingDecision, action: DecisionAction, insights: MemoryInsights
    ) -> str:
        parts = [
            f"Decision: {action.display_name}",
            f"Confidence: {clamp_confidence(decision.confidence_score) * 100:.1f}%",
            f"Memory Sources: {len(decision.memory_source_ids)} pattern(s)",
            f"Applied Corrections: {len(decision.applied_corrections)}",
        ]
        if decision.reasoning:
            parts.append(decision.reasoning)
        if decision.safety_constraints:
            parts.append(f"Safety Constraints: {', '.join(decision.safety_constraints)}")
        if insights.reasoning and "Memory Analysis:" not in decision.reasoning:
            parts.append(f"Memory Analysis: {'; '.join(insights.reasoning)}")
        return _CONTROL_CHARS.sub("", " | ".join(parts))
