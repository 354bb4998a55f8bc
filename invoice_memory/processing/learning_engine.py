"""
Learning from human feedback: reinforcement, decay and new patterns.

Each engine instance owns its idempotency set and event log. An invoice id
is learned from at most once per instance; a repeated attempt is recorded in
the audit log and otherwise ignored.
"""

import logging
import threading

from ..config import (
    CORRECTION_REJECTION_DELTA,
    NEW_CORRECTION_CONFIDENCE,
    NEW_VENDOR_PATTERN_CONFIDENCE,
    RESOLUTION_APPROVAL_DELTA,
    RESOLUTION_REJECTION_DELTA,
    VENDOR_APPROVAL_DELTA,
    VENDOR_REJECTION_DELTA,
)
from ..constants import ENTITY_RESOLUTION
from ..exceptions import LearningError, PatternNotFoundError, ValidationError
from ..models.decision import ProcessingDecision
from ..models.feedback import LearningEvent, LearningFeedback
from ..models.invoice import Invoice, ProposedCorrection
from ..models.memory import (
    CorrectionPattern,
    ResolutionOutcome,
    VendorPattern,
    clamp_confidence,
)
from ..utils.similarity import as_text
from ..utils.statistics import LearningStatistics, calculate_learning_statistics
from .audit_manager import AuditManager
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)


class LearningEngine:
    """Updates memory from human approvals, rejections and corrections."""

    def __init__(self, store: PatternStore, audit_manager: AuditManager | None = None):
        self.store = store
        self.audit = audit_manager or AuditManager(store)
        self._processed_invoices: set[str] = set()
        self._events: list[LearningEvent] = []
        self._lock = threading.Lock()

    def has_learned_from(self, invoice_id: str) -> bool:
        """Whether this engine already learned from the invoice."""
        with self._lock:
            return invoice_id in self._processed_invoices

    def _reserve(self, invoice_id: str) -> bool:
        with self._lock:
            if invoice_id in self._processed_invoices:
                return False
            self._processed_invoices.add(invoice_id)
            return True

    def _release(self, invoice_id: str) -> None:
        with self._lock:
            self._processed_invoices.discard(invoice_id)

    def _record(self, event: LearningEvent, events: list[LearningEvent]) -> None:
        with self._lock:
            self._events.append(event)
        events.append(event)

    def _skip(self, invoice_id: str, action: str) -> list[LearningEvent]:
        logger.warning(f"Learning already processed for invoice {invoice_id}, skipping {action}")
        self.audit.log_learning_skipped(
            invoice_id,
            f"Skipped {action}: invoice {invoice_id} was already used for learning",
        )
        return []

    def reinforce_memory(self, feedback: LearningFeedback) -> list[LearningEvent]:
        """Apply approval or rejection feedback to the referenced memory.

        Args:
            feedback: Human verdict and the memory ids it refers to

        Returns:
            The learning events recorded, empty for a repeated invoice

        Raises:
            ValidationError: If the feedback names no memory to reinforce
            LearningError: If a referenced pattern is missing or the store fails

        """
        if not (feedback.correction_id or feedback.vendor_pattern_id
                or feedback.resolution_outcome_id):
            raise ValidationError(
                f"Feedback for invoice {feedback.invoice_id} references no memory"
            )

        if not self._reserve(feedback.invoice_id):
            return self._skip(feedback.invoice_id, "reinforcement")

        events: list[LearningEvent] = []
        try:
            if feedback.correction_id:
                self._reinforce_correction(feedback, events)
            if feedback.vendor_pattern_id:
                self._reinforce_vendor(feedback, events)
            if feedback.resolution_outcome_id:
                self._reinforce_resolution(feedback, events)

            self.audit.log_learning(
                feedback.invoice_id,
                len(events),
                f"{feedback.verdict} feedback for invoice {feedback.invoice_id}: "
                f"{len(events)} learning event(s) recorded",
            )
        except Exception as e:
            self._release(feedback.invoice_id)
            if isinstance(e, LearningError):
                raise
            raise LearningError(
                f"Failed to reinforce memory for invoice {feedback.invoice_id}: {e}"
            ) from e

        logger.info(
            f"Learning completed for invoice {feedback.invoice_id}: "
            f"{len(events)} events recorded"
        )
        return events

    def decay_rejected_memory(self, correction_id: str,
                              decay_factor: float = CORRECTION_REJECTION_DELTA) -> float:
        """Record a rejection of one correction pattern outside any invoice.

        Returns the confidence change, which is zero once the pattern sits at
        the floor.
        """
        try:
            before, after = self.store.update_correction_feedback(
                correction_id, False, decrement=decay_factor
            )
        except Exception as e:
            raise LearningError(f"Failed to decay correction {correction_id}: {e}") from e

        change = round(after.confidence_score - before.confidence_score, 4)
        self._record(LearningEvent(
            invoice_id="",
            event_type="negative-reinforcement",
            memory_type="correction",
            memory_id=after.id,
            confidence_change=change,
            reasoning=f"Decayed rejected correction by {decay_factor}",
        ), [])
        logger.info(f"Decayed correction {correction_id}: {change:+.2f}")
        return change

    def _event_type(self, approved: bool) -> str:
        return "positive-reinforcement" if approved else "negative-reinforcement"

    def _reinforce_correction(self, feedback: LearningFeedback,
                              events: list[LearningEvent]) -> None:
        before, after = self.store.update_correction_feedback(
            feedback.correction_id, feedback.approved
        )
        self._record(LearningEvent(
            invoice_id=feedback.invoice_id,
            event_type=self._event_type(feedback.approved),
            memory_type="correction",
            memory_id=after.id,
            confidence_change=round(after.confidence_score - before.confidence_score, 4),
            reasoning=feedback.reasoning or f"{feedback.verdict} correction",
        ), events)

    def _reinforce_vendor(self, feedback: LearningFeedback,
                          events: list[LearningEvent]) -> None:
        delta = VENDOR_APPROVAL_DELTA if feedback.approved else -VENDOR_REJECTION_DELTA
        before, after = self.store.adjust_vendor_confidence(
            feedback.vendor_pattern_id,
            delta,
            reasoning=f"{feedback.verdict} vendor pattern on invoice {feedback.invoice_id}",
        )
        self._record(LearningEvent(
            invoice_id=feedback.invoice_id,
            event_type=self._event_type(feedback.approved),
            memory_type="vendor",
            memory_id=after.id,
            confidence_change=round(after.confidence_score - before.confidence_score, 4),
            reasoning=feedback.reasoning or f"{feedback.verdict} vendor pattern",
        ), events)

    def _reinforce_resolution(self, feedback: LearningFeedback,
                              events: list[LearningEvent]) -> None:
        # Outcomes are write-once: feedback becomes a new outcome for the same shape
        source = self.store.get_resolution_outcome(feedback.resolution_outcome_id)
        if source is None:
            raise PatternNotFoundError(ENTITY_RESOLUTION, feedback.resolution_outcome_id)

        delta = RESOLUTION_APPROVAL_DELTA if feedback.approved else -RESOLUTION_REJECTION_DELTA
        outcome = ResolutionOutcome(
            invoice_pattern=source.invoice_pattern,
            decision=source.decision,
            confidence_score=clamp_confidence(source.confidence_score + delta),
            outcome_success=feedback.approved,
            reasoning=(
                feedback.reasoning
                or f"{feedback.verdict} resolution {source.id} on invoice {feedback.invoice_id}"
            ),
        )
        self.store.store_resolution_outcome(outcome)
        self._record(LearningEvent(
            invoice_id=feedback.invoice_id,
            event_type=self._event_type(feedback.approved),
            memory_type="resolution",
            memory_id=outcome.id,
            confidence_change=round(outcome.confidence_score - source.confidence_score, 4),
            reasoning=feedback.reasoning or f"{feedback.verdict} resolution",
        ), events)

    def learn_from_human_corrections(
        self,
        invoice: Invoice,
        corrections: list[ProposedCorrection],
        decision: ProcessingDecision,
        field_mappings: dict[str, str] | None = None,
    ) -> list[LearningEvent]:
        """Create new memory from the corrections a reviewer made to an invoice.

        One correction pattern per corrected field, one resolution outcome
        for the decision context, and a vendor pattern if the vendor has none.
        """
        if not self._reserve(invoice.id):
            return self._skip(invoice.id, "learning from human corrections")

        events: list[LearningEvent] = []
        try:
            for correction in corrections:
                pattern = CorrectionPattern(
                    field_name=correction.field,
                    original_value=as_text(correction.original_value),
                    corrected_value=as_text(correction.corrected_value),
                    vendor_name=invoice.vendor_name,
                    confidence_score=NEW_CORRECTION_CONFIDENCE,
                    approval_count=1,
                )
                self.store.store_correction_pattern(pattern)
                self._record(LearningEvent(
                    invoice_id=invoice.id,
                    event_type="new-pattern",
                    memory_type="correction",
                    memory_id=pattern.id,
                    confidence_change=pattern.confidence_score,
                    reasoning=(
                        f"New correction pattern learned from human feedback: {correction.field}"
                    ),
                ), events)

            action = getattr(decision.action, "value", decision.action)
            outcome = ResolutionOutcome(
                invoice_pattern=invoice.shape().key,
                decision=action,
                confidence_score=decision.confidence_score,
                outcome_success=True,
                reasoning=f"Human-guided decision: {decision.reasoning}",
            )
            self.store.store_resolution_outcome(outcome)
            self._record(LearningEvent(
                invoice_id=invoice.id,
                event_type="new-pattern",
                memory_type="resolution",
                memory_id=outcome.id,
                confidence_change=outcome.confidence_score,
                reasoning="New resolution pattern learned from human decision",
            ), events)

            if not self.store.get_vendor_patterns(invoice.vendor_name):
                vendor = VendorPattern(
                    vendor_name=invoice.vendor_name,
                    field_mappings=dict(field_mappings or {}),
                    confidence_score=NEW_VENDOR_PATTERN_CONFIDENCE,
                )
                self.store.store_vendor_pattern(vendor)
                self._record(LearningEvent(
                    invoice_id=invoice.id,
                    event_type="new-pattern",
                    memory_type="vendor",
                    memory_id=vendor.id,
                    confidence_change=vendor.confidence_score,
                    reasoning=f"New vendor pattern for {invoice.vendor_name}",
                ), events)

            self.audit.log_learning(
                invoice.id,
                len(events),
                f"Learned from {len(corrections)} human correction(s) on invoice {invoice.id}",
            )
        except Exception as e:
            self._release(invoice.id)
            raise LearningError(
                f"Failed to learn from human corrections for invoice {invoice.id}: {e}"
            ) from e

        logger.info(
            f"Learned from human corrections for invoice {invoice.id}: "
            f"{len(events)} new patterns created"
        )
        return events

    def get_learning_events(self) -> list[LearningEvent]:
        """Snapshot of every event recorded by this engine."""
        with self._lock:
            return list(self._events)

    def get_learning_statistics(self) -> LearningStatistics:
        """Summarize the in-process event log."""
        with self._lock:
            events = list(self._events)
            processed = len(self._processed_invoices)
        return calculate_learning_statistics(events, processed)
