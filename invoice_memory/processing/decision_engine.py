"""
Threshold-based processing decisions with safety constraints.
"""

import logging
from numbers import Real

from ..config import (
    AUTO_ACCEPT_THRESHOLD,
    AUTO_CORRECT_THRESHOLD,
    LARGE_VALUE_CHANGE_RATIO,
    MAX_AUTO_CORRECTIONS,
)
from ..constants import (
    BLOCKING_FLAGS,
    FLAG_CRITICAL_FIELD,
    FLAG_ERROR_FALLBACK,
    FLAG_LARGE_VALUE_CHANGE,
    FLAG_LOW_CONFIDENCE_CORRECTIONS,
    FLAG_OVERALL_LOW_CONFIDENCE,
    FLAG_TOO_MANY_CORRECTIONS,
    PROTECTED_FIELDS,
)
from ..exceptions import DecisionError, ValidationError
from ..models.decision import (
    DecisionAction,
    DecisionThresholds,
    ProcessingDecision,
    ThresholdAnalysis,
)
from ..models.invoice import Invoice, ProposedCorrection
from ..models.memory import MemoryInsights, clamp_confidence

logger = logging.getLogger(__name__)


def is_large_value_change(correction: ProposedCorrection) -> bool:
    """Whether an amount correction moves the value by more than the allowed ratio."""
    if correction.field != "amount":
        return False
    original = correction.original_value
    corrected = correction.corrected_value
    if isinstance(original, bool) or isinstance(corrected, bool):
        return False
    if not isinstance(original, Real) or not isinstance(corrected, Real):
        return False
    if original == 0:
        return corrected != 0
    return abs(corrected - original) / abs(original) > LARGE_VALUE_CHANGE_RATIO


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


class DecisionEngine:
    """Chooses auto-accept, auto-correct or human-review for an invoice."""

    def __init__(
        self,
        auto_accept: float = AUTO_ACCEPT_THRESHOLD,
        auto_correct: float = AUTO_CORRECT_THRESHOLD,
    ):
        self._validate_thresholds(auto_accept, auto_correct)
        self.thresholds = DecisionThresholds(auto_accept=auto_accept, auto_correct=auto_correct)

    @staticmethod
    def _validate_thresholds(auto_accept: float, auto_correct: float) -> None:
        for name, value in (("auto_accept", auto_accept), ("auto_correct", auto_correct)):
            if not isinstance(value, Real) or not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} threshold must be within [0, 1], got {value!r}")
        if auto_correct > auto_accept:
            raise ValidationError(
                f"auto_correct threshold ({auto_correct}) cannot exceed "
                f"auto_accept threshold ({auto_accept})"
            )

    def update_thresholds(
        self, auto_accept: float | None = None, auto_correct: float | None = None
    ) -> DecisionThresholds:
        """Replace one or both thresholds after validating the combination."""
        new_accept = self.thresholds.auto_accept if auto_accept is None else auto_accept
        new_correct = self.thresholds.auto_correct if auto_correct is None else auto_correct
        self._validate_thresholds(new_accept, new_correct)
        self.thresholds = DecisionThresholds(auto_accept=new_accept, auto_correct=new_correct)
        logger.info(f"Decision thresholds set to accept={new_accept}, correct={new_correct}")
        return self.get_thresholds()

    def get_thresholds(self) -> DecisionThresholds:
        """Return a copy of the current thresholds."""
        return DecisionThresholds(
            auto_accept=self.thresholds.auto_accept,
            auto_correct=self.thresholds.auto_correct,
        )

    def make_decision(
        self,
        invoice: Invoice,
        insights: MemoryInsights,
        proposed_corrections: list[ProposedCorrection] | None = None,
    ) -> ProcessingDecision:
        """Decide how to process an invoice.

        Never raises: any internal failure yields a human-review fallback
        carrying the ``error-fallback`` flag.
        """
        proposals = list(proposed_corrections or [])
        try:
            if insights is None:
                raise DecisionError("No memory insights available")
            confidence = clamp_confidence(insights.overall_confidence)
            analysis = self.evaluate_thresholds(confidence)
            flags = self.apply_safety_constraints(proposals, confidence)
            action = self.determine_action(analysis, flags, proposals)
            applied = self.filter_corrections_for_action(action, proposals)
            reasoning = self.generate_explanation(
                action, confidence, analysis, flags, applied, insights, proposals
            )
            source_ids = self.extract_memory_source_ids(insights, proposals)
        except Exception as e:
            logger.error(f"Decision failed for invoice {getattr(invoice, 'id', '?')}: {e}")
            return self._fallback_decision(e)

        logger.info(
            f"Decision for invoice {invoice.id}: {action.value} "
            f"(confidence {confidence:.2f}, flags: {', '.join(flags) or 'none'})"
        )
        return ProcessingDecision(
            action=action,
            confidence_score=confidence,
            reasoning=reasoning,
            threshold_analysis=analysis,
            applied_corrections=applied,
            memory_source_ids=source_ids,
            safety_constraints=flags,
        )

    def evaluate_thresholds(self, confidence: float) -> ThresholdAnalysis:
        """Compare a confidence score against each threshold."""
        return ThresholdAnalysis(
            auto_accept_threshold=self.thresholds.auto_accept,
            auto_correct_threshold=self.thresholds.auto_correct,
            human_review_threshold=self.thresholds.human_review,
            actual_confidence=confidence,
            exceeds_auto_accept=confidence >= self.thresholds.auto_accept,
            exceeds_auto_correct=confidence >= self.thresholds.auto_correct,
        )

    def apply_safety_constraints(
        self, proposals: list[ProposedCorrection], confidence: float
    ) -> list[str]:
        """Compute safety flags independently of the threshold check."""
        accept = self.thresholds.auto_accept
        flags = []

        if any(p.confidence < self.thresholds.auto_correct for p in proposals):
            flags.append(FLAG_LOW_CONFIDENCE_CORRECTIONS)

        if sum(1 for p in proposals if p.confidence >= accept) > MAX_AUTO_CORRECTIONS:
            flags.append(FLAG_TOO_MANY_CORRECTIONS)

        if any(p.field in PROTECTED_FIELDS and p.confidence < accept for p in proposals):
            flags.append(FLAG_CRITICAL_FIELD)

        if any(is_large_value_change(p) for p in proposals):
            flags.append(FLAG_LARGE_VALUE_CHANGE)

        if confidence < self.thresholds.human_review:
            flags.append(FLAG_OVERALL_LOW_CONFIDENCE)

        return flags

    def _is_safe_auto_accept(self, proposal: ProposedCorrection) -> bool:
        return (
            proposal.confidence >= self.thresholds.auto_accept
            and proposal.field not in PROTECTED_FIELDS
        )

    def determine_action(
        self,
        analysis: ThresholdAnalysis,
        flags: list[str],
        proposals: list[ProposedCorrection],
    ) -> DecisionAction:
        """Pick the action; forcing flags always win over confidence."""
        if any(flag in BLOCKING_FLAGS for flag in flags):
            return DecisionAction.HUMAN_REVIEW

        if analysis.exceeds_auto_accept:
            if not proposals or any(self._is_safe_auto_accept(p) for p in proposals):
                return DecisionAction.AUTO_ACCEPT

        if analysis.exceeds_auto_correct:
            return DecisionAction.AUTO_CORRECT

        return DecisionAction.HUMAN_REVIEW

    def filter_corrections_for_action(
        self, action: DecisionAction, proposals: list[ProposedCorrection]
    ) -> list[ProposedCorrection]:
        """Keep only the corrections the chosen action may carry."""
        if action is DecisionAction.AUTO_ACCEPT:
            return [p for p in proposals if self._is_safe_auto_accept(p)]

        if action is DecisionAction.AUTO_CORRECT:
            return [
                p
                for p in proposals
                if p.confidence >= self.thresholds.auto_correct
                and not (p.field in PROTECTED_FIELDS and p.confidence < self.thresholds.auto_accept)
                and not is_large_value_change(p)
            ]

        return []

    def generate_explanation(
        self,
        action: DecisionAction,
        confidence: float,
        analysis: ThresholdAnalysis,
        flags: list[str],
        applied: list[ProposedCorrection],
        insights: MemoryInsights,
        proposals: list[ProposedCorrection],
    ) -> str:
        """Build the deterministic ``|``-separated decision explanation."""
        accept = analysis.auto_accept_threshold
        correct = analysis.auto_correct_threshold
        parts = [
            f"Confidence Analysis: Overall confidence score is {_pct(confidence)} "
            f"(Auto-accept: >={accept * 100:.0f}%, Auto-correct: >={correct * 100:.0f}%, "
            f"Human review: <{analysis.human_review_threshold * 100:.0f}%)",
            f"Memory Insights: Found {len(insights.vendor_patterns)} vendor pattern(s), "
            f"{len(insights.suggested_corrections)} correction suggestion(s), "
            f"{len(insights.historical_resolutions)} historical resolution(s)",
        ]

        if analysis.exceeds_auto_accept:
            parts.append(f"Exceeds auto-accept threshold ({accept * 100:.0f}%)")
        elif analysis.exceeds_auto_correct:
            parts.append(f"Exceeds auto-correct threshold ({correct * 100:.0f}%)")
        else:
            parts.append("Below auto-correct threshold, requires human review")

        if flags:
            parts.append(f"Safety Constraints Applied: {', '.join(flags)}")

        if proposals:
            high = sum(1 for p in proposals if p.confidence >= accept)
            medium = sum(1 for p in proposals if correct <= p.confidence < accept)
            parts.append(
                f"Corrections: {len(proposals)} proposed "
                f"({high} high-confidence, {medium} medium-confidence)"
            )

        if action is DecisionAction.AUTO_ACCEPT:
            parts.append(
                f"Decision: AUTO-ACCEPT - High confidence ({_pct(confidence)}) with "
                f"{len(applied)} applied correction(s). Processing automatically."
            )
        elif action is DecisionAction.AUTO_CORRECT:
            parts.append(
                f"Decision: AUTO-CORRECT - Medium confidence ({_pct(confidence)}) with "
                f"{len(applied)} proposed correction(s). Corrections applied, "
                f"human review recommended."
            )
        else:
            parts.append(
                f"Decision: HUMAN-REVIEW - Low confidence ({_pct(confidence)}) "
                f"or safety constraints require human oversight."
            )

        if insights.reasoning:
            parts.append(f"Memory Analysis: {'; '.join(insights.reasoning)}")

        return " | ".join(parts)

    @staticmethod
    def extract_memory_source_ids(
        insights: MemoryInsights, proposals: list[ProposedCorrection]
    ) -> list[str]:
        """Ids of every memory entity behind the decision, first-seen order."""
        ids = [p.id for p in insights.vendor_patterns]
        ids += [c.id for c in insights.suggested_corrections]
        ids += [r.id for r in insights.historical_resolutions]
        ids += [p.memory_source_id for p in proposals]
        return list(dict.fromkeys(ids))

    def _fallback_decision(self, error: Exception) -> ProcessingDecision:
        return ProcessingDecision(
            action=DecisionAction.HUMAN_REVIEW,
            confidence_score=0.0,
            reasoning=(
                f"Error in decision processing: {error}. "
                f"Defaulting to human review for safety."
            ),
            threshold_analysis=ThresholdAnalysis(
                auto_accept_threshold=self.thresholds.auto_accept,
                auto_correct_threshold=self.thresholds.auto_correct,
                human_review_threshold=self.thresholds.human_review,
                actual_confidence=0.0,
                exceeds_auto_accept=False,
                exceeds_auto_correct=False,
            ),
            safety_constraints=[FLAG_ERROR_FALLBACK],
        )
