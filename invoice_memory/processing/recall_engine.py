"""
Confidence-weighted retrieval of vendor, correction and resolution memory.
"""

import logging

from ..config import (
    AUTO_ACCEPT_THRESHOLD,
    AUTO_CORRECT_THRESHOLD,
    CONFIDENCE_WEIGHTS,
    HIGH_CONFIDENCE_CORRECTION,
    MIN_RECALL_CORRECTION_CONFIDENCE,
    MIN_RESOLUTION_CONFIDENCE,
    NO_MEMORY_CONFIDENCE,
)
from ..constants import ENTITY_CORRECTION, ENTITY_RESOLUTION, ENTITY_VENDOR, STANDARD_FIELDS
from ..exceptions import RetrievalError
from ..models.audit import AuditEntry
from ..models.invoice import Invoice
from ..models.memory import (
    CorrectionPattern,
    MemoryInsights,
    ResolutionMatchPolicy,
    ResolutionOutcome,
    VendorPattern,
    clamp_confidence,
)
from .audit_manager import AuditManager
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)


def _weighted_vendor_confidence(patterns: list[VendorPattern]) -> float:
    total_usage = sum(p.usage_count for p in patterns)
    if total_usage <= 0:
        return sum(p.confidence_score for p in patterns) / len(patterns)
    return sum(p.confidence_score * p.usage_count for p in patterns) / total_usage


def calculate_overall_confidence(
    vendor_patterns: list[VendorPattern],
    corrections: list[CorrectionPattern],
    resolutions: list[ResolutionOutcome],
) -> float:
    """Blend the three memory sources into one confidence score.

    Vendor confidence is usage-weighted; correction and resolution confidence
    are simple means. Only non-empty sources take part and their weights are
    renormalized. With no memory at all the result is the fixed floor.
    """
    weighted_sum = 0.0
    total_weight = 0.0

    if vendor_patterns:
        weighted_sum += _weighted_vendor_confidence(vendor_patterns) * CONFIDENCE_WEIGHTS["vendor"]
        total_weight += CONFIDENCE_WEIGHTS["vendor"]

    if corrections:
        mean = sum(c.confidence_score for c in corrections) / len(corrections)
        weighted_sum += mean * CONFIDENCE_WEIGHTS["correction"]
        total_weight += CONFIDENCE_WEIGHTS["correction"]

    if resolutions:
        mean = sum(r.confidence_score for r in resolutions) / len(resolutions)
        weighted_sum += mean * CONFIDENCE_WEIGHTS["resolution"]
        total_weight += CONFIDENCE_WEIGHTS["resolution"]

    if total_weight == 0:
        return NO_MEMORY_CONFIDENCE
    return clamp_confidence(min(1.0, weighted_sum / total_weight))


def generate_insight_reasoning(
    vendor_patterns: list[VendorPattern],
    corrections: list[CorrectionPattern],
    resolutions: list[ResolutionOutcome],
    overall_confidence: float,
) -> list[str]:
    """Explain what memory was found, one sentence per source plus a band."""
    reasoning = []

    if vendor_patterns:
        avg = sum(p.confidence_score for p in vendor_patterns) / len(vendor_patterns)
        usage = sum(p.usage_count for p in vendor_patterns)
        reasoning.append(
            f"Found {len(vendor_patterns)} vendor pattern(s) with average confidence "
            f"{avg:.2f} and total usage count {usage}"
        )
    else:
        reasoning.append("No vendor-specific patterns found - using default processing")

    if corrections:
        strong = sum(1 for c in corrections if c.confidence_score >= HIGH_CONFIDENCE_CORRECTION)
        reasoning.append(
            f"Found {len(corrections)} relevant correction(s), {strong} with high "
            f"confidence (>={HIGH_CONFIDENCE_CORRECTION})"
        )
    else:
        reasoning.append("No relevant correction patterns found")

    if resolutions:
        successful = sum(1 for r in resolutions if r.outcome_success)
        reasoning.append(
            f"Found {len(resolutions)} similar resolution(s), {successful} were successful"
        )
    else:
        reasoning.append("No similar resolution patterns found")

    if overall_confidence >= AUTO_ACCEPT_THRESHOLD:
        reasoning.append("High confidence - suitable for auto-processing")
    elif overall_confidence >= AUTO_CORRECT_THRESHOLD:
        reasoning.append("Medium confidence - corrections may be proposed")
    else:
        reasoning.append("Low confidence - human review recommended")

    return reasoning


def select_corrections(patterns: list[CorrectionPattern]) -> list[CorrectionPattern]:
    """Filter by minimum confidence and keep one pattern per correction triple.

    A vendor-scoped pattern replaces a vendor-agnostic one for the same
    (field, original, corrected) triple. The result is confidence-descending.
    """
    chosen: dict[tuple[str, str, str], CorrectionPattern] = {}
    for pattern in patterns:
        if pattern.confidence_score < MIN_RECALL_CORRECTION_CONFIDENCE:
            continue
        current = chosen.get(pattern.dedup_key)
        if current is None:
            chosen[pattern.dedup_key] = pattern
        elif current.vendor_name is None and pattern.vendor_name is not None:
            chosen[pattern.dedup_key] = pattern
        elif (current.vendor_name is None) == (pattern.vendor_name is None) and (
            pattern.confidence_score > current.confidence_score
        ):
            chosen[pattern.dedup_key] = pattern
    return sorted(chosen.values(), key=lambda p: p.confidence_score, reverse=True)


class RecallEngine:
    """Retrieves memory relevant to an invoice and scores how much to trust it."""

    def __init__(
        self,
        store: PatternStore,
        audit_manager: AuditManager | None = None,
        resolution_match: ResolutionMatchPolicy = ResolutionMatchPolicy.EXACT,
    ):
        self.store = store
        self.audit = audit_manager or AuditManager(store)
        self.resolution_match = resolution_match

    def get_vendor_patterns(
        self, vendor_name: str, audit_log: list[AuditEntry] | None = None
    ) -> list[VendorPattern]:
        """Return the vendor's patterns, counting this retrieval as a use of each.

        Order is confidence descending, most recently used first on ties.
        The returned patterns carry the incremented usage count.
        """
        try:
            patterns = self.store.get_vendor_patterns(vendor_name)
            updated = [self.store.increment_vendor_usage(p.id) for p in patterns]
            entry = self.audit.log_memory_access(
                ENTITY_VENDOR,
                vendor_name,
                f"Retrieved {len(updated)} vendor pattern(s) for {vendor_name}",
                after_state={"pattern_ids": [p.id for p in updated]},
            )
        except Exception as e:
            raise RetrievalError(
                f"Failed to retrieve vendor patterns for {vendor_name}: {e}"
            ) from e

        if audit_log is not None:
            audit_log.append(entry)
        logger.debug(f"Recalled {len(updated)} vendor pattern(s) for {vendor_name}")
        return updated

    def get_correction_patterns(
        self,
        field_name: str,
        vendor_name: str | None = None,
        audit_log: list[AuditEntry] | None = None,
    ) -> list[CorrectionPattern]:
        """Return usable correction patterns for one field."""
        try:
            patterns = select_corrections(
                self.store.get_correction_patterns(field_name, vendor_name)
            )
            entry = self.audit.log_memory_access(
                ENTITY_CORRECTION,
                field_name,
                f"Retrieved {len(patterns)} correction pattern(s) for field {field_name}",
                after_state={"pattern_ids": [p.id for p in patterns]},
            )
        except Exception as e:
            raise RetrievalError(
                f"Failed to retrieve correction patterns for field {field_name}: {e}"
            ) from e

        if audit_log is not None:
            audit_log.append(entry)
        return patterns

    def get_corrections_for_invoice(
        self, invoice: Invoice, audit_log: list[AuditEntry] | None = None
    ) -> list[CorrectionPattern]:
        """Return usable correction patterns across every field of an invoice."""
        field_names = list(dict.fromkeys([*STANDARD_FIELDS, *invoice.raw_fields.keys()]))
        try:
            candidates: list[CorrectionPattern] = []
            for field_name in field_names:
                candidates.extend(
                    self.store.get_correction_patterns(field_name, invoice.vendor_name)
                )
            patterns = select_corrections(candidates)
            entry = self.audit.log_memory_access(
                ENTITY_CORRECTION,
                invoice.id,
                f"Retrieved {len(patterns)} correction pattern(s) across "
                f"{len(field_names)} field(s) for invoice {invoice.id}",
                after_state={"pattern_ids": [p.id for p in patterns]},
            )
        except Exception as e:
            raise RetrievalError(
                f"Failed to retrieve correction patterns for invoice {invoice.id}: {e}"
            ) from e

        if audit_log is not None:
            audit_log.append(entry)
        logger.debug(f"Recalled {len(patterns)} correction pattern(s) for {invoice.id}")
        return patterns

    def get_resolution_outcomes(
        self, pattern_key: str, audit_log: list[AuditEntry] | None = None
    ) -> list[ResolutionOutcome]:
        """Return past outcomes for an invoice shape that are worth trusting."""
        try:
            outcomes = [
                o
                for o in self.store.get_resolution_outcomes(pattern_key, self.resolution_match)
                if o.outcome_success or o.confidence_score >= MIN_RESOLUTION_CONFIDENCE
            ]
            entry = self.audit.log_memory_access(
                ENTITY_RESOLUTION,
                pattern_key,
                f"Retrieved {len(outcomes)} resolution outcome(s) "
                f"({self.resolution_match.value} match)",
                after_state={"outcome_ids": [o.id for o in outcomes]},
            )
        except Exception as e:
            raise RetrievalError(f"Failed to retrieve resolution outcomes: {e}") from e

        if audit_log is not None:
            audit_log.append(entry)
        return outcomes

    def get_confidence_weighted_insights(self, invoice: Invoice) -> MemoryInsights:
        """Gather all memory for an invoice and score the overall confidence."""
        audit_log: list[AuditEntry] = []

        vendor_patterns = self.get_vendor_patterns(invoice.vendor_name, audit_log)
        corrections = self.get_corrections_for_invoice(invoice, audit_log)
        resolutions = self.get_resolution_outcomes(invoice.shape().key, audit_log)

        overall = calculate_overall_confidence(vendor_patterns, corrections, resolutions)
        reasoning = generate_insight_reasoning(vendor_patterns, corrections, resolutions, overall)

        logger.debug(
            f"Insights for {invoice.id}: {len(vendor_patterns)} vendor, "
            f"{len(corrections)} correction, {len(resolutions)} resolution, "
            f"confidence {overall:.2f}"
        )

        return MemoryInsights(
            vendor_patterns=vendor_patterns,
            suggested_corrections=corrections,
            historical_resolutions=resolutions,
            overall_confidence=overall,
            reasoning=reasoning,
            audit_entries=audit_log,
        )
