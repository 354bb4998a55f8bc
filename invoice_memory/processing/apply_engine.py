"""
Field normalization and correction proposals driven by recalled memory.
"""

import copy
import logging
import re
from dataclasses import replace
from datetime import date, datetime
from functools import lru_cache
from typing import Any

from ..config import (
    AUTO_ACCEPT_THRESHOLD,
    MAPPING_CONFIDENCE_FACTOR,
    MAX_USAGE_WEIGHT,
    MIN_PROPOSAL_CONFIDENCE,
)
from ..constants import PROTECTED_FIELDS
from ..exceptions import NormalizationError, RetrievalError
from ..models.audit import AuditEntry
from ..models.invoice import (
    CorrectedInvoice,
    Invoice,
    NormalizedField,
    NormalizedInvoice,
    ProposedCorrection,
)
from ..models.memory import CorrectionPattern, NormalizationRule, VendorPattern
from ..utils.similarity import as_text, is_similar_value
from .audit_manager import AuditManager
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)

# $1, $&, $$ style references in stored replacement strings
_REPLACEMENT_REF = re.compile(r"\$(\$|&|\d+)")


def _translate_reference(match: re.Match) -> str:
    token = match.group(1)
    if token == "$":
        return "$"
    if token == "&":
        return r"\g<0>"
    return rf"\g<{token}>"


@lru_cache(maxsize=512)
def compile_rule(pattern: str, replacement: str) -> tuple[re.Pattern, str]:
    """Compile a stored rule into a regex and a Python replacement template.

    Raises:
        NormalizationError: If the pattern does not compile

    """
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise NormalizationError(f"Invalid pattern {pattern!r}: {e}") from e
    template = _REPLACEMENT_REF.sub(_translate_reference, replacement.replace("\\", "\\\\"))
    return compiled, template


def apply_rule(rule: NormalizationRule, value: str) -> str:
    """Apply one normalization rule to a string value.

    Raises:
        NormalizationError: If the rule is malformed

    """
    compiled, template = compile_rule(rule.pattern, rule.replacement)
    try:
        return compiled.sub(template, value)
    except (re.error, IndexError) as e:
        raise NormalizationError(
            f"Rule {rule.pattern!r} -> {rule.replacement!r} failed on {rule.field_name}: {e}"
        ) from e


def mapping_weight(pattern: VendorPattern) -> float:
    """Weight of a vendor pattern's field mappings from confidence and usage."""
    return pattern.confidence_score * MAPPING_CONFIDENCE_FACTOR + min(
        pattern.usage_count / 100, MAX_USAGE_WEIGHT
    )


def parse_corrected_value(corrected: str, original: Any) -> Any:
    """Convert a stored corrected value back to the type of the original value."""
    if isinstance(original, bool):
        return corrected
    if isinstance(original, (int, float)):
        try:
            parsed = float(corrected)
        except (TypeError, ValueError):
            return original
        if isinstance(original, int) and parsed.is_integer():
            return int(parsed)
        return parsed
    if isinstance(original, datetime):
        try:
            return datetime.fromisoformat(corrected)
        except (TypeError, ValueError):
            return original
    if isinstance(original, date):
        try:
            return date.fromisoformat(corrected[:10])
        except (TypeError, ValueError):
            return original
    return corrected


def correction_reasoning(pattern: CorrectionPattern, current_value: Any) -> str:
    """Explain a proposal from the pattern's approval history."""
    rate = pattern.approval_rate * 100
    return (
        f"Based on {pattern.approval_count} previous approvals "
        f"({rate:.1f}% success rate, {pattern.rejection_count} rejections), "
        f'suggesting "{pattern.corrected_value}" for "{as_text(current_value)}" '
        f'in field "{pattern.field_name}" with {pattern.confidence_score * 100:.1f}% confidence'
    )


class ApplyEngine:
    """Normalizes invoice fields and proposes corrections from memory."""

    def __init__(
        self,
        store: PatternStore,
        audit_manager: AuditManager | None = None,
        auto_apply_threshold: float = AUTO_ACCEPT_THRESHOLD,
    ):
        self.store = store
        self.audit = audit_manager or AuditManager(store)
        self.auto_apply_threshold = auto_apply_threshold

    def normalize_invoice_fields(
        self, invoice: Invoice, vendor_patterns: list[VendorPattern]
    ) -> NormalizedInvoice:
        """Derive normalized fields from vendor mappings and rules.

        Raw values are left untouched; normalized values are stored beside
        them, rule output under ``<field>_normalized``.
        """
        fields = invoice.all_fields()
        normalized: dict[str, NormalizedField] = {}
        weights: dict[str, float] = {}
        applied: list[str] = []

        for pattern in vendor_patterns:
            weight = mapping_weight(pattern)

            for source_field, target_field in pattern.field_mappings.items():
                if source_field not in fields:
                    continue
                if target_field in weights and weight <= weights[target_field]:
                    continue
                normalized[target_field] = NormalizedField(
                    value=fields[source_field],
                    original_field=source_field,
                    confidence=pattern.confidence_score,
                )
                weights[target_field] = weight
                applied.append(
                    f"{source_field} -> {target_field} "
                    f"(confidence: {pattern.confidence_score:.2f})"
                )

            for rule in pattern.normalization_rules:
                value = fields.get(rule.field_name)
                if not isinstance(value, str):
                    continue
                try:
                    new_value = apply_rule(rule, value)
                except NormalizationError as e:
                    logger.warning(f"Skipping normalization rule for {rule.field_name}: {e}")
                    continue
                if new_value == value:
                    continue

                target = f"{rule.field_name}_normalized"
                existing = normalized.get(target)
                if existing is None or rule.confidence_score > existing.confidence:
                    normalized[target] = NormalizedField(
                        value=new_value,
                        original_field=rule.field_name,
                        confidence=rule.confidence_score,
                        original_value=value,
                        rule=rule.pattern,
                    )
                    applied.append(
                        f'{rule.field_name}: "{value}" -> "{new_value}" '
                        f"(confidence: {rule.confidence_score:.2f})"
                    )

        return NormalizedInvoice(
            invoice=invoice,
            normalized_fields=normalized,
            applied_normalizations=applied,
        )

    def propose_corrections(
        self, invoice: Invoice, correction_patterns: list[CorrectionPattern]
    ) -> list[ProposedCorrection]:
        """Propose at most one correction per field from similar past corrections."""
        fields = invoice.standard_fields()
        for name, value in invoice.raw_fields.items():
            fields.setdefault(name, value)

        proposals: dict[str, ProposedCorrection] = {}
        for field_name, value in fields.items():
            if value is None:
                continue

            candidates = sorted(
                (
                    p
                    for p in correction_patterns
                    if p.field_name == field_name and is_similar_value(value, p.original_value)
                ),
                key=lambda p: p.confidence_score,
                reverse=True,
            )
            for pattern in candidates:
                if pattern.confidence_score < MIN_PROPOSAL_CONFIDENCE:
                    continue
                existing = proposals.get(field_name)
                if existing is not None and pattern.confidence_score <= existing.confidence:
                    continue
                proposals[field_name] = ProposedCorrection(
                    field=field_name,
                    original_value=value,
                    corrected_value=parse_corrected_value(pattern.corrected_value, value),
                    confidence=pattern.confidence_score,
                    memory_source_id=pattern.id,
                    reasoning=correction_reasoning(pattern, value),
                )

        return list(proposals.values())

    def apply_high_confidence_corrections(
        self,
        invoice: Invoice,
        corrections: list[ProposedCorrection],
        vendor_patterns: list[VendorPattern] | None = None,
        audit_log: list[AuditEntry] | None = None,
    ) -> CorrectedInvoice:
        """Normalize the invoice and write high-confidence corrections onto a copy.

        Protected fields are never changed here, whatever the confidence.
        """
        if vendor_patterns is None:
            try:
                vendor_patterns = self.store.get_vendor_patterns(invoice.vendor_name)
            except Exception as e:
                raise RetrievalError(
                    f"Failed to retrieve vendor patterns for {invoice.vendor_name}: {e}"
                ) from e

        normalized = self.normalize_invoice_fields(invoice, vendor_patterns)
        corrected = replace(invoice, raw_fields=copy.deepcopy(invoice.raw_fields))
        applied: list[ProposedCorrection] = []

        for correction in corrections:
            if correction.confidence < self.auto_apply_threshold:
                continue
            if correction.field in PROTECTED_FIELDS:
                continue

            try:
                if correction.field == "date":
                    value = correction.corrected_value
                    if isinstance(value, str):
                        value = datetime.fromisoformat(value)
                    corrected.date = value
                else:
                    corrected.raw_fields[correction.field] = correction.corrected_value
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to apply correction for field {correction.field}: {e}")
                continue

            applied.append(correction)
            entry = self.audit.log_correction_applied(
                invoice.id,
                correction.field,
                correction.original_value,
                correction.corrected_value,
                correction.confidence,
                correction.memory_source_id,
            )
            if audit_log is not None:
                audit_log.append(entry)
            logger.info(
                f"Applied correction: {correction.field} changed from "
                f"{correction.original_value!r} to {correction.corrected_value!r} "
                f"for invoice {invoice.id}"
            )

        return CorrectedInvoice(
            original=invoice,
            corrected=corrected,
            normalized_fields=normalized.normalized_fields,
            applied_normalizations=normalized.applied_normalizations,
            applied_corrections=applied,
        )
