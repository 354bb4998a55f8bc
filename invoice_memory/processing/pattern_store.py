"""
Pattern store contract and a thread-safe in-memory implementation.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from ..constants import (
    ENTITY_CORRECTION,
    ENTITY_RESOLUTION,
    ENTITY_VENDOR,
    OP_ADJUST_VENDOR_CONFIDENCE,
    OP_STORE_CORRECTION,
    OP_STORE_RESOLUTION,
    OP_STORE_VENDOR,
    OP_UPDATE_CORRECTION_FEEDBACK,
    OP_UPDATE_VENDOR_USAGE,
)
from ..config import CORRECTION_APPROVAL_DELTA, CORRECTION_REJECTION_DELTA
from ..exceptions import PatternNotFoundError
from ..models.audit import AuditEntry
from ..models.memory import (
    CorrectionPattern,
    ResolutionMatchPolicy,
    ResolutionOutcome,
    VendorPattern,
    clamp_confidence,
)

logger = logging.getLogger(__name__)


class PatternStore(ABC):
    """Durable owner of vendor, correction, resolution and audit state.

    Every write is atomic and records its own audit entry in the same
    transaction. List reads come back ordered by confidence, highest first.
    """

    # Vendor patterns

    @abstractmethod
    def store_vendor_pattern(self, pattern: VendorPattern) -> None:
        """Create or replace a vendor pattern."""

    @abstractmethod
    def get_vendor_patterns(self, vendor_name: str) -> list[VendorPattern]:
        """Patterns for a vendor, confidence desc then most recently used."""

    @abstractmethod
    def get_vendor_pattern(self, pattern_id: str) -> VendorPattern | None:
        """Look up one vendor pattern by id."""

    @abstractmethod
    def increment_vendor_usage(self, pattern_id: str) -> VendorPattern:
        """Bump usage count and last-used time; returns the updated pattern."""

    @abstractmethod
    def adjust_vendor_confidence(
        self, pattern_id: str, delta: float, reasoning: str = ""
    ) -> tuple[VendorPattern, VendorPattern]:
        """Shift a vendor pattern's confidence; returns (before, after)."""

    # Correction patterns

    @abstractmethod
    def store_correction_pattern(self, pattern: CorrectionPattern) -> None:
        """Create or replace a correction pattern."""

    @abstractmethod
    def get_correction_patterns(
        self, field_name: str, vendor_name: str | None = None
    ) -> list[CorrectionPattern]:
        """Patterns for a field; with a vendor, only that vendor's or unscoped ones."""

    @abstractmethod
    def get_correction_pattern(self, pattern_id: str) -> CorrectionPattern | None:
        """Look up one correction pattern by id."""

    @abstractmethod
    def update_correction_feedback(
        self,
        pattern_id: str,
        approved: bool,
        increment: float = CORRECTION_APPROVAL_DELTA,
        decrement: float = CORRECTION_REJECTION_DELTA,
    ) -> tuple[CorrectionPattern, CorrectionPattern]:
        """Apply approval or rejection; returns (before, after)."""

    # Resolution outcomes

    @abstractmethod
    def store_resolution_outcome(self, outcome: ResolutionOutcome) -> None:
        """Record a resolution outcome. Outcomes are never updated."""

    @abstractmethod
    def get_resolution_outcomes(
        self,
        pattern_key: str,
        match: ResolutionMatchPolicy = ResolutionMatchPolicy.EXACT,
    ) -> list[ResolutionOutcome]:
        """Outcomes whose shape key matches, confidence desc then newest."""

    @abstractmethod
    def get_resolution_outcome(self, outcome_id: str) -> ResolutionOutcome | None:
        """Look up one resolution outcome by id."""

    # Audit log

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry and return it."""

    @abstractmethod
    def query_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        operation: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Filtered audit entries, newest first."""

    # Utility

    @abstractmethod
    def get_counts(self) -> dict[str, int]:
        """Number of stored entities per type."""

    def close(self) -> None:
        """Release any held resources."""


def _sort_vendor_patterns(patterns: list[VendorPattern]) -> list[VendorPattern]:
    return sorted(patterns, key=lambda p: (p.confidence_score, p.last_used), reverse=True)


def _sort_by_confidence_then_created(items: list[Any]) -> list[Any]:
    return sorted(items, key=lambda p: (p.confidence_score, p.created_at), reverse=True)


def matches_pattern_key(stored_key: str, pattern_key: str, match: ResolutionMatchPolicy) -> bool:
    """Compare a stored shape key with a requested one under a policy."""
    if match is ResolutionMatchPolicy.CONTAINS:
        return pattern_key.lower() in stored_key.lower()
    return stored_key == pattern_key


class InMemoryPatternStore(PatternStore):
    """In-memory pattern storage guarded by a re-entrant lock.

    Objects handed out are deep copies, so callers never mutate stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._vendor_patterns: dict[str, VendorPattern] = {}
        self._correction_patterns: dict[str, CorrectionPattern] = {}
        self._resolution_outcomes: dict[str, ResolutionOutcome] = {}
        self._audit_entries: list[AuditEntry] = []

    def _audit(self, entry: AuditEntry) -> None:
        self._audit_entries.append(entry)

    def store_vendor_pattern(self, pattern: VendorPattern) -> None:
        with self._lock:
            before = self._vendor_patterns.get(pattern.id)
            self._vendor_patterns[pattern.id] = copy.deepcopy(pattern)
            self._audit(AuditEntry(
                operation=OP_STORE_VENDOR,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern.id,
                before_state=before.to_dict() if before else None,
                after_state=pattern.to_dict(),
                reasoning=f"Stored vendor pattern for {pattern.vendor_name}",
                confidence_score=pattern.confidence_score,
            ))

    def get_vendor_patterns(self, vendor_name: str) -> list[VendorPattern]:
        with self._lock:
            patterns = [
                copy.deepcopy(p) for p in self._vendor_patterns.values()
                if p.vendor_name == vendor_name
            ]
        return _sort_vendor_patterns(patterns)

    def get_vendor_pattern(self, pattern_id: str) -> VendorPattern | None:
        with self._lock:
            pattern = self._vendor_patterns.get(pattern_id)
            return copy.deepcopy(pattern) if pattern else None

    def increment_vendor_usage(self, pattern_id: str) -> VendorPattern:
        with self._lock:
            pattern = self._vendor_patterns.get(pattern_id)
            if pattern is None:
                raise PatternNotFoundError(ENTITY_VENDOR, pattern_id)
            pattern.usage_count += 1
            pattern.last_used = datetime.now()
            self._audit(AuditEntry(
                operation=OP_UPDATE_VENDOR_USAGE,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern_id,
                reasoning=f"Usage count raised to {pattern.usage_count}",
            ))
            return copy.deepcopy(pattern)

    def adjust_vendor_confidence(
        self, pattern_id: str, delta: float, reasoning: str = ""
    ) -> tuple[VendorPattern, VendorPattern]:
        with self._lock:
            pattern = self._vendor_patterns.get(pattern_id)
            if pattern is None:
                raise PatternNotFoundError(ENTITY_VENDOR, pattern_id)
            before = copy.deepcopy(pattern)
            pattern.confidence_score = clamp_confidence(pattern.confidence_score + delta)
            self._audit(AuditEntry(
                operation=OP_ADJUST_VENDOR_CONFIDENCE,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern_id,
                before_state=before.to_dict(),
                after_state=pattern.to_dict(),
                reasoning=reasoning or f"Vendor confidence adjusted by {delta:+.2f}",
                confidence_score=pattern.confidence_score,
            ))
            return before, copy.deepcopy(pattern)

    def store_correction_pattern(self, pattern: CorrectionPattern) -> None:
        with self._lock:
            before = self._correction_patterns.get(pattern.id)
            self._correction_patterns[pattern.id] = copy.deepcopy(pattern)
            self._audit(AuditEntry(
                operation=OP_STORE_CORRECTION,
                entity_type=ENTITY_CORRECTION,
                entity_id=pattern.id,
                before_state=before.to_dict() if before else None,
                after_state=pattern.to_dict(),
                reasoning=f"Stored correction pattern for field {pattern.field_name}",
                confidence_score=pattern.confidence_score,
            ))

    def get_correction_patterns(
        self, field_name: str, vendor_name: str | None = None
    ) -> list[CorrectionPattern]:
        with self._lock:
            patterns = [
                copy.deepcopy(p) for p in self._correction_patterns.values()
                if p.field_name == field_name
                and (vendor_name is None or p.vendor_name in (vendor_name, None))
            ]
        return _sort_by_confidence_then_created(patterns)

    def get_correction_pattern(self, pattern_id: str) -> CorrectionPattern | None:
        with self._lock:
            pattern = self._correction_patterns.get(pattern_id)
            return copy.deepcopy(pattern) if pattern else None

    def update_correction_feedback(
        self,
        pattern_id: str,
        approved: bool,
        increment: float = CORRECTION_APPROVAL_DELTA,
        decrement: float = CORRECTION_REJECTION_DELTA,
    ) -> tuple[CorrectionPattern, CorrectionPattern]:
        with self._lock:
            pattern = self._correction_patterns.get(pattern_id)
            if pattern is None:
                raise PatternNotFoundError(ENTITY_CORRECTION, pattern_id)
            before = copy.deepcopy(pattern)
            if approved:
                pattern.approval_count += 1
                pattern.confidence_score = clamp_confidence(pattern.confidence_score + increment)
            else:
                pattern.rejection_count += 1
                pattern.confidence_score = clamp_confidence(pattern.confidence_score - decrement)
            self._audit(AuditEntry(
                operation=OP_UPDATE_CORRECTION_FEEDBACK,
                entity_type=ENTITY_CORRECTION,
                entity_id=pattern_id,
                before_state=before.to_dict(),
                after_state=pattern.to_dict(),
                reasoning=(
                    f"Updated correction pattern based on "
                    f"{'positive' if approved else 'negative'} feedback"
                ),
                confidence_score=pattern.confidence_score,
            ))
            return before, copy.deepcopy(pattern)

    def store_resolution_outcome(self, outcome: ResolutionOutcome) -> None:
        with self._lock:
            self._resolution_outcomes[outcome.id] = copy.deepcopy(outcome)
            self._audit(AuditEntry(
                operation=OP_STORE_RESOLUTION,
                entity_type=ENTITY_RESOLUTION,
                entity_id=outcome.id,
                after_state=outcome.to_dict(),
                reasoning=f"Stored resolution outcome for pattern: {outcome.invoice_pattern}",
                confidence_score=outcome.confidence_score,
            ))

    def get_resolution_outcomes(
        self,
        pattern_key: str,
        match: ResolutionMatchPolicy = ResolutionMatchPolicy.EXACT,
    ) -> list[ResolutionOutcome]:
        with self._lock:
            outcomes = [
                copy.deepcopy(o) for o in self._resolution_outcomes.values()
                if matches_pattern_key(o.invoice_pattern, pattern_key, match)
            ]
        return _sort_by_confidence_then_created(outcomes)

    def get_resolution_outcome(self, outcome_id: str) -> ResolutionOutcome | None:
        with self._lock:
            outcome = self._resolution_outcomes.get(outcome_id)
            return copy.deepcopy(outcome) if outcome else None

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self._audit(copy.deepcopy(entry))
        return entry

    def query_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        operation: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        with self._lock:
            entries = list(self._audit_entries)

        if entity_type:
            entries = [e for e in entries if e.entity_type == entity_type]
        if entity_id:
            entries = [e for e in entries if e.entity_id == entity_id]
        if operation:
            entries = [e for e in entries if e.operation == operation]
        if start_time:
            entries = [e for e in entries if e.timestamp >= start_time]
        if end_time:
            entries = [e for e in entries if e.timestamp <= end_time]

        # Newest first; ties keep reverse append order
        entries = list(reversed(entries))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        if limit:
            entries = entries[:limit]
        return [copy.deepcopy(e) for e in entries]

    def get_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "vendor_patterns": len(self._vendor_patterns),
                "correction_patterns": len(self._correction_patterns),
                "resolution_outcomes": len(self._resolution_outcomes),
                "audit_entries": len(self._audit_entries),
            }

    def clear_all(self) -> None:
        """Clear all stored state (for testing purposes)"""
        with self._lock:
            self._vendor_patterns.clear()
            self._correction_patterns.clear()
            self._resolution_outcomes.clear()
            self._audit_entries.clear()
        logger.debug("Cleared in-memory pattern store")
