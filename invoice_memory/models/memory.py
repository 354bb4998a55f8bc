"""Memory pattern data models persisted by the pattern store."""

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from ..constants import AMOUNT_BUCKET_MAX, AMOUNT_BUCKETS

if TYPE_CHECKING:
    from .audit import AuditEntry


def clamp_confidence(value: float | None) -> float:
    """Clamp a confidence value into [0, 1].

    None, NaN and infinities collapse to 0.0. The result is rounded to four
    decimals so repeated reinforcement does not accumulate float drift.
    """
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return round(min(1.0, max(0.0, number)), 4)


def new_id(prefix: str) -> str:
    """Generate a unique, prefixed identifier."""
    return f"{prefix}_{uuid4().hex[:12]}"


class ResolutionMatchPolicy(str, Enum):
    """How resolution outcomes are matched against an invoice shape key."""

    EXACT = "exact"
    CONTAINS = "contains"

    @classmethod
    def from_string(cls, value: str | None) -> "ResolutionMatchPolicy":
        """Parse a policy name, defaulting to exact matching."""
        if not value:
            return cls.EXACT
        try:
            return cls(value.lower())
        except ValueError:
            return cls.EXACT


@dataclass
class NormalizationRule:
    """A regex rewrite applied to one field of a vendor's invoices."""

    field_name: str
    pattern: str
    replacement: str
    confidence_score: float = 0.5

    def __post_init__(self) -> None:
        self.confidence_score = clamp_confidence(self.confidence_score)


@dataclass
class VendorPattern:
    """Confidence-scored field-mapping knowledge for one vendor."""

    vendor_name: str
    field_mappings: dict[str, str] = field(default_factory=dict)
    normalization_rules: list[NormalizationRule] = field(default_factory=list)
    confidence_score: float = 0.5
    usage_count: int = 0
    last_used: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: new_id("vendor"))

    def __post_init__(self) -> None:
        self.confidence_score = clamp_confidence(self.confidence_score)
        self.normalization_rules = [
            rule if isinstance(rule, NormalizationRule) else NormalizationRule(**rule)
            for rule in self.normalization_rules
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary for audit snapshots."""
        data = asdict(self)
        data["last_used"] = self.last_used.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class CorrectionPattern:
    """A historically observed original -> corrected value pair for a field."""

    field_name: str
    original_value: str
    corrected_value: str
    vendor_name: str | None = None
    confidence_score: float = 0.5
    approval_count: int = 0
    rejection_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: new_id("correction"))

    def __post_init__(self) -> None:
        self.confidence_score = clamp_confidence(self.confidence_score)

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """Identity of the correction independent of vendor scope."""
        return (self.field_name, self.original_value, self.corrected_value)

    @property
    def approval_rate(self) -> float:
        """Approval ratio smoothed by one pseudo-observation."""
        return self.approval_count / (self.approval_count + self.rejection_count + 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary for audit snapshots."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class ResolutionOutcome:
    """Record of a past decision for an invoice shape. Write-once."""

    invoice_pattern: str
    decision: str
    confidence_score: float
    outcome_success: bool
    reasoning: str
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: new_id("resolution"))

    def __post_init__(self) -> None:
        self.confidence_score = clamp_confidence(self.confidence_score)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary for audit snapshots."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class InvoiceShape:
    """Coarse structural fingerprint of an invoice used for resolution recall."""

    vendor: str
    amount_range: str
    field_count: int
    has_line_items: bool

    @staticmethod
    def amount_range_for(amount: float) -> str:
        """Bucket an amount into small/medium/large/very-large."""
        for upper, label in AMOUNT_BUCKETS:
            if amount < upper:
                return label
        return AMOUNT_BUCKET_MAX

    @property
    def key(self) -> str:
        """Deterministic JSON key for storage and matching."""
        return json.dumps(
            {
                "vendor": self.vendor,
                "amountRange": self.amount_range,
                "fieldCount": self.field_count,
                "hasLineItems": self.has_line_items,
            },
            sort_keys=True,
        )


@dataclass
class MemoryInsights:
    """Everything Recall found for one invoice."""

    vendor_patterns: list[VendorPattern] = field(default_factory=list)
    suggested_corrections: list[CorrectionPattern] = field(default_factory=list)
    historical_resolutions: list[ResolutionOutcome] = field(default_factory=list)
    overall_confidence: float = 0.1
    reasoning: list[str] = field(default_factory=list)
    audit_entries: "list[AuditEntry]" = field(default_factory=list)

    @property
    def has_memory(self) -> bool:
        """Whether any kind of memory was recalled."""
        return bool(
            self.vendor_patterns or self.suggested_corrections or self.historical_resolutions
        )
