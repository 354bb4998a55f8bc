"""Invoice value objects consumed and produced by the pipeline."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from ..constants import STANDARD_FIELDS
from .memory import InvoiceShape


@dataclass
class LineItem:
    """A single billed line on an invoice."""

    description: str
    quantity: float
    unit_price: float
    total_price: float
    category: str | None = None


@dataclass
class Invoice:
    """An incoming invoice. Raw fields are an ordered, untyped key/value map."""

    id: str
    vendor_name: str
    invoice_number: str
    amount: float
    date: date | datetime | None = None
    line_items: list[LineItem] = field(default_factory=list)
    raw_fields: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=datetime.now)

    def standard_fields(self) -> dict[str, Any]:
        """Return the four standard fields keyed by canonical name."""
        return {name: getattr(self, name) for name in STANDARD_FIELDS}

    def all_fields(self) -> dict[str, Any]:
        """Raw fields followed by standard fields; standard values win on clashes."""
        fields = dict(self.raw_fields)
        fields.update(self.standard_fields())
        return fields

    def shape(self) -> InvoiceShape:
        """Derive the structural shape used for resolution recall."""
        return InvoiceShape(
            vendor=self.vendor_name,
            amount_range=InvoiceShape.amount_range_for(self.amount),
            field_count=len(self.raw_fields),
            has_line_items=len(self.line_items) > 0,
        )


@dataclass
class ProposedCorrection:
    """A correction suggested from correction memory."""

    field: str
    original_value: Any
    corrected_value: Any
    confidence: float
    memory_source_id: str
    reasoning: str = ""


@dataclass
class NormalizedField:
    """A normalized value carried beside the untouched raw value."""

    value: Any
    original_field: str
    confidence: float
    original_value: Any = None
    rule: str | None = None


@dataclass
class NormalizedInvoice:
    """An invoice plus the normalizations derived from vendor memory."""

    invoice: Invoice
    normalized_fields: dict[str, NormalizedField] = field(default_factory=dict)
    applied_normalizations: list[str] = field(default_factory=list)


@dataclass
class CorrectedInvoice:
    """A normalized invoice with high-confidence corrections applied."""

    original: Invoice
    corrected: Invoice
    normalized_fields: dict[str, NormalizedField] = field(default_factory=dict)
    applied_normalizations: list[str] = field(default_factory=list)
    applied_corrections: list[ProposedCorrection] = field(default_factory=list)
