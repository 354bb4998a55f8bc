"""Published result contract for processed invoices."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .decision import DecisionAction


class ContractModel(BaseModel):
    """Base for contract models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class AppliedCorrection(ContractModel):
    """A correction as published to callers."""

    field: str = Field(min_length=1, description="Name of the corrected field")
    original_value: Any = Field(default=None, alias="originalValue")
    corrected_value: Any = Field(default=None, alias="correctedValue")
    confidence: float = Field(ge=0.0, le=1.0)


class MemoryInsightSummary(ContractModel):
    """Counters summarising the memory behind a decision."""

    vendor_patterns_used: int = Field(default=0, ge=0, alias="vendorPatternsUsed")
    corrections_applied: int = Field(default=0, ge=0, alias="correctionsApplied")
    historical_accuracy: float = Field(default=0.0, ge=0.0, le=1.0, alias="historicalAccuracy")


class AuditTrailItem(ContractModel):
    """One audit reference in the published trail."""

    operation_id: str = Field(min_length=1, alias="operationId")
    timestamp: str = Field(min_length=1, description="ISO-8601 timestamp")
    reasoning: str = Field(min_length=1)

    @field_validator("timestamp")
    @classmethod
    def _check_iso_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"timestamp must be a valid ISO-8601 string, got {value!r}") from e
        return value


class InvoiceProcessingResult(ContractModel):
    """The externally published outcome of processing one invoice."""

    document_id: str = Field(min_length=1, alias="documentId")
    decision: DecisionAction
    confidence_score: float = Field(ge=0.0, le=1.0, alias="confidenceScore")
    reasoning: str = Field(min_length=1)
    applied_corrections: list[AppliedCorrection] = Field(
        default_factory=list, alias="appliedCorrections"
    )
    memory_insights: MemoryInsightSummary = Field(
        default_factory=MemoryInsightSummary, alias="memoryInsights"
    )
    audit_trail: list[AuditTrailItem] = Field(default_factory=list, alias="auditTrail")

    def to_contract_dict(self) -> dict[str, Any]:
        """Dump using the published camelCase field names."""
        return self.model_dump(by_alias=True, mode="json")
