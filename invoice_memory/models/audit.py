"""Audit trail data models for memory operations."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .memory import new_id


@dataclass
class AuditEntry:
    """Represents a single append-only audit log entry."""

    operation: str
    entity_type: str
    entity_id: str
    reasoning: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    confidence_score: float | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: new_id("audit"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for CSV export.

        Returns:
            Dictionary with all fields formatted for export

        """
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'operation': self.operation,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'reasoning': self.reasoning,
            'confidence': '' if self.confidence_score is None else f"{self.confidence_score:.4f}",
        }
