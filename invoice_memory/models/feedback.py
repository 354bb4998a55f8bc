"""Feedback data models for learning from human review."""

from dataclasses import dataclass, field
from datetime import datetime

from .memory import new_id


@dataclass
class LearningFeedback:
    """Represents a human approval or rejection for a processed invoice."""

    invoice_id: str
    approved: bool
    correction_id: str | None = None
    vendor_pattern_id: str | None = None
    resolution_outcome_id: str | None = None
    reasoning: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def verdict(self) -> str:
        """Past-tense verb for log and audit messages."""
        return "Approved" if self.approved else "Rejected"


@dataclass
class LearningEvent:
    """A single confidence change recorded by the learning engine."""

    invoice_id: str
    event_type: str  # "positive-reinforcement", "negative-reinforcement", "new-pattern"
    memory_type: str  # "vendor", "correction", "resolution"
    memory_id: str
    confidence_change: float
    reasoning: str
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: new_id("learning"))
