"""Decision types and value objects for invoice processing."""

from dataclasses import dataclass, field
from enum import Enum

from .invoice import ProposedCorrection


class DecisionAction(str, Enum):
    """Terminal processing actions for a document."""

    AUTO_ACCEPT = "auto-accept"
    AUTO_CORRECT = "auto-correct"
    HUMAN_REVIEW = "human-review"

    @property
    def display_name(self) -> str:
        """Get human-readable display name."""
        return self.value.upper()

    @classmethod
    def from_string(cls, value: str | None) -> "DecisionAction | None":
        """Create DecisionAction from string value."""
        if not value:
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return None


@dataclass
class DecisionThresholds:
    """Confidence thresholds separating the three actions."""

    auto_accept: float
    auto_correct: float

    @property
    def human_review(self) -> float:
        """Anything below the auto-correct threshold goes to human review."""
        return self.auto_correct


@dataclass
class ThresholdAnalysis:
    """How the overall confidence compares to each threshold."""

    auto_accept_threshold: float
    auto_correct_threshold: float
    human_review_threshold: float
    actual_confidence: float
    exceeds_auto_accept: bool
    exceeds_auto_correct: bool


@dataclass
class ProcessingDecision:
    """The outcome of the decision engine for one invoice."""

    action: DecisionAction
    confidence_score: float
    reasoning: str
    threshold_analysis: ThresholdAnalysis
    applied_corrections: list[ProposedCorrection] = field(default_factory=list)
    memory_source_ids: list[str] = field(default_factory=list)
    safety_constraints: list[str] = field(default_factory=list)
