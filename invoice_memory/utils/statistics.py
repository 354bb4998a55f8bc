"""Utility functions for calculating learning statistics."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..models.feedback import LearningEvent


@dataclass
class ConfidenceEvolution:
    """Average confidence change for one memory type."""

    memory_type: str
    average_change: float


@dataclass
class LearningStatistics:
    """Container for learning statistics."""

    total_learning_events: int
    positive_reinforcements: int
    negative_reinforcements: int
    new_patterns: int
    processed_invoices: int
    confidence_evolution: list[ConfidenceEvolution] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for reporting."""
        return {
            "total_learning_events": self.total_learning_events,
            "positive_reinforcements": self.positive_reinforcements,
            "negative_reinforcements": self.negative_reinforcements,
            "new_patterns": self.new_patterns,
            "processed_invoices": self.processed_invoices,
            "confidence_evolution": [
                {"memory_type": e.memory_type, "average_change": e.average_change}
                for e in self.confidence_evolution
            ],
        }

    def to_display_string(self) -> str:
        """Format statistics for console output."""
        return (
            f"Events: {self.total_learning_events} | +: {self.positive_reinforcements} | "
            f"-: {self.negative_reinforcements} | New: {self.new_patterns} | "
            f"Invoices: {self.processed_invoices}"
        )


def calculate_learning_statistics(
    events: list[LearningEvent],
    processed_invoices: int,
) -> LearningStatistics:
    """Calculate statistics for a list of learning events.

    Args:
        events: Learning events recorded by the engine
        processed_invoices: Number of distinct invoices learned from

    Returns:
        LearningStatistics object containing calculated statistics

    """
    positive = sum(1 for e in events if e.event_type == "positive-reinforcement")
    negative = sum(1 for e in events if e.event_type == "negative-reinforcement")
    new_patterns = sum(1 for e in events if e.event_type == "new-pattern")

    # Keep first-seen order of memory types
    changes: dict[str, list[float]] = defaultdict(list)
    for event in events:
        changes[event.memory_type].append(event.confidence_change)

    evolution = [
        ConfidenceEvolution(
            memory_type=memory_type,
            average_change=round(sum(values) / len(values), 4),
        )
        for memory_type, values in changes.items()
    ]

    return LearningStatistics(
        total_learning_events=len(events),
        positive_reinforcements=positive,
        negative_reinforcements=negative,
        new_patterns=new_patterns,
        processed_invoices=processed_invoices,
        confidence_evolution=evolution,
    )
