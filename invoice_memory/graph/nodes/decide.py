"""Node that decides how the invoice is processed."""

from collections.abc import Callable

from ...processing.decision_engine import DecisionEngine
from ..state import PipelineState


def make_decide_node(engine: DecisionEngine) -> Callable[[PipelineState], dict]:
    """Bind the decision engine into a workflow node."""

    def decide(state: PipelineState) -> dict:
        """Choose an action; the engine falls back to human review on failure."""
        if state.get("error"):
            return {}

        decision = engine.make_decision(
            state["invoice"],
            state["insights"],
            state.get("proposed_corrections") or [],
        )
        return {"decision": decision, "confidence": decision.confidence_score}

    return decide
