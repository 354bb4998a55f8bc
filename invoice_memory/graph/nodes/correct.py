"""Node that writes the decided corrections onto a copy of the invoice."""

import logging
from collections.abc import Callable

from ...models.decision import DecisionAction
from ...processing.apply_engine import ApplyEngine
from ...utils.error_handling import create_error_response
from ..state import PipelineState

logger = logging.getLogger(__name__)

AUTOMATIC_ACTIONS = (DecisionAction.AUTO_ACCEPT, DecisionAction.AUTO_CORRECT)


def make_correct_node(engine: ApplyEngine) -> Callable[[PipelineState], dict]:
    """Bind the apply engine's auto-apply step into a workflow node."""

    def apply_decided_corrections(state: PipelineState) -> dict:
        """Auto-apply only what an automatic decision kept.

        A human-review decision still gets the normalized copy, with no
        corrections written and no audit entries.
        """
        if state.get("error"):
            return {}

        invoice = state["invoice"]
        decision = state["decision"]
        corrections = []
        if decision is not None and decision.action in AUTOMATIC_ACTIONS:
            corrections = decision.applied_corrections

        audit_log = list(state.get("audit_entries", []))
        try:
            corrected = engine.apply_high_confidence_corrections(
                invoice, corrections, state["insights"].vendor_patterns, audit_log
            )
        except Exception as e:
            return create_error_response(e, "correct")

        logger.debug(
            f"Correct for {invoice.id}: {len(corrected.applied_corrections)} auto-applied"
        )
        return {"corrected_invoice": corrected, "audit_entries": audit_log}

    return apply_decided_corrections
