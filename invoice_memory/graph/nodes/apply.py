"""Node that proposes corrections from recalled memory."""

import logging
from collections.abc import Callable

from ...processing.apply_engine import ApplyEngine
from ...utils.error_handling import create_error_response
from ..state import PipelineState

logger = logging.getLogger(__name__)


def make_apply_node(engine: ApplyEngine) -> Callable[[PipelineState], dict]:
    """Bind the apply engine into a workflow node."""

    def apply_memory(state: PipelineState) -> dict:
        """Propose corrections; nothing is written to the invoice here."""
        if state.get("error"):
            return {}

        invoice = state["invoice"]
        insights = state["insights"]
        try:
            proposals = engine.propose_corrections(invoice, insights.suggested_corrections)
        except Exception as e:
            return create_error_response(e, "apply")

        logger.debug(f"Apply for {invoice.id}: {len(proposals)} proposal(s)")
        return {"proposed_corrections": proposals}

    return apply_memory
