"""Node that recalls memory for the invoice."""

import logging
from collections.abc import Callable

from ...exceptions import RetrievalError
from ...processing.recall_engine import RecallEngine
from ...utils.error_handling import create_error_response
from ..state import PipelineState

logger = logging.getLogger(__name__)


def make_recall_node(engine: RecallEngine) -> Callable[[PipelineState], dict]:
    """Bind the recall engine into a workflow node."""

    def recall_memory(state: PipelineState) -> dict:
        """Gather confidence-weighted insights for the invoice."""
        invoice = state["invoice"]
        try:
            insights = engine.get_confidence_weighted_insights(invoice)
        except RetrievalError as e:
            return create_error_response(e, "recall")

        logger.debug(f"Recall for {invoice.id}: confidence {insights.overall_confidence:.2f}")
        return {
            "insights": insights,
            "confidence": insights.overall_confidence,
            "audit_entries": [*state.get("audit_entries", []), *insights.audit_entries],
        }

    return recall_memory
