"""Node that publishes the processing result."""

import logging
from collections.abc import Callable

from ...processing.output_engine import OutputEngine
from ..state import PipelineState

logger = logging.getLogger(__name__)


def make_output_node(engine: OutputEngine) -> Callable[[PipelineState], dict]:
    """Bind the output engine into a workflow node."""

    def publish_result(state: PipelineState) -> dict:
        """Build the published result, or the error-shaped one after a failure."""
        invoice = state["invoice"]

        if state.get("error"):
            logger.info(
                f"Publishing error result for {invoice.id} "
                f"(failed at {state.get('error_stage') or 'unknown stage'})"
            )
            return {"result": engine.create_error_result(invoice.id, state["error"])}

        result = engine.create_result(
            invoice,
            state["decision"],
            state["insights"],
            state.get("audit_entries", []),
        )
        return {"result": result}

    return publish_result
