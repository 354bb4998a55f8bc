import logging
from typing import Any, cast

from langgraph.graph import StateGraph
from langgraph.graph.state import CompiledStateGraph

from ..models.invoice import Invoice
from ..processing.apply_engine import ApplyEngine
from ..processing.decision_engine import DecisionEngine
from ..processing.output_engine import OutputEngine
from ..processing.recall_engine import RecallEngine
from ..utils.error_handling import check_state_for_errors
from .nodes.apply import make_apply_node
from .nodes.correct import make_correct_node
from .nodes.decide import make_decide_node
from .nodes.output import make_output_node
from .nodes.recall import make_recall_node
from .state import PipelineState

logger = logging.getLogger(__name__)


def route_on_error(next_node: str):
    """Build a router that skips to output once the state carries an error."""

    def route(state: PipelineState) -> str:
        if check_state_for_errors(state):
            logger.debug(
                f"Routing {state['invoice'].id} to output after "
                f"{state.get('error_stage')} error"
            )
            return "output"
        return next_node

    return route


def build_workflow(
    recall: RecallEngine,
    apply: ApplyEngine,
    decision: DecisionEngine,
    output: OutputEngine,
) -> CompiledStateGraph[PipelineState, Any]:
    """Compile the Recall -> Apply -> Decide -> Correct -> Output workflow.

    Returns:
        Compiled LangGraph workflow

    """
    workflow = StateGraph(PipelineState)

    # Add nodes
    workflow.add_node("recall", make_recall_node(recall))
    workflow.add_node("apply", make_apply_node(apply))
    workflow.add_node("decide", make_decide_node(decision))
    workflow.add_node("correct", make_correct_node(apply))
    workflow.add_node("output", make_output_node(output))

    # Errors short-circuit to the output node
    workflow.add_conditional_edges(
        "recall",
        route_on_error("apply"),
        {"apply": "apply", "output": "output"},
    )
    workflow.add_conditional_edges(
        "apply",
        route_on_error("decide"),
        {"decide": "decide", "output": "output"},
    )
    workflow.add_edge("decide", "correct")
    workflow.add_edge("correct", "output")

    workflow.set_entry_point("recall")
    workflow.set_finish_point("output")

    return workflow.compile()


def create_initial_state(invoice: Invoice) -> PipelineState:
    """Create initial state for invoice processing.

    Args:
        invoice: The invoice to process

    Returns:
        Initial pipeline state

    """
    return {
        "invoice": invoice,
        "insights": None,
        "proposed_corrections": None,
        "corrected_invoice": None,
        "decision": None,
        "confidence": None,
        "audit_entries": [],
        "result": None,
        "error": None,
        "error_stage": None,
    }


def run_workflow(app: CompiledStateGraph, invoice: Invoice) -> PipelineState:
    """Process a single invoice through a compiled workflow.

    Args:
        app: Workflow from ``build_workflow``
        invoice: Invoice to process

    Returns:
        Pipeline state after processing

    """
    result = app.invoke(create_initial_state(invoice))
    return cast(PipelineState, result)
