"""LangGraph workflow components for invoice processing."""

from .state import PipelineState
from .workflow import build_workflow, create_initial_state, run_workflow

__all__ = ["PipelineState", "build_workflow", "create_initial_state", "run_workflow"]
