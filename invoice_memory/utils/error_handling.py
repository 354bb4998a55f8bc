"""Standardized error handling utilities for the invoice memory pipeline."""

import logging
from typing import Any

from ..config import MAX_ERROR_MESSAGE_LENGTH

logger = logging.getLogger(__name__)


def create_error_response(
    error: Exception | str,
    stage: str,
    confidence: float = 0.0,
) -> dict[str, Any]:
    """Create a standardized error response for LangGraph nodes.

    Args:
        error: The error that occurred
        stage: Pipeline stage that failed (recall, apply, decide, correct, output)
        confidence: Default confidence for errors

    Returns:
        Dictionary with error information and safe defaults

    """
    error_message = format_error_message(error)
    logger.error(f"{stage} failed: {error_message}")

    return {
        "error": error_message,
        "error_stage": stage,
        "confidence": confidence,
    }


def format_error_message(error: Exception | str) -> str:
    """Render an error as a bounded single-line message."""
    if isinstance(error, Exception):
        message = str(error) or type(error).__name__
    else:
        message = error
    message = " ".join(message.split())
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        message = message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return message


def check_state_for_errors(state: dict[str, Any]) -> bool:
    """Check if a state contains errors.

    Args:
        state: The pipeline state to check

    Returns:
        True if state contains errors, False otherwise

    """
    return bool(state.get("error"))
