"""String similarity helpers for matching field values against correction memory."""

from typing import Any

from rapidfuzz.distance import Levenshtein

from ..config import SIMILARITY_THRESHOLD


def as_text(value: Any) -> str:
    """Render a field value as the string form stored in correction memory."""
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def edit_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]; 1.0 means identical."""
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def is_similar_value(value: Any, candidate: Any, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """Whether two values match exactly, case-insensitively, or by edit similarity."""
    a = as_text(value)
    b = as_text(candidate)
    if a == b:
        return True
    if a.lower() == b.lower():
        return True
    return edit_similarity(a, b) >= threshold
