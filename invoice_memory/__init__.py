"""Invoice Memory - confidence-weighted heuristic memory for invoice processing."""

from .config import AUTO_ACCEPT_THRESHOLD, AUTO_CORRECT_THRESHOLD, Settings
from .exceptions import (
    DecisionError,
    InvoiceMemoryError,
    LearningError,
    NormalizationError,
    OutputValidationError,
    PatternNotFoundError,
    RetrievalError,
    StoreError,
    ValidationError,
)
from .system import InvoiceMemorySystem

__version__ = "0.1.0"
__all__ = [
    "AUTO_ACCEPT_THRESHOLD",
    "AUTO_CORRECT_THRESHOLD",
    "DecisionError",
    "InvoiceMemoryError",
    "InvoiceMemorySystem",
    "LearningError",
    "NormalizationError",
    "OutputValidationError",
    "PatternNotFoundError",
    "RetrievalError",
    "Settings",
    "StoreError",
    "ValidationError",
]
