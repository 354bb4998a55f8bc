"""Custom exceptions for the invoice memory pipeline."""


class InvoiceMemoryError(Exception):
    """Base exception for the invoice memory pipeline."""

    pass


class StoreError(InvoiceMemoryError):
    """Raised when the pattern store cannot complete a read or write."""

    pass


class PatternNotFoundError(StoreError):
    """Raised when a pattern id does not exist in the store."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class RetrievalError(InvoiceMemoryError):
    """Raised when memory recall fails to read from the pattern store."""

    pass


class NormalizationError(InvoiceMemoryError):
    """Raised when a normalization rule cannot be compiled or applied."""

    pass


class DecisionError(InvoiceMemoryError):
    """Raised when decision computation fails unexpectedly."""

    pass


class LearningError(InvoiceMemoryError):
    """Raised when feedback cannot be turned into memory updates."""

    pass


class OutputValidationError(InvoiceMemoryError):
    """Raised when a processing result violates the published contract."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Output validation failed: {', '.join(errors)}")
        self.errors = errors


class ValidationError(InvoiceMemoryError):
    """Raised when input validation fails."""

    pass
