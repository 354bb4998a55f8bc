"""Configuration settings for the invoice memory pipeline."""

import os
from dataclasses import dataclass

# Decision thresholds
AUTO_ACCEPT_THRESHOLD = 0.85
AUTO_CORRECT_THRESHOLD = 0.65  # Below this, human review is required

# Recall configuration
NO_MEMORY_CONFIDENCE = 0.1
CONFIDENCE_WEIGHTS: dict[str, float] = {
    "vendor": 0.5,
    "correction": 0.3,
    "resolution": 0.2,
}
MIN_RECALL_CORRECTION_CONFIDENCE = 0.3
MIN_RESOLUTION_CONFIDENCE = 0.5
HIGH_CONFIDENCE_CORRECTION = 0.7  # Used only in rationale text

# Apply configuration
MIN_PROPOSAL_CONFIDENCE = 0.5
SIMILARITY_THRESHOLD = 0.8
MAPPING_CONFIDENCE_FACTOR = 0.7
MAX_USAGE_WEIGHT = 0.3

# Decision safety limits
MAX_AUTO_CORRECTIONS = 5
LARGE_VALUE_CHANGE_RATIO = 0.2

# Learning deltas (trust is earned slower than it is lost)
CORRECTION_APPROVAL_DELTA = 0.1
CORRECTION_REJECTION_DELTA = 0.15
VENDOR_APPROVAL_DELTA = 0.05
VENDOR_REJECTION_DELTA = 0.1
RESOLUTION_APPROVAL_DELTA = 0.05
RESOLUTION_REJECTION_DELTA = 0.1
NEW_CORRECTION_CONFIDENCE = 0.7
NEW_VENDOR_PATTERN_CONFIDENCE = 0.5

# Output limits
MAX_VALUE_LENGTH = 1000
MAX_ERROR_MESSAGE_LENGTH = 200

# Logging configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL = "INFO"


@dataclass
class Settings:
    """Runtime settings resolved from the environment."""

    db_path: str | None = None
    log_level: str = LOG_LEVEL
    resolution_match: str = "exact"
    max_workers: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``INVOICE_MEMORY_*`` environment variables."""
        return cls(
            db_path=os.getenv("INVOICE_MEMORY_DB_PATH") or None,
            log_level=os.getenv("INVOICE_MEMORY_LOG_LEVEL", LOG_LEVEL).upper(),
            resolution_match=os.getenv("INVOICE_MEMORY_RESOLUTION_MATCH", "exact").lower(),
            max_workers=int(os.getenv("INVOICE_MEMORY_MAX_WORKERS", "4")),
        )
