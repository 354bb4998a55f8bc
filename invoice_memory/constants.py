"""Constants used throughout the invoice memory pipeline."""

# Standard invoice fields considered alongside raw fields
STANDARD_FIELDS = ("invoice_number", "amount", "date", "vendor_name")

# Fields that never receive automatic high-confidence corrections
PROTECTED_FIELDS = frozenset({"amount", "vendor_name", "invoice_number"})

# Safety constraint flags
FLAG_LOW_CONFIDENCE_CORRECTIONS = "low-confidence-corrections-blocked"
FLAG_TOO_MANY_CORRECTIONS = "too-many-corrections"
FLAG_CRITICAL_FIELD = "critical-field-protection"
FLAG_LARGE_VALUE_CHANGE = "large-value-change"
FLAG_OVERALL_LOW_CONFIDENCE = "overall-low-confidence"
FLAG_ERROR_FALLBACK = "error-fallback"

# Flags that force human review regardless of confidence
BLOCKING_FLAGS = frozenset({
    FLAG_TOO_MANY_CORRECTIONS,
    FLAG_CRITICAL_FIELD,
    FLAG_LARGE_VALUE_CHANGE,
    FLAG_OVERALL_LOW_CONFIDENCE,
    FLAG_ERROR_FALLBACK,
})

# Audit entity types
ENTITY_VENDOR = "vendor_pattern"
ENTITY_CORRECTION = "correction_pattern"
ENTITY_RESOLUTION = "resolution_outcome"
ENTITY_INVOICE = "invoice"

# Audit operations
OP_MEMORY_ACCESS = "memory_access"
OP_STORE_VENDOR = "store_vendor_pattern"
OP_UPDATE_VENDOR_USAGE = "update_vendor_usage"
OP_ADJUST_VENDOR_CONFIDENCE = "adjust_vendor_confidence"
OP_STORE_CORRECTION = "store_correction_pattern"
OP_UPDATE_CORRECTION_FEEDBACK = "update_correction_feedback"
OP_STORE_RESOLUTION = "store_resolution_outcome"
OP_APPLY_CORRECTION = "apply_correction"
OP_DECISION = "make_decision"
OP_LEARNING_SKIPPED = "learning_skipped"
OP_LEARNING = "learning"

# Amount buckets for invoice shape keys (upper bound exclusive)
AMOUNT_BUCKETS = (
    (100, "small"),
    (1000, "medium"),
    (10000, "large"),
)
AMOUNT_BUCKET_MAX = "very-large"
