"""
Facade wiring the pattern store, engines and workflow into one system.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from .config import Settings
from .exceptions import ValidationError
from .graph.workflow import build_workflow, run_workflow
from .models.decision import DecisionThresholds, ProcessingDecision
from .models.feedback import LearningEvent, LearningFeedback
from .models.invoice import Invoice, ProposedCorrection
from .models.memory import ResolutionMatchPolicy
from .models.result import InvoiceProcessingResult
from .processing.apply_engine import ApplyEngine
from .processing.audit_manager import AuditManager
from .processing.decision_engine import DecisionEngine
from .processing.learning_engine import LearningEngine
from .processing.output_engine import OutputEngine
from .processing.pattern_store import InMemoryPatternStore, PatternStore
from .processing.recall_engine import RecallEngine
from .processing.sqlite_store import SqlitePatternStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> PatternStore:
    """SQLite store when a database path is configured, in-memory otherwise."""
    if settings.db_path:
        logger.info(f"Using SQLite pattern store at {settings.db_path}")
        return SqlitePatternStore(settings.db_path)
    logger.info("Using in-memory pattern store")
    return InMemoryPatternStore()


class InvoiceMemorySystem:
    """Processes invoices against accumulated memory and learns from reviewers.

    Usage:
        with InvoiceMemorySystem() as system:
            result = system.process_invoice(invoice)
            system.learn_from_corrections(invoice, corrections)
    """

    def __init__(self, store: PatternStore | None = None, settings: Settings | None = None):
        self.settings = settings or Settings.from_env()
        self.store = store or create_store(self.settings)
        self.audit = AuditManager(self.store)

        self.recall = RecallEngine(
            self.store,
            self.audit,
            ResolutionMatchPolicy.from_string(self.settings.resolution_match),
        )
        self.apply = ApplyEngine(self.store, self.audit)
        self.decision = DecisionEngine()
        self.learning = LearningEngine(self.store, self.audit)
        self.output = OutputEngine(self.audit)

        self._workflow = build_workflow(self.recall, self.apply, self.decision, self.output)

        # Last decision per invoice, used when a reviewer supplies corrections later
        self._decisions: dict[str, ProcessingDecision] = {}
        self._lock = threading.Lock()

    def process_invoice(self, invoice: Invoice) -> InvoiceProcessingResult:
        """Run one invoice through Recall, Apply, Decision and Output."""
        try:
            state = run_workflow(self._workflow, invoice)
        except Exception as e:
            logger.error(f"Workflow failed for invoice {invoice.id}: {e}")
            return self.output.create_error_result(invoice.id, e)

        decision = state.get("decision")
        if decision is not None:
            with self._lock:
                self._decisions[invoice.id] = decision

        result = state.get("result")
        if result is None:
            return self.output.create_error_result(invoice.id, "workflow produced no result")
        return result

    def process_batch(
        self, invoices: list[Invoice], max_workers: int | None = None
    ) -> list[InvoiceProcessingResult]:
        """Process invoices concurrently; results keep the input order."""
        if not invoices:
            return []
        workers = max(1, min(max_workers or self.settings.max_workers, len(invoices)))
        logger.info(f"Processing batch of {len(invoices)} invoice(s) with {workers} worker(s)")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="invoice") as executor:
            return list(executor.map(self.process_invoice, invoices))

    def get_last_decision(self, invoice_id: str) -> ProcessingDecision | None:
        """Most recent decision made for an invoice by this system."""
        with self._lock:
            return self._decisions.get(invoice_id)

    def submit_feedback(self, feedback: LearningFeedback) -> list[LearningEvent]:
        """Reinforce or decay the memory referenced by reviewer feedback."""
        return self.learning.reinforce_memory(feedback)

    def learn_from_corrections(
        self,
        invoice: Invoice,
        corrections: list[ProposedCorrection],
        decision: ProcessingDecision | None = None,
        field_mappings: dict[str, str] | None = None,
    ) -> list[LearningEvent]:
        """Turn a reviewer's corrections into new memory.

        Raises:
            ValidationError: If no decision is given and the invoice was never processed
            LearningError: If the store rejects the new patterns

        """
        decision = decision or self.get_last_decision(invoice.id)
        if decision is None:
            raise ValidationError(
                f"No decision available for invoice {invoice.id}; process it first"
            )
        return self.learning.learn_from_human_corrections(
            invoice, corrections, decision, field_mappings
        )

    def update_thresholds(
        self, auto_accept: float | None = None, auto_correct: float | None = None
    ) -> DecisionThresholds:
        """Change decision thresholds; auto-apply follows the auto-accept threshold."""
        thresholds = self.decision.update_thresholds(auto_accept, auto_correct)
        self.apply.auto_apply_threshold = thresholds.auto_accept
        return thresholds

    def export_audit_log(self, filepath: Path, **filters: Any) -> int:
        """Write the audit log to CSV; returns the number of rows."""
        return self.audit.export_csv(filepath, **filters)

    def get_system_stats(self) -> dict[str, Any]:
        """Store counts, learning statistics and current thresholds."""
        thresholds = self.decision.get_thresholds()
        return {
            "memory": self.store.get_counts(),
            "learning": self.learning.get_learning_statistics().to_dict(),
            "thresholds": {
                "auto_accept": thresholds.auto_accept,
                "auto_correct": thresholds.auto_correct,
                "human_review": thresholds.human_review,
            },
        }

    def close(self) -> None:
        """Release the pattern store."""
        self.store.close()

    def __enter__(self) -> "InvoiceMemorySystem":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
