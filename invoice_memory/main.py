import json
import logging
import sys
from datetime import date
from pathlib import Path

from dotenv import load_dotenv

from .config import LOG_FORMAT, Settings
from .models.invoice import Invoice, LineItem, ProposedCorrection
from .system import InvoiceMemorySystem


def configure_logging(level: str) -> None:
    """Configure root logging for the command-line entry point."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def sample_invoices() -> tuple[Invoice, Invoice]:
    """Two invoices from the same vendor with the same structure."""
    first = Invoice(
        id="INV-001",
        vendor_name="Acme Corp",
        invoice_number="AC-2024-001",
        amount=1250.00,
        date=date(2024, 1, 15),
        line_items=[
            LineItem("Office Supplies", 10, 25.00, 250.00, "supplies"),
            LineItem("Software License", 1, 1000.00, 1000.00, "software"),
        ],
        raw_fields={
            "inv_num": "AC-2024-001",
            "total_amt": "$1,250.00",
            "vendor_id": "ACME_CORP",
            "due_date": "2024-02-15",
            "po_number": "PO-2024-0001",
        },
    )
    second = Invoice(
        id="INV-002",
        vendor_name="Acme Corp",
        invoice_number="AC-2024-002",
        amount=1250.00,
        date=date(2024, 1, 20),
        line_items=[LineItem("Marketing Materials", 5, 250.00, 1250.00, "marketing")],
        raw_fields={
            "inv_num": "AC-2024-002",
            "total_amt": "$1,250.00",
            "vendor_id": "ACME_CORP",
            "due_date": "2024-02-20",
            "po_number": "PO-2024-0002",
        },
    )
    return first, second


def reviewer_corrections() -> list[ProposedCorrection]:
    """Corrections a reviewer made to the first invoice."""
    return [
        ProposedCorrection(
            field="vendor_name",
            original_value="Acme Corp",
            corrected_value="ACME Corporation",
            confidence=0.9,
            memory_source_id="human-correction-1",
            reasoning="Reviewer corrected vendor name to official format",
        ),
        ProposedCorrection(
            field="total_amt",
            original_value="$1,250.00",
            corrected_value="1250.00",
            confidence=0.95,
            memory_source_id="human-correction-2",
            reasoning="Reviewer normalized currency format",
        ),
    ]


def run_demo(system: InvoiceMemorySystem) -> None:
    """Cold start, learn from a reviewer, then process a similar invoice."""
    first, second = sample_invoices()

    print("PHASE 1: Processing invoice without prior memory")
    result = system.process_invoice(first)
    print(system.output.to_json(result))

    print("\nPHASE 2: Learning from reviewer corrections")
    corrections = reviewer_corrections()
    events = system.learn_from_corrections(
        first, corrections, field_mappings={"inv_num": "invoice_number"}
    )
    for correction in corrections:
        print(f"  {correction.field}: {correction.original_value!r} -> {correction.corrected_value!r}")
    print(f"  {len(events)} learning event(s) recorded")

    print("\nPHASE 3: Processing a similar invoice with learned memory")
    result = system.process_invoice(second)
    print(system.output.to_json(result))

    print("\nPHASE 4: System statistics")
    print(system.learning.get_learning_statistics().to_display_string())
    print(json.dumps(system.get_system_stats(), indent=2))


def main() -> None:
    """Run the invoice memory demo."""
    # Load environment variables from .env file next to the project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    with InvoiceMemorySystem(settings=settings) as system:
        run_demo(system)


if __name__ == "__main__":
    main()
