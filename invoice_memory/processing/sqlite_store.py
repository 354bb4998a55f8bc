"""
SQLite-backed pattern store with one transaction per write.
"""

import functools
import json
import logging
import random
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from ..config import CORRECTION_APPROVAL_DELTA, CORRECTION_REJECTION_DELTA
from ..constants import (
    ENTITY_CORRECTION,
    ENTITY_RESOLUTION,
    ENTITY_VENDOR,
    OP_ADJUST_VENDOR_CONFIDENCE,
    OP_STORE_CORRECTION,
    OP_STORE_RESOLUTION,
    OP_STORE_VENDOR,
    OP_UPDATE_CORRECTION_FEEDBACK,
    OP_UPDATE_VENDOR_USAGE,
)
from ..exceptions import PatternNotFoundError, StoreError
from ..models.audit import AuditEntry
from ..models.memory import (
    CorrectionPattern,
    NormalizationRule,
    ResolutionMatchPolicy,
    ResolutionOutcome,
    VendorPattern,
    clamp_confidence,
)
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS vendor_patterns (
      id TEXT PRIMARY KEY,
      vendor_name TEXT NOT NULL,
      field_mappings TEXT NOT NULL,
      normalization_rules TEXT NOT NULL,
      confidence_score REAL NOT NULL CHECK (confidence_score >= 0 AND confidence_score <= 1),
      usage_count INTEGER NOT NULL DEFAULT 0,
      last_used TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS correction_patterns (
      id TEXT PRIMARY KEY,
      field_name TEXT NOT NULL,
      original_value TEXT NOT NULL,
      corrected_value TEXT NOT NULL,
      vendor_name TEXT,
      confidence_score REAL NOT NULL CHECK (confidence_score >= 0 AND confidence_score <= 1),
      approval_count INTEGER NOT NULL DEFAULT 0,
      rejection_count INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS resolution_outcomes (
      id TEXT PRIMARY KEY,
      invoice_pattern TEXT NOT NULL,
      decision TEXT NOT NULL CHECK (decision IN ('auto-accept', 'auto-correct', 'human-review')),
      confidence_score REAL NOT NULL CHECK (confidence_score >= 0 AND confidence_score <= 1),
      outcome_success INTEGER NOT NULL,
      reasoning TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_entries (
      seq INTEGER PRIMARY KEY AUTOINCREMENT,
      id TEXT NOT NULL UNIQUE,
      operation TEXT NOT NULL,
      entity_type TEXT NOT NULL,
      entity_id TEXT NOT NULL,
      before_state TEXT,
      after_state TEXT,
      reasoning TEXT NOT NULL,
      confidence_score REAL,
      timestamp TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_vendor_name ON vendor_patterns(vendor_name)",
    "CREATE INDEX IF NOT EXISTS idx_correction_field ON correction_patterns(field_name, vendor_name)",
    "CREATE INDEX IF NOT EXISTS idx_resolution_pattern ON resolution_outcomes(invoice_pattern)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_entries(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_entries(timestamp)",
)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _dump(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value, ensure_ascii=False, default=str) if value is not None else None


def retry_on_locked(
    max_retries: int = 3, base_delay: float = 0.05, max_delay: float = 1.0
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a store call with exponential backoff while SQLite reports a lock.

    Any other database error, or exhausted retries, surfaces as StoreError.
    Domain errors such as PatternNotFoundError pass through untouched.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    locked = "locked" in str(e).lower() or "busy" in str(e).lower()
                    if not locked or attempt >= max_retries:
                        raise StoreError(f"{func.__name__} failed: {e}") from e
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    delay += random.uniform(0, delay * 0.1)
                    logger.warning(
                        f"SQLite busy during {func.__name__}, retrying in {delay:.2f}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(delay)
                    attempt += 1
                except sqlite3.Error as e:
                    raise StoreError(f"{func.__name__} failed: {e}") from e

        return wrapper

    return decorator


class SqlitePatternStore(PatternStore):
    """Pattern store persisted in a SQLite database file.

    Each call opens its own connection, so the store can be shared between
    threads. WAL journaling lets reads proceed while another call writes.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        self.db_path = str(db_path)
        self.timeout = timeout
        self._closed = False
        self._init_lock = threading.Lock()
        self.init_db()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StoreError("Pattern store is closed")
        con = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        con.row_factory = sqlite3.Row
        try:
            yield con
        finally:
            con.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")

    @retry_on_locked()
    def init_db(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._init_lock, self._conn() as con:
            con.execute("PRAGMA journal_mode=WAL;")
            for statement in SCHEMA:
                con.execute(statement)
        logger.debug(f"Initialized pattern store at {self.db_path}")

    # Row conversion

    @staticmethod
    def _vendor_from_row(row: sqlite3.Row) -> VendorPattern:
        return VendorPattern(
            id=row["id"],
            vendor_name=row["vendor_name"],
            field_mappings=json.loads(row["field_mappings"]),
            normalization_rules=[
                NormalizationRule(**rule) for rule in json.loads(row["normalization_rules"])
            ],
            confidence_score=row["confidence_score"],
            usage_count=row["usage_count"],
            last_used=datetime.fromisoformat(row["last_used"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _correction_from_row(row: sqlite3.Row) -> CorrectionPattern:
        return CorrectionPattern(
            id=row["id"],
            field_name=row["field_name"],
            original_value=row["original_value"],
            corrected_value=row["corrected_value"],
            vendor_name=row["vendor_name"],
            confidence_score=row["confidence_score"],
            approval_count=row["approval_count"],
            rejection_count=row["rejection_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _resolution_from_row(row: sqlite3.Row) -> ResolutionOutcome:
        return ResolutionOutcome(
            id=row["id"],
            invoice_pattern=row["invoice_pattern"],
            decision=row["decision"],
            confidence_score=row["confidence_score"],
            outcome_success=bool(row["outcome_success"]),
            reasoning=row["reasoning"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _audit_from_row(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            operation=row["operation"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            before_state=json.loads(row["before_state"]) if row["before_state"] else None,
            after_state=json.loads(row["after_state"]) if row["after_state"] else None,
            reasoning=row["reasoning"],
            confidence_score=row["confidence_score"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    @staticmethod
    def _insert_audit(con: sqlite3.Connection, entry: AuditEntry) -> None:
        con.execute(
            "INSERT INTO audit_entries(id, operation, entity_type, entity_id, before_state, "
            "after_state, reasoning, confidence_score, timestamp) VALUES (?,?,?,?,?,?,?,?,?)",
            (
                entry.id,
                entry.operation,
                entry.entity_type,
                entry.entity_id,
                _dump(entry.before_state),
                _dump(entry.after_state),
                entry.reasoning,
                entry.confidence_score,
                _ts(entry.timestamp),
            ),
        )

    # Vendor patterns

    @retry_on_locked()
    def store_vendor_pattern(self, pattern: VendorPattern) -> None:
        with self._transaction() as con:
            row = con.execute("SELECT * FROM vendor_patterns WHERE id=?", (pattern.id,)).fetchone()
            before = self._vendor_from_row(row).to_dict() if row else None
            after = pattern.to_dict()
            con.execute(
                "INSERT OR REPLACE INTO vendor_patterns(id, vendor_name, field_mappings, "
                "normalization_rules, confidence_score, usage_count, last_used, created_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (
                    pattern.id,
                    pattern.vendor_name,
                    json.dumps(pattern.field_mappings, ensure_ascii=False),
                    json.dumps(after["normalization_rules"], ensure_ascii=False),
                    pattern.confidence_score,
                    pattern.usage_count,
                    _ts(pattern.last_used),
                    _ts(pattern.created_at),
                ),
            )
            self._insert_audit(con, AuditEntry(
                operation=OP_STORE_VENDOR,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern.id,
                before_state=before,
                after_state=after,
                reasoning=f"Stored vendor pattern for {pattern.vendor_name}",
                confidence_score=pattern.confidence_score,
            ))

    @retry_on_locked()
    def get_vendor_patterns(self, vendor_name: str) -> list[VendorPattern]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM vendor_patterns WHERE vendor_name=? "
                "ORDER BY confidence_score DESC, last_used DESC",
                (vendor_name,),
            ).fetchall()
        return [self._vendor_from_row(row) for row in rows]

    @retry_on_locked()
    def get_vendor_pattern(self, pattern_id: str) -> VendorPattern | None:
        with self._conn() as con:
            row = con.execute("SELECT * FROM vendor_patterns WHERE id=?", (pattern_id,)).fetchone()
        return self._vendor_from_row(row) if row else None

    @retry_on_locked()
    def increment_vendor_usage(self, pattern_id: str) -> VendorPattern:
        with self._transaction() as con:
            cur = con.execute(
                "UPDATE vendor_patterns SET usage_count = usage_count + 1, last_used=? WHERE id=?",
                (_ts(datetime.now()), pattern_id),
            )
            if cur.rowcount == 0:
                raise PatternNotFoundError(ENTITY_VENDOR, pattern_id)
            row = con.execute("SELECT * FROM vendor_patterns WHERE id=?", (pattern_id,)).fetchone()
            pattern = self._vendor_from_row(row)
            self._insert_audit(con, AuditEntry(
                operation=OP_UPDATE_VENDOR_USAGE,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern_id,
                reasoning=f"Usage count raised to {pattern.usage_count}",
            ))
        return pattern

    @retry_on_locked()
    def adjust_vendor_confidence(
        self, pattern_id: str, delta: float, reasoning: str = ""
    ) -> tuple[VendorPattern, VendorPattern]:
        with self._transaction() as con:
            row = con.execute("SELECT * FROM vendor_patterns WHERE id=?", (pattern_id,)).fetchone()
            if row is None:
                raise PatternNotFoundError(ENTITY_VENDOR, pattern_id)
            before = self._vendor_from_row(row)
            new_confidence = clamp_confidence(before.confidence_score + delta)
            con.execute(
                "UPDATE vendor_patterns SET confidence_score=? WHERE id=?",
                (new_confidence, pattern_id),
            )
            after = self._vendor_from_row(
                con.execute("SELECT * FROM vendor_patterns WHERE id=?", (pattern_id,)).fetchone()
            )
            self._insert_audit(con, AuditEntry(
                operation=OP_ADJUST_VENDOR_CONFIDENCE,
                entity_type=ENTITY_VENDOR,
                entity_id=pattern_id,
                before_state=before.to_dict(),
                after_state=after.to_dict(),
                reasoning=reasoning or f"Vendor confidence adjusted by {delta:+.2f}",
                confidence_score=after.confidence_score,
            ))
        return before, after

    # Correction patterns

    @retry_on_locked()
    def store_correction_pattern(self, pattern: CorrectionPattern) -> None:
        with self._transaction() as con:
            row = con.execute(
                "SELECT * FROM correction_patterns WHERE id=?", (pattern.id,)
            ).fetchone()
            before = self._correction_from_row(row).to_dict() if row else None
            con.execute(
                "INSERT OR REPLACE INTO correction_patterns(id, field_name, original_value, "
                "corrected_value, vendor_name, confidence_score, approval_count, "
                "rejection_count, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    pattern.id,
                    pattern.field_name,
                    pattern.original_value,
                    pattern.corrected_value,
                    pattern.vendor_name,
                    pattern.confidence_score,
                    pattern.approval_count,
                    pattern.rejection_count,
                    _ts(pattern.created_at),
                ),
            )
            self._insert_audit(con, AuditEntry(
                operation=OP_STORE_CORRECTION,
                entity_type=ENTITY_CORRECTION,
                entity_id=pattern.id,
                before_state=before,
                after_state=pattern.to_dict(),
                reasoning=f"Stored correction pattern for field {pattern.field_name}",
                confidence_score=pattern.confidence_score,
            ))

    @retry_on_locked()
    def get_correction_patterns(
        self, field_name: str, vendor_name: str | None = None
    ) -> list[CorrectionPattern]:
        query = "SELECT * FROM correction_patterns WHERE field_name=?"
        params: list[Any] = [field_name]
        if vendor_name is not None:
            query += " AND (vendor_name=? OR vendor_name IS NULL)"
            params.append(vendor_name)
        query += " ORDER BY confidence_score DESC, created_at DESC"
        with self._conn() as con:
            rows = con.execute(query, params).fetchall()
        return [self._correction_from_row(row) for row in rows]

    @retry_on_locked()
    def get_correction_pattern(self, pattern_id: str) -> CorrectionPattern | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM correction_patterns WHERE id=?", (pattern_id,)
            ).fetchone()
        return self._correction_from_row(row) if row else None

    @retry_on_locked()
    def update_correction_feedback(
        self,
        pattern_id: str,
        approved: bool,
        increment: float = CORRECTION_APPROVAL_DELTA,
        decrement: float = CORRECTION_REJECTION_DELTA,
    ) -> tuple[CorrectionPattern, CorrectionPattern]:
        with self._transaction() as con:
            row = con.execute(
                "SELECT * FROM correction_patterns WHERE id=?", (pattern_id,)
            ).fetchone()
            if row is None:
                raise PatternNotFoundError(ENTITY_CORRECTION, pattern_id)
            before = self._correction_from_row(row)
            if approved:
                con.execute(
                    "UPDATE correction_patterns SET approval_count = approval_count + 1, "
                    "confidence_score=? WHERE id=?",
                    (clamp_confidence(before.confidence_score + increment), pattern_id),
                )
            else:
                con.execute(
                    "UPDATE correction_patterns SET rejection_count = rejection_count + 1, "
                    "confidence_score=? WHERE id=?",
                    (clamp_confidence(before.confidence_score - decrement), pattern_id),
                )
            after = self._correction_from_row(
                con.execute("SELECT * FROM correction_patterns WHERE id=?", (pattern_id,)).fetchone()
            )
            self._insert_audit(con, AuditEntry(
                operation=OP_UPDATE_CORRECTION_FEEDBACK,
                entity_type=ENTITY_CORRECTION,
                entity_id=pattern_id,
                before_state=before.to_dict(),
                after_state=after.to_dict(),
                reasoning=(
                    f"Updated correction pattern based on "
                    f"{'positive' if approved else 'negative'} feedback"
                ),
                confidence_score=after.confidence_score,
            ))
        return before, after

    # Resolution outcomes

    @retry_on_locked()
    def store_resolution_outcome(self, outcome: ResolutionOutcome) -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT INTO resolution_outcomes(id, invoice_pattern, decision, confidence_score, "
                "outcome_success, reasoning, created_at) VALUES (?,?,?,?,?,?,?)",
                (
                    outcome.id,
                    outcome.invoice_pattern,
                    outcome.decision,
                    outcome.confidence_score,
                    int(outcome.outcome_success),
                    outcome.reasoning,
                    _ts(outcome.created_at),
                ),
            )
            self._insert_audit(con, AuditEntry(
                operation=OP_STORE_RESOLUTION,
                entity_type=ENTITY_RESOLUTION,
                entity_id=outcome.id,
                after_state=outcome.to_dict(),
                reasoning=f"Stored resolution outcome for pattern: {outcome.invoice_pattern}",
                confidence_score=outcome.confidence_score,
            ))

    @retry_on_locked()
    def get_resolution_outcomes(
        self,
        pattern_key: str,
        match: ResolutionMatchPolicy = ResolutionMatchPolicy.EXACT,
    ) -> list[ResolutionOutcome]:
        if match is ResolutionMatchPolicy.CONTAINS:
            where = "lower(invoice_pattern) LIKE ? ESCAPE '\\'"
            escaped = (
                pattern_key.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            param = f"%{escaped}%"
        else:
            where = "invoice_pattern = ?"
            param = pattern_key
        with self._conn() as con:
            rows = con.execute(
                f"SELECT * FROM resolution_outcomes WHERE {where} "
                "ORDER BY confidence_score DESC, created_at DESC",
                (param,),
            ).fetchall()
        return [self._resolution_from_row(row) for row in rows]

    @retry_on_locked()
    def get_resolution_outcome(self, outcome_id: str) -> ResolutionOutcome | None:
        with self._conn() as con:
            row = con.execute(
                "SELECT * FROM resolution_outcomes WHERE id=?", (outcome_id,)
            ).fetchone()
        return self._resolution_from_row(row) if row else None

    # Audit log

    @retry_on_locked()
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._transaction() as con:
            self._insert_audit(con, entry)
        return entry

    @retry_on_locked()
    def query_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        operation: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        query = "SELECT * FROM audit_entries WHERE 1=1"
        params: list[Any] = []
        if entity_type:
            query += " AND entity_type=?"
            params.append(entity_type)
        if entity_id:
            query += " AND entity_id=?"
            params.append(entity_id)
        if operation:
            query += " AND operation=?"
            params.append(operation)
        if start_time:
            query += " AND timestamp>=?"
            params.append(_ts(start_time))
        if end_time:
            query += " AND timestamp<=?"
            params.append(_ts(end_time))
        query += " ORDER BY timestamp DESC, seq DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._conn() as con:
            rows = con.execute(query, params).fetchall()
        return [self._audit_from_row(row) for row in rows]

    @retry_on_locked()
    def get_counts(self) -> dict[str, int]:
        tables = {
            "vendor_patterns": "vendor_patterns",
            "correction_patterns": "correction_patterns",
            "resolution_outcomes": "resolution_outcomes",
            "audit_entries": "audit_entries",
        }
        with self._conn() as con:
            return {
                name: con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for name, table in tables.items()
            }

    def close(self) -> None:
        self._closed = True
