"""
InvoiceTrail (IVT) - Durable Storage
Version: 1.0.0

Key-addressable document store with optimistic appends to audit logs and an
atomic counter primitive for sequential numbering.

Two implementations share one contract:
- InMemoryDocumentStore: process-local, for tests and embedding
- SqliteDocumentStore: durable across restarts, serializable transactions
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple
import json
import sqlite3
import threading

from ivt_core_v1 import (
    STORAGE_TIMEOUT_SECONDS,
    ConcurrentModification,
    DocumentNotFound,
    DuplicateDocument,
    InvariantViolation,
    SequenceExhausted,
    StorageTimeout,
    logger,
)
from ivt_documents_v1 import BillingDocument
from ivt_audit_chain_v1 import AuditEvent, AuditLog, EventKind, decode_event

# ============================================
# STORE CONTRACT
# ============================================

class DocumentStore(ABC):
    """Storage contract consumed by the audit chain and the allocator."""

    @abstractmethod
    def insert_document(self, document: BillingDocument, created_event: AuditEvent):
        """Persist a new document together with its single 'created' event."""

    @abstractmethod
    def load_document(self, document_id: str) -> BillingDocument:
        """Read a consistent snapshot of a document and its audit log."""

    @abstractmethod
    def append_event(
        self,
        document_id: str,
        event: AuditEvent,
        expected_version: int,
        document: Optional[BillingDocument] = None,
    ) -> int:
        """
        Append `event` iff the log still has `expected_version` events.

        When `document` is given its fields are replaced in the same atomic
        step. Returns the new log version.
        """

    @abstractmethod
    def increment_counter(self, domain: str, period: str, ceiling: int) -> int:
        """Atomically increment and return the (domain, period) counter."""

    @abstractmethod
    def read_counter(self, domain: str, period: str) -> int:
        pass

    @abstractmethod
    def seed_counter(self, domain: str, period: str, value: int):
        """Raise a counter to `value` (importing existing numbering). Never lowers it."""

    @abstractmethod
    def list_document_ids(self) -> List[str]:
        pass

    @staticmethod
    def _check_created(document: BillingDocument, created_event: AuditEvent):
        if created_event.kind is not EventKind.CREATED or created_event.position != 0:
            raise InvariantViolation(
                f"Document {document.id} must be inserted with its 'created' event at position 0"
            )

# ============================================
# IN-MEMORY STORE
# ============================================

class InMemoryDocumentStore(DocumentStore):
    """
    In-memory store (production would use SqliteDocumentStore or a database).

    Records are kept in their persisted dict form so a load never hands out
    shared mutable state.
    """

    def __init__(self, timeout: float = STORAGE_TIMEOUT_SECONDS):
        self.timeout = timeout
        self.records: Dict[str, Dict[str, Any]] = {}
        self.counters: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self, operation: str):
        if not self._lock.acquire(timeout=self.timeout):
            logger.error(f"[STORAGE] {operation} timed out after {self.timeout}s")
            raise StorageTimeout(f"{operation} exceeded {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def insert_document(self, document: BillingDocument, created_event: AuditEvent):
        self._check_created(document, created_event)
        with self._locked("insert_document"):
            if document.id in self.records:
                raise DuplicateDocument(f"Document {document.id} already exists")
            self.records[document.id] = {
                'document': document.to_dict(),
                'audit_log': [created_event.to_dict()]
            }
        logger.info(f"[STORAGE] Created document {document.id}")

    def load_document(self, document_id: str) -> BillingDocument:
        with self._locked("load_document"):
            record = self.records.get(document_id)
            if record is None:
                raise DocumentNotFound(f"Document {document_id} not found")
            document_data = json.loads(json.dumps(record['document']))
            event_data = json.loads(json.dumps(record['audit_log']))

        document = BillingDocument.from_dict(document_data)
        document.audit_log = AuditLog(
            document_id,
            tuple(decode_event(item, index) for index, item in enumerate(event_data)),
        )
        return document

    def append_event(
        self,
        document_id: str,
        event: AuditEvent,
        expected_version: int,
        document: Optional[BillingDocument] = None,
    ) -> int:
        event_data = event.to_dict()
        document_data = document.to_dict() if document is not None else None

        with self._locked("append_event"):
            record = self.records.get(document_id)
            if record is None:
                raise DocumentNotFound(f"Document {document_id} not found")

            events = record['audit_log']
            head_digest = events[-1]['content_digest'] if events else ""
            if len(events) != expected_version or event.previous_digest != head_digest:
                logger.warning(
                    f"[STORAGE] Append conflict on {document_id}: "
                    f"expected version {expected_version}, found {len(events)}"
                )
                raise ConcurrentModification(
                    f"Audit log of {document_id} changed (expected version "
                    f"{expected_version}, found {len(events)})"
                )

            events.append(event_data)
            if document_data is not None:
                record['document'] = document_data
            return len(events)

    def increment_counter(self, domain: str, period: str, ceiling: int) -> int:
        with self._locked("increment_counter"):
            key = (domain, period)
            current = self.counters.get(key, 0)
            if current >= ceiling:
                raise SequenceExhausted(
                    f"Counter {domain}/{period} reached its ceiling of {ceiling}"
                )
            self.counters[key] = current + 1
            return current + 1

    def read_counter(self, domain: str, period: str) -> int:
        with self._locked("read_counter"):
            return self.counters.get((domain, period), 0)

    def seed_counter(self, domain: str, period: str, value: int):
        with self._locked("seed_counter"):
            key = (domain, period)
            self.counters[key] = max(self.counters.get(key, 0), value)

    def list_document_ids(self) -> List[str]:
        with self._locked("list_document_ids"):
            return list(self.records)

# ============================================
# SQLITE STORE
# ============================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    document_id TEXT PRIMARY KEY,
    body TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_events (
    document_id TEXT NOT NULL REFERENCES documents(document_id),
    position INTEGER NOT NULL,
    body TEXT NOT NULL,
    PRIMARY KEY (document_id, position)
);
CREATE TABLE IF NOT EXISTS sequence_counters (
    domain TEXT NOT NULL,
    period TEXT NOT NULL,
    value INTEGER NOT NULL,
    PRIMARY KEY (domain, period)
);
"""

def _is_busy(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message

def _parse_body(body: str) -> Any:
    """Stored event JSON, or the raw text when it no longer parses."""
    try:
        return json.loads(body)
    except ValueError:
        return body

class SqliteDocumentStore(DocumentStore):
    """
    SQLite-backed store.

    Each operation opens its own connection and runs in a `BEGIN IMMEDIATE`
    transaction, so concurrent writers are serialized by the database.
    Lock waits are bounded by `timeout` and surface as StorageTimeout.
    """

    def __init__(self, path: str, timeout: float = STORAGE_TIMEOUT_SECONDS):
        self.path = path
        self.timeout = timeout
        with self._transaction("init_schema") as conn:
            for statement in SCHEMA.strip().split(";"):
                if statement.strip():
                    conn.execute(statement)
        logger.info(f"[STORAGE] SQLite store ready at {path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)

    @contextmanager
    def _transaction(self, operation: str):
        conn = None
        try:
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                logger.error(f"[STORAGE] {operation} timed out after {self.timeout}s: {e}")
                raise StorageTimeout(f"{operation} exceeded {self.timeout}s") from e
            raise
        finally:
            if conn is not None:
                conn.close()

    def insert_document(self, document: BillingDocument, created_event: AuditEvent):
        self._check_created(document, created_event)
        with self._transaction("insert_document") as conn:
            try:
                conn.execute(
                    "INSERT INTO documents (document_id, body) VALUES (?, ?)",
                    (document.id, json.dumps(document.to_dict())),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateDocument(f"Document {document.id} already exists") from e
            conn.execute(
                "INSERT INTO audit_events (document_id, position, body) VALUES (?, ?, ?)",
                (document.id, 0, json.dumps(created_event.to_dict())),
            )
        logger.info(f"[STORAGE] Created document {document.id}")

    def load_document(self, document_id: str) -> BillingDocument:
        with self._transaction("load_document") as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
            if row is None:
                raise DocumentNotFound(f"Document {document_id} not found")
            event_rows = conn.execute(
                "SELECT body FROM audit_events WHERE document_id = ? ORDER BY position",
                (document_id,),
            ).fetchall()

        document = BillingDocument.from_dict(json.loads(row[0]))
        document.audit_log = AuditLog(
            document_id,
            tuple(decode_event(_parse_body(body), index) for index, (body,) in enumerate(event_rows)),
        )
        return document

    def append_event(
        self,
        document_id: str,
        event: AuditEvent,
        expected_version: int,
        document: Optional[BillingDocument] = None,
    ) -> int:
        with self._transaction("append_event") as conn:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
            if exists is None:
                raise DocumentNotFound(f"Document {document_id} not found")

            head = conn.execute(
                "SELECT position, body FROM audit_events WHERE document_id = ? "
                "ORDER BY position DESC LIMIT 1",
                (document_id,),
            ).fetchone()
            version = head[0] + 1 if head else 0
            head_digest = json.loads(head[1])['content_digest'] if head else ""

            if version != expected_version or event.previous_digest != head_digest:
                logger.warning(
                    f"[STORAGE] Append conflict on {document_id}: "
                    f"expected version {expected_version}, found {version}"
                )
                raise ConcurrentModification(
                    f"Audit log of {document_id} changed (expected version "
                    f"{expected_version}, found {version})"
                )

            conn.execute(
                "INSERT INTO audit_events (document_id, position, body) VALUES (?, ?, ?)",
                (document_id, event.position, json.dumps(event.to_dict())),
            )
            if document is not None:
                conn.execute(
                    "UPDATE documents SET body = ? WHERE document_id = ?",
                    (json.dumps(document.to_dict()), document_id),
                )
            return version + 1

    def increment_counter(self, domain: str, period: str, ceiling: int) -> int:
        with self._transaction("increment_counter") as conn:
            row = conn.execute(
                "SELECT value FROM sequence_counters WHERE domain = ? AND period = ?",
                (domain, period),
            ).fetchone()
            current = row[0] if row else 0
            if current >= ceiling:
                raise SequenceExhausted(
                    f"Counter {domain}/{period} reached its ceiling of {ceiling}"
                )
            conn.execute(
                "INSERT INTO sequence_counters (domain, period, value) VALUES (?, ?, ?) "
                "ON CONFLICT (domain, period) DO UPDATE SET value = excluded.value",
                (domain, period, current + 1),
            )
            return current + 1

    def read_counter(self, domain: str, period: str) -> int:
        with self._transaction("read_counter") as conn:
            row = conn.execute(
                "SELECT value FROM sequence_counters WHERE domain = ? AND period = ?",
                (domain, period),
            ).fetchone()
            return row[0] if row else 0

    def seed_counter(self, domain: str, period: str, value: int):
        with self._transaction("seed_counter") as conn:
            conn.execute(
                "INSERT INTO sequence_counters (domain, period, value) VALUES (?, ?, ?) "
                "ON CONFLICT (domain, period) DO UPDATE SET value = MAX(value, excluded.value)",
                (domain, period, value),
            )

    def list_document_ids(self) -> List[str]:
        with self._transaction("list_document_ids") as conn:
            return [row[0] for row in conn.execute(
                "SELECT document_id FROM documents ORDER BY document_id"
            )]
