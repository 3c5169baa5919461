"""
InvoiceTrail (IVT) - Concurrency & Durability Tests
Version: 1.0.0

- Sequential numbering under parallel allocation
- Ceiling and contention failures
- Optimistic appends racing on one log
- SQLite durability across restarts and direct tampering
"""

import json
import sqlite3
import threading

import pytest

from ivt_core_v1 import (
    AllocationConflict,
    ConcurrentModification,
    SequenceExhausted,
    StorageTimeout,
)
from ivt_audit_chain_v1 import Actor, ChainLinkBuilder, EventKind
from ivt_storage_v1 import InMemoryDocumentStore, SqliteDocumentStore
from ivt_sequence_v1 import SequenceAllocator, period_short_code
from ivt_billing_service_v1 import BillingDocumentService
from ivt_verifier_v1 import FindingCode
from ivt_compliance_v1 import CompliancePayloadEncoder

# ============================================
# MOCK SERVICES
# ============================================

class ContendedStore:
    """Counter store whose lock is never free."""

    def __init__(self):
        self.attempts = 0

    def increment_counter(self, domain: str, period: str, ceiling: int) -> int:
        self.attempts += 1
        raise StorageTimeout("increment_counter exceeded 0.0s")

def run_parallel(count: int, target):
    """Run `target(index)` on `count` threads released together. Returns results and errors."""
    barrier = threading.Barrier(count)
    results, errors = [None] * count, [None] * count

    def worker(index):
        barrier.wait()
        try:
            results[index] = target(index)
        except Exception as e:
            errors[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors

# ============================================
# SEQUENCE ALLOCATOR
# ============================================

class TestSequenceAllocator:
    """Strictly increasing, gap-free numbering."""

    def test_two_concurrent_allocations(self, store):
        """Counter at 41, two callers race -> 42 and 43, never the same value."""
        store.seed_counter("invoice", "2025", 41)
        allocator = SequenceAllocator(store, backoff_seconds=0)

        results, errors = run_parallel(2, lambda _: allocator.next_identifier("invoice", "2025"))

        assert errors == [None, None]
        assert sorted(results) == ["25-0042", "25-0043"]
        assert store.read_counter("invoice", "2025") == 43

    def test_many_concurrent_allocations_are_contiguous(self, store):
        allocator = SequenceAllocator(store, backoff_seconds=0)
        results, errors = run_parallel(50, lambda _: allocator.next_number("invoice", "2025"))

        assert not any(errors)
        assert sorted(results) == list(range(1, 51))

    def test_domains_and_periods_are_independent(self, store):
        allocator = SequenceAllocator(store)
        assert allocator.next_identifier("invoice", "2025") == "25-0001"
        assert allocator.next_identifier("invoice", "2026") == "26-0001"
        assert allocator.next_identifier("credit_note", "2025") == "R25-0001"
        assert allocator.next_identifier("invoice", "2025") == "25-0002"

    def test_period_short_code(self):
        assert period_short_code("2025") == "25"
        assert period_short_code("2025-Q1") == "2025-Q1"

    def test_seed_never_lowers(self, store):
        store.seed_counter("invoice", "2025", 10)
        store.seed_counter("invoice", "2025", 3)
        assert store.read_counter("invoice", "2025") == 10

    def test_ceiling_raises_exhausted(self, store):
        allocator = SequenceAllocator(store, width=1)
        store.seed_counter("invoice", "2025", 9)

        with pytest.raises(SequenceExhausted):
            allocator.next_number("invoice", "2025")
        assert store.read_counter("invoice", "2025") == 9

    def test_last_value_below_ceiling_is_issued(self, store):
        allocator = SequenceAllocator(store, width=1)
        store.seed_counter("invoice", "2025", 8)
        assert allocator.next_identifier("invoice", "2025") == "25-9"
        with pytest.raises(SequenceExhausted):
            allocator.next_identifier("invoice", "2025")

    def test_contention_exhausts_retries(self):
        contended = ContendedStore()
        allocator = SequenceAllocator(contended, max_retries=4, backoff_seconds=0)

        with pytest.raises(AllocationConflict):
            allocator.next_number("invoice", "2025")
        assert contended.attempts == 4

    def test_held_lock_becomes_allocation_conflict(self):
        store = InMemoryDocumentStore(timeout=0.01)
        allocator = SequenceAllocator(store, max_retries=2, backoff_seconds=0)

        store._lock.acquire()
        try:
            with pytest.raises(StorageTimeout):
                store.read_counter("invoice", "2025")
            with pytest.raises(AllocationConflict):
                allocator.next_number("invoice", "2025")
        finally:
            store._lock.release()

        assert allocator.next_number("invoice", "2025") == 1

    def test_invalid_width(self, store):
        with pytest.raises(ValueError):
            SequenceAllocator(store, width=0)

# ============================================
# OPTIMISTIC APPENDS
# ============================================

class TestOptimisticAppend:
    """Each persisted log is a single chain; lost races are surfaced."""

    def test_stale_append_rejected(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        snapshot = store.load_document(document.id)
        builder = ChainLinkBuilder()

        winner = builder.append(snapshot.audit_log, EventKind.VIEWED, actor, "first")
        loser = builder.append(snapshot.audit_log, EventKind.VIEWED, actor, "second")

        assert store.append_event(document.id, winner, snapshot.audit_log.version) == 2
        with pytest.raises(ConcurrentModification):
            store.append_event(document.id, loser, snapshot.audit_log.version)
        assert len(store.load_document(document.id).audit_log) == 2

    def test_two_writers_exactly_one_wins(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        snapshot = store.load_document(document.id)
        builder = ChainLinkBuilder()
        events = [
            builder.append(snapshot.audit_log, EventKind.VIEWED, Actor(f"user-{i}"), f"view {i}")
            for i in range(2)
        ]

        results, errors = run_parallel(
            2, lambda i: store.append_event(document.id, events[i], snapshot.audit_log.version)
        )

        assert sorted(r for r in results if r is not None) == [2]
        assert sum(isinstance(e, ConcurrentModification) for e in errors) == 1
        assert service.verify(document.id).passed

    def test_service_retries_lost_races(self, store, clock, seller, buyer, items, actor):
        service = BillingDocumentService(
            store,
            allocator=SequenceAllocator(store, backoff_seconds=0),
            clock=clock,
            max_append_retries=20,
            backoff_seconds=0,
        )
        document = service.create_document(seller, buyer, items, actor)

        results, errors = run_parallel(
            8, lambda i: service.record_view(document.id, Actor(f"user-{i}"))
        )

        assert not any(errors)
        loaded = store.load_document(document.id)
        assert len(loaded.audit_log) == 9
        assert sorted(event.position for event in results) == list(range(1, 9))
        assert service.verify(document.id).passed

    def test_retry_budget_exhausted(self, store, seller, buyer, items, actor, clock):
        service = BillingDocumentService(store, clock=clock, max_append_retries=2, backoff_seconds=0)
        document = service.create_document(seller, buyer, items, actor)
        intruder = ChainLinkBuilder(clock=clock)

        def interfering_mutation(snapshot):
            # Another writer lands between our read and our append
            current = store.load_document(document.id)
            store.append_event(
                document.id,
                intruder.append(current.audit_log, EventKind.VIEWED, Actor("intruder"), "view"),
                current.audit_log.version,
            )
            return None, None

        with pytest.raises(ConcurrentModification):
            service.record_event(document.id, EventKind.VIEWED, actor, "view", mutation=interfering_mutation)

        loaded = store.load_document(document.id)
        assert [e.actor_id for e in loaded.audit_log][1:] == ["intruder", "intruder"]
        assert service.verify(document.id).passed

    def test_export_payload_matches_recorded_snapshot(self, store, clock, seller, buyer, items, actor):
        class AmendingEncoder(CompliancePayloadEncoder):
            # An amendment lands between the first encode and its append
            amended = False

            def encode(self, document):
                if not self.amended:
                    self.amended = True
                    service.amend_line_items(document.id, items[:1], actor, "shipping waived")
                return super().encode(document)

        service = BillingDocumentService(
            store,
            allocator=SequenceAllocator(store, backoff_seconds=0),
            encoder=AmendingEncoder(),
            clock=clock,
            backoff_seconds=0,
        )
        document = service.create_document(seller, buyer, items, actor)

        payload = CompliancePayloadEncoder.decode(service.export(document.id, actor))

        assert payload["t"] == "181.50"
        loaded = store.load_document(document.id)
        assert [e.kind for e in loaded.audit_log][1:] == [EventKind.MODIFIED, EventKind.EXPORTED]
        assert service.verify(document.id).passed

# ============================================
# SQLITE STORE
# ============================================

class TestSqliteStore:
    """Durability across restarts and tamper detection on disk."""

    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "ivt.db")

    def make_service(self, path, clock):
        store = SqliteDocumentStore(path)
        return BillingDocumentService(
            store,
            allocator=SequenceAllocator(store, backoff_seconds=0),
            clock=clock,
            backoff_seconds=0,
        )

    def test_log_survives_restart(self, db_path, clock, seller, buyer, items, actor, origin):
        first = self.make_service(db_path, clock)
        document = first.create_document(seller, buyer, items, actor, origin)
        first.transmit(document.id, actor, "ana@example.com", origin)

        restarted = self.make_service(db_path, clock)
        loaded = restarted.get_document(document.id)
        assert [e.kind for e in loaded.audit_log] == [EventKind.CREATED, EventKind.TRANSMITTED]
        assert loaded.audit_log.events[0].origin == origin
        assert restarted.verify(document.id).passed

        # Numbering continues from the persisted counter
        assert restarted.create_document(seller, buyer, items, actor).id == "25-0002"

    def test_direct_update_is_detected(self, db_path, clock, seller, buyer, items, actor):
        service = self.make_service(db_path, clock)
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)

        conn = sqlite3.connect(db_path)
        try:
            (body,) = conn.execute(
                "SELECT body FROM audit_events WHERE document_id = ? AND position = 1",
                (document.id,),
            ).fetchone()
            record = json.loads(body)
            record['actor_id'] = "someone-else"
            conn.execute(
                "UPDATE audit_events SET body = ? WHERE document_id = ? AND position = 1",
                (json.dumps(record), document.id),
            )
            conn.commit()
        finally:
            conn.close()

        report = service.verify(document.id)
        assert report.positions() == [1]
        assert report.has(FindingCode.DIGEST_MISMATCH, 1)

    @pytest.mark.parametrize("corrupt", [
        lambda body: body.replace('"kind": "viewed"', '"kind": "viewee"'),
        lambda body: body[:-1],
    ])
    def test_corrupted_row_is_reported(self, db_path, clock, seller, buyer, items, actor, corrupt):
        service = self.make_service(db_path, clock)
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)
        service.record_view(document.id, actor)

        conn = sqlite3.connect(db_path)
        try:
            (body,) = conn.execute(
                "SELECT body FROM audit_events WHERE document_id = ? AND position = 1",
                (document.id,),
            ).fetchone()
            conn.execute(
                "UPDATE audit_events SET body = ? WHERE document_id = ? AND position = 1",
                (corrupt(body), document.id),
            )
            conn.commit()
        finally:
            conn.close()

        report = service.verify(document.id)
        assert not report.passed
        assert report.has(FindingCode.UNREADABLE_EVENT, 1)
        assert 1 in report.positions()

    def test_stored_total_edit_is_detected(self, db_path, clock, seller, buyer, items, actor):
        service = self.make_service(db_path, clock)
        document = service.create_document(seller, buyer, items, actor)

        conn = sqlite3.connect(db_path)
        try:
            (body,) = conn.execute(
                "SELECT body FROM documents WHERE document_id = ?", (document.id,)
            ).fetchone()
            record = json.loads(body)
            record['total'] = 1
            conn.execute(
                "UPDATE documents SET body = ? WHERE document_id = ?", (json.dumps(record), document.id)
            )
            conn.commit()
        finally:
            conn.close()

        report = service.verify(document.id)
        assert [f.code for f in report.findings] == [FindingCode.TOTALS_MISMATCH]

    def test_concurrent_allocation(self, db_path):
        store = SqliteDocumentStore(db_path)
        allocator = SequenceAllocator(store, backoff_seconds=0.01)

        results, errors = run_parallel(10, lambda _: allocator.next_number("invoice", "2025"))

        assert not any(errors)
        assert sorted(results) == list(range(1, 11))
        assert store.read_counter("invoice", "2025") == 10

    def test_stale_append_rejected(self, db_path, clock, seller, buyer, items, actor):
        service = self.make_service(db_path, clock)
        document = service.create_document(seller, buyer, items, actor)
        snapshot = service.store.load_document(document.id)
        builder = ChainLinkBuilder(clock=clock)

        first = builder.append(snapshot.audit_log, EventKind.VIEWED, actor, "first")
        second = builder.append(snapshot.audit_log, EventKind.VIEWED, actor, "second")
        service.store.append_event(document.id, first, 1)
        with pytest.raises(ConcurrentModification):
            service.store.append_event(document.id, second, 1)

    def test_locked_database_times_out(self, db_path):
        store = SqliteDocumentStore(db_path, timeout=0.05)
        blocker = sqlite3.connect(db_path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StorageTimeout):
                store.increment_counter("invoice", "2025", 9999)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert store.increment_counter("invoice", "2025", 9999) == 1

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
