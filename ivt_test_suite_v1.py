"""
InvoiceTrail (IVT) - Test Suite
Version: 1.0.0

Unit and scenario coverage for the audit chain:
- Hasher and canonical serialization
- Document totals and lifecycle transitions
- Chain link building and append-only log
- Verification, including single-field tampering of stored events
- Compliance payload derivation
- Billing service lifecycle
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import logging

import pytest

from ivt_core_v1 import (
    SENTINEL_EMPTY,
    ConcurrentModification,
    DocumentNotFound,
    DuplicateDocument,
    Ed25519Signer,
    HashSigner,
    HmacSigner,
    InvariantViolation,
    StorageTimeout,
    canonical_bytes,
    digest,
)
from ivt_documents_v1 import (
    BillingDocument,
    DocumentStatus,
    LineItem,
    build_line_items,
    document_digest,
    format_minor,
    to_minor,
)
from ivt_audit_chain_v1 import (
    AuditLog,
    ChainLinkBuilder,
    EventKind,
    UnreadableEvent,
)
from ivt_verifier_v1 import ChainVerifier, FindingCode
from ivt_compliance_v1 import CompliancePayloadEncoder
from ivt_billing_service_v1 import BillingDocumentService
from ivt_storage_v1 import InMemoryDocumentStore
from ivt_sequence_v1 import SequenceAllocator

from conftest import FakeClock

def make_document(seller, buyer, items, status=DocumentStatus.ISSUED, document_id="25-0001"):
    return BillingDocument(
        id=document_id,
        domain="invoice",
        issue_date=date(2025, 3, 14),
        due_date=date(2025, 4, 13),
        seller=seller,
        buyer=buyer,
        line_items=build_line_items(items),
        status=status,
    )

def flip(value: str) -> str:
    """Flip the lowest bit of the last character."""
    if not value:
        return "0"
    return value[:-1] + chr(ord(value[-1]) ^ 1)

# ============================================
# HASHER
# ============================================

class TestHasher:
    """Deterministic serialization and digest."""

    def test_known_vector(self):
        assert digest(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_key_order_does_not_matter(self):
        assert canonical_bytes({"b": 1, "a": {"y": 2, "x": 3}}) == canonical_bytes({"a": {"x": 3, "y": 2}, "b": 1})

    def test_compact_form(self):
        assert canonical_bytes({"a": [1, "x", None, True]}) == b'{"a":[1,"x",null,true]}'

    def test_floats_rejected(self):
        with pytest.raises(TypeError):
            canonical_bytes({"amount": 10.5})

    def test_naive_datetime_rejected(self):
        with pytest.raises(TypeError):
            canonical_bytes({"at": datetime(2025, 1, 1)})

    def test_datetimes_normalized_to_utc(self):
        madrid = timezone(timedelta(hours=1))
        local = datetime(2025, 1, 1, 11, 0, tzinfo=madrid)
        utc = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert canonical_bytes({"at": local}) == canonical_bytes({"at": utc})

    def test_decimal_fixed_notation(self):
        assert canonical_bytes({"rate": Decimal("21.00")}) == b'{"rate":"21.00"}'

    def test_non_ascii_text_is_utf8(self):
        assert canonical_bytes({"name": "Muñoz"}) == '{"name":"Muñoz"}'.encode("utf-8")

# ============================================
# DOCUMENTS
# ============================================

class TestDocuments:
    """Money arithmetic and lifecycle table."""

    def test_line_item_totals(self):
        item = LineItem(description="A", quantity=2, unit_price=1000, tax_rate=Decimal("21"))
        assert (item.subtotal, item.tax_amount, item.total) == (2000, 420, 2420)

    def test_discount_rounds_half_up(self):
        item = LineItem(description="B", quantity=1, unit_price=999, tax_rate=Decimal("10"), discount=Decimal("10"))
        # 899.1 -> 899, tax 89.9 -> 90
        assert (item.subtotal, item.tax_amount) == (899, 90)

    def test_half_cent_tax_rounds_up(self):
        item = LineItem(description="C", quantity=1, unit_price=5, tax_rate=Decimal("10"))
        assert item.tax_amount == 1

    def test_document_totals(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        assert document.subtotal == 17500
        assert document.tax_total == 3675
        assert document.total == 21175
        assert format_minor(document.total) == "211.75"

    def test_invalid_line_items(self):
        with pytest.raises(InvariantViolation):
            LineItem(description="X", quantity=0, unit_price=100)
        with pytest.raises(InvariantViolation):
            LineItem(description="X", quantity=1, unit_price=100, discount=Decimal("120"))

    def test_document_needs_line_items(self, seller, buyer):
        with pytest.raises(InvariantViolation):
            make_document(seller, buyer, [])

    def test_to_minor(self):
        assert to_minor(Decimal("12.50")) == 1250
        with pytest.raises(InvariantViolation):
            to_minor(Decimal("0.001"))

    def test_terminal_statuses(self, seller, buyer, items):
        paid = make_document(seller, buyer, items, status=DocumentStatus.PAID)
        with pytest.raises(InvariantViolation):
            paid.with_status(DocumentStatus.VOIDED)

    def test_allowed_transition(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        assert document.with_status(DocumentStatus.TRANSMITTED).status is DocumentStatus.TRANSMITTED
        assert document.status is DocumentStatus.ISSUED

    def test_digest_ignores_status(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        assert document_digest(document) == document_digest(document.with_status(DocumentStatus.PAID))

    def test_digest_covers_amounts(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        changed = make_document(seller, buyer, items[:1])
        assert document_digest(document) != document_digest(changed)

    def test_persisted_round_trip(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        assert BillingDocument.from_dict(document.to_dict()) == document

# ============================================
# CHAIN LINK BUILDER & AUDIT LOG
# ============================================

class TestChainLinkBuilder:
    """Linking, signing and timestamps."""

    def test_first_event_uses_sentinel(self, seller, buyer, items, actor, origin, clock):
        document = make_document(seller, buyer, items)
        builder = ChainLinkBuilder(clock=clock)
        event = builder.append(
            AuditLog(document.id), EventKind.CREATED, actor, "created", origin,
            attestation=document_digest(document),
        )
        assert event.previous_digest == SENTINEL_EMPTY
        assert event.position == 0
        assert event.content_digest == document_digest(document)

    def test_created_requires_attestation(self, actor, clock):
        with pytest.raises(InvariantViolation):
            ChainLinkBuilder(clock=clock).append(AuditLog("25-0001"), EventKind.CREATED, actor, "created")

    def test_next_event_links_to_head(self, seller, buyer, items, actor, clock):
        document = make_document(seller, buyer, items)
        builder = ChainLinkBuilder(clock=clock)
        created = builder.append(AuditLog(document.id), EventKind.CREATED, actor, "c", attestation=document_digest(document))
        log = AuditLog(document.id).append(created)

        viewed = builder.append(log, EventKind.VIEWED, actor, "viewed")
        assert viewed.previous_digest == created.content_digest
        assert viewed.position == 1
        assert viewed.content_digest == digest(viewed.canonical_payload())
        assert viewed.signature == digest(viewed.content_digest.encode("ascii") + viewed.canonical_payload())

    def test_timestamp_never_precedes_head(self, seller, buyer, items, actor):
        document = make_document(seller, buyer, items)
        start = datetime(2025, 3, 14, 10, 0, tzinfo=timezone.utc)
        backwards = FakeClock(start=start, step=timedelta(seconds=-30))
        builder = ChainLinkBuilder(clock=backwards)

        created = builder.append(AuditLog(document.id), EventKind.CREATED, actor, "c", attestation=document_digest(document))
        log = AuditLog(document.id).append(created)
        later = builder.append(log, EventKind.VIEWED, actor, "v")
        assert later.timestamp == created.timestamp

    def test_log_rejects_stale_event(self, seller, buyer, items, actor, clock):
        document = make_document(seller, buyer, items)
        builder = ChainLinkBuilder(clock=clock)
        created = builder.append(AuditLog(document.id), EventKind.CREATED, actor, "c", attestation=document_digest(document))
        log = AuditLog(document.id).append(created)

        first = builder.append(log, EventKind.VIEWED, actor, "first")
        stale = builder.append(log, EventKind.VIEWED, actor, "second")
        extended = log.append(first)

        with pytest.raises(ConcurrentModification):
            extended.append(stale)
        assert len(extended) == 2
        assert len(log) == 1

    def test_log_requires_created_first(self, actor, clock):
        event = ChainLinkBuilder(clock=clock).append(AuditLog("25-0001"), EventKind.VIEWED, actor, "v")
        with pytest.raises(InvariantViolation):
            AuditLog("25-0001").append(event)

# ============================================
# VERIFIER
# ============================================

class TestVerifier:
    """Replay of stored logs, including tampering in storage."""

    def test_empty_log_scenario(self, seller, buyer, items, actor, origin, clock):
        """Empty log, append created -> sentinel previous digest, verify passes."""
        document = make_document(seller, buyer, items)
        builder = ChainLinkBuilder(clock=clock)
        created = builder.append(AuditLog(document.id), EventKind.CREATED, actor, "created", origin,
                                 attestation=document_digest(document))
        document.audit_log = AuditLog(document.id).append(created)

        report = ChainVerifier().verify(document)
        assert created.previous_digest == SENTINEL_EMPTY
        assert report.passed
        assert report.events_checked == 1

    def test_empty_log_fails_structurally(self, seller, buyer, items):
        document = make_document(seller, buyer, items)
        document.audit_log = AuditLog(document.id)
        report = ChainVerifier().verify(document)
        assert not report.passed
        assert [f.code for f in report.findings] == [FindingCode.EMPTY_LOG]

    def test_missing_log_is_reported_not_raised(self, seller, buyer, items):
        report = ChainVerifier().verify(make_document(seller, buyer, items))
        assert report.has(FindingCode.EMPTY_LOG)

    def test_modified_detail_tampering_scenario(self, service, store, seller, buyer, items, actor, origin):
        """created, then modified -> passes; flip one character of the modified detail -> fails at #1."""
        document = service.create_document(seller, buyer, items, actor, origin)
        service.amend_line_items(document.id, items[:1], actor, "shipping waived", origin)
        assert service.verify(document.id).passed

        detail = store.records[document.id]['audit_log'][1]['detail']
        store.records[document.id]['audit_log'][1]['detail'] = flip(detail)

        report = service.verify(document.id)
        assert not report.passed
        assert report.positions() == [1]
        assert report.has(FindingCode.DIGEST_MISMATCH, 1)
        assert report.has(FindingCode.SIGNATURE_MISMATCH, 1)

    @pytest.mark.parametrize("field_name", [
        "position", "kind", "actor_id", "actor_name", "timestamp", "detail",
        "origin", "content_digest", "previous_digest", "signature", "attestation",
    ])
    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_any_field_mutation_fails(self, service, store, seller, buyer, items, actor, origin, field_name, position):
        document = service.create_document(seller, buyer, items, actor, origin)
        service.transmit(document.id, actor, "ana@example.com", origin)
        service.record_view(document.id, actor, origin)
        assert service.verify(document.id).passed

        record = store.records[document.id]['audit_log'][position]
        if field_name == "position":
            record['position'] += 1
        elif field_name == "kind":
            record['kind'] = "modified" if record['kind'] != "modified" else "viewed"
        elif field_name == "timestamp":
            ts = datetime.fromisoformat(record['timestamp']) + timedelta(microseconds=1)
            record['timestamp'] = ts.isoformat()
        elif field_name == "origin":
            record['origin']['address'] = flip(record['origin']['address'])
        elif field_name == "attestation" and record['attestation'] is None:
            record['attestation'] = "0" * 64
        else:
            record[field_name] = flip(record[field_name])

        report = service.verify(document.id)
        assert not report.passed
        assert position in report.positions()

    def test_broken_link_is_cited(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)
        store.records[document.id]['audit_log'][1]['previous_digest'] = "f" * 64
        report = service.verify(document.id)
        assert report.has(FindingCode.BROKEN_LINK, 1)

    def test_total_tampering_after_issue(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        store.records[document.id]['document']['line_items']['L1']['unit_price'] = 1500

        report = service.verify(document.id)
        assert not report.passed
        assert report.has(FindingCode.ATTESTATION_MISMATCH, 0)
        assert report.positions() == [0]
        assert {f.code for f in report.findings} == {
            FindingCode.ATTESTATION_MISMATCH, FindingCode.TOTALS_MISMATCH,
        }

    @pytest.mark.parametrize("amount", [
        ("total",), ("subtotal",), ("tax_total",),
        ("line_items", "L1", "total"), ("line_items", "L2", "tax_amount"),
    ])
    def test_stored_total_tampering(self, service, store, seller, buyer, items, actor, amount):
        document = service.create_document(seller, buyer, items, actor)
        record = store.records[document.id]['document']
        for key in amount[:-1]:
            record = record[key]
        record[amount[-1]] = 1

        report = service.verify(document.id)
        assert not report.passed
        assert [f.code for f in report.findings] == [FindingCode.TOTALS_MISMATCH]
        assert ".".join(amount[1:] or amount) in report.findings[0].message

    def test_stored_total_removed(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        del store.records[document.id]['document']['total']

        report = service.verify(document.id)
        assert report.has(FindingCode.TOTALS_MISMATCH)

    @pytest.mark.parametrize("field_name", ["kind", "timestamp", "position", "origin"])
    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_undecodable_event_is_reported(self, service, store, seller, buyer, items, actor, origin,
                                           field_name, position):
        document = service.create_document(seller, buyer, items, actor, origin)
        service.transmit(document.id, actor, "ana@example.com", origin)
        service.record_view(document.id, actor, origin)

        record = store.records[document.id]['audit_log'][position]
        if field_name == "kind":
            # created -> createe, transmitted -> transmittee, viewed -> viewee
            record['kind'] = flip(record['kind'])
        elif field_name == "timestamp":
            # 2025-03-14 -> 2025,03-14
            record['timestamp'] = record['timestamp'][:4] + flip(record['timestamp'][4]) + record['timestamp'][5:]
        elif field_name == "position":
            record['position'] = "x"
        else:
            record['origin'] = "10.0.0.7"

        report = service.verify(document.id)
        assert not report.passed
        assert report.has(FindingCode.UNREADABLE_EVENT, position)
        assert report.positions() == [position]
        assert report.events_checked == 3

    def test_undecodable_event_keeps_trail_readable(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)
        store.records[document.id]['audit_log'][1]['kind'] = "viewee"

        loaded = service.get_document(document.id)
        assert isinstance(loaded.audit_log.events[1], UnreadableEvent)
        assert loaded.audit_log.events[1].record['kind'] == "viewee"
        assert loaded.audit_log.events[0].kind is EventKind.CREATED

    def test_amendment_reattests(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)
        amendment = service.amend_line_items(document.id, items[:1], actor, "shipping waived")
        assert amendment.attestation is not None
        assert service.verify(document.id).passed
        assert service.get_document(document.id).total == 18150

        store.records[document.id]['document']['line_items']['L1']['quantity'] = 2
        report = service.verify(document.id)
        assert report.has(FindingCode.ATTESTATION_MISMATCH, amendment.position)

    def test_all_findings_collected(self, service, store, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)
        service.record_view(document.id, actor)
        store.records[document.id]['audit_log'][1]['detail'] = "edited"
        store.records[document.id]['audit_log'][2]['actor_id'] = "someone-else"

        report = service.verify(document.id)
        assert report.positions() == [1, 2]
        assert report.to_dict()['passed'] is False

    def test_hmac_chain_needs_matching_key(self, store, seller, buyer, items, actor, clock):
        signer = HmacSigner(b"key-one")
        service = BillingDocumentService(store, builder=ChainLinkBuilder(signer, clock=clock), clock=clock)
        document = service.create_document(seller, buyer, items, actor)
        service.record_view(document.id, actor)

        loaded = store.load_document(document.id)
        assert ChainVerifier(HmacSigner(b"key-one")).verify(loaded).passed
        report = ChainVerifier(HmacSigner(b"key-two")).verify(loaded)
        assert report.has(FindingCode.SIGNATURE_MISMATCH, 0)
        assert report.has(FindingCode.SIGNATURE_MISMATCH, 1)

    def test_ed25519_chain_verifies_with_public_key(self, store, seller, buyer, items, actor, clock):
        signer = Ed25519Signer()
        service = BillingDocumentService(store, builder=ChainLinkBuilder(signer, clock=clock), clock=clock)
        document = service.create_document(seller, buyer, items, actor)
        service.mark_paid(document.id, actor, "card")

        loaded = store.load_document(document.id)
        assert ChainVerifier(Ed25519Signer.for_verification(signer.public_key)).verify(loaded).passed
        assert not ChainVerifier(Ed25519Signer()).verify(loaded).passed
        assert not ChainVerifier(HashSigner()).verify(loaded).passed

# ============================================
# COMPLIANCE PAYLOAD
# ============================================

class TestCompliancePayload:
    """Scannable summary of finalized documents."""

    def test_exact_encoding(self, seller, buyer):
        document = make_document(seller, buyer, [
            LineItem(description="A", quantity=2, unit_price=1000, tax_rate=Decimal("21")),
        ])
        payload = CompliancePayloadEncoder(country_code="ES").encode(document)
        assert payload == (
            b'{"b":"20.00","c":"12345678Z","d":"2025-03-14","i":"B12345678",'
            b'"n":"25-0001","r":"21","s":"ES","t":"24.20","v":"01"}'
        )

    def test_idempotent(self, seller, buyer, items):
        encoder = CompliancePayloadEncoder()
        document = make_document(seller, buyer, items)
        first = encoder.encode(document)
        assert all(encoder.encode(document) == first for _ in range(10))
        assert encoder.encode(BillingDocument.from_dict(document.to_dict())) == first

    def test_exempt_document(self, seller, buyer):
        document = make_document(seller, buyer, [
            LineItem(description="Exempt service", quantity=1, unit_price=5000, tax_rate=Decimal("0")),
        ])
        fields = CompliancePayloadEncoder.decode(CompliancePayloadEncoder().encode(document))
        assert fields['v'] == "02"
        assert fields['r'] == "0"
        assert fields['t'] == "50.00"

    def test_highest_rate_reported(self, seller, buyer):
        document = make_document(seller, buyer, [
            LineItem(description="Books", quantity=1, unit_price=1000, tax_rate=Decimal("4")),
            LineItem(description="Service", quantity=1, unit_price=1000, tax_rate=Decimal("10.50")),
        ])
        assert CompliancePayloadEncoder().fields(document)['r'] == "10.5"

    def test_draft_cannot_be_encoded(self, seller, buyer, items):
        with pytest.raises(InvariantViolation):
            CompliancePayloadEncoder().encode(make_document(seller, buyer, items, status=DocumentStatus.DRAFT))

    def test_decode_rejects_foreign_payload(self):
        with pytest.raises(ValueError):
            CompliancePayloadEncoder.decode(b'{"n":"25-0001"}')

# ============================================
# BILLING SERVICE
# ============================================

class TestBillingService:
    """Lifecycle operations end to end on the in-memory store."""

    def test_create_numbers_and_records(self, service, seller, buyer, items, actor, origin):
        document = service.create_document(seller, buyer, items, actor, origin)
        assert document.id == "25-0001"
        assert document.due_date == date(2025, 4, 13)
        assert [e.kind for e in document.audit_log] == [EventKind.CREATED]
        assert document.audit_log.events[0].origin == origin

        second = service.create_document(seller, buyer, items, actor)
        assert second.id == "25-0002"

    def test_credit_notes_have_their_own_series(self, service, seller, buyer, items, actor):
        service.create_document(seller, buyer, items, actor)
        credit = service.create_document(seller, buyer, items, actor, domain="credit_note")
        assert credit.id == "R25-0001"

    def test_full_lifecycle(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor, status=DocumentStatus.DRAFT)
        service.issue(document.id, actor)
        service.transmit(document.id, actor, "ana@example.com")
        service.mark_overdue(document.id, actor)
        service.mark_paid(document.id, actor, "bank transfer")

        stored = service.get_document(document.id)
        assert stored.status is DocumentStatus.PAID
        assert stored.payment_method == "bank transfer"
        assert stored.paid_at is not None
        assert [e.kind for e in stored.audit_log] == [
            EventKind.CREATED, EventKind.MODIFIED, EventKind.TRANSMITTED,
            EventKind.MODIFIED, EventKind.PAID,
        ]
        assert service.verify(document.id).passed

    def test_invalid_transition_leaves_log_untouched(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.mark_paid(document.id, actor, "cash")
        with pytest.raises(InvariantViolation):
            service.void(document.id, actor, "duplicate")
        assert len(service.get_document(document.id).audit_log) == 2

    def test_created_as_paid(self, service, seller, buyer, items, actor):
        document = service.create_document(
            seller, buyer, items, actor, status=DocumentStatus.PAID, payment_method="card"
        )
        assert document.status is DocumentStatus.PAID
        assert service.verify(document.id).passed
        with pytest.raises(InvariantViolation):
            service.create_document(seller, buyer, items, actor, status=DocumentStatus.PAID)

    def test_amend_after_payment_rejected(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        service.mark_paid(document.id, actor, "cash")
        with pytest.raises(InvariantViolation):
            service.amend_line_items(document.id, items[:1], actor, "late change")

    def test_export_records_event(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        payload = service.export(document.id, actor)
        assert payload == service.compliance_payload(document.id)
        assert service.get_document(document.id).audit_log.head.kind is EventKind.EXPORTED
        assert service.verify(document.id).passed

    def test_draft_export_rejected_without_event(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor, status=DocumentStatus.DRAFT)
        with pytest.raises(InvariantViolation):
            service.export(document.id, actor)
        assert len(service.get_document(document.id).audit_log) == 1

    def test_failed_insert_burns_number(self, clock, seller, buyer, items, actor, caplog):
        class FlakyStore(InMemoryDocumentStore):
            failures = 1

            def insert_document(self, document, created_event):
                if self.failures:
                    self.failures -= 1
                    raise StorageTimeout("insert_document exceeded 2.0s")
                super().insert_document(document, created_event)

        flaky = FlakyStore(timeout=2.0)
        service = BillingDocumentService(flaky, allocator=SequenceAllocator(flaky, backoff_seconds=0), clock=clock)

        with caplog.at_level(logging.WARNING, logger="IVT.AuditChain"):
            with pytest.raises(StorageTimeout):
                service.create_document(seller, buyer, items, actor)
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("25-0001" in r.getMessage() and "burned" in r.getMessage() for r in warnings)

        assert service.create_document(seller, buyer, items, actor).id == "25-0002"
        assert flaky.list_document_ids() == ["25-0002"]

    def test_export_encodes_snapshot_it_records(self, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        payload = CompliancePayloadEncoder.decode(service.export(document.id, actor))
        assert payload["n"] == document.id
        assert payload["t"] == "211.75"

    def test_unknown_document(self, service, actor):
        with pytest.raises(DocumentNotFound):
            service.record_view("25-9999", actor)

    def test_duplicate_identifier_rejected(self, store, service, seller, buyer, items, actor):
        document = service.create_document(seller, buyer, items, actor)
        loaded = store.load_document(document.id)
        with pytest.raises(DuplicateDocument):
            store.insert_document(loaded, loaded.audit_log.events[0])

    def test_list_by_status(self, service, seller, buyer, items, actor):
        first = service.create_document(seller, buyer, items, actor)
        service.create_document(seller, buyer, items, actor)
        service.void(first.id, actor, "issued in error")
        assert [d.id for d in service.list_documents(DocumentStatus.VOIDED)] == [first.id]
        assert len(service.list_documents()) == 2

    def test_period_follows_issue_date(self, store, seller, buyer, items, actor, clock):
        service = BillingDocumentService(store, allocator=SequenceAllocator(store), clock=clock)
        document = service.create_document(seller, buyer, items, actor, issue_date=date(2026, 1, 2))
        assert document.id == "26-0001"
        assert store.read_counter("invoice", "2026") == 1
        assert store.read_counter("invoice", "2025") == 0

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
