"""
InvoiceTrail (IVT) - Billing Document Service
Version: 1.0.0

Lifecycle operations on billing documents. Every state change is recorded
as a hash-linked audit event in the same atomic store write that changes
the document.
"""

from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple
import time

from ivt_core_v1 import (
    DEFAULT_CURRENCY,
    DEFAULT_PAYMENT_DAYS,
    MAX_APPEND_RETRIES,
    RETRY_BACKOFF_SECONDS,
    AuditChainError,
    ConcurrentModification,
    InvariantViolation,
    logger,
)
from ivt_documents_v1 import (
    AMENDABLE_STATUSES,
    BillingDocument,
    DocumentStatus,
    LineItem,
    Party,
    build_line_items,
    document_digest,
    format_minor,
)
from ivt_audit_chain_v1 import (
    Actor,
    AuditEvent,
    AuditLog,
    ChainLinkBuilder,
    EventKind,
    OriginMeta,
    utc_now,
)
from ivt_storage_v1 import DocumentStore
from ivt_sequence_v1 import SequenceAllocator
from ivt_verifier_v1 import ChainVerifier, VerificationReport
from ivt_compliance_v1 import CompliancePayloadEncoder
from ivt_metrics import record_append_conflict, record_event_appended

# Lifecycle changes that move the document to a new status
STATUS_EVENTS = {
    DocumentStatus.ISSUED: EventKind.MODIFIED,
    DocumentStatus.TRANSMITTED: EventKind.TRANSMITTED,
    DocumentStatus.PAID: EventKind.PAID,
    DocumentStatus.OVERDUE: EventKind.MODIFIED,
    DocumentStatus.VOIDED: EventKind.VOIDED,
}

# Builds the replacement document from a fresh snapshot, or None to leave it unchanged
Mutation = Callable[[BillingDocument], Tuple[Optional[BillingDocument], Optional[str]]]

class BillingDocumentService:
    """Service for billing documents with a tamper-evident audit trail."""

    def __init__(
        self,
        store: DocumentStore,
        allocator: Optional[SequenceAllocator] = None,
        builder: Optional[ChainLinkBuilder] = None,
        verifier: Optional[ChainVerifier] = None,
        encoder: Optional[CompliancePayloadEncoder] = None,
        clock: Callable[[], datetime] = utc_now,
        max_append_retries: int = MAX_APPEND_RETRIES,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ):
        self.store = store
        self.allocator = allocator or SequenceAllocator(store)
        self.builder = builder or ChainLinkBuilder(clock=clock)
        self.verifier = verifier or ChainVerifier(self.builder.signer)
        self.encoder = encoder or CompliancePayloadEncoder()
        self.clock = clock
        self.max_append_retries = max_append_retries
        self.backoff_seconds = backoff_seconds

        logger.info(f"[BILLING_SERVICE] Initialized with {type(store).__name__}")

    # ---- creation ----

    def create_document(
        self,
        seller: Party,
        buyer: Party,
        line_items: List[LineItem],
        actor: Actor,
        origin: Optional[OriginMeta] = None,
        domain: str = "invoice",
        issue_date: Optional[date] = None,
        payment_days: int = DEFAULT_PAYMENT_DAYS,
        currency: str = DEFAULT_CURRENCY,
        notes: Optional[str] = None,
        status: DocumentStatus = DocumentStatus.ISSUED,
        payment_method: Optional[str] = None,
    ) -> BillingDocument:
        """
        Create a numbered document with its 'created' event.

        The number is minted here and nowhere else. A document may be created
        as a draft, issued, or already paid (with a payment method).
        """
        if status not in (DocumentStatus.DRAFT, DocumentStatus.ISSUED, DocumentStatus.PAID):
            raise InvariantViolation(f"Documents cannot be created as {status.value}")
        if status is DocumentStatus.PAID and not payment_method:
            raise InvariantViolation("A document created as paid needs a payment method")
        if not line_items:
            raise InvariantViolation("A document needs at least one line item")

        now = self.clock()
        issue_date = issue_date or now.date()
        period = str(issue_date.year)
        document_id = self.allocator.next_identifier(domain, period)

        document = BillingDocument(
            id=document_id,
            domain=domain,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=payment_days),
            seller=seller,
            buyer=buyer,
            line_items=build_line_items(line_items),
            status=status,
            currency=currency,
            notes=notes,
            payment_method=payment_method if status is DocumentStatus.PAID else None,
            paid_at=now if status is DocumentStatus.PAID else None,
        )

        logger.info(
            f"[BILLING_SERVICE] Creating {domain} {document_id} for {buyer.name} "
            f"({format_minor(document.total)} {currency}, {len(line_items)} line items)"
        )

        started = time.monotonic()
        created = self.builder.append(
            AuditLog(document_id),
            EventKind.CREATED,
            actor,
            f"{domain.replace('_', ' ').capitalize()} {document_id} created for {buyer.name}",
            origin,
            attestation=document_digest(document),
        )
        try:
            self.store.insert_document(document, created)
        except AuditChainError as e:
            logger.warning(
                f"[BILLING_SERVICE] {document_id} was allocated but not recorded "
                f"({type(e).__name__}); the number is burned and leaves a gap"
            )
            raise
        record_event_appended(EventKind.CREATED.value, time.monotonic() - started)

        document.audit_log = AuditLog(document_id, (created,))
        logger.info(f"[BILLING_SERVICE] {document_id} created, attestation {created.content_digest[:16]}...")
        return document

    # ---- generic append with optimistic retry ----

    def record_event(
        self,
        document_id: str,
        kind: EventKind,
        actor: Actor,
        detail: str,
        origin: Optional[OriginMeta] = None,
        mutation: Optional[Mutation] = None,
    ) -> AuditEvent:
        """
        Append one event, re-reading the log after each lost race.

        `mutation` runs against every fresh snapshot, so validation always
        sees the current status. Raises ConcurrentModification once the
        retry budget is spent.
        """
        started = time.monotonic()

        for attempt in range(1, self.max_append_retries + 1):
            snapshot = self.store.load_document(document_id)
            updated, attestation = (None, None)
            if mutation is not None:
                updated, attestation = mutation(snapshot)

            event = self.builder.append(snapshot.audit_log, kind, actor, detail, origin, attestation)
            try:
                self.store.append_event(document_id, event, snapshot.audit_log.version, updated)
            except ConcurrentModification:
                record_append_conflict()
                logger.warning(
                    f"[BILLING_SERVICE] Lost append race on {document_id} "
                    f"(attempt {attempt}/{self.max_append_retries})"
                )
                if attempt == self.max_append_retries:
                    raise
                time.sleep(self.backoff_seconds * attempt)
                continue

            record_event_appended(kind.value, time.monotonic() - started)
            logger.info(f"[BILLING_SERVICE] {document_id} #{event.position} {kind.value}: {detail}")
            return event

        raise ConcurrentModification(f"No append attempts were made for {document_id}")

    def _transition(
        self,
        document_id: str,
        new_status: DocumentStatus,
        actor: Actor,
        detail: str,
        origin: Optional[OriginMeta] = None,
        **changes,
    ) -> AuditEvent:
        def mutation(document: BillingDocument):
            return document.with_status(new_status, **changes), None

        return self.record_event(
            document_id, STATUS_EVENTS[new_status], actor, detail, origin, mutation
        )

    # ---- lifecycle ----

    def issue(self, document_id: str, actor: Actor, origin: Optional[OriginMeta] = None) -> AuditEvent:
        return self._transition(document_id, DocumentStatus.ISSUED, actor, "Draft issued", origin)

    def transmit(
        self, document_id: str, actor: Actor, recipient: str, origin: Optional[OriginMeta] = None
    ) -> AuditEvent:
        return self._transition(
            document_id, DocumentStatus.TRANSMITTED, actor, f"Transmitted to {recipient}", origin
        )

    def mark_paid(
        self, document_id: str, actor: Actor, payment_method: str, origin: Optional[OriginMeta] = None
    ) -> AuditEvent:
        return self._transition(
            document_id, DocumentStatus.PAID, actor, f"Paid by {payment_method}", origin,
            payment_method=payment_method, paid_at=self.clock(),
        )

    def mark_overdue(self, document_id: str, actor: Actor, origin: Optional[OriginMeta] = None) -> AuditEvent:
        return self._transition(document_id, DocumentStatus.OVERDUE, actor, "Payment overdue", origin)

    def void(
        self, document_id: str, actor: Actor, reason: str, origin: Optional[OriginMeta] = None
    ) -> AuditEvent:
        return self._transition(document_id, DocumentStatus.VOIDED, actor, f"Voided: {reason}", origin)

    def amend_line_items(
        self,
        document_id: str,
        line_items: List[LineItem],
        actor: Actor,
        reason: str,
        origin: Optional[OriginMeta] = None,
    ) -> AuditEvent:
        """Replace the line items and re-attest the financial fields."""
        if not line_items:
            raise InvariantViolation("A document needs at least one line item")

        def mutation(document: BillingDocument):
            if document.status not in AMENDABLE_STATUSES:
                raise InvariantViolation(
                    f"Document {document.id} is {document.status.value} and can no longer be amended"
                )
            document.line_items = build_line_items(line_items)
            return document, document_digest(document)

        return self.record_event(
            document_id, EventKind.MODIFIED, actor, f"Line items amended: {reason}", origin, mutation
        )

    def record_view(self, document_id: str, actor: Actor, origin: Optional[OriginMeta] = None) -> AuditEvent:
        return self.record_event(document_id, EventKind.VIEWED, actor, "Document viewed", origin)

    def export(
        self, document_id: str, actor: Actor, target: str = "tax authority", origin: Optional[OriginMeta] = None
    ) -> bytes:
        """Return the compliance payload and record the export against the same snapshot."""
        encoded = {}

        def mutation(document: BillingDocument):
            encoded['payload'] = self.encoder.encode(document)
            return None, None

        self.record_event(
            document_id, EventKind.EXPORTED, actor, f"Exported for {target}", origin, mutation
        )
        return encoded['payload']

    # ---- reads ----

    def get_document(self, document_id: str) -> BillingDocument:
        return self.store.load_document(document_id)

    def verify(self, document_id: str) -> VerificationReport:
        return self.verifier.verify(self.store.load_document(document_id))

    def compliance_payload(self, document_id: str) -> bytes:
        return self.encoder.encode(self.store.load_document(document_id))

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[BillingDocument]:
        documents = [self.store.load_document(doc_id) for doc_id in self.store.list_document_ids()]
        if status is not None:
            documents = [doc for doc in documents if doc.status is status]
        return documents
