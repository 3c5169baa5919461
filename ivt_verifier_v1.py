"""
InvoiceTrail (IVT) - Chain Verifier
Version: 1.0.0

Replays a stored audit log and reports every violated invariant. A failed
verification is a normal business outcome: it is returned as data, never
raised.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ivt_core_v1 import SENTINEL_EMPTY, HashSigner, Signer, logger
from ivt_documents_v1 import BillingDocument, document_digest
from ivt_audit_chain_v1 import AuditEvent, AuditLog, EventKind, UnreadableEvent, expected_content_digest
from ivt_metrics import record_verification

class FindingCode(Enum):
    EMPTY_LOG = "empty_log"
    FOREIGN_LOG = "foreign_log"
    FIRST_LINK = "first_link"
    MISSING_CREATED = "missing_created"
    UNEXPECTED_CREATED = "unexpected_created"
    BROKEN_LINK = "broken_link"
    POSITION_MISMATCH = "position_mismatch"
    DIGEST_MISMATCH = "digest_mismatch"
    SIGNATURE_MISMATCH = "signature_mismatch"
    TIMESTAMP_REGRESSION = "timestamp_regression"
    MISSING_ATTESTATION = "missing_attestation"
    ATTESTATION_MISMATCH = "attestation_mismatch"
    TOTALS_MISMATCH = "totals_mismatch"
    UNREADABLE_EVENT = "unreadable_event"

STRUCTURAL_CODES = frozenset({FindingCode.EMPTY_LOG, FindingCode.FOREIGN_LOG})

@dataclass(frozen=True)
class IntegrityViolation:
    """One violated invariant. Reported, never raised."""
    code: FindingCode
    message: str
    position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code.value,
            'message': self.message,
            'position': self.position
        }

@dataclass
class VerificationReport:
    document_id: str
    events_checked: int = 0
    findings: List[IntegrityViolation] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.findings

    def positions(self) -> List[int]:
        """Distinct event positions cited by findings, in order."""
        seen = []
        for finding in self.findings:
            if finding.position is not None and finding.position not in seen:
                seen.append(finding.position)
        return seen

    def has(self, code: FindingCode, position: Optional[int] = None) -> bool:
        return any(
            f.code is code and (position is None or f.position == position)
            for f in self.findings
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'passed': self.passed,
            'events_checked': self.events_checked,
            'findings': [f.to_dict() for f in self.findings]
        }

class ChainVerifier:
    """Read-only; safe to run concurrently with appends to other documents."""

    def __init__(self, signer: Optional[Signer] = None):
        self.signer = signer or HashSigner()

    def verify(self, document: BillingDocument) -> VerificationReport:
        log: Optional[AuditLog] = document.audit_log
        report = VerificationReport(document_id=document.id)

        self._check_structure(document, log, report)
        if any(f.code in STRUCTURAL_CODES for f in report.findings):
            return self._finish(report)

        events = log.events
        report.events_checked = len(events)

        self._check_first_link(events, report)
        self._check_linkage(events, report)
        for index, event in enumerate(events):
            self._check_event(index, event, report)
        self._check_attestation(document, events, report)
        self._check_totals(document, report)

        return self._finish(report)

    # ---- individual checks ----

    def _check_structure(self, document: BillingDocument, log: Optional[AuditLog], report: VerificationReport):
        if log is None or len(log) == 0:
            report.findings.append(IntegrityViolation(
                FindingCode.EMPTY_LOG, f"Document {document.id} has no audit events"
            ))
        elif log.document_id != document.id:
            report.findings.append(IntegrityViolation(
                FindingCode.FOREIGN_LOG,
                f"Audit log belongs to {log.document_id}, not {document.id}"
            ))

    def _check_first_link(self, events, report: VerificationReport):
        first = events[0]
        if isinstance(first, UnreadableEvent):
            return
        if first.kind is not EventKind.CREATED:
            report.findings.append(IntegrityViolation(
                FindingCode.MISSING_CREATED,
                f"Event #0 is '{first.kind.value}', expected 'created'", 0
            ))
        if first.previous_digest != SENTINEL_EMPTY:
            report.findings.append(IntegrityViolation(
                FindingCode.FIRST_LINK,
                "Event #0 must not reference a previous digest", 0
            ))

    def _check_linkage(self, events, report: VerificationReport):
        for index in range(1, len(events)):
            previous, current = events[index - 1], events[index]
            if current.previous_digest != previous.content_digest:
                report.findings.append(IntegrityViolation(
                    FindingCode.BROKEN_LINK,
                    f"Event #{index} does not link to the digest of event #{index - 1}",
                    index
                ))
            if previous.timestamp is None or current.timestamp is None:
                continue
            if current.timestamp < previous.timestamp:
                report.findings.append(IntegrityViolation(
                    FindingCode.TIMESTAMP_REGRESSION,
                    f"Event #{index} is timestamped before event #{index - 1}",
                    index
                ))

    def _check_event(self, index: int, event: AuditEvent, report: VerificationReport):
        if isinstance(event, UnreadableEvent):
            report.findings.append(IntegrityViolation(
                FindingCode.UNREADABLE_EVENT,
                f"Event #{index} could not be decoded from storage: {event.error}", index
            ))
            return
        try:
            if event.position != index:
                report.findings.append(IntegrityViolation(
                    FindingCode.POSITION_MISMATCH,
                    f"Event #{index} records position {event.position}", index
                ))
            if index > 0 and event.kind is EventKind.CREATED:
                report.findings.append(IntegrityViolation(
                    FindingCode.UNEXPECTED_CREATED,
                    f"Event #{index} is a second 'created' event", index
                ))
            if expected_content_digest(event) != event.content_digest:
                report.findings.append(IntegrityViolation(
                    FindingCode.DIGEST_MISMATCH,
                    f"Event #{index} ({event.kind.value}) content digest does not match its fields",
                    index
                ))
            if not self.signer.verify(event.content_digest, event.canonical_payload(), event.signature):
                report.findings.append(IntegrityViolation(
                    FindingCode.SIGNATURE_MISMATCH,
                    f"Event #{index} ({event.kind.value}) signature is invalid", index
                ))
        except (TypeError, ValueError, AttributeError) as e:
            report.findings.append(IntegrityViolation(
                FindingCode.UNREADABLE_EVENT,
                f"Event #{index} could not be re-serialized: {e}", index
            ))

    def _check_attestation(self, document: BillingDocument, events, report: VerificationReport):
        attesting = [event for event in events if event.attestation is not None]
        if not attesting:
            report.findings.append(IntegrityViolation(
                FindingCode.MISSING_ATTESTATION,
                f"No event attests to the financial fields of {document.id}"
            ))
            return

        latest = attesting[-1]
        if document_digest(document) != latest.attestation:
            report.findings.append(IntegrityViolation(
                FindingCode.ATTESTATION_MISMATCH,
                f"Current financial fields of {document.id} differ from those attested "
                f"by event #{latest.position} ({latest.kind.value})",
                latest.position
            ))

    def _check_totals(self, document: BillingDocument, report: VerificationReport):
        for name, stored, computed in document.totals_drift():
            report.findings.append(IntegrityViolation(
                FindingCode.TOTALS_MISMATCH,
                f"Stored {name} of {document.id} is {stored!r}, line items give {computed}"
            ))

    def _finish(self, report: VerificationReport) -> VerificationReport:
        record_verification(report.passed, [f.code.value for f in report.findings])
        if report.passed:
            logger.info(f"[VERIFIER] {report.document_id}: {report.events_checked} events verified")
        else:
            logger.error(
                f"[VERIFIER] {report.document_id}: {len(report.findings)} integrity finding(s) "
                f"at positions {report.positions()}"
            )
            for finding in report.findings:
                logger.critical(f"[VERIFIER] {report.document_id} {finding.code.value}: {finding.message}")
        return report
