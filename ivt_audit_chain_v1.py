"""
InvoiceTrail (IVT) - Audit Chain
Version: 1.0.0

Hash-linked, append-only audit events per billing document.

Every event commits to the content digest of its predecessor. The
previous digest travels with the persisted log itself; nothing about the
chain head is kept in process memory between calls.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ivt_core_v1 import (
    SENTINEL_EMPTY,
    ConcurrentModification,
    HashSigner,
    InvariantViolation,
    Signer,
    canonical_bytes,
    digest,
    logger,
)

# ============================================
# EVENT TYPES
# ============================================

class EventKind(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    TRANSMITTED = "transmitted"
    PAID = "paid"
    VOIDED = "voided"
    VIEWED = "viewed"
    EXPORTED = "exported"

@dataclass(frozen=True)
class Actor:
    """Caller identity attached to each event."""
    actor_id: str
    display_name: str = ""

@dataclass(frozen=True)
class OriginMeta:
    """Where the request came from, as reported by the caller."""
    address: Optional[str] = None
    agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'address': self.address,
            'agent': self.agent
        }

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================
# AUDIT EVENT
# ============================================

@dataclass(frozen=True)
class AuditEvent:
    """Immutable chain link."""
    position: int
    kind: EventKind
    actor_id: str
    actor_name: str
    timestamp: datetime
    detail: str
    origin: Optional[OriginMeta]
    content_digest: str
    previous_digest: str
    signature: str

    # Digest of the document's financial fields, set on created and on amendments
    attestation: Optional[str] = None

    def canonical_payload(self) -> bytes:
        return canonical_payload(
            position=self.position,
            previous_digest=self.previous_digest,
            kind=self.kind,
            actor_id=self.actor_id,
            actor_name=self.actor_name,
            timestamp=self.timestamp,
            detail=self.detail,
            origin=self.origin,
            attestation=self.attestation,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted record. Field names are stable across versions."""
        return {
            'position': self.position,
            'kind': self.kind.value,
            'actor_id': self.actor_id,
            'actor_name': self.actor_name,
            'timestamp': self.timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds"),
            'detail': self.detail,
            'origin': self.origin.to_dict() if self.origin else None,
            'content_digest': self.content_digest,
            'previous_digest': self.previous_digest,
            'signature': self.signature,
            'attestation': self.attestation
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEvent":
        origin = data.get('origin')
        timestamp = datetime.fromisoformat(data['timestamp'])
        if timestamp.tzinfo is None:
            raise ValueError(f"Stored timestamp has no UTC offset: {data['timestamp']}")
        return cls(
            position=int(data['position']),
            kind=EventKind(data['kind']),
            actor_id=data['actor_id'],
            actor_name=data.get('actor_name', ''),
            timestamp=timestamp,
            detail=data['detail'],
            origin=OriginMeta(address=origin.get('address'), agent=origin.get('agent')) if origin else None,
            content_digest=data['content_digest'],
            previous_digest=data['previous_digest'],
            signature=data['signature'],
            attestation=data.get('attestation'),
        )

@dataclass(frozen=True)
class UnreadableEvent:
    """
    Stored record that no longer decodes into an AuditEvent.

    Kept in the log at its index so the verifier can report it instead of
    the load failing. Only the two digest strings are taken from the raw
    record, to keep linkage checks running around it.
    """
    position: int
    record: Any
    error: str

    kind = None
    timestamp = None
    attestation = None

    def _raw_text(self, name: str) -> str:
        value = self.record.get(name) if isinstance(self.record, dict) else None
        return value if isinstance(value, str) else ""

    @property
    def content_digest(self) -> str:
        return self._raw_text('content_digest')

    @property
    def previous_digest(self) -> str:
        return self._raw_text('previous_digest')

    def to_dict(self) -> Any:
        return self.record

def decode_event(data: Any, index: int):
    """Decode a stored record, or wrap it as UnreadableEvent when a field no longer parses."""
    try:
        return AuditEvent.from_dict(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.error(f"[CHAIN] Stored event #{index} could not be decoded: {type(e).__name__}: {e}")
        return UnreadableEvent(position=index, record=data, error=f"{type(e).__name__}: {e}")

def canonical_payload(
    position: int,
    previous_digest: str,
    kind: EventKind,
    actor_id: str,
    actor_name: str,
    timestamp: datetime,
    detail: str,
    origin: Optional[OriginMeta],
    attestation: Optional[str],
) -> bytes:
    return canonical_bytes({
        'position': position,
        'previous_digest': previous_digest,
        'kind': kind,
        'actor_id': actor_id,
        'actor_name': actor_name,
        'timestamp': timestamp,
        'detail': detail,
        'origin': origin.to_dict() if origin else None,
        'attestation': attestation,
    })

def expected_content_digest(event: AuditEvent) -> str:
    """
    Content digest an event must carry, recomputed from its stored fields.

    The created event's content digest is the attestation digest of the
    document itself, so it is only recomputable against the document.
    """
    if event.kind is EventKind.CREATED:
        return event.attestation or ""
    return digest(event.canonical_payload())

# ============================================
# AUDIT LOG
# ============================================

@dataclass(frozen=True)
class AuditLog:
    """
    Ordered events of one billing document as read from storage.

    `version` is the optimistic concurrency token: the number of events the
    reader saw. Appending returns a new log and leaves this one unchanged.
    """
    document_id: str
    events: Tuple[AuditEvent, ...] = field(default_factory=tuple)

    @property
    def version(self) -> int:
        return len(self.events)

    @property
    def head(self) -> Optional[AuditEvent]:
        return self.events[-1] if self.events else None

    @property
    def head_digest(self) -> str:
        return self.events[-1].content_digest if self.events else SENTINEL_EMPTY

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    def append(self, event: AuditEvent) -> "AuditLog":
        """Return a new log extended by `event` after checking linkage."""
        if event.position != self.version or event.previous_digest != self.head_digest:
            raise ConcurrentModification(
                f"Event for {self.document_id} was built against a stale chain head "
                f"(position {event.position}, log version {self.version})"
            )
        if not self.events and event.kind is not EventKind.CREATED:
            raise InvariantViolation(f"First event of {self.document_id} must be 'created'")
        if self.events and event.kind is EventKind.CREATED:
            raise InvariantViolation(f"Log of {self.document_id} already has a 'created' event")
        return AuditLog(self.document_id, self.events + (event,))

    def to_list(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.events]

# ============================================
# CHAIN LINK BUILDER
# ============================================

class ChainLinkBuilder:
    """Builds the next link of a log. Pure apart from reading the clock."""

    def __init__(self, signer: Optional[Signer] = None, clock: Callable[[], datetime] = utc_now):
        self.signer = signer or HashSigner()
        self.clock = clock

    def _timestamp(self, log: AuditLog) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        # Never earlier than the previous link, even if the clock stepped back
        head_timestamp = log.head.timestamp if log.head is not None else None
        if head_timestamp is not None and now < head_timestamp:
            logger.warning(f"[CHAIN] Clock behind chain head for {log.document_id}; clamping timestamp")
            return head_timestamp
        return now

    def append(
        self,
        log: AuditLog,
        kind: EventKind,
        actor: Actor,
        detail: str,
        origin_meta: Optional[OriginMeta] = None,
        attestation: Optional[str] = None,
    ) -> AuditEvent:
        """
        Build the event that extends `log`.

        The caller persists it with an optimistic version check against
        `log.version`; a lost race surfaces as ConcurrentModification.
        """
        if kind is EventKind.CREATED and attestation is None:
            raise InvariantViolation("A 'created' event must carry the document attestation digest")

        position = log.version
        previous_digest = log.head_digest
        timestamp = self._timestamp(log)

        payload = canonical_payload(
            position=position,
            previous_digest=previous_digest,
            kind=kind,
            actor_id=actor.actor_id,
            actor_name=actor.display_name,
            timestamp=timestamp,
            detail=detail,
            origin=origin_meta,
            attestation=attestation,
        )

        if kind is EventKind.CREATED:
            content_digest = attestation
        else:
            content_digest = digest(payload)

        event = AuditEvent(
            position=position,
            kind=kind,
            actor_id=actor.actor_id,
            actor_name=actor.display_name,
            timestamp=timestamp,
            detail=detail,
            origin=origin_meta,
            content_digest=content_digest,
            previous_digest=previous_digest,
            signature=self.signer.sign(content_digest, payload),
            attestation=attestation,
        )

        logger.debug(
            f"[CHAIN] Built {kind.value} link #{position} for {log.document_id}: "
            f"{content_digest[:12]}... <- {previous_digest[:12] or 'SENTINEL'}"
        )
        return event
