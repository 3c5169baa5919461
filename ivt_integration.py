"""
InvoiceTrail - Integration Surface
Re-exports the audit chain components consumed by the API and by embedding applications
"""

# Core primitives
from ivt_core_v1 import (
    DATABASE_PATH,
    SENTINEL_EMPTY,

    # Exceptions
    AuditChainError,
    ConcurrentModification,
    AllocationConflict,
    SequenceExhausted,
    StorageTimeout,
    DocumentNotFound,
    DuplicateDocument,
    InvariantViolation,

    # Hasher and signers
    canonical_bytes,
    digest,
    Signer,
    HashSigner,
    HmacSigner,
    Ed25519Signer,

    # Logging
    logger
)

# Documents
from ivt_documents_v1 import (
    BillingDocument,
    DocumentStatus,
    LineItem,
    Party,
    document_digest,
    format_minor,
    to_minor,
)

# Audit chain
from ivt_audit_chain_v1 import (
    Actor,
    AuditEvent,
    AuditLog,
    ChainLinkBuilder,
    EventKind,
    OriginMeta,
    UnreadableEvent,
    decode_event,
)

# Storage, numbering, verification, compliance
from ivt_storage_v1 import DocumentStore, InMemoryDocumentStore, SqliteDocumentStore
from ivt_sequence_v1 import SequenceAllocator
from ivt_verifier_v1 import ChainVerifier, FindingCode, IntegrityViolation, VerificationReport
from ivt_compliance_v1 import CompliancePayloadEncoder
from ivt_billing_service_v1 import BillingDocumentService

def build_store(path=DATABASE_PATH) -> DocumentStore:
    """SQLite store when a database path is configured, in-memory otherwise."""
    if path:
        return SqliteDocumentStore(path)
    logger.warning("IVT_DATABASE_PATH not set - using in-memory store (not durable)")
    return InMemoryDocumentStore()

__all__ = [
    "SENTINEL_EMPTY",
    "AuditChainError",
    "ConcurrentModification",
    "AllocationConflict",
    "SequenceExhausted",
    "StorageTimeout",
    "DocumentNotFound",
    "DuplicateDocument",
    "InvariantViolation",
    "canonical_bytes",
    "digest",
    "Signer",
    "HashSigner",
    "HmacSigner",
    "Ed25519Signer",
    "BillingDocument",
    "DocumentStatus",
    "LineItem",
    "Party",
    "document_digest",
    "format_minor",
    "to_minor",
    "Actor",
    "AuditEvent",
    "AuditLog",
    "ChainLinkBuilder",
    "EventKind",
    "OriginMeta",
    "UnreadableEvent",
    "decode_event",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
    "SequenceAllocator",
    "ChainVerifier",
    "FindingCode",
    "IntegrityViolation",
    "VerificationReport",
    "CompliancePayloadEncoder",
    "BillingDocumentService",
    "build_store",
    "logger",
]
