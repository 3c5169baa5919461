"""
InvoiceTrail (IVT) - Core Primitives
Version: 1.0.0

Configuration, logging, the error taxonomy, the content Hasher and the
pluggable signing step shared by every other IVT module.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from abc import ABC, abstractmethod
import hashlib
import hmac
import json
import logging
import os

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SIGNING_SECRET = os.environ.get(
    "IVT_SIGNING_SECRET", "PRODUCTION_SECRET_KEY_ROTATE_QUARTERLY"
).encode()

LOG_LEVEL = os.environ.get("IVT_LOG_LEVEL", "INFO").upper()

STORAGE_TIMEOUT_SECONDS = float(os.environ.get("IVT_STORAGE_TIMEOUT_SECONDS", "5.0"))
MAX_APPEND_RETRIES = int(os.environ.get("IVT_MAX_APPEND_RETRIES", "3"))
MAX_ALLOCATION_RETRIES = int(os.environ.get("IVT_MAX_ALLOCATION_RETRIES", "5"))
RETRY_BACKOFF_SECONDS = float(os.environ.get("IVT_RETRY_BACKOFF_SECONDS", "0.01"))

# Counter is formatted with this many digits; 10**width - 1 is a hard ceiling
SEQUENCE_WIDTH = int(os.environ.get("IVT_SEQUENCE_WIDTH", "4"))

DATABASE_PATH = os.environ.get("IVT_DATABASE_PATH")
COUNTRY_CODE = os.environ.get("IVT_COUNTRY_CODE", "ES")
DEFAULT_CURRENCY = os.environ.get("IVT_DEFAULT_CURRENCY", "EUR")
DEFAULT_PAYMENT_DAYS = int(os.environ.get("IVT_DEFAULT_PAYMENT_DAYS", "30"))

# Identifier prefix per numbering domain
DOMAIN_PREFIXES: Dict[str, str] = {
    "invoice": "",
    "credit_note": "R",
}

# Previous digest of the first event in every chain
SENTINEL_EMPTY = ""

HASH_ALGORITHM = "sha256"
DIGEST_HEX_LENGTH = 64

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("IVT.AuditChain")

# ============================================
# EXCEPTIONS
# ============================================

class AuditChainError(Exception):
    """Base class for all InvoiceTrail errors."""
    pass

class ConcurrentModification(AuditChainError):
    """Raised when an append lost a race against another writer of the same log."""
    pass

class AllocationConflict(AuditChainError):
    """Raised when numbering contention exceeded the retry budget."""
    pass

class SequenceExhausted(AuditChainError):
    """Raised when a counter reached the ceiling of its identifier format."""
    pass

class StorageTimeout(AuditChainError):
    """Raised when a durable operation exceeded its time bound."""
    pass

class DocumentNotFound(AuditChainError):
    """Raised when a billing document does not exist."""
    pass

class DuplicateDocument(AuditChainError):
    """Raised when a document identifier is already taken."""
    pass

class InvariantViolation(AuditChainError):
    """Raised when a lifecycle transition or document input is not allowed."""
    pass

# ============================================
# HASHER
# ============================================

def _normalize(value: Any) -> Any:
    """Reduce a payload to JSON-safe primitives with a single representation."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise TypeError("Binary floating point is not allowed in canonical payloads")
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise TypeError("Naive datetimes are not allowed in canonical payloads")
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, dict):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Canonical payload keys must be strings, got {type(key).__name__}")
            normalized[key] = _normalize(item)
        return normalized
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise TypeError(f"Unsupported type in canonical payload: {type(value).__name__}")

def canonical_bytes(payload: Any) -> bytes:
    """Deterministic UTF-8 JSON encoding: sorted keys, no whitespace."""
    return json.dumps(
        _normalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")

def digest(serialized_payload: bytes) -> str:
    """SHA-256 hex digest of already-serialized bytes."""
    return hashlib.sha256(serialized_payload).hexdigest()

def digest_payload(payload: Any) -> str:
    return digest(canonical_bytes(payload))

# ============================================
# SIGNERS
# ============================================

class Signer(ABC):
    """Signing step bound to (content digest || canonical payload)."""

    algorithm: str = "abstract"

    @staticmethod
    def signing_input(content_digest: str, payload: bytes) -> bytes:
        return content_digest.encode("ascii") + payload

    @abstractmethod
    def sign(self, content_digest: str, payload: bytes) -> str:
        pass

    @abstractmethod
    def verify(self, content_digest: str, payload: bytes, signature: str) -> bool:
        pass

class HashSigner(Signer):
    """Second SHA-256 over the signing input. Stand-in for a real signature."""

    algorithm = "sha256"

    def sign(self, content_digest: str, payload: bytes) -> str:
        return digest(self.signing_input(content_digest, payload))

    def verify(self, content_digest: str, payload: bytes, signature: str) -> bool:
        expected = self.sign(content_digest, payload)
        return hmac.compare_digest(expected, signature)

class HmacSigner(Signer):
    """Keyed signature; only holders of the secret can produce valid links."""

    algorithm = "hmac-sha256"

    def __init__(self, secret: bytes = SIGNING_SECRET):
        self.secret = secret

    def sign(self, content_digest: str, payload: bytes) -> str:
        return hmac.new(self.secret, self.signing_input(content_digest, payload), 'sha256').hexdigest()

    def verify(self, content_digest: str, payload: bytes, signature: str) -> bool:
        expected = self.sign(content_digest, payload)
        return hmac.compare_digest(expected, signature)

class Ed25519Signer(Signer):
    """
    Asymmetric signing with Ed25519.

    A verifier-only instance can be built from the public key alone with
    `Ed25519Signer.for_verification(public_key)`.
    """

    algorithm = "ed25519"

    def __init__(self, private_key=None, public_key=None):
        from cryptography.hazmat.primitives.asymmetric import ed25519

        if private_key is None and public_key is None:
            private_key = ed25519.Ed25519PrivateKey.generate()
        self._private_key = private_key
        self._public_key = public_key or private_key.public_key()

    @classmethod
    def for_verification(cls, public_key) -> "Ed25519Signer":
        return cls(private_key=None, public_key=public_key)

    @property
    def public_key(self):
        return self._public_key

    def sign(self, content_digest: str, payload: bytes) -> str:
        if self._private_key is None:
            raise AuditChainError("Ed25519Signer has no private key; it can only verify")
        return self._private_key.sign(self.signing_input(content_digest, payload)).hex()

    def verify(self, content_digest: str, payload: bytes, signature: str) -> bool:
        from cryptography.exceptions import InvalidSignature

        try:
            self._public_key.verify(
                bytes.fromhex(signature),
                self.signing_input(content_digest, payload),
            )
        except (InvalidSignature, ValueError):
            return False
        return True
