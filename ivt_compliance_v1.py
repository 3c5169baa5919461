"""
InvoiceTrail (IVT) - Compliance Payload Encoder
Version: 1.0.0

Compact, deterministic summary of a finalized billing document for
embedding in a scannable code.

Field set (keys are fixed and single-letter):
    n  document identifier
    d  issue date (YYYY-MM-DD)
    t  total, fixed two decimals
    b  taxable base (subtotal), fixed two decimals
    i  seller tax identifier
    c  buyer tax identifier
    s  country code
    v  tax regime: "01" taxed, "02" exempt
    r  highest applicable tax rate, no trailing zeros ("0" when exempt)
"""

from decimal import Decimal
from typing import Dict
import json

from ivt_core_v1 import COUNTRY_CODE, InvariantViolation, canonical_bytes
from ivt_documents_v1 import BillingDocument, DocumentStatus, format_minor

PAYLOAD_FIELDS = ("b", "c", "d", "i", "n", "r", "s", "t", "v")

TAXED = "01"
EXEMPT = "02"

def _rate_indicator(document: BillingDocument) -> str:
    if document.tax_total == 0:
        return "0"
    highest = max(Decimal(item.tax_rate) for item in document.line_items.values())
    text = format(highest, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text

class CompliancePayloadEncoder:
    """Pure and deterministic: the same document state always yields the same bytes."""

    def __init__(self, country_code: str = COUNTRY_CODE):
        self.country_code = country_code

    def fields(self, document: BillingDocument) -> Dict[str, str]:
        if document.status is DocumentStatus.DRAFT:
            raise InvariantViolation(f"Document {document.id} is a draft and cannot be encoded")
        return {
            'n': document.id,
            'd': document.issue_date.isoformat(),
            't': format_minor(document.total),
            'b': format_minor(document.subtotal),
            'i': document.seller.tax_id,
            'c': document.buyer.tax_id,
            's': self.country_code,
            'v': TAXED if document.tax_total > 0 else EXEMPT,
            'r': _rate_indicator(document),
        }

    def encode(self, document: BillingDocument) -> bytes:
        return canonical_bytes(self.fields(document))

    @staticmethod
    def decode(payload: bytes) -> Dict[str, str]:
        """Parse a scanned payload; rejects anything outside the fixed field set."""
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict) or tuple(sorted(data)) != PAYLOAD_FIELDS:
            raise ValueError("Payload does not carry the compliance field set")
        return data
