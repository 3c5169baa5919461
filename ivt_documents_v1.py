"""
InvoiceTrail (IVT) - Billing Document Model
Version: 1.0.0

Billing documents, line items, lifecycle transitions and the attestation
digest over a document's authoritative financial fields.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ivt_core_v1 import (
    DEFAULT_CURRENCY,
    InvariantViolation,
    digest_payload,
)

# ============================================
# LIFECYCLE
# ============================================

class DocumentStatus(Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    TRANSMITTED = "transmitted"
    PAID = "paid"
    OVERDUE = "overdue"
    VOIDED = "voided"

ALLOWED_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({DocumentStatus.ISSUED, DocumentStatus.VOIDED}),
    DocumentStatus.ISSUED: frozenset({
        DocumentStatus.TRANSMITTED, DocumentStatus.PAID,
        DocumentStatus.OVERDUE, DocumentStatus.VOIDED,
    }),
    DocumentStatus.TRANSMITTED: frozenset({
        DocumentStatus.PAID, DocumentStatus.OVERDUE, DocumentStatus.VOIDED,
    }),
    DocumentStatus.OVERDUE: frozenset({DocumentStatus.PAID, DocumentStatus.VOIDED}),
    DocumentStatus.PAID: frozenset(),
    DocumentStatus.VOIDED: frozenset(),
}

# Line items may only change while the document is in one of these states
AMENDABLE_STATUSES = frozenset({DocumentStatus.DRAFT, DocumentStatus.ISSUED})

def check_transition(current: DocumentStatus, new: DocumentStatus):
    """Raise InvariantViolation unless current -> new is an allowed transition."""
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvariantViolation(
            f"Invalid status transition: {current.value} -> {new.value}"
        )

# ============================================
# MONEY
# ============================================

HUNDRED = Decimal(100)
RATE_QUANTUM = Decimal("0.01")

def round_minor(value: Decimal) -> int:
    """Round half-up to whole minor units."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))

def format_minor(amount: int) -> str:
    """123456 -> '1234.56'"""
    return format(Decimal(amount).scaleb(-2).quantize(RATE_QUANTUM), "f")

def to_minor(amount: Decimal) -> int:
    """Decimal('12.50') -> 1250. Rejects sub-cent precision."""
    scaled = Decimal(amount) * HUNDRED
    if scaled != scaled.to_integral_value():
        raise InvariantViolation(f"Amount {amount} has more than two decimal places")
    return int(scaled)

def format_rate(rate: Decimal) -> str:
    return format(Decimal(rate).quantize(RATE_QUANTUM), "f")

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class Party:
    """Seller or buyer on a billing document."""
    name: str
    tax_id: str
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'tax_id': self.tax_id,
            'address': self.address
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Party":
        return cls(name=data['name'], tax_id=data['tax_id'], address=data.get('address', ''))

@dataclass(frozen=True)
class LineItem:
    """Individual line item. Prices are integer minor units."""
    description: str
    quantity: int
    unit_price: int
    tax_rate: Decimal = Decimal("21")
    discount: Decimal = Decimal("0")

    def __post_init__(self):
        if self.quantity <= 0:
            raise InvariantViolation(f"Line item quantity must be positive: {self.quantity}")
        if self.unit_price < 0:
            raise InvariantViolation(f"Line item unit price must not be negative: {self.unit_price}")
        if not (Decimal(0) <= Decimal(self.discount) <= HUNDRED):
            raise InvariantViolation(f"Discount must be between 0 and 100: {self.discount}")
        if Decimal(self.tax_rate) < 0:
            raise InvariantViolation(f"Tax rate must not be negative: {self.tax_rate}")

    @property
    def subtotal(self) -> int:
        gross = Decimal(self.quantity) * Decimal(self.unit_price)
        return round_minor(gross * (HUNDRED - Decimal(self.discount)) / HUNDRED)

    @property
    def tax_amount(self) -> int:
        return round_minor(Decimal(self.subtotal) * Decimal(self.tax_rate) / HUNDRED)

    @property
    def total(self) -> int:
        return self.subtotal + self.tax_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'tax_rate': format_rate(self.tax_rate),
            'discount': format_rate(self.discount),
            'subtotal': self.subtotal,
            'tax_amount': self.tax_amount,
            'total': self.total
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        return cls(
            description=data['description'],
            quantity=int(data['quantity']),
            unit_price=int(data['unit_price']),
            tax_rate=Decimal(data['tax_rate']),
            discount=Decimal(data.get('discount', "0")),
        )

@dataclass
class BillingDocument:
    """
    A numbered billing document and the audit log it owns.

    `audit_log` is attached by the store on load; it is never part of the
    attestation digest.
    """
    id: str
    domain: str
    issue_date: date
    due_date: date
    seller: Party
    buyer: Party
    line_items: Dict[str, LineItem]

    status: DocumentStatus = DocumentStatus.ISSUED
    currency: str = DEFAULT_CURRENCY
    notes: Optional[str] = None

    # Payment details, set by the paid transition
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None

    audit_log: Any = field(default=None, compare=False, repr=False)

    # Derived amounts as found in storage; None for documents built in memory
    persisted_totals: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.line_items:
            raise InvariantViolation(f"Document {self.id} must have at least one line item")

    @property
    def subtotal(self) -> int:
        return sum(item.subtotal for item in self.line_items.values())

    @property
    def tax_total(self) -> int:
        return sum(item.tax_amount for item in self.line_items.values())

    @property
    def total(self) -> int:
        return self.subtotal + self.tax_total

    def financial_fields(self) -> Dict[str, Any]:
        """Authoritative fields covered by the attestation digest."""
        return {
            'id': self.id,
            'domain': self.domain,
            'issue_date': self.issue_date,
            'due_date': self.due_date,
            'currency': self.currency,
            'seller': self.seller.to_dict(),
            'buyer': self.buyer.to_dict(),
            'line_items': {key: item.to_dict() for key, item in self.line_items.items()},
            'subtotal': self.subtotal,
            'tax_total': self.tax_total,
            'total': self.total,
            'notes': self.notes
        }

    def computed_totals(self) -> Dict[str, int]:
        """Every derived amount, keyed the way `persisted_totals` is."""
        totals = {
            'subtotal': self.subtotal,
            'tax_total': self.tax_total,
            'total': self.total
        }
        for key, item in self.line_items.items():
            totals[f"{key}.subtotal"] = item.subtotal
            totals[f"{key}.tax_amount"] = item.tax_amount
            totals[f"{key}.total"] = item.total
        return totals

    def totals_drift(self) -> List[Tuple[str, Any, int]]:
        """(name, stored, recomputed) for every persisted amount that disagrees with the line items."""
        if self.persisted_totals is None:
            return []
        computed = self.computed_totals()
        return [
            (name, self.persisted_totals.get(name), value)
            for name, value in computed.items()
            if self.persisted_totals.get(name) != value
        ]

    def with_status(self, status: DocumentStatus, **changes) -> "BillingDocument":
        check_transition(self.status, status)
        return replace(self, status=status, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Persisted representation, without the audit log."""
        return {
            'id': self.id,
            'domain': self.domain,
            'issue_date': self.issue_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'seller': self.seller.to_dict(),
            'buyer': self.buyer.to_dict(),
            'line_items': {key: item.to_dict() for key, item in self.line_items.items()},
            'status': self.status.value,
            'currency': self.currency,
            'notes': self.notes,
            'payment_method': self.payment_method,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'subtotal': self.subtotal,
            'tax_total': self.tax_total,
            'total': self.total
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BillingDocument":
        persisted_totals = {name: data.get(name) for name in ('subtotal', 'tax_total', 'total')}
        for key, item in data['line_items'].items():
            for name in ('subtotal', 'tax_amount', 'total'):
                persisted_totals[f"{key}.{name}"] = item.get(name)

        return cls(
            id=data['id'],
            domain=data['domain'],
            issue_date=date.fromisoformat(data['issue_date']),
            due_date=date.fromisoformat(data['due_date']),
            seller=Party.from_dict(data['seller']),
            buyer=Party.from_dict(data['buyer']),
            line_items={
                key: LineItem.from_dict(item) for key, item in data['line_items'].items()
            },
            status=DocumentStatus(data['status']),
            currency=data['currency'],
            notes=data.get('notes'),
            payment_method=data.get('payment_method'),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            persisted_totals=persisted_totals,
        )

def build_line_items(items) -> Dict[str, LineItem]:
    """Key an ordered sequence of line items as L1, L2, ..."""
    return {f"L{index}": item for index, item in enumerate(items, 1)}

def document_digest(document: BillingDocument) -> str:
    """Attestation digest of the document's current financial fields."""
    return digest_payload(document.financial_fields())
