"""
InvoiceTrail - FastAPI Application
Thin HTTP adapter over the audit chain and numbering subsystem
"""

from fastapi import FastAPI, HTTPException, Header, Request, status, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import List, Literal, Optional
from decimal import Decimal
import logging
from contextlib import asynccontextmanager

from ivt_integration import (
    Actor,
    AllocationConflict,
    BillingDocument,
    BillingDocumentService,
    ConcurrentModification,
    DocumentNotFound,
    DocumentStatus,
    DuplicateDocument,
    InvariantViolation,
    LineItem,
    OriginMeta,
    Party,
    SequenceExhausted,
    StorageTimeout,
    UnreadableEvent,
    build_store,
    format_minor,
    to_minor,
)
from ivt_metrics import metrics_registry

logger = logging.getLogger("ivt.api")

API_VERSION = "1.0.0"

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class LineItemRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)
    tax_rate: Decimal = Field(Decimal("21"), ge=0, le=100, decimal_places=2)
    discount: Decimal = Field(Decimal("0"), ge=0, le=100, decimal_places=2)

    class Config:
        json_schema_extra = {
            "example": {
                "description": "Genetic counselling report",
                "quantity": 1,
                "unit_price": "150.00",
                "tax_rate": "21"
            }
        }

    def to_line_item(self) -> LineItem:
        return LineItem(
            description=self.description,
            quantity=self.quantity,
            unit_price=to_minor(self.unit_price),
            tax_rate=self.tax_rate,
            discount=self.discount,
        )

class PartyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    tax_id: str = Field(..., min_length=1, max_length=32)
    address: str = ""

    def to_party(self) -> Party:
        return Party(name=self.name, tax_id=self.tax_id, address=self.address)

class DocumentCreateRequest(BaseModel):
    domain: str = Field("invoice", pattern=r'^[a-z_]+$')
    seller: PartyRequest
    buyer: PartyRequest
    line_items: List[LineItemRequest] = Field(..., min_length=1)
    payment_days: int = Field(30, ge=0, le=365)
    currency: str = Field("EUR", pattern=r'^[A-Z]{3}$')
    notes: Optional[str] = None
    status: Literal["draft", "issued", "paid"] = "issued"
    payment_method: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "seller": {"name": "Clinica Norte SL", "tax_id": "B12345678"},
                "buyer": {"name": "Ana Garcia", "tax_id": "12345678Z"},
                "line_items": [
                    {"description": "Genetic counselling report", "quantity": 1, "unit_price": "150.00"}
                ],
                "payment_days": 30
            }
        }

class TransmitRequest(BaseModel):
    recipient: str = Field(..., min_length=1)

class PayRequest(BaseModel):
    payment_method: str = Field(..., min_length=1)

class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=1)

class AmendRequest(BaseModel):
    line_items: List[LineItemRequest] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)

class ExportRequest(BaseModel):
    target: str = "tax authority"

class DocumentResponse(BaseModel):
    id: str
    domain: str
    status: str
    issue_date: str
    due_date: str
    seller_tax_id: str
    buyer_tax_id: str
    currency: str
    subtotal: str
    tax_total: str
    total: str
    events: int

    class Config:
        json_schema_extra = {
            "example": {
                "id": "25-0042",
                "domain": "invoice",
                "status": "issued",
                "issue_date": "2025-03-14",
                "due_date": "2025-04-13",
                "seller_tax_id": "B12345678",
                "buyer_tax_id": "12345678Z",
                "currency": "EUR",
                "subtotal": "150.00",
                "tax_total": "31.50",
                "total": "181.50",
                "events": 1
            }
        }

class AuditEventResponse(BaseModel):
    position: int
    kind: str
    actor_id: str
    actor_name: str
    timestamp: str
    detail: str
    content_digest: str
    previous_digest: str
    signature: str
    attestation: Optional[str] = None

class FindingResponse(BaseModel):
    code: str
    message: str
    position: Optional[int] = None

class VerificationReportResponse(BaseModel):
    document_id: str
    passed: bool
    events_checked: int
    findings: List[FindingResponse]

class CompliancePayloadResponse(BaseModel):
    document_id: str
    payload: str

class HealthResponse(BaseModel):
    status: str
    version: str
    total_documents: int

def document_response(document: BillingDocument) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        domain=document.domain,
        status=document.status.value,
        issue_date=document.issue_date.isoformat(),
        due_date=document.due_date.isoformat(),
        seller_tax_id=document.seller.tax_id,
        buyer_tax_id=document.buyer.tax_id,
        currency=document.currency,
        subtotal=format_minor(document.subtotal),
        tax_total=format_minor(document.tax_total),
        total=format_minor(document.total),
        events=len(document.audit_log) if document.audit_log is not None else 0
    )

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self, store=None):
        self.store = store or build_store()
        self.billing_service = BillingDocumentService(self.store)

app_state = AppState()

def get_service() -> BillingDocumentService:
    return app_state.billing_service

def get_actor(
    x_actor_id: str = Header(..., min_length=1),
    x_actor_name: str = Header(""),
) -> Actor:
    return Actor(actor_id=x_actor_id, display_name=x_actor_name)

def get_origin(request: Request) -> OriginMeta:
    return OriginMeta(
        address=request.client.host if request.client else None,
        agent=request.headers.get("user-agent"),
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info(f"InvoiceTrail starting with {type(app_state.store).__name__}")
    yield
    logger.info("InvoiceTrail shutting down")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="InvoiceTrail",
    description="Tamper-evident audit chain and sequential numbering for billing documents",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# ERROR HANDLERS
# ============================================

ERROR_STATUS = {
    InvariantViolation: status.HTTP_400_BAD_REQUEST,
    DocumentNotFound: status.HTTP_404_NOT_FOUND,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    DuplicateDocument: status.HTTP_409_CONFLICT,
    AllocationConflict: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    SequenceExhausted: status.HTTP_507_INSUFFICIENT_STORAGE,
}

async def audit_chain_error_handler(request: Request, exc: Exception):
    status_code = ERROR_STATUS[type(exc)]
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)}
    )

for _error_type in ERROR_STATUS:
    app.add_exception_handler(_error_type, audit_chain_error_handler)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "InvoiceTrail",
        "version": API_VERSION,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check():
    """System health check."""
    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        total_documents=len(app_state.store.list_document_ids())
    )

@app.post("/api/v1/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED, tags=["Documents"])
def create_document(
    body: DocumentCreateRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    """
    Create and number a billing document.

    The number is allocated from the (domain, year) counter and the document
    is recorded with its 'created' audit event.
    """
    document = service.create_document(
        seller=body.seller.to_party(),
        buyer=body.buyer.to_party(),
        line_items=[item.to_line_item() for item in body.line_items],
        actor=actor,
        origin=origin,
        domain=body.domain,
        payment_days=body.payment_days,
        currency=body.currency,
        notes=body.notes,
        status=DocumentStatus(body.status),
        payment_method=body.payment_method,
    )
    return document_response(document)

@app.get("/api/v1/documents", response_model=List[DocumentResponse], tags=["Documents"])
def list_documents(
    status_filter: Optional[str] = None,
    service: BillingDocumentService = Depends(get_service),
):
    """List documents, optionally filtered by status."""
    try:
        wanted = DocumentStatus(status_filter) if status_filter else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown status {status_filter}"
        )
    return [document_response(doc) for doc in service.list_documents(wanted)]

@app.get("/api/v1/documents/{document_id}", response_model=DocumentResponse, tags=["Documents"])
def get_document(document_id: str, service: BillingDocumentService = Depends(get_service)):
    """Get document by identifier."""
    return document_response(service.get_document(document_id))

@app.get("/api/v1/documents/{document_id}/audit-trail", response_model=List[AuditEventResponse], tags=["Audit"])
def get_audit_trail(document_id: str, service: BillingDocumentService = Depends(get_service)):
    """Full hash-linked audit trail of a document. Undecodable records are listed as 'unreadable'."""
    document = service.get_document(document_id)
    return [
        AuditEventResponse(
            position=event.position,
            kind="unreadable",
            actor_id="",
            actor_name="",
            timestamp="",
            detail=event.error,
            content_digest=event.content_digest,
            previous_digest=event.previous_digest,
            signature=""
        )
        if isinstance(event, UnreadableEvent) else
        AuditEventResponse(
            position=event.position,
            kind=event.kind.value,
            actor_id=event.actor_id,
            actor_name=event.actor_name,
            timestamp=event.timestamp.isoformat(),
            detail=event.detail,
            content_digest=event.content_digest,
            previous_digest=event.previous_digest,
            signature=event.signature,
            attestation=event.attestation
        )
        for event in document.audit_log
    ]

@app.get("/api/v1/documents/{document_id}/verify", response_model=VerificationReportResponse, tags=["Audit"])
def verify_document(document_id: str, service: BillingDocumentService = Depends(get_service)):
    """
    Verify the audit chain of a document.

    A failed verification is returned with status 200 and `passed: false`.
    """
    return VerificationReportResponse(**service.verify(document_id).to_dict())

@app.get("/api/v1/documents/{document_id}/compliance-payload", response_model=CompliancePayloadResponse, tags=["Compliance"])
def get_compliance_payload(document_id: str, service: BillingDocumentService = Depends(get_service)):
    """Deterministic payload for the scannable code printed on the document."""
    payload = service.compliance_payload(document_id)
    return CompliancePayloadResponse(document_id=document_id, payload=payload.decode("utf-8"))

@app.post("/api/v1/documents/{document_id}/issue", response_model=DocumentResponse, tags=["Lifecycle"])
def issue_document(
    document_id: str,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.issue(document_id, actor, origin)
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/transmit", response_model=DocumentResponse, tags=["Lifecycle"])
def transmit_document(
    document_id: str,
    body: TransmitRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.transmit(document_id, actor, body.recipient, origin)
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/pay", response_model=DocumentResponse, tags=["Lifecycle"])
def pay_document(
    document_id: str,
    body: PayRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.mark_paid(document_id, actor, body.payment_method, origin)
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/overdue", response_model=DocumentResponse, tags=["Lifecycle"])
def mark_document_overdue(
    document_id: str,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.mark_overdue(document_id, actor, origin)
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/void", response_model=DocumentResponse, tags=["Lifecycle"])
def void_document(
    document_id: str,
    body: VoidRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.void(document_id, actor, body.reason, origin)
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/amend", response_model=DocumentResponse, tags=["Lifecycle"])
def amend_document(
    document_id: str,
    body: AmendRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    service.amend_line_items(
        document_id, [item.to_line_item() for item in body.line_items], actor, body.reason, origin
    )
    return document_response(service.get_document(document_id))

@app.post("/api/v1/documents/{document_id}/view", response_model=AuditEventResponse, tags=["Audit"])
def record_view(
    document_id: str,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    event = service.record_view(document_id, actor, origin)
    return AuditEventResponse(**{k: v for k, v in event.to_dict().items() if k != 'origin'})

@app.post("/api/v1/documents/{document_id}/export", response_model=CompliancePayloadResponse, tags=["Compliance"])
def export_document(
    document_id: str,
    body: ExportRequest,
    service: BillingDocumentService = Depends(get_service),
    actor: Actor = Depends(get_actor),
    origin: OriginMeta = Depends(get_origin),
):
    payload = service.export(document_id, actor, body.target, origin)
    return CompliancePayloadResponse(document_id=document_id, payload=payload.decode("utf-8"))

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ivt_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
