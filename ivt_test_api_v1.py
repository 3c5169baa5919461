"""
InvoiceTrail (IVT) - API Tests
Version: 1.0.0

HTTP adapter: document lifecycle, audit trail, verification and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

import ivt_main_api
from ivt_main_api import AppState, app
from ivt_storage_v1 import InMemoryDocumentStore
from ivt_sequence_v1 import SequenceAllocator
from ivt_billing_service_v1 import BillingDocumentService

from conftest import FakeClock

HEADERS = {"X-Actor-Id": "user-001", "X-Actor-Name": "Dr. Ruiz"}

CREATE_BODY = {
    "seller": {"name": "Clinica Norte SL", "tax_id": "B12345678", "address": "Calle Mayor 1, Madrid"},
    "buyer": {"name": "Ana Garcia", "tax_id": "12345678Z"},
    "line_items": [
        {"description": "Genetic counselling report", "quantity": 1, "unit_price": "150.00", "tax_rate": "21"}
    ],
    "payment_days": 30
}

@pytest.fixture
def api_store(monkeypatch):
    store = InMemoryDocumentStore(timeout=2.0)
    state = AppState(store)
    clock = FakeClock()
    state.billing_service = BillingDocumentService(
        store,
        allocator=SequenceAllocator(store, backoff_seconds=0),
        clock=clock,
        backoff_seconds=0,
    )
    monkeypatch.setattr(ivt_main_api, "app_state", state)
    return store

@pytest.fixture
def client(api_store):
    return TestClient(app)

def create(client, **overrides):
    body = dict(CREATE_BODY, **overrides)
    response = client.post("/api/v1/documents", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()

class TestHealth:

    def test_root(self, client):
        assert client.get("/").json()["service"] == "InvoiceTrail"

    def test_health_counts_documents(self, client):
        create(client)
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["total_documents"] == 1

class TestDocuments:

    def test_create(self, client):
        data = create(client)
        assert data["id"] == "25-0001"
        assert data["status"] == "issued"
        assert data["due_date"] == "2025-04-13"
        assert (data["subtotal"], data["tax_total"], data["total"]) == ("150.00", "31.50", "181.50")
        assert data["events"] == 1

    def test_create_requires_actor(self, client):
        response = client.post("/api/v1/documents", json=CREATE_BODY)
        assert response.status_code == 422

    def test_create_rejects_sub_cent_price(self, client):
        body = dict(CREATE_BODY, line_items=[{"description": "x", "quantity": 1, "unit_price": "1.005"}])
        response = client.post("/api/v1/documents", json=body, headers=HEADERS)
        assert response.status_code == 422

    def test_credit_note_numbering(self, client):
        create(client)
        assert create(client, domain="credit_note")["id"] == "R25-0001"

    def test_get_unknown_document(self, client):
        response = client.get("/api/v1/documents/25-9999")
        assert response.status_code == 404
        assert response.json()["error"] == "DocumentNotFound"

    def test_list_with_status_filter(self, client):
        first = create(client)
        create(client)
        client.post(f"/api/v1/documents/{first['id']}/void", json={"reason": "duplicate"}, headers=HEADERS)

        voided = client.get("/api/v1/documents", params={"status_filter": "voided"}).json()
        assert [d["id"] for d in voided] == [first["id"]]
        assert len(client.get("/api/v1/documents").json()) == 2

    def test_list_unknown_status(self, client):
        response = client.get("/api/v1/documents", params={"status_filter": "archived"})
        assert response.status_code == 400

class TestLifecycle:

    def test_draft_to_paid(self, client):
        document_id = create(client, status="draft")["id"]

        assert client.post(f"/api/v1/documents/{document_id}/issue", headers=HEADERS).json()["status"] == "issued"
        client.post(f"/api/v1/documents/{document_id}/transmit", json={"recipient": "ana@example.com"}, headers=HEADERS)
        paid = client.post(f"/api/v1/documents/{document_id}/pay", json={"payment_method": "card"}, headers=HEADERS)
        assert paid.json()["status"] == "paid"
        assert paid.json()["events"] == 4

        trail = client.get(f"/api/v1/documents/{document_id}/audit-trail").json()
        assert [e["kind"] for e in trail] == ["created", "modified", "transmitted", "paid"]
        assert trail[0]["previous_digest"] == ""
        assert all(trail[i]["previous_digest"] == trail[i - 1]["content_digest"] for i in range(1, 4))

    def test_invalid_transition_is_bad_request(self, client):
        document_id = create(client)["id"]
        client.post(f"/api/v1/documents/{document_id}/pay", json={"payment_method": "cash"}, headers=HEADERS)

        response = client.post(f"/api/v1/documents/{document_id}/void", json={"reason": "late"}, headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"] == "InvariantViolation"

    def test_amend_reattests(self, client):
        document_id = create(client)["id"]
        response = client.post(
            f"/api/v1/documents/{document_id}/amend",
            json={"line_items": [{"description": "Report", "quantity": 2, "unit_price": "100.00"}], "reason": "quantity"},
            headers=HEADERS,
        )
        assert response.json()["total"] == "242.00"
        assert client.get(f"/api/v1/documents/{document_id}/verify").json()["passed"] is True

    def test_view_records_event(self, client):
        document_id = create(client)["id"]
        event = client.post(f"/api/v1/documents/{document_id}/view", headers=HEADERS).json()
        assert event["position"] == 1
        assert event["kind"] == "viewed"
        assert event["actor_id"] == "user-001"

class TestVerificationAndCompliance:

    def test_verify_passes(self, client):
        document_id = create(client)["id"]
        report = client.get(f"/api/v1/documents/{document_id}/verify").json()
        assert report["passed"] is True
        assert report["events_checked"] == 1
        assert report["findings"] == []

    def test_tampered_log_is_reported_not_raised(self, client, api_store):
        document_id = create(client)["id"]
        client.post(f"/api/v1/documents/{document_id}/view", headers=HEADERS)
        api_store.records[document_id]['audit_log'][1]['detail'] = "Document printed"

        response = client.get(f"/api/v1/documents/{document_id}/verify")
        assert response.status_code == 200
        report = response.json()
        assert report["passed"] is False
        assert {f["position"] for f in report["findings"]} == {1}

    def test_undecodable_record_is_reported_not_raised(self, client, api_store):
        document_id = create(client)["id"]
        client.post(f"/api/v1/documents/{document_id}/view", headers=HEADERS)
        api_store.records[document_id]['audit_log'][1]['kind'] = "viewee"

        response = client.get(f"/api/v1/documents/{document_id}/verify")
        assert response.status_code == 200
        report = response.json()
        assert report["passed"] is False
        assert [(f["code"], f["position"]) for f in report["findings"]] == [("unreadable_event", 1)]

        trail = client.get(f"/api/v1/documents/{document_id}/audit-trail")
        assert trail.status_code == 200
        assert [event["kind"] for event in trail.json()] == ["created", "unreadable"]

    def test_compliance_payload(self, client):
        document_id = create(client)["id"]
        payload = client.get(f"/api/v1/documents/{document_id}/compliance-payload").json()["payload"]
        assert payload == (
            '{"b":"150.00","c":"12345678Z","d":"2025-03-14","i":"B12345678",'
            '"n":"25-0001","r":"21","s":"ES","t":"181.50","v":"01"}'
        )

    def test_draft_has_no_compliance_payload(self, client):
        document_id = create(client, status="draft")["id"]
        response = client.get(f"/api/v1/documents/{document_id}/compliance-payload")
        assert response.status_code == 400

    def test_export_records_event(self, client):
        document_id = create(client)["id"]
        exported = client.post(f"/api/v1/documents/{document_id}/export", json={}, headers=HEADERS).json()
        assert exported["document_id"] == document_id

        trail = client.get(f"/api/v1/documents/{document_id}/audit-trail").json()
        assert trail[-1]["kind"] == "exported"
        assert trail[-1]["detail"] == "Exported for tax authority"

class TestErrorMapping:

    def test_sequence_exhausted(self, client, api_store):
        api_store.seed_counter("invoice", "2025", 9999)
        response = client.post("/api/v1/documents", json=CREATE_BODY, headers=HEADERS)
        assert response.status_code == 507
        assert response.json()["error"] == "SequenceExhausted"

    def test_storage_timeout(self, client, api_store):
        api_store.timeout = 0.01
        api_store._lock.acquire()
        try:
            response = client.get("/api/v1/documents/25-0001")
        finally:
            api_store._lock.release()
        assert response.status_code == 503

    def test_metrics_exposed(self, client):
        create(client)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "ivt_audit_events_appended_total" in response.text
        assert "ivt_numbers_allocated_total" in response.text
