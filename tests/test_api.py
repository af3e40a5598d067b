import hashlib
import hmac
import importlib
import json
import os

import pytest
from fastapi.testclient import TestClient

from config import settings
from library import Library

ADMIN_HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def api_module(tmp_path, request, clock, sender, monkeypatch):
    # Per-test DB picked up by api at import time
    for name in list(os.environ):
        if name.startswith("FEATURE_"):
            monkeypatch.delenv(name)
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)

    import api as module
    importlib.reload(module)
    # same database, fixed clock so due dates are predictable
    monkeypatch.setattr(module, "library", Library(db_file=db_file, clock=clock, sender=sender))
    return module


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


@pytest.fixture
def people(client):
    admin = client.post(
        "/users", headers=ADMIN_HEADERS,
        json={"full_name": "Ada Admin", "email": "admin@library.test", "role": "ADMIN"},
    ).json()
    member = client.post(
        "/users", headers=ADMIN_HEADERS, json={"full_name": "Mia Member", "email": "mia@library.test"}
    ).json()
    return admin, member


@pytest.fixture
def book(client):
    response = client.post(
        "/books", headers=ADMIN_HEADERS,
        json={"title": "The Pragmatic Programmer", "author": "Hunt", "total_copies": 1, "price": "50.00"},
    )
    return response.json()


def _borrow(client, admin, member, book):
    request = client.post("/borrow-requests", json={"user_id": member["id"], "book_id": book["id"]}).json()
    return client.post(
        f"/borrow-requests/{request['id']}/approve", headers=ADMIN_HEADERS, json={"admin_id": admin["id"]}
    ).json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_valid_api_key(client, book):
    assert book["available_copies"] == 1
    assert book["price"] == "50.00"
    assert client.get(f"/books/{book['id']}").json()["title"] == "The Pragmatic Programmer"


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"title": "T", "author": "A"})
    assert response.status_code == 403


def test_add_book_validation_error(client):
    response = client.post("/books", headers=ADMIN_HEADERS, json={"title": "", "author": "Someone"})
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_unknown_book_is_404(client):
    response = client.get("/books/missing")
    assert response.status_code == 404
    assert response.json() == {"error": "NOT_FOUND", "detail": "Book missing not found."}


def test_borrow_request_with_idempotency_key(client, people, book):
    _, member = people
    payload = {"user_id": member["id"], "book_id": book["id"]}
    first = client.post("/borrow-requests", json=payload, headers={"Idempotency-Key": "abc-123"})
    second = client.post("/borrow-requests", json=payload, headers={"Idempotency-Key": "abc-123"})
    assert first.status_code == 201
    assert second.json()["id"] == first.json()["id"]
    pending = client.get("/borrow-requests/pending", headers=ADMIN_HEADERS).json()
    assert len(pending) == 1


def test_full_loan_cycle(client, people, book):
    admin, member = people
    approved = _borrow(client, admin, member, book)
    assert approved["status"] == "APPROVED"
    assert approved["due_date"] == "2026-03-09"
    assert client.get(f"/books/{book['id']}").json()["available_copies"] == 0

    repeat = client.post(
        f"/borrow-requests/{approved['id']}/approve", headers=ADMIN_HEADERS, json={"admin_id": admin["id"]}
    )
    assert repeat.status_code == 409
    assert repeat.json()["error"] == "ALREADY_PROCESSED"

    ret = client.post(
        "/return-requests",
        json={"user_id": member["id"], "borrow_record_id": approved["borrow_record_id"], "confirmation_text": "return"},
    )
    assert ret.status_code == 201
    done = client.post(f"/return-requests/{ret.json()['id']}/approve", headers=ADMIN_HEADERS, json={})
    assert done.json()["status"] == "APPROVED"
    assert client.get(f"/books/{book['id']}").json()["available_copies"] == 1


def test_unapproved_user_is_not_eligible(client, people, book):
    admin, member = people
    _borrow(client, admin, member, book)
    other = client.post(
        "/users", headers=ADMIN_HEADERS,
        json={"full_name": "Paul Pending", "email": "paul@library.test", "status": "PENDING"},
    ).json()
    response = client.post("/borrow-requests", json={"user_id": other["id"], "book_id": book["id"]})
    assert response.status_code == 403
    assert response.json()["error"] == "NOT_ELIGIBLE"


def test_non_admin_cannot_approve(client, people, book):
    _, member = people
    request = client.post("/borrow-requests", json={"user_id": member["id"], "book_id": book["id"]}).json()
    response = client.post(
        f"/borrow-requests/{request['id']}/approve", headers=ADMIN_HEADERS, json={"admin_id": member["id"]}
    )
    assert response.status_code == 403
    assert response.json()["error"] == "UNAUTHORIZED"


def test_sweep_endpoint_and_fines(client, people, book):
    admin, member = people
    _borrow(client, admin, member, book)
    response = client.post("/jobs/penalty-sweep", headers=ADMIN_HEADERS, json={"run_date": "2026-03-17"})
    assert response.status_code == 200
    assert response.json()["created"] == 1

    fines = client.get(f"/users/{member['id']}/fines").json()
    assert fines[0]["amount"] == "65.00"
    status = client.get(f"/users/{member['id']}/status").json()
    assert status["is_restricted"] is True
    assert status["can_borrow"] is False


def _fine_and_payment(client, admin, member, book):
    _borrow(client, admin, member, book)
    client.post("/jobs/penalty-sweep", headers=ADMIN_HEADERS, json={"run_date": "2026-03-10"})
    fine = client.get(f"/users/{member['id']}/fines").json()[0]
    payment = client.post("/payments", json={"user_id": member["id"], "fine_ids": [fine["id"]]})
    assert payment.status_code == 201
    return fine, payment.json()


def test_payment_webhook_applies_once(client, people, book):
    admin, member = people
    fine, payment = _fine_and_payment(client, admin, member, book)
    event = {"type": "payment_intent.succeeded", "data": {"object": {"id": payment["external_ref"]}}}

    first = client.post("/webhooks/payments", json=event)
    second = client.post("/webhooks/payments", json=event)
    assert first.json()["handled"] is True
    assert first.json()["already_processed"] is False
    assert second.json()["already_processed"] is True
    assert client.get(f"/payments/{payment['id']}").json()["status"] == "COMPLETED"
    assert client.get(f"/users/{member['id']}/fines").json()[0]["status"] == "PAID"


def test_checkout_session_event(client, people, book):
    admin, member = people
    _, payment = _fine_and_payment(client, admin, member, book)
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "payment_status": "paid", "metadata": {"transaction_id": payment["id"]}}},
    }
    response = client.post("/webhooks/payments", json=event)
    assert response.json()["transaction"]["checkout_session_id"] == "cs_1"


def test_unhandled_webhook_event(client):
    response = client.post("/webhooks/payments", json={"type": "customer.created", "data": {"object": {}}})
    assert response.json() == {"received": True, "handled": False}


def test_webhook_signature(client, people, book, monkeypatch):
    admin, member = people
    _, payment = _fine_and_payment(client, admin, member, book)
    monkeypatch.setattr(settings, "payment_webhook_secret", "whsec_test")
    body = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": payment["external_ref"]}}})

    bad = client.post("/webhooks/payments", content=body, headers={"X-Signature": "nope"})
    assert bad.status_code == 400

    signature = hmac.new(b"whsec_test", body.encode("utf-8"), hashlib.sha256).hexdigest()
    good = client.post("/webhooks/payments", content=body, headers={"X-Signature": signature})
    assert good.status_code == 200
    assert good.json()["transaction"]["status"] == "COMPLETED"


def test_waive_endpoint(client, people, book):
    admin, member = people
    fine, _ = _fine_and_payment(client, admin, member, book)
    response = client.post(
        f"/fines/{fine['id']}/waive", headers=ADMIN_HEADERS, json={"admin_id": admin["id"], "reason": "goodwill"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "WAIVED"


def test_blank_idempotency_key_is_422(client, people, book):
    _, member = people
    response = client.post(
        "/borrow-requests", json={"user_id": member["id"], "book_id": book["id"]}, headers={"Idempotency-Key": "   "}
    )
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert client.get("/borrow-requests/pending", headers=ADMIN_HEADERS).json() == []


def test_prometheus_metrics_disabled_by_default(client, monkeypatch):
    monkeypatch.setattr(settings, "prometheus_enabled", False)
    assert client.get("/metrics").status_code == 404


def test_prometheus_metrics(client, people, book, monkeypatch):
    admin, member = people
    monkeypatch.setattr(settings, "prometheus_enabled", True)
    _borrow(client, admin, member, book)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "library_borrow_requests_approved_total 1.0" in response.text


def test_admin_metrics_snapshot(client, people, book):
    admin, member = people
    _borrow(client, admin, member, book)
    assert client.get("/admin/metrics", headers={"X-API-Key": "invalid-key"}).status_code == 403
    snapshot = client.get("/admin/metrics", headers=ADMIN_HEADERS).json()
    assert snapshot["totals"]["borrow_requests_created"] == 1
    assert snapshot["gauges"]["available_books"] == 0
    assert snapshot["alerts"] == []
