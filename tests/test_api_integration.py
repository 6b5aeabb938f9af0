"""
Integration tests for the Loan Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import base64
import threading

import pytest
from fastapi.testclient import TestClient

from loan_ledger.api import create_app, status_code_for
from loan_ledger.api.dependencies import LedgerSystem
from loan_ledger.config import LedgerConfig
from loan_ledger.exceptions import AggregateSyncError, ConflictError, DependencyError, LedgerError, NotFoundError
from loan_ledger.storage import InMemoryStorage
from loan_ledger.uploads import InMemoryUploadService


OWNER = {"X-Owner-Id": "OWNER001"}
OTHER_OWNER = {"X-Owner-Id": "OWNER002"}

REFERENCE_LOAN = {
    "client_id": "CLIENT001",
    "principal": "1000",
    "interest_rate": "10",
    "term_months": 12,
    "payment_frequency": "monthly",
    "start_date": "2024-01-15",
}


class GatedUploadService(InMemoryUploadService):
    """Holds each upload until the test releases it"""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def upload(self, file, folder):
        self.started.set()
        self.release.wait(timeout=5)
        return super().upload(file, folder)


@pytest.fixture
def system():
    """In-memory ledger system for a single test"""
    config = LedgerConfig(storage_backend="memory", conflict_backoff_seconds=0)
    ledger = LedgerSystem(config=config, storage=InMemoryStorage())
    yield ledger
    ledger.close()


@pytest.fixture
def client(system):
    """Create a test client wired to the test ledger system"""
    return TestClient(create_app(system))


@pytest.fixture
def loan(client):
    r = client.post("/loans", json=REFERENCE_LOAN, headers=OWNER)
    assert r.status_code == 201
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()

    def test_owner_header_required(self, client):
        r = client.get("/loans")
        assert r.status_code == 401


class TestLoanFlow:
    """End-to-end loan management tests"""

    def test_create_loan(self, loan):
        assert loan["status"] == "active"
        assert loan["total_amount"] == "2200.00"
        assert loan["payment_amount"] == "183.33"
        assert loan["remaining_balance"] == "2200.00"
        assert loan["total_payments"] == 12
        assert loan["next_payment_date"] == "2024-01-15"
        assert loan["owner_id"] == "OWNER001"
        assert loan["currency"] == "DOP"

    def test_invalid_terms(self, client):
        r = client.post("/loans", json=dict(REFERENCE_LOAN, principal="0"), headers=OWNER)
        assert r.status_code == 422
        assert r.json()["error"] == "ValidationError"

        r = client.post("/loans", json=dict(REFERENCE_LOAN, payment_frequency="daily"), headers=OWNER)
        assert r.status_code == 422

    def test_get_and_list(self, client, loan):
        r = client.get(f"/loans/{loan['id']}", headers=OWNER)
        assert r.status_code == 200
        assert r.json()["id"] == loan["id"]

        r = client.get("/loans", params={"client_id": "CLIENT001"}, headers=OWNER)
        assert [l["id"] for l in r.json()["loans"]] == [loan["id"]]

        r = client.get("/loans", params={"status": "completed"}, headers=OWNER)
        assert r.json()["loans"] == []

    def test_other_owner_cannot_see_loan(self, client, loan):
        assert client.get(f"/loans/{loan['id']}", headers=OTHER_OWNER).status_code == 404
        assert client.get("/loans", headers=OTHER_OWNER).json()["loans"] == []
        assert client.delete(f"/loans/{loan['id']}", headers=OTHER_OWNER).status_code == 404

    def test_unknown_loan(self, client):
        r = client.get("/loans/missing", headers=OWNER)
        assert r.status_code == 404
        assert r.json()["error"] == "NotFoundError"

    def test_schedule(self, client, loan):
        r = client.get(f"/loans/{loan['id']}/schedule", headers=OWNER)
        schedule = r.json()["schedule"]
        assert len(schedule) == 12
        assert schedule[0] == {
            "number": 1, "due_date": "2024-01-15", "amount": "183.33", "cumulative_due": "183.33"
        }
        assert schedule[-1]["cumulative_due"] == "2200.00"

    def test_update_terms(self, client, loan):
        client.post(f"/loans/{loan['id']}/payments",
                    json={"amount": "183.33", "confirm": True}, headers=OWNER)

        r = client.patch(f"/loans/{loan['id']}", json={"term_months": 6}, headers=OWNER)

        assert r.status_code == 200
        data = r.json()
        assert data["total_amount"] == "1600.00"
        assert data["paid_amount"] == "183.33"
        assert data["remaining_balance"] == "1416.67"
        assert data["completed_payments"] == 0

    def test_delete_loan(self, client, system, loan):
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "50"}, headers=OWNER)

        r = client.delete(f"/loans/{loan['id']}", headers=OWNER)

        assert r.status_code == 200
        assert client.get(f"/loans/{loan['id']}", headers=OWNER).status_code == 404
        aggregate = client.get("/reports/clients/CLIENT001").json()
        assert aggregate["loans"] == 0
        assert aggregate["total_debt"] == "0.00"

    def test_overdue_scan(self, client, loan):
        r = client.post("/loans/overdue-scan", json={"as_of": "2024-02-01"})
        assert r.json() == {"marked_late": [loan["id"]], "count": 1}
        assert client.get(f"/loans/{loan['id']}", headers=OWNER).json()["status"] == "late"


class TestPaymentFlow:
    """End-to-end payment tests"""

    def test_submit_then_confirm(self, client, loan):
        r = client.post(f"/loans/{loan['id']}/payments",
                        json={"amount": "183.33", "payment_date": "2024-01-15", "method": "bank_transfer"},
                        headers=OWNER)
        assert r.status_code == 201
        payment = r.json()
        assert payment["status"] == "pending"

        # Pending payments have no ledger effect
        assert client.get(f"/loans/{loan['id']}", headers=OWNER).json()["paid_amount"] == "0.00"

        r = client.post(f"/payments/{payment['id']}/confirm", headers=OWNER)
        assert r.status_code == 200
        assert r.json()["status"] == "confirmed"

        data = client.get(f"/loans/{loan['id']}", headers=OWNER).json()
        assert data["paid_amount"] == "183.33"
        assert data["remaining_balance"] == "2016.67"
        assert data["completed_payments"] == 1
        assert data["payment_progress"] == "8.33"
        assert data["next_payment_date"] == "2024-02-15"

    def test_status_endpoint(self, client, loan):
        payment = client.post(f"/loans/{loan['id']}/payments", json={"amount": "10"}, headers=OWNER).json()

        r = client.put(f"/payments/{payment['id']}/status", json={"status": "rejected"}, headers=OWNER)
        assert r.json()["status"] == "rejected"

        r = client.put(f"/payments/{payment['id']}/status", json={"status": "confirmed"}, headers=OWNER)
        assert r.status_code == 409
        assert r.json()["error"] == "IllegalTransitionError"

        r = client.put(f"/payments/{payment['id']}/status", json={"status": "refunded"}, headers=OWNER)
        assert r.status_code == 422

    def test_payment_with_receipt(self, client, system, loan):
        receipt = {"filename": "receipt.jpg", "content_base64": base64.b64encode(b"jpeg").decode()}

        r = client.post(f"/loans/{loan['id']}/payments",
                        json={"amount": "20", "receipt": receipt}, headers=OWNER)

        url = r.json()["receipt_image"]
        assert url.startswith("memory://receipts/")
        assert system.upload_service.files[url].content == b"jpeg"

    def test_slow_receipt_upload_does_not_block_other_loans(self):
        uploads = GatedUploadService()
        config = LedgerConfig(storage_backend="memory", conflict_backoff_seconds=0)
        ledger = LedgerSystem(config=config, storage=InMemoryStorage(), upload_service=uploads)
        receipt = {"filename": "receipt.jpg", "content_base64": base64.b64encode(b"jpeg").decode()}
        responses = {}

        with TestClient(create_app(ledger)) as client:
            first = client.post("/loans", json=REFERENCE_LOAN, headers=OWNER).json()
            second = client.post("/loans", json=dict(REFERENCE_LOAN, client_id="CLIENT002"),
                                 headers=OWNER).json()

            def pay_with_receipt():
                responses["receipt"] = client.post(f"/loans/{first['id']}/payments",
                                                   json={"amount": "20", "receipt": receipt}, headers=OWNER)

            worker = threading.Thread(target=pay_with_receipt)
            worker.start()
            try:
                assert uploads.started.wait(timeout=5)

                r = client.post(f"/loans/{second['id']}/payments", json={"amount": "30"}, headers=OWNER)

                assert r.status_code == 201
                # The upload is still held while the other payment completed
                assert worker.is_alive()
            finally:
                uploads.release.set()
                worker.join(timeout=5)

        assert responses["receipt"].status_code == 201
        ledger.close()

    def test_invalid_receipt(self, client, loan):
        receipt = {"filename": "receipt.jpg", "content_base64": "not base64!"}
        r = client.post(f"/loans/{loan['id']}/payments",
                        json={"amount": "20", "receipt": receipt}, headers=OWNER)
        assert r.status_code == 422

    def test_invalid_amount(self, client, loan):
        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "-5"}, headers=OWNER)
        assert r.status_code == 422

    def test_correct_confirmed_payment(self, client, loan):
        payment = client.post(f"/loans/{loan['id']}/payments",
                              json={"amount": "100", "confirm": True}, headers=OWNER).json()

        r = client.patch(f"/payments/{payment['id']}", json={"amount": "150"}, headers=OWNER)

        assert r.json()["amount"] == "150.00"
        assert client.get(f"/loans/{loan['id']}", headers=OWNER).json()["paid_amount"] == "150.00"

    def test_delete_payment(self, client, loan):
        pending = client.post(f"/loans/{loan['id']}/payments", json={"amount": "10"}, headers=OWNER).json()
        confirmed = client.post(f"/loans/{loan['id']}/payments",
                                json={"amount": "10", "confirm": True}, headers=OWNER).json()

        assert client.delete(f"/payments/{pending['id']}", headers=OWNER).status_code == 200
        assert client.get(f"/payments/{pending['id']}", headers=OWNER).status_code == 404
        assert client.delete(f"/payments/{confirmed['id']}", headers=OWNER).status_code == 409

    def test_other_owner_cannot_touch_payment(self, client, loan):
        payment = client.post(f"/loans/{loan['id']}/payments", json={"amount": "10"}, headers=OWNER).json()
        assert client.post(f"/payments/{payment['id']}/confirm", headers=OTHER_OWNER).status_code == 404

    def test_list_payments(self, client, loan):
        for day in ("2024-01-10", "2024-03-10", "2024-02-10"):
            client.post(f"/loans/{loan['id']}/payments",
                        json={"amount": "10", "payment_date": day}, headers=OWNER)

        r = client.get(f"/loans/{loan['id']}/payments", headers=OWNER)
        assert [p["payment_date"] for p in r.json()["payments"]] == ["2024-03-10", "2024-02-10", "2024-01-10"]


class TestReports:

    def test_portfolio(self, client, loan):
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "200", "confirm": True}, headers=OWNER)

        data = client.get("/reports/portfolio", headers=OWNER).json()

        assert data["total_loans"] == 1
        assert data["total_lent"] == "1000.00"
        assert data["total_recovered"] == "200.00"
        assert data["pending_collection"] == "2000.00"

    def test_payment_summary(self, client, loan):
        client.post(f"/loans/{loan['id']}/payments",
                    json={"amount": "25", "payment_date": "2024-01-20", "confirm": True}, headers=OWNER)

        data = client.get(f"/reports/loans/{loan['id']}/payments", headers=OWNER).json()

        assert data["confirmed_total"] == "25.00"
        assert data["recent_payments"][0]["payment_date"] == "2024-01-20"

    def test_client_aggregates_and_rebuild(self, client, loan):
        assert client.get("/reports/clients/CLIENT001").json()["total_debt"] == "2200.00"
        assert client.get("/reports/clients/NOBODY").status_code == 404

        r = client.post("/reports/clients/CLIENT001/rebuild", headers=OWNER)
        assert r.json()["loans"] == 1

    def test_audit_verify(self, client, loan):
        data = client.get("/reports/audit/verify").json()
        assert data["valid"]
        assert data["total_events"] >= 1


class TestErrorMapping:

    def test_status_codes(self):
        assert status_code_for(NotFoundError("x")) == 404
        assert status_code_for(ConflictError("x")) == 409
        assert status_code_for(DependencyError("x", operation="store:loans")) == 502
        assert status_code_for(AggregateSyncError("x", loan_id="L", client_id="C")) == 502
        assert status_code_for(LedgerError("x")) == 500
