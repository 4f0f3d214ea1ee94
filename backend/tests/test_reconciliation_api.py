"""
API Tests for the Misfits Reconciliation Endpoints

Exercises the FastAPI app with the database session replaced by a mock:
- GET /api/misfits with suggestions
- POST /api/misfits/connect actions and error mapping
- POST /api/transactions/{id}/link and /dispute
- POST /api/misfits/bulk
- GET /api/misfits/status

Run with: pytest tests/test_reconciliation_api.py -v
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from database.connection import get_db, get_session_factory
from reconciliation.models import BatchResult, CreateTicketResult, ItemResult, ResolvedGaps
from reconciliation.registry import BulkAction
from server import app

PARENT_ID = "4e5a1e9e-35a3-41ab-bbb0-22cc0ac99fe4"


def result(first=None, rows=None, scalar=None):
    mock_result = MagicMock()
    mock_result.mappings.return_value.first.return_value = first
    mock_result.mappings.return_value.all.return_value = rows or []
    mock_result.scalar.return_value = scalar
    return mock_result


def tx_row(**overrides):
    row = {
        "id": "row-1",
        "transaction_id": "TX-1",
        "client_id": None,
        "reference_id": None,
        "reference_type": None,
        "cost": Decimal("-50.00"),
        "fee_type": "Credit",
        "charge_date": date(2024, 3, 1),
        "care_ticket_id": None,
        "dispute_status": None,
        "additional_details": None,
        "company_name": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


@pytest.fixture
def client(mock_db):
    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: MagicMock()
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestFeedEndpoint:
    """Test GET /api/misfits."""

    def test_feed_includes_suggestions(self, client, mock_db):
        mock_db.execute.side_effect = [
            result(rows=[]),
            result(rows=[tx_row(reference_id="SHIP123", reference_type="Shipment")]),
            result(rows=[{
                "id": "t-1",
                "ticket_number": 1001,
                "ticket_type": "Claim",
                "status": "Credit Requested",
                "shipment_id": "SHIP123",
                "credit_amount": Decimal("0"),
                "client_id": None,
                "created_at": datetime(2024, 3, 2, tzinfo=timezone.utc),
                "company_name": None,
            }]),
        ]

        response = client.get("/api/misfits")

        assert response.status_code == 200
        data = response.json()
        assert data["totalCount"] == 1
        assert data["data"][0]["transactionId"] == "TX-1"
        assert data["data"][0]["missingTicket"] is True
        assert data["availableTickets"][0]["ticketNumber"] == 1001
        suggestion = data["suggestions"]["TX-1"]
        assert suggestion["confidence"] == "exact"
        assert suggestion["reason"] == "Same shipment ID"
        assert suggestion["ticket"]["id"] == "t-1"

    def test_filtered_feed(self, client, mock_db):
        mock_db.execute.side_effect = [result(scalar=0), result(rows=[]), result(rows=[])]

        response = client.get("/api/misfits", params={"type": "credit", "limit": 10})

        assert response.status_code == 200
        assert response.json() == {
            "data": [], "availableTickets": [], "totalCount": 0, "suggestions": {}
        }

    def test_invalid_filter_type(self, client, mock_db):
        response = client.get("/api/misfits", params={"type": "bogus"})

        assert response.status_code == 400
        assert "Invalid type" in response.json()["error"]
        mock_db.execute.assert_not_awaited()

    def test_status(self, client):
        response = client.get("/api/misfits/status")

        assert response.status_code == 200
        data = response.json()
        assert [r["rule"] for r in data["match_rules"]] == [
            "SHIPMENT", "BRAND_AMOUNT_DATE", "BRAND_AMOUNT"
        ]
        assert data["amount_tolerance"] == 0.01
        assert data["date_window_days"] == 30


class TestConnectEndpoint:
    """Test POST /api/misfits/connect."""

    def test_connect_ticket_resolves_gaps(self, client, mock_db):
        mock_db.execute.side_effect = [
            result(tx_row()),
            result({"id": "t-9", "client_id": "brandB", "shipment_id": "SHIP9",
                    "status": "Credit Requested", "credit_amount": None}),
            result({"id": "row-1"}),
        ]

        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-1", "action": "connect_ticket", "careTicketId": "t-9"
        })

        assert response.status_code == 200
        assert response.json()["resolved"] == {"brand": True, "shipment": True, "ticket": True}

    def test_already_linked_is_409(self, client, mock_db):
        mock_db.execute.side_effect = [result(tx_row(care_ticket_id="t-1"))]

        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-1", "action": "connect_ticket", "careTicketId": "t-9"
        })

        assert response.status_code == 409
        assert response.json() == {"error": "Transaction already linked to a ticket"}
        mock_db.rollback.assert_awaited_once()

    def test_unknown_transaction_is_404(self, client, mock_db):
        mock_db.execute.side_effect = [result(None)]

        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-404", "action": "connect_ticket", "careTicketId": "t-9"
        })

        assert response.status_code == 404
        assert response.json() == {"error": "Transaction not found"}

    def test_missing_ticket_id(self, client, mock_db):
        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-1", "action": "connect_ticket"
        })

        assert response.status_code == 400
        assert "careTicketId" in response.json()["error"]

    def test_invalid_action(self, client):
        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-1", "action": "merge"
        })

        assert response.status_code == 400
        assert "Invalid action" in response.json()["error"]

    def test_missing_transaction_id(self, client):
        response = client.post("/api/misfits/connect", json={"action": "set_brand"})

        assert response.status_code == 400
        assert "transactionId" in response.json()["error"]

    def test_create_ticket(self, client):
        with patch(
            "reconciliation.endpoints.reconciliation_api.MisfitReconciliationService"
        ) as service_cls:
            service_cls.return_value.create_ticket = AsyncMock(return_value=CreateTicketResult(
                ticket_id="t-new",
                ticket_number=1077,
                auto_resolved=True,
                status="Resolved",
                resolved=ResolvedGaps(ticket=True),
            ))
            response = client.post(
                "/api/misfits/connect",
                json={"transactionId": "TX-1", "action": "create_ticket", "description": "Lost"},
                headers={"X-User-Id": "ops@example.com"}
            )

        assert response.status_code == 200
        data = response.json()
        assert data["ticketNumber"] == 1077
        assert data["autoResolved"] is True
        service_cls.return_value.create_ticket.assert_awaited_once_with(
            "TX-1", shipment_id=None, description="Lost"
        )
        assert service_cls.call_args.kwargs["actor"] == "ops@example.com"

    def test_set_brand_to_parent_needs_confirmation(self, client, mock_db):
        response = client.post("/api/misfits/connect", json={
            "transactionId": "TX-1", "action": "set_brand", "clientId": PARENT_ID
        })

        assert response.status_code == 400
        mock_db.execute.assert_not_awaited()


class TestTransactionEndpoints:
    """Test the per-transaction fan-out targets."""

    def test_link_brand(self, client, mock_db):
        mock_db.execute.side_effect = [
            result(tx_row()),
            result({"id": "brandA", "merchant_id": "M-1"}),
            result({"id": "row-1"}),
        ]

        response = client.post("/api/transactions/TX-1/link", json={"clientId": "brandA"})

        assert response.status_code == 200
        assert response.json()["resolved"]["brand"] is True

    def test_link_requires_client(self, client):
        response = client.post("/api/transactions/TX-1/link", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "clientId is required"}

    def test_dispute(self, client, mock_db):
        mock_db.execute.side_effect = [result(tx_row()), result({"dispute_status": "disputed"})]

        response = client.post("/api/transactions/TX-1/dispute", json={"reason": "Duplicate"})

        assert response.status_code == 200
        assert response.json()["disputeStatus"] == "disputed"

    def test_classify_credit(self, client, mock_db):
        mock_db.execute.side_effect = [
            result(tx_row(client_id="c-1", cost=Decimal("-20.00"))),
            result({"id": "r-1", "markup_value": Decimal("10")}),
            result(None),
        ]

        response = client.post("/api/misfits/classify-credit", json={
            "transactionId": "TX-1", "action": "set_portion", "shippingPortion": 5
        })

        assert response.status_code == 200
        assert response.json()["billedAmount"] == -20.5


class TestBulkEndpoint:
    """Test POST /api/misfits/bulk."""

    def test_bulk_reports_per_item(self, client):
        batch = BatchResult(action=BulkAction.DISPUTE, results=[
            ItemResult(id="a", ok=True),
            ItemResult(id="b", ok=False, error="Transaction not found", status_code=404),
        ])
        with patch(
            "reconciliation.endpoints.reconciliation_api.BulkReconciliationService"
        ) as service_cls:
            service_cls.return_value.apply = AsyncMock(return_value=batch)
            response = client.post("/api/misfits/bulk", json={
                "action": "dispute", "transactionIds": ["a", "b"]
            })

        assert response.status_code == 200
        data = response.json()
        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["results"][1]["error"] == "Transaction not found"

    def test_bulk_attribute_without_client(self, client):
        response = client.post("/api/misfits/bulk", json={
            "action": "attribute", "transactionIds": ["a"]
        })

        assert response.status_code == 400
        assert response.json() == {"error": "clientId is required for attribute"}

    def test_bulk_invalid_action(self, client):
        response = client.post("/api/misfits/bulk", json={
            "action": "delete", "transactionIds": ["a"]
        })

        assert response.status_code == 400
