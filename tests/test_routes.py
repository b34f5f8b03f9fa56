"""
HTTP-level tests. The lifespan is not run: the fixture wires the in-memory
database, the log-only mailer, a mocked payment client and a recording task
manager onto app.state directly.
"""
import datetime
import json
from unittest.mock import AsyncMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import core_deps
import registration_routes
from conftest import FakeConnection
from errors import UpstreamFailure
from main import app
from payments import PaymentClient
from utils import utcnow

STATE_KEYS = ("mongo", "mailer", "payments", "task_manager")


@pytest.fixture
def payments() -> AsyncMock:
    client = AsyncMock(spec=PaymentClient)
    client.create_order.return_value = "https://pay.example.com/checkout/1"
    return client


@pytest.fixture
def client(db, mailer, payments, task_manager):
    app.state.mongo = FakeConnection(db)
    app.state.mailer = mailer
    app.state.payments = payments
    app.state.task_manager = task_manager
    yield TestClient(app, raise_server_exceptions=False)
    for key in STATE_KEYS:
        delattr(app.state, key)


def _register(client, role_plural, form):
    response = client.post(f"/api/{role_plural}", json=form)
    assert response.status_code == 200, response.text
    return response.json()


def _seed(collection, doc):
    doc.setdefault("_id", ObjectId())
    collection.docs.append(doc)
    return doc


# ============================================================================
# System
# ============================================================================

def test_health(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "ok", "database": True, "background_tasks": 0}


def test_health_without_database(client) -> None:
    app.state.mongo = None
    response = client.get("/api/health")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_database_unavailable(client) -> None:
    app.state.mongo = None
    response = client.post("/api/tickets/validate", json={"ticketId": "TICK-1"})
    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "Database not available"}


def test_unhandled_error_is_generic_500(client, monkeypatch) -> None:
    async def explode(*args, **kwargs):
        raise RuntimeError("driver exploded")

    monkeypatch.setattr(registration_routes, "list_registrations", explode)

    response = client.get("/api/visitors")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Server error"}


# ============================================================================
# Registrations
# ============================================================================

def test_register_then_resubmit(client, db, task_manager) -> None:
    """A resubmission returns the same record and does not queue a second email."""
    first = _register(client, "visitors", {"name": "Asha", "email": "Asha@Example.com"})

    assert first["success"] is True
    assert first["existed"] is False
    assert first["id"] == first["insertedId"]
    assert first["ticket_code"].startswith("TICK-")
    assert first["saved"]["email"] == "asha@example.com"
    assert first["mail"] == {"queued": True, "to": "asha@example.com"}
    assert task_manager.names == ["visitor_confirmation"]

    second = _register(client, "visitors", {"name": "Asha R", "email": "asha@example.com"})

    assert second["existed"] is True
    assert second["id"] == first["id"]
    assert second["ticket_code"] == first["ticket_code"]
    assert second["mail"]["queued"] is False
    assert task_manager.names == ["visitor_confirmation"]
    assert len(db.visitors.docs) == 1


def test_register_approval_role_notifies_admins(client, task_manager) -> None:
    body = _register(client, "exhibitors", {"form": {"email": "booth@acme.com", "company": "Acme"}})

    assert body["saved"]["status"] == "pending"
    assert body["saved"]["company"] == "Acme"
    assert task_manager.names == ["exhibitor_confirmation", "exhibitor_admin_notify"]


def test_register_applies_admin_field_whitelist(client, db) -> None:
    _seed(db.registration_configs, {"page": "visitor", "config": {"fields": [{"name": "Full Name"}]}})

    body = _register(client, "visitors", {"Full Name": "Asha", "Company": "Metro", "email": "a@b.co"})

    assert body["saved"]["full_name"] == "Asha"
    assert body["saved"]["email"] == "a@b.co"
    assert "company" not in body["saved"]


@pytest.mark.parametrize(
    "path, payload",
    [
        ("/api/guests", {"email": "a@b.co"}),
        ("/api/visitors", {}),
        ("/api/visitors", [1, 2, 3]),
    ],
)
def test_register_rejects_bad_requests(client, path, payload) -> None:
    response = client.post(path, json=payload)
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_get_registration(client) -> None:
    saved = _register(client, "speakers", {"email": "talk@example.com"})

    response = client.get(f"/api/speakers/{saved['id']}")
    assert response.status_code == 200
    assert response.json()["item"]["ticket_code"] == saved["ticket_code"]

    assert client.get("/api/speakers/not-an-id").status_code == 400
    assert client.get(f"/api/speakers/{ObjectId()}").status_code == 404


def test_list_registrations(client) -> None:
    _register(client, "visitors", {"email": "one@example.com"})
    _register(client, "visitors", {"email": "two@example.com"})

    body = client.get("/api/visitors", params={"limit": 1}).json()

    assert body["success"] is True
    assert body["count"] == 1
    assert "_id" not in body["items"][0]


def test_admin_key_required_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(core_deps, "ADMIN_API_KEY", "s3cret")

    denied = client.get("/api/visitors")
    assert denied.status_code == 401
    assert denied.json() == {"success": False, "error": "Admin key required"}

    assert client.get("/api/visitors", headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.get("/api/visitors", headers={"X-Admin-Key": "s3cret"}).status_code == 200


def test_confirm_keeps_ticket_code(client) -> None:
    saved = _register(client, "speakers", {"email": "s@example.com"})

    body = client.post(f"/api/speakers/{saved['id']}/confirm", json={"ticket_code": "TICK-OTHER"}).json()

    assert body["changed"] is False
    assert body["note"] == "No changes applied (ticket_code protected)"
    assert body["updated"]["ticket_code"] == saved["ticket_code"]


def test_approve_exhibitor(client, task_manager) -> None:
    saved = _register(client, "exhibitors", {"email": "booth@acme.com"})
    task_manager.names.clear()

    response = client.post(f"/api/exhibitors/{saved['id']}/approve", json={"admin": "ops"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "approved"
    assert body["updated"]["approved_by"] == "ops"
    assert task_manager.names == ["exhibitor_approved_mail", "exhibitor_approved_admin_notify"]


def test_cancel_rejected_for_roles_without_approval(client) -> None:
    saved = _register(client, "visitors", {"email": "v@example.com"})
    response = client.post(f"/api/visitors/{saved['id']}/cancel")
    assert response.status_code == 400


def test_resend_email(client, db) -> None:
    saved = _register(client, "visitors", {"email": "again@example.com", "name": "Again"})

    body = client.post(f"/api/visitors/{saved['id']}/resend-email").json()

    assert body["success"] is True
    assert db.mail_logs.docs[-1]["to"] == "again@example.com"
    assert saved["ticket_code"] in db.mail_logs.docs[-1]["text"]


def test_update_registration(client) -> None:
    saved = _register(client, "speakers", {"email": "s@example.com", "name": "Dr. S"})

    response = client.put(
        f"/api/speakers/{saved['id']}",
        json={
            "designation": "CTO",
            "Bio": "Rail signalling",
            "ticket_code": "TICK-OTHER",
            "status": "approved",
            "registered_at": "2026-03-01T10:00:00",
        },
    )

    assert response.status_code == 200, response.text
    updated = response.json()["updated"]
    assert updated["designation"] == "CTO"
    assert updated["bio"] == "Rail signalling"
    assert updated["ticket_code"] == saved["ticket_code"]
    assert updated["status"] == "new"
    assert updated["registered_at"] == "2026-03-01T10:00:00"


def test_update_registration_errors(client) -> None:
    saved = _register(client, "speakers", {"email": "s2@example.com"})

    empty = client.put(f"/api/speakers/{saved['id']}", json={"unknown_field": 1})
    assert empty.status_code == 400
    assert empty.json() == {"success": False, "error": "No valid fields to update"}

    assert client.put(f"/api/speakers/{ObjectId()}", json={"name": "x"}).status_code == 404
    assert client.put("/api/speakers/not-an-id", json={"name": "x"}).status_code == 400


def test_registration_stats(client, db) -> None:
    _seed(db.awardees, {"ticket_category": "Free Pass"})
    _seed(db.awardees, {"ticket_category": "VIP", "txId": "pay_1"})
    _seed(db.awardees, {"ticket_category": "General", "txId": ""})

    response = client.get("/api/awardees/stats")

    assert response.status_code == 200
    assert response.json() == {"success": True, "total": 3, "paid": 1, "free": 2}


# ============================================================================
# Reminders
# ============================================================================

def test_send_reminder(client, db) -> None:
    saved = _register(client, "visitors", {"email": "rita@example.com", "name": "Rita", "event_date": "2031-05-01"})

    response = client.post("/api/reminders/send", json={"entity": "visitors", "entityId": saved["id"]})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["sentTo"] == "rita@example.com"
    assert body["daysUntil"] > 0
    assert db.mail_logs.docs[-1]["subject"] == "Rita - Reminder: Thu May 01 2031"
    stored = db.visitors.docs[0]
    assert stored["reminders_sent"] == [body["daysUntil"]]
    assert "last_reminder_at" in stored


def test_send_reminder_errors(client) -> None:
    missing_id = client.post("/api/reminders/send", json={"entity": "visitors"})
    assert missing_id.status_code == 400
    assert missing_id.json() == {"success": False, "error": "entityId required"}

    unknown = client.post("/api/reminders/create", json={"entity": "visitors", "entityId": str(ObjectId())})
    assert unknown.status_code == 404


def test_scheduled_reminders(client, db) -> None:
    in_three_days = (utcnow().date() + datetime.timedelta(days=3)).isoformat()
    _seed(db.visitors, {"email": "due@example.com", "event_date": in_three_days, "ticket_code": "TICK-DUE001"})
    _seed(db.visitors, {"email": "done@example.com", "event_date": in_three_days, "reminders_sent": [3]})
    _seed(db.visitors, {"email": "later@example.com", "event_date": "2099-01-01"})
    _seed(db.visitors, {"event_date": in_three_days})

    response = client.post("/api/reminders/scheduled", json={"entity": "visitors", "scheduleDays": [3]})

    assert response.status_code == 200, response.text
    assert response.json() == {"success": True, "processed": 4, "sent": 1, "skipped": 3, "errors": []}
    assert [row["to"] for row in db.mail_logs.docs] == ["due@example.com"]
    assert "ticket-upgrade?" in db.mail_logs.docs[0]["text"]
    assert db.visitors.docs[0]["reminders_sent"] == [3]


def test_sync_admin_fields(client, db) -> None:
    response = client.post("/api/admin/fields/visitors", json={"fields": [{"name": "Company Name"}]})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["collection"] == "visitors"
    assert body["added"] == ["company_name"]


# ============================================================================
# Tickets
# ============================================================================

def test_validate_ticket(client) -> None:
    saved = _register(client, "visitors", {"name": "Asha", "email": "asha@example.com", "company": "Metro"})
    code = saved["ticket_code"]

    for body in ({"ticketId": code}, {"raw": json.dumps({"ticket_code": code})}, {"raw": code.lower()}):
        response = client.post("/api/tickets/validate", json=body)
        assert response.status_code == 200, body
        ticket = response.json()["ticket"]
        assert ticket["ticket_code"] == code
        assert ticket["entity_type"] == "visitors"
        assert ticket["entity_id"] == saved["id"]
        assert ticket["company"] == "Metro"
        assert ticket["raw_row"]["id"] == saved["id"]
        assert ticket["raw_row"]["email"] == "asha@example.com"
        assert "_rawForm" not in ticket["raw_row"]


def test_validate_errors(client) -> None:
    missing = client.post("/api/tickets/validate", json={"ticketId": "TICK-NOPE99"})
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": "Ticket not found"}

    invalid = client.post("/api/tickets/validate", json={})
    assert invalid.status_code == 400
    assert invalid.json() == {"success": False, "error": "Invalid ticket"}


def test_scan_returns_entry_pass(client) -> None:
    saved = _register(client, "partners", {"email": "p@partner.com", "name": "Partner"})

    response = client.post("/api/tickets/scan", json={"ticketId": saved["ticket_code"]})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == f"inline; filename=ticket-{saved['ticket_code']}.png"
    assert response.content.startswith(b"\x89PNG")


def test_scan_refuses_unpaid_ticket(client, db) -> None:
    _seed(db.visitors, {"ticket_code": "TICK-PAY001", "ticket_price": 500, "payment_status": "pending"})

    response = client.post("/api/tickets/scan", json={"ticketId": "TICK-PAY001"})

    assert response.status_code == 402
    assert response.json() == {"success": False, "error": "Payment not completed for this ticket"}


def test_debug_check(client, db) -> None:
    _seed(db.visitors, {"ticket_code": "TICK-DBG001"})

    body = client.post("/api/tickets/debug-check", json={"raw": "TICK-DBG001"}).json()

    assert body["debug"]["ticketKey"] == "TICK-DBG001"
    assert body["debug"]["checkedCollections"][0] == {"coll": "visitors", "sampleHasTicketCode": True}


def test_paid_upgrade(client, payments) -> None:
    response = client.post(
        "/api/tickets/upgrade",
        json={"entity_type": "visitors", "entity_id": str(ObjectId()), "new_category": "VIP", "amount": 999},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "checkoutUrl": "https://pay.example.com/checkout/1"}
    payments.create_order.assert_awaited_once()


def test_paid_upgrade_upstream_failure(client, payments) -> None:
    payments.create_order.side_effect = UpstreamFailure(raw={"success": False, "error": "declined"})

    response = client.post(
        "/api/tickets/upgrade",
        json={"entity_type": "visitors", "entity_id": str(ObjectId()), "new_category": "VIP", "amount": 999},
    )

    assert response.status_code == 502
    assert response.json() == {
        "success": False,
        "error": "Failed to create payment order",
        "raw": {"success": False, "error": "declined"},
    }


def test_free_upgrade(client, db) -> None:
    saved = _register(client, "visitors", {"email": "up@example.com"})

    response = client.post(
        "/api/tickets/upgrade",
        json={"entity_type": "visitor", "entity_id": saved["id"], "new_category": "Premium"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["upgraded"] is True
    assert body["ticket_code"] == saved["ticket_code"]
    assert body["ticket"]["category"] == "Premium"
    assert db.visitors.docs[0]["ticket_category"] == "Premium"


def test_upgrade_requires_fields(client) -> None:
    response = client.post("/api/tickets/upgrade", json={"entity_type": "visitors"})
    assert response.status_code == 400
