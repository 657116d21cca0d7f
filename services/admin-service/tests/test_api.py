from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient

from fakes import FakeBackend, booking
from tourdesk_admin.errors import NetworkError
from tourdesk_admin.main import app, get_backend
from tourdesk_admin.security import issue_token


def _auth_headers(role: str = "ADMIN", sub: str = "admin-1") -> dict[str, str]:
    token = jwt.encode({"sub": sub, "role": role}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def backend():
    b = FakeBackend(
        bookings=[booking("b1", cancelled_at="2024-12-05T10:00:00.000Z", refund_amount=475)],
        users=[{"_id": "cust-1", "role": "CUSTOMER"}, {"_id": "admin-1", "role": "ADMIN"}],
    )
    app.dependency_overrides[get_backend] = lambda: b
    yield b
    app.dependency_overrides.clear()


@pytest.fixture
def client(backend):
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_missing_token_is_401(client):
    assert client.get("/settings").status_code == 401


def test_bad_token_is_401(client):
    r = client.get("/settings", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_customer_cannot_read_settings(client):
    r = client.get("/settings", headers=_auth_headers("CUSTOMER", "cust-1"))
    assert r.status_code == 403


def test_issued_tokens_are_accepted(client):
    token = issue_token("admin-1", "ADMIN")
    r = client.get("/settings", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200, r.text
    assert r.json()["cancellationRules"]["processingFee"] == 5


def test_invalid_settings_are_400_with_field_errors(client, backend):
    r = client.put(
        "/settings",
        json={"cancellationRules": {"rules": [{"daysBeforeStart": 0, "refundPercentage": 0}], "processingFee": 150}},
        headers=_auth_headers(),
    )
    assert r.status_code == 400
    assert "processing_fee" in r.json()["detail"]["errors"]
    assert backend.calls == []


def test_saving_settings_publishes(client, backend, published):
    r = client.put("/settings", json={}, headers=_auth_headers())
    assert r.status_code == 200, r.text
    assert backend.calls[0][0] == "save_settings"
    assert published[0][0] == "settings.updated"


def test_admin_settings_permission_cannot_be_toggled(client, backend, published):
    r = client.post(
        "/settings/permissions/toggle",
        json={"role": "ADMIN", "permission": "canManageSettings"},
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["changed"] is False
    assert r.json()["permissions"]["ADMIN"]["canManageSettings"] is True
    assert backend.calls == []
    assert published == []


def test_toggle_operator_permission(client, backend):
    r = client.post(
        "/settings/permissions/toggle",
        json={"role": "TOUR_OPERATOR", "permission": "canProcessRefunds"},
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["changed"] is True
    assert backend.settings["permissions"]["TOUR_OPERATOR"]["canProcessRefunds"] is True


def test_unknown_permission_is_400(client):
    r = client.post(
        "/settings/permissions/toggle",
        json={"role": "TOUR_OPERATOR", "permission": "canFly"},
        headers=_auth_headers(),
    )
    assert r.status_code == 400


def test_operator_token_role_is_normalized(client):
    r = client.get("/permissions/check", params={"role": "OPERATOR", "permission": "canManagePackages"}, headers=_auth_headers("operator", "op-1"))
    assert r.status_code == 200, r.text
    assert r.json()["permitted"] is True


def test_refund_quote_amounts_are_strings(client):
    r = client.get("/refunds/b1/quote", headers=_auth_headers())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["initiator"] == "CUSTOMER"
    assert body["days_before_start"] == 10
    assert body["net"] == "475.00"
    assert body["fee"] == "25.00"


def test_refund_quote_unknown_booking_is_404(client):
    assert client.get("/refunds/nope/quote", headers=_auth_headers()).status_code == 404


def test_refund_queue(client):
    r = client.get("/refunds", headers=_auth_headers())
    assert r.status_code == 200, r.text
    body = r.json()
    assert [row["booking_id"] for row in body["items"]] == ["b1"]
    assert Decimal(body["pending_amount"]) == Decimal("475")


def test_process_refund_publishes(client, backend, published):
    r = client.post("/refunds/b1/process", json={}, headers=_auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == "475.00"
    assert backend.calls == [("execute_refund", "b1", "475.00")]
    assert published == [("refund.processed", {"booking_id": "b1", "amount": "475.00"})]


def test_operator_cannot_process_refunds(client):
    r = client.post("/refunds/b1/process", json={}, headers=_auth_headers("TOUR_OPERATOR", "op-1"))
    assert r.status_code == 403


def test_pricing_quote(client):
    r = client.post(
        "/pricing/quote",
        json={"base_price": "1000", "days_before_departure": 10, "party_size": 1},
        headers=_auth_headers("TOUR_OPERATOR", "op-1"),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert Decimal(body["final_price"]) == Decimal("1000")
    assert Decimal(body["operator_payout"]) == Decimal("750")


def test_announcement_validation_is_422(client):
    r = client.post(
        "/announcements",
        json={"title": "x", "message": "y", "targetAudience": ["ALL", "ADMINS"]},
        headers=_auth_headers(),
    )
    assert r.status_code == 422


def test_chat_finds_admin_and_sends(client, backend):
    headers = _auth_headers("CUSTOMER", "cust-1")
    assert client.get("/chat/admin", headers=headers).json()["_id"] == "admin-1"

    r = client.post("/chat/admin-1/messages", json={"content": "Hello"}, headers=headers)
    assert r.status_code == 200, r.text
    assert [m["content"] for m in r.json()["items"]] == ["Hello"]

    r = client.post("/chat/admin-1/messages", json={"content": "   "}, headers=headers)
    assert r.status_code == 400


def test_revoked_operator_permission_is_enforced(client, backend):
    operator = _auth_headers("TOUR_OPERATOR", "op-1")
    assert client.get("/packages", headers=operator).status_code == 200

    r = client.post(
        "/settings/permissions/toggle",
        json={"role": "TOUR_OPERATOR", "permission": "canManagePackages"},
        headers=_auth_headers(),
    )
    assert r.json()["changed"] is True

    assert client.get("/permissions/check", params={"role": "TOUR_OPERATOR", "permission": "canManagePackages"}, headers=operator).json()["permitted"] is False
    assert client.get("/packages", headers=operator).status_code == 403


def test_granted_customer_permission_opens_endpoint(client, backend):
    customer = _auth_headers("CUSTOMER", "cust-1")
    assert client.get("/contacts", headers=customer).status_code == 403

    client.post(
        "/settings/permissions/toggle",
        json={"role": "CUSTOMER", "permission": "canManageUsers"},
        headers=_auth_headers(),
    )
    assert client.get("/contacts", headers=customer).status_code == 200


def test_stored_document_cannot_lock_admin_out(client, backend):
    backend.settings = {"permissions": {"ADMIN": {"canManageSettings": False}}}
    r = client.get("/settings", headers=_auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["permissions"]["ADMIN"]["canManageSettings"] is True


def test_unreachable_settings_fall_back_to_default_permissions(client, backend):
    async def down(session):
        raise NetworkError("backend down")

    backend.get_settings = down
    assert client.get("/packages", headers=_auth_headers("TOUR_OPERATOR", "op-1")).status_code == 200
    assert client.get("/packages", headers=_auth_headers("CUSTOMER", "cust-1")).status_code == 403


def test_live_announcements_for_caller_role(client, backend):
    backend.announcements = [
        {"_id": "a1", "isActive": True, "startDate": "2024-01-01", "targetAudience": ["ALL"]},
        {"_id": "a2", "isActive": True, "startDate": "2024-01-01", "targetAudience": ["OPERATORS"]},
        {"_id": "a3", "isActive": True, "startDate": "2024-01-01", "targetAudience": ["CUSTOMERS"]},
        {"_id": "a4", "isActive": False, "startDate": "2024-01-01", "targetAudience": ["ALL"]},
    ]
    r = client.get("/announcements/live", headers=_auth_headers("CUSTOMER", "cust-1"))
    assert r.status_code == 200, r.text
    assert [a["_id"] for a in r.json()["items"]] == ["a1", "a3"]
    assert ("active_announcements", "CUSTOMERS") in backend.calls

    assert client.get("/announcements/live").status_code == 401


def test_toggling_announcement_publishes_update(client, backend, published):
    backend.announcements = [{"_id": "a1", "title": "Old", "isActive": True}]
    r = client.post("/announcements/a1/toggle", headers=_auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["isActive"] is False
    assert published == [("announcement.updated", {"id": "a1", "isActive": False})]
