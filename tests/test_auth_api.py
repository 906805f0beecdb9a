import dataclasses
from datetime import timezone
from functools import partial

from fastapi.testclient import TestClient

from vpn_control.main import create_app

from .helpers import PASSWORD, PHONE, register_account


def test_send_otp_never_returns_code(client, sms):
    resp = client.post("/auth/send-otp", json={"phone_number": "+1 999-555-0100"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"phone_number": PHONE, "expires_in": 300}

    code = sms.last_code(PHONE)
    assert code is not None
    assert code not in resp.text


def test_send_otp_invalid_phone(client, sms):
    resp = client.post("/auth/send-otp", json={"phone_number": "12345"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert sms.outbox == []


def test_send_otp_rate_limited(client):
    for _ in range(5):
        assert client.post("/auth/send-otp", json={"phone_number": PHONE}).status_code == 200
    resp = client.post("/auth/send-otp", json={"phone_number": PHONE})
    assert resp.status_code == 429


def test_register_then_login(app, client, sms):
    resp = register_account(client, sms)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["token"]
    assert body["data"]["phone_number"] == PHONE
    user_id = body["data"]["user_id"]
    account = client.portal.call(app.state.db.get_account, PHONE)
    assert body["data"]["created_at"] == int(account.created_at.replace(tzinfo=timezone.utc).timestamp())

    resp = client.post("/auth/login", json={"phone_number": PHONE, "password": PASSWORD})
    assert resp.status_code == 200
    token = resp.json()["token"]
    assert resp.json()["data"]["user_id"] == user_id
    assert token != body["token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["phone_number"] == PHONE
    assert me.json()["data"]["role"] == "user"


def test_register_duplicate_is_conflict(client, sms, app):
    assert register_account(client, sms).status_code == 201
    original = client.portal.call(app.state.db.get_account, PHONE).password_hash

    resp = register_account(client, sms, password="Other5678")
    assert resp.status_code == 409
    assert client.portal.call(app.state.db.get_account, PHONE).password_hash == original


def test_register_wrong_otp(client, sms):
    client.post("/auth/send-otp", json={"phone_number": PHONE})
    code = sms.last_code(PHONE)
    wrong = "000000" if code != "000000" else "111111"
    resp = client.post("/auth/register", json={"phone_number": PHONE, "password": PASSWORD, "otp": wrong})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid OTP"


def test_register_without_otp_request(client):
    resp = client.post("/auth/register", json={"phone_number": PHONE, "password": PASSWORD, "otp": "123456"})
    assert resp.status_code == 400


def test_register_weak_password_keeps_otp(client, sms):
    client.post("/auth/send-otp", json={"phone_number": PHONE})
    code = sms.last_code(PHONE)
    resp = client.post("/auth/register", json={"phone_number": PHONE, "password": "weak", "otp": code})
    assert resp.status_code == 400

    # The challenge was not consumed by the rejected request
    resp = client.post("/auth/register", json={"phone_number": PHONE, "password": PASSWORD, "otp": code})
    assert resp.status_code == 201


def test_otp_is_single_use(client, sms):
    register_account(client, sms)
    code = sms.last_code(PHONE)
    resp = client.post("/auth/register", json={"phone_number": PHONE, "password": PASSWORD, "otp": code})
    assert resp.status_code == 400


def test_login_failures_are_generic(client, sms):
    register_account(client, sms)

    wrong_password = client.post("/auth/login", json={"phone_number": PHONE, "password": "Wrong1234"})
    unknown = client.post("/auth/login", json={"phone_number": "+19995550999", "password": PASSWORD})

    assert wrong_password.status_code == unknown.status_code == 401
    assert wrong_password.json() == unknown.json()
    assert unknown.json()["message"] == "Invalid phone number or password"


def test_login_disabled_account(app, client, sms):
    register_account(client, sms)
    client.portal.call(partial(app.state.db.update_account, PHONE, active=False))

    resp = client.post("/auth/login", json={"phone_number": PHONE, "password": PASSWORD})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid phone number or password"


def test_login_missing_fields(client):
    resp = client.post("/auth/login", json={"phone_number": PHONE})
    assert resp.status_code == 400


def test_refresh_too_early(client, sms):
    token = register_account(client, sms).json()["token"]
    resp = client.post("/auth/refresh", json={"token": token})
    assert resp.status_code == 401
    assert "not close to expiration" in resp.json()["message"]


def test_refresh_near_expiry(settings, endnode, sms):
    # Tokens that live shorter than the refresh window can be refreshed at once
    short_lived = dataclasses.replace(settings, token_ttl=1800)
    with TestClient(create_app(short_lived, otp_sender=sms)) as client:
        token = register_account(client, sms).json()["token"]
        resp = client.post("/auth/refresh", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["token"]


def test_logout_requires_token(client, user_headers):
    assert client.post("/auth/logout").status_code == 401
    resp = client.post("/auth/logout", headers=user_headers)
    assert resp.status_code == 200
    # Stateless: the token stays usable until it expires
    assert client.get("/auth/me", headers=user_headers).status_code == 200


def test_failed_logout_is_audited(client, sms, admin_headers):
    token = register_account(client, sms).json()["token"]
    forged = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    assert client.post("/auth/logout").status_code == 401
    assert client.post("/auth/logout", headers={"Authorization": f"Bearer {forged}"}).status_code == 401

    events = client.get("/api/logs", params={"limit": 100}, headers=admin_headers).json()["data"]
    failures = [e for e in events if e["action"] == "LOGOUT_FAILED"]
    assert len(failures) == 2
    assert {e["username"] for e in failures} == {"", PHONE}
    assert not any(e["action"] == "USER_LOGOUT" for e in events)


def test_refresh_without_token_is_audited(client, admin_headers):
    resp = client.post("/auth/refresh", json={"token": ""})
    assert resp.status_code == 400

    events = client.get("/api/logs", params={"limit": 100}, headers=admin_headers).json()["data"]
    assert [e["details"] for e in events if e["action"] == "TOKEN_REFRESH_FAILED"] == ["Token is required"]


def test_protected_routes_reject_bad_tokens(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401
    resp = client.get("/auth/me", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401
    assert resp.json()["message"].startswith("Invalid token")


def test_audit_trail_has_no_secrets(client, sms, admin_headers):
    register_account(client, sms)
    code = sms.last_code(PHONE)
    client.post("/auth/login", json={"phone_number": PHONE, "password": PASSWORD})

    resp = client.get("/api/logs", params={"limit": 100}, headers=admin_headers)
    assert resp.status_code == 200
    events = resp.json()["data"]
    actions = {e["action"] for e in events}
    assert {"OTP_SENT", "USER_REGISTERED", "LOGIN_SUCCESS"} <= actions
    for event in events:
        assert code not in event["details"]
        assert PASSWORD not in event["details"]
        assert event["server_id"] == "test-management"


def test_logs_require_admin(client, user_headers):
    assert client.get("/api/logs", headers=user_headers).status_code == 403
