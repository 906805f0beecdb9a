import dataclasses

from fastapi.testclient import TestClient

from vpn_control.main import create_app


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "ok"
    assert body["server_id"] == "test-management"


def test_api_index(client):
    resp = client.get("/api")
    assert resp.status_code == 200
    assert "/auth/login" in resp.json()["data"]["endpoints"]["auth"]


def test_security_headers(client):
    resp = client.get("/health")
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["x-xss-protection"] == "1; mode=block"
    assert "max-age=31536000" in resp.headers["strict-transport-security"]
    assert resp.headers["content-security-policy"] == "default-src 'self'"


def test_security_headers_on_errors(client):
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.headers["x-frame-options"] == "DENY"


def test_cors_allows_known_origins(client):
    resp = client.options("/auth/login", headers={
        "Origin": "https://app.barqnet.com",
        "Access-Control-Request-Method": "POST",
    })
    assert resp.headers["access-control-allow-origin"] == "https://app.barqnet.com"

    resp = client.options("/auth/login", headers={
        "Origin": "http://localhost:3000",
        "Access-Control-Request-Method": "POST",
    })
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_cors_rejects_unknown_origin(client):
    resp = client.get("/health", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in resp.headers


def test_production_has_no_dev_origins(settings, sms):
    prod = dataclasses.replace(settings, environment="production")
    with TestClient(create_app(prod, otp_sender=sms)) as client:
        resp = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert "access-control-allow-origin" not in resp.headers


def test_api_rate_limit(settings, sms):
    limited = dataclasses.replace(settings, api_rate_limit=(3, 60))
    with TestClient(create_app(limited, otp_sender=sms)) as client:
        statuses = [client.get("/api").status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]
        assert client.get("/api").json()["success"] is False
        # Health checks are not throttled
        assert client.get("/health").status_code == 200


def test_api_rate_limit_ignores_forwarded_for_from_untrusted_peer(settings, sms):
    limited = dataclasses.replace(settings, api_rate_limit=(3, 60))
    with TestClient(create_app(limited, otp_sender=sms)) as client:
        statuses = [
            client.get("/api", headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
            for i in range(5)
        ]
        assert statuses == [200, 200, 200, 429, 429]


def test_api_rate_limit_per_forwarded_client_behind_trusted_proxy(settings, sms):
    limited = dataclasses.replace(settings, api_rate_limit=(2, 60), trusted_proxies=("testclient", "10.0.0.2"))
    with TestClient(create_app(limited, otp_sender=sms)) as client:
        first = {"X-Forwarded-For": "203.0.113.9"}
        assert [client.get("/api", headers=first).status_code for _ in range(3)] == [200, 200, 429]
        # Another client behind the same proxy has its own window
        assert client.get("/api", headers={"X-Forwarded-For": "203.0.113.10"}).status_code == 200
        # Entries left of the last untrusted hop are client-written and ignored
        spoofed = {"X-Forwarded-For": "198.51.100.1, 203.0.113.9, 10.0.0.2"}
        assert client.get("/api", headers=spoofed).status_code == 429


def test_validation_errors_use_envelope(client):
    resp = client.post("/auth/login", content="not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
