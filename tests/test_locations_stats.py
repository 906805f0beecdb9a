from functools import partial

import pytest

from vpn_control.locations import estimate_latency, load_percentage

from .helpers import PHONE


@pytest.mark.parametrize("latitude,expected", [
    (None, 50),
    (10.0, 50),
    (-35.0, 100),
    (52.5, 150),
    (-60.0, 150),
])
def test_estimate_latency(latitude, expected):
    assert estimate_latency(latitude) == expected


def test_load_percentage_is_capped():
    assert load_percentage(25, 50) == 50.0
    assert load_percentage(500, 100) == 100.0


def seed_locations(app, client):
    db = app.state.db
    call = client.portal.call
    frankfurt = call(db.add_location, "Germany", "Frankfurt", "DE", 50.11, 8.68)
    call(db.add_location, "Singapore", "Singapore", "SG", 1.35, 103.8)
    call(db.upsert_endnode, "node-de-1", "10.0.1.1", 8080, "online")
    call(partial(db.update_endnode, "node-de-1", location_id=frankfurt.id, password="node-secret"))
    for username in ("alice", "bob"):
        call(db.create_binding, username, "node-de-1", 1194, "udp")
    return frankfurt


def test_locations(app, client, user_headers):
    seed_locations(app, client)

    resp = client.get("/vpn/locations", headers=user_headers)

    assert resp.status_code == 200
    by_city = {loc["city"]: loc for loc in resp.json()["data"]}
    assert by_city["Frankfurt"]["server_count"] == 1
    assert by_city["Frankfurt"]["load_percentage"] == 2.0
    assert by_city["Frankfurt"]["estimated_latency"] == 150
    assert by_city["Singapore"]["server_count"] == 0
    assert by_city["Singapore"]["estimated_latency"] == 50


def test_location_servers(app, client, user_headers):
    frankfurt = seed_locations(app, client)

    resp = client.get(f"/vpn/locations/{frankfurt.id}/servers", headers=user_headers)

    assert resp.status_code == 200
    [server] = resp.json()["data"]
    assert server["name"] == "node-de-1"
    assert server["health"]["status"] == "unknown"
    assert server["user_count"] == 2
    assert server["load_percent"] == 4.0
    assert "password" not in server
    assert "node-secret" not in resp.text


def test_location_servers_with_health(app, client, user_headers, node_headers):
    frankfurt = seed_locations(app, client)
    client.post("/api/endnodes/node-de-1/health", json={"status": "healthy", "response_time_ms": 30},
                headers=node_headers)

    [server] = client.get(f"/vpn/locations/{frankfurt.id}/servers", headers=user_headers).json()["data"]
    assert server["health"]["status"] == "healthy"
    assert server["health"]["response_time"] == 30


def test_locations_require_token(client):
    assert client.get("/vpn/locations").status_code == 401


def test_status_updates(client, user_headers):
    resp = client.post("/vpn/status", json={"status": "connected", "server_id": "node-de-1"},
                       headers=user_headers)
    assert resp.status_code == 200

    resp = client.post("/vpn/status", json={"status": "sleeping"}, headers=user_headers)
    assert resp.status_code == 400


def test_stats_roundtrip(client, user_headers):
    client.post("/vpn/status", json={"status": "connected", "server_id": "node-de-1"}, headers=user_headers)
    for bytes_in in (100, 250):
        resp = client.post("/vpn/stats", json={
            "server_id": "node-de-1", "bytes_in": bytes_in, "bytes_out": 10, "duration_seconds": 60,
        }, headers=user_headers)
        assert resp.status_code == 200

    resp = client.get(f"/vpn/stats/{PHONE}", headers=user_headers)

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["summary"]["total_bytes_in"] == 350
    assert data["summary"]["total_bytes_out"] == 20
    assert data["summary"]["total_duration"] == 120
    assert data["summary"]["connection_count"] == 2
    assert data["summary"]["last_connection"] is not None
    assert [c["status"] for c in data["connections"]] == ["connected"]


def test_negative_stats_rejected(client, user_headers):
    resp = client.post("/vpn/stats", json={"bytes_in": -1}, headers=user_headers)
    assert resp.status_code == 400


def test_stats_of_other_user(client, user_headers, admin_headers):
    assert client.get("/vpn/stats/+15550001111", headers=user_headers).status_code == 403
    assert client.get("/vpn/stats/+15550001111", headers=admin_headers).status_code == 200
