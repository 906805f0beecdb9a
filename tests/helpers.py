import re

import httpx

TEST_SECRET = "test-secret-that-is-long-enough-for-hs256-signing"
NODE_KEY = "node-shared-key"
PHONE = "+19995550100"
PASSWORD = "Abcd1234"


class FakeEndNode:
    """Stands in for every end-node management API reachable over HTTP."""

    def __init__(self):
        self.requests = []
        self.pushed = []
        self.configs = {}
        self.ovpn_status = 200
        self.push_status = 201
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        match = re.match(r"^/api/ovpn/([^/]+)$", request.url.path)
        if request.method == "GET" and match:
            if self.ovpn_status != 200:
                return httpx.Response(self.ovpn_status, text="node error")
            username = match.group(1)
            content = self.configs.get(username, f"client\nremote {request.url.host}\n# {username}\n")
            return httpx.Response(200, content=content.encode())

        if request.method == "POST" and request.url.path == "/api/users":
            self.pushed.append((request.url.host, request.read()))
            return httpx.Response(self.push_status, json={"success": True})

        return httpx.Response(404)


def register_account(client, sms, phone=PHONE, password=PASSWORD):
    """Run the OTP + register flow. Returns the register response."""
    resp = client.post("/auth/send-otp", json={"phone_number": phone})
    assert resp.status_code == 200
    return client.post("/auth/register", json={
        "phone_number": phone,
        "password": password,
        "otp": sms.last_code(phone),
    })
