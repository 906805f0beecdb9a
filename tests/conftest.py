import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from vpn_control.audit import AuditLogger
from vpn_control.config import Settings
from vpn_control.database import Database
from vpn_control.delivery import MockSMSSender
from vpn_control.fleet import FleetRegistry
from vpn_control.main import create_app
from vpn_control.proxy import NodeClient
from vpn_control.worker import MemoryQueue

from .helpers import NODE_KEY, TEST_SECRET, FakeEndNode, register_account


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        environment="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        server_id="test-management",
        endnode_api_key=NODE_KEY,
        bcrypt_rounds=4,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def endnode():
    return FakeEndNode()


@pytest.fixture
def sms():
    return MockSMSSender()


@pytest.fixture
def app(settings, endnode, sms):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endnode.handler))
    return create_app(settings, http_client=http_client, otp_sender=sms)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(app):
    token = app.state.tokens.issue("+19990000001", 1, role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def node_headers():
    return {"X-API-Key": NODE_KEY}


@pytest.fixture
def user_headers(client, sms):
    token = register_account(client, sms).json()["token"]
    return {"Authorization": f"Bearer {token}"}


# --- Service-level fixtures ---

@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'service.db'}")
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def registry(db, endnode):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endnode.handler))
    nodes = NodeClient(http_client)
    yield FleetRegistry(db, nodes, MemoryQueue(), AuditLogger(db, "test-management"))
    await nodes.close()
