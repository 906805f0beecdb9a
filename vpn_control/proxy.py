"""
End-node HTTP client and configuration proxy.

The proxy is a pure pass-through: artifact bytes are returned to the caller
and never logged or stored.
"""
import logging
from dataclasses import dataclass

import httpx
from fastapi import APIRouter, Depends, Request, Response

from .auth import client_ip, require_claims
from .config import UPSTREAM_TIMEOUT
from .database import Binding, Database, EndNode
from .errors import NotFound, UpstreamError
from .tokens import Claims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ovpn", tags=["ovpn"])

OVPN_CONTENT_TYPE = "application/x-openvpn-profile"


@dataclass(frozen=True)
class ConfigArtifact:
    content: bytes
    filename: str
    content_type: str = OVPN_CONTENT_TYPE


class NodeClient:
    """Outbound calls to end-node management APIs."""

    def __init__(self, client: httpx.AsyncClient = None, timeout: float = UPSTREAM_TIMEOUT):
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    @staticmethod
    def base_url(node: EndNode) -> str:
        return f"http://{node.host}:{node.port}"

    async def fetch_config(self, node: EndNode, username: str) -> bytes:
        url = f"{self.base_url(node)}/api/ovpn/{username}"
        try:
            resp = await self.client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error("OVPN download from %s failed: %s", node.name, e)
            raise UpstreamError("Failed to download OVPN file from end-node") from e

        if resp.status_code != 200:
            logger.error("OVPN download from %s failed with status: %d", node.name, resp.status_code)
            raise UpstreamError(
                f"End-node returned status {resp.status_code}",
                upstream_status=resp.status_code,
            )
        return resp.content

    async def push_user(self, node: EndNode, binding: Binding) -> None:
        url = f"{self.base_url(node)}/api/users"
        body = {"username": binding.username, "port": binding.port, "protocol": binding.protocol}
        try:
            resp = await self.client.post(url, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise UpstreamError(f"End-node {node.name} unreachable") from e

        if resp.status_code not in (200, 201, 409):  # 409: already present on the node
            raise UpstreamError(
                f"End-node {node.name} rejected user {binding.username}",
                upstream_status=resp.status_code,
            )

    async def close(self):
        await self.client.aclose()


class ConfigProxy:
    def __init__(self, db: Database, nodes: NodeClient):
        self.db = db
        self.nodes = nodes

    async def fetch_user_config(self, username: str, server_id: str) -> ConfigArtifact:
        node = await self.db.get_endnode(server_id)
        if node is None:
            raise NotFound(f"End-node '{server_id}' not found")

        binding = await self.db.get_binding(username, server_id)
        if binding is None:
            raise NotFound(f"User '{username}' not found on end-node '{server_id}'")

        content = await self.nodes.fetch_config(node, username)
        return ConfigArtifact(content=content, filename=f"{username}_{server_id}.ovpn")


@router.get("/{username}/{server_id}")
async def download_ovpn(
    username: str,
    server_id: str,
    request: Request,
    claims: Claims = Depends(require_claims),
):
    """Stream a user's config artifact from the end-node that holds it."""
    proxy: ConfigProxy = request.app.state.proxy
    artifact = await proxy.fetch_user_config(username, server_id)

    await request.app.state.audit.log(
        "OVPN_DOWNLOADED",
        claims.phone_number,
        f"Config for {username} downloaded from {server_id}",
        client_ip(request),
    )

    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )
