"""
End-node fleet management.
Node directory, health reports and user reconciliation.

Node records hold a credential field; it is never part of any response.
"""
import hmac
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .auth import client_ip, require_admin
from .database import Database, EndNode, utcnow
from .errors import Conflict, Forbidden, NotFound, UpstreamError, ValidationError
from .proxy import NodeClient
from .tokens import Claims
from .worker import ReconciliationQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/endnodes", tags=["endnodes"])

NODE_STATUSES = ("online", "offline", "maintenance", "healthy", "degraded", "unhealthy")


def serialize_node(node: EndNode) -> dict:
    """Public view of an end-node. The stored password is never included."""
    return {
        "id": node.id,
        "server_id": node.name,
        "host": node.host,
        "port": node.port,
        "status": node.status,
        "username": node.username,
        "location_id": node.location_id,
        "enabled": node.enabled,
        "server_type": node.server_type,
        "management_url": node.management_url,
        "last_sync": node.last_sync.isoformat() if node.last_sync else None,
        "created_at": node.created_at.isoformat() if node.created_at else None,
    }


@dataclass
class ReconcileResult:
    server_id: str
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    pushed: int = 0
    push_failures: List[str] = field(default_factory=list)


class FleetRegistry:
    def __init__(self, db: Database, nodes: NodeClient, queue: ReconciliationQueue, audit):
        self.db = db
        self.nodes = nodes
        self.queue = queue
        self.audit = audit

    async def register(self, server_id: str, host: str, port: int, status: str = "online", ip: str = "") -> EndNode:
        """
        Upsert the node record and queue a reconciliation sweep.
        Succeeds once the record is stored, however the sweep turns out.
        """
        server_id = (server_id or "").strip()
        host = (host or "").strip()
        status = status or "online"
        if not server_id:
            raise ValidationError("server_id is required")
        if not host:
            raise ValidationError("host is required")
        if not 1 <= port <= 65535:
            raise ValidationError("port must be between 1 and 65535")
        if status not in NODE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(NODE_STATUSES)}")

        node = await self.db.upsert_endnode(server_id, host, port, status)
        await self.audit.log(
            "ENDNODE_REGISTERED",
            "system",
            f"End-node '{server_id}' registered - host={host} port={port} status={status}",
            ip,
        )

        try:
            await self.queue.put(server_id)
        except RedisError:
            logger.exception("Failed to queue reconciliation for %s", server_id)
        return node

    async def deregister(self, server_id: str, ip: str = "") -> bool:
        """Remove a node and its bindings. Unknown nodes return False."""
        removed = await self.db.delete_endnode(server_id)
        detail = f"End-node '{server_id}' deregistered" if removed else f"End-node '{server_id}' was not registered"
        await self.audit.log("ENDNODE_DEREGISTERED", "system", detail, ip)
        return removed

    async def list(self) -> List[EndNode]:
        return list(await self.db.list_endnodes())

    async def get(self, server_id: str) -> EndNode:
        node = await self.db.get_endnode(server_id)
        if node is None:
            raise NotFound(f"End-node '{server_id}' not found")
        return node

    async def report_health(self, server_id: str, status: str, response_time_ms: int = 0,
                            error_message: Optional[str] = None, ip: str = ""):
        if status not in NODE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(NODE_STATUSES)}")
        await self.get(server_id)
        await self.db.add_health(server_id, status, response_time_ms, error_message)
        await self.audit.log(
            "HEALTH_CHECK",
            server_id,
            f"End-node health check - status={status} response_time={response_time_ms}ms",
            ip,
        )

    async def reconcile(self, server_id: str) -> ReconcileResult:
        """
        Give every provisioned user a binding on this node, then push the
        node's users to it. Existing bindings are never duplicated.
        """
        result = ReconcileResult(server_id=server_id)
        node = await self.db.get_endnode(server_id)
        if node is None:
            logger.warning("Skipping reconciliation for unknown end-node %s", server_id)
            return result

        # Earliest binding per user is the template for new ones
        templates = {}
        for binding in await self.db.list_bindings():
            if binding.active and binding.username not in templates:
                templates[binding.username] = binding

        on_node = {b.username: b for b in await self.db.list_bindings(server_id=server_id)}

        for username, template in templates.items():
            if username in on_node:
                result.existing.append(username)
                continue
            try:
                on_node[username] = await self.db.create_binding(
                    username, server_id, template.port, template.protocol
                )
                result.created.append(username)
            except Conflict:
                # Created concurrently by another request
                result.existing.append(username)
            except SQLAlchemyError:
                logger.exception("Failed to create binding for %s on %s", username, server_id)

        for username, binding in on_node.items():
            try:
                await self.nodes.push_user(node, binding)
                result.pushed += 1
            except UpstreamError as e:
                logger.warning("Failed to sync user %s to %s: %s", username, server_id, e.message)
                result.push_failures.append(username)

        await self.db.update_endnode(server_id, last_sync=utcnow())
        await self.audit.log(
            "ENDNODE_RECONCILED",
            "system",
            f"End-node '{server_id}' reconciled - created={len(result.created)} pushed={result.pushed} "
            f"failed={len(result.push_failures)}",
        )
        logger.info(
            "Reconciled %s: created=%d existing=%d pushed=%d failed=%d",
            server_id, len(result.created), len(result.existing), result.pushed, len(result.push_failures),
        )
        return result


# --- Dependencies ---

def get_registry(request: Request) -> FleetRegistry:
    return request.app.state.registry


async def require_node_key(request: Request):
    """End-nodes authenticate with the shared X-API-Key."""
    expected = request.app.state.settings.endnode_api_key
    presented = request.headers.get("X-API-Key", "")
    if not expected or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise Forbidden("Invalid or missing API key")


# --- Routes ---

class RegisterNodeRequest(BaseModel):
    server_id: str
    host: str
    port: int
    status: str = "online"


class HealthReport(BaseModel):
    status: str
    response_time_ms: int = 0
    error_message: Optional[str] = None


@router.get("")
async def list_endnodes(request: Request, admin: Claims = Depends(require_admin)):
    nodes = await get_registry(request).list()
    return {
        "success": True,
        "message": "End-nodes retrieved successfully",
        "data": [serialize_node(n) for n in nodes],
    }


@router.post("/register", dependencies=[Depends(require_node_key)])
async def register_endnode(body: RegisterNodeRequest, request: Request):
    node = await get_registry(request).register(
        body.server_id, body.host, body.port, body.status, client_ip(request)
    )
    return {
        "success": True,
        "message": "End-node registered successfully and existing users are being synced",
        "data": serialize_node(node),
    }


@router.get("/{server_id}")
async def get_endnode(server_id: str, request: Request, admin: Claims = Depends(require_admin)):
    node = await get_registry(request).get(server_id)
    return {
        "success": True,
        "message": "End-node information retrieved successfully",
        "data": serialize_node(node),
    }


@router.post("/{server_id}/health", dependencies=[Depends(require_node_key)])
async def endnode_health(server_id: str, body: HealthReport, request: Request):
    await get_registry(request).report_health(
        server_id, body.status, body.response_time_ms, body.error_message, client_ip(request)
    )
    return {"success": True, "message": "Health status updated successfully"}


@router.post("/{server_id}/deregister", dependencies=[Depends(require_node_key)])
@router.delete("/{server_id}", dependencies=[Depends(require_node_key)])
async def deregister_endnode(server_id: str, request: Request):
    removed = await get_registry(request).deregister(server_id, client_ip(request))
    message = (
        f"End-node '{server_id}' deregistered successfully"
        if removed else f"End-node '{server_id}' was not registered"
    )
    return {"success": True, "message": message, "data": {"server_id": server_id, "removed": removed}}
