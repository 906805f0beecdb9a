"""
VPN user binding management module.
Handles creation, listing and deletion of user accounts on end-nodes.
"""
import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, field_validator

from .auth import client_ip, require_admin
from .config import DEFAULT_VPN_PORT, DEFAULT_VPN_PROTOCOL
from .database import Binding, Database
from .errors import NotFound, UpstreamError
from .tokens import Claims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

RESERVED_USERNAMES = ("admin", "root", "system", "vpnmanager", "postgres", "nobody")


def serialize_binding(binding: Binding) -> dict:
    return {
        "id": binding.id,
        "username": binding.username,
        "server_id": binding.server_id,
        "port": binding.port,
        "protocol": binding.protocol,
        "ovpn_path": binding.ovpn_path,
        "checksum": binding.checksum,
        "active": binding.active,
        "created_at": binding.created_at.isoformat() if binding.created_at else None,
    }


class CreateUserRequest(BaseModel):
    username: str
    target_server_id: str
    port: int = DEFAULT_VPN_PORT
    protocol: str = DEFAULT_VPN_PROTOCOL
    ovpn_path: Optional[str] = None
    checksum: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        if len(v) < 3 or len(v) > 32:
            raise ValueError("Username must be 3-32 characters")
        if not re.match(r"^[a-zA-Z0-9_]+$", v):
            raise ValueError("Username must contain only alphanumeric characters and underscores")
        if v.lower() in RESERVED_USERNAMES:
            raise ValueError(f"Username '{v}' is reserved")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v):
        v = v.lower()
        if v not in ("udp", "tcp"):
            raise ValueError("Protocol must be 'udp' or 'tcp'")
        return v


@router.get("")
async def list_users(
    request: Request,
    server_id: Optional[str] = None,
    admin: Claims = Depends(require_admin),
):
    """List user bindings, optionally for one end-node."""
    db: Database = request.app.state.db
    bindings = await db.list_bindings(server_id=server_id)
    return {
        "success": True,
        "message": "Users retrieved successfully",
        "data": [serialize_binding(b) for b in bindings],
    }


@router.post("", status_code=201)
async def create_user(body: CreateUserRequest, request: Request, admin: Claims = Depends(require_admin)):
    """Provision a user on an existing end-node and push it there."""
    db: Database = request.app.state.db
    node = await db.get_endnode(body.target_server_id)
    if node is None:
        raise NotFound(f"End-node '{body.target_server_id}' not found")

    binding = await db.create_binding(
        body.username, node.name, body.port, body.protocol, body.ovpn_path, body.checksum
    )

    synced = True
    try:
        await request.app.state.nodes.push_user(node, binding)
    except UpstreamError as e:
        # Picked up again by the next reconciliation of this node
        logger.warning("User %s created but not pushed to %s: %s", binding.username, node.name, e.message)
        synced = False

    await request.app.state.audit.log(
        "USER_CREATED",
        admin.phone_number,
        f"User '{binding.username}' created on {node.name} with port {binding.port}, protocol {binding.protocol}",
        client_ip(request),
    )

    return {
        "success": True,
        "message": "User created successfully",
        "data": {**serialize_binding(binding), "synced": synced},
    }


@router.get("/{username}")
async def get_user(username: str, request: Request, admin: Claims = Depends(require_admin)):
    db: Database = request.app.state.db
    bindings = await db.list_bindings(username=username)
    if not bindings:
        raise NotFound("User not found")
    return {
        "success": True,
        "message": "User retrieved successfully",
        "data": [serialize_binding(b) for b in bindings],
    }


@router.delete("/{username}")
async def delete_user(
    username: str,
    request: Request,
    server_id: Optional[str] = None,
    admin: Claims = Depends(require_admin),
):
    """Delete a user's bindings, on one end-node or everywhere."""
    db: Database = request.app.state.db
    removed = await db.delete_bindings(username, server_id)
    if not removed:
        raise NotFound("User not found")

    where = server_id or "all end-nodes"
    await request.app.state.audit.log(
        "USER_DELETED", admin.phone_number, f"User '{username}' removed from {where}", client_ip(request)
    )
    return {
        "success": True,
        "message": f"User {username} deleted successfully",
        "data": {"removed": removed},
    }
