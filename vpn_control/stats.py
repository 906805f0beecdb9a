"""
VPN client statistics module.
Clients report connection status changes and usage counters; users read
their own history back, admins may read anyone's.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from .auth import client_ip, require_claims
from .database import Database
from .errors import Forbidden, ValidationError
from .tokens import Claims

router = APIRouter(prefix="/vpn", tags=["stats"])

CONNECTION_STATUSES = ("connected", "disconnected", "connecting", "error")


class StatusUpdate(BaseModel):
    status: str
    server_id: str = ""
    ip_address: Optional[str] = None


class StatsUpload(BaseModel):
    server_id: str = ""
    bytes_in: int = 0
    bytes_out: int = 0
    duration_seconds: int = 0


@router.post("/status")
async def update_status(body: StatusUpdate, request: Request, claims: Claims = Depends(require_claims)):
    if body.status not in CONNECTION_STATUSES:
        raise ValidationError(
            "Invalid status. Must be one of: connected, disconnected, connecting, error"
        )

    db: Database = request.app.state.db
    await db.add_connection(claims.phone_number, body.status, body.server_id, body.ip_address)

    await request.app.state.audit.log(
        "VPN_STATUS_UPDATE",
        claims.phone_number,
        f"VPN status updated to {body.status} on server {body.server_id}",
        body.ip_address or client_ip(request),
    )
    return {"success": True, "message": f"Connection status updated to {body.status}"}


@router.post("/stats")
async def upload_stats(body: StatsUpload, request: Request, claims: Claims = Depends(require_claims)):
    if body.bytes_in < 0 or body.bytes_out < 0 or body.duration_seconds < 0:
        raise ValidationError("Invalid statistics values")

    db: Database = request.app.state.db
    await db.add_statistic(claims.phone_number, body.server_id, body.bytes_in, body.bytes_out, body.duration_seconds)

    await request.app.state.audit.log(
        "VPN_STATS_UPLOADED",
        claims.phone_number,
        f"Statistics uploaded - bytes_in={body.bytes_in}, bytes_out={body.bytes_out}, duration={body.duration_seconds}s",
        client_ip(request),
    )
    return {"success": True, "message": "Statistics uploaded successfully"}


@router.get("/stats/{username}")
async def user_stats(username: str, request: Request, claims: Claims = Depends(require_claims)):
    """Usage summary and the last 50 connection events for `username`."""
    if username != claims.phone_number and not claims.is_admin:
        raise Forbidden("Forbidden - you can only access your own statistics")

    db: Database = request.app.state.db
    summary = await db.statistics_summary(username)
    connections = await db.connection_history(username)

    await request.app.state.audit.log(
        "VPN_STATS_ACCESSED", claims.phone_number, f"Statistics accessed for user {username}", client_ip(request)
    )
    return {
        "success": True,
        "message": "Statistics retrieved successfully",
        "data": {
            "summary": summary,
            "connections": [
                {
                    "id": c.id,
                    "username": c.username,
                    "status": c.status,
                    "server_id": c.server_id,
                    "connected_at": c.connected_at.isoformat() if c.connected_at else None,
                    "disconnected_at": c.disconnected_at.isoformat() if c.disconnected_at else None,
                    "ip_address": c.ip_address,
                    "created_at": c.created_at.isoformat(),
                }
                for c in connections
            ],
        },
    }
