"""
Audit logging module.
Security-relevant actions are appended to the audit_log table.
NEVER logs secrets - no OTP codes, passwords, tokens or node credentials.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError

from .auth import require_admin
from .database import Database
from .tokens import Claims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/logs", tags=["logs"])


class AuditLogger:
    def __init__(self, db: Database, server_id: str):
        self.db = db
        self.server_id = server_id

    async def log(self, action: str, username: str = "", details: str = "", ip: str = ""):
        """
        Append an audit event.

        Args:
            action: Action tag (e.g. 'LOGIN_SUCCESS', 'ENDNODE_REGISTERED')
            username: Actor identifier, empty or 'system' for internal actions
            details: Free-text summary
            ip: Origin address of the request
        """
        logger.info("[AUDIT] %s user=%s ip=%s %s", action, username or "-", ip or "-", details)
        try:
            await self.db.add_audit_event(action, username, details, ip, self.server_id)
        except SQLAlchemyError:
            # The request outcome stands even if the sink is down
            logger.exception("Failed to write audit event %s", action)


@router.get("")
async def list_logs(
    request: Request,
    limit: int = Query(50, ge=1, le=1000),
    server_id: Optional[str] = None,
    username: Optional[str] = None,
    claims: Claims = Depends(require_admin),
):
    """Audit events, newest first."""
    db: Database = request.app.state.db
    events = await db.get_audit_events(limit=limit, server_id=server_id, username=username)
    return {
        "success": True,
        "message": "Logs retrieved successfully",
        "data": [
            {
                "id": e.id,
                "timestamp": e.timestamp.isoformat(),
                "action": e.action,
                "username": e.username,
                "details": e.details,
                "ip_address": e.ip_address,
                "server_id": e.server_id,
            }
            for e in events
        ],
    }
