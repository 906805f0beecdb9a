"""
Server location views.
Server counts, load and latency are derived per request from node and
binding records; nothing here is cached.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from .auth import client_ip, require_claims
from .database import Database, EndNode
from .tokens import Claims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vpn/locations", tags=["locations"])

LOCATION_CAPACITY = 100  # users per location
SERVER_CAPACITY = 50     # users per server
BASE_LATENCY_MS = 50


def estimate_latency(latitude: Optional[float]) -> int:
    """Rough latency band from latitude until real probes exist."""
    if latitude is None:
        return BASE_LATENCY_MS
    if abs(latitude) > 50:
        return BASE_LATENCY_MS + 100
    if abs(latitude) > 30:
        return BASE_LATENCY_MS + 50
    return BASE_LATENCY_MS


def load_percentage(users: int, capacity: int) -> float:
    return min(100.0, users / capacity * 100)


async def locations_with_metadata(db: Database) -> list:
    locations = []
    for loc in await db.list_locations():
        entry = {
            "id": loc.id,
            "country": loc.country,
            "city": loc.city,
            "country_code": loc.country_code,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "enabled": loc.enabled,
            "server_count": await db.location_server_count(loc.id),
            "load_percentage": load_percentage(await db.location_user_count(loc.id), LOCATION_CAPACITY),
            "estimated_latency": estimate_latency(loc.latitude),
        }
        locations.append(entry)
    return locations


async def server_with_health(db: Database, node: EndNode) -> dict:
    health = await db.latest_health(node.name)
    if health is not None:
        health_view = {
            "server_id": health.server_id,
            "status": health.status,
            "last_check": health.last_check.isoformat(),
            "response_time": health.response_time_ms,
            "error_message": health.error_message,
        }
    else:
        health_view = {
            "server_id": node.name,
            "status": "unknown",
            "last_check": None,
            "response_time": 0,
            "error_message": "No health data available",
        }

    user_count = await db.count_active_bindings(node.name)
    # Built field by field: the node credential must never appear here
    return {
        "id": node.id,
        "name": node.name,
        "host": node.host,
        "port": node.port,
        "username": node.username,
        "enabled": node.enabled,
        "last_sync": node.last_sync.isoformat() if node.last_sync else None,
        "server_type": node.server_type,
        "management_url": node.management_url,
        "created_at": node.created_at.isoformat() if node.created_at else None,
        "health": health_view,
        "user_count": user_count,
        "load_percent": load_percentage(user_count, SERVER_CAPACITY),
    }


@router.get("")
async def vpn_locations(request: Request, claims: Claims = Depends(require_claims)):
    db: Database = request.app.state.db
    locations = await locations_with_metadata(db)

    await request.app.state.audit.log(
        "VPN_LOCATIONS_ACCESSED", claims.phone_number, "Server locations list accessed", client_ip(request)
    )
    return {
        "success": True,
        "message": "Server locations retrieved successfully",
        "data": locations,
    }


@router.get("/{location_id}/servers")
async def location_servers(location_id: int, request: Request, claims: Claims = Depends(require_claims)):
    db: Database = request.app.state.db
    servers = [await server_with_health(db, node) for node in await db.location_servers(location_id)]

    await request.app.state.audit.log(
        "VPN_LOCATION_SERVERS_ACCESSED",
        claims.phone_number,
        f"Servers for location {location_id} accessed",
        client_ip(request),
    )
    return {
        "success": True,
        "message": f"Servers for location {location_id} retrieved successfully",
        "data": servers,
    }
