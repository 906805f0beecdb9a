"""
VPN Control Plane - FastAPI Application
Main entrypoint for the management API.
"""
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .audit import AuditLogger, router as audit_router
from .auth import AuthGateway, client_ip, router as auth_router
from .config import Settings
from .database import Database
from .delivery import HTTPSMSSender, MockSMSSender, OTPSender
from .errors import ConfigError, ControlPlaneError
from .fleet import FleetRegistry, router as fleet_router
from .locations import router as locations_router
from .otp import MemoryStore, OTPService, RedisStore
from .passwords import CredentialStore
from .proxy import ConfigProxy, NodeClient, router as proxy_router
from .stats import router as stats_router
from .tokens import TokenService
from .users import router as users_router
from .worker import MemoryQueue, ReconciliationWorker, RedisQueue

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'",
}

# Paths the per-IP limiter skips
RATE_LIMIT_EXEMPT = ("/health",)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def build_components(app: FastAPI, settings: Settings, http_client: Optional[httpx.AsyncClient],
                     otp_sender: Optional[OTPSender]):
    """Wire every service once and hang it off app.state."""
    db = Database(settings.database_url)

    if settings.redis_host:
        store = RedisStore.from_settings(settings)
        queue = RedisQueue.from_settings(settings)
    else:
        store = MemoryStore()
        queue = MemoryQueue()

    if otp_sender is None:
        if settings.sms_gateway_url:
            otp_sender = HTTPSMSSender(settings.sms_gateway_url, timeout=settings.delivery_timeout)
        else:
            logger.warning("SMS_GATEWAY_URL not set, OTP codes go to the mock outbox")
            otp_sender = MockSMSSender()

    audit = AuditLogger(db, settings.server_id)
    tokens = TokenService(settings.jwt_secret, ttl=settings.token_ttl, refresh_window=settings.refresh_window)
    otp = OTPService(store, otp_sender, ttl=settings.otp_ttl)
    credentials = CredentialStore(rounds=settings.bcrypt_rounds)
    nodes = NodeClient(http_client, timeout=settings.upstream_timeout)
    registry = FleetRegistry(db, nodes, queue, audit)

    app.state.settings = settings
    app.state.db = db
    app.state.store = store
    app.state.queue = queue
    app.state.otp_sender = otp_sender
    app.state.audit = audit
    app.state.tokens = tokens
    app.state.otp = otp
    app.state.credentials = credentials
    app.state.gateway = AuthGateway(db, tokens, otp, credentials, audit, settings.otp_rate_limit)
    app.state.nodes = nodes
    app.state.proxy = ConfigProxy(db, nodes)
    app.state.registry = registry
    app.state.worker = ReconciliationWorker(queue, registry)
    app.state.owns_http_client = http_client is None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup/shutdown."""
    state = app.state
    # Startup
    state.settings.data_dir.mkdir(parents=True, exist_ok=True)
    await state.db.init_db()
    worker_task = asyncio.create_task(state.worker.run())
    logger.info("VPN control plane started (environment=%s, server_id=%s)",
                state.settings.environment, state.settings.server_id)
    yield
    # Shutdown
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass
    if state.owns_http_client:
        await state.nodes.close()
    if isinstance(state.otp_sender, HTTPSMSSender):
        await state.otp_sender.close()
    await state.queue.close()
    await state.store.close()
    await state.db.dispose()


def create_app(settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None,
               otp_sender: Optional[OTPSender] = None) -> FastAPI:
    """
    Build the application. Raises ConfigError if settings cannot be loaded.

    `http_client` replaces the outbound client used for end-node calls and
    `otp_sender` the SMS channel; both exist so tests can run without a network.
    """
    if settings is None:
        settings = Settings.from_env()

    app = FastAPI(
        title="VPN Control Plane",
        description="Management API for a fleet of VPN end-nodes",
        version=__version__,
        lifespan=lifespan,
    )
    build_components(app, settings, http_client, otp_sender)

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request body"
        if errors:
            # pydantic prefixes custom validator messages with "Value error, "
            message = errors[0].get("msg", message).replace("Value error, ", "")
        return error_response(400, message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path not in RATE_LIMIT_EXEMPT:
            limit, window = settings.api_rate_limit
            allowed = await app.state.otp.check_rate_limit(client_ip(request), "api_request", limit, window)
            if not allowed:
                return error_response(429, "Rate limit exceeded. Please try again later.")
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
        max_age=86400,
    )

    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(fleet_router)
    app.include_router(users_router)
    app.include_router(proxy_router)
    app.include_router(audit_router)
    app.include_router(locations_router)
    app.include_router(stats_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        db_ok = await app.state.db.health_check()
        return {
            "status": "healthy" if db_ok else "degraded",
            "service": "vpn-control",
            "version": __version__,
            "server_id": settings.server_id,
            "database": "ok" if db_ok else "unavailable",
        }

    @app.get("/api")
    async def api_index():
        return {
            "success": True,
            "message": "VPN Control Plane API",
            "data": {
                "version": __version__,
                "endpoints": {
                    "auth": ["/auth/send-otp", "/auth/register", "/auth/login", "/auth/refresh",
                             "/auth/logout", "/auth/me"],
                    "endnodes": ["/api/endnodes", "/api/endnodes/register", "/api/endnodes/{server_id}",
                                 "/api/endnodes/{server_id}/health", "/api/endnodes/{server_id}/deregister"],
                    "users": ["/api/users", "/api/users/{username}"],
                    "ovpn": ["/api/ovpn/{username}/{server_id}"],
                    "logs": ["/api/logs"],
                    "vpn": ["/vpn/locations", "/vpn/locations/{location_id}/servers", "/vpn/status",
                            "/vpn/stats", "/vpn/stats/{username}"],
                },
            },
        }

    return app


def main():
    """Run with uvicorn. Refuses to start without a usable configuration."""
    import uvicorn

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logging.basicConfig(level="INFO")
        logger.critical("FATAL: %s", e)
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
