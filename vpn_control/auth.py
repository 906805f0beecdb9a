"""
End-user authentication module.
Phone number + OTP registration, password login, stateless JWT sessions.

Credential failures always answer with the same generic message so callers
cannot tell whether an account exists.
"""
import asyncio
import logging
import re
import time
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .errors import Conflict, Forbidden, NoChallenge, RateLimited, TokenError, Unauthorized, ValidationError
from .otp import OTPService
from .passwords import CredentialStore
from .tokens import Claims, TokenService

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_LOGIN_ERROR = "Invalid phone number or password"


def client_ip(request: Request) -> str:
    """
    Get real client IP (handle Nginx proxy).

    X-Forwarded-For is only read when the direct peer is a trusted proxy.
    The header is walked right to left, skipping trusted hops, so entries
    the client wrote itself are never used.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = request.app.state.settings.trusted_proxies
    if peer not in trusted:
        return peer

    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


def normalize_phone_number(phone_number: str) -> str:
    """Strip separators and check shape. Raises ValidationError."""
    phone_number = (phone_number or "").replace(" ", "").replace("-", "")
    if len(phone_number) < 10 or len(phone_number) > 15:
        raise ValidationError("Invalid phone number: phone number must be 10-15 digits")
    if not re.match(r"^\+?[0-9]+$", phone_number):
        raise ValidationError(
            "Invalid phone number: phone number must contain only digits and optional + prefix"
        )
    return phone_number


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized("Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise Unauthorized("Invalid authorization header format")
    return parts[1]


class AuthGateway:
    def __init__(
        self,
        db: Database,
        tokens: TokenService,
        otp: OTPService,
        credentials: CredentialStore,
        audit,
        otp_rate_limit=(5, 3600),
    ):
        self.db = db
        self.tokens = tokens
        self.otp = otp
        self.credentials = credentials
        self.audit = audit
        self.otp_rate_limit = otp_rate_limit

    async def send_otp(self, phone_number: str, ip: str) -> dict:
        phone_number = normalize_phone_number(phone_number)

        limit, window = self.otp_rate_limit
        if not await self.otp.check_rate_limit(phone_number, "otp_request", limit, window):
            await self.audit.log("OTP_RATE_LIMITED", phone_number, "Too many OTP requests", ip)
            raise RateLimited("Too many OTP requests. Please try again later.")

        await self.otp.send(phone_number)
        await self.audit.log("OTP_SENT", phone_number, "OTP sent to phone number", ip)
        return {"phone_number": phone_number, "expires_in": self.otp.ttl}

    async def register(self, phone_number: str, password: str, otp_code: str, ip: str):
        """
        Create an account. Returns (account, token).

        Order matters: input checks, then OTP consumption, then the
        uniqueness check, so malformed requests never touch storage.
        """
        phone_number = normalize_phone_number(phone_number)
        try:
            self.credentials.check_policy(password)
        except ValidationError as e:
            raise ValidationError(f"Invalid password: {e.message}") from e

        try:
            verified = await self.otp.verify(phone_number, otp_code)
        except NoChallenge as e:
            await self.audit.log("REGISTRATION_FAILED", phone_number, "No OTP on file", ip)
            raise ValidationError(f"OTP verification failed: {e.message}") from e
        if not verified:
            await self.audit.log("REGISTRATION_FAILED", phone_number, "Invalid OTP", ip)
            raise Unauthorized("Invalid OTP")

        if await self.db.get_account(phone_number) is not None:
            await self.audit.log("REGISTRATION_FAILED", phone_number, "Phone number already registered", ip)
            raise Conflict("User with this phone number already exists")

        password_hash = await asyncio.to_thread(self.credentials.hash, password)
        try:
            account = await self.db.create_account(phone_number, password_hash)
        except Conflict:
            await self.audit.log("REGISTRATION_FAILED", phone_number, "Phone number already registered", ip)
            raise

        token = self.tokens.issue(account.phone_number, account.id, account.role)
        await self.audit.log("USER_REGISTERED", phone_number, "User registered successfully", ip)
        return account, token

    async def login(self, phone_number: str, password: str, ip: str):
        """Returns (account, token). Any credential failure is a generic Unauthorized."""
        if not phone_number or not password:
            raise ValidationError("Phone number and password are required")
        phone_number = phone_number.replace(" ", "").replace("-", "")

        account = await self.db.get_account(phone_number)
        if account is None:
            await asyncio.to_thread(self.credentials.dummy_verify, password)
            await self.audit.log("LOGIN_FAILED", phone_number, "Invalid credentials", ip)
            raise Unauthorized(GENERIC_LOGIN_ERROR)

        try:
            password_ok = await asyncio.to_thread(self.credentials.verify, account.password_hash, password)
        except ValueError:
            logger.error("Stored password hash for account %d is malformed", account.id)
            password_ok = False

        if not password_ok:
            await self.audit.log("LOGIN_FAILED", phone_number, "Invalid password", ip)
            raise Unauthorized(GENERIC_LOGIN_ERROR)

        if not account.active:
            await self.audit.log("LOGIN_FAILED", phone_number, "Account disabled", ip)
            raise Unauthorized(GENERIC_LOGIN_ERROR)

        try:
            await self.db.touch_last_login(account.id)
        except SQLAlchemyError:
            # Non-critical, continue
            logger.exception("Failed to update last login for account %d", account.id)

        token = self.tokens.issue(account.phone_number, account.id, account.role)
        await self.audit.log("LOGIN_SUCCESS", phone_number, "User logged in successfully", ip)
        return account, token

    async def refresh(self, token: str, ip: str) -> str:
        if not token:
            await self.audit.log("TOKEN_REFRESH_FAILED", "", "Token is required", ip)
            raise ValidationError("Token is required")
        try:
            new_token = self.tokens.refresh(token)
        except TokenError as e:
            try:
                identity = self.tokens.peek_identity(token)
            except TokenError:
                identity = ""
            await self.audit.log("TOKEN_REFRESH_FAILED", identity, e.message, ip)
            raise Unauthorized(f"Failed to refresh token: {e.message}") from e

        await self.audit.log("TOKEN_REFRESHED", self.tokens.peek_identity(new_token), "JWT token refreshed", ip)
        return new_token

    async def logout(self, authorization: Optional[str], ip: str) -> Claims:
        """
        Audit-only. Tokens are stateless and stay valid until they expire;
        the client is expected to discard its copy.
        """
        try:
            claims = self.authenticate(authorization)
        except Unauthorized as e:
            await self.audit.log("LOGOUT_FAILED", self._unverified_identity(authorization), e.message, ip)
            raise
        await self.audit.log("USER_LOGOUT", claims.phone_number, "User logged out", ip)
        return claims

    def authenticate(self, authorization: Optional[str]) -> Claims:
        """Resolve an Authorization header to verified claims."""
        token = bearer_token(authorization)
        try:
            return self.tokens.validate(token)
        except TokenError as e:
            raise Unauthorized(f"Invalid token: {e.message}") from e

    def _unverified_identity(self, authorization: Optional[str]) -> str:
        """Best-effort actor for failure audits; empty when nothing is readable."""
        try:
            return self.tokens.peek_identity(bearer_token(authorization))
        except (Unauthorized, TokenError):
            return ""


# --- Dependencies ---

def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


async def require_claims(request: Request) -> Claims:
    """Gate for protected endpoints. Rejects before any business logic runs."""
    gateway = get_gateway(request)
    claims = gateway.authenticate(request.headers.get("Authorization"))
    request.state.claims = claims
    return claims


async def require_admin(claims: Claims = Depends(require_claims)) -> Claims:
    if not claims.is_admin:
        raise Forbidden("Administrator privileges required")
    return claims


# --- Routes ---

class SendOTPRequest(BaseModel):
    phone_number: str = ""


class RegisterRequest(BaseModel):
    phone_number: str = ""
    password: str = ""
    otp: str = ""


class LoginRequest(BaseModel):
    phone_number: str = ""
    password: str = ""


class RefreshRequest(BaseModel):
    token: str = ""


@router.post("/send-otp")
async def send_otp(body: SendOTPRequest, request: Request):
    """Generate an OTP and hand it to the SMS channel. The code is never returned."""
    data = await get_gateway(request).send_otp(body.phone_number, client_ip(request))
    return {
        "success": True,
        "message": "OTP sent successfully to your phone",
        "data": data,
    }


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, request: Request):
    account, token = await get_gateway(request).register(
        body.phone_number, body.password, body.otp, client_ip(request)
    )
    return {
        "success": True,
        "message": "User registered successfully",
        "token": token,
        "data": {
            "user_id": account.id,
            "phone_number": account.phone_number,
            "created_at": int(account.created_at.replace(tzinfo=timezone.utc).timestamp()),
        },
    }


@router.post("/login")
async def login(body: LoginRequest, request: Request):
    account, token = await get_gateway(request).login(body.phone_number, body.password, client_ip(request))
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "data": {
            "user_id": account.id,
            "phone_number": account.phone_number,
            "login_time": int(time.time()),
        },
    }


@router.post("/refresh")
async def refresh(body: RefreshRequest, request: Request):
    token = await get_gateway(request).refresh(body.token, client_ip(request))
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "token": token,
        "data": {"refreshed_at": int(time.time())},
    }


@router.post("/logout")
async def logout(request: Request):
    await get_gateway(request).logout(request.headers.get("Authorization"), client_ip(request))
    return {
        "success": True,
        "message": "Logout successful. Please delete the token on client side.",
        "data": {"logout_time": int(time.time())},
    }


@router.get("/me")
async def me(claims: Claims = Depends(require_claims)):
    """Current identity as resolved from the bearer token."""
    return {
        "success": True,
        "message": "Authenticated",
        "data": {
            "user_id": claims.user_id,
            "phone_number": claims.phone_number,
            "role": claims.role,
            "expires_at": claims.expires_at,
        },
    }
