"""
Session token module.
Issues, validates and refreshes HS256-signed JWTs.

The verifier pins HS256: tokens declaring any other algorithm (including
"none") are rejected as a signature mismatch.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from .config import (
    JWT_MIN_SECRET_LENGTH,
    REFRESH_WINDOW_SECONDS,
    TOKEN_ISSUER,
    TOKEN_TTL_SECONDS,
)
from .errors import (
    ConfigError,
    Expired,
    MalformedToken,
    SignatureMismatch,
    TokenError,
    TooEarly,
)

JWT_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["phone_number", "user_id", "exp", "iat", "nbf", "iss", "sub"]


@dataclass(frozen=True)
class Claims:
    phone_number: str
    user_id: int
    role: str
    issued_at: int
    not_before: int
    expires_at: int
    issuer: str
    subject: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_payload(cls, payload: dict) -> "Claims":
        try:
            return cls(
                phone_number=str(payload["phone_number"]),
                user_id=int(payload["user_id"]),
                role=str(payload.get("role", "user")),
                issued_at=int(payload["iat"]),
                not_before=int(payload["nbf"]),
                expires_at=int(payload["exp"]),
                issuer=str(payload["iss"]),
                subject=str(payload["sub"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedToken("Invalid token claims") from e


class TokenService:
    """Issues and verifies session tokens with a single server secret."""

    def __init__(
        self,
        secret: str,
        ttl: int = TOKEN_TTL_SECONDS,
        refresh_window: int = REFRESH_WINDOW_SECONDS,
        issuer: str = TOKEN_ISSUER,
        clock: Callable[[], float] = time.time,
    ):
        if not secret or len(secret) < JWT_MIN_SECRET_LENGTH:
            raise ConfigError(
                f"JWT secret must be at least {JWT_MIN_SECRET_LENGTH} characters"
            )
        self._secret = secret
        self.ttl = ttl
        self.refresh_window = refresh_window
        self.issuer = issuer
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def issue(self, phone_number: str, user_id: int, role: str = "user") -> str:
        """Sign a new token for the given identity."""
        if not phone_number:
            raise TokenError("phone number cannot be empty")

        now = self._now()
        payload = {
            "phone_number": phone_number,
            "user_id": user_id,
            "role": role,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl,
            "iss": self.issuer,
            "sub": phone_number,
            # Distinct per issue even within the same second
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def validate(self, token: str) -> Claims:
        """
        Verify signature and validity window.

        Raises:
            MalformedToken: token cannot be parsed or lacks claims
            SignatureMismatch: wrong key or unexpected algorithm
            Expired: expires-at is not in the future
        """
        if not token:
            raise MalformedToken("token cannot be empty")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self.issuer,
                # Time checks run against our own clock below
                options={
                    "require": REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            raise SignatureMismatch() from e
        except jwt.InvalidTokenError as e:
            raise MalformedToken() from e

        claims = Claims.from_payload(payload)
        now = self._now()
        if claims.expires_at <= now:
            raise Expired()
        if claims.not_before > now:
            raise MalformedToken("Token is not yet valid")
        return claims

    def refresh(self, token: str) -> str:
        """Reissue a token that is within its last refresh window."""
        claims = self.validate(token)

        remaining = claims.expires_at - self._now()
        if remaining > self.refresh_window:
            raise TooEarly(f"Token is not close to expiration yet (expires in {remaining}s)")

        return self.issue(claims.phone_number, claims.user_id, claims.role)

    def peek_identity(self, token: str) -> str:
        """
        Read the phone number WITHOUT verifying the signature.
        For logging only - never use for authorization.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as e:
            raise MalformedToken() from e
        phone_number = payload.get("phone_number")
        if not phone_number:
            raise MalformedToken("Invalid token claims")
        return str(phone_number)

    def is_expired(self, token: str, now: Optional[float] = None) -> bool:
        """Unverified expiry check, useful to decide when to refresh."""
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
            exp = int(payload["exp"])
        except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
            return True
        current = int(now) if now is not None else self._now()
        return exp <= current
