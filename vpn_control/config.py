"""
Configuration for VPN Control Plane.

Settings are read from the environment exactly once, at process start, and
passed by reference to every component. A missing or weak JWT secret is
fatal: the settings object cannot be built without one.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .errors import ConfigError

# Paths
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# Token policy
JWT_MIN_SECRET_LENGTH = 32
TOKEN_TTL_SECONDS = 24 * 3600   # 24 hours
REFRESH_WINDOW_SECONDS = 3600   # refresh allowed in the last hour only
TOKEN_ISSUER = "chameleonvpn-auth"

# OTP policy
OTP_DIGITS = 6
OTP_TTL_SECONDS = 300           # 5 minutes
OTP_MAX_ATTEMPTS = 5            # wrong guesses before the challenge is dropped

# Rate limits: (limit, window_seconds)
API_RATE_LIMIT = (60, 60)       # per client IP
OTP_RATE_LIMIT = (5, 3600)      # per phone number

# Outbound I/O
UPSTREAM_TIMEOUT = 30.0         # end-node fetches
DELIVERY_TIMEOUT = 15.0         # SMS gateway

# Binding defaults
DEFAULT_VPN_PORT = 1194
DEFAULT_VPN_PROTOCOL = "udp"

PRODUCTION_ORIGINS = (
    "https://app.barqnet.com",
    "https://admin.barqnet.com",
    "https://dashboard.barqnet.com",
)
DEVELOPMENT_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
)


def _database_url_from_env() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    db_host = os.getenv("DB_HOST")
    if db_host:
        # MySQL Async URL
        db_port = os.getenv("DB_PORT", "3306")
        db_user = os.getenv("DB_USER", "vpn")
        db_pass = os.getenv("DB_PASS", "")
        db_name = os.getenv("DB_NAME", "vpn_control")
        return f"mysql+aiomysql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}"

    return f"sqlite+aiosqlite:///{DATA_DIR / 'vpn_control.db'}"


@dataclass(frozen=True)
class Settings:
    jwt_secret: str
    environment: str = "production"
    database_url: str = f"sqlite+aiosqlite:///{DATA_DIR / 'vpn_control.db'}"
    server_id: str = "management-server"

    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_db: int = 0

    sms_gateway_url: Optional[str] = None
    endnode_api_key: Optional[str] = None

    bcrypt_rounds: int = 12
    log_level: str = "INFO"

    token_ttl: int = TOKEN_TTL_SECONDS
    refresh_window: int = REFRESH_WINDOW_SECONDS
    otp_ttl: int = OTP_TTL_SECONDS
    api_rate_limit: Tuple[int, int] = API_RATE_LIMIT
    otp_rate_limit: Tuple[int, int] = OTP_RATE_LIMIT
    upstream_timeout: float = UPSTREAM_TIMEOUT
    delivery_timeout: float = DELIVERY_TIMEOUT

    # Peers allowed to set X-Forwarded-For; empty means the header is ignored
    trusted_proxies: Tuple[str, ...] = ()

    data_dir: Path = field(default=DATA_DIR)

    def __post_init__(self):
        if not self.jwt_secret:
            raise ConfigError(
                "JWT_SECRET is required and must be set. Application cannot start without it."
            )
        if len(self.jwt_secret) < JWT_MIN_SECRET_LENGTH:
            raise ConfigError(
                f"JWT_SECRET must be at least {JWT_MIN_SECRET_LENGTH} characters "
                f"(current length: {len(self.jwt_secret)})"
            )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def allowed_origins(self) -> Tuple[str, ...]:
        if self.is_development:
            return PRODUCTION_ORIGINS + DEVELOPMENT_ORIGINS
        return PRODUCTION_ORIGINS

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process environment. Raises ConfigError."""
        return cls(
            jwt_secret=os.getenv("JWT_SECRET", ""),
            environment=os.getenv("ENVIRONMENT", "production"),
            database_url=_database_url_from_env(),
            server_id=os.getenv("SERVER_ID", "management-server"),
            redis_host=os.getenv("REDIS_HOST") or None,
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            sms_gateway_url=os.getenv("SMS_GATEWAY_URL") or None,
            endnode_api_key=os.getenv("ENDNODE_API_KEY") or None,
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            trusted_proxies=tuple(
                p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip()
            ),
        )
