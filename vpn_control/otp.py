"""
One-time password module.

Codes live in a keyed store with expiry. The same store backs the fixed-window
rate-limit counters, so a Redis deployment shares both across workers while a
single-process deployment keeps them in memory.
"""
import hmac
import logging
import secrets
import threading
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from .config import OTP_DIGITS, OTP_MAX_ATTEMPTS, OTP_TTL_SECONDS
from .delivery import OTPSender
from .errors import DeliveryError, NoChallenge

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Keyed string store with per-key expiry."""

    async def put(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        """Remove key. True only if this call removed a live value."""
        raise NotImplementedError

    async def incr(self, key: str, window: int) -> int:
        """Increment a counter that expires `window` seconds after its first hit."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """
    In-process store. Lost on restart.

    Expired keys are dropped when read, and in bulk whenever the map grows
    past `sweep_threshold` entries.
    """

    def __init__(self, clock=time.monotonic, sweep_threshold: int = 10_000):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._sweep_threshold = sweep_threshold
        self._sweep_at = sweep_threshold

    def __len__(self) -> int:
        return len(self._data)

    def _sweep(self):
        if len(self._data) < self._sweep_at:
            return
        now = self._clock()
        for key in [k for k, (_, expires) in self._data.items() if expires <= now]:
            del self._data[key]
        # Live keys alone can keep the map large; wait for it to double again
        self._sweep_at = max(self._sweep_threshold, 2 * len(self._data))

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= self._clock():
            del self._data[key]
            return None
        return item

    async def put(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._sweep()
            self._data[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    async def incr(self, key: str, window: int) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                count, expires = 1, self._clock() + window
            else:
                count, expires = int(item[0]) + 1, item[1]
            self._sweep()
            self._data[key] = (str(count), expires)
            return count


class RedisStore(KeyValueStore):
    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        return cls(redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            decode_responses=True,
        ))

    async def put(self, key: str, value: str, ttl: int) -> None:
        await self.client.set(key, value, ex=ttl)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) == 1

    async def incr(self, key: str, window: int) -> int:
        # One transaction, so a counter can never be left without its expiry
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        await self.client.aclose()


class OTPService:
    def __init__(
        self,
        store: KeyValueStore,
        sender: OTPSender,
        ttl: int = OTP_TTL_SECONDS,
        digits: int = OTP_DIGITS,
        max_attempts: int = OTP_MAX_ATTEMPTS,
    ):
        self.store = store
        self.sender = sender
        self.ttl = ttl
        self.digits = digits
        self.max_attempts = max_attempts

    @staticmethod
    def _otp_key(identifier: str) -> str:
        return f"otp:{identifier}"

    @staticmethod
    def _attempts_key(identifier: str) -> str:
        return f"otp_attempts:{identifier}"

    def generate_code(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.digits))

    async def send(self, identifier: str) -> str:
        """
        Issue a new code for `identifier`, replacing any live one, and hand it
        to the delivery channel. The code must never reach an API response.
        """
        code = self.generate_code()
        key = self._otp_key(identifier)
        await self.store.put(key, code, self.ttl)
        await self.store.delete(self._attempts_key(identifier))

        try:
            await self.sender.send(identifier, code)
        except DeliveryError:
            await self.store.delete(key)
            raise

        logger.info("OTP issued for %s (expires in %ss)", identifier, self.ttl)
        return code

    async def verify(self, identifier: str, code: str) -> bool:
        """
        Check `code` against the live challenge.

        Raises NoChallenge if nothing is on file. Returns False on mismatch;
        after `max_attempts` mismatches the challenge is dropped.
        A match consumes the challenge; of two concurrent correct attempts
        only the one that deletes it wins.
        """
        key = self._otp_key(identifier)
        stored = await self.store.get(key)
        if stored is None:
            raise NoChallenge()

        if not hmac.compare_digest(stored.encode(), (code or "").encode()):
            attempts = await self.store.incr(self._attempts_key(identifier), self.ttl)
            if attempts >= self.max_attempts:
                logger.warning("OTP for %s dropped after %d wrong attempts", identifier, attempts)
                await self.store.delete(key)
                await self.store.delete(self._attempts_key(identifier))
            return False

        consumed = await self.store.delete(key)
        if consumed:
            await self.store.delete(self._attempts_key(identifier))
        return consumed

    async def check_rate_limit(self, key: str, bucket: str, limit: int, window_seconds: int) -> bool:
        """Fixed-window counter per (bucket, key). False once `limit` is exceeded."""
        count = await self.store.incr(f"ratelimit:{bucket}:{key}", window_seconds)
        if count > limit:
            logger.warning("Rate limit exceeded: bucket=%s key=%s count=%d", bucket, key, count)
            return False
        return True
