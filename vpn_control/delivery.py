"""
OTP delivery channel.
The only place an OTP code is allowed to travel to.
"""
import logging
from typing import List, Optional, Tuple

import httpx

from .config import DELIVERY_TIMEOUT
from .errors import DeliveryError

logger = logging.getLogger(__name__)


class OTPSender:
    async def send(self, phone_number: str, code: str) -> None:
        raise NotImplementedError


class MockSMSSender(OTPSender):
    """
    Development sender. Keeps delivered codes in an outbox instead of
    sending SMS, so an operator (or a test) can read them.
    """

    def __init__(self):
        self.outbox: List[Tuple[str, str]] = []

    async def send(self, phone_number: str, code: str) -> None:
        self.outbox.append((phone_number, code))
        logger.info("Mock SMS queued for %s", phone_number)

    def last_code(self, phone_number: str) -> Optional[str]:
        for number, code in reversed(self.outbox):
            if number == phone_number:
                return code
        return None


class HTTPSMSSender(OTPSender):
    """Posts the message to an HTTP SMS gateway."""

    def __init__(self, gateway_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DELIVERY_TIMEOUT):
        self.gateway_url = gateway_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, phone_number: str, code: str) -> None:
        body = {
            "to": phone_number,
            "message": f"Your verification code is: {code}",
        }
        try:
            resp = await self.client.post(self.gateway_url, json=body)
        except httpx.HTTPError as e:
            logger.error("SMS gateway unreachable for %s: %s", phone_number, e)
            raise DeliveryError() from e

        if resp.status_code >= 300:
            logger.error("SMS gateway rejected message for %s: status=%d", phone_number, resp.status_code)
            raise DeliveryError(upstream_status=resp.status_code)

    async def close(self) -> None:
        await self.client.aclose()
