"""
Order Service — Payment Gateway Adapter (Paystack)

The engine treats the gateway as an opaque provider with four calls:

    initialize_session  open a hosted checkout and return its URL
    confirm             ask whether a reference was paid, and how much
    refund              return a captured payment to the buyer
    release             transfer escrowed funds to the seller

Transport errors, non-2xx responses and unreadable bodies become
GatewayError.
"""

import hashlib
import hmac
import logging
from enum import Enum

import httpx
from pydantic import BaseModel

from .errors import GatewayError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


class PaymentConfirmation(BaseModel):
    reference: str
    status: PaymentStatus
    amount: int


# Gateway transaction states that mean the buyer will not be charged.
_FAILED_STATES = {"failed", "abandoned", "reversed"}


class PaystackGateway:
    def __init__(
        self,
        base_url: str,
        secret_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async with self._client() as client:
            try:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise GatewayError(
                    f"{method} {path} failed with {e.response.status_code}: {e.response.text}"
                ) from e
            except httpx.HTTPError as e:
                raise GatewayError(f"{method} {path} failed: {e}") from e
        try:
            body = resp.json()
        except ValueError as e:
            raise GatewayError(f"{method} {path} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise GatewayError(f"{method} {path} returned an unexpected body")
        if not body.get("status"):
            raise GatewayError(f"{method} {path} rejected: {body.get('message', 'unknown error')}")
        return body.get("data") or {}

    async def initialize_session(
        self,
        buyer_email: str,
        amount: int,
        reference: str,
        metadata: dict | None = None,
    ) -> str:
        """Open a hosted payment page and return the URL to send the buyer to."""
        data = await self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": buyer_email,
                "amount": amount,
                "reference": reference,
                "metadata": metadata or {},
            },
        )
        try:
            return data["authorization_url"]
        except KeyError:
            raise GatewayError("initialize response has no authorization_url") from None

    async def confirm(self, reference: str) -> PaymentConfirmation:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        raw_status = str(data.get("status", "")).lower()
        if raw_status == "success":
            status = PaymentStatus.PAID
        elif raw_status in _FAILED_STATES:
            status = PaymentStatus.FAILED
        else:
            status = PaymentStatus.PENDING
        return PaymentConfirmation(
            reference=data.get("reference", reference),
            status=status,
            amount=int(data.get("amount") or 0),
        )

    async def refund(self, reference: str, amount: int) -> None:
        await self._request(
            "POST", "/refund", json={"transaction": reference, "amount": amount}
        )
        logger.info("Refund of %d requested for %s", amount, reference)

    async def release(self, recipient_id: str, amount: int, reference: str) -> None:
        await self._request(
            "POST",
            "/transfer",
            json={
                "source": "balance",
                "amount": amount,
                "recipient": recipient_id,
                "reference": f"payout-{reference}",
            },
        )
        logger.info("Payout of %d to %s requested for %s", amount, recipient_id, reference)

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """Check the x-paystack-signature header of a webhook call."""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
