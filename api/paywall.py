"""
Paywall - x402 gate in front of the paid endpoints

Callers pay per request in USDC. The flow per paid call:
1. No X-PAYMENT header       → 402 + payment requirements (nothing metered, nothing booked)
2. Header present            → facilitator /verify before any skill is spent
3. Report built              → facilitator /settle, then revenue is booked

Disabled (PAYWALL_ENABLED=false) for local demos: every request is treated
as paid and the charge is booked directly.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import aiohttp
from fastapi import Request

from core.x402 import (
    PAYMENT_HEADER,
    X402_VERSION,
    PaymentError,
    PaymentRequirements,
    build_requirements,
    decode_payment_header,
    encode_payment_header,
    payer_of,
)

logger = logging.getLogger("autonome.api.paywall")


class PaymentRequired(Exception):
    """Rendered as HTTP 402 with the x402 `accepts` body."""

    def __init__(self, requirements: PaymentRequirements, error: str = "Payment required"):
        super().__init__(error)
        self.requirements = requirements
        self.error = error

    def to_body(self) -> dict:
        return {
            "x402Version": X402_VERSION,
            "error": self.error,
            "accepts": [self.requirements.to_dict()],
        }


@dataclass
class Charge:
    """A verified (or, with the paywall off, assumed) payment for one request."""
    price: Decimal
    requirements: Optional[PaymentRequirements] = None
    payment: Optional[dict] = None
    payer: Optional[str] = None
    settlement: Optional[dict] = None

    def response_headers(self) -> dict:
        if not self.settlement:
            return {}
        return {"X-PAYMENT-RESPONSE": encode_payment_header(self.settlement)}


class PaymentGate:
    def __init__(self, enabled: bool, pay_to: str, network: str,
                 facilitator_url: str, timeout_seconds: float = 30.0):
        self.enabled = enabled
        self.pay_to = pay_to
        self.network = network
        self.facilitator_url = facilitator_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _facilitator(self, action: str, payment: dict, req: PaymentRequirements) -> dict:
        session = await self._get_session()
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment,
            "paymentRequirements": req.to_dict(),
        }
        try:
            async with session.post(f"{self.facilitator_url}/{action}", json=body) as resp:
                if resp.status >= 400:
                    raise PaymentError(f"facilitator /{action} returned HTTP {resp.status}")
                try:
                    verdict = await resp.json(content_type=None)
                except ValueError as e:
                    raise PaymentError(f"facilitator /{action} sent an unreadable body: {e}") from e
        except asyncio.TimeoutError as e:
            raise PaymentError(f"facilitator /{action} timed out") from e
        except aiohttp.ClientError as e:
            raise PaymentError(f"facilitator /{action} unreachable: {e}") from e
        if not isinstance(verdict, dict):
            raise PaymentError(f"facilitator /{action} answered with {type(verdict).__name__}, expected an object")
        return verdict

    async def require(self, request: Request, price: Decimal, description: str) -> Charge:
        """Verify the caller's payment for `price`, or raise PaymentRequired."""
        if not self.enabled:
            return Charge(price=price)

        req = build_requirements(price, self.pay_to, self.network,
                                 resource=str(request.url), description=description)
        header = request.headers.get(PAYMENT_HEADER)
        if not header:
            raise PaymentRequired(req)

        try:
            payment = decode_payment_header(header)
            verdict = await self._facilitator("verify", payment, req)
        except PaymentError as e:
            logger.warning(f"Payment verification failed: {e}")
            raise PaymentRequired(req, str(e)) from e

        if not verdict.get("isValid"):
            reason = verdict.get("invalidReason") or "invalid payment"
            raise PaymentRequired(req, reason)

        return Charge(price=price, requirements=req, payment=payment,
                      payer=verdict.get("payer") or payer_of(payment))

    async def settle(self, charge: Charge) -> Charge:
        """Collect a verified payment. No-op with the paywall off."""
        if not self.enabled or charge.payment is None:
            return charge
        try:
            result = await self._facilitator("settle", charge.payment, charge.requirements)
        except PaymentError as e:
            raise PaymentRequired(charge.requirements, str(e)) from e
        if not result.get("success"):
            raise PaymentRequired(charge.requirements, result.get("errorReason") or "settlement failed")
        charge.settlement = result
        logger.info(f"Settled ${charge.price} from {charge.payer} (tx {result.get('transaction', '?')})")
        return charge
