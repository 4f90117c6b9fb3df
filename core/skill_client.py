"""
Skill Client - metered remote skills, paid per call over x402

Every operation (balance, price, fund, chat, trade, broadcast, external
enrichment) is one HTTP request to the skill server. The server answers 402
first; we sign a USDC authorization and resend (see core.x402).

Public methods never raise for remote failures. They return a SkillResult
(success payload | failure reason) and the caller decides the fallback:

    result = await skills.balance(address)
    balances = result.value_or({"ETH": "0", "USDC": "0"}, key="balances")

Designed for: autonomous economic agent (earn → spend → reinvest)
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import aiohttp

from .constants import skill_cost
from .x402 import PAYMENT_HEADER, PaymentError, X402Signer, select_requirements

logger = logging.getLogger("autonome.skill_client")

_MISSING = object()


class SkillError(Exception):
    """A skill call failed: transport, HTTP status, payment, or bad body."""

    def __init__(self, skill: str, message: str):
        super().__init__(f"{skill}: {message}")
        self.skill = skill
        self.message = message


@dataclass(frozen=True)
class SkillResult:
    skill: str
    ok: bool
    data: Any = None
    error: str = ""
    cost: Decimal = Decimal(0)

    @classmethod
    def success(cls, skill: str, data: Any, cost: Decimal) -> "SkillResult":
        return cls(skill=skill, ok=True, data=data, cost=cost)

    @classmethod
    def failure(cls, skill: str, error: str) -> "SkillResult":
        return cls(skill=skill, ok=False, error=error)

    def value_or(self, fallback, key: Optional[str] = None):
        """
        The payload (or payload[key]) on success, else `fallback`.
        A successful call whose payload lacks `key` or holds a falsy value
        also yields the fallback.
        """
        if not self.ok:
            return fallback
        value = self.data
        if key is not None:
            value = value.get(key, _MISSING) if isinstance(value, dict) else _MISSING
        if value is _MISSING or value is None or value == "" or value == {}:
            return fallback
        return value


class SkillClient:
    """
    aiohttp client for the PinionOS-style skill API.

    One ClientSession for the process lifetime, created lazily (constructor
    may run outside the event loop). Every request carries a total timeout.
    """

    def __init__(self, base_url: str, signer: Optional[X402Signer] = None,
                 timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._signer = signer
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self.calls_made: int = 0
        self.calls_failed: int = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # ============================================================
    # TRANSPORT
    # ============================================================

    async def _request(self, skill: str, method: str, url: str,
                       payload: Optional[dict] = None) -> Any:
        """One paid request: plain request → (402 → sign → resend) → JSON body."""
        session = await self._get_session()
        headers = {"Accept": "application/json"}

        try:
            async with session.request(method, url, json=payload, headers=headers) as resp:
                if resp.status == 402:
                    if self._signer is None:
                        raise SkillError(skill, "payment required but no signer configured")
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError as e:
                        raise SkillError(skill, f"unreadable 402 body: {e}") from e
                    requirements = select_requirements(body, self._signer.network)
                    headers[PAYMENT_HEADER] = self._signer.sign(requirements)
                else:
                    return await self._read_body(skill, resp)

            async with session.request(method, url, json=payload, headers=headers) as resp:
                if resp.status == 402:
                    raise SkillError(skill, "payment rejected by skill server")
                return await self._read_body(skill, resp)
        except PaymentError as e:
            raise SkillError(skill, str(e)) from e
        except asyncio.TimeoutError as e:
            raise SkillError(skill, "timed out") from e
        except aiohttp.ClientError as e:
            raise SkillError(skill, f"transport error: {e}") from e

    @staticmethod
    async def _read_body(skill: str, resp: aiohttp.ClientResponse) -> Any:
        if resp.status >= 400:
            text = (await resp.text())[:200]
            raise SkillError(skill, f"HTTP {resp.status}: {text}")
        try:
            return await resp.json(content_type=None)
        except ValueError as e:
            raise SkillError(skill, f"invalid JSON body: {e}") from e

    async def call(self, skill: str, method: str, path_or_url: str,
                   payload: Optional[dict] = None) -> SkillResult:
        """Run one metered call and fold any failure into a SkillResult."""
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        self.calls_made += 1
        try:
            data = await self._request(skill, method, url, payload)
        except SkillError as e:
            self.calls_failed += 1
            logger.warning(f"Skill {skill} failed: {e.message}")
            return SkillResult.failure(skill, e.message)
        return SkillResult.success(skill, data, skill_cost(skill))

    # ============================================================
    # SKILLS
    # ============================================================

    async def balance(self, address: str) -> SkillResult:
        return await self.call("balance", "GET", f"/balance/{address}")

    async def price(self, token: str = "ETH") -> SkillResult:
        return await self.call("price", "GET", f"/price/{token}")

    async def fund(self, address: str) -> SkillResult:
        return await self.call("fund", "GET", f"/fund/{address}")

    async def chat(self, message: str) -> SkillResult:
        return await self.call("chat", "POST", "/chat", {"message": message})

    async def trade(self, src: str, dst: str, amount: str) -> SkillResult:
        return await self.call("trade", "POST", "/trade", {"src": src, "dst": dst, "amount": amount})

    async def broadcast(self, tx: dict) -> SkillResult:
        return await self.call("broadcast", "POST", "/broadcast", {"tx": tx})

    async def pay_service(self, url: str) -> SkillResult:
        """Any third-party x402 endpoint (external enrichment)."""
        return await self.call("payX402Service", "GET", url)

    def get_status(self) -> dict:
        return {
            "base_url": self.base_url,
            "payer": self._signer.address if self._signer else None,
            "calls_made": self.calls_made,
            "calls_failed": self.calls_failed,
        }
