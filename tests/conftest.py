"""
Pytest fixtures for Autonome tests. Temporary SQLite ledger per test, and a
fake skill client so nothing touches the network or signs payments.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.constants import skill_cost
from core.event_bus import EventBus
from core.ledger import LedgerStore
from core.metrics import MetricsAggregator
from core.skill_client import SkillResult

AGENT_WALLET = "0x1111111111111111111111111111111111111111"
CALLER_WALLET = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


class FakeClock:
    """Deterministic clock for the ledger; advance() moves it forward."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class FakeSkillClient:
    """
    Stands in for core.skill_client.SkillClient.

    responses maps skill name -> payload (success) or an Exception instance
    (failure with that message). Unlisted skills succeed with DEFAULT_DATA.
    """

    DEFAULT_DATA = {
        "balance": {"balances": {"ETH": "1.5", "USDC": "250.00"}},
        "price": {"usd": 2500.0},
        "fund": {"funding": {"steps": []}},
        "chat": {"response": "Profile: a long-term holder.\nRecommendation: keep a stablecoin buffer.\nRebalance monthly."},
        "trade": {"swap": {"to": "0xrouter", "data": "0xswap"}},
        "broadcast": {"hash": "0x" + "ab" * 32},
        "payX402Service": {"labels": []},
    }

    def __init__(self, responses: dict | None = None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls: list[tuple[str, tuple]] = []
        self.closed = False

    def set(self, skill: str, value):
        self.responses[skill] = value

    def fail(self, skill: str, message: str = "upstream unavailable"):
        self.responses[skill] = RuntimeError(message)

    def calls_to(self, skill: str) -> int:
        return sum(1 for name, _ in self.calls if name == skill)

    async def _result(self, skill: str, *args) -> SkillResult:
        self.calls.append((skill, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.responses.get(skill, self.DEFAULT_DATA.get(skill))
        if isinstance(value, Exception):
            return SkillResult.failure(skill, str(value))
        return SkillResult.success(skill, value, skill_cost(skill))

    async def balance(self, address):
        return await self._result("balance", address)

    async def price(self, token="ETH"):
        return await self._result("price", token)

    async def fund(self, address):
        return await self._result("fund", address)

    async def chat(self, message):
        return await self._result("chat", message)

    async def trade(self, src, dst, amount):
        return await self._result("trade", src, dst, amount)

    async def broadcast(self, tx):
        return await self._result("broadcast", tx)

    async def pay_service(self, url):
        return await self._result("payX402Service", url)

    def get_status(self) -> dict:
        return {"base_url": "fake://skills", "payer": AGENT_WALLET,
                "calls_made": len(self.calls), "calls_failed": 0}

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    store = LedgerStore(tmp_path / "autonome.db", clock=clock)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def metrics(ledger):
    return MetricsAggregator(ledger)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def skills():
    return FakeSkillClient()


@pytest.fixture
def recorded(bus):
    """Every event emitted on the bus, in order."""
    events = []
    bus.subscribe(events.append)
    return events


def event_types(events) -> list[str]:
    return [e.type for e in events]
