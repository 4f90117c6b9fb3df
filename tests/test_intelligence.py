"""
Intelligence pipeline: skill order, expense booking, fallbacks on failure.

Skills are faked (tests.conftest.FakeSkillClient); the ledger is a real
temporary SQLite file.
"""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest
from aiohttp import test_utils, web

from core.ledger import EntryKind
from core.skill_client import SkillClient
from core.x402 import X402Signer
from services.intelligence import (
    AI_SUMMARY_FALLBACK,
    DEFAULT_BALANCES,
    RECOMMENDATION_FALLBACK,
    IntelligenceService,
    _extract_price,
    build_analysis_prompt,
    extract_recommendation,
    safe_parse_float,
)
from services.scoring import ANOMALY_EMPTY_WALLET, NO_ANOMALIES, PortfolioHealth, WalletCategory
from tests.conftest import CALLER_WALLET, event_types


@pytest.fixture
def service(skills, ledger, bus):
    return IntelligenceService(skills, ledger, bus)


@pytest.mark.asyncio
async def test_full_report_books_four_expenses(service, skills, ledger, recorded):
    report = await service.synthesize(CALLER_WALLET)

    assert [name for name, _ in skills.calls] == ["balance", "price", "fund", "chat"]
    assert report.skills_used == ["balance", "price", "fund", "chat"]
    assert report.cost_to_generate == Decimal("0.04")
    assert ledger.count(EntryKind.EXPENSE) == 4
    assert ledger.sum_amount(EntryKind.EXPENSE) == Decimal("0.04")
    # The pipeline never books revenue itself
    assert ledger.count(EntryKind.REVENUE) == 0
    assert event_types(recorded).count("skill:completed") == 4


@pytest.mark.asyncio
async def test_report_scoring(service):
    report = await service.synthesize(CALLER_WALLET)

    # 1.5 ETH @ 2500 + 250 USDC
    assert report.eth_price_usd == 2500.0
    assert report.portfolio_value_usd == 4000.0
    assert report.risk_score == 60
    assert report.wallet_category is WalletCategory.ACTIVE_TRADER
    assert report.portfolio_health is PortfolioHealth.DIVERSIFIED
    assert report.activity_pattern == "normal"
    assert report.anomalies == [NO_ANOMALIES]
    assert report.ai_summary.startswith("Profile:")
    assert report.recommendation == "keep a stablecoin buffer. Rebalance monthly."


@pytest.mark.asyncio
async def test_balance_failure_uses_zero_balances(service, skills, ledger, recorded):
    skills.fail("balance")
    report = await service.synthesize(CALLER_WALLET)

    assert report.balances == DEFAULT_BALANCES
    assert report.wallet_category is WalletCategory.NEW
    assert report.portfolio_health is PortfolioHealth.EMPTY
    assert ANOMALY_EMPTY_WALLET in report.anomalies
    assert "balance" not in report.skills_used
    assert report.cost_to_generate == Decimal("0.03")
    assert ledger.count(EntryKind.EXPENSE) == 3
    assert "skill:failed" in event_types(recorded)


@pytest.mark.asyncio
async def test_anomalies_are_logged_only_when_present(service, skills, caplog):
    caplog.set_level(logging.INFO, logger="autonome.services.intelligence")
    await service.synthesize(CALLER_WALLET)
    assert "Anomalies for" not in caplog.text

    skills.fail("balance")
    await service.synthesize(CALLER_WALLET)
    assert ANOMALY_EMPTY_WALLET in caplog.text


@pytest.mark.asyncio
async def test_skill_server_sending_html_402s_degrades_report(ledger, bus, recorded):
    async def payment_page(request):
        return web.Response(text="<html>Payment Required</html>", status=402, content_type="text/html")

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", payment_page)
    async with test_utils.TestServer(app) as server:
        skills = SkillClient(str(server.make_url("")), signer=X402Signer("0x" + "11" * 32, "base-sepolia"))
        try:
            report = await IntelligenceService(skills, ledger, bus).synthesize(CALLER_WALLET)
        finally:
            await skills.close()

    assert report.skills_used == []
    assert report.balances == DEFAULT_BALANCES
    assert report.ai_summary == AI_SUMMARY_FALLBACK
    assert ledger.count(EntryKind.EXPENSE) == 0
    assert event_types(recorded).count("skill:failed") == 4


@pytest.mark.asyncio
async def test_every_skill_failing_still_yields_report(service, skills, ledger):
    for name in ("balance", "price", "fund", "chat"):
        skills.fail(name)
    report = await service.synthesize(CALLER_WALLET)

    assert report.eth_price_usd == 0.0
    assert report.ai_summary == AI_SUMMARY_FALLBACK
    assert report.recommendation == RECOMMENDATION_FALLBACK
    assert report.cost_to_generate == Decimal(0)
    assert report.skills_used == []
    assert ledger.count(EntryKind.EXPENSE) == 0


@pytest.mark.asyncio
async def test_empty_chat_response_falls_back(service, skills):
    skills.set("chat", {"response": ""})
    report = await service.synthesize(CALLER_WALLET)
    assert report.ai_summary == AI_SUMMARY_FALLBACK
    # The call itself succeeded and is still paid for
    assert "chat" in report.skills_used


@pytest.mark.asyncio
async def test_malformed_balance_payload_falls_back(service, skills):
    skills.set("balance", {"balances": "not-a-dict"})
    report = await service.synthesize(CALLER_WALLET)
    assert report.balances == DEFAULT_BALANCES


@pytest.mark.asyncio
async def test_enrichment_step_is_paid_for(skills, ledger, bus):
    service = IntelligenceService(skills, ledger, bus,
                                  enrichment_url="https://data.example/x402/labels/{address}")
    report = await service.synthesize(CALLER_WALLET)

    assert skills.calls[3] == ("payX402Service", (f"https://data.example/x402/labels/{CALLER_WALLET}",))
    assert report.cost_to_generate == Decimal("0.05")
    assert "payX402Service" in report.skills_used


@pytest.mark.asyncio
async def test_report_to_dict(service):
    d = (await service.synthesize(CALLER_WALLET)).to_dict()
    assert d["address"] == CALLER_WALLET
    assert d["ethPriceUsd"] == "2500.00"
    assert d["portfolioValueUsd"] == "4000.00"
    assert d["walletCategory"] == "active-trader"
    assert d["costToGenerate"] == "0.04"
    assert d["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_reports_counted(service):
    await service.synthesize(CALLER_WALLET)
    await service.synthesize(CALLER_WALLET)
    assert service.total_reports == 2


# --- helpers ---


def test_safe_parse_float():
    assert safe_parse_float("1.25") == 1.25
    assert safe_parse_float(3) == 3.0
    assert safe_parse_float(None) == 0.0
    assert safe_parse_float("") == 0.0
    assert safe_parse_float("abc") == 0.0
    assert safe_parse_float("nan") == 0.0
    assert safe_parse_float("inf") == 0.0


def test_extract_price_shapes():
    assert _extract_price({"usd": "2650.5"}) == 2650.5
    assert _extract_price({"price": 3000}) == 3000.0
    assert _extract_price(1999) == 1999.0
    assert _extract_price({}) == 0.0


def test_extract_recommendation():
    text = "Summary line about the wallet.\nRecommendation: diversify into stables.\nAlso monitor gas."
    assert extract_recommendation(text) == "diversify into stables. Also monitor gas."


def test_extract_recommendation_without_marker_uses_last_long_line():
    text = "This wallet holds a lot of ETH.\nIt has been quiet for a long while now."
    assert extract_recommendation(text) == "It has been quiet for a long while now."
    assert extract_recommendation("short\nlines") == "Review portfolio allocation"


def test_prompt_contains_wallet_facts():
    prompt = build_analysis_prompt(CALLER_WALLET, 1.5, 250, 2500, 4000, 60,
                                   WalletCategory.ACTIVE_TRADER, PortfolioHealth.DIVERSIFIED,
                                   [NO_ANOMALIES])
    assert CALLER_WALLET in prompt
    assert "Risk Score: 60/100" in prompt
    assert "Category: active-trader" in prompt
    assert "$4000.00" in prompt
