"""
Intelligence Service - Wallet Intelligence Reports

The value-creation pipeline: combines several metered skill calls with local
scoring and an AI summary into a report no single skill provides.

Flow (fixed order, every step attempted):
1. balance  → raw ETH / USDC holdings
2. price    → ETH/USD for valuation
3. fund     → funding status (activity pattern)
4. external x402 enrichment (optional context)
5. local scoring: risk, category, health, anomalies
6. chat     → natural-language summary + recommendation

Each successful call is booked as an expense line. Each failed call is
logged, emitted on the bus, and replaced by its explicit fallback; the
pipeline never aborts on a skill failure. Reports are never persisted here:
revenue is booked by the endpoint once the caller's payment is confirmed.

Revenue: $0.08/report, cost ≈ $0.05 (five $0.01 skill calls)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from core.event_bus import EventBus
from core.ledger import LedgerStore
from core.skill_client import SkillClient, SkillResult
from services.scoring import (
    PortfolioHealth,
    WalletCategory,
    assess_activity,
    assess_health,
    categorize_wallet,
    compute_risk_score,
    detect_anomalies,
    has_anomalies,
)

logger = logging.getLogger("autonome.services.intelligence")

# Fallbacks substituted when a step fails
DEFAULT_BALANCES = {"ETH": "0", "USDC": "0"}
DEFAULT_PRICE = 0.0
DEFAULT_FUNDING: dict = {}
AI_SUMMARY_FALLBACK = "AI analysis unavailable"
RECOMMENDATION_FALLBACK = "No recommendation available"


# ============================================================
# DATA MODELS
# ============================================================

@dataclass
class IntelReport:
    """Ephemeral: built per request, returned, discarded."""
    address: str
    timestamp: str
    balances: dict
    eth_price_usd: float = 0.0
    portfolio_value_usd: float = 0.0
    risk_score: int = 50
    wallet_category: WalletCategory = WalletCategory.NEW
    portfolio_health: PortfolioHealth = PortfolioHealth.EMPTY
    activity_pattern: str = "normal"
    anomalies: list[str] = field(default_factory=list)
    ai_summary: str = AI_SUMMARY_FALLBACK
    recommendation: str = RECOMMENDATION_FALLBACK
    cost_to_generate: Decimal = Decimal(0)
    skills_used: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "timestamp": self.timestamp,
            "balances": self.balances,
            "ethPriceUsd": f"{self.eth_price_usd:.2f}",
            "portfolioValueUsd": f"{self.portfolio_value_usd:.2f}",
            "riskScore": self.risk_score,
            "walletCategory": self.wallet_category.value,
            "portfolioHealth": self.portfolio_health.value,
            "activityPattern": self.activity_pattern,
            "anomalies": self.anomalies,
            "aiSummary": self.ai_summary,
            "recommendation": self.recommendation,
            "costToGenerate": f"{self.cost_to_generate:.2f}",
            "skillsUsed": self.skills_used,
        }


def safe_parse_float(value) -> float:
    """Numeric string/number → float, 0.0 on anything unparseable."""
    if value is None or value == "":
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return 0.0
    return parsed


def _extract_price(data) -> float:
    """The price skill answers {"usd": ...}, {"price": ...} or a bare number."""
    if isinstance(data, dict):
        for key in ("usd", "price"):
            if data.get(key) not in (None, ""):
                return safe_parse_float(data[key])
        return DEFAULT_PRICE
    return safe_parse_float(data)


# ============================================================
# PROMPT + RESPONSE PARSING
# ============================================================

def build_analysis_prompt(address: str, eth: float, usdc: float, eth_price: float,
                          portfolio_value_usd: float, risk_score: int,
                          category: WalletCategory, health: PortfolioHealth,
                          anomalies: list[str]) -> str:
    return (
        "You are a blockchain intelligence analyst. Analyze this Base L2 wallet and provide:\n"
        "1. A brief profile summary (2-3 sentences about who this wallet likely belongs to)\n"
        "2. Key observations about their holdings and behavior\n"
        "3. One actionable recommendation\n"
        "\n"
        "Wallet data:\n"
        f"- Address: {address}\n"
        "- Network: Base L2\n"
        f"- ETH Balance: {eth:.6f} ETH (${eth * eth_price:.2f})\n"
        f"- USDC Balance: {usdc:.2f} USDC\n"
        f"- Total Portfolio: ${portfolio_value_usd:.2f}\n"
        f"- ETH Price: ${eth_price:.2f}\n"
        f"- Risk Score: {risk_score}/100 (higher = riskier)\n"
        f"- Category: {category.value}\n"
        f"- Portfolio Health: {health.value}\n"
        f"- Anomalies: {', '.join(anomalies)}\n"
        "\n"
        "Be concise and direct. No disclaimers. Focus on actionable intelligence."
    )


def extract_recommendation(ai_response: str) -> str:
    """Pull the recommendation section out of a free-text AI answer."""
    lines = ai_response.split("\n")
    markers = ("recommendation", "suggest", "action")
    rec_index = next(
        (i for i, line in enumerate(lines) if any(m in line.lower() for m in markers)),
        -1,
    )

    if 0 <= rec_index < len(lines) - 1:
        text = " ".join(lines[rec_index:])
        if ":" in text:
            text = text.split(":", 1)[1]
        return text.strip()[:300]

    meaningful = [line for line in lines if len(line.strip()) > 20]
    if meaningful:
        return meaningful[-1].strip()
    return "Review portfolio allocation"


# ============================================================
# SERVICE
# ============================================================

class IntelligenceService:
    """
    Orchestrates the skill calls and books their cost.

    enrichment_url: template for the external x402 data source, formatted
    with {address}. None disables the step.
    """

    def __init__(self, skills: SkillClient, ledger: LedgerStore, event_bus: EventBus,
                 enrichment_url: Optional[str] = None):
        self.skills = skills
        self.ledger = ledger
        self.bus = event_bus
        self.enrichment_url = enrichment_url
        self.total_reports: int = 0

    def _book(self, result: SkillResult, expenses: list[Decimal], skills_used: list[str]):
        """Record a finished call: expense line on success, notification either way."""
        if result.ok:
            self.ledger.record_expense(result.skill, result.cost)
            expenses.append(result.cost)
            skills_used.append(result.skill)
            self.bus.emit("skill:completed", {"skill": result.skill, "cost": float(result.cost)})
        else:
            self.bus.emit("skill:failed", {"skill": result.skill, "error": result.error})

    async def synthesize(self, address: str) -> IntelReport:
        """Full pipeline for one wallet. Never raises on skill failures."""
        expenses: list[Decimal] = []
        skills_used: list[str] = []

        # Step 1: balances
        self.bus.emit("skill:calling", {"skill": "balance", "address": address})
        result = await self.skills.balance(address)
        self._book(result, expenses, skills_used)
        balances = result.value_or(DEFAULT_BALANCES, key="balances")
        if not isinstance(balances, dict):
            balances = DEFAULT_BALANCES
        balances = dict(balances)

        # Step 2: ETH price
        self.bus.emit("skill:calling", {"skill": "price", "token": "ETH"})
        result = await self.skills.price("ETH")
        self._book(result, expenses, skills_used)
        eth_price = _extract_price(result.data) if result.ok else DEFAULT_PRICE

        # Step 3: funding status
        self.bus.emit("skill:calling", {"skill": "fund", "address": address})
        result = await self.skills.fund(address)
        self._book(result, expenses, skills_used)
        fund_data = result.value_or(DEFAULT_FUNDING)

        # Step 4: external enrichment (optional context)
        if self.enrichment_url:
            self.bus.emit("skill:calling", {"skill": "payX402Service", "detail": "external data enrichment"})
            result = await self.skills.pay_service(self.enrichment_url.format(address=address))
            self._book(result, expenses, skills_used)

        # Step 5: local computation
        eth = safe_parse_float(balances.get("ETH"))
        usdc = safe_parse_float(balances.get("USDC"))
        value_usd = round(eth * eth_price + usdc, 2)

        risk_score = compute_risk_score(eth, usdc, eth_price)
        category = categorize_wallet(eth, usdc, value_usd)
        health = assess_health(eth, usdc)
        activity = assess_activity(fund_data)
        anomalies = detect_anomalies(eth, usdc, eth_price)
        if has_anomalies(anomalies):
            logger.info(f"Anomalies for {address[:10]}...: {'; '.join(anomalies)}")

        # Step 6: AI analysis
        self.bus.emit("skill:calling", {"skill": "chat", "detail": "AI wallet analysis"})
        prompt = build_analysis_prompt(
            address, eth, usdc, eth_price, value_usd, risk_score, category, health, anomalies,
        )
        result = await self.skills.chat(prompt)
        self._book(result, expenses, skills_used)
        response = result.value_or("", key="response")
        if isinstance(response, str) and response:
            ai_summary = response
            recommendation = extract_recommendation(response)
        else:
            ai_summary = AI_SUMMARY_FALLBACK
            recommendation = RECOMMENDATION_FALLBACK

        self.total_reports += 1
        report = IntelReport(
            address=address,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            balances=balances,
            eth_price_usd=eth_price,
            portfolio_value_usd=value_usd,
            risk_score=risk_score,
            wallet_category=category,
            portfolio_health=health,
            activity_pattern=activity,
            anomalies=anomalies,
            ai_summary=ai_summary,
            recommendation=recommendation,
            cost_to_generate=sum(expenses, Decimal(0)),
            skills_used=skills_used,
        )
        logger.info(
            f"Intel report {address[:10]}...: risk={risk_score}, category={category.value}, "
            f"cost=${report.cost_to_generate}, skills={len(skills_used)}"
        )
        return report
