"""
Wallet scoring - local, deterministic heuristics

Pure functions over (ETH balance, USDC balance, ETH price). No network, no
shared state, safe to call in any order. This is the value the paid report
adds on top of the raw skill outputs.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from core.constants import HODLER_REFERENCE_ETH_PRICE


class WalletCategory(str, Enum):
    NEW = "new"
    DORMANT = "dormant"
    WHALE = "whale"
    ACTIVE_TRADER = "active-trader"
    HODLER = "hodler"


class PortfolioHealth(str, Enum):
    EMPTY = "empty"
    CONCENTRATED = "concentrated"
    UNDERFUNDED = "underfunded"
    DIVERSIFIED = "diversified"


NO_ANOMALIES = "No anomalies detected"

ANOMALY_LARGE_ETH = "Large ETH holding (>100 ETH)"
ANOMALY_STABLE_RESERVES = "Significant stablecoin reserves (>$50k)"
ANOMALY_EMPTY_WALLET = "Empty wallet — possible new or drained account"
ANOMALY_WHALE = "Whale-tier portfolio (>$1M)"
ANOMALY_NO_BUFFER = "No stablecoin buffer — fully exposed to ETH volatility"


def portfolio_value(eth: float, usdc: float, eth_price: float) -> float:
    return eth * eth_price + usdc


def compute_risk_score(eth: float, usdc: float, eth_price: float) -> int:
    """0 (safe) .. 100 (extreme). Baseline 50, adjusted by size and concentration."""
    score = 50.0
    total_usd = portfolio_value(eth, usdc, eth_price)

    # Portfolio size
    if total_usd < 10:
        score += 20
    if total_usd < 1:
        score += 15
    if total_usd > 10_000:
        score -= 10
    if total_usd > 100_000:
        score -= 15

    # Concentration in the volatile asset
    if total_usd > 0:
        eth_pct = (eth * eth_price) / total_usd
        if eth_pct > 0.95:
            score += 20
        if eth_pct > 0.8:
            score += 10
        if eth_pct < 0.2:
            score -= 10

    # No diversification
    if eth == 0 or usdc == 0:
        score += 5

    score = max(0.0, min(100.0, score))
    return int(Decimal(str(score)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def categorize_wallet(eth: float, usdc: float, total_usd: float) -> WalletCategory:
    if total_usd == 0:
        return WalletCategory.NEW
    if total_usd < 1:
        return WalletCategory.DORMANT
    if total_usd > 100_000:
        return WalletCategory.WHALE
    if total_usd > 10_000:
        return WalletCategory.ACTIVE_TRADER
    if usdc > eth * HODLER_REFERENCE_ETH_PRICE * 2:
        return WalletCategory.HODLER  # mostly stables
    return WalletCategory.ACTIVE_TRADER


def assess_health(eth: float, usdc: float) -> PortfolioHealth:
    if eth == 0 and usdc == 0:
        return PortfolioHealth.EMPTY
    if eth == 0 or usdc == 0:
        return PortfolioHealth.CONCENTRATED
    if eth + usdc < 0.01:
        return PortfolioHealth.UNDERFUNDED
    return PortfolioHealth.DIVERSIFIED


def assess_activity(fund_data) -> str:
    """Infer an activity pattern from the funding skill's payload."""
    funding = fund_data.get("funding") if isinstance(fund_data, dict) else None
    steps = funding.get("steps") if isinstance(funding, dict) else None
    if steps:
        return "needs-funding"
    return "normal"


def detect_anomalies(eth: float, usdc: float, eth_price: float) -> list[str]:
    """
    Human-readable flags. Never empty: when nothing fires the result is
    exactly [NO_ANOMALIES], which means "clean", not a flag.
    """
    total_usd = portfolio_value(eth, usdc, eth_price)
    anomalies = []

    if eth > 100:
        anomalies.append(ANOMALY_LARGE_ETH)
    if usdc > 50_000:
        anomalies.append(ANOMALY_STABLE_RESERVES)
    if eth == 0 and usdc == 0:
        anomalies.append(ANOMALY_EMPTY_WALLET)
    if total_usd > 1_000_000:
        anomalies.append(ANOMALY_WHALE)
    if eth > 0 and usdc == 0:
        anomalies.append(ANOMALY_NO_BUFFER)

    if not anomalies:
        return [NO_ANOMALIES]
    return list(dict.fromkeys(anomalies))


def has_anomalies(anomalies: list[str]) -> bool:
    return anomalies != [NO_ANOMALIES]


def quick_risk_score(eth: float, usdc: float) -> int:
    """Cheap heuristic for the quick check: raw combined balance only."""
    combined = eth + usdc
    if combined < 1:
        return 85
    if combined > 1000:
        return 25
    return 50
