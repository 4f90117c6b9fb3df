"""
Wallet scoring heuristics: risk score, category, health, anomalies.
"""

from __future__ import annotations

import pytest

from services.scoring import (
    ANOMALY_EMPTY_WALLET,
    ANOMALY_LARGE_ETH,
    ANOMALY_NO_BUFFER,
    ANOMALY_STABLE_RESERVES,
    ANOMALY_WHALE,
    NO_ANOMALIES,
    PortfolioHealth,
    WalletCategory,
    assess_activity,
    assess_health,
    categorize_wallet,
    compute_risk_score,
    detect_anomalies,
    has_anomalies,
    quick_risk_score,
)


def test_empty_wallet():
    """ETH=0, USDC=0 -> new, empty, zero-wallet anomaly, max-ish risk."""
    assert categorize_wallet(0, 0, 0) is WalletCategory.NEW
    assert assess_health(0, 0) is PortfolioHealth.EMPTY
    assert detect_anomalies(0, 0, 2500) == [ANOMALY_EMPTY_WALLET]
    # 50 + 20 (<$10) + 15 (<$1) + 5 (undiversified)
    assert compute_risk_score(0, 0, 2500) == 90


def test_risk_score_all_eth_small_wallet():
    # $25 of ETH only: 50 + 20 (>95%) + 10 (>80%) + 5 (no USDC)
    assert compute_risk_score(0.01, 0, 2500) == 85


def test_risk_score_large_stable_heavy_wallet():
    # $200k, 12.5% ETH: 50 - 10 - 15 - 10
    assert compute_risk_score(10, 175_000, 2500) == 15


def test_risk_score_clamped_at_hundred():
    # $0.25 all in ETH: 50 + 20 + 15 + 20 + 10 + 5 = 120 -> 100
    assert compute_risk_score(0.0001, 0, 2500) == 100


def test_risk_score_stables_only_whale():
    # $10M USDC: 50 - 10 - 15 - 10 (ETH share 0) + 5 (no ETH)
    assert compute_risk_score(0, 10_000_000, 2500) == 20


@pytest.mark.parametrize("eth,usdc,price", [
    (0, 0, 0), (0.001, 0, 2500), (5, 5, 2500), (1000, 2_000_000, 3000), (0, 0.5, 0),
])
def test_risk_score_is_bounded_int(eth, usdc, price):
    score = compute_risk_score(eth, usdc, price)
    assert isinstance(score, int)
    assert 0 <= score <= 100


def test_categories():
    assert categorize_wallet(0, 0.5, 0.5) is WalletCategory.DORMANT
    assert categorize_wallet(100, 0, 250_000) is WalletCategory.WHALE
    assert categorize_wallet(5, 0, 12_500) is WalletCategory.ACTIVE_TRADER
    # Mostly stables under $10k
    assert categorize_wallet(0.1, 1000, 1250) is WalletCategory.HODLER
    assert categorize_wallet(1, 100, 2600) is WalletCategory.ACTIVE_TRADER


def test_health():
    assert assess_health(1, 0) is PortfolioHealth.CONCENTRATED
    assert assess_health(0, 10) is PortfolioHealth.CONCENTRATED
    assert assess_health(0.001, 0.001) is PortfolioHealth.UNDERFUNDED
    assert assess_health(1, 100) is PortfolioHealth.DIVERSIFIED


def test_activity_from_funding_payload():
    assert assess_activity({"funding": {"steps": ["bridge", "swap"]}}) == "needs-funding"
    assert assess_activity({"funding": {"steps": []}}) == "normal"
    assert assess_activity({}) == "normal"
    assert assess_activity("garbage") == "normal"


def test_clean_wallet_has_exactly_no_anomalies_marker():
    anomalies = detect_anomalies(1, 100, 2500)
    assert anomalies == [NO_ANOMALIES]
    assert not has_anomalies(anomalies)


def test_anomalies_accumulate_without_duplicates():
    anomalies = detect_anomalies(500, 60_000, 2500)
    assert anomalies == [ANOMALY_LARGE_ETH, ANOMALY_STABLE_RESERVES, ANOMALY_WHALE]
    assert has_anomalies(anomalies)
    assert len(set(anomalies)) == len(anomalies)


def test_no_buffer_anomaly():
    assert detect_anomalies(1, 0, 2500) == [ANOMALY_NO_BUFFER]


def test_quick_risk_score():
    assert quick_risk_score(0, 0.5) == 85
    assert quick_risk_score(0, 2000) == 25
    assert quick_risk_score(1, 100) == 50
