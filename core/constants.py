"""
AUTONOME CONSTANTS - Layer 0

Fixed economics of the agent: skill prices, default knobs for the profit
engine, network explorers. Runtime overrides come from core.config (env vars);
everything here is the fallback.

Designed for: autonomous economic agent (earn → spend → reinvest)
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Final


# ============================================================
# DEFAULTS - overridable via environment (see core.config)
# ============================================================

@dataclass(frozen=True)
class Defaults:
    """Frozen dataclass = immutable at runtime."""

    # --- NETWORK ---
    NETWORK: Final[str] = "base-sepolia"
    SKILL_SERVER_PORT: Final[int] = 4020
    SKILLS_BASE_URL: Final[str] = "https://skills.pinionfun.com/api/v1"
    X402_FACILITATOR_URL: Final[str] = "https://x402.org/facilitator"
    SKILL_TIMEOUT_SECONDS: Final[float] = 30.0         # No remote call may hang forever

    # --- PRICING (what callers pay us) ---
    INTEL_PRICE: Final[str] = "$0.08"                  # Full intelligence report
    QUICK_CHECK_PRICE: Final[str] = "$0.03"            # Balance + price only

    # --- PROFIT ENGINE ---
    REINVEST_THRESHOLD: Final[float] = 0.50            # Reinvest once $0.50 is sitting idle
    REINVEST_PERCENTAGE: Final[float] = 0.80           # Reinvest 80% of the idle profit
    PROFIT_CHECK_INTERVAL_SECONDS: Final[int] = 30

    # --- STORAGE ---
    DB_PATH: Final[str] = "autonome.db"

    # --- LIVE UPDATES ---
    SSE_PUSH_INTERVAL_SECONDS: Final[float] = 2.0
    SSE_MAX_LIFETIME_SECONDS: Final[float] = 30.0
    EVENT_BUFFER_SIZE: Final[int] = 200


DEFAULTS = Defaults()


# ============================================================
# SKILL COSTS - what each metered call costs us (USDC)
# ============================================================

SKILL_COSTS: Final[dict[str, Decimal]] = {
    "balance": Decimal("0.01"),
    "price": Decimal("0.01"),
    "tx": Decimal("0.01"),
    "fund": Decimal("0.01"),
    "chat": Decimal("0.01"),
    "trade": Decimal("0.01"),
    "broadcast": Decimal("0.01"),
    "wallet": Decimal("0.01"),
    "send": Decimal("0.01"),
    "payX402Service": Decimal("0.01"),
}


def skill_cost(skill: str) -> Decimal:
    """Fixed cost of one call to `skill`. Unknown skills cost the standard $0.01."""
    return SKILL_COSTS.get(skill, Decimal("0.01"))


# ============================================================
# REINVESTMENT ROUTE
# ============================================================

REINVEST_SOURCE_ASSET: Final[str] = "USDC"   # Profit accrues in stables
REINVEST_TARGET_ASSET: Final[str] = "ETH"    # ...and is rotated into the volatile asset

# Reference ETH price used only for the "hodler" heuristic in wallet categorization
HODLER_REFERENCE_ETH_PRICE: Final[float] = 2650.0


# ============================================================
# CHAINS
# ============================================================

SUPPORTED_NETWORKS: Final[tuple[str, ...]] = ("base", "base-sepolia")

CHAIN_IDS: Final[dict[str, int]] = {
    "base": 8453,
    "base-sepolia": 84532,
}

# USDC contract per network (x402 "exact" payments settle in USDC)
USDC_ADDRESSES: Final[dict[str, str]] = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

EXPLORER_URL: Final[dict[str, str]] = {
    "base": "https://basescan.org",
    "base-sepolia": "https://sepolia.basescan.org",
}


def get_explorer_tx_url(tx_hash: str, network: str = "base-sepolia") -> str:
    base = EXPLORER_URL.get(network, EXPLORER_URL["base-sepolia"])
    return f"{base}/tx/{tx_hash}"


ADDRESS_PATTERN: Final[str] = r"^0x[0-9a-fA-F]{40}$"
