"""
Agent configuration - environment → frozen AgentConfig.

.env.local is loaded first (local overrides), then .env as fallback.
Only PINION_PRIVATE_KEY and AGENT_WALLET_ADDRESS are required; every other
knob falls back to core.constants.DEFAULTS.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from decimal import Decimal, InvalidOperation
from pathlib import Path

from dotenv import load_dotenv

from .constants import DEFAULTS, SUPPORTED_NETWORKS

logger = logging.getLogger("autonome.config")


class ConfigError(Exception):
    """Raised when a required setting is missing or malformed."""
    pass


@dataclass(frozen=True)
class AgentConfig:
    private_key: str
    wallet_address: str
    network: str = DEFAULTS.NETWORK
    skill_server_port: int = DEFAULTS.SKILL_SERVER_PORT
    intel_price: str = DEFAULTS.INTEL_PRICE
    quick_check_price: str = DEFAULTS.QUICK_CHECK_PRICE
    reinvest_threshold: float = DEFAULTS.REINVEST_THRESHOLD
    reinvest_percentage: float = DEFAULTS.REINVEST_PERCENTAGE
    profit_check_interval: float = DEFAULTS.PROFIT_CHECK_INTERVAL_SECONDS
    db_path: str = DEFAULTS.DB_PATH
    skills_base_url: str = DEFAULTS.SKILLS_BASE_URL
    skill_timeout_seconds: float = DEFAULTS.SKILL_TIMEOUT_SECONDS
    paywall_enabled: bool = True
    facilitator_url: str = DEFAULTS.X402_FACILITATOR_URL
    enrichment_url: Optional[str] = None

    @property
    def intel_price_usd(self) -> Decimal:
        return parse_price(self.intel_price)

    @property
    def quick_check_price_usd(self) -> Decimal:
        return parse_price(self.quick_check_price)


def parse_price(price: str) -> Decimal:
    """'$0.08' → Decimal('0.08')."""
    try:
        value = Decimal(str(price).strip().lstrip("$"))
    except InvalidOperation:
        raise ConfigError(f"Invalid price: {price!r}")
    if value < 0:
        raise ConfigError(f"Price must be non-negative: {price!r}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast=float):
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_env_files(root: Path = None):
    """Load .env.local then .env (first one wins for any given key)."""
    root = root or Path.cwd()
    load_dotenv(root / ".env.local")
    load_dotenv(root / ".env")


def load_config() -> AgentConfig:
    """Build AgentConfig from environment variables."""
    private_key = os.getenv("PINION_PRIVATE_KEY", "").strip()
    wallet_address = os.getenv("AGENT_WALLET_ADDRESS", "").strip()

    if not private_key:
        raise ConfigError("PINION_PRIVATE_KEY is required. Set it in .env.local or export it.")
    if not wallet_address:
        raise ConfigError("AGENT_WALLET_ADDRESS is required. Set it in .env.local or export it.")

    network = os.getenv("PINION_NETWORK", DEFAULTS.NETWORK)
    if network not in SUPPORTED_NETWORKS:
        raise ConfigError(f"PINION_NETWORK must be one of {SUPPORTED_NETWORKS}, got {network!r}")

    percentage = _env_number("REINVEST_PERCENTAGE", DEFAULTS.REINVEST_PERCENTAGE)
    if not 0 < percentage <= 1:
        raise ConfigError(f"REINVEST_PERCENTAGE must be in (0, 1], got {percentage}")

    config = AgentConfig(
        private_key=private_key,
        wallet_address=wallet_address,
        network=network,
        skill_server_port=_env_number("SKILL_SERVER_PORT", DEFAULTS.SKILL_SERVER_PORT, int),
        intel_price=os.getenv("INTEL_PRICE", DEFAULTS.INTEL_PRICE),
        quick_check_price=os.getenv("QUICK_CHECK_PRICE", DEFAULTS.QUICK_CHECK_PRICE),
        reinvest_threshold=_env_number("REINVEST_THRESHOLD", DEFAULTS.REINVEST_THRESHOLD),
        reinvest_percentage=percentage,
        profit_check_interval=_env_number(
            "PROFIT_CHECK_INTERVAL", DEFAULTS.PROFIT_CHECK_INTERVAL_SECONDS
        ),
        db_path=os.getenv("DB_PATH", DEFAULTS.DB_PATH),
        skills_base_url=os.getenv("SKILLS_BASE_URL", DEFAULTS.SKILLS_BASE_URL).rstrip("/"),
        skill_timeout_seconds=_env_number("SKILL_TIMEOUT_SECONDS", DEFAULTS.SKILL_TIMEOUT_SECONDS),
        paywall_enabled=_env_bool("PAYWALL_ENABLED", True),
        facilitator_url=os.getenv("X402_FACILITATOR_URL", DEFAULTS.X402_FACILITATOR_URL).rstrip("/"),
        enrichment_url=os.getenv("INTEL_ENRICHMENT_URL") or None,
    )

    # Validate prices eagerly so a typo fails at boot, not on the first paid request
    config.intel_price_usd
    config.quick_check_price_usd

    logger.info(
        f"Config loaded: network={config.network}, intel={config.intel_price}, "
        f"threshold=${config.reinvest_threshold}, reinvest={config.reinvest_percentage * 100:.0f}%"
    )
    return config
