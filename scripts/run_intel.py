"""
Run One Intelligence Report

Runs the full pipeline against a live skill server, paying for each skill
call with the configured key. Costs are booked into the configured ledger
like any other report; no revenue is recorded.

Usage:
    python scripts/run_intel.py                          # vitalik.eth
    python scripts/run_intel.py 0xAb5801a7D398351b8bE11C439e05C5B3259aeC9B
    python scripts/run_intel.py --json 0x...             # Raw report JSON

Prerequisites:
    PINION_PRIVATE_KEY and AGENT_WALLET_ADDRESS in .env.local or .env
"""

import sys
import json
import time
import asyncio
import argparse
import logging
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from api.server import is_valid_address
from core.config import ConfigError, load_config, load_env_files
from core.event_bus import EventBus
from core.ledger import LedgerStore
from core.skill_client import SkillClient
from core.x402 import X402Signer
from services.intelligence import IntelligenceService

load_env_files(ROOT)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("autonome.run_intel")

DEFAULT_ADDRESS = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"  # vitalik.eth


def _print_report(report, elapsed: float):
    print("=" * 55)
    print("  INTELLIGENCE REPORT")
    print("=" * 55)
    print(f"  Address:          {report.address}")
    print(f"  Timestamp:        {report.timestamp}")
    print(f"  ETH Balance:      {report.balances.get('ETH')} ETH")
    print(f"  USDC Balance:     {report.balances.get('USDC')} USDC")
    print(f"  ETH Price:        ${report.eth_price_usd:.2f}")
    print(f"  Portfolio Value:  ${report.portfolio_value_usd:.2f}")
    print(f"  Risk Score:       {report.risk_score}/100")
    print(f"  Wallet Category:  {report.wallet_category.value}")
    print(f"  Portfolio Health: {report.portfolio_health.value}")
    print(f"  Activity Pattern: {report.activity_pattern}")
    print(f"  Anomalies:        {', '.join(report.anomalies)}")
    print()
    print("  AI Summary:")
    print(f"     {report.ai_summary}")
    print()
    print("  Recommendation:")
    print(f"     {report.recommendation}")
    print()
    print("  -- COST BREAKDOWN --")
    print(f"  Skills used:      {', '.join(report.skills_used) or 'none'}")
    print(f"  Total cost:       ${report.cost_to_generate:.2f}")
    print(f"  Time elapsed:     {elapsed:.2f}s")
    print("=" * 55)


async def run(address: str, as_json: bool) -> int:
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(str(e))
        return 1

    signer = X402Signer(config.private_key, config.network)
    skills = SkillClient(config.skills_base_url, signer=signer,
                         timeout_seconds=config.skill_timeout_seconds)
    ledger = LedgerStore(config.db_path)
    ledger.init_schema()
    intelligence = IntelligenceService(skills, ledger, EventBus(),
                                       enrichment_url=config.enrichment_url)

    logger.info(f"Network: {config.network} | payer: {signer.address}")
    logger.info(f"Running intelligence pipeline for {address}...")
    start = time.monotonic()
    try:
        report = await intelligence.synthesize(address)
    finally:
        await skills.close()
        ledger.close()
    elapsed = time.monotonic() - start

    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report, elapsed)

    if not report.skills_used:
        logger.error("Every skill call failed; check SKILLS_BASE_URL and the payer's USDC balance")
        return 1
    return 0


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="Run one Autonome intelligence report")
    parser.add_argument("address", nargs="?", default=DEFAULT_ADDRESS,
                        help="Wallet to analyze (default: vitalik.eth)")
    parser.add_argument("--json", action="store_true", help="Print the raw report JSON")
    args = parser.parse_args()

    if not is_valid_address(args.address):
        logger.error(f"Not an Ethereum address: {args.address}")
        sys.exit(2)

    sys.exit(asyncio.run(run(args.address, args.json)))


if __name__ == "__main__":
    main()
