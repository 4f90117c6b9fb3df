"""
Seed Demo Ledger

Populates a fresh ledger with two hours of realistic activity so the
dashboard has something to show without spending real USDC.

Writes:
- 25 paid intel requests ($0.08 each), spread 5 minutes apart
- 4 skill expenses ($0.01 each) per request, 30s after the revenue
- 2 reinvestments ($0.40 and $0.42)
- agent_state: running, started 2h ago, sample balances

Usage:
    python scripts/seed_demo.py                  # Seeds DB_PATH (default autonome.db)
    python scripts/seed_demo.py --db demo.db     # Custom file
    python scripts/seed_demo.py --keep           # Append instead of starting fresh
"""

import os
import sys
import argparse
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from core.config import load_env_files
from core.constants import DEFAULTS
from core.ledger import LedgerStore, StateKey, format_timestamp
from core.metrics import MetricsAggregator

load_env_files(ROOT)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("autonome.seed")

DEMO_ADDRESSES = [
    "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045",
    "0xAb5801a7D398351b8bE11C439e05C5B3259aeC9B",
    "0x742d35Cc6634C0532925a3b844Bc9e7595f2bD45",
    "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984",
    "0xBE0eB53F46cd790Cd13851d5EFf43D12404d33E8",
]
DEMO_SKILLS = ["balance", "price", "fund", "chat"]
DEMO_REINVESTMENTS = [
    (45, Decimal("0.40"), "0x7f3a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a"),
    (10, Decimal("0.42"), "0xa1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2"),
]
REQUESTS = 25
INTEL_PRICE = Decimal("0.08")
SKILL_PRICE = Decimal("0.01")


class _BackdatedClock:
    """Ledger clock pinned to whatever moment the seeder is writing."""

    def __init__(self):
        self.moment = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.moment


def _reset(db_path: Path):
    for suffix in ("", "-wal", "-shm"):
        target = Path(f"{db_path}{suffix}")
        if target.exists():
            target.unlink()
            logger.info(f"Removed {target}")


def seed(db_path: Path, keep: bool = False) -> MetricsAggregator:
    if not keep:
        _reset(db_path)

    clock = _BackdatedClock()
    ledger = LedgerStore(db_path, clock=clock)
    ledger.init_schema()
    now = datetime.now(timezone.utc)

    clock.moment = now
    ledger.set_state(StateKey.STATUS, "running")
    ledger.set_state(StateKey.STARTED_AT, format_timestamp(now - timedelta(hours=2)))
    ledger.set_state(StateKey.ETH_BALANCE, "0.00042")
    ledger.set_state(StateKey.USDC_BALANCE, "46.18")

    for i in range(REQUESTS):
        at = now - timedelta(minutes=120 - i * 5)
        clock.moment = at
        ledger.record_revenue(INTEL_PRICE, DEMO_ADDRESSES[i % len(DEMO_ADDRESSES)])
        clock.moment = at + timedelta(seconds=30)
        for skill in DEMO_SKILLS:
            ledger.record_expense(skill, SKILL_PRICE)

    for minutes_ago, amount, tx_hash in DEMO_REINVESTMENTS:
        clock.moment = now - timedelta(minutes=minutes_ago)
        ledger.record_reinvestment(amount, tx_hash)

    return MetricsAggregator(ledger)


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="Seed the Autonome ledger with demo data")
    parser.add_argument("--db", default=os.getenv("DB_PATH", DEFAULTS.DB_PATH),
                        help="SQLite ledger file (default: $DB_PATH or autonome.db)")
    parser.add_argument("--keep", action="store_true",
                        help="Keep existing rows and append the demo data")
    args = parser.parse_args()

    logger.info(f"Seeding demo data into {args.db}...")
    aggregator = seed(Path(args.db), keep=args.keep)
    m = aggregator.compute_metrics()

    logger.info("=" * 50)
    logger.info("SEED COMPLETE")
    logger.info(f"Revenue events:  {m.total_requests} (${m.total_revenue:.2f})")
    logger.info(f"Expense events:  {m.total_skill_calls} (${m.total_expenses:.2f})")
    logger.info(f"Reinvestments:   {m.total_reinvestments} (${m.reinvested_amount:.2f})")
    logger.info(f"Net profit:      ${m.total_profit:.2f}")
    logger.info("Start the agent with: python main.py")
    logger.info("=" * 50)
    aggregator.ledger.close()


if __name__ == "__main__":
    main()
