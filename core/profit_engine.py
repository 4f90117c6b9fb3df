"""
Profit Engine - the control loop that makes the agent self-sustaining

Every PROFIT_CHECK_INTERVAL seconds:
  Idle → Checking:     unreinvested = total_profit - reinvested_amount
  Checking → Reinvesting if unreinvested >= threshold, else back to Idle
  Reinvesting:         trade quote (USDC → ETH) → [approve] → swap broadcast
                       → Reinvestment ledger row → balance refresh → Idle

Guarantees:
- At most one reinvestment runs at a time. The guard is a plain flag set
  before the first await; a tick that arrives mid-reinvestment is dropped,
  not queued.
- A failure at any step aborts that attempt with no Reinvestment row; the
  profit stays unreinvested and is retried on the next tick. No backoff.

Designed for: autonomous economic agent (earn → spend → reinvest)
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from .constants import REINVEST_SOURCE_ASSET, REINVEST_TARGET_ASSET
from .event_bus import EventBus
from .ledger import LedgerEntry, LedgerStore, StateKey
from .metrics import MetricsAggregator
from .skill_client import SkillClient, SkillResult

logger = logging.getLogger("autonome.profit_engine")

_CENTS = Decimal("0.01")


class EngineState(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    REINVESTING = "reinvesting"


class ReinvestmentFailed(Exception):
    """One step of the reinvestment sequence failed; the attempt is aborted."""
    pass


@dataclass
class ReinvestmentOutcome:
    success: bool
    amount: Decimal
    tx_ref: Optional[str] = None
    error: str = ""
    entry: Optional[LedgerEntry] = None


def reinvest_amount(unreinvested, percentage) -> Decimal:
    """Share of idle profit to rotate, rounded to cents."""
    raw = Decimal(str(unreinvested)) * Decimal(str(percentage))
    return raw.quantize(_CENTS, rounding=ROUND_HALF_UP)


class ProfitEngine:
    """
    Watches the ledger and reinvests idle profit.

    threshold / percentage: reinvest `percentage` of unreinvested profit once
    it reaches `threshold` USD.
    """

    def __init__(self, ledger: LedgerStore, metrics: MetricsAggregator, skills: SkillClient,
                 event_bus: EventBus, wallet_address: str,
                 threshold: float = 0.50, percentage: float = 0.80,
                 interval_seconds: float = 30):
        self.ledger = ledger
        self.metrics = metrics
        self.skills = skills
        self.bus = event_bus
        self.wallet_address = wallet_address
        self.threshold = Decimal(str(threshold))
        self.percentage = Decimal(str(percentage))
        self.interval_seconds = interval_seconds

        self.state: EngineState = EngineState.IDLE
        self._is_reinvesting: bool = False
        self._task: Optional[asyncio.Task] = None
        self.checks_run: int = 0
        self.last_outcome: Optional[ReinvestmentOutcome] = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Check immediately, then every interval. Must be called inside the event loop."""
        if self.is_running:
            return
        logger.info(
            f"Profit engine started (threshold: ${self.threshold}, "
            f"reinvest: {self.percentage * 100:.0f}%, every {self.interval_seconds}s)"
        )
        self.bus.emit("profit-engine:started", {
            "threshold": float(self.threshold),
            "percentage": float(self.percentage),
        })
        self._task = asyncio.create_task(self._loop())

    def stop(self):
        """Stop the timer. An in-flight reinvestment is not awaited."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.bus.emit("profit-engine:stopped", {})
        logger.info("Profit engine stopped")

    async def _loop(self):
        while True:
            try:
                await self.check_and_reinvest()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Storage hiccup etc. The next tick tries again.
                self.state = EngineState.IDLE
                logger.error(f"Profit check failed: {e}")
                self.bus.emit("profit-engine:error", {"error": str(e)})
            await asyncio.sleep(self.interval_seconds)

    # ============================================================
    # CHECK
    # ============================================================

    async def check_and_reinvest(self) -> Optional[ReinvestmentOutcome]:
        """
        One tick. Returns the outcome when a reinvestment was attempted,
        None when the tick was dropped or the threshold was not met.
        """
        if self._is_reinvesting:
            logger.debug("Profit check skipped: reinvestment in progress")
            return None

        self.state = EngineState.CHECKING
        self.checks_run += 1
        snapshot = self.metrics.compute_metrics()
        unreinvested = snapshot.unreinvested_profit
        will_reinvest = unreinvested >= self.threshold

        self.bus.emit("profit-engine:check", {
            "totalProfit": f"{snapshot.total_profit:.4f}",
            "reinvested": f"{snapshot.reinvested_amount:.4f}",
            "unreinvested": f"{unreinvested:.4f}",
            "threshold": float(self.threshold),
            "willReinvest": will_reinvest,
        })

        if unreinvested < 0:
            # More reinvested than earned so far. Not auto-corrected.
            logger.warning(
                f"Reinvested ${snapshot.reinvested_amount} exceeds total profit ${snapshot.total_profit}"
            )
            self.bus.emit("profit-engine:overdrawn", {"unreinvested": f"{unreinvested:.4f}"})

        if not will_reinvest:
            self.state = EngineState.IDLE
            return None

        amount = reinvest_amount(unreinvested, self.percentage)
        if amount <= 0:
            self.state = EngineState.IDLE
            return None

        # Guard taken before the first await: nothing can interleave between check and set
        self._is_reinvesting = True
        self.state = EngineState.REINVESTING
        try:
            outcome = await self._execute_reinvestment(amount)
        finally:
            self._is_reinvesting = False
            self.state = EngineState.IDLE
        self.last_outcome = outcome
        return outcome

    # ============================================================
    # REINVEST
    # ============================================================

    def _book_expense(self, result: SkillResult, detail: str = ""):
        self.ledger.record_expense(result.skill, result.cost)
        self.bus.emit("skill:completed", {
            "skill": f"{result.skill} ({detail})" if detail else result.skill,
            "cost": float(result.cost),
        })

    async def _broadcast(self, tx: dict, detail: str) -> dict:
        self.bus.emit("skill:calling", {"skill": "broadcast", "detail": detail})
        result = await self.skills.broadcast(tx)
        if not result.ok:
            raise ReinvestmentFailed(f"broadcast ({detail}) failed: {result.error}")
        self._book_expense(result, detail)
        return result.data if isinstance(result.data, dict) else {}

    async def _execute_reinvestment(self, amount: Decimal) -> ReinvestmentOutcome:
        """Trade `amount` of the stable asset into the volatile one."""
        amount_str = f"{amount:.2f}"
        logger.info(f"Reinvesting ${amount_str} {REINVEST_SOURCE_ASSET} → {REINVEST_TARGET_ASSET}")
        self.bus.emit("reinvest:starting", {
            "amount": amount_str,
            "source": REINVEST_SOURCE_ASSET,
            "target": REINVEST_TARGET_ASSET,
        })

        try:
            # Step 1: trade quote
            self.bus.emit("skill:calling", {
                "skill": "trade",
                "detail": f"${amount_str} {REINVEST_SOURCE_ASSET} → {REINVEST_TARGET_ASSET}",
            })
            quote = await self.skills.trade(REINVEST_SOURCE_ASSET, REINVEST_TARGET_ASSET, amount_str)
            if not quote.ok:
                raise ReinvestmentFailed(f"trade quote failed: {quote.error}")
            self._book_expense(quote)

            trade_data = quote.data if isinstance(quote.data, dict) else {}
            if not trade_data.get("swap"):
                raise ReinvestmentFailed("Trade skill returned no swap data")

            # Step 2: allowance, when the quote asks for it
            if trade_data.get("approve"):
                await self._broadcast(trade_data["approve"], f"approve {REINVEST_SOURCE_ASSET} spending")

            # Step 3: the swap itself
            broadcast_data = await self._broadcast(
                trade_data["swap"], f"execute {REINVEST_SOURCE_ASSET}→{REINVEST_TARGET_ASSET} swap"
            )
        except ReinvestmentFailed as e:
            logger.error(f"Reinvestment failed: {e}")
            self.bus.emit("reinvest:failed", {"amount": amount_str, "error": str(e)})
            return ReinvestmentOutcome(success=False, amount=amount, error=str(e))

        tx_ref = broadcast_data.get("hash")
        if not tx_ref:
            logger.warning("Swap broadcast returned no tx hash; recording reinvestment without reference")

        # Step 4: book it
        entry = self.ledger.record_reinvestment(amount, tx_ref)
        logger.info(f"Reinvestment complete: ${amount_str} (tx: {tx_ref or 'unknown'})")
        self.bus.emit("reinvest:completed", {
            "amount": amount_str,
            "txHash": tx_ref or "unknown",
            "asset": REINVEST_TARGET_ASSET,
        })

        # Step 5: refresh balances for the dashboard (best-effort)
        await self.update_wallet_balance()
        return ReinvestmentOutcome(success=True, amount=amount, tx_ref=tx_ref, entry=entry)

    async def update_wallet_balance(self) -> bool:
        """Read the agent's own balances into agent_state. False if the skill failed."""
        result = await self.skills.balance(self.wallet_address)
        if not result.ok:
            logger.error(f"Failed to update balance: {result.error}")
            self.bus.emit("skill:failed", {"skill": "balance", "error": result.error})
            return False

        self._book_expense(result)
        balances = result.value_or({}, key="balances")
        if not isinstance(balances, dict):
            balances = {}
        eth = str(balances.get("ETH") or "0")
        usdc = str(balances.get("USDC") or "0")
        self.ledger.set_state(StateKey.ETH_BALANCE, eth)
        self.ledger.set_state(StateKey.USDC_BALANCE, usdc)
        self.bus.emit("balance:updated", {"eth": eth, "usdc": usdc})
        return True

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "running": self.is_running,
            "threshold": float(self.threshold),
            "percentage": float(self.percentage),
            "interval_seconds": self.interval_seconds,
            "checks_run": self.checks_run,
            "last_outcome": None if self.last_outcome is None else {
                "success": self.last_outcome.success,
                "amount": float(self.last_outcome.amount),
                "tx_ref": self.last_outcome.tx_ref,
                "error": self.last_outcome.error,
            },
        }
