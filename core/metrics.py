"""
Metrics Aggregator - read-side view of the ledger

Pure reads: every number is re-derived from the transactions table on each
call. Concurrent appends may or may not be included; there is no snapshot
isolation beyond what SQLite gives a single reader.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from .ledger import EntryKind, LedgerStore, StateKey, parse_timestamp

logger = logging.getLogger("autonome.metrics")

BUCKET_SECONDS = 60
_BUCKET_FORMAT = "%Y-%m-%dT%H:%M:00Z"


@dataclass(frozen=True)
class AgentMetrics:
    total_revenue: Decimal
    total_expenses: Decimal
    total_profit: Decimal
    total_requests: int
    total_skill_calls: int
    total_reinvestments: int
    reinvested_amount: Decimal
    current_eth_balance: str = "0"
    current_usdc_balance: str = "0"

    @property
    def unreinvested_profit(self) -> Decimal:
        return self.total_profit - self.reinvested_amount

    def to_dict(self) -> dict:
        return {
            "totalRevenue": float(self.total_revenue),
            "totalExpenses": float(self.total_expenses),
            "totalProfit": float(self.total_profit),
            "totalRequests": self.total_requests,
            "totalSkillCalls": self.total_skill_calls,
            "totalReinvestments": self.total_reinvestments,
            "reinvestedAmount": float(self.reinvested_amount),
            "unreinvestedProfit": float(self.unreinvested_profit),
            "currentEthBalance": self.current_eth_balance,
            "currentUsdcBalance": self.current_usdc_balance,
        }


@dataclass(frozen=True)
class TimeSeriesPoint:
    """Cumulative totals up to and including one 1-minute bucket."""
    timestamp: str
    revenue: Decimal
    expenses: Decimal
    profit: Decimal

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "revenue": float(self.revenue),
            "expenses": float(self.expenses),
            "profit": float(self.profit),
        }


def _bucket_start(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


class MetricsAggregator:
    """Sums and counts over the ledger. Holds no state of its own."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def compute_metrics(self) -> AgentMetrics:
        revenue = self.ledger.sum_amount(EntryKind.REVENUE)
        expenses = self.ledger.sum_amount(EntryKind.EXPENSE)
        reinvested = self.ledger.sum_amount(EntryKind.REINVESTMENT)

        return AgentMetrics(
            total_revenue=revenue,
            total_expenses=expenses,
            total_profit=revenue - expenses,
            total_requests=self.ledger.count(EntryKind.REVENUE),
            total_skill_calls=self.ledger.count(EntryKind.EXPENSE),
            total_reinvestments=self.ledger.count(EntryKind.REINVESTMENT),
            reinvested_amount=reinvested,
            current_eth_balance=self.ledger.get_state(StateKey.ETH_BALANCE, "0"),
            current_usdc_balance=self.ledger.get_state(StateKey.USDC_BALANCE, "0"),
        )

    def time_series(self, window_hours: float = 24, fill_gaps: bool = True) -> list[TimeSeriesPoint]:
        """
        Cumulative revenue / expenses / profit per 1-minute bucket over the
        trailing window, oldest bucket first.

        Cumulative totals start at zero at the window edge (revenue earned
        before the window is not carried in). With fill_gaps, every minute
        between the first and the last populated bucket gets a point (values
        carried forward) so chart lines do not skip; without it, empty
        buckets are omitted.
        """
        cutoff = self.ledger.now() - timedelta(hours=window_hours)
        buckets: dict[datetime, list[Decimal]] = {}

        for entry in self.ledger.entries_since(cutoff):
            if entry.kind is EntryKind.REINVESTMENT:
                continue
            start = _bucket_start(parse_timestamp(entry.created_at))
            sums = buckets.setdefault(start, [Decimal(0), Decimal(0)])
            if entry.kind is EntryKind.REVENUE:
                sums[0] += entry.amount
            else:
                sums[1] += entry.amount

        if not buckets:
            return []

        if fill_gaps:
            first, last = min(buckets), max(buckets)
            step = timedelta(seconds=BUCKET_SECONDS)
            cursor = first
            while cursor <= last:
                buckets.setdefault(cursor, [Decimal(0), Decimal(0)])
                cursor += step

        points = []
        cum_revenue = Decimal(0)
        cum_expenses = Decimal(0)
        for start in sorted(buckets):
            revenue, expenses = buckets[start]
            cum_revenue += revenue
            cum_expenses += expenses
            points.append(TimeSeriesPoint(
                timestamp=start.strftime(_BUCKET_FORMAT),
                revenue=cum_revenue,
                expenses=cum_expenses,
                profit=cum_revenue - cum_expenses,
            ))
        return points
