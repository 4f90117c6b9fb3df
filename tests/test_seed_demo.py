"""
Demo seeder writes a consistent two-hour history.
"""

from __future__ import annotations

from decimal import Decimal

from core.ledger import StateKey
from scripts.seed_demo import seed


def test_seed_totals(tmp_path):
    aggregator = seed(tmp_path / "demo.db")
    m = aggregator.compute_metrics()

    assert m.total_requests == 25
    assert m.total_revenue == Decimal("2.00")
    assert m.total_skill_calls == 100
    assert m.total_expenses == Decimal("1.00")
    assert m.total_profit == Decimal("1.00")
    assert m.reinvested_amount == Decimal("0.82")
    assert aggregator.ledger.get_state(StateKey.STATUS) == "running"

    points = aggregator.time_series(24, fill_gaps=False)
    assert points[-1].profit == Decimal("1.00")
    aggregator.ledger.close()


def test_reseed_starts_fresh(tmp_path):
    path = tmp_path / "demo.db"
    seed(path).ledger.close()
    aggregator = seed(path)
    assert aggregator.compute_metrics().total_requests == 25
    aggregator.ledger.close()


def test_keep_appends(tmp_path):
    path = tmp_path / "demo.db"
    seed(path).ledger.close()
    aggregator = seed(path, keep=True)
    assert aggregator.compute_metrics().total_requests == 50
    aggregator.ledger.close()
