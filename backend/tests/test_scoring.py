from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from spl.scoring import (
    RankedEntry,
    StockPerformance,
    rank_entries,
    round_points,
    sector_bonus,
    stock_points,
    team_points,
    total_team_points,
)
from spl.team import StockPick


def perf(symbol: str, change_percent: float, volume: int = 10, sector: str | None = "Technology") -> StockPerformance:
    return StockPerformance(symbol=symbol, change_percent=change_percent, volume=volume, sector=sector)


def test_stock_points_positive_day():
    # (100 + 2.5 * 10) * 2.0
    assert stock_points(2.0, perf("AAPL", 2.5)) == Decimal("250.00")


def test_stock_points_volume_bonus():
    # (100 + 10 + 5) * 1.0
    assert stock_points(1.0, perf("AAPL", 1.0, volume=2_000_000)) == Decimal("115.00")


def test_stock_points_volume_bonus_needs_strictly_more_than_threshold():
    assert stock_points(1.0, perf("AAPL", 0.0, volume=1_000_000)) == Decimal("100.00")


def test_stock_points_negative_day_is_halved():
    # (100 - 20) * 1.5 * 0.5
    assert stock_points(1.5, perf("TSLA", -2.0)) == Decimal("60.00")


def test_round_points_half_up():
    assert round_points(Decimal("1.005")) == Decimal("1.01")
    assert round_points(Decimal("-1.005")) == Decimal("-1.01")


def test_team_points_ignores_stocks_without_quotes():
    stocks = [
        StockPick(symbol="AAPL", name="Apple", price=1.0, role="captain", multiplier=2.5),
        StockPick(symbol="GONE", name="Delisted", price=1.0, role="bowler", multiplier=1.2),
    ]
    assert team_points(stocks, [perf("aapl", 0.0)]) == Decimal("250.00")


def test_sector_bonus_only_for_sector_leaders():
    stocks = [
        StockPick(symbol="NVDA", name="NVIDIA", price=1.0, role="captain", multiplier=2.5),
        StockPick(symbol="MSFT", name="Microsoft", price=1.0, role="bowler", multiplier=1.2),
        StockPick(symbol="JPM", name="JPMorgan", price=1.0, role="batsman", multiplier=1.25),
    ]
    performances = [
        perf("NVDA", 3.0),
        perf("MSFT", 1.0),
        perf("JPM", 0.5, sector="Finance"),
        perf("V", 0.9, sector="Finance"),
    ]
    # NVDA leads Technology; JPM trails V in Finance.
    assert sector_bonus(stocks, performances) == Decimal("50.00")


def test_total_team_points_adds_bonus():
    stocks = [StockPick(symbol="NVDA", name="NVIDIA", price=1.0, role="captain", multiplier=2.5)]
    performances = [perf("NVDA", 1.0), perf("AAPL", 0.5)]
    assert total_team_points(stocks, performances) == Decimal("275.00") + Decimal("50.00")


def test_rank_entries_orders_by_points_then_join_time():
    start = datetime(2024, 1, 1, 9, 0)
    entries = [
        RankedEntry(key=1, points=Decimal("100"), joined_at=start + timedelta(minutes=5)),
        RankedEntry(key=2, points=Decimal("150"), joined_at=start + timedelta(minutes=9)),
        RankedEntry(key=3, points=Decimal("100"), joined_at=start),
    ]
    ranked = rank_entries(entries)
    assert [entry.key for entry in ranked] == [2, 3, 1]
    assert [entry.rank for entry in ranked] == [1, 2, 3]


def test_rank_entries_empty():
    assert rank_entries([]) == []
