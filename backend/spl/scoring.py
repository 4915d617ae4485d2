from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from .team import StockPick


BASE_POINTS = Decimal("100")
PERFORMANCE_MULTIPLIER = Decimal("10")
VOLUME_BONUS_THRESHOLD = 1_000_000
VOLUME_BONUS_POINTS = Decimal("5")
SECTOR_LEADER_BONUS = Decimal("20")
NEGATIVE_PERFORMANCE_PENALTY = Decimal("0.5")

CENT = Decimal("0.01")


@dataclass(frozen=True)
class StockPerformance:
    symbol: str
    change_percent: float
    volume: int
    sector: str | None = None


@dataclass
class RankedEntry:
    key: int
    points: Decimal
    joined_at: datetime
    rank: int = 0


def round_points(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def stock_points(multiplier: float | Decimal, performance: StockPerformance) -> Decimal:
    """(base + 10 * change% + volume bonus) * role multiplier, halved on a down day."""
    change_percent = Decimal(str(performance.change_percent))
    points = BASE_POINTS + change_percent * PERFORMANCE_MULTIPLIER
    if performance.volume > VOLUME_BONUS_THRESHOLD:
        points += VOLUME_BONUS_POINTS
    points *= Decimal(str(multiplier))
    if change_percent < 0:
        points *= NEGATIVE_PERFORMANCE_PENALTY
    return round_points(points)


def index_performances(performances: Iterable[StockPerformance]) -> dict[str, StockPerformance]:
    return {performance.symbol.upper(): performance for performance in performances}


def team_points(stocks: Sequence[StockPick], performances: Iterable[StockPerformance]) -> Decimal:
    by_symbol = index_performances(performances)
    total = Decimal("0")
    for stock in stocks:
        performance = by_symbol.get(stock.symbol.upper())
        if performance is None:
            continue
        total += stock_points(stock.multiplier, performance)
    return round_points(total)


def sector_bonus(stocks: Sequence[StockPick], performances: Sequence[StockPerformance]) -> Decimal:
    leaders: dict[str | None, Decimal] = {}
    for performance in performances:
        change_percent = Decimal(str(performance.change_percent))
        best = leaders.get(performance.sector)
        if best is None or change_percent > best:
            leaders[performance.sector] = change_percent

    by_symbol = index_performances(performances)
    bonus = Decimal("0")
    for stock in stocks:
        performance = by_symbol.get(stock.symbol.upper())
        if performance is None:
            continue
        if leaders.get(performance.sector) == Decimal(str(performance.change_percent)):
            bonus += SECTOR_LEADER_BONUS * Decimal(str(stock.multiplier))
    return round_points(bonus)


def total_team_points(stocks: Sequence[StockPick], performances: Sequence[StockPerformance]) -> Decimal:
    return team_points(stocks, performances) + sector_bonus(stocks, performances)


def rank_entries(entries: Iterable[RankedEntry]) -> list[RankedEntry]:
    # Equal points: the earlier entry ranks higher.
    ordered = sorted(entries, key=lambda entry: (-entry.points, entry.joined_at, entry.key))
    for index, entry in enumerate(ordered):
        entry.rank = index + 1
    return ordered
