from __future__ import annotations

import random
from datetime import datetime

import pytest

from spl.market import STOCK_CATALOG, MarketDataService


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_search_requires_two_characters():
    service = MarketDataService(rng=random.Random(1))
    assert service.search_stocks("a") == []
    assert service.search_stocks(" ") == []


def test_search_matches_symbol_or_name():
    service = MarketDataService(rng=random.Random(1))
    symbols = {match.symbol for match in service.search_stocks("micro")}
    assert symbols == {"MSFT"}
    assert {match.symbol for match in service.search_stocks("aapl")} == {"AAPL"}


def test_quote_unknown_symbol():
    assert MarketDataService(rng=random.Random(1)).get_quote("NOPE") is None


def test_quote_variation_stays_within_a_dollar():
    service = MarketDataService(rng=random.Random(3))
    base = next(quote for quote in STOCK_CATALOG if quote.symbol == "AAPL")
    quote = service.get_quote("aapl")
    assert quote.symbol == "AAPL"
    assert abs(quote.price - base.price) <= 1.01


def test_quote_cache_expires_after_ttl():
    clock = FakeClock()
    service = MarketDataService(cache_seconds=30, clock=clock, rng=random.Random(5))
    first = service.get_quote("NVDA")
    clock.now = 29.0
    assert service.get_quote("NVDA") is first
    clock.now = 31.0
    assert service.get_quote("NVDA") is not first


def test_clear_cache_forces_reload():
    service = MarketDataService(rng=random.Random(5))
    first = service.get_quote("NVDA")
    service.clear_cache()
    assert service.get_quote("NVDA") is not first


def test_time_series_has_thirty_points_ending_today():
    today = datetime(2024, 3, 15, 12, 0)
    service = MarketDataService(rng=random.Random(2), now=lambda: today)
    points = service.get_time_series("AAPL", "daily")
    assert len(points) == 30
    assert points[-1].timestamp == today
    assert all(point.volume >= 500_000 for point in points)


def test_time_series_rejects_unknown_interval():
    with pytest.raises(ValueError):
        MarketDataService(rng=random.Random(2)).get_time_series("AAPL", "weekly")


def test_trending_returns_six_catalog_stocks():
    trending = MarketDataService(rng=random.Random(4)).get_trending()
    assert len(trending) == 6
    assert {quote.symbol for quote in trending} <= {quote.symbol for quote in STOCK_CATALOG}


def test_categories_and_lookup():
    service = MarketDataService(rng=random.Random(4))
    assert "Technology" in service.categories()
    assert {quote.symbol for quote in service.get_by_category("finance")} == {"JPM", "V", "BRK.A"}


def test_catalog_can_fill_a_team():
    assert len(STOCK_CATALOG) >= 11
    assert len({quote.symbol for quote in STOCK_CATALOG}) == len(STOCK_CATALOG)
