"""Synthetic market data: a fixed stock catalog with randomized live quotes."""

from __future__ import annotations

import os
import random
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from .scoring import StockPerformance
from .team import StockPick


QUOTE_CACHE_SECONDS = float(os.environ.get("QUOTE_CACHE_SECONDS", "30"))
TRENDING_COUNT = 6
TIME_SERIES_POINTS = 30
TIME_SERIES_INTERVALS = {"1min", "5min", "15min", "30min", "60min", "daily"}


@dataclass(frozen=True)
class Quote:
    symbol: str
    name: str
    price: float
    change: float
    change_percent: float
    volume: int
    market_cap: float | None = None
    pe_ratio: float | None = None
    sector: str | None = None
    logo: str | None = None

    def to_pick(self) -> StockPick:
        return StockPick(
            symbol=self.symbol,
            name=self.name,
            price=self.price,
            change=self.change,
            change_percent=self.change_percent,
            sector=self.sector,
        )

    def to_performance(self) -> StockPerformance:
        return StockPerformance(
            symbol=self.symbol,
            change_percent=self.change_percent,
            volume=self.volume,
            sector=self.sector,
        )


@dataclass(frozen=True)
class SearchMatch:
    symbol: str
    name: str
    type: str = "Equity"
    region: str = "United States"
    market_open: str = "09:30"
    market_close: str = "16:00"
    timezone: str = "UTC-04"
    currency: str = "USD"
    match_score: str = "1.0000"


@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


STOCK_CATALOG: list[Quote] = [
    Quote("AAPL", "Apple Inc.", 182.52, 2.34, 1.30, 45678900, 2.8e12, 28.5, "Technology", "https://logo.clearbit.com/apple.com"),
    Quote("MSFT", "Microsoft Corporation", 378.85, -1.23, -0.32, 23456789, 2.75e12, 32.1, "Technology", "https://logo.clearbit.com/microsoft.com"),
    Quote("GOOGL", "Alphabet Inc.", 142.56, 3.45, 2.48, 34567890, 1.8e12, 25.3, "Technology", "https://logo.clearbit.com/google.com"),
    Quote("TSLA", "Tesla Inc.", 248.42, -5.67, -2.23, 67890123, 7.9e11, 65.2, "Automotive", "https://logo.clearbit.com/tesla.com"),
    Quote("AMZN", "Amazon.com Inc.", 151.94, 1.87, 1.25, 45123678, 1.55e12, 45.8, "E-commerce", "https://logo.clearbit.com/amazon.com"),
    Quote("NVDA", "NVIDIA Corporation", 875.28, 12.45, 1.44, 23789456, 2.15e12, 68.4, "Technology", "https://logo.clearbit.com/nvidia.com"),
    Quote("META", "Meta Platforms Inc.", 484.20, -2.15, -0.44, 18765432, 1.23e12, 24.7, "Technology", "https://logo.clearbit.com/meta.com"),
    Quote("JPM", "JPMorgan Chase & Co.", 178.45, 0.89, 0.50, 12345678, 5.2e11, 12.3, "Finance", "https://logo.clearbit.com/jpmorganchase.com"),
    Quote("V", "Visa Inc.", 275.30, 1.12, 0.41, 6543210, 5.6e11, 30.2, "Finance", "https://logo.clearbit.com/visa.com"),
    Quote("BRK.A", "Berkshire Hathaway Inc.", 545000.00, 1250.00, 0.23, 9876, 7.9e11, 9.8, "Finance", "https://logo.clearbit.com/berkshirehathaway.com"),
    Quote("JNJ", "Johnson & Johnson", 158.12, -0.64, -0.40, 7654321, 3.8e11, 15.6, "Healthcare", "https://logo.clearbit.com/jnj.com"),
    Quote("UNH", "UnitedHealth Group Inc.", 521.77, 4.18, 0.81, 3456789, 4.8e11, 21.9, "Healthcare", "https://logo.clearbit.com/unitedhealthgroup.com"),
    Quote("XOM", "Exxon Mobil Corporation", 104.63, -1.05, -0.99, 16789012, 4.2e11, 11.7, "Energy", "https://logo.clearbit.com/exxonmobil.com"),
    Quote("CVX", "Chevron Corporation", 152.34, 0.76, 0.50, 8765432, 2.9e11, 13.4, "Energy", "https://logo.clearbit.com/chevron.com"),
    Quote("WMT", "Walmart Inc.", 165.48, 1.32, 0.80, 9876543, 4.4e11, 27.1, "Retail", "https://logo.clearbit.com/walmart.com"),
    Quote("KO", "The Coca-Cola Company", 59.87, 0.21, 0.35, 11234567, 2.6e11, 23.8, "Consumer Goods", "https://logo.clearbit.com/coca-cola.com"),
]


class MarketDataService:
    """
    Quote provider over a fixed catalog.

    Every lookup goes through an in-memory cache keyed by request; entries expire
    `cache_seconds` after they are stored. There is no size bound. `clock` and
    `rng` are injectable so tests can pin time and randomness.
    """

    def __init__(
        self,
        catalog: list[Quote] | None = None,
        cache_seconds: float = QUOTE_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.catalog = list(catalog if catalog is not None else STOCK_CATALOG)
        self.cache_seconds = cache_seconds
        self.clock = clock
        self.rng = rng or random.Random()
        self.now = now
        self._cache: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _cached(self, key: str, loader: Callable[[], Any]) -> Any:
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None and self.clock() - hit[0] < self.cache_seconds:
                return hit[1]
            value = loader()
            self._cache[key] = (self.clock(), value)
            return value

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _catalog_quote(self, symbol: str) -> Quote | None:
        target = symbol.strip().upper()
        return next((quote for quote in self.catalog if quote.symbol == target), None)

    def search_stocks(self, query: str) -> list[SearchMatch]:
        needle = (query or "").strip().lower()
        if len(needle) < 2:
            return []
        return self._cached(
            f"search_{needle}",
            lambda: [
                SearchMatch(symbol=quote.symbol, name=quote.name)
                for quote in self.catalog
                if needle in quote.symbol.lower() or needle in quote.name.lower()
            ],
        )

    def get_quote(self, symbol: str) -> Quote | None:
        base = self._catalog_quote(symbol)
        if base is None:
            return None

        def load() -> Quote:
            variation = self.rng.uniform(-1, 1)
            price = base.price + variation
            return replace(
                base,
                price=round(price, 2),
                change=round(base.change + variation * 0.5, 2),
                change_percent=round((price / base.price - 1) * 100, 4),
            )

        return self._cached(f"quote_{base.symbol}", load)

    def get_quotes(self, symbols: list[str]) -> list[Quote]:
        quotes = [self.get_quote(symbol) for symbol in symbols]
        return [quote for quote in quotes if quote is not None]

    def all_quotes(self) -> list[Quote]:
        return self.get_quotes([quote.symbol for quote in self.catalog])

    def get_time_series(self, symbol: str, interval: str = "daily") -> list[PricePoint]:
        if interval not in TIME_SERIES_INTERVALS:
            raise ValueError(f"Unsupported interval '{interval}'.")
        base = self._catalog_quote(symbol)
        base_price = base.price if base else 100.0
        cache_symbol = base.symbol if base else symbol.strip().upper()

        def load() -> list[PricePoint]:
            today = self.now()
            points: list[PricePoint] = []
            for days_back in range(TIME_SERIES_POINTS - 1, -1, -1):
                close = base_price + (self.rng.random() - 0.5) * 10
                points.append(
                    PricePoint(
                        timestamp=today - timedelta(days=days_back),
                        open=round(close - self.rng.random() * 2, 2),
                        high=round(close + self.rng.random() * 3, 2),
                        low=round(close - self.rng.random() * 3, 2),
                        close=round(close, 2),
                        volume=int(self.rng.random() * 1_000_000) + 500_000,
                    )
                )
            return points

        return self._cached(f"timeseries_{cache_symbol}_{interval}", load)

    def get_trending(self) -> list[Quote]:
        def load() -> list[Quote]:
            shuffled = list(self.catalog)
            self.rng.shuffle(shuffled)
            return [
                replace(
                    quote,
                    price=round(quote.price + (self.rng.random() - 0.5) * 5, 2),
                    change=round((self.rng.random() - 0.5) * 10, 2),
                    change_percent=round((self.rng.random() - 0.5) * 5, 4),
                )
                for quote in shuffled[:TRENDING_COUNT]
            ]

        return self._cached("trending", load)

    def get_by_category(self, category: str) -> list[Quote]:
        target = (category or "").strip().lower()
        return self._cached(
            f"category_{target}",
            lambda: [quote for quote in self.catalog if (quote.sector or "").lower() == target],
        )

    def categories(self) -> list[str]:
        return sorted({quote.sector for quote in self.catalog if quote.sector})


market = MarketDataService()


def get_market() -> MarketDataService:
    return market
