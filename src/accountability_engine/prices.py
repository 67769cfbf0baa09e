from __future__ import annotations

from typing import Mapping, Protocol

import yfinance as yf
from loguru import logger

from .portfolios import PortfolioRepository
from .settings import settings


class PriceSource(Protocol):
    def get_price(self, symbol: str) -> float | None: ...


class StaticPriceSource:
    def __init__(self, prices: Mapping[str, float]) -> None:
        self.prices = {symbol.upper(): float(price) for symbol, price in prices.items()}

    def get_price(self, symbol: str) -> float | None:
        return self.prices.get(symbol.upper())


class HoldingPriceSource:
    """Current price recorded on the portfolio's holdings, falling back to average cost."""

    def __init__(self, portfolios: PortfolioRepository, portfolio_id: int) -> None:
        portfolio = portfolios.get(portfolio_id)
        self.prices = {h.symbol.upper(): h.mark_price for h in portfolio.holdings}

    def get_price(self, symbol: str) -> float | None:
        return self.prices.get(symbol.upper())


class YahooPriceSource:
    def __init__(self, suffix: str | None = None) -> None:
        self.suffix = settings.yahoo_symbol_suffix if suffix is None else suffix
        self._cache: dict[str, float | None] = {}

    def get_price(self, symbol: str) -> float | None:
        key = symbol.upper()
        if key in self._cache:
            return self._cache[key]
        price: float | None = None
        try:
            last = yf.Ticker(f"{key}{self.suffix}").fast_info.last_price
            if last is not None and float(last) > 0:
                price = float(last)
        except Exception as exc:
            logger.warning("Yahoo price lookup failed for {}: {}", key, exc)
        self._cache[key] = price
        return price


class ChainedPriceSource:
    """First source that knows the symbol wins."""

    def __init__(self, *sources: PriceSource) -> None:
        self.sources = sources

    def get_price(self, symbol: str) -> float | None:
        for source in self.sources:
            price = source.get_price(symbol)
            if price is not None:
                return price
        return None


def price_source_for(portfolios: PortfolioRepository, portfolio_id: int) -> PriceSource:
    holding_prices = HoldingPriceSource(portfolios, portfolio_id)
    if not settings.yahoo_prices_enabled:
        return holding_prices
    return ChainedPriceSource(holding_prices, YahooPriceSource())
