"""Collaborator interfaces for live order placement."""

from __future__ import annotations

from strategy_lab.execution.models import CancelReport, MarketSpec, PlacedOrder
from strategy_lab.execution.positions import OrderSide
from strategy_lab.strategy.models import OrderKind


class OrderPlacementService:
    def place_order(
        self,
        market: MarketSpec,
        side: OrderSide,
        kind: OrderKind,
        price_scaled: int,
        quantity_scaled: int,
        account: str,
    ) -> PlacedOrder:  # pragma: no cover - interface
        raise NotImplementedError

    def cancel_all_open_orders(self, account: str) -> CancelReport:  # pragma: no cover - interface
        raise NotImplementedError


class SessionService:
    def has_active_session(self, account: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class MarketDirectory:
    def get_market(self, market_id: str) -> MarketSpec | None:  # pragma: no cover - interface
        raise NotImplementedError


class StaticMarketDirectory(MarketDirectory):
    def __init__(self, markets: dict[str, MarketSpec] | None = None) -> None:
        self._markets = dict(markets or {})

    def add(self, market: MarketSpec) -> None:
        self._markets[market.market_id] = market

    def get_market(self, market_id: str) -> MarketSpec | None:
        return self._markets.get(market_id)
