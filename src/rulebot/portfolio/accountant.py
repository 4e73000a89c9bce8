"""Running position and profit/loss accounting for one bot."""

from __future__ import annotations

import math
from datetime import datetime
from statistics import fmean


class OversellError(ValueError):
    """Raised when a sell exceeds the open quantity."""


class PositionAccountant:
    """Weighted-average-cost bookkeeping for a long-only position."""

    def __init__(self) -> None:
        self._quantity = 0.0
        self._avg_cost = 0.0
        self._realised_pnl = 0.0
        self._total_buys = 0
        self._total_sells = 0
        self._winning_sells = 0
        self._largest_gain = 0.0
        self._largest_loss = 0.0
        self._opened_at: datetime | None = None
        self._hold_minutes: list[float] = []

    @property
    def quantity(self) -> float:
        return self._quantity

    @property
    def avg_cost(self) -> float:
        return self._avg_cost

    @property
    def realised_pnl(self) -> float:
        return self._realised_pnl

    @property
    def total_buys(self) -> int:
        return self._total_buys

    @property
    def total_sells(self) -> int:
        return self._total_sells

    @property
    def largest_gain(self) -> float:
        return self._largest_gain

    @property
    def largest_loss(self) -> float:
        return self._largest_loss

    @property
    def win_rate(self) -> float:
        """Percentage of sells priced above the average cost at the time of sale."""
        if self._total_sells == 0:
            return 0.0
        return self._winning_sells / self._total_sells * 100.0

    @property
    def avg_hold_time_minutes(self) -> float:
        if not self._hold_minutes:
            return 0.0
        return fmean(self._hold_minutes)

    def on_buy(self, qty: float, price: float, at: datetime | None = None) -> None:
        """Add ``qty`` at ``price`` to the position."""
        if qty <= 0:
            raise ValueError("buy_qty_must_be_positive")
        if price <= 0:
            raise ValueError("buy_price_must_be_positive")
        new_quantity = self._quantity + qty
        self._avg_cost = (self._quantity * self._avg_cost + qty * price) / new_quantity
        if self._quantity == 0:
            self._opened_at = at
        self._quantity = new_quantity
        self._total_buys += 1

    def on_sell(self, qty: float, price: float, at: datetime | None = None) -> float:
        """Reduce the position and return the realised P&L of this sell."""
        if qty < 0:
            raise ValueError("sell_qty_must_not_be_negative")
        if price <= 0:
            raise ValueError("sell_price_must_be_positive")

        # no cost basis yet, or a flat sell signal: counted, never profit
        if self._total_buys == 0 or qty == 0:
            self._total_sells += 1
            return 0.0

        if qty > self._quantity and not math.isclose(
            qty, self._quantity, rel_tol=1e-9, abs_tol=1e-12
        ):
            raise OversellError(f"sell_exceeds_position: qty={qty} open={self._quantity}")

        self._total_sells += 1

        qty = min(qty, self._quantity)
        realised = qty * (price - self._avg_cost)
        self._realised_pnl += realised
        if price > self._avg_cost:
            self._winning_sells += 1
        self._largest_gain = max(self._largest_gain, realised)
        self._largest_loss = min(self._largest_loss, realised)
        if at is not None and self._opened_at is not None:
            self._hold_minutes.append((at - self._opened_at).total_seconds() / 60.0)

        remaining = self._quantity - qty
        if remaining <= 1e-12:
            self._quantity = 0.0
            self._avg_cost = 0.0
            self._opened_at = None
        else:
            self._quantity = remaining
        return realised

    def unrealised_pnl(self, last_price: float) -> float:
        """Paper P&L of the open quantity at ``last_price``."""
        if self._quantity <= 0:
            return 0.0
        return self._quantity * (last_price - self._avg_cost)

    def net_pnl(self, last_price: float) -> float:
        return self._realised_pnl + self.unrealised_pnl(last_price)
