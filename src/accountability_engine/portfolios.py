"""Read model over portfolios and holdings.

Portfolio CRUD lives elsewhere; the engine only needs to look up what a
portfolio holds, where its notifications go, and a compact snapshot for the
recommendation prompt. ``create_portfolio`` / ``upsert_holding`` exist for
seeding and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .db import get_connection, to_db_timestamp
from .errors import NotFound


@dataclass
class Holding:
    symbol: str
    quantity: float
    avg_price: float
    current_price: float | None = None
    exchange: str = "NSE"

    @property
    def mark_price(self) -> float:
        return self.current_price if self.current_price is not None else self.avg_price

    @property
    def invested(self) -> float:
        return self.quantity * self.avg_price

    @property
    def market_value(self) -> float:
        return self.quantity * self.mark_price


@dataclass
class Portfolio:
    id: int
    name: str
    owner_name: str | None = None
    broker: str | None = None
    risk_profile: str | None = None
    available_cash: float = 0.0
    is_active: bool = True
    telegram_chat_id: str | None = None
    notifications_muted: bool = False
    holdings: list[Holding] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.owner_name or self.name

    @property
    def total_invested(self) -> float:
        return sum(h.invested for h in self.holdings)

    @property
    def total_value(self) -> float:
        return sum(h.market_value for h in self.holdings)

    def held_symbols(self) -> set[str]:
        return {h.symbol.upper() for h in self.holdings if h.quantity > 0}

    def brief(self) -> str:
        broker = (self.broker or "Unknown").replace("_", " ")
        lines = [
            f"Portfolio: {self.label} ({broker}, risk profile: {self.risk_profile or 'unspecified'})",
            f"Available cash: ₹{self.available_cash:,.0f}",
            f"Invested: ₹{self.total_invested:,.0f} | Current value: ₹{self.total_value:,.0f}",
        ]
        if self.holdings:
            lines.append("Holdings:")
            for h in self.holdings:
                change = ((h.mark_price - h.avg_price) / h.avg_price * 100) if h.avg_price else 0.0
                lines.append(
                    f"  {h.symbol} ({h.exchange}): {h.quantity:g} @ ₹{h.avg_price:,.2f} "
                    f"-> ₹{h.mark_price:,.2f} ({change:+.1f}%)"
                )
        else:
            lines.append("Holdings: none")
        return "\n".join(lines)


class PortfolioRepository:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    def get(self, portfolio_id: int) -> Portfolio:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,)).fetchone()
            if row is None or not row["is_active"]:
                raise NotFound(f"Portfolio {portfolio_id} not found")
            holding_rows = conn.execute(
                "SELECT * FROM holdings WHERE portfolio_id = ? ORDER BY symbol",
                (portfolio_id,),
            ).fetchall()
        return self._build(row, holding_rows)

    def exists(self, portfolio_id: int) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM portfolios WHERE id = ? AND is_active = 1", (portfolio_id,)
            ).fetchone()
        return row is not None

    def require(self, portfolio_id: int) -> None:
        if not self.exists(portfolio_id):
            raise NotFound(f"Portfolio {portfolio_id} not found")

    def list_active(self) -> list[Portfolio]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT id FROM portfolios WHERE is_active = 1 ORDER BY id").fetchall()
        return [self.get(int(row["id"])) for row in rows]

    def create_portfolio(
        self,
        name: str,
        owner_name: str | None = None,
        broker: str | None = None,
        risk_profile: str | None = None,
        available_cash: float = 0.0,
        telegram_chat_id: str | None = None,
        notifications_muted: bool = False,
    ) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO portfolios (
                    name, owner_name, broker, risk_profile, available_cash,
                    telegram_chat_id, notifications_muted, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    owner_name,
                    broker,
                    risk_profile,
                    float(available_cash),
                    telegram_chat_id,
                    1 if notifications_muted else 0,
                    to_db_timestamp(datetime.now(timezone.utc)),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def upsert_holding(
        self,
        portfolio_id: int,
        symbol: str,
        quantity: float,
        avg_price: float,
        current_price: float | None = None,
        exchange: str = "NSE",
    ) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO holdings (portfolio_id, symbol, exchange, quantity, avg_price, current_price, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(portfolio_id, symbol) DO UPDATE SET
                    exchange = excluded.exchange,
                    quantity = excluded.quantity,
                    avg_price = excluded.avg_price,
                    current_price = excluded.current_price,
                    updated_at = excluded.updated_at
                """,
                (
                    portfolio_id,
                    symbol.upper(),
                    exchange,
                    float(quantity),
                    float(avg_price),
                    float(current_price) if current_price is not None else None,
                    to_db_timestamp(datetime.now(timezone.utc)),
                ),
            )
            conn.commit()

    @staticmethod
    def _build(row, holding_rows) -> Portfolio:
        return Portfolio(
            id=int(row["id"]),
            name=str(row["name"]),
            owner_name=row["owner_name"],
            broker=row["broker"],
            risk_profile=row["risk_profile"],
            available_cash=float(row["available_cash"] or 0.0),
            is_active=bool(row["is_active"]),
            telegram_chat_id=row["telegram_chat_id"],
            notifications_muted=bool(row["notifications_muted"]),
            holdings=[
                Holding(
                    symbol=str(h["symbol"]),
                    exchange=str(h["exchange"]),
                    quantity=float(h["quantity"]),
                    avg_price=float(h["avg_price"]),
                    current_price=float(h["current_price"]) if h["current_price"] is not None else None,
                )
                for h in holding_rows
            ],
        )
