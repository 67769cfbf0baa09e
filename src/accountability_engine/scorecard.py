"""Accountability scorecard: how did the recent calls turn out?

``build_scorecard`` is pure: given signals, a price source and the prior-day
carryover it classifies each call and aggregates the result. The
``AccountabilityScorecard`` service only gathers those inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Iterable

from loguru import logger

from .market_calendar import MarketCalendar
from .models import UNUSED_STATUSES, CarryoverResult, Side, SignalStatus, TradeSignal
from .prices import PriceSource
from .settings import settings
from .signal_store import SignalStore
from .target_ledger import TargetLedger

WIN = "win"
LOSS = "loss"
UNCLASSIFIED = "unclassified"

STATUS_TAGS = {
    SignalStatus.EXECUTED: "[EXECUTED]",
    SignalStatus.PENDING: "[NOT ACTED ON]",
    SignalStatus.SNOOZED: "[SNOOZED]",
    SignalStatus.ACKED: "[ACKNOWLEDGED]",
    SignalStatus.DISMISSED: "[DISMISSED BY INVESTOR]",
    SignalStatus.EXPIRED: "[EXPIRED UNUSED]",
}


@dataclass(frozen=True)
class ScorecardEntry:
    signal_id: int | None
    created_at: datetime
    symbol: str
    side: Side
    status: SignalStatus
    quantity: int
    confidence: int
    outcome: str
    reference_price: float | None = None
    current_price: float | None = None
    move: float | None = None
    move_pct: float | None = None
    pnl: float | None = None
    rationale: str | None = None

    def as_dict(self) -> dict:
        return {
            "signal_id": self.signal_id,
            "created_at": self.created_at.isoformat(),
            "symbol": self.symbol,
            "side": self.side.value,
            "status": self.status.value,
            "quantity": self.quantity,
            "confidence": self.confidence,
            "outcome": self.outcome,
            "reference_price": self.reference_price,
            "current_price": self.current_price,
            "move": self.move,
            "move_pct": self.move_pct,
            "pnl": self.pnl,
        }


@dataclass
class Scorecard:
    portfolio_id: int
    lookback_days: int
    carryover: CarryoverResult
    entries: list[ScorecardEntry] = field(default_factory=list)
    wins: int = 0
    losses: int = 0
    unclassified: int = 0
    estimated_pnl: float = 0.0
    unused: int = 0
    display_tz: tzinfo | None = None

    @property
    def win_rate(self) -> float | None:
        decided = self.wins + self.losses
        return self.wins / decided if decided else None

    def as_dict(self) -> dict:
        return {
            "portfolio_id": self.portfolio_id,
            "lookback_days": self.lookback_days,
            "wins": self.wins,
            "losses": self.losses,
            "unclassified": self.unclassified,
            "win_rate": self.win_rate,
            "estimated_pnl": round(self.estimated_pnl, 2),
            "unused": self.unused,
            "carryover": self.carryover.as_dict(),
            "entries": [entry.as_dict() for entry in self.entries],
        }

    def render(self) -> str:
        lines = [f"=== PREVIOUS CALLS (last {self.lookback_days} days) ==="]
        if not self.entries:
            lines.append("No signals in this window.")
        for entry in self.entries:
            ref = f"₹{entry.reference_price:.2f}" if entry.reference_price is not None else "market"
            day = entry.created_at.astimezone(self.display_tz) if self.display_tz else entry.created_at
            line = f"{day:%d %b}: {entry.side.value} {entry.symbol} @ {ref} {STATUS_TAGS[entry.status]}"
            if entry.outcome != UNCLASSIFIED:
                line += (
                    f" -> now ₹{entry.current_price:.2f} ({entry.move_pct:+.1f}%, "
                    f"P&L {entry.pnl:+.0f}) {entry.outcome.upper()}"
                )
            else:
                line += " -> unclassified"
            line += f" | confidence {entry.confidence}%"
            lines.append(line)
            if entry.rationale:
                lines.append(f"  Thesis: {entry.rationale}")

        rate = f"{self.win_rate * 100:.0f}%" if self.win_rate is not None else "n/a"
        lines.append(
            f"SCORECARD: {self.wins}W / {self.losses}L ({rate} hit rate), {self.unclassified} unclassified | "
            f"Estimated P&L from executed: {self.estimated_pnl:+.0f}"
        )
        if self.losses > self.wins:
            lines.append("Losses outnumber wins: only high-conviction setups with tight stops from here.")
        if self.estimated_pnl < 0:
            lines.append(f"Executed calls are net negative; recover ₹{abs(self.estimated_pnl):.0f}.")
        if self.unused:
            lines.append(f"Unused opportunities: {self.unused} signal(s) were never acted on.")
        lines.append(f"PRIOR DAY: {self.carryover.describe()}")
        lines.append("=== END SCORECARD ===")
        return "\n".join(lines)


def classify_signal(signal: TradeSignal, current_price: float | None) -> ScorecardEntry:
    reference = signal.reference_price
    base = dict(
        signal_id=signal.id,
        created_at=signal.created_at,
        symbol=signal.symbol,
        side=signal.side,
        status=signal.status,
        quantity=signal.quantity,
        confidence=signal.confidence,
        rationale=signal.rationale,
        reference_price=reference,
        current_price=current_price,
    )
    if reference is None or current_price is None or current_price <= 0:
        return ScorecardEntry(outcome=UNCLASSIFIED, **base)

    move = current_price - reference if signal.side == Side.BUY else reference - current_price
    return ScorecardEntry(
        outcome=WIN if move >= 0 else LOSS,
        move=move,
        move_pct=move / reference * 100,
        pnl=move * signal.quantity,
        **base,
    )


def _safe_price(prices: PriceSource, symbol: str) -> float | None:
    try:
        return prices.get_price(symbol)
    except Exception as exc:
        logger.warning("Price lookup for {} failed; leaving it unclassified: {}", symbol, exc)
        return None


def build_scorecard(
    portfolio_id: int,
    signals: Iterable[TradeSignal],
    prices: PriceSource,
    carryover: CarryoverResult,
    lookback_days: int = 7,
    display_tz: tzinfo | None = None,
) -> Scorecard:
    card = Scorecard(
        portfolio_id=portfolio_id, lookback_days=lookback_days, carryover=carryover, display_tz=display_tz
    )
    for signal in signals:
        entry = classify_signal(signal, _safe_price(prices, signal.symbol))
        card.entries.append(entry)
        if entry.outcome == WIN:
            card.wins += 1
        elif entry.outcome == LOSS:
            card.losses += 1
        else:
            card.unclassified += 1
        if entry.pnl is not None and entry.status == SignalStatus.EXECUTED:
            card.estimated_pnl += entry.pnl
        if signal.status in UNUSED_STATUSES:
            card.unused += 1
    return card


class AccountabilityScorecard:
    def __init__(self, store: SignalStore, ledger: TargetLedger, calendar: MarketCalendar) -> None:
        self.store = store
        self.ledger = ledger
        self.calendar = calendar

    def for_portfolio(
        self,
        portfolio_id: int,
        prices: PriceSource,
        lookback_days: int | None = None,
    ) -> Scorecard:
        days = lookback_days or settings.scorecard_lookback_days
        now = self.calendar.now()
        signals = self.store.recent(portfolio_id, now - timedelta(days=days), settings.scorecard_max_signals)
        carryover = self.ledger.carryover(portfolio_id, self.calendar.civil_date(now))
        return build_scorecard(
            portfolio_id, signals, prices, carryover, lookback_days=days, display_tz=self.calendar.tz
        )
