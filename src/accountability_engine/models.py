from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum

from .db import from_db_timestamp


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TriggerType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    ZONE = "ZONE"


class SignalStatus(str, Enum):
    PENDING = "PENDING"
    SNOOZED = "SNOOZED"
    ACKED = "ACKED"
    DISMISSED = "DISMISSED"
    EXPIRED = "EXPIRED"
    EXECUTED = "EXECUTED"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_STATUSES


class AckAction(str, Enum):
    ACK = "ACK"
    SNOOZE = "SNOOZE"
    DISMISS = "DISMISS"
    EXECUTE = "EXECUTE"

    @property
    def target_status(self) -> SignalStatus:
        return ACTION_TARGET_STATUS[self]


ACTIVE_STATUSES = frozenset({SignalStatus.PENDING, SignalStatus.SNOOZED})
UNUSED_STATUSES = frozenset({SignalStatus.PENDING, SignalStatus.EXPIRED})

ACTION_TARGET_STATUS = {
    AckAction.ACK: SignalStatus.ACKED,
    AckAction.SNOOZE: SignalStatus.SNOOZED,
    AckAction.DISMISS: SignalStatus.DISMISSED,
    AckAction.EXECUTE: SignalStatus.EXECUTED,
}

# Buttons offered with every delivered signal.
NOTIFICATION_ACTIONS = (AckAction.ACK, AckAction.SNOOZE, AckAction.DISMISS)


@dataclass
class DailyTarget:
    portfolio_id: int
    target_date: date
    ai_target: float = 0.0
    user_target: float | None = None
    earned_actual: float = 0.0
    ai_rationale: str | None = None
    ai_confidence: int | None = None
    ai_updated_at: datetime | None = None
    user_updated_at: datetime | None = None
    earned_updated_at: datetime | None = None
    id: int | None = None

    @property
    def effective_target(self) -> float:
        return self.user_target if self.user_target is not None else self.ai_target

    @property
    def gap(self) -> float:
        return self.effective_target - self.earned_actual

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DailyTarget":
        return cls(
            id=int(row["id"]),
            portfolio_id=int(row["portfolio_id"]),
            target_date=date.fromisoformat(row["target_date"]),
            ai_target=float(row["ai_target"] or 0.0),
            user_target=float(row["user_target"]) if row["user_target"] is not None else None,
            earned_actual=float(row["earned_actual"] or 0.0),
            ai_rationale=row["ai_rationale"],
            ai_confidence=int(row["ai_confidence"]) if row["ai_confidence"] is not None else None,
            ai_updated_at=from_db_timestamp(row["ai_updated_at"]),
            user_updated_at=from_db_timestamp(row["user_updated_at"]),
            earned_updated_at=from_db_timestamp(row["earned_updated_at"]),
        )

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["target_date"] = self.target_date.isoformat()
        for key in ("ai_updated_at", "user_updated_at", "earned_updated_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value else None
        payload["effective_target"] = self.effective_target
        return payload


@dataclass
class SignalAck:
    signal_id: int
    action: AckAction
    actor: str
    created_at: datetime
    note: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SignalAck":
        return cls(
            id=int(row["id"]),
            signal_id=int(row["signal_id"]),
            action=AckAction(row["action"]),
            actor=str(row["actor"]),
            note=row["note"],
            created_at=from_db_timestamp(row["created_at"]),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "signal_id": self.signal_id,
            "action": self.action.value,
            "actor": self.actor,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TradeSignal:
    portfolio_id: int
    symbol: str
    side: Side
    quantity: int
    trigger_type: TriggerType
    confidence: int
    status: SignalStatus
    expires_at: datetime
    created_at: datetime
    exchange: str = "NSE"
    trigger_price: float | None = None
    trigger_low: float | None = None
    trigger_high: float | None = None
    rationale: str | None = None
    last_notified_at: datetime | None = None
    notify_count: int = 0
    id: int | None = None
    acknowledgements: list[SignalAck] = field(default_factory=list)

    @property
    def reference_price(self) -> float | None:
        """Price the call was made at: limit price, else the zone floor."""
        if self.trigger_price:
            return self.trigger_price
        if self.trigger_low:
            return self.trigger_low
        return None

    def price_label(self) -> str:
        if self.trigger_type == TriggerType.LIMIT:
            return f"Limit: ₹{self.trigger_price:g}"
        if self.trigger_type == TriggerType.ZONE:
            return f"Zone: ₹{self.trigger_low:g} - ₹{self.trigger_high:g}"
        return "At Market Price"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TradeSignal":
        return cls(
            id=int(row["id"]),
            portfolio_id=int(row["portfolio_id"]),
            symbol=str(row["symbol"]),
            exchange=str(row["exchange"]),
            side=Side(row["side"]),
            quantity=int(row["quantity"]),
            trigger_type=TriggerType(row["trigger_type"]),
            trigger_price=row["trigger_price"],
            trigger_low=row["trigger_low"],
            trigger_high=row["trigger_high"],
            confidence=int(row["confidence"]),
            rationale=row["rationale"],
            status=SignalStatus(row["status"]),
            expires_at=from_db_timestamp(row["expires_at"]),
            last_notified_at=from_db_timestamp(row["last_notified_at"]),
            notify_count=int(row["notify_count"] or 0),
            created_at=from_db_timestamp(row["created_at"]),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "portfolio_id": self.portfolio_id,
            "symbol": self.symbol,
            "exchange": self.exchange,
            "side": self.side.value,
            "quantity": self.quantity,
            "trigger_type": self.trigger_type.value,
            "trigger_price": self.trigger_price,
            "trigger_low": self.trigger_low,
            "trigger_high": self.trigger_high,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "last_notified_at": self.last_notified_at.isoformat() if self.last_notified_at else None,
            "notify_count": self.notify_count,
            "created_at": self.created_at.isoformat(),
            "acknowledgements": [ack.as_dict() for ack in self.acknowledgements],
        }


@dataclass(frozen=True)
class CarryoverResult:
    status: str  # "met", "missed" or "none"
    target_date: date | None = None
    effective_target: float = 0.0
    earned_actual: float = 0.0
    deficit: float = 0.0

    @property
    def has_record(self) -> bool:
        return self.status != "none"

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "effective_target": self.effective_target,
            "earned_actual": self.earned_actual,
            "deficit": self.deficit,
        }

    def describe(self) -> str:
        if self.status == "none":
            return "No prior daily target on record."
        day = self.target_date.isoformat() if self.target_date else "?"
        if self.status == "met":
            return (
                f"Target for {day} was met: earned ₹{self.earned_actual:.0f} "
                f"against ₹{self.effective_target:.0f} (surplus ₹{-self.deficit:.0f})."
            )
        return (
            f"Target for {day} was missed: earned ₹{self.earned_actual:.0f} "
            f"against ₹{self.effective_target:.0f} (deficit ₹{self.deficit:.0f})."
        )


@dataclass
class AckOutcome:
    signal: TradeSignal
    applied: bool

    @property
    def status(self) -> SignalStatus:
        return self.signal.status

    def as_dict(self) -> dict:
        return {"applied": self.applied, "status": self.status.value, "signal": self.signal.as_dict()}
