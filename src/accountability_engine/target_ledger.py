from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from loguru import logger

from .db import get_connection, to_db_timestamp
from .errors import InvalidInput, NotFound
from .market_calendar import MarketCalendar
from .models import CarryoverResult, DailyTarget
from .settings import settings


@dataclass(frozen=True)
class TargetProposal:
    target: float
    rationale: str
    confidence: int


def _require_finite(name: str, value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise InvalidInput(f"{name} must be finite")
    return number


def gap_label(gap: float) -> str:
    if gap > 0:
        return f"Behind by ₹{gap:.0f}"
    if gap < 0:
        return f"Ahead by ₹{abs(gap):.0f}"
    return "On target"


class TargetLedger:
    """One DailyTarget per (portfolio, civil date).

    Writers only ever touch their own columns through ``INSERT .. ON CONFLICT
    DO UPDATE``, so a human editing ``earned_actual`` and a scheduled AI refresh
    can land concurrently without losing either update.
    """

    def __init__(self, calendar: MarketCalendar, db_path: Path | None = None) -> None:
        self.calendar = calendar
        self.db_path = db_path

    def get(self, portfolio_id: int, target_date: date) -> DailyTarget | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM daily_targets WHERE portfolio_id = ? AND target_date = ?",
                (portfolio_id, target_date.isoformat()),
            ).fetchone()
        return DailyTarget.from_row(row) if row else None

    def get_or_create(self, portfolio_id: int, target_date: date) -> tuple[DailyTarget, bool]:
        now_text = to_db_timestamp(self.calendar.now())
        with get_connection(self.db_path) as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO daily_targets (portfolio_id, target_date, ai_target, earned_actual, created_at, updated_at)
                    VALUES (?, ?, 0, 0, ?, ?)
                    ON CONFLICT(portfolio_id, target_date) DO NOTHING
                    """,
                    (portfolio_id, target_date.isoformat(), now_text, now_text),
                )
            except sqlite3.IntegrityError as exc:
                raise NotFound(f"Portfolio {portfolio_id} not found") from exc
            created = cursor.rowcount == 1
            conn.commit()
            row = conn.execute(
                "SELECT * FROM daily_targets WHERE portfolio_id = ? AND target_date = ?",
                (portfolio_id, target_date.isoformat()),
            ).fetchone()
        if created:
            logger.debug("Created daily target row for portfolio {} on {}", portfolio_id, target_date)
        return DailyTarget.from_row(row), created

    def record_earned(self, portfolio_id: int, target_date: date, amount: float) -> DailyTarget:
        earned = _require_finite("earned_actual", amount)
        return self._upsert_fields(
            portfolio_id,
            target_date,
            {"earned_actual": earned, "earned_updated_at": to_db_timestamp(self.calendar.now())},
        )

    def set_user_target(self, portfolio_id: int, target_date: date, amount: float | None) -> DailyTarget:
        value = None
        if amount is not None:
            value = _require_finite("user_target", amount)
            if value < 0:
                raise InvalidInput("user_target must not be negative")
        return self._upsert_fields(
            portfolio_id,
            target_date,
            {"user_target": value, "user_updated_at": to_db_timestamp(self.calendar.now())},
        )

    def refresh_ai_target(self, portfolio_id: int, target_date: date, proposal: TargetProposal) -> DailyTarget:
        target = _require_finite("ai_target", proposal.target)
        if target < 0:
            raise InvalidInput("ai_target must not be negative")
        if not 0 <= int(proposal.confidence) <= 100:
            raise InvalidInput("ai_confidence must be within 0-100")
        return self._upsert_fields(
            portfolio_id,
            target_date,
            {
                "ai_target": target,
                "ai_rationale": proposal.rationale,
                "ai_confidence": int(proposal.confidence),
                "ai_updated_at": to_db_timestamp(self.calendar.now()),
            },
        )

    def carryover(self, portfolio_id: int, as_of: date) -> CarryoverResult:
        window = self.calendar.previous_trading_days(as_of, settings.carryover_lookback_trading_days)
        if not window:
            return CarryoverResult(status="none")

        placeholders = ",".join("?" for _ in window)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM daily_targets
                WHERE portfolio_id = ? AND target_date IN ({placeholders})
                ORDER BY target_date DESC
                """,
                (portfolio_id, *[day.isoformat() for day in window]),
            ).fetchall()

        for row in rows:
            record = DailyTarget.from_row(row)
            effective = record.effective_target
            if effective == 0:
                continue
            deficit = effective - record.earned_actual
            return CarryoverResult(
                status="missed" if deficit > 0 else "met",
                target_date=record.target_date,
                effective_target=effective,
                earned_actual=record.earned_actual,
                deficit=deficit,
            )
        return CarryoverResult(status="none")

    def today_view(self, portfolio_id: int) -> dict:
        record, _ = self.get_or_create(portfolio_id, self.calendar.today())
        payload = record.as_dict()
        payload["gap"] = record.gap
        payload["ai_gap"] = record.ai_target - record.earned_actual
        payload["user_gap"] = (
            record.user_target - record.earned_actual if record.user_target is not None else None
        )
        payload["gap_label"] = gap_label(record.gap)
        return payload

    def _upsert_fields(self, portfolio_id: int, target_date: date, fields: dict) -> DailyTarget:
        columns = list(fields)
        now_text = to_db_timestamp(self.calendar.now())
        insert_columns = ", ".join(["portfolio_id", "target_date", *columns, "created_at", "updated_at"])
        insert_values = ", ".join("?" for _ in range(len(columns) + 4))
        update_clause = ", ".join(f"{col} = excluded.{col}" for col in [*columns, "updated_at"])
        sql = f"""
            INSERT INTO daily_targets ({insert_columns})
            VALUES ({insert_values})
            ON CONFLICT(portfolio_id, target_date) DO UPDATE SET {update_clause}
        """
        params = (portfolio_id, target_date.isoformat(), *fields.values(), now_text, now_text)
        with get_connection(self.db_path) as conn:
            try:
                conn.execute(sql, params)
            except sqlite3.IntegrityError as exc:
                raise NotFound(f"Portfolio {portfolio_id} not found") from exc
            conn.commit()
            row = conn.execute(
                "SELECT * FROM daily_targets WHERE portfolio_id = ? AND target_date = ?",
                (portfolio_id, target_date.isoformat()),
            ).fetchone()
        return DailyTarget.from_row(row)
