from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from loguru import logger
from pydantic import ValidationError

from .admission import Rejection, SignalCandidate
from .db import get_connection, to_db_timestamp
from .errors import ClockInconsistency, InvalidInput, NotFound
from .market_calendar import MarketCalendar
from .models import AckAction, AckOutcome, SignalAck, SignalStatus, Side, TradeSignal
from .portfolios import PortfolioRepository
from .settings import settings


_ACTIVE_SQL = "('PENDING', 'SNOOZED')"


@dataclass
class AdmissionResult:
    admitted: list[TradeSignal] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "signals": [signal.as_dict() for signal in self.admitted],
            "count": len(self.admitted),
            "rejected": [rejection.as_dict() for rejection in self.rejections],
        }


class SignalStore:
    """Persistence and lifecycle for trade signals.

    Status changes go through guarded ``UPDATE .. WHERE status IN (..)``
    statements so that two humans tapping the same button, or a tap racing the
    expiry sweep, resolve to exactly one transition.
    """

    def __init__(
        self,
        calendar: MarketCalendar,
        portfolios: PortfolioRepository,
        db_path: Path | None = None,
        max_per_batch: int | None = None,
    ) -> None:
        self.calendar = calendar
        self.portfolios = portfolios
        self.db_path = db_path
        self.max_per_batch = max_per_batch or settings.max_signals_per_batch

    # ── admission ────────────────────────────────────────────────────

    def admit(self, portfolio_id: int, candidates: Iterable[SignalCandidate | dict[str, Any]]) -> AdmissionResult:
        portfolio = self.portfolios.get(portfolio_id)
        held = portfolio.held_symbols()
        result = AdmissionResult()

        for index, raw in enumerate(candidates):
            if isinstance(raw, SignalCandidate):
                symbol = raw.symbol
            else:
                symbol = raw.get("symbol") if isinstance(raw, dict) else None
            if len(result.admitted) >= self.max_per_batch:
                result.rejections.append(Rejection(index, symbol, "batch_cap"))
                continue
            try:
                candidate = raw if isinstance(raw, SignalCandidate) else SignalCandidate.model_validate(raw)
                if candidate.side == Side.SELL and candidate.symbol not in held:
                    raise InvalidInput(f"SELL {candidate.symbol} is not held by portfolio {portfolio_id}")
                signal = self._insert(portfolio_id, candidate)
            except (ValidationError, InvalidInput, ClockInconsistency) as exc:
                reason = str(exc.errors()[0]["msg"]) if isinstance(exc, ValidationError) else exc.message
                result.rejections.append(Rejection(index, symbol, reason))
                logger.info("Signal candidate {} for portfolio {} rejected: {}", symbol, portfolio_id, reason)
                continue
            except sqlite3.Error as exc:
                result.rejections.append(Rejection(index, symbol, "storage_error"))
                logger.error("Failed to store signal {} for portfolio {}: {}", symbol, portfolio_id, exc)
                continue
            result.admitted.append(signal)

        logger.info(
            "Admitted {} signal(s) for portfolio {} ({} rejected)",
            len(result.admitted),
            portfolio_id,
            len(result.rejections),
        )
        return result

    def _insert(self, portfolio_id: int, candidate: SignalCandidate) -> TradeSignal:
        now = self.calendar.now()
        expires_at = self.calendar.next_market_close_after(now)
        if expires_at <= now:
            raise ClockInconsistency(
                f"computed expiry {expires_at.isoformat()} is not after admission time {now.isoformat()}"
            )

        now_text = to_db_timestamp(now)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO trade_signals (
                    portfolio_id, symbol, exchange, side, quantity, trigger_type,
                    trigger_price, trigger_low, trigger_high, confidence, rationale,
                    status, expires_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    portfolio_id,
                    candidate.symbol,
                    candidate.exchange,
                    candidate.side.value,
                    candidate.quantity,
                    candidate.trigger_type.value,
                    candidate.trigger_price,
                    candidate.trigger_low,
                    candidate.trigger_high,
                    candidate.confidence,
                    candidate.rationale,
                    SignalStatus.PENDING.value,
                    to_db_timestamp(expires_at),
                    now_text,
                    now_text,
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM trade_signals WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return TradeSignal.from_row(row)

    # ── state machine ────────────────────────────────────────────────

    def acknowledge(
        self,
        signal_id: int,
        action: AckAction | str,
        actor: str = "api",
        note: str | None = None,
    ) -> AckOutcome:
        try:
            ack_action = AckAction(action.upper() if isinstance(action, str) else action)
        except ValueError as exc:
            raise InvalidInput(f"action must be one of {', '.join(a.value for a in AckAction)}") from exc

        now_text = to_db_timestamp(self.calendar.now())
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE trade_signals SET status = ?, updated_at = ?
                WHERE id = ? AND status IN {_ACTIVE_SQL}
                """,
                (ack_action.target_status.value, now_text, signal_id),
            )
            applied = cursor.rowcount == 1
            if applied:
                conn.execute(
                    "INSERT INTO signal_acks (signal_id, action, actor, note, created_at) VALUES (?, ?, ?, ?, ?)",
                    (signal_id, ack_action.value, actor, note, now_text),
                )
            conn.commit()

        signal = self.get(signal_id)
        if applied:
            logger.info("Signal {} {} by {} -> {}", signal_id, ack_action.value, actor, signal.status.value)
        else:
            logger.info(
                "Signal {} already {}; {} from {} ignored", signal_id, signal.status.value, ack_action.value, actor
            )
        return AckOutcome(signal=signal, applied=applied)

    def sweep_expired(self, now: datetime | None = None) -> int:
        moment = now or self.calendar.now()
        moment_text = to_db_timestamp(moment)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE trade_signals SET status = ?, updated_at = ?
                WHERE status IN {_ACTIVE_SQL} AND expires_at < ?
                """,
                (SignalStatus.EXPIRED.value, moment_text, moment_text),
            )
            conn.commit()
            expired = cursor.rowcount
        if expired:
            logger.info("Expired {} trade signal(s)", expired)
        return expired

    # ── notification bookkeeping ─────────────────────────────────────

    def due_for_notification(self, now: datetime, repeat_interval: timedelta) -> list[TradeSignal]:
        threshold = to_db_timestamp(now - repeat_interval)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM trade_signals
                WHERE status IN {_ACTIVE_SQL}
                  AND (last_notified_at IS NULL OR last_notified_at <= ?)
                ORDER BY id
                """,
                (threshold,),
            ).fetchall()
        return [TradeSignal.from_row(row) for row in rows]

    def mark_notified(self, signal_id: int, at: datetime) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE trade_signals
                SET last_notified_at = ?, notify_count = notify_count + 1
                WHERE id = ? AND status IN {_ACTIVE_SQL}
                """,
                (to_db_timestamp(at), signal_id),
            )
            conn.commit()
            return cursor.rowcount == 1

    # ── queries ──────────────────────────────────────────────────────

    def get(self, signal_id: int) -> TradeSignal:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM trade_signals WHERE id = ?", (signal_id,)).fetchone()
            if row is None:
                raise NotFound(f"Signal {signal_id} not found")
            ack_rows = conn.execute(
                "SELECT * FROM signal_acks WHERE signal_id = ? ORDER BY id", (signal_id,)
            ).fetchall()
        signal = TradeSignal.from_row(row)
        signal.acknowledgements = [SignalAck.from_row(ack) for ack in ack_rows]
        return signal

    def list_signals(
        self,
        portfolio_id: int,
        status: SignalStatus | str | None = None,
        limit: int = 50,
    ) -> list[TradeSignal]:
        sql = "SELECT * FROM trade_signals WHERE portfolio_id = ?"
        params: list[Any] = [portfolio_id]
        if status:
            try:
                status_value = SignalStatus(status.upper() if isinstance(status, str) else status).value
            except ValueError as exc:
                raise InvalidInput(f"unknown status {status}") from exc
            sql += " AND status = ?"
            params.append(status_value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))

        with get_connection(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
            signals = [TradeSignal.from_row(row) for row in rows]
            if signals:
                ids = [s.id for s in signals]
                placeholders = ",".join("?" for _ in ids)
                ack_rows = conn.execute(
                    f"SELECT * FROM signal_acks WHERE signal_id IN ({placeholders}) ORDER BY id", ids
                ).fetchall()
                by_signal: dict[int, list[SignalAck]] = {}
                for ack_row in ack_rows:
                    ack = SignalAck.from_row(ack_row)
                    by_signal.setdefault(ack.signal_id, []).append(ack)
                for signal in signals:
                    signal.acknowledgements = by_signal.get(signal.id, [])
        return signals

    def recent(self, portfolio_id: int, since: datetime, limit: int = 10) -> list[TradeSignal]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM trade_signals
                WHERE portfolio_id = ? AND created_at >= ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (portfolio_id, to_db_timestamp(since), int(limit)),
            ).fetchall()
        return [TradeSignal.from_row(row) for row in rows]

    def count_active_since(self, portfolio_id: int, since: datetime) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS n FROM trade_signals
                WHERE portfolio_id = ? AND created_at >= ? AND status != 'EXPIRED'
                """,
                (portfolio_id, to_db_timestamp(since)),
            ).fetchone()
        return int(row["n"] if row else 0)

    def pending_count(self, portfolio_id: int) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT COUNT(1) AS n FROM trade_signals WHERE portfolio_id = ? AND status IN {_ACTIVE_SQL}",
                (portfolio_id,),
            ).fetchone()
        return int(row["n"] if row else 0)

    def last_notified_at(self, portfolio_id: int) -> datetime | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT MAX(last_notified_at) AS last FROM trade_signals WHERE portfolio_id = ?",
                (portfolio_id,),
            ).fetchone()
        value = row["last"] if row else None
        return datetime.fromisoformat(value) if value else None
