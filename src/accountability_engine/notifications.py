from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta

from loguru import logger

from .errors import NotFound
from .market_calendar import MarketCalendar
from .models import Side, TradeSignal
from .portfolios import Portfolio, PortfolioRepository
from .settings import settings
from .signal_store import SignalStore
from .telegram_client import DeliveryRequest, Notifier


@dataclass
class TickReport:
    ran: bool = False
    reason: str = ""
    expired: int = 0
    selected: int = 0
    delivered: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "ran": self.ran,
            "reason": self.reason,
            "expired": self.expired,
            "selected": self.selected,
            "delivered": list(self.delivered),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


def delivery_chat_id(portfolio: Portfolio | None, default_chat_id: str | None) -> str | None:
    """Chat a portfolio's signals go to, or None when muted or unrouted."""
    if portfolio is None or portfolio.notifications_muted:
        return None
    chat_id = (portfolio.telegram_chat_id or default_chat_id or "").strip()
    return chat_id or None


def confidence_bar(confidence: int) -> str:
    filled = max(0, min(10, confidence // 10))
    return "█" * filled + "░" * (10 - filled)


def format_signal_message(signal: TradeSignal, portfolio: Portfolio) -> str:
    side_emoji = "🟢" if signal.side == Side.BUY else "🔴"
    broker = (portfolio.broker or "Unknown").replace("_", " ")
    risk = f" ({portfolio.risk_profile})" if portfolio.risk_profile else ""
    lines = [
        f"{side_emoji} *{signal.side.value} SIGNAL*",
        "━━━━━━━━━━━━━━━━━━━",
        f"*{signal.symbol}* ({signal.exchange})",
        f"Qty: {signal.quantity} | {signal.price_label()}",
        "",
        f"📁 *{portfolio.label}* — {broker}{risk}",
        "",
        f"Confidence: {confidence_bar(signal.confidence)} {signal.confidence}%",
    ]
    if signal.rationale:
        lines.append(signal.rationale)
    if signal.notify_count > 0:
        lines.append(f"⏰ _Reminder #{signal.notify_count + 1}_")
    return "\n".join(lines)


class NotificationScheduler:
    """Surfaces PENDING/SNOOZED signals on every eligible tick.

    A signal is re-sent no more often than ``repeat_interval``. Its
    ``last_notified_at`` moves only after a delivery succeeded, so an outage
    delays a reminder rather than silencing it.
    """

    def __init__(
        self,
        store: SignalStore,
        calendar: MarketCalendar,
        notifier: Notifier,
        portfolios: PortfolioRepository,
        repeat_interval: timedelta | None = None,
        delivery_timeout: float | None = None,
        default_chat_id: str | None = None,
    ) -> None:
        self.store = store
        self.calendar = calendar
        self.notifier = notifier
        self.portfolios = portfolios
        self.repeat_interval = repeat_interval or timedelta(minutes=settings.repeat_interval_minutes)
        self.delivery_timeout = delivery_timeout or settings.delivery_timeout_seconds
        self.default_chat_id = default_chat_id if default_chat_id is not None else settings.telegram_default_chat_id

    def run_tick(self) -> TickReport:
        report = TickReport()
        now = self.calendar.now()
        today = self.calendar.civil_date(now)
        if not self.calendar.is_trading_day(today):
            report.reason = "non_trading_day"
            return report
        if not self.calendar.is_trading_hours(now):
            report.reason = "outside_trading_hours"
            return report

        report.ran = True
        report.expired = self.store.sweep_expired(now)
        due = self.store.due_for_notification(now, self.repeat_interval)
        report.selected = len(due)

        requests: list[DeliveryRequest] = []
        portfolio_cache: dict[int, Portfolio | None] = {}
        for signal in due:
            portfolio = self._portfolio(signal.portfolio_id, portfolio_cache)
            chat_id = self._chat_for(portfolio)
            if portfolio is None or chat_id is None:
                report.skipped.append(signal.id)
                continue
            try:
                text = format_signal_message(signal, portfolio)
            except Exception as exc:
                logger.exception("Could not build message for signal {}: {}", signal.id, exc)
                report.failed.append(signal.id)
                continue
            requests.append(DeliveryRequest(chat_id=chat_id, signal_id=signal.id, text=text))

        for request, delivered in self._deliver_all(requests):
            if not delivered:
                report.failed.append(request.signal_id)
                continue
            try:
                self.store.mark_notified(request.signal_id, now)
            except Exception as exc:
                logger.exception("Could not mark signal {} as notified: {}", request.signal_id, exc)
                report.failed.append(request.signal_id)
                continue
            report.delivered.append(request.signal_id)

        if report.delivered or report.failed:
            logger.info(
                "Notification tick: sent {}/{} signal(s), {} failed, {} skipped",
                len(report.delivered),
                report.selected,
                len(report.failed),
                len(report.skipped),
            )
        elif report.skipped:
            logger.warning("Found {} due signal(s) but none had a delivery route", len(report.skipped))
        return report

    def _deliver_all(self, requests: list[DeliveryRequest]) -> list[tuple[DeliveryRequest, bool]]:
        """Send every request concurrently and wait for all of them against one deadline."""
        if not requests:
            return []
        executor = ThreadPoolExecutor(max_workers=len(requests), thread_name_prefix="signal-delivery")
        try:
            futures = [executor.submit(self.notifier.deliver, request) for request in requests]
            done, _ = wait(futures, timeout=self.delivery_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results = []
        for request, future in zip(requests, futures):
            if future not in done:
                logger.warning(
                    "Delivery of signal {} timed out after {}s; retrying next window",
                    request.signal_id,
                    self.delivery_timeout,
                )
                results.append((request, False))
            elif future.exception() is not None:
                logger.warning("Delivery of signal {} failed: {}", request.signal_id, future.exception())
                results.append((request, False))
            else:
                results.append((request, True))
        return results

    def _portfolio(self, portfolio_id: int, cache: dict[int, Portfolio | None]) -> Portfolio | None:
        if portfolio_id not in cache:
            try:
                cache[portfolio_id] = self.portfolios.get(portfolio_id)
            except NotFound:
                cache[portfolio_id] = None
        return cache[portfolio_id]

    def _chat_for(self, portfolio: Portfolio | None) -> str | None:
        return delivery_chat_id(portfolio, self.default_chat_id)
