from __future__ import annotations

import sqlite3
import time
from datetime import timedelta

import pytest

from accountability_engine.db import get_connection
from accountability_engine.models import AckAction, SignalStatus
from accountability_engine.notifications import NotificationScheduler, confidence_bar, format_signal_message
from accountability_engine.telegram_client import callback_data

from .conftest import ist


def admit(services, portfolio_id: int, *symbols: str):
    candidates = [{"symbol": s, "side": "BUY", "quantity": 3, "confidence": 72} for s in symbols]
    return services.store.admit(portfolio_id, candidates).admitted


@pytest.fixture
def scheduler(services, notifier):
    sched = NotificationScheduler(
        services.store,
        services.calendar,
        notifier,
        services.portfolios,
        repeat_interval=timedelta(minutes=30),
        delivery_timeout=0.5,
        default_chat_id="",
    )
    yield sched
    notifier.release.set()


class TestGating:
    def test_skips_non_trading_day(self, scheduler, services, clock, portfolio_id, notifier) -> None:
        admit(services, portfolio_id, "TCS")
        clock.set(ist(2026, 2, 14, 11, 0))
        report = scheduler.run_tick()
        assert not report.ran
        assert report.reason == "non_trading_day"
        assert notifier.delivered == []

    def test_skips_outside_hours(self, scheduler, services, clock, portfolio_id, notifier) -> None:
        admit(services, portfolio_id, "TCS")
        clock.set(ist(2026, 2, 9, 8, 55))
        report = scheduler.run_tick()
        assert report.reason == "outside_trading_hours"
        assert notifier.delivered == []


class TestDelivery:
    def test_first_tick_delivers_and_marks(self, scheduler, services, portfolio_id, notifier, clock) -> None:
        (signal,) = admit(services, portfolio_id, "TCS")
        report = scheduler.run_tick()
        assert report.delivered == [signal.id]
        request = notifier.delivered[0]
        assert request.chat_id == "1001"
        assert "TCS" in request.text
        assert [a for a in request.actions] == [AckAction.ACK, AckAction.SNOOZE, AckAction.DISMISS]

        stored = services.store.get(signal.id)
        assert stored.last_notified_at == clock()
        assert stored.notify_count == 1

    def test_repeat_only_after_interval(self, scheduler, services, portfolio_id, notifier, clock) -> None:
        admit(services, portfolio_id, "TCS")
        scheduler.run_tick()
        clock.advance(minutes=5)
        assert scheduler.run_tick().selected == 0
        clock.advance(minutes=25)
        report = scheduler.run_tick()
        assert report.selected == 1
        assert len(notifier.delivered) == 2
        assert "Reminder #2" in notifier.delivered[1].text

    def test_snoozed_signal_reminded_on_normal_cadence(
        self, scheduler, services, portfolio_id, notifier, clock
    ) -> None:
        (signal,) = admit(services, portfolio_id, "TCS")
        scheduler.run_tick()
        services.store.acknowledge(signal.id, AckAction.SNOOZE)
        clock.advance(minutes=30)
        assert scheduler.run_tick().delivered == [signal.id]
        assert services.store.get(signal.id).status == SignalStatus.SNOOZED

    def test_acknowledged_signal_is_not_resent(self, scheduler, services, portfolio_id, notifier, clock) -> None:
        (signal,) = admit(services, portfolio_id, "TCS")
        scheduler.run_tick()
        services.store.acknowledge(signal.id, AckAction.ACK)
        clock.advance(minutes=45)
        assert scheduler.run_tick().selected == 0
        assert len(notifier.delivered) == 1

    def test_failure_is_isolated_and_retried(self, scheduler, services, portfolio_id, notifier, clock) -> None:
        first, second = admit(services, portfolio_id, "TCS", "WIPRO")
        notifier.fail_ids.add(first.id)
        report = scheduler.run_tick()
        assert report.failed == [first.id]
        assert report.delivered == [second.id]
        assert services.store.get(first.id).last_notified_at is None

        notifier.fail_ids.clear()
        clock.advance(minutes=5)
        assert scheduler.run_tick().delivered == [first.id]

    def test_hung_delivery_times_out_without_blocking_others(
        self, scheduler, services, portfolio_id, notifier
    ) -> None:
        first, second = admit(services, portfolio_id, "TCS", "WIPRO")
        notifier.hang_ids.add(first.id)
        report = scheduler.run_tick()
        assert report.failed == [first.id]
        assert report.delivered == [second.id]
        assert services.store.get(first.id).notify_count == 0

    def test_hung_deliveries_do_not_drop_healthy_ones(self, scheduler, services, portfolio_id, notifier) -> None:
        first, second, third = admit(services, portfolio_id, "TCS", "WIPRO", "HDFCBANK")
        notifier.hang_ids.update({first.id, second.id})
        started = time.monotonic()
        report = scheduler.run_tick()
        assert time.monotonic() - started < 2 * scheduler.delivery_timeout
        assert report.delivered == [third.id]
        assert report.failed == [first.id, second.id]

    def test_unrenderable_signal_does_not_abort_the_batch(
        self, scheduler, services, portfolio_id, notifier, db_path
    ) -> None:
        broken, healthy = admit(services, portfolio_id, "TCS", "WIPRO")
        with get_connection(db_path) as conn:
            conn.execute(
                "UPDATE trade_signals SET trigger_type = 'LIMIT', trigger_price = NULL WHERE id = ?", (broken.id,)
            )
        report = scheduler.run_tick()
        assert report.failed == [broken.id]
        assert report.delivered == [healthy.id]
        assert services.store.get(broken.id).notify_count == 0

    def test_marking_failure_is_isolated(self, scheduler, services, portfolio_id, notifier, monkeypatch) -> None:
        first, second = admit(services, portfolio_id, "TCS", "WIPRO")
        mark_notified = services.store.mark_notified

        def flaky_mark(signal_id, at):
            if signal_id == first.id:
                raise sqlite3.OperationalError("database is locked")
            return mark_notified(signal_id, at)

        monkeypatch.setattr(services.store, "mark_notified", flaky_mark)
        report = scheduler.run_tick()
        assert report.failed == [first.id]
        assert report.delivered == [second.id]

    def test_expired_signals_are_swept_first(self, scheduler, services, portfolio_id, notifier, clock) -> None:
        (signal,) = admit(services, portfolio_id, "TCS")
        clock.set(ist(2026, 2, 10, 10, 0))
        report = scheduler.run_tick()
        assert report.expired == 1
        assert report.selected == 0
        assert services.store.get(signal.id).status == SignalStatus.EXPIRED


class TestRouting:
    def test_muted_portfolio_is_skipped_without_marking(self, scheduler, services, notifier) -> None:
        pid = services.portfolios.create_portfolio("Quiet", telegram_chat_id="77", notifications_muted=True)
        (signal,) = admit(services, pid, "TCS")
        report = scheduler.run_tick()
        assert report.skipped == [signal.id]
        assert notifier.delivered == []
        assert services.store.get(signal.id).last_notified_at is None

    def test_default_chat_used_when_portfolio_has_none(self, services, notifier) -> None:
        pid = services.portfolios.create_portfolio("Plain")
        (signal,) = admit(services, pid, "TCS")
        sched = NotificationScheduler(
            services.store, services.calendar, notifier, services.portfolios, default_chat_id="555"
        )
        report = sched.run_tick()
        assert report.delivered == [signal.id]
        assert notifier.delivered[0].chat_id == "555"

    def test_no_route_at_all_is_skipped(self, scheduler, services, notifier) -> None:
        pid = services.portfolios.create_portfolio("Plain")
        (signal,) = admit(services, pid, "TCS")
        report = scheduler.run_tick()
        assert report.skipped == [signal.id]


def test_message_text(services, portfolio_id) -> None:
    signal = services.store.admit(
        portfolio_id,
        [{"symbol": "RELIANCE", "side": "SELL", "quantity": 50, "triggerType": "ZONE",
          "triggerLow": 54, "triggerHigh": 56, "confidence": 80, "rationale": "Resistance at 56"}],
    ).admitted[0]
    portfolio = services.portfolios.get(portfolio_id)
    text = format_signal_message(signal, portfolio)
    assert "🔴 *SELL SIGNAL*" in text
    assert "Zone: ₹54 - ₹56" in text
    assert "Asha" in text
    assert "ZERODHA" in text
    assert "████████░░ 80%" in text
    assert "Resistance at 56" in text
    assert "Reminder" not in text


def test_confidence_bar_bounds() -> None:
    assert confidence_bar(0) == "░" * 10
    assert confidence_bar(100) == "█" * 10
    assert confidence_bar(55) == "█████░░░░░"


def test_callback_data_format() -> None:
    assert callback_data(AckAction.SNOOZE, 42) == "sig_snooze_42"
