from __future__ import annotations

import math
import threading
from datetime import date

import pytest

from accountability_engine.db import get_connection
from accountability_engine.errors import InvalidInput, NotFound
from accountability_engine.target_ledger import TargetLedger, TargetProposal, gap_label

MONDAY = date(2026, 2, 9)
FRIDAY = date(2026, 2, 6)
THURSDAY = date(2026, 2, 5)


@pytest.fixture
def ledger(services) -> TargetLedger:
    return services.ledger


def _row_count(db_path, portfolio_id: int) -> int:
    with get_connection(db_path) as conn:
        return conn.execute(
            "SELECT COUNT(1) AS n FROM daily_targets WHERE portfolio_id = ?", (portfolio_id,)
        ).fetchone()["n"]


class TestGetOrCreate:
    def test_creates_zeroed_record_once(self, ledger: TargetLedger, portfolio_id: int, db_path) -> None:
        record, created = ledger.get_or_create(portfolio_id, MONDAY)
        assert created
        assert record.ai_target == 0
        assert record.earned_actual == 0
        assert record.user_target is None

        for _ in range(4):
            again, created_again = ledger.get_or_create(portfolio_id, MONDAY)
            assert not created_again
            assert again.id == record.id
        assert _row_count(db_path, portfolio_id) == 1

    def test_concurrent_calls_yield_one_record(self, ledger: TargetLedger, portfolio_id: int, db_path) -> None:
        barrier = threading.Barrier(4)
        created_flags: list[bool] = []

        def worker() -> None:
            barrier.wait()
            created_flags.append(ledger.get_or_create(portfolio_id, MONDAY)[1])

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert created_flags.count(True) == 1
        assert _row_count(db_path, portfolio_id) == 1

    def test_unknown_portfolio(self, ledger: TargetLedger) -> None:
        with pytest.raises(NotFound):
            ledger.get_or_create(999, MONDAY)


class TestWrites:
    def test_record_earned_overwrites(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.record_earned(portfolio_id, MONDAY, 150)
        record = ledger.record_earned(portfolio_id, MONDAY, 120)
        assert record.earned_actual == 120

    def test_user_target_overrides_and_clears(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(500, "ai", 70))
        record = ledger.set_user_target(portfolio_id, MONDAY, 800)
        assert record.effective_target == 800
        assert record.ai_target == 500

        cleared = ledger.set_user_target(portfolio_id, MONDAY, None)
        assert cleared.user_target is None
        assert cleared.effective_target == 500

    def test_ai_refresh_leaves_human_fields_alone(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.record_earned(portfolio_id, MONDAY, 200)
        ledger.set_user_target(portfolio_id, MONDAY, 650)
        record = ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(500, "steady", 65))
        assert record.earned_actual == 200
        assert record.user_target == 650
        assert record.ai_target == 500
        assert record.ai_rationale == "steady"
        assert record.ai_confidence == 65

    def test_earned_update_leaves_ai_fields_alone(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(500, "steady", 65))
        record = ledger.record_earned(portfolio_id, MONDAY, 75)
        assert record.ai_target == 500
        assert record.ai_confidence == 65

    @pytest.mark.parametrize("amount", [math.nan, math.inf, "abc"])
    def test_earned_must_be_finite(self, ledger: TargetLedger, portfolio_id: int, amount) -> None:
        with pytest.raises(InvalidInput):
            ledger.record_earned(portfolio_id, MONDAY, amount)

    def test_negative_targets_rejected(self, ledger: TargetLedger, portfolio_id: int) -> None:
        with pytest.raises(InvalidInput):
            ledger.set_user_target(portfolio_id, MONDAY, -1)
        with pytest.raises(InvalidInput):
            ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(-5, "bad", 50))
        with pytest.raises(InvalidInput):
            ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(5, "bad", 101))

    def test_negative_earnings_are_allowed(self, ledger: TargetLedger, portfolio_id: int) -> None:
        record = ledger.record_earned(portfolio_id, MONDAY, -250)
        assert record.earned_actual == -250


class TestCarryover:
    def test_no_prior_record(self, ledger: TargetLedger, portfolio_id: int) -> None:
        result = ledger.carryover(portfolio_id, MONDAY)
        assert result.status == "none"
        assert not result.has_record

    def test_missed_target_reports_deficit(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, FRIDAY, TargetProposal(500, "ai", 70))
        ledger.record_earned(portfolio_id, FRIDAY, 200)
        result = ledger.carryover(portfolio_id, MONDAY)
        assert result.status == "missed"
        assert result.target_date == FRIDAY
        assert result.deficit == 300

    def test_met_target_reports_non_positive_deficit(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.set_user_target(portfolio_id, FRIDAY, 400)
        ledger.record_earned(portfolio_id, FRIDAY, 450)
        result = ledger.carryover(portfolio_id, MONDAY)
        assert result.status == "met"
        assert result.deficit == -50
        assert "met" in result.describe()

    def test_skips_days_without_effective_target(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, THURSDAY, TargetProposal(300, "ai", 60))
        ledger.record_earned(portfolio_id, THURSDAY, 100)
        ledger.record_earned(portfolio_id, FRIDAY, 50)  # no target that day
        result = ledger.carryover(portfolio_id, MONDAY)
        assert result.target_date == THURSDAY
        assert result.deficit == 200

    def test_ignores_same_day_record(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(300, "ai", 60))
        assert ledger.carryover(portfolio_id, MONDAY).status == "none"

    def test_window_is_bounded(self, ledger: TargetLedger, portfolio_id: int) -> None:
        ledger.refresh_ai_target(portfolio_id, date(2026, 1, 28), TargetProposal(300, "ai", 60))
        assert ledger.carryover(portfolio_id, MONDAY).status == "none"


def test_today_view_reports_gap(ledger: TargetLedger, portfolio_id: int) -> None:
    ledger.refresh_ai_target(portfolio_id, MONDAY, TargetProposal(500, "ai", 70))
    ledger.record_earned(portfolio_id, MONDAY, 200)
    view = ledger.today_view(portfolio_id)
    assert view["target_date"] == "2026-02-09"
    assert view["effective_target"] == 500
    assert view["gap"] == 300
    assert view["user_gap"] is None
    assert view["gap_label"] == "Behind by ₹300"


def test_gap_label() -> None:
    assert gap_label(0) == "On target"
    assert gap_label(-120) == "Ahead by ₹120"
    assert gap_label(45.4) == "Behind by ₹45"
