from __future__ import annotations

import json
import threading
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from accountability_engine.db import initialize_database
from accountability_engine.engine import EngineServices, build_services
from accountability_engine.errors import UpstreamUnavailable
from accountability_engine.market_calendar import NSE_HOLIDAYS, MarketCalendar
from accountability_engine.prices import HoldingPriceSource
from accountability_engine.telegram_client import DeliveryRequest

IST = ZoneInfo("Asia/Kolkata")

# Monday; a normal NSE session.
TRADING_MONDAY = date(2026, 2, 9)


def ist(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=IST)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeNotifier:
    def __init__(self) -> None:
        self.delivered: list[DeliveryRequest] = []
        self.answers: list[tuple[str, str]] = []
        self.fail_ids: set[int] = set()
        self.hang_ids: set[int] = set()
        self.release = threading.Event()
        self.answer_error: Exception | None = None

    def is_configured(self) -> bool:
        return True

    def deliver(self, request: DeliveryRequest) -> None:
        if request.signal_id in self.fail_ids:
            raise UpstreamUnavailable("telegram is down")
        if request.signal_id in self.hang_ids:
            self.release.wait(5)
            return
        self.delivered.append(request)

    def answer_callback(self, callback_id: str, text: str) -> None:
        if self.answer_error is not None:
            raise self.answer_error
        self.answers.append((callback_id, text))


class FakeOracle:
    def __init__(self) -> None:
        self.signals_response: str | Exception = json.dumps({"signals": []})
        self.target_response: str | Exception = json.dumps(
            {"aiTarget": 500, "aiRationale": "Modest intraday move on RELIANCE.", "aiConfidence": 70}
        )
        self.signal_contexts = []
        self.target_contexts = []

    def is_configured(self) -> bool:
        return True

    def propose_signals(self, context) -> str:
        self.signal_contexts.append(context)
        if isinstance(self.signals_response, Exception):
            raise self.signals_response
        return self.signals_response

    def propose_target(self, context) -> str:
        self.target_contexts.append(context)
        if isinstance(self.target_response, Exception):
            raise self.target_response
        return self.target_response


def signals_json(*signals: dict) -> str:
    return "```json\n" + json.dumps({"signals": list(signals)}) + "\n```"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(ist(2026, 2, 9, 10, 0))


@pytest.fixture
def calendar(clock: FakeClock) -> MarketCalendar:
    holidays = {date.fromisoformat(day): name for day, name in NSE_HOLIDAYS.items()}
    return MarketCalendar(
        tz_name="Asia/Kolkata",
        holidays=holidays,
        market_open="09:15",
        market_close="15:30",
        now_fn=clock,
    )


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "engine.sqlite3"
    initialize_database(path)
    return path


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def services(db_path, calendar, oracle, notifier) -> EngineServices:
    built = build_services(
        db_path=db_path,
        calendar=calendar,
        oracle=oracle,
        notifier=notifier,
        price_source_factory=HoldingPriceSource,
    )
    yield built
    notifier.release.set()


@pytest.fixture
def portfolio_id(services: EngineServices) -> int:
    """Portfolio holding 100 RELIANCE @ ₹50 (now ₹55) and 10 INFY @ ₹1500 (now ₹1480)."""
    repo = services.portfolios
    pid = repo.create_portfolio(
        name="Core",
        owner_name="Asha",
        broker="ZERODHA",
        risk_profile="MODERATE",
        available_cash=50_000,
        telegram_chat_id="1001",
    )
    repo.upsert_holding(pid, "RELIANCE", 100, 50.0, current_price=55.0)
    repo.upsert_holding(pid, "INFY", 10, 1500.0, current_price=1480.0)
    return pid
