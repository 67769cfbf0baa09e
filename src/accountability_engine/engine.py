from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .acknowledgement import AcknowledgementHandler
from .admission import parse_candidates, parse_target_proposal
from .errors import UpstreamUnavailable
from .market_calendar import MarketCalendar
from .models import DailyTarget
from .notifications import NotificationScheduler, delivery_chat_id
from .oracle import OpenAIOracle, OracleContext, RecommendationOracle
from .portfolios import Portfolio, PortfolioRepository
from .prices import PriceSource, price_source_for
from .scorecard import AccountabilityScorecard
from .settings import settings
from .signal_store import AdmissionResult, SignalStore
from .target_ledger import TargetLedger, TargetProposal, gap_label
from .telegram_client import Notifier, TelegramNotifier


class AccountabilityEngine:
    """Morning targets and intraday signal generation for every active portfolio."""

    def __init__(
        self,
        calendar: MarketCalendar,
        portfolios: PortfolioRepository,
        ledger: TargetLedger,
        store: SignalStore,
        scorecard: AccountabilityScorecard,
        oracle: RecommendationOracle,
        price_source_factory=price_source_for,
        default_chat_id: str | None = None,
    ) -> None:
        self.calendar = calendar
        self.portfolios = portfolios
        self.ledger = ledger
        self.store = store
        self.scorecard = scorecard
        self.oracle = oracle
        self.price_source_factory = price_source_factory
        self.default_chat_id = default_chat_id if default_chat_id is not None else settings.telegram_default_chat_id

    # ── context ──────────────────────────────────────────────────────

    def _prices(self, portfolio_id: int) -> PriceSource:
        return self.price_source_factory(self.portfolios, portfolio_id)

    def build_context(self, portfolio: Portfolio) -> OracleContext:
        today = self.calendar.today()
        record = self.ledger.get(portfolio.id, today)
        if record is not None and record.effective_target > 0:
            target_summary = (
                f"Today's earning target: ₹{record.effective_target:.0f}. "
                f"Earned so far: ₹{record.earned_actual:.0f}. {gap_label(record.gap)}."
            )
        else:
            target_summary = "No daily target set yet."

        card = self.scorecard.for_portfolio(portfolio.id, self._prices(portfolio.id))
        return OracleContext(
            portfolio_id=portfolio.id,
            portfolio_brief=portfolio.brief(),
            available_cash=portfolio.available_cash,
            total_invested=portfolio.total_invested,
            total_value=portfolio.total_value,
            holdings_count=len(portfolio.holdings),
            target_summary=target_summary,
            carryover_summary=card.carryover.describe(),
            scorecard_summary=card.render(),
            max_signals=settings.max_signals_per_batch,
        )

    # ── targets ──────────────────────────────────────────────────────

    def fallback_proposal(self, portfolio: Portfolio, reason: str) -> TargetProposal:
        invested = portfolio.total_invested
        if invested > 0:
            target = float(round(invested * settings.fallback_target_pct))
        else:
            target = settings.fallback_target_floor
        return TargetProposal(
            target=target,
            rationale=(
                f"Fallback target ({settings.fallback_target_pct * 100:.1f}% of invested value); "
                f"AI analysis unavailable: {reason}"
            ),
            confidence=settings.fallback_target_confidence,
        )

    def refresh_target(self, portfolio_id: int) -> DailyTarget:
        portfolio = self.portfolios.get(portfolio_id)
        today = self.calendar.today()
        self.ledger.get_or_create(portfolio_id, today)

        proposal: TargetProposal | None = None
        reason = "malformed proposal"
        try:
            raw = self.oracle.propose_target(self.build_context(portfolio))
            proposal = parse_target_proposal(raw)
        except UpstreamUnavailable as exc:
            reason = exc.message
            logger.warning("Target oracle unavailable for portfolio {}: {}", portfolio_id, reason)

        if proposal is None:
            proposal = self.fallback_proposal(portfolio, reason)

        record = self.ledger.refresh_ai_target(portfolio_id, today, proposal)
        logger.info(
            "Daily target for portfolio {} on {}: ₹{:.0f} (confidence {})",
            portfolio_id,
            today,
            record.ai_target,
            record.ai_confidence,
        )
        return record

    # ── signals ──────────────────────────────────────────────────────

    def generate_signals(self, portfolio_id: int) -> AdmissionResult:
        portfolio = self.portfolios.get(portfolio_id)
        today = self.calendar.today()
        existing = self.store.count_active_since(portfolio_id, self.calendar.day_start(today))
        if existing >= settings.max_signals_per_day:
            logger.info(
                "Portfolio {} already has {} signal(s) today; skipping generation",
                portfolio_id,
                existing,
            )
            return AdmissionResult()

        try:
            raw = self.oracle.propose_signals(self.build_context(portfolio))
        except UpstreamUnavailable as exc:
            logger.warning("Signal oracle unavailable for portfolio {}: {}", portfolio_id, exc.message)
            return AdmissionResult()

        parsed = parse_candidates(raw)
        result = self.store.admit(portfolio_id, parsed.candidates)
        result.rejections = parsed.rejections + result.rejections
        return result

    # ── scheduled jobs ───────────────────────────────────────────────

    def run_morning_targets(self) -> dict[int, float]:
        today = self.calendar.today()
        if not self.calendar.is_trading_day(today):
            logger.info("{} is not a trading day; skipping morning targets", today)
            return {}

        results: dict[int, float] = {}
        for portfolio in self.portfolios.list_active():
            if not portfolio.holdings:
                continue
            try:
                results[portfolio.id] = self.refresh_target(portfolio.id).ai_target
            except Exception as exc:
                logger.exception("Morning target failed for portfolio {}: {}", portfolio.id, exc)
        logger.info("Morning targets set for {} portfolio(s)", len(results))
        return results

    def run_signal_generation(self) -> dict[int, int]:
        today = self.calendar.today()
        if not self.calendar.is_trading_day(today):
            logger.info("{} is not a trading day; skipping signal generation", today)
            return {}

        results: dict[int, int] = {}
        for portfolio in self.portfolios.list_active():
            if delivery_chat_id(portfolio, self.default_chat_id) is None:
                logger.info("Portfolio {} has no delivery route; skipping signal generation", portfolio.id)
                continue
            try:
                results[portfolio.id] = len(self.generate_signals(portfolio.id).admitted)
            except Exception as exc:
                logger.exception("Signal generation failed for portfolio {}: {}", portfolio.id, exc)
        logger.info("Signal generation admitted {} signal(s) in total", sum(results.values()))
        return results


@dataclass
class EngineServices:
    calendar: MarketCalendar
    portfolios: PortfolioRepository
    ledger: TargetLedger
    store: SignalStore
    scorecard: AccountabilityScorecard
    engine: AccountabilityEngine
    notifier: Notifier
    notifications: NotificationScheduler
    acknowledgements: AcknowledgementHandler


def build_services(
    db_path: Path | None = None,
    calendar: MarketCalendar | None = None,
    oracle: RecommendationOracle | None = None,
    notifier: Notifier | None = None,
    price_source_factory=price_source_for,
) -> EngineServices:
    calendar = calendar or MarketCalendar()
    portfolios = PortfolioRepository(db_path)
    ledger = TargetLedger(calendar, db_path)
    store = SignalStore(calendar, portfolios, db_path)
    scorecard = AccountabilityScorecard(store, ledger, calendar)
    notifier = notifier or TelegramNotifier()
    engine = AccountabilityEngine(
        calendar,
        portfolios,
        ledger,
        store,
        scorecard,
        oracle or OpenAIOracle(),
        price_source_factory=price_source_factory,
    )
    return EngineServices(
        calendar=calendar,
        portfolios=portfolios,
        ledger=ledger,
        store=store,
        scorecard=scorecard,
        engine=engine,
        notifier=notifier,
        notifications=NotificationScheduler(store, calendar, notifier, portfolios),
        acknowledgements=AcknowledgementHandler(store, notifier),
    )
