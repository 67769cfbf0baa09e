from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .engine import EngineServices
from .notifications import TickReport
from .settings import settings
from .state import RuntimeState, runtime_state


class EngineScheduler:
    def __init__(self, services: EngineServices, state: RuntimeState | None = None) -> None:
        self.services = services
        self.state = state or runtime_state
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _tracked(self, name: str, func: Callable[[], object]) -> Callable[[], None]:
        def run() -> None:
            self.state.mark_start(name)
            try:
                func()
            except Exception as exc:
                self.state.mark_failure(name, str(exc))
                logger.exception("Job {} failed: {}", name, exc)
                return
            self.state.mark_finish(name)

        return run

    def expiry_sweep(self) -> int:
        calendar = self.services.calendar
        if not calendar.is_trading_day(calendar.today()):
            return 0
        return self.services.store.sweep_expired()

    def notification_tick(self) -> TickReport:
        calendar = self.services.calendar
        report = self.services.notifications.run_tick()
        if report.delivered or report.failed:
            at = calendar.now().astimezone(calendar.tz)
            self.state.add_note(
                f"{at:%Y-%m-%d %H:%M} tick: "
                f"{len(report.delivered)} sent, {len(report.failed)} failed, {len(report.skipped)} skipped"
            )
        return report

    def register_jobs(self) -> None:
        engine = self.services.engine
        weekdays = "mon-fri"
        self.scheduler.add_job(
            self._tracked("expiry_sweep", self.expiry_sweep),
            trigger=CronTrigger(
                day_of_week=weekdays, hour=settings.expiry_sweep_hour, minute=settings.expiry_sweep_minute
            ),
            id="expiry_sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._tracked("morning_targets", engine.run_morning_targets),
            trigger=CronTrigger(
                day_of_week=weekdays, hour=settings.morning_targets_hour, minute=settings.morning_targets_minute
            ),
            id="morning_targets",
            replace_existing=True,
        )
        for hour, minute in settings.signal_generation_times():
            self.scheduler.add_job(
                self._tracked("signal_generation", engine.run_signal_generation),
                trigger=CronTrigger(day_of_week=weekdays, hour=hour, minute=minute),
                id=f"signal_generation_{hour:02d}{minute:02d}",
                replace_existing=True,
            )
        self.scheduler.add_job(
            self._tracked("notification_tick", self.notification_tick),
            trigger=IntervalTrigger(minutes=settings.notify_tick_minutes),
            id="notification_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        self.register_jobs()
        self.scheduler.start()
        self.state.is_running = True
        self.state.started_at = self.services.calendar.now()
        logger.info(
            "Scheduler started in {}: sweep {:02d}:{:02d}, targets {:02d}:{:02d}, signals at {}, "
            "notifications every {} min",
            settings.timezone,
            settings.expiry_sweep_hour,
            settings.expiry_sweep_minute,
            settings.morning_targets_hour,
            settings.morning_targets_minute,
            settings.signal_generation_times_csv,
            settings.notify_tick_minutes,
        )

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        self.state.is_running = False
        logger.info("Scheduler stopped")
