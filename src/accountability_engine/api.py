from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .db import initialize_database
from .engine import EngineServices, build_services
from .errors import EngineError, InvalidInput
from .settings import settings
from .state import RuntimeState, runtime_state


class PortfolioPayload(BaseModel):
    portfolio_id: int = Field(..., ge=1)


class TargetUpdatePayload(BaseModel):
    portfolio_id: int = Field(..., ge=1)
    earned_actual: float | None = Field(default=None, allow_inf_nan=False)
    user_target: float | None = Field(default=None, ge=0, allow_inf_nan=False)


class AckPayload(BaseModel):
    action: str = Field(..., min_length=1, max_length=16)
    actor: str = Field(default="api", min_length=1, max_length=64)
    note: str | None = Field(default=None, max_length=500)


class EngineController:
    def __init__(self, services: EngineServices, state: RuntimeState | None = None) -> None:
        self.services = services
        self.state = state or runtime_state

    def today_target(self, portfolio_id: int) -> dict[str, Any]:
        self.services.portfolios.require(portfolio_id)
        return self.services.ledger.today_view(portfolio_id)

    def update_today_target(self, payload: TargetUpdatePayload) -> dict[str, Any]:
        fields = payload.model_fields_set - {"portfolio_id"}
        if not fields:
            raise InvalidInput("provide earned_actual and/or user_target")
        if "earned_actual" in fields and payload.earned_actual is None:
            raise InvalidInput("earned_actual must be a number")

        self.services.portfolios.require(payload.portfolio_id)
        ledger = self.services.ledger
        today = self.services.calendar.today()
        if "earned_actual" in fields:
            ledger.record_earned(payload.portfolio_id, today, payload.earned_actual)
        if "user_target" in fields:
            ledger.set_user_target(payload.portfolio_id, today, payload.user_target)
        return ledger.today_view(payload.portfolio_id)

    def refresh_today_target(self, portfolio_id: int) -> dict[str, Any]:
        self.services.engine.refresh_target(portfolio_id)
        return self.services.ledger.today_view(portfolio_id)

    def carryover(self, portfolio_id: int) -> dict[str, Any]:
        self.services.portfolios.require(portfolio_id)
        return self.services.ledger.carryover(portfolio_id, self.services.calendar.today()).as_dict()

    def signals(self, portfolio_id: int, status: str | None, limit: int) -> dict[str, Any]:
        self.services.portfolios.require(portfolio_id)
        store = self.services.store
        last = store.last_notified_at(portfolio_id)
        return {
            "signals": [signal.as_dict() for signal in store.list_signals(portfolio_id, status=status, limit=limit)],
            "pending_count": store.pending_count(portfolio_id),
            "last_notified_at": last.isoformat() if last else None,
        }

    def generate_signals(self, portfolio_id: int) -> dict[str, Any]:
        return self.services.engine.generate_signals(portfolio_id).as_dict()

    def acknowledge(self, signal_id: int, payload: AckPayload) -> dict[str, Any]:
        outcome = self.services.acknowledgements.handle(
            signal_id, payload.action, actor=payload.actor, note=payload.note
        )
        return outcome.as_dict()

    def telegram_callback(self, update: dict[str, Any]) -> dict[str, Any]:
        query = update.get("callback_query")
        if not isinstance(query, dict):
            return {"ok": True, "handled": False}
        outcome = self.services.acknowledgements.handle_callback(query)
        return {"ok": True, "handled": outcome is not None, "outcome": outcome.as_dict() if outcome else None}

    def scorecard(self, portfolio_id: int) -> dict[str, Any]:
        services = self.services
        prices = services.engine.price_source_factory(services.portfolios, portfolio_id)
        card = services.scorecard.for_portfolio(portfolio_id, prices)
        payload = card.as_dict()
        payload["text"] = card.render()
        return payload

    def status(self) -> dict[str, Any]:
        calendar = self.services.calendar
        now = calendar.now()
        today = calendar.civil_date(now)
        payload = self.state.as_dict()
        payload["market"] = {
            "now": now.astimezone(calendar.tz).isoformat(),
            "today": today.isoformat(),
            "is_trading_day": calendar.is_trading_day(today),
            "is_trading_hours": calendar.is_trading_hours(now),
            "holiday": calendar.holiday_name(today),
        }
        return payload


def create_app(services: EngineServices | None = None, state: RuntimeState | None = None) -> FastAPI:
    controller = EngineController(services or build_services(), state)
    app = FastAPI(title="Accountability Engine API", version="1.0.0")
    app.state.controller = controller

    @app.on_event("startup")
    def on_startup() -> None:
        initialize_database(controller.services.ledger.db_path)

    @app.exception_handler(EngineError)
    def handle_engine_error(request: Request, exc: EngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("{} {} failed: {}", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = "invalid request"
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            detail = f"{location}: {errors[0].get('msg', 'invalid')}" if location else str(errors[0].get("msg"))
        return JSONResponse(status_code=400, content={"error": InvalidInput.kind, "detail": detail})

    @app.get("/targets/today")
    def get_today_target(portfolio_id: int = Query(..., ge=1)) -> dict[str, Any]:
        return controller.today_target(portfolio_id)

    @app.post("/targets/today")
    def post_today_target(payload: TargetUpdatePayload) -> dict[str, Any]:
        return controller.update_today_target(payload)

    @app.post("/targets/today/refresh")
    def post_refresh_target(payload: PortfolioPayload) -> dict[str, Any]:
        return controller.refresh_today_target(payload.portfolio_id)

    @app.get("/targets/carryover")
    def get_carryover(portfolio_id: int = Query(..., ge=1)) -> dict[str, Any]:
        return controller.carryover(portfolio_id)

    @app.get("/signals")
    def get_signals(
        portfolio_id: int = Query(..., ge=1),
        status: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> dict[str, Any]:
        return controller.signals(portfolio_id, status, limit)

    @app.post("/signals/generate")
    def post_generate_signals(payload: PortfolioPayload) -> dict[str, Any]:
        return controller.generate_signals(payload.portfolio_id)

    @app.post("/signals/{signal_id}/ack")
    def post_ack(signal_id: int, payload: AckPayload) -> dict[str, Any]:
        return controller.acknowledge(signal_id, payload)

    @app.get("/scorecard")
    def get_scorecard(portfolio_id: int = Query(..., ge=1)) -> dict[str, Any]:
        return controller.scorecard(portfolio_id)

    @app.post("/telegram/callback")
    def post_telegram_callback(update: dict[str, Any]) -> dict[str, Any]:
        return controller.telegram_callback(update)

    @app.get("/status")
    def get_status() -> dict[str, Any]:
        return controller.status()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"ok": True, "timezone": settings.timezone}

    return app


app = create_app()
