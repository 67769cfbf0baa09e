from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Protocol

import requests
from loguru import logger

from .errors import UpstreamUnavailable
from .settings import settings


@dataclass
class OracleContext:
    portfolio_id: int
    portfolio_brief: str
    available_cash: float = 0.0
    total_invested: float = 0.0
    total_value: float = 0.0
    holdings_count: int = 0
    target_summary: str = "No daily target set yet."
    carryover_summary: str = ""
    scorecard_summary: str = ""
    max_signals: int = 5


class RecommendationOracle(Protocol):
    def propose_signals(self, context: OracleContext) -> str: ...

    def propose_target(self, context: OracleContext) -> str: ...


def build_target_prompt(context: OracleContext) -> str:
    sections = [
        "You are an expert Indian stock market analyst. Given this investor profile and portfolio, "
        "compute a REALISTIC daily earning target.",
        "",
        context.portfolio_brief,
        "",
        f"Total Invested: ₹{context.total_invested:,.0f}",
        f"Current Value: ₹{context.total_value:,.0f}",
        f"Number of Holdings: {context.holdings_count}",
    ]
    if context.carryover_summary:
        sections += ["", f"Prior day: {context.carryover_summary}"]
    if context.scorecard_summary:
        sections += ["", context.scorecard_summary]
    sections += [
        "",
        "Rules:",
        "- Consider current Indian market volatility (typical daily swings 0.5-2% on individual stocks).",
        "- The target should be ACHIEVABLE through realistic intraday/short-term moves on existing holdings.",
        "- Be conservative: a target that can be hit 60-70% of trading days beats an ambitious one.",
        "- If the portfolio is small (< 1 lakh invested), keep the target proportionally modest.",
        "- If there are no holdings, suggest based on available cash and risk profile.",
        "",
        "Respond with only this JSON object:",
        '{"aiTarget": <number in INR>, "aiRationale": "<2-3 sentences>", "aiConfidence": <0-100>}',
    ]
    return "\n".join(sections)


def build_signal_prompt(context: OracleContext) -> str:
    sections = [
        "You are an expert Indian stock market trader. Generate specific, actionable trade signals "
        "for this investor.",
        "",
        context.portfolio_brief,
        "",
        f"Available Cash: ₹{context.available_cash:,.0f}",
        context.target_summary,
    ]
    if context.carryover_summary:
        sections.append(f"Prior day: {context.carryover_summary}")
    if context.scorecard_summary:
        sections += ["", context.scorecard_summary]
    sections += [
        "",
        "Generate trade signals (BUY and/or SELL) that:",
        "1. Are realistic and executable on NSE/BSE today",
        "2. Match the investor's risk profile",
        "3. For SELL signals: only suggest stocks already in holdings",
        "4. For BUY signals: keep quantity affordable within available cash",
        "5. Include a specific entry price or zone and a confidence level",
        "6. Prioritise signals that help close today's target gap",
        "",
        "Respond with only this JSON object:",
        '{"signals": [{"symbol": "SYMBOL", "exchange": "NSE", "side": "BUY", "quantity": 10, '
        '"triggerType": "MARKET", "triggerPrice": null, "triggerLow": null, "triggerHigh": null, '
        '"confidence": 75, "rationale": "Brief reason"}]}',
        "",
        "Rules:",
        f"- At most {context.max_signals} signals in total",
        "- triggerType is MARKET (execute now), LIMIT (set triggerPrice) or ZONE (set triggerLow and triggerHigh)",
        "- For MARKET signals all trigger prices are null",
        "- confidence is 0-100",
        "- If no good signals exist, return an empty list",
    ]
    return "\n".join(sections)


class OpenAIOracle:
    """Recommendation oracle backed by an OpenAI-compatible chat/completions endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = (api_key if api_key is not None else settings.openai_api_key).strip()
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout_seconds = timeout_seconds or settings.openai_timeout_seconds
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _extract_text_response(self, payload: dict) -> str:
        choices = payload.get("choices", [])
        if choices:
            message = choices[0].get("message", {})
            content = message.get("content", "")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                chunks: list[str] = []
                for part in content:
                    if isinstance(part, dict) and part.get("type") == "text":
                        chunks.append(str(part.get("text", "")))
                return "\n".join(chunks)
        return ""

    def _complete(self, prompt: str, max_tokens: int) -> str:
        if not self.is_configured():
            raise UpstreamUnavailable("OpenAI API key is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "Return only strict JSON."},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.2,
            "max_tokens": max_tokens,
        }
        start = time.perf_counter()
        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            raw = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamUnavailable(f"OpenAI request failed: {exc}") from exc

        logger.debug("Oracle answered in {:.1f}s using {}", time.perf_counter() - start, self.model)
        return self._extract_text_response(raw)

    def propose_target(self, context: OracleContext) -> str:
        return self._complete(build_target_prompt(context), max(128, settings.openai_max_output_tokens // 2))

    def propose_signals(self, context: OracleContext) -> str:
        return self._complete(build_signal_prompt(context), settings.openai_max_output_tokens)
