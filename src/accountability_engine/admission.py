"""Parse-and-validate boundary for recommendation oracle output.

The oracle answers with free-form text that is supposed to contain JSON. Nothing
it says reaches the signal store or the target ledger before passing through
the pydantic models below; malformed items are dropped with a reason.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import Side, TriggerType
from .target_ledger import TargetProposal


_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class SignalCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    symbol: str = Field(..., min_length=1, max_length=32)
    exchange: str = Field(default="NSE", min_length=1, max_length=16)
    side: Side
    quantity: int = Field(..., gt=0)
    trigger_type: TriggerType = Field(
        default=TriggerType.MARKET, validation_alias=AliasChoices("trigger_type", "triggerType")
    )
    trigger_price: float | None = Field(
        default=None, allow_inf_nan=False, validation_alias=AliasChoices("trigger_price", "triggerPrice")
    )
    trigger_low: float | None = Field(
        default=None, allow_inf_nan=False, validation_alias=AliasChoices("trigger_low", "triggerLow")
    )
    trigger_high: float | None = Field(
        default=None, allow_inf_nan=False, validation_alias=AliasChoices("trigger_high", "triggerHigh")
    )
    confidence: int = Field(default=50, ge=0, le=100)
    rationale: str | None = Field(default=None, max_length=2000)

    @field_validator("symbol", "side", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _default_trigger(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return TriggerType.MARKET
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("exchange", mode="before")
    @classmethod
    def _default_exchange(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "NSE"
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_trigger(self) -> "SignalCandidate":
        if self.trigger_type == TriggerType.MARKET:
            self.trigger_price = None
            self.trigger_low = None
            self.trigger_high = None
        elif self.trigger_type == TriggerType.LIMIT:
            if self.trigger_price is None or self.trigger_price <= 0:
                raise ValueError("LIMIT signals need a positive trigger_price")
            self.trigger_low = None
            self.trigger_high = None
        else:
            if self.trigger_low is None or self.trigger_high is None:
                raise ValueError("ZONE signals need trigger_low and trigger_high")
            if self.trigger_low <= 0 or self.trigger_low > self.trigger_high:
                raise ValueError("ZONE needs 0 < trigger_low <= trigger_high")
            self.trigger_price = None
        return self


class _TargetPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    target: float = Field(..., ge=0, allow_inf_nan=False, validation_alias=AliasChoices("target", "aiTarget"))
    rationale: str = Field(
        default="AI analysis completed.", max_length=2000, validation_alias=AliasChoices("rationale", "aiRationale")
    )
    confidence: int = Field(default=50, ge=0, le=100, validation_alias=AliasChoices("confidence", "aiConfidence"))


@dataclass
class Rejection:
    index: int
    symbol: str | None
    reason: str

    def as_dict(self) -> dict:
        return {"index": self.index, "symbol": self.symbol, "reason": self.reason}


@dataclass
class ParsedSignals:
    candidates: list[SignalCandidate] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)


def extract_json(raw: Any) -> Any:
    """Decode oracle output, tolerating markdown fences and surrounding prose."""
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    text = _FENCE_RE.sub("", str(raw)).replace("```", "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                continue
    return None


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid candidate"
    err = errors[0]
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = str(err.get("msg", "invalid"))
    return f"{location}: {message}" if location else message


def parse_candidates(raw: Any) -> ParsedSignals:
    parsed = ParsedSignals()
    payload = extract_json(raw)
    if payload is None:
        if raw:
            logger.warning("Oracle signal response was not valid JSON; treating as zero candidates")
        return parsed

    items = payload.get("signals", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        logger.warning("Oracle signal response has no signal list; treating as zero candidates")
        return parsed

    for index, item in enumerate(items):
        symbol = item.get("symbol") if isinstance(item, dict) else None
        if not isinstance(item, dict):
            parsed.rejections.append(Rejection(index, None, "candidate is not an object"))
            continue
        try:
            parsed.candidates.append(SignalCandidate.model_validate(item))
        except ValidationError as exc:
            reason = _first_error(exc)
            parsed.rejections.append(Rejection(index, str(symbol) if symbol else None, reason))
            logger.info("Rejected oracle candidate #{} ({}): {}", index, symbol, reason)
    return parsed


def parse_target_proposal(raw: Any) -> TargetProposal | None:
    payload = extract_json(raw)
    if not isinstance(payload, dict):
        logger.warning("Oracle target response was not a JSON object")
        return None
    try:
        model = _TargetPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Rejected oracle target proposal: {}", _first_error(exc))
        return None
    return TargetProposal(target=model.target, rationale=model.rationale, confidence=model.confidence)
