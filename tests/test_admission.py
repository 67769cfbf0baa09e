from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from accountability_engine.admission import (
    SignalCandidate,
    extract_json,
    parse_candidates,
    parse_target_proposal,
)
from accountability_engine.models import Side, TriggerType


def test_extract_json_strips_fences_and_prose() -> None:
    raw = 'Here you go:\n```json\n{"signals": []}\n```\nGood luck!'
    assert extract_json(raw) == {"signals": []}
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_camel_case_candidate_is_normalised() -> None:
    candidate = SignalCandidate.model_validate(
        {
            "symbol": " reliance ",
            "exchange": None,
            "side": "buy",
            "quantity": 10,
            "triggerType": "limit",
            "triggerPrice": 52.5,
            "confidence": 80,
            "rationale": "Support at 52",
        }
    )
    assert candidate.symbol == "RELIANCE"
    assert candidate.exchange == "NSE"
    assert candidate.side == Side.BUY
    assert candidate.trigger_type == TriggerType.LIMIT
    assert candidate.trigger_price == 52.5


def test_market_candidate_drops_prices() -> None:
    candidate = SignalCandidate.model_validate(
        {"symbol": "INFY", "side": "SELL", "quantity": 5, "triggerType": None, "triggerPrice": 1500}
    )
    assert candidate.trigger_type == TriggerType.MARKET
    assert candidate.trigger_price is None
    assert candidate.confidence == 50


@pytest.mark.parametrize(
    "item",
    [
        {"symbol": "TCS", "side": "BUY", "quantity": 0},
        {"symbol": "TCS", "side": "BUY", "quantity": -3},
        {"symbol": "TCS", "side": "HOLD", "quantity": 1},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "confidence": 140},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "confidence": -1},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "LIMIT"},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "ZONE", "triggerLow": 10},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "ZONE", "triggerLow": 12, "triggerHigh": 10},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "LIMIT", "triggerPrice": float("nan")},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "LIMIT", "triggerPrice": float("inf")},
        {"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "ZONE", "triggerLow": 10,
         "triggerHigh": float("inf")},
        {"symbol": "", "side": "BUY", "quantity": 1},
    ],
)
def test_invalid_candidates_are_rejected(item: dict) -> None:
    with pytest.raises(ValidationError):
        SignalCandidate.model_validate(item)


def test_parse_candidates_keeps_valid_and_reports_rejections() -> None:
    raw = "```json\n" + json.dumps(
        {
            "signals": [
                {"symbol": "RELIANCE", "side": "SELL", "quantity": 50, "triggerType": "LIMIT", "triggerPrice": 55},
                {"symbol": "TCS", "side": "BUY", "quantity": 0},
                "not an object",
                {"symbol": "HDFCBANK", "side": "BUY", "quantity": 2, "triggerType": "ZONE",
                 "triggerLow": 1600, "triggerHigh": 1620, "confidence": 65},
            ]
        }
    ) + "\n```"
    parsed = parse_candidates(raw)
    assert [c.symbol for c in parsed.candidates] == ["RELIANCE", "HDFCBANK"]
    assert [(r.index, r.symbol) for r in parsed.rejections] == [(1, "TCS"), (2, None)]
    assert "quantity" in parsed.rejections[0].reason


def test_parse_candidates_accepts_bare_list() -> None:
    parsed = parse_candidates('[{"symbol": "INFY", "side": "BUY", "quantity": 1}]')
    assert len(parsed.candidates) == 1


@pytest.mark.parametrize("raw", [None, "", "I could not find any trades today.", '{"signals": "none"}'])
def test_unusable_signal_response_means_zero_candidates(raw) -> None:
    parsed = parse_candidates(raw)
    assert parsed.candidates == []


def test_parse_target_proposal_reads_original_keys() -> None:
    proposal = parse_target_proposal('{"aiTarget": 450.5, "aiRationale": "Calm market", "aiConfidence": 64}')
    assert proposal is not None
    assert proposal.target == 450.5
    assert proposal.rationale == "Calm market"
    assert proposal.confidence == 64


def test_parse_target_proposal_defaults() -> None:
    proposal = parse_target_proposal('{"target": 300}')
    assert proposal is not None
    assert proposal.confidence == 50
    assert proposal.rationale == "AI analysis completed."


@pytest.mark.parametrize(
    "raw",
    ['{"aiTarget": -10}', '{"aiTarget": "lots"}', '{"aiTarget": 100, "aiConfidence": 250}', "[1, 2]", "nonsense"],
)
def test_bad_target_proposals_are_dropped(raw: str) -> None:
    assert parse_target_proposal(raw) is None


def test_non_finite_prices_in_oracle_text_are_rejected() -> None:
    raw = (
        '{"signals": ['
        '{"symbol": "TCS", "side": "BUY", "quantity": 1, "triggerType": "LIMIT", "triggerPrice": NaN},'
        '{"symbol": "INFY", "side": "BUY", "quantity": 1, "triggerType": "LIMIT", "triggerPrice": Infinity},'
        '{"symbol": "WIPRO", "side": "BUY", "quantity": 2}'
        "]}"
    )
    parsed = parse_candidates(raw)
    assert [c.symbol for c in parsed.candidates] == ["WIPRO"]
    assert [r.symbol for r in parsed.rejections] == ["TCS", "INFY"]
