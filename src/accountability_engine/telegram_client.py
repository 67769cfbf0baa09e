from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import requests
from loguru import logger

from .errors import UpstreamUnavailable
from .models import NOTIFICATION_ACTIONS, AckAction
from .settings import settings


BUTTON_LABELS = {
    AckAction.ACK: "✅ ACK",
    AckAction.SNOOZE: "⏰ Snooze",
    AckAction.DISMISS: "❌ Dismiss",
    AckAction.EXECUTE: "🚀 Executed",
}

CALLBACK_PREFIX = "sig"


@dataclass
class DeliveryRequest:
    chat_id: str
    signal_id: int
    text: str
    actions: tuple[AckAction, ...] = field(default=NOTIFICATION_ACTIONS)


class Notifier(Protocol):
    def deliver(self, request: DeliveryRequest) -> None: ...

    def answer_callback(self, callback_id: str, text: str) -> None: ...


def callback_data(action: AckAction, signal_id: int) -> str:
    return f"{CALLBACK_PREFIX}_{action.value.lower()}_{signal_id}"


def parse_callback_data(data: str) -> tuple[AckAction, int] | None:
    """``sig_ack_12`` -> (AckAction.ACK, 12); anything else -> None."""
    parts = (data or "").split("_")
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
        return None
    try:
        return AckAction(parts[1].upper()), int(parts[2])
    except ValueError:
        return None


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str | None = None,
        api_base_url: str | None = None,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.bot_token = (bot_token if bot_token is not None else settings.telegram_bot_token).strip()
        self.api_base_url = (api_base_url or settings.telegram_api_base_url).rstrip("/")
        self.timeout = timeout_seconds or settings.delivery_timeout_seconds
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def _call(self, method: str, payload: dict) -> dict:
        if not self.is_configured():
            raise UpstreamUnavailable("Telegram bot token is not configured")
        url = f"{self.api_base_url}/bot{self.bot_token}/{method}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Telegram {method} failed: {exc}") from exc
        if not response.ok:
            raise UpstreamUnavailable(f"Telegram {method} returned {response.status_code}: {response.text[:200]}")
        body = response.json() or {}
        if not body.get("ok", False):
            raise UpstreamUnavailable(f"Telegram {method} rejected: {body.get('description', 'unknown error')}")
        return body

    def deliver(self, request: DeliveryRequest) -> None:
        keyboard = [
            [
                {"text": BUTTON_LABELS[action], "callback_data": callback_data(action, request.signal_id)}
                for action in request.actions
            ]
        ]
        self._call(
            "sendMessage",
            {
                "chat_id": request.chat_id,
                "text": request.text,
                "parse_mode": "Markdown",
                "reply_markup": {"inline_keyboard": keyboard},
            },
        )
        logger.debug("Delivered signal {} to chat {}", request.signal_id, request.chat_id)

    def answer_callback(self, callback_id: str, text: str) -> None:
        self._call("answerCallbackQuery", {"callback_query_id": callback_id, "text": text})
