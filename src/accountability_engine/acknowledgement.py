from __future__ import annotations

from loguru import logger

from .errors import EngineError, NotFound
from .models import AckAction, AckOutcome
from .signal_store import SignalStore
from .telegram_client import Notifier, parse_callback_data


CALLBACK_REPLIES = {
    AckAction.ACK: "✅ Acknowledged",
    AckAction.SNOOZE: "⏰ Snoozed, will remind again",
    AckAction.DISMISS: "❌ Dismissed",
    AckAction.EXECUTE: "🚀 Marked executed",
}


class AcknowledgementHandler:
    def __init__(self, store: SignalStore, notifier: Notifier | None = None) -> None:
        self.store = store
        self.notifier = notifier

    def handle(
        self,
        signal_id: int,
        action: AckAction | str,
        actor: str = "api",
        note: str | None = None,
    ) -> AckOutcome:
        return self.store.acknowledge(signal_id, action, actor=actor, note=note)

    def handle_callback(self, callback_query: dict) -> AckOutcome | None:
        """Apply an inline-button tap; malformed or unknown callbacks are ignored."""
        callback_id = str(callback_query.get("id", ""))
        data = str(callback_query.get("data", ""))
        parsed = parse_callback_data(data)
        if parsed is None:
            logger.warning("Ignoring callback with unrecognised data {!r}", data)
            return None

        action, signal_id = parsed
        sender = callback_query.get("from") or {}
        actor = f"telegram:{sender.get('username') or sender.get('id') or 'unknown'}"
        try:
            outcome = self.handle(signal_id, action, actor=actor)
        except NotFound:
            logger.warning("Callback for unknown signal {} ignored", signal_id)
            self._answer(callback_id, "Signal not found")
            return None

        if outcome.applied:
            reply = CALLBACK_REPLIES[action]
        else:
            reply = f"Already {outcome.status.value.lower()}"
        self._answer(callback_id, reply)
        return outcome

    def _answer(self, callback_id: str, text: str) -> None:
        if self.notifier is None or not callback_id:
            return
        try:
            self.notifier.answer_callback(callback_id, text)
        except EngineError as exc:
            logger.warning("Could not answer callback {}: {}", callback_id, exc.message)
