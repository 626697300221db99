from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from .completion import FALLBACK_REPLY, CompletionClient
from .history import HistoryStore
from .models import InboundStatus
from .whatsapp import MessageSender, SendResult, mask_recipient

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 12


@dataclass(frozen=True)
class InboundOutcome:
    status: InboundStatus
    reply: str | None = None
    send_result: SendResult | None = None


def build_business_context(facts: Mapping[str, str]) -> str:
    entries = [f"{name.replace('_', ' ')}: {value}" for name, value in facts.items()]
    if not entries:
        return ""
    return f"Business facts — {' | '.join(entries)}"


def build_prompt(message_text: str, facts: Mapping[str, str]) -> str:
    context = build_business_context(facts)
    if not context:
        return message_text
    return f"{context}\n\nUser: {message_text}"


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        store: HistoryStore,
        completion: CompletionClient,
        sender: MessageSender,
    ) -> None:
        self._store = store
        self._completion = completion
        self._sender = sender

    def handle(self, user_id: str, message_text: str, message_id: str | None = None) -> InboundOutcome:
        """Run one inbound message through the reply pipeline. Never raises."""
        try:
            if message_id and self._store.has_turn(message_id).value:
                logger.warning("duplicate message ignored: %s", message_id)
                return InboundOutcome(status="duplicate")

            self._store.append_turn(user_id, "user", message_text, message_id)
            history = self._store.recent_turns(user_id, HISTORY_WINDOW).value
            facts = self._store.business_facts.all().value
            prompt = build_prompt(message_text, facts)
            reply = self._completion.generate_reply(prompt, history).text
            self._store.append_turn(user_id, "assistant", reply)
            send_result = self._sender.send(user_id, reply)
        except Exception:
            logger.exception("error handling message from %s", mask_recipient(user_id))
            return InboundOutcome(status="failed", send_result=self._send_apology(user_id))

        return InboundOutcome(status="replied", reply=reply, send_result=send_result)

    def _send_apology(self, user_id: str) -> SendResult | None:
        try:
            return self._sender.send(user_id, FALLBACK_REPLY)
        except Exception:
            logger.exception("apology send to %s failed", mask_recipient(user_id))
            return None
