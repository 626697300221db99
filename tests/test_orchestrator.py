from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from whatsapp_relay.completion import FALLBACK_REPLY, CompletionResult
from whatsapp_relay.history import HistoryStore, InMemoryHistoryRepository, TurnRecord
from whatsapp_relay.orchestrator import (
    HISTORY_WINDOW,
    ConversationOrchestrator,
    build_business_context,
    build_prompt,
)
from whatsapp_relay.whatsapp import SendResult


class _FakeCompletion:
    def __init__(self, reply: str = "We are open 9 to 5.", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, list[TurnRecord]]] = []

    def generate_reply(self, prompt: str, history: Sequence[TurnRecord] | None = None) -> CompletionResult:
        self.calls.append((prompt, list(history or [])))
        if self.error is not None:
            raise self.error
        return CompletionResult(status="ok", text=self.reply)

    def close(self) -> None:
        return None


class _FakeSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, recipient: str, text: str) -> SendResult:
        self.sent.append((recipient, text))
        return SendResult(status="sent", attempted_at=datetime.now(timezone.utc), recipient=recipient)


def _orchestrator(
    store: HistoryStore | None = None,
    completion: _FakeCompletion | None = None,
) -> tuple[ConversationOrchestrator, HistoryStore, _FakeCompletion, _FakeSender]:
    store = store or HistoryStore(InMemoryHistoryRepository())
    completion = completion or _FakeCompletion()
    sender = _FakeSender()
    return ConversationOrchestrator(store=store, completion=completion, sender=sender), store, completion, sender


def test_business_context_lists_facts_in_order() -> None:
    facts = {"name": "Acme", "hours": "9to5"}

    assert build_prompt("Hi", facts) == "Business facts — name: Acme | hours: 9to5\n\nUser: Hi"


def test_prompt_without_facts_is_raw_text() -> None:
    assert build_business_context({}) == ""
    assert build_prompt("Hi", {}) == "Hi"


def test_fact_names_are_shown_with_spaces() -> None:
    assert build_business_context({"opening_hours": "9 to 5"}) == "Business facts — opening hours: 9 to 5"


def test_handle_end_to_end() -> None:
    orchestrator, store, completion, sender = _orchestrator()
    store.business_facts.set("hours", "9to5")

    outcome = orchestrator.handle("55501", "What are your hours?", "wamid.1")

    assert outcome.status == "replied"
    assert outcome.reply == "We are open 9 to 5."
    turns = store.recent_turns("55501", HISTORY_WINDOW).value
    assert [(turn.role, turn.content, turn.message_id) for turn in turns] == [
        ("user", "What are your hours?", "wamid.1"),
        ("assistant", "We are open 9 to 5.", None),
    ]
    prompt, history = completion.calls[0]
    assert prompt == "Business facts — hours: 9to5\n\nUser: What are your hours?"
    assert [(turn.role, turn.content) for turn in history] == [("user", "What are your hours?")]
    assert sender.sent == [("55501", "We are open 9 to 5.")]


def test_duplicate_message_has_no_side_effects() -> None:
    orchestrator, store, completion, sender = _orchestrator()
    orchestrator.handle("55501", "hello", "wamid.1")

    outcome = orchestrator.handle("55501", "hello", "wamid.1")

    assert outcome.status == "duplicate"
    assert len(store.recent_turns("55501", 50).value) == 2
    assert len(completion.calls) == 1
    assert len(sender.sent) == 1


def test_message_without_id_is_never_deduplicated() -> None:
    orchestrator, store, _, sender = _orchestrator()

    orchestrator.handle("55501", "hello")
    orchestrator.handle("55501", "hello")

    assert len(sender.sent) == 2
    assert len(store.recent_turns("55501", 50).value) == 4


def test_history_window_is_bounded() -> None:
    orchestrator, store, completion, _ = _orchestrator()
    for index in range(30):
        store.append_turn("55501", "user", f"old {index}")

    orchestrator.handle("55501", "latest", "wamid.9")

    _, history = completion.calls[0]
    assert len(history) == HISTORY_WINDOW
    assert history[-1].content == "latest"


def test_pipeline_failure_sends_apology() -> None:
    completion = _FakeCompletion(error=RuntimeError("model exploded"))
    orchestrator, store, _, sender = _orchestrator(completion=completion)

    outcome = orchestrator.handle("55501", "hello", "wamid.1")

    assert outcome.status == "failed"
    assert sender.sent == [("55501", FALLBACK_REPLY)]
    assert [turn.role for turn in store.recent_turns("55501", 10).value] == ["user"]


def test_apology_send_failure_is_absorbed() -> None:
    class _ExplodingSender(_FakeSender):
        def send(self, recipient: str, text: str) -> SendResult:
            raise ConnectionError("graph down")

    store = HistoryStore(InMemoryHistoryRepository())
    orchestrator = ConversationOrchestrator(store=store, completion=_FakeCompletion(), sender=_ExplodingSender())

    outcome = orchestrator.handle("55501", "hello", "wamid.1")

    assert outcome.status == "failed"
    assert outcome.send_result is None


def test_disabled_store_still_replies() -> None:
    orchestrator, _, completion, sender = _orchestrator(store=HistoryStore(None))

    outcome = orchestrator.handle("55501", "Hi", "wamid.1")

    assert outcome.status == "replied"
    assert completion.calls == [("Hi", [])]
    assert sender.sent == [("55501", "We are open 9 to 5.")]
