from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from whatsapp_relay.history import (
    HistoryStore,
    InMemoryHistoryRepository,
    SqlAlchemyHistoryRepository,
    TurnRecord,
)
from whatsapp_relay.orchestrator import build_prompt


class _StepClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class _BrokenRepository(InMemoryHistoryRepository):
    def append_turn(self, record: TurnRecord) -> None:
        raise ConnectionError("sheet offline")

    def list_turns(self, user_id, *, after, limit):
        raise ConnectionError("sheet offline")

    def has_user_message(self, message_id: str) -> bool:
        raise ConnectionError("sheet offline")

    def list_settings(self) -> dict[str, str]:
        raise ConnectionError("sheet offline")


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request) -> HistoryStore:
    if request.param == "inmemory":
        repository = InMemoryHistoryRepository()
    else:
        repository = SqlAlchemyHistoryRepository("sqlite:///:memory:")
    history = HistoryStore(repository, clock=_StepClock())
    yield history
    history.close()


def test_has_turn_matches_user_message_ids_only(store: HistoryStore) -> None:
    store.append_turn("55501", "user", "hello", "wamid.1")
    store.append_turn("55501", "assistant", "hi there")

    assert store.has_turn("wamid.1").value is True
    assert store.has_turn("wamid.2").value is False


def test_has_turn_with_empty_id_is_false(store: HistoryStore) -> None:
    store.append_turn("55501", "user", "hello")

    assert store.has_turn("").value is False
    assert store.has_turn(None).value is False


def test_append_does_not_enforce_uniqueness(store: HistoryStore) -> None:
    store.append_turn("55501", "user", "hello", "wamid.1")
    store.append_turn("55501", "user", "hello again", "wamid.1")

    turns = store.recent_turns("55501", 10).value
    assert [turn.content for turn in turns] == ["hello", "hello again"]


def test_recent_turns_is_bounded_and_chronological(store: HistoryStore) -> None:
    for index in range(20):
        store.append_turn("55501", "user" if index % 2 == 0 else "assistant", f"turn {index}")
    store.append_turn("55502", "user", "someone else")

    result = store.recent_turns("55501", 12)

    assert result.ok
    assert len(result.value) == 12
    assert [turn.content for turn in result.value] == [f"turn {index}" for index in range(8, 20)]
    timestamps = [turn.timestamp for turn in result.value]
    assert timestamps == sorted(timestamps)
    assert all(turn.user_id == "55501" for turn in result.value)


def test_recent_turns_for_unknown_user_is_empty(store: HistoryStore) -> None:
    result = store.recent_turns("nobody", 5)

    assert result.ok
    assert result.value == []


def test_reset_hides_earlier_turns_for_every_window(store: HistoryStore) -> None:
    store.append_turn("55501", "user", "before 1")
    store.append_turn("55501", "assistant", "before 2")
    store.append_turn("55502", "user", "other user")

    reset = store.reset_conversation("55501")
    assert reset.ok
    assert reset.value is not None

    assert store.recent_turns("55501", 1).value == []
    assert store.recent_turns("55501", 100).value == []

    store.append_turn("55501", "user", "after")
    for limit in (1, 5, 100):
        assert [turn.content for turn in store.recent_turns("55501", limit).value] == ["after"]
    assert all(turn.timestamp > reset.value for turn in store.recent_turns("55501", 5).value)
    assert [turn.content for turn in store.recent_turns("55502", 5).value] == ["other user"]


def test_second_reset_advances_cutoff(store: HistoryStore) -> None:
    first = store.reset_conversation("55501")
    store.append_turn("55501", "user", "between resets")
    second = store.reset_conversation("55501")

    assert second.value > first.value
    assert store.reset_markers.cutoff("55501").value == second.value
    assert store.recent_turns("55501", 10).value == []


def test_settings_are_last_write_wins(store: HistoryStore) -> None:
    assert store.get_setting("biz:name").value is None

    store.set_setting("biz:name", "Acme")
    store.set_setting("biz:name", "Acme Ltd")
    store.set_setting("biz:opening_hours", "9to5")

    assert store.get_setting("biz:name").value == "Acme Ltd"
    assert store.all_settings().value == {"biz:name": "Acme Ltd", "biz:opening_hours": "9to5"}


def test_business_facts_keep_insertion_order_in_prompt(store: HistoryStore) -> None:
    store.set_setting("biz:name", "Acme")
    store.set_setting("biz:hours", "9to5")
    store.set_setting("biz:name", "Acme")

    facts = store.business_facts.all().value

    assert list(facts) == ["name", "hours"]
    assert build_prompt("Hi", facts) == "Business facts — name: Acme | hours: 9to5\n\nUser: Hi"


def test_settings_update_keeps_first_write_position(store: HistoryStore) -> None:
    store.set_setting("zeta", "1")
    store.set_setting("alpha", "2")
    store.set_setting("zeta", "3")

    assert list(store.all_settings().value.items()) == [("zeta", "3"), ("alpha", "2")]


def test_business_facts_view_strips_prefix_and_ignores_reset_markers(store: HistoryStore) -> None:
    store.business_facts.set("name", "Acme")
    store.reset_conversation("55501")
    store.set_setting("unrelated", "x")

    assert store.business_facts.all().value == {"name": "Acme"}


def test_unparseable_reset_marker_is_ignored(store: HistoryStore) -> None:
    store.append_turn("55501", "user", "kept")
    store.set_setting("reset:55501", "not-a-date")

    assert [turn.content for turn in store.recent_turns("55501", 5).value] == ["kept"]


def test_storage_failures_degrade_to_safe_defaults() -> None:
    store = HistoryStore(_BrokenRepository())

    appended = store.append_turn("55501", "user", "hello", "wamid.1")
    assert appended.status == "failed"
    assert appended.value is None
    assert appended.error_code == "append_turn_failed"

    assert store.has_turn("wamid.1").value is False
    assert store.recent_turns("55501", 12).value == []
    assert store.all_settings().value == {}
    assert store.business_facts.all().status == "failed"


def test_unreadable_reset_marker_hides_history() -> None:
    class _SettingsDown(InMemoryHistoryRepository):
        def get_setting(self, key: str) -> str | None:
            raise TimeoutError("settings tab unavailable")

    repository = _SettingsDown()
    store = HistoryStore(repository)
    store.append_turn("55501", "user", "maybe reset")

    result = store.recent_turns("55501", 12)

    assert result.status == "failed"
    assert result.value == []


def test_store_without_repository_is_disabled() -> None:
    store = HistoryStore(None)

    assert store.enabled is False
    assert store.append_turn("55501", "user", "hello").status == "disabled"
    assert store.has_turn("wamid.1").value is False
    assert store.recent_turns("55501", 12).value == []
    assert store.get_setting("biz:name").value is None
    reset = store.reset_conversation("55501")
    assert reset.status == "disabled"
    assert reset.value is None
