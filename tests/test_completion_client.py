from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from whatsapp_relay.completion import (
    FALLBACK_REPLY,
    SYSTEM_INSTRUCTION,
    DisabledCompletionClient,
    OpenAICompletionClient,
)
from whatsapp_relay.history import TurnRecord


def _completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client_returning(value=None, *, side_effect=None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.return_value = value
    client.chat.completions.create.side_effect = side_effect
    return client


def _history() -> list[TurnRecord]:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    return [
        TurnRecord(timestamp=now, user_id="55501", role="user", content="Hi", message_id="wamid.0"),
        TurnRecord(timestamp=now, user_id="55501", role="assistant", content="Hello!"),
    ]


def test_generate_reply_sends_system_history_then_prompt() -> None:
    client = _client_returning(_completion("  We open at 9.  "))
    completion = OpenAICompletionClient(client=client, model="gpt-4o-mini")

    result = completion.generate_reply("What are your hours?", _history())

    assert result.ok
    assert result.text == "We open at 9."
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["messages"] == [
        {"role": "system", "content": SYSTEM_INSTRUCTION},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "What are your hours?"},
    ]


def test_generate_reply_without_history_sends_system_and_prompt_only() -> None:
    client = _client_returning(_completion("ok"))
    completion = OpenAICompletionClient(client=client)

    completion.generate_reply("Hi")

    messages = client.chat.completions.create.call_args.kwargs["messages"]
    assert [message["role"] for message in messages] == ["system", "user"]


def test_generate_reply_falls_back_on_api_error() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client = _client_returning(side_effect=openai.APIConnectionError(request=request))
    completion = OpenAICompletionClient(client=client)

    result = completion.generate_reply("Hi")

    assert result.status == "fallback"
    assert result.text == FALLBACK_REPLY
    assert result.error_code == "APIConnectionError"
    client.chat.completions.create.assert_called_once()


def test_generate_reply_falls_back_on_unexpected_error() -> None:
    client = _client_returning(side_effect=RuntimeError("boom"))
    completion = OpenAICompletionClient(client=client)

    result = completion.generate_reply("Hi")

    assert result.text == FALLBACK_REPLY
    assert result.error_code == "unexpected_error"


@pytest.mark.parametrize(
    ("response", "error_code"),
    [
        (_completion(None), "empty_response"),
        (_completion("   "), "empty_response"),
        (SimpleNamespace(choices=[]), "malformed_response"),
    ],
)
def test_generate_reply_falls_back_on_unusable_response(response, error_code: str) -> None:
    completion = OpenAICompletionClient(client=_client_returning(response))

    result = completion.generate_reply("Hi")

    assert result.text == FALLBACK_REPLY
    assert result.error_code == error_code


def test_empty_api_key_is_rejected_without_client() -> None:
    with pytest.raises(ValueError, match="api_key must not be empty"):
        OpenAICompletionClient(api_key=" ")


def test_disabled_client_always_returns_fallback() -> None:
    result = DisabledCompletionClient().generate_reply("Hi", _history())

    assert result.status == "fallback"
    assert result.text == FALLBACK_REPLY
    assert result.error_code == "completion_disabled"
