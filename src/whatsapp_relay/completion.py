from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from openai import OpenAI, OpenAIError

from .history import TurnRecord
from .models import CompletionStatus

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = "You are a helpful WhatsApp assistant. Keep replies short and clear."
FALLBACK_REPLY = "Sorry, I could not process your request."
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class CompletionResult:
    status: CompletionStatus
    text: str
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class CompletionClient(Protocol):
    def generate_reply(self, prompt: str, history: Sequence[TurnRecord] | None = None) -> CompletionResult: ...

    def close(self) -> None: ...


def build_messages(prompt: str, history: Sequence[TurnRecord] | None = None) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_INSTRUCTION}]
    for turn in history or ():
        messages.append({"role": turn.role, "content": turn.content})
    messages.append({"role": "user", "content": prompt})
    return messages


def _fallback(error_code: str) -> CompletionResult:
    return CompletionResult(status="fallback", text=FALLBACK_REPLY, error_code=error_code)


class OpenAICompletionClient:
    """Chat completion client; a single attempt per call, never raises."""

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        base_url: str = "",
        timeout_seconds: int = 60,
        client: OpenAI | None = None,
    ) -> None:
        if client is None:
            stripped_key = api_key.strip()
            if not stripped_key:
                raise ValueError("api_key must not be empty")
            client = OpenAI(
                api_key=stripped_key,
                base_url=base_url.strip() or None,
                timeout=timeout_seconds,
                max_retries=0,
            )
        self._client = client
        self._model = model.strip() or DEFAULT_MODEL

    def generate_reply(self, prompt: str, history: Sequence[TurnRecord] | None = None) -> CompletionResult:
        try:
            completion = self._client.chat.completions.create(
                model=self._model,
                messages=build_messages(prompt, history),
            )
        except OpenAIError as exc:
            logger.error("completion request failed: %s", exc)
            return _fallback(type(exc).__name__)
        except Exception:
            logger.exception("completion request failed unexpectedly")
            return _fallback("unexpected_error")

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            logger.error("completion response was malformed: %r", completion)
            return _fallback("malformed_response")

        text = (content or "").strip()
        if not text:
            logger.warning("completion response had no content")
            return _fallback("empty_response")
        return CompletionResult(status="ok", text=text)

    def close(self) -> None:
        self._client.close()


class DisabledCompletionClient:
    def generate_reply(self, prompt: str, history: Sequence[TurnRecord] | None = None) -> CompletionResult:
        logger.warning("OPENAI_API_KEY is not set; replying with fallback text")
        return _fallback("completion_disabled")

    def close(self) -> None:
        return None
