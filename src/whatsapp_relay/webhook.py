from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    sender_name: str | None
    text: str
    message_id: str | None


def _first(value: Any) -> dict[str, Any] | None:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return None


def _dig(source: dict[str, Any], *keys: str) -> Any:
    current: Any = source
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _message_text(message: dict[str, Any]) -> str:
    for path in (
        ("text", "body"),
        ("button", "text"),
        ("interactive", "button_reply", "title"),
        ("interactive", "list_reply", "title"),
    ):
        value = _dig(message, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_inbound_message(payload: Any) -> InboundMessage | None:
    """Pull the first contact and message out of a WhatsApp Cloud API delivery.

    Returns ``None`` for deliveries without a sender or message, such as
    delivery-status callbacks.
    """
    if not isinstance(payload, dict):
        return None
    entry = _first(payload.get("entry"))
    if entry is None:
        return None
    change = _first(entry.get("changes"))
    value = change.get("value") if change else None
    if not isinstance(value, dict):
        return None
    contact = _first(value.get("contacts"))
    message = _first(value.get("messages"))
    if contact is None or message is None:
        return None

    sender = str(contact.get("wa_id") or message.get("from") or "").strip()
    if not sender:
        return None
    sender_name = _dig(contact, "profile", "name")
    message_id = message.get("id") or _dig(message, "key", "id")
    return InboundMessage(
        sender=sender,
        sender_name=sender_name if isinstance(sender_name, str) else None,
        text=_message_text(message),
        message_id=str(message_id) if message_id else None,
    )
