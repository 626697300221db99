from __future__ import annotations

import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .models import SendFailureKind, SendStatus

logger = logging.getLogger(__name__)

_RATE_LIMIT_CODES = {4, 80007, 130429, 131048, 131056}
_PERMISSION_CODES = {3, 10, 131030, 131031}
_NON_DIGIT_RE = re.compile(r"[^0-9]")

SEND_FAILURE_HINTS: dict[SendFailureKind, str] = {
    "auth_expired": (
        "WHATSAPP_API_KEY is invalid or expired. Refresh the token in Meta Developer and update the env."
    ),
    "permission_denied": (
        "The token lacks whatsapp_business_messaging permission or the app is in development mode; "
        "add the recipient to the allowed test numbers or switch the app to live mode."
    ),
    "phone_number_id_mismatch": (
        "WHATSAPP_PHONE_NUMBER_ID does not exist or does not belong to the business account of this token."
    ),
    "invalid_parameters": (
        "The Graph API rejected the request parameters; check the recipient number and WHATSAPP_API_VERSION."
    ),
    "rate_limited": "WhatsApp rate limit reached; messages will fail until the window resets.",
    "connection_error": "Could not reach the Graph API; check network egress and WHATSAPP_API_BASE_URL.",
    "timeout": "The Graph API did not answer in time; consider raising WHATSAPP_TIMEOUT_SECONDS.",
    "unknown": "Unexpected WhatsApp send failure; inspect the error message above.",
}


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    attempted_at: datetime
    recipient: str
    provider_message_id: str | None = None
    error_code: str | None = None
    failure_kind: SendFailureKind | None = None
    hint: str | None = None


class MessageSender(Protocol):
    def send(self, recipient: str, text: str) -> SendResult: ...


def normalize_recipient(recipient: str) -> str:
    return _NON_DIGIT_RE.sub("", recipient)


def mask_recipient(recipient: str) -> str:
    digits = normalize_recipient(recipient)
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"


def classify_send_failure(
    *,
    status: int | None,
    code: int | None = None,
    subcode: int | None = None,
) -> SendFailureKind:
    if status == 401 or code == 190:
        return "auth_expired"
    if status == 429 or code in _RATE_LIMIT_CODES:
        return "rate_limited"
    if code in _PERMISSION_CODES or (code is not None and 200 <= code <= 299) or status == 403:
        return "permission_denied"
    if status == 404 or (code == 100 and subcode == 33):
        return "phone_number_id_mismatch"
    if status == 400 or code in {100, 131008, 131009}:
        return "invalid_parameters"
    return "unknown"


class _WhatsAppSendError(Exception):
    """Internal error raised when a Graph API request fails."""

    def __init__(
        self,
        kind: SendFailureKind,
        message: str,
        *,
        status: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.code = code

    @property
    def error_code(self) -> str:
        if self.status is not None:
            return f"http_{self.status}"
        return self.kind


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class WhatsAppCloudSender:
    """Delivers text messages through the WhatsApp Cloud API.

    Failures are classified, logged with a remediation hint and returned as a
    ``failed`` result; nothing is raised to the caller. When any credential is
    missing every send is skipped with a warning.
    """

    def __init__(
        self,
        *,
        api_key: str,
        api_version: str,
        phone_number_id: str,
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: int = 30,
    ) -> None:
        self._api_key = api_key.strip()
        self._api_version = api_version.strip()
        self._phone_number_id = phone_number_id.strip()
        self._base_url = base_url.strip().rstrip("/") or "https://graph.facebook.com"
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._api_version and self._phone_number_id)

    def send(self, recipient: str, text: str) -> SendResult:
        attempted_at = datetime.now(timezone.utc)
        to = normalize_recipient(recipient)
        if not to:
            logger.warning("recipient %r has no digits; WhatsApp send skipped", recipient)
            return SendResult(
                status="skipped",
                attempted_at=attempted_at,
                recipient="",
                error_code="invalid_recipient",
            )

        if not self.configured:
            logger.warning("missing WhatsApp API env vars; skipping send to %s", mask_recipient(to))
            return SendResult(
                status="skipped",
                attempted_at=attempted_at,
                recipient=to,
                error_code="whatsapp_disabled",
            )

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            response_data = self._post(payload)
        except _WhatsAppSendError as exc:
            hint = SEND_FAILURE_HINTS[exc.kind]
            logger.error(
                "WhatsApp send to %s failed (%s): %s",
                mask_recipient(to),
                exc.status if exc.status is not None else "no-status",
                exc.message,
            )
            logger.warning("WhatsApp send hint [%s]: %s", exc.kind, hint)
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                recipient=to,
                error_code=exc.error_code,
                failure_kind=exc.kind,
                hint=hint,
            )

        messages = response_data.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        logger.info("WhatsApp send ok to %s", mask_recipient(to))
        return SendResult(
            status="sent",
            attempted_at=attempted_at,
            recipient=to,
            provider_message_id=message_id,
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/{self._api_version}/{self._phone_number_id}/messages"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error = self._error_payload(exc)
            code = _as_int(error.get("code"))
            subcode = _as_int(error.get("error_subcode"))
            raise _WhatsAppSendError(
                classify_send_failure(status=exc.code, code=code, subcode=subcode),
                str(error.get("message") or f"HTTP {exc.code}: {exc.reason}"),
                status=exc.code,
                code=code,
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _WhatsAppSendError("timeout", f"Request timed out: {exc.reason}") from exc
            raise _WhatsAppSendError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _WhatsAppSendError("timeout", f"Request timed out: {exc}") from exc

        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_payload(exc: urllib.error.HTTPError) -> dict[str, Any]:
        try:
            raw = exc.read()
        except (OSError, AttributeError):
            return {}
        if not raw:
            return {}
        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except json.JSONDecodeError:
            return {}
        error = data.get("error") if isinstance(data, dict) else None
        return error if isinstance(error, dict) else {}
