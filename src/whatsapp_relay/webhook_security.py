from __future__ import annotations

import hashlib
import hmac
from typing import Literal, Mapping

from .config import Settings

ChallengeOutcome = Literal["verified", "forbidden", "incomplete"]


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def check_subscription_challenge(*, settings: Settings, mode: str | None, token: str | None) -> ChallengeOutcome:
    if not mode or not token:
        return "incomplete"
    expected = settings.whatsapp_verify_token
    if mode == "subscribe" and expected and hmac.compare_digest(expected, token.strip()):
        return "verified"
    return "forbidden"


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.whatsapp_signature_mode == "off":
        return WebhookVerification(verified=True)

    app_secret = settings.whatsapp_app_secret.strip()
    if not app_secret:
        return WebhookVerification(verified=False, reason="whatsapp_app_secret_missing")

    provided = _normalize_header_value(headers, "X-Hub-Signature-256")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]

    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided.lower()):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)
