from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

TurnRole = Literal["user", "assistant"]
StoreResultStatus = Literal["ok", "failed", "disabled"]
CompletionStatus = Literal["ok", "fallback"]
SendStatus = Literal["sent", "failed", "skipped"]
InboundStatus = Literal["replied", "duplicate", "failed"]
SendFailureKind = Literal[
    "auth_expired",
    "permission_denied",
    "phone_number_id_mismatch",
    "invalid_parameters",
    "rate_limited",
    "connection_error",
    "timeout",
    "unknown",
]


class WebhookAckResponse(BaseModel):
    received: bool = True


class WhatsAppHealth(BaseModel):
    has_api_key: bool
    has_version: bool
    has_phone_id: bool
    has_verify_token: bool


class OpenAIHealth(BaseModel):
    has_key: bool


class GoogleSheetsHealth(BaseModel):
    has_creds: bool
    has_sheet_id: bool


class HealthResponse(BaseModel):
    whatsapp: WhatsAppHealth
    openai: OpenAIHealth
    google_sheets: GoogleSheetsHealth
    history_store_backend: str
    history_store_enabled: bool


class SendTestRequest(BaseModel):
    to: str = Field(min_length=1, max_length=64)
    text: str | None = Field(default=None, max_length=4096)

    @field_validator("to")
    @classmethod
    def _normalize_to(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("to cannot be blank")
        return normalized

    @field_validator("text")
    @classmethod
    def _normalize_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class SendResultResponse(BaseModel):
    status: SendStatus
    recipient: str
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    hint: str | None = None


class TurnItem(BaseModel):
    timestamp: datetime
    role: TurnRole
    content: str
    message_id: str | None = None


class ConversationHistoryResponse(BaseModel):
    user_id: str
    reset_at: datetime | None = None
    turns: list[TurnItem]


class ConversationResetResponse(BaseModel):
    user_id: str
    reset: bool
    reset_at: datetime | None = None


class BusinessFactUpsertRequest(BaseModel):
    value: str = Field(min_length=1, max_length=2000)

    @field_validator("value")
    @classmethod
    def _normalize_value(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value cannot be blank")
        return normalized


class BusinessFactsResponse(BaseModel):
    facts: dict[str, str]
