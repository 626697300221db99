from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "WhatsApp Relay"
    api_prefix: str = "/whatsapp"
    log_level: str = "INFO"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""
    openai_timeout_seconds: int = 60
    whatsapp_api_key: str = ""
    whatsapp_api_version: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_timeout_seconds: int = 30
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_signature_mode: str = "log_only"
    history_store_backend: str = "sheets"
    google_sheets_id: str = ""
    google_service_account_path: str = ""
    google_service_account: str = ""
    database_url: str = ""
    admin_api_token: str = ""
    runtime_secret_guard_mode: str = "warn"
    docs_enabled: bool = True


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RELAY_APP_NAME", "WhatsApp Relay"),
        api_prefix=os.getenv("RELAY_API_PREFIX", "/whatsapp"),
        log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_base_url=os.getenv("OPENAI_BASE_URL", ""),
        openai_timeout_seconds=_as_int(os.getenv("OPENAI_TIMEOUT_SECONDS"), 60),
        whatsapp_api_key=os.getenv("WHATSAPP_API_KEY", ""),
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com"),
        whatsapp_timeout_seconds=_as_int(os.getenv("WHATSAPP_TIMEOUT_SECONDS"), 30),
        # Older deployments used the misspelled challenge key name.
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", os.getenv("WHATSAPP_CHALLANGE_KEY", "")).strip(),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_signature_mode=_normalize_mode(
            os.getenv("WHATSAPP_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        history_store_backend=_normalize_mode(
            os.getenv("HISTORY_STORE_BACKEND"),
            default="sheets",
            allowed={"sheets", "postgres", "inmemory"},
        ),
        google_sheets_id=os.getenv("GOOGLE_SHEETS_ID", ""),
        google_service_account_path=os.getenv("GOOGLE_SERVICE_ACCOUNT_PATH", ""),
        google_service_account=os.getenv("GOOGLE_SERVICE_ACCOUNT", ""),
        database_url=os.getenv("DATABASE_URL", ""),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        docs_enabled=_as_bool(os.getenv("RELAY_DOCS_ENABLED"), True),
    )


def credential_presence(settings: Settings) -> dict[str, dict[str, bool]]:
    return {
        "whatsapp": {
            "has_api_key": bool(settings.whatsapp_api_key.strip()),
            "has_version": bool(settings.whatsapp_api_version.strip()),
            "has_phone_id": bool(settings.whatsapp_phone_number_id.strip()),
            "has_verify_token": bool(settings.whatsapp_verify_token),
        },
        "openai": {
            "has_key": bool(settings.openai_api_key.strip()),
        },
        "google_sheets": {
            "has_creds": bool(
                settings.google_service_account.strip() or settings.google_service_account_path.strip()
            ),
            "has_sheet_id": bool(settings.google_sheets_id.strip()),
        },
    }


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.whatsapp_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WHATSAPP_SIGNATURE_MODE=enforce")
    if settings.history_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when HISTORY_STORE_BACKEND=postgres")
    return tuple(issues)
