"""Google Sheets storage for conversation history.

The spreadsheet holds three tabs with a header row each:

- ``settings``: ``[key, value]``
- ``messages``: ``[timestamp, wa_id, role, content, msg_id]``
- ``facts``: ``[wa_id, key, value, updated_at]`` (reserved, not written yet)
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build

from .history import TurnRecord, format_timestamp, parse_timestamp, select_window

logger = logging.getLogger(__name__)

SHEETS_SCOPES = ("https://www.googleapis.com/auth/spreadsheets",)
DEFAULT_SERVICE_ACCOUNT_FILE = "service-account.json"

SHEET_HEADERS: dict[str, list[str]] = {
    "settings": ["key", "value"],
    "messages": ["timestamp", "wa_id", "role", "content", "msg_id"],
    "facts": ["wa_id", "key", "value", "updated_at"],
}
_HEADER_RANGES = {
    "settings": "settings!A1:B1",
    "messages": "messages!A1:E1",
    "facts": "facts!A1:D1",
}


class ServiceAccountError(ValueError):
    pass


def _parse_service_account(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as first_error:
        try:
            decoded = base64.b64decode(raw.strip(), validate=True).decode("utf-8")
            parsed = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
            raise ServiceAccountError(f"service account is neither JSON nor base64 JSON: {first_error}") from first_error
    if not isinstance(parsed, dict):
        raise ServiceAccountError("service account JSON must be an object")

    private_key = str(parsed.get("private_key") or "").replace("\\n", "\n")
    if not parsed.get("client_email") or not private_key:
        raise ServiceAccountError("invalid service account: missing client_email or private_key")
    return {**parsed, "private_key": private_key}


def load_service_account_info(
    *,
    path: str = "",
    inline: str = "",
    default_path: Path | None = None,
) -> dict[str, Any] | None:
    """Resolve service account JSON: explicit path, then default file, then inline value."""
    candidates: list[Path] = []
    if path.strip():
        candidates.append(Path(path.strip()))
    candidates.append(default_path or Path.cwd() / DEFAULT_SERVICE_ACCOUNT_FILE)

    raw: str | None = None
    for candidate in candidates:
        if candidate.is_file():
            raw = candidate.read_text(encoding="utf-8")
            break
    if raw is None and inline.strip():
        raw = inline
    if raw is None:
        return None
    return _parse_service_account(raw)


def build_sheets_service(service_account_info: dict[str, Any]):
    credentials = Credentials.from_service_account_info(service_account_info, scopes=list(SHEETS_SCOPES))
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


def _cell(row: list[Any], index: int) -> str:
    if index < len(row) and row[index] is not None:
        return str(row[index])
    return ""


class SheetsHistoryRepository:
    def __init__(self, *, spreadsheet_id: str, service) -> None:
        stripped_id = spreadsheet_id.strip()
        if not stripped_id:
            raise ValueError("spreadsheet_id must not be empty")
        self._spreadsheet_id = stripped_id
        self._service = service
        self._layout_ready = False

    def initialize(self) -> None:
        self._ensure_layout()

    def close(self) -> None:
        close = getattr(self._service, "close", None)
        if callable(close):
            close()

    def reset(self) -> None:
        self._ensure_layout()
        self._values().batchClear(
            spreadsheetId=self._spreadsheet_id,
            body={"ranges": ["settings!A2:B", "messages!A2:E", "facts!A2:D"]},
        ).execute()

    def append_turn(self, record: TurnRecord) -> None:
        self._ensure_layout()
        self._values().append(
            spreadsheetId=self._spreadsheet_id,
            range="messages!A:E",
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={
                "values": [
                    [
                        format_timestamp(record.timestamp),
                        record.user_id,
                        record.role,
                        record.content,
                        record.message_id or "",
                    ]
                ]
            },
        ).execute()

    def list_turns(self, user_id: str, *, after: datetime | None, limit: int) -> list[TurnRecord]:
        records: list[TurnRecord] = []
        for row in self._read("messages!A2:E"):
            if _cell(row, 1) != user_id:
                continue
            timestamp = parse_timestamp(_cell(row, 0))
            if timestamp is None:
                logger.warning("skipping messages row for %s with unparseable timestamp %r", user_id, _cell(row, 0))
                continue
            role = _cell(row, 2) or "user"
            records.append(
                TurnRecord(
                    timestamp=timestamp,
                    user_id=user_id,
                    role="assistant" if role == "assistant" else "user",
                    content=_cell(row, 3),
                    message_id=_cell(row, 4) or None,
                )
            )
        return select_window(records, after=after, limit=limit)

    def has_user_message(self, message_id: str) -> bool:
        return any(
            (_cell(row, 0) or "user") == "user" and _cell(row, 2) == message_id
            for row in self._read("messages!C2:E")
        )

    def get_setting(self, key: str) -> str | None:
        for row in self._read("settings!A2:B"):
            if _cell(row, 0) == key:
                return _cell(row, 1)
        return None

    def set_setting(self, key: str, value: str) -> None:
        self._ensure_layout()
        rows = self._read("settings!A2:B")
        for index, row in enumerate(rows):
            if _cell(row, 0) == key:
                row_number = index + 2
                self._values().update(
                    spreadsheetId=self._spreadsheet_id,
                    range=f"settings!A{row_number}:B{row_number}",
                    valueInputOption="RAW",
                    body={"values": [[key, value]]},
                ).execute()
                return
        self._values().append(
            spreadsheetId=self._spreadsheet_id,
            range="settings!A:B",
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": [[key, value]]},
        ).execute()

    def list_settings(self) -> dict[str, str]:
        settings: dict[str, str] = {}
        for row in self._read("settings!A2:B"):
            key = _cell(row, 0)
            if key:
                settings[key] = _cell(row, 1)
        return settings

    def _values(self):
        return self._service.spreadsheets().values()

    def _read(self, range_name: str) -> list[list[Any]]:
        response = self._values().get(spreadsheetId=self._spreadsheet_id, range=range_name).execute()
        return response.get("values", []) or []

    def _ensure_layout(self) -> None:
        if self._layout_ready:
            return
        spreadsheets = self._service.spreadsheets()
        meta = spreadsheets.get(spreadsheetId=self._spreadsheet_id).execute()
        existing = {
            (sheet.get("properties") or {}).get("title")
            for sheet in meta.get("sheets", []) or []
        }
        missing = [title for title in SHEET_HEADERS if title not in existing]
        if missing:
            logger.info("creating spreadsheet tabs: %s", ", ".join(missing))
            spreadsheets.batchUpdate(
                spreadsheetId=self._spreadsheet_id,
                body={"requests": [{"addSheet": {"properties": {"title": title}}} for title in missing]},
            ).execute()
        self._values().batchUpdate(
            spreadsheetId=self._spreadsheet_id,
            body={
                "valueInputOption": "RAW",
                "data": [
                    {"range": _HEADER_RANGES[title], "values": [headers]}
                    for title, headers in SHEET_HEADERS.items()
                ],
            },
        ).execute()
        self._layout_ready = True
