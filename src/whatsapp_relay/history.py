from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Generic, Protocol, TypeVar

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import StoreResultStatus, TurnRole

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUSINESS_FACT_PREFIX = "biz:"
RESET_MARKER_PREFIX = "reset:"


@dataclass(frozen=True)
class TurnRecord:
    timestamp: datetime
    user_id: str
    role: TurnRole
    content: str
    message_id: str | None = None


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a history store call.

    ``value`` always holds something usable: the real result on success, or
    the safe default (empty list, ``None``, ``False``) when the backend failed
    or is not configured.
    """

    status: StoreResultStatus
    value: T
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class HistoryRepository(Protocol):
    def initialize(self) -> None: ...

    def close(self) -> None: ...

    def reset(self) -> None: ...

    def append_turn(self, record: TurnRecord) -> None: ...

    def list_turns(self, user_id: str, *, after: datetime | None, limit: int) -> list[TurnRecord]: ...

    def has_user_message(self, message_id: str) -> bool: ...

    def get_setting(self, key: str) -> str | None: ...

    def set_setting(self, key: str, value: str) -> None: ...

    def list_settings(self) -> dict[str, str]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    candidate = raw.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(candidate))
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    return _as_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def select_window(records: list[TurnRecord], *, after: datetime | None, limit: int) -> list[TurnRecord]:
    if limit <= 0:
        return []
    if after is not None:
        records = [record for record in records if record.timestamp > after]
    return records[-limit:]


class InMemoryHistoryRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._turns: list[TurnRecord] = []
        self._settings: dict[str, str] = {}

    def initialize(self) -> None:
        return None

    def close(self) -> None:
        return None

    def reset(self) -> None:
        with self._lock:
            self._turns.clear()
            self._settings.clear()

    def append_turn(self, record: TurnRecord) -> None:
        with self._lock:
            self._turns.append(record)

    def list_turns(self, user_id: str, *, after: datetime | None, limit: int) -> list[TurnRecord]:
        with self._lock:
            owned = [record for record in self._turns if record.user_id == user_id]
        return select_window(owned, after=after, limit=limit)

    def has_user_message(self, message_id: str) -> bool:
        with self._lock:
            return any(
                record.role == "user" and record.message_id == message_id
                for record in self._turns
            )

    def get_setting(self, key: str) -> str | None:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._settings[key] = value

    def list_settings(self) -> dict[str, str]:
        with self._lock:
            return dict(self._settings)


class HistoryBase(DeclarativeBase):
    pass


class _SettingRow(HistoryBase):
    __tablename__ = "relay_settings"

    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    # First-write order; updates keep it.
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(HistoryBase):
    __tablename__ = "relay_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)


class _FactRow(HistoryBase):
    __tablename__ = "relay_facts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyHistoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for HISTORY_STORE_BACKEND=postgres")
        self._database_url = database_url
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            HistoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def initialize(self) -> None:
        if self._database_url.startswith("sqlite"):
            HistoryBase.metadata.create_all(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_SettingRow))
                session.execute(delete(_FactRow))

    def append_turn(self, record: TurnRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _MessageRow(
                        timestamp=record.timestamp,
                        user_id=record.user_id,
                        role=record.role,
                        content=record.content,
                        message_id=record.message_id or None,
                    )
                )

    def list_turns(self, user_id: str, *, after: datetime | None, limit: int) -> list[TurnRecord]:
        if limit <= 0:
            return []
        query = select(_MessageRow).where(_MessageRow.user_id == user_id)
        if after is not None:
            query = query.where(_MessageRow.timestamp > after)
        query = query.order_by(_MessageRow.timestamp.desc(), _MessageRow.id.desc()).limit(limit)
        with self._session() as session:
            rows = session.scalars(query).all()
            return [self._turn_record(row) for row in reversed(rows)]

    def has_user_message(self, message_id: str) -> bool:
        with self._session() as session:
            row_id = session.scalar(
                select(_MessageRow.id)
                .where(_MessageRow.message_id == message_id)
                .where(_MessageRow.role == "user")
                .limit(1)
            )
            return row_id is not None

    def get_setting(self, key: str) -> str | None:
        with self._session() as session:
            row = session.get(_SettingRow, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_SettingRow, key)
                if row is None:
                    last_position = session.scalar(select(func.coalesce(func.max(_SettingRow.position), 0)))
                    session.add(
                        _SettingRow(
                            key=key,
                            value=value,
                            position=int(last_position or 0) + 1,
                            updated_at=_now_utc(),
                        )
                    )
                    return
                row.value = value
                row.updated_at = _now_utc()

    def list_settings(self) -> dict[str, str]:
        with self._session() as session:
            rows = session.scalars(select(_SettingRow).order_by(_SettingRow.position, _SettingRow.key)).all()
            return {row.key: row.value for row in rows}

    @staticmethod
    def _turn_record(row: _MessageRow) -> TurnRecord:
        return TurnRecord(
            timestamp=_as_utc(row.timestamp),
            user_id=row.user_id,
            role=row.role,  # type: ignore[arg-type]
            content=row.content,
            message_id=row.message_id,
        )


class BusinessFacts:
    """Typed view over the ``biz:`` settings."""

    def __init__(self, store: HistoryStore) -> None:
        self._store = store

    def all(self) -> StoreResult[dict[str, str]]:
        result = self._store.all_settings()
        facts = {
            key[len(BUSINESS_FACT_PREFIX):]: value
            for key, value in result.value.items()
            if key.startswith(BUSINESS_FACT_PREFIX) and key[len(BUSINESS_FACT_PREFIX):]
        }
        return replace(result, value=facts)

    def set(self, name: str, value: str) -> StoreResult[bool]:
        return self._store.set_setting(f"{BUSINESS_FACT_PREFIX}{name}", value)


class ResetMarkers:
    """Typed view over the per-user ``reset:`` cutoffs."""

    def __init__(self, store: HistoryStore) -> None:
        self._store = store

    def cutoff(self, user_id: str) -> StoreResult[datetime | None]:
        result = self._store.get_setting(f"{RESET_MARKER_PREFIX}{user_id}")
        if result.value is None:
            return replace(result, value=None)
        parsed = parse_timestamp(result.value)
        if parsed is None:
            logger.warning("ignoring unparseable reset marker for %s: %r", user_id, result.value)
        return replace(result, value=parsed)

    def mark(self, user_id: str, at: datetime) -> StoreResult[bool]:
        return self._store.set_setting(f"{RESET_MARKER_PREFIX}{user_id}", format_timestamp(at))


class HistoryStore:
    """Best-effort conversation history on top of a storage repository.

    No method raises: storage errors are logged and reported through the
    returned ``StoreResult``. A store built without a repository runs
    disabled and logs a warning on every access.
    """

    def __init__(
        self,
        repository: HistoryRepository | None,
        *,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.business_facts = BusinessFacts(self)
        self.reset_markers = ResetMarkers(self)

    @property
    def enabled(self) -> bool:
        return self._repository is not None

    def initialize(self) -> StoreResult[bool]:
        return self._run("initialize", False, lambda repo: repo.initialize() or True)

    def close(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.close()
        except Exception:
            logger.exception("history store close failed")

    def has_turn(self, message_id: str | None) -> StoreResult[bool]:
        if not message_id:
            return StoreResult(status="ok", value=False)
        return self._run("has_turn", False, lambda repo: repo.has_user_message(message_id))

    def append_turn(
        self,
        user_id: str,
        role: TurnRole,
        content: str,
        message_id: str | None = None,
    ) -> StoreResult[TurnRecord | None]:
        record = TurnRecord(
            timestamp=_as_utc(self._clock()),
            user_id=user_id,
            role=role,
            content=content,
            message_id=message_id or None,
        )

        def _append(repo: HistoryRepository) -> TurnRecord:
            repo.append_turn(record)
            return record

        return self._run("append_turn", None, _append)

    def recent_turns(self, user_id: str, limit: int) -> StoreResult[list[TurnRecord]]:
        cutoff = self.reset_markers.cutoff(user_id)
        if not cutoff.ok:
            # An unreadable cutoff must not leak history from before a reset.
            return StoreResult(status=cutoff.status, value=[], error_code=cutoff.error_code)
        return self._run(
            "recent_turns",
            [],
            lambda repo: repo.list_turns(user_id, after=cutoff.value, limit=limit),
        )

    def get_setting(self, key: str) -> StoreResult[str | None]:
        return self._run("get_setting", None, lambda repo: repo.get_setting(key))

    def set_setting(self, key: str, value: str) -> StoreResult[bool]:
        return self._run("set_setting", False, lambda repo: repo.set_setting(key, value) or True)

    def all_settings(self) -> StoreResult[dict[str, str]]:
        return self._run("all_settings", {}, lambda repo: repo.list_settings())

    def reset_conversation(self, user_id: str) -> StoreResult[datetime | None]:
        now = _as_utc(self._clock())
        result = self.reset_markers.mark(user_id, now)
        if result.ok:
            logger.info("conversation reset for %s at %s", user_id, format_timestamp(now))
        return replace(result, value=now if result.ok else None)

    def _run(self, operation: str, default: T, action: Callable[[HistoryRepository], T]) -> StoreResult[T]:
        if self._repository is None:
            logger.warning("history store not configured; %s skipped", operation)
            return StoreResult(status="disabled", value=default, error_code="store_disabled")
        try:
            return StoreResult(status="ok", value=action(self._repository))
        except Exception:
            logger.exception("history store %s failed", operation)
            return StoreResult(status="failed", value=default, error_code=f"{operation}_failed")
