from __future__ import annotations

import logging
from dataclasses import dataclass

from .completion import CompletionClient, DisabledCompletionClient, OpenAICompletionClient
from .config import Settings
from .history import HistoryRepository, HistoryStore, InMemoryHistoryRepository, SqlAlchemyHistoryRepository
from .orchestrator import ConversationOrchestrator
from .sheets import ServiceAccountError, SheetsHistoryRepository, build_sheets_service, load_service_account_info
from .whatsapp import MessageSender, WhatsAppCloudSender

logger = logging.getLogger(__name__)


def create_history_repository(settings: Settings) -> HistoryRepository | None:
    backend = settings.history_store_backend.strip().lower()
    if backend == "inmemory":
        return InMemoryHistoryRepository()
    if backend == "postgres":
        return SqlAlchemyHistoryRepository(settings.database_url)
    if backend != "sheets":
        raise RuntimeError(f"unsupported HISTORY_STORE_BACKEND: {settings.history_store_backend}")

    if not settings.google_sheets_id.strip():
        logger.warning("Google Sheets not configured. Set GOOGLE_SHEETS_ID")
        return None
    try:
        info = load_service_account_info(
            path=settings.google_service_account_path,
            inline=settings.google_service_account,
        )
    except (OSError, ServiceAccountError) as exc:
        logger.error("failed to load Google service account: %s", exc)
        return None
    if info is None:
        logger.warning(
            "No Google credentials found. Place service-account.json at the working directory "
            "or set GOOGLE_SERVICE_ACCOUNT_PATH."
        )
        return None
    try:
        service = build_sheets_service(info)
    except (ValueError, OSError) as exc:
        logger.error("failed to init Google Sheets client: %s", exc)
        return None
    return SheetsHistoryRepository(spreadsheet_id=settings.google_sheets_id, service=service)


def create_completion_client(settings: Settings) -> CompletionClient:
    if not settings.openai_api_key.strip():
        logger.warning("OPENAI_API_KEY is not set; replies will use the fallback text")
        return DisabledCompletionClient()
    return OpenAICompletionClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.openai_timeout_seconds,
    )


def create_sender(settings: Settings) -> MessageSender:
    return WhatsAppCloudSender(
        api_key=settings.whatsapp_api_key,
        api_version=settings.whatsapp_api_version,
        phone_number_id=settings.whatsapp_phone_number_id,
        base_url=settings.whatsapp_api_base_url,
        timeout_seconds=settings.whatsapp_timeout_seconds,
    )


@dataclass
class RelayRuntime:
    """Collaborators shared by the HTTP layer for one application instance."""

    settings: Settings
    store: HistoryStore
    completion: CompletionClient
    sender: MessageSender
    orchestrator: ConversationOrchestrator

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        store: HistoryStore | None = None,
        completion: CompletionClient | None = None,
        sender: MessageSender | None = None,
    ) -> RelayRuntime:
        store = store or HistoryStore(create_history_repository(settings))
        completion = completion or create_completion_client(settings)
        sender = sender or create_sender(settings)
        return cls(
            settings=settings,
            store=store,
            completion=completion,
            sender=sender,
            orchestrator=ConversationOrchestrator(store=store, completion=completion, sender=sender),
        )

    def initialize(self) -> None:
        if self.store.enabled:
            result = self.store.initialize()
            if not result.ok:
                logger.warning("history store initialization failed; continuing best-effort")

    def close(self) -> None:
        self.store.close()
        try:
            self.completion.close()
        except Exception:
            logger.exception("completion client close failed")
