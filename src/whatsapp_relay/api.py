from __future__ import annotations

import hmac
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .config import credential_presence
from .history import TurnRecord
from .models import (
    BusinessFactsResponse,
    BusinessFactUpsertRequest,
    ConversationHistoryResponse,
    ConversationResetResponse,
    GoogleSheetsHealth,
    HealthResponse,
    OpenAIHealth,
    SendResultResponse,
    SendTestRequest,
    TurnItem,
    WebhookAckResponse,
    WhatsAppHealth,
)
from .runtime import RelayRuntime
from .webhook import extract_inbound_message
from .webhook_security import check_subscription_challenge, verify_whatsapp_signature
from .whatsapp import SendResult, mask_recipient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["whatsapp"])

EMPTY_TEXT_REPLY = "Please send a text message."
DEFAULT_TEST_MESSAGE = "Hello! How can I assist you today?"


def _runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime


def _require_admin(request: Request) -> None:
    configured = _runtime(request).settings.admin_api_token.strip()
    if not configured:
        raise HTTPException(503, "admin token not configured")
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(configured, token):
        raise HTTPException(401, "invalid admin token")


def _send_result_response(result: SendResult) -> SendResultResponse:
    return SendResultResponse(
        status=result.status,
        recipient=result.recipient,
        attempted_at=result.attempted_at,
        provider_message_id=result.provider_message_id,
        error_code=result.error_code,
        hint=result.hint,
    )


def _turn_item(record: TurnRecord) -> TurnItem:
    return TurnItem(
        timestamp=record.timestamp,
        role=record.role,
        content=record.content,
        message_id=record.message_id,
    )


@router.get("/webhook", response_class=PlainTextResponse)
def challenge_webhook(
    request: Request,
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str = Query(default="", alias="hub.challenge"),
) -> PlainTextResponse:
    outcome = check_subscription_challenge(settings=_runtime(request).settings, mode=mode, token=token)
    if outcome == "incomplete":
        raise HTTPException(400, "hub.mode and hub.verify_token are required")
    if outcome == "forbidden":
        logger.warning("webhook verification rejected for mode %r", mode)
        raise HTTPException(403, "verification token mismatch")
    logger.info("webhook verified")
    return PlainTextResponse(challenge)


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(request: Request) -> WebhookAckResponse:
    runtime = _runtime(request)
    body = await request.body()

    verification = verify_whatsapp_signature(settings=runtime.settings, body=body, headers=request.headers)
    if not verification.verified:
        if runtime.settings.whatsapp_signature_mode == "enforce":
            raise HTTPException(401, f"webhook signature rejected: {verification.reason}")
        logger.warning("webhook signature not verified: %s", verification.reason)

    try:
        payload = json.loads(body) if body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("webhook body is not valid JSON")
        return WebhookAckResponse()

    inbound = extract_inbound_message(payload)
    if inbound is None:
        logger.warning("webhook missing contact or message")
        return WebhookAckResponse()

    logger.info(
        "inbound message %s from %s (%s)",
        inbound.message_id or "-",
        mask_recipient(inbound.sender),
        inbound.sender_name or "unknown",
    )
    if not inbound.text:
        await run_in_threadpool(runtime.sender.send, inbound.sender, EMPTY_TEXT_REPLY)
        return WebhookAckResponse()

    await run_in_threadpool(runtime.orchestrator.handle, inbound.sender, inbound.text, inbound.message_id)
    return WebhookAckResponse()


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    runtime = _runtime(request)
    presence = credential_presence(runtime.settings)
    return HealthResponse(
        whatsapp=WhatsAppHealth(**presence["whatsapp"]),
        openai=OpenAIHealth(**presence["openai"]),
        google_sheets=GoogleSheetsHealth(**presence["google_sheets"]),
        history_store_backend=runtime.settings.history_store_backend,
        history_store_enabled=runtime.store.enabled,
    )


# ---------------------------------------------------------------------------
# Operator endpoints (admin token)
# ---------------------------------------------------------------------------


@router.post("/send-test", response_model=SendResultResponse)
def send_test(payload: SendTestRequest, request: Request) -> SendResultResponse:
    _require_admin(request)
    result = _runtime(request).sender.send(payload.to, payload.text or DEFAULT_TEST_MESSAGE)
    return _send_result_response(result)


@router.get("/conversations/{user_id}", response_model=ConversationHistoryResponse)
def get_conversation(
    user_id: str,
    request: Request,
    limit: int = Query(default=12, ge=1, le=100),
) -> ConversationHistoryResponse:
    _require_admin(request)
    store = _runtime(request).store
    cutoff = store.reset_markers.cutoff(user_id)
    turns = store.recent_turns(user_id, limit)
    if not turns.ok and turns.status != "disabled":
        raise HTTPException(502, "history store unavailable")
    return ConversationHistoryResponse(
        user_id=user_id,
        reset_at=cutoff.value,
        turns=[_turn_item(record) for record in turns.value],
    )


@router.post("/conversations/{user_id}/reset", response_model=ConversationResetResponse)
def reset_conversation(user_id: str, request: Request) -> ConversationResetResponse:
    _require_admin(request)
    result = _runtime(request).store.reset_conversation(user_id)
    return ConversationResetResponse(user_id=user_id, reset=result.ok, reset_at=result.value)


@router.get("/business-facts", response_model=BusinessFactsResponse)
def list_business_facts(request: Request) -> BusinessFactsResponse:
    _require_admin(request)
    return BusinessFactsResponse(facts=_runtime(request).store.business_facts.all().value)


@router.put("/business-facts/{name}", response_model=BusinessFactsResponse)
def upsert_business_fact(name: str, payload: BusinessFactUpsertRequest, request: Request) -> BusinessFactsResponse:
    _require_admin(request)
    normalized = name.strip()
    if not normalized:
        raise HTTPException(400, "fact name is required")
    facts = _runtime(request).store.business_facts
    result = facts.set(normalized, payload.value)
    if not result.ok:
        raise HTTPException(503 if result.status == "disabled" else 502, "history store unavailable")
    return BusinessFactsResponse(facts=facts.all().value)
