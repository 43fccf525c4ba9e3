"""Triage engine HTTP surface: settings, items, sync, actions, stats."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from inboxguard.core.models import ClassificationSnapshot, InboundItem, ItemFilters, utc_now
from inboxguard.services.errors import InboxGuardError, to_http_exception
from inboxguard.services.policy_engine import explain
from inboxguard.services.request_guard import FetchStatus
from inboxguard.services.triage_engine import SortOrder, TriageEngine, ViewFilter, get_engine_registry


router = APIRouter(prefix="/api/triage/{tenant_id}/{channel}", tags=["triage"])


class SettingsPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enable_auto_draft: Optional[bool] = None
    enable_auto_send: Optional[bool] = None
    auto_send_allowed_categories: Optional[List[str]] = None
    never_auto_send_categories: Optional[List[str]] = None
    auto_send_min_confidence: Optional[float] = None
    business_hours_only: Optional[bool] = None
    business_hours: Optional[Dict[str, Any]] = None
    daily_send_cap: Optional[int] = None
    require_approval_for_first_n: Optional[int] = None
    automation_paused: Optional[bool] = None
    stale_threshold_minutes: Optional[int] = None


class EvaluateRequest(BaseModel):
    category: str = "other"
    priority: str = "normal"
    risk: str = "safe"
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    reasons: List[str] = []
    send_count_today: Optional[int] = Field(default=None, ge=0)
    lifetime_processed: Optional[int] = Field(default=None, ge=0)
    at: Optional[datetime] = None


class ActionRequest(BaseModel):
    item_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    subject: Optional[str] = None
    body: Optional[str] = None
    note: Optional[str] = None
    actor_id: str = Field(default="user", min_length=1)


class BulkActionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    item_ids: Optional[List[str]] = None
    actor_id: str = Field(default="user", min_length=1)


def _engine(tenant_id: str, channel: str) -> TriageEngine:
    try:
        return get_engine_registry().get(tenant_id, channel)
    except InboxGuardError as exc:
        raise to_http_exception(exc)


# ==================== SETTINGS ====================

@router.get("/settings")
async def get_settings(tenant_id: str, channel: str):
    engine = _engine(tenant_id, channel)
    return {"settings": engine.get_settings().to_dict()}


@router.put("/settings")
async def update_settings(tenant_id: str, channel: str, request: SettingsPatchRequest):
    engine = _engine(tenant_id, channel)
    try:
        settings = await engine.update_settings(request.model_dump(exclude_unset=True))
    except InboxGuardError as exc:
        raise to_http_exception(exc)
    return {"settings": settings.to_dict()}


@router.post("/evaluate")
async def evaluate_item(tenant_id: str, channel: str, request: EvaluateRequest):
    """Preview the eligibility verdict for a classification snapshot."""
    engine = _engine(tenant_id, channel)
    now = utc_now()
    item = InboundItem(
        id="preview",
        correlation_id=None,
        created_at=now,
        classification=ClassificationSnapshot.from_dict(request.model_dump(include={
            "category", "priority", "risk", "confidence", "reasons",
        })),
    )
    send_count = request.send_count_today
    lifetime = request.lifetime_processed
    decision = explain(
        item,
        engine.get_settings(),
        engine.counters.sent_today if send_count is None else send_count,
        lifetime_processed=engine.counters.lifetime_processed if lifetime is None else lifetime,
        now=request.at or now,
    )
    return decision.to_dict()


# ==================== ITEMS ====================

@router.get("/items")
async def list_items(
    tenant_id: str,
    channel: str,
    view: ViewFilter = ViewFilter.ALL,
    sort: SortOrder = SortOrder.PRIORITY,
    q: Optional[str] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
    risk: Optional[str] = None,
    limit: int = Query(default=120, ge=1, le=200),
    refresh: bool = False,
):
    engine = _engine(tenant_id, channel)
    filters = ItemFilters(status=status, category=category, risk=risk, query=q, limit=limit)
    if refresh or not engine.items or filters != engine.filters:
        outcome = await engine.refresh(filters)
        if outcome.status == FetchStatus.FAILED and not engine.items:
            raise HTTPException(status_code=502, detail={"error": "CHANNEL_ERROR", "message": outcome.error})
    now = utc_now()
    return {
        "items": [entry.to_dict(now) for entry in engine.view(view, sort, now)],
        "counts": engine.view_counts(now),
        "next_cursor": engine.next_cursor,
        "list_error": engine.list_error,
        "notices": engine.notices,
        "sync": engine.sync_status(),
    }


@router.post("/items/more")
async def load_more_items(tenant_id: str, channel: str):
    engine = _engine(tenant_id, channel)
    outcome = await engine.load_more()
    return {
        "loaded": bool(outcome and outcome.applied),
        "count": len(engine.items),
        "next_cursor": engine.next_cursor,
        "list_error": engine.list_error,
    }


@router.get("/items/{item_id}")
async def get_item(tenant_id: str, channel: str, item_id: str):
    engine = _engine(tenant_id, channel)
    try:
        outcome = await engine.select(item_id)
    except InboxGuardError as exc:
        raise to_http_exception(exc)
    detail = engine.detail if outcome is not None and outcome.applied else None
    if detail is None:
        raise HTTPException(status_code=502, detail={"error": "CHANNEL_ERROR", "message": engine.detail_error})
    return {
        "item": engine.get_item(item_id).to_dict(),
        "suggested": {"subject": detail.suggested_subject, "body": detail.suggested_body},
        "draft": engine.drafts.get(item_id),
        "thread": detail.thread,
        "content": detail.content,
        "meta": detail.meta,
    }


# ==================== SYNC ====================

@router.post("/sync")
async def force_sync(tenant_id: str, channel: str):
    engine = _engine(tenant_id, channel)
    result = await engine.force_sync()
    return {**result.to_dict(), "sync": engine.sync_status()}


@router.get("/sync")
async def sync_status(tenant_id: str, channel: str):
    return _engine(tenant_id, channel).sync_status()


# ==================== ACTIONS ====================

@router.post("/actions")
async def apply_action(tenant_id: str, channel: str, request: ActionRequest):
    engine = _engine(tenant_id, channel)
    payload = request.model_dump(include={"subject", "body", "note"}, exclude_none=True)
    try:
        outcome = await engine.apply_action(
            request.item_id,
            request.action,
            payload or None,
            actor_id=request.actor_id,
        )
    except InboxGuardError as exc:
        raise to_http_exception(exc)
    return outcome.to_dict()


@router.post("/actions/bulk")
async def apply_bulk_action(tenant_id: str, channel: str, request: BulkActionRequest):
    engine = _engine(tenant_id, channel)
    try:
        bulk = await engine.apply_bulk(request.action, request.item_ids, actor_id=request.actor_id)
    except InboxGuardError as exc:
        raise to_http_exception(exc)
    return bulk.to_dict()


@router.get("/actions/log")
async def action_log(tenant_id: str, channel: str, limit: int = Query(default=50, ge=1, le=500)):
    engine = _engine(tenant_id, channel)
    entries = engine.executor.log[-limit:]
    return {
        "entries": [entry.to_dict() for entry in reversed(entries)],
        "recent_activity": engine.recent_activity(),
    }


# ==================== STATS ====================

@router.get("/stats")
async def get_stats(tenant_id: str, channel: str):
    engine = _engine(tenant_id, channel)
    outcome = await engine.refresh_stats()
    stats = engine.stats
    return {
        "queued": stats.queued,
        "drafted": stats.drafted,
        "sent": stats.sent,
        "skipped": stats.skipped,
        "total": stats.total,
        "sent_today": engine.counters.sent_today,
        "lifetime_processed": engine.counters.lifetime_processed,
        "stale": outcome.status != FetchStatus.APPLIED,
        "error": outcome.error,
    }
