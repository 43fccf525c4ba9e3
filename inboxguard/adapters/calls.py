"""Calls inbox adapter (voice call logs synced by the host application)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from inboxguard.adapters.host import HostHTTPAdapter, to_camel_keys, to_snake_keys
from inboxguard.core.models import (
    ActionResult,
    Channel,
    ClassificationSnapshot,
    InboundItem,
    ItemDetail,
    ItemFilters,
    ItemPage,
    ItemStats,
    SyncResult,
    parse_timestamp,
    utc_now,
)
from inboxguard.services.errors import ChannelError


def parse_call_item(row: Dict[str, Any]) -> InboundItem:
    # Call labels are rule-based; there is no classifier confidence.
    classification = ClassificationSnapshot.from_dict({
        "category": row.get("category"),
        "priority": row.get("priority"),
        "risk": row.get("risk"),
        "confidence": row.get("confidence"),
        "reasons": row.get("reasons"),
    })
    item_id = str(row.get("id") or "")
    summary = row.get("summary")
    if isinstance(summary, dict):
        summary = summary.get("ai") or summary.get("system")
    return InboundItem(
        id=item_id,
        correlation_id=row.get("callId") or item_id,
        created_at=parse_timestamp(row.get("startedAt")) or utc_now(),
        received_at=parse_timestamp(row.get("endedAt")),
        classification=classification,
        action=row.get("action") or None,
        subject=row.get("outcome"),
        snippet=summary,
        sender=row.get("callerPhone"),
        raw=row,
    )


class CallsChannelAdapter(HostHTTPAdapter):
    channel = Channel.CALLS

    async def list_items(self, filters: ItemFilters, cursor: Optional[str] = None) -> ItemPage:
        params = filters.to_params()
        params["limit"] = min(200, max(1, filters.limit))
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", "/api/org/calls", params=params)
        items = [parse_call_item(row) for row in data.get("items") or [] if isinstance(row, dict)]
        return ItemPage(items=items, next_cursor=data.get("nextCursor"))

    async def get_item_detail(self, item_id: str) -> ItemDetail:
        data = await self._request("GET", f"/api/org/calls/{item_id}")
        call = data.get("call") if isinstance(data.get("call"), dict) else {}
        summary = call.get("summary") if isinstance(call.get("summary"), dict) else {}
        return ItemDetail(
            item=parse_call_item(call),
            suggested_subject=call.get("outcome"),
            suggested_body=summary.get("ai") or summary.get("system"),
            content=call.get("transcript"),
            meta={
                "recording_url": call.get("recordingUrl"),
                "appointment": call.get("appointment"),
                "steps": call.get("steps") or [],
                "fields": call.get("fields") or {},
            },
        )

    async def trigger_sync(self, force: bool = False) -> SyncResult:
        try:
            await self._request("POST", "/api/org/calls/sync", json={"force": force})
        except ChannelError as exc:
            return SyncResult(ok=False, error=exc.detail)
        return SyncResult(ok=True)

    async def apply_action(
        self,
        item: InboundItem,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        body: Dict[str, Any] = {"action": action, **(payload or {})}
        if idempotency_key:
            body["idempotencyKey"] = idempotency_key
        try:
            data = await self._request("POST", f"/api/org/calls/{item.id}/action", json=body)
        except ChannelError as exc:
            return ActionResult(ok=False, error=exc.detail)
        return ActionResult(ok=True, data=data)

    async def update_guardrail_settings(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("PUT", "/api/org/calls/settings", json=to_camel_keys(patch))
        settings = data.get("settings")
        return to_snake_keys(settings) if isinstance(settings, dict) else {}

    async def get_stats(self, filters: Optional[ItemFilters] = None) -> ItemStats:
        params = filters.to_params() if filters else None
        data = await self._request("GET", "/api/org/calls/stats", params=params)
        totals = data.get("totals") if isinstance(data.get("totals"), dict) else {}
        return ItemStats.from_dict(to_snake_keys(totals))
