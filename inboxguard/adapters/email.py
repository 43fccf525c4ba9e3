"""Email inbox adapter (Gmail threads triaged by the host application)."""
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
from inboxguard.services.errors import ChannelError, UnknownActionError

# Lifecycle action -> op accepted by /api/email-ai/action.
ACTION_OPS = {
    "approve": "approve",
    "auto_send": "send",
    "save_draft": "save_draft",
    "skip": "skip",
    "request_rewrite": "rewrite",
    "preview_draft": "queue_suggested",
}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_email_item(row: Dict[str, Any]) -> InboundItem:
    """
    Build an InboundItem from an inbox row.

    The classifier output lives in rawMeta.ai; older rows only carry the
    top-level classification (a category string) and confidence columns.
    """
    raw_meta = _as_dict(row.get("rawMeta"))
    ai = raw_meta.get("ai") if isinstance(raw_meta.get("ai"), dict) else None
    classification = ClassificationSnapshot.from_dict(
        ai,
        fallback={"category": row.get("classification"), "confidence": row.get("confidence")},
    )
    item_id = str(row.get("id") or "")
    return InboundItem(
        id=item_id,
        correlation_id=row.get("gmailThreadId") or item_id,
        created_at=parse_timestamp(row.get("createdAt")) or utc_now(),
        received_at=parse_timestamp(row.get("receivedAt")),
        classification=classification,
        action=row.get("action") or None,
        subject=row.get("subject"),
        snippet=row.get("snippet"),
        sender=raw_meta.get("from"),
        raw=row,
    )


class EmailChannelAdapter(HostHTTPAdapter):
    channel = Channel.EMAIL

    async def list_items(self, filters: ItemFilters, cursor: Optional[str] = None) -> ItemPage:
        params = filters.to_params()
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", "/api/email-ai/inbox", params=params)
        items = [parse_email_item(row) for row in data.get("items") or [] if isinstance(row, dict)]
        return ItemPage(items=items, next_cursor=data.get("nextCursor"))

    async def get_item_detail(self, item_id: str) -> ItemDetail:
        data = await self._request("GET", f"/api/email-ai/log/{item_id}")
        item = parse_email_item({
            **data,
            "rawMeta": {"ai": data.get("ai"), "from": _as_dict(data.get("meta")).get("from")},
        })
        suggested = _as_dict(data.get("lastDraftPreview")) or _as_dict(data.get("suggested"))
        return ItemDetail(
            item=item,
            suggested_subject=suggested.get("subject"),
            suggested_body=suggested.get("body"),
            thread=[m for m in data.get("thread") or [] if isinstance(m, dict)],
            content=data.get("snippet"),
            meta={**_as_dict(data.get("meta")), "edit_url": data.get("editUrl")},
        )

    async def trigger_sync(self, force: bool = False) -> SyncResult:
        try:
            await self._request("POST", "/api/email-ai/poll", json={"force": force})
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
        if action == "dismiss_blocked":
            return await self._dismiss_blocked(item, payload)
        op = ACTION_OPS.get(action)
        if op is None:
            raise UnknownActionError(action, allowed=sorted([*ACTION_OPS, "dismiss_blocked"]))
        body: Dict[str, Any] = {"op": op, "id": item.id}
        for key in ("subject", "body", "note"):
            if payload and isinstance(payload.get(key), str):
                body[key] = payload[key]
        if idempotency_key:
            body["idempotencyKey"] = idempotency_key
        try:
            data = await self._request("POST", "/api/email-ai/action", json=body)
        except ChannelError as exc:
            return ActionResult(ok=False, error=exc.detail)
        return ActionResult(ok=True, data=data)

    async def _dismiss_blocked(self, item: InboundItem, payload: Optional[Dict[str, Any]]) -> ActionResult:
        """Archive a blocked item through the host's skip route."""
        body: Dict[str, Any] = {"logId": item.id}
        note = (payload or {}).get("note")
        if isinstance(note, str) and note.strip():
            body["reason"] = note.strip()[:500]
        try:
            data = await self._request("POST", "/api/email-ai/skip", json=body)
        except ChannelError as exc:
            return ActionResult(ok=False, error=exc.detail)
        return ActionResult(ok=True, data=data)

    async def update_guardrail_settings(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("PUT", "/api/email-ai/inbox-settings", json=to_camel_keys(patch))
        return to_snake_keys(_as_dict(data.get("inboxSettings") or data.get("settings")))

    async def get_stats(self, filters: Optional[ItemFilters] = None) -> ItemStats:
        params = filters.to_params() if filters else None
        data = await self._request("GET", "/api/email-ai/stats", params=params)
        return ItemStats.from_dict(to_snake_keys(_as_dict(data.get("counts"))))
