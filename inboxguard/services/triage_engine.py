"""
Triage Engine

One engine per tenant + channel. It composes the channel adapter, the
sync scheduler, the request guard, the policy engine and the action
executor into the inbox surface:

    scheduler tick -> trigger_sync + list refresh -> eligibility annotation
        -> manual / automated action -> refresh -> next tick reconciles

Every fetch goes through the RequestGuard so an older response never
overwrites a newer one.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from inboxguard.adapters.base import ChannelAdapter
from inboxguard.adapters.registry import registry as adapter_registry
from inboxguard.core.guardrails import (
    GuardrailSettings,
    GuardrailSettingsStore,
    apply_settings_patch,
    settings_store,
)
from inboxguard.core.models import (
    InboundItem,
    ItemDetail,
    ItemFilters,
    ItemPage,
    ItemStats,
    Risk,
    SyncResult,
    utc_now,
)
from inboxguard.services.action_executor import (
    ActionExecutor,
    ActionOutcome,
    ActionStatus,
    BulkOutcome,
)
from inboxguard.services.errors import ItemNotFoundError, SyncError
from inboxguard.services.item_state import (
    DELIVERED_STATES,
    FINAL_STATES,
    VALID_TRANSITIONS,
    ItemAction,
    ItemState,
    current_state,
)
from inboxguard.services.policy_engine import (
    Eligibility,
    PolicyDecision,
    SendCounters,
    explain,
)
from inboxguard.services.request_guard import FetchKind, FetchOutcome, FetchStatus, RequestGuard
from inboxguard.services.sync_scheduler import SchedulerConfig, SyncScheduler

logger = logging.getLogger(__name__)

SELECT_DEBOUNCE_MS = 200
ITEM_GONE_MESSAGE = "This item is no longer available."


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


class ViewFilter(str, Enum):
    ALL = "all"
    NEEDS_REVIEW = "needs_review"
    AUTO_SEND = "auto_send"
    SENT = "sent"
    BLOCKED = "blocked"


class SortOrder(str, Enum):
    PRIORITY = "priority"
    NEWEST = "newest"


@dataclass(frozen=True)
class AnnotatedItem:
    item: InboundItem
    decision: PolicyDecision

    @property
    def eligibility(self) -> Eligibility:
        return self.decision.eligibility

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        lag = self.item.processing_lag(now)
        return {
            **self.item.to_dict(),
            "state": current_state(self.item).value,
            "eligibility": self.decision.eligibility.value,
            "rule": self.decision.rule,
            "reason": self.decision.reason,
            "processing_lag_sec": int(lag.total_seconds()) if lag is not None else None,
        }


def matches_view(entry: AnnotatedItem, view: ViewFilter) -> bool:
    item = entry.item
    state = current_state(item)
    if view == ViewFilter.NEEDS_REVIEW:
        return state == ItemState.QUEUED_FOR_REVIEW or item.risk == Risk.NEEDS_REVIEW
    if view == ViewFilter.AUTO_SEND:
        return entry.eligibility == Eligibility.AUTO_SEND_ELIGIBLE and state not in FINAL_STATES
    if view == ViewFilter.SENT:
        return state in DELIVERED_STATES
    if view == ViewFilter.BLOCKED:
        return item.risk == Risk.BLOCKED or state == ItemState.SKIPPED_BLOCKED
    return True


def sort_entries(entries: Iterable[AnnotatedItem], order: SortOrder) -> List[AnnotatedItem]:
    entries = list(entries)
    # Stable sorts: newest first, then priority on top when requested.
    entries.sort(key=lambda e: e.item.created_at, reverse=True)
    if order == SortOrder.PRIORITY:
        entries.sort(key=lambda e: e.item.priority.score, reverse=True)
    return entries


class TriageEngine:
    def __init__(
        self,
        tenant_id: str,
        adapter: ChannelAdapter,
        *,
        store: Optional[GuardrailSettingsStore] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        filters: Optional[ItemFilters] = None,
        select_debounce_ms: int = SELECT_DEBOUNCE_MS,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.tenant_id = tenant_id
        self.adapter = adapter
        self.channel = adapter.channel
        self.filters = filters or ItemFilters()
        self._store = store or settings_store
        self._clock = clock
        self._select_debounce_ms = select_debounce_ms

        self._items: Dict[str, InboundItem] = {}
        self._order: List[str] = []
        self.next_cursor: Optional[str] = None
        self.stats = ItemStats()
        self.counters = SendCounters()
        self.selected_id: Optional[str] = None
        self.detail: Optional[ItemDetail] = None
        self.checked: Set[str] = set()
        self.drafts: Dict[str, Dict[str, str]] = {}
        self.notices: Dict[str, str] = {}
        self.list_error: Optional[str] = None
        self.detail_error: Optional[str] = None
        self._force_next = False

        self.guard = RequestGuard()
        self.executor = ActionExecutor(
            adapter,
            self.get_settings,
            self.counters,
            tenant_id=tenant_id,
            clock=clock,
        )
        self.scheduler = SyncScheduler(
            self._sync_once,
            scheduler_config or SchedulerConfig.for_channel(self.channel),
            tenant_id=tenant_id,
            channel=self.channel.value,
            stale_threshold=timedelta(minutes=self.get_settings().stale_threshold_minutes),
            on_success=self.run_autopilot,
            clock=clock,
            monotonic=monotonic,
        )

    # ==================== SETTINGS ====================

    def get_settings(self) -> GuardrailSettings:
        return self._store.get_or_create(self.tenant_id)

    async def update_settings(self, patch: Dict[str, Any]) -> GuardrailSettings:
        """Validate, persist on the host, then commit locally."""
        apply_settings_patch(self.get_settings(), patch)
        await self.adapter.update_guardrail_settings(patch)
        updated = self._store.update(self.tenant_id, patch)
        self.scheduler.stale_threshold = timedelta(minutes=updated.stale_threshold_minutes)
        return updated

    # ==================== LIFECYCLE ====================

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        """Cancel every outstanding fetch and stop the scheduler."""
        self.guard.cancel_all()
        await self.scheduler.stop()
        await self.adapter.close()

    async def force_sync(self) -> SyncResult:
        self._force_next = True
        return await self.scheduler.force_sync()

    async def _sync_once(self) -> None:
        force, self._force_next = self._force_next, False
        result = await self.adapter.trigger_sync(force=force)
        if not result.ok:
            raise SyncError(self.channel.value, result.error or "Sync failed")
        outcome = await self.refresh()
        if outcome.status == FetchStatus.FAILED:
            raise SyncError(self.channel.value, outcome.error or "Could not load items")
        await self.refresh_stats()

    # ==================== FETCHES ====================

    async def refresh(self, filters: Optional[ItemFilters] = None) -> FetchOutcome:
        """Reload the first page; supersedes any pending page append."""
        if filters is not None:
            self.filters = filters
        self.guard.cancel(FetchKind.LIST_PAGE)
        current_filters = self.filters
        outcome = await self.guard.run(
            FetchKind.LIST,
            lambda: self.adapter.list_items(current_filters),
            self._apply_page,
        )
        if outcome.status == FetchStatus.FAILED:
            self.list_error = outcome.error
        elif outcome.applied:
            self.list_error = None
            self.scheduler.check_staleness()
        return outcome

    async def load_more(self) -> Optional[FetchOutcome]:
        cursor = self.next_cursor
        if not cursor:
            return None
        current_filters = self.filters
        outcome = await self.guard.run(
            FetchKind.LIST_PAGE,
            lambda: self.adapter.list_items(current_filters, cursor),
            self._append_page,
        )
        if outcome.status == FetchStatus.FAILED:
            self.list_error = outcome.error
        return outcome

    async def refresh_stats(self) -> FetchOutcome:
        current_filters = self.filters
        return await self.guard.run(
            FetchKind.STATS,
            lambda: self.adapter.get_stats(current_filters),
            self._apply_stats,
        )

    def _merge(self, item: InboundItem) -> InboundItem:
        existing = self._items.get(item.id)
        return existing.merged_with(item) if existing is not None else item

    def _apply_page(self, page: ItemPage) -> None:
        merged = [self._merge(item) for item in page.items]
        self._items = {item.id: item for item in merged}
        self._order = [item.id for item in merged]
        self.next_cursor = page.next_cursor
        self.checked &= set(self._items)
        if self.selected_id is not None and self.selected_id not in self._items:
            self.clear_selection()
        self._recount()

    def _append_page(self, page: ItemPage) -> None:
        for item in page.items:
            if item.id not in self._items:
                self._order.append(item.id)
            self._items[item.id] = self._merge(item)
        self.next_cursor = page.next_cursor
        self._recount()

    def _apply_stats(self, stats: ItemStats) -> None:
        self.stats = stats
        self._recount()

    def _recount(self) -> None:
        self.counters.refresh_from(self.stats, self._items.values(), self._clock())

    # ==================== SELECTION ====================

    async def select(self, item_id: Optional[str]) -> Optional[FetchOutcome]:
        """Select an item and load its detail; None clears the selection."""
        self.scheduler.note_interaction()
        if item_id is None:
            self.clear_selection()
            return None
        if item_id not in self._items:
            raise ItemNotFoundError(item_id)
        self.selected_id = item_id
        self.detail = None
        self.detail_error = None
        outcome = await self.guard.run(
            FetchKind.DETAIL,
            lambda: self._load_detail(item_id),
            self._apply_detail,
        )
        if outcome.status == FetchStatus.FAILED:
            self.detail_error = outcome.error
        return outcome

    async def _load_detail(self, item_id: str) -> ItemDetail:
        if self._select_debounce_ms > 0:
            await asyncio.sleep(self._select_debounce_ms / 1000)
        return await self.adapter.get_item_detail(item_id)

    def _apply_detail(self, detail: ItemDetail) -> None:
        self.detail = detail

    def clear_selection(self) -> None:
        self.guard.cancel(FetchKind.DETAIL)
        self.selected_id = None
        self.detail = None
        self.detail_error = None

    def check(self, item_id: str, on: bool = True) -> None:
        """Toggle an item in the bulk-action set."""
        self.scheduler.note_interaction()
        if not on:
            self.checked.discard(item_id)
        elif item_id in self._items:
            self.checked.add(item_id)

    # ==================== ACTIONS ====================

    def get_item(self, item_id: str) -> InboundItem:
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    async def apply_action(
        self,
        item_id: str,
        action: Any,
        payload: Optional[Dict[str, Any]] = None,
        *,
        actor_id: str = "user",
    ) -> ActionOutcome:
        self.scheduler.note_interaction()
        outcome = await self.executor.apply(self.get_item(item_id), action, payload, actor_id=actor_id)
        self._settle(outcome, payload)
        if outcome.status == ActionStatus.APPLIED:
            await self.refresh()
        return outcome

    async def apply_bulk(
        self,
        action: Any,
        item_ids: Optional[Iterable[str]] = None,
        *,
        actor_id: str = "user",
    ) -> BulkOutcome:
        """Apply approve/skip to the given ids (default: the checked set), then refresh once."""
        self.scheduler.note_interaction()
        ids = list(dict.fromkeys(item_ids if item_ids is not None else sorted(self.checked)))
        known = [self._items[item_id] for item_id in ids if item_id in self._items]
        bulk = await self.executor.apply_bulk(known, action, actor_id=actor_id)
        for outcome in bulk.outcomes:
            self._settle(outcome, None)
        for item_id in ids:
            if item_id not in self._items:
                bulk.outcomes.append(ActionOutcome(
                    item_id=item_id,
                    action=bulk.action,
                    status=ActionStatus.FAILED,
                    state="unknown",
                    error=ITEM_GONE_MESSAGE,
                ))
        self.checked.clear()
        await self.refresh()
        return bulk

    def _settle(self, outcome: ActionOutcome, payload: Optional[Dict[str, Any]]) -> None:
        """Fold an outcome into local state: keep drafts on failure, clear on success."""
        if outcome.status == ActionStatus.FAILED:
            if payload and (payload.get("subject") is not None or payload.get("body") is not None):
                self.drafts[outcome.item_id] = {
                    "subject": str(payload.get("subject") or ""),
                    "body": str(payload.get("body") or ""),
                }
            self.notices[outcome.item_id] = outcome.error or ""
        elif outcome.status == ActionStatus.APPLIED:
            self.drafts.pop(outcome.item_id, None)
            self.notices.pop(outcome.item_id, None)
            if outcome.item is not None and outcome.item_id in self._items:
                self._items[outcome.item_id] = outcome.item

    async def run_autopilot(self) -> List[ActionOutcome]:
        """Auto-send every eligible open item, one at a time, re-validating each."""
        settings = self.get_settings()
        if not settings.enable_auto_send or settings.automation_paused:
            return []
        candidates = [
            entry.item
            for entry in self.view(ViewFilter.AUTO_SEND, SortOrder.PRIORITY)
            if ItemState.AUTO_SENT in VALID_TRANSITIONS[current_state(entry.item)]
        ]
        outcomes = []
        for item in candidates:
            outcome = await self.executor.apply(item, ItemAction.AUTO_SEND, actor_id="autopilot", automated=True)
            self._settle(outcome, None)
            outcomes.append(outcome)
        if outcomes:
            applied = sum(1 for o in outcomes if o.status == ActionStatus.APPLIED)
            logger.info(f"Autopilot sent {applied}/{len(outcomes)} {self.channel.value} items for {self.tenant_id}")
        return outcomes

    # ==================== VIEWS ====================

    @property
    def items(self) -> List[InboundItem]:
        return [self._items[item_id] for item_id in self._order]

    def annotated(self, now: Optional[datetime] = None) -> List[AnnotatedItem]:
        settings = self.get_settings()
        now = now or self._clock()
        return [
            AnnotatedItem(
                item,
                explain(
                    item,
                    settings,
                    self.counters.sent_today,
                    lifetime_processed=self.counters.lifetime_processed,
                    now=now,
                ),
            )
            for item in self.items
        ]

    def view(
        self,
        view: ViewFilter = ViewFilter.ALL,
        sort: SortOrder = SortOrder.PRIORITY,
        now: Optional[datetime] = None,
    ) -> List[AnnotatedItem]:
        view = ViewFilter(view)
        return sort_entries(
            (entry for entry in self.annotated(now) if matches_view(entry, view)),
            SortOrder(sort),
        )

    def view_counts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        entries = self.annotated(now)
        return {v.value: sum(1 for e in entries if matches_view(e, v)) for v in ViewFilter}

    def recent_activity(self, limit: int = 6) -> List[Dict[str, Any]]:
        acted = sorted(
            (item for item in self.items if item.action),
            key=lambda item: item.created_at,
            reverse=True,
        )
        return [
            {
                "id": item.id,
                "action": item.action,
                "subject": item.subject or "(no subject)",
                "when": (item.received_at or item.created_at).isoformat(),
            }
            for item in acted[:limit]
        ]

    def sync_status(self) -> Dict[str, Any]:
        self.scheduler.stale_threshold = timedelta(minutes=self.get_settings().stale_threshold_minutes)
        status = self.scheduler.status()
        status["list_error"] = self.list_error
        return status


# ==================== ENGINE REGISTRY ====================

class EngineRegistry:
    """One running TriageEngine per (tenant, channel), created on first use."""

    def __init__(
        self,
        adapter_factory: Optional[Callable[[str, str], ChannelAdapter]] = None,
        autostart: Optional[bool] = None,
    ) -> None:
        self._adapter_factory = adapter_factory or adapter_registry.create
        self.autostart = _env_bool("INBOXGUARD_AUTOSTART_SYNC", True) if autostart is None else autostart
        self._engines: Dict[tuple, TriageEngine] = {}

    def get(self, tenant_id: str, channel: str) -> TriageEngine:
        key = (tenant_id, str(channel).lower())
        engine = self._engines.get(key)
        if engine is None:
            adapter = self._adapter_factory(channel, tenant_id)
            engine = TriageEngine(tenant_id, adapter)
            self._engines[key] = engine
            logger.info(f"Created {adapter.channel.value} triage engine for tenant {tenant_id}")
        if self.autostart and not engine.scheduler.running:
            engine.start()
        return engine

    def list_engines(self) -> List[TriageEngine]:
        return list(self._engines.values())

    async def close_all(self) -> None:
        engines, self._engines = list(self._engines.values()), {}
        for engine in engines:
            try:
                await engine.close()
            except Exception as exc:
                logger.warning(f"Engine shutdown failed for {engine.channel.value}/{engine.tenant_id}: {exc}")


_engine_registry: Optional[EngineRegistry] = None


def get_engine_registry() -> EngineRegistry:
    global _engine_registry
    if _engine_registry is None:
        _engine_registry = EngineRegistry()
    return _engine_registry
