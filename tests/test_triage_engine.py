from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from inboxguard.adapters.base import ChannelAdapter
from inboxguard.core.guardrails import GuardrailSettingsStore
from inboxguard.core.models import (
    ActionResult,
    Channel,
    ClassificationSnapshot,
    InboundItem,
    ItemDetail,
    ItemPage,
    ItemStats,
    Priority,
    Risk,
    SyncResult,
)
from inboxguard.services import metrics
from inboxguard.services.action_executor import ActionStatus
from inboxguard.services.errors import ItemNotFoundError, SettingsError, UnknownChannelError
from inboxguard.services.item_state import ACTION_TARGETS, ItemAction
from inboxguard.services.request_guard import FetchStatus
from inboxguard.services.sync_scheduler import SchedulerConfig
from inboxguard.services.triage_engine import (
    EngineRegistry,
    SortOrder,
    TriageEngine,
    ViewFilter,
)


NOW = datetime(2026, 3, 4, 1, 0, tzinfo=timezone.utc)


def _item(item_id, category="pricing", priority=Priority.NORMAL, risk=Risk.SAFE, confidence=0.95,
          action=None, minutes_ago=0, subject=None) -> InboundItem:
    return InboundItem(
        id=item_id,
        correlation_id=f"thread-{item_id}",
        created_at=NOW - timedelta(minutes=minutes_ago),
        received_at=NOW - timedelta(minutes=minutes_ago + 1),
        classification=ClassificationSnapshot(
            category=category,
            priority=priority,
            risk=risk,
            confidence=confidence,
        ),
        action=action,
        subject=subject if subject is not None else f"Subject {item_id}",
    )


class _FakeHost(ChannelAdapter):
    """In-memory host application: list/detail/action/sync over a dict of items."""

    channel = Channel.EMAIL

    def __init__(self, items=(), page_size=50) -> None:
        super().__init__("org_1")
        self.items = {item.id: item for item in items}
        self.page_size = page_size
        self.list_calls = 0
        self.sync_calls = []
        self.sync_error = None
        self.fail_actions = set()
        self.actions = []
        self.settings_patches = []
        self.closed = False

    async def list_items(self, filters, cursor=None):
        self.list_calls += 1
        rows = sorted(self.items.values(), key=lambda i: i.created_at, reverse=True)
        start = int(cursor or 0)
        chunk = rows[start:start + self.page_size]
        next_cursor = str(start + self.page_size) if start + self.page_size < len(rows) else None
        return ItemPage(items=chunk, next_cursor=next_cursor)

    async def get_item_detail(self, item_id):
        item = self.items[item_id]
        return ItemDetail(item=item, suggested_subject=f"Re: {item.subject}", suggested_body="Thanks!")

    async def trigger_sync(self, force=False):
        self.sync_calls.append(force)
        if self.sync_error:
            return SyncResult(ok=False, error=self.sync_error)
        return SyncResult(ok=True)

    async def apply_action(self, item, action, payload=None, idempotency_key=None):
        self.actions.append((item.id, action))
        if item.id in self.fail_actions:
            return ActionResult(ok=False, error="Send rejected by provider")
        target = ACTION_TARGETS[ItemAction(action)].value
        self.items[item.id] = replace(self.items[item.id], action=target)
        return ActionResult(ok=True)

    async def update_guardrail_settings(self, patch):
        self.settings_patches.append(patch)
        return patch

    async def get_stats(self, filters=None):
        return ItemStats(total=len(self.items))

    async def close(self):
        self.closed = True


def _engine(host, **patch) -> TriageEngine:
    store = GuardrailSettingsStore()
    if patch:
        store.update("org_1", patch)
    return TriageEngine(
        "org_1",
        host,
        store=store,
        scheduler_config=SchedulerConfig(base_ms=1000, cap_ms=1000),
        select_debounce_ms=0,
        clock=lambda: NOW,
    )


def _inbox():
    return [
        _item("a", category="pricing", priority=Priority.HIGH, minutes_ago=5),
        _item("b", category="complaint", priority=Priority.URGENT, confidence=0.99, minutes_ago=30),
        _item("c", category="faq", confidence=0.5, minutes_ago=1),
        _item("d", category="pricing", priority=Priority.LOW, action="sent", minutes_ago=50),
        _item("e", category="booking_request", risk=Risk.BLOCKED, minutes_ago=10),
    ]


OPEN_SETTINGS = dict(enable_auto_send=True, require_approval_for_first_n=0)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


def test_views_counts_and_sorting():
    engine = _engine(_FakeHost(_inbox()), **OPEN_SETTINGS)
    outcome = asyncio.run(engine.refresh())
    assert outcome.status == FetchStatus.APPLIED

    assert engine.view_counts() == {
        "all": 5,
        "needs_review": 4,
        "auto_send": 1,
        "sent": 1,
        "blocked": 1,
    }
    assert [e.item.id for e in engine.view(ViewFilter.AUTO_SEND)] == ["a"]
    assert [e.item.id for e in engine.view(ViewFilter.ALL, SortOrder.PRIORITY)] == ["b", "a", "c", "e", "d"]
    assert [e.item.id for e in engine.view(ViewFilter.ALL, SortOrder.NEWEST)] == ["c", "a", "e", "b", "d"]

    by_id = {e.item.id: e.to_dict(NOW) for e in engine.view()}
    assert by_id["b"]["eligibility"] == "blocked"
    assert by_id["b"]["rule"] == "category_denied"
    assert by_id["c"]["rule"] == "confidence_below_threshold"
    assert by_id["a"]["processing_lag_sec"] == 360
    assert by_id["d"]["state"] == "sent"


def test_counters_are_derived_from_items():
    engine = _engine(_FakeHost(_inbox()))
    asyncio.run(engine.refresh())
    assert engine.counters.sent_today == 1
    assert engine.counters.lifetime_processed == 1


def test_refresh_merges_known_items():
    host = _FakeHost([_item("a", subject="Original")])
    engine = _engine(host)
    asyncio.run(engine.refresh())

    host.items["a"] = replace(host.items["a"], subject=None, action="draft_created")
    asyncio.run(engine.refresh())
    merged = engine.get_item("a")
    assert merged.subject == "Original"
    assert merged.action == "draft_created"


def test_selection_is_dropped_when_item_disappears():
    host = _FakeHost(_inbox())
    engine = _engine(host)

    async def run():
        await engine.refresh()
        outcome = await engine.select("a")
        selected = (engine.selected_id, engine.detail.suggested_subject)
        engine.check("a")
        engine.check("c")
        del host.items["a"]
        await engine.refresh()
        return outcome, selected

    outcome, selected = asyncio.run(run())
    assert outcome.status == FetchStatus.APPLIED
    assert selected == ("a", "Re: Subject a")
    assert engine.selected_id is None
    assert engine.detail is None
    assert engine.checked == {"c"}


def test_selecting_unknown_item_raises():
    engine = _engine(_FakeHost(_inbox()))
    asyncio.run(engine.refresh())
    with pytest.raises(ItemNotFoundError):
        asyncio.run(engine.select("zzz"))


def test_selecting_records_interaction():
    engine = _engine(_FakeHost(_inbox()))

    async def run():
        await engine.refresh()
        await engine.select("a")
        return engine.scheduler._quiet_remaining_ms()

    assert asyncio.run(run()) > 0


def test_newer_selection_wins():
    host = _FakeHost(_inbox())
    engine = TriageEngine(
        "org_1",
        host,
        store=GuardrailSettingsStore(),
        scheduler_config=SchedulerConfig(base_ms=1000, cap_ms=1000),
        select_debounce_ms=20,
        clock=lambda: NOW,
    )

    async def run():
        await engine.refresh()
        first = asyncio.create_task(engine.select("a"))
        await asyncio.sleep(0)
        second = await engine.select("c")
        return await first, second

    first, second = asyncio.run(run())
    assert first.status == FetchStatus.CANCELLED
    assert second.status == FetchStatus.APPLIED
    assert engine.selected_id == "c"
    assert engine.detail.item.id == "c"


def test_failed_action_keeps_draft_and_success_clears_it():
    host = _FakeHost(_inbox())
    host.fail_actions.add("a")
    engine = _engine(host)
    payload = {"subject": "Re: Price", "body": "Our rate is..."}

    async def run():
        await engine.refresh()
        failed = await engine.apply_action("a", "approve", payload)
        kept = dict(engine.drafts["a"]), engine.notices["a"]
        host.fail_actions.clear()
        applied = await engine.apply_action("a", "approve", payload)
        return failed, kept, applied

    failed, kept, applied = asyncio.run(run())
    assert failed.status == ActionStatus.FAILED
    assert kept == (payload, "Send rejected by provider")
    assert applied.status == ActionStatus.APPLIED
    assert "a" not in engine.drafts
    assert "a" not in engine.notices
    assert engine.get_item("a").action == "sent"


def test_applied_action_refreshes_list():
    host = _FakeHost(_inbox())
    engine = _engine(host)

    async def run():
        await engine.refresh()
        before = host.list_calls
        await engine.apply_action("c", "skip")
        return host.list_calls - before

    assert asyncio.run(run()) == 1
    assert engine.get_item("c").action == "skipped_manual"
    assert engine.recent_activity()[0]["id"] == "c"


def test_bulk_action_refreshes_once_and_clears_checked():
    host = _FakeHost(_inbox())
    host.fail_actions.add("c")
    engine = _engine(host)

    async def run():
        await engine.refresh()
        engine.check("a")
        engine.check("c")
        engine.check("e")
        host.items.pop("e")
        before = host.list_calls
        bulk = await engine.apply_bulk("skip", item_ids=["a", "c", "gone"])
        return bulk, host.list_calls - before

    bulk, refreshes = asyncio.run(run())
    assert refreshes == 1
    assert bulk.succeeded == ["a"]
    assert sorted(bulk.failed) == ["c", "gone"]
    assert engine.checked == set()
    assert engine.notices["c"] == "Send rejected by provider"


def test_bulk_defaults_to_checked_items():
    host = _FakeHost(_inbox())
    engine = _engine(host)

    async def run():
        await engine.refresh()
        engine.check("a")
        engine.check("c")
        engine.check("c", on=False)
        return await engine.apply_bulk("approve")

    bulk = asyncio.run(run())
    assert bulk.succeeded == ["a"]
    assert host.actions == [("a", "approve")]


def test_autopilot_sends_only_eligible_items():
    host = _FakeHost(_inbox())
    engine = _engine(host, **OPEN_SETTINGS)

    async def run():
        await engine.refresh()
        return await engine.run_autopilot()

    outcomes = asyncio.run(run())
    assert [(o.item_id, o.status) for o in outcomes] == [("a", ActionStatus.APPLIED)]
    assert host.actions == [("a", "auto_send")]
    assert engine.get_item("a").action == "auto_sent"
    assert engine.executor.log[-1].actor_id == "autopilot"


def test_autopilot_respects_pause_and_switch():
    host = _FakeHost(_inbox())
    paused = _engine(host, enable_auto_send=True, require_approval_for_first_n=0, automation_paused=True)
    disabled = _engine(host, require_approval_for_first_n=0)

    async def run():
        await paused.refresh()
        await disabled.refresh()
        return await paused.run_autopilot(), await disabled.run_autopilot()

    assert asyncio.run(run()) == ([], [])
    assert host.actions == []


def test_force_sync_loads_items_and_runs_autopilot():
    host = _FakeHost(_inbox())
    engine = _engine(host, **OPEN_SETTINGS)

    result = asyncio.run(engine.force_sync())
    assert result.ok is True
    assert host.sync_calls == [True]
    assert len(engine.items) == 5
    assert engine.stats.total == 5
    assert ("a", "auto_send") in host.actions
    assert engine.sync_status()["indicator"] == "stopped"


def test_failed_sync_sets_error_indicator():
    host = _FakeHost(_inbox())
    host.sync_error = "Gmail token expired"
    engine = _engine(host)

    result = asyncio.run(engine.force_sync())
    assert result.ok is False
    assert result.error == "Gmail token expired"
    status = engine.sync_status()
    assert status["indicator"] == "error"
    assert status["message"] == "Sync unavailable, data may be delayed"
    assert engine.items == []


def test_update_settings_validates_before_persisting():
    host = _FakeHost()
    engine = _engine(host)

    with pytest.raises(SettingsError):
        asyncio.run(engine.update_settings({"daily_send_cap": -5}))
    assert host.settings_patches == []

    updated = asyncio.run(engine.update_settings({"daily_send_cap": 5, "stale_threshold_minutes": 3}))
    assert updated.daily_send_cap == 5
    assert engine.get_settings().daily_send_cap == 5
    assert host.settings_patches == [{"daily_send_cap": 5, "stale_threshold_minutes": 3}]
    assert engine.scheduler.stale_threshold == timedelta(minutes=3)


def test_load_more_appends_next_page():
    host = _FakeHost(_inbox(), page_size=2)
    engine = _engine(host)

    async def run():
        await engine.refresh()
        first_page = [i.id for i in engine.items]
        await engine.load_more()
        await engine.load_more()
        last = await engine.load_more()
        return first_page, last

    first_page, last = asyncio.run(run())
    assert first_page == ["c", "a"]
    assert [i.id for i in engine.items] == ["c", "a", "e", "b", "d"]
    assert engine.next_cursor is None
    assert last is None


def test_close_cancels_and_closes_adapter():
    host = _FakeHost(_inbox())
    engine = _engine(host)

    async def run():
        engine.start()
        await asyncio.sleep(0)
        await engine.close()

    asyncio.run(run())
    assert host.closed is True
    assert engine.scheduler.running is False


def test_engine_registry_reuses_engines_per_tenant_and_channel():
    created = []

    def factory(channel, tenant_id):
        created.append((channel, tenant_id))
        return _FakeHost()

    registry = EngineRegistry(adapter_factory=factory, autostart=False)
    first = registry.get("org_1", "email")
    assert registry.get("org_1", "EMAIL") is first
    assert registry.get("org_2", "email") is not first
    assert created == [("email", "org_1"), ("email", "org_2")]
    assert first.scheduler.running is False

    asyncio.run(registry.close_all())
    assert registry.list_engines() == []


def test_engine_registry_rejects_unknown_channel():
    registry = EngineRegistry(autostart=False)
    with pytest.raises(UnknownChannelError):
        registry.get("org_1", "fax")
