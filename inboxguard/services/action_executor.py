"""
Action Executor

Applies lifecycle actions to items with at-most-once semantics per item per
click. Before calling the channel it:
1. resolves the transition (final or matching states are echo no-ops)
2. drops duplicates by idempotency key (in flight or already applied)
3. drops any action while a send or skip of the same item is in flight
4. re-validates auto_send against the policy engine at commit time

A failed action never changes lifecycle state. Bulk actions fan out with
independent success/failure per item.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from inboxguard.adapters.base import ChannelAdapter
from inboxguard.core.guardrails import GuardrailSettings
from inboxguard.core.models import ActionLogEntry, InboundItem, Risk, utc_now
from inboxguard.services.errors import (
    ActionError,
    InvalidTransitionError,
    UnknownActionError,
    sanitize_error_message,
    user_message,
)
from inboxguard.services.item_state import (
    BULK_ACTIONS,
    DELIVERED_STATES,
    FINAL_STATES,
    ItemAction,
    ItemState,
    TransitionRequest,
    current_state,
    idempotency_key_for,
    parse_action,
    plan_transition,
)
from inboxguard.services.logging import log_action, log_error
from inboxguard.services.metrics import record_action, record_error
from inboxguard.services.policy_engine import Eligibility, PolicyDecision, SendCounters, explain

logger = logging.getLogger(__name__)


class ActionStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class ActionOutcome:
    item_id: str
    action: str
    status: ActionStatus
    state: str
    previous_state: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    idempotency_key: Optional[str] = None
    item: Optional[InboundItem] = None

    @property
    def ok(self) -> bool:
        return self.status in (ActionStatus.APPLIED, ActionStatus.NOOP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "action": self.action,
            "status": self.status.value,
            "ok": self.ok,
            "state": self.state,
            "previous_state": self.previous_state,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class BulkOutcome:
    action: str
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status == ActionStatus.APPLIED]

    @property
    def failed(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status in (ActionStatus.FAILED, ActionStatus.REJECTED)]

    @property
    def skipped(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status == ActionStatus.NOOP]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ActionExecutor:
    def __init__(
        self,
        adapter: ChannelAdapter,
        settings_provider: Callable[[], GuardrailSettings],
        counters: SendCounters,
        *,
        tenant_id: str = "",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.adapter = adapter
        self.tenant_id = tenant_id
        self.counters = counters
        self._settings = settings_provider
        self._clock = clock
        self._in_flight: set = set()
        # item ids with a send or skip on the wire
        self._finalizing: set = set()
        self._applied: Dict[str, ItemState] = {}
        self._known_states: Dict[str, ItemState] = {}
        self.log: List[ActionLogEntry] = []

    @property
    def channel(self) -> str:
        return self.adapter.channel.value

    def effective_state(self, item: InboundItem) -> ItemState:
        """Item state, unless this executor already moved it to a final state."""
        known = self._known_states.get(item.id)
        if known is not None and known in FINAL_STATES:
            return known
        return current_state(item)

    def check_auto_send(self, item: InboundItem) -> PolicyDecision:
        settings = self._settings()
        return explain(
            item,
            settings,
            self.counters.sent_today,
            lifetime_processed=self.counters.lifetime_processed,
            now=self._clock(),
        )

    async def apply(
        self,
        item: InboundItem,
        action: Any,
        payload: Optional[Dict[str, Any]] = None,
        *,
        actor_id: str = "user",
        automated: bool = False,
    ) -> ActionOutcome:
        """
        Apply one action to one item.

        Raises:
            UnknownActionError: action is not part of the lifecycle vocabulary
            InvalidTransitionError: the state machine does not allow it
        """
        action = parse_action(action)
        if action == ItemAction.AUTO_SEND and not automated:
            raise UnknownActionError(action.value, allowed=[a.value for a in ItemAction if a != ItemAction.AUTO_SEND])

        from_state = self.effective_state(item)
        plan = plan_transition(from_state, action)
        if plan.noop:
            return self._noop(item, action, from_state, plan.reason)

        key = idempotency_key_for(item, action, payload)
        if key in self._in_flight or self._applied.get(key) == from_state:
            return self._noop(item, action, from_state, "duplicate", key)
        if item.id in self._finalizing:
            return self._noop(item, action, from_state, "in_flight", key)
        if action == ItemAction.DISMISS_BLOCKED and not self._is_blocked(item):
            raise InvalidTransitionError(
                from_state.value,
                ItemState.SKIPPED_BLOCKED.value,
                detail="Only items blocked by policy can be dismissed",
            )

        request = TransitionRequest(
            item_id=item.id,
            action=action,
            actor_type="automated" if automated else "manual",
            actor_id=actor_id,
            idempotency_key=key,
            payload=payload,
        )

        if action == ItemAction.AUTO_SEND:
            rejection = self._auto_send_rejection(item)
            if rejection is not None:
                record_action(self.channel, action.value, ActionStatus.REJECTED.value)
                return ActionOutcome(
                    item_id=item.id,
                    action=action.value,
                    status=ActionStatus.REJECTED,
                    state=from_state.value,
                    reason=rejection,
                    idempotency_key=key,
                    item=item,
                )

        return await self._commit(item, request, from_state, plan.to_state)

    def _is_blocked(self, item: InboundItem) -> bool:
        return item.risk == Risk.BLOCKED or item.category in self._settings().never_auto_send_categories

    def _auto_send_rejection(self, item: InboundItem) -> Optional[str]:
        settings = self._settings()
        if not settings.enable_auto_send:
            return "auto_send_disabled"
        decision = self.check_auto_send(item)
        if decision.eligibility != Eligibility.AUTO_SEND_ELIGIBLE:
            return decision.rule
        return None

    async def _commit(
        self,
        item: InboundItem,
        request: TransitionRequest,
        from_state: ItemState,
        to_state: ItemState,
    ) -> ActionOutcome:
        action = request.action
        self._in_flight.add(request.idempotency_key)
        finalizing = to_state in FINAL_STATES
        if finalizing:
            self._finalizing.add(item.id)
        try:
            try:
                result = await self.adapter.apply_action(
                    item,
                    action.value,
                    request.payload,
                    idempotency_key=request.idempotency_key,
                )
                if not result.ok:
                    raise ActionError(item.id, action.value, result.error or "Action failed")
                error = None
            except Exception as exc:
                log_error(
                    "action_failed",
                    f"{action.value} failed for {item.id}",
                    context={"tenant_id": self.tenant_id, "channel": self.channel, "item_id": item.id},
                    exception=exc,
                )
                error = user_message(exc)
        finally:
            self._in_flight.discard(request.idempotency_key)
            if finalizing:
                self._finalizing.discard(item.id)

        if error is not None:
            record_action(self.channel, action.value, ActionStatus.FAILED.value)
            record_error("action_failed", self.channel)
            return ActionOutcome(
                item_id=item.id,
                action=action.value,
                status=ActionStatus.FAILED,
                state=from_state.value,
                error=sanitize_error_message(error),
                idempotency_key=request.idempotency_key,
                item=item,
            )

        self._applied[request.idempotency_key] = to_state
        self._known_states[item.id] = to_state
        if to_state in DELIVERED_STATES:
            self.counters.record_send()

        entry = ActionLogEntry(
            item_id=item.id,
            action=action.value,
            from_state=from_state.value,
            to_state=to_state.value,
            automated=request.automated,
            actor_id=request.actor_id,
            at=self._clock(),
        )
        self.log.append(entry)
        record_action(self.channel, action.value, ActionStatus.APPLIED.value)
        log_action(
            self.tenant_id,
            item.id,
            action.value,
            from_state.value,
            to_state.value,
            automated=request.automated,
            channel=self.channel,
        )
        return ActionOutcome(
            item_id=item.id,
            action=action.value,
            status=ActionStatus.APPLIED,
            state=to_state.value,
            previous_state=from_state.value,
            idempotency_key=request.idempotency_key,
            item=item.with_action(to_state.value),
        )

    def _noop(
        self,
        item: InboundItem,
        action: ItemAction,
        state: ItemState,
        reason: str,
        key: Optional[str] = None,
    ) -> ActionOutcome:
        record_action(self.channel, action.value, ActionStatus.NOOP.value)
        logger.debug(f"{action.value} on {item.id} is a no-op ({reason}, state={state.value})")
        return ActionOutcome(
            item_id=item.id,
            action=action.value,
            status=ActionStatus.NOOP,
            state=state.value,
            reason=reason,
            idempotency_key=key,
            item=item,
        )

    async def apply_bulk(
        self,
        items: Sequence[InboundItem],
        action: Any,
        *,
        actor_id: str = "user",
    ) -> BulkOutcome:
        """Fan one action out over many items; one failure never blocks the rest."""
        action = parse_action(action)
        if action not in BULK_ACTIONS:
            raise UnknownActionError(action.value, allowed=sorted(a.value for a in BULK_ACTIONS))

        unique: Dict[str, InboundItem] = {}
        for item in items:
            unique.setdefault(item.id, item)

        results = await asyncio.gather(
            *(self.apply(item, action, actor_id=actor_id) for item in unique.values()),
            return_exceptions=True,
        )

        bulk = BulkOutcome(action=action.value)
        for item, result in zip(unique.values(), results):
            if isinstance(result, ActionOutcome):
                bulk.outcomes.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            bulk.outcomes.append(ActionOutcome(
                item_id=item.id,
                action=action.value,
                status=ActionStatus.FAILED,
                state=current_state(item).value,
                error=user_message(result),
                item=item,
            ))
        logger.info(
            f"Bulk {action.value} on {len(unique)} {self.channel} items: "
            f"{len(bulk.succeeded)} applied, {len(bulk.failed)} failed, {len(bulk.skipped)} skipped"
        )
        return bulk
