"""Inbound item lifecycle state machine and transition helpers."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from inboxguard.core.models import InboundItem
from inboxguard.services.errors import InvalidTransitionError, UnknownActionError


class ItemState(str, Enum):
    QUEUED_FOR_REVIEW = "queued_for_review"
    DRAFT_CREATED = "draft_created"
    DRAFT_PREVIEW = "draft_preview"
    AUTO_SENT = "auto_sent"
    SENT = "sent"
    SKIPPED_BLOCKED = "skipped_blocked"
    SKIPPED_MANUAL = "skipped_manual"
    REWRITE_REQUESTED = "rewrite_requested"


class ItemAction(str, Enum):
    APPROVE = "approve"
    SAVE_DRAFT = "save_draft"
    SKIP = "skip"
    PREVIEW_DRAFT = "preview_draft"
    REQUEST_REWRITE = "request_rewrite"
    DISMISS_BLOCKED = "dismiss_blocked"
    AUTO_SEND = "auto_send"


ACTION_TARGETS: Dict[ItemAction, ItemState] = {
    ItemAction.APPROVE: ItemState.SENT,
    ItemAction.SAVE_DRAFT: ItemState.DRAFT_CREATED,
    ItemAction.SKIP: ItemState.SKIPPED_MANUAL,
    ItemAction.PREVIEW_DRAFT: ItemState.DRAFT_PREVIEW,
    ItemAction.REQUEST_REWRITE: ItemState.REWRITE_REQUESTED,
    ItemAction.DISMISS_BLOCKED: ItemState.SKIPPED_BLOCKED,
    ItemAction.AUTO_SEND: ItemState.AUTO_SENT,
}

MANUAL_ACTIONS = frozenset({
    ItemAction.APPROVE,
    ItemAction.SAVE_DRAFT,
    ItemAction.SKIP,
    ItemAction.PREVIEW_DRAFT,
    ItemAction.REQUEST_REWRITE,
    ItemAction.DISMISS_BLOCKED,
})
BULK_ACTIONS = frozenset({ItemAction.APPROVE, ItemAction.SKIP})

TERMINAL_STATES = frozenset({ItemState.SKIPPED_BLOCKED, ItemState.SKIPPED_MANUAL})
DELIVERED_STATES = frozenset({ItemState.SENT, ItemState.AUTO_SENT})
FINAL_STATES = TERMINAL_STATES | DELIVERED_STATES

_OPEN_EXITS = {
    ItemState.SENT,
    ItemState.SKIPPED_BLOCKED,
    ItemState.SKIPPED_MANUAL,
    ItemState.REWRITE_REQUESTED,
}

VALID_TRANSITIONS: Dict[ItemState, set] = {
    ItemState.QUEUED_FOR_REVIEW: _OPEN_EXITS | {
        ItemState.DRAFT_CREATED,
        ItemState.DRAFT_PREVIEW,
        ItemState.AUTO_SENT,
    },
    # draft_created -> draft_created re-saves an edited draft
    ItemState.DRAFT_CREATED: _OPEN_EXITS | {
        ItemState.DRAFT_CREATED,
        ItemState.DRAFT_PREVIEW,
        ItemState.AUTO_SENT,
    },
    ItemState.DRAFT_PREVIEW: _OPEN_EXITS | {
        ItemState.DRAFT_CREATED,
        ItemState.AUTO_SENT,
    },
    ItemState.REWRITE_REQUESTED: {
        ItemState.DRAFT_CREATED,
        ItemState.DRAFT_PREVIEW,
        ItemState.SENT,
        ItemState.SKIPPED_BLOCKED,
        ItemState.SKIPPED_MANUAL,
    },
    ItemState.AUTO_SENT: set(),
    ItemState.SENT: set(),
    ItemState.SKIPPED_BLOCKED: set(),  # terminal unless an explicit unarchive path exists
    ItemState.SKIPPED_MANUAL: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    item_id: str
    action: ItemAction
    actor_type: str  # "manual" | "automated"
    actor_id: str
    idempotency_key: str
    payload: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def automated(self) -> bool:
        return self.actor_type == "automated"


@dataclass(frozen=True)
class TransitionPlan:
    from_state: ItemState
    to_state: ItemState
    noop: bool = False
    reason: str = ""


def parse_action(value: Any) -> ItemAction:
    """Boundary check: unknown action names are rejected, never ignored."""
    if isinstance(value, ItemAction):
        return value
    try:
        return ItemAction(str(value).strip().lower())
    except ValueError:
        raise UnknownActionError(value, allowed=[a.value for a in ItemAction])


def parse_state(value: Optional[str]) -> ItemState:
    if value is None or value == "":
        return ItemState.QUEUED_FOR_REVIEW
    try:
        return ItemState(value)
    except ValueError:
        raise InvalidTransitionError(str(value), "?", detail="Unknown lifecycle state")


def current_state(item: InboundItem) -> ItemState:
    return parse_state(item.action)


def assert_valid_transition(from_state: ItemState, to_state: ItemState) -> None:
    allowed = VALID_TRANSITIONS.get(from_state, set())
    if to_state not in allowed:
        raise InvalidTransitionError(from_state.value, to_state.value)


def plan_transition(from_state: ItemState, action: ItemAction) -> TransitionPlan:
    """
    Resolve an action against the current state.

    Already-final items and repeats of the current state are no-ops that echo
    the current state; anything else must be a listed transition.
    """
    to_state = ACTION_TARGETS[action]
    if from_state in FINAL_STATES:
        return TransitionPlan(from_state, from_state, noop=True, reason="already_final")
    if from_state == to_state and to_state not in VALID_TRANSITIONS[from_state]:
        return TransitionPlan(from_state, from_state, noop=True, reason="already_in_state")
    assert_valid_transition(from_state, to_state)
    return TransitionPlan(from_state, to_state)


def _hash_suggestion(subject: str, body: str) -> str:
    return hashlib.sha256(f"{subject}\n{body}".encode("utf-8")).hexdigest()[:24]


def build_idempotency_key(
    action: ItemAction,
    correlation_id: str,
    subject: str = "",
    body: str = "",
) -> str:
    return f"{action.value}:{correlation_id}:{_hash_suggestion(subject, body)}"


def idempotency_key_for(item: InboundItem, action: ItemAction, payload: Optional[Dict[str, Any]] = None) -> str:
    payload = payload or {}
    return build_idempotency_key(
        action,
        item.correlation_id or item.id,
        str(payload.get("subject") or "").strip(),
        str(payload.get("body") or "").strip(),
    )
