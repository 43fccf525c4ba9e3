"""
Inbound item models shared by the triage engine and the channel adapters.

An InboundItem is one email thread or one call record. Its classification
snapshot is attached upstream and is read-only here; the lifecycle `action`
is the last recorded lifecycle state (None until first processed).
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """External communication channels the engine can triage."""
    EMAIL = "email"
    CALLS = "calls"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def score(self) -> int:
        return _PRIORITY_SCORES[self]


_PRIORITY_SCORES = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class Risk(str, Enum):
    SAFE = "safe"
    NEEDS_REVIEW = "needs_review"
    BLOCKED = "blocked"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings or epoch milliseconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _coerce_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@dataclass(frozen=True)
class ClassificationSnapshot:
    """Labels attached by the external classifier."""
    category: str = "other"
    priority: Priority = Priority.NORMAL
    risk: Risk = Risk.SAFE
    confidence: Optional[float] = None
    reasons: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], fallback: Optional[Dict[str, Any]] = None) -> "ClassificationSnapshot":
        data = data or {}
        fallback = fallback or {}
        category = data.get("category") or fallback.get("category") or "other"

        raw_priority = data.get("priority") or fallback.get("priority") or Priority.NORMAL.value
        try:
            priority = Priority(str(raw_priority).lower())
        except ValueError:
            priority = Priority.NORMAL

        # An unreadable risk label is never treated as safe.
        raw_risk = data.get("risk") or fallback.get("risk") or Risk.SAFE.value
        try:
            risk = Risk(str(raw_risk).lower())
        except ValueError:
            risk = Risk.NEEDS_REVIEW

        confidence = _coerce_confidence(data.get("confidence"))
        if confidence is None:
            confidence = _coerce_confidence(fallback.get("confidence"))

        reasons = data.get("reasons")
        if not isinstance(reasons, list):
            reasons = fallback.get("reasons") if isinstance(fallback.get("reasons"), list) else []

        return cls(
            category=str(category),
            priority=priority,
            risk=risk,
            confidence=confidence,
            reasons=[str(r) for r in reasons],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "priority": self.priority.value,
            "risk": self.risk.value,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class InboundItem:
    """One email thread or call record owned by a single tenant."""
    id: str
    correlation_id: Optional[str]
    created_at: datetime
    received_at: Optional[datetime] = None
    classification: ClassificationSnapshot = field(default_factory=ClassificationSnapshot)
    action: Optional[str] = None
    subject: Optional[str] = None
    snippet: Optional[str] = None
    sender: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> str:
        return self.classification.category

    @property
    def priority(self) -> Priority:
        return self.classification.priority

    @property
    def risk(self) -> Risk:
        return self.classification.risk

    @property
    def confidence(self) -> Optional[float]:
        return self.classification.confidence

    @property
    def reasons(self) -> List[str]:
        return self.classification.reasons

    def with_action(self, action: Optional[str]) -> "InboundItem":
        return replace(self, action=action)

    def merged_with(self, newer: "InboundItem") -> "InboundItem":
        """Overlay a fresher copy of this item, keeping fields it left empty."""
        return replace(
            newer,
            received_at=newer.received_at or self.received_at,
            subject=newer.subject if newer.subject is not None else self.subject,
            snippet=newer.snippet if newer.snippet is not None else self.snippet,
            sender=newer.sender if newer.sender is not None else self.sender,
            raw={**self.raw, **newer.raw},
        )

    def processing_lag(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """How long the item has waited since the channel observed it."""
        if self.received_at is None:
            return None
        now = now or utc_now()
        return max(timedelta(0), now - self.received_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "correlation_id": self.correlation_id,
            "created_at": self.created_at.isoformat(),
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "subject": self.subject,
            "snippet": self.snippet,
            "sender": self.sender,
            "action": self.action,
            **self.classification.to_dict(),
        }


@dataclass
class ItemDetail:
    """Full content for one item: thread/transcript and the draft suggestion."""
    item: InboundItem
    suggested_subject: Optional[str] = None
    suggested_body: Optional[str] = None
    thread: List[Dict[str, Any]] = field(default_factory=list)
    content: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemFilters:
    status: Optional[str] = None
    category: Optional[str] = None
    risk: Optional[str] = None
    query: Optional[str] = None
    limit: int = 120

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": self.limit}
        if self.status:
            params["status"] = self.status
        if self.category:
            params["category"] = self.category
        if self.risk:
            params["risk"] = self.risk
        if self.query:
            params["q"] = self.query
        return params


@dataclass
class ItemPage:
    items: List[InboundItem]
    next_cursor: Optional[str] = None


@dataclass
class ItemStats:
    queued: int = 0
    drafted: int = 0
    sent: int = 0
    skipped: int = 0
    total: int = 0
    sent_today: int = 0
    sent_total: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemStats":
        def _int(key: str) -> int:
            try:
                return max(0, int(data.get(key) or 0))
            except (TypeError, ValueError):
                return 0

        return cls(
            queued=_int("queued"),
            drafted=_int("drafted"),
            sent=_int("sent"),
            skipped=_int("skipped"),
            total=_int("total"),
            sent_today=_int("sent_today"),
            sent_total=_int("sent_total"),
        )


@dataclass
class SyncResult:
    ok: bool
    error: Optional[str] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "error": self.error, "cancelled": self.cancelled}


@dataclass
class ActionResult:
    ok: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncState:
    """Per tenant + channel sync bookkeeping. Mutated only by the scheduler."""
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        if self.last_success_at is None:
            return True
        return now - self.last_success_at > threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class ActionLogEntry:
    item_id: str
    action: str
    from_state: str
    to_state: str
    automated: bool
    actor_id: str
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "automated": self.automated,
            "actor_id": self.actor_id,
            "at": self.at.isoformat(),
        }
