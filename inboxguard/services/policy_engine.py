"""
Decision Policy Engine

Maps (item, guardrail settings, send counters) to an eligibility verdict:
- auto_send_eligible: automation may act without a human
- needs_review: surface to a human (throttles land here, never in blocked)
- blocked: policy forbids automated handling

Rules are evaluated in a fixed precedence, first match wins. Deny-list and
risk checks come before allow-list and confidence checks.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from inboxguard.core.guardrails import GuardrailSettings
from inboxguard.core.models import InboundItem, ItemStats, Risk, utc_now


class Eligibility(str, Enum):
    AUTO_SEND_ELIGIBLE = "auto_send_eligible"
    NEEDS_REVIEW = "needs_review"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class PolicyDecision:
    eligibility: Eligibility
    rule: str
    reason: str

    def to_dict(self):
        return {
            "eligibility": self.eligibility.value,
            "rule": self.rule,
            "reason": self.reason,
        }


@dataclass
class SendCounters:
    """Counters the cap and the approval runway are measured against."""
    sent_today: int = 0
    lifetime_processed: int = 0

    def record_send(self) -> None:
        self.sent_today += 1
        self.lifetime_processed += 1

    def refresh_from(self, stats: ItemStats, items: Iterable[InboundItem], now: Optional[datetime] = None) -> None:
        """Recount from authoritative data, never below what the host reports."""
        derived = counters_from_items(items, now)
        self.sent_today = max(stats.sent_today, derived.sent_today)
        self.lifetime_processed = max(stats.sent_total, derived.lifetime_processed)


_DELIVERED_ACTIONS = ("sent", "auto_sent")


def counters_from_items(items: Iterable[InboundItem], now: Optional[datetime] = None) -> SendCounters:
    """Sent items since UTC midnight, and all sent items, among `items`."""
    now = now or utc_now()
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    delivered = [item for item in items if item.action in _DELIVERED_ACTIONS]
    return SendCounters(
        sent_today=sum(1 for item in delivered if item.created_at >= day_start),
        lifetime_processed=len(delivered),
    )


def explain(
    item: InboundItem,
    settings: GuardrailSettings,
    send_count_today: int,
    *,
    lifetime_processed: int = 0,
    now: Optional[datetime] = None,
) -> PolicyDecision:
    """Evaluate and report which rule decided the verdict."""
    if settings.automation_paused:
        return PolicyDecision(Eligibility.NEEDS_REVIEW, "automation_paused", "Automation is paused")

    if item.risk == Risk.BLOCKED:
        return PolicyDecision(Eligibility.BLOCKED, "risk_blocked", "Classifier marked this item as blocked")
    if item.category in settings.never_auto_send_categories:
        return PolicyDecision(
            Eligibility.BLOCKED,
            "category_denied",
            f"Category '{item.category}' is never auto-sent",
        )

    if item.risk == Risk.NEEDS_REVIEW:
        return PolicyDecision(Eligibility.NEEDS_REVIEW, "risk_needs_review", "Classifier asked for review")

    if item.confidence is None:
        return PolicyDecision(Eligibility.NEEDS_REVIEW, "confidence_missing", "No classifier confidence")
    if item.confidence * 100 < settings.auto_send_min_confidence:
        return PolicyDecision(
            Eligibility.NEEDS_REVIEW,
            "confidence_below_threshold",
            f"Confidence {item.confidence * 100:.0f} is below {settings.auto_send_min_confidence:g}",
        )

    if item.category not in settings.auto_send_allowed_categories:
        return PolicyDecision(
            Eligibility.NEEDS_REVIEW,
            "category_not_allowed",
            f"Category '{item.category}' is not on the auto-send list",
        )

    if send_count_today >= settings.daily_send_cap:
        return PolicyDecision(
            Eligibility.NEEDS_REVIEW,
            "daily_cap_reached",
            f"Daily send cap of {settings.daily_send_cap} reached",
        )

    if settings.business_hours_only and not settings.business_hours.is_open(now):
        return PolicyDecision(Eligibility.NEEDS_REVIEW, "outside_business_hours", "Outside business hours")

    if lifetime_processed < settings.require_approval_for_first_n:
        return PolicyDecision(
            Eligibility.NEEDS_REVIEW,
            "approval_runway",
            f"First {settings.require_approval_for_first_n} items require approval "
            f"({lifetime_processed} processed so far)",
        )

    return PolicyDecision(Eligibility.AUTO_SEND_ELIGIBLE, "eligible", "All guardrails passed")


def evaluate(
    item: InboundItem,
    settings: GuardrailSettings,
    send_count_today: int,
    *,
    lifetime_processed: int = 0,
    now: Optional[datetime] = None,
) -> Eligibility:
    return explain(
        item,
        settings,
        send_count_today,
        lifetime_processed=lifetime_processed,
        now=now,
    ).eligibility


def annotate(
    items: Iterable[InboundItem],
    settings: GuardrailSettings,
    counters: SendCounters,
    now: Optional[datetime] = None,
) -> List[Tuple[InboundItem, PolicyDecision]]:
    return [
        (
            item,
            explain(
                item,
                settings,
                counters.sent_today,
                lifetime_processed=counters.lifetime_processed,
                now=now,
            ),
        )
        for item in items
    ]
