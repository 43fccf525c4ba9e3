"""Channel adapter interface consumed by the triage engine."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from inboxguard.core.models import (
    ActionResult,
    Channel,
    InboundItem,
    ItemDetail,
    ItemFilters,
    ItemPage,
    ItemStats,
    SyncResult,
)


class ChannelAdapter(ABC):
    """Fetch/action collaborator for one tenant on one channel."""

    channel: Channel

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id

    @abstractmethod
    async def list_items(self, filters: ItemFilters, cursor: Optional[str] = None) -> ItemPage:
        """Return one page of items, newest first."""

    @abstractmethod
    async def get_item_detail(self, item_id: str) -> ItemDetail:
        """Return full content, thread/transcript and draft suggestion."""

    @abstractmethod
    async def trigger_sync(self, force: bool = False) -> SyncResult:
        """Run one tenant-channel sync attempt on the host."""

    @abstractmethod
    async def apply_action(
        self,
        item: InboundItem,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        """Ask the host to perform a lifecycle action (send, draft, archive)."""

    @abstractmethod
    async def update_guardrail_settings(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a settings patch; returns the host's resolved settings."""

    @abstractmethod
    async def get_stats(self, filters: Optional[ItemFilters] = None) -> ItemStats:
        """Aggregated counts. Read-only."""

    async def close(self) -> None:
        return None
