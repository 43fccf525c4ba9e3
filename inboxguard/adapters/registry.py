"""Adapter registry keyed by channel."""
from __future__ import annotations

from typing import Callable, Dict

from inboxguard.adapters.base import ChannelAdapter
from inboxguard.adapters.calls import CallsChannelAdapter
from inboxguard.adapters.email import EmailChannelAdapter
from inboxguard.core.models import Channel
from inboxguard.services.errors import UnknownChannelError

AdapterFactory = Callable[[str], ChannelAdapter]


class AdapterRegistry:
    def __init__(self) -> None:
        self._factories: Dict[Channel, AdapterFactory] = {}
        self.register(Channel.EMAIL, EmailChannelAdapter)
        self.register(Channel.CALLS, CallsChannelAdapter)

    def register(self, channel: Channel, factory: AdapterFactory) -> None:
        self._factories[Channel(channel)] = factory

    def resolve_channel(self, channel: str) -> Channel:
        try:
            resolved = Channel(str(channel).lower())
        except ValueError:
            raise UnknownChannelError(channel)
        if resolved not in self._factories:
            raise UnknownChannelError(channel)
        return resolved

    def create(self, channel: str, tenant_id: str) -> ChannelAdapter:
        return self._factories[self.resolve_channel(channel)](tenant_id)

    def list_channels(self) -> list[str]:
        return [c.value for c in self._factories]


registry = AdapterRegistry()
