"""
Sync Scheduler

One scheduler per tenant + channel. It owns a single timer handle, a single
in-flight tick, the backoff value and the channel's SyncState:

- success resets backoff to base and stamps last_success_at
- failure doubles backoff up to the cap and records a sanitized last_error
- cancellation records nothing; the superseding operation schedules next
- the next tick is scheduled from the completion of the previous one
- force_sync() bypasses the timer and cancels the in-flight tick
- while stale, one near-immediate extra tick is scheduled per stale episode
- ticks are deferred while the user interacted within the quiet window
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from inboxguard.core.models import Channel, SyncResult, SyncState, utc_now
from inboxguard.services.errors import SYNC_UNAVAILABLE_MESSAGE, user_message
from inboxguard.services.logging import log_sync_event
from inboxguard.services.metrics import record_error, record_sync

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


_CHANNEL_DEFAULTS = {
    Channel.EMAIL: (15_000, 120_000),
    Channel.CALLS: (30_000, 60_000),
}


@dataclass(frozen=True)
class SchedulerConfig:
    base_ms: int
    cap_ms: int
    stale_fastpath_ms: int = 2_000
    interaction_quiet_ms: int = 5_000
    stale_fastpath_enabled: bool = True

    def __post_init__(self):
        if self.base_ms <= 0:
            raise ValueError("base_ms must be positive")
        if self.cap_ms < self.base_ms:
            raise ValueError("cap_ms must be >= base_ms")

    @classmethod
    def for_channel(cls, channel: Channel) -> "SchedulerConfig":
        base_default, cap_default = _CHANNEL_DEFAULTS[Channel(channel)]
        prefix = f"INBOXGUARD_{Channel(channel).value.upper()}_SYNC"
        base_ms = _env_int(f"{prefix}_BASE_MS", base_default)
        return cls(
            base_ms=base_ms,
            cap_ms=_env_int(f"{prefix}_CAP_MS", cap_default),
            stale_fastpath_ms=_env_int("INBOXGUARD_STALE_FASTPATH_MS", 2_000),
            interaction_quiet_ms=_env_int("INBOXGUARD_INTERACTION_QUIET_MS", 5_000),
            stale_fastpath_enabled=_env_bool("INBOXGUARD_STALE_FASTPATH_ENABLED", True),
        )


class SyncScheduler:
    def __init__(
        self,
        sync: Callable[[], Awaitable[Any]],
        config: SchedulerConfig,
        *,
        tenant_id: str = "",
        channel: str = "",
        stale_threshold: timedelta = timedelta(minutes=10),
        on_success: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._sync = sync
        self.config = config
        self.tenant_id = tenant_id
        self.channel = channel
        self.stale_threshold = stale_threshold
        self._on_success = on_success
        self._clock = clock
        self._monotonic = monotonic

        self.backoff_ms = config.base_ms
        self.state = SyncState()
        self._running = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None
        self._stale_fastpath_used = False
        self._last_interaction: Optional[float] = None
        self.tick_count = 0

    # ==================== STATE ====================

    @property
    def running(self) -> bool:
        return self._running

    @property
    def syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def next_tick_scheduled(self) -> bool:
        return self._timer is not None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return self.state.is_stale(now or self._clock(), self.stale_threshold)

    def indicator(self, now: Optional[datetime] = None) -> str:
        if self.syncing:
            return "syncing"
        if self.state.last_error:
            return "error"
        if not self._running:
            return "stopped"
        if self.is_stale(now):
            return "stale"
        return "connected"

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        indicator = self.indicator(now)
        return {
            "tenant_id": self.tenant_id,
            "channel": self.channel,
            "running": self._running,
            "syncing": self.syncing,
            "indicator": indicator,
            "message": SYNC_UNAVAILABLE_MESSAGE if indicator == "error" else None,
            "backoff_ms": self.backoff_ms,
            "is_stale": self.is_stale(now),
            "ticks": self.tick_count,
            **self.state.to_dict(),
        }

    # ==================== LIFECYCLE ====================

    def start(self) -> None:
        """Begin the automatic schedule with an immediate first tick."""
        if self._running:
            return
        self._running = True
        self._schedule(0)
        logger.info(f"Sync scheduler started for {self.channel}/{self.tenant_id}")

    def cancel(self) -> None:
        """Stop scheduling and abort the in-flight tick, if any."""
        self._running = False
        self._cancel_timer()
        self._cancel_inflight()

    async def stop(self) -> None:
        task = self._inflight
        self.cancel()
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"Sync scheduler stopped for {self.channel}/{self.tenant_id}")

    def note_interaction(self) -> None:
        self._last_interaction = self._monotonic()

    def check_staleness(self) -> bool:
        """Schedule the stale fast-path tick if due. Returns True if scheduled."""
        if not (self._running and self.config.stale_fastpath_enabled):
            return False
        if self._stale_fastpath_used or self.syncing or not self.is_stale():
            return False
        self._stale_fastpath_used = True
        self._schedule(self.config.stale_fastpath_ms)
        return True

    # ==================== TICKS ====================

    async def tick(self) -> SyncResult:
        """Run one sync attempt and fold its outcome into backoff and SyncState."""
        self.tick_count += 1
        self.state.last_attempt_at = self._clock()
        started = time.perf_counter()
        try:
            await self._sync()
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            self.backoff_ms = min(self.backoff_ms * 2, self.config.cap_ms)
            self.state.last_error = user_message(exc, SYNC_UNAVAILABLE_MESSAGE)
            self.state.last_error_at = self._clock()
            record_sync(self.channel, "failure", duration_ms)
            record_error(type(exc).__name__, self.channel)
            log_sync_event(
                self.tenant_id,
                self.channel,
                "failure",
                self.backoff_ms,
                error=str(exc),
                duration_ms=round(duration_ms, 2),
            )
            return SyncResult(ok=False, error=self.state.last_error)

        duration_ms = (time.perf_counter() - started) * 1000
        self.backoff_ms = self.config.base_ms
        self.state.last_success_at = self._clock()
        self.state.last_error = None
        self._stale_fastpath_used = False
        record_sync(self.channel, "success", duration_ms)
        log_sync_event(
            self.tenant_id,
            self.channel,
            "success",
            self.backoff_ms,
            duration_ms=round(duration_ms, 2),
        )

        if self._on_success is not None:
            try:
                await self._on_success()
            except Exception as exc:
                logger.exception(f"Post-sync hook failed for {self.channel}/{self.tenant_id}: {exc}")
        return SyncResult(ok=True)

    async def force_sync(self) -> SyncResult:
        """Sync now, superseding the timer and any automatic tick in flight."""
        self._cancel_timer()
        self._cancel_inflight()
        task = asyncio.ensure_future(self.tick())
        self._inflight = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._inflight is not task:
                return SyncResult(ok=False, cancelled=True)
            raise
        finally:
            if self._inflight is task:
                self._inflight = None
        if self._running:
            self._schedule(self._next_delay_ms())
        return result

    def _next_delay_ms(self) -> int:
        if (
            self.config.stale_fastpath_enabled
            and not self._stale_fastpath_used
            and self.is_stale()
        ):
            self._stale_fastpath_used = True
            return self.config.stale_fastpath_ms
        return self.backoff_ms

    def _quiet_remaining_ms(self) -> int:
        if self._last_interaction is None:
            return 0
        elapsed_ms = (self._monotonic() - self._last_interaction) * 1000
        return max(0, int(self.config.interaction_quiet_ms - elapsed_ms))

    def _schedule(self, delay_ms: int) -> None:
        self._cancel_timer()
        if not self._running:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0, delay_ms) / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if not self._running or self.syncing:
            return
        quiet_ms = self._quiet_remaining_ms()
        if quiet_ms > 0:
            logger.debug(f"Deferring {self.channel} tick {quiet_ms}ms for user interaction")
            self._schedule(quiet_ms)
            return
        self._inflight = asyncio.ensure_future(self._run_scheduled_tick())

    async def _run_scheduled_tick(self) -> None:
        task = asyncio.current_task()
        try:
            await self.tick()
        finally:
            if self._inflight is task:
                self._inflight = None
        self._schedule(self._next_delay_ms())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_inflight(self) -> None:
        task = self._inflight
        self._inflight = None
        if task is not None and not task.done():
            task.cancel()
