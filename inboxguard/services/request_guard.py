"""
Request Coalescer / Staleness Guard

Every async fetch is tagged with a sequence number scoped to its kind.
A response is applied only while its sequence is still the latest issued
for that kind; starting a new fetch of the same kind cancels the previous
one. Cancellation triggered here is reported as CANCELLED and never as a
failure.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from inboxguard.services.errors import user_message

logger = logging.getLogger(__name__)


class FetchKind(str, Enum):
    LIST = "list"
    LIST_PAGE = "list_page"
    DETAIL = "detail"
    STATS = "stats"
    SETTINGS = "settings"


class FetchStatus(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class FetchOutcome:
    kind: FetchKind
    sequence: int
    status: FetchStatus
    value: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None

    @property
    def applied(self) -> bool:
        return self.status == FetchStatus.APPLIED


class RequestGuard:
    """Generation counter plus cancellation handle per fetch kind."""

    def __init__(self) -> None:
        self._sequences: Dict[FetchKind, int] = defaultdict(int)
        self._tasks: Dict[FetchKind, asyncio.Task] = {}
        self._cancelled: Set[Tuple[FetchKind, int]] = set()
        self._task_sequences: Dict[int, int] = {}

    def latest(self, kind: FetchKind) -> int:
        return self._sequences[kind]

    def is_current(self, kind: FetchKind, sequence: int) -> bool:
        return self._sequences[kind] == sequence

    def in_flight(self, kind: FetchKind) -> bool:
        task = self._tasks.get(kind)
        return task is not None and not task.done()

    def issue(self, kind: FetchKind, cancel_previous: bool = True) -> int:
        if cancel_previous:
            self._cancel_task(kind)
        self._sequences[kind] += 1
        return self._sequences[kind]

    def _cancel_task(self, kind: FetchKind) -> None:
        task = self._tasks.pop(kind, None)
        if task is None or task.done():
            return
        sequence = self._task_sequences.get(id(task))
        if sequence is not None:
            self._cancelled.add((kind, sequence))
        task.cancel()

    def cancel(self, kind: FetchKind) -> None:
        """Cancel the in-flight fetch of a kind; any late result is stale."""
        self._cancel_task(kind)
        self._sequences[kind] += 1

    def cancel_all(self) -> None:
        for kind in list(FetchKind):
            self.cancel(kind)

    async def run(
        self,
        kind: FetchKind,
        fetch: Callable[[], Awaitable[Any]],
        apply: Optional[Callable[[Any], None]] = None,
        cancel_previous: bool = True,
    ) -> FetchOutcome:
        """
        Issue a fetch and apply its result only if it is still current.

        Errors are translated into a FAILED outcome with a sanitized message,
        or dropped as STALE if a newer fetch of the same kind was issued.
        A cancellation coming from outside this guard propagates.
        """
        sequence = self.issue(kind, cancel_previous=cancel_previous)
        task = asyncio.ensure_future(fetch())
        self._tasks[kind] = task
        self._task_sequences[id(task)] = sequence

        try:
            value = await task
        except asyncio.CancelledError:
            if (kind, sequence) in self._cancelled:
                logger.debug(f"{kind.value} fetch #{sequence} cancelled")
                return FetchOutcome(kind, sequence, FetchStatus.CANCELLED)
            raise
        except Exception as exc:
            if not self.is_current(kind, sequence):
                return FetchOutcome(kind, sequence, FetchStatus.STALE)
            return FetchOutcome(
                kind,
                sequence,
                FetchStatus.FAILED,
                error=user_message(exc),
                exception=exc,
            )
        finally:
            self._cancelled.discard((kind, sequence))
            self._task_sequences.pop(id(task), None)
            if self._tasks.get(kind) is task:
                del self._tasks[kind]

        if not self.is_current(kind, sequence):
            logger.debug(f"Discarding stale {kind.value} response #{sequence}")
            return FetchOutcome(kind, sequence, FetchStatus.STALE, value=value)
        if apply is not None:
            apply(value)
        return FetchOutcome(kind, sequence, FetchStatus.APPLIED, value=value)
