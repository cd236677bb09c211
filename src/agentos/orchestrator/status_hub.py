"""Status Broadcast Hub: in-process fan-out of session status.

The hub keeps the latest status snapshot for every session and pushes each
change to all connected subscribers. Every subscriber owns a bounded
asyncio.Queue; publication never awaits a subscriber, so a slow or dead
consumer is evicted (its ``on_close`` runs) instead of stalling the others.

Event kinds:
    init: Full snapshot, sent first on every new stream
    status: One session's updated fields
    heartbeat: Liveness only, sent on a fixed interval

Example usage:
    >>> from agentos.config import StatusConfig
    >>> from agentos.orchestrator.status_hub import StatusHub
    >>>
    >>> hub = StatusHub(StatusConfig())
    >>> await hub.start()
    >>> await hub.update_status("4f1c...", setup_status="creating_worktree")
    >>> async for event in hub.stream():
    ...     print(event.kind, event.data)
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agentos.config import StatusConfig
from agentos.database.models.session import LifecycleStatus
from agentos.database.queries.session import list_sessions
from agentos.logging import get_logger


class StatusEventKind(str, Enum):
    """Types of status stream events."""

    INIT = "init"
    STATUS = "status"
    HEARTBEAT = "heartbeat"


class StatusData(BaseModel):
    """Latest known status of one session."""

    status: str = Field(default="unknown", description="running/waiting/idle/dead/unknown")
    last_line: str | None = None
    hook_event: str | None = None
    tool_name: str | None = None
    tool_detail: str | None = None
    setup_status: str | None = None
    setup_error: str | None = None
    lifecycle_status: str | None = None
    updated_at: float = Field(default_factory=time.time)
    stale: bool = False


STATUS_FIELDS = frozenset(StatusData.model_fields) - {"updated_at", "stale"}


@dataclass
class StatusEvent:
    """One event delivered to subscribers."""

    kind: StatusEventKind
    data: dict[str, Any]

    def to_sse(self) -> dict[str, Any]:
        """Convert to the dict shape EventSourceResponse expects."""
        return {"event": self.kind.value, "data": json.dumps(self.data)}


@dataclass
class Subscription:
    """A connected subscriber and its private queue."""

    id: str
    queue: asyncio.Queue[StatusEvent | None]
    on_close: Callable[[], None] | None = None
    added_at: float = field(default_factory=time.monotonic)


def _value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


class StatusHub:
    """Process-wide publish/subscribe hub for session status.

    Attributes:
        config: Status configuration
        logger: Structured logger instance
    """

    def __init__(self, config: StatusConfig | None = None) -> None:
        self.config = config or StatusConfig()
        self.logger = get_logger(__name__)
        self._statuses: dict[str, StatusData] = {}
        self._subscribers: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._heartbeat_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def update_status(
        self, session_id: str, unset: Iterable[str] = (), **fields: Any
    ) -> StatusData:
        """Merge ``fields`` into a session's snapshot and publish the change.

        Fields left out (or passed as None) keep their previous value; names
        in ``unset`` are cleared and published as null. A fresh update
        clears the stale flag.

        Raises:
            ValueError: If an unknown field is passed
        """
        cleared = set(unset)
        unknown = (set(fields) | cleared) - STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown status fields: {sorted(unknown)}")

        changes = {k: _value(v) for k, v in fields.items() if v is not None}
        changes.update({name: None for name in cleared if name not in changes})

        async with self._lock:
            existing = self._statuses.get(session_id)
            if existing is None and len(self._statuses) >= self.config.max_statuses:
                self._evict_oldest_statuses()

            base = existing.model_dump() if existing else {}
            base.update(changes)
            base["updated_at"] = time.time()
            base["stale"] = False
            data = StatusData(**base)
            self._statuses[session_id] = data

            self._publish_locked(
                StatusEvent(StatusEventKind.STATUS, {"session_id": session_id, **changes})
            )

        return data

    def _evict_oldest_statuses(self) -> None:
        count = max(1, self.config.max_statuses // 100)
        oldest = sorted(self._statuses.items(), key=lambda item: item[1].updated_at)[:count]
        for sid, _data in oldest:
            del self._statuses[sid]
        self.logger.warning("status_snapshot_evicted", evicted=len(oldest))

    def get_status(self, session_id: str) -> StatusData | None:
        return self._statuses.get(session_id)

    def get_all_statuses(self) -> dict[str, StatusData]:
        return dict(self._statuses)

    async def clear_status(self, session_id: str) -> None:
        """Forget a session (after deletion)."""
        async with self._lock:
            self._statuses.pop(session_id, None)

    async def mark_stale(self, now: float | None = None) -> int:
        """Flag snapshots not updated within ``stale_after_seconds``.

        Dead sessions and sessions whose setup has already failed are never
        marked stale.

        Returns:
            Number of snapshots newly flagged
        """
        now = now if now is not None else time.time()
        threshold = self.config.stale_after_seconds
        marked = 0
        async with self._lock:
            for sid, data in self._statuses.items():
                if data.stale or data.status == "dead":
                    continue
                if data.lifecycle_status == LifecycleStatus.failed.value:
                    continue
                if now - data.updated_at > threshold:
                    self._statuses[sid] = data.model_copy(update={"stale": True})
                    marked += 1
        if marked:
            self.logger.debug("status_marked_stale", count=marked)
        return marked

    async def sync_from_database(
        self, session_factory: Callable[[], AsyncSession]
    ) -> dict[str, int]:
        """Rebuild snapshots from persisted session state.

        Snapshots updated within the last minute are kept as they are.

        Returns:
            Counts of synced, alive, and dead sessions
        """
        async with session_factory() as db:
            rows = await list_sessions(db)

        now = time.time()
        synced = alive = dead = 0
        async with self._lock:
            for row in rows:
                sid = str(row.id)
                existing = self._statuses.get(sid)
                if existing is not None and now - existing.updated_at < 60:
                    continue

                is_alive = row.lifecycle_status == LifecycleStatus.ready
                self._statuses[sid] = StatusData(
                    status="idle" if is_alive else "dead",
                    setup_status=_value(row.setup_status),
                    setup_error=row.setup_error,
                    lifecycle_status=_value(row.lifecycle_status),
                    updated_at=now,
                )
                synced += 1
                if is_alive:
                    alive += 1
                else:
                    dead += 1

        self.logger.info("status_synced_from_database", synced=synced, alive=alive, dead=dead)
        return {"synced": synced, "alive": alive, "dead": dead}

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self, on_close: Callable[[], None] | None = None) -> Subscription:
        """Register a subscriber with its own bounded queue.

        When the subscriber cap is reached the oldest subscriber is evicted.
        """
        async with self._lock:
            if len(self._subscribers) >= self.config.max_subscribers:
                oldest = min(self._subscribers.values(), key=lambda s: s.added_at)
                self._evict_locked(oldest.id, reason="subscriber_limit")

            sub = Subscription(
                id=f"sub_{uuid.uuid4()}",
                queue=asyncio.Queue(maxsize=self.config.subscriber_queue_size),
                on_close=on_close,
            )
            self._subscribers[sub.id] = sub

        self.logger.info("status_subscriber_added", subscriber_id=sub.id, total=self.subscriber_count)
        return sub

    async def unsubscribe(self, subscriber_id: str) -> None:
        async with self._lock:
            removed = self._subscribers.pop(subscriber_id, None)
        if removed is not None:
            self.logger.info(
                "status_subscriber_removed",
                subscriber_id=subscriber_id,
                total=self.subscriber_count,
            )

    def _evict_locked(self, subscriber_id: str, reason: str) -> None:
        sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return
        self.logger.warning("status_subscriber_evicted", subscriber_id=subscriber_id, reason=reason)

        # Wake a stream blocked on get() so it can exit
        try:
            sub.queue.put_nowait(None)
        except asyncio.QueueFull:
            # Drop the oldest pending event to make room for the close marker
            sub.queue.get_nowait()
            sub.queue.put_nowait(None)

        if sub.on_close is not None:
            try:
                sub.on_close()
            except Exception as e:
                self.logger.warning(
                    "status_subscriber_close_failed",
                    subscriber_id=subscriber_id,
                    error=str(e),
                )

    def _publish_locked(self, event: StatusEvent) -> None:
        for sid, sub in list(self._subscribers.items()):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._evict_locked(sid, reason="queue_full")

    async def publish(self, event: StatusEvent) -> None:
        """Deliver an event to every subscriber without blocking."""
        async with self._lock:
            self._publish_locked(event)

    async def stream(self) -> AsyncIterator[StatusEvent]:
        """Subscribe and yield events, starting with an ``init`` snapshot.

        The subscription is registered before the snapshot is taken, so no
        update published in between is lost.
        """
        sub = await self.subscribe()
        try:
            async with self._lock:
                snapshot = {sid: data.model_dump() for sid, data in self._statuses.items()}
            yield StatusEvent(StatusEventKind.INIT, {"statuses": snapshot})

            while True:
                event = await sub.queue.get()
                if event is None:
                    break
                yield event
        finally:
            await self.unsubscribe(sub.id)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Publish one heartbeat and refresh stale flags."""
        await self.publish(StatusEvent(StatusEventKind.HEARTBEAT, {"timestamp": time.time()}))
        await self.mark_stale()

    async def start(self) -> None:
        """Start the heartbeat loop. No-op if already running."""
        if self._running:
            self.logger.warning("status_hub_already_running")
            return

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info(
            "status_hub_started",
            heartbeat_interval_seconds=self.config.heartbeat_interval_seconds,
        )

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.heartbeat_interval_seconds)
                await self.heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("status_heartbeat_error", error=str(e), exc_info=True)

    async def shutdown(self) -> None:
        """Stop the heartbeat and close every subscriber."""
        self._running = False
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        async with self._lock:
            closed = len(self._subscribers)
            for sid in list(self._subscribers):
                self._evict_locked(sid, reason="shutdown")

        self.logger.info("status_hub_shutdown", closed_subscribers=closed)


# Global hub instance
_hub: StatusHub | None = None


def get_status_hub(config: StatusConfig | None = None) -> StatusHub:
    """Get or create the global status hub.

    Returns:
        The singleton StatusHub instance.
    """
    global _hub
    if _hub is None:
        _hub = StatusHub(config)
    return _hub


def reset_status_hub() -> None:
    """Drop the global hub (used between app instances and in tests)."""
    global _hub
    _hub = None
