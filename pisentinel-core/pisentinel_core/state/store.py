"""
Connection State Store
======================
Per-instance connection state with change notification.

Observers either register a callback with ``subscribe`` or consume
``stream()`` as an async iterator. Every update to one instance is applied
as a single replacement of its frozen ``InstanceState``.
"""

import asyncio
import time
from dataclasses import replace, fields
from typing import Optional, Dict, Callable, List, AsyncIterator, Set, Any

import structlog

from .models import (
    ConnectionPhase,
    InstanceState,
    StateChange,
    InstanceStatus,
    AggregatedState,
    aggregate_stats,
)

logger = structlog.get_logger(__name__)

StateListener = Callable[[StateChange], None]

_UPDATABLE = frozenset(f.name for f in fields(InstanceState)) - {"instance_id"}


class ConnectionStateStore:
    def __init__(self, stats_cache_ttl: float = 30.0):
        self.stats_cache_ttl = stats_cache_ttl
        self.active_instance_id: Optional[str] = None
        self._states: Dict[str, InstanceState] = {}
        self._stats_cached_at: Dict[str, float] = {}
        self._listeners: List[StateListener] = []
        self._queues: Set[asyncio.Queue] = set()

    # ----- Reads -----

    def get(self, instance_id: str) -> InstanceState:
        """State for an instance; a fresh disconnected state for unknown ids."""
        return self._states.get(instance_id) or InstanceState(instance_id=instance_id)

    def instance_ids(self) -> List[str]:
        return list(self._states)

    def connected_ids(self) -> List[str]:
        return [i for i, s in self._states.items() if s.is_connected]

    def is_cache_valid(self, instance_id: str, now: Optional[float] = None) -> bool:
        """True while the instance's stats are younger than the cache TTL."""
        cached_at = self._stats_cached_at.get(instance_id)
        if cached_at is None:
            return False
        now = time.time() if now is None else now
        return now - cached_at <= self.stats_cache_ttl

    def invalidate_cache(self, instance_id: Optional[str] = None) -> None:
        if instance_id is None:
            self._stats_cached_at.clear()
        else:
            self._stats_cached_at.pop(instance_id, None)

    def aggregated(self) -> AggregatedState:
        """
        "All" mode: connected if any instance is connected; blocking only if
        every connected instance is blocking; stats summed across connected
        instances that have them.
        """
        states = list(self._states.values())
        connected = [s for s in states if s.is_connected]

        if not connected or all(s.blocking_enabled for s in connected):
            blocking_state = "enabled"
        elif not any(s.blocking_enabled for s in connected):
            blocking_state = "disabled"
        else:
            blocking_state = "mixed"

        with_stats = [s.stats for s in connected if s.stats is not None]
        return AggregatedState(
            connected_count=len(connected),
            total_count=len(states),
            is_connected=bool(connected),
            blocking_enabled=bool(connected) and all(s.blocking_enabled for s in connected),
            blocking_state=blocking_state,
            stats=aggregate_stats(with_stats) if with_stats else None,
            instance_statuses=[InstanceStatus(s.instance_id, s.is_connected) for s in states],
        )

    def current(self) -> Any:
        """The active instance's state, or the aggregate in "All" mode."""
        if self.active_instance_id is not None:
            return self.get(self.active_instance_id)
        return self.aggregated()

    # ----- Writes -----

    def update(self, instance_id: str, **changes: Any) -> InstanceState:
        """Apply ``changes`` to one instance and notify observers."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown state fields: {sorted(unknown)}")

        if "stats" in changes and changes["stats"] is not None:
            now = time.time()
            changes.setdefault("stats_last_updated", now)
            self._stats_cached_at[instance_id] = now
        if "phase" in changes and "is_connected" not in changes:
            changes["is_connected"] = changes["phase"] == ConnectionPhase.CONNECTED

        state = replace(self.get(instance_id), **changes)
        self._states[instance_id] = state
        self._notify(StateChange(instance_id, state))
        return state

    def reset(self, instance_id: str) -> InstanceState:
        state = InstanceState(instance_id=instance_id)
        self._states[instance_id] = state
        self._stats_cached_at.pop(instance_id, None)
        self._notify(StateChange(instance_id, state))
        return state

    def remove(self, instance_id: str) -> None:
        self._states.pop(instance_id, None)
        self._stats_cached_at.pop(instance_id, None)
        if self.active_instance_id == instance_id:
            self.active_instance_id = None
        self._notify(StateChange(instance_id, None))

    def set_active(self, instance_id: Optional[str]) -> None:
        self.active_instance_id = instance_id
        if instance_id is not None:
            self._notify(StateChange(instance_id, self.get(instance_id)))

    # ----- Observers -----

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback. Returns the function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def stream(self) -> AsyncIterator[StateChange]:
        """Async iterator over every change from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

    def _notify(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                # A broken observer must not break state updates
                logger.exception("state_listener_failed", instance_id=change.instance_id)
        for queue in self._queues:
            queue.put_nowait(change)
