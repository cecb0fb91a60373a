"""
PiSentinel Core - Connection State
==================================
Observable per-instance connection state and the "All" mode aggregate.
"""

from .models import (
    ConnectionPhase,
    InstanceState,
    StateChange,
    InstanceStatus,
    AggregatedState,
    aggregate_stats,
)
from .store import ConnectionStateStore, StateListener

__all__ = [
    "ConnectionPhase",
    "InstanceState",
    "StateChange",
    "InstanceStatus",
    "AggregatedState",
    "aggregate_stats",
    "ConnectionStateStore",
    "StateListener",
]
