"""
Connection State Models
=======================
Public, UI-facing view of each instance's connection.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List


class ConnectionPhase(str, Enum):
    """Per-instance session lifecycle phases."""
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    TOTP_PENDING = "totp_pending"
    CONNECTED = "connected"
    RENEWING = "renewing"


@dataclass(frozen=True)
class InstanceState:
    instance_id: str
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    is_connected: bool = False
    connection_error: Optional[str] = None
    totp_required: bool = False
    blocking_enabled: bool = True
    blocking_timer: Optional[float] = None
    stats: Optional[Dict[str, Any]] = None
    stats_last_updated: float = 0


@dataclass(frozen=True)
class StateChange:
    instance_id: str
    state: Optional[InstanceState]  # None when the instance was removed


@dataclass(frozen=True)
class InstanceStatus:
    instance_id: str
    is_connected: bool


@dataclass(frozen=True)
class AggregatedState:
    """View across every instance for "All" mode."""
    connected_count: int
    total_count: int
    is_connected: bool
    blocking_enabled: bool
    blocking_state: str  # "enabled" | "disabled" | "mixed"
    stats: Optional[Dict[str, Any]]
    instance_statuses: List[InstanceStatus] = field(default_factory=list)


def _number(section: Dict[str, Any], key: str) -> float:
    value = (section or {}).get(key)
    return value if isinstance(value, (int, float)) else 0


def aggregate_stats(stats_list: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Sum counters across instances; percentage recomputed from the totals."""
    queries = {key: 0 for key in ("total", "blocked", "unique_domains", "forwarded", "cached")}
    clients = {"active": 0, "total": 0}
    gravity_domains = 0
    last_update = 0

    for stats in stats_list:
        for key in queries:
            queries[key] += _number(stats.get("queries"), key)
        for key in clients:
            clients[key] += _number(stats.get("clients"), key)
        gravity_domains += _number(stats.get("gravity"), "domains_being_blocked")
        last_update = max(last_update, _number(stats.get("gravity"), "last_update"))

    total = queries["total"]
    queries["percent_blocked"] = (queries["blocked"] / total) * 100 if total > 0 else 0
    return {
        "queries": queries,
        "clients": clients,
        "gravity": {"domains_being_blocked": gravity_domains, "last_update": last_update},
    }
