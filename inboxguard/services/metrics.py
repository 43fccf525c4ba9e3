"""
Metrics collection for InboxGuard.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict

# In-memory metrics store
_metrics: Dict[str, Any] = {
    "requests": defaultdict(int),
    "syncs": defaultdict(int),
    "actions": defaultdict(int),
    "errors": defaultdict(int),
    "sync_durations": [],
    "start_time": datetime.now(timezone.utc).isoformat(),
}


def record_request(method: str, path: str, status_code: int):
    _metrics["requests"][f"{method} {path}"] += 1
    _metrics["requests"][f"status_{status_code}"] += 1


def record_sync(channel: str, outcome: str, duration_ms: float):
    """Record one sync tick (outcome: success | failure)."""
    _metrics["syncs"][f"{channel}:{outcome}"] += 1

    # Keep last 1000 durations
    _metrics["sync_durations"].append(duration_ms)
    if len(_metrics["sync_durations"]) > 1000:
        _metrics["sync_durations"] = _metrics["sync_durations"][-1000:]


def record_action(channel: str, action: str, status: str):
    """Record an action outcome (status: applied | noop | failed)."""
    _metrics["actions"][f"{channel}:{action}:{status}"] += 1


def record_error(error_type: str, channel: str = ""):
    _metrics["errors"][error_type] += 1
    if channel:
        _metrics["errors"][f"{error_type}:{channel}"] += 1


def get_metrics() -> Dict[str, Any]:
    """Get current metrics."""
    durations = _metrics["sync_durations"]
    avg_duration = sum(durations) / len(durations) if durations else 0
    p95_duration = sorted(durations)[int(len(durations) * 0.95)] if len(durations) >= 20 else 0

    uptime_seconds = (datetime.now(timezone.utc) - datetime.fromisoformat(_metrics["start_time"])).total_seconds()

    return {
        "uptime_seconds": int(uptime_seconds),
        "requests": {
            "total": sum(v for k, v in _metrics["requests"].items() if not k.startswith("status_")),
            "by_status": {k: v for k, v in _metrics["requests"].items() if k.startswith("status_")},
        },
        "syncs": {
            "total": sum(_metrics["syncs"].values()),
            "by_channel_and_outcome": dict(_metrics["syncs"]),
        },
        "actions": {
            "total": sum(_metrics["actions"].values()),
            "by_channel_action_status": dict(_metrics["actions"]),
        },
        "errors": {
            "total": sum(_metrics["errors"].values()),
            "by_type": dict(_metrics["errors"]),
        },
        "performance": {
            "avg_sync_ms": round(avg_duration, 2),
            "p95_sync_ms": round(p95_duration, 2),
        },
    }


def reset_metrics():
    """Reset all metrics (for testing)."""
    global _metrics
    _metrics = {
        "requests": defaultdict(int),
        "syncs": defaultdict(int),
        "actions": defaultdict(int),
        "errors": defaultdict(int),
        "sync_durations": [],
        "start_time": datetime.now(timezone.utc).isoformat(),
    }
