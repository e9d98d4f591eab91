"""
Metrics collection for folioflow.
"""
from typing import Dict, Any
from collections import defaultdict
from datetime import datetime, timezone
import threading

_lock = threading.Lock()


def _fresh() -> Dict[str, Any]:
    return {
        "requests": defaultdict(int),
        "errors": defaultdict(int),
        "inbound": defaultdict(int),
        "transitions": defaultdict(int),
        "notifications": defaultdict(int),
        "response_times": [],
        "start_time": datetime.now(timezone.utc).isoformat(),
    }


# In-memory metrics store (use Prometheus/StatsD in production)
_metrics: Dict[str, Any] = _fresh()


def record_request(method: str, path: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    with _lock:
        _metrics["requests"][f"{method} {path}"] += 1
        _metrics["requests"][f"status_{status_code}"] += 1

        # Keep last 1000 response times
        _metrics["response_times"].append(duration_ms)
        if len(_metrics["response_times"]) > 1000:
            _metrics["response_times"] = _metrics["response_times"][-1000:]


def record_error(error_type: str, path: str = ""):
    """Record error metrics."""
    with _lock:
        _metrics["errors"][error_type] += 1
        if path:
            _metrics["errors"][f"{error_type}:{path}"] += 1


def record_inbound(outcome: str):
    """Record an inbound event outcome (processed, replay, unregistered, error)."""
    with _lock:
        _metrics["inbound"][outcome] += 1


def record_transition(kind: str, edge: str):
    with _lock:
        _metrics["transitions"][f"{kind}:{edge}"] += 1


def record_notification(event_kind: str, outcome: str):
    with _lock:
        _metrics["notifications"][f"{event_kind}:{outcome}"] += 1
        _metrics["notifications"][outcome] += 1


def get_metrics() -> Dict[str, Any]:
    """Get current metrics."""
    with _lock:
        response_times = list(_metrics["response_times"])
        avg_response_time = sum(response_times) / len(response_times) if response_times else 0
        p95_response_time = sorted(response_times)[int(len(response_times) * 0.95)] if len(response_times) >= 20 else 0

        uptime_seconds = (datetime.now(timezone.utc) - datetime.fromisoformat(_metrics["start_time"])).total_seconds()

        return {
            "uptime_seconds": int(uptime_seconds),
            "requests": {
                "total": sum(v for k, v in _metrics["requests"].items() if not k.startswith("status_")),
                "by_endpoint": dict(_metrics["requests"]),
            },
            "errors": {
                "total": sum(_metrics["errors"].values()),
                "by_type": dict(_metrics["errors"]),
            },
            "inbound": dict(_metrics["inbound"]),
            "transitions": dict(_metrics["transitions"]),
            "notifications": dict(_metrics["notifications"]),
            "performance": {
                "avg_response_time_ms": round(avg_response_time, 2),
                "p95_response_time_ms": round(p95_response_time, 2),
            },
        }


def reset_metrics():
    """Reset all metrics (for testing)."""
    global _metrics
    with _lock:
        _metrics = _fresh()
