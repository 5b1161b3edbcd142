"""In-process counters, request latencies and a short audit trail of events.

Served as JSON from ``/admin/metrics``. Everything lives in module state and is
lost on restart.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

Labels = Tuple[Tuple[str, str], ...]

MAX_EVENTS = 100


def _freeze(labels: Optional[Dict[str, str]]) -> Labels:
    return tuple(sorted((key, str(value)) for key, value in (labels or {}).items()))


class LatencyStats:
    """Running count/avg/max of request durations in milliseconds."""

    __slots__ = ("count", "total_ms", "max_ms")

    def __init__(self) -> None:
        self.count = 0
        self.total_ms = 0.0
        self.max_ms = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_ms": round(self.total_ms / self.count, 3) if self.count else 0.0,
            "max_ms": round(self.max_ms, 3),
        }


_lock = threading.Lock()
_counters: Dict[str, Dict[Labels, float]] = defaultdict(lambda: defaultdict(float))
_latencies: Dict[str, Dict[Labels, LatencyStats]] = defaultdict(dict)
_events: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _counters[name][_freeze(labels)] += amount


def observe_latency(name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
    with _lock:
        _latencies[name].setdefault(_freeze(labels), LatencyStats()).add(duration_ms)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    """Append to the bounded event trail; the oldest entry drops off first."""
    with _lock:
        _events.append({"name": name, "timestamp": time.time(), "payload": payload})


def counter_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    """Sum of a counter across label sets, or one label set when ``labels`` is given."""
    with _lock:
        series = _counters.get(name, {})
        if labels is not None:
            return series.get(_freeze(labels), 0.0)
        return sum(series.values())


def events_named(name: str) -> List[Dict[str, Any]]:
    with _lock:
        return [event for event in _events if event["name"] == name]


def get_metrics_snapshot() -> Dict[str, Any]:
    with _lock:
        return {
            "counters": {
                name: [{"labels": dict(labels), "value": value} for labels, value in series.items()]
                for name, series in _counters.items()
            },
            "latencies": {
                name: [{"labels": dict(labels), "stats": stats.as_dict()} for labels, stats in series.items()]
                for name, series in _latencies.items()
            },
            "events": list(_events),
        }


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _latencies.clear()
        _events.clear()
