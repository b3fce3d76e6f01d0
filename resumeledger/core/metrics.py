"""
In-process counters for the ledger, rendered in Prometheus text format.

Counts are whole numbers (orders, settlements, credits, swept rows). Each
counter declares its label names up front; incrementing with a label the
counter does not declare is a programming error.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class Counter:
    def __init__(self, name: str, help_text: str, label_names: Iterable[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names: Tuple[str, ...] = tuple(label_names)
        self._counts: Dict[Tuple[str, ...], int] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Mapping[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name} has no label(s) {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Mapping[str, str]] = None, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + int(amount)

    def value(self, labels: Optional[Mapping[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._counts.items())
        for key, count in samples:
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                lines.append(f"{self.name}{{{pairs}}} {count}")
            else:
                lines.append(f"{self.name} {count}")
        return lines

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}

    def counter(self, name: str, help_text: str, label_names: Iterable[str] = ()) -> Counter:
        if name in self._counters:
            raise ValueError(f"counter {name} registered twice")
        counter = Counter(name, help_text, label_names)
        self._counters[name] = counter
        return counter

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for counter in self._counters.values():
            lines.extend(counter.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for counter in self._counters.values():
            counter.clear()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status.", ["method", "path", "status"]
)
orders_created_total = METRICS.counter(
    "ledger_orders_created_total", "createOrder calls by outcome.", ["outcome"]
)
settlements_total = METRICS.counter(
    "ledger_settlements_total", "Settlement attempts by outcome.", ["outcome"]
)
credits_consumed_total = METRICS.counter(
    "ledger_credits_consumed_total", "Credit units consumed by kind and lot source.", ["kind", "source"]
)
pending_swept_total = METRICS.counter(
    "ledger_pending_swept_total", "Stale pending transactions moved to failed."
)


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id so labels stay low-cardinality."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
