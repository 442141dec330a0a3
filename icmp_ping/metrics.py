from __future__ import annotations

from collections import Counter
from threading import Lock

COUNTER_NAMES = ("sent", "send_errors", "replies", "lost", "ignored", "dropped")


class SessionCounters:
    def __init__(self) -> None:
        self._counters: Counter[str] = Counter({name: 0 for name in COUNTER_NAMES})
        self._lock = Lock()

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def render_text(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name, value in sorted(self._counters.items()):
                lines.append(f"icmp_ping_{name}_total {float(value):.1f}")
        return "\n".join(lines) + "\n"
