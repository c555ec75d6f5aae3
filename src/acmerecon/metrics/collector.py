"""In-process metrics collector.

Collects counters without external dependencies and exports them in
OpenMetrics/Prometheus text format, either as a string or as a
node_exporter textfile written by the CLI (`--metrics-file`).
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._start_time = time.time()

    def increment(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def get(self, name: str, labels: dict | None = None) -> int:
        """Get the current value of a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def export(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = [
            "# HELP acmerecon_uptime_seconds Time since process start",
            "# TYPE acmerecon_uptime_seconds gauge",
            f"acmerecon_uptime_seconds {time.time() - self._start_time:.1f}",
            "",
        ]

        with self._lock:
            grouped: dict[str, list[tuple[str, int]]] = {}
            for key, value in sorted(self._counters.items()):
                name = key.split("{")[0]
                grouped.setdefault(name, []).append((key, value))

        for name, entries in sorted(grouped.items()):
            lines.append(f"# TYPE {name} counter")
            lines.extend(f"{key} {value}" for key, value in entries)
            lines.append("")

        return "\n".join(lines) + "\n"

    def write_textfile(self, path: str | Path) -> None:
        """Atomically replace *path* with the current :meth:`export`.

        Scrapers reading the file never see a partial export.
        """
        path = Path(path)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(self.export(), encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"
