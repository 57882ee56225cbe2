"""
Metrics collection and Prometheus-compatible exposition.

Counts what a sync run did. The CLI can write the result to a file for
node-exporter's textfile collector, since a cron job has no port to scrape.
"""

from __future__ import annotations

import os
import tempfile
import time
from collections import defaultdict
from pathlib import Path

PREFIX = "fluidkeys_"


class MetricsCollector:
    """
    Simple metrics collector with Prometheus text format export.

    Tracks counters and gauges for one sync run.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        self._counters[f"{PREFIX}{name}"] += value

    def set_gauge(self, name: str, value: float) -> None:
        """Set a gauge value."""
        self._gauges[f"{PREFIX}{name}"] = value

    def get(self, name: str) -> int | float:
        """Get a metric value."""
        full = f"{PREFIX}{name}"
        if full in self._gauges:
            return self._gauges[full]
        return self._counters.get(full, 0)

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        for name, value in sorted(self._counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {value}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value}")
        duration = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}sync_duration_seconds gauge")
        lines.append(f"{PREFIX}sync_duration_seconds {duration:.1f}")
        return "\n".join(lines) + "\n"

    def write_textfile(self, path: str | Path) -> None:
        """Atomically replace ``path`` with the Prometheus text export."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self.to_prometheus())
        os.replace(tmp_name, path)
