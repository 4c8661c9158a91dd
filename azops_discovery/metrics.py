"""
Prometheus-format metrics for discovery runs.

Counters are updated from every discovery thread and dumped to a text file
at the end of a run, ready for the node-exporter textfile collector.
"""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from threading import Lock


class MetricType:
    """Metric type constants."""
    COUNTER = "counter"
    GAUGE = "gauge"


class Metric:
    """Base metric class."""

    def __init__(self, name: str, help_text: str, metric_type: str, labels: list[str] | None = None):
        self.name = name
        self.help_text = help_text
        self.metric_type = metric_type
        self.labels = labels or []
        self.values: dict[tuple, float] = defaultdict(float)
        self.lock = Lock()

    def _make_key(self, labels: dict[str, str] | None = None) -> tuple:
        if not labels:
            return ()
        return tuple(labels.get(label, "") for label in self.labels)

    def _format_labels(self, key: tuple) -> str:
        if not key:
            return ""
        label_pairs = [f'{label}="{value}"' for label, value in zip(self.labels, key)]
        return "{" + ",".join(label_pairs) + "}"

    def get(self, labels: dict[str, str] | None = None) -> float:
        key = self._make_key(labels)
        with self.lock:
            return self.values.get(key, 0.0)

    def total(self) -> float:
        """Sum over every label combination."""
        with self.lock:
            return sum(self.values.values())

    def to_prometheus(self) -> str:
        """Convert metric to Prometheus text format."""
        lines = [
            f"# HELP {self.name} {self.help_text}",
            f"# TYPE {self.name} {self.metric_type}",
        ]
        with self.lock:
            for key, value in sorted(self.values.items()):
                lines.append(f"{self.name}{self._format_labels(key)} {value}")
        return "\n".join(lines)


class Counter(Metric):
    """Counter metric - monotonically increasing value."""

    def __init__(self, name: str, help_text: str, labels: list[str] | None = None):
        super().__init__(name, help_text, MetricType.COUNTER, labels)

    def inc(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(labels)
        with self.lock:
            self.values[key] += amount


class Gauge(Metric):
    """Gauge metric - value that can go up or down."""

    def __init__(self, name: str, help_text: str, labels: list[str] | None = None):
        super().__init__(name, help_text, MetricType.GAUGE, labels)

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(labels)
        with self.lock:
            self.values[key] = value


class DiscoveryMetrics:
    """Metrics collected during one discovery run."""

    def __init__(self):
        self.records_written = Counter(
            "azops_state_records_written_total",
            "State records written, by scope kind",
            labels=["kind"],
        )
        self.retries = Counter(
            "azops_fetch_retries_total",
            "Repeated attempts of retried list calls",
            labels=["operation"],
        )
        self.errors = Counter(
            "azops_discovery_errors_total",
            "Errors reported during discovery, by step",
            labels=["step"],
        )
        self.warnings = Counter(
            "azops_discovery_warnings_total",
            "Entities skipped with a warning",
        )
        self.api_calls = Gauge(
            "azops_arm_api_calls",
            "ARM calls made during the run, by outcome",
            labels=["outcome"],
        )

    def all(self) -> list[Metric]:
        return [self.records_written, self.retries, self.errors, self.warnings, self.api_calls]

    def to_prometheus(self) -> str:
        return "\n\n".join(metric.to_prometheus() for metric in self.all()) + "\n"

    def write(self, path: str | Path) -> Path:
        """Write all metrics to ``path`` in Prometheus text format."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_prometheus(), encoding="utf-8")
        return path
