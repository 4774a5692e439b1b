from __future__ import annotations

import threading
from typing import Any

DOMAIN_BUCKETS_MS: dict[str, tuple[float, ...]] = {
    "jobs": (1000, 3000, 5000, 10000, 30000),
    "webhooks": (50, 100, 250, 500, 1000, 2000, 5000),
    "enrichment": (10, 50, 100, 250, 500, 1000, 2000),
    "matchmaking": (10, 50, 100, 250, 500, 1000, 2000, 5000),
    "exports": (10, 50, 100, 250, 500, 1000, 2000, 5000),
    "calls": (100, 250, 500, 1000, 2000, 5000, 10000),
}

# Histogram name -> bucket domain.
HISTOGRAMS: dict[str, str] = {
    "job_duration_ms": "jobs",
    "webhook_delivery_ms": "webhooks",
    "enrichment_duration_ms": "enrichment",
    "matchmaking_duration_ms": "matchmaking",
    "export_duration_ms": "exports",
    "vendor_call_ms": "calls",
}

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, Any] | None) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(key), str(value)) for key, value in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def format_labels(labels: LabelKey | dict[str, Any]) -> str:
    pairs = _label_key(labels) if isinstance(labels, dict) else labels
    if not pairs:
        return ""
    return "{" + ",".join(f'{key}="{_escape(value)}"' for key, value in pairs) + "}"


def format_value(value: float) -> str:
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


class _Histogram:
    def __init__(self, bounds: tuple[float, ...]) -> None:
        self.bounds = bounds
        self.bucket_counts = [0] * len(bounds)
        self.count = 0
        self.total = 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        for index, bound in enumerate(self.bounds):
            if value <= bound:
                self.bucket_counts[index] += 1


class MetricsRegistry:
    """In-memory counters and fixed-bucket histograms.

    Values are best effort and reset on restart. Safe to update from worker
    tasks and threads alike.
    """

    def __init__(self, prefix: str = "leadflow") -> None:
        self.prefix = prefix
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, float]] = {}
        self._histograms: dict[str, dict[LabelKey, _Histogram]] = {}

    def inc(self, name: str, labels: dict[str, Any] | None = None, amount: float = 1.0) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + amount

    def observe(self, name: str, value_ms: float, labels: dict[str, Any] | None = None) -> None:
        domain = HISTOGRAMS.get(name)
        if domain is None:
            raise KeyError(f"unknown histogram: {name}")
        key = _label_key(labels)
        with self._lock:
            series = self._histograms.setdefault(name, {})
            histogram = series.get(key)
            if histogram is None:
                histogram = _Histogram(DOMAIN_BUCKETS_MS[domain])
                series[key] = histogram
            histogram.observe(max(0.0, float(value_ms)))

    def counter_value(self, name: str, labels: dict[str, Any] | None = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def histogram_count(self, name: str, labels: dict[str, Any] | None = None) -> int:
        with self._lock:
            histogram = self._histograms.get(name, {}).get(_label_key(labels))
            return histogram.count if histogram else 0

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def render_lines(self) -> list[str]:
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                metric = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric} counter")
                for key, value in sorted(self._counters[name].items()):
                    lines.append(f"{metric}{format_labels(key)} {format_value(value)}")

            for name in sorted(self._histograms):
                metric = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, histogram in sorted(self._histograms[name].items()):
                    for bound, bucket_count in zip(histogram.bounds, histogram.bucket_counts):
                        bucket_labels = key + (("le", format_value(bound)),)
                        lines.append(f"{metric}_bucket{format_labels(bucket_labels)} {bucket_count}")
                    inf_labels = key + (("le", "+Inf"),)
                    lines.append(f"{metric}_bucket{format_labels(inf_labels)} {histogram.count}")
                    lines.append(f"{metric}_sum{format_labels(key)} {format_value(histogram.total)}")
                    lines.append(f"{metric}_count{format_labels(key)} {histogram.count}")
        return lines


REGISTRY = MetricsRegistry()


def mirror_metric_names(text: str, prefix: str, alias_prefix: str | None) -> str:
    """Append a copy of every prefixed metric line under the alias prefix."""
    if not alias_prefix or alias_prefix == prefix:
        return text

    source = f"{prefix}_"
    target = f"{alias_prefix}_"
    type_source = f"# TYPE {source}"
    mirrored: list[str] = []
    for line in text.splitlines():
        if line.startswith(source):
            mirrored.append(target + line[len(source) :])
        elif line.startswith(type_source):
            mirrored.append(f"# TYPE {target}" + line[len(type_source) :])

    if not mirrored:
        return text
    body = text if text.endswith("\n") or not text else text + "\n"
    return body + "\n".join(mirrored) + "\n"


async def render_metrics(registry: MetricsRegistry, repository: Any, settings: Any) -> str:
    prefix = registry.prefix
    lines = registry.render_lines()

    job_counts = await repository.job_status_counts()
    lines.append(f"# TYPE {prefix}_jobs gauge")
    for row in job_counts:
        labels = format_labels({"kind": row["kind"], "status": row["status"]})
        lines.append(f"{prefix}_jobs{labels} {row['count']}")

    active_subscriptions = await repository.count_active_subscriptions()
    lines.append(f"# TYPE {prefix}_webhook_subscriptions_active gauge")
    lines.append(f"{prefix}_webhook_subscriptions_active {active_subscriptions}")

    unresolved = await repository.count_unresolved_failures()
    lines.append(f"# TYPE {prefix}_webhook_failures_unresolved gauge")
    lines.append(f"{prefix}_webhook_failures_unresolved {unresolved}")

    build_labels = format_labels(
        {
            "version": settings.version,
            "env": settings.environment,
            "commit": settings.git_commit or "unknown",
        }
    )
    lines.append(f"# TYPE {prefix}_build_info gauge")
    lines.append(f"{prefix}_build_info{build_labels} 1")

    text = "\n".join(lines) + "\n"
    return mirror_metric_names(text, prefix, settings.metrics_alias_prefix)
