from __future__ import annotations

import asyncio

import pytest

from leadflow.core.config import Settings
from leadflow.services.metrics import MetricsRegistry, mirror_metric_names, render_metrics
from leadflow.services.store import InMemoryRepository


def test_histogram_buckets_are_cumulative() -> None:
    registry = MetricsRegistry(prefix="leadflow")
    for value in (40, 120, 700, 9000):
        registry.observe("webhook_delivery_ms", value, {"event_type": "job.completed"})

    lines = registry.render_lines()

    assert "# TYPE leadflow_webhook_delivery_ms histogram" in lines
    assert 'leadflow_webhook_delivery_ms_bucket{event_type="job.completed",le="50"} 1' in lines
    assert 'leadflow_webhook_delivery_ms_bucket{event_type="job.completed",le="250"} 2' in lines
    assert 'leadflow_webhook_delivery_ms_bucket{event_type="job.completed",le="1000"} 3' in lines
    assert 'leadflow_webhook_delivery_ms_bucket{event_type="job.completed",le="5000"} 3' in lines
    assert 'leadflow_webhook_delivery_ms_bucket{event_type="job.completed",le="+Inf"} 4' in lines
    assert 'leadflow_webhook_delivery_ms_sum{event_type="job.completed"} 9860' in lines
    assert 'leadflow_webhook_delivery_ms_count{event_type="job.completed"} 4' in lines


def test_counters_render_with_sorted_labels() -> None:
    registry = MetricsRegistry(prefix="leadflow")
    registry.inc("jobs_failed_total", {"terminal": "false", "kind": "scrape"})
    registry.inc("jobs_failed_total", {"kind": "scrape", "terminal": "false"}, amount=2)

    assert registry.counter_value("jobs_failed_total", {"kind": "scrape", "terminal": "false"}) == 3
    assert 'leadflow_jobs_failed_total{kind="scrape",terminal="false"} 3' in registry.render_lines()


def test_unknown_histogram_is_rejected() -> None:
    with pytest.raises(KeyError):
        MetricsRegistry().observe("latency_ms", 10)


def test_negative_observations_clamp_to_zero() -> None:
    registry = MetricsRegistry()
    registry.observe("job_duration_ms", -5, {"kind": "scrape"})
    assert registry.histogram_count("job_duration_ms", {"kind": "scrape"}) == 1
    assert 'leadflow_job_duration_ms_sum{kind="scrape"} 0' in registry.render_lines()


def test_mirror_copies_prefixed_lines_under_alias() -> None:
    text = "# TYPE leadflow_up gauge\nleadflow_up 1\nother_metric 2\n"
    mirrored = mirror_metric_names(text, "leadflow", "convexa")

    assert mirrored.startswith(text)
    assert "# TYPE convexa_up gauge\nconvexa_up 1\n" in mirrored
    assert "convexa_other" not in mirrored
    assert mirror_metric_names(text, "leadflow", None) == text
    assert mirror_metric_names(text, "leadflow", "leadflow") == text


def test_render_metrics_includes_gauges_build_info_and_alias() -> None:
    settings = Settings(environment="test", git_commit="abc123", metrics_alias_prefix="convexa")
    repository = InMemoryRepository()
    registry = MetricsRegistry(prefix="leadflow")
    registry.inc("jobs_enqueued_total", {"kind": "scrape"})

    async def scenario() -> str:
        await repository.create_job(kind="scrape", input_payload={"source": "zillow", "zip": "08081"})
        await repository.create_subscription(
            target_url="https://hooks.example.test",
            event_types=["job.completed"],
            signing_secret="s",
        )
        return await render_metrics(registry, repository, settings)

    text = asyncio.run(scenario())
    lines = text.splitlines()

    assert 'leadflow_jobs{kind="scrape",status="queued"} 1' in lines
    assert "leadflow_webhook_subscriptions_active 1" in lines
    assert "leadflow_webhook_failures_unresolved 0" in lines
    assert f'leadflow_build_info{{commit="abc123",env="test",version="{settings.version}"}} 1' in lines
    assert 'convexa_jobs_enqueued_total{kind="scrape"} 1' in lines
    assert "# TYPE convexa_build_info gauge" in lines
