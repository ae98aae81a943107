"""Tests for core/metrics.py and core/audit.py."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from core.audit import MAX_DETAIL_CHARS, write_audit
from core.metrics import (
    QUEUE_DEPTH,
    RETRIES_TOTAL,
    RUN_SECONDS,
    RUNS_TOTAL,
    MetricsRegistry,
)


class TestMetricsRegistry:
    def test_counters_by_label(self):
        metrics = MetricsRegistry()
        metrics.runs_total.labels(state="succeeded").inc()
        metrics.runs_total.labels(state="succeeded").inc(2)
        metrics.runs_total.labels(state="failed").inc()
        assert metrics.sample(RUNS_TOTAL, {"state": "succeeded"}) == 3
        assert metrics.sample(RUNS_TOTAL, {"state": "failed"}) == 1
        assert metrics.sample(RUNS_TOTAL, {"state": "canceled"}) == 0

    def test_gauge_overwrites(self):
        metrics = MetricsRegistry()
        metrics.queue_depth.set(4)
        metrics.queue_depth.set(1)
        assert metrics.sample(QUEUE_DEPTH) == 1

    def test_histogram_is_bucketed(self):
        metrics = MetricsRegistry()
        for seconds in (0.05, 0.5, 7.0, 7.0):
            metrics.run_seconds.observe(seconds)
        assert metrics.sample(f"{RUN_SECONDS}_count") == 4
        assert metrics.sample(f"{RUN_SECONDS}_bucket", {"le": "1.0"}) == 2
        assert metrics.sample(f"{RUN_SECONDS}_bucket", {"le": "+Inf"}) == 4

    def test_registries_are_isolated(self):
        first = MetricsRegistry()
        second = MetricsRegistry(CollectorRegistry())
        first.retries_total.inc()
        assert first.sample(RETRIES_TOTAL) == 1
        assert second.sample(RETRIES_TOTAL) == 0

    def test_render_exposition(self):
        metrics = MetricsRegistry()
        metrics.queue_depth.set(2)
        metrics.runs_total.labels(state="queued").inc()
        metrics.run_seconds.observe(0.5)
        metrics.run_seconds.observe(1.5)

        payload, content_type = metrics.render()
        text = payload.decode("utf-8")

        assert content_type.startswith("text/plain")
        assert "# TYPE fleetguard_remediation_queue_depth gauge" in text
        assert "fleetguard_remediation_queue_depth 2.0" in text
        assert 'fleetguard_remediation_runs_total{state="queued"} 1.0' in text
        assert "fleetguard_remediation_run_seconds_count 2.0" in text
        assert "fleetguard_remediation_run_seconds_sum 2.0" in text


class TestWriteAudit:
    @pytest.mark.asyncio
    async def test_entry_written(self, store):
        entry = await write_audit(
            store, "remediate.dry_run", "x" * 1000, user_id="alice", meta={"runId": "r1"}
        )
        assert entry.id.startswith("aud-")
        assert len(entry.detail) == MAX_DETAIL_CHARS
        stored = await store.list_audit(action="remediate.dry_run")
        assert stored[0].meta == {"runId": "r1"}

    @pytest.mark.asyncio
    async def test_oversized_meta_is_truncated(self, store):
        entry = await write_audit(store, "big", meta={"blob": "y" * 10000})
        assert entry.meta["truncated"] is True

    @pytest.mark.asyncio
    async def test_storage_failure_is_swallowed(self):
        storage = AsyncMock()
        storage.append_audit.side_effect = RuntimeError("disk full")
        assert await write_audit(storage, "remediate.execute.queued") is None
