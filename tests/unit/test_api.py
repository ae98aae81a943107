"""Tests for app/api.py: request validation and status mapping."""

from __future__ import annotations

import pytest

from app.api import OpsApi
from core.models import Host, RemediationRun, RunState

HARDEN = "harden-ssh-auth"


@pytest.fixture
def api(services):
    return OpsApi(services)


async def _seed_host(store, host_id: str = "web-1", group: str = "prod") -> Host:
    return await store.save_host(
        Host(id=host_id, name=host_id, meta={"fleet_policy": {"group": group}})
    )


async def _seed_dead_run(store, fixed_now, run_id: str = "run-dead") -> RemediationRun:
    return await store.create_run(
        RemediationRun(
            id=run_id,
            host_id="web-1",
            action_id=HARDEN,
            requested_at=fixed_now,
            state=RunState.FAILED,
            dlq=True,
            dlq_reason="max_attempts_exhausted",
        )
    )


# ---------------------------------------------------------------------------
# Remediation
# ---------------------------------------------------------------------------


class TestRemediate:
    @pytest.mark.asyncio
    async def test_plan(self, api):
        response = await api.remediate({"action": "plan", "signal_codes": ["firewall_drift"]})
        assert response.status == 200
        assert [a["id"] for a in response.body["actions"]] == ["lockdown-access-surface"]

    @pytest.mark.asyncio
    async def test_unknown_action_literal(self, api):
        response = await api.remediate({"action": "explode"})
        assert response.status == 400
        assert response.body["error"] == "invalid_request"
        assert response.ok is False

    @pytest.mark.asyncio
    async def test_missing_host_or_action(self, api):
        response = await api.remediate({"action": "dry-run", "host_id": "web-1"})
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_dry_run_then_execute_with_auto_drain(self, api, store, executor):
        await _seed_host(store)
        dry = await api.remediate(
            {"action": "dry-run", "host_id": "web-1", "action_id": HARDEN, "actor_user_id": "alice"}
        )
        assert dry.status == 201
        assert dry.body["run"]["mode"] == "dry_run"

        executed = await api.remediate(
            {
                "action": "execute",
                "host_id": "web-1",
                "action_id": HARDEN,
                "confirm_phrase": "EXECUTE harden-ssh-auth",
                "actor_user_id": "alice",
                "auto_drain": True,
            }
        )

        assert executed.status == 202
        assert executed.body["run"]["state"] == "queued"
        assert executed.body["drain"]["processed"] == 1
        assert len(executor.calls) >= 1

    @pytest.mark.asyncio
    async def test_admission_rejection_body(self, api, store):
        await _seed_host(store)
        await api.remediate({"action": "dry-run", "host_id": "web-1", "action_id": HARDEN})
        response = await api.remediate(
            {"action": "execute", "host_id": "web-1", "action_id": HARDEN, "confirm_phrase": "go"}
        )
        assert response.status == 400
        assert response.body["ok"] is False
        assert response.body["error"] == "confirm_phrase_mismatch"

    @pytest.mark.asyncio
    async def test_unknown_host(self, api):
        response = await api.remediate(
            {"action": "dry-run", "host_id": "ghost", "action_id": HARDEN}
        )
        assert response.status == 404
        assert response.body["error"] == "host_not_found"

    @pytest.mark.asyncio
    async def test_drain_endpoint_on_empty_queue(self, api):
        response = await api.remediate_drain()
        assert response.status == 200
        assert response.body["processed"] == 0
        assert response.body["requested_limit"] == 5


class TestReplayAndQueue:
    @pytest.mark.asyncio
    async def test_replay_single(self, api, store, fixed_now):
        await _seed_dead_run(store, fixed_now)
        response = await api.remediate_replay({"run_id": "run-dead", "actor_user_id": "ops"})
        assert response.status == 201
        assert response.body["run"]["replay_of_run_id"] == "run-dead"
        assert response.body["run"]["state"] == "queued"

        again = await api.remediate_replay({"run_id": "run-dead"})
        assert again.status == 409

    @pytest.mark.asyncio
    async def test_replay_missing_run(self, api):
        response = await api.remediate_replay({"run_id": "nope"})
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_replay_requires_run_id(self, api):
        response = await api.remediate_replay({"mode": "single"})
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_replay_batch(self, api, store, fixed_now):
        await _seed_dead_run(store, fixed_now, "run-a")
        await _seed_dead_run(store, fixed_now, "run-b")
        response = await api.remediate_replay({"mode": "dlq-batch", "limit": 1})
        assert response.status == 201
        assert response.body["replayed"] == 1

    @pytest.mark.asyncio
    async def test_approve_requires_actor(self, api):
        response = await api.remediate_queue({"action": "approve", "run_id": "r1"})
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_cancel_queued_run(self, api, store, fixed_now):
        await store.create_run(
            RemediationRun(id="r1", host_id="web-1", action_id=HARDEN, requested_at=fixed_now)
        )
        response = await api.remediate_queue(
            {"action": "cancel", "run_id": "r1", "actor_user_id": "ops"}
        )
        assert response.status == 200
        assert response.body["run"]["state"] == "canceled"

        second = await api.remediate_queue({"action": "cancel", "run_id": "r1"})
        assert second.status == 409


# ---------------------------------------------------------------------------
# Fleet
# ---------------------------------------------------------------------------


class TestFleet:
    @pytest.mark.asyncio
    async def test_preview(self, api, store):
        for host_id in ("prod-1", "prod-2", "prod-3"):
            await _seed_host(store, host_id)
        response = await api.fleet(
            {"action": "preview", "selector": {"groups": ["prod"]}, "action_id": HARDEN}
        )
        assert response.status == 200
        preview = response.body["preview"]
        assert preview["matched"] == ["prod-1", "prod-2", "prod-3"]
        assert preview["allowed_by_percent"] == 1
        assert preview["accepted"] == ["prod-1"]

    @pytest.mark.asyncio
    async def test_empty_selector(self, api):
        response = await api.fleet({"action": "preview"})
        assert response.status == 400
        assert "selector" in response.body["error"]

    @pytest.mark.asyncio
    async def test_execute_stage_requires_stage(self, api):
        response = await api.fleet(
            {"action": "execute-stage", "selector": {"groups": ["prod"]}, "action_id": HARDEN}
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_execute_stage_wrong_phrase(self, api, store):
        for host_id in ("prod-1", "prod-2", "prod-3"):
            await _seed_host(store, host_id)
        response = await api.fleet(
            {
                "action": "execute-stage",
                "selector": {"groups": ["prod"]},
                "action_id": HARDEN,
                "stage": 1,
                "confirm_phrase": "yes",
            }
        )
        assert response.status == 400
        assert "EXECUTE FLEET STAGE 1" in response.body["error"]


# ---------------------------------------------------------------------------
# Incidents and escalation
# ---------------------------------------------------------------------------


class TestIncidents:
    @pytest.mark.asyncio
    async def test_lifecycle(self, api):
        created = await api.incidents(
            {
                "action": "create",
                "workflow_id": "critical-triage",
                "actor_user_id": "alice",
                "title": "Firewall drift on edge",
            }
        )
        assert created.status == 201
        incident_id = created.body["incident"]["id"]
        assert created.body["incident"]["severity"] == "critical"
        assert created.body["timeline"][0]["type"] == "incident.created"

        acked = await api.incidents(
            {"action": "acknowledge", "incident_id": incident_id, "actor_user_id": "bob"}
        )
        assert acked.status == 200
        assert acked.body["incident"]["state"] == "acknowledged"

        step = await api.incidents(
            {
                "action": "execute-step",
                "incident_id": incident_id,
                "step_id": "status-snapshot",
                "actor_user_id": "bob",
            }
        )
        assert step.status == 200
        assert step.body["ok"] is True

        listing = await api.incidents({"action": "list"})
        assert listing.body["counts"]["acknowledged"] == 1

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, api):
        response = await api.incidents(
            {"action": "create", "workflow_id": "nope", "actor_user_id": "alice"}
        )
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_unknown_incident(self, api):
        response = await api.incidents(
            {"action": "acknowledge", "incident_id": "inc-missing", "actor_user_id": "bob"}
        )
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_invalid_severity(self, api):
        response = await api.incidents(
            {"action": "create", "workflow_id": "critical-triage", "severity": "apocalyptic"}
        )
        assert response.status == 400
        assert response.body["error"] == "invalid_request"


class TestSweepAndMetrics:
    @pytest.mark.asyncio
    async def test_sweep_with_nothing_due(self, api):
        response = await api.escalation_sweep()
        assert response.status == 200
        assert response.body["escalated"] == 0

    @pytest.mark.asyncio
    async def test_metrics_text(self, api, store):
        await api.remediate({"action": "dry-run", "host_id": "ghost", "action_id": HARDEN})
        text = api.metrics()
        assert "fleetguard_admission_rejections_total" in text
        assert 'reason="host_not_found"' in text
