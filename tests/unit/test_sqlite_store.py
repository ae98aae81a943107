"""Tests for integrations/sqlite/store.py."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from app.config import Settings
from core.exceptions import StorageError
from core.models import (
    ApprovalRecord,
    ApprovalStatus,
    AuditEntry,
    Host,
    IncidentRun,
    IncidentState,
    IncidentTimelineEvent,
    RemediationRun,
    RunMode,
    RunState,
)
from integrations.sqlite.store import SQLiteStore


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteStore(Settings(storage_sqlite_path=str(tmp_path / "fleetguard.db")))


def _make_run(run_id: str, requested_at, **overrides) -> RemediationRun:
    fields = {
        "id": run_id,
        "host_id": "web-1",
        "action_id": "harden-ssh-auth",
        "requested_at": requested_at,
        "commands": ["sudo ufw status"],
    }
    fields.update(overrides)
    return RemediationRun(**fields)


def _make_incident(incident_id: str, created_at) -> IncidentRun:
    return IncidentRun(
        id=incident_id,
        workflow_id="critical-triage",
        workflow_title="Critical Incident Triage",
        title="Firewall drift",
        created_at=created_at,
        updated_at=created_at,
    )


def _event(incident_id: str, event_id: str, ts, event_type: str = "incident.note"):
    return IncidentTimelineEvent(
        id=event_id, incident_id=incident_id, type=event_type, message=event_id, event_ts=ts
    )


class TestHosts:
    @pytest.mark.asyncio
    async def test_save_and_list(self, sqlite_store):
        await sqlite_store.save_host(Host(id="b", meta={"fleet_policy": {"group": "edge"}}))
        await sqlite_store.save_host(Host(id="a", enabled=False))

        assert [h.id for h in await sqlite_store.list_hosts()] == ["a", "b"]
        assert [h.id for h in await sqlite_store.list_hosts(enabled_only=True)] == ["b"]
        host = await sqlite_store.get_host("b")
        assert host.meta == {"fleet_policy": {"group": "edge"}}
        assert await sqlite_store.get_host("zzz") is None


class TestRuns:
    @pytest.mark.asyncio
    async def test_roundtrip_and_filters(self, sqlite_store, fixed_now):
        await sqlite_store.create_run(_make_run("r1", fixed_now))
        await sqlite_store.create_run(
            _make_run("r2", fixed_now + timedelta(minutes=1), mode=RunMode.DRY_RUN)
        )
        await sqlite_store.create_run(
            _make_run("r3", fixed_now + timedelta(minutes=2), state=RunState.FAILED, dlq=True)
        )

        queued = await sqlite_store.list_runs(mode=RunMode.EXECUTE, states=[RunState.QUEUED])
        assert [r.id for r in queued] == ["r1"]
        dead = await sqlite_store.list_runs(dlq=True)
        assert [r.id for r in dead] == ["r3"]
        newest = await sqlite_store.list_runs(limit=1, newest_first=True)
        assert newest[0].id == "r3"
        since = await sqlite_store.count_runs(requested_since=fixed_now + timedelta(seconds=30))
        assert since == 2
        assert await sqlite_store.count_runs(states=[]) == 0

    @pytest.mark.asyncio
    async def test_compare_and_set(self, sqlite_store, fixed_now):
        run = await sqlite_store.create_run(_make_run("r1", fixed_now))
        running = run.model_copy(update={"state": RunState.RUNNING})

        stored = await sqlite_store.update_run(running, RunState.QUEUED)
        assert stored.revision == 1
        # second writer with the stale revision loses
        assert await sqlite_store.update_run(running, RunState.QUEUED) is None
        assert (await sqlite_store.get_run("r1")).state == RunState.RUNNING

    @pytest.mark.asyncio
    async def test_duplicate_id_raises_storage_error(self, sqlite_store, fixed_now):
        await sqlite_store.create_run(_make_run("r1", fixed_now))
        with pytest.raises(StorageError):
            await sqlite_store.create_run(_make_run("r1", fixed_now))


class TestIncidents:
    @pytest.mark.asyncio
    async def test_create_and_transition(self, sqlite_store, fixed_now):
        incident = _make_incident("inc-1", fixed_now)
        await sqlite_store.create_incident(incident, [_event("inc-1", "e1", fixed_now)])

        acked = incident.model_copy(update={"state": IncidentState.ACKNOWLEDGED})
        stored = await sqlite_store.transition_incident(
            acked, 0, _event("inc-1", "e2", fixed_now, "incident.acknowledged")
        )
        assert stored.revision == 1
        assert await sqlite_store.transition_incident(
            acked, 0, _event("inc-1", "e3", fixed_now)
        ) is None

        events = await sqlite_store.list_incident_events("inc-1")
        assert [e.id for e in events] == ["e1", "e2"]
        assert [e.id for e in await sqlite_store.list_incident_events("inc-1", limit=1)] == ["e2"]

    @pytest.mark.asyncio
    async def test_list_newest_first_with_state_filter(self, sqlite_store, fixed_now):
        await sqlite_store.create_incident(_make_incident("inc-1", fixed_now), [])
        await sqlite_store.create_incident(
            _make_incident("inc-2", fixed_now + timedelta(minutes=5)), []
        )
        assert [i.id for i in await sqlite_store.list_incidents()] == ["inc-2", "inc-1"]
        assert await sqlite_store.list_incidents(states=[IncidentState.CLOSED]) == []


class TestAudit:
    @pytest.mark.asyncio
    async def test_newest_first_and_filter(self, sqlite_store, fixed_now):
        for i, action in enumerate(["a", "b", "a"]):
            await sqlite_store.append_audit(
                AuditEntry(id=f"aud-{i}", ts=fixed_now, action=action)
            )
        assert [a.id for a in await sqlite_store.list_audit()] == ["aud-2", "aud-1", "aud-0"]
        assert [a.id for a in await sqlite_store.list_audit(action="a", limit=1)] == ["aud-2"]


class TestReadyRuns:
    @pytest.mark.asyncio
    async def test_only_claimable_runs_oldest_first(self, sqlite_store, fixed_now):
        later = fixed_now + timedelta(minutes=5)
        await sqlite_store.create_run(_make_run("r-old", fixed_now - timedelta(minutes=2)))
        await sqlite_store.create_run(_make_run("r-new", fixed_now))
        await sqlite_store.create_run(
            _make_run("r-backoff", fixed_now - timedelta(minutes=9), attempts=1, next_attempt_at=later)
        )
        await sqlite_store.create_run(
            _make_run(
                "r-pending",
                fixed_now - timedelta(minutes=8),
                approval=ApprovalRecord(required=True, status=ApprovalStatus.PENDING),
            )
        )
        await sqlite_store.create_run(
            _make_run("r-dry", fixed_now - timedelta(minutes=7), mode=RunMode.DRY_RUN)
        )
        await sqlite_store.create_run(
            _make_run("r-dead", fixed_now - timedelta(minutes=6), state=RunState.FAILED, dlq=True)
        )

        ready = await sqlite_store.list_ready_runs(fixed_now, limit=10)
        assert [r.id for r in ready] == ["r-old", "r-new"]
        assert [r.id for r in await sqlite_store.list_ready_runs(fixed_now, limit=1)] == ["r-old"]
        due = await sqlite_store.list_ready_runs(later, limit=10)
        assert [r.id for r in due] == ["r-backoff", "r-old", "r-new"]

    @pytest.mark.asyncio
    async def test_approval_and_backoff_columns_follow_updates(self, sqlite_store, fixed_now):
        pending = await sqlite_store.create_run(
            _make_run(
                "r1",
                fixed_now,
                approval=ApprovalRecord(required=True, status=ApprovalStatus.PENDING),
            )
        )
        assert await sqlite_store.list_ready_runs(fixed_now, limit=5) == []

        approved = pending.model_copy(
            update={
                "approval": pending.approval.model_copy(update={"status": ApprovalStatus.APPROVED})
            }
        )
        await sqlite_store.update_run(approved, RunState.QUEUED)
        assert [r.id for r in await sqlite_store.list_ready_runs(fixed_now, limit=5)] == ["r1"]


class TestOffLoop:
    @pytest.mark.asyncio
    async def test_queries_run_in_worker_thread(self, sqlite_store, fixed_now, monkeypatch):
        loop_thread = threading.get_ident()
        seen: list[int] = []
        fetchone = SQLiteStore._fetchone

        def recording_fetchone(self, sql, params=()):
            seen.append(threading.get_ident())
            return fetchone(self, sql, params)

        monkeypatch.setattr(SQLiteStore, "_fetchone", recording_fetchone)
        await sqlite_store.create_run(_make_run("r1", fixed_now))

        assert (await sqlite_store.get_run("r1")).id == "r1"
        assert seen and all(ident != loop_thread for ident in seen)
