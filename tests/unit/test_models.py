"""Tests for core data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from core.models import (
    ActionItem,
    ApprovalStatus,
    AutoTier,
    CanaryRecord,
    IncidentRun,
    IncidentState,
    PostmortemStatus,
    RemediationAction,
    RemediationRun,
    RiskLevel,
    RunMode,
    RunState,
    Severity,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestEnums:
    def test_run_state_values(self):
        assert RunState.QUEUED == "queued"
        assert RunState.CANCELED == "canceled"

    def test_run_mode_values(self):
        assert RunMode.DRY_RUN == "dry_run"
        assert RunMode.EXECUTE == "execute"

    def test_auto_tier_values(self):
        assert AutoTier.SAFE_AUTO == "safe_auto"
        assert AutoTier.RISKY_MANUAL == "risky_manual"

    def test_incident_enums(self):
        assert IncidentState.ACKNOWLEDGED == "acknowledged"
        assert PostmortemStatus.WAIVED == "waived"
        assert Severity("critical") is Severity.CRITICAL


class TestRemediationAction:
    def test_defaults(self):
        action = RemediationAction(id="verify", title="Verify", commands=["sudo ls /"])
        assert action.risk == RiskLevel.LOW
        assert action.auto_tier == AutoTier.RISKY_MANUAL
        assert action.effective_confirm_phrase == "EXECUTE verify"

    def test_custom_confirm_phrase(self):
        action = RemediationAction(
            id="lockdown", title="Lockdown", commands=["sudo ufw enable"], confirm_phrase="LOCK IT"
        )
        assert action.effective_confirm_phrase == "LOCK IT"

    def test_frozen(self):
        action = RemediationAction(id="verify", title="Verify", commands=[])
        with pytest.raises(ValidationError):
            action.title = "changed"


class TestRemediationRun:
    def test_defaults(self):
        run = RemediationRun(id="r1", host_id="h1", action_id="verify", requested_at=NOW)
        assert run.mode == RunMode.EXECUTE
        assert run.state == RunState.QUEUED
        assert run.attempts == 0
        assert run.approval.status == ApprovalStatus.NONE
        assert run.canary.enabled is False
        assert run.rollback.attempted is False
        assert run.revision == 0

    def test_max_attempts_bounds(self):
        with pytest.raises(ValidationError):
            RemediationRun(
                id="r1", host_id="h1", action_id="verify", requested_at=NOW, max_attempts=0
            )

    def test_canary_bucket_bounds(self):
        assert CanaryRecord(bucket=99).bucket == 99
        with pytest.raises(ValidationError):
            CanaryRecord(bucket=100)
        with pytest.raises(ValidationError):
            CanaryRecord(rollout_percent=101)

    def test_serializes_to_json(self):
        run = RemediationRun(id="r1", host_id="h1", action_id="verify", requested_at=NOW)
        data = run.model_dump(mode="json")
        assert data["state"] == "queued"
        assert data["requested_at"].startswith("2026-03-02T09:00:00")


class TestIncidentModels:
    def test_incident_defaults(self):
        incident = IncidentRun(
            id="inc-1",
            workflow_id="critical-triage",
            workflow_title="Critical Incident Triage",
            title="Firewall drift",
            created_at=NOW,
            updated_at=NOW,
        )
        assert incident.state == IncidentState.OPEN
        assert incident.severity == Severity.MEDIUM
        assert incident.postmortem.status == PostmortemStatus.NOT_STARTED
        assert incident.escalation_count == 0

    def test_action_item_title_length(self):
        with pytest.raises(ValidationError):
            ActionItem(id="ai-1", title="x" * 221)
