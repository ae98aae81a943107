"""Unit tests for core/approval.py and core/autonomy.py."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from core.approval import DEFAULT_POLICY, ApprovalEvaluator, ApprovalPolicy
from core.autonomy import (
    approval_required,
    canary_bucket,
    canary_percent_for_tier,
    is_canary_selected,
    tier_allows_autonomous,
)
from core.exceptions import RunConflictError
from core.models import (
    ApprovalStatus,
    AutoTier,
    RemediationAction,
    RemediationRun,
    RiskLevel,
    RunState,
)

NOW = datetime(2026, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_action(risk: RiskLevel = RiskLevel.LOW, action_id: str = "act-1") -> RemediationAction:
    return RemediationAction(
        id=action_id, title="Test action", risk=risk, commands=["sudo ufw status"]
    )


def _make_run(action: RemediationAction, evaluator: ApprovalEvaluator) -> RemediationRun:
    return RemediationRun(
        id="run-1",
        host_id="host-1",
        action_id=action.id,
        requested_at=NOW,
        approval=evaluator.open_request(action, "requester", NOW),
    )


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class TestApprovalRequired:
    @pytest.mark.parametrize(
        "risk,threshold,expected",
        [
            (RiskLevel.HIGH, "high", True),
            (RiskLevel.MEDIUM, "high", False),
            (RiskLevel.MEDIUM, "medium", True),
            (RiskLevel.LOW, "low", True),
            (RiskLevel.HIGH, "none", False),
        ],
    )
    def test_threshold(self, risk, threshold, expected):
        assert approval_required(risk, threshold) is expected

    def test_default_policy_threshold_is_high(self):
        assert DEFAULT_POLICY.risk_threshold == "high"


class TestApprovalEvaluator:
    def test_low_risk_needs_no_approval(self):
        evaluator = ApprovalEvaluator()
        record = evaluator.open_request(_make_action(RiskLevel.LOW), "alice", NOW)
        assert record.required is False
        assert record.status == ApprovalStatus.NONE

    def test_high_risk_opens_pending_request(self):
        evaluator = ApprovalEvaluator()
        record = evaluator.open_request(_make_action(RiskLevel.HIGH), "alice", NOW)
        assert record.required is True
        assert record.status == ApprovalStatus.PENDING
        assert record.requested_at == NOW
        assert record.requested_by_user_id == "alice"

    def test_approve_pending_run(self):
        evaluator = ApprovalEvaluator()
        run = _make_run(_make_action(RiskLevel.HIGH), evaluator)
        assert evaluator.is_pending(run)

        approved = evaluator.approve(run, "bob", NOW)
        assert approved.approval.status == ApprovalStatus.APPROVED
        assert approved.approval.approved_by_user_id == "bob"
        assert evaluator.is_approved(approved)
        # original left untouched
        assert run.approval.status == ApprovalStatus.PENDING

    def test_reject_cancels_run(self):
        evaluator = ApprovalEvaluator()
        run = _make_run(_make_action(RiskLevel.HIGH), evaluator)
        rejected = evaluator.reject(run, "bob", NOW)
        assert rejected.approval.status == ApprovalStatus.REJECTED
        assert rejected.state == RunState.CANCELED
        assert "bob" in (rejected.last_error or "")

    def test_approve_without_pending_request_conflicts(self):
        evaluator = ApprovalEvaluator()
        run = _make_run(_make_action(RiskLevel.LOW), evaluator)
        with pytest.raises(RunConflictError):
            evaluator.approve(run, "bob", NOW)

    def test_custom_threshold(self):
        evaluator = ApprovalEvaluator(ApprovalPolicy(risk_threshold="medium"))
        assert evaluator.requires_approval(_make_action(RiskLevel.MEDIUM))
        assert not evaluator.requires_approval(_make_action(RiskLevel.LOW))


# ---------------------------------------------------------------------------
# Autonomy and canary
# ---------------------------------------------------------------------------


class TestAutonomy:
    def test_observe_never_autonomous(self):
        assert not tier_allows_autonomous(AutoTier.OBSERVE, AutoTier.RISKY_MANUAL)

    def test_tier_ceiling(self):
        assert tier_allows_autonomous(AutoTier.SAFE_AUTO, AutoTier.SAFE_AUTO)
        assert not tier_allows_autonomous(AutoTier.GUARDED_AUTO, AutoTier.SAFE_AUTO)
        assert tier_allows_autonomous(AutoTier.GUARDED_AUTO, AutoTier.GUARDED_AUTO)

    def test_canary_percent_for_tier(self):
        assert canary_percent_for_tier(AutoTier.SAFE_AUTO, 25) == 100
        assert canary_percent_for_tier(AutoTier.OBSERVE, 25) == 0
        assert canary_percent_for_tier(AutoTier.GUARDED_AUTO, 25) == 25
        assert canary_percent_for_tier(None, 250) == 100


class TestCanaryBucket:
    def test_bucket_is_stable_and_in_range(self):
        first = canary_bucket("host-abc")
        assert first == canary_bucket("host-abc")
        assert 0 <= first <= 99

    def test_buckets_spread_over_hosts(self):
        buckets = {canary_bucket(f"host-{i}") for i in range(200)}
        assert len(buckets) > 50

    def test_selection(self):
        assert is_canary_selected(10, 11)
        assert not is_canary_selected(10, 10)
        assert not is_canary_selected(0, 0)
        assert is_canary_selected(99, 100)
