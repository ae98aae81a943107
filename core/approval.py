"""Risk-threshold approval policy for queued remediation runs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from core.autonomy import approval_required
from core.exceptions import RunConflictError
from core.models import (
    ApprovalRecord,
    ApprovalStatus,
    RemediationAction,
    RemediationRun,
    RunState,
)


@dataclass
class ApprovalPolicy:
    """Runs whose action risk is at or above ``risk_threshold`` wait for an operator."""

    risk_threshold: str = "high"


DEFAULT_POLICY = ApprovalPolicy()


class ApprovalEvaluator:
    """Opens, grants and rejects approval requests on remediation runs.

    Usage:
        evaluator = ApprovalEvaluator(ApprovalPolicy(risk_threshold="medium"))
        run.approval = evaluator.open_request(action, user_id, now)
        evaluator.approve(run, "alice", now)
    """

    def __init__(self, policy: ApprovalPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    # ------------------------------------------------------------------
    # Policy queries
    # ------------------------------------------------------------------

    def requires_approval(self, action: RemediationAction) -> bool:
        return approval_required(action.risk, self._policy.risk_threshold)

    def open_request(
        self,
        action: RemediationAction,
        requested_by: str | None,
        now: datetime,
    ) -> ApprovalRecord:
        """Return the approval sub-record a new run for *action* starts with."""
        if not self.requires_approval(action):
            return ApprovalRecord()
        return ApprovalRecord(
            required=True,
            status=ApprovalStatus.PENDING,
            reason=f"risk={action.risk.value} >= threshold={self._policy.risk_threshold}",
            requested_at=now,
            requested_by_user_id=requested_by,
        )

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_approved(run: RemediationRun) -> bool:
        if not run.approval.required:
            return True
        return run.approval.status == ApprovalStatus.APPROVED

    @staticmethod
    def is_pending(run: RemediationRun) -> bool:
        return run.approval.required and run.approval.status == ApprovalStatus.PENDING

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def approve(self, run: RemediationRun, approver: str, now: datetime) -> RemediationRun:
        """Grant a pending approval. Returns an updated copy of *run*."""
        self._require_pending(run)
        approval = run.approval.model_copy(
            update={
                "status": ApprovalStatus.APPROVED,
                "approved_at": now,
                "approved_by_user_id": approver,
            }
        )
        return run.model_copy(update={"approval": approval})

    def reject(self, run: RemediationRun, rejected_by: str, now: datetime) -> RemediationRun:
        """Reject a pending approval and cancel the run."""
        self._require_pending(run)
        approval = run.approval.model_copy(
            update={
                "status": ApprovalStatus.REJECTED,
                "approved_at": now,
                "approved_by_user_id": rejected_by,
            }
        )
        return run.model_copy(
            update={
                "approval": approval,
                "state": RunState.CANCELED,
                "finished_at": now,
                "last_error": f"Approval rejected by {rejected_by}",
            }
        )

    def _require_pending(self, run: RemediationRun) -> None:
        if run.state != RunState.QUEUED:
            raise RunConflictError(run.id, f"cannot change approval while {run.state.value}")
        if not self.is_pending(run):
            raise RunConflictError(run.id, "no pending approval request")
