"""Admission control: the gates a remediation request must pass before a run is queued."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from core.approval import ApprovalEvaluator, ApprovalPolicy
from core.audit import write_audit
from core.autonomy import (
    canary_bucket,
    canary_percent_for_tier,
    is_canary_selected,
    tier_allows_autonomous,
)
from core.catalog import ActionCatalog
from core.exceptions import AdmissionRejected
from core.guard import GuardPolicy, summarize_violations, validate_commands
from core.metrics import MetricsRegistry
from core.models import (
    AutoTier,
    CanaryRecord,
    Host,
    RemediationAction,
    RemediationRun,
    RollbackRecord,
    RunMode,
    RunState,
)
from core.policy import RemediationPolicy, ResolvedHostPolicy, is_within_minutes, resolve_host_policy
from core.runtime import new_run_id
from integrations.base import StorageProvider

logger = logging.getLogger(__name__)

# Rejection reason -> HTTP-style status
REJECTION_STATUS: dict[str, int] = {
    "unknown_action": 404,
    "host_not_found": 404,
    "host_disabled": 409,
    "confirm_phrase_mismatch": 400,
    "guard_violation": 400,
    "dry_run_required": 409,
    "run_in_flight": 409,
    "rate_limited": 429,
    "cooldown_active": 429,
    "host_queue_full": 429,
    "queue_full": 429,
    "autonomous_disabled": 409,
    "observe_only": 409,
    "tier_not_allowed": 409,
    "autonomous_rate_limited": 429,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionController:
    """Checks admission gates against live aggregate counts and creates queued runs.

    Gates are evaluated in a fixed order and the first failure raises
    :class:`AdmissionRejected`; no run row is written on rejection.
    """

    def __init__(
        self,
        storage: StorageProvider,
        catalog: ActionCatalog,
        global_policy: RemediationPolicy,
        global_guard: GuardPolicy,
        metrics: MetricsRegistry,
    ) -> None:
        self._storage = storage
        self._catalog = catalog
        self._global_policy = global_policy
        self._global_guard = global_guard
        self._metrics = metrics

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _reject(self, reason: str, detail: str = "") -> AdmissionRejected:
        self._metrics.admission_rejections_total.labels(reason=reason).inc()
        logger.info("Admission rejected reason=%s detail=%s", reason, detail)
        return AdmissionRejected(reason, REJECTION_STATUS[reason], detail)

    async def resolve_target(
        self, host_id: str, action_id: str
    ) -> tuple[Host, RemediationAction, ResolvedHostPolicy]:
        action = self._catalog.get(action_id)
        if action is None:
            raise self._reject("unknown_action", f"Unknown action '{action_id}'")
        host = await self._storage.get_host(host_id)
        if host is None:
            raise self._reject("host_not_found", f"Unknown host '{host_id}'")
        if not host.enabled:
            raise self._reject("host_disabled", f"Host '{host_id}' is disabled")
        resolved = resolve_host_policy(host.meta, self._global_policy, self._global_guard)
        return host, action, resolved

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _check_guard(self, action: RemediationAction, guard: GuardPolicy) -> None:
        violations = validate_commands(action.commands, guard)
        if violations:
            raise self._reject("guard_violation", summarize_violations(violations))

    async def _check_dry_run(
        self, host: Host, action: RemediationAction, policy: RemediationPolicy, now: datetime
    ) -> None:
        latest = await self._storage.list_runs(
            host_id=host.id,
            action_id=action.id,
            mode=RunMode.DRY_RUN,
            states=[RunState.SUCCEEDED],
            limit=1,
            newest_first=True,
        )
        if not latest:
            raise self._reject("dry_run_required", "Run a dry-run for this action first")
        rehearsed_at = latest[0].finished_at or latest[0].requested_at
        if not is_within_minutes(rehearsed_at, policy.dry_run_max_age_minutes, now):
            raise self._reject(
                "dry_run_required",
                f"Latest dry-run is older than {policy.dry_run_max_age_minutes}m",
            )

    async def _check_capacity(
        self, host: Host, action: RemediationAction, policy: RemediationPolicy, now: datetime
    ) -> None:
        """Gates (c) through (g): in-flight, hourly rate, cooldown, host and global depth."""
        running = await self._storage.count_runs(
            host_id=host.id, action_id=action.id, mode=RunMode.EXECUTE, states=[RunState.RUNNING]
        )
        if running:
            raise self._reject("run_in_flight", f"'{action.id}' is already running on {host.id}")

        last_hour = await self._storage.count_runs(
            host_id=host.id, mode=RunMode.EXECUTE, requested_since=now - timedelta(hours=1)
        )
        if last_hour >= policy.max_execute_per_hour:
            raise self._reject(
                "rate_limited",
                f"{last_hour} executes in the last hour (max {policy.max_execute_per_hour})",
            )

        if policy.execute_cooldown_minutes > 0:
            latest = await self._storage.list_runs(
                host_id=host.id,
                action_id=action.id,
                mode=RunMode.EXECUTE,
                limit=1,
                newest_first=True,
            )
            if latest:
                elapsed = now - latest[0].requested_at
                cooldown = timedelta(minutes=policy.execute_cooldown_minutes)
                if elapsed < cooldown:
                    remaining = int((cooldown - elapsed).total_seconds())
                    raise self._reject("cooldown_active", f"Cooldown active for {remaining}s")

        host_depth = await self._storage.count_runs(
            host_id=host.id, mode=RunMode.EXECUTE, states=[RunState.QUEUED, RunState.RUNNING]
        )
        if host_depth >= policy.max_queue_per_host:
            raise self._reject(
                "host_queue_full",
                f"{host_depth} queued/running on host (max {policy.max_queue_per_host})",
            )

        total_depth = await self._storage.count_runs(mode=RunMode.EXECUTE, states=[RunState.QUEUED])
        if total_depth >= policy.max_queue_total:
            raise self._reject(
                "queue_full", f"{total_depth} runs queued (max {policy.max_queue_total})"
            )

    # ------------------------------------------------------------------
    # Run construction
    # ------------------------------------------------------------------

    def _build_run(
        self,
        host: Host,
        action: RemediationAction,
        policy: RemediationPolicy,
        requested_by: str | None,
        now: datetime,
        rollout_percent: int,
    ) -> RemediationRun:
        evaluator = ApprovalEvaluator(ApprovalPolicy(risk_threshold=policy.approval_risk_threshold))
        bucket = canary_bucket(host.id)
        return RemediationRun(
            id=new_run_id(),
            host_id=host.id,
            action_id=action.id,
            mode=RunMode.EXECUTE,
            state=RunState.QUEUED,
            requested_at=now,
            requested_by_user_id=requested_by,
            commands=list(action.commands),
            max_attempts=policy.max_retry_attempts,
            approval=evaluator.open_request(action, requested_by, now),
            canary=CanaryRecord(
                enabled=bool(action.canary_checks),
                rollout_percent=rollout_percent,
                bucket=bucket,
                selected=is_canary_selected(bucket, rollout_percent),
                checks=list(action.canary_checks)[:20],
            ),
            rollback=RollbackRecord(
                enabled=policy.auto_rollback and bool(action.rollback_commands),
                commands=list(action.rollback_commands)[:20],
            ),
        )

    async def _persist(self, run: RemediationRun, audit_action: str, profile: str) -> RemediationRun:
        created = await self._storage.create_run(run)
        suffix = "_pending_approval" if run.approval.required else ""
        self._metrics.admissions_total.labels(
            kind="autonomous" if run.auto_queued else "execute"
        ).inc()
        await write_audit(
            self._storage,
            f"{audit_action}{suffix}",
            detail=f"{run.action_id} queued (profile={profile})",
            user_id=run.requested_by_user_id,
            host_id=run.host_id,
            meta={
                "runId": run.id,
                "actionId": run.action_id,
                "approvalRequired": run.approval.required,
                "canaryBucket": run.canary.bucket,
                "canarySelected": run.canary.selected,
                "autoTier": run.auto_tier.value if run.auto_tier else None,
            },
        )
        logger.info(
            "Queued run %s action=%s host=%s approval=%s",
            run.id,
            run.action_id,
            run.host_id,
            run.approval.status.value,
        )
        return created

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def dry_run(
        self,
        host_id: str,
        action_id: str,
        requested_by: str | None = None,
        now: datetime | None = None,
    ) -> RemediationRun:
        """Record a no-op rehearsal. Commands are validated but never executed."""
        now = now or _now()
        host, action, resolved = await self.resolve_target(host_id, action_id)
        self._check_guard(action, resolved.guard_policy)

        preview = "\n".join(f"[dry-run] {c}" for c in action.commands)
        run = RemediationRun(
            id=new_run_id(),
            host_id=host.id,
            action_id=action.id,
            mode=RunMode.DRY_RUN,
            state=RunState.SUCCEEDED,
            requested_at=now,
            requested_by_user_id=requested_by,
            started_at=now,
            finished_at=now,
            commands=list(action.commands),
            output=preview,
        )
        await self._storage.create_run(run)
        await write_audit(
            self._storage,
            "remediate.dry_run",
            detail=f"{action.id} dry-run recorded",
            user_id=requested_by,
            host_id=host.id,
            meta={"runId": run.id, "actionId": action.id},
        )
        return run

    async def admit_execute(
        self,
        host_id: str,
        action_id: str,
        confirm_phrase: str | None,
        requested_by: str | None = None,
        now: datetime | None = None,
    ) -> RemediationRun:
        now = now or _now()
        host, action, resolved = await self.resolve_target(host_id, action_id)
        policy = resolved.policy

        if (confirm_phrase or "").strip() != action.effective_confirm_phrase:
            raise self._reject(
                "confirm_phrase_mismatch", f"Type '{action.effective_confirm_phrase}' to confirm"
            )
        self._check_guard(action, resolved.guard_policy)
        await self._check_dry_run(host, action, policy, now)
        await self._check_capacity(host, action, policy, now)

        run = self._build_run(
            host, action, policy, requested_by, now, policy.canary_rollout_percent
        )
        return await self._persist(run, "remediate.execute.queued", resolved.profile.value)

    async def admit_autonomous(
        self,
        host_id: str,
        action_id: str,
        reason: str,
        requested_by: str | None = None,
        operator_initiated: bool = False,
        now: datetime | None = None,
    ) -> RemediationRun:
        """Queue an action without dry-run or confirm phrase, within the autonomy limits.

        ``operator_initiated`` is used by confirmed fleet rollouts: it bypasses the
        autonomy switch, tier ceiling and autonomous hourly cap, but observe-tier
        actions still never execute.
        """
        now = now or _now()
        host, action, resolved = await self.resolve_target(host_id, action_id)
        policy = resolved.policy
        tier = action.auto_tier

        if tier == AutoTier.OBSERVE:
            raise self._reject("observe_only", f"'{action.id}' is observe-only")
        if not operator_initiated:
            if not policy.autonomous_enabled:
                raise self._reject("autonomous_disabled", "Autonomous remediation is disabled")
            if not tier_allows_autonomous(tier, policy.autonomous_max_tier):
                raise self._reject(
                    "tier_not_allowed",
                    f"tier {tier.value} exceeds {policy.autonomous_max_tier.value}",
                )
            auto_last_hour = await self._storage.count_runs(
                mode=RunMode.EXECUTE, auto_queued=True, requested_since=now - timedelta(hours=1)
            )
            if auto_last_hour >= policy.autonomous_max_queued_per_hour:
                raise self._reject(
                    "autonomous_rate_limited",
                    f"{auto_last_hour} autonomous runs in the last hour",
                )

        self._check_guard(action, resolved.guard_policy)
        await self._check_capacity(host, action, policy, now)

        percent = canary_percent_for_tier(tier, policy.canary_rollout_percent)
        run = self._build_run(host, action, policy, requested_by, now, percent)
        run = run.model_copy(
            update={"auto_queued": True, "auto_reason": reason, "auto_tier": tier}
        )
        return await self._persist(run, "remediate.execute.autonomous_queued", resolved.profile.value)
