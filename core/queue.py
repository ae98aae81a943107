"""Queue drain engine: claims ready runs, executes them, and records retry/DLQ outcomes."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

from core.approval import ApprovalEvaluator, ApprovalPolicy
from core.audit import write_audit
from core.exceptions import RunConflictError, RunNotFoundError
from core.guard import GuardPolicy, summarize_violations, validate_commands
from core.metrics import MetricsRegistry
from core.models import (
    DrainItem,
    DrainSummary,
    ExecutionResult,
    RemediationRun,
    ReplaySummary,
    RunMode,
    RunState,
)
from core.policy import RemediationPolicy, ResolvedHostPolicy, resolve_host_policy
from core.runtime import (
    MAX_ERROR_CHARS,
    clone_for_replay,
    dead_letter,
    mark_canceled,
    mark_running,
    mark_succeeded,
    record_failure,
    truncate_text,
)
from integrations.base import CommandExecutor, StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_LIMIT = 5
MAX_DRAIN_LIMIT = 50
DEFAULT_REPLAY_LIMIT = 10
MAX_REPLAY_LIMIT = 100
CLAIM_ATTEMPTS = 8


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_limit(value: int | None, default: int, high: int) -> int:
    if value is None:
        return default
    return max(1, min(high, int(value)))


class QueueDrainEngine:
    """Drives queued execute-runs through execution, canary checks and rollback.

    Holds no scheduling state of its own: everything lives in the run rows, and
    every transition is a compare-and-set against the stored state, so several
    drains may run at once without executing a run twice.
    """

    def __init__(
        self,
        storage: StorageProvider,
        executor: CommandExecutor,
        global_policy: RemediationPolicy,
        global_guard: GuardPolicy,
        metrics: MetricsRegistry,
        approvals: ApprovalEvaluator | None = None,
    ) -> None:
        self._storage = storage
        self._executor = executor
        self._global_policy = global_policy
        self._global_guard = global_guard
        self._metrics = metrics
        self.approvals = approvals or ApprovalEvaluator(
            ApprovalPolicy(risk_threshold=global_policy.approval_risk_threshold)
        )

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, limit: int | None = None, now: datetime | None = None) -> DrainSummary:
        requested_limit = clamp_limit(limit, DEFAULT_DRAIN_LIMIT, MAX_DRAIN_LIMIT)
        items: list[DrainItem] = []
        seen: set[str] = set()

        expired = await self.expire_stale(now or _now())

        for _ in range(requested_limit):
            current = now or _now()
            run = await self._claim_next(current, seen)
            if run is None:
                break
            seen.add(run.id)
            try:
                item = await self._process(run, current)
            except Exception as exc:
                logger.exception("Unexpected error while processing run %s", run.id)
                item = await self._fail_unexpected(run, current, exc)
            items.append(item)

        queued = await self._storage.count_runs(mode=RunMode.EXECUTE, states=[RunState.QUEUED])
        self._metrics.queue_depth.set(queued)
        self._metrics.drain_processed.set(len(items))

        return DrainSummary(
            ok=all(i.state == RunState.SUCCEEDED for i in items),
            requested_limit=requested_limit,
            processed=len(items),
            expired=expired,
            items=items,
            errors=[f"{i.run_id}: {i.error}" for i in items if i.error],
        )

    async def expire_stale(self, now: datetime) -> int:
        """Cancel queued execute-runs that have waited past their host's queue TTL.

        Runs that are not ready (pending approval, backing off) are included, so
        they stop counting towards the per-host queue cap. Returns how many
        runs were canceled.
        """
        queued = await self._storage.list_runs(mode=RunMode.EXECUTE, states=[RunState.QUEUED])
        ttls: dict[str, int] = {}
        expired = 0
        for run in queued:
            if run.host_id not in ttls:
                ttls[run.host_id] = await self._queue_ttl(run.host_id)
            ttl = ttls[run.host_id]
            waiting_since = run.next_attempt_at or run.requested_at
            if now - waiting_since <= timedelta(minutes=ttl):
                continue

            stored = await self._storage.update_run(
                mark_canceled(run, now, f"Queued run expired (>{ttl}m)."), RunState.QUEUED
            )
            if stored is None:
                logger.debug("Run %s changed before it could be expired", run.id)
                continue
            expired += 1
            self._metrics.expired_total.inc()
            logger.info("Run %s on %s expired after %dm in queue", run.id, run.host_id, ttl)
            await write_audit(
                self._storage,
                "remediate.execute.expired",
                detail=f"{run.action_id} expired",
                user_id=run.requested_by_user_id,
                host_id=run.host_id,
                meta={"runId": run.id, "ttlMinutes": ttl},
            )
        return expired

    async def _queue_ttl(self, host_id: str) -> int:
        host = await self._storage.get_host(host_id)
        if host is None:
            return self._global_policy.queue_ttl_minutes
        resolved = resolve_host_policy(host.meta, self._global_policy, self._global_guard)
        return resolved.policy.queue_ttl_minutes

    async def _claim_next(self, now: datetime, seen: set[str]) -> RemediationRun | None:
        """Claim the oldest ready run by moving it ``queued -> running``.

        A lost compare-and-set means another drain took the run; look again.
        """
        for _ in range(CLAIM_ATTEMPTS):
            # runs already handled in this drain may be ready again (zero backoff)
            candidates = await self._storage.list_ready_runs(now, limit=len(seen) + 1)
            ready = next((r for r in candidates if r.id not in seen), None)
            if ready is None:
                return None
            claimed = await self._storage.update_run(mark_running(ready, now), RunState.QUEUED)
            if claimed is not None:
                return claimed
            logger.debug("Run %s claimed by a concurrent drain, retrying", ready.id)
        return None

    async def _finish(self, run: RemediationRun, expected: RunState = RunState.RUNNING) -> RemediationRun:
        stored = await self._storage.update_run(run, expected)
        if stored is None:
            raise RunConflictError(run.id, "state changed while the run was being processed")
        return stored

    async def _run_commands(
        self, commands: list[str], policy: RemediationPolicy, host_id: str
    ) -> ExecutionResult:
        try:
            return await self._executor.run(
                commands, policy.command_timeout_ms, policy.max_buffer_bytes, host_id=host_id
            )
        except Exception as exc:
            logger.warning("Executor raised for host %s: %s", host_id, exc)
            return ExecutionResult(ok=False, output=f"execution_error={exc}", error=str(exc))

    async def _process(self, run: RemediationRun, now: datetime) -> DrainItem:
        started = time.monotonic()
        host = await self._storage.get_host(run.host_id)

        if host is None or not host.enabled:
            final = await self._finish(mark_canceled(run, now, "Host is disabled; queued run canceled."))
            return await self._record(final, started)

        resolved = resolve_host_policy(host.meta, self._global_policy, self._global_guard)
        policy = resolved.policy

        waiting_since = run.next_attempt_at or run.requested_at
        if now - waiting_since > timedelta(minutes=policy.queue_ttl_minutes):
            final = await self._finish(
                mark_canceled(run, now, f"Queued run expired (>{policy.queue_ttl_minutes}m).")
            )
            return await self._record(final, started)

        violations = validate_commands(run.commands, resolved.guard_policy)
        if violations:
            reason = f"Execution blocked by policy at dequeue time: {summarize_violations(violations)}"
            final = await self._finish(dead_letter(run, now, reason))
            return await self._record(final, started, resolved)

        execution = await self._run_commands(run.commands, policy, run.host_id)
        if not execution.ok:
            error = execution.error or "One or more remediation commands failed."
            updated = record_failure(
                run,
                now,
                error,
                policy.retry_backoff_seconds,
                policy.retry_backoff_max_seconds,
                output=execution.output,
            )
            final = await self._finish(updated)
            return await self._record(final, started, resolved)

        updated = await self._run_canary(run, policy, now)
        if updated.canary.passed is False:
            updated = await self._run_rollback(updated, policy, now)
            error = f"Canary check failed: {updated.canary.error}"
            if updated.rollback.attempted and updated.rollback.succeeded:
                final = await self._finish(dead_letter(updated, now, f"{error}; rollback succeeded"))
            else:
                if updated.rollback.attempted:
                    error = f"{error}; rollback failed: {updated.rollback.error}"
                final = await self._finish(
                    record_failure(
                        updated,
                        now,
                        error,
                        policy.retry_backoff_seconds,
                        policy.retry_backoff_max_seconds,
                        output=execution.output,
                    )
                )
            return await self._record(final, started, resolved)

        final = await self._finish(mark_succeeded(updated, now, execution.output))
        return await self._record(final, started, resolved)

    async def _run_canary(
        self, run: RemediationRun, policy: RemediationPolicy, now: datetime
    ) -> RemediationRun:
        canary = run.canary
        if not (canary.enabled and canary.selected and canary.checks):
            return run
        result = await self._run_commands(canary.checks, policy, run.host_id)
        return run.model_copy(
            update={
                "canary": canary.model_copy(
                    update={
                        "last_checked_at": now,
                        "passed": result.ok,
                        "error": None if result.ok else truncate_text(result.error, MAX_ERROR_CHARS),
                    }
                )
            }
        )

    async def _run_rollback(
        self, run: RemediationRun, policy: RemediationPolicy, now: datetime
    ) -> RemediationRun:
        rollback = run.rollback
        if not (rollback.enabled and rollback.commands):
            return run
        result = await self._run_commands(rollback.commands, policy, run.host_id)
        self._metrics.rollbacks_total.labels(result="succeeded" if result.ok else "failed").inc()
        if not result.ok:
            logger.error("Rollback failed for run %s on %s: %s", run.id, run.host_id, result.error)
        return run.model_copy(
            update={
                "rollback": rollback.model_copy(
                    update={
                        "attempted": True,
                        "succeeded": result.ok,
                        "last_run_at": now,
                        "error": None if result.ok else truncate_text(result.error, MAX_ERROR_CHARS),
                    }
                )
            }
        )

    async def _fail_unexpected(self, run: RemediationRun, now: datetime, exc: Exception) -> DrainItem:
        """Best-effort failure recording when processing itself blew up."""
        error = f"Unexpected drain error: {exc}"
        current = await self._storage.get_run(run.id)
        if current is not None and current.state == RunState.RUNNING:
            updated = record_failure(
                current,
                now,
                error,
                self._global_policy.retry_backoff_seconds,
                self._global_policy.retry_backoff_max_seconds,
            )
            stored = await self._storage.update_run(updated, RunState.RUNNING)
            if stored is not None:
                current = stored
        state = current.state if current is not None else RunState.FAILED
        return DrainItem(
            run_id=run.id, host_id=run.host_id, action_id=run.action_id, state=state, error=error
        )

    async def _record(
        self,
        run: RemediationRun,
        started: float,
        resolved: ResolvedHostPolicy | None = None,
    ) -> DrainItem:
        self._metrics.runs_total.labels(state=run.state.value).inc()
        self._metrics.run_seconds.observe(time.monotonic() - started)
        if run.state == RunState.QUEUED:
            self._metrics.retries_total.inc()
        if run.dlq:
            self._metrics.dlq_total.inc()

        logger.info(
            "Run %s action=%s host=%s -> %s attempts=%d%s",
            run.id,
            run.action_id,
            run.host_id,
            run.state.value,
            run.attempts,
            " dlq" if run.dlq else "",
        )
        item = DrainItem(
            run_id=run.id,
            host_id=run.host_id,
            action_id=run.action_id,
            state=run.state,
            error=run.last_error if run.state != RunState.SUCCEEDED else None,
        )
        meta = {
            "runId": run.id,
            "state": run.state.value,
            "attempts": run.attempts,
            "dlq": run.dlq,
        }
        if resolved is not None:
            meta["profile"] = resolved.profile.value
        if run.rollback.attempted:
            meta["rollbackSucceeded"] = run.rollback.succeeded
        await write_audit(
            self._storage,
            "remediate.execute.dequeued",
            detail=f"{run.action_id} {run.state.value}",
            user_id=run.requested_by_user_id,
            host_id=run.host_id,
            meta=meta,
        )
        return item

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def _replayed_ids(self) -> set[str]:
        runs = await self._storage.list_runs(mode=RunMode.EXECUTE)
        return {r.replay_of_run_id for r in runs if r.replay_of_run_id}

    async def replay(
        self, run_id: str, requested_by: str | None = None, now: datetime | None = None
    ) -> RemediationRun:
        """Clone one dead-lettered run into a new queued run."""
        run = await self._storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if not run.dlq:
            raise RunConflictError(run.id, "only dead-lettered runs can be replayed")
        if run.id in await self._replayed_ids():
            raise RunConflictError(run.id, "run has already been replayed")
        return await self._create_replay(run, requested_by, now or _now())

    async def replay_dlq(
        self, limit: int | None = None, requested_by: str | None = None, now: datetime | None = None
    ) -> ReplaySummary:
        requested_limit = clamp_limit(limit, DEFAULT_REPLAY_LIMIT, MAX_REPLAY_LIMIT)
        now = now or _now()
        replayed_ids = await self._replayed_ids()
        dead = await self._storage.list_runs(
            mode=RunMode.EXECUTE, states=[RunState.FAILED], dlq=True
        )
        created: list[RemediationRun] = []
        for run in dead:
            if len(created) >= requested_limit:
                break
            if run.id in replayed_ids:
                continue
            created.append(await self._create_replay(run, requested_by, now))
        return ReplaySummary(
            ok=True, requested_limit=requested_limit, replayed=len(created), runs=created
        )

    async def _create_replay(
        self, run: RemediationRun, requested_by: str | None, now: datetime
    ) -> RemediationRun:
        clone = clone_for_replay(run, now, requested_by)
        await self._storage.create_run(clone)
        self._metrics.replays_total.inc()
        await write_audit(
            self._storage,
            "remediate.execute.replayed",
            detail=f"{run.action_id} replayed from {run.id}",
            user_id=requested_by,
            host_id=run.host_id,
            meta={"runId": clone.id, "replayOfRunId": run.id},
        )
        logger.info("Replayed dead-lettered run %s as %s", run.id, clone.id)
        return clone

    # ------------------------------------------------------------------
    # Operator actions on queued runs
    # ------------------------------------------------------------------

    async def _get_run(self, run_id: str) -> RemediationRun:
        run = await self._storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def cancel(
        self, run_id: str, actor_user_id: str | None = None, now: datetime | None = None
    ) -> RemediationRun:
        """Cancel a queued run. Running runs are left to finish or time out."""
        run = await self._get_run(run_id)
        if run.state != RunState.QUEUED:
            raise RunConflictError(run.id, f"only queued runs can be canceled (state={run.state.value})")
        stored = await self._finish(
            mark_canceled(run, now or _now(), f"Canceled by {actor_user_id or 'operator'}"),
            expected=RunState.QUEUED,
        )
        await write_audit(
            self._storage,
            "remediate.execute.canceled",
            detail=f"{run.action_id} canceled",
            user_id=actor_user_id,
            host_id=run.host_id,
            meta={"runId": run.id},
        )
        return stored

    async def approve(
        self, run_id: str, actor_user_id: str, now: datetime | None = None
    ) -> RemediationRun:
        run = await self._get_run(run_id)
        approved = self.approvals.approve(run, actor_user_id, now or _now())
        stored = await self._finish(approved, expected=RunState.QUEUED)
        await write_audit(
            self._storage,
            "remediate.execute.approved",
            detail=f"{run.action_id} approved",
            user_id=actor_user_id,
            host_id=run.host_id,
            meta={"runId": run.id},
        )
        return stored

    async def reject(
        self, run_id: str, actor_user_id: str, now: datetime | None = None
    ) -> RemediationRun:
        run = await self._get_run(run_id)
        rejected = self.approvals.reject(run, actor_user_id, now or _now())
        stored = await self._finish(rejected, expected=RunState.QUEUED)
        await write_audit(
            self._storage,
            "remediate.execute.rejected",
            detail=f"{run.action_id} rejected",
            user_id=actor_user_id,
            host_id=run.host_id,
            meta={"runId": run.id},
        )
        return stored
