"""Remediation run state machine: readiness, backoff, retry/DLQ outcome and cancel."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from core.exceptions import RunConflictError
from core.models import ApprovalStatus, RemediationRun, RunMode, RunState

MAX_ERROR_CHARS = 1200
MAX_OUTPUT_CHARS = 8000

# Allowed state moves; anything else is a programming error or a lost race
TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.QUEUED: frozenset({RunState.RUNNING, RunState.CANCELED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.QUEUED, RunState.CANCELED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.CANCELED: frozenset(),
}


def _uid() -> str:
    return uuid.uuid4().hex[:8]


def new_run_id() -> str:
    return f"run-{_uid()}"


def truncate_text(text: str | None, limit: int) -> str | None:
    """Cut *text* to *limit* characters, noting how much was dropped."""
    if text is None or len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"{text[:limit]}...[truncated {dropped} chars]"


def can_transition(current: RunState, target: RunState) -> bool:
    return target in TRANSITIONS[current]


def compute_backoff_seconds(attempts: int, base_seconds: int, max_seconds: int) -> int:
    """Exponential backoff for a run that has failed *attempts* times before now.

    ``min(base * 2**attempts, max)``: for base=5, max=60 the sequence over
    attempts 0..5 is 5, 10, 20, 40, 60, 60.
    """
    if attempts < 0:
        attempts = 0
    # Cap the exponent so huge attempt counts do not build giant ints
    exponent = min(attempts, 32)
    return min(base_seconds * (2**exponent), max_seconds)


def is_ready(run: RemediationRun, now: datetime) -> bool:
    """True when a queued execute-run may be claimed by a drain."""
    if run.state != RunState.QUEUED or run.mode != RunMode.EXECUTE:
        return False
    if run.dlq:
        return False
    if run.approval.required and run.approval.status != ApprovalStatus.APPROVED:
        return False
    return run.next_attempt_at is None or run.next_attempt_at <= now


def mark_running(run: RemediationRun, now: datetime) -> RemediationRun:
    if not can_transition(run.state, RunState.RUNNING):
        raise RunConflictError(run.id, f"cannot start from {run.state.value}")
    return run.model_copy(
        update={"state": RunState.RUNNING, "started_at": now, "last_attempt_at": now}
    )


def mark_succeeded(run: RemediationRun, now: datetime, output: str | None) -> RemediationRun:
    return run.model_copy(
        update={
            "state": RunState.SUCCEEDED,
            "finished_at": now,
            "output": truncate_text(output, MAX_OUTPUT_CHARS),
            "last_error": None,
            "next_attempt_at": None,
        }
    )


def mark_canceled(run: RemediationRun, now: datetime, reason: str) -> RemediationRun:
    if not can_transition(run.state, RunState.CANCELED):
        raise RunConflictError(run.id, f"cannot cancel from {run.state.value}")
    return run.model_copy(
        update={
            "state": RunState.CANCELED,
            "finished_at": now,
            "last_error": truncate_text(reason, MAX_ERROR_CHARS),
            "next_attempt_at": None,
        }
    )


def record_failure(
    run: RemediationRun,
    now: datetime,
    error: str,
    backoff_seconds: int,
    backoff_max_seconds: int,
    output: str | None = None,
) -> RemediationRun:
    """Schedule a retry or dead-letter the run after a failed attempt.

    Retries while ``attempts + 1 < max_attempts``; the attempt that reaches
    ``max_attempts`` moves the run to ``failed`` with ``dlq=True``.
    """
    prior = run.attempts
    attempts = prior + 1
    error_text = truncate_text(error, MAX_ERROR_CHARS)
    output_text = truncate_text(output, MAX_OUTPUT_CHARS)

    if attempts < run.max_attempts:
        delay = compute_backoff_seconds(prior, backoff_seconds, backoff_max_seconds)
        return run.model_copy(
            update={
                "state": RunState.QUEUED,
                "attempts": attempts,
                "next_attempt_at": now + timedelta(seconds=delay),
                "last_error": error_text,
                "output": output_text,
                "started_at": None,
            }
        )

    return run.model_copy(
        update={
            "state": RunState.FAILED,
            "attempts": attempts,
            "finished_at": now,
            "next_attempt_at": None,
            "last_error": error_text,
            "output": output_text,
            "dlq": True,
            "dlq_reason": truncate_text(
                f"max_attempts_exhausted:{attempts}/{run.max_attempts}: {error}", MAX_ERROR_CHARS
            ),
        }
    )


def dead_letter(run: RemediationRun, now: datetime, reason: str) -> RemediationRun:
    """Fail a run immediately without retry (non-transient errors)."""
    text = truncate_text(reason, MAX_ERROR_CHARS)
    return run.model_copy(
        update={
            "state": RunState.FAILED,
            "attempts": run.attempts + 1,
            "finished_at": now,
            "next_attempt_at": None,
            "last_error": text,
            "dlq": True,
            "dlq_reason": text,
        }
    )


def clone_for_replay(run: RemediationRun, now: datetime, requested_by: str | None) -> RemediationRun:
    """Build a fresh queued run from a dead-lettered one."""
    if not run.dlq:
        raise RunConflictError(run.id, "only dead-lettered runs can be replayed")
    return RemediationRun(
        id=new_run_id(),
        host_id=run.host_id,
        action_id=run.action_id,
        mode=RunMode.EXECUTE,
        state=RunState.QUEUED,
        requested_at=now,
        requested_by_user_id=requested_by or run.requested_by_user_id,
        commands=list(run.commands),
        attempts=0,
        max_attempts=run.max_attempts,
        replay_of_run_id=run.id,
        approval=run.approval.model_copy(deep=True),
        canary=run.canary.model_copy(
            update={"last_checked_at": None, "passed": None, "error": None}
        ),
        rollback=run.rollback.model_copy(
            update={"attempted": False, "succeeded": None, "last_run_at": None, "error": None}
        ),
        auto_queued=run.auto_queued,
        auto_reason=run.auto_reason,
        auto_tier=run.auto_tier,
    )
