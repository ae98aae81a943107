"""Tests for core/runtime.py: the remediation run state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import RunConflictError
from core.models import (
    ApprovalRecord,
    ApprovalStatus,
    RemediationRun,
    RunMode,
    RunState,
)
from core.runtime import (
    MAX_ERROR_CHARS,
    can_transition,
    clone_for_replay,
    compute_backoff_seconds,
    dead_letter,
    is_ready,
    mark_canceled,
    mark_running,
    mark_succeeded,
    record_failure,
    truncate_text,
)

NOW = datetime(2026, 2, 1, 8, 0, 0, tzinfo=timezone.utc)


def _make_run(**overrides) -> RemediationRun:
    fields = {
        "id": "run-abc",
        "host_id": "host-1",
        "action_id": "harden-ssh-auth",
        "requested_at": NOW,
        "commands": ["sudo ufw status"],
    }
    fields.update(overrides)
    return RemediationRun(**fields)


class TestBackoff:
    def test_sequence_with_cap(self):
        delays = [compute_backoff_seconds(a, 5, 60) for a in range(6)]
        assert delays == [5, 10, 20, 40, 60, 60]

    def test_negative_attempts_treated_as_zero(self):
        assert compute_backoff_seconds(-3, 5, 60) == 5

    def test_huge_attempts_stay_capped(self):
        assert compute_backoff_seconds(10_000, 5, 300) == 300

    def test_retry_schedule_through_record_failure(self):
        run = _make_run(max_attempts=10)
        deltas = []
        for _ in range(6):
            run = record_failure(mark_running(run, NOW), NOW, "boom", 5, 60)
            deltas.append(int((run.next_attempt_at - NOW).total_seconds()))
        assert deltas == [5, 10, 20, 40, 60, 60]


class TestTransitions:
    def test_transition_table(self):
        assert can_transition(RunState.QUEUED, RunState.RUNNING)
        assert can_transition(RunState.RUNNING, RunState.QUEUED)
        assert not can_transition(RunState.SUCCEEDED, RunState.QUEUED)
        assert not can_transition(RunState.QUEUED, RunState.SUCCEEDED)

    def test_mark_running_sets_timestamps(self):
        running = mark_running(_make_run(), NOW)
        assert running.state == RunState.RUNNING
        assert running.started_at == NOW
        assert running.last_attempt_at == NOW

    def test_cannot_start_terminal_run(self):
        with pytest.raises(RunConflictError):
            mark_running(_make_run(state=RunState.SUCCEEDED), NOW)

    def test_mark_succeeded_truncates_output(self):
        done = mark_succeeded(mark_running(_make_run(), NOW), NOW, "x" * 9000)
        assert done.state == RunState.SUCCEEDED
        assert done.finished_at == NOW
        assert done.output.endswith("...[truncated 1000 chars]")

    def test_cancel_only_from_queued_or_running(self):
        assert mark_canceled(_make_run(), NOW, "stop").state == RunState.CANCELED
        with pytest.raises(RunConflictError):
            mark_canceled(_make_run(state=RunState.FAILED), NOW, "stop")


class TestRecordFailure:
    def test_dlq_exactly_on_third_failure(self):
        run = _make_run(max_attempts=3)
        outcomes = []
        for i in range(3):
            run = record_failure(mark_running(run, NOW), NOW, f"fail {i}", 5, 60)
            outcomes.append((run.state, run.dlq))
        assert outcomes == [
            (RunState.QUEUED, False),
            (RunState.QUEUED, False),
            (RunState.FAILED, True),
        ]
        assert run.attempts == 3
        assert run.next_attempt_at is None
        assert run.dlq_reason.startswith("max_attempts_exhausted:3/3: fail 2")

    def test_single_attempt_goes_straight_to_dlq(self):
        run = record_failure(mark_running(_make_run(max_attempts=1), NOW), NOW, "x", 5, 60)
        assert run.dlq is True

    def test_error_text_bounded(self):
        run = record_failure(mark_running(_make_run(), NOW), NOW, "e" * 5000, 5, 60)
        assert len(run.last_error) < 5000
        assert run.last_error.startswith("e" * MAX_ERROR_CHARS)

    def test_dead_letter_skips_retries(self):
        run = dead_letter(mark_running(_make_run(), NOW), NOW, "blocked")
        assert run.state == RunState.FAILED
        assert run.dlq is True
        assert run.dlq_reason == "blocked"
        assert run.attempts == 1


class TestIsReady:
    def test_queued_execute_run_is_ready(self):
        assert is_ready(_make_run(), NOW)

    def test_backoff_not_elapsed(self):
        run = _make_run(next_attempt_at=NOW + timedelta(seconds=5))
        assert not is_ready(run, NOW)
        assert is_ready(run, NOW + timedelta(seconds=5))

    def test_dry_run_and_dlq_never_ready(self):
        assert not is_ready(_make_run(mode=RunMode.DRY_RUN), NOW)
        assert not is_ready(_make_run(dlq=True), NOW)

    def test_pending_approval_blocks(self):
        pending = ApprovalRecord(required=True, status=ApprovalStatus.PENDING)
        assert not is_ready(_make_run(approval=pending), NOW)
        approved = pending.model_copy(update={"status": ApprovalStatus.APPROVED})
        assert is_ready(_make_run(approval=approved), NOW)


class TestReplay:
    def test_clone_resets_attempts_and_links_origin(self):
        dead = dead_letter(mark_running(_make_run(), NOW), NOW, "boom")
        later = NOW + timedelta(minutes=10)
        clone = clone_for_replay(dead, later, "operator")
        assert clone.id != dead.id
        assert clone.replay_of_run_id == dead.id
        assert clone.state == RunState.QUEUED
        assert clone.attempts == 0
        assert clone.dlq is False
        assert clone.requested_at == later
        assert clone.requested_by_user_id == "operator"

    def test_cannot_replay_healthy_run(self):
        with pytest.raises(RunConflictError):
            clone_for_replay(_make_run(), NOW, None)


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate_text("abc", 10) == "abc"
        assert truncate_text(None, 10) is None
