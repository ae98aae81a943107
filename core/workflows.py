"""Incident workflow definitions, YAML catalog and API step executor."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, model_validator

from core.catalog import CatalogParser
from core.models import IncidentState, RunState, Severity

if TYPE_CHECKING:
    from core.queue import QueueDrainEngine
    from integrations.base import NotificationDispatcher, StorageProvider

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    API = "api"
    MANUAL = "manual"


class StepAction(str, Enum):
    STATUS_SNAPSHOT = "status-snapshot"
    DRAIN_QUEUE = "drain-queue"
    NOTIFY_TEST = "notify-test"
    REPLAY_DLQ = "replay-dlq"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class WorkflowStep(BaseModel):
    """A single step in an incident workflow."""

    id: str
    title: str
    description: str = ""
    kind: StepKind
    action: StepAction | None = None
    default_payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_step(self) -> WorkflowStep:
        if self.kind == StepKind.API and self.action is None:
            raise ValueError(f"Step '{self.id}' (kind=api) requires 'action'")
        if self.kind == StepKind.MANUAL and self.action is not None:
            raise ValueError(f"Step '{self.id}' (kind=manual) must not declare an action")
        return self


class IncidentWorkflow(BaseModel):
    """A fully validated workflow loaded from a YAML file."""

    id: str
    title: str
    severity: Severity
    summary: str = ""
    trigger_signals: list[str] = Field(default_factory=list)
    playbook_refs: list[str] = Field(default_factory=list)
    steps: list[WorkflowStep]

    @model_validator(mode="after")
    def _validate_structure(self) -> IncidentWorkflow:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                duplicates.add(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"Duplicate step IDs: {sorted(duplicates)}")
        return self

    def get_step(self, step_id: str) -> WorkflowStep | None:
        normalized = step_id.strip().lower()
        for step in self.steps:
            if step.id == normalized:
                return step
        return None


class WorkflowCatalog:
    def __init__(self, workflows: list[IncidentWorkflow]) -> None:
        self._workflows = {w.id: w for w in workflows}

    @classmethod
    def from_directory(cls, directory: str | Path) -> WorkflowCatalog:
        return cls(CatalogParser.load_directory(directory, IncidentWorkflow))

    def get(self, workflow_id: str) -> IncidentWorkflow | None:
        return self._workflows.get(workflow_id.strip().lower())

    def all(self) -> list[IncidentWorkflow]:
        return list(self._workflows.values())

    def for_signal(self, signal_code: str) -> IncidentWorkflow | None:
        """Return the first workflow triggered by *signal_code*, if any."""
        code = signal_code.strip().lower()
        for workflow in self._workflows.values():
            if code in workflow.trigger_signals:
                return workflow
        return None


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


class StepExecution(BaseModel):
    ok: bool
    error: str | None = None
    workflow_id: str
    step_id: str
    action: StepAction | None = None
    result: dict[str, Any] = Field(default_factory=dict)


def inspect_step_result(result: Any) -> tuple[bool, str | None]:
    """A mapping with ``ok`` set to False marks the step as failed."""
    if not isinstance(result, dict):
        return True, None
    if result.get("ok") is False:
        error = result.get("error") or result.get("detail") or "Workflow step reported failure"
        return False, str(error)
    return True, None


def _bounded_int(value: Any, fallback: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


class WorkflowStepExecutor:
    """Runs the API-backed steps of incident workflows.

    Execution semantics
    -------------------
    - The step's ``default_payload`` is merged with the caller payload; caller
      keys win.
    - Any exception raised by the step action becomes a failed execution with
      the error text, so the incident engine can record it on the timeline.
    """

    def __init__(
        self,
        storage: StorageProvider,
        queue: QueueDrainEngine,
        notifier: NotificationDispatcher,
        notify_target: str = "",
    ) -> None:
        self._storage = storage
        self._queue = queue
        self._notifier = notifier
        self._notify_target = notify_target

    async def execute(
        self,
        workflow: IncidentWorkflow,
        step: WorkflowStep,
        payload: dict[str, Any] | None = None,
        actor_user_id: str | None = None,
    ) -> StepExecution:
        merged = {**step.default_payload, **(payload or {})}
        try:
            result = await self._dispatch(step, merged, actor_user_id)
        except Exception as exc:
            logger.warning(
                "Workflow '%s' step '%s' raised: %s", workflow.id, step.id, exc, exc_info=True
            )
            return StepExecution(
                ok=False,
                error=str(exc),
                workflow_id=workflow.id,
                step_id=step.id,
                action=step.action,
            )

        ok, error = inspect_step_result(result)
        return StepExecution(
            ok=ok,
            error=error,
            workflow_id=workflow.id,
            step_id=step.id,
            action=step.action,
            result=result,
        )

    async def _dispatch(
        self, step: WorkflowStep, payload: dict[str, Any], actor_user_id: str | None
    ) -> dict[str, Any]:
        if step.action == StepAction.STATUS_SNAPSHOT:
            return await self.status_snapshot()
        if step.action == StepAction.DRAIN_QUEUE:
            limit = _bounded_int(payload.get("limit"), 5, 1, 50)
            summary = await self._queue.drain(limit)
            return summary.model_dump(mode="json")
        if step.action == StepAction.REPLAY_DLQ:
            limit = _bounded_int(payload.get("limit"), 10, 1, 100)
            replayed = await self._queue.replay_dlq(limit, requested_by=actor_user_id)
            return replayed.model_dump(mode="json")
        if step.action == StepAction.NOTIFY_TEST:
            target = str(payload.get("target") or self._notify_target).strip()
            if not target:
                return {"ok": False, "error": "No notification target configured"}
            kind = str(payload.get("kind") or ("webhook" if target.startswith("http") else "email"))
            result = await self._notifier.notify(
                kind,
                target,
                str(payload.get("title") or "Fleetguard notification test"),
                str(payload.get("detail") or "Workflow notification test"),
            )
            return {"ok": result.ok, "error": result.error, "kind": kind, "target": target}
        raise ValueError(f"Step '{step.id}' has no executable action")

    async def status_snapshot(self) -> dict[str, Any]:
        """Summarise queue and incident state from the store."""
        queue = {
            state.value: await self._storage.count_runs(states=[state])
            for state in (RunState.QUEUED, RunState.RUNNING, RunState.FAILED)
        }
        dlq = await self._storage.list_runs(dlq=True, states=[RunState.FAILED])
        incidents = {
            state.value: len(await self._storage.list_incidents(states=[state]))
            for state in (IncidentState.OPEN, IncidentState.ACKNOWLEDGED, IncidentState.RESOLVED)
        }
        return {
            "ok": True,
            "queue": {**queue, "dlq": len(dlq)},
            "incidents": incidents,
            "hosts": {
                "total": len(await self._storage.list_hosts()),
                "enabled": len(await self._storage.list_hosts(enabled_only=True)),
            },
        }
