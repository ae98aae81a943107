"""Framework-agnostic operations facade.

Each method takes a plain request mapping (as decoded from JSON), validates it
with a pydantic request model, calls the engine and returns an
:class:`ApiResponse` carrying an HTTP-style status and a JSON-ready body.
Domain exceptions are mapped to statuses here and nowhere else.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Literal

from pydantic import BaseModel, Field, ValidationError

from app.services import Services
from core.exceptions import (
    AdmissionRejected,
    FleetRolloutError,
    IncidentEngineError,
    RunConflictError,
    RunNotFoundError,
    StorageError,
)
from core.fleet import FleetSelector
from core.models import ApprovalStatus, Severity

logger = logging.getLogger(__name__)


class ApiResponse(BaseModel):
    status: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RemediateRequest(BaseModel):
    action: Literal["plan", "dry-run", "execute", "drain-queue"]
    host_id: str | None = None
    action_id: str | None = None
    signal_codes: list[str] = Field(default_factory=list)
    confirm_phrase: str | None = None
    actor_user_id: str | None = None
    auto_drain: bool | None = None
    limit: int | None = None


class DrainRequest(BaseModel):
    limit: int | None = None


class ReplayRequest(BaseModel):
    mode: Literal["single", "dlq-batch"] = "single"
    run_id: str | None = None
    limit: int | None = None
    actor_user_id: str | None = None


class QueueRequest(BaseModel):
    action: Literal["approve", "reject", "cancel"]
    run_id: str
    actor_user_id: str | None = None


class FleetRequest(BaseModel):
    action: Literal["preview", "execute-stage"]
    selector: FleetSelector = Field(default_factory=FleetSelector)
    action_id: str | None = None
    limits: dict[str, Any] | None = None
    strategy: Literal["group_canary", "sequential"] = "group_canary"
    stage: int | None = None
    confirm_phrase: str | None = None
    actor_user_id: str | None = None


class IncidentRequest(BaseModel):
    action: Literal[
        "create",
        "list",
        "detail",
        "assign",
        "acknowledge",
        "resolve",
        "close",
        "reopen",
        "note",
        "postmortem",
        "execute-step",
    ]
    incident_id: str | None = None
    actor_user_id: str | None = None
    workflow_id: str | None = None
    title: str | None = None
    summary: str | None = None
    severity: Severity | None = None
    trigger_signal: str | None = None
    host_id: str | None = None
    assignee_user_id: str | None = None
    assignee_email: str | None = None
    message: str | None = None
    state: str | None = None
    limit: int | None = None
    step_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    postmortem: dict[str, Any] = Field(default_factory=dict)


class SweepRequest(BaseModel):
    limit: int | None = None


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _error(status: int, error: str, detail: str = "") -> ApiResponse:
    body: dict[str, Any] = {"ok": False, "error": error}
    if detail:
        body["detail"] = detail
    return ApiResponse(status=status, body=body)


class OpsApi:
    def __init__(self, services: Services) -> None:
        self._services = services

    async def _call(self, handler: Awaitable[ApiResponse]) -> ApiResponse:
        try:
            return await handler
        except AdmissionRejected as exc:
            return _error(exc.status, exc.reason, exc.detail)
        except (RunNotFoundError, RunConflictError) as exc:
            return _error(exc.status, str(exc))
        except (IncidentEngineError, FleetRolloutError) as exc:
            return _error(exc.status, exc.message)
        except ValidationError as exc:
            return _error(400, "invalid_request", str(exc))
        except StorageError as exc:
            logger.error("Storage failure: %s", exc)
            return _error(503, "storage_unavailable", str(exc))

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def remediate(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call(self._remediate(payload))

    async def _remediate(self, payload: dict[str, Any]) -> ApiResponse:
        req = RemediateRequest.model_validate(payload)
        svc = self._services

        if req.action == "plan":
            actions = svc.actions.plan(req.signal_codes)
            return ApiResponse(
                status=200, body={"ok": True, "actions": [_dump(a) for a in actions]}
            )
        if req.action == "drain-queue":
            summary = await svc.queue.drain(req.limit)
            return ApiResponse(status=200, body=_dump(summary))

        if not req.host_id or not req.action_id:
            return _error(400, "invalid_request", "host_id and action_id are required")

        if req.action == "dry-run":
            run = await svc.admission.dry_run(req.host_id, req.action_id, req.actor_user_id)
            return ApiResponse(status=201, body={"ok": True, "run": _dump(run)})

        run = await svc.admission.admit_execute(
            req.host_id, req.action_id, req.confirm_phrase, req.actor_user_id
        )
        body: dict[str, Any] = {"ok": True, "run": _dump(run)}
        auto_drain = (
            req.auto_drain if req.auto_drain is not None else svc.settings.remediate_queue_auto_drain
        )
        if auto_drain and run.approval.status != ApprovalStatus.PENDING:
            body["drain"] = _dump(await svc.queue.drain(req.limit or 1))
        return ApiResponse(status=202, body=body)

    async def remediate_drain(self, payload: dict[str, Any] | None = None) -> ApiResponse:
        return await self._call(self._remediate_drain(payload or {}))

    async def _remediate_drain(self, payload: dict[str, Any]) -> ApiResponse:
        req = DrainRequest.model_validate(payload)
        summary = await self._services.queue.drain(req.limit)
        return ApiResponse(status=200, body=_dump(summary))

    async def remediate_replay(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call(self._remediate_replay(payload))

    async def _remediate_replay(self, payload: dict[str, Any]) -> ApiResponse:
        req = ReplayRequest.model_validate(payload)
        queue = self._services.queue
        if req.mode == "dlq-batch":
            summary = await queue.replay_dlq(req.limit, requested_by=req.actor_user_id)
            return ApiResponse(status=201, body=_dump(summary))
        if not req.run_id:
            return _error(400, "invalid_request", "run_id is required")
        run = await queue.replay(req.run_id, requested_by=req.actor_user_id)
        return ApiResponse(status=201, body={"ok": True, "run": _dump(run)})

    async def remediate_queue(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call(self._remediate_queue(payload))

    async def _remediate_queue(self, payload: dict[str, Any]) -> ApiResponse:
        req = QueueRequest.model_validate(payload)
        queue = self._services.queue
        if req.action == "cancel":
            run = await queue.cancel(req.run_id, req.actor_user_id)
        else:
            if not req.actor_user_id:
                return _error(400, "invalid_request", "actor_user_id is required")
            if req.action == "approve":
                run = await queue.approve(req.run_id, req.actor_user_id)
            else:
                run = await queue.reject(req.run_id, req.actor_user_id)
        return ApiResponse(status=200, body={"ok": True, "run": _dump(run)})

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------

    async def fleet(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call(self._fleet(payload))

    async def _fleet(self, payload: dict[str, Any]) -> ApiResponse:
        req = FleetRequest.model_validate(payload)
        fleet = self._services.fleet
        if req.action == "preview":
            preview = await fleet.preview(req.selector, req.action_id, req.limits, req.strategy)
            return ApiResponse(status=200, body={"ok": True, "preview": _dump(preview)})

        if req.stage is None or not req.action_id:
            return _error(400, "invalid_request", "action_id and stage are required")
        result = await fleet.execute_stage(
            req.selector,
            req.action_id,
            req.stage,
            req.confirm_phrase or "",
            requested_by=req.actor_user_id,
            limits=req.limits,
            strategy=req.strategy,
        )
        return ApiResponse(status=202, body={"ok": True, "result": _dump(result)})

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    async def incidents(self, payload: dict[str, Any]) -> ApiResponse:
        return await self._call(self._incidents(payload))

    async def _incidents(self, payload: dict[str, Any]) -> ApiResponse:
        req = IncidentRequest.model_validate(payload)
        engine = self._services.incidents
        actor = req.actor_user_id

        if req.action == "list":
            listing = await engine.list_incidents(req.state, req.limit)
            return ApiResponse(status=200, body={"ok": True, **_dump(listing)})
        if req.action == "detail":
            detail = await engine.detail(req.incident_id)
            return ApiResponse(status=200, body={"ok": True, **_dump(detail)})
        if req.action == "create":
            detail = await engine.create(
                req.workflow_id,
                actor,
                title=req.title,
                summary=req.summary,
                severity=req.severity,
                trigger_signal=req.trigger_signal,
                host_id=req.host_id,
                assignee_user_id=req.assignee_user_id,
                assignee_email=req.assignee_email,
                note=req.message,
            )
            return ApiResponse(status=201, body={"ok": True, **_dump(detail)})
        if req.action == "execute-step":
            outcome = await engine.execute_step(req.incident_id, req.step_id, actor, req.payload)
            return ApiResponse(status=200, body={"ok": outcome.execution.ok, **_dump(outcome)})

        if req.action == "assign":
            incident = await engine.assign(
                req.incident_id, actor, req.assignee_user_id, req.assignee_email
            )
        elif req.action == "acknowledge":
            incident = await engine.acknowledge(req.incident_id, actor)
        elif req.action == "resolve":
            incident = await engine.resolve(req.incident_id, actor, note=req.message)
        elif req.action == "close":
            incident = await engine.close(req.incident_id, actor)
        elif req.action == "reopen":
            incident = await engine.reopen(req.incident_id, actor, reason=req.message)
        elif req.action == "note":
            incident = await engine.add_note(req.incident_id, actor, req.message)
        else:
            pm = req.postmortem
            incident = await engine.update_postmortem(
                req.incident_id,
                actor,
                status=pm.get("status"),
                summary=pm.get("summary"),
                impact=pm.get("impact"),
                root_cause=pm.get("root_cause"),
                action_items=pm.get("action_items"),
            )
        return ApiResponse(status=200, body={"ok": True, "incident": _dump(incident)})

    async def escalation_sweep(self, payload: dict[str, Any] | None = None) -> ApiResponse:
        return await self._call(self._escalation_sweep(payload or {}))

    async def _escalation_sweep(self, payload: dict[str, Any]) -> ApiResponse:
        req = SweepRequest.model_validate(payload)
        result = await self._services.escalation.sweep(req.limit)
        return ApiResponse(status=200, body=_dump(result))

    def metrics(self) -> str:
        """Prometheus text exposition of the engine's metrics."""
        payload, _content_type = self._services.metrics.render()
        return payload.decode("utf-8")
