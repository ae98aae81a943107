"""Wiring of providers, catalogs and engines from settings."""

from __future__ import annotations

from dataclasses import dataclass

from app.config import Settings, get_settings
from core.admission import AdmissionController
from core.approval import ApprovalEvaluator, ApprovalPolicy
from core.catalog import ActionCatalog
from core.escalation import EscalationSweep
from core.fleet import FleetRolloutService
from core.incidents import IncidentEngine
from core.metrics import MetricsRegistry
from core.queue import QueueDrainEngine
from core.workflows import WorkflowCatalog, WorkflowStepExecutor
from integrations.registry import IntegrationRegistry


@dataclass
class Services:
    """Everything a caller needs to operate the engine, sharing one store and one metrics registry."""

    settings: Settings
    registry: IntegrationRegistry
    metrics: MetricsRegistry
    actions: ActionCatalog
    workflows: WorkflowCatalog
    admission: AdmissionController
    queue: QueueDrainEngine
    fleet: FleetRolloutService
    incidents: IncidentEngine
    escalation: EscalationSweep


def build_services(
    settings: Settings | None = None,
    registry: IntegrationRegistry | None = None,
    metrics: MetricsRegistry | None = None,
) -> Services:
    settings = settings or get_settings()
    registry = registry or IntegrationRegistry(settings)
    metrics = metrics or MetricsRegistry()

    storage = registry.storage
    policy = settings.remediation_policy()
    guard = settings.guard_policy()
    timers = settings.incident_timer_policies()

    actions = ActionCatalog.from_directory(settings.catalog_actions_dir)
    workflows = WorkflowCatalog.from_directory(settings.catalog_workflows_dir)

    admission = AdmissionController(storage, actions, policy, guard, metrics)
    approvals = ApprovalEvaluator(ApprovalPolicy(risk_threshold=policy.approval_risk_threshold))
    queue = QueueDrainEngine(storage, registry.executor, policy, guard, metrics, approvals)
    step_executor = WorkflowStepExecutor(
        storage, queue, registry.notifier, notify_target=settings.incident_notify_target
    )

    return Services(
        settings=settings,
        registry=registry,
        metrics=metrics,
        actions=actions,
        workflows=workflows,
        admission=admission,
        queue=queue,
        fleet=FleetRolloutService(storage, actions, admission, settings.blast_radius_policy()),
        incidents=IncidentEngine(storage, workflows, step_executor, metrics, timers),
        escalation=EscalationSweep(
            storage,
            metrics,
            timers,
            notifier=registry.notifier,
            notify_target=settings.incident_notify_target,
        ),
    )
