"""Fleet host selection, blast-radius safeguards and staged rollouts."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from core.admission import AdmissionController
from core.audit import write_audit
from core.catalog import ActionCatalog
from core.exceptions import AdmissionRejected, FleetRolloutError
from core.models import Host, HostFleetPolicy
from core.policy import parse_bool, parse_int
from integrations.base import StorageProvider

logger = logging.getLogger(__name__)

FLEET_META_KEY = "fleet_policy"
UNGROUPED = "__ungrouped"
MAX_TOKEN_LENGTH = 64
MAX_TOKENS = 64
MIN_PRIORITY = -1000
MAX_PRIORITY = 1000

STRATEGIES = ("group_canary", "sequential")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tokens(values: Any) -> list[str]:
    """Lowercase, strip and dedupe a list (or comma string) of tokens, keeping order."""
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    tokens: list[str] = []
    for raw in values:
        token = str(raw).strip().lower()[:MAX_TOKEN_LENGTH]
        if token and token not in tokens:
            tokens.append(token)
        if len(tokens) >= MAX_TOKENS:
            break
    return tokens


def _normalize_group(value: Any) -> str | None:
    if value is None:
        return None
    group = str(value).strip().lower()[:MAX_TOKEN_LENGTH]
    return group or None


# ---------------------------------------------------------------------------
# Host fleet policy
# ---------------------------------------------------------------------------


def _blob(meta: dict[str, Any] | None) -> dict[str, Any]:
    raw = (meta or {}).get(FLEET_META_KEY)
    if isinstance(raw, str) and raw.strip():
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    return raw if isinstance(raw, dict) else {}


def _priority(value: Any) -> int:
    parsed = parse_int(value)
    if parsed is None:
        return 0
    return max(MIN_PRIORITY, min(MAX_PRIORITY, parsed))


def read_fleet_policy(meta: dict[str, Any] | None) -> HostFleetPolicy:
    """Read a host's rollout attributes from its metadata, ignoring malformed values."""
    blob = _blob(meta)
    return HostFleetPolicy(
        group=_normalize_group(blob.get("group")),
        tags=normalize_tokens(blob.get("tags")),
        scopes=normalize_tokens(blob.get("scopes")),
        rollout_paused=bool(parse_bool(blob.get("rollout_paused"))),
        rollout_priority=_priority(blob.get("rollout_priority")),
    )


def merge_fleet_policy(current: HostFleetPolicy, patch: dict[str, Any]) -> HostFleetPolicy:
    """Apply *patch* on top of *current*; keys absent from the patch keep their value.

    ``add_tags``/``remove_tags`` and ``add_scopes``/``remove_scopes`` adjust the
    existing sets instead of replacing them. An explicit ``group: None`` clears
    the group.
    """
    updates: dict[str, Any] = {}
    if "group" in patch:
        updates["group"] = _normalize_group(patch["group"])

    for key in ("tags", "scopes"):
        values = normalize_tokens(patch[key]) if key in patch else list(getattr(current, key))
        for token in normalize_tokens(patch.get(f"add_{key}")):
            if token not in values:
                values.append(token)
        removed = set(normalize_tokens(patch.get(f"remove_{key}")))
        updates[key] = [v for v in values if v not in removed]

    if "rollout_paused" in patch:
        paused = parse_bool(patch["rollout_paused"])
        if paused is not None:
            updates["rollout_paused"] = paused
    if "rollout_priority" in patch and parse_int(patch["rollout_priority"]) is not None:
        updates["rollout_priority"] = _priority(patch["rollout_priority"])

    return current.model_copy(update=updates)


def apply_fleet_policy_delta(meta: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of host metadata with the fleet policy patch merged in."""
    merged = dict(meta or {})
    policy = merge_fleet_policy(read_fleet_policy(meta), patch)
    merged[FLEET_META_KEY] = policy.model_dump()
    return merged


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class FleetSelector(BaseModel):
    groups: list[str] = Field(default_factory=list)
    tags_all: list[str] = Field(default_factory=list)
    tags_any: list[str] = Field(default_factory=list)
    scopes_all: list[str] = Field(default_factory=list)
    scopes_any: list[str] = Field(default_factory=list)
    host_ids: list[str] = Field(default_factory=list)
    enabled_only: bool = True
    include_paused: bool = False

    @field_validator("groups", "tags_all", "tags_any", "scopes_all", "scopes_any", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> list[str]:
        return normalize_tokens(value)

    @field_validator("host_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        ids: list[str] = []
        for raw in value:
            host_id = str(raw).strip()
            if host_id and host_id not in ids:
                ids.append(host_id)
        return ids

    @property
    def is_empty(self) -> bool:
        """True when no narrowing criterion is set (the selector would match the whole fleet)."""
        return not (
            self.groups
            or self.tags_all
            or self.tags_any
            or self.scopes_all
            or self.scopes_any
            or self.host_ids
        )


def normalize_selector(raw: FleetSelector | dict[str, Any] | None) -> FleetSelector:
    if isinstance(raw, FleetSelector):
        return raw
    return FleetSelector.model_validate(raw or {})


def host_matches_selector(host: Host, selector: FleetSelector) -> bool:
    policy = read_fleet_policy(host.meta)
    tags = set(policy.tags)
    scopes = set(policy.scopes)

    if selector.host_ids and host.id not in selector.host_ids:
        return False
    if selector.groups and policy.group not in selector.groups:
        return False
    if selector.tags_all and not tags.issuperset(selector.tags_all):
        return False
    if selector.tags_any and not tags.intersection(selector.tags_any):
        return False
    if selector.scopes_all and not scopes.issuperset(selector.scopes_all):
        return False
    if selector.scopes_any and not scopes.intersection(selector.scopes_any):
        return False
    if selector.enabled_only and not host.enabled:
        return False
    if policy.rollout_paused and not selector.include_paused:
        return False
    return True


def sort_for_rollout(hosts: list[Host]) -> list[Host]:
    """Highest rollout priority first, then most recently seen, then name and id."""

    def key(host: Host) -> tuple:
        seen = host.last_seen_at.timestamp() if host.last_seen_at else None
        return (
            -read_fleet_policy(host.meta).rollout_priority,
            seen is None,
            -(seen or 0.0),
            host.name,
            host.id,
        )

    return sorted(hosts, key=key)


def group_key(host: Host) -> str:
    return read_fleet_policy(host.meta).group or UNGROUPED


# ---------------------------------------------------------------------------
# Blast radius
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BlastRadiusPolicy:
    max_hosts: int = 12
    max_per_group: int = 5
    max_percent: int = 40
    stage_size: int = 3
    require_selector: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_hosts", max(1, min(500, self.max_hosts)))
        object.__setattr__(self, "max_per_group", max(1, min(500, self.max_per_group)))
        object.__setattr__(self, "max_percent", max(1, min(100, self.max_percent)))
        object.__setattr__(self, "stage_size", max(1, min(100, self.stage_size)))

    def narrowed(self, limits: dict[str, Any] | None) -> BlastRadiusPolicy:
        """Apply request-level limits, which may only tighten the configured ones."""
        if not limits:
            return self
        changes: dict[str, int] = {}
        for name in ("max_hosts", "max_per_group", "max_percent", "stage_size"):
            requested = parse_int(limits.get(name))
            if requested is not None:
                changes[name] = min(getattr(self, name), max(1, requested))
        return replace(self, **changes)


class RejectedHost(BaseModel):
    host_id: str
    group: str
    reason: str


class BlastRadiusResult(BaseModel):
    accepted: list[Host] = Field(default_factory=list)
    rejected: list[RejectedHost] = Field(default_factory=list)
    allowed_by_percent: int
    max_hosts_effective: int


def apply_blast_radius_safeguards(
    hosts: list[Host],
    total_enabled_fleet: int,
    max_hosts: int,
    max_per_group: int,
    max_percent_of_enabled_fleet: int,
) -> BlastRadiusResult:
    """Accept hosts in input order until the host, group or fleet-percent cap is hit."""
    allowed_by_percent = math.floor(total_enabled_fleet * max_percent_of_enabled_fleet / 100)
    max_hosts_effective = min(max_hosts, allowed_by_percent)

    accepted: list[Host] = []
    rejected: list[RejectedHost] = []
    per_group: dict[str, int] = {}

    for host in hosts:
        group = group_key(host)
        if len(accepted) >= max_hosts_effective:
            rejected.append(RejectedHost(host_id=host.id, group=group, reason="max_hosts"))
            continue
        if per_group.get(group, 0) >= max_per_group:
            rejected.append(RejectedHost(host_id=host.id, group=group, reason="max_per_group"))
            continue
        per_group[group] = per_group.get(group, 0) + 1
        accepted.append(host)

    return BlastRadiusResult(
        accepted=accepted,
        rejected=rejected,
        allowed_by_percent=allowed_by_percent,
        max_hosts_effective=max_hosts_effective,
    )


def _chunk(hosts: list[Host], size: int) -> list[list[Host]]:
    return [hosts[i : i + size] for i in range(0, len(hosts), size)]


def build_rollout_stages(
    hosts: list[Host], batch_size: int, strategy: str = "group_canary"
) -> list[list[Host]]:
    """Split hosts into rollout waves.

    ``group_canary`` first rolls out one host from every group (in order of
    first appearance) before any group gets a second host; ``sequential``
    simply batches the input order.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown rollout strategy '{strategy}'")
    size = max(1, batch_size)
    if strategy == "sequential":
        return _chunk(hosts, size)

    seen_groups: set[str] = set()
    canaries: list[Host] = []
    rest: list[Host] = []
    for host in hosts:
        group = group_key(host)
        if group in seen_groups:
            rest.append(host)
        else:
            seen_groups.add(group)
            canaries.append(host)
    return _chunk(canaries, size) + _chunk(rest, size)


# ---------------------------------------------------------------------------
# Rollout service
# ---------------------------------------------------------------------------


class FleetPreview(BaseModel):
    selector: FleetSelector
    action_id: str | None = None
    strategy: str
    total_enabled_fleet: int
    matched: list[str] = Field(default_factory=list)
    accepted: list[str] = Field(default_factory=list)
    rejected: list[RejectedHost] = Field(default_factory=list)
    allowed_by_percent: int
    max_hosts_effective: int
    stages: list[list[str]] = Field(default_factory=list)


class FleetHostResult(BaseModel):
    host_id: str
    queued: bool
    run_id: str | None = None
    reason: str | None = None
    detail: str | None = None


class FleetStageResult(BaseModel):
    stage: int
    total_stages: int
    action_id: str
    queued: int
    rejected: int
    results: list[FleetHostResult] = Field(default_factory=list)


def stage_confirm_phrase(stage: int) -> str:
    return f"EXECUTE FLEET STAGE {stage}"


class FleetRolloutService:
    """Previews and executes staged remediation rollouts across the fleet."""

    def __init__(
        self,
        storage: StorageProvider,
        catalog: ActionCatalog,
        admission: AdmissionController,
        policy: BlastRadiusPolicy,
    ) -> None:
        self._storage = storage
        self._catalog = catalog
        self._admission = admission
        self._policy = policy

    async def preview(
        self,
        selector: FleetSelector | dict[str, Any] | None,
        action_id: str | None = None,
        limits: dict[str, Any] | None = None,
        strategy: str = "group_canary",
    ) -> FleetPreview:
        normalized = normalize_selector(selector)
        if self._policy.require_selector and normalized.is_empty:
            raise FleetRolloutError(400, "A non-empty host selector is required")
        if strategy not in STRATEGIES:
            raise FleetRolloutError(400, f"Unknown rollout strategy '{strategy}'")
        if action_id is not None and self._catalog.get(action_id) is None:
            raise FleetRolloutError(404, f"Unknown action '{action_id}'")

        policy = self._policy.narrowed(limits)
        hosts = await self._storage.list_hosts()
        total_enabled = sum(1 for h in hosts if h.enabled)
        matched = sort_for_rollout([h for h in hosts if host_matches_selector(h, normalized)])
        result = apply_blast_radius_safeguards(
            matched, total_enabled, policy.max_hosts, policy.max_per_group, policy.max_percent
        )
        stages = build_rollout_stages(result.accepted, policy.stage_size, strategy)

        return FleetPreview(
            selector=normalized,
            action_id=action_id.strip().lower() if action_id else None,
            strategy=strategy,
            total_enabled_fleet=total_enabled,
            matched=[h.id for h in matched],
            accepted=[h.id for h in result.accepted],
            rejected=result.rejected,
            allowed_by_percent=result.allowed_by_percent,
            max_hosts_effective=result.max_hosts_effective,
            stages=[[h.id for h in stage] for stage in stages],
        )

    async def execute_stage(
        self,
        selector: FleetSelector | dict[str, Any] | None,
        action_id: str,
        stage: int,
        confirm_phrase: str,
        requested_by: str | None = None,
        limits: dict[str, Any] | None = None,
        strategy: str = "group_canary",
    ) -> FleetStageResult:
        """Queue *action_id* on every host of rollout stage *stage* (1-based).

        The preview is recomputed at call time, so the stage reflects the
        current fleet, not the one the operator last looked at.
        """
        if not action_id:
            raise FleetRolloutError(400, "action_id is required")
        preview = await self.preview(selector, action_id, limits, strategy)
        if stage < 1 or stage > len(preview.stages):
            raise FleetRolloutError(
                400, f"Stage {stage} is out of range (1..{len(preview.stages)})"
            )
        expected = stage_confirm_phrase(stage)
        if (confirm_phrase or "").strip() != expected:
            raise FleetRolloutError(400, f"Confirmation phrase must be '{expected}'")

        results: list[FleetHostResult] = []
        for host_id in preview.stages[stage - 1]:
            try:
                run = await self._admission.admit_autonomous(
                    host_id,
                    preview.action_id or action_id,
                    reason=f"fleet rollout stage {stage}/{len(preview.stages)}",
                    requested_by=requested_by,
                    operator_initiated=True,
                )
            except AdmissionRejected as exc:
                results.append(
                    FleetHostResult(
                        host_id=host_id, queued=False, reason=exc.reason, detail=exc.detail
                    )
                )
                continue
            results.append(FleetHostResult(host_id=host_id, queued=True, run_id=run.id))

        queued = sum(1 for r in results if r.queued)
        logger.info(
            "Fleet stage %d/%d action=%s queued=%d rejected=%d",
            stage,
            len(preview.stages),
            action_id,
            queued,
            len(results) - queued,
        )
        await write_audit(
            self._storage,
            "fleet.stage.executed",
            detail=f"{action_id} stage {stage}/{len(preview.stages)}",
            user_id=requested_by,
            meta={
                "stage": stage,
                "queued": [r.host_id for r in results if r.queued],
                "rejected": {r.host_id: r.reason for r in results if not r.queued},
            },
        )
        return FleetStageResult(
            stage=stage,
            total_stages=len(preview.stages),
            action_id=preview.action_id or action_id,
            queued=queued,
            rejected=len(results) - queued,
            results=results,
        )
