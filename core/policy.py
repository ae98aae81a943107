"""Remediation policy: global defaults, host profiles, and per-host override resolution."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from core.guard import GuardPolicy, MAX_COMMANDS, MAX_LENGTH, MIN_COMMANDS, MIN_LENGTH
from core.models import AutoTier

logger = logging.getLogger(__name__)

POLICY_META_KEY = "remediation_policy"

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})

RISK_THRESHOLDS: tuple[str, ...] = ("none", "low", "medium", "high")


class PolicyProfile(str, Enum):
    STRICT = "strict"
    BALANCED = "balanced"
    RAPID = "rapid"


# ---------------------------------------------------------------------------
# Loose value parsing
# ---------------------------------------------------------------------------


def parse_int(value: Any) -> int | None:
    """Parse an int from a number or numeric string; ``None`` when unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            return None
    return None


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

# name -> (low, high) for integer fields
INT_RANGES: dict[str, tuple[int, int]] = {
    "dry_run_max_age_minutes": (1, 1440),
    "execute_cooldown_minutes": (0, 1440),
    "max_execute_per_hour": (1, 500),
    "max_queue_per_host": (1, 100),
    "max_queue_total": (1, 5000),
    "queue_ttl_minutes": (1, 10080),
    "max_retry_attempts": (1, 20),
    "retry_backoff_seconds": (1, 3600),
    "retry_backoff_max_seconds": (1, 86400),
    "command_timeout_ms": (1000, 600000),
    "max_buffer_bytes": (4096, 10_000_000),
    "canary_rollout_percent": (0, 100),
    "autonomous_max_queued_per_hour": (1, 500),
}

BOOL_FIELDS: frozenset[str] = frozenset({"auto_rollback", "autonomous_enabled"})

GUARD_INT_RANGES: dict[str, tuple[int, int]] = {
    "max_commands_per_action": (MIN_COMMANDS, MAX_COMMANDS),
    "max_command_length": (MIN_LENGTH, MAX_LENGTH),
}


@dataclass(frozen=True)
class RemediationPolicy:
    dry_run_max_age_minutes: int = 30
    execute_cooldown_minutes: int = 5
    max_execute_per_hour: int = 6
    max_queue_per_host: int = 3
    max_queue_total: int = 200
    queue_ttl_minutes: int = 120
    max_retry_attempts: int = 3
    retry_backoff_seconds: int = 5
    retry_backoff_max_seconds: int = 300
    command_timeout_ms: int = 20000
    max_buffer_bytes: int = 512000
    auto_rollback: bool = True
    canary_rollout_percent: int = 100
    approval_risk_threshold: str = "high"
    autonomous_enabled: bool = False
    autonomous_max_tier: AutoTier = AutoTier.SAFE_AUTO
    autonomous_max_queued_per_hour: int = 6

    @classmethod
    def from_values(cls, **values: Any) -> RemediationPolicy:
        """Build a policy, clamping ints and falling back to defaults on bad input."""
        return cls().with_overrides(values)

    def with_overrides(self, overrides: dict[str, Any]) -> RemediationPolicy:
        """Return a copy with every valid override applied field by field.

        Unknown keys and unparseable values are ignored, leaving the current value.
        """
        changes: dict[str, Any] = {}
        for name, raw in overrides.items():
            if raw is None:
                continue
            if name in INT_RANGES:
                parsed = parse_int(raw)
                if parsed is not None:
                    changes[name] = _clamp(parsed, *INT_RANGES[name])
            elif name in BOOL_FIELDS:
                parsed_bool = parse_bool(raw)
                if parsed_bool is not None:
                    changes[name] = parsed_bool
            elif name == "approval_risk_threshold":
                word = str(raw).strip().lower()
                if word in RISK_THRESHOLDS:
                    changes[name] = word
            elif name == "autonomous_max_tier":
                if isinstance(raw, AutoTier):
                    changes[name] = raw
                    continue
                try:
                    changes[name] = AutoTier(str(raw).strip().lower())
                except ValueError:
                    logger.debug("Ignoring unknown autonomous tier %r", raw)
        return replace(self, **changes) if changes else self


def guard_with_overrides(guard: GuardPolicy, overrides: dict[str, Any]) -> GuardPolicy:
    changes: dict[str, Any] = {}
    for name, raw in overrides.items():
        if name in GUARD_INT_RANGES:
            parsed = parse_int(raw)
            if parsed is not None:
                changes[name] = _clamp(parsed, *GUARD_INT_RANGES[name])
        elif name == "enforce_allowlist":
            parsed_bool = parse_bool(raw)
            if parsed_bool is not None:
                changes[name] = parsed_bool
    return replace(guard, **changes) if changes else guard


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

PROFILE_OVERRIDES: dict[PolicyProfile, dict[str, Any]] = {
    PolicyProfile.STRICT: {
        "dry_run_max_age_minutes": 20,
        "execute_cooldown_minutes": 15,
        "max_execute_per_hour": 2,
        "max_queue_per_host": 2,
        "max_queue_total": 100,
        "queue_ttl_minutes": 60,
        "command_timeout_ms": 15000,
        "max_buffer_bytes": 256000,
    },
    PolicyProfile.BALANCED: {},
    PolicyProfile.RAPID: {
        "dry_run_max_age_minutes": 60,
        "execute_cooldown_minutes": 1,
        "max_execute_per_hour": 20,
        "max_queue_per_host": 10,
        "max_queue_total": 800,
        "queue_ttl_minutes": 240,
        "command_timeout_ms": 30000,
        "max_buffer_bytes": 1000000,
    },
}

PROFILE_GUARD_OVERRIDES: dict[PolicyProfile, dict[str, Any]] = {
    PolicyProfile.STRICT: {
        "enforce_allowlist": True,
        "max_commands_per_action": 10,
        "max_command_length": 500,
    },
    PolicyProfile.BALANCED: {},
    PolicyProfile.RAPID: {
        "max_commands_per_action": 30,
        "max_command_length": 1200,
    },
}


# ---------------------------------------------------------------------------
# Host metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HostPolicyMeta:
    profile: PolicyProfile = PolicyProfile.BALANCED
    overrides: dict[str, Any] | None = None
    guard_overrides: dict[str, Any] | None = None


@dataclass(frozen=True)
class ResolvedHostPolicy:
    profile: PolicyProfile
    policy: RemediationPolicy
    guard_policy: GuardPolicy
    # Names of fields whose value came from the host's own overrides
    host_overridden: tuple[str, ...] = ()


def _as_dict(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def _parse_profile(value: Any) -> PolicyProfile | None:
    if isinstance(value, PolicyProfile):
        return value
    try:
        return PolicyProfile(str(value).strip().lower())
    except ValueError:
        return None


def read_host_policy_meta(meta: dict[str, Any] | None) -> HostPolicyMeta:
    """Parse the remediation policy blob from host metadata, tolerating junk."""
    blob = _as_dict((meta or {}).get(POLICY_META_KEY))
    if blob is None:
        return HostPolicyMeta()

    return HostPolicyMeta(
        profile=_parse_profile(blob.get("profile")) or PolicyProfile.BALANCED,
        overrides=_as_dict(blob.get("overrides")),
        guard_overrides=_as_dict(blob.get("guard_overrides")),
    )


def resolve_host_policy(
    meta: dict[str, Any] | None,
    global_policy: RemediationPolicy,
    global_guard: GuardPolicy,
) -> ResolvedHostPolicy:
    """Resolve the effective policy: global, then profile, then host overrides."""
    host = read_host_policy_meta(meta)

    policy = global_policy.with_overrides(PROFILE_OVERRIDES[host.profile])
    guard = guard_with_overrides(global_guard, PROFILE_GUARD_OVERRIDES[host.profile])

    before = policy
    if host.overrides:
        policy = policy.with_overrides(host.overrides)
    if host.guard_overrides:
        guard = guard_with_overrides(guard, host.guard_overrides)

    overridden = tuple(
        f.name
        for f in fields(RemediationPolicy)
        if host.overrides
        and f.name in host.overrides
        and getattr(policy, f.name) != getattr(before, f.name)
    )

    return ResolvedHostPolicy(
        profile=host.profile, policy=policy, guard_policy=guard, host_overridden=overridden
    )


def merge_host_policy_meta(meta: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    """Merge a policy patch into host metadata, preserving unrelated keys."""
    merged = dict(meta or {})
    current = _as_dict(merged.get(POLICY_META_KEY)) or {}
    updated = dict(current)

    if "profile" in patch:
        profile = _parse_profile(patch["profile"])
        if profile is None:
            logger.warning("Ignoring unknown policy profile %r", patch["profile"])
        else:
            updated["profile"] = profile.value

    for key in ("overrides", "guard_overrides"):
        if key in patch:
            incoming = _as_dict(patch[key])
            if incoming is None:
                updated.pop(key, None)
            else:
                updated[key] = {**(_as_dict(current.get(key)) or {}), **incoming}

    merged[POLICY_META_KEY] = updated
    return merged


def is_within_minutes(ts: datetime | None, minutes: int, now: datetime) -> bool:
    """True when *ts* is no older than *minutes* and not in the future."""
    if ts is None:
        return False
    age = now - ts
    return timedelta(0) <= age <= timedelta(minutes=minutes)
