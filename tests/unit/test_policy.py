"""Tests for core/policy.py: value parsing, profiles and host override resolution."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from core.guard import GuardPolicy
from core.models import AutoTier
from core.policy import (
    PolicyProfile,
    RemediationPolicy,
    is_within_minutes,
    merge_host_policy_meta,
    parse_bool,
    parse_int,
    read_host_policy_meta,
    resolve_host_policy,
)

GLOBAL = RemediationPolicy()
GUARD = GuardPolicy()


class TestParsing:
    def test_parse_int(self):
        assert parse_int(7) == 7
        assert parse_int("12") == 12
        assert parse_int(" 3.9 ") == 3
        assert parse_int("abc") is None
        assert parse_int(True) is None
        assert parse_int(None) is None
        assert parse_int("inf") is None

    def test_parse_bool(self):
        assert parse_bool("yes") is True
        assert parse_bool("OFF") is False
        assert parse_bool(0) is False
        assert parse_bool("maybe") is None


class TestRemediationPolicy:
    def test_defaults(self):
        assert GLOBAL.max_retry_attempts == 3
        assert GLOBAL.retry_backoff_seconds == 5
        assert GLOBAL.approval_risk_threshold == "high"
        assert GLOBAL.autonomous_max_tier == AutoTier.SAFE_AUTO

    def test_from_values_clamps_ints(self):
        policy = RemediationPolicy.from_values(max_retry_attempts=99, canary_rollout_percent=-5)
        assert policy.max_retry_attempts == 20
        assert policy.canary_rollout_percent == 0

    def test_invalid_values_fall_back(self):
        policy = GLOBAL.with_overrides(
            {
                "max_execute_per_hour": "lots",
                "auto_rollback": "perhaps",
                "approval_risk_threshold": "extreme",
                "autonomous_max_tier": "yolo",
                "unknown_field": 4,
            }
        )
        assert policy == GLOBAL

    def test_tier_from_string(self):
        policy = GLOBAL.with_overrides({"autonomous_max_tier": "guarded_auto"})
        assert policy.autonomous_max_tier == AutoTier.GUARDED_AUTO


class TestHostPolicyMeta:
    def test_missing_blob_defaults_to_balanced(self):
        meta = read_host_policy_meta({})
        assert meta.profile == PolicyProfile.BALANCED
        assert meta.overrides is None

    def test_blob_may_be_json_string(self):
        blob = json.dumps({"profile": "strict", "overrides": {"max_queue_per_host": 1}})
        meta = read_host_policy_meta({"remediation_policy": blob})
        assert meta.profile == PolicyProfile.STRICT
        assert meta.overrides == {"max_queue_per_host": 1}

    def test_junk_blob_ignored(self):
        meta = read_host_policy_meta({"remediation_policy": "{not json"})
        assert meta.profile == PolicyProfile.BALANCED


class TestResolveHostPolicy:
    def test_balanced_uses_global(self):
        resolved = resolve_host_policy({}, GLOBAL, GUARD)
        assert resolved.profile == PolicyProfile.BALANCED
        assert resolved.policy == GLOBAL
        assert resolved.guard_policy == GUARD
        assert resolved.host_overridden == ()

    def test_strict_profile_tightens(self):
        resolved = resolve_host_policy({"remediation_policy": {"profile": "strict"}}, GLOBAL, GUARD)
        assert resolved.policy.max_execute_per_hour == 2
        assert resolved.policy.execute_cooldown_minutes == 15
        assert resolved.guard_policy.max_commands_per_action == 10

    def test_host_override_beats_profile(self):
        meta = {
            "remediation_policy": {
                "profile": "rapid",
                "overrides": {"max_execute_per_hour": "4", "queue_ttl_minutes": "bad"},
                "guard_overrides": {"max_command_length": 300},
            }
        }
        resolved = resolve_host_policy(meta, GLOBAL, GUARD)
        assert resolved.policy.max_execute_per_hour == 4
        # invalid value keeps the profile's value
        assert resolved.policy.queue_ttl_minutes == 240
        assert resolved.guard_policy.max_command_length == 300
        assert resolved.host_overridden == ("max_execute_per_hour",)

    def test_unknown_profile_is_balanced(self):
        resolved = resolve_host_policy({"remediation_policy": {"profile": "turbo"}}, GLOBAL, GUARD)
        assert resolved.profile == PolicyProfile.BALANCED


class TestMergeHostPolicyMeta:
    def test_merge_preserves_unrelated_keys(self):
        meta = {"fleet_policy": {"group": "prod"}, "remediation_policy": {"profile": "strict"}}
        merged = merge_host_policy_meta(meta, {"overrides": {"max_queue_per_host": 2}})
        assert merged["fleet_policy"] == {"group": "prod"}
        assert merged["remediation_policy"]["profile"] == "strict"
        assert merged["remediation_policy"]["overrides"] == {"max_queue_per_host": 2}

    def test_merge_combines_overrides(self):
        meta = {"remediation_policy": {"overrides": {"a": 1}}}
        merged = merge_host_policy_meta(meta, {"overrides": {"b": 2}})
        assert merged["remediation_policy"]["overrides"] == {"a": 1, "b": 2}

    def test_none_clears_overrides(self):
        meta = {"remediation_policy": {"overrides": {"a": 1}}}
        merged = merge_host_policy_meta(meta, {"overrides": None})
        assert "overrides" not in merged["remediation_policy"]


class TestIsWithinMinutes:
    def test_window(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert is_within_minutes(now - timedelta(minutes=29), 30, now)
        assert not is_within_minutes(now - timedelta(minutes=31), 30, now)
        assert not is_within_minutes(now + timedelta(minutes=1), 30, now)
        assert not is_within_minutes(None, 30, now)
