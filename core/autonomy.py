"""Autonomy tiers, approval thresholds and deterministic canary bucketing."""

from __future__ import annotations

import hashlib

from core.models import AutoTier, RiskLevel

TIER_ORDER: tuple[AutoTier, ...] = (
    AutoTier.OBSERVE,
    AutoTier.SAFE_AUTO,
    AutoTier.GUARDED_AUTO,
    AutoTier.RISKY_MANUAL,
)

_RISK_RANK: dict[str, int] = {"none": 0, "low": 1, "medium": 2, "high": 3}


def tier_rank(tier: AutoTier) -> int:
    return TIER_ORDER.index(tier)


def tier_allows_autonomous(tier: AutoTier, max_tier: AutoTier) -> bool:
    """Observe-tier actions never execute; others run up to *max_tier* inclusive."""
    if tier == AutoTier.OBSERVE:
        return False
    return tier_rank(tier) <= tier_rank(max_tier)


def approval_required(risk: RiskLevel, threshold: str) -> bool:
    """True when *risk* is at or above the configured approval threshold.

    A threshold of ``none`` disables approval entirely.
    """
    limit = _RISK_RANK.get(threshold, _RISK_RANK["high"])
    if limit == 0:
        return False
    return _RISK_RANK[risk.value] >= limit


def canary_percent_for_tier(tier: AutoTier | None, default_percent: int) -> int:
    if tier == AutoTier.SAFE_AUTO:
        return 100
    if tier == AutoTier.OBSERVE:
        return 0
    return max(0, min(100, default_percent))


def canary_bucket(host_id: str) -> int:
    """Stable bucket in ``0..99`` derived from the host identifier."""
    digest = hashlib.sha256(host_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def is_canary_selected(bucket: int, rollout_percent: int) -> bool:
    return bucket < rollout_percent
