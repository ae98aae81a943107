"""Command guard: allowlist, blocklist, length and count checks for remediation commands."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

DEFAULT_ALLOW_PATTERNS: tuple[str, ...] = (
    r"^sudo(\s+-n)?\s+(cp|ls|journalctl|ufw|nft|ss|lsof|getent|systemctl|vps-sentry|grep)\b",
    r"^grep\b",
)

BLOCK_PATTERNS: tuple[str, ...] = (
    r"\brm\s+-[a-z]*r[a-z]*f[a-z]*\b|\brm\s+-[a-z]*f[a-z]*r[a-z]*\b",
    r"\b(mkfs(\.\w+)?|fdisk|parted)\b",
    r"\b(shutdown|reboot|halt|poweroff)\b",
    r"\bdd\s+if=",
    r":\(\)\s*\{\s*:\|:&\s*\};:",
    r"\b(curl|wget)\b[^|]*\|\s*(sudo\s+)?(ba)?sh\b",
)

MIN_COMMANDS, MAX_COMMANDS = 1, 200
MIN_LENGTH, MAX_LENGTH = 10, 8000


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def split_patterns(raw: str | None) -> list[str]:
    """Split a configured pattern list on newlines or ``||``."""
    if not raw:
        return []
    parts = re.split(r"\n|\|\|", raw)
    return [p.strip() for p in parts if p.strip()]


def _compile(patterns: tuple[str, ...] | list[str]) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for source in patterns:
        try:
            compiled.append(re.compile(source, re.IGNORECASE))
        except re.error as exc:
            logger.warning("Ignoring invalid guard pattern %r: %s", source, exc)
    return compiled


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuardPolicy:
    enforce_allowlist: bool = True
    max_commands_per_action: int = 20
    max_command_length: int = 800
    extra_allow_patterns: tuple[str, ...] = field(default_factory=tuple)
    extra_block_patterns: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_values(
        cls,
        enforce_allowlist: bool = True,
        max_commands_per_action: int = 20,
        max_command_length: int = 800,
        extra_allow_patterns: list[str] | tuple[str, ...] = (),
        extra_block_patterns: list[str] | tuple[str, ...] = (),
    ) -> GuardPolicy:
        """Build a policy with numeric limits clamped into their legal ranges."""
        return cls(
            enforce_allowlist=bool(enforce_allowlist),
            max_commands_per_action=_clamp(max_commands_per_action, MIN_COMMANDS, MAX_COMMANDS),
            max_command_length=_clamp(max_command_length, MIN_LENGTH, MAX_LENGTH),
            extra_allow_patterns=tuple(extra_allow_patterns),
            extra_block_patterns=tuple(extra_block_patterns),
        )

    def allow_patterns(self) -> list[re.Pattern[str]]:
        return _compile(DEFAULT_ALLOW_PATTERNS + self.extra_allow_patterns)

    def block_patterns(self) -> list[re.Pattern[str]]:
        return _compile(BLOCK_PATTERNS + self.extra_block_patterns)


DEFAULT_GUARD_POLICY = GuardPolicy()


@dataclass(frozen=True)
class GuardViolation:
    index: int
    command: str
    reason: str


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def effective_commands(commands: list[str]) -> list[tuple[int, str]]:
    """Return ``(index, command)`` pairs, skipping blank and ``#`` comment lines."""
    out: list[tuple[int, str]] = []
    for index, raw in enumerate(commands):
        text = raw.strip()
        if not text or text.startswith("#"):
            continue
        out.append((index, text))
    return out


def validate_commands(
    commands: list[str], policy: GuardPolicy = DEFAULT_GUARD_POLICY
) -> list[GuardViolation]:
    """Validate an ordered command list against *policy*.

    Returns an empty list when every command passes. An over-long list yields a
    single violation with ``index=-1`` and no per-command checks.
    """
    effective = effective_commands(commands)
    if len(effective) > policy.max_commands_per_action:
        return [
            GuardViolation(
                index=-1,
                command="",
                reason=f"too_many_commands:{len(effective)}>{policy.max_commands_per_action}",
            )
        ]

    allow = policy.allow_patterns()
    block = policy.block_patterns()
    violations: list[GuardViolation] = []

    for index, command in effective:
        if len(command) > policy.max_command_length:
            violations.append(
                GuardViolation(
                    index=index,
                    command=command,
                    reason=f"command_too_long:{len(command)}>{policy.max_command_length}",
                )
            )
            continue

        blocked = next((p for p in block if p.search(command)), None)
        if blocked is not None:
            violations.append(
                GuardViolation(
                    index=index, command=command, reason=f"blocked_pattern:{blocked.pattern}"
                )
            )
            continue

        if policy.enforce_allowlist and not any(p.search(command) for p in allow):
            violations.append(GuardViolation(index=index, command=command, reason="not_allowlisted"))

    return violations


def summarize_violations(violations: list[GuardViolation], limit: int = 8) -> str:
    return "; ".join(f"#{v.index}:{v.reason}" for v in violations[:limit])
