"""Application configuration loaded from environment variables and .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.fleet import BlastRadiusPolicy
from core.guard import GuardPolicy, split_patterns
from core.incidents import IncidentTimerPolicy
from core.models import AutoTier, Severity
from core.policy import RemediationPolicy

CATALOG_DIR = Path(__file__).resolve().parent.parent / "catalog"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Global mode
    fleetguard_mode: str = Field(default="mock", description="Global mode: 'mock' or 'live'")
    log_level: str = Field(default="INFO")

    # Mock settings
    mock_delay_enabled: bool = Field(default=True)

    # Providers (per-category overrides of fleetguard_mode)
    storage_mode: str = Field(default="")
    storage_sqlite_path: str = Field(default="fleetguard.db")
    executor_mode: str = Field(default="")
    executor_shell: str = Field(default="/bin/bash")
    notifier_mode: str = Field(default="")

    # Catalogs
    catalog_actions_dir: str = Field(default=str(CATALOG_DIR / "actions"))
    catalog_workflows_dir: str = Field(default=str(CATALOG_DIR / "workflows"))

    # Remediation policy
    remediate_dry_run_max_age_minutes: int = Field(default=30)
    remediate_execute_cooldown_minutes: int = Field(default=5)
    remediate_max_execute_per_hour: int = Field(default=6)
    remediate_max_queue_per_host: int = Field(default=3)
    remediate_max_queue_total: int = Field(default=200)
    remediate_queue_ttl_minutes: int = Field(default=120)
    remediate_max_retry_attempts: int = Field(default=3)
    remediate_retry_backoff_seconds: int = Field(default=5)
    remediate_retry_backoff_max_seconds: int = Field(default=300)
    remediate_command_timeout_ms: int = Field(default=20000)
    remediate_max_buffer_bytes: int = Field(default=512000)
    remediate_auto_rollback: bool = Field(default=True)
    remediate_canary_rollout_percent: int = Field(default=100)
    remediate_approval_risk_threshold: str = Field(default="high")
    remediate_autonomous_enabled: bool = Field(default=False)
    remediate_autonomous_max_tier: AutoTier = Field(default=AutoTier.SAFE_AUTO)
    remediate_autonomous_max_queued_per_hour: int = Field(default=6)
    remediate_queue_auto_drain: bool = Field(default=False)

    # Command guard
    remediate_enforce_allowlist: bool = Field(default=True)
    remediate_max_commands_per_action: int = Field(default=20)
    remediate_max_command_length: int = Field(default=800)
    remediate_extra_allow_patterns: str = Field(default="")
    remediate_extra_block_patterns: str = Field(default="")

    # Fleet rollout
    fleet_max_hosts: int = Field(default=12)
    fleet_max_per_group: int = Field(default=5)
    fleet_max_percent: int = Field(default=40)
    fleet_stage_size: int = Field(default=3)
    fleet_require_selector: bool = Field(default=True)

    # Incident timers (minutes)
    incident_critical_ack_minutes: int = Field(default=5)
    incident_critical_escalation_minutes: int = Field(default=10)
    incident_high_ack_minutes: int = Field(default=15)
    incident_high_escalation_minutes: int = Field(default=20)
    incident_medium_ack_minutes: int = Field(default=30)
    incident_medium_escalation_minutes: int = Field(default=45)
    incident_notify_target: str = Field(default="")

    # Ops worker
    worker_limit: int = Field(default=5)
    worker_interval_seconds: float = Field(default=15.0)
    worker_idle_interval_seconds: float = Field(default=0.0)
    worker_max_backoff_seconds: float = Field(default=120.0)
    worker_jitter_ratio: float = Field(default=0.2)
    worker_sweep_enabled: bool = Field(default=True)
    worker_sweep_limit: int = Field(default=25)

    def get_integration_mode(self, integration: str) -> str:
        """Return the effective mode for a given integration category.

        Per-category overrides take precedence over the global fleetguard_mode.
        """
        override = getattr(self, f"{integration}_mode", "")
        return override if override else self.fleetguard_mode

    # ------------------------------------------------------------------
    # Policy builders
    # ------------------------------------------------------------------

    def remediation_policy(self) -> RemediationPolicy:
        return RemediationPolicy.from_values(
            dry_run_max_age_minutes=self.remediate_dry_run_max_age_minutes,
            execute_cooldown_minutes=self.remediate_execute_cooldown_minutes,
            max_execute_per_hour=self.remediate_max_execute_per_hour,
            max_queue_per_host=self.remediate_max_queue_per_host,
            max_queue_total=self.remediate_max_queue_total,
            queue_ttl_minutes=self.remediate_queue_ttl_minutes,
            max_retry_attempts=self.remediate_max_retry_attempts,
            retry_backoff_seconds=self.remediate_retry_backoff_seconds,
            retry_backoff_max_seconds=self.remediate_retry_backoff_max_seconds,
            command_timeout_ms=self.remediate_command_timeout_ms,
            max_buffer_bytes=self.remediate_max_buffer_bytes,
            auto_rollback=self.remediate_auto_rollback,
            canary_rollout_percent=self.remediate_canary_rollout_percent,
            approval_risk_threshold=self.remediate_approval_risk_threshold,
            autonomous_enabled=self.remediate_autonomous_enabled,
            autonomous_max_tier=self.remediate_autonomous_max_tier,
            autonomous_max_queued_per_hour=self.remediate_autonomous_max_queued_per_hour,
        )

    def guard_policy(self) -> GuardPolicy:
        return GuardPolicy.from_values(
            enforce_allowlist=self.remediate_enforce_allowlist,
            max_commands_per_action=self.remediate_max_commands_per_action,
            max_command_length=self.remediate_max_command_length,
            extra_allow_patterns=split_patterns(self.remediate_extra_allow_patterns),
            extra_block_patterns=split_patterns(self.remediate_extra_block_patterns),
        )

    def blast_radius_policy(self) -> BlastRadiusPolicy:
        return BlastRadiusPolicy(
            max_hosts=self.fleet_max_hosts,
            max_per_group=self.fleet_max_per_group,
            max_percent=self.fleet_max_percent,
            stage_size=self.fleet_stage_size,
            require_selector=self.fleet_require_selector,
        )

    def incident_timer_policies(self) -> dict[Severity, IncidentTimerPolicy]:
        return {
            Severity.CRITICAL: IncidentTimerPolicy.clamped(
                self.incident_critical_ack_minutes, self.incident_critical_escalation_minutes
            ),
            Severity.HIGH: IncidentTimerPolicy.clamped(
                self.incident_high_ack_minutes, self.incident_high_escalation_minutes
            ),
            Severity.MEDIUM: IncidentTimerPolicy.clamped(
                self.incident_medium_ack_minutes, self.incident_medium_escalation_minutes
            ),
        }

    @property
    def effective_idle_interval(self) -> float:
        if self.worker_idle_interval_seconds > 0:
            return self.worker_idle_interval_seconds
        return max(20.0, self.worker_interval_seconds * 2)


def get_settings() -> Settings:
    """Create and return the application settings."""
    return Settings()
