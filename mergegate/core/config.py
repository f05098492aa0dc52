"""
Configuration management for MergeGate

All timing bounds of the merge pipeline live here so the pollers and the
auto-fix loop can be driven by environment variables (MERGEGATE_*) or a
local .env file.
"""

from typing import Dict, List, Optional, Set

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Escalation tokens understood by the auto-fix loop
SECURITY_ESCALATION = "security"
INFRASTRUCTURE_TIMEOUT_ESCALATION = "infrastructure_timeout"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MERGEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "mergegate"

    # GitHub
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    github_timeout_seconds: float = 30.0

    # Merge defaults
    default_target_branch: str = "main"
    default_strategy: str = "squash"

    # Commit tracker
    pipeline_discovery_timeout: float = 60.0
    pipeline_discovery_interval: float = 2.0

    # Status poller
    poll_initial_interval: float = 10.0
    poll_backoff_factor: float = 1.5
    poll_max_interval: float = 120.0
    poll_jitter: float = 0.2
    poll_timeout: float = 600.0
    poll_max_attempts: int = 30

    # Auto-fix loop
    autofix_max_attempts: int = 3
    fix_timeout: float = 120.0
    fix_cooldown: float = 30.0
    require_human_for: Set[str] = Field(
        default_factory=lambda: {
            SECURITY_ESCALATION,
            INFRASTRUCTURE_TIMEOUT_ESCALATION,
        }
    )
    # Shell commands per failure kind, run in the workspace root
    fix_commands: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "lint": ["ruff check --fix .", "ruff format ."],
        }
    )

    # Merge executor
    workspace_root: str = "."
    # owner/name of the checkout at workspace_root; other repositories are refused
    repository: Optional[str] = None
    dry_run_test_command: Optional[str] = "pytest -q"
    dry_run_timeout: float = 900.0
    git_command_timeout: float = 60.0
    job_log_tail_bytes: int = 8192

    # Review bots: findings at or above this severity block the merge.
    # None disables the review gate.
    review_block_severity: Optional[str] = "critical"

    # Manual override path (force-merge)
    allow_force_merge: bool = False

    # Persistence / locking
    context_store_dir: Optional[str] = None
    redis_url: Optional[str] = None
    lock_ttl_seconds: float = 3600.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def validate_timing(self) -> "Settings":
        """Reject inconsistent polling/fix bounds at load time."""
        if self.poll_initial_interval <= 0:
            raise ValueError("poll_initial_interval must be positive")
        if self.poll_initial_interval > self.poll_max_interval:
            raise ValueError(
                f"poll_initial_interval={self.poll_initial_interval} must be <= "
                f"poll_max_interval={self.poll_max_interval}"
            )
        if self.poll_backoff_factor < 1.0:
            raise ValueError("poll_backoff_factor must be >= 1.0")
        if not 0.0 <= self.poll_jitter < 1.0:
            raise ValueError("poll_jitter must be within [0, 1)")
        for name in (
            "poll_timeout",
            "pipeline_discovery_timeout",
            "pipeline_discovery_interval",
            "fix_timeout",
            "lock_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.poll_max_attempts < 1:
            raise ValueError("poll_max_attempts must be >= 1")
        if self.autofix_max_attempts < 0:
            raise ValueError("autofix_max_attempts must be >= 0")
        if self.fix_cooldown < 0:
            raise ValueError("fix_cooldown must be >= 0")
        if self.default_strategy not in ("squash", "merge", "rebase"):
            raise ValueError(f"Unknown default_strategy: {self.default_strategy}")
        if self.review_block_severity is not None:
            self.review_block_severity = self.review_block_severity.strip().lower() or None
        if self.review_block_severity not in (None, "info", "minor", "major", "critical"):
            raise ValueError(f"Unknown review_block_severity: {self.review_block_severity}")

        # Security escalation can never be configured away
        self.require_human_for = set(self.require_human_for) | {SECURITY_ESCALATION}
        return self


# Global settings instance
settings = Settings()
