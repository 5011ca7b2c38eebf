"""Application settings and configuration."""

import os
import tempfile
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = Field(default=False, description="Render logs as JSON lines")
    redact_sensitive_logs: bool = Field(default=True, description="Mask credentials in logs")

    # GitHub
    github_token: str | None = Field(default=None, description="GitHub Personal Access Token")

    # Database
    database_url: str = Field(
        default="sqlite:///./improver.db", description="Database connection URL"
    )

    # Worker
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    max_attempts: int = Field(default=3, ge=1, description="Failed attempts before a job is FAILED")
    max_concurrent_jobs: int = Field(default=4, ge=1, description="Pipelines running at once")

    # Workspaces
    workspace_base_dir: str = Field(
        default=os.path.join(tempfile.gettempdir(), "coverage-improvement"),
        description="Root directory for per-job scratch directories",
    )
    workspace_max_age_hours: float = Field(default=24, ge=0)
    workspace_sweep_interval_seconds: float = Field(default=3600, gt=0)

    # AI test generation
    ai_cli_command: str = Field(
        default='echo "AI CLI not configured"', description="Command template, {FILE} is the target"
    )
    ai_cli_key: str | None = Field(default=None, description="Credential forwarded to the AI CLI")

    # Sandbox
    use_sandbox: bool = True
    allow_unsandboxed: bool = Field(
        default=False, description="Run without Docker when it is unavailable (never in production)"
    )
    sandbox_image: str = "node:20-alpine"
    sandbox_memory_mb: int = Field(default=1024, ge=16)
    sandbox_cpus: float = Field(default=1.0, gt=0)
    sandbox_pids_limit: int = Field(default=256, ge=1)
    sandbox_scratch_mb: int = Field(default=100, ge=1)
    sandbox_network_mode: Literal["none", "restricted", "full"] = "restricted"
    sandbox_restricted_network: str = Field(
        default="improver-egress", description="Docker network used for the restricted mode"
    )
    sandbox_timeout_seconds: float = Field(default=600, gt=0)
    sandbox_grace_seconds: float = Field(default=5, ge=0)
    sandbox_output_limit_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)

    # Coverage
    coverage_command: str = "npx nyc --reporter=json-summary --reporter=text npm test"
    coverage_timeout_seconds: float = Field(default=900, gt=0)
    coverage_summary_path: str = "coverage/coverage-summary.json"
    coverage_threshold: float = Field(
        default=80, ge=0, le=100, description="Files at or above this line coverage are not improved"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def unsandboxed_fallback_allowed(self) -> bool:
        """Unsandboxed execution is only ever permitted outside production."""
        return self.allow_unsandboxed and not self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
