"""
Configuration settings for the sandbox recovery controller.
Uses pydantic-settings for environment variable management.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file BEFORE pydantic-settings initializes
# This ensures Modal SDK can read MODAL_TOKEN_ID and MODAL_TOKEN_SECRET
load_dotenv()


DeployEnvironment = Literal["main", "dev"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database Configuration
    database_url: str = Field(default="postgresql://localhost:5432/projects")

    # Redis Configuration (per-project recovery locks)
    redis_url: str = Field(default="redis://localhost:6379")

    # Modal Configuration
    modal_app_name: str = Field(default="project-sandboxes")
    modal_environment: DeployEnvironment | None = Field(
        default=None,
        description="Explicit snapshot environment; derived from NODE_ENV when unset",
    )
    node_env: str = Field(default="production")

    # The only provider whose sandboxes this controller manages
    default_sandbox_provider: str = Field(default="modal")

    # Templates
    fallback_template: str = Field(default="database-vite-template")
    template_repo_url: str | None = Field(
        default=None,
        description="Git repository with one branch per template, used when no snapshot exists",
    )

    # Sandbox parameters
    sandbox_base_image: str = Field(default="oven/bun:1")
    sandbox_workdir: str = Field(default="/workspace")
    sandbox_timeout_seconds: int = Field(default=3600)
    sandbox_idle_timeout_seconds: int = Field(default=900)
    sandbox_memory_mb: int = Field(default=2048)
    sandbox_cpu: float = Field(default=1.0)
    dev_server_port: int = Field(default=5173)

    # Recovery
    recovery_timeout_seconds: float | None = Field(
        default=None,
        description="Whole-operation deadline for ensure_recovered (None = no deadline)",
    )
    enable_recovery_lock: bool = Field(default=True)
    recovery_lock_ttl_seconds: int = Field(default=300)
    recovery_lock_wait_seconds: float = Field(default=120.0)

    # Debug trace of recovery checkpoints
    recovery_debug: bool = Field(default=False)
    debug: str = Field(default="")

    # HTTP surface
    internal_api_key: str = Field(default="")
    allowed_origins: str = Field(default="http://localhost:3000")

    # Sentry
    sentry_dsn: str = Field(default="")
    sentry_environment: str | None = Field(default=None)

    def deploy_environment(self) -> DeployEnvironment:
        """Environment tag used for template snapshot lookup."""
        if self.modal_environment:
            return self.modal_environment
        return "dev" if self.node_env == "development" else "main"

    def recovery_debug_enabled(self) -> bool:
        """True when RECOVERY_DEBUG is set or DEBUG mentions sandbox-recovery."""
        return self.recovery_debug or "sandbox-recovery" in self.debug


# Global settings instance
settings = Settings()
