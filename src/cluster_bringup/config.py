"""Configuration management for cluster bring-up."""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments."""

    DEV = "dev"
    TST = "tst"
    PRD = "prd"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(default=Environment.DEV, description="Deployment environment")
    project_name: str = Field(default="cluster-bringup", description="Project name for report naming")

    # kubectl
    kubeconfig: Optional[str] = Field(default=None, description="Path to the kubeconfig of the target cluster")
    kubectl_binary: str = Field(default="kubectl", description="kubectl executable")
    kubectl_timeout_seconds: float = Field(default=60.0, description="Timeout for a single kubectl call")
    kubectl_retries: int = Field(
        default=3, description="Attempts for kubectl calls that fail on transport errors"
    )
    kubectl_retry_wait_seconds: float = Field(
        default=1.0, description="Base of the exponential wait between kubectl retries"
    )
    command_timeout_seconds: float = Field(
        default=3600.0, description="Timeout for external commands such as terraform or ansible"
    )

    # Stage defaults (pipeline definitions may override per stage)
    poll_interval_seconds: float = Field(default=5.0, description="Readiness polling interval")
    default_stage_timeout_seconds: float = Field(default=300.0, description="Readiness timeout per attempt")
    default_max_attempts: int = Field(default=3, description="Readiness attempts per stage")
    default_backoff_seconds: float = Field(default=5.0, description="Delay after a remediation")
    max_concurrency: int = Field(default=4, description="Stages allowed to run at the same time")

    # Pipeline files
    pipeline_file: Optional[str] = Field(
        default=None, description="Pipeline definition YAML (defaults to the packaged pipeline)"
    )
    report_dir: str = Field(default=".cluster-bringup/runs", description="Directory for run reports")

    # Remediation
    registry_mirrors: str = Field(
        default="",
        description="Comma-separated source=mirror registry pairs used for ImagePullBackOff",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRD

    @property
    def registry_mirror_map(self) -> dict[str, str]:
        """Get registry mirrors as a mapping of source prefix to mirror prefix."""
        mirrors: dict[str, str] = {}
        for pair in self.registry_mirrors.split(","):
            if "=" not in pair:
                continue
            source, mirror = pair.split("=", 1)
            if source.strip() and mirror.strip():
                mirrors[source.strip()] = mirror.strip()
        return mirrors

    @property
    def pipeline_path(self) -> Path:
        """Get the pipeline definition path, falling back to the packaged one."""
        if self.pipeline_file:
            return Path(self.pipeline_file)
        return get_default_pipeline_path()

    @property
    def report_path(self) -> Path:
        """Get the report directory as a path."""
        return Path(self.report_dir)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_default_pipeline_path() -> Path:
    """Get the path to the packaged DigitalOcean/Kubespray pipeline."""
    return Path(__file__).parent / "pipelines" / "digitalocean-kubespray.yaml"
