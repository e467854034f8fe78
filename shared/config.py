"""
Shared configuration management for the OpsFlow task engine.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="OPSFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Store
    store_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "opsflow"

    # Collections
    tasks_collection: str = "tasks"
    personnel_collection: str = "employees"
    dedup_collection: str = "task_dedup_keys"

    # Personnel record field paths
    identity_link_field: str = "system_access.user_id"
    email_field: str = "email"
    capacity_field: str = "workload.max_concurrent"

    # Task queue
    default_max_retries: int = Field(default=3, ge=0)
    transition_max_attempts: int = Field(default=5, ge=1)
    default_org_id: str = "default"
    default_sla_hours: Dict[str, int] = Field(
        default_factory=lambda: {"critical": 4, "high": 8, "medium": 24, "low": 72}
    )

    # Workload and routing
    default_max_concurrent: int = Field(default=10, ge=1)
    query_batch_size: int = Field(default=30, ge=1, le=30)
    # Completed tasks counted in workload snapshots; None counts all history
    completed_window_days: Optional[int] = Field(default=30, ge=1)
    auto_assign: bool = True
    unassigned_retry_after_minutes: int = Field(default=120, ge=0)
    unassigned_batch_limit: int = Field(default=200, ge=1)

    # Escalation: hours past due before a task's band is raised
    overdue_escalation_hours: Dict[str, int] = Field(
        default_factory=lambda: {"P0": 1, "P1": 4, "P2": 12, "P3": 48}
    )
    default_escalation_hours: int = 12

    # Rules
    rules_file: Optional[str] = None


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
