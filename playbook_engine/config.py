from __future__ import annotations

import os
import socket
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_DUPLICATE_WINDOW_SECONDS,
    DEFAULT_MAX_CONFLICT_RETRIES,
    DEFAULT_MAX_INSTANCES_PER_RUN,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TIMER_BATCH_SIZE,
)
from .models import ExecutionStatus


class DuplicatePolicy(BaseModel):
    """When a start request counts as a repeat of a running execution.

    Two requests are identical when ``(playbook_id, initiated_by,
    input_data)`` are structurally equal after dropping ``ignore_input_keys``.
    """

    enabled: bool = True
    window_seconds: int = DEFAULT_DUPLICATE_WINDOW_SECONDS
    statuses: List[ExecutionStatus] = Field(
        default_factory=lambda: [ExecutionStatus.PENDING, ExecutionStatus.IN_PROGRESS]
    )
    ignore_input_keys: List[str] = Field(default_factory=list)


class ConcurrencyConfig(BaseModel):
    max_conflict_retries: int = Field(default=DEFAULT_MAX_CONFLICT_RETRIES, ge=1)


class SchedulerConfig(BaseModel):
    """Settings for the timer and stale-instance sweep."""

    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    timer_batch_size: int = DEFAULT_TIMER_BATCH_SIZE
    claim_lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS
    stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS
    max_instances_per_run: int = DEFAULT_MAX_INSTANCES_PER_RUN


class EngineConfig(BaseModel):
    """Top-level configuration model.

    ``actions`` names the action registry to load, as ``module:attribute``.
    """

    database_url: Optional[str] = None
    worker_id: Optional[str] = None
    actions: Optional[str] = None
    log_level: str = "INFO"
    duplicates: DuplicatePolicy = DuplicatePolicy()
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    def resolved_worker_id(self) -> str:
        return self.worker_id or f"{socket.gethostname()}-{os.getpid()}"


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the
            PLAYBOOK_ENGINE_CONFIG env variable or 'config.yaml' in the
            current directory.
    """

    config_path = path or os.getenv("PLAYBOOK_ENGINE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = EngineConfig(**data)
    else:
        config = EngineConfig()

    env_db_url = os.getenv("PLAYBOOK_ENGINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_actions = os.getenv("PLAYBOOK_ENGINE_ACTIONS")
    if env_actions:
        config.actions = env_actions
    env_worker = os.getenv("PLAYBOOK_ENGINE_WORKER_ID")
    if env_worker:
        config.worker_id = env_worker
    return config
