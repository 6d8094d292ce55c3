from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


class DefinitionRow(SQLModel, table=True):
    """One published version of a playbook definition."""

    __tablename__ = "playbook_definitions"

    organization_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    version: int = Field(primary_key=True)
    name: Optional[str] = None
    smart_code: Optional[str] = None
    status: str = Field(default="draft", index=True)
    steps: list = Field(default_factory=list, sa_column=Column(JSON))
    input_contract: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    output_contract: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    estimated_duration_hours: Optional[float] = None
    created_by: Optional[str] = None
    created_at: datetime
    published_at: Optional[datetime] = None


class InstanceRow(SQLModel, table=True):
    """Represents an execution instance of a playbook."""

    __tablename__ = "execution_instances"

    execution_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    playbook_id: str = Field(index=True)
    playbook_version: int
    version: int = 1
    status: str = Field(default="pending", index=True)
    current_step_id: Optional[str] = None
    current_step_instance_id: Optional[str] = None
    current_step_due_at: Optional[datetime] = None
    input_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    output_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    owner_role: Optional[str] = None
    owner_user_id: Optional[str] = None
    dedup_key: Optional[str] = Field(default=None, index=True)
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    error: Optional[str] = None
    initiated_by: Optional[str] = None
    extra_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON))
    started_at: datetime
    updated_at: datetime = Field(index=True)
    completed_at: Optional[datetime] = None


class DedupClaimRow(SQLModel, table=True):
    """Latest execution started for a duplicate-detection key.

    Starts race on this row rather than on the instances table: only the
    worker that inserts it, or swaps out the execution it points at, may
    create the execution.
    """

    __tablename__ = "dedup_claims"

    organization_id: str = Field(primary_key=True)
    dedup_key: str = Field(primary_key=True)
    execution_id: str
    claimed_at: datetime


_OPEN_STEP = text("status IN ('pending', 'active')")


class StepInstanceRow(SQLModel, table=True):
    """Tracks one activation of a step within an execution."""

    __tablename__ = "step_instances"
    __table_args__ = (
        Index(
            "uq_step_instances_open",
            "instance_id",
            "step_id",
            unique=True,
            sqlite_where=_OPEN_STEP,
            postgresql_where=_OPEN_STEP,
        ),
    )

    step_instance_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    instance_id: str = Field(index=True)
    step_id: str
    step_type: str
    status: str = "pending"
    attempt_count: int = 0
    version: int = 1
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    due_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"

    task_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    instance_id: str = Field(index=True)
    step_id: str
    step_instance_id: str = Field(index=True)
    title: Optional[str] = None
    assignee_role: Optional[str] = Field(default=None, index=True)
    assignee_user_id: Optional[str] = Field(default=None, index=True)
    state: str = Field(default="open", index=True)
    priority: str = "normal"
    due_at: Optional[datetime] = None
    version: int = 1
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


class TaskReassignmentRow(SQLModel, table=True):
    __tablename__ = "task_reassignments"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(index=True)
    task_id: str = Field(index=True)
    instance_id: str
    old_assignee: dict = Field(default_factory=dict, sa_column=Column(JSON))
    new_assignee: dict = Field(default_factory=dict, sa_column=Column(JSON))
    reassigned_by: str
    reason: Optional[str] = None
    at: datetime


class TimerRow(SQLModel, table=True):
    __tablename__ = "timers"

    timer_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    instance_id: str = Field(index=True)
    step_instance_id: Optional[str] = None
    purpose: str
    fire_at: datetime = Field(index=True)
    fired: bool = Field(default=False, index=True)
    fired_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    created_at: datetime


class EffectRow(SQLModel, table=True):
    """Append-only record of an automated step invocation."""

    __tablename__ = "effect_records"

    effect_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    instance_id: str = Field(index=True)
    step_instance_id: str
    step_id: str
    attempt: int
    status: str = "pending"
    error: Optional[str] = None
    retryable: bool = True
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    retry_of: Optional[str] = None
    forced: bool = False
    requested_by: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class StatusChangeRow(SQLModel, table=True):
    __tablename__ = "status_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(index=True)
    execution_id: str = Field(index=True)
    event: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    step_id: Optional[str] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    at: datetime


class SLAAuditRow(SQLModel, table=True):
    __tablename__ = "sla_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(index=True)
    execution_id: str = Field(index=True)
    step_id: str
    old_due_at: Optional[datetime] = None
    new_due_at: datetime
    reason: str
    by: str
    allow_past: bool = False
    at: datetime
