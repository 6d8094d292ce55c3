"""Domain models for playbook definitions and their executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .conditions import Condition


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Enumerations


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"


class StepType(str, Enum):
    TASK = "task"
    AUTOMATED = "automated"
    DECISION = "decision"
    WAIT = "wait"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_open(self) -> bool:
        return self in (StepStatus.PENDING, StepStatus.ACTIVE)


class TaskState(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in (TaskState.OPEN, TaskState.IN_PROGRESS)


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TimerPurpose(str, Enum):
    SLA = "sla"
    RETRY = "retry"
    REMINDER = "reminder"
    WAIT = "wait"


class EffectStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BackoffStrategy(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# ----------------------------------------------------------------------
# Definitions


class BackoffPolicy(BaseModel):
    """Delay between automated-step attempts."""

    strategy: BackoffStrategy = BackoffStrategy.NONE
    delay_seconds: float = Field(default=0.0, ge=0)
    max_delay_seconds: Optional[float] = Field(default=None, ge=0)
    jitter_seconds: float = Field(default=0.0, ge=0)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)


class Branch(BaseModel):
    condition: Condition
    next_step_id: str


class NextStepRule(BaseModel):
    """How to pick the step that follows the current one.

    A static ``next_step_id`` wins over ``branches``. Decision steps use
    ``branches`` with an optional ``default_step_id``. ``end`` finishes the
    playbook after this step.
    """

    next_step_id: Optional[str] = None
    branches: List[Branch] = Field(default_factory=list)
    default_step_id: Optional[str] = None
    end: bool = False

    def referenced_step_ids(self) -> List[str]:
        ids = [b.next_step_id for b in self.branches]
        ids.extend(i for i in (self.next_step_id, self.default_step_id) if i)
        return ids


class Assignee(BaseModel):
    """Exactly one of a role or a user owns a piece of work."""

    role: Optional[str] = None
    user_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Assignee":
        if bool(self.role) == bool(self.user_id):
            raise ValueError("assignee requires exactly one of role or user_id")
        return self

    def __str__(self) -> str:
        return f"role:{self.role}" if self.role else f"user:{self.user_id}"


class StepDefinition(BaseModel):
    id: str
    name: Optional[str] = None
    type: StepType
    assignee: Optional[Assignee] = None
    action: Optional[str] = None
    sla_hours: Optional[float] = Field(default=None, gt=0)
    business_hours_only: bool = False
    reminder_hours: Optional[float] = Field(default=None, gt=0)
    wait_seconds: Optional[float] = Field(default=None, ge=0)
    priority: TaskPriority = TaskPriority.NORMAL
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    optional: bool = False
    next_step_rule: Optional[NextStepRule] = None
    input_contract: Optional[Dict[str, Any]] = None
    output_contract: Optional[Dict[str, Any]] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class PlaybookDefinition(BaseModel):
    """Declarative template of a business process. Immutable once published."""

    organization_id: str
    id: str
    version: int = Field(default=1, ge=1)
    name: Optional[str] = None
    smart_code: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: List[StepDefinition] = Field(default_factory=list)
    input_contract: Optional[Dict[str, Any]] = None
    output_contract: Optional[Dict[str, Any]] = None
    estimated_duration_hours: Optional[float] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None

    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.id == step_id), None)

    def first_step(self) -> Optional[StepDefinition]:
        return self.steps[0] if self.steps else None

    def following_step(self, step_id: str) -> Optional[StepDefinition]:
        """Step after ``step_id`` in definition order."""
        ids = self.step_ids()
        index = ids.index(step_id)
        return self.steps[index + 1] if index + 1 < len(ids) else None


# ----------------------------------------------------------------------
# Runtime records


class ExecutionInstance(BaseModel):
    execution_id: str = Field(default_factory=new_id)
    organization_id: str
    playbook_id: str
    playbook_version: int
    version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    current_step_instance_id: Optional[str] = None
    current_step_due_at: Optional[datetime] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    owner: Optional[Assignee] = None
    dedup_key: Optional[str] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    pause_reason: Optional[str] = None
    error: Optional[str] = None
    initiated_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepInstance(BaseModel):
    step_instance_id: str = Field(default_factory=new_id)
    organization_id: str
    instance_id: str
    step_id: str
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    attempt_count: int = 0
    version: int = 1
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    due_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Task(BaseModel):
    task_id: str = Field(default_factory=new_id)
    organization_id: str
    instance_id: str
    step_id: str
    step_instance_id: str
    title: Optional[str] = None
    assignee: Assignee
    state: TaskState = TaskState.OPEN
    priority: TaskPriority = TaskPriority.NORMAL
    due_at: Optional[datetime] = None
    version: int = 1
    output: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def is_overdue(self, now: datetime) -> bool:
        return self.state.is_open and self.due_at is not None and self.due_at < now


class TaskReassignment(BaseModel):
    """Audit entry for a full replacement of a task's assignee."""

    organization_id: str
    task_id: str
    instance_id: str
    old_assignee: Assignee
    new_assignee: Assignee
    reassigned_by: str
    reason: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class Timer(BaseModel):
    timer_id: str = Field(default_factory=new_id)
    organization_id: str
    instance_id: str
    step_instance_id: Optional[str] = None
    purpose: TimerPurpose
    fire_at: datetime
    fired: bool = False
    fired_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_claimable(self, now: datetime) -> bool:
        if self.fired or self.fire_at > now:
            return False
        return self.claimed_by is None or (
            self.claim_expires_at is not None and self.claim_expires_at <= now
        )


class EffectRecord(BaseModel):
    """One invocation attempt of an automated step's action."""

    effect_id: str = Field(default_factory=new_id)
    organization_id: str
    instance_id: str
    step_instance_id: str
    step_id: str
    attempt: int
    status: EffectStatus = EffectStatus.PENDING
    error: Optional[str] = None
    retryable: bool = True
    output: Optional[Dict[str, Any]] = None
    retry_of: Optional[str] = None
    forced: bool = False
    requested_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    settled_at: Optional[datetime] = None


class StatusChange(BaseModel):
    """Append-only history entry for an execution."""

    organization_id: str
    execution_id: str
    event: str
    from_status: Optional[ExecutionStatus] = None
    to_status: Optional[ExecutionStatus] = None
    step_id: Optional[str] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class SLAAuditRecord(BaseModel):
    organization_id: str
    execution_id: str
    step_id: str
    old_due_at: Optional[datetime] = None
    new_due_at: datetime
    reason: str
    by: str
    allow_past: bool = False
    at: datetime = Field(default_factory=utcnow)


class SLAStatus(BaseModel):
    compliant: bool
    elapsed_minutes: float
    allowed_minutes: Optional[float] = None
    severity: Literal["info", "warning", "critical"] = "info"
    message: str


# ----------------------------------------------------------------------
# Queries and filters


class WorkflowQuery(BaseModel):
    definition_code: Optional[str] = None
    current_state: Optional[ExecutionStatus] = None
    owner_team: Optional[str] = None
    owner_user_id: Optional[str] = None
    paused: Optional[bool] = None
    overdue: Optional[bool] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    sort_by: Literal["started_at", "updated_at", "current_step_due_at"] = "started_at"
    sort_order: Literal["asc", "desc"] = "desc"


class TaskQuery(BaseModel):
    instance_id: Optional[str] = None
    task_state: Optional[TaskState] = None
    assignee_role: Optional[str] = None
    assignee_user_id: Optional[str] = None
    priority: Optional[TaskPriority] = None
    overdue: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class EffectFilter(BaseModel):
    """Selects failed effects for a manual retry."""

    effect_ids: Optional[List[str]] = None
    retryable_only: bool = False
    since: Optional[datetime] = None

    def matches(self, effect: EffectRecord) -> bool:
        if effect.status is not EffectStatus.FAILED:
            return False
        if self.effect_ids is not None and effect.effect_id not in self.effect_ids:
            return False
        if self.retryable_only and not effect.retryable:
            return False
        if self.since is not None and effect.created_at < self.since:
            return False
        return True


# ----------------------------------------------------------------------
# Results


class StartResult(BaseModel):
    execution_id: str
    status: ExecutionStatus
    current_step_id: Optional[str] = None


class ExecutionDetail(BaseModel):
    instance: ExecutionInstance
    steps: List[StepInstance] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    timers: List[Timer] = Field(default_factory=list)
    effects: List[EffectRecord] = Field(default_factory=list)
    history: List[StatusChange] = Field(default_factory=list)
    sla_audit: List[SLAAuditRecord] = Field(default_factory=list)
    sla_status: Optional[SLAStatus] = None


class RetryEffectsResult(BaseModel):
    execution_id: str
    step_id: str
    matched_effect_ids: List[str] = Field(default_factory=list)
    new_effect: Optional[EffectRecord] = None


class SweepAction(BaseModel):
    kind: Literal["fire_timer", "advance_stale"]
    execution_id: str
    organization_id: str
    timer_id: Optional[str] = None
    purpose: Optional[TimerPurpose] = None
    detail: Optional[str] = None


class SweepReport(BaseModel):
    worker_id: str
    dry_run: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    actions: List[SweepAction] = Field(default_factory=list)
    timers_processed: int = 0
    instances_advanced: int = 0
    errors: List[str] = Field(default_factory=list)
