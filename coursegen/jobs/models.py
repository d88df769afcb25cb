"""Domain models for course generation jobs and their tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["queued", "processing", "paused", "completed", "failed", "cancelled"]
TaskStatus = Literal["pending", "queued", "running", "completed", "failed", "skipped", "cancelled"]
TaskType = Literal["outline", "lesson_content", "assessment", "media", "finalize"]
ActionType = Literal["retry_task", "skip_task", "pause_job", "resume_job", "cancel_job"]
ErrorSeverity = Literal["low", "medium", "high", "critical"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "processing"})
DEPENDENCY_SATISFIED_STATUSES: frozenset[str] = frozenset({"completed", "skipped"})
IN_PROGRESS_TASK_STATUSES: frozenset[str] = frozenset({"queued", "running"})
OPEN_TASK_STATUSES: frozenset[str] = frozenset({"pending", "queued", "running"})


@dataclass
class JobRecord:
  """Represents one course generation request and its aggregate state."""

  job_id: str
  user_id: str
  request: dict[str, Any]
  status: JobStatus
  created_at: str
  updated_at: str
  org_id: str | None = None
  progress_percentage: float = 0.0
  current_phase: str | None = None
  error_summary: dict[str, Any] | None = None
  result_json: dict[str, Any] | None = None
  completed_at: str | None = None
  idempotency_key: str | None = None
  is_dismissed: bool = False
  recovery_attempts: int = 0

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES


@dataclass
class TaskRecord:
  """Represents one unit of generation work inside a job."""

  task_id: str
  job_id: str
  task_identifier: str
  task_type: TaskType
  status: TaskStatus
  created_at: str
  updated_at: str
  dependencies: list[str] = field(default_factory=list)
  version: int = 0
  current_retry_count: int = 0
  max_retries: int = 3
  execution_priority: int = 0
  lesson_index: int | None = None
  section_index: int | None = None
  title: str | None = None
  input_data: dict[str, Any] = field(default_factory=dict)
  result_json: dict[str, Any] | None = None
  error_message: str | None = None
  error_category: str | None = None
  error_severity: ErrorSeverity | None = None
  is_recoverable: bool | None = None
  recovery_suggestions: list[str] | None = None
  queued_at: str | None = None
  started_at: str | None = None
  completed_at: str | None = None
  last_retry_at: str | None = None

  @property
  def is_settled(self) -> bool:
    """True when the task satisfies dependants (completed or skipped)."""
    return self.status in DEPENDENCY_SATISFIED_STATUSES


@dataclass
class UserActionRecord:
  """Append-only audit entry for a user command applied to a job."""

  action_id: str
  job_id: str
  actor_id: str
  action_type: ActionType
  created_at: str
  affected_tasks: list[str] = field(default_factory=list)
  context: dict[str, Any] = field(default_factory=dict)
  success: bool = True


# Field values that clear the error columns of a task on reset.
CLEARED_TASK_ERROR: dict[str, Any] = {
  "error_message": None,
  "error_category": None,
  "error_severity": None,
  "is_recoverable": None,
  "recovery_suggestions": None,
}
