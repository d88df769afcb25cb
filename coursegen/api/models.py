from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from coursegen.jobs.models import JobStatus, TaskStatus, TaskType


class JobCreateResponse(BaseModel):
  """Response returned when a course generation job is submitted."""

  job_id: str
  status: JobStatus
  deduplicated: bool = Field(default=False, description="True when an earlier job with the same idempotency key was returned.")


class TaskSummary(BaseModel):
  task_id: str
  task_identifier: str
  task_type: TaskType
  status: TaskStatus
  title: str | None = None
  lesson_index: int | None = None
  section_index: int | None = None
  dependencies: list[str] = Field(default_factory=list)
  current_retry_count: int = 0
  max_retries: int = 3
  error_message: str | None = None
  error_category: str | None = None
  error_severity: str | None = None
  is_recoverable: bool | None = None
  recovery_suggestions: list[str] | None = None
  started_at: str | None = None
  completed_at: str | None = None


class TaskArtifact(BaseModel):
  """Result of a completed task, exposed even when other tasks failed."""

  task_identifier: str
  task_type: TaskType
  title: str | None = None
  result: dict[str, Any]


class JobStatusResponse(BaseModel):
  job_id: str
  status: JobStatus
  progress_percentage: float
  current_phase: str | None = None
  estimated_time_remaining: int | None = None
  request: dict[str, Any]
  error_summary: dict[str, Any] | None = None
  result: dict[str, Any] | None = None
  is_dismissed: bool = False
  created_at: str
  updated_at: str
  completed_at: str | None = None
  task_counts: dict[str, int] = Field(default_factory=dict)
  tasks: list[TaskSummary] = Field(default_factory=list)
  artifacts: list[TaskArtifact] = Field(default_factory=list)
  failures: list[TaskSummary] = Field(default_factory=list)


class JobActionRequest(BaseModel):
  """Request payload for a user command on a job."""

  action_type: Literal["retry_task", "skip_task", "pause_job", "resume_job", "cancel_job"]
  task_ids: list[StrictStr] | None = Field(default=None, max_length=500, description="Task ids or task identifiers; required for retry_task and skip_task.")
  context: dict[str, Any] | None = None
  model_config = ConfigDict(extra="forbid")


class JobActionResponse(BaseModel):
  action_id: str
  job_id: str
  action_type: str
  job_status: JobStatus
  affected_tasks: list[str] = Field(default_factory=list)


class UserActionResponse(BaseModel):
  action_id: str
  job_id: str
  actor_id: str
  action_type: str
  affected_tasks: list[str]
  context: dict[str, Any]
  success: bool
  created_at: str


class RegenerateTaskResponse(BaseModel):
  job_id: str
  task_identifier: str
  regenerated: bool


class StalledJobResponse(BaseModel):
  job_id: str
  status: str
  updated_at: str
  progress_percentage: float
  current_phase: str | None = None
  stalled_minutes: int
  in_flight_tasks: int
  classification: Literal["stuck", "healthy"]
  recovery_attempts: int = 0


class HealthCheckResponse(BaseModel):
  checked_at: str
  threshold_minutes: int
  stuck_jobs: list[StalledJobResponse] = Field(default_factory=list)
  healthy_jobs: list[StalledJobResponse] = Field(default_factory=list)


class HealthCheckActionRequest(BaseModel):
  """Request payload applying a recovery action to a stalled job."""

  action: Literal["recover", "resume"]
  job_id: StrictStr = Field(min_length=1)
  model_config = ConfigDict(extra="forbid")


class HealthCheckActionResponse(BaseModel):
  job_id: str
  action: Literal["recover", "resume"]
  status: JobStatus
