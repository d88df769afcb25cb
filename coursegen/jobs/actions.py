"""User commands applied to jobs and tasks as explicit, audited transitions."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from coursegen.jobs.engine import ExecutionEngine
from coursegen.jobs.errors import JobAccessError, StateConflictError, StructuralError
from coursegen.jobs.graph import OUTLINE_IDENTIFIER
from coursegen.jobs.models import ACTIVE_JOB_STATUSES, CLEARED_TASK_ERROR, IN_PROGRESS_TASK_STATUSES, OPEN_TASK_STATUSES, ActionType, JobRecord, TaskRecord, UserActionRecord
from coursegen.storage.jobs_repo import JobsRepository
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.ids import generate_action_id
from coursegen.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

ACTION_TYPES: frozenset[str] = frozenset({"retry_task", "skip_task", "pause_job", "resume_job", "cancel_job"})

# Source statuses each task-level command accepts.
_TASK_SOURCE_STATUSES: dict[str, frozenset[str]] = {
  "retry_task": frozenset({"failed"}),
  "skip_task": frozenset({"pending", "queued", "running", "failed"}),
}
_NON_TERMINAL_JOB_STATUSES = ("queued", "processing", "paused")


@dataclass(frozen=True)
class ActionResult:
  """Acknowledgement returned for an accepted command."""

  action_id: str
  job_id: str
  action_type: str
  job_status: str
  affected_tasks: list[str] = field(default_factory=list)


class ActionHandler:
  def __init__(self, *, jobs_repo: JobsRepository, tasks_repo: TasksRepository, engine: ExecutionEngine) -> None:
    self._jobs_repo = jobs_repo
    self._tasks_repo = tasks_repo
    self._engine = engine

  async def apply(self, job_id: str, action_type: str, *, actor_id: str, task_ids: Iterable[str] | None = None, context: dict[str, Any] | None = None) -> ActionResult:
    """Validate and apply one command; rejected commands leave no trace."""
    if action_type not in ACTION_TYPES:
      raise StructuralError(f"Unsupported action type: {action_type}")
    job = await self._jobs_repo.get_job(job_id)
    if job is None or job.user_id != actor_id:
      raise JobAccessError(f"Job {job_id} not found")

    if action_type in _TASK_SOURCE_STATUSES:
      job, affected = await self._apply_task_action(job, action_type, list(task_ids or []))
    elif action_type == "pause_job":
      job, affected = await self._pause(job)
    elif action_type == "resume_job":
      job, affected = await self._resume(job)
    else:
      job, affected = await self._cancel(job)

    record = UserActionRecord(action_id=generate_action_id(), job_id=job_id, actor_id=actor_id, action_type=action_type, created_at=now_iso(), affected_tasks=affected, context=dict(context or {}), success=True)  # type: ignore[arg-type]
    await self._jobs_repo.record_action(record)
    logger.info("Applied action=%s job=%s actor=%s tasks=%s", action_type, job_id, actor_id, affected)
    return ActionResult(action_id=record.action_id, job_id=job_id, action_type=action_type, job_status=job.status, affected_tasks=affected)

  async def _apply_task_action(self, job: JobRecord, action_type: ActionType, task_ids: list[str]) -> tuple[JobRecord, list[str]]:
    if not task_ids:
      raise StructuralError(f"{action_type} requires at least one task id")
    if job.status not in _NON_TERMINAL_JOB_STATUSES:
      raise StateConflictError(f"Job {job.job_id} is {job.status}; task commands need an unfinished job")

    tasks = await self._tasks_repo.list_tasks(job.job_id)
    lookup: dict[str, TaskRecord] = {}
    for task in tasks:
      lookup[task.task_id] = task
      lookup[task.task_identifier] = task
    unknown = [task_id for task_id in task_ids if task_id not in lookup]
    if unknown:
      raise StructuralError(f"Unknown task ids for job {job.job_id}: {', '.join(unknown)}")

    targets = list({lookup[task_id].task_id: lookup[task_id] for task_id in task_ids}.values())
    allowed = _TASK_SOURCE_STATUSES[action_type]
    invalid = [f"{task.task_identifier} ({task.status})" for task in targets if task.status not in allowed]
    if invalid:
      raise StateConflictError(f"{action_type} is not allowed for tasks: {', '.join(invalid)}")
    if action_type == "skip_task" and any(task.task_identifier == OUTLINE_IDENTIFIER for task in targets):
      raise StateConflictError("The outline task cannot be skipped; every other task is planned from it")

    changed: list[TaskRecord] = []
    for task in targets:
      if action_type == "retry_task":
        updated = await self._tasks_repo.transition_task(task.task_id, from_statuses=allowed, status="pending", expected_version=task.version, current_retry_count=0, completed_at=None, last_retry_at=now_iso(), **CLEARED_TASK_ERROR)
      else:
        updated = await self._tasks_repo.transition_task(task.task_id, from_statuses=allowed, status="skipped", expected_version=task.version, completed_at=now_iso())
      if updated is None:
        logger.info("Task changed concurrently action=%s job=%s task=%s", action_type, job.job_id, task.task_identifier)
        continue
      changed.append(updated)
    if not changed:
      raise StateConflictError(f"Tasks of job {job.job_id} changed state before {action_type} could be applied")

    event_type = "task_skipped" if action_type == "skip_task" else "task_retry_requested"
    for task in changed:
      await self._engine.refresh_progress(job, event_type, task, live_message=f"{'Skipped' if action_type == 'skip_task' else 'Retrying'} {task.title or task.task_identifier}")
    if job.status in ACTIVE_JOB_STATUSES:
      self._engine.start(job.job_id)
    return job, [task.task_identifier for task in changed]

  async def _pause(self, job: JobRecord) -> tuple[JobRecord, list[str]]:
    paused = await self._jobs_repo.update_job(job.job_id, expected_status=ACTIVE_JOB_STATUSES, status="paused")
    if paused is None:
      raise StateConflictError(f"Job {job.job_id} is {job.status}; only queued or processing jobs can be paused")
    affected: list[str] = []
    for task in await self._tasks_repo.list_tasks(job.job_id, statuses=IN_PROGRESS_TASK_STATUSES):
      # Results of calls still in flight are fenced out by the version bump.
      if await self._tasks_repo.transition_task(task.task_id, from_statuses=IN_PROGRESS_TASK_STATUSES, status="pending", queued_at=None, started_at=None) is not None:
        affected.append(task.task_identifier)
    self._engine.publish(paused, "job_paused", live_message="Course generation paused")
    return paused, affected

  async def _resume(self, job: JobRecord) -> tuple[JobRecord, list[str]]:
    resumed = await self._jobs_repo.update_job(job.job_id, expected_status=("paused",), status="processing")
    if resumed is None:
      raise StateConflictError(f"Job {job.job_id} is {job.status}; only paused jobs can be resumed")
    self._engine.publish(resumed, "job_resumed", live_message="Course generation resumed")
    self._engine.start(job.job_id)
    return resumed, []

  async def _cancel(self, job: JobRecord) -> tuple[JobRecord, list[str]]:
    cancelled = await self._jobs_repo.update_job(job.job_id, expected_status=_NON_TERMINAL_JOB_STATUSES, status="cancelled", completed_at=now_iso())
    if cancelled is None:
      raise StateConflictError(f"Job {job.job_id} is {job.status}; finished jobs cannot be cancelled")
    affected: list[str] = []
    for task in await self._tasks_repo.list_tasks(job.job_id, statuses=OPEN_TASK_STATUSES):
      if await self._tasks_repo.transition_task(task.task_id, from_statuses=OPEN_TASK_STATUSES, status="cancelled", completed_at=now_iso()) is not None:
        affected.append(task.task_identifier)
    self._engine.publish(cancelled, "job_cancelled", live_message="Course generation cancelled")
    return cancelled, affected
