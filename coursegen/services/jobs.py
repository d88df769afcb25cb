"""Course generation service: the exposed operations over the orchestration engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from coursegen.ai.client import GenerationClient, GenerationService
from coursegen.ai.providers import OpenAICompatibleService
from coursegen.api.models import JobActionResponse, JobCreateResponse, JobStatusResponse, TaskArtifact, TaskSummary
from coursegen.config import Settings, get_settings
from coursegen.jobs.actions import ActionHandler
from coursegen.jobs.dispatch import build_task_registry
from coursegen.jobs.engine import ExecutionEngine
from coursegen.jobs.errors import JobAccessError, StateConflictError, StructuralError
from coursegen.jobs.events import ProgressChannel, ProgressEvent
from coursegen.jobs.graph import TaskGraphBuilder
from coursegen.jobs.models import TERMINAL_JOB_STATUSES, JobRecord, TaskRecord, UserActionRecord
from coursegen.jobs.progress import summarize
from coursegen.jobs.recovery import HealthReport, RecoveryManager
from coursegen.jobs.report import JobReport, build_job_report
from coursegen.schema.course import CourseRequest
from coursegen.storage.factory import _get_jobs_repo, _get_tasks_repo
from coursegen.storage.jobs_repo import JobsRepository
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.ids import generate_job_id
from coursegen.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job not found."


def _utcnow() -> datetime:
  return datetime.now(UTC)


def _task_summary(task: TaskRecord) -> TaskSummary:
  return TaskSummary(
    task_id=task.task_id,
    task_identifier=task.task_identifier,
    task_type=task.task_type,
    status=task.status,
    title=task.title,
    lesson_index=task.lesson_index,
    section_index=task.section_index,
    dependencies=list(task.dependencies),
    current_retry_count=task.current_retry_count,
    max_retries=task.max_retries,
    error_message=task.error_message,
    error_category=task.error_category,
    error_severity=task.error_severity,
    is_recoverable=task.is_recoverable,
    recovery_suggestions=task.recovery_suggestions,
    started_at=task.started_at,
    completed_at=task.completed_at,
  )


class CourseGenerationService:
  """Wires stores, generation client, engine, recovery and actions together."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    tasks_repo: TasksRepository,
    generation_service: GenerationService,
    settings: Settings,
    channel: ProgressChannel | None = None,
    clock: Callable[[], datetime] = _utcnow,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._tasks_repo = tasks_repo
    self._settings = settings
    self.channel = channel or ProgressChannel()
    self.client = GenerationClient(
      generation_service,
      global_concurrency=settings.global_concurrency,
      per_job_concurrency=settings.per_job_concurrency,
      timeout_seconds=settings.generation_timeout_seconds,
      retry_base_delay_seconds=settings.retry_base_delay_seconds,
      retry_max_delay_seconds=settings.retry_max_delay_seconds,
    )
    self.graph_builder = TaskGraphBuilder(tasks_repo, max_retries=settings.task_max_retries)
    self.engine = ExecutionEngine(
      jobs_repo=jobs_repo,
      tasks_repo=tasks_repo,
      client=self.client,
      registry=build_task_registry(self.client, self.graph_builder),
      channel=self.channel,
      per_job_concurrency=settings.per_job_concurrency,
      clock=clock,
    )
    self.recovery = RecoveryManager(
      jobs_repo=jobs_repo,
      tasks_repo=tasks_repo,
      engine=self.engine,
      graph_builder=self.graph_builder,
      stall_threshold_minutes=settings.stall_threshold_minutes,
      auto_resume=settings.recovery_auto_resume,
      max_recovery_attempts=settings.recovery_max_attempts,
      clock=clock,
    )
    self.actions = ActionHandler(jobs_repo=jobs_repo, tasks_repo=tasks_repo, engine=self.engine)
    self._recovery_loop: asyncio.Task[None] | None = None

  async def submit(self, request: CourseRequest | dict[str, Any], *, user_id: str, org_id: str | None = None) -> JobCreateResponse:
    """Create a job plus its outline task and start execution."""
    if not isinstance(request, CourseRequest):
      try:
        request = CourseRequest.model_validate(request)
      except ValidationError as exc:
        raise StructuralError(f"Invalid course request: {exc.errors()[0]['msg']}") from exc

    if request.idempotency_key:
      existing = await self._jobs_repo.find_by_idempotency_key(user_id=user_id, idempotency_key=request.idempotency_key)
      if existing is not None:
        return JobCreateResponse(job_id=existing.job_id, status=existing.status, deduplicated=True)

    timestamp = now_iso()
    job = JobRecord(
      job_id=generate_job_id(),
      user_id=user_id,
      org_id=org_id,
      request=request.model_dump(mode="json"),
      status="queued",
      created_at=timestamp,
      updated_at=timestamp,
      current_phase="outline",
      idempotency_key=request.idempotency_key,
    )
    try:
      await self._jobs_repo.create_job(job)
    except IntegrityError:
      # A concurrent submission with the same idempotency key won the insert.
      existing = await self._jobs_repo.find_by_idempotency_key(user_id=user_id, idempotency_key=str(request.idempotency_key))
      if existing is None:
        raise
      return JobCreateResponse(job_id=existing.job_id, status=existing.status, deduplicated=True)

    await self.graph_builder.initialize(job)
    logger.info("Submitted course job=%s user=%s lessons=%s", job.job_id, user_id, request.lesson_count if request.outline is None else len(request.outline.lessons))
    self.engine.start(job.job_id)
    return JobCreateResponse(job_id=job.job_id, status=job.status)

  async def get_status(self, job_id: str, *, user_id: str) -> JobStatusResponse:
    """Return the job with its task summary, completed artifacts and failures."""
    job = await self._load(job_id, user_id=user_id)
    tasks = await self._tasks_repo.list_tasks(job_id)
    snapshot = summarize(tasks, concurrency=self._settings.per_job_concurrency)
    counts: dict[str, int] = {}
    for task in tasks:
      counts[task.status] = counts.get(task.status, 0) + 1
    return JobStatusResponse(
      job_id=job.job_id,
      status=job.status,
      progress_percentage=job.progress_percentage,
      current_phase=job.current_phase,
      estimated_time_remaining=None if job.is_terminal else snapshot.estimated_time_remaining,
      request=job.request,
      error_summary=job.error_summary,
      result=job.result_json,
      is_dismissed=job.is_dismissed,
      created_at=job.created_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
      task_counts=counts,
      tasks=[_task_summary(task) for task in tasks],
      artifacts=[TaskArtifact(task_identifier=task.task_identifier, task_type=task.task_type, title=task.title, result=task.result_json) for task in tasks if task.status == "completed" and task.result_json is not None],
      failures=[_task_summary(task) for task in tasks if task.status == "failed"],
    )

  async def ensure_access(self, job_id: str, *, user_id: str) -> JobRecord:
    return await self._load(job_id, user_id=user_id)

  async def subscribe_progress(self, job_id: str, *, user_id: str) -> AsyncIterator[ProgressEvent]:
    """Yield a snapshot, then live events deduplicated by task id + status, until a terminal event."""
    job = await self._load(job_id, user_id=user_id)
    async with self.channel.subscribe(job_id) as queue:
      tasks = await self._tasks_repo.list_tasks(job_id)
      snapshot = summarize(tasks, concurrency=self._settings.per_job_concurrency)
      yield ProgressEvent(
        job_id=job_id,
        event_type="snapshot",
        overall_progress=job.progress_percentage,
        current_phase=job.current_phase or snapshot.phase,
        live_message=f"{snapshot.settled_tasks} of {snapshot.total_tasks} tasks finished",
        estimated_time_remaining=0 if job.is_terminal else snapshot.estimated_time_remaining,
        status=job.status,
        timestamp=now_iso(),
      )
      if job.status in TERMINAL_JOB_STATUSES:
        return

      seen: set[tuple[str, str | None, str | None]] = set()
      while True:
        event = await queue.get()
        key = event.dedupe_key
        if key in seen:
          continue
        seen.add(key)
        yield event
        if event.is_terminal:
          return

  async def action(self, job_id: str, action_type: str, *, actor_id: str, task_ids: list[str] | None = None, context: dict[str, Any] | None = None) -> JobActionResponse:
    result = await self.actions.apply(job_id, action_type, actor_id=actor_id, task_ids=task_ids, context=context)
    return JobActionResponse(action_id=result.action_id, job_id=result.job_id, action_type=result.action_type, job_status=result.job_status, affected_tasks=result.affected_tasks)

  async def regenerate_task(self, job_id: str, task_identifier: str, *, user_id: str) -> bool:
    return await self.recovery.regenerate_task(job_id, task_identifier, user_id=user_id)

  async def health_check(self, *, user_id: str | None = None) -> HealthReport:
    return await self.recovery.health_check(user_id=user_id)

  async def recover(self, job_id: str, *, user_id: str | None = None) -> JobRecord:
    return await self.recovery.recover(job_id, user_id=user_id)

  async def resume(self, job_id: str, *, user_id: str | None = None) -> JobRecord:
    return await self.recovery.resume(job_id, user_id=user_id)

  async def dismiss(self, job_id: str, *, user_id: str) -> JobRecord:
    """Soft-dismiss a finished job; jobs are never deleted."""
    job = await self._load(job_id, user_id=user_id)
    if not job.is_terminal:
      raise StateConflictError(f"Job {job_id} is {job.status}; only finished jobs can be dismissed")
    dismissed = await self._jobs_repo.update_job(job_id, expected_status=TERMINAL_JOB_STATUSES, is_dismissed=True)
    if dismissed is None:
      raise StateConflictError(f"Job {job_id} changed state before it could be dismissed")
    return dismissed

  async def list_actions(self, job_id: str, *, user_id: str) -> list[UserActionRecord]:
    await self._load(job_id, user_id=user_id)
    return await self._jobs_repo.list_actions(job_id)

  async def report(self, job_id: str, *, user_id: str, include_tasks: bool = True, include_errors: bool = True, include_performance: bool = True) -> JobReport:
    """Build the analytics report for one job from its task rows and action log."""
    job = await self._load(job_id, user_id=user_id)
    tasks = await self._tasks_repo.list_tasks(job_id)
    actions = await self._jobs_repo.list_actions(job_id)
    return build_job_report(job, tasks, actions, generated_at=now_iso(), include_tasks=include_tasks, include_errors=include_errors, include_performance=include_performance)

  def start_background(self) -> None:
    """Start the periodic recovery sweep."""
    if self._recovery_loop is None or self._recovery_loop.done():
      self._recovery_loop = asyncio.create_task(self.recovery.run_forever(self._settings.recovery_interval_seconds), name="course-recovery-sweep")

  async def shutdown(self) -> None:
    if self._recovery_loop is not None:
      self._recovery_loop.cancel()
      await asyncio.gather(self._recovery_loop, return_exceptions=True)
      self._recovery_loop = None
    await self.engine.shutdown()

  async def _load(self, job_id: str, *, user_id: str) -> JobRecord:
    job = await self._jobs_repo.get_job(job_id)
    if job is None or job.user_id != user_id:
      raise JobAccessError(_JOB_NOT_FOUND_MSG)
    return job


@lru_cache(maxsize=1)
def get_course_service() -> CourseGenerationService:
  """Build the process-wide service from settings."""
  settings = get_settings()
  provider = OpenAICompatibleService(model=settings.generation_model, api_key=settings.generation_api_key, base_url=settings.generation_url)
  return CourseGenerationService(jobs_repo=_get_jobs_repo(), tasks_repo=_get_tasks_repo(), generation_service=provider, settings=settings)
