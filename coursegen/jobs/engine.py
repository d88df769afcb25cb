"""Execution engine: drains a job's ready tasks under a per-job concurrency cap."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from coursegen.ai.client import GenerationClient
from coursegen.core.logging import task_log_context
from coursegen.jobs.dispatch import TaskContext, TaskHandlerRegistry
from coursegen.jobs.errors import ClassifiedError, PermanentError, StaleOwnershipError, StructuralError, TransientError, classify_error
from coursegen.jobs.events import ProgressChannel, ProgressEvent
from coursegen.jobs.graph import FINALIZE_IDENTIFIER, OUTLINE_IDENTIFIER
from coursegen.jobs.models import CLEARED_TASK_ERROR, DEPENDENCY_SATISFIED_STATUSES, IN_PROGRESS_TASK_STATUSES, JobRecord, TaskRecord
from coursegen.jobs.progress import summarize
from coursegen.storage.jobs_repo import JobsRepository
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.timestamps import format_iso, now_iso

logger = logging.getLogger(__name__)

CompletionOutcome = Literal["completed", "failed", "awaiting_action", "waiting"]


def _utcnow() -> datetime:
  return datetime.now(UTC)


@dataclass
class LiveJobState:
  """Process-local view of a running job. A cache; the store is authoritative."""

  job_id: str
  last_activity: datetime
  running: set[str] = field(default_factory=set)
  rerun: bool = False
  published_progress: float = 0.0


def select_ready(tasks: list[TaskRecord], *, limit: int) -> list[TaskRecord]:
  """Pending tasks whose dependencies are all completed or skipped, best priority first."""
  if limit <= 0:
    return []
  statuses = {task.task_identifier: task.status for task in tasks}
  ready = [task for task in tasks if task.status == "pending" and all(statuses.get(dependency) in DEPENDENCY_SATISFIED_STATUSES for dependency in task.dependencies)]
  ready.sort(key=lambda task: (task.execution_priority, task.task_identifier))
  return ready[:limit]


def completion_outcome(tasks: list[TaskRecord]) -> CompletionOutcome:
  """Apply the completion policy to an idle job's task set.

  completed: every task is completed or skipped (and the graph reached finalize).
  failed: nothing is in progress and the outline was skipped, or the outline or finalize
  task failed unrecoverably.
  awaiting_action: failed tasks block the rest; a retry, skip or regenerate resolves it.
  """
  identifiers = {task.task_identifier for task in tasks}
  if tasks and FINALIZE_IDENTIFIER in identifiers and all(task.is_settled for task in tasks):
    return "completed"
  if any(task.status in IN_PROGRESS_TASK_STATUSES for task in tasks):
    return "waiting"
  if any(task.task_identifier == OUTLINE_IDENTIFIER and task.status == "skipped" for task in tasks):
    return "failed"
  failed = [task for task in tasks if task.status == "failed"]
  if any(task.task_identifier in {OUTLINE_IDENTIFIER, FINALIZE_IDENTIFIER} and task.is_recoverable is False for task in failed):
    return "failed"
  if failed or any(task.status == "pending" for task in tasks):
    return "awaiting_action"
  return "waiting"


class ExecutionEngine:
  """Single engine for every task type; handlers are resolved through the registry."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    tasks_repo: TasksRepository,
    client: GenerationClient,
    registry: TaskHandlerRegistry,
    channel: ProgressChannel,
    per_job_concurrency: int = 3,
    clock: Callable[[], datetime] = _utcnow,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._tasks_repo = tasks_repo
    self._client = client
    self._registry = registry
    self._channel = channel
    self._per_job_concurrency = max(per_job_concurrency, 1)
    self._clock = clock
    self._active: dict[str, asyncio.Task[None]] = {}
    self._live: dict[str, LiveJobState] = {}

  @property
  def per_job_concurrency(self) -> int:
    return self._per_job_concurrency

  def live_state(self, job_id: str) -> LiveJobState | None:
    return self._live.get(job_id)

  def is_active(self, job_id: str) -> bool:
    runner = self._active.get(job_id)
    return runner is not None and not runner.done()

  def start(self, job_id: str) -> asyncio.Task[None]:
    """Schedule execution for a job, or request another pass from the live runner."""
    runner = self._active.get(job_id)
    if runner is not None and not runner.done():
      state = self._live.get(job_id)
      if state is not None:
        state.rerun = True
      return runner

    runner = asyncio.create_task(self._run_guarded(job_id), name=f"course-job-{job_id}")
    self._active[job_id] = runner
    runner.add_done_callback(lambda finished: self._forget(job_id, finished))
    return runner

  async def wait(self, job_id: str) -> None:
    """Wait until no runner is active for the job (including requested reruns)."""
    while True:
      runner = self._active.get(job_id)
      if runner is None or runner.done():
        return
      await asyncio.shield(runner)

  async def shutdown(self) -> None:
    runners = [runner for runner in self._active.values() if not runner.done()]
    for runner in runners:
      runner.cancel()
    await asyncio.gather(*runners, return_exceptions=True)

  def _forget(self, job_id: str, finished: asyncio.Task[None]) -> None:
    if self._active.get(job_id) is finished:
      self._active.pop(job_id, None)

  async def _run_guarded(self, job_id: str) -> None:
    state = self._live.setdefault(job_id, LiveJobState(job_id=job_id, last_activity=self._clock()))
    try:
      with task_log_context(job_id):
        while True:
          state.rerun = False
          await self.run(job_id)
          if not state.rerun:
            break
          logger.debug("Rerunning execution loop job=%s", job_id)
    except asyncio.CancelledError:
      logger.info("Execution loop cancelled job=%s", job_id)
      raise
    except Exception:  # noqa: BLE001
      # The recovery sweep resumes the job from persisted state.
      logger.error("Execution loop crashed job=%s", job_id, exc_info=True)
    finally:
      self._live.pop(job_id, None)
      self._client.release_job(job_id)

  async def run(self, job_id: str) -> None:
    """Drive one job until it is idle or no longer processing."""
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      logger.warning("Execution requested for unknown job=%s", job_id)
      return
    if job.status == "queued":
      started = await self._jobs_repo.update_job(job_id, expected_status=("queued",), status="processing", current_phase="outline")
      if started is not None:
        self.publish(started, "job_started", live_message="Course generation started")
      job = started or await self._jobs_repo.get_job(job_id)
    if job is None or job.status != "processing":
      return

    state = self._live.setdefault(job_id, LiveJobState(job_id=job_id, last_activity=self._clock()))
    in_flight: dict[asyncio.Task[None], TaskRecord] = {}
    try:
      while True:
        job = await self._jobs_repo.get_job(job_id)
        if job is None or job.status != "processing":
          break

        tasks = await self._tasks_repo.list_tasks(job_id)
        by_identifier = {task.task_identifier: task for task in tasks}
        for task in select_ready(tasks, limit=self._per_job_concurrency - len(in_flight)):
          try:
            claimed = await self._claim(task)
          except StaleOwnershipError:
            logger.debug("Task already claimed job=%s task=%s", job_id, task.task_identifier)
            continue
          dependencies = {identifier: by_identifier[identifier] for identifier in task.dependencies if identifier in by_identifier}
          worker = asyncio.create_task(self._execute(job, claimed, dependencies), name=f"course-task-{claimed.task_identifier}")
          in_flight[worker] = claimed
          state.running.add(claimed.task_id)
          state.last_activity = self._clock()

        if not in_flight:
          await self._evaluate_completion(job_id)
          break

        done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
        for worker in done:
          finished = in_flight.pop(worker)
          state.running.discard(finished.task_id)
          state.last_activity = self._clock()
          # Surface infrastructure failures from the worker.
          worker.result()
    finally:
      if in_flight:
        pending = list(in_flight)
        if job is not None and job.status != "processing":
          # Cooperative cancellation: calls finish and their results are fenced out.
          await asyncio.gather(*pending, return_exceptions=True)
        else:
          for worker in pending:
            worker.cancel()
          await asyncio.gather(*pending, return_exceptions=True)
        state.running.clear()

  async def _claim(self, task: TaskRecord) -> TaskRecord:
    """Move a task pending -> queued -> running; raise StaleOwnershipError on a lost race."""
    queued = await self._tasks_repo.transition_task(task.task_id, from_statuses=("pending",), status="queued", expected_version=task.version, queued_at=now_iso())
    if queued is None:
      raise StaleOwnershipError(f"Task {task.task_identifier} is no longer pending")
    running = await self._tasks_repo.transition_task(queued.task_id, from_statuses=("queued",), status="running", expected_version=queued.version, started_at=now_iso())
    if running is None:
      raise StaleOwnershipError(f"Task {task.task_identifier} left the queue before it started")
    return running

  async def _execute(self, job: JobRecord, task: TaskRecord, dependencies: dict[str, TaskRecord]) -> None:
    with task_log_context(job.job_id, task.task_identifier):
      await self._execute_in_context(job, task, dependencies)

  async def _execute_in_context(self, job: JobRecord, task: TaskRecord, dependencies: dict[str, TaskRecord]) -> None:
    handler = self._registry.resolve(task.task_type)
    context = TaskContext(job=job, task=task, dependencies=dependencies)
    self.publish(job, "task_started", task=task, live_message=f"Generating {task.title or task.task_identifier}")
    try:
      result = await handler.execute(context)
    except TransientError as exc:
      await self._retry_or_fail(job, task, exc)
      return
    except (PermanentError, StructuralError) as exc:
      await self._fail(job, task, exc, classify_error(exc))
      return
    except Exception as exc:  # noqa: BLE001
      classified = classify_error(exc)
      logger.error("Task handler failed job=%s task=%s category=%s", job.job_id, task.task_identifier, classified.category, exc_info=True)
      if classified.is_recoverable:
        await self._retry_or_fail(job, task, exc)
      else:
        await self._fail(job, task, exc, classified)
      return

    completed = await self._tasks_repo.transition_task(task.task_id, from_statuses=("running",), status="completed", expected_version=task.version, result_json=result, completed_at=now_iso(), **CLEARED_TASK_ERROR)
    if completed is None:
      logger.info("Discarding stale result job=%s task=%s", job.job_id, task.task_identifier)
      return
    await handler.on_completed(context, result)
    await self.refresh_progress(job, "task_completed", completed, live_message=f"Completed {completed.title or completed.task_identifier}")

  async def _retry_or_fail(self, job: JobRecord, task: TaskRecord, exc: Exception) -> None:
    attempts = task.current_retry_count + 1
    if attempts >= task.max_retries:
      classified = classify_error(exc)
      if not classified.is_recoverable:
        classified = ClassifiedError(category=classified.category, severity=classified.severity, is_recoverable=True, user_message=classified.user_message, recovery_suggestions=classified.recovery_suggestions)
      await self._fail(job, task, exc, classified, retry_count=attempts)
      return

    delay = self._client.backoff_delay(attempts)
    logger.warning("Transient failure job=%s task=%s attempt=%s/%s; retrying in %.1fs: %s", job.job_id, task.task_identifier, attempts, task.max_retries, delay, exc)
    await asyncio.sleep(delay)
    retried = await self._tasks_repo.transition_task(
      task.task_id,
      from_statuses=("running",),
      status="pending",
      expected_version=task.version,
      current_retry_count=attempts,
      last_retry_at=now_iso(),
      error_message=str(exc),
      error_category=getattr(exc, "category", None),
    )
    if retried is None:
      logger.info("Discarding retry of fenced task job=%s task=%s", job.job_id, task.task_identifier)
      return
    self.publish(job, "task_retry", task=retried, live_message=f"Retrying {retried.title or retried.task_identifier} (attempt {attempts + 1} of {retried.max_retries})")

  async def _fail(self, job: JobRecord, task: TaskRecord, exc: Exception, classified: ClassifiedError, *, retry_count: int | None = None) -> None:
    changes: dict[str, Any] = {
      "error_message": str(exc) or classified.user_message,
      "error_category": classified.category,
      "error_severity": classified.severity,
      "is_recoverable": classified.is_recoverable,
      "recovery_suggestions": classified.recovery_suggestions,
    }
    if retry_count is not None:
      changes["current_retry_count"] = retry_count
    failed = await self._tasks_repo.transition_task(task.task_id, from_statuses=("running",), status="failed", expected_version=task.version, **changes)
    if failed is None:
      logger.info("Discarding failure of fenced task job=%s task=%s", job.job_id, task.task_identifier)
      return
    logger.warning("Task failed job=%s task=%s category=%s recoverable=%s", job.job_id, task.task_identifier, classified.category, classified.is_recoverable)
    await self.refresh_progress(job, "task_failed", failed, live_message=classified.user_message)

  async def refresh_progress(self, job: JobRecord, event_type: str, task: TaskRecord, *, live_message: str) -> None:
    """Recompute and persist job progress, then publish a task event."""
    tasks = await self._tasks_repo.list_tasks(job.job_id)
    snapshot = summarize(tasks, concurrency=self._per_job_concurrency)
    updated = await self._jobs_repo.update_job(job.job_id, expected_status=("processing",), progress_percentage=snapshot.progress, current_phase=snapshot.phase)
    progress = self._observed_progress(job.job_id, updated.progress_percentage if updated is not None else snapshot.progress)
    self._channel.publish(
      ProgressEvent(
        job_id=job.job_id,
        event_type=event_type,
        overall_progress=progress,
        current_phase=snapshot.phase,
        live_message=live_message,
        estimated_time_remaining=snapshot.estimated_time_remaining,
        task_id=task.task_id,
        task_identifier=task.task_identifier,
        status=task.status,
        attempt=task.current_retry_count,
        timestamp=now_iso(),
      )
    )

  async def _evaluate_completion(self, job_id: str) -> None:
    tasks = await self._tasks_repo.list_tasks(job_id)
    outcome = completion_outcome(tasks)
    timestamp = format_iso(self._clock())

    if outcome == "completed":
      finalize = next((task for task in tasks if task.task_identifier == FINALIZE_IDENTIFIER), None)
      result = finalize.result_json if finalize is not None and finalize.result_json is not None else {"missing_tasks": [task.task_identifier for task in tasks if task.status == "skipped"]}
      job = await self._jobs_repo.update_job(job_id, expected_status=("processing",), status="completed", progress_percentage=100.0, current_phase="complete", result_json=result, completed_at=timestamp)
      if job is not None:
        logger.info("Job completed job=%s tasks=%s", job_id, len(tasks))
        self.publish(job, "job_completed", live_message="Course generation completed", estimated_time_remaining=0)
      return

    if outcome == "failed":
      failed = [task for task in tasks if task.status == "failed"]
      outline_skipped = any(task.task_identifier == OUTLINE_IDENTIFIER and task.status == "skipped" for task in tasks)
      summary = {
        "message": "The outline was skipped, so no course can be assembled." if outline_skipped else "Course generation cannot continue without a new request.",
        "failed_tasks": [{"task_identifier": task.task_identifier, "error_category": task.error_category, "error_message": task.error_message} for task in failed],
      }
      job = await self._jobs_repo.update_job(job_id, expected_status=("processing",), status="failed", error_summary=summary, completed_at=timestamp)
      if job is not None:
        logger.warning("Job failed job=%s failed_tasks=%s", job_id, [task.task_identifier for task in failed])
        self.publish(job, "job_failed", live_message=summary["message"])
      return

    if outcome == "awaiting_action":
      job = await self._jobs_repo.get_job(job_id)
      if job is not None:
        blocked = [task.task_identifier for task in tasks if task.status == "failed"]
        logger.info("Job awaiting user action job=%s failed_tasks=%s", job_id, blocked)
        self.publish(job, "awaiting_action", live_message=f"{len(blocked)} task(s) need attention: retry, skip or regenerate them to continue")

  def _observed_progress(self, job_id: str, progress: float) -> float:
    # Workers publish with job snapshots taken before their dispatch; never report less than already sent.
    state = self._live.get(job_id)
    if state is None:
      return progress
    state.published_progress = max(state.published_progress, progress)
    return state.published_progress

  def publish(self, job: JobRecord, event_type: str, *, task: TaskRecord | None = None, live_message: str | None = None, estimated_time_remaining: int | None = None) -> None:
    """Publish an event carrying the stored job progress."""
    self._channel.publish(
      ProgressEvent(
        job_id=job.job_id,
        event_type=event_type,
        overall_progress=self._observed_progress(job.job_id, job.progress_percentage),
        current_phase=job.current_phase,
        live_message=live_message,
        estimated_time_remaining=estimated_time_remaining,
        task_id=task.task_id if task is not None else None,
        task_identifier=task.task_identifier if task is not None else None,
        status=task.status if task is not None else job.status,
        attempt=task.current_retry_count if task is not None else None,
        timestamp=now_iso(),
      )
    )
