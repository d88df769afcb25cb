"""Recovery manager: stall detection, recover/resume and single-task regeneration."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from coursegen.jobs.engine import ExecutionEngine
from coursegen.jobs.errors import JobAccessError, StateConflictError
from coursegen.jobs.graph import TaskGraphBuilder
from coursegen.jobs.models import ACTIVE_JOB_STATUSES, CLEARED_TASK_ERROR, IN_PROGRESS_TASK_STATUSES, JobRecord
from coursegen.storage.jobs_repo import JobsRepository
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.timestamps import format_iso, iso_before, now_iso, parse_iso

logger = logging.getLogger(__name__)

STALLED_TASK_CATEGORY = "task_stalled"


def _utcnow() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class StalledJob:
  """A job whose last persisted update is older than the stall threshold."""

  job_id: str
  user_id: str
  status: str
  updated_at: str
  progress_percentage: float
  current_phase: str | None
  stalled_minutes: int
  in_flight_tasks: int
  classification: str
  recovery_attempts: int = 0


@dataclass(frozen=True)
class HealthReport:
  checked_at: str
  threshold_minutes: int
  stuck_jobs: list[StalledJob] = field(default_factory=list)
  healthy_jobs: list[StalledJob] = field(default_factory=list)


class RecoveryManager:
  """The only watchdog over the execution engine."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    tasks_repo: TasksRepository,
    engine: ExecutionEngine,
    graph_builder: TaskGraphBuilder,
    stall_threshold_minutes: int = 30,
    auto_resume: bool = True,
    max_recovery_attempts: int = 3,
    clock: Callable[[], datetime] = _utcnow,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._tasks_repo = tasks_repo
    self._engine = engine
    self._graph_builder = graph_builder
    self._stall_threshold_minutes = stall_threshold_minutes
    self._auto_resume = auto_resume
    self._max_recovery_attempts = max_recovery_attempts
    self._clock = clock

  async def health_check(self, *, user_id: str | None = None) -> HealthReport:
    """Split stalled jobs into stuck (no live context) and healthy but slow."""
    now = self._clock()
    cutoff = iso_before(now, minutes=self._stall_threshold_minutes)
    threshold = timedelta(minutes=self._stall_threshold_minutes)
    stalled = await self._jobs_repo.find_stalled(statuses=("processing", "queued"), updated_before=cutoff, user_id=user_id)

    report = HealthReport(checked_at=format_iso(now), threshold_minutes=self._stall_threshold_minutes)
    for job in stalled:
      state = self._engine.live_state(job.job_id)
      in_flight = len(state.running) if state is not None else 0
      progressing = state is not None and self._engine.is_active(job.job_id) and (in_flight > 0 or now - state.last_activity < threshold)
      updated = parse_iso(job.updated_at)
      stalled_minutes = int((now - updated).total_seconds() // 60) if updated is not None else self._stall_threshold_minutes
      entry = StalledJob(
        job_id=job.job_id,
        user_id=job.user_id,
        status=job.status,
        updated_at=job.updated_at,
        progress_percentage=job.progress_percentage,
        current_phase=job.current_phase,
        stalled_minutes=stalled_minutes,
        in_flight_tasks=in_flight,
        classification="healthy" if progressing else "stuck",
        recovery_attempts=job.recovery_attempts,
      )
      (report.healthy_jobs if progressing else report.stuck_jobs).append(entry)

    if report.stuck_jobs:
      logger.warning("Health check found %s stuck job(s): %s", len(report.stuck_jobs), [job.job_id for job in report.stuck_jobs])
    return report

  async def recover(self, job_id: str, *, user_id: str | None = None) -> JobRecord:
    """Mark a stuck job failed; its queued and running tasks fail as stalled."""
    job = await self._load(job_id, user_id=user_id)
    if job.status not in ACTIVE_JOB_STATUSES:
      raise StateConflictError(f"Job {job_id} is {job.status}; only queued or processing jobs can be recovered")
    if self._engine.is_active(job_id):
      raise StateConflictError(f"Job {job_id} is still executing in this process")

    message = f"Job stalled for more than {self._stall_threshold_minutes} minutes and was stopped by recovery."
    for task in await self._tasks_repo.list_tasks(job_id, statuses=IN_PROGRESS_TASK_STATUSES):
      await self._tasks_repo.transition_task(
        task.task_id,
        from_statuses=IN_PROGRESS_TASK_STATUSES,
        status="failed",
        error_message=message,
        error_category=STALLED_TASK_CATEGORY,
        error_severity="high",
        is_recoverable=True,
        recovery_suggestions=["Submit a new request or regenerate the task"],
      )

    failed = await self._jobs_repo.update_job(job_id, expected_status=ACTIVE_JOB_STATUSES, status="failed", error_summary={"message": message, "recovered_at": format_iso(self._clock())}, completed_at=format_iso(self._clock()))
    if failed is None:
      raise StateConflictError(f"Job {job_id} changed state during recovery")
    logger.warning("Recovered stuck job job=%s", job_id)
    self._engine.publish(failed, "job_failed", live_message=message)
    return failed

  async def resume(self, job_id: str, *, user_id: str | None = None) -> JobRecord:
    """Reset untrustworthy in-progress tasks to pending and restart execution."""
    job = await self._load(job_id, user_id=user_id)
    if job.status not in ACTIVE_JOB_STATUSES:
      raise StateConflictError(f"Job {job_id} is {job.status}; only queued or processing jobs can be resumed")
    if self._engine.is_active(job_id):
      raise StateConflictError(f"Job {job_id} is still executing in this process")

    # Counting the attempt also refreshes updated_at, so the next sweep measures a fresh stall.
    counted = await self._jobs_repo.update_job(job_id, expected_status=ACTIVE_JOB_STATUSES, recovery_attempts=job.recovery_attempts + 1)
    if counted is None:
      raise StateConflictError(f"Job {job_id} changed state before it could be resumed")
    job = counted

    reset = 0
    for task in await self._tasks_repo.list_tasks(job_id, statuses=IN_PROGRESS_TASK_STATUSES):
      if await self._tasks_repo.transition_task(task.task_id, from_statuses=IN_PROGRESS_TASK_STATUSES, status="pending", queued_at=None, started_at=None) is not None:
        reset += 1
    await self._graph_builder.rebuild(job)
    logger.info("Resuming job=%s reset_tasks=%s attempt=%s", job_id, reset, job.recovery_attempts)
    self._engine.start(job_id)
    return job

  async def regenerate_task(self, job_id: str, task_identifier: str, *, user_id: str | None = None) -> bool:
    """Reset one failed task of a non-terminal job to pending."""
    job = await self._load(job_id, user_id=user_id)
    if job.is_terminal:
      return False
    task = await self._tasks_repo.get_task_by_identifier(job_id, task_identifier)
    if task is None or task.status != "failed":
      return False

    reset = await self._tasks_repo.transition_task(task.task_id, from_statuses=("failed",), status="pending", expected_version=task.version, current_retry_count=0, completed_at=None, last_retry_at=now_iso(), **CLEARED_TASK_ERROR)
    if reset is None:
      return False
    logger.info("Regenerating task job=%s task=%s", job_id, task_identifier)
    self._engine.publish(job, "task_regenerated", task=reset, live_message=f"Regenerating {reset.title or reset.task_identifier}")
    if job.status in ACTIVE_JOB_STATUSES:
      self._engine.start(job_id)
    return True

  async def sweep(self) -> HealthReport:
    """Run one health check; resume stuck jobs when auto-resume is enabled.

    A job is auto-resumed at most `max_recovery_attempts` times; after that it stays
    in the stuck list for manual intervention.
    """
    report = await self.health_check()
    if not self._auto_resume:
      return report
    for stuck in report.stuck_jobs:
      if stuck.recovery_attempts >= self._max_recovery_attempts:
        logger.warning("Not auto-resuming job=%s: %s recovery attempts used; manual intervention required", stuck.job_id, stuck.recovery_attempts)
        continue
      try:
        await self.resume(stuck.job_id)
      except (StateConflictError, JobAccessError) as exc:
        logger.info("Skipping auto-resume job=%s: %s", stuck.job_id, exc)
    return report

  async def run_forever(self, interval_seconds: float) -> None:
    """Periodic sweep loop started by the application lifespan."""
    while True:
      try:
        await self.sweep()
      except Exception:  # noqa: BLE001
        logger.error("Recovery sweep failed", exc_info=True)
      await asyncio.sleep(interval_seconds)

  async def _load(self, job_id: str, *, user_id: str | None) -> JobRecord:
    job = await self._jobs_repo.get_job(job_id)
    if job is None or (user_id is not None and job.user_id != user_id):
      raise JobAccessError(f"Job {job_id} not found")
    return job
