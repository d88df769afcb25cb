"""Postgres-backed repository for course generation jobs using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursegen.core.database import get_session_factory
from coursegen.jobs.models import JobRecord, JobStatus, UserActionRecord
from coursegen.schema.jobs import Job, UserAction
from coursegen.storage.jobs_repo import JobsRepository
from coursegen.utils.timestamps import now_iso


class PostgresJobsRepository(JobsRepository):
  """Persist jobs and user actions to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      job = Job(
        job_id=record.job_id,
        user_id=record.user_id,
        org_id=record.org_id,
        request_json=record.request,
        status=record.status,
        progress_percentage=record.progress_percentage,
        current_phase=record.current_phase,
        error_summary=record.error_summary,
        result_json=record.result_json,
        idempotency_key=record.idempotency_key,
        is_dismissed=record.is_dismissed,
        recovery_attempts=record.recovery_attempts,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
      )
      session.add(job)
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(  # pylint: disable=too-many-arguments
    self,
    job_id: str,
    *,
    expected_status: Iterable[JobStatus] | None = None,
    status: JobStatus | None = None,
    progress_percentage: float | None = None,
    current_phase: str | None = None,
    error_summary: dict[str, Any] | None = None,
    result_json: dict[str, Any] | None = None,
    completed_at: str | None = None,
    is_dismissed: bool | None = None,
    recovery_attempts: int | None = None,
  ) -> JobRecord | None:
    values: dict[str, Any] = {"updated_at": now_iso()}
    if status is not None:
      values["status"] = status
    if progress_percentage is not None:
      # Progress is monotonic; the database keeps the larger value.
      values["progress_percentage"] = case((Job.progress_percentage < progress_percentage, progress_percentage), else_=Job.progress_percentage)
    if current_phase is not None:
      values["current_phase"] = current_phase
    if error_summary is not None:
      values["error_summary"] = error_summary
    if result_json is not None:
      values["result_json"] = result_json
    if completed_at is not None:
      values["completed_at"] = completed_at
    if is_dismissed is not None:
      values["is_dismissed"] = is_dismissed
    if recovery_attempts is not None:
      values["recovery_attempts"] = recovery_attempts

    filters: list[Any] = [Job.job_id == job_id]
    if expected_status is not None:
      filters.append(Job.status.in_(tuple(expected_status)))

    async with self._session_factory() as session:
      # RETURNING hands back exactly the row this statement wrote.
      stmt = update(Job).where(*filters).values(**values).returning(Job).execution_options(synchronize_session=False)
      row = (await session.execute(stmt)).scalar_one_or_none()
      record = self._model_to_record(row) if row is not None else None
      await session.commit()
      return record

  async def find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.user_id == user_id, Job.idempotency_key == idempotency_key).order_by(Job.created_at.asc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_stalled(self, *, statuses: Iterable[JobStatus], updated_before: str, user_id: str | None = None) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.status.in_(tuple(statuses)), Job.updated_at < updated_before)
      if user_id is not None:
        stmt = stmt.where(Job.user_id == user_id)
      stmt = stmt.order_by(Job.updated_at.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def record_action(self, record: UserActionRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        UserAction(
          action_id=record.action_id,
          job_id=record.job_id,
          actor_id=record.actor_id,
          action_type=record.action_type,
          affected_tasks=list(record.affected_tasks),
          context=dict(record.context),
          success=record.success,
          created_at=record.created_at,
        )
      )
      await session.commit()

  async def list_actions(self, job_id: str) -> list[UserActionRecord]:
    async with self._session_factory() as session:
      stmt = select(UserAction).where(UserAction.job_id == job_id).order_by(UserAction.created_at.asc(), UserAction.action_id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [
        UserActionRecord(
          action_id=row.action_id,
          job_id=row.job_id,
          actor_id=row.actor_id,
          action_type=row.action_type,  # type: ignore[arg-type]
          created_at=row.created_at,
          affected_tasks=list(row.affected_tasks or []),
          context=dict(row.context or {}),
          success=bool(row.success),
        )
        for row in rows
      ]

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      user_id=row.user_id,
      org_id=row.org_id,
      request=row.request_json or {},
      status=row.status,  # type: ignore[arg-type]
      progress_percentage=float(row.progress_percentage or 0.0),
      current_phase=row.current_phase,
      error_summary=row.error_summary,
      result_json=row.result_json,
      idempotency_key=row.idempotency_key,
      is_dismissed=bool(row.is_dismissed),
      recovery_attempts=int(row.recovery_attempts or 0),
      created_at=row.created_at,
      updated_at=row.updated_at,
      completed_at=row.completed_at,
    )
