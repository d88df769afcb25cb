"""Postgres-backed repository for generation tasks using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursegen.core.database import get_session_factory
from coursegen.jobs.models import TaskRecord, TaskStatus
from coursegen.schema.jobs import Task
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.timestamps import now_iso

_MUTABLE_COLUMNS = frozenset(
  {
    "current_retry_count",
    "max_retries",
    "execution_priority",
    "title",
    "input_data",
    "result_json",
    "error_message",
    "error_category",
    "error_severity",
    "is_recoverable",
    "recovery_suggestions",
    "queued_at",
    "started_at",
    "completed_at",
    "last_retry_at",
  }
)


class PostgresTasksRepository(TasksRepository):
  """Persist tasks to Postgres; status changes are conditional single-statement updates."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def upsert_tasks(self, job_id: str, tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    candidates = list(tasks)
    async with self._session_factory() as session:
      existing = await self._identifiers_in_session(session=session, job_id=job_id)
      for record in candidates:
        if record.task_identifier in existing:
          continue
        session.add(self._record_to_model(record, job_id=job_id))
        existing.add(record.task_identifier)
      try:
        await session.commit()
      except IntegrityError:
        # A concurrent expansion inserted some identifiers first; insert the rest one by one.
        await session.rollback()
        await self._insert_missing_in_session(session=session, job_id=job_id, candidates=candidates)
      stmt = select(Task).where(Task.job_id == job_id).order_by(Task.execution_priority.asc(), Task.task_identifier.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def get_task_by_identifier(self, job_id: str, task_identifier: str) -> TaskRecord | None:
    async with self._session_factory() as session:
      stmt = select(Task).where(Task.job_id == job_id, Task.task_identifier == task_identifier).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_tasks(self, job_id: str, *, statuses: Iterable[TaskStatus] | None = None) -> list[TaskRecord]:
    async with self._session_factory() as session:
      stmt = select(Task).where(Task.job_id == job_id)
      if statuses is not None:
        stmt = stmt.where(Task.status.in_(tuple(statuses)))
      stmt = stmt.order_by(Task.execution_priority.asc(), Task.task_identifier.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def transition_task(self, task_id: str, *, from_statuses: Iterable[TaskStatus], status: TaskStatus, expected_version: int | None = None, **changes: Any) -> TaskRecord | None:
    unknown = set(changes) - _MUTABLE_COLUMNS
    if unknown:
      raise ValueError(f"Unsupported task fields: {sorted(unknown)}")

    filters: list[Any] = [Task.task_id == task_id, Task.status.in_(tuple(from_statuses))]
    if expected_version is not None:
      filters.append(Task.version == expected_version)

    values: dict[str, Any] = dict(changes)
    values["status"] = status
    values["version"] = Task.version + 1
    values["updated_at"] = now_iso()

    async with self._session_factory() as session:
      # RETURNING carries the version this transition wrote; a re-read could see a later one.
      stmt = update(Task).where(*filters).values(**values).returning(Task).execution_options(synchronize_session=False)
      row = (await session.execute(stmt)).scalar_one_or_none()
      record = self._model_to_record(row) if row is not None else None
      await session.commit()
      return record

  async def _identifiers_in_session(self, *, session: AsyncSession, job_id: str) -> set[str]:
    stmt = select(Task.task_identifier).where(Task.job_id == job_id)
    return {str(item) for item in (await session.execute(stmt)).scalars().all()}

  async def _insert_missing_in_session(self, *, session: AsyncSession, job_id: str, candidates: list[TaskRecord]) -> None:
    for record in candidates:
      existing = await self._identifiers_in_session(session=session, job_id=job_id)
      if record.task_identifier in existing:
        continue
      session.add(self._record_to_model(record, job_id=job_id))
      try:
        await session.commit()
      except IntegrityError:
        await session.rollback()

  def _record_to_model(self, record: TaskRecord, *, job_id: str) -> Task:
    return Task(
      task_id=record.task_id,
      job_id=job_id,
      task_identifier=record.task_identifier,
      task_type=record.task_type,
      status=record.status,
      dependencies=list(record.dependencies),
      version=record.version,
      current_retry_count=record.current_retry_count,
      max_retries=record.max_retries,
      execution_priority=record.execution_priority,
      lesson_index=record.lesson_index,
      section_index=record.section_index,
      title=record.title,
      input_data=dict(record.input_data),
      result_json=record.result_json,
      error_message=record.error_message,
      error_category=record.error_category,
      error_severity=record.error_severity,
      is_recoverable=record.is_recoverable,
      recovery_suggestions=record.recovery_suggestions,
      created_at=record.created_at,
      updated_at=record.updated_at,
      queued_at=record.queued_at,
      started_at=record.started_at,
      completed_at=record.completed_at,
      last_retry_at=record.last_retry_at,
    )

  def _model_to_record(self, row: Task) -> TaskRecord:
    return TaskRecord(
      task_id=row.task_id,
      job_id=row.job_id,
      task_identifier=row.task_identifier,
      task_type=row.task_type,  # type: ignore[arg-type]
      status=row.status,  # type: ignore[arg-type]
      dependencies=list(row.dependencies or []),
      version=int(row.version or 0),
      current_retry_count=int(row.current_retry_count or 0),
      max_retries=int(row.max_retries or 0),
      execution_priority=int(row.execution_priority or 0),
      lesson_index=row.lesson_index,
      section_index=row.section_index,
      title=row.title,
      input_data=dict(row.input_data or {}),
      result_json=row.result_json,
      error_message=row.error_message,
      error_category=row.error_category,
      error_severity=row.error_severity,  # type: ignore[arg-type]
      is_recoverable=row.is_recoverable,
      recovery_suggestions=list(row.recovery_suggestions) if row.recovery_suggestions is not None else None,
      created_at=row.created_at,
      updated_at=row.updated_at,
      queued_at=row.queued_at,
      started_at=row.started_at,
      completed_at=row.completed_at,
      last_retry_at=row.last_retry_at,
    )
