from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base
from coursegen.utils.timestamps import now_iso

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Job(Base):
  __tablename__ = "course_generation_jobs"
  __table_args__ = (
    UniqueConstraint("user_id", "idempotency_key", name="ux_course_generation_jobs_user_idempotency"),
    Index("ix_course_generation_jobs_status_updated", "status", "updated_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  org_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  request_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False)
  progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  current_phase: Mapped[str | None] = mapped_column(String, nullable=True)
  error_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  is_dismissed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  recovery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[str] = mapped_column(String, nullable=False, default=now_iso)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, default=now_iso)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class Task(Base):
  __tablename__ = "course_generation_tasks"
  __table_args__ = (
    UniqueConstraint("job_id", "task_identifier", name="ux_course_generation_tasks_job_identifier"),
    Index("ix_course_generation_tasks_job_status", "job_id", "status"),
  )

  task_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("course_generation_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  task_identifier: Mapped[str] = mapped_column(String, nullable=False)
  task_type: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
  dependencies: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  current_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
  execution_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  lesson_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
  section_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  input_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_category: Mapped[str | None] = mapped_column(String, nullable=True)
  error_severity: Mapped[str | None] = mapped_column(String, nullable=True)
  is_recoverable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
  recovery_suggestions: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, default=now_iso)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, default=now_iso)
  queued_at: Mapped[str | None] = mapped_column(String, nullable=True)
  started_at: Mapped[str | None] = mapped_column(String, nullable=True)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
  last_retry_at: Mapped[str | None] = mapped_column(String, nullable=True)


class UserAction(Base):
  __tablename__ = "course_generation_user_actions"

  action_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("course_generation_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  actor_id: Mapped[str] = mapped_column(String, nullable=False)
  action_type: Mapped[str] = mapped_column(String, nullable=False)
  affected_tasks: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
  context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
  success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, default=now_iso)
