"""Storage interfaces for course generation jobs and user actions."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from coursegen.jobs.models import JobRecord, JobStatus, UserActionRecord


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(
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
    """Apply a partial update, only when the current status is in `expected_status`.

    Returns None when the job is unknown or the status precondition does not hold.
    Progress never moves backwards: the stored value is max(stored, given).
    """

  async def find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> JobRecord | None:
    """Return a job created by `user_id` with the given idempotency key, if present."""

  async def find_stalled(self, *, statuses: Iterable[JobStatus], updated_before: str, user_id: str | None = None) -> list[JobRecord]:
    """Return jobs in `statuses` whose updated_at is older than `updated_before`."""

  async def record_action(self, record: UserActionRecord) -> None:
    """Append one user action to the audit log."""

  async def list_actions(self, job_id: str) -> list[UserActionRecord]:
    """List recorded user actions for a job, oldest first."""
