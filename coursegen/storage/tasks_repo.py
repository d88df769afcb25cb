"""Storage interface for generation tasks."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from coursegen.jobs.models import TaskRecord, TaskStatus


class TasksRepository(Protocol):
  """Repository contract for task persistence.

  All status changes go through `transition_task`, an atomic conditional update: the row
  changes only when its status is one of `from_statuses` (and its version matches
  `expected_version` when given). Every successful transition increments `version`, which
  callers use as a fencing token.
  """

  async def upsert_tasks(self, job_id: str, tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    """Insert tasks whose identifier is new for the job; existing rows are left untouched.

    Returns the full task set of the job after the upsert.
    """

  async def get_task_by_identifier(self, job_id: str, task_identifier: str) -> TaskRecord | None:
    """Fetch a task by its logical identifier within a job."""

  async def list_tasks(self, job_id: str, *, statuses: Iterable[TaskStatus] | None = None) -> list[TaskRecord]:
    """List tasks of a job ordered by priority then identifier."""

  async def transition_task(self, task_id: str, *, from_statuses: Iterable[TaskStatus], status: TaskStatus, expected_version: int | None = None, **changes: Any) -> TaskRecord | None:
    """Conditionally move a task to `status`, applying `changes` verbatim (None clears).

    Returns the updated record, or None when the precondition did not hold.
    """
