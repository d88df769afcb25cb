"""Shared fixtures: in-memory stores, a scripted generation service and a wired service."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from coursegen.config import Settings, get_settings
from coursegen.jobs.models import JobRecord, TaskRecord, UserActionRecord
from coursegen.services.jobs import CourseGenerationService
from coursegen.utils.timestamps import now_iso


@pytest.fixture
def anyio_backend():
  return "asyncio"


class InMemoryJobsRepo:
  """In-memory jobs repository with the same conditional-update semantics as Postgres."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._actions: list[UserActionRecord] = []
    self.progress_history: dict[str, list[float]] = {}

  async def create_job(self, record: JobRecord) -> None:
    self._jobs[record.job_id] = copy.deepcopy(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return copy.deepcopy(record) if record is not None else None

  async def update_job(self, job_id: str, *, expected_status: Iterable[str] | None = None, progress_percentage: float | None = None, **kwargs: Any) -> JobRecord | None:
    record = self._jobs.get(job_id)

    # Bail out when the job id is unknown or the status precondition fails.
    if record is None:
      return None
    if expected_status is not None and record.status not in set(expected_status):
      return None

    changes = {key: value for key, value in kwargs.items() if value is not None}
    if progress_percentage is not None:
      changes["progress_percentage"] = max(record.progress_percentage, progress_percentage)
    updated = replace(record, updated_at=now_iso(), **changes)
    self._jobs[job_id] = updated
    self.progress_history.setdefault(job_id, []).append(updated.progress_percentage)
    return copy.deepcopy(updated)

  async def find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> JobRecord | None:
    for record in self._jobs.values():
      if record.user_id == user_id and record.idempotency_key == idempotency_key:
        return copy.deepcopy(record)
    return None

  async def find_stalled(self, *, statuses: Iterable[str], updated_before: str, user_id: str | None = None) -> list[JobRecord]:
    wanted = set(statuses)
    return [copy.deepcopy(record) for record in self._jobs.values() if record.status in wanted and record.updated_at < updated_before and (user_id is None or record.user_id == user_id)]

  async def record_action(self, record: UserActionRecord) -> None:
    self._actions.append(copy.deepcopy(record))

  async def list_actions(self, job_id: str) -> list[UserActionRecord]:
    return [copy.deepcopy(record) for record in self._actions if record.job_id == job_id]

  def force(self, job_id: str, **changes: Any) -> None:
    """Overwrite stored fields directly, bypassing preconditions (crash simulation)."""
    self._jobs[job_id] = replace(self._jobs[job_id], **changes)


class InMemoryTasksRepo:
  """In-memory task repository: every status change is a conditional, versioned update."""

  def __init__(self) -> None:
    self._tasks: dict[str, TaskRecord] = {}
    self.transitions: list[tuple[str, str, str]] = []

  async def upsert_tasks(self, job_id: str, tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    known = {task.task_identifier for task in self._tasks.values() if task.job_id == job_id}
    for task in tasks:
      if task.task_identifier in known:
        continue
      self._tasks[task.task_id] = copy.deepcopy(task)
      known.add(task.task_identifier)
    return await self.list_tasks(job_id)

  async def get_task_by_identifier(self, job_id: str, task_identifier: str) -> TaskRecord | None:
    for task in self._tasks.values():
      if task.job_id == job_id and task.task_identifier == task_identifier:
        return copy.deepcopy(task)
    return None

  async def list_tasks(self, job_id: str, *, statuses: Iterable[str] | None = None) -> list[TaskRecord]:
    wanted = set(statuses) if statuses is not None else None
    found = [task for task in self._tasks.values() if task.job_id == job_id and (wanted is None or task.status in wanted)]
    found.sort(key=lambda task: (task.execution_priority, task.task_identifier))
    return [copy.deepcopy(task) for task in found]

  async def transition_task(self, task_id: str, *, from_statuses: Iterable[str], status: str, expected_version: int | None = None, **changes: Any) -> TaskRecord | None:
    task = self._tasks.get(task_id)
    if task is None or task.status not in set(from_statuses):
      return None
    if expected_version is not None and task.version != expected_version:
      return None
    updated = replace(task, status=status, version=task.version + 1, updated_at=now_iso(), **changes)
    self._tasks[task_id] = updated
    self.transitions.append((task.task_identifier, task.status, status))
    return copy.deepcopy(updated)

  def force(self, job_id: str, task_identifier: str, **changes: Any) -> None:
    """Overwrite stored fields directly, bypassing preconditions (crash simulation)."""
    for task_id, task in self._tasks.items():
      if task.job_id == job_id and task.task_identifier == task_identifier:
        self._tasks[task_id] = replace(task, **changes)
        return
    raise KeyError(task_identifier)


class ScriptedGenerationService:
  """Fake generation service. Prompts are matched by marker substrings to script failures and gates."""

  def __init__(self, *, lessons: int = 4, sections: int = 1) -> None:
    self.lessons = lessons
    self.sections = sections
    self.calls: list[tuple[str, str]] = []
    self.active = 0
    self.max_active = 0
    self._failures: dict[str, list[Exception]] = {}
    self._gates: dict[str, asyncio.Event] = {}
    self.outline_override: dict[str, Any] | None = None

  def fail(self, marker: str, *errors: Exception) -> None:
    self._failures.setdefault(marker, []).extend(errors)

  def gate(self, marker: str) -> asyncio.Event:
    event = asyncio.Event()
    self._gates[marker] = event
    return event

  def calls_for(self, task_type: str) -> list[str]:
    return [prompt for kind, prompt in self.calls if kind == task_type]

  def outline(self) -> dict[str, Any]:
    if self.outline_override is not None:
      return self.outline_override
    return {
      "title": "Scripted Course",
      "description": "Generated by the scripted service.",
      "lessons": [{"title": f"Lesson {i}", "summary": f"Summary {i}", "sections": [{"title": f"Lesson {i} Section {j}", "summary": ""} for j in range(1, self.sections + 1)]} for i in range(1, self.lessons + 1)],
    }

  async def generate(self, *, task_type: str, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    self.calls.append((task_type, prompt))
    self.active += 1
    self.max_active = max(self.max_active, self.active)
    try:
      for marker, gate in list(self._gates.items()):
        if marker in prompt:
          await gate.wait()
      for marker, errors in self._failures.items():
        if marker in prompt and errors:
          raise errors.pop(0)
      # Yield so concurrently dispatched calls overlap.
      await asyncio.sleep(0)
      if task_type == "outline":
        return self.outline()
      if task_type == "lesson_content":
        return {"title": "section", "content": "Generated section body.", "key_points": ["one", "two"]}
      if task_type == "assessment":
        return {"questions": [{"prompt": "What did you learn?", "answer": "Everything", "options": ["Everything", "Nothing"]}]}
      return {"items": [{"kind": "diagram", "description": "Overview diagram"}]}
    finally:
      self.active -= 1


class MutableClock:
  """Injectable clock for stall detection tests."""

  def __init__(self) -> None:
    self.now = datetime.now(UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, *, minutes: float) -> None:
    self.now = self.now + timedelta(minutes=minutes)


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings.__wrapped__(), generation_timeout_seconds=5.0, global_concurrency=10, per_job_concurrency=3, task_max_retries=3, retry_base_delay_seconds=0.0, retry_max_delay_seconds=0.0, stall_threshold_minutes=30, recovery_auto_resume=False, recovery_max_attempts=3)


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def tasks_repo() -> InMemoryTasksRepo:
  return InMemoryTasksRepo()


@pytest.fixture
def generation() -> ScriptedGenerationService:
  return ScriptedGenerationService()


@pytest.fixture
def clock() -> MutableClock:
  return MutableClock()


@pytest.fixture
def service(jobs_repo, tasks_repo, generation, settings, clock) -> CourseGenerationService:
  return CourseGenerationService(jobs_repo=jobs_repo, tasks_repo=tasks_repo, generation_service=generation, settings=settings, clock=clock)


@pytest.fixture
def course_request() -> Callable[..., dict[str, Any]]:
  def _build(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"title": "Intro to Testing", "depth": "detailed", "mode": "general", "lesson_count": 4, "include_assessments": False, "include_media": False}
    payload.update(overrides)
    return payload

  return _build


async def wait_until(predicate: Callable[[], Any], *, timeout: float = 3.0) -> None:
  """Poll an async or sync predicate until it is truthy."""
  loop = asyncio.get_running_loop()
  deadline = loop.time() + timeout
  while True:
    result = predicate()
    if asyncio.iscoroutine(result):
      result = await result
    if result:
      return
    if loop.time() > deadline:
      raise AssertionError("Condition not reached before timeout")
    await asyncio.sleep(0.01)


@pytest.fixture
def until():
  return wait_until
