"""Task graph construction: outline task, outline expansion and resume rebuild."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from coursegen.jobs.errors import StructuralError
from coursegen.jobs.models import JobRecord, TaskRecord, TaskType
from coursegen.schema.course import CourseOutline
from coursegen.storage.tasks_repo import TasksRepository
from coursegen.utils.ids import generate_task_id
from coursegen.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

OUTLINE_IDENTIFIER = "outline"
FINALIZE_IDENTIFIER = "finalize"

# Lower values are dispatched first when several tasks are ready.
_PRIORITY_BASE: dict[str, int] = {"outline": 0, "lesson_content": 1000, "assessment": 5000, "media": 6000, "finalize": 9000}


def content_identifier(lesson_index: int, section_index: int) -> str:
  return f"lesson-{lesson_index}-section-{section_index}"


def assessment_identifier(lesson_index: int) -> str:
  return f"lesson-{lesson_index}-assessment"


def media_identifier(lesson_index: int) -> str:
  return f"lesson-{lesson_index}-media"


def parse_outline(payload: Any) -> CourseOutline:
  """Validate an outline payload, raising StructuralError when it is malformed."""
  if isinstance(payload, CourseOutline):
    return payload
  try:
    return CourseOutline.model_validate(payload)
  except ValidationError as exc:
    raise StructuralError(f"Malformed course outline: {exc.error_count()} validation error(s): {exc.errors()[0]['msg']}") from exc


def _new_task(job_id: str, identifier: str, task_type: TaskType, *, dependencies: list[str], max_retries: int, priority: int, title: str | None = None, lesson_index: int | None = None, section_index: int | None = None, input_data: dict[str, Any] | None = None) -> TaskRecord:
  timestamp = now_iso()
  return TaskRecord(
    task_id=generate_task_id(),
    job_id=job_id,
    task_identifier=identifier,
    task_type=task_type,
    status="pending",
    created_at=timestamp,
    updated_at=timestamp,
    dependencies=dependencies,
    max_retries=max_retries,
    execution_priority=priority,
    lesson_index=lesson_index,
    section_index=section_index,
    title=title,
    input_data=input_data or {},
  )


def build_outline_task(job_id: str, request: dict[str, Any], *, max_retries: int = 3) -> TaskRecord:
  """Return the single initial task of a job."""
  return _new_task(job_id, OUTLINE_IDENTIFIER, "outline", dependencies=[], max_retries=max_retries, priority=_PRIORITY_BASE["outline"], title=str(request.get("title") or "Course outline"))


def plan_course_tasks(job_id: str, outline: CourseOutline, request: dict[str, Any], *, max_retries: int = 3) -> list[TaskRecord]:
  """Plan every task that follows the outline. Pure: nothing is persisted."""
  tasks: list[TaskRecord] = []
  finalize_dependencies: list[str] = []
  include_assessments = bool(request.get("include_assessments"))
  include_media = bool(request.get("include_media"))

  for lesson_index, lesson in enumerate(outline.lessons, start=1):
    lesson_data = {"title": lesson.title, "summary": lesson.summary}
    content_ids: list[str] = []
    for section_index, section in enumerate(lesson.sections, start=1):
      identifier = content_identifier(lesson_index, section_index)
      priority = _PRIORITY_BASE["lesson_content"] + lesson_index * 20 + section_index
      input_data = {"lesson": lesson_data, "section": {"title": section.title, "summary": section.summary}}
      tasks.append(_new_task(job_id, identifier, "lesson_content", dependencies=[OUTLINE_IDENTIFIER], max_retries=max_retries, priority=priority, title=section.title, lesson_index=lesson_index, section_index=section_index, input_data=input_data))
      content_ids.append(identifier)
    finalize_dependencies.extend(content_ids)

    if include_assessments:
      identifier = assessment_identifier(lesson_index)
      tasks.append(_new_task(job_id, identifier, "assessment", dependencies=list(content_ids), max_retries=max_retries, priority=_PRIORITY_BASE["assessment"] + lesson_index, title=f"{lesson.title} assessment", lesson_index=lesson_index, input_data={"lesson": lesson_data}))
      finalize_dependencies.append(identifier)

    if include_media:
      identifier = media_identifier(lesson_index)
      tasks.append(_new_task(job_id, identifier, "media", dependencies=list(content_ids), max_retries=max_retries, priority=_PRIORITY_BASE["media"] + lesson_index, title=f"{lesson.title} media", lesson_index=lesson_index, input_data={"lesson": lesson_data}))
      finalize_dependencies.append(identifier)

  lessons = [{"lesson_index": index, "title": lesson.title, "section_count": len(lesson.sections)} for index, lesson in enumerate(outline.lessons, start=1)]
  tasks.append(_new_task(job_id, FINALIZE_IDENTIFIER, "finalize", dependencies=finalize_dependencies, max_retries=max_retries, priority=_PRIORITY_BASE["finalize"], title=outline.title, input_data={"lessons": lessons}))
  return tasks


def validate_graph(tasks: Iterable[TaskRecord]) -> None:
  """Reject graphs with unknown dependencies or cycles."""
  by_identifier = {task.task_identifier: task for task in tasks}
  for task in by_identifier.values():
    unknown = [dependency for dependency in task.dependencies if dependency not in by_identifier]
    if unknown:
      raise StructuralError(f"Task '{task.task_identifier}' depends on unknown tasks: {', '.join(sorted(unknown))}")

  # Kahn's algorithm: any task never released sits on a cycle.
  remaining = {identifier: len(set(task.dependencies)) for identifier, task in by_identifier.items()}
  dependants: dict[str, list[str]] = {identifier: [] for identifier in by_identifier}
  for task in by_identifier.values():
    for dependency in set(task.dependencies):
      dependants[dependency].append(task.task_identifier)
  ready = [identifier for identifier, count in remaining.items() if count == 0]
  released = 0
  while ready:
    identifier = ready.pop()
    released += 1
    for dependant in dependants[identifier]:
      remaining[dependant] -= 1
      if remaining[dependant] == 0:
        ready.append(dependant)
  if released != len(by_identifier):
    cyclic = sorted(identifier for identifier, count in remaining.items() if count > 0)
    raise StructuralError(f"Task graph contains a dependency cycle: {', '.join(cyclic)}")


class TaskGraphBuilder:
  """Builds and persists the task graph of a job. Every write is an idempotent upsert."""

  def __init__(self, tasks_repo: TasksRepository, *, max_retries: int = 3) -> None:
    self._tasks_repo = tasks_repo
    self._max_retries = max_retries

  async def initialize(self, job: JobRecord) -> list[TaskRecord]:
    """Persist the outline task; a caller-supplied outline is expanded immediately."""
    outline_task = build_outline_task(job.job_id, job.request, max_retries=self._max_retries)
    supplied = job.request.get("outline")
    if supplied is None:
      return await self._tasks_repo.upsert_tasks(job.job_id, [outline_task])

    outline = parse_outline(supplied)
    timestamp = now_iso()
    outline_task.status = "completed"
    outline_task.result_json = outline.model_dump(mode="json")
    outline_task.input_data = {"source": "request"}
    outline_task.completed_at = timestamp
    await self._tasks_repo.upsert_tasks(job.job_id, [outline_task])
    return await self.expand(job, outline)

  async def expand(self, job: JobRecord, outline_payload: Any) -> list[TaskRecord]:
    """Upsert every task planned from the outline. Safe to repeat."""
    outline = parse_outline(outline_payload)
    planned = plan_course_tasks(job.job_id, outline, job.request, max_retries=self._max_retries)
    existing = await self._tasks_repo.list_tasks(job.job_id)
    known = {task.task_identifier for task in existing}
    validate_graph([*existing, *(task for task in planned if task.task_identifier not in known)])
    tasks = await self._tasks_repo.upsert_tasks(job.job_id, planned)
    logger.info("Expanded task graph job=%s lessons=%s tasks=%s", job.job_id, len(outline.lessons), len(tasks))
    return tasks

  async def rebuild(self, job: JobRecord) -> list[TaskRecord]:
    """Reload the persisted graph, finishing an expansion interrupted by a crash."""
    tasks = await self._tasks_repo.list_tasks(job.job_id)
    by_identifier = {task.task_identifier: task for task in tasks}
    outline_task = by_identifier.get(OUTLINE_IDENTIFIER)
    if outline_task is None:
      logger.warning("Rebuilding job=%s without an outline task; recreating it.", job.job_id)
      return await self.initialize(job)

    if outline_task.status == "completed" and outline_task.result_json is not None and FINALIZE_IDENTIFIER not in by_identifier:
      logger.info("Completing interrupted graph expansion job=%s", job.job_id)
      return await self.expand(job, outline_task.result_json)

    validate_graph(tasks)
    return tasks
