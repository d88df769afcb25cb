"""Task-type dispatch: the registry and one handler per generation task type."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from coursegen.ai import prompts
from coursegen.ai.client import GenerationClient
from coursegen.jobs.graph import TaskGraphBuilder, parse_outline
from coursegen.jobs.models import JobRecord, TaskRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskContext:
  """Everything a handler needs to execute one claimed task."""

  job: JobRecord
  task: TaskRecord
  dependencies: dict[str, TaskRecord] = field(default_factory=dict)

  def completed_dependencies(self, task_type: str) -> list[TaskRecord]:
    """Dependencies of `task_type` that produced a result, in section order."""
    found = [dependency for dependency in self.dependencies.values() if dependency.task_type == task_type and dependency.status == "completed" and dependency.result_json is not None]
    return sorted(found, key=lambda item: (item.lesson_index or 0, item.section_index or 0))


class TaskHandler(Protocol):
  """Handler contract for a concrete task type."""

  async def execute(self, context: TaskContext) -> dict[str, Any]:
    """Produce the task result; raise TransientError, PermanentError or StructuralError."""

  async def on_completed(self, context: TaskContext, result: dict[str, Any]) -> None:
    """Run follow-up work once the result has been persisted."""


class TaskHandlerRegistry:
  """Registry mapping task types to handlers."""

  def __init__(self, handlers: dict[str, TaskHandler]) -> None:
    self._handlers = handlers

  def resolve(self, task_type: str) -> TaskHandler:
    """Resolve the handler for a task type."""
    handler = self._handlers.get(task_type)
    if handler is None:
      raise ValueError(f"Unsupported task type: {task_type}")
    return handler


class _BaseHandler:
  def __init__(self, client: GenerationClient) -> None:
    self._client = client

  async def on_completed(self, context: TaskContext, result: dict[str, Any]) -> None:
    _ = (context, result)


class OutlineHandler(_BaseHandler):
  """Generates the course outline and expands the task graph from it."""

  def __init__(self, client: GenerationClient, graph_builder: TaskGraphBuilder) -> None:
    super().__init__(client)
    self._graph_builder = graph_builder

  async def execute(self, context: TaskContext) -> dict[str, Any]:
    request = context.job.request
    raw = await self._client.generate("outline", prompts.build_outline_prompt(request), prompts.OUTLINE_SCHEMA, job_id=context.job.job_id)
    # A malformed outline is structural: nothing downstream can be planned from it.
    outline = parse_outline(raw)
    return outline.model_dump(mode="json")

  async def on_completed(self, context: TaskContext, result: dict[str, Any]) -> None:
    await self._graph_builder.expand(context.job, result)


class ContentHandler(_BaseHandler):
  async def execute(self, context: TaskContext) -> dict[str, Any]:
    lesson = context.task.input_data.get("lesson", {})
    section = context.task.input_data.get("section", {})
    prompt = prompts.build_section_prompt(context.job.request, lesson=lesson, section=section)
    result = await self._client.generate("lesson_content", prompt, prompts.SECTION_SCHEMA, job_id=context.job.job_id)
    result.setdefault("title", section.get("title"))
    return result


class AssessmentHandler(_BaseHandler):
  async def execute(self, context: TaskContext) -> dict[str, Any]:
    lesson = context.task.input_data.get("lesson", {})
    sections = [dependency.result_json or {} for dependency in context.completed_dependencies("lesson_content")]
    prompt = prompts.build_assessment_prompt(context.job.request, lesson=lesson, sections=sections)
    return await self._client.generate("assessment", prompt, prompts.ASSESSMENT_SCHEMA, job_id=context.job.job_id)


class MediaHandler(_BaseHandler):
  async def execute(self, context: TaskContext) -> dict[str, Any]:
    lesson = context.task.input_data.get("lesson", {})
    sections = [dependency.result_json or {} for dependency in context.completed_dependencies("lesson_content")]
    prompt = prompts.build_media_prompt(context.job.request, lesson=lesson, sections=sections)
    return await self._client.generate("media", prompt, prompts.MEDIA_SCHEMA, job_id=context.job.job_id)


class FinalizeHandler(_BaseHandler):
  """Assembles the course document from dependency results. No external call."""

  async def execute(self, context: TaskContext) -> dict[str, Any]:
    lessons_by_index: dict[int, dict[str, Any]] = {}
    for entry in context.task.input_data.get("lessons", []):
      index = int(entry["lesson_index"])
      lessons_by_index[index] = {"lesson_index": index, "title": entry.get("title"), "sections": [], "assessment": None, "media": None}

    missing: list[str] = []
    ordered = sorted(context.dependencies.values(), key=lambda item: (item.lesson_index or 0, item.execution_priority, item.task_identifier))
    for dependency in ordered:
      if dependency.status != "completed" or dependency.result_json is None:
        missing.append(dependency.task_identifier)
        continue
      lesson = lessons_by_index.setdefault(dependency.lesson_index or 0, {"lesson_index": dependency.lesson_index, "title": None, "sections": [], "assessment": None, "media": None})
      if dependency.task_type == "lesson_content":
        lesson["sections"].append({"section_index": dependency.section_index, **dependency.result_json})
      elif dependency.task_type == "assessment":
        lesson["assessment"] = dependency.result_json
      elif dependency.task_type == "media":
        lesson["media"] = dependency.result_json

    if missing:
      logger.info("Finalizing job=%s without skipped tasks: %s", context.job.job_id, ", ".join(missing))
    return {
      "title": context.task.title or context.job.request.get("title"),
      "lessons": [lessons_by_index[index] for index in sorted(lessons_by_index)],
      "missing_tasks": missing,
    }


def build_task_registry(client: GenerationClient, graph_builder: TaskGraphBuilder) -> TaskHandlerRegistry:
  """Build the default task-type registry."""
  return TaskHandlerRegistry(
    {
      "outline": OutlineHandler(client, graph_builder),
      "lesson_content": ContentHandler(client),
      "assessment": AssessmentHandler(client),
      "media": MediaHandler(client),
      "finalize": FinalizeHandler(client),
    }
  )
