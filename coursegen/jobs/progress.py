"""Job progress, phase and time-remaining derivation from task states."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from coursegen.jobs.models import DEPENDENCY_SATISFIED_STATUSES, TaskRecord
from coursegen.utils.timestamps import parse_iso

TASK_WEIGHTS: dict[str, int] = {"outline": 1, "lesson_content": 3, "assessment": 2, "media": 1, "finalize": 1}

# Fallback durations (seconds) used until a task type has completed at least once.
DEFAULT_TASK_SECONDS: dict[str, float] = {"outline": 20.0, "lesson_content": 25.0, "assessment": 15.0, "media": 10.0, "finalize": 1.0}

_PHASE_ORDER: tuple[tuple[str, str], ...] = (("outline", "outline"), ("lesson_content", "content"), ("assessment", "assessments"), ("media", "media"), ("finalize", "finalize"))


@dataclass(frozen=True)
class ProgressSnapshot:
  """Derived view of a job's task set."""

  progress: float
  phase: str
  estimated_time_remaining: int
  total_tasks: int
  settled_tasks: int
  failed_tasks: int


def compute_progress(tasks: Iterable[TaskRecord]) -> float:
  """Weighted share of completed or skipped tasks, 0-100."""
  total = 0
  settled = 0
  for task in tasks:
    weight = TASK_WEIGHTS.get(task.task_type, 1)
    total += weight
    if task.status in DEPENDENCY_SATISFIED_STATUSES:
      settled += weight
  if total == 0:
    return 0.0
  return round(100.0 * settled / total, 2)


def derive_phase(tasks: Iterable[TaskRecord]) -> str:
  """Name the earliest pipeline stage that still has unsettled work."""
  unsettled_types = {task.task_type for task in tasks if task.status not in DEPENDENCY_SATISFIED_STATUSES and task.status != "cancelled"}
  for task_type, phase in _PHASE_ORDER:
    if task_type in unsettled_types:
      return phase
  return "complete"


def _observed_seconds(tasks: list[TaskRecord]) -> dict[str, float]:
  durations: dict[str, list[float]] = {}
  for task in tasks:
    if task.status != "completed":
      continue
    started = parse_iso(task.started_at)
    completed = parse_iso(task.completed_at)
    if started is None or completed is None:
      continue
    durations.setdefault(task.task_type, []).append(max((completed - started).total_seconds(), 0.0))
  return {task_type: sum(values) / len(values) for task_type, values in durations.items()}


def estimate_time_remaining(tasks: Iterable[TaskRecord], *, concurrency: int) -> int:
  """Seconds left, from observed per-type averages spread over the concurrency cap."""
  task_list = list(tasks)
  observed = _observed_seconds(task_list)
  remaining = 0.0
  for task in task_list:
    if task.status in DEPENDENCY_SATISFIED_STATUSES or task.status in {"failed", "cancelled"}:
      continue
    remaining += observed.get(task.task_type, DEFAULT_TASK_SECONDS.get(task.task_type, 20.0))
  return int(math.ceil(remaining / max(concurrency, 1)))


def summarize(tasks: Iterable[TaskRecord], *, concurrency: int) -> ProgressSnapshot:
  task_list = list(tasks)
  return ProgressSnapshot(
    progress=compute_progress(task_list),
    phase=derive_phase(task_list),
    estimated_time_remaining=estimate_time_remaining(task_list, concurrency=concurrency),
    total_tasks=len(task_list),
    settled_tasks=sum(1 for task in task_list if task.status in DEPENDENCY_SATISFIED_STATUSES),
    failed_tasks=sum(1 for task in task_list if task.status == "failed"),
  )
