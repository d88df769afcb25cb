"""Per-job analytics report built from persisted task rows and the action log."""

from __future__ import annotations

import csv
import io
from collections import Counter

import msgspec

from coursegen.jobs.models import JobRecord, TaskRecord, UserActionRecord
from coursegen.utils.timestamps import parse_iso

SLOW_TASK_SECONDS = 30.0


class TaskTypeStats(msgspec.Struct, kw_only=True):
  task_type: str
  total: int
  completed: int = 0
  failed: int = 0
  skipped: int = 0
  retries: int = 0
  total_duration_seconds: float = 0.0
  average_duration_seconds: float | None = None


class TaskReportRow(msgspec.Struct, kw_only=True, omit_defaults=True):
  task_identifier: str
  task_type: str
  status: str
  retries: int = 0
  duration_seconds: float | None = None
  error_category: str | None = None
  error_severity: str | None = None
  error_message: str | None = None


class ReportSummary(msgspec.Struct, kw_only=True):
  total_tasks: int
  completed_tasks: int
  failed_tasks: int
  skipped_tasks: int
  total_retries: int
  success_rate: float
  duration_seconds: float | None = None
  recommendations: list[str] = msgspec.field(default_factory=list)


class JobReport(msgspec.Struct, kw_only=True, omit_defaults=True):
  job_id: str
  status: str
  generated_at: str
  created_at: str
  summary: ReportSummary
  completed_at: str | None = None
  failed_task_identifiers: list[str] = msgspec.field(default_factory=list)
  skipped_task_identifiers: list[str] = msgspec.field(default_factory=list)
  performance: list[TaskTypeStats] | None = None
  error_categories: dict[str, int] | None = None
  tasks: list[TaskReportRow] | None = None
  user_actions: list[str] | None = None


def task_duration(task: TaskRecord) -> float | None:
  """Seconds between start and completion of a finished task."""
  started = parse_iso(task.started_at)
  completed = parse_iso(task.completed_at)
  if started is None or completed is None or task.status != "completed":
    return None
  return max((completed - started).total_seconds(), 0.0)


def _recommendations(tasks: list[TaskRecord], success_rate: float, durations: list[float]) -> list[str]:
  failed = [task for task in tasks if task.status == "failed"]
  found: list[str] = []
  if tasks and success_rate < 90:
    found.append("Success rate is below 90%; review the error categories and retry or regenerate failed tasks.")
  critical = sum(1 for task in failed if task.error_severity == "critical")
  if critical:
    found.append(f"{critical} critical error(s) need immediate attention.")
  api_errors = sum(1 for task in failed if (task.error_category or "").startswith("api_"))
  if failed and api_errors > len(failed) / 2:
    found.append("Most failures come from the generation service; check rate limits and provider availability.")
  if any(task.status == "skipped" for task in tasks):
    found.append("Some tasks were skipped; check whether the course is still complete.")
  if durations and sum(durations) / len(durations) > SLOW_TASK_SECONDS:
    found.append("Average task time is high; consider shorter prompts or fewer sections per lesson.")
  if not found:
    found.append("No issues detected.")
  return found


def build_job_report(
  job: JobRecord,
  tasks: list[TaskRecord],
  actions: list[UserActionRecord],
  *,
  generated_at: str,
  include_tasks: bool = True,
  include_errors: bool = True,
  include_performance: bool = True,
) -> JobReport:
  """Aggregate task rows into summary, per-type performance and error breakdowns."""
  completed = [task for task in tasks if task.status == "completed"]
  failed = [task for task in tasks if task.status == "failed"]
  skipped = [task for task in tasks if task.status == "skipped"]
  durations = [duration for duration in (task_duration(task) for task in tasks) if duration is not None]
  success_rate = round(len(completed) / len(tasks) * 100, 2) if tasks else 0.0

  created = parse_iso(job.created_at)
  finished = parse_iso(job.completed_at)
  job_duration = (finished - created).total_seconds() if created is not None and finished is not None else None

  summary = ReportSummary(
    total_tasks=len(tasks),
    completed_tasks=len(completed),
    failed_tasks=len(failed),
    skipped_tasks=len(skipped),
    total_retries=sum(task.current_retry_count for task in tasks),
    success_rate=success_rate,
    duration_seconds=job_duration,
    recommendations=_recommendations(tasks, success_rate, durations),
  )
  report = JobReport(
    job_id=job.job_id,
    status=job.status,
    generated_at=generated_at,
    created_at=job.created_at,
    completed_at=job.completed_at,
    summary=summary,
    failed_task_identifiers=[task.task_identifier for task in failed],
    skipped_task_identifiers=[task.task_identifier for task in skipped],
  )

  if include_performance:
    stats: dict[str, TaskTypeStats] = {}
    measured: dict[str, list[float]] = {}
    for task in tasks:
      entry = stats.setdefault(task.task_type, TaskTypeStats(task_type=task.task_type, total=0))
      entry.total += 1
      entry.retries += task.current_retry_count
      if task.status in ("completed", "failed", "skipped"):
        setattr(entry, task.status, getattr(entry, task.status) + 1)
      duration = task_duration(task)
      if duration is not None:
        measured.setdefault(task.task_type, []).append(duration)
    for task_type, values in measured.items():
      stats[task_type].total_duration_seconds = round(sum(values), 3)
      stats[task_type].average_duration_seconds = round(sum(values) / len(values), 3)
    report.performance = list(stats.values())

  if include_errors:
    report.error_categories = dict(Counter(task.error_category or "unknown" for task in failed))

  if include_tasks:
    report.tasks = [
      TaskReportRow(
        task_identifier=task.task_identifier,
        task_type=task.task_type,
        status=task.status,
        retries=task.current_retry_count,
        duration_seconds=task_duration(task),
        error_category=task.error_category if include_errors else None,
        error_severity=task.error_severity if include_errors else None,
        error_message=task.error_message if include_errors else None,
      )
      for task in tasks
    ]
    report.user_actions = [f"{action.created_at} {action.action_type} {','.join(action.affected_tasks)}".strip() for action in actions]

  return report


def encode_report(report: JobReport) -> bytes:
  return msgspec.json.encode(report)


def render_report_csv(report: JobReport) -> str:
  """Flatten a report into sectioned CSV: summary rows, then performance, errors and tasks."""
  buffer = io.StringIO()
  writer = csv.writer(buffer)
  summary = report.summary
  writer.writerow(["job_id", report.job_id])
  writer.writerow(["status", report.status])
  writer.writerow(["generated_at", report.generated_at])
  writer.writerow(["duration_seconds", "" if summary.duration_seconds is None else summary.duration_seconds])
  writer.writerow(["success_rate", f"{summary.success_rate:.2f}"])
  writer.writerow(["total_retries", summary.total_retries])
  for recommendation in summary.recommendations:
    writer.writerow(["recommendation", recommendation])

  if report.performance is not None:
    writer.writerow([])
    writer.writerow(["task_type", "total", "completed", "failed", "skipped", "retries", "average_duration_seconds"])
    for stats in report.performance:
      writer.writerow([stats.task_type, stats.total, stats.completed, stats.failed, stats.skipped, stats.retries, "" if stats.average_duration_seconds is None else stats.average_duration_seconds])

  if report.error_categories:
    writer.writerow([])
    writer.writerow(["error_category", "count"])
    for category, count in sorted(report.error_categories.items()):
      writer.writerow([category, count])

  if report.tasks is not None:
    writer.writerow([])
    writer.writerow(["task_identifier", "task_type", "status", "retries", "duration_seconds", "error_category", "error_message"])
    for row in report.tasks:
      writer.writerow([row.task_identifier, row.task_type, row.status, row.retries, "" if row.duration_seconds is None else row.duration_seconds, row.error_category or "", row.error_message or ""])
  return buffer.getvalue()
