import logging
from collections.abc import AsyncIterator
from typing import Literal

from fastapi import APIRouter, Depends, Response

from coursegen.api.deps import get_current_user_id, get_org_id, get_service
from coursegen.api.models import (
  HealthCheckActionRequest,
  HealthCheckActionResponse,
  HealthCheckResponse,
  JobActionRequest,
  JobActionResponse,
  JobCreateResponse,
  JobStatusResponse,
  RegenerateTaskResponse,
  StalledJobResponse,
  UserActionResponse,
)
from coursegen.core.sse import format_sse, stream
from coursegen.jobs.events import encode_event
from coursegen.jobs.report import encode_report, render_report_csv
from coursegen.schema.course import CourseRequest
from coursegen.services.jobs import CourseGenerationService

router = APIRouter()
logger = logging.getLogger("coursegen.api.routes.jobs")


@router.post("", response_model=JobCreateResponse, status_code=202)
async def submit_job(  # noqa: B008
  request: CourseRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  org_id: str | None = Depends(get_org_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> JobCreateResponse:
  """Submit a course generation request."""
  return await service.submit(request, user_id=user_id, org_id=org_id)


# Declared before /{job_id} so the literal path wins.
@router.get("/health-check", response_model=HealthCheckResponse)
async def health_check(  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> HealthCheckResponse:
  """List the caller's stalled jobs split into stuck and healthy-but-slow."""
  report = await service.health_check(user_id=user_id)
  return HealthCheckResponse(
    checked_at=report.checked_at,
    threshold_minutes=report.threshold_minutes,
    stuck_jobs=[StalledJobResponse.model_validate(job, from_attributes=True) for job in report.stuck_jobs],
    healthy_jobs=[StalledJobResponse.model_validate(job, from_attributes=True) for job in report.healthy_jobs],
  )


@router.post("/health-check", response_model=HealthCheckActionResponse)
async def apply_health_check_action(  # noqa: B008
  payload: HealthCheckActionRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> HealthCheckActionResponse:
  """Recover (fail) or resume a stalled job."""
  if payload.action == "recover":
    job = await service.recover(payload.job_id, user_id=user_id)
  else:
    job = await service.resume(payload.job_id, user_id=user_id)
  return HealthCheckActionResponse(job_id=job.job_id, action=payload.action, status=job.status)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the job with its task summary, artifacts and failures."""
  return await service.get_status(job_id, user_id=user_id)


@router.get("/{job_id}/events")
async def stream_job_events(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
):
  """Stream progress events as server-sent events until the job finishes."""
  # Check access before the stream starts so unknown jobs return 404, not an empty stream.
  await service.ensure_access(job_id, user_id=user_id)

  async def payloads() -> AsyncIterator[str]:
    async for event in service.subscribe_progress(job_id, user_id=user_id):
      yield format_sse(encode_event(event).decode("utf-8"), event=event.event_type)

  return stream(payloads())


@router.post("/{job_id}/actions", response_model=JobActionResponse)
async def apply_job_action(  # noqa: B008
  job_id: str,
  payload: JobActionRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> JobActionResponse:
  """Apply a retry, skip, pause, resume or cancel command."""
  return await service.action(job_id, payload.action_type, actor_id=user_id, task_ids=payload.task_ids, context=payload.context)


@router.get("/{job_id}/actions", response_model=list[UserActionResponse])
async def list_job_actions(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> list[UserActionResponse]:
  """List the audit log of user commands for a job."""
  records = await service.list_actions(job_id, user_id=user_id)
  return [UserActionResponse.model_validate(record, from_attributes=True) for record in records]


@router.post("/{job_id}/tasks/{task_identifier}/regenerate", response_model=RegenerateTaskResponse)
async def regenerate_task(  # noqa: B008
  job_id: str,
  task_identifier: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> RegenerateTaskResponse:
  """Reset a failed task so it runs again."""
  regenerated = await service.regenerate_task(job_id, task_identifier, user_id=user_id)
  return RegenerateTaskResponse(job_id=job_id, task_identifier=task_identifier, regenerated=regenerated)


@router.post("/{job_id}/dismiss", response_model=JobStatusResponse)
async def dismiss_job(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> JobStatusResponse:
  """Hide a finished job from listings; the record is kept."""
  await service.dismiss(job_id, user_id=user_id)
  return await service.get_status(job_id, user_id=user_id)


@router.get("/{job_id}/report")
async def export_job_report(  # noqa: B008
  job_id: str,
  format: Literal["json", "csv"] = "json",  # noqa: A002
  include_tasks: bool = True,
  include_errors: bool = True,
  include_performance: bool = True,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: CourseGenerationService = Depends(get_service),  # noqa: B008
) -> Response:
  """Export per-job analytics as JSON or CSV."""
  report = await service.report(job_id, user_id=user_id, include_tasks=include_tasks, include_errors=include_errors, include_performance=include_performance)
  if format == "csv":
    return Response(content=render_report_csv(report), media_type="text/csv", headers={"Content-Disposition": f'attachment; filename="course-report-{job_id}.csv"'})
  return Response(content=encode_report(report), media_type="application/json")
