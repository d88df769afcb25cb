"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status

from coursegen.services.jobs import CourseGenerationService, get_course_service


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
  """Resolve the acting user from the trusted identity header set by the gateway."""
  if x_user_id is None or x_user_id.strip() == "":
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header.")
  return x_user_id.strip()


async def get_org_id(x_org_id: str | None = Header(default=None)) -> str | None:
  if x_org_id is None or x_org_id.strip() == "":
    return None
  return x_org_id.strip()


def get_service(service: CourseGenerationService = Depends(get_course_service)) -> CourseGenerationService:  # noqa: B008
  """Dependency to get the process-wide course generation service."""
  return service
