import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from coursegen.core.database import create_schema
from coursegen.core.logging import _initialize_logging


def _redact_dsn(dsn: str | None) -> str:
  """Render a DSN without credentials for logs."""
  if not dsn:
    return "<unset>"
  parsed = urlparse(dsn)
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  return f"{parsed.scheme}://***@{host}{port}{parsed.path}"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging and schema, then run the recovery sweep for the app lifetime."""
  from coursegen.config import get_settings
  from coursegen.services.jobs import get_course_service

  settings = get_settings()
  logger = logging.getLogger("coursegen.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except RuntimeError:
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.auto_create_schema:
    logger.info("Creating database schema if missing; COURSEGEN_PG_DSN=%s", _redact_dsn(settings.pg_dsn))
    await create_schema()

  service = get_course_service()
  service.start_background()
  logger.info("Recovery sweep started interval=%ss threshold=%smin auto_resume=%s max_attempts=%s", settings.recovery_interval_seconds, settings.stall_threshold_minutes, settings.recovery_auto_resume, settings.recovery_max_attempts)

  try:
    yield
  finally:
    await service.shutdown()
    logger.info("Shutdown complete.")
