"""Generation client: bounded concurrency and per-call timeouts around a provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from coursegen.ai.backoff import backoff_delay
from coursegen.jobs.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)


class GenerationService(Protocol):
  """Contract of the external content generation service."""

  async def generate(self, *, task_type: str, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Produce structured content for `task_type`; raise TransientError or PermanentError."""


class GenerationClient:
  """Calls the generation service under a global and a per-job concurrency limit."""

  def __init__(
    self,
    service: GenerationService,
    *,
    global_concurrency: int = 10,
    per_job_concurrency: int = 3,
    timeout_seconds: float = 30.0,
    retry_base_delay_seconds: float = 2.0,
    retry_max_delay_seconds: float = 60.0,
  ) -> None:
    self._service = service
    self._global_limit = asyncio.Semaphore(global_concurrency)
    self._per_job_concurrency = per_job_concurrency
    self._job_limits: dict[str, asyncio.Semaphore] = {}
    self._in_flight: dict[str, int] = {}
    self._timeout_seconds = timeout_seconds
    self._retry_base_delay_seconds = retry_base_delay_seconds
    self._retry_max_delay_seconds = retry_max_delay_seconds

  @property
  def per_job_concurrency(self) -> int:
    return self._per_job_concurrency

  def in_flight(self, job_id: str) -> int:
    """Number of calls currently awaiting the service for `job_id`."""
    return self._in_flight.get(job_id, 0)

  def backoff_delay(self, attempt: int) -> float:
    return backoff_delay(attempt, base_seconds=self._retry_base_delay_seconds, max_seconds=self._retry_max_delay_seconds)

  def release_job(self, job_id: str) -> None:
    """Drop the per-job limiter once nothing is in flight for the job."""
    if self._in_flight.get(job_id, 0) == 0:
      self._job_limits.pop(job_id, None)
      self._in_flight.pop(job_id, None)

  async def generate(self, task_type: str, prompt: str, schema: dict[str, Any], *, job_id: str) -> dict[str, Any]:
    """Generate structured content, raising TransientError or PermanentError on failure."""
    job_limit = self._job_limits.setdefault(job_id, asyncio.Semaphore(self._per_job_concurrency))
    async with self._global_limit, job_limit:
      self._in_flight[job_id] = self._in_flight.get(job_id, 0) + 1
      try:
        result = await asyncio.wait_for(self._service.generate(task_type=task_type, prompt=prompt, schema=schema), timeout=self._timeout_seconds)
      except TimeoutError as exc:
        logger.warning("Generation call timed out job=%s task_type=%s after %.1fs", job_id, task_type, self._timeout_seconds)
        raise TransientError(f"Generation timed out after {self._timeout_seconds:.0f}s", category="api_timeout") from exc
      finally:
        self._in_flight[job_id] -= 1

    if not isinstance(result, dict):
      raise PermanentError("Generation service returned an unexpected response shape", category="api_invalid_response")

    # Enforce the top-level contract of the schema; handlers validate the details.
    missing = [key for key in schema.get("required", []) if key not in result]
    if missing:
      raise PermanentError(f"Generated content failed schema validation: missing {', '.join(missing)}", category="content_validation")
    return result
