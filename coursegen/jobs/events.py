"""In-process progress channel keyed by job id."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import msgspec

logger = logging.getLogger(__name__)

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"job_completed", "job_failed", "job_cancelled"})


class ProgressEvent(msgspec.Struct, kw_only=True, omit_defaults=True):
  """One progress notification for a job."""

  job_id: str
  event_type: str
  overall_progress: float
  timestamp: str
  current_phase: str | None = None
  live_message: str | None = None
  estimated_time_remaining: int | None = None
  task_id: str | None = None
  task_identifier: str | None = None
  status: str | None = None
  attempt: int | None = None

  @property
  def dedupe_key(self) -> tuple[str, str | None, str | None]:
    """Key consumers use to drop redelivered events (task id + status, per attempt)."""
    if self.task_id is None:
      return (self.event_type, self.status, self.timestamp)
    return (self.task_id, self.status, str(self.attempt))

  @property
  def is_terminal(self) -> bool:
    return self.event_type in TERMINAL_EVENT_TYPES


def encode_event(event: ProgressEvent) -> bytes:
  return msgspec.json.encode(event)


class ProgressChannel:
  """Fan-out publish/subscribe; each subscriber owns an unbounded queue."""

  def __init__(self) -> None:
    self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}

  def subscriber_count(self, job_id: str) -> int:
    return len(self._subscribers.get(job_id, ()))

  def publish(self, event: ProgressEvent) -> None:
    for queue in list(self._subscribers.get(event.job_id, ())):
      queue.put_nowait(event)

  @asynccontextmanager
  async def subscribe(self, job_id: str) -> AsyncIterator[asyncio.Queue[ProgressEvent]]:
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    self._subscribers.setdefault(job_id, set()).add(queue)
    logger.debug("Progress subscriber attached job=%s subscribers=%s", job_id, self.subscriber_count(job_id))
    try:
      yield queue
    finally:
      subscribers = self._subscribers.get(job_id)
      if subscribers is not None:
        subscribers.discard(queue)
        if not subscribers:
          self._subscribers.pop(job_id, None)
