"""Process logging: job-tagged records on stdout plus a rotating log file."""

import logging
import logging.handlers
import sys
import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from coursegen.config import Settings

LOG_LINE_FORMAT = "%(asctime)s %(levelname)-7s [%(job_id)s %(task_identifier)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
TRACEBACK_TAIL_LINES = 5
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "openai")

_log_file_path: Path | None = None


@dataclass(frozen=True)
class TaskLogContext:
  """Job and task a log record was emitted for."""

  job_id: str
  task_identifier: str | None = None


_CURRENT_TASK_CONTEXT: ContextVar[TaskLogContext | None] = ContextVar("coursegen_task_log_context", default=None)


@contextmanager
def task_log_context(job_id: str, task_identifier: str | None = None) -> Iterator[TaskLogContext]:
  """Tag every record logged inside the block (and in tasks spawned from it) with the job and task."""
  context = TaskLogContext(job_id=job_id, task_identifier=task_identifier)
  token = _CURRENT_TASK_CONTEXT.set(context)
  try:
    yield context
  finally:
    _CURRENT_TASK_CONTEXT.reset(token)


class TaskContextFilter(logging.Filter):
  """Copy the active job/task context onto each record; `-` when there is none."""

  def filter(self, record: logging.LogRecord) -> bool:
    context = _CURRENT_TASK_CONTEXT.get()
    record.job_id = context.job_id if context is not None else "-"
    record.task_identifier = (context.task_identifier or "-") if context is not None else "-"
    return True


class TruncatedFormatter(logging.Formatter):
  """Keep the exception header and the innermost frames of a traceback."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) <= TRACEBACK_TAIL_LINES + 1:
      return "".join(lines)
    return "".join([lines[0], f"    ... {len(lines) - TRACEBACK_TAIL_LINES - 1} frame line(s) omitted\n", *lines[-TRACEBACK_TAIL_LINES:]])


def _backup_name(default_name: str) -> str:
  """coursegen_<stamp>.log.2 -> coursegen_<stamp>.2.log, so backups keep the .log suffix."""
  stem, _, index = default_name.rpartition(".")
  if not index.isdigit() or not stem.endswith(".log"):
    return default_name
  return f"{stem[: -len('.log')]}.{index}.log"


def _open_log_file(settings: Settings) -> Path:
  log_dir = Path(settings.log_dir).expanduser().resolve()
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"coursegen_{time.strftime('%Y%m%d_%H%M%S')}.log"
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Cannot write logs under {log_dir}: {exc}") from exc
  return log_path


def configure_logging(settings: Settings) -> Path:
  """Route the root, uvicorn and fastapi loggers to stdout and the rotating file."""
  log_path = _open_log_file(settings)
  context_filter = TaskContextFilter()

  console = logging.StreamHandler(sys.stdout)
  console.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  console.addFilter(context_filter)

  log_file = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  log_file.namer = _backup_name
  log_file.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  log_file.addFilter(context_filter)

  handlers: list[logging.Handler] = [console, log_file]
  for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
    server_logger = logging.getLogger(name)
    server_logger.handlers = list(handlers)
    server_logger.propagate = False

  logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO, handlers=handlers, force=True)
  # SQL echo is driven by COURSEGEN_DEBUG through the engine.
  for name in QUIET_LOGGERS:
    logging.getLogger(name).setLevel(logging.WARNING)
  return log_path


def _initialize_logging(settings: Settings) -> None:
  """Configure logging once per process."""
  global _log_file_path
  if _log_file_path is not None:
    return
  _log_file_path = configure_logging(settings)
  logging.getLogger(__name__).info("Logging initialized. Writing to %s", _log_file_path)
