"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
  """Typed settings for the course generation service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_schema: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  generation_url: str | None
  generation_api_key: str | None
  generation_model: str
  generation_timeout_seconds: float
  global_concurrency: int
  per_job_concurrency: int
  task_max_retries: int
  retry_base_delay_seconds: float
  retry_max_delay_seconds: float
  stall_threshold_minutes: int
  recovery_interval_seconds: int
  recovery_auto_resume: bool
  recovery_max_attempts: int


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("COURSEGEN_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("COURSEGEN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("COURSEGEN_ENV", "development").lower()
  debug = _parse_bool(os.getenv("COURSEGEN_DEBUG"))

  log_max_bytes = _positive_int("COURSEGEN_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("COURSEGEN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("COURSEGEN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  generation_timeout_seconds = _non_negative_float("COURSEGEN_GENERATION_TIMEOUT_SECONDS", "30")
  if generation_timeout_seconds == 0:
    raise ValueError("COURSEGEN_GENERATION_TIMEOUT_SECONDS must be greater than zero.")

  global_concurrency = _positive_int("COURSEGEN_GLOBAL_CONCURRENCY", "10")
  per_job_concurrency = _positive_int("COURSEGEN_PER_JOB_CONCURRENCY", "3")
  # A single job can never hold more calls than the whole process allows.
  per_job_concurrency = min(per_job_concurrency, global_concurrency)

  task_max_retries = _positive_int("COURSEGEN_TASK_MAX_RETRIES", "3")
  retry_base_delay_seconds = _non_negative_float("COURSEGEN_RETRY_BASE_DELAY_SECONDS", "2")
  retry_max_delay_seconds = _non_negative_float("COURSEGEN_RETRY_MAX_DELAY_SECONDS", "60")
  if retry_max_delay_seconds < retry_base_delay_seconds:
    raise ValueError("COURSEGEN_RETRY_MAX_DELAY_SECONDS must not be lower than the base delay.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("COURSEGEN_ALLOWED_ORIGINS")),
    pg_dsn=os.getenv("COURSEGEN_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("COURSEGEN_PG_CONNECT_TIMEOUT", "5"),
    auto_create_schema=_parse_bool(os.getenv("COURSEGEN_AUTO_CREATE_SCHEMA")),
    log_dir=(os.getenv("COURSEGEN_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("COURSEGEN_LOG_HTTP_4XX")),
    generation_url=_optional_str(os.getenv("COURSEGEN_GENERATION_URL")),
    generation_api_key=_optional_str(os.getenv("COURSEGEN_GENERATION_API_KEY")),
    generation_model=_optional_str(os.getenv("COURSEGEN_GENERATION_MODEL")) or "openai/gpt-4o-mini",
    generation_timeout_seconds=generation_timeout_seconds,
    global_concurrency=global_concurrency,
    per_job_concurrency=per_job_concurrency,
    task_max_retries=task_max_retries,
    retry_base_delay_seconds=retry_base_delay_seconds,
    retry_max_delay_seconds=retry_max_delay_seconds,
    stall_threshold_minutes=_positive_int("COURSEGEN_STALL_THRESHOLD_MINUTES", "30"),
    recovery_interval_seconds=_positive_int("COURSEGEN_RECOVERY_INTERVAL_SECONDS", "300"),
    recovery_auto_resume=_parse_bool(os.getenv("COURSEGEN_RECOVERY_AUTO_RESUME", "true")),
    recovery_max_attempts=_positive_int("COURSEGEN_RECOVERY_MAX_ATTEMPTS", "3"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  debug = _parse_bool(os.getenv("COURSEGEN_DEBUG"))
  pg_connect_timeout = int(os.getenv("COURSEGEN_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("COURSEGEN_PG_CONNECT_TIMEOUT must be a positive integer.")

  # Support fallback to DATABASE_URL for platform-provided connection strings.
  pg_dsn = os.getenv("COURSEGEN_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
