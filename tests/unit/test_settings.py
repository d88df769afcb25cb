from __future__ import annotations

import pytest

from coursegen.config import get_database_settings, get_settings
from coursegen.core.sse import format_sse


@pytest.fixture(autouse=True)
def _fresh_settings():
  get_settings.cache_clear()
  get_database_settings.cache_clear()
  yield
  get_settings.cache_clear()
  get_database_settings.cache_clear()


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
  for name in ("COURSEGEN_GLOBAL_CONCURRENCY", "COURSEGEN_PER_JOB_CONCURRENCY", "COURSEGEN_TASK_MAX_RETRIES", "COURSEGEN_STALL_THRESHOLD_MINUTES", "COURSEGEN_ALLOWED_ORIGINS", "COURSEGEN_GENERATION_MODEL", "COURSEGEN_RECOVERY_AUTO_RESUME", "COURSEGEN_RECOVERY_MAX_ATTEMPTS"):
    monkeypatch.delenv(name, raising=False)

  settings = get_settings()

  assert settings.global_concurrency == 10
  assert settings.per_job_concurrency == 3
  assert settings.task_max_retries == 3
  assert settings.stall_threshold_minutes == 30
  assert settings.allowed_origins == ("http://localhost:3000",)
  assert settings.generation_model == "openai/gpt-4o-mini"
  assert settings.recovery_auto_resume is True
  assert settings.recovery_max_attempts == 3


def test_per_job_concurrency_is_capped_by_global_limit(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("COURSEGEN_GLOBAL_CONCURRENCY", "4")
  monkeypatch.setenv("COURSEGEN_PER_JOB_CONCURRENCY", "8")

  assert get_settings().per_job_concurrency == 4


@pytest.mark.parametrize(
  ("name", "value"),
  [
    ("COURSEGEN_ALLOWED_ORIGINS", "*"),
    ("COURSEGEN_GLOBAL_CONCURRENCY", "0"),
    ("COURSEGEN_GENERATION_TIMEOUT_SECONDS", "0"),
    ("COURSEGEN_RETRY_MAX_DELAY_SECONDS", "1"),
  ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
  monkeypatch.setenv("COURSEGEN_RETRY_BASE_DELAY_SECONDS", "2")
  monkeypatch.setenv(name, value)

  with pytest.raises(ValueError):
    get_settings()


def test_database_settings_fall_back_to_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.delenv("COURSEGEN_PG_DSN", raising=False)
  monkeypatch.setenv("DATABASE_URL", "postgresql://user:secret@db:5432/courses")

  assert get_database_settings().pg_dsn == "postgresql://user:secret@db:5432/courses"


def test_format_sse() -> None:
  assert format_sse('{"a": 1}', event="snapshot", event_id="7") == 'id: 7\nevent: snapshot\ndata: {"a": 1}\n\n'
