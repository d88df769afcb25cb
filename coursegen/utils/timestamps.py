"""UTC timestamp helpers for ISO-8601 strings persisted on job and task rows."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_iso(value: datetime) -> str:
  return value.astimezone(UTC).strftime(DATE_FORMAT)


def now_iso() -> str:
  return format_iso(datetime.now(UTC))


def parse_iso(raw: str | None) -> datetime | None:
  """Parse a persisted timestamp, returning None for missing or malformed values."""
  if not raw:
    return None
  try:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
  except ValueError:
    return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=UTC)
  return parsed


def iso_before(reference: datetime, *, minutes: float) -> str:
  """Return the ISO timestamp `minutes` before `reference`."""
  return format_iso(reference - timedelta(minutes=minutes))
