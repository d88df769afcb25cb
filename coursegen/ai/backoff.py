"""Exponential backoff for transient generation failures."""

from __future__ import annotations


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
  """Return the delay before retry `attempt` (1-based): base * 2**(attempt-1), capped."""
  if attempt <= 0:
    return 0.0
  return min(base_seconds * (2 ** (attempt - 1)), max_seconds)
