from __future__ import annotations

import pytest

from coursegen.jobs.errors import PermanentError, StructuralError, TransientError, classify_error


@pytest.mark.parametrize(
  ("message", "category", "recoverable"),
  [
    ("429 Too Many Requests", "api_limit", True),
    ("Read timed out", "api_timeout", True),
    ("Invalid JSON in response body", "api_invalid_response", False),
    ("Content rejected by the moderation filter", "content_validation", False),
    ("Connection reset by peer", "api_unavailable", True),
  ],
)
def test_classify_error_matches_message_patterns(message: str, category: str, recoverable: bool) -> None:
  classified = classify_error(RuntimeError(message))

  assert classified.category == category
  assert classified.is_recoverable is recoverable
  assert classified.recovery_suggestions[-1].startswith("This error")


def test_unknown_errors_stay_recoverable() -> None:
  classified = classify_error(KeyError("lesson"))

  assert classified.category == "unknown"
  assert classified.severity == "medium"
  assert classified.is_recoverable is True


def test_generation_errors_keep_their_category() -> None:
  transient = classify_error(TransientError("upstream busy", category="api_limit", status_code=429))
  permanent = classify_error(PermanentError("missing content", category="api_invalid_response"))

  assert (transient.category, transient.is_recoverable, transient.severity) == ("api_limit", True, "medium")
  assert (permanent.category, permanent.is_recoverable, permanent.severity) == ("api_invalid_response", False, "high")


def test_permanent_errors_are_never_low_severity() -> None:
  classified = classify_error(PermanentError("took too long", category="api_timeout"))

  assert classified.is_recoverable is False
  assert classified.severity == "high"
  assert "new request" in classified.recovery_suggestions[-1]


def test_structural_errors_are_critical() -> None:
  classified = classify_error(StructuralError("outline has no lessons"))

  assert classified.category == "structural"
  assert classified.severity == "critical"
  assert classified.is_recoverable is False
  assert classified.recovery_suggestions[0].startswith("Critical error")
