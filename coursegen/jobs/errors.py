"""Error taxonomy and failure classification for course generation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from coursegen.jobs.models import ErrorSeverity


class StructuralError(ValueError):
  """Raised for malformed input (request or outline); nothing is persisted."""


class StateConflictError(RuntimeError):
  """Raised when a command targets a job or task in an invalid source state."""


class StaleOwnershipError(RuntimeError):
  """Raised when a scheduler finds a task already claimed by another context."""


class JobAccessError(LookupError):
  """Raised when a job does not exist or is not owned by the acting user."""


class GenerationError(Exception):
  """Base failure raised by the generation client."""

  category = "content_generation"

  def __init__(self, message: str, *, category: str | None = None, status_code: int | None = None) -> None:
    super().__init__(message)
    if category is not None:
      self.category = category
    self.status_code = status_code


class TransientError(GenerationError):
  """Timeout, rate limit or upstream 5xx; retried by the engine up to a cap."""

  category = "api_unavailable"


class PermanentError(GenerationError):
  """Schema or content rejection; recorded immediately and never retried."""

  category = "content_validation"


@dataclass(frozen=True)
class ClassifiedError:
  """Client-facing classification stored on failed tasks."""

  category: str
  severity: ErrorSeverity
  is_recoverable: bool
  user_message: str
  recovery_suggestions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _ErrorPattern:
  pattern: re.Pattern[str]
  category: str
  severity: ErrorSeverity
  is_recoverable: bool
  user_message: str
  suggestions: tuple[str, ...]


_ERROR_PATTERNS: tuple[_ErrorPattern, ...] = (
  _ErrorPattern(
    re.compile(r"rate limit|too many requests|429|quota exceeded|resource exhausted", re.IGNORECASE),
    "api_limit",
    "medium",
    True,
    "The generation service is temporarily busy. The task can be retried shortly.",
    ("Wait for the rate limit to reset", "Reduce parallel generation calls"),
  ),
  _ErrorPattern(
    re.compile(r"timeout|timed out", re.IGNORECASE),
    "api_timeout",
    "low",
    True,
    "The request took longer than expected.",
    ("Retry the task", "Reduce the requested lesson depth"),
  ),
  _ErrorPattern(
    re.compile(r"invalid json|unexpected response|schema", re.IGNORECASE),
    "api_invalid_response",
    "high",
    False,
    "The generation service returned content that could not be used.",
    ("Skip the task or submit a new request",),
  ),
  _ErrorPattern(
    re.compile(r"content (?:rejected|policy)|validation failed", re.IGNORECASE),
    "content_validation",
    "high",
    False,
    "The generated content was rejected.",
    ("Skip the task or adjust the course request",),
  ),
  _ErrorPattern(
    re.compile(r"connection|unavailable|50[0234]", re.IGNORECASE),
    "api_unavailable",
    "medium",
    True,
    "The generation service is unavailable right now.",
    ("Retry the task once the service recovers",),
  ),
)

_CATEGORY_DEFAULTS: dict[str, tuple[ErrorSeverity, str, tuple[str, ...]]] = {pattern.category: (pattern.severity, pattern.user_message, pattern.suggestions) for pattern in _ERROR_PATTERNS}


def _recovery_suggestions(suggestions: tuple[str, ...], *, severity: ErrorSeverity, is_recoverable: bool) -> list[str]:
  """Append the retry guidance that tells clients whether a new request is needed."""
  result = list(suggestions)
  if severity == "critical":
    result.insert(0, "Critical error: manual intervention may be required")
  if is_recoverable:
    result.append("This error is recoverable: retry or regenerate the task")
  else:
    result.append("This error requires skipping the task or a new request")
  return result


def classify_error(exc: BaseException) -> ClassifiedError:
  """Classify a task failure into category, severity and recoverability."""
  # Generation errors carry their own category; only the defaults are looked up.
  if isinstance(exc, GenerationError):
    is_recoverable = isinstance(exc, TransientError)
    severity, user_message, suggestions = _CATEGORY_DEFAULTS.get(exc.category, ("medium", str(exc) or "Generation failed.", ()))
    if not is_recoverable and severity in {"low", "medium"}:
      severity = "high"
    return ClassifiedError(category=exc.category, severity=severity, is_recoverable=is_recoverable, user_message=user_message, recovery_suggestions=_recovery_suggestions(suggestions, severity=severity, is_recoverable=is_recoverable))

  if isinstance(exc, StructuralError):
    suggestions = ("Submit a new request with a valid outline",)
    return ClassifiedError(category="structural", severity="critical", is_recoverable=False, user_message="The course outline is malformed.", recovery_suggestions=_recovery_suggestions(suggestions, severity="critical", is_recoverable=False))

  message = str(exc) or type(exc).__name__
  for pattern in _ERROR_PATTERNS:
    if pattern.pattern.search(message):
      return ClassifiedError(
        category=pattern.category,
        severity=pattern.severity,
        is_recoverable=pattern.is_recoverable,
        user_message=pattern.user_message,
        recovery_suggestions=_recovery_suggestions(pattern.suggestions, severity=pattern.severity, is_recoverable=pattern.is_recoverable),
      )

  # Unknown failures are treated as recoverable so a user retry stays possible.
  suggestions = ("Review the service logs", "Retry the task")
  return ClassifiedError(category="unknown", severity="medium", is_recoverable=True, user_message="An unexpected error occurred.", recovery_suggestions=_recovery_suggestions(suggestions, severity="medium", is_recoverable=True))
