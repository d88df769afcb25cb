"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_task_id() -> str:
  """Return a new task row identifier."""
  return str(uuid.uuid4())


def generate_action_id() -> str:
  """Return a new user action identifier."""
  return str(uuid.uuid4())
