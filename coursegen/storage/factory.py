"""Repository factories."""

from __future__ import annotations

from coursegen.storage.jobs_repo import JobsRepository
from coursegen.storage.postgres_jobs_repo import PostgresJobsRepository
from coursegen.storage.postgres_tasks_repo import PostgresTasksRepository
from coursegen.storage.tasks_repo import TasksRepository


def _get_jobs_repo() -> JobsRepository:
  return PostgresJobsRepository()


def _get_tasks_repo() -> TasksRepository:
  return PostgresTasksRepository()
