from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import coursegen.schema.db_models  # noqa: F401
from coursegen.core.database import Base
from coursegen.jobs.graph import TaskGraphBuilder
from coursegen.jobs.models import JobRecord, UserActionRecord
from coursegen.services.jobs import CourseGenerationService
from coursegen.storage.postgres_jobs_repo import PostgresJobsRepository
from coursegen.storage.postgres_tasks_repo import PostgresTasksRepository
from coursegen.utils.ids import generate_action_id, generate_job_id
from coursegen.utils.timestamps import now_iso

STALE = "2020-01-01T00:00:00Z"


@pytest.fixture
async def session_factory(tmp_path):
  engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'coursegen.db'}")
  async with engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
  yield async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
  await engine.dispose()


def _job(**overrides) -> JobRecord:
  timestamp = now_iso()
  record = JobRecord(job_id=generate_job_id(), user_id="user-1", request={"title": "SQL Course", "include_assessments": False}, status="queued", created_at=timestamp, updated_at=timestamp)
  return replace(record, **overrides)


@pytest.mark.anyio
async def test_job_updates_are_conditional_and_progress_is_monotonic(session_factory) -> None:
  repo = PostgresJobsRepository(session_factory)
  job = _job()
  await repo.create_job(job)

  assert await repo.update_job(job.job_id, expected_status=("processing",), status="completed") is None
  started = await repo.update_job(job.job_id, expected_status=("queued",), status="processing", progress_percentage=40.0, current_phase="content")
  assert started is not None
  assert (started.status, started.progress_percentage, started.current_phase) == ("processing", 40.0, "content")

  lowered = await repo.update_job(job.job_id, progress_percentage=20.0)
  assert lowered is not None
  assert lowered.progress_percentage == 40.0

  counted = await repo.update_job(job.job_id, expected_status=("processing",), recovery_attempts=2)
  assert counted is not None and counted.recovery_attempts == 2 and counted.status == "processing"
  assert await repo.update_job("missing", status="failed") is None

  stored = await repo.get_job(job.job_id)
  assert stored is not None
  assert stored.request == {"title": "SQL Course", "include_assessments": False}


@pytest.mark.anyio
async def test_idempotency_key_is_unique_per_user(session_factory) -> None:
  repo = PostgresJobsRepository(session_factory)
  first = _job(idempotency_key="key-1")
  await repo.create_job(first)
  await repo.create_job(_job(idempotency_key="key-1", user_id="user-2"))

  found = await repo.find_by_idempotency_key(user_id="user-1", idempotency_key="key-1")
  assert found is not None and found.job_id == first.job_id
  with pytest.raises(IntegrityError):
    await repo.create_job(_job(idempotency_key="key-1"))


@pytest.mark.anyio
async def test_find_stalled_and_action_log(session_factory) -> None:
  repo = PostgresJobsRepository(session_factory)
  stale = _job(status="processing", updated_at=STALE)
  fresh = _job(status="processing")
  await repo.create_job(stale)
  await repo.create_job(fresh)
  await repo.create_job(_job(status="completed", updated_at=STALE))

  stalled = await repo.find_stalled(statuses=("processing", "queued"), updated_before="2021-01-01T00:00:00Z")
  assert [job.job_id for job in stalled] == [stale.job_id]
  assert await repo.find_stalled(statuses=("processing",), updated_before="2021-01-01T00:00:00Z", user_id="user-2") == []

  await repo.record_action(UserActionRecord(action_id=generate_action_id(), job_id=stale.job_id, actor_id="user-1", action_type="skip_task", created_at=now_iso(), affected_tasks=["lesson-1-section-1"], context={"reason": "slow"}))
  actions = await repo.list_actions(stale.job_id)
  assert [(action.action_type, action.affected_tasks, action.context) for action in actions] == [("skip_task", ["lesson-1-section-1"], {"reason": "slow"})]


@pytest.mark.anyio
async def test_task_upsert_and_fenced_transitions(session_factory) -> None:
  jobs = PostgresJobsRepository(session_factory)
  tasks = PostgresTasksRepository(session_factory)
  job = _job()
  await jobs.create_job(job)
  builder = TaskGraphBuilder(tasks)
  outline = {"title": "SQL Course", "lessons": [{"title": f"Lesson {i}", "sections": [{"title": f"Section {i}"}]} for i in range(1, 4)]}

  await builder.initialize(job)
  first = await builder.expand(job, outline)
  second = await builder.expand(job, outline)
  assert [task.task_identifier for task in second] == ["outline", "lesson-1-section-1", "lesson-2-section-1", "lesson-3-section-1", "finalize"]
  assert [task.task_id for task in first] == [task.task_id for task in second]

  section = second[1]
  queued = await tasks.transition_task(section.task_id, from_statuses=("pending",), status="queued", expected_version=section.version)
  assert queued is not None and queued.version == section.version + 1
  # The stale version no longer matches, so the second claim loses.
  assert await tasks.transition_task(section.task_id, from_statuses=("pending", "queued"), status="running", expected_version=section.version) is None
  running = await tasks.transition_task(section.task_id, from_statuses=("queued",), status="running", expected_version=queued.version, started_at=now_iso())
  assert running is not None and running.status == "running"

  done = await tasks.transition_task(section.task_id, from_statuses=("running",), status="completed", result_json={"content": "body"}, recovery_suggestions=None)
  assert done is not None
  assert done.result_json == {"content": "body"}
  assert done.version == running.version + 1
  assert [task.task_identifier for task in await tasks.list_tasks(job.job_id, statuses=("completed",))] == ["lesson-1-section-1"]
  assert (await tasks.get_task_by_identifier(job.job_id, "finalize")) is not None

  with pytest.raises(ValueError):
    await tasks.transition_task(section.task_id, from_statuses=("completed",), status="pending", job_id="other-job")


@pytest.mark.anyio
async def test_engine_runs_to_completion_on_sql_repositories(session_factory, generation, settings) -> None:
  service = CourseGenerationService(jobs_repo=PostgresJobsRepository(session_factory), tasks_repo=PostgresTasksRepository(session_factory), generation_service=generation, settings=settings)

  created = await service.submit({"title": "SQL Course", "include_assessments": True, "idempotency_key": "sql-1"}, user_id="user-1")
  await service.engine.wait(created.job_id)

  status = await service.get_status(created.job_id, user_id="user-1")
  assert status.status == "completed"
  assert status.progress_percentage == 100.0
  assert status.task_counts == {"completed": 1 + 4 + 4 + 1}

  again = await service.submit({"title": "SQL Course", "idempotency_key": "sql-1"}, user_id="user-1")
  assert again.deduplicated is True
  assert again.job_id == created.job_id
