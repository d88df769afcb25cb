from __future__ import annotations

import pytest

from coursegen.jobs.engine import completion_outcome, select_ready
from coursegen.jobs.errors import PermanentError, TransientError
from coursegen.jobs.models import TaskRecord

USER = "user-1"
CONTENT_IDS = [f"lesson-{index}-section-1" for index in range(1, 5)]


def _section(lesson: int, section: int = 1) -> str:
  return f"section 'Lesson {lesson} Section {section}'"


def _task(identifier: str, status: str = "pending", *, task_type: str = "lesson_content", dependencies: tuple[str, ...] = (), priority: int = 0, is_recoverable: bool | None = None) -> TaskRecord:
  return TaskRecord(
    task_id=f"id-{identifier}",
    job_id="job-1",
    task_identifier=identifier,
    task_type=task_type,  # type: ignore[arg-type]
    status=status,  # type: ignore[arg-type]
    created_at="2026-01-01T00:00:00Z",
    updated_at="2026-01-01T00:00:00Z",
    dependencies=list(dependencies),
    execution_priority=priority,
    is_recoverable=is_recoverable,
  )


def _transition_index(transitions: list[tuple[str, str, str]], identifier: str, source: str, target: str) -> int:
  return transitions.index((identifier, source, target))


def test_select_ready_requires_settled_dependencies() -> None:
  tasks = [
    _task("outline", "completed", task_type="outline"),
    _task("lesson-1-section-1", dependencies=("outline",), priority=1021),
    _task("lesson-2-section-1", "skipped", dependencies=("outline",), priority=1041),
    _task("lesson-1-assessment", task_type="assessment", dependencies=("lesson-1-section-1",), priority=5001),
    _task("lesson-2-assessment", task_type="assessment", dependencies=("lesson-2-section-1",), priority=5002),
    _task("finalize", task_type="finalize", dependencies=("lesson-1-assessment", "lesson-2-assessment"), priority=9000),
  ]

  ready = select_ready(tasks, limit=5)

  assert [task.task_identifier for task in ready] == ["lesson-1-section-1", "lesson-2-assessment"]


def test_select_ready_orders_by_priority_and_respects_limit() -> None:
  tasks = [_task(f"lesson-{index}-section-1", priority=1000 + index * 20) for index in (3, 1, 2)]

  assert [task.task_identifier for task in select_ready(tasks, limit=2)] == ["lesson-1-section-1", "lesson-2-section-1"]
  assert select_ready(tasks, limit=0) == []


def test_completion_outcome_policy() -> None:
  outline = _task("outline", "completed", task_type="outline")
  finalize_done = _task("finalize", "completed", task_type="finalize")

  assert completion_outcome([outline, _task("lesson-1-section-1", "skipped"), finalize_done]) == "completed"
  assert completion_outcome([outline, _task("lesson-1-section-1", "running"), _task("finalize", task_type="finalize")]) == "waiting"
  assert completion_outcome([outline, _task("lesson-1-section-1", "failed", is_recoverable=True), _task("finalize", task_type="finalize")]) == "awaiting_action"
  assert completion_outcome([_task("outline", "failed", task_type="outline", is_recoverable=False)]) == "failed"
  # A recoverable outline failure waits for the user instead of failing the job.
  assert completion_outcome([_task("outline", "failed", task_type="outline", is_recoverable=True)]) == "awaiting_action"
  assert completion_outcome([_task("outline", "skipped", task_type="outline")]) == "failed"
  # Without a finalize task the graph is not fully planned yet.
  assert completion_outcome([outline]) == "waiting"


@pytest.mark.anyio
async def test_happy_path_completes_in_dependency_order(service, tasks_repo, generation, course_request) -> None:
  created = await service.submit(course_request(), user_id=USER)
  await service.engine.wait(created.job_id)

  status = await service.get_status(created.job_id, user_id=USER)
  assert status.status == "completed"
  assert status.progress_percentage == 100.0
  assert status.current_phase == "complete"
  assert [task.task_identifier for task in status.tasks] == ["outline", *CONTENT_IDS, "finalize"]
  assert all(task.status == "completed" for task in status.tasks)
  assert status.result is not None
  assert [lesson["title"] for lesson in status.result["lessons"]] == ["Lesson 1", "Lesson 2", "Lesson 3", "Lesson 4"]
  assert status.result["missing_tasks"] == []
  # Finalize assembles the course without calling the generation service.
  assert [kind for kind, _ in generation.calls] == ["outline", *["lesson_content"] * 4]

  transitions = tasks_repo.transitions
  for task in await tasks_repo.list_tasks(created.job_id):
    started = _transition_index(transitions, task.task_identifier, "queued", "running")
    for dependency in task.dependencies:
      assert _transition_index(transitions, dependency, "running", "completed") < started


@pytest.mark.anyio
async def test_transient_failures_exhaust_retries_then_regenerate_completes(service, jobs_repo, tasks_repo, generation, course_request) -> None:
  generation.fail(_section(2), *(TransientError("upstream returned 503") for _ in range(3)))

  created = await service.submit(course_request(), user_id=USER)
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "processing"
  failed = await tasks_repo.get_task_by_identifier(created.job_id, "lesson-2-section-1")
  assert failed is not None
  assert failed.status == "failed"
  assert failed.current_retry_count == 3
  assert failed.is_recoverable is True
  assert failed.error_category == "api_unavailable"
  assert len([prompt for prompt in generation.calls_for("lesson_content") if _section(2) in prompt]) == 3
  finalize = await tasks_repo.get_task_by_identifier(created.job_id, "finalize")
  assert finalize is not None and finalize.status == "pending"

  # Partial results stay visible next to the failure list.
  status = await service.get_status(created.job_id, user_id=USER)
  assert [task.task_identifier for task in status.failures] == ["lesson-2-section-1"]
  assert {artifact.task_identifier for artifact in status.artifacts} == {"outline", "lesson-1-section-1", "lesson-3-section-1", "lesson-4-section-1"}

  assert await service.regenerate_task(created.job_id, "lesson-2-section-1", user_id=USER) is True
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "completed"
  assert job.progress_percentage == 100.0


@pytest.mark.anyio
async def test_transient_failure_retries_within_the_cap(service, tasks_repo, generation, course_request) -> None:
  generation.fail(_section(1), TransientError("rate limit exceeded", category="api_limit"))

  created = await service.submit(course_request(), user_id=USER)
  async with service.channel.subscribe(created.job_id) as queue:
    await service.engine.wait(created.job_id)

  task = await tasks_repo.get_task_by_identifier(created.job_id, "lesson-1-section-1")
  assert task is not None
  assert task.status == "completed"
  assert task.current_retry_count == 1
  assert task.error_message is None

  events = []
  while not queue.empty():
    events.append(queue.get_nowait())
  retries = [event for event in events if event.event_type == "task_retry"]
  assert len(retries) == 1
  assert retries[0].task_identifier == "lesson-1-section-1"
  assert retries[0].attempt == 1


@pytest.mark.anyio
async def test_skip_failed_task_completes_job_without_its_content(service, jobs_repo, tasks_repo, generation, course_request) -> None:
  generation.fail(_section(3), PermanentError("content rejected by policy"))

  created = await service.submit(course_request(), user_id=USER)
  await service.engine.wait(created.job_id)

  failed = await tasks_repo.get_task_by_identifier(created.job_id, "lesson-3-section-1")
  assert failed is not None
  assert failed.status == "failed"
  assert failed.is_recoverable is False
  assert failed.current_retry_count == 0
  assert len([prompt for prompt in generation.calls_for("lesson_content") if _section(3) in prompt]) == 1

  ack = await service.action(created.job_id, "skip_task", actor_id=USER, task_ids=["lesson-3-section-1"])
  assert ack.affected_tasks == ["lesson-3-section-1"]
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "completed"
  assert job.result_json is not None
  assert job.result_json["missing_tasks"] == ["lesson-3-section-1"]
  lesson_three = next(lesson for lesson in job.result_json["lessons"] if lesson["lesson_index"] == 3)
  assert lesson_three["sections"] == []


@pytest.mark.anyio
async def test_cancel_discards_late_results_of_running_tasks(service, jobs_repo, tasks_repo, generation, course_request, until) -> None:
  first = generation.gate(_section(1))
  second = generation.gate(_section(2))
  created = await service.submit(course_request(), user_id=USER)

  async def both_running() -> bool:
    running = {task.task_identifier for task in await tasks_repo.list_tasks(created.job_id, statuses=("running",))}
    return {"lesson-1-section-1", "lesson-2-section-1"} <= running and generation.active >= 2

  await until(both_running)
  ack = await service.action(created.job_id, "cancel_job", actor_id=USER)
  assert ack.job_status == "cancelled"
  assert {"lesson-1-section-1", "lesson-2-section-1", "finalize"} <= set(ack.affected_tasks)

  first.set()
  second.set()
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "cancelled"
  for identifier in ("lesson-1-section-1", "lesson-2-section-1"):
    task = await tasks_repo.get_task_by_identifier(created.job_id, identifier)
    assert task is not None
    assert task.status == "cancelled"
    assert task.result_json is None
    assert (identifier, "running", "completed") not in tasks_repo.transitions


@pytest.mark.anyio
async def test_pause_fences_in_flight_result_and_resume_finishes(service, jobs_repo, tasks_repo, generation, course_request, until) -> None:
  gate = generation.gate(_section(1))
  created = await service.submit(course_request(), user_id=USER)

  async def blocked() -> bool:
    task = await tasks_repo.get_task_by_identifier(created.job_id, "lesson-1-section-1")
    return task is not None and task.status == "running" and generation.active >= 1

  await until(blocked)
  await service.action(created.job_id, "pause_job", actor_id=USER)
  gate.set()
  await service.engine.wait(created.job_id)

  task = await tasks_repo.get_task_by_identifier(created.job_id, "lesson-1-section-1")
  assert task is not None
  assert task.status == "pending"
  assert task.result_json is None
  job = await jobs_repo.get_job(created.job_id)
  assert job is not None and job.status == "paused"

  await service.action(created.job_id, "resume_job", actor_id=USER)
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None and job.status == "completed"
  assert len([prompt for prompt in generation.calls_for("lesson_content") if _section(1) in prompt]) == 2


@pytest.mark.anyio
async def test_resume_after_crash_resets_orphaned_running_tasks(service, jobs_repo, tasks_repo, generation, course_request, until) -> None:
  first = generation.gate(_section(1))
  second = generation.gate(_section(2))
  created = await service.submit(course_request(), user_id=USER)

  async def both_running() -> bool:
    running = {task.task_identifier for task in await tasks_repo.list_tasks(created.job_id, statuses=("running",))}
    return {"lesson-1-section-1", "lesson-2-section-1"} <= running and generation.active >= 2

  await until(both_running)
  # Simulated crash: the runner disappears while the store still says running.
  await service.engine.shutdown()
  assert not service.engine.is_active(created.job_id)
  orphaned = {task.task_identifier for task in await tasks_repo.list_tasks(created.job_id, statuses=("running",))}
  assert {"lesson-1-section-1", "lesson-2-section-1"} <= orphaned

  first.set()
  second.set()
  await service.resume(created.job_id, user_id=USER)
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "completed"
  for identifier in orphaned:
    assert (identifier, "running", "pending") in tasks_repo.transitions


@pytest.mark.anyio
async def test_progress_events_never_decrease(service, course_request) -> None:
  created = await service.submit(course_request(include_assessments=True, include_media=True), user_id=USER)
  async with service.channel.subscribe(created.job_id) as queue:
    await service.engine.wait(created.job_id)

  events = []
  while not queue.empty():
    events.append(queue.get_nowait())

  progress = [event.overall_progress for event in events]
  assert progress == sorted(progress)
  assert events[0].event_type == "job_started"
  assert events[-1].event_type == "job_completed"
  assert progress[-1] == 100.0


@pytest.mark.anyio
async def test_per_job_concurrency_cap(service, generation, course_request) -> None:
  generation.lessons = 8

  created = await service.submit(course_request(lesson_count=8), user_id=USER)
  await service.engine.wait(created.job_id)

  assert generation.max_active == service.engine.per_job_concurrency == 3
  assert len(generation.calls_for("lesson_content")) == 8


@pytest.mark.anyio
async def test_malformed_generated_outline_fails_job(service, jobs_repo, tasks_repo, generation, course_request) -> None:
  generation.outline_override = {"title": "Broken", "lessons": []}

  created = await service.submit(course_request(), user_id=USER)
  await service.engine.wait(created.job_id)

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None
  assert job.status == "failed"
  assert job.error_summary is not None
  assert [entry["task_identifier"] for entry in job.error_summary["failed_tasks"]] == ["outline"]
  tasks = await tasks_repo.list_tasks(created.job_id)
  assert [task.task_identifier for task in tasks] == ["outline"]
  assert tasks[0].error_category == "structural"


@pytest.mark.anyio
async def test_job_with_skipped_outline_fails_instead_of_hanging(service, jobs_repo, tasks_repo, generation, course_request) -> None:
  gate = generation.gate("course outline")
  created = await service.submit(course_request(), user_id=USER)
  await service.action(created.job_id, "pause_job", actor_id=USER)
  gate.set()
  await service.engine.wait(created.job_id)
  # Rows written before skipping the outline was refused.
  tasks_repo.force(created.job_id, "outline", status="skipped")
  jobs_repo.force(created.job_id, status="processing")

  async with service.channel.subscribe(created.job_id) as queue:
    service.engine.start(created.job_id)
    await service.engine.wait(created.job_id)
    events = [queue.get_nowait() for _ in range(queue.qsize())]

  job = await jobs_repo.get_job(created.job_id)
  assert job is not None and job.status == "failed"
  assert job.error_summary is not None and "outline was skipped" in job.error_summary["message"]
  assert events[-1].event_type == "job_failed"
  assert not service.engine.is_active(created.job_id)


@pytest.mark.anyio
async def test_start_reuses_live_runner(service, generation, course_request) -> None:
  gate = generation.gate("course outline")
  created = await service.submit(course_request(), user_id=USER)

  runner = service.engine.start(created.job_id)
  assert service.engine.start(created.job_id) is runner
  assert service.engine.is_active(created.job_id)

  gate.set()
  await service.engine.wait(created.job_id)
  assert not service.engine.is_active(created.job_id)
