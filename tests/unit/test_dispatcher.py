import threading
import time
import pytest
from unittest.mock import MagicMock, patch
from hlsq.domain.errors import JobInputError, TranscodeFailed
from hlsq.domain.events import DispatchCycleFinished, JobAborted, JobCompleted, JobFailed, StaleJobReclaimed
from hlsq.domain.models import JobStatus
from hlsq.pipeline.dispatcher import STALE_JOB_ERROR, Dispatcher


@pytest.fixture
def executor():
    return MagicMock()


@pytest.fixture
def bus():
    return MagicMock()


@pytest.fixture
def dispatcher(job_queue, executor, app_config, bus):
    d = Dispatcher(job_queue, executor, app_config.queue, event_bus=bus)
    yield d
    d.shutdown(wait=True)


def _published(bus, event_type):
    return [c[0][0] for c in bus.publish.call_args_list if isinstance(c[0][0], event_type)]


def test_cycle_respects_concurrency_limit(dispatcher, job_queue, executor):
    release = threading.Event()
    executor.run.side_effect = lambda job: release.wait(5)
    ids = [job_queue.enqueue("alice", f"clip{i}.mp4", "/") for i in range(5)]

    first = dispatcher.run_cycle()
    second = dispatcher.run_cycle()

    assert first.started == ids[:2]
    assert second.started == []
    assert second.active == 2
    assert second.candidates == 3
    statuses = [j.status for j in job_queue.snapshot()]
    assert statuses.count(JobStatus.PROCESSING) == 2

    release.set()
    assert dispatcher.wait_idle(timeout=5)
    assert dispatcher.active_count() == 0
    assert dispatcher.run_cycle().started == ids[2:4]
    assert dispatcher.wait_idle(timeout=5)


def test_successful_job_is_completed(dispatcher, job_queue, bus):
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")

    dispatcher.run_cycle()
    assert dispatcher.wait_idle(timeout=5)

    assert job_queue.get(job_id).status == JobStatus.COMPLETED
    assert [e.job.id for e in _published(bus, JobCompleted)] == [job_id]
    assert _published(bus, DispatchCycleFinished)[0].started == 1


def test_executor_exception_becomes_failed(dispatcher, job_queue, executor, bus):
    executor.run.side_effect = TranscodeFailed("Single HLS generation failed with return code 1")
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")

    updated = dispatcher.run_job(job_id)

    assert updated.status == JobStatus.FAILED
    assert updated.error == "Single HLS generation failed with return code 1"
    assert len(_published(bus, JobFailed)) == 1


def test_unexpected_exception_is_contained(dispatcher, job_queue, executor):
    executor.run.side_effect = KeyError()
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")

    updated = dispatcher.run_job(job_id)

    assert updated.status == JobStatus.FAILED
    assert updated.error == "KeyError"


def test_failed_jobs_are_retried_until_aborted(dispatcher, job_queue, executor, bus):
    executor.run.side_effect = RuntimeError("boom")
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")

    for _ in range(3):
        dispatcher.run_cycle()
        assert dispatcher.wait_idle(timeout=5)

    job = job_queue.get(job_id)
    assert job.status == JobStatus.ABORTED
    assert job.attempts == 3
    assert executor.run.call_count == 3
    assert len(_published(bus, JobAborted)) == 1
    # Aborted jobs are never picked up again
    assert dispatcher.run_cycle().candidates == 0


def test_stale_processing_job_is_reclaimed(dispatcher, job_queue, executor, bus, app_config):
    stuck = job_queue.enqueue("alice", "stuck.mp4", "/")
    job_queue.mark_started(stuck)
    later = time.time() + app_config.queue.stale_after_s + 60

    with patch("hlsq.pipeline.dispatcher.time.time", return_value=later):
        report = dispatcher.run_cycle()
    assert dispatcher.wait_idle(timeout=5)

    assert report.reclaimed == [stuck]
    # The reclaimed job waits for the next cycle
    assert stuck not in report.started
    job = job_queue.get(stuck)
    assert job.status == JobStatus.FAILED
    assert job.error == STALE_JOB_ERROR
    assert len(_published(bus, StaleJobReclaimed)) == 1
    executor.run.assert_not_called()


def test_fresh_processing_job_is_left_alone(dispatcher, job_queue):
    running = job_queue.enqueue("alice", "running.mp4", "/")
    job_queue.mark_started(running)

    report = dispatcher.run_cycle()

    assert report.reclaimed == []
    assert report.active == 1
    assert job_queue.get(running).status == JobStatus.PROCESSING


def test_jobs_in_flight_here_are_never_reclaimed(dispatcher, job_queue, executor, app_config):
    release = threading.Event()
    executor.run.side_effect = lambda job: release.wait(5)
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")
    dispatcher.run_cycle()
    later = time.time() + app_config.queue.stale_after_s + 60

    with patch("hlsq.pipeline.dispatcher.time.time", return_value=later):
        report = dispatcher.run_cycle()

    assert report.reclaimed == []
    release.set()
    assert dispatcher.wait_idle(timeout=5)
    assert job_queue.get(job_id).status == JobStatus.COMPLETED


def test_run_job_ignores_unstartable(dispatcher, job_queue, executor):
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")
    job_queue.mark_started(job_id)

    assert dispatcher.run_job(job_id) is None
    assert dispatcher.run_job("hls_unknown") is None
    executor.run.assert_not_called()


def test_missing_source_at_run_time_consumes_an_attempt(dispatcher, job_queue, executor):
    executor.run.side_effect = JobInputError("Video file not found: path: /clip.mp4")
    job_id = job_queue.enqueue("alice", "clip.mp4", "/")

    updated = dispatcher.run_job(job_id)

    assert updated.status == JobStatus.FAILED
    assert updated.attempts == 1
    assert job_queue.is_retriable(updated)


def test_retried_job_is_demoted_behind_pending_work(dispatcher, job_queue, executor):
    retried = job_queue.enqueue("alice", "c.mp4", "/")
    job_queue.mark_started(retried)
    job_queue.update_status(retried, JobStatus.FAILED, "first failure")
    job_queue.enqueue("alice", "a.mp4", "/")
    job_queue.enqueue("alice", "b.mp4", "/")
    assert [j.source_file.filename for j in job_queue.snapshot()] == ["c.mp4", "a.mp4", "b.mp4"]

    def run(job):
        if job.source_file.filename == "c.mp4":
            raise TranscodeFailed("Adaptive HLS generation failed")

    executor.run.side_effect = run

    report = dispatcher.run_cycle()
    assert dispatcher.wait_idle(timeout=5)

    assert report.started[0] == retried
    jobs = job_queue.snapshot()
    assert [j.source_file.filename for j in jobs] == ["a.mp4", "b.mp4", "c.mp4"]
    c = job_queue.get(retried)
    assert c.status == JobStatus.FAILED
    assert c.attempts == 2
    assert c.error == "Adaptive HLS generation failed"
