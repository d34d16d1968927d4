import fcntl
import itertools
import json
import signal
import pytest
from unittest.mock import MagicMock, patch
from hlsq.domain.events import WorkerStopping
from hlsq.pipeline.supervisor import WorkerSupervisor


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.active_count.return_value = 0
    d.wait_idle.return_value = True
    return d


@pytest.fixture
def bus():
    return MagicMock()


@pytest.fixture
def supervisor(app_config, dispatcher, job_queue, bus, monkeypatch):
    app_config.worker.exit_when_idle = True
    sup = WorkerSupervisor(app_config, dispatcher, job_queue, event_bus=bus)
    # Leave the test runner's own signal handling alone
    monkeypatch.setattr(sup, "install_signal_handlers", lambda: None)
    monkeypatch.setattr(sup, "memory_mb", lambda: 50.0)
    return sup


def _stopping(bus):
    events = [c[0][0] for c in bus.publish.call_args_list if isinstance(c[0][0], WorkerStopping)]
    assert len(events) == 1
    return events[0]


def test_exits_when_idle(supervisor, dispatcher, bus):
    assert supervisor.run() == 0

    dispatcher.run_cycle.assert_called_once()
    dispatcher.wait_idle.assert_called_once()
    dispatcher.shutdown.assert_called_once_with(wait=True)
    assert _stopping(bus).reason == "idle"


def test_keeps_cycling_while_work_is_outstanding(supervisor, dispatcher, job_queue):
    job_queue.enqueue("alice", "clip.mp4", "/")

    def finish_after_three():
        if dispatcher.run_cycle.call_count == 3:
            job_queue.remove(job_queue.snapshot()[0].id, "alice")

    dispatcher.run_cycle.side_effect = finish_after_three

    supervisor.run()

    assert dispatcher.run_cycle.call_count == 3


def test_second_instance_exits_immediately(supervisor, dispatcher, app_config):
    app_config.worker_lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(app_config.worker_lock_path, "a+") as holder:
        fcntl.flock(holder, fcntl.LOCK_EX | fcntl.LOCK_NB)

        assert supervisor.run() == 0

    dispatcher.run_cycle.assert_not_called()
    assert not app_config.liveness_path.exists()


def test_singleton_lock_released_after_run(supervisor, app_config):
    supervisor.run()

    with open(app_config.worker_lock_path, "a+") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)


def test_liveness_file_written_and_removed(supervisor, dispatcher, app_config):
    seen = {}

    def record_liveness():
        seen.update(json.loads(app_config.liveness_path.read_text()))

    dispatcher.run_cycle.side_effect = record_liveness

    supervisor.run()

    assert seen["pid"] > 0
    assert seen["hostname"]
    assert not app_config.liveness_path.exists()


def test_stops_on_signal_request(supervisor, dispatcher, bus, app_config):
    app_config.worker.exit_when_idle = False
    dispatcher.run_cycle.side_effect = lambda: supervisor.request_stop(signal.SIGTERM)

    supervisor.run()

    assert dispatcher.run_cycle.call_count == 1
    assert _stopping(bus).reason == f"signal {signal.SIGTERM}"


def test_stops_at_max_runtime(supervisor, dispatcher, bus, app_config):
    app_config.worker.exit_when_idle = False
    app_config.worker.max_runtime_s = 60

    with patch("hlsq.pipeline.supervisor.time") as mock_time:
        mock_time.time.return_value = 1_700_000_000
        mock_time.monotonic.side_effect = itertools.count(0, 45)
        supervisor.run()

    # 45s passes the first check, 90s does not
    assert dispatcher.run_cycle.call_count == 1
    assert _stopping(bus).reason == "max_runtime"


def test_stops_on_memory_ceiling(supervisor, dispatcher, bus, app_config, monkeypatch):
    app_config.worker.exit_when_idle = False
    monkeypatch.setattr(supervisor, "memory_mb", lambda: 4096.0)

    supervisor.run()

    dispatcher.run_cycle.assert_not_called()
    stopping = _stopping(bus)
    assert stopping.reason == "memory"
    assert "4096MB" in stopping.detail
    dispatcher.wait_idle.assert_called_once()


def test_cycle_errors_do_not_stop_the_loop(supervisor, dispatcher, job_queue):
    job_queue.enqueue("alice", "clip.mp4", "/")
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("queue file busy")
        job_queue.remove(job_queue.snapshot()[0].id, "alice")

    dispatcher.run_cycle.side_effect = flaky

    assert supervisor.run() == 0
    assert calls["n"] == 2


def test_queue_read_errors_after_cycle_do_not_stop_the_loop(supervisor, dispatcher, bus, monkeypatch):
    checks = MagicMock(side_effect=[PermissionError("queue.json.lock"), False])
    monkeypatch.setattr(supervisor.queue, "has_outstanding_work", checks)
    dispatcher.active_count.side_effect = [OSError("state dir gone"), 0, 0]

    assert supervisor.run() == 0
    assert dispatcher.run_cycle.call_count == 3
    assert _stopping(bus).reason == "idle"


def test_install_signal_handlers_registers_term_and_int(app_config, dispatcher, job_queue):
    sup = WorkerSupervisor(app_config, dispatcher, job_queue)

    with patch("hlsq.pipeline.supervisor.signal.signal") as mock_signal:
        mock_signal.return_value = signal.SIG_IGN
        sup.install_signal_handlers()
        sup.restore_signal_handlers()

    registered = {c[0][0] for c in mock_signal.call_args_list}
    assert registered == {signal.SIGTERM, signal.SIGINT}
    # Install, then put the previous handlers back
    assert [c[0][1] for c in mock_signal.call_args_list] == [sup.request_stop] * 2 + [signal.SIG_IGN] * 2
