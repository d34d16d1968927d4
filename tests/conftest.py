import pytest
from pathlib import Path
from hlsq.config.models import AppConfig
from hlsq.infrastructure.event_bus import EventBus
from hlsq.infrastructure.job_store import JsonJobStore
from hlsq.infrastructure.storage import LocalStorage
from hlsq.pipeline.job_queue import JobQueue

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig with every path inside tmp_path and no real waiting."""
    return AppConfig(
        queue={"max_concurrent_jobs": 2, "max_attempts": 3},
        tool_lock={
            "lock_dir": str(tmp_path / "locks"),
            "max_concurrency": 4,
            "max_retries": 3,
            "retry_delay_s": 0,
        },
        progress={"poll_interval_s": 0.01},
        worker={"busy_sleep_s": 0, "idle_sleep_s": 0},
        storage={
            "data_root": str(tmp_path / "data"),
            "state_dir": str(tmp_path / "state"),
        },
    )

# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    return EventBus()

@pytest.fixture
def job_store(app_config):
    return JsonJobStore(app_config.queue_path)

@pytest.fixture
def job_queue(job_store, app_config):
    return JobQueue(job_store, max_attempts=app_config.queue.max_attempts)

@pytest.fixture
def storage(app_config):
    return LocalStorage(app_config.storage.data_root)

@pytest.fixture
def make_video(storage):
    """Creates a fake source file in an owner's storage and returns its local path."""
    def _make(owner: str, logical_path: str, content: bytes = b"\x00" * 64) -> Path:
        path = storage.local_path(owner, logical_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path
    return _make

@pytest.fixture
def make_package(storage):
    """Creates a finished HLS package (master playlist) at a logical output path."""
    def _make(owner: str, logical_dir: str, playlist: str = "master.m3u8") -> Path:
        path = storage.local_path(owner, logical_dir)
        path.mkdir(parents=True, exist_ok=True)
        (path / playlist).write_text("#EXTM3U\n")
        return path
    return _make
