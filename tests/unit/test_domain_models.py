import pytest
from pydantic import ValidationError
from hlsq.domain.models import (
    CacheLocation,
    JobSettings,
    JobStatus,
    ProgressRecord,
    Rendition,
    SourceFile,
    TranscodeJob,
)

def test_source_file_paths():
    assert SourceFile(filename="clip.mp4", directory="/videos/").logical_path == "/videos/clip.mp4"
    assert SourceFile(filename="clip.mp4", directory="/").logical_path == "/clip.mp4"
    assert SourceFile(filename="clip.mp4").logical_path == "/clip.mp4"

@pytest.mark.parametrize("filename,base", [
    ("clip.mp4", "clip"),
    ("my.holiday.mov", "my.holiday"),
    ("noext", "noext"),
    (".hidden", ".hidden"),
])
def test_source_file_base_name(filename, base):
    assert SourceFile(filename=filename).base_name == base

def test_job_defaults():
    job = TranscodeJob(owner_id="alice", source_file=SourceFile(filename="clip.mp4"))
    assert job.id.startswith("hls_")
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.settings.cache_location == CacheLocation.RELATIVE
    assert job.error is None

def test_job_ids_are_unique():
    a = TranscodeJob(owner_id="alice", source_file=SourceFile(filename="clip.mp4"))
    b = TranscodeJob(owner_id="alice", source_file=SourceFile(filename="clip.mp4"))
    assert a.id != b.id

def test_job_matches():
    job = TranscodeJob(owner_id="alice", source_file=SourceFile(filename="clip.mp4", directory="/v"))
    assert job.matches("alice", "clip.mp4", "/v")
    assert not job.matches("bob", "clip.mp4", "/v")
    assert not job.matches("alice", "clip.mp4", "/w")

def test_terminal_statuses():
    assert {s for s in JobStatus if s.is_terminal} == {JobStatus.COMPLETED, JobStatus.ABORTED}

def test_invalid_status():
    with pytest.raises(ValidationError):
        TranscodeJob(owner_id="alice", source_file=SourceFile(filename="a.mp4"), status="running")

def test_custom_location_requires_path():
    with pytest.raises(ValidationError):
        JobSettings(cache_location="custom")
    assert JobSettings(cache_location="custom", custom_path="/mnt").custom_path == "/mnt"

def test_rendition_resolution_format():
    assert Rendition(resolution="1280x720", maxrate="1k", bufsize="1k", crf=23).preset == "superfast"
    with pytest.raises(ValidationError):
        Rendition(resolution="1280:720", maxrate="1k", bufsize="1k", crf=23)
    with pytest.raises(ValidationError):
        Rendition(resolution="1280x720", maxrate="1k", bufsize="1k", crf=60)

def test_progress_record_bounds():
    with pytest.raises(ValidationError):
        ProgressRecord(progress=101)
    assert ProgressRecord().status.value == "processing"
