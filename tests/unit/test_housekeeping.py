import pytest
from pathlib import Path
from unittest.mock import patch
from hlsq.infrastructure.housekeeping import HousekeepingService

def test_clear_hls_output(tmp_path):
    (tmp_path / "master.m3u8").write_text("#EXTM3U")
    (tmp_path / "playlist_720p.m3u8").write_text("#EXTM3U")
    (tmp_path / "playlist_720p0.ts").write_bytes(b"ts")
    (tmp_path / "progress.json").write_text("{}")
    (tmp_path / "progress.json.raw").write_text("frame=1")
    (tmp_path / "notes.txt").write_text("keep")
    (tmp_path / "nested").mkdir()

    service = HousekeepingService()
    removed = service.clear_hls_output(tmp_path)

    assert removed == 5
    assert sorted(p.name for p in tmp_path.iterdir()) == ["nested", "notes.txt"]

def test_clear_hls_output_missing_directory(tmp_path):
    assert HousekeepingService().clear_hls_output(tmp_path / "missing") == 0

def test_cleanup_raw_progress(tmp_path):
    (tmp_path / "progress.json.raw").write_text("frame=1")
    (tmp_path / "progress.json").write_text("{}")
    (tmp_path / "clip").mkdir()
    (tmp_path / "clip" / "progress.json.raw").write_text("frame=2")

    service = HousekeepingService()
    service.cleanup_raw_progress(tmp_path)

    assert not (tmp_path / "progress.json.raw").exists()
    assert not (tmp_path / "clip" / "progress.json.raw").exists()
    assert (tmp_path / "progress.json").exists()

def test_housekeeping_handles_oserror(tmp_path):
    f = tmp_path / "segment0.ts"
    f.write_bytes(b"ts")

    service = HousekeepingService()
    with patch.object(Path, 'unlink', side_effect=OSError("Permission denied")):
        # Should not raise exception
        assert service.clear_hls_output(tmp_path) == 0
        service.cleanup_raw_progress(tmp_path)
        assert f.exists()
