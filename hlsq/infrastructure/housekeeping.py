import os
import logging
from pathlib import Path
from hlsq.domain.models import PROGRESS_FILE

HLS_SUFFIXES = (".m3u8", ".ts")

class HousekeepingService:
    """Service for cleaning up HLS output and progress side files."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def clear_hls_output(self, directory: Path) -> int:
        """Removes playlists, segments and progress files from an output directory."""
        directory = Path(directory)
        if not directory.is_dir():
            return 0
        removed = 0
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            if entry.suffix in HLS_SUFFIXES or entry.name.startswith(PROGRESS_FILE):
                try:
                    entry.unlink()
                    removed += 1
                except OSError as e:
                    self.logger.warning(f"Could not remove {entry}: {e}")
        if removed:
            self.logger.info(f"Cleared {removed} files of previous HLS output in {directory}")
        return removed

    def cleanup_raw_progress(self, directory: Path):
        """Recursively removes leftover progress.json.raw files."""
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file == f"{PROGRESS_FILE}.raw":
                    try:
                        (Path(root) / file).unlink()
                    except OSError as e:
                        self.logger.debug(f"Could not remove raw progress file in {root}: {e}")
