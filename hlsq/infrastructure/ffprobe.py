import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

class FFprobeAdapter:
    """Wrapper around ffprobe to inspect the streams of a source file."""

    def __init__(self, binary: str = "ffprobe"):
        self.binary = binary
        self.logger = logging.getLogger(__name__)

    def get_streams(self, file_path: Path) -> List[Dict[str, Any]]:
        """Executes ffprobe and returns the parsed stream list."""
        cmd = [
            self.binary,
            "-v", "error",
            "-show_entries", "stream=index,codec_type,codec_name",
            "-of", "json",
            str(file_path),
        ]
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}")
        data = json.loads(result.stdout or "{}")
        return data.get("streams", [])

    def has_audio_stream(self, file_path: Path) -> bool:
        """True if the file has at least one audio stream.

        Probe failures count as 'no audio' so the ladder is still built
        with video only.
        """
        try:
            streams = self.get_streams(file_path)
        except (OSError, RuntimeError, ValueError) as e:
            self.logger.warning(f"Audio probe failed for {file_path.name}: {e}")
            return False
        return any(s.get("codec_type") == "audio" for s in streams)
