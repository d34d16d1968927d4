"""Success/failure classification for ffmpeg HLS runs.

ffmpeg has no structured completion signal when its output is piped, and it
may exit non-zero after writing a complete package. The verdict therefore
combines explicit error markers, success markers, the exit code and the
artifacts on disk. Error markers always win.
"""

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional
from hlsq.domain.models import MASTER_PLAYLIST, SINGLE_PLAYLIST

SUCCESS_MARKERS: List[str] = [
    r"video:.*audio:.*subtitle:.*other streams:.*global headers:.*muxing overhead",
    r"muxing overhead:",
    r"Opening '.*master\.m3u8' for writing",
]

ERROR_MARKERS: List[str] = [
    r"No such file or directory",
    r"Permission denied",
    r"Invalid data found",
    r"Conversion failed",
    r"Error opening",
    r"Could not open",
]

class OutcomeTag(str, Enum):
    SUCCESS_MARKER = "success_marker"
    CLEAN_EXIT = "clean_exit"
    ERROR_MARKER = "error_marker"
    NO_ARTIFACTS = "no_artifacts"
    NONZERO_EXIT = "nonzero_exit"

@dataclass(frozen=True)
class Classification:
    tag: OutcomeTag
    marker: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.tag in (OutcomeTag.SUCCESS_MARKER, OutcomeTag.CLEAN_EXIT)

def find_marker(output: str, markers: List[str]) -> Optional[str]:
    for marker in markers:
        if re.search(marker, output, re.IGNORECASE):
            return marker
    return None

def package_exists(output_dir: Path) -> bool:
    """Presence of a master or single playlist is the on-disk 'cache exists' signal."""
    output_dir = Path(output_dir)
    return (output_dir / MASTER_PLAYLIST).exists() or (output_dir / SINGLE_PLAYLIST).exists()

def has_hls_artifacts(output_dir: Path) -> bool:
    """Any playlist written by a run, including per-rendition ones."""
    return package_exists(output_dir) or any(Path(output_dir).glob("playlist_*.m3u8"))

def classify_output(output: str, output_dir: Path, returncode: int) -> Classification:
    error = find_marker(output, ERROR_MARKERS)
    if error:
        return Classification(OutcomeTag.ERROR_MARKER, error)

    if not has_hls_artifacts(output_dir):
        if returncode != 0:
            return Classification(OutcomeTag.NONZERO_EXIT)
        return Classification(OutcomeTag.NO_ARTIFACTS)

    success = find_marker(output, SUCCESS_MARKERS)
    if success:
        return Classification(OutcomeTag.SUCCESS_MARKER, success)
    if returncode == 0:
        return Classification(OutcomeTag.CLEAN_EXIT)
    return Classification(OutcomeTag.NONZERO_EXIT)

def summarize_error(output: str, max_lines: int = 5) -> str:
    """Keeps the actual error lines, dropping ffmpeg banner and build noise."""
    lines = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("ffmpeg version") or line.startswith("lib") or "built with" in line or "configuration:" in line:
            continue
        if any(word in line for word in ("Error", "error", "failed", "Invalid", "No such file", "denied")):
            lines.append(line)
    if not lines:
        return "Unknown error occurred"
    return "\n".join(lines[:max_lines])
