import subprocess
import logging
import time
import threading
import queue
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional
from hlsq.config.models import FFmpegConfig, ProgressConfig
from hlsq.domain.errors import TranscodeFailed
from hlsq.domain.models import MASTER_PLAYLIST, SINGLE_PLAYLIST, Rendition

@dataclass
class ToolRun:
    returncode: int
    output: str
    elapsed_s: float = 0.0

class FFmpegAdapter:
    """Wrapper around ffmpeg for HLS packaging."""

    def __init__(self, config: FFmpegConfig, progress_config: Optional[ProgressConfig] = None):
        self.config = config
        self.progress_config = progress_config or ProgressConfig()
        self.logger = logging.getLogger(__name__)

    def _input_args(self, input_path: Path) -> List[str]:
        cmd = [self.config.binary, "-y"]
        ext = input_path.suffix.lower()
        if ext == ".mov":
            # QuickTime files often need deeper probing
            cmd.extend(["-probesize", "50M", "-analyzeduration", "100M"])
        cmd.extend([
            "-fflags", "+genpts+discardcorrupt",
            "-avoid_negative_ts", "make_zero",
            "-i", str(input_path),
        ])
        if ext == ".mp4":
            cmd.extend(["-threads", "2", "-g", "180", "-keyint_min", "60"])
        elif ext == ".mov":
            cmd.extend(["-threads", "4"])
        else:
            cmd.extend(["-threads", "2"])
        return cmd

    def _hls_args(self) -> List[str]:
        return [
            "-f", "hls",
            "-hls_time", str(self.config.hls_time),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
        ]

    def select_renditions(self, names: List[str]) -> Dict[str, Rendition]:
        """Keeps the requested ladder rungs that exist, in request order."""
        selected: Dict[str, Rendition] = {}
        for name in names:
            rendition = self.config.renditions.get(name)
            if rendition is not None and name not in selected:
                selected[name] = rendition
        return selected

    def build_adaptive_command(
        self,
        input_path: Path,
        output_dir: Path,
        renditions: Dict[str, Rendition],
        has_audio: bool,
        progress_path: Optional[Path] = None,
    ) -> List[str]:
        """One video (+audio) stream pair per rendition, muxed into a master playlist."""
        cmd = self._input_args(input_path)
        stream_maps = []
        for index, (name, r) in enumerate(renditions.items()):
            cmd.extend([
                "-map", "0:v:0",
                f"-c:v:{index}", "libx264",
                f"-preset:v:{index}", r.preset,
                f"-crf:v:{index}", str(r.crf),
                f"-maxrate:v:{index}", r.maxrate,
                f"-bufsize:v:{index}", r.bufsize,
                f"-s:v:{index}", r.resolution,
                f"-profile:v:{index}", r.profile,
            ])
            if r.level:
                cmd.extend([f"-level:v:{index}", r.level])
            if r.tune:
                cmd.extend([f"-tune:v:{index}", r.tune])
            if has_audio:
                cmd.extend([
                    "-map", "0:a:0",
                    f"-c:a:{index}", "aac",
                    f"-b:a:{index}", self.config.audio_bitrate,
                ])
                stream_maps.append(f"v:{index},a:{index},name:{name}")
            else:
                stream_maps.append(f"v:{index},name:{name}")

        cmd.extend(self._hls_args())
        cmd.extend([
            "-master_pl_name", MASTER_PLAYLIST,
            "-var_stream_map", " ".join(stream_maps),
        ])
        if progress_path is not None:
            cmd.extend(["-progress", str(progress_path)])
        cmd.append(str(output_dir / "playlist_%v.m3u8"))
        return cmd

    def build_single_command(
        self,
        input_path: Path,
        output_dir: Path,
        has_audio: bool,
        progress_path: Optional[Path] = None,
    ) -> List[str]:
        """Fixed-quality single playlist, used when the ladder fails."""
        r = self.config.fallback_rendition
        cmd = self._input_args(input_path)
        cmd.extend([
            "-c:v", "libx264",
            "-preset", r.preset,
            "-crf", str(r.crf),
            "-maxrate", r.maxrate,
            "-bufsize", r.bufsize,
            "-s", r.resolution,
        ])
        if has_audio:
            cmd.extend(["-c:a", "aac", "-b:a", self.config.audio_bitrate])
        else:
            cmd.append("-an")
        cmd.extend(self._hls_args())
        if progress_path is not None:
            cmd.extend(["-progress", str(progress_path)])
        cmd.append(str(output_dir / SINGLE_PLAYLIST))
        return cmd

    def run(self, cmd: List[str], on_tick: Optional[Callable[[], None]] = None) -> ToolRun:
        """Runs ffmpeg to completion, calling ``on_tick`` every poll interval.

        Only the tail of the combined stdout/stderr is kept.
        """
        interval = self.progress_config.poll_interval_s
        tail_budget = self.progress_config.output_tail_bytes
        start = time.monotonic()
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            self.logger.error(f"Failed to start FFmpeg process: {e}")
            raise TranscodeFailed(f"Failed to start FFmpeg process: {e}") from e

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            try:
                if process.stdout:
                    for line in process.stdout:
                        output_queue.put(line)
            except (OSError, ValueError) as e:
                self.logger.warning(f"FFmpeg output reader stopped: {e}")
            finally:
                output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        tail: "deque[str]" = deque()
        tail_size = 0
        last_tick = time.monotonic()

        def _tick():
            if on_tick is None:
                return
            try:
                on_tick()
            except Exception as e:
                self.logger.warning(f"Progress callback failed: {e}")

        while True:
            try:
                line = output_queue.get(timeout=interval)
            except queue.Empty:
                _tick()
                last_tick = time.monotonic()
                if process.poll() is not None and not reader_thread.is_alive():
                    break
                continue

            if line is None:
                break

            tail.append(line)
            tail_size += len(line)
            while tail_size > tail_budget and len(tail) > 1:
                tail_size -= len(tail.popleft())

            if time.monotonic() - last_tick >= interval:
                _tick()
                last_tick = time.monotonic()

        process.wait()
        _tick()

        elapsed = time.monotonic() - start
        returncode = process.returncode if isinstance(process.returncode, int) else -1
        self.logger.debug(f"FFMPEG_END: code={returncode} elapsed={elapsed:.2f}s")
        return ToolRun(returncode=returncode, output="".join(tail), elapsed_s=elapsed)
