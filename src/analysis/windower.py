"""Time-windowing of the source recording and chunk extraction via ffmpeg."""

from __future__ import annotations

import logging
import math
import shutil
import subprocess
import tempfile
from pathlib import Path
from types import TracebackType

from src.analysis.errors import ConfigError, CutError
from src.analysis.models import Chunk

logger = logging.getLogger(__name__)

# Remainders shorter than this are float noise, not a final chunk.
_REMAINDER_EPSILON = 1e-6


def plan_chunks(
    total_duration_seconds: float,
    chunk_length_seconds: float,
) -> list[tuple[float, float]]:
    """Split ``[0, total_duration_seconds]`` into contiguous fixed-length windows.

    Every window but the last is exactly *chunk_length_seconds* long; the last
    one holds the remainder. When the duration is an exact multiple there is
    no short trailing window.

    Args:
        total_duration_seconds: Length of the source recording.
        chunk_length_seconds: Target window length.

    Returns:
        List of ``(start, end)`` offsets in seconds.

    Raises:
        ConfigError: if either argument is not a positive finite number.
    """
    for name, value in (
        ("total_duration_seconds", total_duration_seconds),
        ("chunk_length_seconds", chunk_length_seconds),
    ):
        if not math.isfinite(value) or value <= 0:
            raise ConfigError(f"{name} must be a positive number, got {value}")

    full_chunks = math.floor(total_duration_seconds / chunk_length_seconds)
    remainder = total_duration_seconds - full_chunks * chunk_length_seconds

    windows = [
        (i * chunk_length_seconds, (i + 1) * chunk_length_seconds) for i in range(full_chunks)
    ]

    if remainder > _REMAINDER_EPSILON or not windows:
        windows.append((full_chunks * chunk_length_seconds, total_duration_seconds))
    else:
        # Pin the final boundary to the exact duration.
        windows[-1] = (windows[-1][0], total_duration_seconds)

    return windows


class MediaCutter:
    """Lifecycle-managed handle on the ffmpeg/ffprobe tools.

    Entering the context checks the binaries once and creates a private
    working directory for chunk artifacts; leaving it removes the directory
    and anything still in it.

    Usage::

        with MediaCutter() as cutter:
            duration = cutter.probe_duration(source)
            chunk = cutter.cut(source, 0, 0.0, 300.0)
            ...
            cutter.discard(chunk)
    """

    def __init__(
        self,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        work_dir: Path | None = None,
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._parent_dir = work_dir
        self._work_dir: Path | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> MediaCutter:
        if self._work_dir is not None:
            return self
        for binary in (self._ffmpeg, self._ffprobe):
            if shutil.which(binary) is None:
                raise ConfigError(f"Media tool not found on PATH: {binary}")
        self._run([self._ffmpeg, "-version"], "ffmpeg is not usable")
        self._work_dir = Path(tempfile.mkdtemp(prefix="lesson-chunks-", dir=self._parent_dir))
        logger.info("Media cutter ready (working directory %s)", self._work_dir)
        return self

    def close(self) -> None:
        if self._work_dir is None:
            return
        shutil.rmtree(self._work_dir, ignore_errors=True)
        self._work_dir = None

    def __enter__(self) -> MediaCutter:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def probe_duration(self, source: Path) -> float:
        """Return the container duration of *source* in seconds."""
        result = self._run(
            [
                self._ffprobe,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(source),
            ],
            f"Could not read duration of {source.name}",
        )
        try:
            duration = float(result.stdout.strip())
        except ValueError as exc:
            raise CutError(f"ffprobe returned no usable duration for {source.name}") from exc
        if not math.isfinite(duration) or duration <= 0:
            raise CutError(f"{source.name} has no playable duration ({duration})")
        return duration

    def cut(self, source: Path, index: int, start: float, end: float) -> Chunk:
        """Extract ``[start, end)`` of *source* as a standalone file.

        Streams are copied without re-encoding, so boundaries snap to the
        nearest keyframe.
        """
        work_dir = self._require_open()
        suffix = source.suffix or ".mp4"
        output = work_dir / f"chunk_{index:03d}{suffix}"
        duration = end - start

        # -ss before -i seeks on the input; -c copy skips re-encoding.
        self._run(
            [
                self._ffmpeg,
                "-v", "error",
                "-ss", f"{start:.3f}",
                "-i", str(source),
                "-t", f"{duration:.3f}",
                "-c", "copy",
                "-avoid_negative_ts", "make_zero",
                "-y",
                str(output),
            ],
            f"Failed to cut chunk {index + 1}",
        )
        if not output.exists():
            raise CutError(f"ffmpeg produced no output for chunk {index + 1}")

        return Chunk(
            index=index,
            start_offset_seconds=start,
            end_offset_seconds=end,
            artifact=output,
        )

    def discard(self, chunk: Chunk) -> None:
        """Delete a chunk artifact from working storage."""
        chunk.artifact.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_open(self) -> Path:
        if self._work_dir is None:
            raise RuntimeError("MediaCutter is not open; use it as a context manager")
        return self._work_dir

    def _run(self, command: list[str], message: str) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, errors="replace", check=False
            )
        except OSError as exc:
            raise CutError(f"{message}: {exc}") from exc
        if result.returncode != 0:
            stderr_tail = (result.stderr or "").strip()[-500:]
            raise CutError(
                f"{message} (exit status {result.returncode}): {stderr_tail}",
                returncode=result.returncode,
                stderr=stderr_tail,
            )
        return result
