"""Duration and frame-rate probing through the ffprobe next to ffmpeg."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from toolchain import companion_binary, run_subprocess

PROBE_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class MediaInfo:
    duration_seconds: float
    fps: float


def parse_framerate(value: str) -> Optional[float]:
    """Parse ffprobe framerate strings like ``30000/1001``.

    Returns None for anything unparseable. A zero denominator yields 0.0,
    which callers treat the same as unknown.
    """
    text = (value or "").strip()
    if not text:
        return None

    try:
        if "/" in text:
            num, den = text.split("/", maxsplit=1)
            numerator = float(num)
            denominator = float(den)
            if denominator == 0:
                return 0.0
            return numerator / denominator
        return float(text)
    except ValueError:
        return None


def ffprobe_for(ffmpeg: Path) -> Path:
    return companion_binary(Path(ffmpeg), "ffprobe")


def _probe_value(ffprobe: Path, args: list[str]) -> Optional[str]:
    try:
        result = run_subprocess(
            [ffprobe, "-v", "error", *args],
            check=False,
            capture_output=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return (result.stdout or "").strip()


def probe_duration_and_fps(ffmpeg: Path, input_video: Path) -> Optional[MediaInfo]:
    """Return duration and frame rate of ``input_video``, or None if unknown."""
    ffprobe = ffprobe_for(ffmpeg)
    if not ffprobe.exists():
        return None

    duration_text = _probe_value(
        ffprobe,
        [
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(input_video),
        ],
    )
    if duration_text is None:
        return None
    try:
        duration = float(duration_text)
    except ValueError:
        return None

    fps_text = _probe_value(
        ffprobe,
        [
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=r_frame_rate",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(input_video),
        ],
    )
    if fps_text is None:
        return None
    fps = parse_framerate(fps_text)
    if fps is None:
        return None

    return MediaInfo(duration_seconds=duration, fps=fps)


def estimate_total_frames(info: Optional[MediaInfo]) -> int:
    """Estimated frame count, 0 when duration or fps is unknown."""
    if info is None or info.duration_seconds <= 0 or info.fps <= 0:
        return 0
    return int(round(info.duration_seconds * info.fps))


def output_framerate(info: Optional[MediaInfo], default_fps: float, factor: float = 2.0) -> float:
    """Frame rate for re-encoding interpolated frames of ``info``'s source."""
    source_fps = info.fps if info is not None else default_fps
    return max(source_fps * factor, 1.0)
