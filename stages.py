"""Pipeline stages: ffmpeg frame extraction, rife interpolation, ffmpeg encode.

Each stage spawns one supervised process, turns its output into progress and
log events, and either returns the number of frames it produced or raises a
``StageError``.
"""

from __future__ import annotations

import platform
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, Union

from app_settings import PipelineSettings
from frame_progress import (
    DirectoryProgress,
    FrameCounterProgress,
    StageBand,
    count_files_in_dir,
    overall_percent,
)
from job_events import JobReporter
from media_probe import estimate_total_frames, probe_duration_and_fps
from pipeline_errors import NoOutputProduced, ProcessExitFailure
from supervisor import SupervisedProcess, spawn
from toolchain import compute_rife_cwd_and_model_arg
from tracing import traced

FRAME_NAME_FORMAT = "%08d"
INTERPOLATED_FRAME_PATTERN = f"{FRAME_NAME_FORMAT}.png"
AAC_CONTAINERS = ("mp4", "mov", "m4v")


class Stage(str, Enum):
    EXTRACT = "extract"
    INTERPOLATE = "interpolate"
    ENCODE = "encode"


STAGE_LABELS = {
    Stage.EXTRACT: "Extracting frames…",
    Stage.INTERPOLATE: "Interpolating (RIFE)…",
    Stage.ENCODE: "Encoding video…",
}


def frame_pattern(frames_dir: Path, ext: str) -> Path:
    return frames_dir / f"{FRAME_NAME_FORMAT}.{ext}"


def default_hwaccel() -> Optional[str]:
    """ffmpeg hardware decoder for the current platform, if any."""
    system = platform.system().lower()
    if system == "darwin":
        return "videotoolbox"
    if system == "windows":
        return "d3d11va"
    return None


@dataclass
class StageContext:
    reporter: JobReporter
    settings: PipelineSettings
    bands: dict[str, StageBand]
    cancel: threading.Event

    def band(self, stage: Stage) -> StageBand:
        return self.bands[stage.value]

    def overall(self, stage: Stage, local_percent: float) -> float:
        """Map a 0-100 percentage within ``stage`` onto the whole job."""
        return overall_percent(self.bands, stage.value, local_percent)

    def wait(self, proc: SupervisedProcess, on_tick=None) -> int:
        return proc.wait(
            cancel=self.cancel,
            poll_interval=self.settings.poll_interval,
            on_tick=on_tick,
            grace_seconds=self.settings.cancel_grace_seconds,
        )


# ── Command builders ──────────────────────────────────────────────────────────


def build_extract_command(
    ffmpeg: Path,
    input_video: Path,
    pattern: Path,
    *,
    jpeg_quality: int = 2,
    hwaccel: Optional[str] = None,
) -> list[str]:
    cmd = [
        str(ffmpeg),
        "-hide_banner",
        "-y",
        "-nostdin",
        "-loglevel",
        "error",
        "-stats_period",
        "0.5",
    ]
    if hwaccel:
        cmd.extend(["-hwaccel", hwaccel])
    cmd.extend(
        [
            "-i",
            str(input_video),
            "-fps_mode",
            "passthrough",
            "-progress",
            "pipe:1",
            "-threads",
            "0",
        ]
    )
    if pattern.suffix.lower() in (".jpg", ".jpeg"):
        # JPEG frames are much faster to write and read back than PNG.
        cmd.extend(["-c:v", "mjpeg", "-q:v", str(jpeg_quality)])
    cmd.append(str(pattern))
    return cmd


def build_rife_command(
    rife_bin: Path,
    input_dir: Path,
    output_dir: Path,
    model_arg: str,
    thread_spec: str,
) -> list[str]:
    return [
        str(rife_bin),
        "-v",
        "-i",
        str(input_dir),
        "-o",
        str(output_dir),
        "-m",
        model_arg,
        "-f",
        INTERPOLATED_FRAME_PATTERN,
        "-j",
        thread_spec,
    ]


def get_audio_flags(output: Path, audio_bitrate: str) -> list[str]:
    """AAC for MP4-family containers, stream copy for everything else."""
    ext = output.suffix.lower().lstrip(".")
    if ext in AAC_CONTAINERS:
        return ["-c:a", "aac", "-b:a", audio_bitrate]
    return ["-c:a", "copy"]


def build_encode_command(
    ffmpeg: Path,
    pattern: Path,
    output: Path,
    *,
    framerate: float,
    settings: PipelineSettings,
    audio_source: Optional[Path] = None,
    max_threads: int = 0,
) -> list[str]:
    cmd = [str(ffmpeg), "-hide_banner", "-y"]
    if max_threads > 0:
        cmd.extend(["-threads", str(max_threads)])
    cmd.extend(
        [
            "-progress",
            "pipe:1",
            "-nostats",
            "-framerate",
            f"{framerate:.6f}",
            "-i",
            str(pattern),
        ]
    )
    if audio_source is not None:
        cmd.extend(["-i", str(audio_source), "-map", "0:v:0", "-map", "1:a:0?"])

    cmd.extend(
        [
            "-c:v",
            settings.video_codec,
            "-preset",
            settings.encode_preset,
            "-crf",
            str(settings.encode_crf),
            "-pix_fmt",
            settings.pixel_format,
        ]
    )
    if audio_source is not None:
        cmd.extend(get_audio_flags(output, settings.audio_bitrate))
        cmd.append("-shortest")
    cmd.append(str(output))
    return cmd


def _quote(cmd: Sequence[Union[str, Path]]) -> str:
    return " ".join(str(part) for part in cmd)


# ── Stage runners ─────────────────────────────────────────────────────────────


def _run_ffmpeg_with_progress(
    ctx: StageContext,
    stage: Stage,
    cmd: list[str],
    total_frames: int,
    failure_message: str,
) -> None:
    tracker = FrameCounterProgress(
        total_frames,
        lambda pct: ctx.reporter.progress(ctx.overall(stage, pct)),
        interval=ctx.settings.progress_interval,
    )
    proc = spawn(
        cmd,
        on_stdout=tracker.feed,
        on_stderr=ctx.reporter.log,
        tail_lines=ctx.settings.stderr_tail_lines,
        label="ffmpeg",
    )
    status = ctx.wait(proc)
    if status != 0:
        raise ProcessExitFailure(
            "ffmpeg",
            status,
            proc.stderr_tail.lines(),
            fallback=failure_message,
        )


@traced
def run_extract_stage(
    ctx: StageContext,
    *,
    ffmpeg: Path,
    input_video: Path,
    frames_dir: Path,
    image_ext: str,
    hwaccel: Optional[str] = None,
) -> int:
    """Extract every frame of ``input_video`` into ``frames_dir``."""
    reporter = ctx.reporter
    reporter.log(f"FFmpeg: {ffmpeg}")
    reporter.log(f"Input: {input_video}")
    reporter.log(f"Frames folder: {frames_dir}")
    reporter.log(f"Extract format: {image_ext}")

    total_frames = estimate_total_frames(probe_duration_and_fps(ffmpeg, input_video))
    if total_frames > 0:
        reporter.log(f"Estimated frames: {total_frames}")

    cmd = build_extract_command(
        ffmpeg,
        input_video,
        frame_pattern(frames_dir, image_ext),
        jpeg_quality=ctx.settings.extract_jpeg_quality,
        hwaccel=hwaccel,
    )
    _run_ffmpeg_with_progress(ctx, Stage.EXTRACT, cmd, total_frames, "Frame extraction failed")

    frame_count = count_files_in_dir(frames_dir)
    if frame_count <= 0:
        raise NoOutputProduced("No frames were extracted")

    ctx.reporter.progress(ctx.overall(Stage.EXTRACT, 100.0))
    reporter.log(f"Frames extracted: {frame_count}")
    return frame_count


@traced
def run_interpolate_stage(
    ctx: StageContext,
    *,
    rife_bin: Path,
    model_dir: Path,
    input_dir: Path,
    output_dir: Path,
    thread_spec: str,
    input_frames: int,
) -> int:
    """Run rife-ncnn-vulkan over ``input_dir``, polling ``output_dir`` for progress."""
    reporter = ctx.reporter
    reporter.log("Starting RIFE (GPU/Vulkan)…")
    reporter.log(f"RIFE: {rife_bin}")
    reporter.log(f"Model dir: {model_dir}")
    reporter.log(f"Threads (-j): {thread_spec}")

    cwd, model_arg = compute_rife_cwd_and_model_arg(rife_bin, model_dir)
    if cwd is not None:
        reporter.log(f"Working dir: {cwd}")
    reporter.log(f"Model arg (-m): {model_arg}")

    cmd = build_rife_command(rife_bin, input_dir, output_dir, model_arg, thread_spec)
    poller = DirectoryProgress(
        output_dir,
        input_frames,
        ctx.band(Stage.INTERPOLATE),
        factor=ctx.settings.interpolation_factor,
    )

    def tick() -> None:
        pct = poller.sample()
        if pct is not None:
            reporter.progress(pct)

    proc = spawn(
        cmd,
        cwd=cwd,
        on_stdout=reporter.log,
        on_stderr=reporter.log,
        tail_lines=ctx.settings.stderr_tail_lines,
        label="RIFE",
    )
    status = ctx.wait(proc, on_tick=tick)
    if status != 0:
        raise ProcessExitFailure("RIFE", status, proc.stderr_tail.lines(), fallback="RIFE failed")

    produced = count_files_in_dir(output_dir)
    if produced <= 0:
        raise NoOutputProduced("RIFE produced no output frames")

    reporter.progress(ctx.overall(Stage.INTERPOLATE, 100.0))
    reporter.log(f"Interpolated frames: {produced}")
    return produced


@traced
def run_encode_stage(
    ctx: StageContext,
    *,
    ffmpeg: Path,
    frames_dir: Path,
    output: Path,
    framerate: float,
    audio_source: Optional[Path] = None,
    max_threads: int = 0,
    failure_message: str = "Encoding failed",
) -> int:
    """Encode ``frames_dir/%08d.png`` into ``output``, muxing source audio if any."""
    reporter = ctx.reporter
    total_frames = count_files_in_dir(frames_dir)
    reporter.log(f"Frames: {frames_dir} ({total_frames} files)")
    reporter.log(f"Output framerate: {framerate:.3f} fps")

    cmd = build_encode_command(
        ffmpeg,
        frame_pattern(frames_dir, "png"),
        output,
        framerate=framerate,
        settings=ctx.settings,
        audio_source=audio_source,
        max_threads=max_threads,
    )
    reporter.log(f"$ {_quote(cmd)}")
    _run_ffmpeg_with_progress(ctx, Stage.ENCODE, cmd, total_frames, failure_message)

    if not output.is_file() or output.stat().st_size == 0:
        raise NoOutputProduced(f"Encoder produced no output file: {output}")
    return total_frames
