"""Request surface: tool management and job requests.

Every request validates synchronously. Job requests then hand the work to the
``JobRunner`` and return a ``JobAccepted`` acknowledgement right away; any
later failure arrives only as a ``pipeline_done`` event.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from app_settings import PipelineSettings, load_settings
from job_events import EventBus, Listener
from job_runner import Job, JobHandle, JobKind, JobRunner, make_job_id
from pipeline_errors import (
    EmptyRequiredField,
    InvalidInputPath,
    ModelNotFound,
    ToolNotInstalled,
    ValidationError,
)
from stages import INTERPOLATED_FRAME_PATTERN, default_hwaccel, frame_pattern
from toolchain import (
    FFMPEG,
    LIVE_FS,
    RIFE,
    TOOL_KINDS,
    FileSystemView,
    ToolRegistry,
    build_thread_spec,
    max_threads_string,
    preferred_system_ffmpeg,
    resolve_model_path,
    run_subprocess,
)

VALIDATE_TIMEOUT_SECONDS = 30.0
EXTRACT_IMAGE_EXT = "jpg"
SMOOTH_IMAGE_EXT = "png"


@dataclass(frozen=True)
class ToolValidation:
    ok: bool
    path: Optional[str]
    output: str


@dataclass(frozen=True)
class ValidateToolsResult:
    ffmpeg: ToolValidation
    rife: ToolValidation


@dataclass(frozen=True)
class JobAccepted:
    """Acknowledgement that a job passed validation and was started."""

    job_id: str
    frames_dir: str
    frame_pattern: str
    output: str
    handle: JobHandle = field(compare=False, repr=False)
    ok: bool = True


def _make_runnable(path: Path) -> None:
    if os.name != "posix":
        return
    path.chmod(0o755)


def _required_text(value: Optional[str], field_name: str, message: Optional[str] = None) -> str:
    text = (value or "").strip()
    if not text:
        raise EmptyRequiredField(field_name, message)
    return text


def _existing_path(value: Optional[str], field_name: str, missing_message: str) -> Path:
    path = Path(_required_text(value, field_name))
    if not path.exists():
        raise InvalidInputPath(missing_message, path)
    return path.resolve()


def _make_dir(path: Path, label: str) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise InvalidInputPath(f"Failed to create {label} dir: {exc}", path) from exc
    return path


def run_and_capture(cmd: list[Union[str, Path]]) -> ToolValidation:
    """Run a diagnostic command and fold stdout and stderr into one text."""
    try:
        result = run_subprocess(
            cmd,
            check=False,
            capture_output=True,
            timeout=VALIDATE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return ToolValidation(ok=False, path=None, output=f"Failed to run: {exc}")

    parts = [text for text in (result.stdout, result.stderr) if text]
    return ToolValidation(
        ok=result.returncode == 0,
        path=None,
        output="\n".join(parts).strip(),
    )


class App:
    """The operations a desktop front end invokes."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        bus: Optional[EventBus] = None,
        fs: FileSystemView = LIVE_FS,
    ) -> None:
        self.settings = settings or load_settings()
        # rife runs from its own folder, so every tool path must be absolute.
        self.root = Path(os.path.abspath(self.settings.app_root))
        self.fs = fs
        self.registry = ToolRegistry(self.root, fs)
        self.runner = JobRunner(self.settings, bus)

    @property
    def bus(self) -> EventBus:
        return self.runner.bus

    def subscribe(self, listener: Listener):
        return self.bus.subscribe(listener)

    # ── Layout ────────────────────────────────────────────────────────────

    def layout_dirs(self) -> list[Path]:
        root = self.root
        return [
            root,
            root / "bin" / FFMPEG,
            root / "bin" / RIFE,
            root / "models",
            root / "temp",
            root / "cache",
        ]

    def ensure_dirs(self) -> None:
        for directory in self.layout_dirs():
            _make_dir(directory, directory.name)

    def app_paths(self) -> list[str]:
        self.ensure_dirs()
        return [str(path) for path in self.layout_dirs()]

    # ── Environment and tools ─────────────────────────────────────────────

    def check_environment(self) -> str:
        return f"Environment OK | OS: {platform.system().lower()} | ARCH: {platform.machine().lower()}"

    def max_threads_string(self) -> str:
        return max_threads_string()

    def tool_status(self, tool: str) -> str:
        return self.registry.status(tool)

    def default_model_dir(self) -> Optional[str]:
        self.ensure_dirs()
        rife = self.registry.rife()
        if rife is None or rife.model_dir is None:
            return None
        return str(rife.model_dir)

    def install_tool(self, source_path: str, tool: str, version: str) -> str:
        """Copy a tool build into ``bin/<tool>/<version>`` and return where it landed."""
        tool = _required_text(tool, "tool")
        version = _required_text(version, "version")
        if tool not in TOOL_KINDS:
            raise ValidationError(f"Unknown tool: {tool}")
        if Path(version).name != version or version in (".", ".."):
            raise ValidationError(f"Invalid version folder name: {version}")

        src = Path(_required_text(source_path, "source path"))
        if not src.exists():
            raise InvalidInputPath("Source path does not exist", src)

        self.ensure_dirs()
        dest_dir = _make_dir(self.root / "bin" / tool / version, "install")

        if src.is_dir():
            # Folder installs carry the binary plus its model folders.
            shutil.copytree(src, dest_dir, dirs_exist_ok=True)
            for copied in dest_dir.rglob("*"):
                if copied.is_file():
                    _make_runnable(copied)
            return str(dest_dir)

        dest = dest_dir / src.name
        shutil.copy2(src, dest)
        _make_runnable(dest)
        return str(dest)

    def validate_tools(self) -> ValidateToolsResult:
        self.ensure_dirs()
        ffmpeg_install = self.registry.ffmpeg()
        rife_install = self.registry.rife()

        if ffmpeg_install is not None:
            checked = run_and_capture([ffmpeg_install.binary, "-version"])
            ffmpeg = ToolValidation(ok=checked.ok, path=str(ffmpeg_install.binary), output=checked.output)
        else:
            ffmpeg = ToolValidation(
                ok=False,
                path=None,
                output="ffmpeg not installed (no binary found in app-managed bin/ffmpeg)",
            )

        if rife_install is not None:
            checked = run_and_capture([rife_install.binary, "-h"])
            models_found = rife_install.model_dir is not None
            if models_found:
                models_note = f"Models: {rife_install.model_dir}"
            else:
                models_note = (
                    "Models: NOT FOUND (expected a folder like 'rife-v2.3', 'rife-v4', etc. "
                    "next to the RIFE binary)"
                )
            output = f"{models_note}\n\n{checked.output}" if checked.output else models_note
            # Some builds exit nonzero for -h; usage text still means it runs.
            usage_like = "Usage:" in output
            rife = ToolValidation(
                ok=models_found and (checked.ok or usage_like),
                path=str(rife_install.binary),
                output=output,
            )
        else:
            rife = ToolValidation(
                ok=False,
                path=None,
                output="RIFE not installed (no 'rife*' binary found in app-managed bin/rife)",
            )

        return ValidateToolsResult(ffmpeg=ffmpeg, rife=rife)

    def resolve_ffmpeg(self) -> Path:
        if self.settings.prefer_system_ffmpeg:
            system_ffmpeg = preferred_system_ffmpeg(fs=self.fs)
            if system_ffmpeg is not None:
                return system_ffmpeg
        installed = self.registry.ffmpeg()
        if installed is None:
            raise ToolNotInstalled(FFMPEG)
        return installed.binary

    def _thread_spec(self, hint: Optional[Union[int, str]]) -> str:
        return build_thread_spec(
            hint,
            default=self.settings.default_thread_spec,
            minimum=self.settings.min_threads,
            maximum=self.settings.max_threads,
        )

    def _temp_job_dir(self, kind: str, job_id: str) -> Path:
        return self.root / "temp" / kind / job_id

    def _accept(self, job: Job) -> JobAccepted:
        handle = self.runner.start(job)
        return JobAccepted(
            job_id=job.id,
            frames_dir=str(job.frames_dir),
            frame_pattern=str(job.frame_pattern),
            output=str(job.output) if job.output is not None else "",
            handle=handle,
        )

    # ── Job requests ──────────────────────────────────────────────────────

    def extract_frames(self, video_path: str) -> JobAccepted:
        """Extract all frames of a video as JPEGs under ``temp/frames_in``."""
        self.runner.ensure_idle()
        self.ensure_dirs()
        ffmpeg = self.resolve_ffmpeg()
        input_video = _existing_path(video_path, "video path", "Input video does not exist")

        job_id = make_job_id()
        frames_dir = _make_dir(self._temp_job_dir("frames_in", job_id), "frames_in")
        job = Job(
            id=job_id,
            kind=JobKind.EXTRACT,
            frames_dir=frames_dir,
            frame_pattern=frame_pattern(frames_dir, EXTRACT_IMAGE_EXT),
            input_video=input_video,
            ffmpeg=ffmpeg,
            frames_in_dir=frames_dir,
            image_ext=EXTRACT_IMAGE_EXT,
            hwaccel=default_hwaccel(),
        )
        return self._accept(job)

    def smooth_video(
        self,
        video_path: str,
        output_path: str,
        max_threads: Optional[int] = None,
    ) -> JobAccepted:
        """Extract, interpolate, and re-encode ``video_path`` into ``output_path``."""
        self.runner.ensure_idle()
        self.ensure_dirs()
        ffmpeg = self.resolve_ffmpeg()
        rife_install = self.registry.rife()
        if rife_install is None:
            raise ToolNotInstalled(RIFE)
        if rife_install.model_dir is None:
            raise ModelNotFound("RIFE models folder not found (install rife first)")

        input_video = _existing_path(video_path, "video path", "Input video does not exist")
        output = Path(_required_text(output_path, "output path", "Output path is required")).resolve()

        job_id = make_job_id()
        frames_in = _make_dir(self._temp_job_dir("frames_in", job_id), "frames_in")
        frames_out = _make_dir(self._temp_job_dir("frames_out", job_id), "frames_out")

        job = Job(
            id=job_id,
            kind=JobKind.SMOOTH,
            frames_dir=frames_out,
            frame_pattern=frames_out / INTERPOLATED_FRAME_PATTERN,
            input_video=input_video,
            output=output,
            ffmpeg=ffmpeg,
            rife=rife_install.binary,
            model_dir=rife_install.model_dir,
            frames_in_dir=frames_in,
            frames_out_dir=frames_out,
            image_ext=SMOOTH_IMAGE_EXT,
            thread_spec=self._thread_spec(max_threads),
        )
        return self._accept(job)

    def reencode_only(
        self,
        video_path: str,
        output_path: str,
        frames_dir: Optional[str],
        max_threads: Optional[int] = None,
        fps: Optional[float] = None,
    ) -> JobAccepted:
        """Encode an existing ``%08d.png`` folder, muxing the source video's audio."""
        self.runner.ensure_idle()
        self.ensure_dirs()
        ffmpeg = self.resolve_ffmpeg()
        input_video = _existing_path(video_path, "video path", "Input video does not exist")
        output = Path(_required_text(output_path, "output path", "Output path is required")).resolve()
        frames_text = _required_text(
            frames_dir, "frames folder", "Frames folder is required for re-encode only"
        )
        frames = _existing_path(frames_text, "frames folder", "Frames folder does not exist")
        if fps is not None and fps <= 0:
            raise ValidationError("Frame rate override must be > 0.")

        job = Job(
            id=make_job_id(),
            kind=JobKind.REENCODE,
            frames_dir=frames,
            frame_pattern=frames / INTERPOLATED_FRAME_PATTERN,
            input_video=input_video,
            output=output,
            ffmpeg=ffmpeg,
            frames_out_dir=frames,
            max_threads=max(int(max_threads or 0), 0),
            fps_override=fps,
        )
        return self._accept(job)

    def run_interpolation(
        self,
        input_frames: str,
        output_frames: str,
        model_dir: Optional[str] = None,
        threads: Optional[Union[int, str]] = None,
    ) -> JobAccepted:
        """Run only the rife stage over an existing frames folder."""
        self.runner.ensure_idle()
        self.ensure_dirs()
        rife_install = self.registry.rife()
        if rife_install is None:
            raise ToolNotInstalled(RIFE)

        model_text = (model_dir or "").strip()
        if model_text:
            model_path = resolve_model_path(model_text, self.fs)
        elif rife_install.model_dir is not None:
            model_path = rife_install.model_dir
        else:
            raise ModelNotFound("RIFE models folder not found (install rife first)")
        if not self.fs.exists(model_path):
            raise ModelNotFound(f"Model path does not exist: {model_path}")
        model_path = Path(os.path.abspath(model_path))

        in_dir = _existing_path(input_frames, "input frames", "Input frames dir does not exist")
        out_text = _required_text(output_frames, "output frames")
        out_dir = _make_dir(Path(out_text), "output frames").resolve()

        job = Job(
            id=make_job_id(),
            kind=JobKind.INTERPOLATE,
            frames_dir=out_dir,
            frame_pattern=out_dir / INTERPOLATED_FRAME_PATTERN,
            rife=rife_install.binary,
            model_dir=model_path,
            frames_in_dir=in_dir,
            frames_out_dir=out_dir,
            thread_spec=self._thread_spec(threads),
        )
        return self._accept(job)
