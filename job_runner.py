"""Job model, stage state machine, and the single-active-job runner.

A job runs on its own background thread. The thread walks the job's stage
plan through ``next_state``: each stage produces a ``StageResult`` and the
transition function decides whether to run the next stage, succeed, or fail.
Exactly one ``pipeline_done`` is published per job, always last.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from app_settings import PipelineSettings
from frame_progress import StageBand, build_bands, count_files_in_dir
from job_events import DoneEvent, EventBus, JobReporter
from media_probe import output_framerate, probe_duration_and_fps
from pipeline_errors import JobBusy, PipelineError, StageError
from stages import (
    STAGE_LABELS,
    Stage,
    StageContext,
    run_encode_stage,
    run_extract_stage,
    run_interpolate_stage,
)

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    EXTRACT = "extract"
    SMOOTH = "smooth"
    REENCODE = "reencode"
    INTERPOLATE = "interpolate"


class JobState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    INTERPOLATING = "interpolating"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})

STAGE_STATES = {
    Stage.EXTRACT: JobState.EXTRACTING,
    Stage.INTERPOLATE: JobState.INTERPOLATING,
    Stage.ENCODE: JobState.ENCODING,
}
STATE_STAGES = {state: stage for stage, state in STAGE_STATES.items()}

STAGE_PLANS: dict[JobKind, tuple[Stage, ...]] = {
    JobKind.EXTRACT: (Stage.EXTRACT,),
    JobKind.SMOOTH: (Stage.EXTRACT, Stage.INTERPOLATE, Stage.ENCODE),
    JobKind.REENCODE: (Stage.ENCODE,),
    JobKind.INTERPOLATE: (Stage.INTERPOLATE,),
}


def stage_weights(kind: JobKind, settings: PipelineSettings) -> list[tuple[str, float]]:
    """Declared ``(stage, weight)`` pairs for a job kind."""
    plan = STAGE_PLANS[kind]
    if len(plan) == 1:
        return [(plan[0].value, 1.0)]
    configured = dict(settings.smooth_stage_weights)
    return [(stage.value, float(configured.get(stage.value, 1.0))) for stage in plan]


def bands_for(kind: JobKind, settings: PipelineSettings) -> dict[str, StageBand]:
    return build_bands(stage_weights(kind, settings))


@dataclass(frozen=True)
class StageResult:
    stage: Stage
    ok: bool
    frames: int = 0
    error: Optional[PipelineError] = None

    @classmethod
    def success(cls, stage: Stage, frames: int) -> "StageResult":
        return cls(stage=stage, ok=True, frames=frames)

    @classmethod
    def failure(cls, stage: Stage, error: PipelineError) -> "StageResult":
        return cls(stage=stage, ok=False, error=error)


def next_state(
    plan: Sequence[Stage],
    state: JobState,
    result: Optional[StageResult] = None,
) -> JobState:
    """Transition function of the pipeline state machine.

    ``result`` is the outcome of the stage belonging to ``state``; it is
    None when leaving ``IDLE``. Terminal states are absorbing.
    """
    if state in TERMINAL_STATES:
        return state
    if state is JobState.IDLE:
        return STAGE_STATES[plan[0]] if plan else JobState.SUCCEEDED
    if result is None or not result.ok:
        return JobState.FAILED

    index = list(plan).index(STATE_STAGES[state])
    if index + 1 < len(plan):
        return STAGE_STATES[plan[index + 1]]
    return JobState.SUCCEEDED


_id_lock = threading.Lock()
_last_id_ns = 0


def make_job_id() -> str:
    """Time-derived job id, strictly increasing within the process."""
    global _last_id_ns
    with _id_lock:
        now = time.time_ns()
        if now <= _last_id_ns:
            now = _last_id_ns + 1
        _last_id_ns = now
    seconds, nanos = divmod(now, 1_000_000_000)
    return f"job-{seconds}-{nanos:09d}"


@dataclass
class Job:
    id: str
    kind: JobKind
    frames_dir: Path
    frame_pattern: Path
    input_video: Optional[Path] = None
    output: Optional[Path] = None
    ffmpeg: Optional[Path] = None
    rife: Optional[Path] = None
    model_dir: Optional[Path] = None
    frames_in_dir: Optional[Path] = None
    frames_out_dir: Optional[Path] = None
    image_ext: str = "png"
    hwaccel: Optional[str] = None
    thread_spec: str = "2:2:2"
    max_threads: int = 0
    fps_override: Optional[float] = None
    state: JobState = JobState.IDLE
    input_frame_count: int = 0
    results: list[StageResult] = field(default_factory=list)

    @property
    def plan(self) -> tuple[Stage, ...]:
        return STAGE_PLANS[self.kind]


class JobExecution:
    """Drives one job through its stage plan on the calling thread."""

    def __init__(
        self,
        job: Job,
        reporter: JobReporter,
        settings: PipelineSettings,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.job = job
        self.reporter = reporter
        self.settings = settings
        self.cancel = cancel or threading.Event()
        self.ctx = StageContext(
            reporter=reporter,
            settings=settings,
            bands=bands_for(job.kind, settings),
            cancel=self.cancel,
        )
        self._executors: dict[Stage, Callable[[], int]] = {
            Stage.EXTRACT: self._extract,
            Stage.INTERPOLATE: self._interpolate,
            Stage.ENCODE: self._encode,
        }

    def stage_label(self, stage: Stage) -> str:
        plan = self.job.plan
        label = STAGE_LABELS[stage]
        if len(plan) > 1:
            label = f"{label} (step {plan.index(stage) + 1}/{len(plan)})"
        return label

    def run_stage(self, stage: Stage) -> StageResult:
        self.reporter.stage(self.stage_label(stage))
        try:
            frames = self._executors[stage]()
        except StageError as exc:
            return StageResult.failure(stage, exc)
        return StageResult.success(stage, frames)

    def run(self) -> Optional[DoneEvent]:
        job = self.job
        self.reporter.log(f"{job.kind.value} job: {job.id}")
        self.reporter.progress(0.0)

        last: Optional[StageResult] = None
        try:
            state = next_state(job.plan, JobState.IDLE)
            while state not in TERMINAL_STATES:
                job.state = state
                last = self.run_stage(STATE_STAGES[state])
                job.results.append(last)
                state = next_state(job.plan, state, last)
            job.state = state
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            job.state = JobState.FAILED
            self._finish(False, f"Unexpected error: {exc}")
            return self.reporter.outcome

        if job.state is JobState.SUCCEEDED:
            self.reporter.progress(100.0)
            self._finish(True, self.success_message(last))
        else:
            error = last.error if last is not None else None
            self._finish(False, str(error) if error is not None else "Job failed")
        return self.reporter.outcome

    def success_message(self, last: Optional[StageResult]) -> str:
        job = self.job
        if job.kind is JobKind.EXTRACT:
            return f"Frames extracted: {job.input_frame_count}"
        if job.kind is JobKind.INTERPOLATE:
            frames = last.frames if last is not None else 0
            return f"Interpolated frames: {frames}"
        return f"Done: {job.output}"

    def _finish(self, ok: bool, message: str) -> None:
        self.reporter.done(ok, message, str(self.job.frames_dir), str(self.job.frame_pattern))

    # ── Stage executors ───────────────────────────────────────────────────

    def _extract(self) -> int:
        job = self.job
        count = run_extract_stage(
            self.ctx,
            ffmpeg=job.ffmpeg,
            input_video=job.input_video,
            frames_dir=job.frames_in_dir,
            image_ext=job.image_ext,
            hwaccel=job.hwaccel,
        )
        job.input_frame_count = count
        return count

    def _interpolate(self) -> int:
        job = self.job
        if job.input_frame_count <= 0:
            job.input_frame_count = count_files_in_dir(job.frames_in_dir)
        return run_interpolate_stage(
            self.ctx,
            rife_bin=job.rife,
            model_dir=job.model_dir,
            input_dir=job.frames_in_dir,
            output_dir=job.frames_out_dir,
            thread_spec=job.thread_spec,
            input_frames=job.input_frame_count,
        )

    def _encode(self) -> int:
        job = self.job
        if job.fps_override is not None and job.fps_override > 0:
            framerate = job.fps_override
        else:
            info = probe_duration_and_fps(job.ffmpeg, job.input_video)
            framerate = output_framerate(
                info,
                self.settings.default_fps,
                self.settings.interpolation_factor,
            )
        failure = "Re-encode failed" if job.kind is JobKind.REENCODE else "Encoding failed"
        return run_encode_stage(
            self.ctx,
            ffmpeg=job.ffmpeg,
            frames_dir=job.frames_out_dir,
            output=job.output,
            framerate=framerate,
            audio_source=job.input_video,
            max_threads=job.max_threads,
            failure_message=failure,
        )


class JobHandle:
    """Caller-side view of a started job."""

    def __init__(self, job: Job, execution: JobExecution) -> None:
        self.job = job
        self._execution = execution
        self._thread = threading.Thread(
            target=execution.run,
            name=f"job-{job.id}",
            daemon=True,
        )

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    @property
    def outcome(self) -> Optional[DoneEvent]:
        return self._execution.reporter.outcome

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Stop the active stage's process; the job then ends as Cancelled."""
        self._execution.cancel.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[DoneEvent]:
        self._thread.join(timeout)
        return self.outcome


class JobRunner:
    """Starts jobs on dedicated threads, one active job at a time."""

    def __init__(self, settings: PipelineSettings, bus: Optional[EventBus] = None) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        self._lock = threading.Lock()
        self._active: Optional[JobHandle] = None

    @property
    def active(self) -> Optional[JobHandle]:
        with self._lock:
            if self._active is not None and not self._active.running:
                self._active = None
            return self._active

    def ensure_idle(self) -> None:
        active = self.active
        if active is not None:
            raise JobBusy(active.id)

    def start(self, job: Job) -> JobHandle:
        reporter = JobReporter(self.bus, job.id, self.settings.log_line_limit)
        execution = JobExecution(job, reporter, self.settings)
        handle = JobHandle(job, execution)
        with self._lock:
            if self._active is not None and self._active.running:
                raise JobBusy(self._active.id)
            self._active = handle
            handle.start()
        return handle
