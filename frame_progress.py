"""Progress estimation for pipeline stages.

Two strategies:

* ffmpeg ``-progress pipe:1`` emits ``key=value`` blocks; the ``frame=``
  counter over an estimated total frame count gives the stage percentage.
* rife-ncnn-vulkan has no usable progress output, so its output folder is
  polled and the file count is compared against the expected output count.

Stage percentages are mapped into a job-wide range through ``StageBand``s
built from declared ``(stage, weight)`` pairs.
"""

from __future__ import annotations

import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

STRUCTURED_CEILING = 99.9


def parse_progress_line(line: str) -> Optional[tuple[str, str]]:
    """Split one ``key=value`` progress line; None when it is not one."""
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    return key, value.strip()


def count_files_in_dir(directory: Path) -> int:
    try:
        with os.scandir(directory) as entries:
            return sum(1 for entry in entries if entry.is_file())
    except OSError:
        return 0


def clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))


# ── Bands ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageBand:
    stage: str
    low: float
    high: float

    def scale(self, local_percent: float) -> float:
        """Map a 0-100 stage-local percentage into this band."""
        fraction = clamp(local_percent, 0.0, 100.0) / 100.0
        return self.low + (self.high - self.low) * fraction


def build_bands(weights: Sequence[tuple[str, float]]) -> dict[str, StageBand]:
    """Turn ordered ``(stage, weight)`` pairs into contiguous bands over 0-100."""
    total = sum(max(weight, 0.0) for _, weight in weights)
    if total <= 0:
        raise ValueError("Stage weights must add up to more than zero.")

    bands: dict[str, StageBand] = {}
    cursor = 0.0
    for index, (stage, weight) in enumerate(weights):
        span = max(weight, 0.0) / total * 100.0
        high = 100.0 if index == len(weights) - 1 else cursor + span
        bands[stage] = StageBand(stage=stage, low=cursor, high=high)
        cursor = high
    return bands


def overall_percent(bands: dict[str, StageBand], stage: str, local_percent: float) -> float:
    return bands[stage].scale(local_percent)


# ── Structured (ffmpeg -progress) ─────────────────────────────────────────────


class FrameCounterProgress:
    """Turn ffmpeg ``-progress`` lines into throttled stage percentages.

    ``on_percent`` receives values in ``[0, ceiling]`` at most once per
    ``interval`` seconds. Nothing is emitted while the total is unknown.
    """

    def __init__(
        self,
        total_frames: int,
        on_percent: Callable[[float], None],
        *,
        interval: float = 0.25,
        ceiling: float = STRUCTURED_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total_frames = total_frames
        self.on_percent = on_percent
        self.interval = interval
        self.ceiling = ceiling
        self.clock = clock
        self.frame = 0
        self._last_emit = clock()

    def percent(self) -> Optional[float]:
        if self.total_frames <= 0 or self.frame <= 0:
            return None
        return clamp(self.frame / self.total_frames * 100.0, 0.0, self.ceiling)

    def feed(self, line: str) -> None:
        parsed = parse_progress_line(line)
        if parsed is None:
            return
        key, value = parsed
        if key == "frame":
            try:
                self.frame = int(value)
            except ValueError:
                pass

        now = self.clock()
        if now - self._last_emit < self.interval:
            return
        self._last_emit = now
        pct = self.percent()
        if pct is not None:
            self.on_percent(pct)


# ── Directory polling (rife) ──────────────────────────────────────────────────


class DirectoryProgress:
    """Estimate interpolation progress from the output folder's file count."""

    def __init__(
        self,
        directory: Path,
        input_frames: int,
        band: StageBand,
        *,
        factor: float = 2.0,
        counter: Callable[[Path], int] = count_files_in_dir,
    ) -> None:
        self.directory = Path(directory)
        self.input_frames = input_frames
        self.band = band
        self.factor = factor
        self.counter = counter

    @property
    def expected_frames(self) -> float:
        return self.input_frames * self.factor

    def sample(self) -> Optional[float]:
        """Current overall percentage, always inside the band; None if unknown."""
        if self.input_frames <= 0 or self.factor <= 0:
            return None
        ratio = clamp(self.counter(self.directory) / self.expected_frames, 0.0, 1.0)
        return self.band.scale(ratio * 100.0)
