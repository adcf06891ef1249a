"""Settings: app root discovery and the JSON-backed pipeline configuration."""

from __future__ import annotations

import dataclasses
import json
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

APP_DIR_NAME = "RIFE-Interpolator"
APP_ROOT_ENV = "RIFE_INTERPOLATOR_HOME"
SETTINGS_FILE_NAME = "settings.json"


def get_default_app_root() -> Path:
    """Return the per-platform application data directory."""
    override = os.environ.get(APP_ROOT_ENV)
    if override:
        return Path(override).expanduser()

    system = platform.system().lower()
    if system == "windows":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")
    return base / APP_DIR_NAME


@dataclass(frozen=True)
class PipelineSettings:
    app_root: Path
    prefer_system_ffmpeg: bool = True

    # Interpolator thread tuple (-j load:proc:save)
    default_thread_spec: str = "2:2:2"
    min_threads: int = 1
    max_threads: int = 12

    # Overall progress weights for the full smooth pipeline. The defaults put
    # the stage boundaries at 33 and 66.
    smooth_stage_weights: tuple[tuple[str, float], ...] = (
        ("extract", 33.0),
        ("interpolate", 33.0),
        ("encode", 34.0),
    )
    # rife-ncnn-vulkan writes two output frames per input frame.
    interpolation_factor: float = 2.0

    progress_interval: float = 0.25
    poll_interval: float = 0.3
    stderr_tail_lines: int = 8
    log_line_limit: int = 400
    cancel_grace_seconds: float = 2.0

    default_fps: float = 30.0
    extract_jpeg_quality: int = 2
    video_codec: str = "libx264"
    encode_preset: str = "ultrafast"
    encode_crf: int = 18
    pixel_format: str = "yuv420p"
    audio_bitrate: str = "192k"

    otlp_endpoint: Optional[str] = None

    def __post_init__(self) -> None:
        if _weights_total(self.smooth_stage_weights) <= 0:
            raise ValueError("Stage weights must add up to more than zero.")

    @property
    def settings_path(self) -> Path:
        return self.app_root / SETTINGS_FILE_NAME


def _weights_total(weights: tuple[tuple[str, float], ...]) -> float:
    return sum(max(weight, 0.0) for _, weight in weights)


def _coerce(field: dataclasses.Field, value: Any) -> Any:
    """Check one JSON value against the field's declared type.

    Raises TypeError or ValueError for a value of the wrong type; the caller
    then keeps the default.
    """
    if field.name == "app_root":
        return Path(value).expanduser()
    if field.name == "smooth_stage_weights":
        if isinstance(value, dict):
            value = value.items()
        weights = tuple((str(name), float(weight)) for name, weight in value)
        if _weights_total(weights) <= 0:
            raise ValueError("Stage weights must add up to more than zero.")
        return weights

    default = field.default
    if default is None:
        # Optional[str] fields
        if value is not None and not isinstance(value, str):
            raise TypeError(f"{field.name} must be a string or null")
        return value
    # bool is a subclass of int, so it is checked first and never accepted as a number.
    if isinstance(default, bool) or isinstance(value, bool):
        if type(value) is not type(default):
            raise TypeError(f"{field.name} must be {type(default).__name__}")
        return value
    if isinstance(default, int):
        if not isinstance(value, int):
            raise TypeError(f"{field.name} must be an integer")
        return value
    if isinstance(default, float):
        if not isinstance(value, (int, float)):
            raise TypeError(f"{field.name} must be a number")
        return float(value)
    if not isinstance(value, type(default)):
        raise TypeError(f"{field.name} must be {type(default).__name__}")
    return value


def settings_from_mapping(app_root: Path, payload: dict[str, Any]) -> PipelineSettings:
    """Build settings from a JSON mapping, ignoring unknown keys."""
    values: dict[str, Any] = {}
    for field in dataclasses.fields(PipelineSettings):
        if field.name in payload and field.name != "app_root":
            try:
                values[field.name] = _coerce(field, payload[field.name])
            except (TypeError, ValueError):
                continue
    return PipelineSettings(app_root=app_root, **values)


def load_settings(app_root: Optional[Path] = None) -> PipelineSettings:
    """Load ``settings.json`` from the app root, falling back to defaults."""
    root = Path(app_root).expanduser() if app_root else get_default_app_root()
    settings_path = root / SETTINGS_FILE_NAME
    if not settings_path.exists():
        return PipelineSettings(app_root=root)

    try:
        payload = json.loads(settings_path.read_text())
    except (OSError, json.JSONDecodeError):
        return PipelineSettings(app_root=root)

    if not isinstance(payload, dict):
        return PipelineSettings(app_root=root)
    return settings_from_mapping(root, payload)


def settings_payload(settings: PipelineSettings) -> dict[str, Any]:
    """Return the JSON form of ``settings`` as written to ``settings.json``."""
    payload = dataclasses.asdict(settings)
    payload.pop("app_root")
    payload["smooth_stage_weights"] = dict(settings.smooth_stage_weights)
    return payload


def save_settings(settings: PipelineSettings) -> Path:
    settings.settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings.settings_path.write_text(json.dumps(settings_payload(settings), indent=2))
    return settings.settings_path
