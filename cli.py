"""CLI: argument parsing and runtime validation for the rife-smooth commands."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from app_settings import get_default_app_root

# ── Constants ──────────────────────────────────────────────────────────────────

TOOL_CHOICES = ("ffmpeg", "rife")
JOB_COMMANDS = ("extract", "smooth", "reencode", "interpolate")
DEFAULT_OUTPUT_SUFFIX = "_smooth"


# ── Functions ──────────────────────────────────────────────────────────────────


def resolve_output_path(input_video: Path, output_arg: Optional[str]) -> Path:
    if output_arg:
        return Path(output_arg).expanduser().resolve()
    return (input_video.parent / f"{input_video.stem}{DEFAULT_OUTPUT_SUFFIX}.mp4").resolve()


def validate_runtime_args(args: argparse.Namespace) -> None:
    if getattr(args, "max_threads", None) is not None and args.max_threads < 0:
        raise ValueError("Max threads must be >= 0.")
    if getattr(args, "fps", None) is not None and args.fps <= 0:
        raise ValueError("Frame rate override must be > 0.")
    if args.app_root:
        root = Path(args.app_root).expanduser()
        if root.exists() and not root.is_dir():
            raise ValueError("App root must be a directory, not a file.")


def _add_job_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help=f"Output video path (default: <input>{DEFAULT_OUTPUT_SUFFIX}.mp4)",
    )
    parser.add_argument(
        "--max-threads",
        type=int,
        default=None,
        help="Thread hint; RIFE gets n:n:n clamped to 1-12, ffmpeg gets -threads n",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Smooth video with RIFE frame interpolation (ffmpeg + rife-ncnn-vulkan)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--app-root",
        type=str,
        default=None,
        help=f"Application data directory (default: {get_default_app_root()})",
    )
    parser.add_argument(
        "--json-events",
        action="store_true",
        help="Print job events as JSON lines instead of a progress bar",
    )
    parser.add_argument(
        "--no-system-ffmpeg",
        action="store_true",
        help="Only use the app-managed ffmpeg under bin/ffmpeg",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    commands.add_parser("env", help="Print OS and architecture")
    commands.add_parser("paths", help="Create and list the app directories")
    commands.add_parser("threads", help="Print the machine's n:n:n thread tuple")
    commands.add_parser("models", help="Print the installed RIFE model folder")
    commands.add_parser("validate", help="Run installed ffmpeg and RIFE to check they work")

    settings = commands.add_parser("settings", help="Print the effective settings as JSON")
    settings.add_argument("--save", action="store_true", help="Also write them to settings.json in the app root")

    status = commands.add_parser("status", help="Report whether a tool is installed")
    status.add_argument("tool", choices=TOOL_CHOICES)

    install = commands.add_parser(
        "install",
        help="Copy a tool binary or folder into bin/<tool>/<version>",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    install.add_argument("source", type=str, help="Binary or folder to install")
    install.add_argument("--tool", choices=TOOL_CHOICES, required=True)
    install.add_argument("--version", dest="tool_version", type=str, default="default")

    extract = commands.add_parser("extract", help="Extract all frames of a video as JPEGs")
    extract.add_argument("input_video", type=str, help="Path to input video")

    smooth = commands.add_parser(
        "smooth",
        help="Extract, interpolate, and re-encode at twice the frame rate",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    smooth.add_argument("input_video", type=str, help="Path to input video")
    _add_job_output_flags(smooth)

    reencode = commands.add_parser(
        "reencode",
        help="Encode an existing interpolated frames folder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    reencode.add_argument("input_video", type=str, help="Source video (audio and frame rate)")
    reencode.add_argument("--frames-dir", type=str, required=True, help="Folder of %%08d.png frames")
    reencode.add_argument("--fps", type=float, default=None, help="Output frame rate override")
    _add_job_output_flags(reencode)

    interpolate = commands.add_parser(
        "interpolate",
        help="Run RIFE over an existing frames folder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    interpolate.add_argument("input_frames", type=str, help="Folder of input frames")
    interpolate.add_argument("output_frames", type=str, help="Folder for interpolated frames")
    interpolate.add_argument(
        "--model-dir",
        type=str,
        default=None,
        help="Model folder or models root (default: installed RIFE models)",
    )
    interpolate.add_argument(
        "--threads",
        type=str,
        default=None,
        help="RIFE thread tuple (load:proc:save) or a single thread hint",
    )

    return parser.parse_args(argv)
