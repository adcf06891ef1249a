#!/usr/bin/env python3
"""
RIFE video smoother

Extracts frames with ffmpeg, doubles the frame rate with rife-ncnn-vulkan,
and re-encodes the result with the source audio. Every command below is a
thin console front end over ``app_commands.App``.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from app_commands import App, JobAccepted
from app_settings import load_settings, save_settings, settings_payload
from cli import JOB_COMMANDS, parse_args, resolve_output_path, validate_runtime_args
from job_events import DoneEvent, Event, LogEvent, ProgressEvent, StageEvent, event_payload
from toolchain import progress_write
from tracing import init_tracing, traced


class ConsoleListener:
    """Render job events as a tqdm bar with log lines written above it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bar: Optional[tqdm] = None

    def _ensure_bar(self) -> tqdm:
        if self._bar is None:
            self._bar = tqdm(
                total=100,
                unit="%",
                bar_format="{desc}: {percentage:5.1f}%|{bar}| [{elapsed}<{remaining}]",
            )
        return self._bar

    def __call__(self, event: Event) -> None:
        with self._lock:
            if isinstance(event, LogEvent):
                progress_write(event.text)
            elif isinstance(event, StageEvent):
                self._ensure_bar().set_description_str(event.label)
            elif isinstance(event, ProgressEvent):
                bar = self._ensure_bar()
                bar.n = event.percent
                bar.refresh()
            elif isinstance(event, DoneEvent):
                if self._bar is not None:
                    self._bar.close()
                    self._bar = None


class JsonLinesListener:
    """Print each event as one JSON object per line on stdout."""

    def __init__(self, stream=None) -> None:
        self._lock = threading.Lock()
        self.stream = stream

    def __call__(self, event: Event) -> None:
        line = json.dumps(event_payload(event), ensure_ascii=False)
        with self._lock:
            print(line, file=self.stream or sys.stdout, flush=True)


def wait_for_job(accepted: JobAccepted, *, echo_result: bool = True) -> int:
    """Block until the job is done; Ctrl-C cancels it and waits for cleanup."""
    handle = accepted.handle
    try:
        outcome = handle.wait()
    except KeyboardInterrupt:
        handle.cancel()
        handle.wait()
        print("Interrupted by user.", file=sys.stderr)
        return 130

    if outcome is None:
        print("Error: job ended without a result", file=sys.stderr)
        return 1
    if not outcome.ok:
        print(f"Error: {outcome.message}", file=sys.stderr)
        return 1
    if echo_result:
        print(outcome.message)
        print(f"Frames: {outcome.frame_pattern}")
    return 0


def start_job(app: App, args: argparse.Namespace) -> JobAccepted:
    if args.command == "extract":
        return app.extract_frames(args.input_video)
    if args.command == "smooth":
        output = resolve_output_path(Path(args.input_video).expanduser(), args.output)
        return app.smooth_video(args.input_video, str(output), args.max_threads)
    if args.command == "reencode":
        output = resolve_output_path(Path(args.input_video).expanduser(), args.output)
        return app.reencode_only(
            args.input_video,
            str(output),
            args.frames_dir,
            args.max_threads,
            fps=args.fps,
        )
    return app.run_interpolation(
        args.input_frames,
        args.output_frames,
        args.model_dir,
        args.threads,
    )


def run_tool_command(app: App, args: argparse.Namespace) -> int:
    if args.command == "env":
        print(app.check_environment())
    elif args.command == "paths":
        for path in app.app_paths():
            print(path)
    elif args.command == "threads":
        print(app.max_threads_string())
    elif args.command == "models":
        model_dir = app.default_model_dir()
        if model_dir is None:
            print("RIFE models folder not found (install rife first)", file=sys.stderr)
            return 1
        print(model_dir)
    elif args.command == "settings":
        print(json.dumps(settings_payload(app.settings), indent=2))
        if args.save:
            print(f"Saved {save_settings(app.settings)}", file=sys.stderr)
    elif args.command == "status":
        print(app.tool_status(args.tool))
    elif args.command == "install":
        print(app.install_tool(args.source, args.tool, args.tool_version))
    elif args.command == "validate":
        result = app.validate_tools()
        for name, check in (("ffmpeg", result.ffmpeg), ("rife", result.rife)):
            state = "OK" if check.ok else "FAILED"
            print(f"{name}: {state} ({check.path or 'not installed'})")
            if check.output:
                print(check.output)
        return 0 if result.ffmpeg.ok and result.rife.ok else 1
    return 0


@traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        validate_runtime_args(args)
        settings = load_settings(Path(args.app_root) if args.app_root else None)
        if args.no_system_ffmpeg:
            settings = dataclasses.replace(settings, prefer_system_ffmpeg=False)
        init_tracing(settings.otlp_endpoint)

        app = App(settings)
        if args.command not in JOB_COMMANDS:
            return run_tool_command(app, args)

        listener = JsonLinesListener() if args.json_events else ConsoleListener()
        unsubscribe = app.subscribe(listener)
        try:
            accepted = start_job(app, args)
            return wait_for_job(accepted, echo_result=not args.json_events)
        finally:
            unsubscribe()
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
