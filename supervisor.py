"""Subprocess supervision: spawn, drain both pipes concurrently, wait, cancel.

A child that writes more than the OS pipe capacity to a stream nobody reads
blocks forever. Every ``SupervisedProcess`` therefore starts one reader
thread per stream as soon as the child exists, and the owner only ever blocks
on the exit status and on joining those readers.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import IO, Callable, Iterator, Mapping, Optional, Sequence, Union

from pipeline_errors import JobCancelled, ProcessSpawnFailure

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]

DEFAULT_TAIL_LINES = 8
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_GRACE_SECONDS = 2.0

_CLOSED = object()


class StderrTail:
    """Bounded ring of the most recent lines; oldest lines are discarded."""

    def __init__(self, max_lines: int = DEFAULT_TAIL_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max(1, max_lines))
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())


class LineStream:
    """Buffered lines of one stream for callers that iterate instead of
    registering a handler."""

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()

    def _put(self, line: str) -> None:
        self._queue.put(line)

    def _close(self) -> None:
        self._closed.set()
        self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def poll(self) -> list[str]:
        """Return every line available right now without blocking."""
        lines: list[str] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return lines
            if item is _CLOSED:
                # Keep the sentinel for any blocking iterator.
                self._queue.put(_CLOSED)
                return lines
            lines.append(item)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item


def decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").strip()


def _drain(pipe: IO[bytes], sink: LineHandler, on_close: Callable[[], None]) -> None:
    try:
        for raw in iter(pipe.readline, b""):
            line = decode_line(raw)
            if not line:
                continue
            try:
                sink(line)
            except Exception:
                # A broken consumer must not stop the drain.
                logger.debug("Line handler failed", exc_info=True)
    except (OSError, ValueError):
        logger.debug("Pipe closed while draining", exc_info=True)
    finally:
        try:
            pipe.close()
        except OSError:
            pass
        on_close()


class SupervisedProcess:
    """A running child with both output streams drained on reader threads."""

    def __init__(
        self,
        command: Sequence[Union[str, Path]],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_stdout: Optional[LineHandler] = None,
        on_stderr: Optional[LineHandler] = None,
        tail_lines: int = DEFAULT_TAIL_LINES,
        label: Optional[str] = None,
    ) -> None:
        self.args = [str(part) for part in command]
        self.label = label or Path(self.args[0]).name
        self.stdout = LineStream()
        self.stderr = LineStream()
        self.stderr_tail = StderrTail(tail_lines)

        popen_env = None
        if env is not None:
            popen_env = {**os.environ, **env}

        try:
            self._proc = subprocess.Popen(
                self.args,
                cwd=str(cwd) if cwd is not None else None,
                env=popen_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessSpawnFailure(self.label, exc) from exc

        stdout_sink = on_stdout if on_stdout is not None else self.stdout._put

        def stderr_sink(line: str) -> None:
            self.stderr_tail.append(line)
            if on_stderr is not None:
                on_stderr(line)
            else:
                self.stderr._put(line)

        self._readers = [
            threading.Thread(
                target=_drain,
                args=(self._proc.stdout, stdout_sink, self.stdout._close),
                name=f"{self.label}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_drain,
                args=(self._proc.stderr, stderr_sink, self.stderr._close),
                name=f"{self.label}-stderr",
                daemon=True,
            ),
        ]
        for reader in self._readers:
            reader.start()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def terminate(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> None:
        """Ask the child to stop, killing it if it outlives the grace period."""
        if self._proc.poll() is not None:
            return
        try:
            self._proc.terminate()
            self._proc.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()
        except OSError:
            logger.debug("Terminate failed for %s", self.label, exc_info=True)

    def join_readers(self) -> None:
        for reader in self._readers:
            reader.join()

    def wait(
        self,
        *,
        cancel: Optional[threading.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_tick: Optional[Callable[[], None]] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> int:
        """Block until the child exits and both readers have drained.

        ``on_tick`` runs every ``poll_interval`` seconds while the child is
        alive. When ``cancel`` is set the child is terminated and
        ``JobCancelled`` is raised once the readers have finished.
        """
        while True:
            if cancel is not None and cancel.is_set():
                self.terminate(grace_seconds)
                self.join_readers()
                raise JobCancelled()
            if on_tick is not None:
                on_tick()
            try:
                self._proc.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                continue

        self.join_readers()
        return self._proc.returncode


def spawn(
    command: Sequence[Union[str, Path]],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    on_stdout: Optional[LineHandler] = None,
    on_stderr: Optional[LineHandler] = None,
    tail_lines: int = DEFAULT_TAIL_LINES,
    label: Optional[str] = None,
) -> SupervisedProcess:
    return SupervisedProcess(
        command,
        cwd=cwd,
        env=env,
        on_stdout=on_stdout,
        on_stderr=on_stderr,
        tail_lines=tail_lines,
        label=label,
    )
