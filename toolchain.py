"""Toolchain: installed tool discovery, model resolution, and subprocess helpers."""

from __future__ import annotations

import os
import platform
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from tqdm import tqdm

FFMPEG = "ffmpeg"
RIFE = "rife"
TOOL_KINDS = (FFMPEG, RIFE)

RIFE_BINARY_PREFIX = "rife"
RIFE_MODEL_PREFIX = "rife-"
PREFERRED_MODEL_NAME = "rife-v2.3"
MODEL_WEIGHT_FILES = ("flownet.bin", "model.param")

SYSTEM_FFMPEG_CANDIDATES = (
    "/opt/homebrew/opt/ffmpeg-full/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
)

VERBATIM_PREFIX = "\\\\?\\"


@dataclass(frozen=True)
class ToolInstallation:
    kind: str
    version: str
    binary: Path
    model_dir: Optional[Path] = None


def progress_write(message: str) -> None:
    """Write a console message without tearing an active tqdm bar."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[Union[str, Path]],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        errors="replace",
        timeout=timeout,
    )


def is_windows() -> bool:
    return platform.system().lower() == "windows"


# ── Filesystem views ──────────────────────────────────────────────────────────


class FileSystemView:
    """Directory listing used by the resolvers; the default reads the live disk.

    ``list_dir`` returns children in listing order and an empty list for
    anything that cannot be listed.
    """

    def list_dir(self, path: Path) -> list[Path]:
        try:
            with os.scandir(path) as entries:
                return [Path(entry.path) for entry in entries]
        except OSError:
            return []

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def is_file(self, path: Path) -> bool:
        return path.is_file()

    def exists(self, path: Path) -> bool:
        return path.exists()


class SnapshotFileSystem(FileSystemView):
    """In-memory tree snapshot.

    Built from an iterable of POSIX-style paths below ``root``; a trailing
    slash marks a directory, anything else is a file. Listing order is the
    order the paths were given in.
    """

    def __init__(self, root: Path, paths: Iterable[str]) -> None:
        self.root = Path(root)
        self._children: dict[Path, list[Path]] = {self.root: []}
        self._files: set[Path] = set()
        for raw in paths:
            is_dir = raw.endswith("/")
            current = self.root
            parts = [part for part in raw.strip("/").split("/") if part]
            for index, part in enumerate(parts):
                child = current / part
                last = index == len(parts) - 1
                if child not in self._children and child not in self._files:
                    self._children[current].append(child)
                    if last and not is_dir:
                        self._files.add(child)
                    else:
                        self._children[child] = []
                current = child

    def list_dir(self, path: Path) -> list[Path]:
        return list(self._children.get(Path(path), []))

    def is_dir(self, path: Path) -> bool:
        return Path(path) in self._children

    def is_file(self, path: Path) -> bool:
        return Path(path) in self._files

    def exists(self, path: Path) -> bool:
        return self.is_dir(path) or self.is_file(path)


LIVE_FS = FileSystemView()


# ── Version-folder scanning ───────────────────────────────────────────────────


def find_ffmpeg_in_version_dir(version_dir: Path, fs: FileSystemView = LIVE_FS) -> Optional[Path]:
    """Prefer a file named ffmpeg; otherwise the first file listed."""
    files = [entry for entry in fs.list_dir(version_dir) if fs.is_file(entry)]
    for entry in files:
        if entry.stem.lower() == FFMPEG:
            return entry
    return files[0] if files else None


def find_rife_in_version_dir(version_dir: Path, fs: FileSystemView = LIVE_FS) -> Optional[Path]:
    for entry in fs.list_dir(version_dir):
        if fs.is_file(entry) and entry.name.lower().startswith(RIFE_BINARY_PREFIX):
            return entry
    return None


def find_models_dir(version_dir: Path, fs: FileSystemView = LIVE_FS) -> Optional[Path]:
    """Locate the rife model folder inside an installed version folder.

    Accepts ``models/`` (older builds), then the preferred default model
    folder, then the alphabetically first ``rife-*`` folder.
    """
    direct = version_dir / "models"
    if fs.is_dir(direct):
        return direct

    preferred = version_dir / PREFERRED_MODEL_NAME
    if fs.is_dir(preferred):
        return preferred

    candidates = sorted(
        (
            entry
            for entry in fs.list_dir(version_dir)
            if fs.is_dir(entry) and entry.name.startswith(RIFE_MODEL_PREFIX)
        ),
        key=lambda entry: entry.name,
    )
    return candidates[0] if candidates else None


def resolve_model_path(models_root_or_model: Union[str, Path], fs: FileSystemView = LIVE_FS) -> Path:
    """Resolve a user-supplied models root or model folder to a model folder."""
    path = Path(models_root_or_model)
    if any(fs.exists(path / weight) for weight in MODEL_WEIGHT_FILES):
        return path

    preferred = path / PREFERRED_MODEL_NAME
    if fs.exists(preferred):
        return preferred

    for entry in fs.list_dir(path):
        if fs.is_dir(entry):
            return entry
    return path


def scan_tool(root: Path, kind: str, fs: FileSystemView = LIVE_FS) -> Optional[ToolInstallation]:
    """Return the first installed version of ``kind`` under ``root/bin``."""
    tool_root = root / "bin" / kind
    for version_dir in fs.list_dir(tool_root):
        if not fs.is_dir(version_dir):
            continue
        if kind == RIFE:
            binary = find_rife_in_version_dir(version_dir, fs)
            if binary is not None:
                return ToolInstallation(
                    kind=kind,
                    version=version_dir.name,
                    binary=binary,
                    model_dir=find_models_dir(version_dir, fs),
                )
        else:
            binary = find_ffmpeg_in_version_dir(version_dir, fs)
            if binary is not None:
                return ToolInstallation(kind=kind, version=version_dir.name, binary=binary)
    return None


class ToolRegistry:
    """Read-only view of the tools installed under an app root."""

    def __init__(self, root: Path, fs: FileSystemView = LIVE_FS) -> None:
        self.root = Path(root)
        self.fs = fs

    def find(self, kind: str) -> Optional[ToolInstallation]:
        return scan_tool(self.root, kind, self.fs)

    def ffmpeg(self) -> Optional[ToolInstallation]:
        return self.find(FFMPEG)

    def rife(self) -> Optional[ToolInstallation]:
        return self.find(RIFE)

    def status(self, kind: str) -> str:
        return "installed" if self.find(kind) is not None else "missing"


def preferred_system_ffmpeg(
    candidates: Sequence[str] = SYSTEM_FFMPEG_CANDIDATES,
    fs: FileSystemView = LIVE_FS,
) -> Optional[Path]:
    for candidate in candidates:
        path = Path(candidate)
        if fs.exists(path):
            return path
    return None


def companion_binary(binary: Path, name: str) -> Path:
    """Return a sibling tool path, keeping the binary's suffix (``.exe``)."""
    return binary.with_name(name + binary.suffix)


# ── Interpolator invocation ───────────────────────────────────────────────────


def compute_rife_cwd_and_model_arg(
    rife_bin: Path,
    model_path: Path,
    *,
    windows: Optional[bool] = None,
) -> tuple[Optional[Path], str]:
    """Choose the working directory and ``-m`` argument for rife-ncnn-vulkan.

    Some Windows builds treat drive-letter absolute paths as relative when
    loading model files (``_wfopen .../flownet.param failed``). Running from
    the binary's folder with a bare model folder name avoids that. A model
    folder elsewhere is passed as an absolute path, with a ``\\\\?\\`` prefix on
    Windows unless the path already carries one.
    """
    if windows is None:
        windows = is_windows()

    rife_dir = rife_bin.parent
    if model_path.parent == rife_dir and model_path.name:
        return rife_dir, model_path.name

    model_arg = str(model_path)
    if windows and not model_arg.startswith(VERBATIM_PREFIX):
        model_arg = VERBATIM_PREFIX + model_arg
    return rife_dir, model_arg


def build_thread_spec(
    hint: Optional[Union[int, str]],
    *,
    default: str = "2:2:2",
    minimum: int = 1,
    maximum: int = 12,
) -> str:
    """Turn a thread hint into a rife ``-j load:proc:save`` tuple.

    Integers are clamped to ``[minimum, maximum]``; zero, negatives, and
    ``None`` give ``default``. A string that is already a tuple passes through.
    """
    if isinstance(hint, str):
        text = hint.strip()
        parts = text.split(":")
        if len(parts) == 3 and all(part.isdigit() for part in parts):
            return text
        try:
            hint = int(text)
        except ValueError:
            return default

    if hint is None or hint <= 0:
        return default
    threads = max(minimum, min(maximum, int(hint)))
    return f"{threads}:{threads}:{threads}"


def max_threads_string() -> str:
    count = os.cpu_count() or 4
    return f"{count}:{count}:{count}"
