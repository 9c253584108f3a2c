"""Toolchain: binary resolution, subprocess wrappers, and the per-frame task handle."""

from __future__ import annotations

import collections
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence

from tqdm import tqdm

PRIMITIVE_BINARY_NAME = "primitive"
STDERR_TAIL_LINES = 40


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    primitive: str


def progress_write(message: str) -> None:
    """Write a message without tearing active tqdm bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
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
        timeout=timeout,
    )


def resolve_primitive_binary(custom_path: Optional[str]) -> str:
    """Resolve the primitive binary from an explicit path or PATH."""
    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"primitive binary not found at: {candidate}")
        return str(candidate)

    system_binary = shutil.which(PRIMITIVE_BINARY_NAME)
    if system_binary:
        return system_binary

    raise FileNotFoundError(
        "Unable to locate the primitive binary. Install it with "
        "`go install github.com/fogleman/primitive@latest` or pass "
        "--primitive-path explicitly."
    )


def resolve_toolchain(primitive_path: Optional[str] = None) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install with Homebrew (macOS) or your system package manager."
        )

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        primitive=resolve_primitive_binary(primitive_path),
    )


class FrameTask:
    """Handle for one running stylization subprocess.

    Stdout lines are exposed as a stream of progress events through
    `events()`. Stderr is drained on a background thread so a chatty tool
    cannot block on a full pipe; the last few lines are kept for error
    reports. `cancel()` terminates the process and escalates to kill after
    `kill_grace_period_s`.
    """

    def __init__(self, cmd: Sequence[str], *, kill_grace_period_s: float = 5.0):
        self.cmd = [str(part) for part in cmd]
        self.kill_grace_period_s = kill_grace_period_s
        self._process: Optional[subprocess.Popen] = None
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._cancelled = threading.Event()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def start(self) -> "FrameTask":
        """Spawn the subprocess; OSError propagates if it cannot be spawned."""
        self._process = subprocess.Popen(
            self.cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()
        return self

    def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        for line in self._process.stderr:
            line = line.rstrip()
            if line:
                self._stderr_tail.append(line)

    def events(self) -> Iterator[str]:
        if self._process is None:
            raise RuntimeError("FrameTask.events() called before start()")
        assert self._process.stdout is not None
        for line in self._process.stdout:
            yield line.rstrip("\n")

    def wait(self, timeout: Optional[float] = None) -> int:
        if self._process is None:
            raise RuntimeError("FrameTask.wait() called before start()")
        returncode = self._process.wait(timeout=timeout)
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1.0)
        return returncode

    def cancel(self) -> None:
        self._cancelled.set()
        if not self.running:
            return
        assert self._process is not None
        self._process.terminate()
        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()
