#!/usr/bin/env python3
"""
Video stylizer pipeline built around fogleman's `primitive`.

This script extracts frames, redraws each one with geometric primitives
(the shape count interpolated from --start to --end across the clip), and
rebuilds a final video. Intermediate frames live in a scratch directory keyed
by a digest of the input bytes, so an interrupted run resumes where it left off.
"""

from __future__ import annotations

import contextlib
import functools
import hashlib
import json
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from tqdm import tqdm

from cli import ConfigError, JobConfig, build_config, parse_args
from toolchain import FrameTask, Toolchain, progress_write, resolve_toolchain, run_subprocess

tracer = trace.get_tracer(__name__)
_tracing_initialized = False


def init_tracing() -> None:
    """Export spans over OTLP/HTTP when OTEL_EXPORTER_OTLP_ENDPOINT is set."""
    global _tracing_initialized
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if _tracing_initialized or not endpoint:
        return

    resource = Resource.create({"service.name": "stylize-video"})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces")
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracing_initialized = True


def _traced(func):
    """Decorator that wraps a function call in a tracing span."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper


HASH_CHUNK_SIZE = 1024 * 1024
DIGEST_LENGTH = 8

FRAMES_DIRNAME = "frames"
EXTRACT_STAGING_DIRNAME = "frames.extracting"
STYLED_DIRNAME = "styled"

INPUT_FRAME_PATTERN = "frame_%06d.png"
INPUT_FRAME_GLOB = "frame_*.png"
STYLED_FRAME_PATTERN = "styled_%06d.png"
STYLED_FRAME_GLOB = "styled_*.png"
PARTIAL_FRAME_PATTERN = ".partial_%06d.png"
PARTIAL_FRAME_GLOB = ".partial_*.png"


# ── Errors ─────────────────────────────────────────────────────────────────────


class StageError(RuntimeError):
    """A pipeline stage failed; `stage` names it for the user."""

    stage = "job"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class InputReadError(StageError):
    stage = "hashing"


class ProbeError(StageError):
    stage = "probing"


class DegenerateInputError(StageError):
    """The input has no usable frames."""

    stage = "probing"


class ExtractionError(StageError):
    stage = "extracting"


class FrameProcessingError(StageError):
    stage = "processing"

    def __init__(self, index: int, returncode: Optional[int], detail: str):
        status = "could not start" if returncode is None else f"exit {returncode}"
        super().__init__(f"primitive failed on frame {index} ({status}): {detail}")
        self.index = index
        self.returncode = returncode


class RecombineError(StageError):
    stage = "recombining"


class ToolchainError(StageError):
    """A required external binary could not be located."""

    stage = "toolchain"


# ── Data model ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VideoInfo:
    total_frames: int
    frame_rate: Fraction
    width: int
    height: int


@dataclass(frozen=True)
class Job:
    digest: str
    input_path: Path
    output_path: Path
    total_frames: int
    frame_rate: Fraction
    work_dir: Path
    start: int
    end: int

    @property
    def frames_dir(self) -> Path:
        return self.work_dir / FRAMES_DIRNAME

    @property
    def styled_dir(self) -> Path:
        return self.work_dir / STYLED_DIRNAME


@dataclass(frozen=True)
class FrameWorkItem:
    index: int
    source: Path
    destination: Path
    partial: Path
    n: int

    @property
    def done(self) -> bool:
        return self.destination.exists()


@dataclass(frozen=True)
class FrameEvent:
    kind: str  # started | progress | finished | skipped
    item: FrameWorkItem
    message: Optional[str] = None


FrameObserver = Callable[[FrameEvent], None]


class JobState(Enum):
    HASHING = "hashing"
    PROBING = "probing"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    RECOMBINING = "recombining"
    DONE = "done"
    FAILED = "failed"


# ── Hashing and workspace ──────────────────────────────────────────────────────


def compute_job_digest(input_video: Path, *, length: int = DIGEST_LENGTH) -> str:
    """Return a short content digest identifying the job for `input_video`.

    The file is streamed through SHA-256 in `HASH_CHUNK_SIZE` chunks, so memory
    use does not grow with the input. Only bytes count: the path, name and
    timestamps do not. The hex digest is truncated to `length` characters
    (32 bits by default). Two different inputs sharing a scratch directory is
    possible in principle; at the scale of a single user's local batch jobs the
    odds are negligible, and a short name keeps the scratch path readable.
    """
    hasher = hashlib.sha256()
    try:
        with open(input_video, "rb") as handle:
            for chunk in iter(functools.partial(handle.read, HASH_CHUNK_SIZE), b""):
                hasher.update(chunk)
    except OSError as exc:
        raise InputReadError(f"Cannot read input video {input_video}: {exc.strerror or exc}") from exc
    return hasher.hexdigest()[:length]


def job_workspace(digest: str, root: Optional[Path] = None) -> Path:
    """Return the scratch directory for `digest`, creating it if needed."""
    base = Path(root) if root is not None else Path(tempfile.gettempdir())
    workspace = base / digest
    try:
        workspace.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise InputReadError(f"Cannot create scratch directory {workspace}: {exc.strerror or exc}") from exc
    return workspace


# ── Probing ────────────────────────────────────────────────────────────────────


def parse_frame_rate(value: Optional[str]) -> Optional[Fraction]:
    """Parse ffprobe framerate strings like 30000/1001 into a reduced Fraction."""
    if not value:
        return None

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            if int(den) == 0:
                return None
            framerate = Fraction(int(num), int(den))
        else:
            framerate = Fraction(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None

    if framerate <= 0:
        return None
    return framerate


def _parse_frame_count(value: object) -> Optional[int]:
    try:
        count = int(str(value))
    except (TypeError, ValueError):
        return None
    return count if count > 0 else None


def _run_ffprobe(cmd: list[str]) -> dict:
    try:
        result = run_subprocess(cmd, capture_output=True)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "no stderr"
        raise ProbeError(f"ffprobe exited with status {exc.returncode}: {stderr}") from exc
    except OSError as exc:
        raise ProbeError(f"Unable to run ffprobe: {exc}") from exc

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(f"Failed to parse ffprobe output: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProbeError("Unexpected ffprobe output.")
    return payload


def count_frames(ffprobe_bin: str, input_video: Path) -> Optional[int]:
    """Decode the first video stream to count frames when the container omits nb_frames."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-count_frames",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=nb_read_frames",
        "-print_format",
        "json",
        str(input_video),
    ]
    streams = _run_ffprobe(cmd).get("streams") or [{}]
    return _parse_frame_count(streams[0].get("nb_read_frames"))


def get_video_info(ffprobe_bin: str, input_video: Path) -> VideoInfo:
    """Read metadata with ffprobe and return parsed info."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_video),
    ]
    payload = _run_ffprobe(cmd)

    video_stream = None
    for stream in payload.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break

    if video_stream is None:
        raise ProbeError("No video stream found in input file.")

    # An empty stream also reports a 0/0 rate; count frames first so it is
    # reported as degenerate input rather than a probe failure.
    total_frames = _parse_frame_count(video_stream.get("nb_frames"))
    if total_frames is None:
        total_frames = count_frames(ffprobe_bin, input_video)
    if total_frames is None:
        raise DegenerateInputError("Input video reports zero frames; nothing to stylize.")

    frame_rate = parse_frame_rate(video_stream.get("avg_frame_rate")) or parse_frame_rate(
        video_stream.get("r_frame_rate")
    )
    if frame_rate is None:
        raise ProbeError("Input video reports no usable frame rate.")

    return VideoInfo(
        total_frames=total_frames,
        frame_rate=frame_rate,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
    )


# ── Extraction ─────────────────────────────────────────────────────────────────


def build_extract_command(ffmpeg_bin: str, input_video: Path, frames_dir: Path) -> list[str]:
    return [
        ffmpeg_bin,
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        "-start_number",
        "1",
        str(frames_dir / INPUT_FRAME_PATTERN),
        "-y",
        "-hide_banner",
        "-loglevel",
        "warning",
    ]


def extract_frames(ffmpeg_bin: str, input_video: Path, work_dir: Path) -> int:
    """Extract input video frames into `<work_dir>/frames` as PNG files.

    Frames are written to a staging directory that is renamed into place only
    after ffmpeg succeeds.
    """
    staging_dir = work_dir / EXTRACT_STAGING_DIRNAME
    frames_dir = work_dir / FRAMES_DIRNAME
    if staging_dir.exists():
        shutil.rmtree(staging_dir)
    staging_dir.mkdir(parents=True)

    try:
        run_subprocess(build_extract_command(ffmpeg_bin, input_video, staging_dir), capture_output=True)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "no stderr"
        raise ExtractionError(f"ffmpeg exited with status {exc.returncode}: {stderr}") from exc
    except OSError as exc:
        raise ExtractionError(f"Unable to run ffmpeg: {exc}") from exc

    frame_count = len(list(staging_dir.glob(INPUT_FRAME_GLOB)))
    if frame_count == 0:
        raise ExtractionError("Frame extraction produced zero output frames.")

    if frames_dir.exists():
        shutil.rmtree(frames_dir)
    os.replace(staging_dir, frames_dir)
    return frame_count


def ensure_input_frames(
    ffmpeg_bin: str,
    input_video: Path,
    work_dir: Path,
    *,
    dry_run: bool = False,
) -> Optional[int]:
    """Reuse extracted frames when the first one exists, otherwise extract.

    Returns the number of frames on disk, or None for a dry run that would
    have extracted.
    """
    frames_dir = work_dir / FRAMES_DIRNAME
    if (frames_dir / (INPUT_FRAME_PATTERN % 1)).exists():
        existing = len(list(frames_dir.glob(INPUT_FRAME_GLOB)))
        print(f"Reusing {existing} existing extracted frame(s).")
        return existing

    if dry_run:
        progress_write(f"[DRY RUN] {' '.join(build_extract_command(ffmpeg_bin, input_video, frames_dir))}")
        return None

    print("Converting to frames...")
    return extract_frames(ffmpeg_bin, input_video, work_dir)


# ── Scheduling ─────────────────────────────────────────────────────────────────


def schedule_parameter(index: int, total_frames: int, start: int, end: int) -> int:
    """Shape count for frame `index` (1-based) of `total_frames`.

    floor(((index - 1) / (total_frames - 1)) * (end - start) + start), computed
    in integers so the first frame gets exactly `start` and the last exactly
    `end`. A single-frame clip gets `start`.
    """
    if total_frames < 1:
        raise ValueError(f"total_frames must be >= 1, got {total_frames}")
    if not 1 <= index <= total_frames:
        raise ValueError(f"frame index {index} outside 1..{total_frames}")
    if total_frames == 1:
        return start
    return start + ((index - 1) * (end - start)) // (total_frames - 1)


def plan_work_items(job: Job) -> list[FrameWorkItem]:
    return [
        FrameWorkItem(
            index=index,
            source=job.frames_dir / (INPUT_FRAME_PATTERN % index),
            destination=job.styled_dir / (STYLED_FRAME_PATTERN % index),
            partial=job.styled_dir / (PARTIAL_FRAME_PATTERN % index),
            n=schedule_parameter(index, job.total_frames, job.start, job.end),
        )
        for index in range(1, job.total_frames + 1)
    ]


def clear_processed_frames(styled_dir: Path) -> int:
    removed = 0
    for pattern in (STYLED_FRAME_GLOB, PARTIAL_FRAME_GLOB):
        for frame in styled_dir.glob(pattern):
            frame.unlink(missing_ok=True)
            removed += 1
    return removed


# ── Frame processing ───────────────────────────────────────────────────────────


def build_primitive_command(primitive_bin: str, item: FrameWorkItem, config: JobConfig) -> list[str]:
    return [
        primitive_bin,
        "-i",
        str(item.source),
        "-o",
        str(item.partial),
        "-n",
        str(item.n),
        "-v",
        *config.primitive_options,
    ]


class ActiveTasks:
    """Running FrameTasks, so a failure or interrupt can stop all of them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: set[FrameTask] = set()
        self._closed = False

    def add(self, task: FrameTask) -> None:
        with self._lock:
            if not self._closed:
                self._tasks.add(task)
                return
        task.cancel()

    def discard(self, task: FrameTask) -> None:
        with self._lock:
            self._tasks.discard(task)

    def cancel_all(self) -> None:
        with self._lock:
            self._closed = True
            tasks = list(self._tasks)
        for task in tasks:
            task.cancel()


def _notify(observer: Optional[FrameObserver], event: FrameEvent) -> None:
    if observer is not None:
        observer(event)


def process_frame(
    primitive_bin: str,
    item: FrameWorkItem,
    config: JobConfig,
    *,
    observer: Optional[FrameObserver] = None,
    active: Optional[ActiveTasks] = None,
) -> None:
    """Stylize one frame, publishing the result only if primitive succeeds.

    primitive writes to `item.partial`; the file is renamed onto
    `item.destination` after a zero exit, so the destination existing always
    means a complete frame.
    """
    task = FrameTask(build_primitive_command(primitive_bin, item, config))
    item.partial.unlink(missing_ok=True)
    _notify(observer, FrameEvent("started", item))

    try:
        task.start()
    except OSError as exc:
        raise FrameProcessingError(item.index, None, str(exc)) from exc

    if active is not None:
        active.add(task)
    try:
        for line in task.events():
            _notify(observer, FrameEvent("progress", item, line))
        returncode = task.wait()
    except BaseException:
        task.cancel()
        item.partial.unlink(missing_ok=True)
        raise
    finally:
        if active is not None:
            active.discard(task)

    if returncode != 0 or not item.partial.exists():
        item.partial.unlink(missing_ok=True)
        if task.cancelled:
            detail = "cancelled"
        elif returncode == 0:
            detail = "no output frame written"
        else:
            detail = task.stderr_tail or "no stderr"
        raise FrameProcessingError(item.index, returncode, detail)

    os.replace(item.partial, item.destination)
    _notify(observer, FrameEvent("finished", item))


class TqdmProgressObserver:
    """One overall frame bar plus a per-frame shape bar for each running frame."""

    def __init__(self, total: int):
        self._lock = threading.Lock()
        self._overall = tqdm(total=total, desc="Stylizing", unit="frame")
        self._bars: dict[int, tqdm] = {}

    def __call__(self, event: FrameEvent) -> None:
        index = event.item.index
        with self._lock:
            if event.kind == "started":
                self._bars[index] = tqdm(
                    total=max(event.item.n, 0) or None,
                    desc=f"Processing frame {index}",
                    unit="shape",
                    leave=False,
                )
            elif event.kind == "progress" and index in self._bars:
                self._bars[index].update(1)
            elif event.kind == "finished":
                bar = self._bars.pop(index, None)
                if bar is not None:
                    bar.close()
                self._overall.update(1)

    def close(self) -> None:
        with self._lock:
            for bar in self._bars.values():
                bar.close()
            self._bars.clear()
            self._overall.close()


class FrameProcessor:
    """Runs the per-frame loop, skipping frames whose output already exists."""

    def __init__(
        self,
        toolchain: Toolchain,
        config: JobConfig,
        *,
        observer: Optional[FrameObserver] = None,
    ):
        self.toolchain = toolchain
        self.config = config
        self.observer = observer
        self._active = ActiveTasks()

    def run(self, items: Sequence[FrameWorkItem]) -> int:
        """Process pending items in index order; return how many were processed."""
        pending = [item for item in items if not item.done]
        skipped = len(items) - len(pending)
        for item in items:
            if item.done:
                _notify(self.observer, FrameEvent("skipped", item))
        if skipped:
            print(f"Skipping {skipped} already-stylized frame(s).")
        if not pending:
            return 0

        if self.config.dry_run:
            for item in pending:
                progress_write(f"[DRY RUN] {' '.join(build_primitive_command(self.toolchain.primitive, item, self.config))}")
            return 0

        observer = self.observer
        owned_observer = None
        if observer is None:
            owned_observer = TqdmProgressObserver(len(pending))
            observer = owned_observer
        try:
            if self.config.workers == 1:
                for item in pending:
                    process_frame(self.toolchain.primitive, item, self.config, observer=observer)
            else:
                self._run_pool(pending, observer)
        finally:
            if owned_observer is not None:
                owned_observer.close()
        return len(pending)

    def _run_pool(self, pending: Sequence[FrameWorkItem], observer: FrameObserver) -> None:
        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="frame") as executor:
            futures = [
                executor.submit(
                    process_frame,
                    self.toolchain.primitive,
                    item,
                    self.config,
                    observer=observer,
                    active=self._active,
                )
                for item in pending
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                self._active.cancel_all()
                raise


# ── Recombination ──────────────────────────────────────────────────────────────


def get_codec_flags(codec: str, preset: str, crf: int) -> list[str]:
    """Return ffmpeg codec flags for the requested encoder."""
    if codec == "h264":
        return ["-c:v", "libx264", "-preset", preset, "-crf", str(crf)]
    if codec == "h265":
        return ["-c:v", "libx265", "-preset", preset, "-crf", str(crf)]
    raise ValueError(f"Unsupported codec: {codec}")


def build_reassemble_command(
    ffmpeg_bin: str,
    styled_dir: Path,
    output_video: Path,
    *,
    frame_rate: Fraction,
    codec: str,
    preset: str,
    crf: int,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-y",
        "-framerate",
        str(frame_rate),
        "-start_number",
        "1",
        "-i",
        str(styled_dir / STYLED_FRAME_PATTERN),
        # yuv420p needs even dimensions
        "-vf",
        "scale=trunc(iw/2)*2:trunc(ih/2)*2",
    ]
    cmd.extend(get_codec_flags(codec, preset, crf))
    cmd.extend(
        [
            "-pix_fmt",
            "yuv420p",
            str(output_video),
            "-hide_banner",
            "-loglevel",
            "warning",
        ]
    )
    return cmd


def reassemble_video(
    ffmpeg_bin: str,
    styled_dir: Path,
    output_video: Path,
    *,
    frame_rate: Fraction,
    codec: str = "h264",
    preset: str = "slow",
    crf: int = 18,
) -> None:
    output_video.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_reassemble_command(
        ffmpeg_bin,
        styled_dir,
        output_video,
        frame_rate=frame_rate,
        codec=codec,
        preset=preset,
        crf=crf,
    )
    try:
        run_subprocess(cmd, capture_output=True)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "no stderr"
        raise RecombineError(f"ffmpeg exited with status {exc.returncode}: {stderr}") from exc
    except OSError as exc:
        raise RecombineError(f"Unable to run ffmpeg: {exc}") from exc


# ── Orchestration ──────────────────────────────────────────────────────────────


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


class JobRunner:
    """Drives one job through hashing, probing, extraction, the frame loop and recombination.

    Stages run strictly in order. Any failure moves the runner to FAILED and
    leaves the scratch directory in place for the next run to resume from.
    """

    def __init__(
        self,
        config: JobConfig,
        toolchain: Toolchain,
        *,
        observer: Optional[FrameObserver] = None,
    ):
        self.config = config
        self.toolchain = toolchain
        self.observer = observer
        self.state: Optional[JobState] = None
        self.history: list[JobState] = []
        self.job: Optional[Job] = None

    def _enter(self, state: JobState) -> None:
        self.state = state
        self.history.append(state)

    @contextlib.contextmanager
    def _stage(self, state: JobState, title: str) -> Iterator[None]:
        self._enter(state)
        print(title)
        step_start = time.time()
        with tracer.start_as_current_span(f"stage.{state.value}"):
            yield
        print(f"  Time: {format_time(time.time() - step_start)}\n")

    def run(self) -> Job:
        try:
            return self._run()
        except BaseException as exc:
            failed_stage = self.state
            self._enter(JobState.FAILED)
            if isinstance(exc, OSError) and failed_stage is not None:
                raise StageError(str(exc), stage=failed_stage.value) from exc
            raise

    def _run(self) -> Job:
        config = self.config

        with self._stage(JobState.HASHING, "Hashing input..."):
            digest = compute_job_digest(config.input_path)
            work_dir = job_workspace(digest, config.work_root)
            print(f"  Job: {digest}")
            print(f"  Workspace: {work_dir}")

        with self._stage(JobState.PROBING, "Analyzing video..."):
            info = get_video_info(self.toolchain.ffprobe, config.input_path)
            if info.total_frames < 1:
                raise DegenerateInputError("Input video reports zero frames; nothing to stylize.")
            print(f"Running job on file: {config.input_path.name} ({digest}) [{info.total_frames} frames]")
            print(f"  Resolution: {info.width}x{info.height}")
            print(f"  Framerate:  {float(info.frame_rate):.3f} fps ({info.frame_rate})")

        total_frames = info.total_frames
        with self._stage(JobState.EXTRACTING, "Preparing frames..."):
            extracted = ensure_input_frames(
                self.toolchain.ffmpeg,
                config.input_path,
                work_dir,
                dry_run=config.dry_run,
            )
            if extracted is not None and extracted != total_frames:
                progress_write(
                    f"Warning: probe reported {total_frames} frame(s) but {extracted} were extracted; "
                    f"using {extracted}."
                )
                total_frames = extracted
            print(f"  Frames: {total_frames}")

        job = Job(
            digest=digest,
            input_path=config.input_path,
            output_path=config.output_path,
            total_frames=total_frames,
            frame_rate=info.frame_rate,
            work_dir=work_dir,
            start=config.start,
            end=config.end,
        )
        self.job = job

        with self._stage(JobState.PROCESSING, "Stylizing frames..."):
            job.styled_dir.mkdir(parents=True, exist_ok=True)
            if config.force and config.dry_run:
                existing = len(list(job.styled_dir.glob(STYLED_FRAME_GLOB)))
                if existing:
                    progress_write(f"[DRY RUN] would remove {existing} stylized frame(s) (--force)")
            elif config.force:
                removed = clear_processed_frames(job.styled_dir)
                if removed:
                    print(f"  Removed {removed} previously stylized frame(s) (--force).")
            items = plan_work_items(job)
            processed = FrameProcessor(self.toolchain, config, observer=self.observer).run(items)
            print(f"  Stylized: {processed} frame(s), shapes {job.start} -> {job.end}")

        if config.dry_run:
            print("Dry run complete. Skipping video reassembly.")
            self._enter(JobState.DONE)
            return job

        missing = [item.index for item in items if not item.done]
        if missing:
            raise StageError(
                f"{len(missing)} frame(s) have no stylized output (first: {missing[0]}).",
                stage=JobState.PROCESSING.value,
            )

        with self._stage(JobState.RECOMBINING, "Reassembling output video..."):
            reassemble_video(
                self.toolchain.ffmpeg,
                job.styled_dir,
                job.output_path,
                frame_rate=job.frame_rate,
                codec=config.codec,
                preset=config.preset,
                crf=config.crf,
            )

        self._enter(JobState.DONE)
        return job


def run_job(
    config: JobConfig,
    toolchain: Toolchain,
    *,
    observer: Optional[FrameObserver] = None,
) -> Job:
    job = JobRunner(config, toolchain, observer=observer).run()
    if config.cleanup and not config.dry_run:
        shutil.rmtree(job.work_dir, ignore_errors=True)
    return job


def run_pipeline(config: JobConfig, toolchain: Toolchain) -> int:
    print("\n" + "=" * 60)
    print("Video Stylizer - primitive")
    if config.dry_run:
        print("*** DRY RUN MODE ***")
    print("=" * 60)
    print(f"Input:   {config.input_path}")
    print(f"Output:  {config.output_path}")
    print(f"Shapes:  {config.start} -> {config.end}")
    print(f"Options: mode={config.mode} resize={config.resize} size={config.size}")
    print(f"Workers: {config.workers}")
    print(f"Codec:   {config.codec} (preset={config.preset}, crf={config.crf})")
    print("=" * 60 + "\n")

    total_start = time.time()
    job = run_job(config, toolchain)
    if config.dry_run:
        return 0

    print("=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print(f"Output: {job.output_path.name}")
    if job.output_path.exists():
        output_size_mb = job.output_path.stat().st_size / (1024 * 1024)
        print(f"Output size: {output_size_mb:.1f} MB")
    if config.cleanup:
        print("Workspace removed.")
    else:
        print(f"Workspace kept at: {job.work_dir}")
    print("=" * 60 + "\n")
    return 0


@_traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    if config.debug:
        print(config.to_json())

    try:
        try:
            toolchain = resolve_toolchain(config.primitive_path)
        except FileNotFoundError as exc:
            raise ToolchainError(str(exc)) from exc
        return run_pipeline(config, toolchain)
    except StageError as exc:
        print(f"Error [{exc.stage}]: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted by user. Re-run with the same input to resume.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def console_main() -> None:
    init_tracing()
    raise SystemExit(main())


if __name__ == "__main__":
    console_main()
