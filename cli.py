"""CLI: argument parsing, the immutable job configuration, and validation."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Sequence

# ── Constants ──────────────────────────────────────────────────────────────────

__version__ = "0.3.0"

DEFAULT_N = 1000
DEFAULT_CUSTOM = "1,256,1024"
SUPPORTED_CODECS = ("h264", "h265")
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)
# primitive shape modes: 0=combo 1=triangle 2=rect 3=ellipse 4=circle
# 5=rotatedrect 6=beziers 7=rotatedellipse 8=polygon
PRIMITIVE_MODES = range(0, 9)


class ConfigError(ValueError):
    """Invalid or missing configuration, reported before any I/O."""


@dataclass(frozen=True)
class JobConfig:
    input_path: Path
    output_path: Path
    start: int
    end: int
    mode: int
    resize: int
    size: int
    workers: int
    work_root: Optional[Path]
    primitive_path: Optional[str]
    codec: str
    preset: str
    crf: int
    force: bool
    dry_run: bool
    cleanup: bool
    debug: bool

    @property
    def primitive_options(self) -> list[str]:
        return ["-m", str(self.mode), "-r", str(self.resize), "-s", str(self.size)]

    def to_json(self) -> str:
        payload = {key: str(value) if isinstance(value, Path) else value for key, value in asdict(self).items()}
        return json.dumps(payload, indent=2, sort_keys=True)


# ── Functions ──────────────────────────────────────────────────────────────────


def parse_custom_options(value: str) -> tuple[int, int, int]:
    """Parse the `mode,resize,size` triple passed with --custom."""
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 3:
        raise ConfigError(f"--custom expects three comma-separated integers (mode,resize,size), got: {value!r}")
    try:
        mode, resize, size = (int(part) for part in parts)
    except ValueError as exc:
        raise ConfigError(f"--custom values must be integers, got: {value!r}") from exc
    return mode, resize, size


def validate_config(config: JobConfig) -> None:
    if config.mode not in PRIMITIVE_MODES:
        raise ConfigError(f"Mode must be between {PRIMITIVE_MODES.start} and {PRIMITIVE_MODES.stop - 1}.")
    if config.resize <= 0:
        raise ConfigError("Resize resolution must be > 0.")
    if config.size <= 0:
        raise ConfigError("Output size must be > 0.")
    if config.workers < 1:
        raise ConfigError("Workers must be >= 1.")
    if config.crf < 0 or config.crf > 51:
        raise ConfigError("CRF must be between 0 and 51.")
    if config.input_path == config.output_path:
        raise ConfigError("Output video path must be different from input video path.")
    if config.work_root is not None and config.work_root.exists() and not config.work_root.is_dir():
        raise ConfigError("Work root must be a directory, not a file.")


def build_config(args: argparse.Namespace) -> JobConfig:
    """Resolve parsed arguments into the single immutable job configuration."""
    if not args.input:
        raise ConfigError("Please enter a file to process (--input).")
    if not args.output:
        raise ConfigError("Please enter an output path (--output).")

    mode, resize, size = parse_custom_options(args.custom)
    if args.mode is not None:
        mode = args.mode
    if args.resize is not None:
        resize = args.resize
    if args.size is not None:
        size = args.size

    config = JobConfig(
        input_path=Path(args.input).expanduser().resolve(),
        output_path=Path(args.output).expanduser().resolve(),
        start=args.start,
        end=args.end,
        mode=mode,
        resize=resize,
        size=size,
        workers=args.workers,
        work_root=Path(args.work_root).expanduser().resolve() if args.work_root else None,
        primitive_path=args.primitive_path,
        codec=args.codec,
        preset=args.preset,
        crf=args.crf,
        force=args.force,
        dry_run=args.dry_run,
        cleanup=args.cleanup,
        debug=args.debug,
    )
    validate_config(config)
    return config


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stylize-video",
        description="Stylize every frame of a video with primitive and re-encode it",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-i", "--input", type=str, default=None, help="Input video path")
    parser.add_argument("-o", "--output", type=str, default=None, help="Output video path")
    parser.add_argument(
        "-s",
        "-b",
        "--start",
        "--begin",
        dest="start",
        type=int,
        default=DEFAULT_N,
        help="Shape count for the first frame",
    )
    parser.add_argument(
        "-e",
        "--end",
        type=int,
        default=DEFAULT_N,
        help="Shape count for the last frame",
    )
    parser.add_argument(
        "-c",
        "--custom",
        type=str,
        default=DEFAULT_CUSTOM,
        help="Additional primitive options as mode,resize,size",
    )
    parser.add_argument("--mode", type=int, default=None, help="Override the primitive shape mode")
    parser.add_argument("--resize", type=int, default=None, help="Override the primitive input resize")
    parser.add_argument("--size", type=int, default=None, help="Override the primitive output size")
    parser.add_argument(
        "-w",
        "--workers",
        type=int,
        default=1,
        help="Number of frames stylized concurrently",
    )
    parser.add_argument(
        "--work-root",
        type=str,
        default=None,
        help="Directory holding per-job scratch directories (default: system temp)",
    )
    parser.add_argument(
        "--primitive-path",
        type=str,
        default=None,
        help="Custom path to the primitive binary",
    )
    parser.add_argument(
        "--codec",
        type=str,
        choices=SUPPORTED_CODECS,
        default="h264",
        help="Output video codec",
    )
    parser.add_argument(
        "--preset",
        type=str,
        default="slow",
        choices=SUPPORTED_PRESETS,
        help="x264/x265 preset",
    )
    parser.add_argument("--crf", type=int, default=18, help="x264/x265 CRF (0-51)")
    parser.add_argument("--force", action="store_true", help="Re-stylize all frames")
    parser.add_argument("--dry-run", action="store_true", help="Print commands without executing")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the job scratch directory after a successful run",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Echo the resolved configuration")

    return parser.parse_args(argv)
