"""CLI: argument parsing, model aliases, and runtime validation."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from image_pipeline import SUPPORTED_OUTPUT_FORMATS
from progress_watcher import DEFAULT_POLL_INTERVAL, DEFAULT_STALL_TIMEOUT
from video_pipeline import (
    DEFAULT_SCALE,
    SUPPORTED_FRAME_FORMATS,
    SUPPORTED_SCALES,
    VideoRunConfig,
)

# ── Constants ──────────────────────────────────────────────────────────────────

CONTENT_TYPES = ("real-life", "animation")
MODEL_BY_TYPE = {
    "real-life": "realesrgan-x4plus",
    "animation": "realesrgan-x4plus-anime",
}


# ── Functions ──────────────────────────────────────────────────────────────────


def resolve_model(args: argparse.Namespace) -> str:
    """Map the content type to a model unless the hidden override is set."""
    if args.model:
        return args.model
    return MODEL_BY_TYPE[args.type_alias]


def build_video_config(args: argparse.Namespace) -> VideoRunConfig:
    return VideoRunConfig(
        input_path=Path(args.input_video).expanduser().resolve(),
        model_name=resolve_model(args),
        scale_factor=args.scale,
        output_format=args.frame_format,
        open_output_dir=args.open_dir,
        output_path=Path(args.output).expanduser() if args.output else None,
    )


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.command == "video":
        if args.stall_timeout <= 0:
            raise ValueError("Stall timeout must be > 0.")
        if args.poll_interval <= 0:
            raise ValueError("Poll interval must be > 0.")
        if args.poll_interval >= args.stall_timeout:
            raise ValueError("Poll interval must be shorter than the stall timeout.")
        config = build_video_config(args)
        if config.resolve_output_path() == config.input_path:
            raise ValueError("Output video path must be different from input video path.")
        if args.work_dir:
            work_dir = Path(args.work_dir).expanduser()
            if work_dir.exists() and not work_dir.is_dir():
                raise ValueError("Work directory path must be a directory, not a file.")
    elif args.command == "image":
        if args.output_dir:
            output_dir = Path(args.output_dir).expanduser()
            if output_dir.exists() and not output_dir.is_dir():
                raise ValueError("Output directory path must be a directory, not a file.")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--type",
        dest="type_alias",
        type=str,
        default="real-life",
        choices=CONTENT_TYPES,
        help="Content type (determines underlying AI model)",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=None,
        help=argparse.SUPPRESS,  # Hidden advanced override
    )
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "--ffmpeg-path",
        type=str,
        default=None,
        help="Custom path to ffmpeg binary",
    )
    parser.add_argument(
        "--ffprobe-path",
        type=str,
        default=None,
        help="Custom path to ffprobe binary",
    )
    parser.add_argument(
        "--open-dir",
        action="store_true",
        help="Open the output folder when processing completes",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Export OpenTelemetry spans (endpoint from ENLARGE_OTLP_ENDPOINT)",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Enlarge images and videos using Real-ESRGAN and FFmpeg",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    image_parser = subparsers.add_parser(
        "image",
        help="Enlarge one or more images",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    image_parser.add_argument("inputs", nargs="+", type=str, help="Input image paths")
    image_parser.add_argument(
        "-f",
        "--format",
        dest="output_format",
        type=str.lower,
        default="png",
        choices=SUPPORTED_OUTPUT_FORMATS,
        help="Output image format",
    )
    image_parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Output directory (default: next to each input)",
    )
    _add_common_arguments(image_parser)

    video_parser = subparsers.add_parser(
        "video",
        help="Enlarge a video",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    video_parser.add_argument("input_video", type=str, help="Path to input video")
    video_parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output video path (default: <input>_enhanced.mp4)",
    )
    video_parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=DEFAULT_SCALE,
        choices=SUPPORTED_SCALES,
        help="Upscaling factor",
    )
    video_parser.add_argument(
        "-f",
        "--frame-format",
        type=str.lower,
        default="png",
        choices=SUPPORTED_FRAME_FORMATS,
        help="Intermediate enhanced frame format",
    )
    video_parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Parent directory for the temporary frame workspace",
    )
    video_parser.add_argument(
        "--stall-timeout",
        type=float,
        default=DEFAULT_STALL_TIMEOUT,
        help="Seconds without a new enhanced frame before the run fails",
    )
    video_parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Seconds between progress checks",
    )
    _add_common_arguments(video_parser)

    return parser.parse_args(argv)
