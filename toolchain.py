"""Toolchain: executable resolution, console output, and folder reveal."""

from __future__ import annotations

import argparse
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from errors import LaunchError

REALESRGAN = "realesrgan-ncnn-vulkan"
FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"

VENDOR_DIRS = ("Real-ESRGAN-ncnn-vulkan", "realesrgan")
UNIX_BIN_DIRS = (
    Path("/usr/local/bin"),
    Path("/usr/bin"),
    Path.home() / ".local" / "bin",
    Path("/opt/homebrew/bin"),
)


@dataclass(frozen=True)
class Toolchain:
    realesrgan: str
    ffmpeg: str
    ffprobe: str


def progress_write(message: str) -> None:
    """Write a console line without tearing an active progress bar."""
    tqdm.write(message)


def is_windows() -> bool:
    return platform.system().lower() == "windows"


def get_executable_name(name: str) -> str:
    """Return the platform file name for an executable."""
    if is_windows() and not name.lower().endswith(".exe"):
        return f"{name}.exe"
    return name


def _is_executable(candidate: Path) -> bool:
    if not candidate.is_file():
        return False
    return is_windows() or os.access(candidate, os.X_OK)


def find_local_executable(search_root: Path, binary_name: str) -> Optional[Path]:
    """Look for an executable beside the working directory.

    Checks the search root itself, any vendored Real-ESRGAN directory under
    it, and on Unix the usual bin directories that may be missing from PATH.
    """
    direct = search_root / binary_name
    if _is_executable(direct):
        return direct

    for vendor in VENDOR_DIRS:
        vendor_root = search_root / vendor
        if not vendor_root.is_dir():
            continue
        for candidate in sorted(vendor_root.rglob(binary_name)):
            if _is_executable(candidate):
                return candidate

    if not is_windows():
        for bin_dir in UNIX_BIN_DIRS:
            candidate = bin_dir / binary_name
            if _is_executable(candidate):
                return candidate

    return None


def resolve_executable(
    name: str,
    custom_path: Optional[str] = None,
    search_root: Optional[Path] = None,
) -> str:
    """Resolve an executable from an explicit path, PATH, or local directories."""
    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise LaunchError(name, f"not found at {candidate}")
        return str(candidate)

    if search_root is None:
        search_root = Path.cwd()

    binary_name = get_executable_name(name)
    system_binary = shutil.which(binary_name)
    if system_binary:
        return str(Path(system_binary).resolve())

    local_binary = find_local_executable(search_root, binary_name)
    if local_binary:
        return str(local_binary.resolve())

    raise LaunchError(name, "not found in PATH or next to the working directory")


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Resolve every executable up front and report all missing ones at once."""
    requested = {
        REALESRGAN: getattr(args, "realesrgan_path", None),
        FFMPEG: getattr(args, "ffmpeg_path", None),
        FFPROBE: getattr(args, "ffprobe_path", None),
    }
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for name, custom_path in requested.items():
        try:
            resolved[name] = resolve_executable(name, custom_path)
        except LaunchError:
            missing.append(name)

    if missing:
        raise LaunchError(
            ", ".join(missing),
            "missing required dependency. Install it with your package manager "
            "or pass the matching --*-path option.",
        )

    return Toolchain(
        realesrgan=resolved[REALESRGAN],
        ffmpeg=resolved[FFMPEG],
        ffprobe=resolved[FFPROBE],
    )


def reveal_directory(path: Path) -> None:
    """Open a folder in the platform file manager. Failures only warn."""
    system = platform.system().lower()
    if system == "windows":
        cmd = ["explorer", str(path)]
    elif system == "darwin":
        cmd = ["open", str(path)]
    else:
        cmd = ["xdg-open", str(path)]

    try:
        subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        progress_write(f"Warning: Could not open {path}: {exc}")
