"""Per-run scratch directories for extracted and enhanced frames."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Optional

from errors import DirectoryCreateError

FRAMES_DIR_NAME = "frames"
ENHANCED_DIR_NAME = "enhanced"


class TempWorkspace:
    """A private directory tree owned by exactly one pipeline run.

    `create()` always makes a fresh uniquely named root, so two runs never
    share a workspace. `cleanup()` may be called any number of times.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.frames_dir = root / FRAMES_DIR_NAME
        self.enhanced_dir = root / ENHANCED_DIR_NAME

    @classmethod
    def create(cls, parent: Optional[Path] = None, prefix: str = "enlarge_") -> "TempWorkspace":
        if parent is not None:
            try:
                Path(parent).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DirectoryCreateError(parent, str(exc)) from exc

        try:
            root = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
        except OSError as exc:
            raise DirectoryCreateError(parent or tempfile.gettempdir(), str(exc)) from exc

        workspace = cls(root)
        try:
            workspace.frames_dir.mkdir()
            workspace.enhanced_dir.mkdir()
        except OSError as exc:
            workspace.cleanup()
            raise DirectoryCreateError(root, str(exc)) from exc
        return workspace

    @property
    def exists(self) -> bool:
        return self.root.exists()

    def cleanup(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)

    def __enter__(self) -> "TempWorkspace":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"TempWorkspace({str(self.root)!r})"
