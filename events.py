"""Caller-facing notifications emitted by the pipelines."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from video_pipeline import PipelineStage


class PipelineEvents:
    """Receives progress and outcome notifications from a pipeline run.

    Every method is a no-op here; front ends override the ones they care
    about. Handlers are called from the thread driving the run, one at a
    time.
    """

    def stage_changed(self, stage: "PipelineStage") -> None:
        pass

    def progress(self, percent: float, status: str) -> None:
        pass

    def file_processed(self, path: Path) -> None:
        pass

    def images_finished(self, manifest: list[Path]) -> None:
        pass

    def video_finished(self, path: Path) -> None:
        pass

    def cancelled(self) -> None:
        pass

    def error(self, exc: Exception) -> None:
        pass
