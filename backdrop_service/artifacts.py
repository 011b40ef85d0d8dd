"""
Working-file storage for pipeline artifacts.

Every request gets an `ArtifactNamespace` whose paths are derived from the
request id, so concurrent requests never share a file. The namespace is
passed explicitly through the pipeline instead of relying on global paths.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
import time
from typing import Dict, Optional
from urllib.parse import urljoin

from .config import Settings

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RAW_INPUT = "raw_input"
    BACKGROUND_REMOVED = "background_removed"
    FINAL_COMPOSITE = "final_composite"


_SUFFIXES = {
    Stage.RAW_INPUT: "_input",
    Stage.BACKGROUND_REMOVED: "_nobg.png",
    Stage.FINAL_COMPOSITE: "_final.png",
}


@dataclass(frozen=True)
class WorkingArtifact:
    request_id: str
    stage: Stage
    path: Path
    size: int


class ArtifactNamespace:
    """Request-scoped view of the working directories."""

    def __init__(self, request_id: str, uploads_dir: Path, processed_dir: Path) -> None:
        self.request_id = request_id
        self._uploads_dir = uploads_dir
        self._processed_dir = processed_dir
        self._artifacts: Dict[Stage, WorkingArtifact] = {}

    def path_for(self, stage: Stage) -> Path:
        # Only the final composite lives in the served directory.
        base = self._processed_dir if stage is Stage.FINAL_COMPOSITE else self._uploads_dir
        return base / f"{self.request_id}{_SUFFIXES[stage]}"

    def record(self, stage: Stage) -> WorkingArtifact:
        """Register the file a stage just wrote. Each stage is written once."""
        if stage in self._artifacts:
            raise RuntimeError(f"artifact for stage {stage.value} already recorded")
        path = self.path_for(stage)
        artifact = WorkingArtifact(
            request_id=self.request_id,
            stage=stage,
            path=path,
            size=path.stat().st_size,
        )
        self._artifacts[stage] = artifact
        return artifact

    def get(self, stage: Stage) -> Optional[WorkingArtifact]:
        return self._artifacts.get(stage)

    def discard(self, stage: Stage) -> None:
        self._artifacts.pop(stage, None)
        self.path_for(stage).unlink(missing_ok=True)

    def cleanup(self, keep_final: bool = False) -> None:
        """
        Remove this request's files.

        Unrecorded paths are unlinked too, which covers partial output left
        behind by a failed or killed subprocess.
        """
        for stage in Stage:
            if keep_final and stage is Stage.FINAL_COMPOSITE:
                continue
            try:
                self.discard(stage)
            except OSError as exc:
                logger.warning(
                    "request=%s: failed to remove %s artifact: %s", self.request_id, stage.value, exc
                )


class ArtifactStore:
    """Owns the uploads/processed directories and the retention policy."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.uploads_dir = Path(settings.uploads_dir)
        self.processed_dir = Path(settings.processed_dir)

    def ensure_dirs(self) -> None:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.processed_dir.mkdir(parents=True, exist_ok=True)

    def namespace(self, request_id: str) -> ArtifactNamespace:
        return ArtifactNamespace(request_id, self.uploads_dir, self.processed_dir)

    @staticmethod
    def data_uri(artifact: WorkingArtifact) -> str:
        encoded = base64.b64encode(artifact.path.read_bytes()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def public_url(self, artifact: WorkingArtifact, base_url: Optional[str] = None) -> Optional[str]:
        """Return the URL the final composite is served at, if URL delivery is on."""
        if not self.settings.serve_results:
            return None
        base = self.settings.public_base_url or base_url
        if not base:
            return None
        return urljoin(base.rstrip("/") + "/", f"processed/{artifact.path.name}")

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """
        Delete files older than the retention window.

        Final composites live for `result_retention_seconds`. Raw and
        intermediate files should never outlive their request, so anything
        left over (e.g. after a crash) is removed on the same schedule.
        """
        now = time.time() if now is None else now
        cutoff = now - self.settings.result_retention_seconds
        removed = 0
        for directory in (self.uploads_dir, self.processed_dir):
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if not path.is_file():
                    continue
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("sweep: failed to remove %s: %s", path, exc)
        if removed:
            logger.info("sweep: removed %d expired artifact(s)", removed)
        return removed
