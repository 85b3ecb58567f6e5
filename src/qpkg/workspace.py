"""On-disk workspace layout.

Every package owns a disjoint set of directories keyed by its name, so
concurrent workers never write the same path.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

RECORDS_FILENAME = "records.json"
RUN_LOG_FILENAME = "run.jsonl"


@dataclass(frozen=True, slots=True)
class Workspace:
    root: Path

    @classmethod
    def create(cls, root: str | Path) -> Workspace:
        workspace = cls(root=Path(root).absolute())
        for directory in (
            workspace.sources_dir,
            workspace.builds_dir,
            workspace.artifacts_dir,
            workspace.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        return workspace

    @property
    def sources_dir(self) -> Path:
        return self.root / "sources"

    @property
    def builds_dir(self) -> Path:
        return self.root / "builds"

    @property
    def artifacts_dir(self) -> Path:
        return self.root / "pkgs"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def records_path(self) -> Path:
        return self.root / RECORDS_FILENAME

    @property
    def run_log_path(self) -> Path:
        return self.logs_dir / RUN_LOG_FILENAME

    def source_dir(self, name: str) -> Path:
        return self.sources_dir / name

    def build_dir(self, name: str) -> Path:
        return self.builds_dir / name

    def artifact_dir(self, name: str) -> Path:
        return self.artifacts_dir / name

    def log_path(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def reset_build(self, name: str) -> tuple[Path, Path]:
        """Empty and recreate the build and artifact directories of ``name``."""
        build_dir = self.build_dir(name)
        artifact_dir = self.artifact_dir(name)
        for directory in (build_dir, artifact_dir):
            if directory.exists():
                shutil.rmtree(directory)
            directory.mkdir(parents=True)
        log_path = self.log_path(name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("", encoding="utf-8")
        return build_dir, artifact_dir


__all__ = ["Workspace"]
