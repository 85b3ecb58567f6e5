"""Result model shared by the fetchers and the build cache."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from qpkg.source import SourceSpec


@dataclass(frozen=True, slots=True)
class ResolvedSource:
    """A source materialized on disk.

    ``identity`` is the content identity of what was fetched: the commit id
    checked out for git sources, the sha256 of the payload for downloads.
    """

    spec: SourceSpec
    path: Path
    identity: str
    etag: str | None = None

    def root(self, subdir: str = "") -> Path:
        return self.path / subdir if subdir else self.path


__all__ = ["ResolvedSource"]
