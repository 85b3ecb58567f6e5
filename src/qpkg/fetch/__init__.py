"""Source acquisition: downloads, git clones and the idempotent fetcher."""

from .fetcher import Fetcher, SourceFetcher, invalidate, marker_path, read_marker
from .git import clone_git, resolve_remote
from .http import download_url
from .model import ResolvedSource

__all__ = [
    "Fetcher",
    "ResolvedSource",
    "SourceFetcher",
    "clone_git",
    "download_url",
    "invalidate",
    "marker_path",
    "read_marker",
    "resolve_remote",
]
