"""Source descriptor parsing.

A descriptor is a single string naming where a package's source lives::

    https://host/path/file.tar.gz          plain download
    https://host/path/repo.git             git, default branch, shallow
    https://host/path/repo.git:branch      git, ``branch``, shallow
    https://host/path/repo.git:,full       git, default branch, full history
    https://host/path/repo.git:tag,full    git, ``tag``, full history

Parsing is pure; nothing here touches the network or the filesystem.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import unquote, urlsplit

from qpkg.errors import ParseError

URL_SCHEMES = frozenset({"http", "https", "ftp", "file"})
GIT_SCHEMES = frozenset({"http", "https", "git", "ssh", "file"})
FULL_SUFFIX = ",full"

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")
COMMIT_PREFIX_PATTERN = re.compile(r"^[0-9a-f]{4,40}$")
_SCHEME_PATTERN = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*)://")
_SCP_PATTERN = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9._-]+:")
_GIT_MARKER = re.compile(r"\.git(?=:|$)")


@dataclass(frozen=True, slots=True)
class UrlSource:
    """A file downloaded as-is and unpacked if it is an archive."""

    location: str

    kind: ClassVar[str] = "url"

    @property
    def descriptor(self) -> str:
        return self.location

    @property
    def filename(self) -> str:
        name = unquote(urlsplit(self.location).path.rsplit("/", 1)[-1])
        return name or "download"


@dataclass(frozen=True, slots=True)
class GitSource:
    """A git repository, cloned shallow (depth 1) unless ``shallow`` is false.

    ``reference`` is a branch, tag or commit; ``None`` means the
    repository's default branch.
    ``recurse_submodules`` is set from the package declaration, not from
    the descriptor string.
    """

    location: str
    reference: str | None = None
    shallow: bool = True
    recurse_submodules: bool = False

    kind: ClassVar[str] = "git"

    @property
    def descriptor(self) -> str:
        if self.reference is None and self.shallow:
            return self.location
        suffix = self.reference or ""
        if not self.shallow:
            suffix += FULL_SUFFIX
        return f"{self.location}:{suffix}"

    @property
    def pinned(self) -> bool:
        """True when the reference is a full commit id and can never move."""
        return self.reference is not None and bool(COMMIT_PATTERN.fullmatch(self.reference))

    def matches_commit(self, commit: str) -> bool:
        """True when the reference is a (possibly abbreviated) id of ``commit``."""
        return (
            self.reference is not None
            and bool(COMMIT_PREFIX_PATTERN.fullmatch(self.reference))
            and commit.startswith(self.reference)
        )


SourceSpec = UrlSource | GitSource


def parse_source(text: str) -> SourceSpec:
    """Parse a source descriptor into a :data:`SourceSpec`."""
    if not text or not text.strip():
        raise ParseError("Source descriptor is empty.")
    if any(ch.isspace() for ch in text):
        raise ParseError(
            "Source descriptor must not contain whitespace.",
            context={"descriptor": text},
        )

    marker = _GIT_MARKER.search(text, _path_start(text))
    if marker is not None:
        return _parse_git(text, end=marker.end())

    _require_scheme(text, allowed=URL_SCHEMES)
    return UrlSource(location=text)


def _path_start(text: str) -> int:
    """Offset where the path begins; the host part never marks a git source."""
    scheme = _SCHEME_PATTERN.match(text)
    if scheme is not None:
        slash = text.find("/", scheme.end())
        return len(text) if slash < 0 else slash
    scp = _SCP_PATTERN.match(text)
    if scp is not None:
        return scp.end()
    return 0


def _parse_git(text: str, *, end: int) -> GitSource:
    location = text[:end]
    _require_scheme(location, allowed=GIT_SCHEMES, allow_scp=True)

    if end == len(text):
        return GitSource(location=location)

    options = text[end + 1 :]
    shallow = True
    if options.endswith(FULL_SUFFIX):
        shallow = False
        options = options[: -len(FULL_SUFFIX)]

    if "," in options or ":" in options:
        raise ParseError(
            "Unparseable git reference options.",
            hint="Use `repo.git:ref`, `repo.git:ref,full` or `repo.git:,full`.",
            context={"descriptor": text},
        )
    return GitSource(location=location, reference=options or None, shallow=shallow)


def _require_scheme(location: str, *, allowed: frozenset[str], allow_scp: bool = False) -> None:
    match = _SCHEME_PATTERN.match(location)
    if match is not None:
        scheme = match.group(1).lower()
        if scheme not in allowed:
            raise ParseError(
                f"Unsupported scheme `{scheme}`.",
                hint="Supported schemes: " + ", ".join(sorted(allowed)),
                context={"descriptor": location},
            )
        if not location[match.end() :]:
            raise ParseError("Source descriptor has no location.", context={"descriptor": location})
        return
    if allow_scp and (_SCP_PATTERN.match(location) or location.startswith("/")):
        return
    raise ParseError(
        "Source descriptor has no recognizable scheme.",
        hint="Prefix the location with e.g. `https://`.",
        context={"descriptor": location},
    )


__all__ = [
    "COMMIT_PATTERN",
    "GitSource",
    "SourceSpec",
    "UrlSource",
    "parse_source",
]
