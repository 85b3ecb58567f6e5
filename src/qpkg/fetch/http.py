"""Download-and-unpack fetch for plain URL sources."""

from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import tempfile
import zipfile
from http.client import IncompleteRead
from pathlib import Path
from typing import BinaryIO
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import zstandard

from qpkg.errors import (
    FetchError,
    FetchInterruptedError,
    NetworkFailureError,
    SourceNotFoundError,
)
from qpkg.fetch.model import ResolvedSource
from qpkg.process import CancelToken
from qpkg.source import UrlSource

CHUNK_SIZE = 1 << 16
DEFAULT_TIMEOUT = 60.0
TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")
ZSTD_TAR_SUFFIXES = (".tar.zst", ".tzst")
NOT_FOUND_STATUSES = frozenset({404, 410})


def download_url(
    spec: UrlSource,
    dest: Path,
    *,
    cancel: CancelToken | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> ResolvedSource:
    """Download ``spec`` into a temporary file, verify it, then unpack into ``dest``."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.name}-", suffix=".part", dir=str(dest.parent))
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            digest, etag = _transfer(spec, handle, cancel=cancel, timeout=timeout)
        _unpack(temp_path, dest, filename=spec.filename)
    finally:
        temp_path.unlink(missing_ok=True)
    return ResolvedSource(spec=spec, path=dest, identity=digest, etag=etag)


def _transfer(
    spec: UrlSource,
    handle: BinaryIO,
    *,
    cancel: CancelToken | None,
    timeout: float,
) -> tuple[str, str | None]:
    context = {"operation": "fetch", "url": spec.location}
    hasher = hashlib.sha256()
    received = 0
    try:
        with urlopen(spec.location, timeout=timeout) as response:  # noqa: S310 - scheme validated by parse_source
            expected = _content_length(response.headers.get("Content-Length"))
            etag = response.headers.get("ETag")
            while True:
                if cancel is not None and cancel.cancelled:
                    raise FetchInterruptedError("Download cancelled.", context=context)
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                hasher.update(chunk)
                handle.write(chunk)
                received += len(chunk)
    except IncompleteRead as exc:
        raise FetchInterruptedError(
            "Download ended before the advertised length was received.",
            context={**context, "received": str(received + len(exc.partial))},
        ) from exc
    except HTTPError as exc:
        if exc.code in NOT_FOUND_STATUSES:
            raise SourceNotFoundError(
                "Source URL does not exist.",
                context={**context, "status": str(exc.code)},
            ) from exc
        raise NetworkFailureError(
            "Download failed with an HTTP error.",
            hint="Retry the build once the server is reachable.",
            context={**context, "status": str(exc.code)},
        ) from exc
    except URLError as exc:
        if isinstance(exc.reason, FileNotFoundError):
            raise SourceNotFoundError("Source URL does not exist.", context=context) from exc
        raise NetworkFailureError(
            "Download failed.",
            hint="Retry the build once the network is reachable.",
            context={**context, "reason": str(exc.reason)},
        ) from exc
    except OSError as exc:
        raise NetworkFailureError(
            "Download failed.",
            hint="Retry the build once the network is reachable.",
            context={**context, "reason": str(exc)},
        ) from exc

    if expected is not None and received != expected:
        raise FetchInterruptedError(
            "Download ended before the advertised length was received.",
            context={**context, "expected": str(expected), "received": str(received)},
        )
    return hasher.hexdigest(), etag


def _content_length(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _unpack(archive: Path, dest: Path, *, filename: str) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    lowered = filename.lower()
    try:
        if lowered.endswith(ZSTD_TAR_SUFFIXES):
            with archive.open("rb") as compressed:
                reader = zstandard.ZstdDecompressor().stream_reader(compressed)
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(dest, filter="data")
        elif lowered.endswith(TAR_SUFFIXES):
            with tarfile.open(archive) as tar:
                tar.extractall(dest, filter="data")
        elif lowered.endswith(".zip"):
            with zipfile.ZipFile(archive) as zipped:
                zipped.extractall(dest)
        else:
            shutil.copyfile(archive, dest / filename)
    except (tarfile.TarError, zipfile.BadZipFile, zstandard.ZstdError) as exc:
        raise FetchError(
            "Downloaded archive could not be unpacked.",
            hint="Check that the URL points at a valid archive.",
            context={"operation": "unpack", "file": filename, "error": str(exc)},
        ) from exc


__all__ = ["download_url"]
