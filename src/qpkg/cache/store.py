"""Persistent BuildRecord store.

One JSON document per workspace maps package names to their last build
outcome. All reads and writes go through a single lock, and every write
replaces the file atomically, so a record is never observed half-written.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from qpkg.errors import CacheError

STORE_VERSION = 1


class RecordStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BuildRecord:
    name: str
    fingerprint: str
    artifact_location: str
    status: RecordStatus


class BuildRecordStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, BuildRecord] = self._read()

    def get(self, name: str) -> BuildRecord | None:
        with self._lock:
            return self._records.get(name)

    def records(self) -> dict[str, BuildRecord]:
        with self._lock:
            return dict(sorted(self._records.items()))

    def is_cached(self, name: str, fingerprint: str) -> bool:
        with self._lock:
            record = self._records.get(name)
        return (
            record is not None
            and record.status is RecordStatus.SUCCESS
            and record.fingerprint == fingerprint
        )

    def record(
        self,
        name: str,
        fingerprint: str,
        artifact_location: str | Path,
        status: RecordStatus,
    ) -> BuildRecord:
        entry = BuildRecord(
            name=name,
            fingerprint=fingerprint,
            artifact_location=str(artifact_location),
            status=RecordStatus(status),
        )
        with self._lock:
            self._records[name] = entry
            self._write()
        return entry

    def _write(self) -> None:
        payload = {
            "version": STORE_VERSION,
            "records": {
                name: {
                    "fingerprint": entry.fingerprint,
                    "artifact_location": entry.artifact_location,
                    "status": entry.status.value,
                }
                for name, entry in sorted(self._records.items())
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".records-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
            os.replace(temp_name, self.path)
        finally:
            if os.path.exists(temp_name):
                os.unlink(temp_name)

    def _read(self) -> dict[str, BuildRecord]:
        if not self.path.exists():
            return {}
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheError(
                "Build record store is not valid JSON.",
                hint="Delete the record store to force a full rebuild.",
                context={"operation": "records_load", "path": str(self.path)},
            ) from exc
        if not isinstance(parsed, dict) or parsed.get("version") != STORE_VERSION:
            raise CacheError(
                "Build record store has invalid structure or version.",
                hint="Delete the record store to force a full rebuild.",
                context={"operation": "records_load", "path": str(self.path)},
            )
        raw_records = parsed.get("records")
        if not isinstance(raw_records, dict):
            raise CacheError(
                "Build record store has no `records` mapping.",
                hint="Delete the record store to force a full rebuild.",
                context={"operation": "records_load", "path": str(self.path)},
            )
        return {name: self._parse_record(name, item) for name, item in raw_records.items()}

    def _parse_record(self, name: str, item: Any) -> BuildRecord:
        if not isinstance(item, dict):
            raise CacheError(
                "Invalid build record entry.",
                context={"operation": "records_load", "package": name},
            )
        try:
            return BuildRecord(
                name=name,
                fingerprint=str(item["fingerprint"]),
                artifact_location=str(item["artifact_location"]),
                status=RecordStatus(item["status"]),
            )
        except (KeyError, ValueError) as exc:
            raise CacheError(
                "Invalid build record entry.",
                hint="Delete the record store to force a full rebuild.",
                context={"operation": "records_load", "package": name, "error": str(exc)},
            ) from exc


__all__ = ["BuildRecord", "BuildRecordStore", "RecordStatus"]
