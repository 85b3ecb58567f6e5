"""Structured run log.

Workers append records concurrently; the executor writes the whole log
as JSON lines to ``<workspace>/logs/run.jsonl`` when a run finishes.
"""

from __future__ import annotations

import json
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    clock: Any = field(default=time.time, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        operation: str,
        package: str | None,
        state: str | None,
        message: str,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "ts": round(self.clock(), 6),
            "level": level,
            "operation": operation,
            "package": package,
            "state": state,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        with self._lock:
            self.records.append(record)

    def records_for_package(self, package: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for record in self.records if record.get("package") == package]

    def states_for_package(self, package: str) -> list[str]:
        """Ordered states ``package`` passed through during the run."""
        return [
            record["state"]
            for record in self.records_for_package(package)
            if record.get("operation") == "transition"
        ]

    def final_states(self) -> Counter[str]:
        """Count packages by the last state they reached."""
        last: dict[str, str] = {}
        with self._lock:
            for record in self.records:
                if record.get("operation") == "transition" and record.get("package"):
                    last[record["package"]] = record["state"]
        return Counter(last.values())

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path


__all__ = ["StructuredLogger"]
