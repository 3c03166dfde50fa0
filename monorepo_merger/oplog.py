from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

HEADER_ID = "header"
STATUSES = ("started", "completed", "failed")


@dataclass
class OperationLogEntry:
    id: str
    status: str
    timestamp: str
    plan_hash: Optional[str] = None
    outputs: Optional[List[str]] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationLogEntry":
        return cls(
            id=data["id"],
            status=data["status"],
            timestamp=data.get("timestamp", ""),
            plan_hash=data.get("plan_hash"),
            outputs=data.get("outputs"),
            duration_ms=data.get("duration_ms"),
            error=data.get("error"),
        )


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OperationLog:
    """Append-only JSON Lines record of apply progress for one target."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.entries: List[OperationLogEntry] = []
        if path.exists():
            self.entries = read_entries(path)

    @property
    def header(self) -> Optional[OperationLogEntry]:
        for entry in self.entries:
            if entry.id == HEADER_ID:
                return entry
        return None

    def completed_ids(self) -> List[str]:
        return [
            entry.id
            for entry in self.entries
            if entry.status == "completed" and entry.id != HEADER_ID
        ]

    def failed_ids(self) -> List[str]:
        completed = set(self.completed_ids())
        failed: List[str] = []
        for entry in self.entries:
            if entry.status == "failed" and entry.id not in completed and entry.id not in failed:
                failed.append(entry.id)
        return failed

    def is_completed(self, operation_id: str) -> bool:
        return any(
            entry.id == operation_id and entry.status == "completed" for entry in self.entries
        )

    def write_header(self, plan_hash: str) -> OperationLogEntry:
        if self.entries:
            raise RuntimeError(f"Operation log {self.path} already has entries")
        if self.path.exists() and self.path.stat().st_size:
            # Nothing readable: the header itself was torn by a crash.
            logging.warning("Discarding unreadable operation log %s", self.path)
            self.path.write_text("", encoding="utf-8")
        return self.append(
            OperationLogEntry(id=HEADER_ID, status="started", timestamp=now(), plan_hash=plan_hash)
        )

    def append(self, entry: OperationLogEntry) -> OperationLogEntry:
        if entry.status not in STATUSES:
            raise ValueError(f"Unknown log status: {entry.status}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        torn = self._ends_mid_line()
        with self.path.open("a", encoding="utf-8") as handle:
            if torn:
                handle.write("\n")
            handle.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        self.entries.append(entry)
        return entry

    def _ends_mid_line(self) -> bool:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with self.path.open("rb") as handle:
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) != b"\n"


def read_entries(path: Path) -> List[OperationLogEntry]:
    entries: List[OperationLogEntry] = []
    with path.open("r", encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entries.append(OperationLogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError) as exc:
                # A torn final write from a crash; anything it described gets redone.
                logging.warning("Ignoring unreadable log line %d in %s: %s", number, path, exc)
    return entries
