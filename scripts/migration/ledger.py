"""Append-only JSONL sinks: the migration Result Ledger and resolution outputs."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, TextIO

from scripts.migration.models import MigrationResult

logger = logging.getLogger("migration.ledger")


class JsonlWriter:
    """Appends one self-contained JSON document per line.

    Each append is written, flushed and (optionally) fsynced before it
    returns. Appends happen on the event loop thread, so concurrent tasks
    never interleave partial lines.
    """

    def __init__(self, path: str | os.PathLike, fsync: bool = True) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self.lines_written = 0
        self._handle: Optional[TextIO] = None

    def open(self) -> "JsonlWriter":
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("a", encoding="utf-8")
        return self

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "JsonlWriter":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def write_line(self, line: str) -> None:
        if self._handle is None:
            self.open()
        self._handle.write(line + "\n")
        self._handle.flush()
        if self.fsync:
            os.fsync(self._handle.fileno())
        self.lines_written += 1

    def append(self, document: dict[str, Any]) -> None:
        self.write_line(json.dumps(document))


class ResultLedger(JsonlWriter):
    """One line per successfully migrated user.

    No deduplication against earlier runs happens here; a resumed run is
    positioned by the caller's explicit skip offset.
    """

    def record(self, workos_user_id: str, auth0_user_id: str, created: bool) -> None:
        self.append({
            "workos_user_id": workos_user_id,
            "auth0_user_id": auth0_user_id,
            "created": created,
        })


def summarise_ledger(path: str | os.PathLike) -> dict[str, int]:
    """Count ledger lines by outcome. Unparseable lines are counted, not raised."""
    counts = {"lines": 0, "created": 0, "updated": 0, "invalid": 0}
    ledger_path = Path(path)
    if not ledger_path.exists():
        return counts
    with ledger_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            counts["lines"] += 1
            try:
                result = MigrationResult.model_validate_json(line)
            except ValueError:
                counts["invalid"] += 1
                continue
            counts["created" if result.created else "updated"] += 1
    return counts
