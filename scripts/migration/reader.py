"""Lazy newline-delimited JSON record stream."""

from __future__ import annotations

import gzip
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Generic, Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from scripts.migration.errors import ParseError

logger = logging.getLogger("migration.reader")

RecordT = TypeVar("RecordT", bound=BaseModel)


@dataclass(frozen=True)
class StreamItem(Generic[RecordT]):
    ordinal: int
    record: RecordT


@dataclass
class RecordStream(Generic[RecordT]):
    """Reads ``path`` one line at a time and yields validated records in file order.

    Every non-empty line gets an ordinal, starting at 0. Lines whose ordinal
    is below ``skip`` are counted but neither parsed nor yielded, so a resumed
    run keeps the same numbering as the run it continues. A line that is not
    UTF-8 or fails validation is logged as a ParseError and the stream moves
    on. A leading byte order mark is ignored.
    """

    path: Path
    model: type[RecordT]
    skip: int = 0
    read_count: int = 0
    skipped_count: int = 0
    parse_errors: list[ParseError] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        if self.skip < 0:
            raise ValueError("skip must be >= 0")

    def _open(self) -> BinaryIO:
        # Bytes in, decoded per line: a bad byte only spoils its own line
        if self.path.suffix == ".gz":
            return gzip.open(self.path, "rb")
        return self.path.open("rb")

    def __iter__(self) -> Iterator[StreamItem[RecordT]]:
        with self._open() as handle:
            for raw in handle:
                raw = raw.strip()
                if not raw:
                    continue
                ordinal = self.read_count
                self.read_count += 1
                if ordinal < self.skip:
                    self.skipped_count += 1
                    continue
                try:
                    record = self.model.model_validate_json(raw.decode("utf-8-sig"))
                except UnicodeDecodeError as exc:
                    self._parse_error(ordinal, f"invalid UTF-8 at byte {exc.start}: {exc.reason}")
                    continue
                except ValidationError as exc:
                    self._parse_error(ordinal, _summarise(exc))
                    continue
                yield StreamItem(ordinal, record)

    def _parse_error(self, ordinal: int, detail: str) -> None:
        error = ParseError(ordinal, detail)
        self.parse_errors.append(error)
        logger.error(
            "(%d) Error parsing record: %s", ordinal, error.detail,
            extra={"ordinal": ordinal},
        )


def _summarise(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<line>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)
