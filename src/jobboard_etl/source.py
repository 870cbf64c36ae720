"""jobboard_etl.source

CSV source reader shared by every entity import.

Two read modes:
  full     read the whole file into memory, decode, then parse.
  stream   detect the encoding in bounded-memory chunks, then parse
           row-by-row from an open file handle.

Encoding: each candidate codec is tried in order (UTF-8 with BOM tolerance,
then Latin-1).  If every candidate fails, the raw bytes are decoded as UTF-8
with replacement characters so the run can still proceed.

Pre-flight (CsvSource.open) is eager: a missing file, an unreadable file or
a header lacking required columns raises SourceReadError before the caller
touches the database.  Rows whose column count differs from the header are
skipped, counted in rows_malformed and written to the reject file.
"""

from __future__ import annotations

import codecs
import csv
import io
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import TextIO

from jobboard_etl.config import READ_MODE_FULL, READ_MODE_STREAM
from jobboard_etl.shared import ImportCounters, RejectWriter, SourceReadError

log = logging.getLogger(__name__)

DEFAULT_ENCODINGS = ("utf-8-sig", "latin-1")
# Last-resort decode when no candidate codec accepts the bytes
FALLBACK_ENCODING = "utf-8"

_CHUNK_SIZE = 1 << 20


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def decode_bytes(data: bytes, encodings: tuple[str, ...] = DEFAULT_ENCODINGS) -> tuple[str, str]:
    """Decode data with the first codec that accepts it.

    Returns (text, encoding_used).  encoding_used is suffixed with
    '+replace' when the raw-buffer fallback was needed.
    """
    for enc in encodings:
        try:
            return data.decode(enc), enc
        except UnicodeDecodeError:
            log.warning("CSV is not valid %s; trying next encoding.", enc)
    return data.decode(FALLBACK_ENCODING, errors="replace"), f"{FALLBACK_ENCODING}+replace"


def detect_encoding(path: Path, encodings: tuple[str, ...] = DEFAULT_ENCODINGS) -> str:
    """Return the first codec in encodings that decodes the whole file.

    Reads in fixed-size chunks so memory stays bounded for very large files.
    """
    for enc in encodings:
        decoder = codecs.getincrementaldecoder(enc)()
        try:
            with path.open("rb") as fh:
                for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                    decoder.decode(chunk)
                decoder.decode(b"", final=True)
            return enc
        except UnicodeDecodeError:
            log.warning("CSV is not valid %s; trying next encoding.", enc)
    return f"{FALLBACK_ENCODING}+replace"


# ---------------------------------------------------------------------------
# CsvSource
# ---------------------------------------------------------------------------

class CsvSource:
    """A header-validated CSV file that yields raw string rows in file order."""

    def __init__(
        self,
        path: Path,
        required_headers: set[str],
        counters: ImportCounters,
        rejects: RejectWriter,
        mode: str = READ_MODE_FULL,
        encodings: tuple[str, ...] = DEFAULT_ENCODINGS,
    ) -> None:
        if mode not in (READ_MODE_FULL, READ_MODE_STREAM):
            raise ValueError(f"unknown read mode {mode!r}")
        self.path = path
        self.required_headers = required_headers
        self.mode = mode
        self.encodings = encodings
        self.encoding: str | None = None
        self.headers: list[str] = []
        self._counters = counters
        self._rejects = rejects
        self._text: str | None = None

    # -- pre-flight ---------------------------------------------------------

    def open(self) -> "CsvSource":
        """Resolve encoding and validate the header row.

        Raises:
            SourceReadError: file missing, unreadable, empty, or missing
                required headers.
        """
        if not self.path.is_file():
            raise SourceReadError(f"source file not found: {self.path}")
        try:
            if self.mode == READ_MODE_FULL:
                self._text, self.encoding = decode_bytes(self.path.read_bytes(), self.encodings)
            else:
                self.encoding = detect_encoding(self.path, self.encodings)
        except OSError as exc:
            raise SourceReadError(f"cannot read {self.path}: {exc}") from exc

        with self._text_handle() as fh:
            reader = csv.reader(fh)
            header = next((r for r in reader if _has_content(r)), None)
        if header is None:
            raise SourceReadError(f"{self.path} has no header row")

        self.headers = [h.strip() for h in header]
        missing = self.required_headers - set(self.headers)
        if missing:
            raise SourceReadError(
                f"{self.path.name}: missing headers after trim: {sorted(missing)}"
            )
        return self

    # -- iteration ----------------------------------------------------------

    def rows(self) -> Iterator[dict[str, str]]:
        """Yield each well-formed data row as {header: raw value}."""
        if not self.headers:
            self.open()
        width = len(self.headers)
        with self._text_handle() as fh:
            reader = csv.reader(fh)
            header_seen = False
            for record in reader:
                if not _has_content(record):
                    continue
                if not header_seen:
                    header_seen = True
                    continue
                if len(record) != width:
                    self._counters.rows_malformed += 1
                    padded = {
                        h: (record[i] if i < len(record) else "")
                        for i, h in enumerate(self.headers)
                    }
                    self._rejects.write(
                        padded,
                        f"column_count_mismatch: line {reader.line_num} "
                        f"has {len(record)} fields, expected {width}",
                    )
                    continue
                self._counters.rows_read += 1
                yield dict(zip(self.headers, record))

    def __iter__(self) -> Iterator[dict[str, str]]:
        return self.rows()

    def column_values(self, name: str) -> Iterator[str]:
        """Yield one column's raw value from every well-formed data row.

        A separate pass over the file that leaves counters and the reject
        file alone.
        """
        if not self.headers:
            self.open()
        idx = self.headers.index(name)
        width = len(self.headers)
        with self._text_handle() as fh:
            records = (r for r in csv.reader(fh) if _has_content(r))
            next(records, None)
            for record in records:
                if len(record) == width:
                    yield record[idx]

    def _text_handle(self) -> TextIO:
        if self.mode == READ_MODE_FULL:
            return io.StringIO(self._text or "", newline="")
        if self.encoding and self.encoding.endswith("+replace"):
            return self.path.open(encoding=FALLBACK_ENCODING, errors="replace", newline="")
        return self.path.open(encoding=self.encoding, newline="")


def _has_content(record: list[str]) -> bool:
    return any(cell.strip() for cell in record)
