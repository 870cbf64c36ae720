"""Unit tests for jobboard_etl.source (CSV reading, encodings, pre-flight)."""

from __future__ import annotations

import csv
from pathlib import Path

import pytest

from jobboard_etl.config import READ_MODE_FULL, READ_MODE_STREAM
from jobboard_etl.shared import ImportCounters, RejectWriter, SourceReadError
from jobboard_etl.source import CsvSource, decode_bytes, detect_encoding


def _source(path: Path, tmp_path: Path, mode: str = READ_MODE_FULL, required=("id", "name")):
    counters = ImportCounters()
    rejects = RejectWriter(tmp_path / "rejects.csv")
    return CsvSource(path, set(required), counters, rejects, mode=mode), counters, rejects


def _write(path: Path, text: str, encoding: str = "utf-8") -> Path:
    path.write_bytes(text.encode(encoding))
    return path


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

class TestDecodeBytes:
    def test_utf8(self):
        text, enc = decode_bytes("id,name\n1,Café\n".encode("utf-8"))
        assert enc == "utf-8-sig"
        assert "Café" in text

    def test_bom_stripped(self):
        text, enc = decode_bytes(b"\xef\xbb\xbfid,name\n")
        assert text.startswith("id,name")

    def test_latin1_fallback(self):
        text, enc = decode_bytes("id,name\n1,Café\n".encode("latin-1"))
        assert enc == "latin-1"
        assert "Café" in text

    def test_raw_buffer_fallback_when_all_codecs_fail(self):
        text, enc = decode_bytes(b"id,name\n1,\xff\n", encodings=("utf-8", "ascii"))
        assert enc == "utf-8+replace"
        assert "�" in text


class TestDetectEncoding:
    def test_utf8_file(self, tmp_path):
        path = _write(tmp_path / "a.csv", "id,name\n1,Zoë\n")
        assert detect_encoding(path) == "utf-8-sig"

    def test_latin1_file(self, tmp_path):
        path = _write(tmp_path / "a.csv", "id,name\n1,Zoë\n", "latin-1")
        assert detect_encoding(path) == "latin-1"


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------

class TestPreflight:
    def test_missing_file_is_fatal(self, tmp_path):
        src, _, _ = _source(tmp_path / "nope.csv", tmp_path)
        with pytest.raises(SourceReadError, match="not found"):
            src.open()

    def test_empty_file_is_fatal(self, tmp_path):
        path = _write(tmp_path / "empty.csv", "")
        src, _, _ = _source(path, tmp_path)
        with pytest.raises(SourceReadError, match="no header"):
            src.open()

    def test_missing_required_header_is_fatal(self, tmp_path):
        path = _write(tmp_path / "a.csv", "id,title\n1,x\n")
        src, _, _ = _source(path, tmp_path)
        with pytest.raises(SourceReadError, match="name"):
            src.open()

    def test_headers_are_trimmed(self, tmp_path):
        path = _write(tmp_path / "a.csv", " id , name \n1,Acme\n")
        src, _, _ = _source(path, tmp_path)
        src.open()
        assert src.headers == ["id", "name"]


# ---------------------------------------------------------------------------
# Row iteration
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("mode", [READ_MODE_FULL, READ_MODE_STREAM])
class TestRows:
    def test_yields_rows_in_file_order(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n1,Acme\n2,Beta\n,Gamma\n")
        src, counters, _ = _source(path, tmp_path, mode)
        rows = list(src.open().rows())
        assert [r["name"] for r in rows] == ["Acme", "Beta", "Gamma"]
        assert rows[2]["id"] == ""
        assert counters.rows_read == 3

    def test_quoted_values_with_commas_and_newlines(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", 'id,name\n1,"Acme, Inc."\n2,"Line\nBreak"\n')
        src, _, _ = _source(path, tmp_path, mode)
        rows = list(src.open().rows())
        assert rows[0]["name"] == "Acme, Inc."
        assert rows[1]["name"] == "Line\nBreak"

    def test_blank_lines_skipped(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n\n1,Acme\n,\n2,Beta\n")
        src, counters, _ = _source(path, tmp_path, mode)
        assert len(list(src.open().rows())) == 2
        assert counters.rows_malformed == 0

    def test_malformed_row_skipped_counted_and_rejected(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n1,Acme\n2,Beta,extra\n3\n4,Delta\n")
        src, counters, rejects = _source(path, tmp_path, mode)
        rows = list(src.open().rows())
        rejects.close()

        assert [r["id"] for r in rows] == ["1", "4"]
        assert counters.rows_malformed == 2
        assert counters.rows_read == 2

        with rejects.path.open(newline="", encoding="utf-8") as fh:
            rejected = list(csv.DictReader(fh))
        assert len(rejected) == 2
        assert rejected[0]["_reject_reason"].startswith("column_count_mismatch")
        assert rejected[1]["id"] == "3"

    def test_latin1_source(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n1,Société Générale\n", "latin-1")
        src, _, _ = _source(path, tmp_path, mode)
        rows = list(src.open().rows())
        assert src.encoding == "latin-1"
        assert rows[0]["name"] == "Société Générale"

    def test_column_values_leaves_counters_alone(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n,Gamma\n2,Beta,extra\n7,Acme\n")
        src, counters, rejects = _source(path, tmp_path, mode)
        assert list(src.open().column_values("id")) == ["", "7"]
        assert counters.rows_read == 0
        assert counters.rows_malformed == 0
        assert rejects.rows_written == 0

    def test_iterating_source_directly(self, tmp_path, mode):
        path = _write(tmp_path / "a.csv", "id,name\n1,Acme\n")
        src, _, _ = _source(path, tmp_path, mode)
        assert [r["name"] for r in src.open()] == ["Acme"]


class TestReadMode:
    def test_unknown_mode_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            _source(tmp_path / "a.csv", tmp_path, mode="mmap")
