"""CLI smoke tests for jobboard_etl.import_csv via click's CliRunner."""

from __future__ import annotations

import json

from click.testing import CliRunner

from jobboard_etl.config import DEFAULT_CATEGORY_SEED, load_category_seed
from jobboard_etl.import_csv import main


def _invoke(dsn, tmp_path, *args):
    runner = CliRunner()
    return runner.invoke(main, [
        "--db-dsn", dsn,
        "--rejects-path", str(tmp_path / "rejects.csv"),
        "--report-dir", str(tmp_path / "reports"),
        *args,
    ])


class TestCli:
    def test_companies_import_writes_report(self, db_conn, tmp_path, write_csv):
        conn, dsn = db_conn
        path = write_csv("companies.csv", [
            {"id": "1", "name": "Acme"},
            {"id": "2", "name": "Beta"},
            {"id": "", "name": "Gamma"},
        ])

        result = _invoke(dsn, tmp_path, "--entity", "companies", "--csv-path", str(path),
                         "--batch-size", "2", "--run-id", "cli-run")

        assert result.exit_code == 0, result.output
        assert "=== IMPORT SUMMARY ===" in result.output
        assert "[cli-run]" in result.output
        assert conn.execute("SELECT count(*) FROM companies").fetchone()[0] == 3

        report = json.loads((tmp_path / "reports" / "cli-run.json").read_text())
        assert report["entity"] == "companies"
        assert report["counters"]["rows_imported"] == 3
        assert report["counters"]["sequence_value"] == 3
        assert "db_dsn" not in report["settings"]

    def test_dsn_from_environment(self, db_conn, tmp_path, write_csv):
        conn, dsn = db_conn
        path = write_csv("companies.csv", [{"id": "1", "name": "Acme"}])

        result = CliRunner().invoke(
            main,
            ["--entity", "companies", "--csv-path", str(path),
             "--report-dir", str(tmp_path / "reports")],
            env={"DATABASE_URL": dsn},
        )

        assert result.exit_code == 0, result.output
        assert conn.execute("SELECT count(*) FROM companies").fetchone()[0] == 1

    def test_missing_header_is_fatal_before_db(self, db_conn, tmp_path, write_csv):
        conn, dsn = db_conn
        path = write_csv("vendors.csv", [{"id": "1", "name": "V"}])

        result = _invoke(dsn, tmp_path, "--entity", "vendors", "--csv-path", str(path))

        assert result.exit_code == 1
        assert "FATAL" in result.output
        assert "missing headers" in result.output
        assert not (tmp_path / "reports").exists()

    def test_missing_file_is_fatal(self, db_conn, tmp_path):
        _, dsn = db_conn
        result = _invoke(dsn, tmp_path, "--entity", "companies",
                         "--csv-path", str(tmp_path / "nope.csv"))
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_invalid_config_is_fatal(self, db_conn, tmp_path):
        _, dsn = db_conn
        result = _invoke(dsn, tmp_path, "--entity", "companies",
                         "--csv-path", "x.csv", "--batch-size", "5000")
        assert result.exit_code == 1
        assert "batch_size" in result.output

    def test_categories_from_bundled_seed(self, db_conn, tmp_path):
        conn, dsn = db_conn
        result = _invoke(dsn, tmp_path, "--entity", "categories")

        assert result.exit_code == 0, result.output
        expected = len(load_category_seed(DEFAULT_CATEGORY_SEED))
        assert conn.execute("SELECT count(*) FROM categories").fetchone()[0] == expected

    def test_circuit_breaker_exits_non_zero(self, db_conn, tmp_path, write_csv):
        conn, dsn = db_conn
        path = write_csv("companies.csv", [
            {"id": str(i), "name": f"Bad {i}", "followers": "99999999999"} for i in range(1, 5)
        ])

        result = _invoke(dsn, tmp_path, "--entity", "companies", "--csv-path", str(path),
                         "--max-errors", "1", "--run-id", "breaker")

        assert result.exit_code == 1
        assert "ABORTED" in result.output
        report = json.loads((tmp_path / "reports" / "breaker.json").read_text())
        assert report["counters"]["aborted_reason"].startswith("too many errors")

    def test_dry_run(self, db_conn, tmp_path, write_csv):
        conn, dsn = db_conn
        path = write_csv("companies.csv", [{"id": "1", "name": "Acme"}])

        result = _invoke(dsn, tmp_path, "--entity", "companies", "--csv-path", str(path), "--dry-run")

        assert result.exit_code == 0, result.output
        assert "rolled back" in result.output
        assert conn.execute("SELECT count(*) FROM companies").fetchone()[0] == 0
