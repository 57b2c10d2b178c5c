"""Tests for the insider registry CLI."""

import csv
import io
import os
import subprocess
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

import requests

from insyn_cli import _env_flag, build_query, parse_args, run
from insyn_parser import HEADER_TABLE, Locale
from insyn_transaction import FIELDNAMES, Transaction

REPO_ROOT = Path(__file__).resolve().parent

SV_HEADER_LINE = ";".join(header for _, header in HEADER_TABLE[Locale.SWEDISH][:22]) + ";"
SV_ROW = (
    "2018-03-01 08:10:11;Empir Group AB;;Alfanode AB;Alfanode AB;VD;Nej;Nej;;Ja;Nej;"
    "Förvärv;Aktie;Empir Group AB;SE0010769182;2018-02-28 00:00:00;28227;Antal;37,9;SEK;"
    "Utanför handelsplats;Aktuell;"
)
SV_ROW_LATER = SV_ROW.replace("2018-02-28 00:00:00", "2018-03-01 00:00:00").replace(";28227;", ";100;")
SV_ROW_BAD_PRICE = SV_ROW.replace(";37,9;", ";abc;")


def _write_export(path: Path, *lines: str) -> None:
    path.write_bytes(("\ufeff" + "\n".join(lines) + "\n").encode("utf-16-le"))


def _read_csv(path: Path):
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        return reader.fieldnames, list(reader)


class InsynCliSmokeTest(unittest.TestCase):
    def test_export_file_to_csv(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp_path = Path(tmpdir)
            export = tmp_path / "export.csv"
            output_csv = tmp_path / "out" / "insider.csv"
            _write_export(export, SV_HEADER_LINE, SV_ROW, SV_ROW_BAD_PRICE)

            cmd = [
                sys.executable,
                "insyn_cli.py",
                "--input",
                str(export),
                "--output",
                str(output_csv),
            ]
            result = subprocess.run(cmd, cwd=REPO_ROOT, capture_output=True, text=True)
            self.assertEqual(
                result.returncode,
                0,
                msg=f"insyn_cli.py failed: {result.stderr or result.stdout}",
            )
            self.assertTrue(output_csv.exists(), "insyn_cli.py did not create output CSV")

            header, rows = _read_csv(output_csv)
            self.assertEqual(header, FIELDNAMES)
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0]["issuer"], "Empir Group AB")
            self.assertEqual(rows[0]["price"], "37.9")
            self.assertEqual(rows[0]["quantity"], "28227")
            self.assertEqual(rows[0]["instrument_type_description"], "Share")
            self.assertIn("Failed to parse number 'abc'", result.stderr)


class InsynCliRunTest(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch.dict(os.environ, {}, clear=False)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop("INSYNSREGISTRET_PARALLEL", None)
        os.environ.pop("INSYNSREGISTRET_TIMEOUT", None)

    def test_missing_input_file(self):
        args = parse_args(["--input", "does-not-exist.csv"])
        with self.assertLogs(level="ERROR"):
            self.assertEqual(run(args), 1)

    def test_sorted_output_to_stdout(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            export = Path(tmpdir) / "export.csv"
            _write_export(export, SV_HEADER_LINE, SV_ROW_LATER, SV_ROW)
            args = parse_args(["--input", str(export), "--sort"])
            out = io.StringIO()
            with redirect_stdout(out):
                self.assertEqual(run(args), 0)
        rows = list(csv.DictReader(io.StringIO(out.getvalue())))
        self.assertEqual([r["transaction_date"] for r in rows], ["2018-02-28 00:00:00", "2018-03-01 00:00:00"])

    def test_parallel_input_gives_same_rows(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            export = Path(tmpdir) / "export.csv"
            _write_export(export, SV_HEADER_LINE, *([SV_ROW, SV_ROW_LATER] * 10))
            outputs = []
            for extra in ([], ["--parallel"]):
                out = io.StringIO()
                with redirect_stdout(out):
                    self.assertEqual(run(parse_args(["--input", str(export)] + extra)), 0)
                outputs.append(out.getvalue())
        self.assertEqual(outputs[0], outputs[1])

    def test_query_uses_client(self):
        client = mock.Mock()
        client.search_transactions.return_value = [Transaction(issuer="Empir Group AB", quantity=1.0, price=2.0)]
        args = parse_args(["--transactions", "--from-date", "2018-03-01", "--issuer", "Empir Group AB"])
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(run(args, client=client), 0)

        query = client.search_transactions.call_args[0][0]
        self.assertEqual(str(query.from_transaction_date), "2018-03-01")
        self.assertEqual(query.to_transaction_date, query.from_transaction_date)
        self.assertEqual(query.issuer, "Empir Group AB")
        self.assertIn("Empir Group AB", out.getvalue())

    def test_request_failure_returns_error(self):
        client = mock.Mock()
        client.search_transactions.side_effect = requests.ConnectionError("connection refused")
        args = parse_args(["--last-days", "3"])
        with self.assertLogs(level="ERROR"):
            self.assertEqual(run(args, client=client), 1)

    def test_invalid_range_returns_error(self):
        client = mock.Mock()
        args = parse_args(["--from-date", "2018-03-02", "--to-date", "2018-03-01"])
        with self.assertLogs(level="ERROR"):
            self.assertEqual(run(args, client=client), 1)
        client.search_transactions.assert_not_called()

    def test_search_prints_names(self):
        client = mock.Mock()
        client.search_free_text.return_value = ["Hennes & Mauritz AB", "Hennes Invest"]
        args = parse_args(["--search-issuer", "Hennes"])
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(run(args, client=client), 0)
        self.assertEqual(out.getvalue().splitlines(), ["Hennes & Mauritz AB", "Hennes Invest"])
        query = client.search_free_text.call_args[0][0]
        self.assertEqual(query.field, "Utgivare")

    def test_default_query_is_recent_publications(self):
        query = build_query(parse_args([]))
        self.assertIsNotNone(query.from_publication_date)
        self.assertIsNone(query.from_transaction_date)
        self.assertEqual((query.to_publication_date - query.from_publication_date).days, 5)

    def test_env_flag(self):
        with mock.patch.dict(os.environ, {"INSYNSREGISTRET_PARALLEL": "Yes"}):
            self.assertTrue(_env_flag("INSYNSREGISTRET_PARALLEL"))
        with mock.patch.dict(os.environ, {"INSYNSREGISTRET_PARALLEL": "0"}):
            self.assertFalse(_env_flag("INSYNSREGISTRET_PARALLEL", default=True))
        self.assertTrue(_env_flag("INSYNSREGISTRET_PARALLEL", default=True))


if __name__ == "__main__":
    unittest.main()
