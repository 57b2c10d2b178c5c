"""CLI entry point for extracting insider transactions from Insynsregistret into CSV output.

Example usage:
    uv run python insyn_cli.py --publications --last-days 5 --output insider.csv
    uv run python insyn_cli.py --transactions --from-date 2018-03-01 --to-date 2018-03-01 --issuer "Empir Group AB"
    uv run python insyn_cli.py --language en --input export_en.csv --sort
    uv run python insyn_cli.py --search-issuer "Hennes"

Settings can also come from a .env file:
    INSYNSREGISTRET_PARALLEL=true
    INSYNSREGISTRET_TIMEOUT=30

Run the tests with:
    python -m unittest -q
"""

from __future__ import annotations

import argparse
import csv
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Sequence

import requests
from dotenv import load_dotenv

from insyn_client import (
    DEFAULT_TIMEOUT,
    EXPORT_ENCODING,
    FreeTextQuery,
    InsynsregistretClient,
    TransactionQuery,
    decode_export,
    export_lines,
)
from insyn_parser import Locale, parse_transaction_lines
from insyn_transaction import FIELDNAMES, Transaction, transaction_sort_key

DEFAULT_LAST_DAYS = 5


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logging.warning("Ignoring %s=%r: not a number", name, value)
        return default


def _parse_cli_date(value: str) -> date:
    """Parse --from-date / --to-date values ('YYYY-MM-DD')."""
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Could not parse date '{value}'. Use 'YYYY-MM-DD'.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract insider transactions from Insynsregistret into CSV.")
    parser.add_argument(
        "--input",
        dest="inputs",
        type=Path,
        action="append",
        default=[],
        help="Saved export file to parse instead of querying the registry (can be repeated).",
    )
    parser.add_argument(
        "--encoding",
        default=EXPORT_ENCODING,
        help=f"Encoding of --input files (default: {EXPORT_ENCODING}).",
    )

    by = parser.add_mutually_exclusive_group()
    by.add_argument("--publications", dest="by", action="store_const", const="publications",
                    help="Filter on publication date (default).")
    by.add_argument("--transactions", dest="by", action="store_const", const="transactions",
                    help="Filter on transaction date.")
    parser.set_defaults(by="publications")

    parser.add_argument("--from-date", type=_parse_cli_date, default=None, help="From date YYYY-MM-DD")
    parser.add_argument("--to-date", type=_parse_cli_date, default=None, help="To date YYYY-MM-DD")
    parser.add_argument(
        "--last-days",
        type=int,
        default=None,
        help=f"Number of days back from today (default: {DEFAULT_LAST_DAYS} when no dates are given).",
    )
    parser.add_argument("--issuer", default="", help="Issuer name filter")
    parser.add_argument("--pdmr", default="", help="Person discharging managerial responsibilities filter")
    parser.add_argument(
        "--language",
        default="sv",
        choices=["sv", "en"],
        help="Language of the export (headers and Yes/Ja words).",
    )

    search = parser.add_mutually_exclusive_group()
    search.add_argument("--search-issuer", default=None, help="List issuer names matching the text and exit.")
    search.add_argument("--search-pdmr", default=None, help="List PDMR names matching the text and exit.")

    parser.add_argument(
        "--parallel",
        action="store_true",
        default=None,
        help="Convert lines on a thread pool (env INSYNSREGISTRET_PARALLEL).",
    )
    parser.add_argument("--timeout", type=float, default=None,
                        help=f"HTTP timeout in seconds (env INSYNSREGISTRET_TIMEOUT, default {DEFAULT_TIMEOUT:g}).")
    parser.add_argument("--sort", action="store_true", help="Sort output by transaction date.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Path to the CSV file to write (omit to print to stdout).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def build_query(args: argparse.Namespace) -> TransactionQuery:
    locale = Locale.from_code(args.language)
    if args.from_date or args.to_date:
        from_date = args.from_date or args.to_date
        to_date = args.to_date or args.from_date
        factory = TransactionQuery.transactions if args.by == "transactions" else TransactionQuery.publications
        return factory(from_date, to_date, issuer=args.issuer, pdmr=args.pdmr, locale=locale)

    days = DEFAULT_LAST_DAYS if args.last_days is None else args.last_days
    factory = (
        TransactionQuery.transactions_last_days
        if args.by == "transactions"
        else TransactionQuery.publications_last_days
    )
    return factory(days, issuer=args.issuer, pdmr=args.pdmr, locale=locale)


def read_export_files(paths: List[Path], locale: Locale, encoding: str, parallel: bool) -> List[Transaction]:
    transactions: List[Transaction] = []
    for path in paths:
        try:
            payload = path.read_bytes()
        except OSError as exc:
            logging.warning("Skipping %s: %s", path, exc)
            continue
        lines = export_lines(decode_export(payload, encoding))
        if parallel:
            with ThreadPoolExecutor() as executor:
                parsed = list(parse_transaction_lines(lines, locale, executor=executor))
        else:
            parsed = list(parse_transaction_lines(lines, locale))
        if not parsed:
            logging.warning("No transactions parsed from %s", path.name)
        transactions.extend(parsed)
    return transactions


def write_csv(transactions: List[Transaction], output_csv: Optional[Path]) -> int:
    rows = [t.to_row() for t in transactions]
    if output_csv is None:
        writer = csv.DictWriter(sys.stdout, fieldnames=FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
        return 0
    try:
        output_csv.parent.mkdir(parents=True, exist_ok=True)
        with output_csv.open("w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDNAMES, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)
    except OSError as exc:
        logging.error("Failed to write CSV %s: %s", output_csv, exc)
        return 1
    logging.info("Wrote %d transactions to %s", len(rows), output_csv)
    return 0


def run_search(client: InsynsregistretClient, args: argparse.Namespace) -> int:
    if args.search_issuer is not None:
        query = FreeTextQuery.issuer(args.search_issuer)
    else:
        query = FreeTextQuery.pdmr(args.search_pdmr)
    try:
        names = client.search_free_text(query)
    except requests.RequestException as exc:
        logging.error("Search failed: %s", exc)
        return 1
    for name in names:
        print(name)
    return 0


def run(args: argparse.Namespace, client: Optional[InsynsregistretClient] = None) -> int:
    parallel = args.parallel if args.parallel is not None else _env_flag("INSYNSREGISTRET_PARALLEL")
    timeout = args.timeout if args.timeout is not None else _env_float("INSYNSREGISTRET_TIMEOUT", DEFAULT_TIMEOUT)
    locale = Locale.from_code(args.language)

    if args.inputs:
        missing = [p for p in args.inputs if not p.exists()]
        if missing:
            logging.error("Input file does not exist: %s", ", ".join(str(p) for p in missing))
            return 1
        transactions = read_export_files(args.inputs, locale, args.encoding, parallel)
    else:
        client = client or InsynsregistretClient(timeout=timeout, parallel=parallel)
        if args.search_issuer is not None or args.search_pdmr is not None:
            return run_search(client, args)
        try:
            query = build_query(args)
        except ValueError as exc:
            logging.error("Invalid query: %s", exc)
            return 1
        try:
            transactions = client.search_transactions(query)
        except requests.RequestException as exc:
            logging.error("Request to %s failed: %s", query.url, exc)
            return 1

    if args.sort:
        transactions = sorted(transactions, key=transaction_sort_key)
    return write_csv(transactions, args.output)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()

    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
